import enum
import fnmatch
import logging
import typing

from fast_lora.config import Config, Field, FieldHint, check_field, config_class, skip_valid_if_none
from fast_lora.engine.config_utils.initialization import LoRAInitialization
from fast_lora.utils import Assert

if typing.TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)


class LayerKind(str, enum.Enum):
    linear = "linear"
    conv1d = "conv1d"
    conv2d = "conv2d"
    embedding = "embedding"

    @classmethod
    def from_module(cls, module: "torch.nn.Module") -> "LayerKind | None":
        """
        The adapter kind for a module, or None if there is no adapter for it.
        """
        import torch

        if isinstance(module, torch.nn.Linear):
            return cls.linear
        elif isinstance(module, torch.nn.Conv1d):
            return cls.conv1d
        elif isinstance(module, torch.nn.Conv2d):
            return cls.conv2d
        elif isinstance(module, torch.nn.Embedding):
            return cls.embedding
        return None


def module_name_matches(name: str, pattern: str) -> bool:
    """
    A module path matches a pattern if it is the pattern, ends with `.{pattern}` or matches it as a glob.
    """
    return name == pattern or name.endswith(f".{pattern}") or fnmatch.fnmatchcase(name, pattern)


@config_class()
class LoRAConfig(Config):
    rank: int = Field(
        default=8,
        desc="The LoRA rank, i.e. the size of the intermediate dimension.",
        hint=FieldHint.core,
        valid=check_field(Assert.gt, 0),
    )
    alpha: float = Field(
        default=8.0,
        desc="The LoRA scaling parameter. The delta is multiplied by `alpha / rank`.",
        hint=FieldHint.core,
        valid=check_field(Assert.gt, 0),
    )
    dropout: float = Field(
        default=0.0,
        desc="Dropout rate on the input of the LoRA path. Adapters with dropout can't be merged.",
        hint=FieldHint.stability,
        valid=check_field(Assert.in_range, 0, 1),
    )
    initialization: LoRAInitialization = Field(
        default=LoRAInitialization.kaiming_uniform,
        desc="Initialization method for the `lora_A` factor.",
        hint=FieldHint.optional,
    )
    train_bias: bool = Field(
        default=False,
        desc="Keep the bias of the wrapped layer trainable and save it with the adapter weights.",
        hint=FieldHint.feature,
    )

    @property
    def scaling(self) -> float:
        return self.alpha / self.rank


@config_class()
class LoRAOverrideConfig(Config):
    """
    A partial `LoRAConfig`. Unset fields are inherited from the less specific configuration.
    """

    rank: int | None = Field(
        default=None,
        desc="Override the LoRA rank.",
        hint=FieldHint.optional,
        valid=skip_valid_if_none(check_field(Assert.gt, 0)),
    )
    alpha: float | None = Field(
        default=None,
        desc="Override the LoRA scaling parameter.",
        hint=FieldHint.optional,
        valid=skip_valid_if_none(check_field(Assert.gt, 0)),
    )
    dropout: float | None = Field(
        default=None,
        desc="Override the LoRA dropout rate.",
        hint=FieldHint.optional,
        valid=skip_valid_if_none(check_field(Assert.in_range, 0, 1)),
    )
    initialization: LoRAInitialization | None = Field(
        default=None,
        desc="Override the initialization method for the `lora_A` factor.",
        hint=FieldHint.optional,
    )
    train_bias: bool | None = Field(
        default=None,
        desc="Override bias training.",
        hint=FieldHint.optional,
    )

    def apply(self, config: LoRAConfig) -> LoRAConfig:
        updates = {
            name: getattr(self, name)
            for name, field in self.fields()
            if field.init and getattr(self, name) is not None
        }
        return config.to_copy(updates) if updates else config


@config_class()
class LoRABuilderConfig(Config):
    default: LoRAConfig = Field(
        desc="The LoRA configuration applied to every selected layer unless overridden.",
        hint=FieldHint.core,
    )
    target_modules: list[str] | None = Field(
        default=None,
        desc="Explicit list of modules to convert."
        " A pattern matches a module path if it is equal to it, if the path ends with `.{pattern}`, or as a glob."
        " If not provided, modules are selected by kind (see `layer_kinds`).",
        hint=FieldHint.core,
    )
    exclude_modules: list[str] = Field(
        default_factory=list,
        desc="Modules to leave untouched, using the same matching rules as `target_modules`.",
        hint=FieldHint.optional,
    )
    layer_kinds: list[LayerKind] = Field(
        default_factory=lambda: [LayerKind.linear],
        desc="The kinds of layer to convert when no explicit `target_modules` is given.",
        hint=FieldHint.feature,
    )
    kind_overrides: dict[LayerKind, LoRAOverrideConfig] = Field(
        default_factory=dict,
        desc="Per-kind overrides of the default configuration.",
        hint=FieldHint.feature,
    )
    name_overrides: dict[str, LoRAOverrideConfig] = Field(
        default_factory=dict,
        desc="Per-module overrides of the default configuration, by exact module path."
        " Takes precedence over `kind_overrides`.",
        hint=FieldHint.feature,
    )
    freeze_others: bool = Field(
        default=True,
        desc="When applying to a model, freeze all the parameters that aren't part of a LoRA adapter.",
        hint=FieldHint.feature,
    )

    def _validate(self) -> None:
        super()._validate()
        if self.target_modules is None and not self.layer_kinds:
            logger.warning("No `target_modules` and no `layer_kinds`, LoRA won't be applied to any layer.")

    def is_targeted(self, name: str) -> bool:
        """
        Whether the module is explicitly requested in `target_modules`.
        """
        return self.target_modules is not None and any(
            module_name_matches(name, pattern) for pattern in self.target_modules
        )

    def is_excluded(self, name: str) -> bool:
        return any(module_name_matches(name, pattern) for pattern in self.exclude_modules)

    def is_selected(self, name: str, kind: LayerKind | None) -> bool:
        if self.is_excluded(name):
            return False
        if self.target_modules is not None:
            return self.is_targeted(name)
        return kind is not None and kind in self.layer_kinds

    def resolve(self, name: str, kind: LayerKind) -> LoRAConfig:
        # Precedence: exact name > kind > global default.
        config = self.default
        if kind in self.kind_overrides:
            config = self.kind_overrides[kind].apply(config)
        if name in self.name_overrides:
            config = self.name_overrides[name].apply(config)
        return config

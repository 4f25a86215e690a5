import enum
import json
import logging
import pathlib
import typing

from fast_lora.config import Config, Field, FieldHint, ValidationError, check_field, config_class
from fast_lora.engine.checkpoint.peft.roles import RoleTable
from fast_lora.engine.config_utils.data_type import DataType
from fast_lora.errors import InvalidAdapterFileError
from fast_lora.utils import Assert

logger = logging.getLogger(__name__)

PEFT_WEIGHT_FILE_NAMES = ("adapter_model.safetensors", "adapter.safetensors", "adapter_model.bin")
PEFT_CONFIG_FILE_NAME = "adapter_config.json"


class PeftKeyNaming(str, enum.Enum):
    """
    `path`: `{prefix}.{module_path}.lora_A` and `{prefix}.{module_path}.lora_B`.
    `indexed`: `{prefix}.a{i}.weight` and `{prefix}.b{i}.weight`, with pairs numbered per prefix in module path order.
    """

    path = "path"
    indexed = "indexed"


@config_class()
class PeftAdapterConfig(Config):
    """
    The part of a PEFT `adapter_config.json` relevant to LoRA conversion.
    """

    r: int = Field(
        default=8,
        desc="The LoRA rank.",
        hint=FieldHint.core,
        valid=check_field(Assert.gt, 0),
    )
    lora_alpha: float = Field(
        default=8.0,
        desc="The LoRA scaling parameter.",
        hint=FieldHint.core,
        valid=check_field(Assert.gt, 0),
    )
    lora_dropout: float = Field(
        default=0.0,
        desc="The LoRA dropout rate.",
        hint=FieldHint.optional,
        valid=check_field(Assert.in_range, 0, 1),
    )
    target_modules: list[str] | None = Field(
        default=None,
        desc="The adapted modules. PEFT also accepts a single pattern.",
        hint=FieldHint.optional,
    )
    peft_type: str | None = Field(
        default=None,
        desc="The PEFT method, must be `LORA` if provided.",
        hint=FieldHint.optional,
    )
    base_model_name_or_path: str | None = Field(
        default=None,
        desc="The model the adapter was trained for.",
        hint=FieldHint.optional,
    )

    def _validate(self) -> None:
        if isinstance(self.target_modules, str):
            self.target_modules = [self.target_modules]
        super()._validate()
        if self.peft_type is not None and self.peft_type.upper() != "LORA":
            raise ValidationError(f"Unsupported PEFT type `{self.peft_type}`, expected `LORA`")

    @property
    def scaling(self) -> float:
        return self.lora_alpha / self.r

    @classmethod
    def from_json(cls, path: pathlib.Path | str) -> typing.Self:
        path = pathlib.Path(path)
        try:
            config_dict = json.loads(path.read_text())
        except (OSError, ValueError) as e:
            raise InvalidAdapterFileError(f"Cannot read adapter config {path}: {e}") from e
        if not isinstance(config_dict, dict):
            raise InvalidAdapterFileError(f"Invalid adapter config {path}: expected a json object")
        # PEFT configs have many more entries, we only keep the ones we know about.
        config_dict = {name: value for name, value in config_dict.items() if name in cls.__dataclass_fields__}
        try:
            return cls.from_dict(config_dict)
        except ValidationError as e:
            raise InvalidAdapterFileError(f"Invalid adapter config {path}:\n" + "\n".join(map(str, e.args))) from e

    @classmethod
    def from_directory(cls, directory: pathlib.Path | str) -> typing.Self | None:
        path = pathlib.Path(directory) / PEFT_CONFIG_FILE_NAME
        if not path.is_file():
            logger.info(f"No {PEFT_CONFIG_FILE_NAME} in {directory}, converting without an adapter config")
            return None
        return cls.from_json(path)


@config_class()
class PeftConversionConfig(Config):
    typed: bool = Field(
        default=False,
        desc="Prefix each key with its role, `lora_{model_tag}[_{role_tag}]`, instead of the fixed `prefix`.",
        hint=FieldHint.core,
    )
    prefix: str = Field(
        default="lora",
        desc="The key prefix for untyped conversion.",
        hint=FieldHint.core,
    )
    model_tag: str = Field(
        default="llama",
        desc="The model tag in typed key prefixes.",
        hint=FieldHint.core,
    )
    roles: RoleTable = Field(
        desc="The classification of module paths into roles.",
        hint=FieldHint.feature,
    )
    naming: PeftKeyNaming = Field(
        default=PeftKeyNaming.path,
        desc="The naming scheme of the converted keys.",
        hint=FieldHint.feature,
    )
    strip_prefix: str | None = Field(
        default="base_model.model.",
        desc="The PEFT wrapper prefix to remove from module paths.",
        hint=FieldHint.optional,
    )
    add_dummy_embeddings: bool = Field(
        default=False,
        desc="Add zero embedding factors when the adapter has none, for loaders that expect them.",
        hint=FieldHint.feature,
    )
    dummy_embedding_path: str = Field(
        default="model.embed_tokens",
        desc="The module path of the dummy embedding factors, for the `path` naming.",
        hint=FieldHint.optional,
    )
    dummy_rank: int = Field(
        default=4,
        desc="The rank of the dummy embedding factors, when there is no adapter config.",
        hint=FieldHint.optional,
        valid=check_field(Assert.gt, 0),
    )
    dummy_vocab_size: int = Field(
        default=32000,
        desc="The vocabulary size of the dummy embedding factors.",
        hint=FieldHint.optional,
        valid=check_field(Assert.gt, 0),
    )
    dummy_hidden_size: int = Field(
        default=2048,
        desc="The hidden size of the dummy embedding factors.",
        hint=FieldHint.optional,
        valid=check_field(Assert.gt, 0),
    )
    data_type: DataType | None = Field(
        default=None,
        desc="Cast the converted tensors to this data type. Keep the original data types if not provided.",
        hint=FieldHint.optional,
    )
    device: str = Field(
        default="cpu",
        desc="The device to load the tensors on.",
        hint=FieldHint.optional,
    )

    def _validate(self) -> None:
        if self.strip_prefix == "":
            self.strip_prefix = None
        super()._validate()
        if self.typed:
            if not self.model_tag:
                raise ValidationError("Typed conversion requires a model tag.")
        elif not self.prefix:
            raise ValidationError("Untyped conversion requires a prefix.")
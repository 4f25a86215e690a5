import logging
import typing

import torch

from fast_lora.config import Configurable
from fast_lora.errors import UnsupportedLayerKindError
from fast_lora.layers.lora.adapter import LoRAAdapter, get_adapter_class
from fast_lora.layers.lora.config import LayerKind, LoRABuilderConfig
from fast_lora.utils import format_number, get_type_name

logger = logging.getLogger(__name__)


class LoRABuilder(Configurable[LoRABuilderConfig]):
    """
    Select the layers of a model according to a `LoRABuilderConfig` and wrap them in LoRA adapters.
    `build` only creates the adapters, `apply` also substitutes them into the model.
    """

    config_class: typing.ClassVar[type[LoRABuilderConfig]] = LoRABuilderConfig

    def build(self, layers: torch.nn.Module | typing.Mapping[str, torch.nn.Module]) -> dict[str, LoRAAdapter]:
        adapters = {}
        for name, layer in self._iter_candidates(layers):
            kind = LayerKind.from_module(layer)
            if not self._config.is_selected(name, kind):
                continue
            if kind is None:
                raise UnsupportedLayerKindError(
                    f"Module `{name}` of type {get_type_name(type(layer))} is targeted for LoRA,"
                    f" but there is no adapter for it."
                )
            config = self._config.resolve(name, kind)
            adapters[name] = get_adapter_class(kind)(layer, config)
            logger.debug(f"LoRA {kind.value} adapter for `{name}`: rank={config.rank}, alpha={config.alpha}")

        logger.info(
            f"Built {len(adapters)} LoRA adapters"
            f" with {format_number(sum(adapter.num_trainable_parameters() for adapter in adapters.values()))}"
            f" trainable parameters"
        )
        return adapters

    def apply(self, model: torch.nn.Module) -> dict[str, LoRAAdapter]:
        """
        Build the adapters and substitute them in place of the original modules.
        Returns the adapters by module path, which remain valid handles into the model.
        """
        adapters = self.build(model)
        for name, adapter in adapters.items():
            _set_submodule(model, name, adapter)
        if self._config.freeze_others:
            trainable = {
                id(tensor) for adapter in adapters.values() for tensor in adapter.trainable_tensors().values()
            }
            num_frozen = 0
            for parameter in model.parameters():
                if id(parameter) not in trainable and parameter.requires_grad:
                    parameter.requires_grad_(False)
                    num_frozen += parameter.numel()
            logger.info(f"Froze {format_number(num_frozen)} parameters outside of the LoRA adapters")
        return adapters

    def _iter_candidates(
        self, layers: torch.nn.Module | typing.Mapping[str, torch.nn.Module]
    ) -> typing.Iterator[tuple[str, torch.nn.Module]]:
        if not isinstance(layers, torch.nn.Module):
            for name, layer in layers.items():
                if isinstance(layer, LoRAAdapter):
                    logger.debug(f"Skipping `{name}`, already a LoRA adapter")
                else:
                    yield name, layer
            return
        wrapped = []
        for name, module in layers.named_modules():
            # The root can't be substituted, and the content of existing adapters is left alone.
            if not name or any(name.startswith(f"{prefix}.") for prefix in wrapped):
                continue
            if isinstance(module, LoRAAdapter):
                logger.debug(f"Skipping `{name}`, already a LoRA adapter")
                wrapped.append(name)
                continue
            yield name, module


def _set_submodule(model: torch.nn.Module, name: str, module: torch.nn.Module) -> None:
    parent_name, _, child_name = name.rpartition(".")
    parent = model.get_submodule(parent_name) if parent_name else model
    setattr(parent, child_name, module)


def merge_adapters(adapters: typing.Mapping[str, LoRAAdapter]) -> None:
    for adapter in adapters.values():
        adapter.merge()
    logger.info(f"Merged {len(adapters)} LoRA adapters")


def unmerge_adapters(adapters: typing.Mapping[str, LoRAAdapter]) -> None:
    for adapter in adapters.values():
        adapter.unmerge()
    logger.info(f"Unmerged {len(adapters)} LoRA adapters")

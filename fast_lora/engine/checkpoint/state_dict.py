import logging
import pathlib
import typing

import safetensors
import safetensors.torch
import torch
import yaml

import fast_lora
from fast_lora.errors import AlreadyMergedError, InvalidAdapterFileError, MissingKeyError, ShapeMismatchError
from fast_lora.layers.lora.adapter import LoRAAdapter
from fast_lora.utils import format_number

logger = logging.getLogger(__name__)


def export_safetensors_metadata(metadata: dict[str, typing.Any]) -> dict[str, str]:
    """
    Safetensor only accepts string entries, so we convert to string explicitly.
    We use yaml rather than json because json requires explicit quotation marks on strings, which breaks things.
    (ex. "format": "pt" becomes '"pt"' which breaks huggingface models.)
    We avoid using safe_dump for scalars because it adds junk ("\n...\n") at the end of the string
    (decoding is unaffected.)
    """
    return {
        key: str(value) if isinstance(value, (str, int, float, bool)) else yaml.safe_dump(value)
        for key, value in metadata.items()
    }


def import_safetensors_metadata(metadata: dict[str, str]) -> dict[str, typing.Any]:
    return {key: yaml.safe_load(value) for key, value in metadata.items()}


def _get_key(prefix: str | None, name: str, tensor_name: str) -> str:
    return ".".join(part for part in (prefix, name, tensor_name) if part)


def extract_tensors(adapters: typing.Mapping[str, LoRAAdapter], prefix: str | None = None) -> dict[str, torch.Tensor]:
    """
    The trainable tensors of the adapters, as `[{prefix}.]{path}.lora_A` and `[{prefix}.]{path}.lora_B`.
    The frozen weights are not included.
    """
    return {
        _get_key(prefix, name, tensor_name): tensor
        for name in sorted(adapters)
        for tensor_name, tensor in adapters[name].extract().items()
    }


@torch.no_grad()
def inject_tensors(
    tensors: typing.Mapping[str, torch.Tensor],
    adapters: typing.Mapping[str, LoRAAdapter],
    prefix: str | None = None,
) -> None:
    """
    Copy the tensors saved by `extract_tensors` into the matching adapters.
    Adapters are processed in order and the first failure is raised, leaving the previous adapters updated.
    """
    for name in sorted(adapters):
        adapter = adapters[name]
        if adapter.merged:
            raise AlreadyMergedError(f"Cannot load weights into `{name}`, the LoRA delta is merged.")
        for tensor_name, parameter in adapter.trainable_tensors().items():
            key = _get_key(prefix, name, tensor_name)
            if key not in tensors:
                raise MissingKeyError(f"Missing tensor `{key}` for LoRA adapter `{name}`")
            tensor = tensors[key]
            if tensor.shape != parameter.shape:
                raise ShapeMismatchError(
                    f"Invalid shape for tensor `{key}`: {tuple(tensor.shape)} != {tuple(parameter.shape)}"
                )
            parameter.copy_(tensor)
    logger.debug(f"Loaded weights for {len(adapters)} LoRA adapters")


def save_adapters(
    adapters: typing.Mapping[str, LoRAAdapter],
    path: pathlib.Path | str,
    prefix: str | None = None,
    metadata: dict[str, typing.Any] | None = None,
) -> None:
    path = pathlib.Path(path)
    tensors = {key: tensor.contiguous() for key, tensor in extract_tensors(adapters, prefix).items()}
    full_metadata = {
        "format": "pt",
        "fast_lora_version": fast_lora.__version__,
        "prefix": prefix,
        "adapters": {
            name: {"kind": adapter.kind.value, "rank": adapter.rank, "alpha": adapter.alpha}
            for name, adapter in sorted(adapters.items())
        },
        **(metadata or {}),
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    safetensors.torch.save_file(tensors, path, metadata=export_safetensors_metadata(full_metadata))
    logger.info(
        f"Saved {len(adapters)} LoRA adapters"
        f" ({format_number(sum(tensor.numel() for tensor in tensors.values()))} parameters) to {path}"
    )


def _check_adapter_file(path: pathlib.Path) -> None:
    if not path.is_file():
        raise InvalidAdapterFileError(f"Adapter file {path} does not exist")


def load_adapters(
    path: pathlib.Path | str,
    adapters: typing.Mapping[str, LoRAAdapter],
    prefix: str | None = None,
    device: torch.device | str | None = None,
) -> None:
    path = pathlib.Path(path)
    _check_adapter_file(path)
    try:
        tensors = safetensors.torch.load_file(path, device="cpu" if device is None else str(device))
    except (OSError, safetensors.SafetensorError) as e:
        raise InvalidAdapterFileError(f"Cannot read adapter file {path}: {e}") from e
    inject_tensors(tensors, adapters, prefix)
    logger.info(f"Loaded {len(adapters)} LoRA adapters from {path}")


def read_adapter_metadata(path: pathlib.Path | str) -> dict[str, typing.Any]:
    path = pathlib.Path(path)
    _check_adapter_file(path)
    try:
        with safetensors.safe_open(path, framework="pt") as f:
            metadata = f.metadata()
    except (OSError, safetensors.SafetensorError) as e:
        raise InvalidAdapterFileError(f"Cannot read adapter file {path}: {e}") from e
    return import_safetensors_metadata(metadata or {})

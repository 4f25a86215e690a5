import collections
import logging
import pathlib
import pickle
import re
import typing

import safetensors
import safetensors.torch
import torch

import fast_lora
from fast_lora.config import Configurable
from fast_lora.engine.checkpoint.peft.config import (
    PEFT_WEIGHT_FILE_NAMES,
    PeftAdapterConfig,
    PeftConversionConfig,
    PeftKeyNaming,
)
from fast_lora.engine.checkpoint.peft.roles import LayerRole
from fast_lora.engine.checkpoint.state_dict import export_safetensors_metadata
from fast_lora.errors import InvalidAdapterFileError, MissingKeyError, ShapeMismatchError, UnknownLayerShapeError
from fast_lora.utils import Assert, format_number

logger = logging.getLogger(__name__)

# `{path}.lora_[embedding_]{A,B}[.{adapter_name}][.weight]`
_PEFT_KEY_PATTERN = re.compile(
    r"^(?P<path>.+)\.lora_(?P<embedding>embedding_)?(?P<factor>[AB])(?:\.(?!weight$)(?P<adapter>[^.]+))?(?:\.weight)?$"
)


class WeightConverter:
    """
    Convert a pair of PEFT LoRA factors to the `(lora_A, lora_B)` layout of `LowRankDelta`:
    `lora_A` as `(rank, *input_shape)` and `lora_B` as `(output_dim, rank)`.
    """

    def __init__(self, fast_lora_name: tuple[str, str], export_name: tuple[str, str]):
        self.fast_lora_name = fast_lora_name
        self.export_name = export_name

    def import_weight(self, weight: tuple[torch.Tensor, torch.Tensor]) -> tuple[torch.Tensor, torch.Tensor]:
        return weight


class TransposeWeightConverter(WeightConverter):
    """
    Both factors stored transposed, i.e. `lora_A` as `(input_dim, rank)` and `lora_B` as `(rank, output_dim)`.
    """

    def import_weight(self, weight: tuple[torch.Tensor, torch.Tensor]) -> tuple[torch.Tensor, torch.Tensor]:
        lora_a, lora_b = weight
        return lora_a.t().contiguous(), lora_b.t().contiguous()


class ConvWeightConverter(WeightConverter):
    """
    Convolution factors: `lora_A` is already a `(rank, in_channels, *kernel_size)` kernel,
    and `lora_B` is a 1x1 kernel `(out_channels, rank, 1, ...)` to squeeze.
    """

    def import_weight(self, weight: tuple[torch.Tensor, torch.Tensor]) -> tuple[torch.Tensor, torch.Tensor]:
        lora_a, lora_b = weight
        return lora_a, lora_b.reshape(lora_b.shape[:2])


class _PeftPair(typing.NamedTuple):
    path: str
    key_a: str
    key_b: str
    embedding: bool


class PeftConverter(Configurable[PeftConversionConfig]):
    """
    Convert PEFT LoRA adapters to the layout of `fast_lora` adapter files.
    """

    config_class: typing.ClassVar[type[PeftConversionConfig]] = PeftConversionConfig

    def classify(self, path: str) -> LayerRole:
        return self._config.roles.classify(path)

    def get_prefix(self, role: LayerRole) -> str:
        if self._config.typed:
            return self._config.roles.get_prefix(role, self._config.model_tag)
        return self._config.prefix

    def convert_tensors(
        self, tensors: typing.Mapping[str, torch.Tensor], adapter_config: PeftAdapterConfig | None = None
    ) -> dict[str, torch.Tensor]:
        pairs = self._find_pairs(tensors)
        converted_by_prefix: dict[str, dict[str, tuple[torch.Tensor, torch.Tensor]]] = collections.defaultdict(dict)
        roles = collections.Counter()
        for pair in pairs:
            # Embedding factors have their own names in PEFT, whatever the module is called.
            role = LayerRole.embedding if pair.embedding else self.classify(pair.path)
            roles[role] += 1
            weight_converter = self._get_weight_converter(pair, tensors, adapter_config)
            lora_a, lora_b = weight_converter.import_weight((tensors[pair.key_a], tensors[pair.key_b]))
            Assert.eq(lora_a.size(0), lora_b.size(1))
            prefix = self.get_prefix(role)
            if pair.path in converted_by_prefix[prefix]:
                raise InvalidAdapterFileError(
                    f"More than one LoRA adapter for module `{pair.path}`, a file should hold a single adapter."
                )
            converted_by_prefix[prefix][pair.path] = (lora_a, lora_b)
            logger.debug(
                f"{pair.path} -> {prefix} ({role.value}):"
                f" lora_A {tuple(lora_a.shape)}, lora_B {tuple(lora_b.shape)}"
                f" ({type(weight_converter).__name__})"
            )

        if self._config.add_dummy_embeddings and roles[LayerRole.embedding] == 0:
            self._add_dummy_embeddings(converted_by_prefix, adapter_config)

        out_tensors = {}
        for prefix, converted in converted_by_prefix.items():
            for index, path in enumerate(sorted(converted)):
                name_a, name_b = self._get_names(prefix, path, index)
                Assert.not_incl(name_a, out_tensors)
                lora_a, lora_b = converted[path]
                out_tensors[name_a] = self._prepare_tensor(lora_a)
                out_tensors[name_b] = self._prepare_tensor(lora_b)

        logger.info(
            f"Converted {len(pairs)} LoRA layers"
            f" ({', '.join(f'{count} {role.value}' for role, count in sorted(roles.items()))}),"
            f" {format_number(sum(tensor.numel() for tensor in out_tensors.values()))} parameters"
        )
        return out_tensors

    def _find_pairs(self, tensors: typing.Mapping[str, torch.Tensor]) -> list[_PeftPair]:
        factors: dict[tuple[str, str | None], dict[str, str]] = collections.defaultdict(dict)
        embedding = {}
        for key in tensors:
            match = _PEFT_KEY_PATTERN.match(key)
            if match is None:
                logger.warning(f"Skipping `{key}`, not a LoRA factor")
                continue
            path = match.group("path")
            if self._config.strip_prefix is not None and path.startswith(self._config.strip_prefix):
                path = path[len(self._config.strip_prefix) :]
            factors[(path, match.group("adapter"))][match.group("factor")] = key
            embedding[(path, match.group("adapter"))] = match.group("embedding") is not None

        pairs = []
        for (path, adapter_name), keys in sorted(factors.items(), key=lambda item: (item[0][0], item[0][1] or "")):
            for factor, partner in (("A", "B"), ("B", "A")):
                if partner not in keys:
                    raise MissingKeyError(f"Missing `lora_{partner}` factor for `{keys[factor]}`")
            pairs.append(_PeftPair(path, keys["A"], keys["B"], embedding[(path, adapter_name)]))
        return pairs

    def _get_weight_converter(
        self,
        pair: _PeftPair,
        tensors: typing.Mapping[str, torch.Tensor],
        adapter_config: PeftAdapterConfig | None,
    ) -> WeightConverter:
        lora_a, lora_b = tensors[pair.key_a], tensors[pair.key_b]
        names = (f"{pair.path}.lora_A", f"{pair.path}.lora_B")
        export_names = (pair.key_a, pair.key_b)
        if lora_a.ndim in (3, 4) and lora_b.ndim == lora_a.ndim:
            if lora_a.size(0) != lora_b.size(1) or any(size != 1 for size in lora_b.shape[2:]):
                raise ShapeMismatchError(
                    f"Invalid convolution factors for `{pair.path}`:"
                    f" lora_A {tuple(lora_a.shape)}, lora_B {tuple(lora_b.shape)}"
                )
            return ConvWeightConverter(names, export_names)
        elif lora_a.ndim == 2 and lora_b.ndim == 2:
            standard = lora_a.size(0) == lora_b.size(1)
            transposed = lora_a.size(1) == lora_b.size(0)
            if standard and transposed and adapter_config is not None:
                # Both layouts fit, the transposed one needs the configured rank on its side only.
                transposed = lora_a.size(1) == adapter_config.r and lora_a.size(0) != adapter_config.r
                standard = not transposed
            if standard:
                return WeightConverter(names, export_names)
            elif transposed:
                return TransposeWeightConverter(names, export_names)
            raise ShapeMismatchError(
                f"Incompatible LoRA factors for `{pair.path}`:"
                f" lora_A {tuple(lora_a.shape)}, lora_B {tuple(lora_b.shape)}"
            )
        raise UnknownLayerShapeError(
            f"Unsupported LoRA factor shapes for `{pair.path}`:"
            f" lora_A {tuple(lora_a.shape)}, lora_B {tuple(lora_b.shape)}"
        )

    def _add_dummy_embeddings(
        self,
        converted_by_prefix: dict[str, dict[str, tuple[torch.Tensor, torch.Tensor]]],
        adapter_config: PeftAdapterConfig | None,
    ) -> None:
        rank = self._config.dummy_rank if adapter_config is None else adapter_config.r
        factors = [lora_a for converted in converted_by_prefix.values() for lora_a, _ in converted.values()]
        dtype = factors[0].dtype if factors else torch.float32
        converted = converted_by_prefix[self.get_prefix(LayerRole.embedding)]
        if self._config.dummy_embedding_path in converted:
            raise InvalidAdapterFileError(
                f"Cannot add dummy embedding factors, `{self._config.dummy_embedding_path}` already has an adapter."
            )
        converted[self._config.dummy_embedding_path] = (
            torch.zeros(rank, self._config.dummy_vocab_size, dtype=dtype, device=self._config.device),
            torch.zeros(self._config.dummy_hidden_size, rank, dtype=dtype, device=self._config.device),
        )
        logger.info(
            f"Added dummy embedding factors: rank={rank},"
            f" vocab_size={self._config.dummy_vocab_size}, hidden_size={self._config.dummy_hidden_size}"
        )

    def _get_names(self, prefix: str, path: str, index: int) -> tuple[str, str]:
        if self._config.naming == PeftKeyNaming.indexed:
            return f"{prefix}.a{index}.weight", f"{prefix}.b{index}.weight"
        return f"{prefix}.{path}.lora_A", f"{prefix}.{path}.lora_B"

    def _prepare_tensor(self, tensor: torch.Tensor) -> torch.Tensor:
        if self._config.data_type is not None:
            tensor = tensor.to(self._config.data_type.torch)
        return tensor.to(self._config.device).contiguous()

    def load_tensors(self, path: pathlib.Path | str) -> dict[str, torch.Tensor]:
        path = pathlib.Path(path)
        if not path.is_file():
            raise InvalidAdapterFileError(f"Adapter file {path} does not exist")
        try:
            if path.suffix == ".bin":
                tensors = torch.load(path, map_location=self._config.device, weights_only=True)
            else:
                tensors = safetensors.torch.load_file(path, device=self._config.device)
        except (OSError, EOFError, RuntimeError, pickle.UnpicklingError, safetensors.SafetensorError) as e:
            raise InvalidAdapterFileError(f"Cannot read adapter file {path}: {e}") from e
        if not isinstance(tensors, dict) or not all(isinstance(tensor, torch.Tensor) for tensor in tensors.values()):
            raise InvalidAdapterFileError(f"Adapter file {path} doesn't hold a flat mapping of tensors")
        return tensors

    def convert_file(
        self,
        peft_path: pathlib.Path | str,
        output_path: pathlib.Path | str,
        adapter_config: PeftAdapterConfig | None = None,
    ) -> dict[str, torch.Tensor]:
        output_path = pathlib.Path(output_path)
        tensors = self.convert_tensors(self.load_tensors(peft_path), adapter_config)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        safetensors.torch.save_file(tensors, output_path, metadata=self._get_metadata(adapter_config))
        logger.info(f"Saved {len(tensors)} tensors to {output_path}")
        return tensors

    def convert_directory(
        self, peft_directory: pathlib.Path | str, output_path: pathlib.Path | str
    ) -> dict[str, torch.Tensor]:
        peft_directory = pathlib.Path(peft_directory)
        if not peft_directory.is_dir():
            raise InvalidAdapterFileError(f"Adapter directory {peft_directory} does not exist")
        for file_name in PEFT_WEIGHT_FILE_NAMES:
            if (peft_directory / file_name).is_file():
                weight_path = peft_directory / file_name
                break
        else:
            raise InvalidAdapterFileError(
                f"No adapter weights in {peft_directory}, expected one of {', '.join(PEFT_WEIGHT_FILE_NAMES)}"
            )
        adapter_config = PeftAdapterConfig.from_directory(peft_directory)
        if adapter_config is not None:
            adapter_config.to_logs(title="PEFT adapter config")
        return self.convert_file(weight_path, output_path, adapter_config)

    def _get_metadata(self, adapter_config: PeftAdapterConfig | None) -> dict[str, str]:
        metadata = {
            "format": "pt",
            "fast_lora_version": fast_lora.__version__,
            "source_format": "peft",
            "naming": self._config.naming.value,
            "typed": self._config.typed,
        }
        if self._config.typed:
            metadata["model_tag"] = self._config.model_tag
        else:
            metadata["prefix"] = self._config.prefix
        if adapter_config is not None:
            metadata.update(
                rank=adapter_config.r,
                alpha=adapter_config.lora_alpha,
                target_modules=adapter_config.target_modules,
                base_model_name_or_path=adapter_config.base_model_name_or_path,
            )
        return export_safetensors_metadata(metadata)


def convert_peft_to_lora(
    peft_path: pathlib.Path | str, output_path: pathlib.Path | str, prefix: str, device: str = "cpu"
) -> dict[str, torch.Tensor]:
    """
    Convert a PEFT adapter file, with keys `{prefix}.{module_path}.lora_A` and `{prefix}.{module_path}.lora_B`.
    """
    return PeftConverter(PeftConversionConfig(prefix=prefix, device=device)).convert_file(peft_path, output_path)


def convert_peft_dir_to_lora(
    peft_directory: pathlib.Path | str, output_path: pathlib.Path | str, prefix: str, device: str = "cpu"
) -> dict[str, torch.Tensor]:
    return PeftConverter(PeftConversionConfig(prefix=prefix, device=device)).convert_directory(
        peft_directory, output_path
    )


def convert_peft_to_lora_typed(
    peft_path: pathlib.Path | str,
    output_path: pathlib.Path | str,
    device: str = "cpu",
    add_dummy_embeddings: bool = False,
    model_tag: str = "llama",
) -> dict[str, torch.Tensor]:
    """
    Convert a PEFT adapter file, prefixing each key with the role of its layer,
    ex. `lora_llama_csa.{module_path}.lora_A` for an attention projection.
    """
    return PeftConverter(
        PeftConversionConfig(typed=True, model_tag=model_tag, add_dummy_embeddings=add_dummy_embeddings, device=device)
    ).convert_file(peft_path, output_path)


def convert_peft_dir_to_lora_typed(
    peft_directory: pathlib.Path | str,
    output_path: pathlib.Path | str,
    device: str = "cpu",
    add_dummy_embeddings: bool = False,
    model_tag: str = "llama",
) -> dict[str, torch.Tensor]:
    return PeftConverter(
        PeftConversionConfig(typed=True, model_tag=model_tag, add_dummy_embeddings=add_dummy_embeddings, device=device)
    ).convert_directory(peft_directory, output_path)

import enum
import typing

from fast_lora.utils import Assert

if typing.TYPE_CHECKING:
    import torch


class DataType(str, enum.Enum):
    """
    An enum to represent data types independently of third party libraries,
    so they can be set from configuration files and allow for lazy imports.
    """

    float64 = "float64"
    float32 = "float32"
    float16 = "float16"
    bfloat16 = "bfloat16"

    @classmethod
    def _missing_(cls, dtype: str) -> "DataType":
        # Handle alternate names and prefixes.
        Assert.custom(isinstance, dtype, str)
        dtype_split = dtype.rsplit(".", 1)
        if len(dtype_split) == 2:
            prefix, dtype = dtype_split
            Assert.incl(prefix, _KNOWN_DATA_TYPE_PREFIXES)
            return DataType(dtype)
        if dtype in _DTYPE_ALT_NAME_MAP_INV:
            return _DTYPE_ALT_NAME_MAP_INV[dtype]
        return None

    @classmethod
    def from_torch(cls, dtype: "torch.dtype") -> "DataType":
        if not _TORCH_DTYPE_MAP_INV:
            _set_torch_dtype_map()
        return _TORCH_DTYPE_MAP_INV[dtype]

    @property
    def torch(self) -> "torch.dtype":
        if not _TORCH_DTYPE_MAP:
            _set_torch_dtype_map()
        return _TORCH_DTYPE_MAP[self]


_KNOWN_DATA_TYPE_PREFIXES = {"DataType", "torch"}

_DTYPE_ALT_NAME_MAP_INV = {
    "fp64": DataType.float64,
    "fp32": DataType.float32,
    "fp16": DataType.float16,
    "bf16": DataType.bfloat16,
}

_TORCH_DTYPE_MAP: dict[DataType, "torch.dtype"] = {}
_TORCH_DTYPE_MAP_INV: dict["torch.dtype", DataType] = {}


def _set_torch_dtype_map():
    import torch

    global _TORCH_DTYPE_MAP, _TORCH_DTYPE_MAP_INV

    _TORCH_DTYPE_MAP = {
        DataType.float64: torch.float64,
        DataType.float32: torch.float32,
        DataType.float16: torch.float16,
        DataType.bfloat16: torch.bfloat16,
    }
    _TORCH_DTYPE_MAP_INV = {y: x for x, y in _TORCH_DTYPE_MAP.items()}

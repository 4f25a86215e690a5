import enum
import logging
import math

import torch

from fast_lora.engine.config_utils.initialization import init_zeros_
from fast_lora.errors import ShapeMismatchError
from fast_lora.layers.lora.config import LoRAConfig

logger = logging.getLogger(__name__)


class ForwardMode(str, enum.Enum):
    """
    Dropout is only active in training mode.
    """

    train = "train"
    eval = "eval"

    @classmethod
    def from_training(cls, training: bool) -> "ForwardMode":
        return cls.train if training else cls.eval


class LowRankDelta(torch.nn.Module):
    """
    The pair of trainable low-rank factors representing a weight update `scaling * B @ A`.

    `lora_A` has shape `(rank, *input_shape)`, where `input_shape` is the input dimension of a linear layer,
    the vocabulary of an embedding, or `(in_channels, *kernel_size)` for a convolution.
    `lora_B` has shape `(output_dim, rank)` and starts at zero, so a new delta is a no-op.
    """

    def __init__(
        self,
        config: LoRAConfig,
        input_shape: tuple[int, ...],
        output_dim: int,
        *,
        device: torch.device | str | None = None,
        dtype: torch.dtype | None = None,
    ):
        super().__init__()
        self._config = config
        self._input_shape = tuple(input_shape)
        self._output_dim = output_dim
        self.lora_A = torch.nn.Parameter(torch.empty(config.rank, *self._input_shape, device=device, dtype=dtype))
        self.lora_B = torch.nn.Parameter(torch.empty(output_dim, config.rank, device=device, dtype=dtype))
        self.reset_parameters()

    @torch.no_grad()
    def reset_parameters(self, generator: torch.Generator | None = None) -> None:
        self._config.initialization.get_initializer(self._config.rank)(self.lora_A, generator)
        init_zeros_(self.lora_B, generator)

    @property
    def config(self) -> LoRAConfig:
        return self._config

    @property
    def rank(self) -> int:
        return self._config.rank

    @property
    def alpha(self) -> float:
        return self._config.alpha

    @property
    def scaling(self) -> float:
        return self._config.scaling

    @property
    def dropout(self) -> float:
        return self._config.dropout

    @property
    def input_shape(self) -> tuple[int, ...]:
        return self._input_shape

    @property
    def input_dim(self) -> int:
        return math.prod(self._input_shape)

    @property
    def output_dim(self) -> int:
        return self._output_dim

    def apply_dropout(self, input_: torch.Tensor, mode: ForwardMode) -> torch.Tensor:
        if self.dropout > 0.0 and mode == ForwardMode.train:
            return torch.nn.functional.dropout(input_, self.dropout, training=True)
        return input_

    def compute_delta(self, input_: torch.Tensor, mode: ForwardMode = ForwardMode.eval) -> torch.Tensor:
        """
        `scaling * dropout(input) @ A.T @ B.T`, applied on the last dimension of the input.
        """
        if input_.size(-1) != self.input_dim:
            raise ShapeMismatchError(
                f"Input dimension {input_.size(-1)} doesn't match the LoRA input dimension {self.input_dim}"
                f" (input shape {tuple(input_.shape)})"
            )
        input_ = self.apply_dropout(input_, mode)
        lora_a = self.lora_A.flatten(1).to(input_.dtype)
        lora_b = self.lora_B.to(input_.dtype)
        return torch.nn.functional.linear(torch.nn.functional.linear(input_, lora_a), lora_b) * self.scaling

    def as_weight_delta(self, dtype: torch.dtype | None = torch.float32) -> torch.Tensor:
        """
        `scaling * B @ A`, with shape `(output_dim, *input_shape)`.
        Computed in float32 by default.
        """
        lora_a = self.lora_A.flatten(1)
        lora_b = self.lora_B
        if dtype is not None:
            lora_a, lora_b = lora_a.to(dtype), lora_b.to(dtype)
        return (lora_b @ lora_a).view(self._output_dim, *self._input_shape) * self.scaling

    def extra_repr(self) -> str:
        return (
            f"input_shape={self._input_shape}, output_dim={self._output_dim}, rank={self.rank},"
            f" alpha={self.alpha}, dropout={self.dropout}"
        )

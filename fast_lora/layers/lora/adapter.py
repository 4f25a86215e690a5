import abc
import enum
import logging
import typing

import torch

from fast_lora.errors import (
    AlreadyMergedError,
    MergeIncompatibleError,
    NotMergedError,
    ShapeMismatchError,
    UnsupportedLayerKindError,
)
from fast_lora.layers.lora.config import LayerKind, LoRAConfig
from fast_lora.layers.lora.delta import ForwardMode, LowRankDelta
from fast_lora.utils import Registry, get_type_name

logger = logging.getLogger(__name__)

LayerType = typing.TypeVar("LayerType", bound=torch.nn.Module)


class MergeState(str, enum.Enum):
    unmerged = "unmerged"
    merged = "merged"


class LoRAAdapter(torch.nn.Module, abc.ABC, typing.Generic[LayerType]):
    """
    A frozen layer wrapped with a trainable low-rank delta.

    The delta is either applied separately in the forward pass (`unmerged`, the initial state),
    or folded into the frozen weight (`merged`), in which case only the base layer is run.
    Merging and unmerging mutate the base weight in place, and must not run concurrently with a forward pass.
    """

    kind: typing.ClassVar[LayerKind]
    base_layer_class: typing.ClassVar[type[torch.nn.Module]]

    def __init__(self, base_layer: LayerType, config: LoRAConfig):
        super().__init__()
        if not isinstance(base_layer, self.base_layer_class):
            raise UnsupportedLayerKindError(
                f"{type(self).__name__} can't wrap a layer of type {get_type_name(type(base_layer))}"
            )
        self._check_base_layer(base_layer)
        self.base_layer = base_layer
        self._config = config
        self._state = MergeState.unmerged

        base_layer.weight.requires_grad_(False)
        if getattr(base_layer, "bias", None) is not None:
            base_layer.bias.requires_grad_(config.train_bias)

        input_shape, output_dim = self._get_delta_shape(base_layer)
        self.delta = LowRankDelta(
            config, input_shape, output_dim, device=base_layer.weight.device, dtype=base_layer.weight.dtype
        )

    def _check_base_layer(self, base_layer: LayerType) -> None:
        pass

    @abc.abstractmethod
    def _get_delta_shape(self, base_layer: LayerType) -> tuple[tuple[int, ...], int]:
        """
        The input shape (`lora_A.shape[1:]`) and output dimension (`lora_B.shape[0]`) of the delta.
        """

    @abc.abstractmethod
    def _check_input(self, input_: torch.Tensor) -> None:
        pass

    @abc.abstractmethod
    def _delta_forward(self, input_: torch.Tensor, mode: ForwardMode) -> torch.Tensor:
        pass

    @abc.abstractmethod
    def weight_delta(self) -> torch.Tensor:
        """
        The delta in the layout of the base layer weight, in float32.
        """

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
    def state(self) -> MergeState:
        return self._state

    @property
    def merged(self) -> bool:
        return self._state == MergeState.merged

    def forward(self, input_: torch.Tensor, mode: ForwardMode | None = None) -> torch.Tensor:
        if mode is None:
            mode = ForwardMode.from_training(self.training)
        self._check_input(input_)
        if self.merged:
            return self.base_layer(input_)
        return self.base_layer(input_) + self._delta_forward(input_, mode)

    @torch.no_grad()
    def merge(self) -> None:
        if self.dropout > 0.0:
            raise MergeIncompatibleError(
                f"Cannot merge a LoRA adapter with dropout ({self.dropout}), set the dropout to zero first."
            )
        if self.merged:
            raise AlreadyMergedError(f"The LoRA delta is already merged into the {self.kind.value} layer.")
        self._update_weight(self.weight_delta())
        self._state = MergeState.merged
        logger.debug(f"Merged LoRA delta into {self.kind.value} layer (rank={self.rank}, scaling={self.scaling})")

    @torch.no_grad()
    def unmerge(self) -> None:
        if not self.merged:
            raise NotMergedError(f"The LoRA delta is not merged into the {self.kind.value} layer.")
        self._update_weight(-self.weight_delta())
        self._state = MergeState.unmerged
        logger.debug(f"Unmerged LoRA delta from {self.kind.value} layer (rank={self.rank}, scaling={self.scaling})")

    def _update_weight(self, delta: torch.Tensor) -> None:
        weight = self.base_layer.weight
        # The sum is done in float32 so merging and unmerging low-precision weights round only once.
        weight.copy_((weight.float() + delta.to(weight.device)).to(weight.dtype))

    def trainable_tensors(self) -> dict[str, torch.nn.Parameter]:
        """
        The trainable parameters of the adapter, by their name in saved adapter files.
        """
        tensors = {"lora_A": self.delta.lora_A, "lora_B": self.delta.lora_B}
        if self._config.train_bias and getattr(self.base_layer, "bias", None) is not None:
            tensors["bias"] = self.base_layer.bias
        return tensors

    def extract(self) -> dict[str, torch.Tensor]:
        return {name: tensor.detach().clone() for name, tensor in self.trainable_tensors().items()}

    def num_trainable_parameters(self) -> int:
        return sum(tensor.numel() for tensor in self.trainable_tensors().values())

    def extra_repr(self) -> str:
        return f"kind={self.kind.value}, state={self._state.value}"


class LoRALinear(LoRAAdapter[torch.nn.Linear]):
    kind: typing.ClassVar[LayerKind] = LayerKind.linear
    base_layer_class: typing.ClassVar[type[torch.nn.Module]] = torch.nn.Linear

    def _get_delta_shape(self, base_layer: torch.nn.Linear) -> tuple[tuple[int, ...], int]:
        return (base_layer.in_features,), base_layer.out_features

    def _check_input(self, input_: torch.Tensor) -> None:
        if input_.size(-1) != self.base_layer.in_features:
            raise ShapeMismatchError(
                f"Input dimension {input_.size(-1)} doesn't match the layer input dimension"
                f" {self.base_layer.in_features} (input shape {tuple(input_.shape)})"
            )

    def _delta_forward(self, input_: torch.Tensor, mode: ForwardMode) -> torch.Tensor:
        return self.delta.compute_delta(input_, mode)

    def weight_delta(self) -> torch.Tensor:
        return self.delta.as_weight_delta()


class LoRAConvNd(LoRAAdapter[torch.nn.modules.conv._ConvNd]):
    """
    The delta path is a convolution with `lora_A` as kernel (`rank` output channels), using the geometry
    of the base layer, followed by a 1x1 convolution with `lora_B`.
    Only the channel projections are adapted, the geometry of the base layer must stay unchanged.
    """

    _num_spatial_dims: typing.ClassVar[int]

    def __init__(self, base_layer: torch.nn.modules.conv._ConvNd, config: LoRAConfig):
        super().__init__(base_layer, config)
        self._geometry = self._get_geometry(base_layer)
        self._check_geometry()

    @staticmethod
    def _get_geometry(base_layer: torch.nn.modules.conv._ConvNd) -> dict[str, typing.Any]:
        return {
            "kernel_size": tuple(base_layer.kernel_size),
            "stride": tuple(base_layer.stride),
            "padding": base_layer.padding if isinstance(base_layer.padding, str) else tuple(base_layer.padding),
            "dilation": tuple(base_layer.dilation),
            "groups": base_layer.groups,
        }

    def _check_base_layer(self, base_layer: torch.nn.modules.conv._ConvNd) -> None:
        if base_layer.groups != 1:
            raise UnsupportedLayerKindError(
                f"LoRA is not supported for grouped convolutions (groups={base_layer.groups})"
            )
        if base_layer.padding_mode != "zeros":
            raise UnsupportedLayerKindError(
                f"LoRA is not supported for convolutions with padding mode `{base_layer.padding_mode}`"
            )

    def _check_geometry(self) -> None:
        geometry = self._get_geometry(self.base_layer)
        if geometry != self._geometry:
            raise ShapeMismatchError(f"Convolution geometry changed since wrapping: {geometry} != {self._geometry}")
        if tuple(self.delta.lora_A.shape[2:]) != self._geometry["kernel_size"]:
            raise ShapeMismatchError(
                f"LoRA kernel size {tuple(self.delta.lora_A.shape[2:])}"
                f" doesn't match the layer kernel size {self._geometry['kernel_size']}"
            )

    def _get_delta_shape(self, base_layer: torch.nn.modules.conv._ConvNd) -> tuple[tuple[int, ...], int]:
        return (base_layer.in_channels, *base_layer.kernel_size), base_layer.out_channels

    def _check_input(self, input_: torch.Tensor) -> None:
        if input_.ndim not in (self._num_spatial_dims + 1, self._num_spatial_dims + 2):
            raise ShapeMismatchError(
                f"Expected a {self._num_spatial_dims + 1}d or {self._num_spatial_dims + 2}d input,"
                f" got shape {tuple(input_.shape)}"
            )
        if input_.size(-self._num_spatial_dims - 1) != self.base_layer.in_channels:
            raise ShapeMismatchError(
                f"Input channels {input_.size(-self._num_spatial_dims - 1)} don't match the layer input channels"
                f" {self.base_layer.in_channels} (input shape {tuple(input_.shape)})"
            )

    @abc.abstractmethod
    def _convolution(self, input_: torch.Tensor, weight: torch.Tensor, **kwargs) -> torch.Tensor:
        pass

    def _delta_forward(self, input_: torch.Tensor, mode: ForwardMode) -> torch.Tensor:
        self._check_geometry()
        input_ = self.delta.apply_dropout(input_, mode)
        hidden = self._convolution(
            input_,
            self.delta.lora_A.to(input_.dtype),
            stride=self._geometry["stride"],
            padding=self._geometry["padding"],
            dilation=self._geometry["dilation"],
        )
        lora_b = self.delta.lora_B.to(input_.dtype).view(*self.delta.lora_B.shape, *[1] * self._num_spatial_dims)
        return self._convolution(hidden, lora_b) * self.scaling

    def weight_delta(self) -> torch.Tensor:
        self._check_geometry()
        return self.delta.as_weight_delta()


class LoRAConv1d(LoRAConvNd):
    kind: typing.ClassVar[LayerKind] = LayerKind.conv1d
    base_layer_class: typing.ClassVar[type[torch.nn.Module]] = torch.nn.Conv1d
    _num_spatial_dims: typing.ClassVar[int] = 1

    def _convolution(self, input_: torch.Tensor, weight: torch.Tensor, **kwargs) -> torch.Tensor:
        return torch.nn.functional.conv1d(input_, weight, **kwargs)


class LoRAConv2d(LoRAConvNd):
    kind: typing.ClassVar[LayerKind] = LayerKind.conv2d
    base_layer_class: typing.ClassVar[type[torch.nn.Module]] = torch.nn.Conv2d
    _num_spatial_dims: typing.ClassVar[int] = 2

    def _convolution(self, input_: torch.Tensor, weight: torch.Tensor, **kwargs) -> torch.Tensor:
        return torch.nn.functional.conv2d(input_, weight, **kwargs)


class LoRAEmbedding(LoRAAdapter[torch.nn.Embedding]):
    """
    An embedding is a lookup rather than a product, so the delta is a lookup of the input indices in `A.T`
    (one rank-sized row per vocabulary entry) projected with `B` and added to the output embeddings.
    """

    kind: typing.ClassVar[LayerKind] = LayerKind.embedding
    base_layer_class: typing.ClassVar[type[torch.nn.Module]] = torch.nn.Embedding

    def _get_delta_shape(self, base_layer: torch.nn.Embedding) -> tuple[tuple[int, ...], int]:
        return (base_layer.num_embeddings,), base_layer.embedding_dim

    def _check_input(self, input_: torch.Tensor) -> None:
        if input_.is_floating_point() or input_.is_complex():
            raise ShapeMismatchError(f"Embedding input must hold integer indices, got {input_.dtype}")

    def _delta_forward(self, input_: torch.Tensor, mode: ForwardMode) -> torch.Tensor:
        # No dropout on indices, and no renormalization of the factor.
        lookup = torch.nn.functional.embedding(
            input_,
            self.delta.lora_A.T,
            padding_idx=self.base_layer.padding_idx,
            scale_grad_by_freq=self.base_layer.scale_grad_by_freq,
            sparse=self.base_layer.sparse,
        )
        return torch.nn.functional.linear(lookup, self.delta.lora_B) * self.scaling

    def weight_delta(self) -> torch.Tensor:
        return self.delta.as_weight_delta().T


ADAPTER_CLASSES: Registry[LayerKind, type[LoRAAdapter]] = Registry(
    "LoRA adapter",
    {
        LayerKind.linear: LoRALinear,
        LayerKind.conv1d: LoRAConv1d,
        LayerKind.conv2d: LoRAConv2d,
        LayerKind.embedding: LoRAEmbedding,
    },
)


def get_adapter_class(kind: LayerKind) -> type[LoRAAdapter]:
    if kind not in ADAPTER_CLASSES:
        raise UnsupportedLayerKindError(f"No LoRA adapter for layer kind `{kind}`")
    return ADAPTER_CLASSES[kind]


def wrap_layer(layer: torch.nn.Module, config: LoRAConfig) -> LoRAAdapter:
    """
    Wrap a layer in the LoRA adapter matching its kind.
    """
    kind = LayerKind.from_module(layer)
    if kind is None:
        raise UnsupportedLayerKindError(f"No LoRA adapter for layers of type {get_type_name(type(layer))}")
    return get_adapter_class(kind)(layer, config)

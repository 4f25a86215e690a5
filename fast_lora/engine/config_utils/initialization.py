import abc
import enum
import math
import typing

if typing.TYPE_CHECKING:
    import torch


class Initializer(abc.ABC):
    @abc.abstractmethod
    def __call__(self, tensor: "torch.Tensor", generator: "torch.Generator | None" = None) -> None:
        pass


class LambdaInitializer(Initializer):
    def __init__(self, init_method: typing.Callable[["torch.Tensor", "torch.Generator | None"], None]) -> None:
        self._init_method = init_method

    def __call__(self, tensor: "torch.Tensor", generator: "torch.Generator | None" = None) -> None:
        return self._init_method(tensor, generator)


def init_fill_(value: float) -> LambdaInitializer:
    def init_(tensor: "torch.Tensor", generator: "torch.Generator | None" = None) -> None:  # noqa
        tensor.fill_(value)

    return LambdaInitializer(init_)


init_zeros_ = init_fill_(0.0)


def init_normal_(mean: float = 0.0, std: float = 1.0) -> LambdaInitializer:
    def init_(tensor: "torch.Tensor", generator: "torch.Generator | None" = None) -> None:  # noqa
        tensor.normal_(mean, std, generator=generator)

    return LambdaInitializer(init_)


def init_kaiming_uniform_(a: float = math.sqrt(5)) -> LambdaInitializer:
    """
    Same bound as `torch.nn.init.kaiming_uniform_` with leaky relu gain,
    i.e. the default initialization of `torch.nn.Linear` weights.
    Fan-in is computed from all the non-leading dimensions so convolution kernels are supported.
    """

    def init_(tensor: "torch.Tensor", generator: "torch.Generator | None" = None) -> None:  # noqa
        fan_in = tensor[0].numel() if tensor.ndim > 1 else tensor.numel()
        gain = math.sqrt(2.0 / (1 + a**2))
        bound = math.sqrt(3.0) * gain / math.sqrt(fan_in)
        tensor.uniform_(-bound, bound, generator=generator)

    return LambdaInitializer(init_)


class LoRAInitialization(str, enum.Enum):
    """
    Initialization of the `lora_A` factor. `lora_B` is always initialized to zero.
    """

    kaiming_uniform = "kaiming_uniform"
    gaussian = "gaussian"

    def get_initializer(self, rank: int) -> Initializer:
        if self == LoRAInitialization.kaiming_uniform:
            return init_kaiming_uniform_()
        elif self == LoRAInitialization.gaussian:
            return init_normal_(std=1 / rank)
        else:
            raise NotImplementedError(self)

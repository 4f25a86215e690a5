"""
Typed failures raised by the LoRA layers, the adapter checkpoint helpers and the PEFT converter.
All of them derive from `LoRAError`, and from the closest builtin exception where one exists,
so callers may catch either.
"""


class LoRAError(Exception):
    pass


class ShapeMismatchError(LoRAError, ValueError):
    """A tensor's dimensions are incompatible with the layer or factor it is applied to."""


class AlreadyMergedError(LoRAError, RuntimeError):
    """The low-rank delta is already folded into the base weight."""


class NotMergedError(LoRAError, RuntimeError):
    """The low-rank delta is not folded into the base weight."""


class MergeIncompatibleError(LoRAError, RuntimeError):
    """A stochastic (dropout) delta can't be folded into fixed weights."""


class UnsupportedLayerKindError(LoRAError, NotImplementedError):
    pass


class MissingKeyError(LoRAError, KeyError):
    def __str__(self) -> str:
        # `KeyError` quotes its argument, which is unreadable for full messages.
        return str(self.args[0]) if self.args else ""


class InvalidAdapterFileError(LoRAError):
    pass


class UnknownLayerShapeError(LoRAError, ValueError):
    pass

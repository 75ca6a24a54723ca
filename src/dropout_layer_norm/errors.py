"""Error types raised by the dispatch and launch layer."""

from __future__ import annotations


class DropoutLayerNormError(Exception):
    """Base class for every error raised by :mod:`dropout_layer_norm`."""


class UnsupportedTypeError(DropoutLayerNormError, TypeError):
    """The dtype has no type tag."""


class UnsupportedCombinationError(DropoutLayerNormError, RuntimeError):
    """No kernel variant is registered for the requested types and hidden size."""


class PreconditionError(DropoutLayerNormError, ValueError):
    """A caller-supplied tensor or scalar violates the operation's contract."""


class ResourceExhaustedError(DropoutLayerNormError, RuntimeError):
    """Device memory could not be allocated for an output or scratch buffer."""


class RegistryFrozenError(DropoutLayerNormError, RuntimeError):
    """Attempt to register a launcher after the registry was frozen."""


__all__ = [
    "DropoutLayerNormError",
    "UnsupportedTypeError",
    "UnsupportedCombinationError",
    "PreconditionError",
    "ResourceExhaustedError",
    "RegistryFrozenError",
]

"""Kernel dispatch and two-phase launch for fused dropout + residual add + norm."""

from .config import RuntimeConfig, get_config, override_config, set_config
from .errors import (
    DropoutLayerNormError,
    PreconditionError,
    RegistryFrozenError,
    ResourceExhaustedError,
    UnsupportedCombinationError,
    UnsupportedTypeError,
)
from .modules import DropoutAddLayerNorm, DropoutAddRMSNorm
from .ops import (
    FwdOutputs,
    dropout_add_layer_norm,
    dropout_add_ln_fwd,
    dropout_add_rms_norm,
    get_fwd_registry,
)

__version__ = "0.1.0"

__all__ = [
    "DropoutAddLayerNorm",
    "DropoutAddRMSNorm",
    "DropoutLayerNormError",
    "FwdOutputs",
    "PreconditionError",
    "RegistryFrozenError",
    "ResourceExhaustedError",
    "RuntimeConfig",
    "UnsupportedCombinationError",
    "UnsupportedTypeError",
    "__version__",
    "dropout_add_layer_norm",
    "dropout_add_ln_fwd",
    "dropout_add_rms_norm",
    "get_config",
    "get_fwd_registry",
    "override_config",
    "set_config",
]

"""Python reference launchers for the fused forward."""

from .reference import (
    KERNEL_TRAITS,
    KernelTraits,
    ReferenceFwdLauncher,
    dropout_add_layer_norm_ref,
    dropout_keep_mask,
    register_reference_launchers,
)

__all__ = [
    "KERNEL_TRAITS",
    "KernelTraits",
    "ReferenceFwdLauncher",
    "dropout_add_layer_norm_ref",
    "dropout_keep_mask",
    "register_reference_launchers",
]

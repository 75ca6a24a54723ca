"""Module namespace for the fused dropout + add + norm layers."""

from .norm import DropoutAddLayerNorm, DropoutAddRMSNorm

__all__ = [
    "DropoutAddLayerNorm",
    "DropoutAddRMSNorm",
]

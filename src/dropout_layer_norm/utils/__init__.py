"""Utility namespace for backend dispatch and dropout RNG state."""

from .dispatch import get_available_backend, has_cuda_kernels, has_python_reference
from .generator import (
    PhiloxState,
    default_generator,
    get_generator_or_default,
    philox_state,
    reset_philox_offset,
)

__all__ = [
    "PhiloxState",
    "default_generator",
    "get_available_backend",
    "get_generator_or_default",
    "has_cuda_kernels",
    "has_python_reference",
    "philox_state",
    "reset_philox_offset",
]

from __future__ import annotations

import importlib
from typing import Callable


CUDA_BINDINGS_MODULE = "dropout_layer_norm.ops.cuda.bindings"
PYTHON_REFERENCE_MODULE = "dropout_layer_norm.ops.python.reference"


def _module_available(name: str) -> bool:
    """Return ``True`` if a module can be imported without raising."""

    try:
        importlib.import_module(name)
        return True
    except ImportError:
        return False


def has_cuda_kernels() -> bool:
    """Return ``True`` when the compiled CUDA launchers can be imported."""

    return _module_available(CUDA_BINDINGS_MODULE)


def has_python_reference() -> bool:
    """Return ``True`` when the Python reference launchers are importable."""

    return _module_available(PYTHON_REFERENCE_MODULE)


def _backend_checks() -> dict[str, Callable[[], bool]]:
    """Return availability predicates for the known backends."""

    return {
        "cuda": has_cuda_kernels,
        "python": has_python_reference,
    }


def get_available_backend(preferred: str | None = None) -> str:
    """Return the best available backend.

    The search defaults to the compiled CUDA launchers, then the Python
    reference launchers. A caller may supply a ``preferred`` backend; if that
    backend is unavailable the function falls back to the default order.

    Args:
        preferred: Optional backend name to prioritize (``"cuda"`` or
            ``"python"``).

    Returns:
        The name of the first available backend.

    Raises:
        ValueError: If ``preferred`` names an unknown backend.
        RuntimeError: If none of the known backends can be imported.
    """

    checks = _backend_checks()
    order: list[str] = []
    if preferred is not None:
        if preferred not in checks:
            raise ValueError(f"unknown backend preference: {preferred}")
        order.append(preferred)
    order.extend(name for name in ("cuda", "python") if name not in order)

    for backend in order:
        if checks[backend]():
            return backend

    raise RuntimeError("no available backend detected")

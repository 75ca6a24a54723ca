from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Iterator


ENV_DEVICES = "DROPOUT_LAYER_NORM_DEVICES"
ENV_BACKEND = "DROPOUT_LAYER_NORM_BACKEND"
ENV_SM_COUNT = "DROPOUT_LAYER_NORM_SM_COUNT"


@dataclass(frozen=True)
class RuntimeConfig:
    """Process-wide settings for validation, dispatch and launch sizing.

    Attributes:
        accelerator_device_types: Device types accepted as accelerators by the
            validator. Adding ``"cpu"`` lets the python reference backend run
            on host tensors.
        backend: Preferred backend name (``"cuda"`` or ``"python"``); ``None``
            picks the best available one.
        fallback_multiprocessor_count: Multiprocessor count used when sizing
            launches on devices that report no properties.
        fallback_max_threads_per_multiprocessor: Thread capacity used in the
            same situation.
    """

    accelerator_device_types: tuple[str, ...] = ("cuda",)
    backend: str | None = None
    fallback_multiprocessor_count: int = 1
    fallback_max_threads_per_multiprocessor: int = 2048

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        """Build a config from ``DROPOUT_LAYER_NORM_*`` environment variables."""

        config = cls()
        devices = os.environ.get(ENV_DEVICES)
        if devices:
            parsed = tuple(d.strip() for d in devices.split(",") if d.strip())
            config = replace(config, accelerator_device_types=parsed)
        backend = os.environ.get(ENV_BACKEND)
        if backend:
            config = replace(config, backend=backend.strip().lower())
        sm_count = os.environ.get(ENV_SM_COUNT)
        if sm_count:
            value = int(sm_count)
            if value <= 0:
                raise ValueError(f"{ENV_SM_COUNT} must be positive, got {value}")
            config = replace(config, fallback_multiprocessor_count=value)
        return config


_CONFIG: RuntimeConfig | None = None
_CONFIG_LOCK = threading.Lock()


def get_config() -> RuntimeConfig:
    """Return the active config, reading the environment on first use."""

    global _CONFIG
    if _CONFIG is None:
        with _CONFIG_LOCK:
            if _CONFIG is None:
                _CONFIG = RuntimeConfig.from_env()
    return _CONFIG


def set_config(config: RuntimeConfig | None) -> None:
    """Replace the active config; ``None`` re-reads the environment lazily."""

    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = config


@contextmanager
def override_config(**changes) -> Iterator[RuntimeConfig]:
    """Temporarily apply ``changes`` on top of the active config."""

    previous = get_config()
    updated = replace(previous, **changes)
    set_config(updated)
    try:
        yield updated
    finally:
        set_config(previous)


__all__ = [
    "RuntimeConfig",
    "get_config",
    "set_config",
    "override_config",
]

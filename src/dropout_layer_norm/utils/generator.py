"""Counter-based RNG state for dropout masks.

Kernels draw dropout bits from a philox stream addressed by ``(seed, offset)``.
Each launch reserves its range on the generator it was given, so the
generator's own state is the only record of what has been handed out:

* philox generators (CUDA) advance their offset through
  ``get_offset``/``set_offset``, the same counter torch's own random ops use;
* host generators have no counter, so a reservation draws a fresh stream
  seed from the generator and the offset is always 0.

The returned :class:`PhiloxState` is enough to regenerate the same stream.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Optional

import torch


_MASK_63 = (1 << 63) - 1
_GOLDEN_GAMMA = 0x9E3779B97F4A7C15
PHILOX_DEVICE_TYPES = ("cuda",)

_RESERVE_LOCK = threading.Lock()


@dataclass(frozen=True)
class PhiloxState:
    """Replayable RNG position: stream seed plus reserved counter offset."""

    seed: int
    offset: int

    def stream_seed(self) -> int:
        """Fold seed and offset into a single seed for :class:`torch.Generator`."""

        mixed = (self.seed ^ (self.offset * _GOLDEN_GAMMA)) & _MASK_63
        return mixed


def default_generator(device: torch.device) -> torch.Generator:
    """Return torch's default generator for ``device``."""

    if device.type == "cuda":
        index = device.index if device.index is not None else torch.cuda.current_device()
        return torch.cuda.default_generators[index]
    return torch.default_generator


def get_generator_or_default(
    gen: Optional[torch.Generator], device: torch.device
) -> torch.Generator:
    return gen if gen is not None else default_generator(device)


def uses_philox_offset(gen: torch.Generator) -> bool:
    return gen.device.type in PHILOX_DEVICE_TYPES


def philox_state(gen: torch.Generator, increment: int) -> PhiloxState:
    """Reserve ``increment`` counters on ``gen`` and return the starting state.

    The increment is rounded up to a multiple of 4 because each philox call
    yields four 32-bit values. Reservation happens under an exclusive lock so
    concurrent callers get disjoint ranges. Reseeding the generator restarts
    the sequence of reservations.

    Args:
        gen: Generator shared by the callers.
        increment: Number of random values each thread will draw.

    Returns:
        The seed and the first reserved offset.
    """

    if increment < 0:
        raise ValueError(f"increment must be non-negative, got {increment}")
    increment = (increment + 3) // 4 * 4
    with _RESERVE_LOCK:
        if uses_philox_offset(gen):
            offset = gen.get_offset()
            gen.set_offset(offset + increment)
            return PhiloxState(seed=gen.initial_seed(), offset=offset)
        drawn = torch.randint(0, _MASK_63, (1,), generator=gen, dtype=torch.int64)
        return PhiloxState(seed=int(drawn.item()), offset=0)


def reset_philox_offset(gen: torch.Generator) -> None:
    """Rewind ``gen`` to the start of its current seed, e.g. to replay masks."""

    with _RESERVE_LOCK:
        gen.manual_seed(gen.initial_seed())


__all__ = [
    "PHILOX_DEVICE_TYPES",
    "PhiloxState",
    "default_generator",
    "get_generator_or_default",
    "philox_state",
    "reset_philox_offset",
    "uses_philox_offset",
]

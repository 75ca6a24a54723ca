"""Type tags, launch keys and the forward kernel registry.

Every compiled kernel variant is specialised for five element types
(weight, input, residual, output, compute) and a padded hidden size. The
combination is packed into one integer key so a variant can be picked with
a single dictionary lookup.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterator, Optional, Protocol, TYPE_CHECKING

import torch

from ..errors import (
    RegistryFrozenError,
    UnsupportedCombinationError,
    UnsupportedTypeError,
)

if TYPE_CHECKING:
    from .launch import LaunchParams, LaunchPlan


logger = logging.getLogger(__name__)


TYPE_IDS: dict[torch.dtype, int] = {
    torch.float32: 0,
    torch.float16: 1,
    torch.bfloat16: 2,
}

TYPE_TAG_BITS = 2
NUM_TYPE_FIELDS = 5
HIDDEN_SIZE_SHIFT = 32
MAX_KEYED_HIDDEN_SIZE = (1 << (64 - HIDDEN_SIZE_SHIFT)) - 1

assert max(TYPE_IDS.values()) < (1 << TYPE_TAG_BITS)
assert len(set(TYPE_IDS.values())) == len(TYPE_IDS)
assert TYPE_TAG_BITS * NUM_TYPE_FIELDS <= HIDDEN_SIZE_SHIFT

_TYPE_MASK = (1 << TYPE_TAG_BITS) - 1
_DTYPES_BY_ID = {tag: dtype for dtype, tag in TYPE_IDS.items()}

HIDDEN_SIZE_BUCKETS: tuple[int, ...] = (
    256,
    512,
    768,
    1024,
    1280,
    1536,
    2048,
    2560,
    3072,
    4096,
    5120,
    6144,
    7168,
    8192,
)

# (weight, input, residual, output, compute)
SUPPORTED_TYPE_COMBINATIONS: tuple[tuple[torch.dtype, ...], ...] = (
    (torch.float32, torch.float32, torch.float32, torch.float32, torch.float32),
    (torch.float32, torch.float16, torch.float32, torch.float16, torch.float32),
    (torch.float32, torch.float16, torch.float16, torch.float16, torch.float32),
    (torch.float32, torch.bfloat16, torch.float32, torch.bfloat16, torch.float32),
    (torch.float32, torch.bfloat16, torch.bfloat16, torch.bfloat16, torch.float32),
    (torch.float16, torch.float16, torch.float32, torch.float16, torch.float32),
    (torch.float16, torch.float16, torch.float16, torch.float16, torch.float32),
    (torch.bfloat16, torch.bfloat16, torch.float32, torch.bfloat16, torch.float32),
    (torch.bfloat16, torch.bfloat16, torch.bfloat16, torch.bfloat16, torch.float32),
)


def type_id(dtype: torch.dtype) -> int:
    """Return the 2-bit tag for ``dtype``.

    Raises:
        UnsupportedTypeError: If ``dtype`` is not float32, float16 or bfloat16.
    """

    try:
        return TYPE_IDS[dtype]
    except KeyError:
        raise UnsupportedTypeError(f"Type not supported: {dtype}") from None


def round_hidden_size(hidden_size: int) -> int:
    """Round ``hidden_size`` up to the padded size kernels are compiled for.

    Sizes up to 1536 round to a multiple of 256, up to 3072 to a multiple of
    512, and anything larger to a multiple of 1024.
    """

    if hidden_size <= 1536:
        multiple = 256
    elif hidden_size <= 3072:
        multiple = 512
    else:
        multiple = 1024
    return (hidden_size + multiple - 1) // multiple * multiple


def launch_key(
    wtype: torch.dtype,
    itype: torch.dtype,
    rtype: torch.dtype,
    otype: torch.dtype,
    ctype: torch.dtype,
    hidden_size: int,
) -> int:
    """Pack five dtypes and an already rounded hidden size into one key.

    The type tags occupy the low bits in weight/input/residual/output/compute
    order; the hidden size sits above ``HIDDEN_SIZE_SHIFT``.
    """

    if hidden_size < 0 or hidden_size > MAX_KEYED_HIDDEN_SIZE:
        raise ValueError(f"hidden_size {hidden_size} does not fit in a launch key")
    type_key = 0
    for field, dtype in enumerate((wtype, itype, rtype, otype, ctype)):
        type_key |= type_id(dtype) << (field * TYPE_TAG_BITS)
    return type_key | (hidden_size << HIDDEN_SIZE_SHIFT)


def decode_launch_key(key: int) -> tuple[tuple[torch.dtype, ...], int]:
    """Split ``key`` back into its dtypes and hidden size."""

    dtypes = []
    for field in range(NUM_TYPE_FIELDS):
        tag = (key >> (field * TYPE_TAG_BITS)) & _TYPE_MASK
        dtypes.append(_DTYPES_BY_ID.get(tag))
    return tuple(dtypes), key >> HIDDEN_SIZE_SHIFT


class FwdLauncher(Protocol):
    """A compiled forward kernel variant and its invocation wrapper."""

    def configure(self, launch_params: "LaunchParams") -> "LaunchPlan":
        """Report scratch requirements without touching any buffer."""

    def launch(self, launch_params: "LaunchParams", plan: "LaunchPlan") -> None:
        """Run the kernel with the buffers wired into ``launch_params``."""


class FwdRegistry:
    """Map from launch key to forward launcher.

    Filled once at start-up and frozen; lookups afterwards are read-only and
    may run concurrently.
    """

    def __init__(self) -> None:
        self._launchers: dict[int, FwdLauncher] = {}
        self._frozen = False
        self._lock = threading.Lock()

    def register(self, key: int, launcher: FwdLauncher) -> None:
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    "Cannot register launchers after the registry has been frozen"
                )
            self._launchers[key] = launcher

    def lookup(self, key: int) -> FwdLauncher:
        launcher = self._launchers.get(key)
        if launcher is None:
            dtypes, hidden_size = decode_launch_key(key)
            names = ", ".join(str(d) for d in dtypes)
            raise UnsupportedCombinationError(
                f"FWD: Unsupported hidden_size or types: {hidden_size} ({names})"
            )
        return launcher

    def freeze(self) -> None:
        with self._lock:
            self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen

    def keys(self) -> Iterator[int]:
        return iter(tuple(self._launchers))

    def __contains__(self, key: object) -> bool:
        return key in self._launchers

    def __len__(self) -> int:
        return len(self._launchers)


def get_fwd_launcher(
    wtype: torch.dtype,
    itype: torch.dtype,
    rtype: torch.dtype,
    otype: torch.dtype,
    ctype: torch.dtype,
    hidden_size: int,
    registry: Optional[FwdRegistry] = None,
) -> FwdLauncher:
    """Return the launcher registered for the dtypes and padded ``hidden_size``.

    Args:
        wtype: Weight dtype.
        itype: Input dtype.
        rtype: Residual storage dtype.
        otype: Output dtype.
        ctype: Compute dtype.
        hidden_size: Hidden size already passed through :func:`round_hidden_size`.
        registry: Registry to search; defaults to the process-wide one.

    Returns:
        The matching launcher.

    Raises:
        UnsupportedCombinationError: If nothing is registered for the key.
    """

    if registry is None:
        from . import get_fwd_registry

        registry = get_fwd_registry()
    key = launch_key(wtype, itype, rtype, otype, ctype, hidden_size)
    return registry.lookup(key)


__all__ = [
    "FwdLauncher",
    "FwdRegistry",
    "HIDDEN_SIZE_BUCKETS",
    "SUPPORTED_TYPE_COMBINATIONS",
    "decode_launch_key",
    "get_fwd_launcher",
    "launch_key",
    "round_hidden_size",
    "type_id",
]

"""Ordered precondition checks for the fused forward.

Checks run in a fixed order and the first violated constraint raises
:class:`~dropout_layer_norm.errors.PreconditionError`. Nothing is allocated
or looked up before they pass.
"""

from __future__ import annotations

from typing import NamedTuple, Optional

import torch

from ..config import RuntimeConfig, get_config
from ..errors import PreconditionError


MAX_HIDDEN_SIZE = 8192
HIDDEN_SIZE_ALIGNMENT = 8
SUBSET_DTYPE = torch.int32


class FwdShape(NamedTuple):
    rows: int
    cols: int
    hidden_size: int


def _check(condition: bool, message: str) -> None:
    if not condition:
        raise PreconditionError(message)


def _check_on_accelerator(
    name: str, tensor: torch.Tensor, config: RuntimeConfig
) -> None:
    allowed = config.accelerator_device_types
    _check(
        tensor.device.type in allowed,
        f"{name} must reside on an accelerator device {allowed}, got {tensor.device}.",
    )


def _check_contiguous(name: str, tensor: torch.Tensor) -> None:
    _check(tensor.is_contiguous(), f"{name} must be contiguous.")


def _check_vector(
    name: str,
    tensor: torch.Tensor,
    length: int,
    dtype: torch.dtype,
    config: RuntimeConfig,
) -> None:
    _check_on_accelerator(name, tensor, config)
    _check_contiguous(name, tensor)
    _check(
        tuple(tensor.shape) == (length,),
        f"{name} must have shape ({length},), got {tuple(tensor.shape)}.",
    )
    _check(
        tensor.dtype == dtype,
        f"{name} must have dtype {dtype}, got {tensor.dtype}.",
    )


def check_fwd_inputs(
    x0: torch.Tensor,
    residual: Optional[torch.Tensor],
    gamma: torch.Tensor,
    beta: Optional[torch.Tensor],
    rowscale: Optional[torch.Tensor],
    colscale: Optional[torch.Tensor],
    x0_subset: Optional[torch.Tensor],
    z_subset: Optional[torch.Tensor],
    dropout_p: float,
    epsilon: float,
    *,
    config: Optional[RuntimeConfig] = None,
) -> FwdShape:
    """Validate the inputs of the fused forward before any allocation.

    Checks run in a fixed order and stop at the first violation.

    Args:
        x0: Primary input ``(R, H)``.
        residual: Optional residual ``(rows, H)``.
        gamma: Scale ``(H,)``.
        beta: Optional shift, same shape and dtype as ``gamma``.
        rowscale: Optional per-row scale ``(rows,)`` in ``x0.dtype``.
        colscale: Optional per-column scale ``(H,)`` in ``gamma.dtype``.
        x0_subset: Optional int32 row indices into ``x0`` ``(rows,)``.
        z_subset: Optional int32 row indices into the output ``(rows,)``.
        dropout_p: Dropout probability in ``[0, 1)``.
        epsilon: Non-negative numerical stabiliser.
        config: Runtime config deciding which devices count as accelerators.

    Returns:
        The row count (``x0_subset`` length when subsets are used), the column
        count and the hidden size.

    Raises:
        PreconditionError: On the first violated constraint.
    """

    config = config or get_config()

    _check_on_accelerator("x0", x0, config)
    _check_contiguous("x0", x0)
    _check(x0.dim() == 2, f"x0 must be 2-D (rows, hidden_size), got {x0.dim()}-D.")
    if x0_subset is not None:
        _check(
            x0_subset.dim() == 1,
            f"x0_subset must be 1-D, got {x0_subset.dim()}-D.",
        )
        rows = x0_subset.shape[0]
    else:
        rows = x0.shape[0]
    cols = x0.shape[1]

    _check_on_accelerator("gamma", gamma, config)
    hidden_size = gamma.numel()
    _check(
        hidden_size == cols,
        f"gamma has {hidden_size} elements but x0 has {cols} columns.",
    )

    if beta is not None:
        _check(
            beta.dtype == gamma.dtype,
            f"beta dtype {beta.dtype} must match gamma dtype {gamma.dtype}.",
        )
        _check(
            beta.device == gamma.device,
            f"beta device {beta.device} must match gamma device {gamma.device}.",
        )
        _check_contiguous("beta", beta)
        _check(
            beta.shape == gamma.shape,
            f"beta shape {tuple(beta.shape)} must match gamma shape {tuple(gamma.shape)}.",
        )

    if residual is not None:
        _check_on_accelerator("residual", residual, config)
        _check_contiguous("residual", residual)
        _check(
            tuple(residual.shape) == (rows, cols),
            f"residual must have shape ({rows}, {cols}), got {tuple(residual.shape)}.",
        )

    if rowscale is not None:
        _check_vector("rowscale", rowscale, rows, x0.dtype, config)

    if colscale is not None:
        _check_vector("colscale", colscale, cols, gamma.dtype, config)

    if x0_subset is None or z_subset is None:
        _check(
            x0_subset is None and z_subset is None,
            "x0_subset and z_subset must be supplied together.",
        )
    else:
        _check_vector("x0_subset", x0_subset, rows, SUBSET_DTYPE, config)
        _check_vector("z_subset", z_subset, rows, SUBSET_DTYPE, config)

    _check(
        hidden_size > 0
        and hidden_size % HIDDEN_SIZE_ALIGNMENT == 0
        and hidden_size <= MAX_HIDDEN_SIZE,
        f"hidden_size must be a positive multiple of {HIDDEN_SIZE_ALIGNMENT} "
        f"and at most {MAX_HIDDEN_SIZE}, got {hidden_size}.",
    )
    _check(epsilon >= 0.0, f"epsilon must be non-negative, got {epsilon}.")
    _check(
        0.0 <= dropout_p < 1.0,
        f"dropout_p must lie in [0, 1), got {dropout_p}.",
    )

    return FwdShape(rows=rows, cols=cols, hidden_size=hidden_size)


__all__ = ["FwdShape", "check_fwd_inputs", "MAX_HIDDEN_SIZE"]

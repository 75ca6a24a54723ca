"""Launch orchestration for the fused dropout + residual add + norm forward.

A call validates its inputs, picks the kernel variant for its dtypes and
padded hidden size, and then drives the launcher through two phases:

* sizing: ``launcher.configure`` reports the scratch memory, the barrier
  slots and the number of random values per thread the variant needs;
* executing: ``launcher.launch`` runs with those buffers and the reserved
  RNG state wired in.

Nothing is allocated before validation and lookup succeed, and the
executing phase never runs if any allocation fails.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, NamedTuple, Optional, Sequence

import torch

from ..config import get_config
from ..errors import PreconditionError, ResourceExhaustedError
from ..utils.generator import PhiloxState, get_generator_or_default, philox_state
from .registry import get_fwd_launcher, round_hidden_size
from .validation import check_fwd_inputs


logger = logging.getLogger(__name__)

COMPUTE_DTYPE = torch.float32
MASK_DTYPE = torch.uint8
BARRIER_DTYPE = torch.int32
WORKSPACE_DTYPE = torch.int8


@dataclass(frozen=True)
class DeviceProperties:
    name: str
    multi_processor_count: int
    max_threads_per_multi_processor: int

    @classmethod
    def for_device(cls, device: torch.device) -> "DeviceProperties":
        config = get_config()
        if device.type == "cuda":
            props = torch.cuda.get_device_properties(device)
            return cls(
                name=props.name,
                multi_processor_count=props.multi_processor_count,
                max_threads_per_multi_processor=getattr(
                    props,
                    "max_threads_per_multi_processor",
                    config.fallback_max_threads_per_multiprocessor,
                ),
            )
        return cls(
            name=device.type,
            multi_processor_count=config.fallback_multiprocessor_count,
            max_threads_per_multi_processor=config.fallback_max_threads_per_multiprocessor,
        )


@dataclass
class FwdParams:
    """Runtime parameters of one forward launch.

    Tensor fields are borrowed: they point into caller tensors or into the
    outputs allocated for this call and are never released here.
    """

    rows: int = 0
    cols: int = 0

    x0: Optional[torch.Tensor] = None
    residual: Optional[torch.Tensor] = None
    rowscale: Optional[torch.Tensor] = None
    colscale: Optional[torch.Tensor] = None
    x0_subset: Optional[torch.Tensor] = None
    z_subset: Optional[torch.Tensor] = None
    gamma: Optional[torch.Tensor] = None
    beta: Optional[torch.Tensor] = None

    x: Optional[torch.Tensor] = None
    dmask: Optional[torch.Tensor] = None
    z: Optional[torch.Tensor] = None
    mu: Optional[torch.Tensor] = None
    rs: Optional[torch.Tensor] = None

    workspace: Optional[torch.Tensor] = None
    barrier: Optional[torch.Tensor] = None

    epsilon: float = 0.0
    dropout_keep_p: float = 1.0
    dropout_scale: float = 1.0
    inverse_cols: float = 0.0
    rowscale_const: float = 1.0
    is_rms_norm: bool = False

    ctas_per_col: int = 0
    philox_args: Optional[PhiloxState] = None


@dataclass(frozen=True)
class LaunchPlan:
    """What the sizing phase reports for a given set of runtime parameters."""

    ctas_per_col: int
    elts_per_thread: int
    workspace_bytes: int = 0
    barrier_size: int = 0


@dataclass
class LaunchParams:
    device: torch.device
    props: DeviceProperties
    stream: Any
    params: FwdParams = field(default_factory=FwdParams)

    elts_per_thread: int = 0
    workspace_bytes: int = 0
    barrier_size: int = 0

    def apply_plan(self, plan: LaunchPlan) -> None:
        self.elts_per_thread = plan.elts_per_thread
        self.workspace_bytes = plan.workspace_bytes
        self.barrier_size = plan.barrier_size
        self.params.ctas_per_col = plan.ctas_per_col


class FwdOutputs(NamedTuple):
    z: torch.Tensor
    x: Optional[torch.Tensor]
    dmask: Optional[torch.Tensor]
    mu: torch.Tensor
    rsigma: torch.Tensor


def _device_guard(device: torch.device):
    if device.type == "cuda":
        return torch.cuda.device(device)
    return nullcontext()


def _current_stream(device: torch.device) -> Any:
    if device.type == "cuda":
        return torch.cuda.current_stream(device)
    return None


def _allocate(
    shape: Sequence[int],
    dtype: torch.dtype,
    device: torch.device,
    *,
    zero: bool = False,
) -> torch.Tensor:
    factory = torch.zeros if zero else torch.empty
    try:
        return factory(tuple(shape), dtype=dtype, device=device)
    except torch.cuda.OutOfMemoryError as exc:
        raise ResourceExhaustedError(
            f"failed to allocate {tuple(shape)} {dtype} on {device}"
        ) from exc


def needs_saved_x(
    residual: Optional[torch.Tensor],
    dropout_p: float,
    rowscale: Optional[torch.Tensor],
    colscale: Optional[torch.Tensor],
    x0_subset: Optional[torch.Tensor],
    itype: torch.dtype,
    rtype: torch.dtype,
) -> bool:
    """Return ``True`` when the pre-normalisation sum must be materialised."""

    return (
        residual is not None
        or dropout_p > 0.0
        or rowscale is not None
        or colscale is not None
        or x0_subset is not None
        or itype != rtype
    )


def dropout_add_ln_fwd(
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
    rowscale_const: float,
    z_numrows: int,
    gen: Optional[torch.Generator] = None,
    residual_in_fp32: bool = False,
    is_rms_norm: bool = False,
) -> FwdOutputs:
    """Fused dropout, residual add and LayerNorm/RMSNorm forward.

    Computes ``x = dropout(x0 * rowscale * colscale) + residual`` and
    ``z = norm(x) * gamma + beta`` with a kernel variant chosen by the input,
    residual and weight dtypes and the padded hidden size. Accumulation is
    always in float32.

    Args:
        x0: Input ``(R, H)``.
        residual: Optional residual ``(rows, H)``.
        gamma: Scale ``(H,)``.
        beta: Optional shift ``(H,)``.
        rowscale: Optional per-row scale ``(rows,)``.
        colscale: Optional per-column scale ``(H,)``.
        x0_subset: Optional 1-based int32 rows of ``x0`` to process ``(rows,)``.
        z_subset: Optional 1-based int32 output rows ``(rows,)``; required
            together with ``x0_subset``.
        dropout_p: Dropout probability in ``[0, 1)``.
        epsilon: Numerical stabiliser.
        rowscale_const: Row factor used with subsets when no ``rowscale`` is given.
        z_numrows: Number of output rows when ``z_subset`` is given.
        gen: Generator for the dropout mask; the device default when ``None``.
        residual_in_fp32: Store the pre-norm sum in float32 when no residual
            is supplied.
        is_rms_norm: Normalise by the root mean square only.

    Returns:
        ``FwdOutputs(z, x, dmask, mu, rsigma)``. ``x`` is ``None`` when the
        pre-norm sum is not materialised and ``dmask`` is ``None`` without
        dropout. ``mu`` is zero in RMS mode.

    Raises:
        PreconditionError: If an input violates the contract.
        UnsupportedCombinationError: If no kernel matches the dtypes and size.
        ResourceExhaustedError: If an output or scratch buffer cannot be allocated.
    """

    itype = x0.dtype
    if residual is not None:
        rtype = residual.dtype
    else:
        rtype = torch.float32 if residual_in_fp32 else itype
    wtype = gamma.dtype
    otype = itype
    ctype = COMPUTE_DTYPE

    rows, cols, hidden_size = check_fwd_inputs(
        x0,
        residual,
        gamma,
        beta,
        rowscale,
        colscale,
        x0_subset,
        z_subset,
        dropout_p,
        epsilon,
    )
    if z_subset is not None and z_numrows < 0:
        raise PreconditionError(f"z_numrows must be non-negative, got {z_numrows}.")

    launcher = get_fwd_launcher(
        wtype, itype, rtype, otype, ctype, round_hidden_size(hidden_size)
    )

    save_x = needs_saved_x(residual, dropout_p, rowscale, colscale, x0_subset, itype, rtype)
    device = x0.device

    with _device_guard(device):
        x = _allocate((rows, cols), rtype, device) if save_x else None
        dmask = _allocate(x0.shape, MASK_DTYPE, device) if dropout_p > 0.0 else None
        z_rows = z_numrows if z_subset is not None else rows
        z = _allocate((z_rows, cols), otype, device)
        mu = _allocate((rows,), ctype, device)
        rsigma = _allocate((rows,), ctype, device)

        params = FwdParams(
            rows=rows,
            cols=cols,
            x0=x0,
            residual=residual,
            rowscale=rowscale,
            colscale=colscale,
            x0_subset=x0_subset,
            z_subset=z_subset,
            gamma=gamma,
            beta=beta,
            x=x,
            dmask=dmask,
            z=z,
            mu=mu,
            rs=rsigma,
            epsilon=epsilon,
            dropout_keep_p=1.0 - dropout_p,
            dropout_scale=1.0 / (1.0 - dropout_p),
            inverse_cols=1.0 / float(cols),
            rowscale_const=rowscale_const,
            is_rms_norm=is_rms_norm,
        )
        launch_params = LaunchParams(
            device=device,
            props=DeviceProperties.for_device(device),
            stream=_current_stream(device),
            params=params,
        )

        plan = launcher.configure(launch_params)
        launch_params.apply_plan(plan)
        logger.debug(
            "fwd plan rows=%d cols=%d types=(%s, %s, %s) %s",
            rows,
            cols,
            wtype,
            itype,
            rtype,
            plan,
        )

        if dropout_p > 0.0:
            generator = get_generator_or_default(gen, device)
            params.philox_args = philox_state(generator, plan.elts_per_thread)

        if plan.barrier_size > 0:
            params.barrier = _allocate(
                (plan.barrier_size,), BARRIER_DTYPE, device, zero=True
            )
            params.workspace = _allocate(
                (plan.workspace_bytes,), WORKSPACE_DTYPE, device
            )

        launcher.launch(launch_params, plan)

    return FwdOutputs(z=z, x=x, dmask=dmask, mu=mu, rsigma=rsigma)


__all__ = [
    "DeviceProperties",
    "FwdOutputs",
    "FwdParams",
    "LaunchParams",
    "LaunchPlan",
    "dropout_add_ln_fwd",
    "needs_saved_x",
]

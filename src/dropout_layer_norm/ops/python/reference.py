from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional, Union

import torch

from ...utils.generator import PhiloxState
from ..launch import LaunchParams, LaunchPlan
from ..registry import (
    FwdRegistry,
    HIDDEN_SIZE_BUCKETS,
    SUPPORTED_TYPE_COMBINATIONS,
    launch_key,
)


WARP_SIZE = 32
STATS_BYTES = 8  # one (mean, m2) pair of float32


@dataclass(frozen=True)
class KernelTraits:
    """Static launch shape of one compiled hidden-size bucket.

    Attributes:
        hidden_size: Padded hidden size the variant is compiled for.
        warps_m: Warps stacked along rows; each handles one row per pass.
        warps_n: Warps cooperating on a single row.
        ctas_per_row: CTAs a row is split across; above one the launch needs
            a barrier and a workspace for cross-CTA reductions.
        bytes_per_ldg: Bytes moved by one vectorised load.
    """

    hidden_size: int
    warps_m: int
    warps_n: int
    ctas_per_row: int = 1
    bytes_per_ldg: int = 16

    @property
    def threads_per_row(self) -> int:
        return self.warps_n * WARP_SIZE

    @property
    def threads_per_cta(self) -> int:
        return self.warps_m * self.warps_n * WARP_SIZE

    @property
    def rows_per_cta(self) -> int:
        return self.warps_m

    def num_elts(self, dtype: torch.dtype) -> int:
        return self.bytes_per_ldg // (torch.finfo(dtype).bits // 8)

    def ldgs(self, dtype: torch.dtype) -> int:
        per_ldg = self.ctas_per_row * self.threads_per_row * self.num_elts(dtype)
        return math.ceil(self.hidden_size / per_ldg)


KERNEL_TRAITS: dict[int, KernelTraits] = {
    256: KernelTraits(256, warps_m=4, warps_n=1),
    512: KernelTraits(512, warps_m=4, warps_n=1),
    768: KernelTraits(768, warps_m=4, warps_n=1),
    1024: KernelTraits(1024, warps_m=4, warps_n=1),
    1280: KernelTraits(1280, warps_m=4, warps_n=1),
    1536: KernelTraits(1536, warps_m=4, warps_n=1),
    2048: KernelTraits(2048, warps_m=1, warps_n=4),
    2560: KernelTraits(2560, warps_m=1, warps_n=4),
    3072: KernelTraits(3072, warps_m=1, warps_n=4),
    4096: KernelTraits(4096, warps_m=1, warps_n=4),
    5120: KernelTraits(5120, warps_m=1, warps_n=4),
    6144: KernelTraits(6144, warps_m=1, warps_n=4),
    7168: KernelTraits(7168, warps_m=1, warps_n=4, ctas_per_row=2),
    8192: KernelTraits(8192, warps_m=1, warps_n=4, ctas_per_row=2),
}

assert tuple(KERNEL_TRAITS) == HIDDEN_SIZE_BUCKETS


def dropout_keep_mask(
    shape: torch.Size | tuple[int, ...],
    keep_p: float,
    philox_args: PhiloxState,
    device: torch.device,
) -> torch.Tensor:
    """Draw the boolean keep mask addressed by a philox state token."""

    gen = torch.Generator(device=device)
    gen.manual_seed(philox_args.stream_seed())
    return torch.rand(tuple(shape), generator=gen, device=device) < keep_p


def _dropout_add_norm(
    x0: torch.Tensor,
    residual: Optional[torch.Tensor],
    gamma: torch.Tensor,
    beta: Optional[torch.Tensor],
    rowscale: Optional[Union[torch.Tensor, float]],
    colscale: Optional[torch.Tensor],
    keep_mask: Optional[torch.Tensor],
    dropout_scale: float,
    epsilon: float,
    is_rms_norm: bool,
) -> tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
    compute_dtype = torch.float32
    x0_c = x0.to(compute_dtype)
    if rowscale is not None:
        if isinstance(rowscale, torch.Tensor):
            x0_c = x0_c * rowscale.to(compute_dtype).unsqueeze(-1)
        else:
            x0_c = x0_c * rowscale
    if colscale is not None:
        x0_c = x0_c * colscale.to(compute_dtype)
    if keep_mask is not None:
        x0_c = x0_c * keep_mask.to(compute_dtype) * dropout_scale

    x = x0_c + residual.to(compute_dtype) if residual is not None else x0_c

    if is_rms_norm:
        mu = torch.zeros(x.shape[:-1], dtype=compute_dtype, device=x.device)
        rs = torch.rsqrt(x.pow(2).mean(dim=-1) + epsilon)
        xhat = x * rs.unsqueeze(-1)
    else:
        mu = x.mean(dim=-1)
        centered = x - mu.unsqueeze(-1)
        rs = torch.rsqrt(centered.pow(2).mean(dim=-1) + epsilon)
        xhat = centered * rs.unsqueeze(-1)

    z = xhat * gamma.to(compute_dtype)
    if beta is not None:
        z = z + beta.to(compute_dtype)
    return x, z, mu, rs


def dropout_add_layer_norm_ref(
    x0: torch.Tensor,
    residual: Optional[torch.Tensor],
    weight: torch.Tensor,
    bias: Optional[torch.Tensor],
    rowscale: Optional[torch.Tensor],
    colscale: Optional[torch.Tensor],
    dropout_mask: Optional[torch.Tensor],
    dropout_p: float,
    epsilon: float,
    is_rms_norm: bool = False,
    residual_in_fp32: bool = False,
    prenorm: bool = False,
) -> torch.Tensor | tuple[torch.Tensor, torch.Tensor]:
    """Differentiable torch rendition of the fused forward.

    Args:
        x0: Input ``(..., H)``.
        residual: Optional residual with the shape of ``x0``.
        weight: Scale ``(H,)``.
        bias: Optional shift ``(H,)``.
        rowscale: Optional per-row scale ``x0.shape[:-1]``.
        colscale: Optional per-column scale ``(H,)``.
        dropout_mask: Keep mask with the shape of ``x0``; ``None`` disables dropout.
        dropout_p: Probability the mask was drawn with, used for rescaling.
        epsilon: Numerical stabiliser.
        is_rms_norm: Select RMSNorm instead of LayerNorm.
        residual_in_fp32: Return the pre-norm sum in float32 when no residual
            is given.
        prenorm: Also return the pre-norm sum.

    Returns:
        The normalised output in ``x0.dtype``, plus the pre-norm sum in the
        residual storage dtype when ``prenorm`` is set.
    """

    if residual is not None:
        residual_dtype = residual.dtype
    else:
        residual_dtype = torch.float32 if residual_in_fp32 else x0.dtype
    dropout_scale = 1.0 / (1.0 - dropout_p)
    x, z, _, _ = _dropout_add_norm(
        x0,
        residual,
        weight,
        bias,
        rowscale,
        colscale,
        dropout_mask,
        dropout_scale,
        epsilon,
        is_rms_norm,
    )
    out = z.to(x0.dtype)
    if prenorm:
        return out, x.to(residual_dtype)
    return out


class ReferenceFwdLauncher:
    """Launcher running the fused forward with torch ops on any device.

    Sizing mirrors a CUDA variant with the given :class:`KernelTraits`, so
    the scratch buffers and RNG reservations it asks for follow the same
    rules a compiled kernel would.
    """

    def __init__(self, traits: KernelTraits, itype: torch.dtype) -> None:
        self.traits = traits
        self.itype = itype

    def __repr__(self) -> str:
        return f"ReferenceFwdLauncher(hidden_size={self.traits.hidden_size}, itype={self.itype})"

    def configure(self, launch_params: LaunchParams) -> LaunchPlan:
        traits = self.traits
        props = launch_params.props
        params = launch_params.params

        ctas_per_sm = max(
            1, props.max_threads_per_multi_processor // traits.threads_per_cta
        )
        ctas_per_col = max(
            1, props.multi_processor_count * ctas_per_sm // traits.ctas_per_row
        )
        rows_per_loop = ctas_per_col * traits.rows_per_cta
        loops = (params.rows + rows_per_loop - 1) // rows_per_loop
        elts_per_thread = loops * traits.ldgs(self.itype) * traits.num_elts(self.itype)

        workspace_bytes = 0
        barrier_size = 0
        if traits.ctas_per_row > 1:
            barrier_size = 2 * ctas_per_col
            workspace_bytes = (
                ctas_per_col * traits.warps_m * traits.ctas_per_row * STATS_BYTES * 2
            )
        return LaunchPlan(
            ctas_per_col=ctas_per_col,
            elts_per_thread=elts_per_thread,
            workspace_bytes=workspace_bytes,
            barrier_size=barrier_size,
        )

    def _check_launch(self, launch_params: LaunchParams, plan: LaunchPlan) -> None:
        params = launch_params.params
        if plan.barrier_size > 0:
            if params.barrier is None or params.barrier.numel() != plan.barrier_size:
                raise RuntimeError(
                    f"launch expects a barrier of {plan.barrier_size} slots"
                )
            if (
                params.workspace is None
                or params.workspace.numel() != plan.workspace_bytes
            ):
                raise RuntimeError(
                    f"launch expects a workspace of {plan.workspace_bytes} bytes"
                )
        if params.dmask is not None and params.philox_args is None:
            raise RuntimeError("dropout requested without a reserved philox state")

    def launch(self, launch_params: LaunchParams, plan: LaunchPlan) -> None:
        self._check_launch(launch_params, plan)
        params = launch_params.params
        device = launch_params.device

        keep = None
        if params.dmask is not None:
            keep = dropout_keep_mask(
                params.x0.shape, params.dropout_keep_p, params.philox_args, device
            )
            params.dmask.copy_(keep)

        rowscale: Optional[Union[torch.Tensor, float]] = params.rowscale
        if params.x0_subset is not None:
            x0_rows = params.x0_subset.long()
            present = (x0_rows > 0).unsqueeze(-1)
            src = (x0_rows - 1).clamp(min=0)
            x0 = torch.where(
                present,
                params.x0.index_select(0, src),
                torch.zeros((), dtype=params.x0.dtype, device=device),
            )
            keep_rows = keep.index_select(0, src) if keep is not None else None
            if rowscale is None:
                rowscale = params.rowscale_const
        else:
            x0 = params.x0
            keep_rows = keep

        x, z, mu, rs = _dropout_add_norm(
            x0,
            params.residual,
            params.gamma,
            params.beta,
            rowscale,
            params.colscale,
            keep_rows,
            params.dropout_scale,
            params.epsilon,
            params.is_rms_norm,
        )

        if params.x is not None:
            params.x.copy_(x)
        if params.z_subset is not None:
            z_rows = params.z_subset.long()
            written = z_rows > 0
            params.z.index_copy_(0, z_rows[written] - 1, z[written].to(params.z.dtype))
        else:
            params.z.copy_(z)
        params.mu.copy_(mu)
        params.rs.copy_(rs)


def register_reference_launchers(registry: FwdRegistry) -> int:
    """Register a reference launcher for every supported combination and bucket.

    Returns:
        The number of registered launchers.
    """

    count = 0
    for wtype, itype, rtype, otype, ctype in SUPPORTED_TYPE_COMBINATIONS:
        for hidden_size in HIDDEN_SIZE_BUCKETS:
            launcher = ReferenceFwdLauncher(KERNEL_TRAITS[hidden_size], itype)
            key = launch_key(wtype, itype, rtype, otype, ctype, hidden_size)
            registry.register(key, launcher)
            count += 1
    return count

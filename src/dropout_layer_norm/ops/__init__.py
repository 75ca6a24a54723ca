"""Ops façade: process-wide kernel registry and the fused forward API."""

from __future__ import annotations

import importlib
import logging
import threading
import warnings
from typing import Any, Optional, cast

import torch

from ..config import get_config
from ..utils import dispatch
from .launch import (
    DeviceProperties,
    FwdOutputs,
    FwdParams,
    LaunchParams,
    LaunchPlan,
    dropout_add_ln_fwd,
    needs_saved_x,
)
from .python import reference as reference_ops
from .registry import (
    FwdLauncher,
    FwdRegistry,
    HIDDEN_SIZE_BUCKETS,
    SUPPORTED_TYPE_COMBINATIONS,
    get_fwd_launcher,
    launch_key,
    round_hidden_size,
    type_id,
)
from .validation import FwdShape, check_fwd_inputs


logger = logging.getLogger(__name__)

# (backend preference it was built for, backend used, frozen registry)
_FWD_STATE: Optional[tuple[Optional[str], str, FwdRegistry]] = None
_FWD_LOCK = threading.Lock()


def _populate_registry(registry: FwdRegistry, backend: str) -> int:
    if backend == "cuda":
        bindings: Any = importlib.import_module(dispatch.CUDA_BINDINGS_MODULE)
        count = 0
        for wtype, itype, rtype, otype, ctype, hidden_size, launcher in bindings.fwd_launchers():
            registry.register(
                launch_key(wtype, itype, rtype, otype, ctype, hidden_size), launcher
            )
            count += 1
        return count
    return reference_ops.register_reference_launchers(registry)


def get_fwd_registry() -> FwdRegistry:
    """Return the process-wide forward registry, building it on first use.

    The registry is populated from the backend chosen by
    :func:`dropout_layer_norm.utils.dispatch.get_available_backend` (honouring
    ``RuntimeConfig.backend``) and frozen. It is rebuilt only when the
    configured backend preference changes.
    """

    preferred = get_config().backend
    state = _FWD_STATE
    if state is not None and state[0] == preferred:
        return state[2]
    return _build_fwd_registry(preferred)


def _build_fwd_registry(preferred: Optional[str]) -> FwdRegistry:
    global _FWD_STATE
    with _FWD_LOCK:
        state = _FWD_STATE
        if state is not None and state[0] == preferred:
            return state[2]
        backend = dispatch.get_available_backend(preferred)
        if preferred is not None and backend != preferred:
            warnings.warn(
                f"{preferred} launchers requested but unavailable; using the {backend} backend",
                RuntimeWarning,
                stacklevel=3,
            )
        registry = FwdRegistry()
        count = _populate_registry(registry, backend)
        registry.freeze()
        logger.info("registered %d forward launchers from the %s backend", count, backend)
        _FWD_STATE = (preferred, backend, registry)
        return registry


def reset_fwd_registry() -> None:
    """Drop the process-wide registry; the next lookup rebuilds it."""

    global _FWD_STATE
    with _FWD_LOCK:
        _FWD_STATE = None


def fwd_backend() -> Optional[str]:
    """Return the backend the current registry was built from, if any."""

    state = _FWD_STATE
    return state[1] if state is not None else None


def _maybe_contiguous(tensor: Optional[torch.Tensor]) -> Optional[torch.Tensor]:
    if tensor is not None and not tensor.is_contiguous():
        return tensor.contiguous()
    return tensor


class _DropoutAddNormFunction(torch.autograd.Function):
    @staticmethod
    def forward(
        ctx,
        x0: torch.Tensor,
        residual: Optional[torch.Tensor],
        gamma: torch.Tensor,
        beta: Optional[torch.Tensor],
        rowscale: Optional[torch.Tensor],
        colscale: Optional[torch.Tensor],
        dropout_p: float,
        epsilon: float,
        residual_in_fp32: bool,
        is_rms_norm: bool,
    ) -> tuple[torch.Tensor, torch.Tensor, Optional[torch.Tensor]]:
        hidden_size = gamma.numel()
        x0mat = cast(torch.Tensor, _maybe_contiguous(x0)).view(-1, hidden_size)
        residualmat = (
            cast(torch.Tensor, _maybe_contiguous(residual)).view(-1, hidden_size)
            if residual is not None
            else None
        )
        rowscale_flat = (
            cast(torch.Tensor, _maybe_contiguous(rowscale)).view(-1)
            if rowscale is not None
            else None
        )
        gamma = cast(torch.Tensor, _maybe_contiguous(gamma))
        beta = _maybe_contiguous(beta)
        colscale = _maybe_contiguous(colscale)

        z, x, dmask, _, _ = dropout_add_ln_fwd(
            x0mat,
            residualmat,
            gamma,
            beta,
            rowscale_flat,
            colscale,
            None,
            None,
            dropout_p,
            epsilon,
            1.0,
            0,
            None,
            residual_in_fp32,
            is_rms_norm,
        )

        ctx.save_for_backward(x0mat, residualmat, gamma, beta, rowscale_flat, colscale, dmask)
        ctx.x0_shape = x0.shape
        ctx.dropout_p = dropout_p
        ctx.epsilon = epsilon
        ctx.residual_in_fp32 = residual_in_fp32
        ctx.is_rms_norm = is_rms_norm

        residual_out = x.view(x0.shape) if x is not None else x0mat.view(x0.shape)
        dmask_out = dmask.view(x0.shape) if dmask is not None else None
        if dmask_out is not None:
            ctx.mark_non_differentiable(dmask_out)
        return z.view(x0.shape), residual_out, dmask_out

    @staticmethod
    def backward(  # type: ignore[override]
        ctx,
        grad_z: Optional[torch.Tensor],
        grad_residual_out: Optional[torch.Tensor],
        grad_dmask: Optional[torch.Tensor],
    ) -> tuple[Optional[torch.Tensor], ...]:
        x0, residual, gamma, beta, rowscale, colscale, dmask = ctx.saved_tensors
        req = ctx.needs_input_grad
        hidden_size = gamma.numel()

        with torch.enable_grad():
            x0_ref = x0.detach().clone().requires_grad_(req[0])
            residual_ref = (
                residual.detach().clone().requires_grad_(req[1])
                if residual is not None
                else None
            )
            gamma_ref = gamma.detach().clone().requires_grad_(req[2])
            beta_ref = (
                beta.detach().clone().requires_grad_(req[3]) if beta is not None else None
            )
            colscale_ref = (
                colscale.detach().clone().requires_grad_(req[5])
                if colscale is not None
                else None
            )

            out_ref, x_ref = reference_ops.dropout_add_layer_norm_ref(
                x0_ref,
                residual_ref,
                gamma_ref,
                beta_ref,
                rowscale,
                colscale_ref,
                dmask,
                ctx.dropout_p,
                ctx.epsilon,
                is_rms_norm=ctx.is_rms_norm,
                residual_in_fp32=ctx.residual_in_fp32,
                prenorm=True,
            )

            grad_out = (
                grad_z.reshape(-1, hidden_size).to(out_ref.dtype)
                if grad_z is not None
                else torch.zeros_like(out_ref)
            )
            grad_x = (
                grad_residual_out.reshape(-1, hidden_size).to(x_ref.dtype)
                if grad_residual_out is not None
                else torch.zeros_like(x_ref)
            )

            inputs: list[torch.Tensor] = []
            mapping: list[int] = []
            candidates = [x0_ref, residual_ref, gamma_ref, beta_ref, None, colscale_ref]
            for idx, tensor in enumerate(candidates):
                if tensor is not None and tensor.requires_grad:
                    inputs.append(tensor)
                    mapping.append(idx)

            grads: tuple[Optional[torch.Tensor], ...]
            if inputs:
                grads = torch.autograd.grad(
                    outputs=(out_ref, x_ref),
                    inputs=inputs,
                    grad_outputs=(grad_out, grad_x),
                    allow_unused=True,
                )
            else:
                grads = tuple()

        result: list[Optional[torch.Tensor]] = [None] * 10
        for idx, grad in zip(mapping, grads):
            result[idx] = grad
        for idx in (0, 1):
            if result[idx] is not None:
                result[idx] = cast(torch.Tensor, result[idx]).view(ctx.x0_shape)
        return tuple(result)


def _dropout_add_norm(
    x0: torch.Tensor,
    residual: Optional[torch.Tensor],
    weight: torch.Tensor,
    bias: Optional[torch.Tensor],
    dropout_p: float,
    epsilon: float,
    rowscale: Optional[torch.Tensor],
    layerscale: Optional[torch.Tensor],
    prenorm: bool,
    residual_in_fp32: bool,
    return_dropout_mask: bool,
    is_rms_norm: bool,
):
    z, residual_out, dmask = _DropoutAddNormFunction.apply(
        x0,
        residual,
        weight,
        bias,
        rowscale,
        layerscale,
        dropout_p,
        epsilon,
        residual_in_fp32,
        is_rms_norm,
    )
    outputs: tuple[torch.Tensor, ...] = (z, residual_out) if prenorm else (z,)
    if return_dropout_mask:
        if dmask is None:
            mask = torch.ones(x0.shape, dtype=torch.bool, device=x0.device)
        else:
            mask = dmask.bool()
        outputs = outputs + (mask,)
    return outputs[0] if len(outputs) == 1 else outputs


def dropout_add_layer_norm(
    x0: torch.Tensor,
    residual: Optional[torch.Tensor],
    weight: torch.Tensor,
    bias: Optional[torch.Tensor],
    dropout_p: float,
    epsilon: float,
    rowscale: Optional[torch.Tensor] = None,
    layerscale: Optional[torch.Tensor] = None,
    prenorm: bool = False,
    residual_in_fp32: bool = False,
    return_dropout_mask: bool = False,
):
    """Dropout, residual add and LayerNorm fused into one kernel launch.

    Args:
        x0: Input ``(..., H)``.
        residual: Optional residual with the shape of ``x0``.
        weight: LayerNorm scale ``(H,)``.
        bias: Optional LayerNorm shift ``(H,)``.
        dropout_p: Dropout probability applied to ``x0``.
        epsilon: Numerical stabiliser.
        rowscale: Optional per-row scale ``x0.shape[:-1]``.
        layerscale: Optional per-column scale ``(H,)``.
        prenorm: Also return the pre-norm sum (the next residual).
        residual_in_fp32: Keep the pre-norm sum in float32 when no residual
            is supplied.
        return_dropout_mask: Also return the boolean keep mask.

    Returns:
        ``out``; ``(out, residual_out)`` when ``prenorm``; the keep mask is
        appended when ``return_dropout_mask``.
    """

    return _dropout_add_norm(
        x0,
        residual,
        weight,
        bias,
        dropout_p,
        epsilon,
        rowscale,
        layerscale,
        prenorm,
        residual_in_fp32,
        return_dropout_mask,
        is_rms_norm=False,
    )


def dropout_add_rms_norm(
    x0: torch.Tensor,
    residual: Optional[torch.Tensor],
    weight: torch.Tensor,
    bias: Optional[torch.Tensor],
    dropout_p: float,
    epsilon: float,
    rowscale: Optional[torch.Tensor] = None,
    layerscale: Optional[torch.Tensor] = None,
    prenorm: bool = False,
    residual_in_fp32: bool = False,
    return_dropout_mask: bool = False,
):
    """Dropout, residual add and RMSNorm fused into one kernel launch.

    Args:
        x0: Input ``(..., H)``.
        residual: Optional residual with the shape of ``x0``.
        weight: RMSNorm scale ``(H,)``.
        bias: Optional shift ``(H,)``.
        dropout_p: Dropout probability applied to ``x0``.
        epsilon: Numerical stabiliser.
        rowscale: Optional per-row scale ``x0.shape[:-1]``.
        layerscale: Optional per-column scale ``(H,)``.
        prenorm: Also return the pre-norm sum (the next residual).
        residual_in_fp32: Keep the pre-norm sum in float32 when no residual
            is supplied.
        return_dropout_mask: Also return the boolean keep mask.

    Returns:
        ``out``; ``(out, residual_out)`` when ``prenorm``; the keep mask is
        appended when ``return_dropout_mask``.
    """

    return _dropout_add_norm(
        x0,
        residual,
        weight,
        bias,
        dropout_p,
        epsilon,
        rowscale,
        layerscale,
        prenorm,
        residual_in_fp32,
        return_dropout_mask,
        is_rms_norm=True,
    )


__all__ = [
    "DeviceProperties",
    "FwdLauncher",
    "FwdOutputs",
    "FwdParams",
    "FwdRegistry",
    "FwdShape",
    "HIDDEN_SIZE_BUCKETS",
    "LaunchParams",
    "LaunchPlan",
    "SUPPORTED_TYPE_COMBINATIONS",
    "check_fwd_inputs",
    "dropout_add_layer_norm",
    "dropout_add_ln_fwd",
    "dropout_add_rms_norm",
    "fwd_backend",
    "get_fwd_launcher",
    "get_fwd_registry",
    "launch_key",
    "needs_saved_x",
    "reset_fwd_registry",
    "round_hidden_size",
    "type_id",
]

from __future__ import annotations

from typing import Optional

import torch
from torch import nn

from ..ops import dropout_add_layer_norm, dropout_add_rms_norm


class DropoutAddLayerNorm(nn.Module):
    """Dropout on the input, residual add and LayerNorm in one fused launch.

    Args:
        hidden_size: Size of the normalised (last) dimension.
        prenorm: If ``True``, ``forward`` also returns the pre-norm sum so it
            can serve as the next block's residual.
        p: Dropout probability, applied only in training mode.
        eps: Numerical stabiliser.
        residual_in_fp32: Keep the pre-norm sum in float32 when no residual is
            passed.
        device: Optional device for the parameters.
        dtype: Optional dtype for the parameters.
    """

    def __init__(
        self,
        hidden_size: int,
        prenorm: bool = False,
        p: float = 0.0,
        eps: float = 1e-5,
        residual_in_fp32: bool = False,
        device=None,
        dtype=None,
    ) -> None:
        factory_kwargs = {"device": device, "dtype": dtype}
        super().__init__()
        self.prenorm = prenorm
        self.p = p
        self.eps = eps
        self.residual_in_fp32 = residual_in_fp32
        self.weight = nn.Parameter(torch.empty(hidden_size, **factory_kwargs))
        self.bias = nn.Parameter(torch.empty(hidden_size, **factory_kwargs))
        self.reset_parameters()

    def reset_parameters(self) -> None:
        nn.init.ones_(self.weight)
        nn.init.zeros_(self.bias)

    def forward(self, x0: torch.Tensor, residual: Optional[torch.Tensor] = None):
        return dropout_add_layer_norm(
            x0,
            residual,
            self.weight,
            self.bias,
            self.p if self.training else 0.0,
            self.eps,
            prenorm=self.prenorm,
            residual_in_fp32=self.residual_in_fp32,
        )


class DropoutAddRMSNorm(nn.Module):
    """Dropout on the input, residual add and RMSNorm in one fused launch.

    Args:
        hidden_size: Size of the normalised (last) dimension.
        prenorm: If ``True``, ``forward`` also returns the pre-norm sum.
        p: Dropout probability, applied only in training mode.
        eps: Numerical stabiliser.
        residual_in_fp32: Keep the pre-norm sum in float32 when no residual is
            passed.
        device: Optional device for the parameters.
        dtype: Optional dtype for the parameters.
    """

    def __init__(
        self,
        hidden_size: int,
        prenorm: bool = False,
        p: float = 0.0,
        eps: float = 1e-5,
        residual_in_fp32: bool = False,
        device=None,
        dtype=None,
    ) -> None:
        factory_kwargs = {"device": device, "dtype": dtype}
        super().__init__()
        self.prenorm = prenorm
        self.p = p
        self.eps = eps
        self.residual_in_fp32 = residual_in_fp32
        self.weight = nn.Parameter(torch.empty(hidden_size, **factory_kwargs))
        self.register_parameter("bias", None)
        self.reset_parameters()

    def reset_parameters(self) -> None:
        nn.init.ones_(self.weight)

    def forward(self, x0: torch.Tensor, residual: Optional[torch.Tensor] = None):
        return dropout_add_rms_norm(
            x0,
            residual,
            self.weight,
            None,
            self.p if self.training else 0.0,
            self.eps,
            prenorm=self.prenorm,
            residual_in_fp32=self.residual_in_fp32,
        )

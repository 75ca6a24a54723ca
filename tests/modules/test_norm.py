from __future__ import annotations

import torch
import torch.nn.functional as F

from dropout_layer_norm.modules import DropoutAddLayerNorm, DropoutAddRMSNorm


def test_layer_norm_module_matches_torch_in_eval():
    torch.manual_seed(0)
    norm = DropoutAddLayerNorm(64, p=0.5)
    with torch.no_grad():
        norm.weight.normal_()
        norm.bias.normal_()
    norm.eval()

    x0 = torch.randn(2, 8, 64)
    residual = torch.randn(2, 8, 64)
    out = norm(x0, residual)

    expected = F.layer_norm(x0 + residual, (64,), norm.weight, norm.bias, norm.eps)
    torch.testing.assert_close(out, expected)


def test_prenorm_module_returns_residual():
    norm = DropoutAddRMSNorm(32, prenorm=True, residual_in_fp32=True)
    x0 = torch.randn(4, 32).to(torch.bfloat16)
    out, residual_out = norm(x0)
    assert out.dtype == torch.bfloat16
    assert residual_out.dtype == torch.float32
    torch.testing.assert_close(residual_out, x0.float())


def test_training_applies_dropout_and_trains_parameters():
    torch.manual_seed(0)
    norm = DropoutAddLayerNorm(64, p=0.5)
    norm.train()
    x0 = torch.randn(16, 64, requires_grad=True)

    out = norm(x0)
    out.square().sum().backward()

    assert norm.weight.grad is not None
    assert norm.bias.grad is not None
    assert x0.grad is not None
    # some inputs were dropped, so their gradient is exactly zero
    assert bool((x0.grad == 0).any())


def test_rms_module_has_no_bias():
    norm = DropoutAddRMSNorm(16)
    assert norm.bias is None
    assert torch.equal(norm.weight, torch.ones(16))

from __future__ import annotations

import torch
import torch.nn.functional as F

from dropout_layer_norm.ops import dropout_add_layer_norm, dropout_add_rms_norm
from dropout_layer_norm.ops.python.reference import dropout_add_layer_norm_ref


def _leaf(tensor: torch.Tensor) -> torch.Tensor:
    return tensor.detach().clone().requires_grad_(True)


def test_layer_norm_accepts_leading_dims():
    torch.manual_seed(0)
    x0 = torch.randn(2, 3, 64)
    weight = torch.randn(64)
    bias = torch.randn(64)

    out = dropout_add_layer_norm(x0, None, weight, bias, 0.0, 1e-5)

    assert out.shape == x0.shape
    torch.testing.assert_close(out, F.layer_norm(x0, (64,), weight, bias, 1e-5))


def test_prenorm_returns_residual_and_mask():
    torch.manual_seed(0)
    x0 = torch.randn(2, 5, 128)
    residual = torch.randn(2, 5, 128)
    weight = torch.ones(128)

    out, residual_out, mask = dropout_add_layer_norm(
        x0,
        residual,
        weight,
        None,
        0.25,
        1e-5,
        prenorm=True,
        return_dropout_mask=True,
    )

    assert mask.dtype == torch.bool and mask.shape == x0.shape
    expected_residual = x0 * mask / 0.75 + residual
    torch.testing.assert_close(residual_out, expected_residual)
    torch.testing.assert_close(out, F.layer_norm(expected_residual, (128,), weight, None, 1e-5))


def test_mask_without_dropout_keeps_everything():
    x0 = torch.randn(4, 64)
    out, mask = dropout_add_rms_norm(
        x0, None, torch.ones(64), None, 0.0, 1e-6, return_dropout_mask=True
    )
    assert bool(mask.all())
    assert out.shape == x0.shape


def test_layer_norm_gradients_match_reference():
    torch.manual_seed(0)
    x0 = torch.randn(3, 4, 64)
    residual = torch.randn(3, 4, 64)
    weight = torch.randn(64)
    bias = torch.randn(64)
    layerscale = torch.rand(64)

    fused_inputs = [_leaf(t) for t in (x0, residual, weight, bias, layerscale)]
    ref_inputs = [_leaf(t) for t in (x0, residual, weight, bias, layerscale)]

    out, residual_out, mask = dropout_add_layer_norm(
        fused_inputs[0],
        fused_inputs[1],
        fused_inputs[2],
        fused_inputs[3],
        0.1,
        1e-5,
        layerscale=fused_inputs[4],
        prenorm=True,
        return_dropout_mask=True,
    )
    ref_out, ref_residual_out = dropout_add_layer_norm_ref(
        ref_inputs[0],
        ref_inputs[1],
        ref_inputs[2],
        ref_inputs[3],
        None,
        ref_inputs[4],
        mask,
        0.1,
        1e-5,
        prenorm=True,
    )

    torch.testing.assert_close(out, ref_out)
    torch.testing.assert_close(residual_out, ref_residual_out)

    grad_out = torch.randn_like(out)
    grad_residual = torch.randn_like(residual_out)
    (out * grad_out).sum().add((residual_out * grad_residual).sum()).backward()
    (ref_out * grad_out).sum().add((ref_residual_out * grad_residual).sum()).backward()

    for fused, ref in zip(fused_inputs, ref_inputs):
        assert fused.grad is not None
        assert fused.grad.shape == fused.shape
        torch.testing.assert_close(fused.grad, ref.grad, atol=1e-5, rtol=1e-4)


def test_rms_norm_gradient_flows_through_passthrough_residual():
    torch.manual_seed(0)
    x0 = torch.randn(6, 64)
    weight = torch.randn(64)
    fused_x0, fused_weight = _leaf(x0), _leaf(weight)
    ref_x0, ref_weight = _leaf(x0), _leaf(weight)

    out, residual_out = dropout_add_rms_norm(
        fused_x0, None, fused_weight, None, 0.0, 1e-6, prenorm=True
    )
    ref_out, ref_residual_out = dropout_add_layer_norm_ref(
        ref_x0, None, ref_weight, None, None, None, None, 0.0, 1e-6,
        is_rms_norm=True, prenorm=True,
    )

    (out.sum() + residual_out.pow(2).sum()).backward()
    (ref_out.sum() + ref_residual_out.pow(2).sum()).backward()

    torch.testing.assert_close(fused_x0.grad, ref_x0.grad, atol=1e-5, rtol=1e-4)
    torch.testing.assert_close(fused_weight.grad, ref_weight.grad, atol=1e-5, rtol=1e-4)

import pytest
import torch

from dropout_layer_norm.ops import FwdRegistry, HIDDEN_SIZE_BUCKETS
from dropout_layer_norm.ops.python.reference import (
    KERNEL_TRAITS,
    KernelTraits,
    dropout_add_layer_norm_ref,
    dropout_keep_mask,
    register_reference_launchers,
)
from dropout_layer_norm.utils.generator import PhiloxState


def test_traits_cover_every_bucket():
    assert tuple(KERNEL_TRAITS) == HIDDEN_SIZE_BUCKETS
    for hidden_size, traits in KERNEL_TRAITS.items():
        assert traits.hidden_size == hidden_size
        per_pass = traits.ctas_per_row * traits.threads_per_row * traits.num_elts(torch.float32)
        assert traits.ldgs(torch.float32) * per_pass >= hidden_size


@pytest.mark.parametrize(
    "dtype, expected", [(torch.float32, 4), (torch.float16, 8), (torch.bfloat16, 8)]
)
def test_vector_width_follows_dtype(dtype, expected):
    traits = KernelTraits(1024, warps_m=4, warps_n=1)
    assert traits.num_elts(dtype) == expected
    assert traits.threads_per_cta == 128


def test_register_reference_launchers_counts_every_key():
    registry = FwdRegistry()
    count = register_reference_launchers(registry)
    assert count == len(registry) == 9 * len(HIDDEN_SIZE_BUCKETS)


def test_keep_mask_is_addressed_by_state():
    state = PhiloxState(seed=7, offset=16)
    first = dropout_keep_mask((32, 64), 0.5, state, torch.device("cpu"))
    again = dropout_keep_mask((32, 64), 0.5, state, torch.device("cpu"))
    moved = dropout_keep_mask((32, 64), 0.5, PhiloxState(7, 20), torch.device("cpu"))

    assert first.dtype == torch.bool
    assert torch.equal(first, again)
    assert not torch.equal(first, moved)


def test_reference_rms_norm_matches_formula():
    torch.manual_seed(0)
    x0 = torch.randn(4, 32)
    weight = torch.randn(32)

    out = dropout_add_layer_norm_ref(x0, None, weight, None, None, None, None, 0.0, 1e-6, is_rms_norm=True)

    expected = x0 * torch.rsqrt(x0.pow(2).mean(-1, keepdim=True) + 1e-6) * weight
    torch.testing.assert_close(out, expected)


def test_reference_keeps_residual_dtype():
    x0 = torch.randn(2, 16, dtype=torch.bfloat16)
    residual = torch.randn(2, 16)
    out, residual_out = dropout_add_layer_norm_ref(
        x0, residual, torch.ones(16), torch.zeros(16), None, None, None, 0.0, 1e-5, prenorm=True
    )
    assert out.dtype == torch.bfloat16
    assert residual_out.dtype == torch.float32
    torch.testing.assert_close(residual_out, x0.float() + residual)

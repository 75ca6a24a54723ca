from __future__ import annotations

import pytest
import torch

from dropout_layer_norm.config import RuntimeConfig
from dropout_layer_norm.errors import PreconditionError
from dropout_layer_norm.ops.validation import check_fwd_inputs


ROWS, HIDDEN = 4, 64


def _inputs(**overrides):
    args = dict(
        x0=torch.randn(ROWS, HIDDEN),
        residual=None,
        gamma=torch.ones(HIDDEN),
        beta=None,
        rowscale=None,
        colscale=None,
        x0_subset=None,
        z_subset=None,
        dropout_p=0.0,
        epsilon=1e-5,
    )
    args.update(overrides)
    return args


def _check(**overrides):
    args = _inputs(**overrides)
    return check_fwd_inputs(
        args["x0"],
        args["residual"],
        args["gamma"],
        args["beta"],
        args["rowscale"],
        args["colscale"],
        args["x0_subset"],
        args["z_subset"],
        args["dropout_p"],
        args["epsilon"],
    )


def test_valid_inputs_report_shape():
    shape = _check(
        residual=torch.randn(ROWS, HIDDEN),
        beta=torch.zeros(HIDDEN),
        rowscale=torch.ones(ROWS),
        colscale=torch.ones(HIDDEN),
        dropout_p=0.5,
    )
    assert shape == (ROWS, HIDDEN, HIDDEN)


def test_subset_rows_come_from_the_index_length():
    idx = torch.arange(1, 7, dtype=torch.int32)
    shape = _check(x0=torch.randn(10, HIDDEN), x0_subset=idx, z_subset=idx.clone())
    assert shape.rows == 6


def test_rejects_host_tensor_without_accelerator_config():
    args = _inputs()
    with pytest.raises(PreconditionError, match="accelerator"):
        check_fwd_inputs(
            *args.values(), config=RuntimeConfig(accelerator_device_types=("cuda",))
        )


def test_rejects_non_contiguous_input():
    x0 = torch.randn(HIDDEN, ROWS).t()
    with pytest.raises(PreconditionError, match="x0 must be contiguous"):
        _check(x0=x0)


def test_rejects_wrong_rank():
    with pytest.raises(PreconditionError, match="2-D"):
        _check(x0=torch.randn(2, 2, HIDDEN))


def test_rejects_gamma_size_mismatch():
    with pytest.raises(PreconditionError, match="gamma"):
        _check(gamma=torch.ones(HIDDEN + 8))


def test_rejects_beta_dtype_mismatch():
    with pytest.raises(PreconditionError, match="beta dtype"):
        _check(beta=torch.zeros(HIDDEN, dtype=torch.float16))


def test_rejects_mismatched_residual_shape():
    with pytest.raises(PreconditionError, match="residual must have shape"):
        _check(residual=torch.randn(ROWS + 1, HIDDEN))


def test_rejects_rowscale_length():
    with pytest.raises(PreconditionError, match="rowscale"):
        _check(rowscale=torch.ones(ROWS + 1))


def test_rejects_rowscale_dtype():
    with pytest.raises(PreconditionError, match="rowscale must have dtype"):
        _check(rowscale=torch.ones(ROWS, dtype=torch.float16))


def test_rejects_colscale_dtype():
    with pytest.raises(PreconditionError, match="colscale"):
        _check(colscale=torch.ones(HIDDEN, dtype=torch.bfloat16))


def test_rejects_lonely_subset():
    idx = torch.arange(1, ROWS + 1, dtype=torch.int32)
    with pytest.raises(PreconditionError, match="together"):
        _check(x0_subset=idx)
    with pytest.raises(PreconditionError, match="together"):
        _check(z_subset=idx)


def test_rejects_scalar_subset():
    idx = torch.tensor(1, dtype=torch.int32)
    with pytest.raises(PreconditionError, match="1-D"):
        _check(x0_subset=idx, z_subset=idx)


def test_rejects_int64_subset():
    idx = torch.arange(1, ROWS + 1)
    with pytest.raises(PreconditionError, match="int32"):
        _check(x0_subset=idx, z_subset=idx)


@pytest.mark.parametrize("hidden_size", [10, 8200])
def test_rejects_hidden_size(hidden_size):
    with pytest.raises(PreconditionError, match="hidden_size"):
        _check(x0=torch.randn(ROWS, hidden_size), gamma=torch.ones(hidden_size))


def test_rejects_negative_epsilon():
    with pytest.raises(PreconditionError, match="epsilon"):
        _check(epsilon=-1e-6)


@pytest.mark.parametrize("dropout_p", [1.0, 1.5, -0.1])
def test_rejects_dropout_probability(dropout_p):
    with pytest.raises(PreconditionError, match="dropout_p"):
        _check(dropout_p=dropout_p)


def test_precondition_errors_are_value_errors():
    with pytest.raises(ValueError):
        _check(epsilon=-1.0)


def test_first_violation_wins():
    # Both the residual shape and epsilon are wrong; residual is checked first.
    with pytest.raises(PreconditionError, match="residual"):
        _check(residual=torch.randn(1, HIDDEN), epsilon=-1.0)

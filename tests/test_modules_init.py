import inspect

from dropout_layer_norm.modules import DropoutAddLayerNorm, DropoutAddRMSNorm


def test_init_signatures_minimal():
    # Ensure constructors accept the documented core parameters
    for cls in (DropoutAddLayerNorm, DropoutAddRMSNorm):
        params = inspect.signature(cls).parameters
        assert "hidden_size" in params
        assert "p" in params
        assert "prenorm" in params

import sys
from pathlib import Path

import pytest


def pytest_configure(config):
    config.addinivalue_line("markers", "cuda: requires a CUDA device")
    # Ensure src/ is importable without installing the package
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


@pytest.fixture(autouse=True)
def host_as_accelerator():
    """Let the python reference launchers run on CPU tensors."""

    from dropout_layer_norm.config import override_config

    with override_config(
        accelerator_device_types=("cuda", "cpu"),
        backend=None,
        fallback_multiprocessor_count=2,
        fallback_max_threads_per_multiprocessor=256,
    ) as config:
        yield config

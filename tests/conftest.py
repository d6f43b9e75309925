"""
Pytest configuration for gguf-serving tests

Sets up Python path to allow imports from python/ directory, pins a test
configuration (no memory-release sleeps) and provides a fake engine so the
serving core runs without llama.cpp.
"""
import base64
import io
import sys
from pathlib import Path

import pytest

# Add python directory to path for imports
python_dir = Path(__file__).parent.parent / 'python'
sys.path.insert(0, str(python_dir))
sys.path.insert(0, str(Path(__file__).parent))

import config_loader  # noqa: E402
from fake_engine import FakeEngine, write_gguf  # noqa: E402


@pytest.fixture(autouse=True)
def test_config():
    """Fresh global config per test: no sleeps between load stages"""
    config = config_loader.Config({
        "inference": {"memory_release_delay_ms": 0},
        "development": {"verbose": False},
    })
    config.validate()
    previous = config_loader._global_config
    config_loader._global_config = config
    yield config
    config_loader._global_config = previous


@pytest.fixture
def fake_engine():
    return FakeEngine()


@pytest.fixture
def gguf_path(tmp_path):
    return str(write_gguf(tmp_path / "model.gguf"))


@pytest.fixture
def mmproj_path(tmp_path):
    return str(write_gguf(tmp_path / "mmproj.gguf"))


@pytest.fixture
def png_b64():
    """Small RGBA PNG, base64 encoded"""
    from PIL import Image

    buf = io.BytesIO()
    Image.new("RGBA", (4, 4), (255, 0, 0, 255)).save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")

"""
Pytest configuration for runtime integration tests

Loads a temporary runtime.yaml through the real config loader and wires a
RuntimeServer to a fake-engine backed queue and cache.
"""

import io

import pytest
import sys
from pathlib import Path

# Add python directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / "python"))


@pytest.fixture
def temp_config(tmp_path):
    """
    Create a temporary config file for testing

    Returns:
        Path to temporary config file
    """
    config_content = """
python_bridge:
  max_buffer_size: 1048576

model:
  default_context_length: 256
  default_max_tokens: 32
  memory_cache:
    max_cached_models: 2
    ttl_seconds: 60

inference:
  memory_release_delay_ms: 0
  throughput_log_interval_ms: 1000

development:
  verbose: false
  debug: false
"""

    config_file = tmp_path / "runtime.yaml"
    config_file.write_text(config_content)

    return config_file


@pytest.fixture
def runtime_stack(temp_config):
    """RuntimeServer backed by the fake engine, using the loaded YAML config"""
    from config_loader import initialize_config
    from fake_engine import FakeEngine
    from inference_queue import InferenceQueue
    from model_cache import ModelCache, ModelCacheConfig
    from models.loader import load_vocab_only, verify_model_file
    from runtime import RuntimeServer

    config = initialize_config(str(temp_config), environment="test")
    engine = FakeEngine()

    def loader(model_path):
        verify_model_file(model_path, detailed_check=False)
        return load_vocab_only(engine, model_path)

    cache = ModelCache(ModelCacheConfig.from_runtime_config(), loader_fn=loader)
    queue = InferenceQueue(engine=engine, cache=cache, config=config)
    server = RuntimeServer(queue=queue, cache=cache, out=io.StringIO())

    yield server, engine

    queue.shutdown(wait=True, timeout=10.0)

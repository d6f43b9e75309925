"""
Runtime configuration for gguf-serving

Settings live in config/runtime.yaml. An environments: block carries
per-environment overrides that are deep-merged over the base values.
"""

import logging
import os
import threading
import yaml
from pathlib import Path
from typing import Any, Dict, List, Optional

CONFIG_ENV_VAR = "GGUF_SERVING_CONFIG"

# llama.cpp LLAMA_DEFAULT_SEED
DEFAULT_SEED = 0xFFFFFFFF

EXPIRY_POLICIES = ("created_at", "last_access")


class Config:
    """Flat view of runtime.yaml with built-in defaults for every key"""

    def __init__(self, config_dict: Dict[str, Any]):
        # Python Bridge (JSON-RPC over stdio)
        py_bridge = config_dict.get("python_bridge", {})
        self.max_buffer_size = py_bridge.get("max_buffer_size", 1_048_576)

        # Model
        model = config_dict.get("model", {})
        self.default_context_length = model.get("default_context_length", 2048)
        self.default_max_tokens = model.get("default_max_tokens", 512)
        self.default_num_threads = model.get("default_num_threads", 4)
        self.default_num_gpu_layers = model.get("default_num_gpu_layers", 0)

        # Request limits
        self.trusted_model_directories: Optional[List[str]] = model.get("trusted_model_directories")
        self.max_generation_tokens = model.get("max_generation_tokens", 32768)
        self.max_context_length = model.get("max_context_length", 1_048_576)
        self.max_temperature = model.get("max_temperature", 2.0)

        # Model Cache
        memory_cache = model.get("memory_cache", {})
        self.max_cached_models = memory_cache.get("max_cached_models", 5)
        self.cache_ttl_seconds = memory_cache.get("ttl_seconds", 1800.0)
        self.cache_expiry_policy = memory_cache.get("expiry_policy", "created_at")

        # Inference
        inference = config_dict.get("inference", {})
        self.default_seed = inference.get("default_seed", DEFAULT_SEED)
        self.memory_release_delay_ms = inference.get("memory_release_delay_ms", 100)
        self.throughput_log_interval_ms = inference.get("throughput_log_interval_ms", 1000)

        stop_strings = inference.get("stop_strings", {})
        self.stop_strings_enabled = stop_strings.get("enabled", False)
        self.extra_stop_strings: List[str] = list(stop_strings.get("extra", ["<|end|>", "<|eot_id|>"]))

        # Vision encoder
        vision = config_dict.get("vision", {})
        self.max_image_bytes = vision.get("max_image_bytes", 20 * 1024 * 1024)
        self.encoder_verbosity = vision.get("encoder_verbosity", 1)

        # Development
        dev = config_dict.get("development", {})
        self.verbose = dev.get("verbose", False)
        self.debug = dev.get("debug", False)

    def validate(self) -> None:
        """Raise ValueError on the first out-of-range setting"""
        if self.max_buffer_size < 1024:
            raise ValueError(f"max_buffer_size must be >= 1024 bytes, got {self.max_buffer_size}")

        if self.default_context_length < 1:
            raise ValueError(f"default_context_length must be >= 1, got {self.default_context_length}")

        if self.max_temperature < 0 or self.max_temperature > 10.0:
            raise ValueError(f"max_temperature must be in range [0, 10], got {self.max_temperature}")

        if self.max_cached_models < 1:
            raise ValueError(f"max_cached_models must be >= 1, got {self.max_cached_models}")

        if self.cache_ttl_seconds < 0:
            raise ValueError(f"ttl_seconds must be >= 0, got {self.cache_ttl_seconds}")

        if self.cache_expiry_policy not in EXPIRY_POLICIES:
            raise ValueError(
                f"expiry_policy must be one of {EXPIRY_POLICIES}, got {self.cache_expiry_policy}"
            )

        if not 0 <= self.default_seed <= 0xFFFFFFFF:
            raise ValueError(f"default_seed out of range (0 to {0xFFFFFFFF}), got {self.default_seed}")

        if self.memory_release_delay_ms < 0:
            raise ValueError(f"memory_release_delay_ms must be >= 0, got {self.memory_release_delay_ms}")

        if self.max_image_bytes < 1:
            raise ValueError(f"max_image_bytes must be >= 1, got {self.max_image_bytes}")

    def get_memory_release_delay_seconds(self) -> float:
        """Convert release delay MS to seconds for time.sleep()"""
        return self.memory_release_delay_ms / 1000

    def get_throughput_log_interval_seconds(self) -> float:
        return self.throughput_log_interval_ms / 1000


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay override onto base (neither input is modified)"""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def _find_config_path() -> Optional[str]:
    """Locate config/runtime.yaml: env var first, then walk up from this module"""
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return env_path

    here = Path(__file__).resolve().parent
    for directory in [here, *here.parents][:5]:
        candidate = directory / "config" / "runtime.yaml"
        if candidate.exists():
            return str(candidate)
    return None


def _read_yaml(config_path: str) -> Dict[str, Any]:
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise FileNotFoundError(f"Configuration file not found: {config_path}") from None
    except yaml.YAMLError as exc:
        raise ValueError(f"Failed to parse YAML config file '{config_path}': {exc}") from exc
    except OSError as exc:
        raise RuntimeError(f"Failed to load config file '{config_path}': {exc}") from exc


def _resolve_environment(raw: Dict[str, Any], environment: str) -> Dict[str, Any]:
    """Drop the environments block, overlaying the selected one"""
    environments = raw.get("environments") or {}
    resolved = {k: v for k, v in raw.items() if k != "environments"}
    overrides = environments.get(environment)
    if overrides:
        resolved = deep_merge(resolved, overrides)
    return resolved


def load_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """
    Build a validated Config

    Args:
        config_path: YAML file; defaults to GGUF_SERVING_CONFIG or the nearest
            config/runtime.yaml
        environment: Block under environments: to overlay (default from
            GGUF_SERVING_ENV, else development)

    Raises:
        FileNotFoundError: If an explicit config file is missing
        ValueError: If the YAML is malformed or a value is out of range
    """
    config_path = config_path or _find_config_path()
    if config_path is None:
        logging.warning("No config/runtime.yaml found, using built-in defaults")
        raw: Dict[str, Any] = {}
    else:
        env = environment or os.getenv("GGUF_SERVING_ENV") or "development"
        raw = _resolve_environment(_read_yaml(config_path), env)

    config = Config(raw)
    config.validate()
    return config


_global_config: Optional[Config] = None
_config_lock = threading.Lock()


def initialize_config(
    config_path: Optional[str] = None, environment: Optional[str] = None
) -> Config:
    """Load and install the process-wide config"""
    global _global_config
    with _config_lock:
        _global_config = load_config(config_path, environment)
        return _global_config


def get_config() -> Config:
    """
    Process-wide config, loaded on first use

    Double-checked locking: the queue worker and the runtime loop may both
    ask for the config during cold start.
    """
    global _global_config

    if _global_config is not None:
        return _global_config

    with _config_lock:
        if _global_config is None:
            _global_config = load_config()
        return _global_config

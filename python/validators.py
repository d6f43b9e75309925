"""
Input validation for inference requests and JSON-RPC methods

Centralized validation logic to reject invalid parameters before any model
file is touched.
"""

from __future__ import annotations

import base64
import binascii
import os
from typing import Any, Dict, Optional
import sys
from pathlib import Path

# Fix: Add parent directory to path for imports when run as main module
if __name__ != '__main__':
    sys.path.insert(0, str(Path(__file__).parent))

from config_loader import get_config


def validate_model_path(model_path: Any, param_name: str = "model_path") -> str:
    """
    Validate a model or vision-encoder path

    Only the shape of the path is checked here; readability and the GGUF
    header are checked by models.loader.verify_model_file.

    Args:
        model_path: Path to validate
        param_name: Parameter name for error messages

    Returns:
        Validated path string

    Raises:
        ValueError: If the path is missing, malformed or outside the trusted directories
    """
    if not model_path:
        raise ValueError(f"{param_name} is required")

    if not isinstance(model_path, str):
        raise ValueError(f"{param_name} must be a string, got {type(model_path).__name__}")

    if len(model_path) > 4096:
        raise ValueError(f"{param_name} too long ({len(model_path)} chars, max 4096)")

    if "\x00" in model_path:
        raise ValueError(f"{param_name} contains a NUL byte")

    trusted_dirs = get_config().trusted_model_directories
    if trusted_dirs:
        resolved = os.path.realpath(model_path)
        allowed = False
        for trusted in trusted_dirs:
            trusted_real = os.path.realpath(os.path.expanduser(trusted))
            if resolved == trusted_real or resolved.startswith(trusted_real + os.sep):
                allowed = True
                break
        if not allowed:
            raise ValueError(f"{param_name} is outside the trusted model directories: {model_path}")

    return model_path


def validate_text_input(text: Any, param_name: str = "text", max_length: int = 16_777_216) -> str:
    """
    Validate text input parameters

    Args:
        text: Text to validate
        param_name: Parameter name for error messages
        max_length: Maximum allowed length (prompts may carry inline base64 images)

    Returns:
        Validated text string

    Raises:
        ValueError: If text is invalid
    """
    if not isinstance(text, str):
        raise ValueError(f"{param_name} must be a string, got {type(text).__name__}")

    if len(text) > max_length:
        raise ValueError(f"{param_name} too long ({len(text)} chars, max {max_length})")

    return text


def _require_int(params: Dict[str, Any], name: str, low: int, high: int) -> None:
    if name not in params or params[name] is None:
        return
    value = params[name]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {type(value).__name__}")
    if value < low or value > high:
        raise ValueError(f"{name} out of range ({low} to {high}), got {value}")


def _require_number(params: Dict[str, Any], name: str) -> Optional[float]:
    if name not in params or params[name] is None:
        return None
    value = params[name]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{name} must be numeric, got {type(value).__name__}")
    return float(value)


def validate_inference_params(params: Dict[str, Any]) -> None:
    """
    Validate inference parameters

    Args:
        params: Inference parameters (request fields by name)

    Raises:
        ValueError: If parameters are invalid
    """
    config = get_config()

    validate_model_path(params.get("model_path"))
    if params.get("mmproj_path"):
        validate_model_path(params["mmproj_path"], "mmproj_path")

    if "input" not in params or params["input"] is None or params["input"] == "":
        raise ValueError("input is required")
    validate_text_input(params["input"], "input")

    _require_int(params, "context_size", 1, config.max_context_length)
    # max_tokens == 0 is accepted and produces an empty completion
    _require_int(params, "max_tokens", 0, config.max_generation_tokens)
    _require_int(params, "num_threads", 1, 1024)
    _require_int(params, "num_gpu_layers", -1, 100_000)
    _require_int(params, "seed", 0, 2**32 - 1)

    temp = _require_number(params, "temperature")
    if temp is not None:
        if temp < 0:
            raise ValueError(f"temperature must be non-negative, got {temp}")
        if temp > config.max_temperature:
            raise ValueError(f"temperature too large ({temp}, max {config.max_temperature})")

    top_p = _require_number(params, "top_p")
    if top_p is not None and not (0 <= top_p <= 1):
        raise ValueError(f"top_p must be in [0, 1], got {top_p}")

    # Penalties are accepted for compatibility but have no effect on sampling
    for penalty_name in ("penalty_freq", "penalty_repeat"):
        penalty = _require_number(params, penalty_name)
        if penalty is not None and (penalty < -2.0 or penalty > 10.0):
            raise ValueError(f"{penalty_name} must be in [-2.0, 10.0], got {penalty}")

    for name in ("eos_token", "grammar"):
        value = params.get(name)
        if value is not None and not isinstance(value, str):
            raise ValueError(f"{name} must be a string, got {type(value).__name__}")


def validate_base64_image(image_data: Any, *, max_bytes: int = 10 * 1024 * 1024) -> bytes:
    """Validate and decode a base64-encoded image payload."""

    if not isinstance(image_data, (str, bytes)):
        raise ValueError(
            f"image must be a base64 string or bytes, got {type(image_data).__name__}"
        )

    if isinstance(image_data, bytes):
        payload = image_data
    else:
        # Accept optional data URI prefix
        if image_data.startswith("data:"):
            _, _, image_data = image_data.partition(",")
        try:
            payload = image_data.encode("ascii", errors="strict")
        except UnicodeEncodeError as exc:
            raise ValueError("base64 image data contains non-ASCII characters") from exc

    try:
        decoded = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("image is not valid base64-encoded data") from exc

    if len(decoded) == 0:
        raise ValueError("image payload is empty")

    if len(decoded) > max_bytes:
        raise ValueError(
            f"image payload exceeds maximum size of {max_bytes} bytes (got {len(decoded)})"
        )

    return decoded


def validate_tokenize_params(params: Dict[str, Any]) -> None:
    """
    Validate tokenize parameters

    Args:
        params: Tokenize parameters

    Raises:
        ValueError: If parameters are invalid
    """
    validate_model_path(params.get("model_path"))

    if "text" in params and params["text"] is not None:
        validate_text_input(params["text"], "text")

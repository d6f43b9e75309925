"""
Unit tests for validators and InferenceRequest.from_params
"""

import base64

import pytest
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / 'python'))

from errors import InvalidInputError
from models.request import InferenceRequest
from validators import (
    validate_base64_image,
    validate_inference_params,
    validate_model_path,
    validate_tokenize_params,
)


def params(**overrides):
    base = {"request_id": 7, "model_path": "/models/m.gguf", "input": "hello"}
    base.update(overrides)
    return base


class TestValidateModelPath:
    def test_accepts_plain_path(self):
        assert validate_model_path("/models/m.gguf") == "/models/m.gguf"

    @pytest.mark.parametrize("value", [None, "", 42])
    def test_rejects_missing_or_non_string(self, value):
        with pytest.raises(ValueError):
            validate_model_path(value)

    def test_rejects_nul_byte(self):
        with pytest.raises(ValueError, match="NUL"):
            validate_model_path("/models/m\x00.gguf")

    def test_rejects_overlong_path(self):
        with pytest.raises(ValueError, match="too long"):
            validate_model_path("/" + "a" * 5000)

    def test_trusted_directories(self, tmp_path, test_config):
        trusted = tmp_path / "models"
        trusted.mkdir()
        test_config.trusted_model_directories = [str(trusted)]

        assert validate_model_path(str(trusted / "m.gguf"))
        with pytest.raises(ValueError, match="outside the trusted"):
            validate_model_path(str(tmp_path / "elsewhere" / "m.gguf"))
        with pytest.raises(ValueError, match="outside the trusted"):
            validate_model_path(str(trusted / ".." / "escape.gguf"))

    def test_param_name_in_message(self):
        with pytest.raises(ValueError, match="mmproj_path"):
            validate_model_path(3, "mmproj_path")


class TestValidateInferenceParams:
    def test_minimal_request(self):
        validate_inference_params(params())

    def test_input_required(self):
        with pytest.raises(ValueError, match="input is required"):
            validate_inference_params(params(input=""))

    @pytest.mark.parametrize(
        "field,value",
        [
            ("context_size", 0),
            ("max_tokens", -1),
            ("max_tokens", 10**9),
            ("num_threads", 0),
            ("seed", -1),
            ("seed", 2**32),
            ("temperature", -0.1),
            ("temperature", 5.0),
            ("top_p", 1.5),
            ("penalty_repeat", 11.0),
            ("context_size", "2048"),
            ("max_tokens", True),
            ("eos_token", 5),
        ],
    )
    def test_rejects_out_of_range(self, field, value):
        with pytest.raises(ValueError, match=field):
            validate_inference_params(params(**{field: value}))

    def test_max_tokens_zero_allowed(self):
        validate_inference_params(params(max_tokens=0))

    def test_seed_bounds_inclusive(self):
        validate_inference_params(params(seed=0))
        validate_inference_params(params(seed=2**32 - 1))

    def test_mmproj_checked_when_given(self):
        with pytest.raises(ValueError, match="mmproj_path"):
            validate_inference_params(params(mmproj_path=123))


class TestValidateBase64Image:
    def test_decodes_payload(self):
        data = base64.b64encode(b"\x89PNG....").decode("ascii")
        assert validate_base64_image(data) == b"\x89PNG...."

    def test_strips_data_uri(self):
        data = "data:image/png;base64," + base64.b64encode(b"img").decode("ascii")
        assert validate_base64_image(data) == b"img"

    def test_rejects_garbage(self):
        with pytest.raises(ValueError, match="not valid base64"):
            validate_base64_image("***")

    def test_rejects_oversized(self):
        data = base64.b64encode(b"x" * 100).decode("ascii")
        with pytest.raises(ValueError, match="exceeds maximum size"):
            validate_base64_image(data, max_bytes=10)

    def test_rejects_empty(self):
        with pytest.raises(ValueError, match="empty"):
            validate_base64_image("")


class TestValidateTokenizeParams:
    def test_text_must_be_string(self):
        with pytest.raises(ValueError, match="text"):
            validate_tokenize_params({"model_path": "/m.gguf", "text": 5})

    def test_model_path_required(self):
        with pytest.raises(ValueError, match="model_path"):
            validate_tokenize_params({"text": "hi"})


class TestInferenceRequestFromParams:
    def test_applies_config_defaults(self, test_config):
        request = InferenceRequest.from_params(params())

        assert request.request_id == 7
        assert request.context_size == test_config.default_context_length
        assert request.max_tokens == test_config.default_max_tokens
        assert request.num_threads == test_config.default_num_threads
        assert request.temperature == 0.8
        assert request.top_p == 0.95
        assert request.seed is None
        assert request.mmproj_path is None

    def test_min_p_from_top_p(self):
        assert InferenceRequest.from_params(params(top_p=0.75)).min_p == pytest.approx(0.25)
        assert InferenceRequest.from_params(params(top_p=1)).min_p == 0.0

    def test_explicit_values_win(self):
        request = InferenceRequest.from_params(
            params(context_size=128, max_tokens=0, seed=9, eos_token="<|im_end|>")
        )
        assert (request.context_size, request.max_tokens, request.seed) == (128, 0, 9)
        assert request.eos_token == "<|im_end|>"

    def test_request_id_required(self):
        bad = params()
        del bad["request_id"]
        with pytest.raises(InvalidInputError, match="request_id is required"):
            InferenceRequest.from_params(bad)

    def test_request_id_must_be_int(self):
        with pytest.raises(InvalidInputError, match="request_id must be an integer"):
            InferenceRequest.from_params(params(request_id="7"))

    def test_validation_errors_become_invalid_input(self):
        with pytest.raises(InvalidInputError) as exc_info:
            InferenceRequest.from_params(params(temperature=-1))
        assert exc_info.value.message.startswith("Invalid input: temperature")

    def test_request_is_immutable(self):
        request = InferenceRequest.from_params(params())
        with pytest.raises(AttributeError):
            request.max_tokens = 1

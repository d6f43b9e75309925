"""
Unit tests for the runtime error hierarchy and its JSON-RPC code mapping
"""

import pytest
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / 'python'))

import errors
from errors import (
    ERROR_CODE_MAP,
    AllocationError,
    ConcurrentLoadRejected,
    ContextSizeExceeded,
    InferenceRuntimeError,
    InvalidModelFileError,
    ModelLoadError,
    UnhandledInternalError,
)


def test_every_runtime_error_has_a_code():
    subclasses = [
        obj for obj in vars(errors).values()
        if isinstance(obj, type) and issubclass(obj, InferenceRuntimeError)
    ]
    assert set(subclasses) == set(ERROR_CODE_MAP)


def test_codes_are_in_server_error_range():
    for exc_type, code in ERROR_CODE_MAP.items():
        if exc_type is errors.InvalidInputError:
            assert code == -32602
        else:
            assert -32099 <= code <= -32000, exc_type.__name__


@pytest.mark.parametrize(
    "exc,message",
    [
        (ConcurrentLoadRejected(), "Another model loading operation is already in progress"),
        (ModelLoadError("/m.gguf", "bad tensor", phase="vocab"), "Unable to load model vocabulary: bad tensor"),
        (ModelLoadError("/m.gguf", "bad tensor"), "Unable to load full model: bad tensor"),
        (AllocationError("batch"), "Memory allocation failure: batch"),
        (
            ContextSizeExceeded("/m.gguf", 3000, 512, 2048),
            "Input too large for context size (3000 prompt tokens + 512 max tokens > 2048)",
        ),
    ],
)
def test_messages(exc, message):
    assert exc.message == message
    assert str(exc) == message


def test_model_path_is_carried():
    exc = InvalidModelFileError("/models/x.gguf", "not a GGUF file (bad magic)")
    assert exc.model_path == "/models/x.gguf"
    assert exc.reason == "not a GGUF file (bad magic)"


def test_unhandled_error_wraps_cause():
    cause = ZeroDivisionError("boom")
    err = UnhandledInternalError.wrap(cause, "/m.gguf")

    assert err.message == "Unhandled error: boom"
    assert err.model_path == "/m.gguf"
    assert err.__cause__ is cause
    assert ERROR_CODE_MAP[type(err)] == -32099


def test_unhandled_error_without_reason():
    assert UnhandledInternalError.wrap(KeyError()).message == "Unknown unhandled error occurred"

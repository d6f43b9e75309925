"""
Custom exception types for the GGUF inference runtime

Provides typed exceptions for consistent callback and JSON-RPC error mapping.
Every fatal condition of a generation session is one of these types; the
session turns them into a single terminal callback carrying the message.
"""

from typing import Optional


class InferenceRuntimeError(Exception):
    """Base exception for all inference runtime errors"""

    def __init__(self, message: str, model_path: Optional[str] = None):
        self.message = message
        self.model_path = model_path
        super().__init__(message)


class InvalidInputError(InferenceRuntimeError):
    """Raised when a request is missing required fields or carries bad values"""

    def __init__(self, reason: str):
        super().__init__(f"Invalid input: {reason}")
        self.reason = reason


class InvalidModelFileError(InferenceRuntimeError):
    """Raised when a model file is unreadable, too small or not GGUF"""

    def __init__(self, model_path: str, reason: str):
        super().__init__(f"Invalid or inaccessible model file: {reason}", model_path)
        self.reason = reason


class ConcurrentLoadRejected(InferenceRuntimeError):
    """Raised when another model load is already in progress"""

    def __init__(self, model_path: Optional[str] = None):
        super().__init__("Another model loading operation is already in progress", model_path)


class ModelLoadError(InferenceRuntimeError):
    """Raised when the vocabulary-only or full model load fails"""

    def __init__(self, model_path: str, reason: str, phase: str = "full"):
        what = "model vocabulary" if phase == "vocab" else "full model"
        super().__init__(f"Unable to load {what}: {reason}", model_path)
        self.reason = reason
        self.phase = phase


class ContextInitError(InferenceRuntimeError):
    """Raised when the generation context cannot be created"""

    def __init__(self, model_path: str, reason: str):
        super().__init__(f"Unable to create context: {reason}", model_path)
        self.reason = reason


class ClipLoadError(InferenceRuntimeError):
    """Raised when the vision encoder (mmproj) cannot be loaded"""

    def __init__(self, mmproj_path: str, reason: str):
        super().__init__(f"Unable to load CLIP model: {reason}", mmproj_path)
        self.reason = reason


class TokenizerError(InferenceRuntimeError):
    """Raised when tokenization/detokenization fails"""

    def __init__(self, model_path: str, reason: str):
        super().__init__(f"Tokenization failed: {reason}", model_path)
        self.reason = reason


class ContextSizeExceeded(InferenceRuntimeError):
    """Raised when prompt tokens plus max_tokens do not fit the context"""

    def __init__(self, model_path: str, prompt_tokens: int, max_tokens: int, context_size: int):
        super().__init__(
            f"Input too large for context size ({prompt_tokens} prompt tokens + "
            f"{max_tokens} max tokens > {context_size})",
            model_path,
        )
        self.prompt_tokens = prompt_tokens
        self.max_tokens = max_tokens
        self.context_size = context_size


class SamplingError(InferenceRuntimeError):
    """Raised when the sampler chain cannot produce a token"""

    def __init__(self, model_path: str, reason: str):
        super().__init__(f"Token sampling failed: {reason}", model_path)
        self.reason = reason


class DecodeError(InferenceRuntimeError):
    """Raised when the engine fails to decode a batch of prompt tokens"""

    def __init__(self, model_path: str, reason: str):
        super().__init__(f"Failed to add tokens to context: {reason}", model_path)
        self.reason = reason


class AllocationError(InferenceRuntimeError):
    """Raised when a buffer or native object cannot be allocated"""

    def __init__(self, reason: str, model_path: Optional[str] = None):
        super().__init__(f"Memory allocation failure: {reason}", model_path)
        self.reason = reason


class RequestCancelled(InferenceRuntimeError):
    """Raised at a cancellation checkpoint; terminal but not an error message"""

    def __init__(self, request_id: int):
        super().__init__(f"Request {request_id} cancelled")
        self.request_id = request_id


class UnhandledInternalError(InferenceRuntimeError):
    """Catch-all for unexpected failures escaping the engine bindings"""

    def __init__(self, reason: str, model_path: Optional[str] = None):
        message = f"Unhandled error: {reason}" if reason else "Unknown unhandled error occurred"
        super().__init__(message, model_path)
        self.reason = reason

    @classmethod
    def wrap(cls, exc: BaseException, model_path: Optional[str] = None) -> "UnhandledInternalError":
        err = cls(str(exc), model_path)
        err.__cause__ = exc
        return err


# JSON-RPC error code mapping
ERROR_CODE_MAP = {
    InvalidInputError: -32602,
    InvalidModelFileError: -32010,
    ConcurrentLoadRejected: -32011,
    ModelLoadError: -32001,
    ContextInitError: -32012,
    ClipLoadError: -32013,
    TokenizerError: -32003,
    ContextSizeExceeded: -32014,
    SamplingError: -32002,
    DecodeError: -32002,
    AllocationError: -32015,
    RequestCancelled: -32016,
    UnhandledInternalError: -32099,
    InferenceRuntimeError: -32099,  # Generic runtime error
}

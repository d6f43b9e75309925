"""GGUF model management modules."""

from .request import InferenceRequest
from .engine import LLAMA_CPP_AVAILABLE, LLAVA_AVAILABLE

__all__ = [
    "InferenceRequest",
    "LLAMA_CPP_AVAILABLE",
    "LLAVA_AVAILABLE",
]

"""
Tokenizer wrappers - Simple encoding/decoding operations

Responsibilities:
- Tokenize text to token IDs
- Detokenize token IDs to text (incrementally, safe across split UTF-8 sequences)
- Count tokens for diagnostics
- Read special tokens and the chat template from a model's vocabulary

Path-level helpers go through the model cache so repeated calls against the
same GGUF file reuse one vocabulary-only handle.
"""

import codecs
import logging
from typing import List, Dict, Any, Optional
from dataclasses import dataclass
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from models.loader import ModelHandle
from errors import InferenceRuntimeError, TokenizerError

logger = logging.getLogger(__name__)

CHAT_TEMPLATE_KEY = "tokenizer.chat_template"


@dataclass
class TokenizeResult:
    """Result of tokenization operation"""

    tokens: List[int]
    token_strings: List[str]


class IncrementalDetokenizer:
    """
    Turns a stream of token pieces into text

    Pieces are raw bytes and a multi-byte UTF-8 character may be split across
    tokens; bytes are held back until the character is complete. Invalid
    sequences decode to U+FFFD.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, piece: bytes) -> str:
        return self._decoder.decode(piece)

    def flush(self) -> str:
        return self._decoder.decode(b"", final=True)


def _get_model(handle: ModelHandle) -> Any:
    """
    Get the engine model from ModelHandle with validation

    Raises:
        TokenizerError: If the handle was already freed
    """
    model = handle.model
    if model is None:
        raise TokenizerError(handle.model_path, "Model handle already released")
    return model


def tokenize(
    handle: ModelHandle,
    text: str,
    add_special_tokens: bool = True,
    parse_special: bool = True,
) -> TokenizeResult:
    """
    Tokenize text using model's vocabulary

    Args:
        handle: Loaded ModelHandle
        text: Input text to tokenize
        add_special_tokens: Whether to add BOS (when the vocabulary wants one)
        parse_special: Whether special-token text maps to special tokens

    Returns:
        TokenizeResult with token IDs and string representations

    Raises:
        TokenizerError: If tokenization fails
    """
    model = _get_model(handle)
    engine = handle.engine

    try:
        add_bos = add_special_tokens and engine.add_bos(model)
        token_ids = engine.tokenize(model, text, add_bos=add_bos, parse_special=parse_special)
        if token_ids is None:
            raise TokenizerError(handle.model_path, "engine returned no tokens")

        token_strings = [
            engine.token_to_piece(model, tid, special=True).decode("utf-8", errors="replace")
            for tid in token_ids
        ]
        return TokenizeResult(tokens=list(token_ids), token_strings=token_strings)

    except TokenizerError:
        # Re-raise our own errors
        raise
    except Exception as exc:
        raise TokenizerError(handle.model_path, str(exc)) from exc


def detokenize(handle: ModelHandle, token_ids: List[int]) -> str:
    """
    Convert token IDs back to text

    Raises:
        TokenizerError: If detokenization fails
    """
    model = _get_model(handle)
    detok = IncrementalDetokenizer()
    try:
        parts = [
            detok.feed(handle.engine.token_to_piece(model, tid, special=True)) for tid in token_ids
        ]
        parts.append(detok.flush())
        return "".join(parts)
    except Exception as exc:
        raise TokenizerError(handle.model_path, f"detokenize: {exc}") from exc


def count_prompt_tokens(handle: ModelHandle, text: str) -> int:
    """Number of tokens text produces as a prompt (BOS included when used)"""
    if not text:
        return 0
    model = _get_model(handle)
    engine = handle.engine
    try:
        return len(engine.tokenize(model, text, add_bos=engine.add_bos(model), parse_special=True))
    except Exception as exc:
        raise TokenizerError(handle.model_path, str(exc)) from exc


def eos_text(handle: ModelHandle, override: Optional[str] = None) -> str:
    """EOS text for a request: the override if given, else the vocabulary's EOS piece"""
    if override:
        return override
    model = _get_model(handle)
    engine = handle.engine
    piece = engine.token_to_piece(model, engine.token_eos(model), special=True)
    return piece.decode("utf-8", errors="replace")


def get_special_tokens(handle: ModelHandle) -> Dict[str, Any]:
    """
    Get special token IDs and their text

    Returns:
        Dictionary of BOS/EOS ids and pieces
    """
    model = _get_model(handle)
    engine = handle.engine
    bos_id = engine.token_bos(model)
    eos_id = engine.token_eos(model)
    return {
        "bos_token_id": bos_id,
        "bos_token": engine.token_to_piece(model, bos_id, special=True).decode("utf-8", errors="replace"),
        "eos_token_id": eos_id,
        "eos_token": engine.token_to_piece(model, eos_id, special=True).decode("utf-8", errors="replace"),
        "add_bos_token": engine.add_bos(model),
    }


def _cache(cache: Any) -> Any:
    if cache is not None:
        return cache
    from model_cache import get_model_cache

    return get_model_cache()


def count_tokens(model_path: str, text: str, cache: Any = None) -> int:
    """
    Count the tokens text produces for the model at model_path

    Returns 0 for empty input and on any failure (the failure is logged).
    """
    if not text or not model_path:
        return 0
    try:
        with _cache(cache).lease(model_path) as handle:
            return count_prompt_tokens(handle, text)
    except InferenceRuntimeError as exc:
        logger.error(f"Token counting failed for {model_path}: {exc.message}")
        return 0


def tokenize_path(model_path: str, text: str, cache: Any = None) -> TokenizeResult:
    """
    Tokenize text with the vocabulary of the model at model_path

    Raises:
        InvalidModelFileError, ModelLoadError, TokenizerError
    """
    with _cache(cache).lease(model_path) as handle:
        return tokenize(handle, text)


def get_eos_token(model_path: str, cache: Any = None) -> str:
    """EOS piece of the model at model_path"""
    with _cache(cache).lease(model_path) as handle:
        return get_special_tokens(handle)["eos_token"]


def get_bos_token(model_path: str, cache: Any = None) -> str:
    """BOS piece of the model at model_path"""
    with _cache(cache).lease(model_path) as handle:
        return get_special_tokens(handle)["bos_token"]


def get_chat_template(model_path: str, cache: Any = None) -> Optional[str]:
    """Chat template stored in the GGUF metadata, or None"""
    with _cache(cache).lease(model_path) as handle:
        metadata = handle.engine.metadata(_get_model(handle)) or {}
        return metadata.get(CHAT_TEMPLATE_KEY)

"""
Engine adapter - Thin wrapper around the llama-cpp-python low-level bindings

Responsibilities:
- Own every call into llama.cpp (model, context, batch, sampler, log hook)
- Own every call into the llava/clip bindings (vision encoder, image embeds)
- Raise RuntimeError on native failures so callers map them to typed errors

No policy lives here: staging, caching, platform limits and error messages are
decided by loader.py, model_cache.py and generator.py. Tests replace this class
with an in-memory fake that exposes the same methods.
"""

import ctypes
import threading
from typing import Any, Callable, Dict, List, Optional

# llama.cpp imports - guarded so the runtime can start (and report) without the native library
LLAMA_CPP_AVAILABLE = False
LLAMA_CPP_IMPORT_ERROR: Optional[str] = None
LLAVA_AVAILABLE = False

try:
    import llama_cpp
    from llama_cpp import _internals as llama_internals

    LLAMA_CPP_AVAILABLE = True
except Exception as exc:  # noqa: BLE001
    # Record reason for diagnostics while keeping runtime alive on failure.
    llama_cpp = None  # type: ignore
    llama_internals = None  # type: ignore
    LLAMA_CPP_IMPORT_ERROR = f"llama-cpp-python import failed: {exc}"

try:
    if LLAMA_CPP_AVAILABLE:
        from llama_cpp import llava_cpp

        LLAVA_AVAILABLE = True
    else:
        raise ImportError
except (ImportError, OSError):
    llava_cpp = None  # type: ignore
    LLAVA_AVAILABLE = False


def _require_engine() -> None:
    if not LLAMA_CPP_AVAILABLE:
        raise RuntimeError(LLAMA_CPP_IMPORT_ERROR or "llama-cpp-python is not installed")


class LlamaCppEngine:
    """Adapter over llama-cpp-python used by the loader and the generation session"""

    def __init__(self) -> None:
        self._backend_ready = False
        self._init_lock = threading.Lock()
        self._log_sink: Optional[Callable[[str], None]] = None
        # ctypes callback must stay referenced while installed
        self._log_callback: Any = None

    # ------------------------------------------------------------------
    # Backend and logging
    # ------------------------------------------------------------------

    def init_backend(self) -> None:
        """Initialize the llama.cpp backend once per process"""
        _require_engine()
        with self._init_lock:
            if self._backend_ready:
                return
            llama_cpp.llama_backend_init()
            self._install_log_hook()
            self._backend_ready = True

    def _install_log_hook(self) -> None:
        @llama_cpp.llama_log_callback
        def _on_log(level: int, text: bytes, user_data: ctypes.c_void_p) -> None:
            sink = self._log_sink
            if sink is not None and text:
                sink(text.decode("utf-8", errors="replace"))

        self._log_callback = _on_log
        llama_cpp.llama_log_set(self._log_callback, ctypes.c_void_p(0))

    def set_log_sink(self, sink: Optional[Callable[[str], None]]) -> None:
        """Route engine log lines to sink (None silences them)"""
        self._log_sink = sink

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    def load_model(
        self,
        path: str,
        *,
        vocab_only: bool,
        n_gpu_layers: int = 0,
        use_mmap: bool = True,
        use_mlock: bool = False,
    ) -> Any:
        self.init_backend()
        params = llama_cpp.llama_model_default_params()
        params.vocab_only = vocab_only
        params.n_gpu_layers = n_gpu_layers
        params.use_mmap = use_mmap
        params.use_mlock = use_mlock
        try:
            return llama_internals.LlamaModel(path_model=path, params=params, verbose=False)
        except ValueError as exc:
            raise RuntimeError(str(exc)) from exc

    def free_model(self, model: Any) -> None:
        model.close()

    def metadata(self, model: Any) -> Dict[str, str]:
        return model.metadata()

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    def tokenize(self, model: Any, text: str, *, add_bos: bool, parse_special: bool) -> List[int]:
        return model.tokenize(text.encode("utf-8"), add_bos, parse_special)

    def add_bos(self, model: Any) -> bool:
        return bool(model.add_bos_token())

    def token_to_piece(self, model: Any, token: int, *, special: bool = False) -> bytes:
        # control tokens (BOS/EOS/EOT) render as empty unless special is set
        return model.token_to_piece(token, special=special)

    def token_eos(self, model: Any) -> int:
        return model.token_eos()

    def token_bos(self, model: Any) -> int:
        return model.token_bos()

    def is_eog(self, model: Any, token: int) -> bool:
        vocab_is_eog = getattr(llama_cpp, "llama_vocab_is_eog", None)
        if vocab_is_eog is not None and getattr(model, "vocab", None) is not None:
            return bool(vocab_is_eog(model.vocab, token))
        return bool(llama_cpp.llama_token_is_eog(model.model, token))

    # ------------------------------------------------------------------
    # Contexts and decoding
    # ------------------------------------------------------------------

    def new_context(self, model: Any, *, n_ctx: int, n_batch: int, n_threads: int) -> Any:
        params = llama_cpp.llama_context_default_params()
        params.n_ctx = n_ctx
        params.n_batch = n_batch
        params.n_threads = n_threads
        params.n_threads_batch = n_threads
        try:
            return llama_internals.LlamaContext(model=model, params=params, verbose=False)
        except ValueError as exc:
            raise RuntimeError(str(exc)) from exc

    def free_context(self, ctx: Any) -> None:
        ctx.close()

    def n_ctx(self, ctx: Any) -> int:
        return ctx.n_ctx()

    def decode(self, ctx: Any, tokens: List[int], n_past: int) -> None:
        """Evaluate tokens at positions n_past.. (logits kept for the last one)"""
        batch = llama_internals.LlamaBatch(n_tokens=max(len(tokens), 1), embd=0, n_seq_max=1, verbose=False)
        try:
            batch.set_batch(tokens, n_past=n_past, logits_all=False)
            ctx.decode(batch)
        finally:
            batch.close()

    # ------------------------------------------------------------------
    # Sampling
    # ------------------------------------------------------------------

    def new_sampler(self, *, min_p: float, temperature: float, seed: int) -> Any:
        sampler = llama_internals.LlamaSampler()
        sampler.add_min_p(min_p, 1)
        sampler.add_temp(temperature)
        sampler.add_dist(seed)
        return sampler

    def free_sampler(self, sampler: Any) -> None:
        sampler.close()

    def sample(self, sampler: Any, ctx: Any) -> int:
        return sampler.sample(ctx, -1)

    # ------------------------------------------------------------------
    # Vision encoder (llava / clip)
    # ------------------------------------------------------------------

    def load_clip(self, path: str, *, verbosity: int = 1) -> Any:
        _require_engine()
        if not LLAVA_AVAILABLE:
            raise RuntimeError("llava bindings are not available in this llama-cpp-python build")
        clip = llava_cpp.clip_model_load(path.encode("utf-8"), verbosity)
        if not clip:
            raise RuntimeError(f"clip_model_load returned NULL for {path}")
        return clip

    def free_clip(self, clip: Any) -> None:
        llava_cpp.clip_free(clip)

    def embed_image(self, clip: Any, n_threads: int, image_bytes: bytes) -> Any:
        data = (ctypes.c_uint8 * len(image_bytes)).from_buffer(bytearray(image_bytes))
        embed = llava_cpp.llava_image_embed_make_with_bytes(clip, n_threads, data, len(image_bytes))
        if not embed:
            raise RuntimeError("llava_image_embed_make_with_bytes returned NULL")
        return embed

    def image_embed_positions(self, embed: Any) -> int:
        return int(embed.contents.n_image_pos)

    def eval_image_embed(self, ctx: Any, embed: Any, n_batch: int, n_past: int) -> int:
        """Evaluate an image embedding and return the advanced n_past"""
        c_past = ctypes.c_int(n_past)
        ok = llava_cpp.llava_eval_image_embed(ctx.ctx, embed, n_batch, ctypes.byref(c_past))
        if not ok:
            raise RuntimeError("llava_eval_image_embed failed")
        return c_past.value

    def free_image_embed(self, embed: Any) -> None:
        llava_cpp.llava_image_embed_free(embed)


# Global engine instance
_engine: Optional[LlamaCppEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> LlamaCppEngine:
    """Process-wide engine adapter (lazy)"""
    global _engine
    if _engine is None:
        with _engine_lock:
            if _engine is None:
                _engine = LlamaCppEngine()
    return _engine

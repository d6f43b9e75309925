"""
Model loader - GGUF validation and staged loads on top of the engine adapter

Responsibilities:
- Validate GGUF files before any native load is attempted
- Load a vocabulary-only handle (cheap probe) or a full handle (weights resident)
- Apply the mobile platform policy (CPU only, at most 2 threads)
- Reclaim process memory between load stages
- No caching logic (model_cache.py decides what stays resident)
"""

import ctypes
import ctypes.util
import gc
import os
import struct
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import InvalidModelFileError, ModelLoadError
from config_loader import get_config
from benchmark_utils import BenchmarkAwareLogger

# Benchmark-aware logger
_logger = BenchmarkAwareLogger("loader")

GGUF_MAGIC = b"GGUF"
# Smallest file that can hold a GGUF header
MIN_GGUF_FILE_SIZE = 32
MOBILE_MAX_THREADS = 2


@dataclass
class ModelHandle:
    """
    Reference-counted container for one loaded engine model

    The loader hands out a handle with one reference. Every additional owner
    (the model cache, a running session) calls acquire(); each owner calls
    release() exactly once. The native model is freed when the count drops
    to zero, and never twice.
    """

    model_path: str
    model: Any  # engine model instance
    engine: Any
    vocab_only: bool
    n_gpu_layers: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    loaded_at: float = field(default_factory=time.time)
    _refcount: int = field(default=1, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def refcount(self) -> int:
        return self._refcount

    @property
    def is_freed(self) -> bool:
        return self.model is None

    def acquire(self) -> "ModelHandle":
        with self._lock:
            if self.model is None:
                raise RuntimeError(f"Model handle for {self.model_path} already freed")
            self._refcount += 1
        return self

    def release(self) -> None:
        with self._lock:
            if self._refcount <= 0:
                return
            self._refcount -= 1
            if self._refcount > 0:
                return
            model, self.model = self.model, None
        self.engine.free_model(model)
        _logger.debug("Freed model", path=self.model_path, vocab_only=self.vocab_only)


def verify_model_file(path: str, detailed_check: bool = True) -> int:
    """
    Check that path is a readable GGUF file

    Args:
        path: File to check
        detailed_check: Also read the format version after the magic

    Returns:
        GGUF version (0 when detailed_check is False)

    Raises:
        InvalidModelFileError: If the file is missing, too small or not GGUF
    """
    try:
        size = os.path.getsize(path)
        if size < MIN_GGUF_FILE_SIZE:
            raise InvalidModelFileError(path, f"file too small ({size} bytes)")

        with open(path, "rb") as f:
            magic = f.read(4)
            if magic != GGUF_MAGIC:
                raise InvalidModelFileError(path, "not a GGUF file (bad magic)")
            version = 0
            if detailed_check:
                raw = f.read(4)
                if len(raw) != 4:
                    raise InvalidModelFileError(path, "truncated GGUF header")
                (version,) = struct.unpack("<I", raw)
    except OSError as exc:
        raise InvalidModelFileError(path, f"cannot read file: {exc.strerror or exc}") from exc

    _logger.debug("Verified GGUF file", path=path, size=size, version=version)
    return version


def is_mobile_platform() -> bool:
    """True on Android and iOS builds of CPython"""
    if sys.platform in ("android", "ios"):
        return True
    return hasattr(sys, "getandroidapilevel")


def apply_platform_policy(n_gpu_layers: int, n_threads: int) -> Tuple[int, int]:
    """
    Clamp engine resources for the current platform

    Mobile devices run CPU-only with at most MOBILE_MAX_THREADS threads.
    """
    if is_mobile_platform():
        return 0, max(1, min(n_threads, MOBILE_MAX_THREADS))
    return n_gpu_layers, max(1, n_threads)


_libc: Optional[Any] = None


def _malloc_trim() -> None:
    global _libc
    if _libc is None:
        name = ctypes.util.find_library("c")
        if not name:
            return
        _libc = ctypes.CDLL(name)
    trim = getattr(_libc, "malloc_trim", None)
    if trim is not None:
        trim(0)


def _empty_working_set() -> None:
    kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
    psapi = ctypes.windll.psapi  # type: ignore[attr-defined]
    psapi.EmptyWorkingSet(kernel32.GetCurrentProcess())


def release_memory(delay_seconds: Optional[float] = None) -> None:
    """
    Return freed memory to the OS between load stages

    Collects garbage, trims the glibc heap (Linux) or the working set
    (Windows), then sleeps briefly so the allocator settles.
    """
    gc.collect()
    try:
        if sys.platform.startswith("linux"):
            _malloc_trim()
        elif sys.platform == "win32":
            _empty_working_set()
    except (OSError, AttributeError) as exc:
        _logger.debug("Platform memory trim unavailable", error=str(exc))

    if delay_seconds is None:
        delay_seconds = get_config().get_memory_release_delay_seconds()
    if delay_seconds > 0:
        time.sleep(delay_seconds)


def _load(engine: Any, model_path: str, *, vocab_only: bool, n_gpu_layers: int) -> ModelHandle:
    phase = "vocab" if vocab_only else "full"
    start = time.perf_counter()
    try:
        model = engine.load_model(
            model_path,
            vocab_only=vocab_only,
            n_gpu_layers=n_gpu_layers,
            use_mmap=True,
            use_mlock=False,
        )
    except MemoryError:
        raise
    except Exception as exc:
        raise ModelLoadError(model_path, str(exc), phase=phase) from exc
    if model is None:
        raise ModelLoadError(model_path, "engine returned no model", phase=phase)

    elapsed_ms = (time.perf_counter() - start) * 1000
    _logger.info(
        "Model loaded",
        path=model_path,
        vocab_only=vocab_only,
        n_gpu_layers=n_gpu_layers,
        ms=f"{elapsed_ms:.1f}",
    )
    return ModelHandle(
        model_path=model_path,
        model=model,
        engine=engine,
        vocab_only=vocab_only,
        n_gpu_layers=n_gpu_layers,
        metadata={"load_ms": elapsed_ms},
    )


def load_vocab_only(engine: Any, model_path: str) -> ModelHandle:
    """
    Load only the vocabulary of a GGUF model

    Raises:
        ModelLoadError: phase "vocab"
    """
    return _load(engine, model_path, vocab_only=True, n_gpu_layers=0)


def load_full(engine: Any, model_path: str, n_gpu_layers: int = 0) -> ModelHandle:
    """
    Load a GGUF model with weights resident (mmap on, mlock off)

    Raises:
        ModelLoadError: phase "full"
    """
    return _load(engine, model_path, vocab_only=False, n_gpu_layers=n_gpu_layers)

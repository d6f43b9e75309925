#!/usr/bin/env python3
"""
Model Cache - vocabulary-only model handles

LRU + TTL bounded cache of loaded model handles keyed by model path. The
generation session uses it for the cheap vocabulary probe, and the tokenize
and special-token operations use it so repeated requests against the same
file do not reload the vocabulary.

Handles are reference counted: the cache owns one reference per entry and
every caller of get_or_load() owns one more, so eviction never frees a model
that a session is still using.
"""

import logging
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional

from config_loader import get_config
from errors import InvalidModelFileError
from models.loader import ModelHandle, load_vocab_only, verify_model_file


class ExpiryPolicy(str, Enum):
    """Which timestamp the TTL is measured from"""

    CREATED_AT = "created_at"
    LAST_ACCESS = "last_access"


@dataclass
class ModelCacheEntry:
    """Cache entry for a loaded model handle"""

    model_path: str
    handle: ModelHandle
    created_at: float
    last_access: float
    access_count: int = 1


class ModelCacheConfig:
    """Configuration for the model cache"""

    def __init__(
        self,
        max_cached_models: int = 5,
        ttl_seconds: float = 1800.0,
        expiry_policy: ExpiryPolicy = ExpiryPolicy.CREATED_AT,
    ):
        if max_cached_models < 1:
            raise ValueError(f"max_cached_models must be >= 1, got {max_cached_models}")
        self.max_cached_models = max_cached_models
        self.ttl_seconds = ttl_seconds
        self.expiry_policy = ExpiryPolicy(expiry_policy)

    @classmethod
    def from_runtime_config(cls) -> "ModelCacheConfig":
        config = get_config()
        return cls(
            max_cached_models=config.max_cached_models,
            ttl_seconds=config.cache_ttl_seconds,
            expiry_policy=ExpiryPolicy(config.cache_expiry_policy),
        )


def _default_loader(model_path: str) -> ModelHandle:
    from models.engine import get_engine

    verify_model_file(model_path, detailed_check=False)
    return load_vocab_only(get_engine(), model_path)


class ModelCache:
    """
    Capacity and TTL bounded cache of vocabulary-only model handles.

    Example:
        ```python
        cache = get_model_cache()

        with cache.lease(model_path) as handle:
            eos = handle.engine.token_eos(handle.model)
        ```
    """

    def __init__(
        self,
        config: Optional[ModelCacheConfig] = None,
        loader_fn: Optional[Callable[[str], ModelHandle]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or ModelCacheConfig()
        self.loader_fn = loader_fn or _default_loader
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        # Ordered by last_access, oldest first
        self.cache: "OrderedDict[str, ModelCacheEntry]" = OrderedDict()
        # Held across loads: two callers never load the same file twice
        self._lock = threading.Lock()

        # Statistics
        self.cache_hits = 0
        self.cache_misses = 0
        self.eviction_count = 0
        self.expiration_count = 0
        self.total_load_time = 0.0
        self.load_count = 0

        self.logger.info(
            f"ModelCache initialized (max_models={self.config.max_cached_models}, "
            f"ttl={self.config.ttl_seconds}s, policy={self.config.expiry_policy.value})"
        )

    def _is_valid(self, entry: ModelCacheEntry, now: float) -> bool:
        if self.config.expiry_policy is ExpiryPolicy.LAST_ACCESS:
            reference = entry.last_access
        else:
            reference = entry.created_at
        return (now - reference) < self.config.ttl_seconds

    def get_or_load(self, model_path: str) -> ModelHandle:
        """
        Get a handle from cache or load it.

        The caller owns one reference on the returned handle and must call
        handle.release() when done (or use lease()).

        Raises:
            InvalidModelFileError: If the file fails validation
            ModelLoadError: If the vocabulary cannot be loaded
        """
        with self._lock:
            now = self.clock()
            entry = self.cache.get(model_path)

            if entry is not None:
                if self._is_valid(entry, now) and not entry.handle.is_freed:
                    self.cache_hits += 1
                    entry.last_access = now
                    entry.access_count += 1
                    self.cache.move_to_end(model_path)
                    self.logger.debug(f"Cache hit: {model_path}")
                    return entry.handle.acquire()

                self.expiration_count += 1
                self._remove(model_path, reason="expired")

            self.cache_misses += 1
            self.logger.debug(f"Cache miss: {model_path} - loading")

            start_time = time.perf_counter()
            handle = self.loader_fn(model_path)
            if handle is None:
                raise InvalidModelFileError(model_path, "loader returned no handle")
            load_time = time.perf_counter() - start_time
            self.total_load_time += load_time
            self.load_count += 1

            if len(self.cache) >= self.config.max_cached_models:
                self._evict_oldest()

            now = self.clock()
            self.cache[model_path] = ModelCacheEntry(
                model_path=model_path,
                handle=handle,
                created_at=now,
                last_access=now,
            )

            self.logger.info(
                f"Model cached: {model_path} "
                f"(load_time={load_time:.2f}s, cached_models={len(self.cache)})"
            )

            # One reference for the cache, one for the caller
            return handle.acquire()

    @contextmanager
    def lease(self, model_path: str) -> Iterator[ModelHandle]:
        """Context-manager form of get_or_load() that always releases"""
        handle = self.get_or_load(model_path)
        try:
            yield handle
        finally:
            handle.release()

    def is_cached(self, model_path: str) -> bool:
        with self._lock:
            return model_path in self.cache

    def get_model_info(self, model_path: str) -> Optional[Dict[str, Any]]:
        """Get information about a cached model."""
        with self._lock:
            entry = self.cache.get(model_path)
            if not entry:
                return None
            return self._entry_info(entry)

    def _entry_info(self, entry: ModelCacheEntry) -> Dict[str, Any]:
        return {
            'model_path': entry.model_path,
            'created_at': entry.created_at,
            'last_access': entry.last_access,
            'access_count': entry.access_count,
            'refcount': entry.handle.refcount,
        }

    def list_cached_models(self) -> List[Dict[str, Any]]:
        """List all cached models with their info."""
        with self._lock:
            return [self._entry_info(entry) for entry in self.cache.values()]

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total_requests = self.cache_hits + self.cache_misses
            cache_hit_rate = self.cache_hits / total_requests if total_requests > 0 else 0
            avg_load_time = self.total_load_time / self.load_count if self.load_count > 0 else 0

            return {
                'cached_models': len(self.cache),
                'max_cached_models': self.config.max_cached_models,
                'ttl_seconds': self.config.ttl_seconds,
                'expiry_policy': self.config.expiry_policy.value,
                'cache_hit_rate': cache_hit_rate,
                'cache_hits': self.cache_hits,
                'cache_misses': self.cache_misses,
                'evictions': self.eviction_count,
                'expirations': self.expiration_count,
                'avg_load_time': avg_load_time,
            }

    def clear(self) -> None:
        """Drop every entry (the cache's references only)."""
        with self._lock:
            for model_path in list(self.cache.keys()):
                self._remove(model_path, reason="clear")

    # ==================== Private Methods ====================

    def _evict_oldest(self) -> None:
        """Evict the entry with the oldest last_access."""
        if not self.cache:
            return
        oldest = min(self.cache.values(), key=lambda e: e.last_access)
        self.eviction_count += 1
        self._remove(oldest.model_path, reason="lru")

    def _remove(self, model_path: str, reason: str) -> None:
        entry = self.cache.pop(model_path, None)
        if entry is None:
            return
        self.logger.info(
            f"Evicting model: {model_path} (reason={reason}, "
            f"access_count={entry.access_count}, cached_models={len(self.cache)})"
        )
        entry.handle.release()


# Global cache instance
_model_cache: Optional[ModelCache] = None
_cache_lock = threading.Lock()


def get_model_cache() -> ModelCache:
    """Process-wide model cache (lazy)"""
    global _model_cache
    if _model_cache is None:
        with _cache_lock:
            if _model_cache is None:
                _model_cache = ModelCache(ModelCacheConfig.from_runtime_config())
    return _model_cache


def reset_model_cache() -> None:
    """Clear and drop the global cache (shutdown and tests)"""
    global _model_cache
    with _cache_lock:
        if _model_cache is not None:
            _model_cache.clear()
        _model_cache = None

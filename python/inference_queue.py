"""
Inference Queue - serialized, cancellable execution of generation sessions

One daemon worker thread drains a FIFO queue and runs one GenerationSession
at a time. Callers submit and return immediately; results arrive only through
the request callback, which is invoked on the worker thread.

Callback contract (per request):
- strictly ordered: start signal ("", False), zero or more cumulative
  results (text, False), exactly one terminal call (text, True)
- the terminal text is the final result, "" when cancelled before
  generation began, or an error message starting with "Error:" or
  "Unhandled error:"
- exceptions raised by the callback are logged and never reach the worker
"""

import logging
import queue
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, List, Optional, Set, Tuple

from config_loader import Config
from errors import ConcurrentLoadRejected, UnhandledInternalError
from models.generator import GenerationSession, SafeCallback, SessionState
from models.request import InferenceCallback, InferenceRequest

logger = logging.getLogger(__name__)


class CancellationRegistry:
    """Thread-safe set of cancelled request ids"""

    def __init__(self) -> None:
        self._ids: Set[int] = set()
        self._lock = threading.Lock()

    def cancel(self, request_id: int) -> None:
        with self._lock:
            self._ids.add(request_id)

    def is_cancelled(self, request_id: int) -> bool:
        with self._lock:
            return request_id in self._ids

    def discard(self, request_id: int) -> None:
        with self._lock:
            self._ids.discard(request_id)

    def prune(self, live_ids: Iterable[int]) -> int:
        """Drop entries for ids that are neither queued nor active; returns how many"""
        live = set(live_ids)
        with self._lock:
            stale = self._ids - live
            self._ids -= stale
        return len(stale)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def __contains__(self, request_id: int) -> bool:
        return self.is_cancelled(request_id)


class LoadGate:
    """
    Single-slot gate for the memory-heavy model load phase

    Acquisition never blocks: a second load while one is in progress is
    rejected with ConcurrentLoadRejected.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self, model_path: Optional[str] = None) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise ConcurrentLoadRejected(model_path)
        try:
            yield
        finally:
            self._lock.release()


_STOP = object()


class InferenceQueue:
    """
    FIFO queue with a single lazily started worker thread.

    Example:
        ```python
        q = get_inference_queue()
        q.submit(request, lambda text, done: print(text, done))
        q.cancel(request.request_id)
        ```
    """

    def __init__(
        self,
        *,
        engine: Any = None,
        cache: Any = None,
        config: Optional[Config] = None,
        registry: Optional[CancellationRegistry] = None,
        load_gate: Optional[LoadGate] = None,
    ):
        self.engine = engine
        self.cache = cache
        self.config = config
        self.registry = registry or CancellationRegistry()
        self.load_gate = load_gate or LoadGate()

        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._pending: List[int] = []
        self._pending_lock = threading.Lock()
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()
        self._active_request_id: Optional[int] = None
        self._closed = False

        self.completed_count = 0
        self.cancelled_count = 0
        self.failed_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def submit(self, request: InferenceRequest, callback: InferenceCallback) -> None:
        """Enqueue request and return immediately"""
        if self._closed:
            raise RuntimeError("Inference queue is shut down")
        with self._pending_lock:
            self._pending.append(request.request_id)
        self._queue.put((request, callback))
        self._ensure_worker()
        logger.debug(f"Request {request.request_id} queued (depth={self._queue.qsize()})")

    def cancel(self, request_id: int) -> None:
        """Mark request_id cancelled; idempotent, returns immediately"""
        self.registry.cancel(request_id)
        logger.debug(f"Cancellation requested for {request_id}")

    @property
    def active_request_id(self) -> Optional[int]:
        return self._active_request_id

    def qsize(self) -> int:
        return self._queue.qsize()

    def pending_request_ids(self) -> List[int]:
        with self._pending_lock:
            return list(self._pending)

    def get_stats(self) -> dict:
        return {
            "queued": self.qsize(),
            "active_request_id": self._active_request_id,
            "load_in_progress": self.load_gate.in_progress,
            "cancellations_pending": len(self.registry),
            "completed": self.completed_count,
            "cancelled": self.cancelled_count,
            "failed": self.failed_count,
        }

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop accepting work; the worker exits after draining queued requests"""
        self._closed = True
        with self._worker_lock:
            worker = self._worker
        if worker is None:
            return
        self._queue.put(_STOP)
        if wait:
            worker.join(timeout)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        with self._worker_lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._worker_loop, name="inference-worker", daemon=True
            )
            self._worker.start()

    def _worker_loop(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                request, callback = item
                self._run_one(request, callback)
            finally:
                self._queue.task_done()

    def _run_one(self, request: InferenceRequest, callback: InferenceCallback) -> None:
        request_id = request.request_id
        guarded = SafeCallback(callback, request_id)
        with self._pending_lock:
            if request_id in self._pending:
                self._pending.remove(request_id)
        self._active_request_id = request_id

        try:
            if self.registry.is_cancelled(request_id):
                logger.info(f"Request {request_id} cancelled before start")
                self.cancelled_count += 1
                guarded("", True)
                return

            session = GenerationSession(
                request,
                guarded,
                engine=self.engine,
                cache=self.cache,
                registry=self.registry,
                gate=self.load_gate,
                config=self.config,
            )
            state = session.run()
            if state is SessionState.CANCELLED:
                self.cancelled_count += 1
            elif state is SessionState.FAILED:
                self.failed_count += 1
            else:
                self.completed_count += 1
        except Exception as exc:
            # Session construction failed (engine or cache unavailable)
            logger.exception(f"Request {request_id} failed before start")
            self.failed_count += 1
            guarded(UnhandledInternalError.wrap(exc, request.model_path).message, True)
        finally:
            self._active_request_id = None
            self.registry.discard(request_id)
            pruned = self.registry.prune(self.pending_request_ids())
            if pruned:
                logger.debug(f"Pruned {pruned} stale cancellation entries")


# Global queue instance
_inference_queue: Optional[InferenceQueue] = None
_queue_lock = threading.Lock()


def get_inference_queue() -> InferenceQueue:
    """Process-wide inference queue (lazy)"""
    global _inference_queue
    if _inference_queue is None:
        with _queue_lock:
            if _inference_queue is None:
                _inference_queue = InferenceQueue()
    return _inference_queue


def reset_inference_queue(wait: bool = True) -> None:
    """Shut down and drop the global queue (shutdown and tests)"""
    global _inference_queue
    with _queue_lock:
        if _inference_queue is not None:
            _inference_queue.shutdown(wait=wait)
        _inference_queue = None


def inference(request: InferenceRequest, callback: InferenceCallback) -> None:
    """Submit request to the process-wide queue"""
    get_inference_queue().submit(request, callback)


def cancel_inference(request_id: int) -> None:
    """Cancel request_id on the process-wide queue"""
    get_inference_queue().cancel(request_id)


def run_to_completion(
    request: InferenceRequest, timeout: Optional[float] = None, q: Optional[InferenceQueue] = None
) -> Tuple[str, List[Tuple[str, bool]]]:
    """Submit request and block until its terminal callback; returns (final_text, calls)"""
    done = threading.Event()
    calls: List[Tuple[str, bool]] = []

    def _collect(text: str, is_done: bool) -> None:
        calls.append((text, is_done))
        if is_done:
            done.set()

    (q or get_inference_queue()).submit(request, _collect)
    if not done.wait(timeout):
        raise TimeoutError(f"Request {request.request_id} did not finish within {timeout}s")
    return calls[-1][0], calls

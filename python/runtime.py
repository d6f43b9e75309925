#!/usr/bin/env python3
"""
gguf-serving runtime: JSON-RPC 2.0 over stdio

One parent process writes requests to stdin, one per line, and reads
responses and notifications from stdout. Generation runs on the inference
queue worker; each callback is handed back to the event loop and written as
an inference.chunk notification. Logs go to stderr.
"""

import sys
import asyncio
import logging
from typing import Dict, Any, Optional
import orjson
import psutil

from config_loader import get_config
from model_cache import ModelCache, get_model_cache
from inference_queue import InferenceQueue, get_inference_queue
from models import engine as engine_module
from models import tokenizer
from models.request import InferenceRequest
from errors import (
    InferenceRuntimeError,
    InvalidInputError,
    ERROR_CODE_MAP,
)
import validators

logging.basicConfig(
    level=logging.INFO,
    format='[%(asctime)s] [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S',
    stream=sys.stderr,
)
logger = logging.getLogger(__name__)

RUNTIME_VERSION = "0.1.0"


class RuntimeServer:
    """Stdio JSON-RPC front end for the inference queue, model cache and tokenizer helpers"""

    def __init__(
        self,
        queue: Optional[InferenceQueue] = None,
        cache: Optional[ModelCache] = None,
        out: Any = None,
    ):
        self.queue = queue or get_inference_queue()
        self.cache = cache or get_model_cache()
        self.out = out or sys.stdout
        self.shutdown_requested = False
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        # request_id -> True while the request has not sent its terminal chunk
        self.active_requests: Dict[int, bool] = {}

    def _write(self, payload: Dict[str, Any]) -> None:
        self.out.write(orjson.dumps(payload).decode("utf-8") + "\n")
        self.out.flush()

    def _notify(self, method: str, params: Dict[str, Any]) -> None:
        self._write({"jsonrpc": "2.0", "method": method, "params": params})

    def _call_threadsafe(self, fn: Any, *args: Any) -> None:
        """Schedule fn onto the event loop from the worker thread"""
        loop = self.loop
        if loop is None or loop.is_closed():
            logger.warning(f"Dropping {getattr(fn, '__name__', fn)} call: event loop not running")
            return
        loop.call_soon_threadsafe(fn, *args)

    def _notify_threadsafe(self, method: str, params: Dict[str, Any]) -> None:
        self._call_threadsafe(self._notify, method, params)

    def _deliver_chunk(self, request_id: int, text: str, done: bool) -> None:
        if done:
            self.active_requests.pop(request_id, None)
        self._notify("inference.chunk", {"request_id": request_id, "text": text, "done": done})

    def _serialize_error(self, exc: Exception) -> Dict[str, Any]:
        """Map an exception to a JSON-RPC error object"""
        if isinstance(exc, InferenceRuntimeError):
            data = {"model_path": exc.model_path} if exc.model_path else {}
            return {"code": ERROR_CODE_MAP.get(type(exc), -32099), "message": exc.message, "data": data}
        if isinstance(exc, ValueError):
            logger.warning(f"Rejected params: {exc}")
            return {"code": -32602, "message": str(exc), "data": {"type": "ValidationError"}}
        # Internal details stay in the log
        logger.error(f"Unexpected error in runtime: {type(exc).__name__}: {exc}")
        return {
            "code": -32099,
            "message": "An unexpected internal error occurred",
            "data": {"type": "InternalError"},
        }

    async def handle_request(self, request: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Dispatch one JSON-RPC message

        Returns:
            The response object, or None for notifications (no "id" key)
        """
        method = request.get("method")
        params = request.get("params") or {}
        req_id = request.get("id")
        is_notification = "id" not in request

        try:
            if method == "runtime/info":
                result = await self.get_runtime_info()
            elif method == "runtime/state":
                result = await self.get_runtime_state()
            elif method == "shutdown":
                result = await self.shutdown()
            elif method == "inference":
                result = await self.inference(params)
            elif method == "cancel":
                result = await self.cancel(params)
            elif method == "tokenize":
                result = await self.tokenize_request(params)
            elif method == "get_eos_token":
                result = await self.special_token_request(params, tokenizer.get_eos_token)
            elif method == "get_bos_token":
                result = await self.special_token_request(params, tokenizer.get_bos_token)
            elif method == "get_chat_template":
                result = await self.special_token_request(params, tokenizer.get_chat_template)
            else:
                raise ValueError(f"Unknown method: {method}")
        except Exception as exc:
            error = self._serialize_error(exc)
            if is_notification:
                logger.error(f"Notification {method} failed: {error['message']}")
                return None
            return {"jsonrpc": "2.0", "id": req_id, "error": error}

        if is_notification:
            return None
        return {"jsonrpc": "2.0", "id": req_id, "result": result}

    async def get_runtime_info(self) -> Dict[str, Any]:
        """Version, engine availability, capabilities and process memory"""
        # Resident and virtual size of this process
        mem_info = psutil.Process().memory_info()
        memory = {"rss": mem_info.rss, "vms": mem_info.vms}

        engine_supported = engine_module.LLAMA_CPP_AVAILABLE
        if engine_supported:
            import llama_cpp

            engine_version = getattr(llama_cpp, "__version__", "unknown")
        else:
            engine_version = engine_module.LLAMA_CPP_IMPORT_ERROR or "unsupported"

        capabilities = [
            "inference",
            "cancel",
            "tokenize",
            "get_eos_token",
            "get_bos_token",
            "get_chat_template",
        ]
        if engine_module.LLAVA_AVAILABLE:
            capabilities.append("multimodal")

        return {
            "version": RUNTIME_VERSION,
            "llama_cpp_version": engine_version,
            "protocol": "json-rpc-2.0",
            "capabilities": capabilities,
            "engine_supported": engine_supported,
            "memory": memory,
        }

    async def get_runtime_state(self) -> Dict[str, Any]:
        """Return queue and cache state"""
        return {
            "queue": self.queue.get_stats(),
            "cache": self.cache.get_stats(),
            "cached_models": self.cache.list_cached_models(),
            "active_requests": sorted(self.active_requests),
            "memory_rss": psutil.Process().memory_info().rss,
        }

    async def inference(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Queue an inference request; results stream as inference.chunk notifications"""
        request_id = params.get("request_id")
        log_sink = None
        if params.get("stream_logs"):
            def log_sink(line: str) -> None:
                self._notify_threadsafe("inference.log", {"request_id": request_id, "line": line})

        req = InferenceRequest.from_params(params, log_sink=log_sink)
        if req.request_id in self.active_requests:
            raise InvalidInputError(f"request_id {req.request_id} is already in use")

        def on_result(text: str, done: bool) -> None:
            self._call_threadsafe(self._deliver_chunk, req.request_id, text, done)

        self.active_requests[req.request_id] = True
        self.queue.submit(req, on_result)
        return {"request_id": req.request_id, "queued": self.queue.qsize()}

    async def cancel(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Cancel a queued or running request (idempotent)"""
        request_id = params.get("request_id")
        if isinstance(request_id, bool) or not isinstance(request_id, int):
            raise ValueError("request_id must be an integer")
        self.queue.cancel(request_id)
        return {"success": True}

    async def tokenize_request(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Tokenize text with a model's vocabulary"""
        validators.validate_tokenize_params(params)
        model_path = params["model_path"]
        text = params.get("text") or ""

        if not text:
            return {"tokens": [], "token_strings": [], "count": 0}

        result = await asyncio.to_thread(tokenizer.tokenize_path, model_path, text, self.cache)
        return {
            "tokens": result.tokens,
            "token_strings": result.token_strings,
            "count": len(result.tokens),
        }

    async def special_token_request(self, params: Dict[str, Any], lookup: Any) -> Dict[str, Any]:
        model_path = validators.validate_model_path(params.get("model_path"))
        value = await asyncio.to_thread(lookup, model_path, self.cache)
        return {"value": value}

    async def shutdown(self) -> Dict[str, Any]:
        """Cancel in-flight work, drain the queue and drop cached vocabularies"""
        self.shutdown_requested = True

        for request_id in list(self.active_requests):
            self.queue.cancel(request_id)

        await asyncio.to_thread(self.queue.shutdown, True, 30.0)

        stats = self.cache.get_stats()
        logger.info(f"ModelCache final stats: {stats}")
        self.cache.clear()

        return {"success": True}

    def _error_line(self, code: int, message: str) -> None:
        self._write({"jsonrpc": "2.0", "id": None, "error": {"code": code, "message": message}})

    async def run(self, reader: Any = None) -> None:
        """Serve newline-delimited JSON-RPC from reader (stdin) until EOF or shutdown"""
        limit = get_config().max_buffer_size
        self.loop = asyncio.get_running_loop()
        reader = reader or sys.stdin

        # A message may span several lines; pending holds the unparsed prefix
        pending = ""
        pending_bytes = 0

        while not self.shutdown_requested:
            line = await self.loop.run_in_executor(None, reader.readline)
            if not line:
                break

            size = len(line.encode("utf-8"))
            if pending_bytes + size > limit:
                self._error_line(-32600, f"Buffer overflow: would exceed {limit} bytes")
                pending, pending_bytes = "", 0
                continue
            pending += line
            pending_bytes += size

            try:
                request = orjson.loads(pending)
            except orjson.JSONDecodeError:
                continue
            pending, pending_bytes = "", 0

            if not isinstance(request, dict):
                self._error_line(-32600, "Invalid Request: expected a JSON object")
                continue

            response = await self.handle_request(request)
            if response is not None:
                self._write(response)

        # call_soon_threadsafe notifications queued by the worker still get written
        await asyncio.sleep(0)


def main():
    """Console entry point (gguf-serving-runtime)"""
    logger.info("gguf-serving runtime ready")

    server = RuntimeServer()
    asyncio.run(server.run())


if __name__ == "__main__":
    main()

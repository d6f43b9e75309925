"""
Benchmark utilities - Lightweight per-request logging

Benchmark mode (GGUF_BENCHMARK_MODE=1) disables non-critical output to minimize overhead:
- Verbose session logging (load stages, throughput lines)
- Debug output

Warnings and errors are always emitted. A session logger can be bound to a
caller-supplied sink so that its lines (and the engine's own log lines) reach
the caller instead of stderr.
"""

import os
import sys
from typing import Any, Callable, Optional


LogSink = Callable[[str], None]

# Global benchmark mode flag (cached on import)
_BENCHMARK_MODE = os.getenv("GGUF_BENCHMARK_MODE", "").strip() == "1"


def is_benchmark_mode() -> bool:
    """
    Check if running in benchmark mode

    Returns:
        True if GGUF_BENCHMARK_MODE=1 is set
    """
    return _BENCHMARK_MODE


class BenchmarkAwareLogger:
    """
    Logger that respects benchmark mode

    In benchmark mode (GGUF_BENCHMARK_MODE=1):
    - info/debug calls are no-ops
    - warning/error calls still work (critical for debugging)

    Usage:
        logger = BenchmarkAwareLogger("session", sink=request.log_sink)
        logger.info("Loading model", path=model_path)
        logger.error("This always prints")
    """

    def __init__(self, name: str, sink: Optional[LogSink] = None):
        """
        Initialize logger

        Args:
            name: Logger name (typically module or session name)
            sink: Optional line consumer; stderr is used when omitted
        """
        self.name = name
        self.sink = sink
        self.benchmark_mode = _BENCHMARK_MODE

    def _format_message(self, level: str, msg: str, **kwargs: Any) -> str:
        """Format log message with context"""
        if kwargs:
            ctx = " ".join(f"{k}={v}" for k, v in kwargs.items())
            return f"[{self.name}] {level}: {msg} ({ctx})"
        return f"[{self.name}] {level}: {msg}"

    def _emit(self, line: str) -> None:
        if self.sink is not None:
            self.sink(line)
        else:
            print(line, file=sys.stderr, flush=True)

    def raw(self, line: str) -> None:
        """Forward an already formatted line (engine log output) unless in benchmark mode"""
        if not self.benchmark_mode:
            self._emit(line.rstrip("\n"))

    def debug(self, msg: str, **kwargs: Any) -> None:
        """Log debug message (disabled in benchmark mode)"""
        if not self.benchmark_mode:
            self._emit(self._format_message("DEBUG", msg, **kwargs))

    def info(self, msg: str, **kwargs: Any) -> None:
        """Log info message (disabled in benchmark mode)"""
        if not self.benchmark_mode:
            self._emit(self._format_message("INFO", msg, **kwargs))

    def warning(self, msg: str, **kwargs: Any) -> None:
        """Log warning message (always enabled)"""
        self._emit(self._format_message("WARNING", msg, **kwargs))

    def error(self, msg: str, **kwargs: Any) -> None:
        """Log error message (always enabled)"""
        self._emit(self._format_message("ERROR", msg, **kwargs))

"""
LiveChart Core — Observability

Structured logging setup, timing spans around engine calls, and
per-engine call/latency counters.

Usage:
    configure_logging("DEBUG")
    with trace_span("ta_engine.compute_indicators", bars=len(bars)):
        result = compute_indicators(bars)
"""

from __future__ import annotations

import functools
import logging
import sys
import time
from contextlib import contextmanager
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

# Spans slower than this are reported at warning level
_SLOW_SPAN_MS = 250.0

_configured = False


# ──────────────────────────────────────────────
# Configuration
# ──────────────────────────────────────────────

def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """Configure structlog processors once per process.

    Falls back to Settings.log_level / Settings.log_json when arguments
    are omitted.
    """
    global _configured
    if level is None or json_output is None:
        from livechart.config import get_settings

        settings = get_settings()
        level = level or settings.log_level
        json_output = settings.log_json if json_output is None else json_output

    log_level = logging.getLevelName(level.upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    _configured = True
    logger.debug("logging_configured", level=level, json=json_output)


def is_configured() -> bool:
    return _configured


# ──────────────────────────────────────────────
# Timing Spans
# ──────────────────────────────────────────────

@contextmanager
def trace_span(name: str, **context: Any):
    """Context manager that times a code block and logs the duration.

    Args:
        name: Name of the span (e.g., "ta_engine.compute_indicators").
        **context: Extra key/value pairs attached to the log events.
    """
    start = time.perf_counter()
    success = True
    logger.debug("trace_span_start", span_name=name, **context)
    try:
        yield
    except Exception:
        success = False
        raise
    finally:
        elapsed_ms = (time.perf_counter() - start) * 1000
        engine_metrics.record_call(name, elapsed_ms, success=success)
        if elapsed_ms > _SLOW_SPAN_MS:
            logger.warning("trace_span_slow", span_name=name, elapsed_ms=round(elapsed_ms, 2), **context)
        else:
            logger.debug("trace_span_end", span_name=name, elapsed_ms=round(elapsed_ms, 2), **context)


def traced(name: Optional[str] = None):
    """Decorator to time a function as a span.

    Usage:
        @traced("pattern_engine.detect_patterns")
        def detect_patterns(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        span_name = name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with trace_span(span_name):
                return func(*args, **kwargs)

        return wrapper

    return decorator


# ──────────────────────────────────────────────
# Engine Performance Metrics
# ──────────────────────────────────────────────

class EngineMetrics:
    """Track call counts and latency per traced span."""

    def __init__(self):
        self._call_counts: dict[str, int] = {}
        self._total_latency: dict[str, float] = {}
        self._error_counts: dict[str, int] = {}

    def record_call(self, span_name: str, latency_ms: float, success: bool = True):
        """Record a single span execution."""
        self._call_counts[span_name] = self._call_counts.get(span_name, 0) + 1
        self._total_latency[span_name] = self._total_latency.get(span_name, 0.0) + latency_ms
        if not success:
            self._error_counts[span_name] = self._error_counts.get(span_name, 0) + 1

    def get_stats(self) -> dict[str, dict]:
        """Get performance stats per span."""
        stats = {}
        for span in self._call_counts:
            calls = self._call_counts[span]
            stats[span] = {
                "total_calls": calls,
                "avg_latency_ms": round(self._total_latency.get(span, 0) / max(calls, 1), 2),
                "error_count": self._error_counts.get(span, 0),
                "error_rate": round(self._error_counts.get(span, 0) / max(calls, 1), 4),
            }
        return stats

    def reset(self):
        """Reset all metrics."""
        self._call_counts.clear()
        self._total_latency.clear()
        self._error_counts.clear()


# Module-level shared instance
engine_metrics = EngineMetrics()

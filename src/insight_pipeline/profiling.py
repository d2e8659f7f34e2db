"""
Latency logging for pipeline steps.
"""

import functools
import inspect
import logging
import time
from typing import Any, Callable

logger = logging.getLogger(__name__)


def profile_latency(phase_name: str = "operation"):
    """
    Decorator logging how long a function or coroutine takes.

    Usage:
        @profile_latency("gateway_invoke")
        async def invoke(...):
            ...

    Logs: "[LATENCY] gateway_invoke: 45.3ms"
    """
    def decorator(func: Callable) -> Callable:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs) -> Any:
                start = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                finally:
                    elapsed_ms = (time.perf_counter() - start) * 1000
                    logger.info(f"[LATENCY] {phase_name}: {elapsed_ms:.1f}ms")
            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                elapsed_ms = (time.perf_counter() - start) * 1000
                logger.info(f"[LATENCY] {phase_name}: {elapsed_ms:.1f}ms")
        return wrapper
    return decorator


class LatencyTracker:
    """
    Context manager to track latency for a code block.

    Usage:
        with LatencyTracker("anonymize", job_id):
            ...
    """
    def __init__(self, phase_name: str = "operation", job_id: str | None = None):
        self.phase_name = phase_name
        self.job_id = job_id
        self.start_time: float | None = None
        self.elapsed_ms: float = 0.0

    def __enter__(self):
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000
        prefix = f"{self.job_id} " if self.job_id else ""
        logger.info(f"[LATENCY] {prefix}{self.phase_name}: {self.elapsed_ms:.1f}ms")


def enable_logging(log_level=logging.INFO):
    """Configure root logging for the CLI."""
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

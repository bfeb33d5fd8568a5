"""Tracing helpers for worker and manager stages."""
from __future__ import annotations

import contextlib
import time
from typing import Iterator, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars


def _logger():
    return structlog.get_logger("powjobs.trace")


def set_context(*, job_id: str, action_type: str, entity_id: str) -> None:
    bind_contextvars(job_id=job_id, action_type=action_type, entity_id=entity_id)
    _logger().debug("trace_context")


def clear_context() -> None:
    clear_contextvars()


@contextlib.contextmanager
def span(*, name: str, job_id: Optional[str] = None) -> Iterator[None]:
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        _logger().info("trace_span", span=name, job_id=job_id, elapsed_ms=elapsed_ms)


def log_height_fallback(*, source: str, reason: str) -> None:
    _logger().warning("height_source_failed", source=source, reason=reason)


def log_height_estimate(*, estimated: int, last_known: int, blocks_elapsed: int) -> None:
    _logger().warning(
        "height_estimated",
        estimated=estimated,
        last_known=last_known,
        blocks_elapsed=blocks_elapsed,
    )


def log_transition(*, job_id: str, old: str, new: str, reason: Optional[str] = None) -> None:
    _logger().info("job_transition", job_id=job_id, old=old, new=new, reason=reason)

"""In-process job counters, exported as a JSON snapshot per run."""
from __future__ import annotations

import contextlib
import time
from collections import Counter
from pathlib import Path
from typing import Dict, Iterator, Optional

import orjson
import structlog

LOGGER = structlog.get_logger(__name__)

JOB_COUNTERS = (
    "jobs_started",
    "jobs_completed",
    "jobs_failed",
    "jobs_killed",
    "jobs_interrupted",
    "jobs_evicted",
)
WORKER_COUNTERS = (
    "progress_lines_ignored",
    "difficulty_updates",
    "worker_errors",
)
PERSIST_COUNTERS = (
    "persist_writes",
    "persist_failures",
    "persist_ms",
)


class MetricsRegistry:
    """Counters for the manager process, optionally broken down by action type."""

    def __init__(self) -> None:
        self._counters: Counter[str] = Counter({name: 0 for name in JOB_COUNTERS + WORKER_COUNTERS + PERSIST_COUNTERS})
        self._by_action: Dict[str, Counter[str]] = {}

    def incr(self, name: str, value: int = 1, *, action_type: Optional[str] = None) -> None:
        self._counters[name] += value
        if action_type is not None:
            self._by_action.setdefault(action_type, Counter())[name] += value

    def get(self, name: str, *, action_type: Optional[str] = None) -> int:
        if action_type is not None:
            return self._by_action.get(action_type, Counter())[name]
        return self._counters[name]

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counters)

    def export(self, *, path: Path, run_id: str) -> Path:
        """Write the counters and per-action breakdown to ``path``."""
        payload = {
            "run_id": run_id,
            "counters": self.snapshot(),
            "by_action_type": {action: dict(counts) for action, counts in self._by_action.items()},
            "generated_at": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(orjson.dumps(payload, option=orjson.OPT_INDENT_2))
        LOGGER.info("metrics_exported", path=str(path), run_id=run_id)
        return path


@contextlib.contextmanager
def record_duration(registry: MetricsRegistry, metric_name: str) -> Iterator[None]:
    """Add the block's elapsed milliseconds to ``metric_name``."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed_ms = int((time.perf_counter() - start) * 1000)
        registry.incr(metric_name, elapsed_ms)
        LOGGER.debug("timer_stop", metric=metric_name, duration_ms=elapsed_ms)

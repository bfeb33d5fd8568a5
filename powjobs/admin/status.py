"""Read-only views over the persisted job registry."""
from __future__ import annotations

from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional

from powjobs.orchestrator.persistence import JobStore


def load_jobs(path: Path) -> Dict[str, dict]:
    """Read the stored job records without touching their status."""
    return JobStore(path).load_raw()


def filter_jobs(jobs: Dict[str, dict], status: Optional[str] = None) -> List[dict]:
    records = sorted(jobs.values(), key=lambda record: record.get("started_at") or "")
    if status:
        records = [record for record in records if record.get("status") == status]
    return records


def summarise_jobs(jobs: Dict[str, dict]) -> Dict[str, object]:
    """Count jobs per status and per action type."""
    by_status: Counter[str] = Counter()
    by_action: Counter[str] = Counter()
    for record in jobs.values():
        by_status[record.get("status", "unknown")] += 1
        by_action[(record.get("job_data") or {}).get("action_type", "unknown")] += 1
    return {
        "total": len(jobs),
        "by_status": dict(by_status),
        "by_action_type": dict(by_action),
    }

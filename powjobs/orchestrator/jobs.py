"""Definitions for proof-of-work jobs and their lifecycle."""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

QUEUED = "queued"
RUNNING = "running"
WAITING = "waiting"
COMPLETED = "completed"
FAILED = "failed"

ACTIVE_STATUSES = frozenset({QUEUED, RUNNING, WAITING})
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})

VALID_ACTION_TYPES = (
    "struct_build_complete",
    "planet_raid_complete",
    "ore_miner_complete",
    "ore_refinery_complete",
)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_job_id() -> str:
    return f"pow_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


class JobData(BaseModel):
    """Immutable input snapshot handed to the worker."""

    model_config = ConfigDict(frozen=True)

    action_type: str
    entity_id: str = Field(min_length=1)
    target_id: Optional[str] = None
    difficulty_range: int = Field(ge=1)
    max_iterations: int = Field(default=1_000_000, ge=1)
    block_start: int
    player_id: str = Field(min_length=1)

    @field_validator("action_type")
    @classmethod
    def _known_action(cls, value: str) -> str:
        if value not in VALID_ACTION_TYPES:
            raise ValueError(f"Invalid action type: {value}. Valid types: {', '.join(VALID_ACTION_TYPES)}")
        return value


@dataclass
class Job:
    """Lifecycle record for one proof-of-work search and its transaction."""

    job_id: str
    job_data: JobData
    status: str = QUEUED
    started_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    waiting_info: Optional[Dict[str, int]] = None
    difficulty_info: Optional[Dict[str, int]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def mark_running(self) -> None:
        """Enter (or return to) the searching state."""
        self.status = RUNNING
        self.waiting_info = None

    def mark_waiting(self, *, current_age: int, target_age: int, blocks_remaining: int) -> None:
        self.status = WAITING
        self.waiting_info = {
            "current_age": current_age,
            "target_age": target_age,
            "blocks_remaining": blocks_remaining,
        }

    def mark_completed(self, completed_at: Optional[str] = None) -> None:
        self.status = COMPLETED
        self.waiting_info = None
        self.completed_at = completed_at or utc_now()

    def mark_failed(self, error: str, completed_at: Optional[str] = None) -> None:
        """Record a terminal failure and capture the reason."""
        self.status = FAILED
        self.error = error
        self.waiting_info = None
        self.completed_at = completed_at or utc_now()

    def append_log(self, key: str, entry: Dict[str, Any]) -> None:
        """Append to one of the run logs (``difficulty_updates`` or ``errors``) kept in ``result``."""
        if self.result is None:
            self.result = {}
        entries: List[Dict[str, Any]] = self.result.setdefault(key, [])
        entries.append(entry)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "job_id": self.job_id,
            "status": self.status,
            "started_at": self.started_at,
            "job_data": self.job_data.model_dump(),
        }
        for key in ("completed_at", "result", "error", "waiting_info", "difficulty_info"):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "Job":
        return cls(
            job_id=payload["job_id"],
            job_data=JobData.model_validate(payload["job_data"]),
            status=payload.get("status", QUEUED),
            started_at=payload.get("started_at") or utc_now(),
            completed_at=payload.get("completed_at"),
            result=payload.get("result"),
            error=payload.get("error"),
            waiting_info=payload.get("waiting_info"),
        )

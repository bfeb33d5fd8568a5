"""Durable storage for the job registry."""
from __future__ import annotations

import fcntl
import os
from pathlib import Path
from typing import Dict, Iterable, Optional, TextIO

import orjson
import structlog

from powjobs.exceptions import PersistenceError, StoreLockedError
from powjobs.orchestrator.jobs import Job

LOGGER = structlog.get_logger(__name__)


class JobStore:
    """Single JSON object keyed by ``job_id``, replaced atomically on every write.

    Writes go to ``<path>.tmp`` and are renamed over the target so a reader
    never sees a partial file. Reads skip records that no longer validate.
    A manager that writes the file first takes an exclusive ``flock`` on
    ``<path>.lock``; readers such as the admin CLI never lock.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock_handle: Optional[TextIO] = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def lock_path(self) -> Path:
        return self._path.with_name(self._path.name + ".lock")

    @property
    def locked(self) -> bool:
        return self._lock_handle is not None

    def acquire(self) -> None:
        """Take ownership of the registry; raises ``StoreLockedError`` if another owner holds it."""
        if self._lock_handle is not None:
            return
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            handle = self.lock_path.open("a", encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(f"Could not open lock file {self.lock_path}: {exc}") from exc
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            raise StoreLockedError(f"Job store {self._path} is in use by another job manager") from exc
        self._lock_handle = handle

    def release(self) -> None:
        if self._lock_handle is None:
            return
        try:
            fcntl.flock(self._lock_handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._lock_handle.close()
            self._lock_handle = None

    def load(self) -> Dict[str, Job]:
        if not self._path.exists():
            return {}
        try:
            payload = orjson.loads(self._path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            LOGGER.warning("job_store_unreadable", path=str(self._path), reason=str(exc))
            return {}
        if not isinstance(payload, dict):
            return {}
        jobs: Dict[str, Job] = {}
        for job_id, record in payload.items():
            try:
                jobs[job_id] = Job.from_dict(record)
            except (KeyError, TypeError, ValueError) as exc:
                LOGGER.warning("job_record_skipped", job_id=job_id, reason=str(exc))
        return jobs

    def load_raw(self) -> Dict[str, dict]:
        """Return the stored records untouched, for read-only inspection."""
        if not self._path.exists():
            return {}
        try:
            payload = orjson.loads(self._path.read_bytes())
        except (OSError, orjson.JSONDecodeError):
            return {}
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def encode(jobs: Iterable[Job]) -> bytes:
        return orjson.dumps({job.job_id: job.to_dict() for job in jobs}, option=orjson.OPT_INDENT_2)

    def write(self, blob: bytes) -> Path:
        """Atomically replace the registry file with an already encoded snapshot."""
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(blob)
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise PersistenceError(f"Could not save jobs to {self._path}: {exc}") from exc
        return self._path

    def save(self, jobs: Iterable[Job]) -> Path:
        return self.write(self.encode(jobs))

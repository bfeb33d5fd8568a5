"""Job manager: owns the registry, spawns worker processes and persists state.

The manager is explicitly constructed and closed by its owner. All
bookkeeping happens on one asyncio event loop; worker processes only talk
back through their stderr progress stream and their stdout result body.
"""
from __future__ import annotations

import asyncio
import os
import sys
from collections import deque
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Set

import orjson
import structlog
from pydantic import ValidationError as PydanticValidationError

from powjobs.chain.height import HeightOracle, build_height_oracle
from powjobs.chain.work_info import SqliteWorkInfoLookup, WorkInfoLookup
from powjobs.exceptions import HeightOracleError, PersistenceError, ValidationError
from powjobs.observability.metrics import MetricsRegistry, record_duration
from powjobs.observability.tracing import log_transition
from powjobs.orchestrator.jobs import (
    COMPLETED,
    FAILED,
    VALID_ACTION_TYPES,
    WAITING,
    Job,
    JobData,
    new_job_id,
    utc_now,
)
from powjobs.orchestrator.persistence import JobStore
from powjobs.orchestrator.protocol import (
    DifficultyUpdate,
    ErrorUpdate,
    ReadyUpdate,
    WaitingUpdate,
    parse_progress_line,
    parse_worker_result,
)
from powjobs.pow.difficulty import calculate_difficulty, target_difficulty
from powjobs.pow.hashing import RAID_ACTION
from powjobs.settings import SETTINGS_ENV, PowSettings, Settings

LOGGER = structlog.get_logger(__name__)

KILLED_ERROR = "Job was killed by user"
INTERRUPTED_ERROR = "Job was interrupted by system shutdown"
DEFAULT_WORKER_COMMAND = (sys.executable, "-m", "powjobs.worker.run")
_STREAM_LIMIT = 1024 * 1024
_DIAGNOSTIC_LINES = 20
_DIAGNOSTIC_WIDTH = 500


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class JobManager:
    """Starts, tracks, kills and persists proof-of-work jobs."""

    def __init__(
        self,
        *,
        store: Optional[JobStore] = None,
        height_oracle: Optional[HeightOracle] = None,
        work_lookup: Optional[WorkInfoLookup] = None,
        pow_settings: Optional[PowSettings] = None,
        worker_command: Optional[Sequence[str]] = None,
        worker_env: Optional[Mapping[str, str]] = None,
        save_debounce_seconds: float = 1.0,
        metrics: Optional[MetricsRegistry] = None,
    ) -> None:
        self._store = store
        self._persist = store is not None
        self._height_oracle = height_oracle
        self._work_lookup = work_lookup
        self._pow = pow_settings or PowSettings()
        self._worker_command = list(worker_command or DEFAULT_WORKER_COMMAND)
        self._worker_env = dict(worker_env) if worker_env is not None else None
        self._debounce = save_debounce_seconds
        self.metrics = metrics or MetricsRegistry()

        self._jobs: Dict[str, Job] = {}
        self._processes: Dict[str, asyncio.subprocess.Process] = {}
        self._monitors: Dict[str, asyncio.Task] = {}
        self._save_handle: Optional[asyncio.TimerHandle] = None
        self._writes: Set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()
        self._closed = False

        if self._store is not None:
            try:
                self._store.acquire()
            except PersistenceError:
                if self._height_oracle is not None:
                    self._height_oracle.close()
                raise
            self._load()

    @classmethod
    def from_settings(cls, settings: Settings, *, settings_path: Optional[Path] = None) -> "JobManager":
        """Wire the manager to the configured store, height oracle and work lookup."""
        env = dict(os.environ)
        if settings_path is not None:
            env[SETTINGS_ENV] = str(settings_path.resolve())
        return cls(
            store=JobStore(settings.jobs.store_path) if settings.jobs.persist else None,
            height_oracle=build_height_oracle(settings.height, settings.pow),
            work_lookup=SqliteWorkInfoLookup(settings.work.database) if settings.work.database else None,
            pow_settings=settings.pow,
            worker_env=env,
            save_debounce_seconds=settings.jobs.save_debounce_seconds,
        )

    # -- persistence -------------------------------------------------------

    def _load(self) -> None:
        assert self._store is not None
        self._jobs = self._store.load()
        interrupted = 0
        for job in self._jobs.values():
            if not job.is_terminal:
                job.mark_failed(INTERRUPTED_ERROR)
                interrupted += 1
        self.metrics.incr("jobs_interrupted", interrupted)
        LOGGER.info("jobs_loaded", count=len(self._jobs), interrupted=interrupted, path=str(self._store.path))
        if interrupted:
            self._flush()

    def _schedule_save(self) -> None:
        if not self._persist:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._flush()
            return
        # coalesce: a pending write already picks up this mutation
        if self._save_handle is not None:
            return
        self._save_handle = loop.call_later(self._debounce, self._start_write)

    def _start_write(self) -> None:
        self._save_handle = None
        task = asyncio.create_task(self._write())
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    def _disable_persistence(self, exc: PersistenceError) -> None:
        self.metrics.incr("persist_failures")
        LOGGER.error("job_persistence_disabled", reason=str(exc))
        self._persist = False

    async def _write(self) -> None:
        async with self._write_lock:
            if not self._persist or self._store is None:
                return
            blob = JobStore.encode(self._jobs.values())
            try:
                with record_duration(self.metrics, "persist_ms"):
                    await asyncio.to_thread(self._store.write, blob)
            except PersistenceError as exc:
                self._disable_persistence(exc)
                return
            self.metrics.incr("persist_writes")

    def _flush(self) -> None:
        """Write synchronously; only used when no event loop is running."""
        if not self._persist or self._store is None:
            return
        try:
            with record_duration(self.metrics, "persist_ms"):
                self._store.save(self._jobs.values())
        except PersistenceError as exc:
            self._disable_persistence(exc)
            return
        self.metrics.incr("persist_writes")

    # -- operations --------------------------------------------------------

    async def start_job(
        self,
        *,
        action_type: str,
        entity_id: str,
        player_id: str,
        target_id: Optional[str] = None,
        difficulty_range: Optional[int] = None,
        max_iterations: Optional[int] = None,
        block_start: Optional[int] = None,
    ) -> Dict[str, str]:
        """Validate, record and spawn a job; returns as soon as the worker is launched."""
        if self._closed:
            raise ValidationError("Job manager is closed")
        if action_type not in VALID_ACTION_TYPES:
            raise ValidationError(
                f"Invalid action type: {action_type}. Valid types: {', '.join(VALID_ACTION_TYPES)}"
            )
        if not player_id:
            raise ValidationError("player_id is required for automatic transaction submission")

        lookup_error: Optional[str] = None
        needs_target = action_type == RAID_ACTION and not target_id
        if self._work_lookup is not None and (block_start is None or difficulty_range is None or needs_target):
            info = await asyncio.to_thread(self._work_lookup.lookup, entity_id, action_type)
            lookup_error = info.error
            if block_start is None:
                block_start = info.block_start
            if difficulty_range is None:
                difficulty_range = info.difficulty_range
            if needs_target:
                target_id = info.target_id

        hint = f" Error: {lookup_error}" if lookup_error else ""
        if block_start is None:
            raise ValidationError(
                f"block_start is required. Provide it or ensure a work record exists for entity "
                f"{entity_id} with action type {action_type}.{hint}"
            )
        if difficulty_range is None or difficulty_range < 1:
            raise ValidationError(
                f"difficulty_range is required and must be at least 1 for entity {entity_id}.{hint}"
            )
        try:
            job_data = JobData(
                action_type=action_type,
                entity_id=entity_id,
                target_id=target_id,
                difficulty_range=difficulty_range,
                max_iterations=max_iterations or self._pow.default_max_iterations,
                block_start=block_start,
                player_id=player_id,
            )
        except PydanticValidationError as exc:
            raise ValidationError(str(exc)) from exc

        job = Job(job_id=new_job_id(), job_data=job_data)
        self._jobs[job.job_id] = job
        self.metrics.incr("jobs_started", action_type=action_type)
        LOGGER.info("job_queued", job_id=job.job_id, action_type=action_type, entity_id=entity_id)
        await self._spawn(job)
        return {
            "job_id": job.job_id,
            "status": "queued",
            "message": (
                f"Proof-of-work job started. Job ID: {job.job_id}. The transaction will be "
                "submitted automatically when proof-of-work is complete."
            ),
        }

    async def _spawn(self, job: Job) -> None:
        payload = orjson.dumps({"job_id": job.job_id, **job.job_data.model_dump()}).decode()
        try:
            process = await asyncio.create_subprocess_exec(
                *self._worker_command,
                payload,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._worker_env,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            job.mark_failed(f"Worker process error: {exc}")
            self.metrics.incr("jobs_failed")
            self._schedule_save()
            return
        self._processes[job.job_id] = process
        self._set_running(job)
        self._monitors[job.job_id] = asyncio.create_task(self._monitor(job, process))
        self._schedule_save()

    async def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return a snapshot of the job, enriched with live difficulty while it is active."""
        job = self._jobs.get(job_id)
        if job is None:
            return None
        if not job.is_terminal and self._height_oracle is not None:
            try:
                height = await asyncio.to_thread(self._height_oracle.get_current_height)
            except HeightOracleError as exc:
                LOGGER.debug("difficulty_info_skipped", job_id=job_id, reason=str(exc))
            else:
                data = job.job_data
                current_age = height - data.block_start
                job.difficulty_info = {
                    "current_difficulty": calculate_difficulty(current_age, data.difficulty_range),
                    "target_difficulty": target_difficulty(data.max_iterations, self._pow.iteration_margin),
                    "current_age": current_age,
                    "difficulty_range": data.difficulty_range,
                    "max_iterations": data.max_iterations,
                }
                if job.status == WAITING and job.waiting_info is not None:
                    job.waiting_info["current_age"] = current_age
        return job.to_dict()

    def list_jobs(self) -> List[Dict[str, Any]]:
        return [job.to_dict() for job in self._jobs.values()]

    def kill_job(self, job_id: str) -> bool:
        """Terminate the job's worker; False when no worker is active for it."""
        process = self._processes.get(job_id)
        if process is None or process.returncode is not None:
            return False
        del self._processes[job_id]
        try:
            process.kill()
        except ProcessLookupError:
            pass
        job = self._jobs.get(job_id)
        if job is not None and not job.is_terminal:
            old = job.status
            job.mark_failed(KILLED_ERROR)
            log_transition(job_id=job_id, old=old, new=FAILED, reason=KILLED_ERROR)
            self.metrics.incr("jobs_killed", action_type=job.job_data.action_type)
        self._schedule_save()
        return True

    def cleanup(self, max_age_seconds: float = 3600.0) -> int:
        """Evict terminal jobs that completed more than ``max_age_seconds`` ago."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)
        evicted = 0
        for job_id, job in list(self._jobs.items()):
            if not job.is_terminal or job_id in self._processes:
                continue
            completed_at = _parse_timestamp(job.completed_at) if job.completed_at else None
            if completed_at is None or completed_at < cutoff:
                del self._jobs[job_id]
                self._monitors.pop(job_id, None)
                evicted += 1
        if evicted:
            self.metrics.incr("jobs_evicted", evicted)
            self._schedule_save()
        return evicted

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Wait for the job's worker to be reaped, then return its snapshot."""
        monitor = self._monitors.get(job_id)
        if monitor is not None:
            await asyncio.wait_for(asyncio.shield(monitor), timeout)
        job = self._jobs.get(job_id)
        return job.to_dict() if job is not None else None

    async def close(self) -> None:
        """Stop remaining workers, then flush the registry."""
        self._closed = True
        for job_id, process in list(self._processes.items()):
            if process.returncode is None:
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
            job = self._jobs.get(job_id)
            if job is not None and not job.is_terminal:
                job.mark_failed(INTERRUPTED_ERROR)
                self.metrics.incr("jobs_interrupted")
        self._processes.clear()
        if self._monitors:
            await asyncio.gather(*self._monitors.values(), return_exceptions=True)
        if self._save_handle is not None:
            self._save_handle.cancel()
            self._save_handle = None
        if self._writes:
            await asyncio.gather(*self._writes, return_exceptions=True)
        await self._write()
        if self._store is not None:
            self._store.release()
        if self._height_oracle is not None:
            self._height_oracle.close()

    # -- worker monitoring -------------------------------------------------

    def _set_running(self, job: Job) -> None:
        old = job.status
        job.mark_running()
        if old != job.status:
            log_transition(job_id=job.job_id, old=old, new=job.status)

    async def _monitor(self, job: Job, process: asyncio.subprocess.Process) -> None:
        diagnostics: Deque[str] = deque(maxlen=_DIAGNOSTIC_LINES)
        stdout_task = asyncio.create_task(process.stdout.read())
        while True:
            try:
                raw = await process.stderr.readline()
            except ValueError:
                # the reader has already discarded the oversized chunk
                diagnostics.append(f"Worker stderr line exceeded {_STREAM_LIMIT} bytes and was dropped")
                self.metrics.incr("progress_lines_ignored")
                continue
            if not raw:
                break
            update = parse_progress_line(raw)
            if update is None:
                text = raw.decode("utf-8", errors="replace").strip()
                if text and not text.startswith("{"):
                    diagnostics.append(text[:_DIAGNOSTIC_WIDTH])
                self.metrics.incr("progress_lines_ignored")
                continue
            self._apply_update(job, update)
        stdout = await stdout_task
        code = await process.wait()
        if self._processes.get(job.job_id) is process:
            del self._processes[job.job_id]
        self._finish(job, code, stdout, list(diagnostics))

    def _apply_update(self, job: Job, update) -> None:
        if job.is_terminal:
            return
        if isinstance(update, WaitingUpdate):
            old = job.status
            job.mark_waiting(
                current_age=update.current_age,
                target_age=update.target_age,
                blocks_remaining=update.blocks_remaining,
            )
            if old != WAITING:
                log_transition(job_id=job.job_id, old=old, new=WAITING, reason=update.message)
        elif isinstance(update, ReadyUpdate):
            self._set_running(job)
        elif isinstance(update, DifficultyUpdate):
            job.append_log(
                "difficulty_updates",
                {
                    "old_difficulty": update.old_difficulty,
                    "new_difficulty": update.new_difficulty,
                    "current_age": update.current_age,
                    "iteration": update.iteration,
                    "timestamp": utc_now(),
                },
            )
            self.metrics.incr("difficulty_updates")
        elif isinstance(update, ErrorUpdate):
            job.append_log(
                "errors",
                {"message": update.message, "iteration": update.iteration, "timestamp": utc_now()},
            )
            self.metrics.incr("worker_errors")
        self._schedule_save()

    def _finish(self, job: Job, code: int, stdout: bytes, diagnostics: List[str]) -> None:
        if job.is_terminal:
            return
        run_logs = {
            key: value
            for key, value in (job.result or {}).items()
            if key in ("difficulty_updates", "errors")
        }
        old = job.status
        if code == 0:
            try:
                result = parse_worker_result(stdout)
            except ValueError as exc:
                job.mark_failed(f"Failed to parse worker result: {exc}")
            else:
                job.result = {**result.model_dump(exclude_none=True), **run_logs}
                if result.status == COMPLETED:
                    job.mark_completed(result.completed_at)
                else:
                    job.mark_failed(result.error or "Worker reported failure", result.completed_at)
        else:
            if diagnostics:
                reason = "\n".join(diagnostics)
            elif run_logs.get("errors"):
                reason = run_logs["errors"][-1]["message"]
            elif code < 0:
                reason = f"Worker process terminated by signal {-code}"
            else:
                reason = f"Worker process exited with code {code}"
            job.mark_failed(reason)

        self.metrics.incr(
            "jobs_completed" if job.status == COMPLETED else "jobs_failed",
            action_type=job.job_data.action_type,
        )
        log_transition(job_id=job.job_id, old=old, new=job.status, reason=job.error)
        self._schedule_save()

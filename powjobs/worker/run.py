"""Worker process: feasibility wait, nonce search, transaction submission.

Usage: ``python -m powjobs.worker.run '<job json>'``

Progress updates are written to stderr as NDJSON; the terminal
:class:`~powjobs.orchestrator.protocol.WorkerResult` is written to stdout.
"""
from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

import orjson
import structlog
from dotenv import load_dotenv
from pydantic import ValidationError as PydanticValidationError

from powjobs.chain.height import build_height_oracle
from powjobs.chain.submitter import SignerApiSubmitter, TransactionSubmitter, transaction_args
from powjobs.exceptions import HeightOracleError, WorkerProtocolError
from powjobs.observability.log import configure_logging
from powjobs.observability.tracing import clear_context, set_context, span
from powjobs.orchestrator.jobs import COMPLETED, FAILED, JobData, utc_now
from powjobs.orchestrator.protocol import (
    ErrorUpdate,
    ProofOfWorkOutcome,
    WorkerResult,
    encode_update,
)
from powjobs.pow.hashing import pow_entity_id
from powjobs.pow.search import find_proof_of_work
from powjobs.settings import PowSettings, load_settings
from powjobs.worker.feasibility import FeasibilityThresholds, wait_until_feasible

LOGGER = structlog.get_logger(__name__)


def decode_job(raw: str) -> Tuple[str, JobData]:
    """Split the serialized job argument into its id and validated parameters."""
    try:
        payload = orjson.loads(raw)
    except orjson.JSONDecodeError as exc:
        raise WorkerProtocolError(f"Invalid job data JSON: {exc}") from exc
    if not isinstance(payload, dict) or not payload.get("job_id"):
        raise WorkerProtocolError("Job data must be an object with a job_id")
    job_id = str(payload.pop("job_id"))
    try:
        return job_id, JobData.model_validate(payload)
    except PydanticValidationError as exc:
        raise WorkerProtocolError(f"Invalid job data: {exc}") from exc


def run_job(
    job_id: str,
    job_data: JobData,
    *,
    get_current_height: Callable[[], int],
    submitter: TransactionSubmitter,
    emit: Callable[[object], None],
    settings: PowSettings,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> WorkerResult:
    started_at = utc_now()
    set_context(job_id=job_id, action_type=job_data.action_type, entity_id=job_data.entity_id)
    try:
        start = wait_until_feasible(
            block_start=job_data.block_start,
            difficulty_range=job_data.difficulty_range,
            max_iterations=job_data.max_iterations,
            get_current_height=get_current_height,
            emit=emit,
            thresholds=FeasibilityThresholds(
                warmup_age=settings.warmup_age,
                difficulty_ceiling=settings.target_difficulty_start,
                iteration_margin=settings.iteration_margin,
                poll_interval=settings.block_interval_seconds,
            ),
            sleep=sleep,
        )

        search_started = time.perf_counter()
        with span(name="search", job_id=job_id):
            search = find_proof_of_work(
                job_data.action_type,
                pow_entity_id(job_data.action_type, job_data.entity_id, job_data.target_id),
                job_data.block_start,
                start.age,
                job_data.difficulty_range,
                job_data.max_iterations,
                get_current_height=get_current_height,
                check_interval=settings.difficulty_check_interval_seconds,
                on_update=emit,
                clock=clock,
            )
        proof = ProofOfWorkOutcome(
            hash=search.hash,
            nonce=search.nonce,
            iterations=search.iterations,
            valid=search.valid,
            difficulty_met=search.difficulty_met,
            difficulty=search.difficulty,
            final_age=search.final_age,
            computation_time_ms=int((time.perf_counter() - search_started) * 1000),
        )

        if not search.valid:
            return WorkerResult(
                job_id=job_id,
                status=FAILED,
                proof_of_work=proof,
                error=(
                    f"Could not find valid proof-of-work within {search.iterations} iterations. "
                    f"Difficulty: {search.difficulty}, Age: {search.final_age}"
                ),
                started_at=started_at,
                completed_at=utc_now(),
            )

        with span(name="submit", job_id=job_id):
            transaction = submitter.submit(
                job_data.action_type,
                job_data.player_id,
                transaction_args(job_data.action_type, job_data.entity_id, search.hash, search.nonce),
            )
        failed = transaction.status == "error"
        return WorkerResult(
            job_id=job_id,
            status=FAILED if failed else COMPLETED,
            proof_of_work=proof,
            transaction=transaction,
            error=(transaction.error or transaction.message) if failed else None,
            started_at=started_at,
            completed_at=utc_now(),
        )
    except HeightOracleError as exc:
        return WorkerResult(
            job_id=job_id,
            status=FAILED,
            error=str(exc),
            started_at=started_at,
            completed_at=utc_now(),
        )
    finally:
        clear_context()


def _emit_stderr(update) -> None:
    sys.stderr.buffer.write(encode_update(update))
    sys.stderr.buffer.flush()


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the worker subprocess."""
    args = sys.argv[1:] if argv is None else argv
    if not args:
        _emit_stderr(ErrorUpdate(message="No job data provided"))
        raise SystemExit(1)
    try:
        job_id, job_data = decode_job(args[0])
    except WorkerProtocolError as exc:
        _emit_stderr(ErrorUpdate(message=str(exc), error_type=type(exc).__name__))
        raise SystemExit(1)

    load_dotenv()
    settings = load_settings()
    configure_logging(Path("config/logging.yaml"), stream=sys.stderr)

    oracle = build_height_oracle(settings.height, settings.pow)
    submitter = SignerApiSubmitter(settings.signer)
    try:
        result = run_job(
            job_id,
            job_data,
            get_current_height=oracle.get_current_height,
            submitter=submitter,
            emit=_emit_stderr,
            settings=settings.pow,
        )
    finally:
        oracle.close()
        submitter.close()

    LOGGER.info("worker_finished", job_id=job_id, outcome=result.status)
    sys.stdout.write(result.model_dump_json(exclude_none=True))
    sys.stdout.write("\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()

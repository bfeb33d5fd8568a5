"""Messages exchanged between a worker process and the job manager.

A worker writes progress updates as newline-delimited JSON on stderr and a
single :class:`WorkerResult` on stdout when it exits. Both sides go through
the models below so the wire format has a single definition.
"""
from __future__ import annotations

from typing import Annotated, Literal, Optional, Union

import orjson
from pydantic import BaseModel, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError


class WaitingUpdate(BaseModel):
    status: Literal["waiting"] = "waiting"
    message: str = ""
    current_age: int = 0
    target_age: int = 10
    blocks_remaining: int = 0
    difficulty: Optional[int] = None
    expected_iterations: Optional[float] = None
    current_block_height: Optional[int] = None


class ReadyUpdate(BaseModel):
    status: Literal["ready"] = "ready"
    message: str = ""
    current_age: int
    difficulty: int
    expected_iterations: Optional[float] = None


class DifficultyUpdate(BaseModel):
    status: Literal["difficulty_update"] = "difficulty_update"
    message: str = ""
    old_difficulty: int
    new_difficulty: int
    old_age: int
    current_age: int
    iteration: int
    block_height: Optional[int] = None


class ErrorUpdate(BaseModel):
    """Non-fatal problem reported while the worker keeps going."""

    status: Literal["error"] = "error"
    message: str
    iteration: Optional[int] = None
    error_type: Optional[str] = None


ProgressUpdate = Annotated[
    Union[WaitingUpdate, ReadyUpdate, DifficultyUpdate, ErrorUpdate],
    Field(discriminator="status"),
]

_PROGRESS_ADAPTER: TypeAdapter[ProgressUpdate] = TypeAdapter(ProgressUpdate)


class ProofOfWorkOutcome(BaseModel):
    hash: str
    nonce: str
    iterations: int
    valid: bool
    difficulty_met: bool
    difficulty: int
    final_age: int
    computation_time_ms: int = 0


class TransactionOutcome(BaseModel):
    """Shape returned by the transaction submitter; opaque beyond these fields."""

    status: str
    message: str = ""
    transaction_hash: Optional[str] = None
    transaction_id: Optional[int] = None
    error: Optional[str] = None


class WorkerResult(BaseModel):
    job_id: str
    status: Literal["completed", "failed"]
    proof_of_work: Optional[ProofOfWorkOutcome] = None
    transaction: Optional[TransactionOutcome] = None
    error: Optional[str] = None
    started_at: str
    completed_at: Optional[str] = None


def encode_update(update: BaseModel) -> bytes:
    """Serialise a progress update as one NDJSON line."""
    return orjson.dumps(update.model_dump(exclude_none=True)) + b"\n"


def parse_progress_line(line: Union[str, bytes]) -> Optional[ProgressUpdate]:
    """Decode one stderr line, returning None for anything that is not a known update."""
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    text = text.strip()
    if not text.startswith("{"):
        return None
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return _PROGRESS_ADAPTER.validate_python(payload)
    except PydanticValidationError:
        return None


def parse_worker_result(body: Union[str, bytes]) -> WorkerResult:
    """Parse the worker's stdout body; raises ``ValueError`` when it is not a result."""
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    text = text.strip()
    if not text:
        raise ValueError("worker produced no result")
    try:
        payload = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise ValueError(f"worker result is not JSON: {exc}") from exc
    try:
        return WorkerResult.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValueError(f"worker result has unexpected shape: {exc}") from exc

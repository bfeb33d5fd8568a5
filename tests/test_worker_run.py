import hashlib

import orjson
import pytest

from powjobs.exceptions import HeightOracleError, WorkerProtocolError
from powjobs.orchestrator.jobs import JobData
from powjobs.orchestrator.protocol import TransactionOutcome
from powjobs.settings import PowSettings
from powjobs.worker.run import decode_job, run_job


class RecordingSubmitter:
    def __init__(self, outcome=None):
        self.calls = []
        self.outcome = outcome or TransactionOutcome(
            status="broadcast",
            message="Transaction broadcast successfully",
            transaction_hash="ABC123",
            transaction_id=7,
        )

    def submit(self, action, player_id, args):
        self.calls.append((action, player_id, dict(args)))
        return self.outcome


def _job(**overrides):
    values = {
        "action_type": "struct_build_complete",
        "entity_id": "5-42",
        "difficulty_range": 1,
        "max_iterations": 10000,
        "block_start": 1000,
        "player_id": "1-11",
    }
    values.update(overrides)
    return JobData(**values)


def _run(job_data, submitter, *, height=1020, settings=None):
    updates = []
    result = run_job(
        "pow_1_abc",
        job_data,
        get_current_height=lambda: height,
        submitter=submitter,
        emit=updates.append,
        settings=settings or PowSettings(),
        sleep=lambda _seconds: None,
    )
    return result, updates


def test_successful_job_submits_transaction():
    submitter = RecordingSubmitter()
    result, updates = _run(_job(), submitter)

    assert result.status == "completed"
    assert result.error is None
    assert result.proof_of_work.nonce == "23"
    assert result.proof_of_work.final_age == 20
    assert result.transaction.transaction_hash == "ABC123"
    assert updates[0].status == "ready"
    assert submitter.calls == [
        (
            "struct_build_complete",
            "1-11",
            {"proof": result.proof_of_work.hash, "nonce": "23", "struct_id": "5-42"},
        )
    ]


def test_exhausted_search_fails_without_submitting():
    submitter = RecordingSubmitter()
    result, _ = _run(
        _job(difficulty_range=100, max_iterations=50),
        submitter,
        height=1075,
        settings=PowSettings(iteration_margin=1e9),
    )
    assert result.status == "failed"
    assert result.error == "Could not find valid proof-of-work within 50 iterations. Difficulty: 5, Age: 75"
    assert result.proof_of_work.valid is False
    assert submitter.calls == []


def test_transaction_error_fails_the_job():
    submitter = RecordingSubmitter(
        TransactionOutcome(status="error", message="Transaction submission failed", error="Signer error: boom")
    )
    result, _ = _run(_job(), submitter)
    assert result.status == "failed"
    assert result.error == "Signer error: boom"
    assert result.proof_of_work.valid is True


def test_raid_hashes_fleet_and_target():
    submitter = RecordingSubmitter()
    result, _ = _run(_job(action_type="planet_raid_complete", entity_id="9-1", target_id="2-5"), submitter)
    nonce = result.proof_of_work.nonce
    expected = hashlib.sha256(f"9-1@2-5RAID1000NONCE{nonce}".encode()).hexdigest()
    assert result.proof_of_work.hash == expected
    assert expected.startswith("0")
    action, _, args = submitter.calls[0]
    assert action == "planet_raid_complete"
    assert args["fleet_id"] == "9-1"


def test_missing_height_fails_the_job():
    def no_height():
        raise HeightOracleError("Failed to get block height from any source and no prior height is known")

    result = run_job(
        "pow_1_abc",
        _job(),
        get_current_height=no_height,
        submitter=RecordingSubmitter(),
        emit=lambda update: None,
        settings=PowSettings(),
    )
    assert result.status == "failed"
    assert "no prior height" in result.error
    assert result.proof_of_work is None


def test_decode_job():
    raw = orjson.dumps({"job_id": "pow_1_abc", **_job().model_dump()}).decode()
    job_id, job_data = decode_job(raw)
    assert job_id == "pow_1_abc"
    assert job_data == _job()


@pytest.mark.parametrize(
    "raw",
    [
        "{oops",
        '["pow_1_abc"]',
        '{"action_type": "struct_build_complete"}',
        '{"job_id": "pow_1", "action_type": "teleport", "entity_id": "5-42", '
        '"difficulty_range": 1, "block_start": 1, "player_id": "1-1"}',
    ],
)
def test_decode_job_rejects_bad_payloads(raw):
    with pytest.raises(WorkerProtocolError):
        decode_job(raw)

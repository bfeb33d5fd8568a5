import json

import pytest

from powjobs.orchestrator.protocol import (
    DifficultyUpdate,
    ErrorUpdate,
    WaitingUpdate,
    encode_update,
    parse_progress_line,
    parse_worker_result,
)


def test_progress_lines_are_decoded_by_status():
    line = json.dumps({"status": "waiting", "current_age": 4, "target_age": 75, "blocks_remaining": 71})
    update = parse_progress_line(line)
    assert isinstance(update, WaitingUpdate)
    assert update.blocks_remaining == 71

    update = parse_progress_line(
        b'{"status": "difficulty_update", "old_difficulty": 9, "new_difficulty": 7, '
        b'"old_age": 40, "current_age": 52, "iteration": 1200}\n'
    )
    assert isinstance(update, DifficultyUpdate)
    assert update.new_difficulty == 7


def test_unrecognised_lines_are_ignored():
    assert parse_progress_line("Traceback (most recent call last):") is None
    assert parse_progress_line("{not json") is None
    assert parse_progress_line("[1, 2]") is None
    assert parse_progress_line('{"event": "trace_span", "level": "info"}') is None
    assert parse_progress_line('{"status": "dancing"}') is None
    assert parse_progress_line("") is None


def test_encode_update_writes_one_line():
    encoded = encode_update(ErrorUpdate(message="height unavailable", iteration=3))
    assert encoded.endswith(b"\n")
    assert encoded.count(b"\n") == 1
    assert parse_progress_line(encoded) == ErrorUpdate(message="height unavailable", iteration=3)


def test_worker_result_parsing():
    body = json.dumps({
        "job_id": "pow_1_abc",
        "status": "completed",
        "proof_of_work": {
            "hash": "0abc",
            "nonce": "23",
            "iterations": 24,
            "valid": True,
            "difficulty_met": True,
            "difficulty": 1,
            "final_age": 10,
        },
        "transaction": {"status": "broadcast", "transaction_hash": "ABC"},
        "started_at": "2024-01-01T00:00:00+00:00",
    })
    result = parse_worker_result(body + "\n")
    assert result.status == "completed"
    assert result.proof_of_work.nonce == "23"
    assert result.transaction.transaction_hash == "ABC"


@pytest.mark.parametrize("body", ["", "   ", "not json", '{"job_id": "x", "status": "exploded"}'])
def test_worker_result_rejects_bad_bodies(body):
    with pytest.raises(ValueError):
        parse_worker_result(body)

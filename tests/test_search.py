import itertools

import pytest

from powjobs.exceptions import HeightOracleError
from powjobs.orchestrator.protocol import DifficultyUpdate, ErrorUpdate
from powjobs.pow.hashing import build_hash_input, hash_input
from powjobs.pow.search import find_proof_of_work


def test_search_runs_within_budget_and_reports_matching_hash():
    result = find_proof_of_work("struct_build_complete", "5-42", 1000, 10, 100, 10000)
    assert 0 < result.iterations <= 10000
    assert result.final_age == 10
    assert result.hash == hash_input(build_hash_input("struct_build_complete", "5-42", 1000, result.nonce))


def test_search_exhausts_at_maximum_difficulty():
    result = find_proof_of_work("struct_build_complete", "5-42", 1000, 1, 100, 100)
    assert result.iterations == 100
    assert result.valid is False
    assert result.difficulty_met is False
    assert result.nonce == "99"
    assert result.difficulty == 64


def test_search_finds_first_accepting_nonce():
    result = find_proof_of_work("struct_build_complete", "5-42", 1000, 10, 1, 10000)
    assert result.valid is True
    assert result.nonce == "23"
    assert result.iterations == 24
    assert result.hash.startswith("0")


def test_search_rejects_empty_budget():
    with pytest.raises(ValueError):
        find_proof_of_work("struct_build_complete", "5-42", 1000, 10, 1, 0)


def test_search_adopts_lower_difficulty_without_restarting():
    heights = itertools.chain([1010], itertools.repeat(1200))
    ticks = itertools.count(0, 10)
    updates = []

    result = find_proof_of_work(
        "struct_build_complete",
        "5-42",
        1000,
        10,
        100,
        10000,
        get_current_height=lambda: next(heights),
        check_interval=5.0,
        on_update=updates.append,
        clock=lambda: next(ticks),
    )

    assert result.valid is True
    assert result.difficulty == 1
    assert result.final_age == 200
    assert result.nonce == "23"
    assert len(updates) == 1
    update = updates[0]
    assert isinstance(update, DifficultyUpdate)
    assert (update.old_difficulty, update.new_difficulty) == (33, 1)
    assert (update.old_age, update.current_age) == (10, 200)
    assert update.iteration == 1
    assert update.block_height == 1200


def test_search_keeps_difficulty_when_height_is_unavailable():
    def failing_height():
        raise HeightOracleError("no height")

    updates = []
    result = find_proof_of_work(
        "struct_build_complete",
        "5-42",
        1000,
        10,
        1,
        100,
        get_current_height=failing_height,
        check_interval=60.0,
        on_update=updates.append,
    )
    assert result.valid is True
    assert result.final_age == 10
    assert len(updates) == 1
    assert isinstance(updates[0], ErrorUpdate)
    assert updates[0].iteration == 0
    assert updates[0].error_type == "HeightOracleError"


def test_search_ignores_stale_heights():
    ticks = itertools.count(0, 10)
    result = find_proof_of_work(
        "struct_build_complete",
        "5-42",
        1000,
        200,
        100,
        100,
        get_current_height=lambda: 1005,
        on_update=lambda update: pytest.fail(f"unexpected update {update}"),
        clock=lambda: next(ticks),
    )
    assert result.final_age == 200
    assert result.difficulty == 1

import pytest

from powjobs.pow.difficulty import (
    MAX_DIFFICULTY,
    MIN_DIFFICULTY,
    calculate_difficulty,
    expected_iterations,
    minimum_age_for_difficulty,
    target_difficulty,
)


def test_young_work_gets_maximum_difficulty():
    assert calculate_difficulty(0, 100) == MAX_DIFFICULTY
    assert calculate_difficulty(1, 100) == MAX_DIFFICULTY
    assert calculate_difficulty(-5, 100) == MAX_DIFFICULTY


def test_difficulty_follows_log_decay():
    assert calculate_difficulty(10, 100) == 33
    assert calculate_difficulty(2, 100) == 55
    assert calculate_difficulty(74, 100) == 6
    assert calculate_difficulty(75, 100) == 5
    assert calculate_difficulty(100, 100) == MIN_DIFFICULTY


def test_difficulty_is_clamped_past_the_range():
    assert calculate_difficulty(1000, 100) == MIN_DIFFICULTY
    assert calculate_difficulty(10**9, 100) == MIN_DIFFICULTY


def test_unit_range_bottoms_out():
    assert calculate_difficulty(2, 1) == MIN_DIFFICULTY


def test_invalid_range_is_rejected():
    with pytest.raises(ValueError):
        calculate_difficulty(10, 0)


def test_difficulty_never_increases_with_age():
    previous = MAX_DIFFICULTY
    for age in range(0, 500):
        value = calculate_difficulty(age, 250)
        assert MIN_DIFFICULTY <= value <= previous
        previous = value


def test_expected_iterations():
    assert expected_iterations(1) == 16
    assert expected_iterations(5) == 1_048_576


def test_target_difficulty_from_budget():
    assert target_difficulty(1_000_000) == 5
    assert target_difficulty(1000) == 2
    assert target_difficulty(1000, margin=1) == 2
    assert target_difficulty(0) == 0


def test_minimum_age_for_difficulty():
    assert minimum_age_for_difficulty(5, 100) == 75
    assert minimum_age_for_difficulty(MAX_DIFFICULTY, 100) == 0
    for target in (1, 3, 12, 40):
        age = minimum_age_for_difficulty(target, 300)
        assert calculate_difficulty(age, 300) <= target
        assert age <= 2 or calculate_difficulty(age - 1, 300) > target

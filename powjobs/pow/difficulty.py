"""Difficulty decay shared with the on-chain verifier.

The verifier computes ``64 - floor(log10(age) / log10(range) * 63)``. Any drift
in the logarithm base or the rounding makes otherwise valid proofs fail, so
the arithmetic here is kept literal.
"""
from __future__ import annotations

import math

MAX_DIFFICULTY = 64
MIN_DIFFICULTY = 1


def calculate_difficulty(age: int, difficulty_range: int) -> int:
    """Return the number of leading hex zeros required at ``age``."""
    if age <= 1:
        return MAX_DIFFICULTY
    if difficulty_range < 1:
        raise ValueError(f"difficulty_range must be at least 1, got {difficulty_range}")
    if difficulty_range == 1:
        # log10(1) == 0: the ratio diverges and the difficulty bottoms out
        return MIN_DIFFICULTY
    ratio = math.log10(age) / math.log10(difficulty_range)
    difficulty = MAX_DIFFICULTY - math.floor(ratio * 63)
    return max(MIN_DIFFICULTY, difficulty)


def expected_iterations(difficulty: int) -> int:
    """Expected number of hashes before one has ``difficulty`` leading zeros."""
    return 16 ** difficulty


def target_difficulty(max_iterations: int, margin: float = 2) -> int:
    """Highest difficulty whose expected iterations fit ``margin * max_iterations``."""
    budget = max_iterations * margin
    if budget < 1:
        return 0
    return math.floor(math.log(budget) / math.log(16))


def minimum_age_for_difficulty(target: int, difficulty_range: int) -> int:
    """Smallest age at which ``calculate_difficulty`` drops to ``target`` or below."""
    if target >= MAX_DIFFICULTY:
        return 0
    if difficulty_range <= 1:
        return 2
    target = max(target, MIN_DIFFICULTY)
    exponent = (MAX_DIFFICULTY - target) / 63
    age = max(2, math.floor(difficulty_range ** exponent) - 1)
    while calculate_difficulty(age, difficulty_range) > target:
        age += 1
    while age > 2 and calculate_difficulty(age - 1, difficulty_range) <= target:
        age -= 1
    return age

"""Nonce search with periodic difficulty refresh."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from powjobs.exceptions import HeightOracleError
from powjobs.orchestrator.protocol import DifficultyUpdate, ErrorUpdate
from powjobs.pow.difficulty import calculate_difficulty
from powjobs.pow.hashing import build_hash_input, check_difficulty, hash_input

DEFAULT_MAX_ITERATIONS = 1_000_000
DEFAULT_CHECK_INTERVAL = 5.0


@dataclass(slots=True)
class SearchResult:
    """Outcome of a nonce search."""

    hash: str
    nonce: str
    iterations: int
    valid: bool
    difficulty: int
    difficulty_met: bool
    final_age: int


def find_proof_of_work(
    action_type: str,
    entity_id: str,
    block_start: int,
    initial_age: int,
    difficulty_range: int,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    get_current_height: Optional[Callable[[], int]] = None,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    on_update: Optional[Callable[[object], None]] = None,
    clock: Callable[[], float] = time.monotonic,
) -> SearchResult:
    """Search nonces ``0 .. max_iterations - 1`` for a hash meeting the current difficulty.

    When ``get_current_height`` is supplied it is polled every
    ``check_interval`` seconds of wall-clock time (the first poll happens
    before the first hash). Difficulty only ever eases during a search: a
    lower value is adopted in place and the nonce sequence continues. A failed
    poll keeps the last difficulty and is retried on the next tick.
    """
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")

    current_age = initial_age
    difficulty = calculate_difficulty(current_age, difficulty_range)
    next_check: Optional[float] = clock() if get_current_height is not None else None

    for iteration in range(max_iterations):
        if next_check is not None:
            now = clock()
            if now >= next_check:
                next_check = now + check_interval
                try:
                    height = get_current_height()
                except HeightOracleError as exc:
                    if on_update is not None:
                        on_update(
                            ErrorUpdate(
                                message=f"Could not get current block height (will retry): {exc}",
                                iteration=iteration,
                                error_type=type(exc).__name__,
                            )
                        )
                else:
                    new_age = height - block_start
                    if new_age > current_age:
                        old_age = current_age
                        current_age = new_age
                        new_difficulty = calculate_difficulty(current_age, difficulty_range)
                        if new_difficulty < difficulty:
                            old_difficulty = difficulty
                            difficulty = new_difficulty
                            if on_update is not None:
                                on_update(
                                    DifficultyUpdate(
                                        message=(
                                            f"Difficulty updated: {old_difficulty} -> {difficulty} "
                                            f"(age: {old_age} -> {current_age})"
                                        ),
                                        old_difficulty=old_difficulty,
                                        new_difficulty=difficulty,
                                        old_age=old_age,
                                        current_age=current_age,
                                        iteration=iteration,
                                        block_height=height,
                                    )
                                )

        nonce = str(iteration)
        digest = hash_input(build_hash_input(action_type, entity_id, block_start, nonce))
        if check_difficulty(digest, difficulty):
            return SearchResult(
                hash=digest,
                nonce=nonce,
                iterations=iteration + 1,
                valid=True,
                difficulty=difficulty,
                difficulty_met=True,
                final_age=current_age,
            )

    last_nonce = str(max_iterations - 1)
    return SearchResult(
        hash=hash_input(build_hash_input(action_type, entity_id, block_start, last_nonce)),
        nonce=last_nonce,
        iterations=max_iterations,
        valid=False,
        difficulty=difficulty,
        difficulty_met=False,
        final_age=current_age,
    )

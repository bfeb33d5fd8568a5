"""Block until a search has a plausible chance of finishing within its budget."""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

from powjobs.orchestrator.protocol import ReadyUpdate, WaitingUpdate
from powjobs.pow.difficulty import (
    calculate_difficulty,
    expected_iterations,
    minimum_age_for_difficulty,
    target_difficulty,
)


@dataclass(slots=True)
class FeasibilityThresholds:
    warmup_age: int = 10
    difficulty_ceiling: int = 5
    iteration_margin: float = 2.0
    poll_interval: float = 5.0


@dataclass(slots=True)
class FeasibleStart:
    age: int
    difficulty: int
    block_height: int


def wait_until_feasible(
    *,
    block_start: int,
    difficulty_range: int,
    max_iterations: int,
    get_current_height: Callable[[], int],
    emit: Callable[[object], None],
    thresholds: FeasibilityThresholds,
    sleep: Callable[[float], None] = time.sleep,
) -> FeasibleStart:
    """Poll the height until warm-up age, difficulty ceiling and iteration budget all hold.

    Every unmet poll emits a ``waiting`` update whose ``target_age`` is the
    first age at which all three conditions are satisfied. Height errors
    propagate: they only reach here once the oracle has nothing to
    extrapolate from.
    """
    budget_difficulty = target_difficulty(max_iterations, thresholds.iteration_margin)
    feasible_difficulty = min(thresholds.difficulty_ceiling, budget_difficulty)
    ready_age = max(
        thresholds.warmup_age,
        minimum_age_for_difficulty(feasible_difficulty, difficulty_range),
    )

    while True:
        height = get_current_height()
        age = height - block_start
        difficulty = calculate_difficulty(age, difficulty_range)
        expected = float(expected_iterations(difficulty))

        if age < thresholds.warmup_age:
            reason = f"Age {age} is below target {thresholds.warmup_age}. Waiting for blocks to pass..."
        elif difficulty > thresholds.difficulty_ceiling:
            reason = (
                f"Difficulty {difficulty} (age {age}) is above target start value "
                f"{thresholds.difficulty_ceiling}. Waiting for difficulty to decrease..."
            )
        elif expected > thresholds.iteration_margin * max_iterations:
            reason = (
                f"Difficulty {difficulty} (age {age}) is too high for {max_iterations} iterations. "
                f"Expected iterations: {expected:.2e}. Waiting for difficulty to decrease..."
            )
        else:
            emit(
                ReadyUpdate(
                    message=(
                        f"Starting proof-of-work calculation. Age: {age}, Difficulty: {difficulty}, "
                        f"Expected iterations: {expected:.2e}"
                    ),
                    current_age=age,
                    difficulty=difficulty,
                    expected_iterations=expected,
                )
            )
            return FeasibleStart(age=age, difficulty=difficulty, block_height=height)

        # guards the degenerate case where no age can satisfy the budget
        target_age = max(ready_age, age + 1)
        emit(
            WaitingUpdate(
                message=reason,
                current_age=age,
                target_age=target_age,
                blocks_remaining=target_age - age,
                difficulty=difficulty,
                expected_iterations=expected,
                current_block_height=height,
            )
        )
        sleep(thresholds.poll_interval)

"""
FSRS-4.5 memory model.

Maps (memory state, rating, now) to the next memory state plus one audit log
entry. Pure: no clock reads and no I/O, so callers always pass ``now``.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple

from deckflow.utils.errors import InvalidRating, InvalidState
from deckflow.utils.types import AuditLogEntry, MemoryState, Rating, Stage

DECAY = -0.5
FACTOR = 19 / 81

FSRS_4_5_WEIGHTS: Tuple[float, ...] = (
    0.4072, 1.1829, 3.1262, 15.4722,
    7.2102, 0.5316, 1.0651, 0.0234,
    1.616, 0.1544, 1.0824, 1.9813,
    0.0953, 0.2975, 2.2042, 0.2407,
    2.9466,
)

# Short steps for items that have not graduated to day-based intervals.
NEW_STEPS = {
    Rating.AGAIN: dt.timedelta(minutes=1),
    Rating.HARD: dt.timedelta(minutes=5),
    Rating.GOOD: dt.timedelta(minutes=10),
}
RELEARN_STEPS = {
    Rating.AGAIN: dt.timedelta(minutes=5),
    Rating.HARD: dt.timedelta(minutes=10),
}


@dataclass(frozen=True)
class ParameterSet:
    weights: Tuple[float, ...] = FSRS_4_5_WEIGHTS
    request_retention: float = 0.9
    maximum_interval: int = 36500
    # Post-lapse stability never exceeds this share of the pre-lapse value.
    lapse_stability_ceiling: float = 0.7
    version: str = "FSRS-4.5"

    def __post_init__(self) -> None:
        if len(self.weights) != 17:
            raise ValueError(f"FSRS-4.5 expects 17 weights, got {len(self.weights)}")
        if not 0 < self.request_retention < 1:
            raise ValueError("request_retention must be within (0, 1)")
        if not 0 < self.lapse_stability_ceiling < 1:
            raise ValueError("lapse_stability_ceiling must be within (0, 1)")
        if self.maximum_interval < 1:
            raise ValueError("maximum_interval must be at least 1 day")


def _clamp(value: float, low: float, high: float) -> float:
    return min(max(value, low), high)


def _coerce_rating(rating) -> Rating:
    if isinstance(rating, bool):
        raise InvalidRating(f"Invalid rating: {rating!r}")
    try:
        return Rating(rating)
    except (ValueError, TypeError) as exc:
        raise InvalidRating(f"Invalid rating: {rating!r}") from exc


def _coerce_stage(stage) -> Stage:
    try:
        return Stage(stage)
    except (ValueError, TypeError) as exc:
        raise InvalidState(f"Unknown stage: {stage!r}") from exc


class MemoryModel:
    def __init__(self, params: Optional[ParameterSet] = None) -> None:
        self.params = params or ParameterSet()
        self.w = self.params.weights

    @property
    def parameters_version(self) -> str:
        return self.params.version

    # -- formulas ---------------------------------------------------------

    def forgetting_curve(self, elapsed_days: float, stability: float) -> float:
        if stability <= 0:
            return 0.0
        return (1 + FACTOR * elapsed_days / stability) ** DECAY

    def next_interval(self, stability: float) -> int:
        r = self.params.request_retention
        interval = stability / FACTOR * (r ** (1 / DECAY) - 1)
        return int(_clamp(round(interval), 1, self.params.maximum_interval))

    def init_stability(self, rating: Rating) -> float:
        return max(self.w[int(rating) - 1], 0.1)

    def init_difficulty(self, rating: Rating) -> float:
        return _clamp(self.w[4] - (int(rating) - 3) * self.w[5], 1, 10)

    def next_difficulty(self, difficulty: float, rating: Rating) -> float:
        moved = difficulty - self.w[6] * (int(rating) - 3)
        reverted = self.w[7] * self.init_difficulty(Rating.GOOD) + (1 - self.w[7]) * moved
        return _clamp(reverted, 1, 10)

    def next_recall_stability(self, difficulty: float, stability: float, r: float, rating: Rating) -> float:
        hard_penalty = self.w[15] if rating == Rating.HARD else 1.0
        easy_bonus = self.w[16] if rating == Rating.EASY else 1.0
        growth = (
            math.exp(self.w[8])
            * (11 - difficulty)
            * stability ** -self.w[9]
            * (math.exp((1 - r) * self.w[10]) - 1)
            * hard_penalty
            * easy_bonus
        )
        return stability * (1 + growth)

    def next_forget_stability(self, difficulty: float, stability: float, r: float, *, lapse: bool = False) -> float:
        forget = (
            self.w[11]
            * difficulty ** -self.w[12]
            * ((stability + 1) ** self.w[13] - 1)
            * math.exp((1 - r) * self.w[14])
        )
        if lapse:
            return min(forget, stability * self.params.lapse_stability_ceiling)
        return min(forget, stability)

    # -- public API -------------------------------------------------------

    def retrievability(self, state: MemoryState, now: dt.datetime) -> float:
        """Probability of recall at ``now``; 0 for items never reviewed."""
        if _coerce_stage(state.stage) == Stage.NEW or state.last_review is None:
            return 0.0
        elapsed = max(0.0, (now - state.last_review).total_seconds() / 86400.0)
        return self.forgetting_curve(elapsed, state.stability)

    def preview(self, state: MemoryState, now: dt.datetime) -> Dict[Rating, MemoryState]:
        return {rating: self.transition(state, rating, now)[0] for rating in Rating}

    def transition(
        self,
        state: MemoryState,
        rating,
        now: dt.datetime,
        *,
        item_id: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> Tuple[MemoryState, AuditLogEntry]:
        rating = _coerce_rating(rating)
        stage = _coerce_stage(state.stage)

        if stage == Stage.NEW:
            elapsed_days = 0
        elif state.last_review is None:
            raise InvalidState("Reviewed item has no last_review timestamp")
        else:
            elapsed_days = max(0, (now - state.last_review).days)

        if stage == Stage.NEW:
            new_state = self._from_new(state, rating, now)
        elif stage in (Stage.LEARNING, Stage.RELEARNING):
            new_state = self._from_learning(state, stage, rating, now, elapsed_days)
        else:
            new_state = self._from_review(state, rating, now, elapsed_days)

        new_state = replace(
            new_state,
            elapsed_days=elapsed_days,
            reps=state.reps + 1,
            last_review=now,
        )
        log = AuditLogEntry(
            rating=rating,
            stage=new_state.stage,
            due=new_state.due,
            stability=new_state.stability,
            difficulty=new_state.difficulty,
            elapsed_days=elapsed_days,
            last_elapsed_days=state.elapsed_days,
            scheduled_days=new_state.scheduled_days,
            review=now,
            item_id=item_id,
            owner_id=owner_id,
        )
        return new_state, log

    def _from_new(self, state: MemoryState, rating: Rating, now: dt.datetime) -> MemoryState:
        stability = self.init_stability(rating)
        difficulty = self.init_difficulty(rating)
        if rating == Rating.EASY:
            days = self.next_interval(stability)
            return replace(
                state,
                stage=Stage.REVIEW,
                stability=stability,
                difficulty=difficulty,
                scheduled_days=days,
                learning_steps=0,
                due=now + dt.timedelta(days=days),
            )
        return replace(
            state,
            stage=Stage.LEARNING,
            stability=stability,
            difficulty=difficulty,
            scheduled_days=0,
            learning_steps=1,
            due=now + NEW_STEPS[rating],
        )

    def _from_learning(
        self,
        state: MemoryState,
        stage: Stage,
        rating: Rating,
        now: dt.datetime,
        elapsed_days: int,
    ) -> MemoryState:
        r = self.forgetting_curve(elapsed_days, state.stability)
        difficulty = self.next_difficulty(state.difficulty, rating)
        if rating in RELEARN_STEPS:
            if rating == Rating.AGAIN:
                stability = self.next_forget_stability(state.difficulty, state.stability, r)
            else:
                stability = self.next_recall_stability(state.difficulty, state.stability, r, rating)
            return replace(
                state,
                stage=stage,
                stability=stability,
                difficulty=difficulty,
                scheduled_days=0,
                learning_steps=state.learning_steps + 1,
                due=now + RELEARN_STEPS[rating],
            )

        good_stability = self.next_recall_stability(state.difficulty, state.stability, r, Rating.GOOD)
        good_days = self.next_interval(good_stability)
        if rating == Rating.GOOD:
            stability, days = good_stability, good_days
        else:
            stability = self.next_recall_stability(state.difficulty, state.stability, r, Rating.EASY)
            days = max(self.next_interval(stability), good_days + 1)
        return replace(
            state,
            stage=Stage.REVIEW,
            stability=stability,
            difficulty=difficulty,
            scheduled_days=days,
            learning_steps=0,
            due=now + dt.timedelta(days=days),
        )

    def _from_review(
        self,
        state: MemoryState,
        rating: Rating,
        now: dt.datetime,
        elapsed_days: int,
    ) -> MemoryState:
        r = self.forgetting_curve(elapsed_days, state.stability)
        difficulty = self.next_difficulty(state.difficulty, rating)
        if rating == Rating.AGAIN:
            return replace(
                state,
                stage=Stage.RELEARNING,
                stability=self.next_forget_stability(state.difficulty, state.stability, r, lapse=True),
                difficulty=difficulty,
                scheduled_days=0,
                learning_steps=0,
                lapses=state.lapses + 1,
                due=now + RELEARN_STEPS[Rating.AGAIN],
            )

        stabilities = {
            grade: self.next_recall_stability(state.difficulty, state.stability, r, grade)
            for grade in (Rating.HARD, Rating.GOOD, Rating.EASY)
        }
        hard_days = self.next_interval(stabilities[Rating.HARD])
        good_days = self.next_interval(stabilities[Rating.GOOD])
        hard_days = min(hard_days, good_days)
        good_days = max(good_days, hard_days + 1)
        easy_days = max(self.next_interval(stabilities[Rating.EASY]), good_days + 1)
        days = {Rating.HARD: hard_days, Rating.GOOD: good_days, Rating.EASY: easy_days}[rating]
        return replace(
            state,
            stage=Stage.REVIEW,
            stability=stabilities[rating],
            difficulty=difficulty,
            scheduled_days=days,
            learning_steps=0,
            due=now + dt.timedelta(days=days),
        )


DEFAULT_MODEL = MemoryModel()


def transition(
    state: MemoryState,
    rating,
    now: dt.datetime,
    *,
    item_id: Optional[str] = None,
    owner_id: Optional[str] = None,
) -> Tuple[MemoryState, AuditLogEntry]:
    """Apply ``rating`` to ``state`` with the default FSRS-4.5 parameters."""
    return DEFAULT_MODEL.transition(state, rating, now, item_id=item_id, owner_id=owner_id)


__all__ = [
    "DECAY",
    "FACTOR",
    "FSRS_4_5_WEIGHTS",
    "ParameterSet",
    "MemoryModel",
    "DEFAULT_MODEL",
    "transition",
]

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

from deckflow.utils.errors import InvalidOutcome, InvalidRating
from deckflow.utils.types import Rating, StudyMode

FAST_ANSWER_THRESHOLD_MS = 10_000
SPEED_BONUS_WINDOW_MS = 10_000


@dataclass(frozen=True)
class ChoiceOutcome:
    correct: bool
    response_time_ms: int


@dataclass(frozen=True)
class RatingPolicy:
    """Product constants for answer-based modes; overridable from settings."""

    fast_threshold_ms: int = FAST_ANSWER_THRESHOLD_MS
    points_per_card: int = 10
    max_speed_bonus: float = 0.5

    @classmethod
    def from_settings(cls, settings) -> "RatingPolicy":
        return cls(
            fast_threshold_ms=int(getattr(settings, "fast_answer_threshold_ms", FAST_ANSWER_THRESHOLD_MS)),
            points_per_card=int(getattr(settings, "points_per_card", 10)),
        )

    def rating_for(self, outcome: ChoiceOutcome) -> Rating:
        if not outcome.correct:
            return Rating.AGAIN
        if outcome.response_time_ms <= self.fast_threshold_ms:
            return Rating.GOOD
        return Rating.HARD

    def points_for(self, correct: bool, response_time_ms: int) -> int:
        """Timed-mode score: base points plus a bonus that shrinks to zero at 10 s."""
        if not correct:
            return 0
        speed = max(0.0, 1 - response_time_ms / SPEED_BONUS_WINDOW_MS)
        bonus = speed * self.points_per_card * self.max_speed_bonus
        return round(self.points_per_card + bonus)


DEFAULT_POLICY = RatingPolicy()


def parse_mode(mode: Any) -> StudyMode:
    try:
        return StudyMode(mode)
    except (ValueError, TypeError) as exc:
        raise InvalidOutcome(f"Unknown study mode: {mode!r}") from exc


def parse_rating(value: Any) -> Rating:
    if isinstance(value, Rating):
        return value
    if isinstance(value, str):
        name = value.strip().upper()
        if name in Rating.__members__:
            return Rating[name]
        if name.isdigit():
            value = int(name)
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return Rating(value)
        except ValueError:
            pass
    raise InvalidRating(f"Invalid rating: {value!r}")


def parse_outcome(value: Any) -> ChoiceOutcome:
    if isinstance(value, ChoiceOutcome):
        correct, elapsed = value.correct, value.response_time_ms
    elif isinstance(value, Mapping):
        correct = value.get("correct")
        elapsed = value.get("response_time_ms", value.get("responseTimeMs"))
    else:
        raise InvalidOutcome(f"Malformed outcome: {value!r}")
    if not isinstance(correct, bool):
        raise InvalidOutcome("Outcome 'correct' must be a boolean")
    if isinstance(elapsed, bool) or not isinstance(elapsed, (int, float)):
        raise InvalidOutcome("Outcome response time must be a number of milliseconds")
    if elapsed < 0:
        raise InvalidOutcome("Response time cannot be negative")
    return ChoiceOutcome(correct=correct, response_time_ms=int(elapsed))


def normalize(mode: Any, outcome: Any, policy: Optional[RatingPolicy] = None) -> Rating:
    """Turn a raw study outcome into the rating the memory model consumes."""
    mode = parse_mode(mode)
    if mode == StudyMode.SELF_RATED:
        return parse_rating(outcome)
    return (policy or DEFAULT_POLICY).rating_for(parse_outcome(outcome))


__all__ = [
    "ChoiceOutcome",
    "RatingPolicy",
    "DEFAULT_POLICY",
    "normalize",
    "parse_mode",
    "parse_rating",
    "parse_outcome",
]

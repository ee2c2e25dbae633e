from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Rating(IntEnum):
    """Recall quality reported for one review, strictly increasing."""

    AGAIN = 1
    HARD = 2
    GOOD = 3
    EASY = 4


class Stage(IntEnum):
    NEW = 0
    LEARNING = 1
    REVIEW = 2
    RELEARNING = 3


class StudyMode(str, Enum):
    SELF_RATED = "self-rated"
    MULTIPLE_CHOICE = "multiple-choice"
    TIMED = "timed"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ItemSubtype(str, Enum):
    QA = "qa"
    MULTIPLE_CHOICE = "multiple_choice"


@dataclass
class MemoryState:
    """Spaced-repetition scheduling data embedded in every item."""

    stage: Stage = Stage.NEW
    stability: float = 0.0
    difficulty: float = 0.0
    elapsed_days: int = 0
    scheduled_days: int = 0
    learning_steps: int = 0
    reps: int = 0
    lapses: int = 0
    due: dt.datetime = field(default_factory=utcnow)
    last_review: Optional[dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": Stage(self.stage).name.lower(),
            "stability": self.stability,
            "difficulty": self.difficulty,
            "elapsed_days": self.elapsed_days,
            "scheduled_days": self.scheduled_days,
            "learning_steps": self.learning_steps,
            "reps": self.reps,
            "lapses": self.lapses,
            "due": self.due.isoformat(),
            "last_review": self.last_review.isoformat() if self.last_review else None,
        }


@dataclass
class AuditLogEntry:
    """One row of review history; written once per rating event and never changed."""

    rating: Rating
    stage: Stage
    due: dt.datetime
    stability: float
    difficulty: float
    elapsed_days: int
    last_elapsed_days: int
    scheduled_days: int
    review: dt.datetime
    item_id: Optional[str] = None
    owner_id: Optional[str] = None


@dataclass
class Item:
    item_id: str
    owner_id: str
    question: str
    answer: str
    state: MemoryState
    created_at: dt.datetime
    subtype: Optional[str] = None
    distractors: Optional[List[str]] = None

    @property
    def served_subtype(self) -> str:
        """Multiple-choice items without distractors fall back to plain question/answer."""
        if self.subtype == ItemSubtype.MULTIPLE_CHOICE.value and self.distractors:
            return ItemSubtype.MULTIPLE_CHOICE.value
        return ItemSubtype.QA.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.item_id,
            "question": self.question,
            "answer": self.answer,
            "subtype": self.subtype,
            "served_subtype": self.served_subtype,
            "distractors": list(self.distractors or []),
            "state": self.state.to_dict(),
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class Collection:
    collection_id: str
    owner_id: str
    name: str
    capacity: int
    member_count: int = 0
    created_at: dt.datetime = field(default_factory=utcnow)
    archived: bool = False
    new_cards_per_day_override: Optional[int] = None
    cards_per_session_override: Optional[int] = None
    last_studied_at: Optional[dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.collection_id,
            "name": self.name,
            "capacity": self.capacity,
            "member_count": self.member_count,
            "archived": self.archived,
            "new_cards_per_day": self.new_cards_per_day_override,
            "cards_per_session": self.cards_per_session_override,
            "created_at": self.created_at.isoformat(),
            "last_studied_at": self.last_studied_at.isoformat() if self.last_studied_at else None,
        }


@dataclass
class ReviewStats:
    total_reviews: int = 0
    reviews_today: int = 0
    reviews_this_week: int = 0
    average_rating: float = 0.0
    retention_rate: float = 0.0


@dataclass
class AddMembersResult:
    added: int
    skipped: int
    member_count: int


@dataclass
class Job:
    job_id: str
    type: str
    owner_id: str
    payload: Dict[str, Any]
    status: JobStatus
    attempts: int
    max_attempts: int
    priority: int
    created_at: dt.datetime
    updated_at: dt.datetime
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    last_error: Optional[str] = None
    started_at: Optional[dt.datetime] = None
    processed_at: Optional[dt.datetime] = None
    next_retry_at: Optional[dt.datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[dt.datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.job_id,
            "type": self.type,
            "status": JobStatus(self.status).value,
            "result": self.result,
            "error": self.error,
            "last_error": self.last_error,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "priority": self.priority,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "processed_at": _iso(self.processed_at),
            "next_retry_at": _iso(self.next_retry_at),
        }


@dataclass
class SessionProgress:
    current_index: int = 0
    total: int = 0
    responses: int = 0


@dataclass
class SessionSnapshot:
    """Client-held description of an interrupted session, passed back to resume it."""

    session_id: str
    collection_id: str
    mode: StudyMode
    progress: SessionProgress = field(default_factory=SessionProgress)
    started_at: dt.datetime = field(default_factory=utcnow)
    last_activity_at: dt.datetime = field(default_factory=utcnow)
    time_remaining_ms: Optional[int] = None
    score: Optional[int] = None


@dataclass(frozen=True)
class SessionSettings:
    """Effective session limits; ``source`` names the most specific level that set one."""

    cards_per_session: int
    new_cards_per_day: int
    source: str = "global"


@dataclass
class SessionView:
    session_id: str
    collection_id: str
    mode: StudyMode
    items: List[Item]
    started_at: dt.datetime
    progress: SessionProgress = field(default_factory=SessionProgress)
    time_remaining_ms: Optional[int] = None
    score: Optional[int] = None
    settings: Optional[SessionSettings] = None

    @property
    def nothing_due(self) -> bool:
        return not self.items

    @property
    def item_ids(self) -> List[str]:
        return [item.item_id for item in self.items]


@dataclass
class SessionChanges:
    added_items: List[Item]
    removed_item_ids: List[str]

    @property
    def has_changes(self) -> bool:
        return bool(self.added_items or self.removed_item_ids)


@dataclass
class GeneratedItem:
    question: str
    answer: str
    subtype: Optional[str] = None
    distractors: Optional[List[str]] = None


@dataclass
class GenerationRequest:
    content: str
    owner_id: str
    count: int = 5
    subtype: Optional[str] = None


@dataclass
class GenerationResult:
    items: List[GeneratedItem]
    model_id: str
    retry_count: int = 0


@dataclass
class SimilarItem:
    item_id: str
    similarity: float

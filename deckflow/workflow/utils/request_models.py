from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, Field

from deckflow.utils.types import SessionProgress, SessionSnapshot, StudyMode


class CollectionCreateRequest(BaseModel):
    name: str = Field(..., description="Collection name, 1-200 characters after trimming")
    capacity: int | None = Field(None, ge=1, description="Maximum number of members")
    new_cards_per_day: int | None = Field(None, ge=0, description="Overrides NEW_CARDS_PER_DAY for this collection")
    cards_per_session: int | None = Field(None, ge=0, description="Overrides CARDS_PER_SESSION for this collection")


class CollectionUpdateRequest(BaseModel):
    """Partial update; only fields present in the body change, and null clears an override."""

    name: str | None = None
    archived: bool | None = None
    new_cards_per_day: int | None = Field(None, ge=0)
    cards_per_session: int | None = Field(None, ge=0)

    def changes(self) -> dict[str, Any]:
        changes = self.model_dump(exclude_unset=True)
        for key in ("name", "archived"):
            if changes.get(key, "") is None:
                changes.pop(key)
        return changes


class MembershipRequest(BaseModel):
    item_ids: list[str] = Field(..., min_length=1, description="Item ids to add or remove")


class ItemCreateRequest(BaseModel):
    question: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)
    subtype: str | None = Field(None, description="qa | multiple_choice")
    distractors: list[str] | None = None
    collection_id: str | None = Field(None, description="Optional collection to file the item in")


class ProgressModel(BaseModel):
    current_index: int = 0
    total: int = 0
    responses: int = 0


class SessionSnapshotModel(BaseModel):
    session_id: str
    collection_id: str
    mode: StudyMode
    progress: ProgressModel = Field(default_factory=ProgressModel)
    started_at: dt.datetime
    last_activity_at: dt.datetime
    time_remaining_ms: int | None = None
    score: int | None = None

    def to_snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            collection_id=self.collection_id,
            mode=self.mode,
            progress=SessionProgress(**self.progress.model_dump()),
            started_at=self.started_at,
            last_activity_at=self.last_activity_at,
            time_remaining_ms=self.time_remaining_ms,
            score=self.score,
        )


class StartSessionRequest(BaseModel):
    collection_id: str
    mode: StudyMode = StudyMode.SELF_RATED
    cards_per_session: int | None = Field(None, ge=0, description="Session override of the collection setting")
    new_cards_per_day: int | None = Field(None, ge=0, description="Session override of the collection setting")
    resume: SessionSnapshotModel | None = None


class DetectChangesRequest(BaseModel):
    collection_id: str
    original_item_ids: list[str] = Field(default_factory=list)


class RateRequest(BaseModel):
    item_id: str
    mode: StudyMode = StudyMode.SELF_RATED
    outcome: Any = Field(..., description="Rating for self-rated mode, {correct, response_time_ms} otherwise")


class JobCreateRequest(BaseModel):
    type: str = Field(..., description="flashcard_generation | distractor_generation")
    payload: dict = Field(default_factory=dict)
    priority: int = 0
    max_attempts: int | None = Field(None, ge=1)


class ProcessJobsRequest(BaseModel):
    limit: int | None = Field(None, ge=1)
    wait: bool = Field(False, description="Run the batch inline and return processed job ids")

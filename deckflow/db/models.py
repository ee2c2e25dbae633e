from __future__ import annotations

import datetime as dt

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Index, Integer, String, Text, TypeDecorator, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()
JSONType = JSON


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns timezone-aware UTC datetimes."""

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(dt.timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (Index("ix_items_owner_due", "owner_id", "due"),)

    item_id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    question = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    subtype = Column(String, nullable=True)
    distractors = Column(JSONType, nullable=True)
    stage = Column(Integer, nullable=False, default=0)
    stability = Column(Float, nullable=False, default=0.0)
    difficulty = Column(Float, nullable=False, default=0.0)
    elapsed_days = Column(Integer, nullable=False, default=0)
    scheduled_days = Column(Integer, nullable=False, default=0)
    learning_steps = Column(Integer, nullable=False, default=0)
    reps = Column(Integer, nullable=False, default=0)
    lapses = Column(Integer, nullable=False, default=0)
    due = Column(UTCDateTime, nullable=False)
    last_review = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


class ReviewLog(Base):
    __tablename__ = "review_logs"
    __table_args__ = (Index("ix_review_logs_item", "item_id", "id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(String, ForeignKey("items.item_id", ondelete="CASCADE"), nullable=False)
    owner_id = Column(String, nullable=False)
    rating = Column(Integer, nullable=False)
    stage = Column(Integer, nullable=False)
    due = Column(UTCDateTime, nullable=False)
    stability = Column(Float, nullable=False)
    difficulty = Column(Float, nullable=False)
    elapsed_days = Column(Integer, nullable=False)
    last_elapsed_days = Column(Integer, nullable=False)
    scheduled_days = Column(Integer, nullable=False)
    review = Column(UTCDateTime, nullable=False)


class Collection(Base):
    __tablename__ = "collections"
    __table_args__ = (Index("ix_collections_owner", "owner_id", "archived"),)

    collection_id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False)
    name = Column(String(200), nullable=False)
    capacity = Column(Integer, nullable=False, default=1000)
    archived = Column(Boolean, nullable=False, default=False)
    new_cards_per_day_override = Column(Integer, nullable=True)
    cards_per_session_override = Column(Integer, nullable=True)
    last_studied_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)


class CollectionMember(Base):
    __tablename__ = "collection_members"
    __table_args__ = (UniqueConstraint("collection_id", "item_id", name="uix_collection_item"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection_id = Column(String, ForeignKey("collections.collection_id", ondelete="CASCADE"), nullable=False)
    item_id = Column(String, ForeignKey("items.item_id", ondelete="CASCADE"), nullable=False)
    added_at = Column(UTCDateTime, nullable=False)


class Job(Base):
    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_status_priority", "status", "priority", "created_at"),
        Index("ix_jobs_owner_type_created", "owner_id", "type", "created_at"),
    )

    job_id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    owner_id = Column(String, nullable=False)
    payload = Column(JSONType, nullable=False, default=dict)
    status = Column(String, nullable=False, default="pending")
    result = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)
    last_error = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    priority = Column(Integer, nullable=False, default=0)
    created_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime, nullable=False)
    started_at = Column(UTCDateTime, nullable=True)
    processed_at = Column(UTCDateTime, nullable=True)
    next_retry_at = Column(UTCDateTime, nullable=True)

from __future__ import annotations

import datetime as dt
import uuid
from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from sqlalchemy import and_, case, delete, func, select, update

from deckflow.db.async_session import build_async_url, create_async_engine_and_session
from deckflow.db.models import Base, Collection, CollectionMember, Item, ReviewLog
from deckflow.utils.errors import CapacityExceeded, CollectionLimitReached, NotFound
from deckflow.utils.logging_config import get_logger
from deckflow.utils.types import AddMembersResult, AuditLogEntry
from deckflow.utils.types import Collection as CollectionRecord
from deckflow.utils.types import Item as ItemRecord
from deckflow.utils.types import MemoryState, Rating, ReviewStats, Stage, utcnow

logger = get_logger(__name__)

DEFAULT_CAPACITY = 1000


def new_id() -> str:
    return uuid.uuid4().hex


def _state_from_row(row: Item) -> MemoryState:
    return MemoryState(
        stage=Stage(row.stage),
        stability=row.stability,
        difficulty=row.difficulty,
        elapsed_days=row.elapsed_days,
        scheduled_days=row.scheduled_days,
        learning_steps=row.learning_steps,
        reps=row.reps,
        lapses=row.lapses,
        due=row.due,
        last_review=row.last_review,
    )


def _item_from_row(row: Item) -> ItemRecord:
    return ItemRecord(
        item_id=row.item_id,
        owner_id=row.owner_id,
        question=row.question,
        answer=row.answer,
        state=_state_from_row(row),
        created_at=row.created_at,
        subtype=row.subtype,
        distractors=list(row.distractors) if row.distractors else None,
    )


def _log_from_row(row: ReviewLog) -> AuditLogEntry:
    return AuditLogEntry(
        rating=Rating(row.rating),
        stage=Stage(row.stage),
        due=row.due,
        stability=row.stability,
        difficulty=row.difficulty,
        elapsed_days=row.elapsed_days,
        last_elapsed_days=row.last_elapsed_days,
        scheduled_days=row.scheduled_days,
        review=row.review,
        item_id=row.item_id,
        owner_id=row.owner_id,
    )


def _collection_from_row(row: Collection, member_count: int) -> CollectionRecord:
    return CollectionRecord(
        collection_id=row.collection_id,
        owner_id=row.owner_id,
        name=row.name,
        capacity=row.capacity,
        member_count=member_count,
        created_at=row.created_at,
        archived=bool(row.archived),
        new_cards_per_day_override=row.new_cards_per_day_override,
        cards_per_session_override=row.cards_per_session_override,
        last_studied_at=row.last_studied_at,
    )


def _state_values(state: MemoryState) -> dict:
    return {
        "stage": int(state.stage),
        "stability": state.stability,
        "difficulty": state.difficulty,
        "elapsed_days": state.elapsed_days,
        "scheduled_days": state.scheduled_days,
        "learning_steps": state.learning_steps,
        "reps": state.reps,
        "lapses": state.lapses,
        "due": state.due,
        "last_review": state.last_review,
    }


class AsyncSQLAlchemyStore:
    """Async persistence for items, collections and review history."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_url = build_async_url(db_path)
        self.engine, self.SessionLocal = create_async_engine_and_session(self.db_url)

    async def init_models(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    # Item helpers
    async def create_item(
        self,
        owner_id: str,
        question: str,
        answer: str,
        *,
        subtype: str | None = None,
        distractors: Sequence[str] | None = None,
        now: dt.datetime | None = None,
    ) -> ItemRecord:
        now = now or utcnow()
        state = MemoryState(due=now)
        row = Item(
            item_id=new_id(),
            owner_id=owner_id,
            question=question,
            answer=answer,
            subtype=subtype,
            distractors=list(distractors) if distractors else None,
            created_at=now,
            updated_at=now,
            **_state_values(state),
        )
        async with self.SessionLocal() as session:
            session.add(row)
            await session.commit()
        logger.debug("Item created | item_id=%s owner=%s", row.item_id, owner_id)
        return _item_from_row(row)

    async def get_item(self, item_id: str) -> Optional[ItemRecord]:
        async with self.SessionLocal() as session:
            row = await session.get(Item, item_id)
            return _item_from_row(row) if row else None

    async def set_distractors(self, item_id: str, distractors: Sequence[str]) -> None:
        async with self.SessionLocal() as session:
            res = await session.execute(
                update(Item)
                .where(Item.item_id == item_id)
                .values(distractors=list(distractors), updated_at=utcnow())
            )
            await session.commit()
        if res.rowcount == 0:
            raise NotFound(f"Item {item_id} not found")

    async def delete_item(self, item_id: str) -> bool:
        """Remove an item together with its memberships and review history."""
        async with self.SessionLocal() as session:
            await session.execute(delete(CollectionMember).where(CollectionMember.item_id == item_id))
            await session.execute(delete(ReviewLog).where(ReviewLog.item_id == item_id))
            res = await session.execute(delete(Item).where(Item.item_id == item_id))
            await session.commit()
        return res.rowcount > 0

    async def save_review(
        self,
        item_id: str,
        previous: MemoryState,
        new_state: MemoryState,
        log: AuditLogEntry,
    ) -> bool:
        """Compare-and-set the memory state on (reps, due) and append the log entry.

        Returns False, writing nothing, when the stored state no longer matches ``previous``.
        """
        async with self.SessionLocal() as session:
            res = await session.execute(
                update(Item)
                .where(
                    and_(
                        Item.item_id == item_id,
                        Item.reps == previous.reps,
                        Item.due == previous.due,
                    )
                )
                .values(updated_at=log.review, **_state_values(new_state))
            )
            if res.rowcount != 1:
                await session.rollback()
                return False
            session.add(
                ReviewLog(
                    item_id=item_id,
                    owner_id=log.owner_id,
                    rating=int(log.rating),
                    stage=int(log.stage),
                    due=log.due,
                    stability=log.stability,
                    difficulty=log.difficulty,
                    elapsed_days=log.elapsed_days,
                    last_elapsed_days=log.last_elapsed_days,
                    scheduled_days=log.scheduled_days,
                    review=log.review,
                )
            )
            await session.commit()
        return True

    async def review_history(self, item_id: str) -> List[AuditLogEntry]:
        async with self.SessionLocal() as session:
            stmt = select(ReviewLog).where(ReviewLog.item_id == item_id).order_by(ReviewLog.id.asc())
            rows: Iterable[ReviewLog] = (await session.execute(stmt)).scalars().all()
            return [_log_from_row(row) for row in rows]

    # Collection helpers
    async def create_collection(
        self,
        owner_id: str,
        name: str,
        capacity: int = DEFAULT_CAPACITY,
        *,
        limit: int | None = None,
        new_cards_per_day: int | None = None,
        cards_per_session: int | None = None,
        now: dt.datetime | None = None,
    ) -> CollectionRecord:
        """Insert a collection; with ``limit`` the owner's total is checked after the insert so creators serialize."""
        now = now or utcnow()
        row = Collection(
            collection_id=new_id(),
            owner_id=owner_id,
            name=name,
            capacity=capacity,
            archived=False,
            new_cards_per_day_override=new_cards_per_day,
            cards_per_session_override=cards_per_session,
            created_at=now,
            updated_at=now,
        )
        async with self.SessionLocal() as session:
            session.add(row)
            await session.flush()
            if limit is not None:
                owned = int(
                    await session.scalar(
                        select(func.count()).select_from(Collection).where(Collection.owner_id == owner_id)
                    )
                    or 0
                )
                if owned > limit:
                    await session.rollback()
                    raise CollectionLimitReached(current=owned - 1, limit=limit)
            await session.commit()
        return _collection_from_row(row, 0)

    async def get_collection(self, collection_id: str) -> Optional[CollectionRecord]:
        async with self.SessionLocal() as session:
            row = await session.get(Collection, collection_id)
            if not row:
                return None
            count = await session.scalar(
                select(func.count()).select_from(CollectionMember).where(CollectionMember.collection_id == collection_id)
            )
            return _collection_from_row(row, int(count or 0))

    async def list_collections(
        self,
        owner_id: str,
        *,
        archived: bool | None = None,
        sort_by: str = "last_studied_at",
    ) -> List[CollectionRecord]:
        """Owner's collections with member counts; recently studied first unless sorted otherwise."""
        member_count = func.count(CollectionMember.id)
        stmt = (
            select(Collection, member_count)
            .outerjoin(CollectionMember, CollectionMember.collection_id == Collection.collection_id)
            .where(Collection.owner_id == owner_id)
            .group_by(Collection.collection_id)
        )
        if archived is not None:
            stmt = stmt.where(Collection.archived == archived)
        if sort_by == "name":
            stmt = stmt.order_by(Collection.name.asc(), Collection.collection_id.asc())
        elif sort_by == "created_at":
            stmt = stmt.order_by(Collection.created_at.desc(), Collection.collection_id.asc())
        else:
            stmt = stmt.order_by(
                Collection.last_studied_at.is_(None),
                Collection.last_studied_at.desc(),
                Collection.created_at.desc(),
                Collection.collection_id.asc(),
            )
        async with self.SessionLocal() as session:
            rows = (await session.execute(stmt)).all()
            return [_collection_from_row(row, int(count or 0)) for row, count in rows]

    async def update_collection(
        self,
        collection_id: str,
        values: Mapping[str, Any],
        *,
        now: dt.datetime | None = None,
    ) -> CollectionRecord:
        now = now or utcnow()
        async with self.SessionLocal() as session:
            res = await session.execute(
                update(Collection)
                .where(Collection.collection_id == collection_id)
                .values(updated_at=now, **dict(values))
            )
            await session.commit()
        if res.rowcount == 0:
            raise NotFound(f"Collection {collection_id} not found")
        logger.info("Collection updated | collection=%s fields=%s", collection_id, sorted(values))
        return await self.get_collection(collection_id)

    async def delete_collection(self, collection_id: str) -> bool:
        """Remove a collection and its memberships; the items themselves are kept."""
        async with self.SessionLocal() as session:
            await session.execute(delete(CollectionMember).where(CollectionMember.collection_id == collection_id))
            res = await session.execute(delete(Collection).where(Collection.collection_id == collection_id))
            await session.commit()
        return res.rowcount > 0

    async def mark_studied(self, collection_id: str, now: dt.datetime) -> None:
        async with self.SessionLocal() as session:
            await session.execute(
                update(Collection).where(Collection.collection_id == collection_id).values(last_studied_at=now)
            )
            await session.commit()

    async def add_members(
        self,
        collection_id: str,
        item_ids: Sequence[str],
        *,
        now: dt.datetime | None = None,
    ) -> AddMembersResult:
        """Add items to a collection, rejecting the whole add if it would exceed capacity."""
        now = now or utcnow()
        requested = list(dict.fromkeys(item_ids))
        async with self.SessionLocal() as session:
            # Touching the row first takes the write lock so concurrent adds serialize.
            touched = await session.execute(
                update(Collection).where(Collection.collection_id == collection_id).values(updated_at=now)
            )
            if touched.rowcount == 0:
                await session.rollback()
                raise NotFound(f"Collection {collection_id} not found")
            capacity = await session.scalar(
                select(Collection.capacity).where(Collection.collection_id == collection_id)
            )
            existing = set(
                (
                    await session.execute(
                        select(CollectionMember.item_id).where(
                            CollectionMember.collection_id == collection_id,
                            CollectionMember.item_id.in_(requested),
                        )
                    )
                ).scalars()
            )
            current = int(
                await session.scalar(
                    select(func.count()).select_from(CollectionMember).where(CollectionMember.collection_id == collection_id)
                )
                or 0
            )
            fresh = [item_id for item_id in requested if item_id not in existing]
            if current + len(fresh) > capacity:
                await session.rollback()
                raise CapacityExceeded(current=current, capacity=capacity, requested=len(fresh))
            session.add_all(
                [CollectionMember(collection_id=collection_id, item_id=item_id, added_at=now) for item_id in fresh]
            )
            await session.commit()
        skipped = len(item_ids) - len(fresh)
        logger.info(
            "Collection members added | collection=%s added=%s skipped=%s",
            collection_id,
            len(fresh),
            skipped,
        )
        return AddMembersResult(added=len(fresh), skipped=skipped, member_count=current + len(fresh))

    async def remove_members(self, collection_id: str, item_ids: Sequence[str]) -> int:
        if not item_ids:
            return 0
        async with self.SessionLocal() as session:
            res = await session.execute(
                delete(CollectionMember).where(
                    CollectionMember.collection_id == collection_id,
                    CollectionMember.item_id.in_(list(item_ids)),
                )
            )
            await session.commit()
        return res.rowcount

    async def member_ids(self, collection_id: str) -> List[str]:
        async with self.SessionLocal() as session:
            stmt = select(CollectionMember.item_id).where(CollectionMember.collection_id == collection_id)
            return list((await session.execute(stmt)).scalars().all())

    async def due_members(
        self,
        collection_id: str,
        now: dt.datetime,
        *,
        limit: int | None = None,
        exclude: Sequence[str] | None = None,
    ) -> List[ItemRecord]:
        """Members with due <= now, earliest due first, then creation order, then id."""
        async with self.SessionLocal() as session:
            stmt = (
                select(Item)
                .join(CollectionMember, CollectionMember.item_id == Item.item_id)
                .where(CollectionMember.collection_id == collection_id, Item.due <= now)
                .order_by(Item.due.asc(), Item.created_at.asc(), Item.item_id.asc())
            )
            if exclude:
                stmt = stmt.where(Item.item_id.notin_(list(exclude)))
            if limit is not None:
                stmt = stmt.limit(limit)
            rows: Iterable[Item] = (await session.execute(stmt)).scalars().all()
            return [_item_from_row(row) for row in rows]

    async def introduced_since(self, collection_id: str, since: dt.datetime) -> int:
        """Members whose first review happened at or after ``since``."""
        first_review = (
            select(ReviewLog.item_id, func.min(ReviewLog.review).label("first_review"))
            .join(CollectionMember, CollectionMember.item_id == ReviewLog.item_id)
            .where(CollectionMember.collection_id == collection_id)
            .group_by(ReviewLog.item_id)
            .subquery()
        )
        async with self.SessionLocal() as session:
            count = await session.scalar(
                select(func.count()).select_from(first_review).where(first_review.c.first_review >= since)
            )
        return int(count or 0)

    async def review_stats(self, owner_id: str, now: dt.datetime) -> ReviewStats:
        """Review totals for one owner; retention is the percentage of Good and Easy ratings."""
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        week = today - dt.timedelta(days=7)
        stmt = select(
            func.count(ReviewLog.id),
            func.avg(ReviewLog.rating),
            func.sum(case((ReviewLog.rating >= int(Rating.GOOD), 1), else_=0)),
            func.sum(case((ReviewLog.review >= today, 1), else_=0)),
            func.sum(case((ReviewLog.review >= week, 1), else_=0)),
        ).where(ReviewLog.owner_id == owner_id)
        async with self.SessionLocal() as session:
            total, average, successful, today_count, week_count = (await session.execute(stmt)).one()
        total = int(total or 0)
        if not total:
            return ReviewStats()
        return ReviewStats(
            total_reviews=total,
            reviews_today=int(today_count or 0),
            reviews_this_week=int(week_count or 0),
            average_rating=round(float(average), 2),
            retention_rate=round(int(successful or 0) / total * 100, 2),
        )

from __future__ import annotations

import datetime as dt
import uuid
from typing import Any, Callable, List, Mapping, Optional, Sequence

from deckflow.db.async_store import DEFAULT_CAPACITY, AsyncSQLAlchemyStore
from deckflow.utils.errors import Forbidden, InvalidState, NotFound, StaleMemoryState
from deckflow.utils.logging_config import get_logger
from deckflow.utils.scheduler import DEFAULT_MODEL, MemoryModel
from deckflow.utils.types import (
    AddMembersResult,
    AuditLogEntry,
    Collection,
    Item,
    MemoryState,
    ReviewStats,
    SessionChanges,
    SessionProgress,
    SessionSettings,
    SessionSnapshot,
    SessionView,
    Stage,
    utcnow,
)
from deckflow.workflow.rating import DEFAULT_POLICY, RatingPolicy, normalize, parse_mode

logger = get_logger(__name__)

MAX_COLLECTION_NAME = 200
DEFAULT_CARDS_PER_SESSION = 20
DEFAULT_NEW_CARDS_PER_DAY = 20
DEFAULT_COLLECTION_LIMIT = 100
COLLECTION_SORTS = ("last_studied_at", "created_at", "name")
# Request field -> column for partial collection updates.
COLLECTION_FIELDS = {
    "name": "name",
    "archived": "archived",
    "new_cards_per_day": "new_cards_per_day_override",
    "cards_per_session": "cards_per_session_override",
}


def _check_limit(name: str, value: Optional[int]) -> None:
    if value is not None and value < 0:
        raise ValueError(f"{name} must be non-negative")


def _first_set(*values: Optional[int]) -> int:
    return next(value for value in values if value is not None)


def _clean_name(name: Optional[str]) -> str:
    cleaned = (name or "").strip()
    if not 1 <= len(cleaned) <= MAX_COLLECTION_NAME:
        raise ValueError(f"Collection name must be 1-{MAX_COLLECTION_NAME} characters")
    return cleaned


class SessionComposer:
    """Builds review sessions from due collection members and is the only writer of memory state."""

    def __init__(
        self,
        store: AsyncSQLAlchemyStore,
        model: Optional[MemoryModel] = None,
        policy: Optional[RatingPolicy] = None,
        clock: Optional[Callable[[], dt.datetime]] = None,
        *,
        default_capacity: int = DEFAULT_CAPACITY,
        cards_per_session: int = DEFAULT_CARDS_PER_SESSION,
        new_cards_per_day: int = DEFAULT_NEW_CARDS_PER_DAY,
        collection_limit: Optional[int] = DEFAULT_COLLECTION_LIMIT,
    ) -> None:
        self.store = store
        self.model = model or DEFAULT_MODEL
        self.policy = policy or DEFAULT_POLICY
        self.clock = clock or utcnow
        self.default_capacity = default_capacity
        self.cards_per_session = cards_per_session
        self.new_cards_per_day = new_cards_per_day
        self.collection_limit = collection_limit

    # Ownership helpers
    async def _owned_item(self, item_id: str, owner_id: str) -> Item:
        item = await self.store.get_item(item_id)
        if item is None:
            raise NotFound(f"Item {item_id} not found")
        if item.owner_id != owner_id:
            raise Forbidden()
        return item

    async def _owned_collection(self, collection_id: str, owner_id: str) -> Collection:
        collection = await self.store.get_collection(collection_id)
        if collection is None:
            raise NotFound(f"Collection {collection_id} not found")
        if collection.owner_id != owner_id:
            raise Forbidden()
        return collection

    # Sessions
    def resolve_settings(
        self,
        collection: Collection,
        *,
        cards_per_session: Optional[int] = None,
        new_cards_per_day: Optional[int] = None,
    ) -> SessionSettings:
        """Session overrides beat collection overrides, which beat the global defaults."""
        _check_limit("cards_per_session", cards_per_session)
        _check_limit("new_cards_per_day", new_cards_per_day)
        if cards_per_session is not None or new_cards_per_day is not None:
            source = "session"
        elif collection.cards_per_session_override is not None or collection.new_cards_per_day_override is not None:
            source = "collection"
        else:
            source = "global"
        return SessionSettings(
            cards_per_session=_first_set(cards_per_session, collection.cards_per_session_override, self.cards_per_session),
            new_cards_per_day=_first_set(new_cards_per_day, collection.new_cards_per_day_override, self.new_cards_per_day),
            source=source,
        )

    async def _compose(self, collection_id: str, settings: SessionSettings, now: dt.datetime) -> List[Item]:
        day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        introduced = await self.store.introduced_since(collection_id, day_start)
        new_allowance = max(0, settings.new_cards_per_day - introduced)
        items: List[Item] = []
        for item in await self.store.due_members(collection_id, now):
            if len(items) >= settings.cards_per_session:
                break
            if item.state.stage == Stage.NEW:
                if new_allowance <= 0:
                    continue
                new_allowance -= 1
            items.append(item)
        return items

    async def start_session(
        self,
        collection_id: str,
        owner_id: str,
        mode: Any,
        *,
        resume: Optional[SessionSnapshot] = None,
        limit: Optional[int] = None,
        new_limit: Optional[int] = None,
    ) -> SessionView:
        """Serve due members in session order.

        ``limit`` and ``new_limit`` override the collection's cards-per-session and
        new-cards-per-day settings for this session only. New items count against
        the day's allowance from their first review on.
        """
        mode = parse_mode(mode)
        collection = await self._owned_collection(collection_id, owner_id)
        if resume is not None:
            if resume.collection_id != collection_id or parse_mode(resume.mode) != mode:
                raise InvalidState("Session snapshot does not match the requested collection and mode")

        settings = self.resolve_settings(collection, cards_per_session=limit, new_cards_per_day=new_limit)
        now = self.clock()
        items = await self._compose(collection_id, settings, now)
        await self.store.mark_studied(collection_id, now)
        if resume is not None:
            view = SessionView(
                session_id=resume.session_id,
                collection_id=collection_id,
                mode=mode,
                items=items,
                started_at=resume.started_at,
                progress=resume.progress,
                time_remaining_ms=resume.time_remaining_ms,
                score=resume.score,
                settings=settings,
            )
        else:
            view = SessionView(
                session_id=str(uuid.uuid4()),
                collection_id=collection_id,
                mode=mode,
                items=items,
                started_at=now,
                progress=SessionProgress(current_index=0, total=len(items), responses=0),
                settings=settings,
            )
        logger.info(
            "Session started | session=%s collection=%s mode=%s due=%s resumed=%s",
            view.session_id,
            collection_id,
            mode.value,
            len(items),
            resume is not None,
        )
        return view

    async def detect_changes(
        self,
        collection_id: str,
        owner_id: str,
        original_item_ids: Sequence[str],
    ) -> SessionChanges:
        """Compare a running session's cards against the collection as it is now.

        Items that became due between two calls show up in the later one; that is
        the only way two calls without collection edits can differ. Due members the
        session caps held back are reported as added too.
        """
        await self._owned_collection(collection_id, owner_id)
        originals = list(dict.fromkeys(original_item_ids))
        members = set(await self.store.member_ids(collection_id))
        removed = [item_id for item_id in originals if item_id not in members]
        added = await self.store.due_members(collection_id, self.clock(), exclude=originals)
        return SessionChanges(added_items=added, removed_item_ids=removed)

    async def rate(self, item_id: str, owner_id: str, mode: Any, outcome: Any) -> MemoryState:
        item = await self._owned_item(item_id, owner_id)
        rating = normalize(mode, outcome, self.policy)
        now = self.clock()
        new_state, log = self.model.transition(item.state, rating, now, item_id=item_id, owner_id=owner_id)
        saved = await self.store.save_review(item_id, item.state, new_state, log)
        if not saved:
            logger.warning("Stale memory state | item=%s reps=%s", item_id, item.state.reps)
            raise StaleMemoryState(f"Item {item_id} was reviewed concurrently; reload and retry")
        logger.info(
            "Item rated | item=%s rating=%s stage=%s due=%s",
            item_id,
            rating.name,
            new_state.stage.name,
            new_state.due.isoformat(),
        )
        return new_state

    # Items and collections
    async def create_item(
        self,
        owner_id: str,
        question: str,
        answer: str,
        *,
        subtype: Optional[str] = None,
        distractors: Optional[Sequence[str]] = None,
    ) -> Item:
        return await self.store.create_item(
            owner_id, question, answer, subtype=subtype, distractors=distractors, now=self.clock()
        )

    async def delete_item(self, item_id: str, owner_id: str) -> None:
        await self._owned_item(item_id, owner_id)
        await self.store.delete_item(item_id)
        logger.info("Item deleted | item=%s", item_id)

    async def history(self, item_id: str, owner_id: str) -> List[AuditLogEntry]:
        await self._owned_item(item_id, owner_id)
        return await self.store.review_history(item_id)

    async def create_collection(
        self,
        owner_id: str,
        name: str,
        capacity: Optional[int] = None,
        *,
        new_cards_per_day: Optional[int] = None,
        cards_per_session: Optional[int] = None,
    ) -> Collection:
        cleaned = _clean_name(name)
        capacity = self.default_capacity if capacity is None else capacity
        if capacity < 1:
            raise ValueError("Collection capacity must be positive")
        _check_limit("new_cards_per_day", new_cards_per_day)
        _check_limit("cards_per_session", cards_per_session)
        collection = await self.store.create_collection(
            owner_id,
            cleaned,
            capacity,
            limit=self.collection_limit,
            new_cards_per_day=new_cards_per_day,
            cards_per_session=cards_per_session,
            now=self.clock(),
        )
        logger.info("Collection created | collection=%s owner=%s", collection.collection_id, owner_id)
        return collection

    async def list_collections(
        self,
        owner_id: str,
        *,
        archived: Optional[bool] = None,
        sort_by: Optional[str] = None,
    ) -> List[Collection]:
        sort_by = sort_by or COLLECTION_SORTS[0]
        if sort_by not in COLLECTION_SORTS:
            raise ValueError(f"sort_by must be one of {', '.join(COLLECTION_SORTS)}")
        return await self.store.list_collections(owner_id, archived=archived, sort_by=sort_by)

    async def get_collection(self, collection_id: str, owner_id: str) -> Collection:
        return await self._owned_collection(collection_id, owner_id)

    async def update_collection(self, collection_id: str, owner_id: str, changes: Mapping[str, Any]) -> Collection:
        """Apply a partial update; an explicit ``None`` override clears it back to the global default."""
        await self._owned_collection(collection_id, owner_id)
        unknown = set(changes) - set(COLLECTION_FIELDS)
        if unknown:
            raise ValueError(f"Unknown collection fields: {', '.join(sorted(unknown))}")
        values = {}
        for key, value in changes.items():
            if key == "name":
                value = _clean_name(value)
            elif key == "archived":
                value = bool(value)
            else:
                _check_limit(key, value)
            values[COLLECTION_FIELDS[key]] = value
        if not values:
            return await self._owned_collection(collection_id, owner_id)
        return await self.store.update_collection(collection_id, values, now=self.clock())

    async def delete_collection(self, collection_id: str, owner_id: str) -> None:
        await self._owned_collection(collection_id, owner_id)
        await self.store.delete_collection(collection_id)
        logger.info("Collection deleted | collection=%s", collection_id)

    async def review_stats(self, owner_id: str) -> ReviewStats:
        return await self.store.review_stats(owner_id, self.clock())

    async def add_items(self, collection_id: str, owner_id: str, item_ids: Sequence[str]) -> AddMembersResult:
        await self._owned_collection(collection_id, owner_id)
        for item_id in dict.fromkeys(item_ids):
            await self._owned_item(item_id, owner_id)
        return await self.store.add_members(collection_id, item_ids, now=self.clock())

    async def remove_items(self, collection_id: str, owner_id: str, item_ids: Sequence[str]) -> int:
        await self._owned_collection(collection_id, owner_id)
        removed = await self.store.remove_members(collection_id, item_ids)
        logger.info("Collection members removed | collection=%s removed=%s", collection_id, removed)
        return removed

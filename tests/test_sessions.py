import asyncio
import dataclasses

import pytest

from deckflow.db.async_store import AsyncSQLAlchemyStore
from deckflow.utils.errors import (
    CapacityExceeded,
    CollectionLimitReached,
    Forbidden,
    InvalidRating,
    InvalidState,
    NotFound,
    StaleMemoryState,
)
from deckflow.utils.types import Rating, SessionSnapshot, Stage, StudyMode
from deckflow.workflow.sessions import SessionComposer

OWNER = "user-1"
OTHER = "user-2"


async def _composer(db_path, clock):
    store = AsyncSQLAlchemyStore(db_path)
    await store.init_models()
    return store, SessionComposer(store, clock=clock)


async def _items(composer, clock, count, owner=OWNER):
    items = []
    for idx in range(count):
        items.append(await composer.create_item(owner, f"Question {idx + 1}?", f"Answer {idx + 1}"))
        clock.advance(seconds=1)
    return items


def test_mid_session_edits_are_reported(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Biology")
            one, two, three = await _items(composer, clock, 3)
            await composer.add_items(deck.collection_id, OWNER, [one.item_id, two.item_id, three.item_id])

            view = await composer.start_session(deck.collection_id, OWNER, StudyMode.SELF_RATED)
            assert view.item_ids == [one.item_id, two.item_id, three.item_id]
            assert not view.nothing_due

            await composer.remove_items(deck.collection_id, OWNER, [two.item_id])
            (four,) = await _items(composer, clock, 1)
            await composer.add_items(deck.collection_id, OWNER, [four.item_id])

            first = await composer.detect_changes(deck.collection_id, OWNER, view.item_ids)
            second = await composer.detect_changes(deck.collection_id, OWNER, view.item_ids)
            return first, second, two.item_id, four.item_id
        finally:
            await store.close()

    first, second, removed_id, added_id = asyncio.run(scenario())

    assert first.removed_item_ids == [removed_id]
    assert [item.item_id for item in first.added_items] == [added_id]
    assert first.has_changes
    assert second.removed_item_ids == first.removed_item_ids
    assert [i.item_id for i in second.added_items] == [i.item_id for i in first.added_items]


def test_added_members_that_are_not_due_are_held_back(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Chemistry")
            (fresh,) = await _items(composer, clock, 1)
            await composer.rate(fresh.item_id, OWNER, "self-rated", Rating.GOOD)
            await composer.add_items(deck.collection_id, OWNER, [fresh.item_id])
            now_changes = await composer.detect_changes(deck.collection_id, OWNER, [])
            clock.advance(minutes=11)
            later_changes = await composer.detect_changes(deck.collection_id, OWNER, [])
            return now_changes, later_changes
        finally:
            await store.close()

    now_changes, later_changes = asyncio.run(scenario())

    assert not now_changes.has_changes
    assert len(later_changes.added_items) == 1


def test_empty_collection_signals_nothing_due(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Empty")
            return await composer.start_session(deck.collection_id, OWNER, "timed")
        finally:
            await store.close()

    view = asyncio.run(scenario())

    assert view.nothing_due
    assert view.items == []
    assert view.mode == StudyMode.TIMED


def test_session_order_and_limit(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "History")
            items = await _items(composer, clock, 4)
            await composer.add_items(deck.collection_id, OWNER, [i.item_id for i in reversed(items)])
            view = await composer.start_session(deck.collection_id, OWNER, "self-rated", limit=2)
            return view, items
        finally:
            await store.close()

    view, items = asyncio.run(scenario())

    assert view.item_ids == [items[0].item_id, items[1].item_id]
    assert view.progress.total == 2


def test_resume_keeps_session_identity(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Physics")
            await composer.add_items(deck.collection_id, OWNER, [i.item_id for i in await _items(composer, clock, 2)])
            first = await composer.start_session(deck.collection_id, OWNER, "timed")
            snapshot = SessionSnapshot(
                session_id=first.session_id,
                collection_id=deck.collection_id,
                mode=StudyMode.TIMED,
                started_at=first.started_at,
                time_remaining_ms=42000,
                score=30,
            )
            resumed = await composer.start_session(deck.collection_id, OWNER, "timed", resume=snapshot)
            with pytest.raises(InvalidState):
                await composer.start_session(deck.collection_id, OWNER, "self-rated", resume=snapshot)
            return first, resumed
        finally:
            await store.close()

    first, resumed = asyncio.run(scenario())

    assert resumed.session_id == first.session_id
    assert resumed.started_at == first.started_at
    assert resumed.time_remaining_ms == 42000
    assert resumed.score == 30


def test_capacity_bound_rejects_whole_add(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Tiny", capacity=2)
            items = await _items(composer, clock, 3)
            first = await composer.add_items(deck.collection_id, OWNER, [items[0].item_id, items[1].item_id])
            repeat = await composer.add_items(deck.collection_id, OWNER, [items[0].item_id])
            with pytest.raises(CapacityExceeded) as excinfo:
                await composer.add_items(deck.collection_id, OWNER, [items[2].item_id])
            collection = await store.get_collection(deck.collection_id)
            return first, repeat, excinfo.value, collection
        finally:
            await store.close()

    first, repeat, error, collection = asyncio.run(scenario())

    assert first.added == 2
    assert repeat.added == 0 and repeat.skipped == 1
    assert (error.current, error.capacity, error.requested, error.available) == (2, 2, 1, 0)
    assert collection.member_count == 2


def test_concurrent_adds_never_exceed_capacity(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Race", capacity=3)
            items = await _items(composer, clock, 6)
            results = await asyncio.gather(
                *(composer.add_items(deck.collection_id, OWNER, [item.item_id]) for item in items),
                return_exceptions=True,
            )
            collection = await store.get_collection(deck.collection_id)
            return results, collection
        finally:
            await store.close()

    results, collection = asyncio.run(scenario())

    assert collection.member_count == 3
    assert sum(1 for r in results if isinstance(r, CapacityExceeded)) == 3


def test_collection_name_is_validated(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            for name in ("   ", "x" * 201):
                with pytest.raises(ValueError):
                    await composer.create_collection(OWNER, name)
            return await composer.create_collection(OWNER, "  Trimmed  ")
        finally:
            await store.close()

    assert asyncio.run(scenario()).name == "Trimmed"


def test_rate_persists_state_and_appends_history(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            (item,) = await _items(composer, clock, 1)
            first = await composer.rate(item.item_id, OWNER, "self-rated", "good")
            clock.advance(minutes=10)
            second = await composer.rate(item.item_id, OWNER, "multiple-choice", {"correct": True, "responseTimeMs": 3000})
            stored = await store.get_item(item.item_id)
            history = await composer.history(item.item_id, OWNER)
            return first, second, stored, history
        finally:
            await store.close()

    first, second, stored, history = asyncio.run(scenario())

    assert first.stage == Stage.LEARNING
    assert second.stage == Stage.REVIEW
    assert stored.state == second
    assert [entry.rating for entry in history] == [Rating.GOOD, Rating.GOOD]
    assert [entry.stage for entry in history] == [Stage.LEARNING, Stage.REVIEW]
    assert all(entry.owner_id == OWNER for entry in history)


def test_rate_checks_ownership_and_input_before_writing(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            (item,) = await _items(composer, clock, 1)
            with pytest.raises(Forbidden):
                await composer.rate(item.item_id, OTHER, "self-rated", Rating.GOOD)
            with pytest.raises(NotFound):
                await composer.rate("missing", OWNER, "self-rated", Rating.GOOD)
            with pytest.raises(InvalidRating):
                await composer.rate(item.item_id, OWNER, "self-rated", 9)
            return await store.get_item(item.item_id), await store.review_history(item.item_id)
        finally:
            await store.close()

    stored, history = asyncio.run(scenario())

    assert stored.state.reps == 0
    assert stored.state.stage == Stage.NEW
    assert history == []


def test_stale_state_is_not_overwritten(db_path, clock, monkeypatch):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            (item,) = await _items(composer, clock, 1)
            snapshot = await store.get_item(item.item_id)
            await composer.rate(item.item_id, OWNER, "self-rated", Rating.GOOD)

            async def stale_read(item_id):
                return dataclasses.replace(snapshot)

            monkeypatch.setattr(store, "get_item", stale_read)
            with pytest.raises(StaleMemoryState):
                await composer.rate(item.item_id, OWNER, "self-rated", Rating.AGAIN)
            monkeypatch.undo()
            return await store.get_item(item.item_id), await store.review_history(item.item_id)
        finally:
            await store.close()

    stored, history = asyncio.run(scenario())

    assert stored.state.reps == 1
    assert stored.state.stage == Stage.LEARNING
    assert len(history) == 1


def test_delete_item_removes_memberships_and_history(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Cleanup")
            (item,) = await _items(composer, clock, 1)
            await composer.add_items(deck.collection_id, OWNER, [item.item_id])
            await composer.rate(item.item_id, OWNER, "self-rated", Rating.EASY)
            with pytest.raises(Forbidden):
                await composer.delete_item(item.item_id, OTHER)
            await composer.delete_item(item.item_id, OWNER)
            return (
                await store.get_item(item.item_id),
                await store.member_ids(deck.collection_id),
                await store.review_history(item.item_id),
            )
        finally:
            await store.close()

    assert asyncio.run(scenario()) == (None, [], [])


def test_multiple_choice_without_distractors_is_served_as_plain_card(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Quiz")
            bare = await composer.create_item(OWNER, "Capital of France?", "Paris", subtype="multiple_choice")
            clock.advance(seconds=1)
            full = await composer.create_item(
                OWNER, "Capital of Spain?", "Madrid", subtype="multiple_choice", distractors=["Lisbon", "Rome", "Porto"]
            )
            await composer.add_items(deck.collection_id, OWNER, [bare.item_id, full.item_id])
            return await composer.start_session(deck.collection_id, OWNER, "multiple-choice")
        finally:
            await store.close()

    view = asyncio.run(scenario())

    assert [item.served_subtype for item in view.items] == ["qa", "multiple_choice"]


def test_other_owners_collection_is_forbidden(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Private")
            with pytest.raises(Forbidden):
                await composer.start_session(deck.collection_id, OTHER, "self-rated")
            with pytest.raises(Forbidden):
                await composer.detect_changes(deck.collection_id, OTHER, [])
            (foreign,) = await _items(composer, clock, 1, owner=OTHER)
            with pytest.raises(Forbidden):
                await composer.add_items(deck.collection_id, OWNER, [foreign.item_id])
            with pytest.raises(NotFound):
                await composer.start_session("missing", OWNER, "self-rated")
        finally:
            await store.close()

    asyncio.run(scenario())


def test_concurrent_ratings_apply_exactly_once_each(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            (item,) = await _items(composer, clock, 1)
            results = await asyncio.gather(
                *(composer.rate(item.item_id, OWNER, "self-rated", Rating.GOOD) for _ in range(5)),
                return_exceptions=True,
            )
            return results, await store.get_item(item.item_id), await store.review_history(item.item_id)
        finally:
            await store.close()

    results, stored, history = asyncio.run(scenario())

    successes = [r for r in results if not isinstance(r, Exception)]
    stale = [r for r in results if isinstance(r, StaleMemoryState)]
    assert len(successes) >= 1
    assert len(successes) + len(stale) == 5
    assert len(history) == len(successes)
    assert stored.state.reps == len(successes)


def test_new_cards_per_day_caps_new_items(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Vocab", new_cards_per_day=2)
            items = await _items(composer, clock, 4)
            await composer.add_items(deck.collection_id, OWNER, [i.item_id for i in items])
            first = await composer.start_session(deck.collection_id, OWNER, "self-rated")
            await composer.rate(items[0].item_id, OWNER, "self-rated", Rating.GOOD)
            second = await composer.start_session(deck.collection_id, OWNER, "self-rated")
            clock.advance(days=1)
            next_day = await composer.start_session(deck.collection_id, OWNER, "self-rated")
            return first, second, next_day, items
        finally:
            await store.close()

    first, second, next_day, items = asyncio.run(scenario())

    assert first.item_ids == [items[0].item_id, items[1].item_id]
    assert first.settings.new_cards_per_day == 2
    # One new item was introduced today, so only one more fits.
    assert second.item_ids == [items[1].item_id]
    # The learning step on items[0] falls due after the remaining new items.
    assert next_day.item_ids == [items[1].item_id, items[2].item_id, items[0].item_id]


def test_reviewed_items_are_not_held_back_by_new_card_cap(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            deck = await composer.create_collection(OWNER, "Mixed", new_cards_per_day=0)
            items = await _items(composer, clock, 2)
            await composer.rate(items[0].item_id, OWNER, "self-rated", Rating.AGAIN)
            await composer.add_items(deck.collection_id, OWNER, [i.item_id for i in items])
            clock.advance(minutes=2)
            return await composer.start_session(deck.collection_id, OWNER, "self-rated"), items
        finally:
            await store.close()

    view, items = asyncio.run(scenario())

    assert view.item_ids == [items[0].item_id]


def test_session_settings_precedence(db_path, clock):
    async def scenario():
        store = AsyncSQLAlchemyStore(db_path)
        await store.init_models()
        composer = SessionComposer(store, clock=clock, cards_per_session=3, new_cards_per_day=5)
        try:
            plain = await composer.create_collection(OWNER, "Plain")
            tuned = await composer.create_collection(OWNER, "Tuned", cards_per_session=1)
            items = await _items(composer, clock, 4)
            for deck in (plain, tuned):
                await composer.add_items(deck.collection_id, OWNER, [i.item_id for i in items])
            return (
                await composer.start_session(plain.collection_id, OWNER, "self-rated"),
                await composer.start_session(tuned.collection_id, OWNER, "self-rated"),
                await composer.start_session(tuned.collection_id, OWNER, "self-rated", limit=2, new_limit=4),
            )
        finally:
            await store.close()

    plain, tuned, overridden = asyncio.run(scenario())

    assert (plain.settings.cards_per_session, plain.settings.new_cards_per_day, plain.settings.source) == (3, 5, "global")
    assert len(plain.items) == 3
    assert (tuned.settings.cards_per_session, tuned.settings.source) == (1, "collection")
    assert len(tuned.items) == 1
    assert (overridden.settings.cards_per_session, overridden.settings.new_cards_per_day) == (2, 4)
    assert overridden.settings.source == "session"
    assert len(overridden.items) == 2


def test_negative_session_limits_are_rejected(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            with pytest.raises(ValueError):
                await composer.create_collection(OWNER, "Bad", new_cards_per_day=-1)
            deck = await composer.create_collection(OWNER, "Good")
            with pytest.raises(ValueError):
                await composer.start_session(deck.collection_id, OWNER, "self-rated", limit=-1)
        finally:
            await store.close()

    asyncio.run(scenario())


def test_list_update_and_delete_collections(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            alpha = await composer.create_collection(OWNER, "Alpha")
            clock.advance(seconds=1)
            beta = await composer.create_collection(OWNER, "Beta")
            clock.advance(seconds=1)
            await composer.create_collection(OTHER, "Foreign")
            (item,) = await _items(composer, clock, 1)
            await composer.add_items(alpha.collection_id, OWNER, [item.item_id])
            await composer.start_session(alpha.collection_id, OWNER, "self-rated")

            by_recent = await composer.list_collections(OWNER)
            by_name = await composer.list_collections(OWNER, sort_by="name")
            by_created = await composer.list_collections(OWNER, sort_by="created_at")
            with pytest.raises(ValueError):
                await composer.list_collections(OWNER, sort_by="size")

            renamed = await composer.update_collection(
                beta.collection_id, OWNER, {"name": "  Gamma ", "archived": True, "new_cards_per_day": 7}
            )
            cleared = await composer.update_collection(beta.collection_id, OWNER, {"new_cards_per_day": None})
            with pytest.raises(ValueError):
                await composer.update_collection(beta.collection_id, OWNER, {"capacity": 5})
            with pytest.raises(Forbidden):
                await composer.update_collection(beta.collection_id, OTHER, {"name": "Mine"})
            active = await composer.list_collections(OWNER, archived=False)

            await composer.delete_collection(alpha.collection_id, OWNER)
            with pytest.raises(NotFound):
                await composer.get_collection(alpha.collection_id, OWNER)
            return by_recent, by_name, by_created, renamed, cleared, active, await store.get_item(item.item_id)
        finally:
            await store.close()

    by_recent, by_name, by_created, renamed, cleared, active, kept_item = asyncio.run(scenario())

    assert [c.name for c in by_recent] == ["Alpha", "Beta"]
    assert by_recent[0].member_count == 1
    assert by_recent[0].last_studied_at is not None
    assert [c.name for c in by_name] == ["Alpha", "Beta"]
    assert [c.name for c in by_created] == ["Beta", "Alpha"]
    assert (renamed.name, renamed.archived, renamed.new_cards_per_day_override) == ("Gamma", True, 7)
    assert cleared.new_cards_per_day_override is None
    assert [c.name for c in active] == ["Alpha"]
    assert kept_item is not None


def test_collection_limit_per_owner(db_path, clock):
    async def scenario():
        store = AsyncSQLAlchemyStore(db_path)
        await store.init_models()
        composer = SessionComposer(store, clock=clock, collection_limit=2)
        try:
            await composer.create_collection(OWNER, "One")
            await composer.create_collection(OWNER, "Two")
            with pytest.raises(CollectionLimitReached) as excinfo:
                await composer.create_collection(OWNER, "Three")
            other = await composer.create_collection(OTHER, "Elsewhere")
            return excinfo.value, await composer.list_collections(OWNER), other
        finally:
            await store.close()

    error, owned, other = asyncio.run(scenario())

    assert (error.current, error.limit) == (2, 2)
    assert len(owned) == 2
    assert other.name == "Elsewhere"


def test_review_stats_summarize_owner_history(db_path, clock):
    async def scenario():
        store, composer = await _composer(db_path, clock)
        try:
            empty = await composer.review_stats(OWNER)
            first, second = await _items(composer, clock, 2)
            await composer.rate(first.item_id, OWNER, "self-rated", Rating.GOOD)
            clock.advance(days=1)
            await composer.rate(second.item_id, OWNER, "self-rated", Rating.AGAIN)
            (foreign,) = await _items(composer, clock, 1, owner=OTHER)
            await composer.rate(foreign.item_id, OTHER, "self-rated", Rating.EASY)
            return empty, await composer.review_stats(OWNER)
        finally:
            await store.close()

    empty, stats = asyncio.run(scenario())

    assert empty.total_reviews == 0
    assert stats.total_reviews == 2
    assert stats.reviews_today == 1
    assert stats.reviews_this_week == 2
    assert stats.average_rating == 2.0
    assert stats.retention_rate == 50.0

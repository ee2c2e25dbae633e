from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence

from deckflow.db.async_store import AsyncSQLAlchemyStore
from deckflow.utils.errors import CapacityExceeded, Forbidden, NotFound
from deckflow.utils.logging_config import get_logger
from deckflow.utils.types import GenerationRequest, GenerationResult, ItemSubtype, Job, SimilarItem
from deckflow.workflow.job_queue import JobQueue
from deckflow.workflow.utils.settings import normalize_settings

logger = get_logger(__name__)

FLASHCARD_GENERATION = "flashcard_generation"
DISTRACTOR_GENERATION = "distractor_generation"
DEFAULT_SIMILARITY_THRESHOLD = 0.85


class ContentGenerator(Protocol):
    def generate(self, request: GenerationRequest) -> GenerationResult: ...


class DistractorGenerator(Protocol):
    def generate(self, question: str, answer: str, count: int = 3) -> List[str]: ...


class SimilarityChecker(Protocol):
    async def find_similar(self, text: str, owner_id: str, threshold: float, limit: int) -> Sequence[SimilarItem]: ...


class FlashcardGenerationHandler:
    """Generates items from study material, files them in a collection and queues distractor backfill."""

    def __init__(
        self,
        store: AsyncSQLAlchemyStore,
        queue: JobQueue,
        generator: ContentGenerator,
        *,
        similarity_checker: Optional[SimilarityChecker] = None,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
    ) -> None:
        self.store = store
        self.queue = queue
        self.generator = generator
        self.similarity_checker = similarity_checker
        self.similarity_threshold = similarity_threshold

    async def _is_duplicate(self, text: str, owner_id: str) -> bool:
        if self.similarity_checker is None:
            return False
        matches = await self.similarity_checker.find_similar(text, owner_id, self.similarity_threshold, 1)
        return bool(matches)

    async def __call__(self, payload: Dict[str, Any], job: Job) -> Dict[str, Any]:
        payload = normalize_settings(payload)
        content = str(payload.get("content") or "").strip()
        if not content:
            raise ValueError("Payload requires non-empty 'content'")
        owner_id = job.owner_id
        collection_id = payload.get("collection_id")
        if collection_id:
            collection = await self.store.get_collection(collection_id)
            if collection is None:
                raise NotFound(f"Collection {collection_id} not found")
            if collection.owner_id != owner_id:
                raise Forbidden()

        request = GenerationRequest(
            content=content,
            owner_id=owner_id,
            count=int(payload.get("count") or 5),
            subtype=payload.get("subtype"),
        )
        generated = await asyncio.to_thread(self.generator.generate, request)

        item_ids: List[str] = []
        queued_distractors = 0
        for candidate in generated.items:
            if await self._is_duplicate(candidate.question, owner_id):
                logger.info("Skipping similar item | job=%s question=%s", job.job_id, candidate.question[:60])
                continue
            item = await self.store.create_item(
                owner_id,
                candidate.question,
                candidate.answer,
                subtype=candidate.subtype or request.subtype,
                distractors=candidate.distractors,
            )
            item_ids.append(item.item_id)
            if item.subtype == ItemSubtype.MULTIPLE_CHOICE.value and not item.distractors:
                try:
                    await self.queue.create(
                        DISTRACTOR_GENERATION,
                        {"item_id": item.item_id, "question": item.question, "answer": item.answer},
                        owner_id,
                        priority=0,
                    )
                    queued_distractors += 1
                except Exception:
                    logger.warning("Failed to enqueue distractor generation | item=%s", item.item_id, exc_info=True)

        if collection_id and item_ids:
            try:
                await self.store.add_members(collection_id, item_ids)
            except CapacityExceeded as exc:
                logger.warning("Collection full, items left unfiled | collection=%s detail=%s", collection_id, exc)

        logger.info(
            "Flashcard job finished | job=%s created=%s distractor_jobs=%s",
            job.job_id,
            len(item_ids),
            queued_distractors,
        )
        return {"item_ids": item_ids, "count": len(item_ids), "model_id": generated.model_id}


class DistractorGenerationHandler:
    def __init__(self, store: AsyncSQLAlchemyStore, generator: DistractorGenerator) -> None:
        self.store = store
        self.generator = generator

    async def __call__(self, payload: Dict[str, Any], job: Job) -> Dict[str, Any]:
        payload = normalize_settings(payload)
        item_id = payload.get("item_id")
        if not item_id:
            raise ValueError("Payload requires 'item_id'")
        item = await self.store.get_item(item_id)
        if item is None:
            raise NotFound(f"Item {item_id} not found")
        if item.owner_id != job.owner_id:
            raise Forbidden()
        question = payload.get("question") or item.question
        answer = payload.get("answer") or item.answer
        distractors = await asyncio.to_thread(self.generator.generate, question, answer, 3)
        await self.store.set_distractors(item_id, distractors)
        return {"item_id": item_id, "distractors": list(distractors)}


def build_handlers(
    store: AsyncSQLAlchemyStore,
    queue: JobQueue,
    *,
    content_generator: Optional[ContentGenerator] = None,
    distractor_generator: Optional[DistractorGenerator] = None,
    similarity_checker: Optional[SimilarityChecker] = None,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> Dict[str, Any]:
    """Handler map for the dispatcher; job types without a generator are left unregistered."""
    handlers: Dict[str, Any] = {}
    if content_generator is not None:
        handlers[FLASHCARD_GENERATION] = FlashcardGenerationHandler(
            store,
            queue,
            content_generator,
            similarity_checker=similarity_checker,
            similarity_threshold=similarity_threshold,
        )
    if distractor_generator is not None:
        handlers[DISTRACTOR_GENERATION] = DistractorGenerationHandler(store, distractor_generator)
    return handlers

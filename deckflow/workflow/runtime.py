from __future__ import annotations

from types import SimpleNamespace
from typing import Any, Dict, Optional

from deckflow.db.async_store import AsyncSQLAlchemyStore
from deckflow.db.job_store import AsyncJobStore
from deckflow.utils.logging_config import get_logger
from deckflow.utils.scheduler import MemoryModel, ParameterSet
from deckflow.workflow.dispatcher import JobDispatcher
from deckflow.workflow.handlers import build_handlers
from deckflow.workflow.job_queue import JobQueue
from deckflow.workflow.llm import LLMDistractorGenerator, LLMFlashcardGenerator
from deckflow.workflow.rating import RatingPolicy
from deckflow.workflow.sessions import SessionComposer
from deckflow.workflow.utils.progress import JobStatusPublisher, build_publisher
from deckflow.workflow.utils.settings import default_settings

logger = get_logger(__name__)


class DeckflowRuntime:
    """Process-wide wiring of store, queue, composer and dispatcher built from settings."""

    def __init__(
        self,
        settings: Optional[SimpleNamespace] = None,
        *,
        handlers: Optional[Dict[str, Any]] = None,
        publisher: Optional[JobStatusPublisher] = None,
    ) -> None:
        self.settings = settings or default_settings()
        self.store = AsyncSQLAlchemyStore(self.settings.db_url)
        self.jobs = AsyncJobStore(self.store.SessionLocal)
        self.model = MemoryModel(
            ParameterSet(
                request_retention=self.settings.request_retention,
                maximum_interval=self.settings.maximum_interval,
            )
        )
        self.policy = RatingPolicy.from_settings(self.settings)
        self.composer = SessionComposer(
            self.store,
            self.model,
            self.policy,
            default_capacity=self.settings.collection_capacity,
            cards_per_session=self.settings.cards_per_session,
            new_cards_per_day=self.settings.new_cards_per_day,
            collection_limit=self.settings.collection_limit,
        )
        self.queue = JobQueue(
            self.jobs,
            max_attempts=self.settings.job_max_attempts,
            backoff_base_seconds=self.settings.job_backoff_seconds,
            rate_limit_per_hour=self.settings.job_rate_limit_per_hour,
        )
        if handlers is None:
            handlers = self._default_handlers()
        self.publisher = publisher if publisher is not None else build_publisher(self.settings)
        self.dispatcher = JobDispatcher(
            self.queue,
            handlers,
            batch_size=self.settings.job_batch_size,
            publisher=self.publisher,
        )

    def _default_handlers(self) -> Dict[str, Any]:
        api_key = self.settings.openai_api_key or None
        content = LLMFlashcardGenerator(api_key=api_key, model=self.settings.openai_model)
        distractors = LLMDistractorGenerator(api_key=api_key, model=self.settings.openai_model)
        if not content.is_active:
            logger.warning("OpenAI key missing; generation jobs will fail until OPENAI_API_KEY is set")
        return build_handlers(
            self.store,
            self.queue,
            content_generator=content,
            distractor_generator=distractors,
        )

    async def start(self) -> "DeckflowRuntime":
        await self.store.init_models()
        logger.info("Runtime ready | db=%s handlers=%s", self.store.db_url, sorted(self.dispatcher.handlers))
        return self

    async def close(self) -> None:
        await self.dispatcher.drain()
        if self.publisher is not None:
            await self.publisher.close()
        await self.store.close()

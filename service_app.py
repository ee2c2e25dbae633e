from __future__ import annotations

from contextlib import asynccontextmanager
from types import SimpleNamespace

from fastapi import Body, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from deckflow.utils.errors import (
    CapacityExceeded,
    CollectionLimitReached,
    DeckflowError,
    Forbidden,
    InvalidTransition,
    NotFound,
    RateLimited,
    StaleMemoryState,
    Unavailable,
)
from deckflow.utils.logging_config import get_logger
from deckflow.utils.scheduler import MemoryModel
from deckflow.utils.types import AuditLogEntry, Item, StudyMode
from deckflow.workflow.handlers import DISTRACTOR_GENERATION, FLASHCARD_GENERATION
from deckflow.workflow.rating import parse_outcome
from deckflow.workflow.runtime import DeckflowRuntime
from deckflow.workflow.utils.request_models import (
    CollectionCreateRequest,
    CollectionUpdateRequest,
    DetectChangesRequest,
    ItemCreateRequest,
    JobCreateRequest,
    MembershipRequest,
    ProcessJobsRequest,
    RateRequest,
    StartSessionRequest,
)
from deckflow.workflow.utils.settings import default_settings, normalize_settings

logger = get_logger("deckflow.service")

ERROR_STATUS = {
    Forbidden: 403,
    NotFound: 404,
    CapacityExceeded: 409,
    CollectionLimitReached: 409,
    StaleMemoryState: 409,
    InvalidTransition: 409,
    Unavailable: 409,
    RateLimited: 429,
}
RATE_LIMITED_TYPES = {FLASHCARD_GENERATION, DISTRACTOR_GENERATION}


def _status_for(exc: DeckflowError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS:
            return ERROR_STATUS[cls]
    return 400


def _log_to_dict(entry: AuditLogEntry) -> dict:
    return {
        "rating": entry.rating.name.lower(),
        "stage": entry.stage.name.lower(),
        "due": entry.due.isoformat(),
        "stability": entry.stability,
        "difficulty": entry.difficulty,
        "elapsed_days": entry.elapsed_days,
        "last_elapsed_days": entry.last_elapsed_days,
        "scheduled_days": entry.scheduled_days,
        "review": entry.review.isoformat(),
    }


def _study_item(item: Item, model: MemoryModel, now) -> dict:
    """Item payload plus recall probability and the due date each rating would give."""
    body = item.to_dict()
    body["retrievability"] = round(model.retrievability(item.state, now), 4)
    body["next_due"] = {
        rating.name.lower(): state.due.isoformat() for rating, state in model.preview(item.state, now).items()
    }
    return body


def create_app(settings: SimpleNamespace | None = None, runtime: DeckflowRuntime | None = None) -> FastAPI:
    settings = settings or (runtime.settings if runtime else default_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        rt = runtime or DeckflowRuntime(settings)
        await rt.start()
        app.state.runtime = rt
        try:
            yield
        finally:
            await rt.close()

    app = FastAPI(title="Deckflow Study Service", lifespan=lifespan)

    def rt(request: Request) -> DeckflowRuntime:
        return request.app.state.runtime

    @app.exception_handler(DeckflowError)
    async def deckflow_error(request: Request, exc: DeckflowError) -> JSONResponse:
        status = _status_for(exc)
        body = {"error": type(exc).__name__, "detail": str(exc)}
        headers = {}
        if isinstance(exc, CapacityExceeded):
            body.update(current=exc.current, capacity=exc.capacity, requested=exc.requested, available=exc.available)
        if isinstance(exc, CollectionLimitReached):
            body.update(current=exc.current, limit=exc.limit)
        if isinstance(exc, RateLimited):
            body["retry_after"] = exc.retry_after
            headers["Retry-After"] = str(exc.retry_after)
        return JSONResponse(body, status_code=status, headers=headers)

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse({"error": "InvalidRequest", "detail": str(exc)}, status_code=400)

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        stats = await rt(request).queue.stats()
        return JSONResponse({"status": "ok", "jobs": stats})

    # Collections and items
    @app.post("/collections")
    async def create_collection(
        request: Request,
        payload: CollectionCreateRequest = Body(...),
        owner_id: str = Header(..., alias="X-User-Id"),
    ) -> JSONResponse:
        collection = await rt(request).composer.create_collection(
            owner_id,
            payload.name,
            payload.capacity,
            new_cards_per_day=payload.new_cards_per_day,
            cards_per_session=payload.cards_per_session,
        )
        return JSONResponse(collection.to_dict(), status_code=201)

    @app.get("/collections")
    async def list_collections(
        request: Request,
        owner_id: str = Header(..., alias="X-User-Id"),
        archived: bool | None = None,
        sort_by: str | None = None,
    ) -> JSONResponse:
        collections = await rt(request).composer.list_collections(owner_id, archived=archived, sort_by=sort_by)
        return JSONResponse({"collections": [collection.to_dict() for collection in collections]})

    @app.get("/collections/{collection_id}")
    async def get_collection(
        collection_id: str, request: Request, owner_id: str = Header(..., alias="X-User-Id")
    ) -> JSONResponse:
        collection = await rt(request).composer.get_collection(collection_id, owner_id)
        return JSONResponse(collection.to_dict())

    @app.patch("/collections/{collection_id}")
    async def update_collection(
        collection_id: str,
        request: Request,
        payload: CollectionUpdateRequest = Body(...),
        owner_id: str = Header(..., alias="X-User-Id"),
    ) -> JSONResponse:
        collection = await rt(request).composer.update_collection(collection_id, owner_id, payload.changes())
        return JSONResponse(collection.to_dict())

    @app.delete("/collections/{collection_id}")
    async def delete_collection(
        collection_id: str, request: Request, owner_id: str = Header(..., alias="X-User-Id")
    ) -> JSONResponse:
        await rt(request).composer.delete_collection(collection_id, owner_id)
        return JSONResponse({"deleted": collection_id})

    @app.post("/collections/{collection_id}/items")
    async def add_collection_items(
        collection_id: str,
        request: Request,
        payload: MembershipRequest = Body(...),
        owner_id: str = Header(..., alias="X-User-Id"),
    ) -> JSONResponse:
        result = await rt(request).composer.add_items(collection_id, owner_id, payload.item_ids)
        return JSONResponse({"added": result.added, "skipped": result.skipped, "member_count": result.member_count})

    @app.delete("/collections/{collection_id}/items")
    async def remove_collection_items(
        collection_id: str,
        request: Request,
        payload: MembershipRequest = Body(...),
        owner_id: str = Header(..., alias="X-User-Id"),
    ) -> JSONResponse:
        removed = await rt(request).composer.remove_items(collection_id, owner_id, payload.item_ids)
        return JSONResponse({"removed": removed})

    @app.post("/items")
    async def create_item(
        request: Request,
        payload: ItemCreateRequest = Body(...),
        owner_id: str = Header(..., alias="X-User-Id"),
    ) -> JSONResponse:
        composer = rt(request).composer
        item = await composer.create_item(
            owner_id,
            payload.question,
            payload.answer,
            subtype=payload.subtype,
            distractors=payload.distractors,
        )
        if payload.collection_id:
            await composer.add_items(payload.collection_id, owner_id, [item.item_id])
        return JSONResponse(item.to_dict(), status_code=201)

    @app.delete("/items/{item_id}")
    async def delete_item(item_id: str, request: Request, owner_id: str = Header(..., alias="X-User-Id")) -> JSONResponse:
        await rt(request).composer.delete_item(item_id, owner_id)
        return JSONResponse({"deleted": item_id})

    @app.get("/items/{item_id}/history")
    async def item_history(item_id: str, request: Request, owner_id: str = Header(..., alias="X-User-Id")) -> JSONResponse:
        entries = await rt(request).composer.history(item_id, owner_id)
        return JSONResponse({"item_id": item_id, "history": [_log_to_dict(entry) for entry in entries]})

    # Study
    @app.post("/study/session")
    async def start_session(
        request: Request,
        payload: StartSessionRequest = Body(...),
        owner_id: str = Header(..., alias="X-User-Id"),
    ) -> JSONResponse:
        runtime_ = rt(request)
        view = await runtime_.composer.start_session(
            payload.collection_id,
            owner_id,
            payload.mode,
            resume=payload.resume.to_snapshot() if payload.resume else None,
            limit=payload.cards_per_session,
            new_limit=payload.new_cards_per_day,
        )
        now = runtime_.composer.clock()
        model = runtime_.composer.model
        return JSONResponse(
            {
                "session_id": view.session_id,
                "collection_id": view.collection_id,
                "mode": view.mode.value,
                "nothing_due": view.nothing_due,
                "items": [_study_item(item, model, now) for item in view.items],
                "settings": vars(view.settings) if view.settings else None,
                "started_at": view.started_at.isoformat(),
                "progress": vars(view.progress),
                "time_remaining_ms": view.time_remaining_ms,
                "score": view.score,
            }
        )

    @app.post("/study/session/changes")
    async def session_changes(
        request: Request,
        payload: DetectChangesRequest = Body(...),
        owner_id: str = Header(..., alias="X-User-Id"),
    ) -> JSONResponse:
        changes = await rt(request).composer.detect_changes(payload.collection_id, owner_id, payload.original_item_ids)
        return JSONResponse(
            {
                "added_items": [item.to_dict() for item in changes.added_items],
                "removed_item_ids": changes.removed_item_ids,
                "has_changes": changes.has_changes,
            }
        )

    @app.post("/study/rate")
    async def rate(
        request: Request,
        payload: RateRequest = Body(...),
        owner_id: str = Header(..., alias="X-User-Id"),
    ) -> JSONResponse:
        runtime_ = rt(request)
        state = await runtime_.composer.rate(payload.item_id, owner_id, payload.mode, payload.outcome)
        body = {"item_id": payload.item_id, "state": state.to_dict()}
        if payload.mode == StudyMode.TIMED:
            outcome = parse_outcome(payload.outcome)
            body["points"] = runtime_.policy.points_for(outcome.correct, outcome.response_time_ms)
        return JSONResponse(body)

    @app.get("/stats/reviews")
    async def review_stats(request: Request, owner_id: str = Header(..., alias="X-User-Id")) -> JSONResponse:
        stats = await rt(request).composer.review_stats(owner_id)
        return JSONResponse(vars(stats))

    # Jobs
    @app.post("/jobs")
    async def create_job(
        request: Request,
        payload: JobCreateRequest = Body(...),
        owner_id: str = Header(..., alias="X-User-Id"),
    ) -> JSONResponse:
        runtime_ = rt(request)
        if payload.type in RATE_LIMITED_TYPES:
            await runtime_.queue.check_rate_limit(owner_id, payload.type)
        job = await runtime_.queue.create(
            payload.type,
            normalize_settings(payload.payload),
            owner_id,
            priority=payload.priority,
            max_attempts=payload.max_attempts,
        )
        runtime_.dispatcher.trigger()
        return JSONResponse({"job_id": job.job_id, "status": job.status.value}, status_code=202)

    @app.get("/jobs")
    async def list_jobs(
        request: Request,
        owner_id: str = Header(..., alias="X-User-Id"),
        type: str | None = None,
        status: str | None = None,
        limit: int = 50,
    ) -> JSONResponse:
        jobs = await rt(request).queue.list_jobs(owner_id=owner_id, type=type, status=status, limit=limit)
        return JSONResponse({"jobs": [job.to_dict() for job in jobs]})

    @app.get("/jobs/{job_id}")
    async def get_job(job_id: str, request: Request, owner_id: str = Header(..., alias="X-User-Id")) -> JSONResponse:
        job = await rt(request).queue.get_job(job_id)
        if job.owner_id != owner_id:
            raise Forbidden()
        return JSONResponse(job.to_dict())

    @app.post("/jobs/process")
    async def process_jobs(request: Request, payload: ProcessJobsRequest | None = Body(None)) -> JSONResponse:
        """Trigger a dispatch batch; returns before the batch finishes unless ``wait`` is set."""
        payload = payload or ProcessJobsRequest()
        dispatcher = rt(request).dispatcher
        if payload.wait:
            processed = await dispatcher.run_batch(payload.limit)
            return JSONResponse({"status": "processed", "processed": processed})
        dispatcher.trigger(payload.limit)
        return JSONResponse({"status": "triggered"}, status_code=202)

    return app


app = create_app()

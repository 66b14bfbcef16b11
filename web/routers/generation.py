"""FastAPI router for streamed playground report generation."""

from __future__ import annotations

import asyncio
import uuid
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import StreamingResponse

from core.logging import get_logger
from models.report import Report
from models.thread import Thread
from schemas.api.generation import (
    GenerationCancelResponse,
    ReportEntity,
    ReportGenerateRequest,
    ReportResponse,
    ThreadCreateRequest,
    ThreadResponse,
)
from schemas.frames import Frame, SectionPayload, encode_frame
from services import generation_metrics, report_repository, thread_repository
from services.generation.config import GenerationSettings
from services.generation.errors import GenerationInProgressError
from services.generation.orchestrator import GenerationRequest, ReportGenerationOrchestrator
from services.generation.registry import GenerationRegistry
from services.rate_limiter import check_generation_rate_limit
from web.deps import get_current_user, get_generation_registry, get_orchestrator, get_settings
from web.middleware.auth_context import AuthenticatedUser

logger = get_logger(__name__)

router = APIRouter(prefix="/playground", tags=["Playground"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
MAX_IDEMPOTENCY_KEY_LENGTH = 128


def _reject(status_code: int, code: str, message: str) -> HTTPException:
    generation_metrics.observe_rejection(code)
    return HTTPException(status_code=status_code, detail={"code": code, "message": message})


def _load_owned_thread(thread_id: uuid.UUID, user: AuthenticatedUser) -> Thread:
    thread = thread_repository.get_thread(thread_id)
    if thread is None or thread.deleted_at is not None:
        raise _reject(status.HTTP_404_NOT_FOUND, "thread.not_found", "Thread not found.")
    if str(thread.user_id) != str(user.id):
        raise _reject(status.HTTP_403_FORBIDDEN, "thread.forbidden", "You do not have access to this thread.")
    return thread


async def _encode(frames: AsyncIterator[Frame]) -> AsyncIterator[str]:
    async for frame in frames:
        yield encode_frame(frame)


def _event_stream(frames: AsyncIterator[Frame], headers: dict) -> StreamingResponse:
    return StreamingResponse(_encode(frames), media_type="text/event-stream", headers=headers)


def _serialize_report(record: Report) -> ReportResponse:
    entities = report_repository.list_report_entities(record.id)
    return ReportResponse(
        id=record.id,
        threadId=record.thread_id,
        generationId=record.generation_id,
        model=record.model,
        prompt=record.prompt,
        content=record.content,
        sections=[SectionPayload.model_validate(entry) for entry in record.sections or []],
        entities=[ReportEntity(**entry) for entry in entities],
        metadata=record.meta or {},
        totalTokens=record.total_tokens,
        totalCost=record.total_cost,
        createdAt=record.created_at,
    )


@router.post("/threads", response_model=ThreadResponse, status_code=status.HTTP_201_CREATED)
def create_thread(
    payload: ThreadCreateRequest,
    user: AuthenticatedUser = Depends(get_current_user),
) -> ThreadResponse:
    thread = thread_repository.create_thread(user_id=user.id, title=payload.title)
    return ThreadResponse.model_validate(thread)


@router.post("/reports/generate")
async def generate_report(
    payload: ReportGenerateRequest,
    idempotency_key: Optional[str] = Header(default=None, convert_underscores=False, alias="Idempotency-Key"),
    user: AuthenticatedUser = Depends(get_current_user),
    settings: GenerationSettings = Depends(get_settings),
    registry: GenerationRegistry = Depends(get_generation_registry),
    orchestrator: ReportGenerationOrchestrator = Depends(get_orchestrator),
) -> StreamingResponse:
    model = payload.model or settings.default_model
    if not settings.is_allowed_model(model):
        raise _reject(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "generation.model_not_allowed",
            f"Model '{model}' is not available.",
        )
    if payload.language not in settings.language_choices:
        raise _reject(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "generation.language_unsupported",
            f"Language '{payload.language}' is not supported.",
        )
    generation_id = (idempotency_key or "").strip() or str(uuid.uuid4())
    if len(generation_id) > MAX_IDEMPOTENCY_KEY_LENGTH:
        raise _reject(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "generation.idempotency_key_invalid",
            f"Idempotency-Key must be at most {MAX_IDEMPOTENCY_KEY_LENGTH} characters.",
        )

    thread = await asyncio.to_thread(_load_owned_thread, payload.threadId, user)
    request = GenerationRequest(
        generation_id=generation_id,
        thread_id=thread.id,
        user_id=str(user.id),
        prompt=payload.prompt,
        model=model,
        system_prompt=payload.systemPrompt,
        extract_entities=payload.extractEntities,
        language=payload.language,
    )
    headers = dict(SSE_HEADERS)
    headers["X-Generation-Id"] = generation_id

    existing = await asyncio.to_thread(report_repository.get_report_by_generation_id, generation_id)
    if existing is not None:
        if existing.thread_id != thread.id:
            raise _reject(
                status.HTTP_409_CONFLICT,
                "generation.key_conflict",
                "Idempotency-Key was already used for another thread.",
            )
        return _event_stream(orchestrator.replay(request, str(existing.id)), headers)

    try:
        lease = registry.acquire(str(thread.id), generation_id)
    except GenerationInProgressError as exc:
        raise _reject(status.HTTP_409_CONFLICT, exc.code, exc.public_message) from exc

    try:
        rate = await asyncio.to_thread(
            check_generation_rate_limit,
            str(user.id),
            limit=settings.rate_limit_per_window,
            window_seconds=settings.rate_limit_window_seconds,
        )
        request.history = await asyncio.to_thread(
            thread_repository.list_recent_messages,
            thread.id,
            limit=settings.history_limit,
        )
        prompt_message = await asyncio.to_thread(
            thread_repository.create_message,
            thread_id=thread.id,
            role="user",
            content=payload.prompt,
            status="sending",
            meta={"generation_id": generation_id, "model": model},
        )
    except HTTPException as exc:
        registry.release(lease)
        code = exc.detail.get("code") if isinstance(exc.detail, dict) else None
        generation_metrics.observe_rejection(code or f"http_{exc.status_code}")
        raise
    except BaseException:
        registry.release(lease)
        raise
    if rate.remaining is not None:
        headers["X-RateLimit-Remaining"] = str(rate.remaining)

    request.user_message_id = prompt_message.id
    request.cancel_event = lease.cancel_event
    return _event_stream(orchestrator.stream(request, lease=lease), headers)


@router.post("/threads/{thread_id}/generation/cancel", response_model=GenerationCancelResponse)
async def cancel_generation(
    thread_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
    registry: GenerationRegistry = Depends(get_generation_registry),
) -> GenerationCancelResponse:
    await asyncio.to_thread(_load_owned_thread, thread_id, user)
    lease = registry.active(str(thread_id))
    if lease is None or not registry.cancel(str(thread_id)):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "generation.not_found", "message": "No generation is running for this thread."},
        )
    return GenerationCancelResponse(threadId=thread_id, generationId=lease.generation_id)


@router.get("/reports/generations/{generation_id}", response_model=ReportResponse)
def read_report_by_generation(
    generation_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
) -> ReportResponse:
    record = report_repository.get_report_by_generation_id(generation_id)
    if record is None or str(record.user_id) != str(user.id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "report.not_found", "message": "Report not found."},
        )
    return _serialize_report(record)


@router.get("/reports/{report_id}", response_model=ReportResponse)
def read_report(
    report_id: uuid.UUID,
    user: AuthenticatedUser = Depends(get_current_user),
) -> ReportResponse:
    record = report_repository.get_report_by_id(report_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "report.not_found", "message": "Report not found."},
        )
    if str(record.user_id) != str(user.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": "report.forbidden", "message": "You do not have access to this report."},
        )
    return _serialize_report(record)


__all__ = ["router"]

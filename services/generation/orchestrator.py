"""Drive one report generation from model stream to persisted report."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from core.logging import get_logger
from llm.llm_service import estimate_cost
from llm.prompts import report_generation as report_prompt
from llm.stream_client import ModelStreamClient, TextDelta
from schemas.frames import CompleteFrame, ContentFrame, ErrorFrame, Frame, SectionsFrame
from services import generation_metrics, report_repository, thread_repository
from services.generation.config import GenerationSettings
from services.generation.entity_extraction import EntityExtractor, ExtractedEntity, html_to_text
from services.generation.errors import (
    GenerationCancelled,
    GenerationError,
    PersistenceError,
    UpstreamModelError,
    UpstreamTimeoutError,
)
from services.generation.registry import GenerationLease, GenerationRegistry
from services.generation.section_parser import SectionParser

logger = get_logger(__name__)

INTERNAL_ERROR_MESSAGE = GenerationError.public_message


@dataclass
class GenerationRequest:
    generation_id: str
    thread_id: uuid.UUID
    user_id: str
    prompt: str
    model: str
    system_prompt: Optional[str] = None
    extract_entities: bool = True
    language: str = "en"
    history: List[Dict[str, str]] = field(default_factory=list)
    user_message_id: Optional[uuid.UUID] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)


async def _settle(task: "asyncio.Future[Any]") -> None:
    if task.done():
        return
    task.cancel()
    await asyncio.wait({task})


class ReportGenerationOrchestrator:
    """Turn a :class:`GenerationRequest` into a frame sequence.

    Frames come out as any number of ``content``/``sections`` frames followed by
    exactly one ``complete`` or ``error`` frame. The report row is written once,
    after the upstream stream is exhausted and before ``complete`` is yielded.
    If the consuming task itself is cancelled (client disconnect) nothing more
    is yielded and nothing is persisted.
    """

    def __init__(
        self,
        *,
        model_client: ModelStreamClient,
        entity_extractor: EntityExtractor,
        registry: GenerationRegistry,
        settings: GenerationSettings,
        persist_report: Callable[..., Any] = report_repository.create_report_record,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.model_client = model_client
        self.entity_extractor = entity_extractor
        self.registry = registry
        self.settings = settings
        self.persist_report = persist_report
        self._clock = clock

    async def stream(self, request: GenerationRequest, *, lease: Optional[GenerationLease] = None) -> AsyncIterator[Frame]:
        started = self._clock()
        outcome = "error"
        generation_metrics.generation_started()
        logger.info(
            "Report generation started generation=%s thread=%s model=%s",
            request.generation_id,
            request.thread_id,
            request.model,
        )
        frames = self._generate(request, started)
        try:
            async for frame in frames:
                if isinstance(frame, CompleteFrame):
                    outcome = "complete"
                yield frame
        except GenerationCancelled as exc:
            outcome = "cancelled"
            logger.info("Report generation cancelled generation=%s", request.generation_id)
            yield ErrorFrame(error=exc.public_message)
        except (asyncio.CancelledError, GeneratorExit):
            outcome = "cancelled"
            logger.info("Report generation aborted by client generation=%s", request.generation_id)
            raise
        except UpstreamTimeoutError as exc:
            outcome = "timeout"
            logger.warning("Report generation timed out generation=%s: %s", request.generation_id, exc)
            yield ErrorFrame(error=exc.public_message)
        except PersistenceError as exc:
            outcome = "persistence_error"
            logger.error("Report persistence failed generation=%s: %s", request.generation_id, exc, exc_info=True)
            yield ErrorFrame(error=exc.public_message)
        except GenerationError as exc:
            logger.warning("Report generation failed generation=%s: %s", request.generation_id, exc, exc_info=True)
            yield ErrorFrame(error=exc.public_message)
        except Exception:
            logger.exception("Unexpected report generation failure generation=%s", request.generation_id)
            yield ErrorFrame(error=INTERNAL_ERROR_MESSAGE)
        finally:
            await frames.aclose()
            if outcome != "complete":
                self._mark_prompt_failed(request)
            if lease is not None:
                self.registry.release(lease)
            generation_metrics.generation_finished()
            generation_metrics.observe_generation(outcome, self._clock() - started)

    def _mark_prompt_failed(self, request: GenerationRequest) -> None:
        if request.user_message_id is None:
            return
        try:
            thread_repository.set_message_status(request.user_message_id, "error")
        except Exception:
            logger.exception("Could not flag prompt message generation=%s", request.generation_id)

    async def replay(self, request: GenerationRequest, report_id: str) -> AsyncIterator[Frame]:
        """Frames for a generation whose report is already persisted."""
        logger.info("Replaying completed generation=%s report=%s", request.generation_id, report_id)
        generation_metrics.observe_generation("replayed", 0.0)
        yield CompleteFrame(report_id=report_id)

    async def _generate(self, request: GenerationRequest, started: float) -> AsyncIterator[Frame]:
        messages = report_prompt.get_prompt(
            request.prompt,
            system_prompt=request.system_prompt,
            history=request.history,
            language=request.language,
            extract_entities=request.extract_entities,
        )
        parser = SectionParser()
        usage: Optional[Dict[str, int]] = None
        model_used = request.model
        deadline = started + self.settings.total_timeout_seconds

        upstream = self.model_client.stream_completion(
            messages,
            model=request.model,
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
        )
        try:
            while True:
                delta = await self._next_delta(upstream, request.cancel_event, deadline)
                if delta is None:
                    break
                if delta.model:
                    model_used = delta.model
                if delta.usage:
                    usage = delta.usage
                if not delta.text:
                    continue
                yield ContentFrame(content=delta.text)
                finalized = parser.append(delta.text)
                if finalized:
                    yield SectionsFrame(data=finalized)
        finally:
            closer = getattr(upstream, "aclose", None)
            if closer is not None:
                await closer()

        trailing = parser.finish()
        if trailing:
            yield SectionsFrame(data=trailing)

        content = parser.text
        if not html_to_text(content):
            raise UpstreamModelError("model returned no content")

        entities: List[ExtractedEntity] = []
        if request.extract_entities:
            entities = await self._extract_entities(request, content)
        if request.cancel_event.is_set():
            raise GenerationCancelled("cancelled before persistence")

        sections = [section.model_dump(mode="json") for section in parser.sections]
        total_tokens = usage.get("total_tokens") if usage else None
        cost = estimate_cost(model_used, usage)
        metadata = {
            "model": model_used,
            "language": request.language,
            "word_count": len(html_to_text(content).split()),
            "section_count": len(sections),
            "entity_count": len(entities),
            "usage": usage or {},
            "cost_usd": cost,
            "duration_ms": int((self._clock() - started) * 1000),
            "fallback_used": model_used != request.model,
        }
        try:
            report = await asyncio.to_thread(
                self.persist_report,
                generation_id=request.generation_id,
                thread_id=request.thread_id,
                user_id=request.user_id,
                model=model_used,
                prompt=request.prompt,
                content=content,
                sections=sections,
                entities=entities,
                metadata=metadata,
                total_tokens=total_tokens,
                total_cost=cost,
                user_message_id=request.user_message_id,
            )
        except Exception as exc:
            raise PersistenceError(f"report write failed: {exc}") from exc
        if report is None or getattr(report, "id", None) is None:
            raise PersistenceError("report write returned no id")

        logger.info(
            "Report generation complete generation=%s report=%s sections=%d entities=%d",
            request.generation_id,
            report.id,
            len(sections),
            len(entities),
        )
        yield CompleteFrame(report_id=str(report.id))

    async def _next_delta(
        self,
        upstream: AsyncIterator[TextDelta],
        cancel_event: asyncio.Event,
        deadline: float,
    ) -> Optional[TextDelta]:
        if cancel_event.is_set():
            raise GenerationCancelled("cancel requested")
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise UpstreamTimeoutError("total generation timeout exceeded")
        idle_timeout = min(self.settings.idle_timeout_seconds, remaining)

        next_task = asyncio.ensure_future(upstream.__anext__())
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {next_task, cancel_task},
                timeout=idle_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            await _settle(cancel_task)
            if cancel_event.is_set() or not next_task.done():
                await _settle(next_task)

        if cancel_task in done or cancel_event.is_set():
            if next_task.done() and not next_task.cancelled():
                next_task.exception()
            raise GenerationCancelled("cancel requested")
        if next_task not in done:
            if idle_timeout < self.settings.idle_timeout_seconds:
                raise UpstreamTimeoutError("total generation timeout exceeded")
            raise UpstreamTimeoutError(f"no output from model for {idle_timeout:.0f}s")
        try:
            return next_task.result()
        except StopAsyncIteration:
            return None
        except GenerationError:
            raise
        except Exception as exc:
            raise UpstreamModelError(f"model stream failed: {exc}") from exc

    async def _extract_entities(self, request: GenerationRequest, content: str) -> List[ExtractedEntity]:
        extract_task = asyncio.ensure_future(self.entity_extractor.extract(content))
        cancel_task = asyncio.ensure_future(request.cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {extract_task, cancel_task},
                timeout=self.settings.entity_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            await _settle(cancel_task)
            await _settle(extract_task)

        if request.cancel_event.is_set():
            if extract_task.done() and not extract_task.cancelled():
                extract_task.exception()
            raise GenerationCancelled("cancel requested during entity extraction")
        if extract_task not in done:
            logger.warning("Entity extraction timed out generation=%s", request.generation_id)
            return []
        try:
            return extract_task.result()
        except Exception as exc:
            logger.warning("Entity extraction failed generation=%s: %s", request.generation_id, exc, exc_info=True)
        return []


__all__ = ["GenerationRequest", "ReportGenerationOrchestrator"]

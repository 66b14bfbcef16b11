"""Async client that consumes the report generation event stream."""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any, Callable, Dict, Optional, Union

import httpx

from client.generation_session import GenerationSession
from core.logging import get_logger
from schemas.frames import Frame, FrameDecoder

logger = get_logger(__name__)

GENERATE_PATH = "/api/v1/playground/reports/generate"
CANCEL_PATH = "/api/v1/playground/threads/{thread_id}/generation/cancel"
GENERATION_LOOKUP_PATH = "/api/v1/playground/reports/generations/{generation_id}"
UNREACHABLE_MESSAGE = "Could not reach the report service. Please try again."

FrameCallback = Callable[[GenerationSession, Frame], Any]


def _error_message(response: httpx.Response, body: bytes) -> str:
    fallback = f"HTTP {response.status_code}: {response.reason_phrase}"
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        return fallback
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if isinstance(detail, dict):
        return str(detail.get("message") or detail.get("code") or fallback)
    if isinstance(detail, str):
        return detail
    if isinstance(detail, list) and detail:
        first = detail[0]
        if isinstance(first, dict) and first.get("msg"):
            return str(first["msg"])
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return fallback


class GenerationHandle:
    """In-flight generation: the session it drives plus the read task."""

    def __init__(self, session: GenerationSession, task: "asyncio.Task[GenerationSession]") -> None:
        self.session = session
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> bool:
        """Settle the session as cancelled and abort the HTTP read.

        Cancelling the read task exits the response context, which closes the
        connection so the server sees the disconnect.
        """
        changed = self.session.cancel()
        if not self._task.done():
            self._task.cancel()
        return changed

    async def wait(self) -> GenerationSession:
        await asyncio.wait({self._task})
        if not self._task.cancelled():
            exc = self._task.exception()
            if exc is not None:
                raise exc
        return self.session


class ReportStreamClient:
    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        timeout: Union[float, httpx.Timeout, None] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout if timeout is not None else httpx.Timeout(10.0, read=None),
            transport=transport,
        )

    async def __aenter__(self) -> "ReportStreamClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def start(
        self,
        *,
        thread_id: Union[str, uuid.UUID],
        prompt: str,
        model: Optional[str] = None,
        system_prompt: Optional[str] = None,
        extract_entities: bool = True,
        language: str = "en",
        generation_id: Optional[str] = None,
        on_frame: Optional[FrameCallback] = None,
    ) -> GenerationHandle:
        """Dispatch a generation and return immediately with its handle."""
        session = GenerationSession(thread_id=str(thread_id), generation_id=generation_id or str(uuid.uuid4()))
        body: Dict[str, Any] = {
            "threadId": str(thread_id),
            "prompt": prompt,
            "extractEntities": extract_entities,
            "language": language,
        }
        if model:
            body["model"] = model
        if system_prompt:
            body["systemPrompt"] = system_prompt
        session.start()
        task = asyncio.ensure_future(self._read(session, body, on_frame))
        return GenerationHandle(session, task)

    async def generate(self, **kwargs: Any) -> GenerationSession:
        return await self.start(**kwargs).wait()

    async def _read(
        self,
        session: GenerationSession,
        body: Dict[str, Any],
        on_frame: Optional[FrameCallback],
    ) -> GenerationSession:
        decoder = FrameDecoder()
        headers = {"Idempotency-Key": session.generation_id, "Accept": "text/event-stream"}
        try:
            async with self._client.stream("POST", GENERATE_PATH, json=body, headers=headers) as response:
                session.mark_connected(response.status_code)
                if response.status_code >= 400:
                    payload = await response.aread()
                    session.fail(_error_message(response, payload), http_status=response.status_code)
                    return session
                async for chunk in response.aiter_bytes():
                    for frame in decoder.feed(chunk):
                        self._dispatch(session, frame, on_frame)
                    if session.is_terminal:
                        break
                else:
                    for frame in decoder.flush():
                        self._dispatch(session, frame, on_frame)
        except asyncio.CancelledError:
            session.cancel()
            raise
        except httpx.ConnectError as exc:
            logger.warning("Report service unreachable: %s", exc)
            session.fail(UNREACHABLE_MESSAGE)
        except httpx.HTTPError as exc:
            logger.warning("Report stream for generation %s broke: %s", session.generation_id, exc)
        finally:
            if decoder.malformed or decoder.invalid:
                logger.info(
                    "Generation %s skipped %d malformed and %d invalid frames",
                    session.generation_id,
                    decoder.malformed,
                    decoder.invalid,
                )
            if session.settle_interrupted():
                logger.warning("Stream for generation %s ended without a terminal frame", session.generation_id)
        return session

    @staticmethod
    def _dispatch(session: GenerationSession, frame: Frame, on_frame: Optional[FrameCallback]) -> None:
        if session.apply(frame) and on_frame is not None:
            on_frame(session, frame)

    async def cancel_generation(self, thread_id: Union[str, uuid.UUID]) -> bool:
        """Ask the server to stop the thread's active generation."""
        response = await self._client.post(CANCEL_PATH.format(thread_id=thread_id))
        if response.status_code == 404:
            return False
        response.raise_for_status()
        return True

    async def verify(self, generation_id: str) -> Optional[Dict[str, Any]]:
        """Look up the report persisted for ``generation_id``; ``None`` when there is none."""
        response = await self._client.get(GENERATION_LOOKUP_PATH.format(generation_id=generation_id))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()


__all__ = ["GenerationHandle", "ReportStreamClient"]

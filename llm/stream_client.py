"""Streaming model client used by the report generation pipeline."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import litellm

from core.logging import get_logger
from llm.llm_service import extract_usage_payload, record_langfuse_event
from services.generation.errors import UpstreamModelError

logger = get_logger(__name__)


@dataclass(frozen=True)
class TextDelta:
    """One unit of upstream output: a text fragment and/or final usage numbers."""

    text: str = ""
    usage: Optional[Dict[str, int]] = None
    model: Optional[str] = None


class ModelStreamClient(Protocol):
    def stream_completion(
        self,
        messages: List[Dict[str, Any]],
        *,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[TextDelta]:
        ...


def _chunk_token(chunk: Any) -> str:
    if isinstance(chunk, Mapping):
        choices = chunk.get("choices") or []
    else:
        choices = getattr(chunk, "choices", None) or []
    if not choices:
        return ""
    choice_obj = choices[0]
    token: Any = ""
    if isinstance(choice_obj, Mapping):
        delta = choice_obj.get("delta") or {}
        token = delta.get("content") if isinstance(delta, Mapping) else getattr(delta, "content", None)
        if not token:
            token = choice_obj.get("text") or ""
    else:
        delta = getattr(choice_obj, "delta", None)
        if isinstance(delta, Mapping):
            token = delta.get("content") or ""
        elif delta is not None:
            token = getattr(delta, "content", None) or ""
        if not token:
            token = getattr(choice_obj, "text", "") or ""
    return token if isinstance(token, str) else ""


class LiteLLMStreamClient:
    """Streams chat completions through litellm.

    The fallback model is only tried when the primary model fails to open a
    stream. Once text has been yielded a failure is final, since replaying the
    prompt on another model would duplicate content already sent downstream.
    """

    def __init__(self, *, fallback_model: Optional[str] = None, request_timeout: Optional[float] = None) -> None:
        self.fallback_model = fallback_model
        self.request_timeout = request_timeout

    async def _open_stream(self, messages: List[Dict[str, Any]], *, model: str, **params: Any) -> Tuple[Any, str]:
        try:
            response = await litellm.acompletion(
                model=model,
                messages=messages,
                stream=True,
                stream_options={"include_usage": True},
                timeout=self.request_timeout,
                **params,
            )
            return response, model
        except Exception as primary_err:
            logger.warning("Streaming LLM call failed for %s: %s", model, primary_err, exc_info=True)
            record_langfuse_event(model, messages, name="report_generation", error=str(primary_err))
            fallback_model = self.fallback_model
            if not fallback_model or fallback_model == model:
                raise UpstreamModelError(f"LLM call failed for model {model}: {primary_err}") from primary_err
            try:
                response = await litellm.acompletion(
                    model=fallback_model,
                    messages=messages,
                    stream=True,
                    stream_options={"include_usage": True},
                    timeout=self.request_timeout,
                    **params,
                )
            except Exception as fallback_err:
                record_langfuse_event(fallback_model, messages, name="report_generation", error=str(fallback_err))
                raise UpstreamModelError(
                    f"Primary model {model} error: {primary_err}; fallback {fallback_model} error: {fallback_err}"
                ) from fallback_err
            logger.info("Fallback model %s opened a stream after %s failure.", fallback_model, model)
            return response, fallback_model

    async def stream_completion(
        self,
        messages: List[Dict[str, Any]],
        *,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[TextDelta]:
        params: Dict[str, Any] = {}
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        if temperature is not None:
            params["temperature"] = temperature

        response, model_used = await self._open_stream(messages, model=model, **params)
        accumulated_tokens: List[str] = []
        usage: Optional[Dict[str, int]] = None
        try:
            async for chunk in response:
                token = _chunk_token(chunk)
                chunk_usage = extract_usage_payload(chunk)
                if chunk_usage:
                    usage = chunk_usage
                if token:
                    accumulated_tokens.append(token)
                    yield TextDelta(text=token, model=model_used)
        except (asyncio.CancelledError, GeneratorExit):
            raise
        except Exception as exc:
            logger.error("Stream from %s broke after %d chunks: %s", model_used, len(accumulated_tokens), exc, exc_info=True)
            record_langfuse_event(
                model_used,
                messages,
                name="report_generation",
                response_content="".join(accumulated_tokens),
                error=str(exc),
            )
            raise UpstreamModelError(f"stream from {model_used} failed: {exc}") from exc
        finally:
            closer = getattr(response, "aclose", None)
            if closer is not None:
                try:
                    await closer()
                except Exception as exc:
                    logger.debug("Closing upstream stream failed: %s", exc)

        record_langfuse_event(
            model_used,
            messages,
            name="report_generation",
            response_content="".join(accumulated_tokens),
            usage=usage,
        )
        if usage:
            yield TextDelta(usage=usage, model=model_used)


MOCK_REPORT_TEMPLATE = """<h2>Executive Summary</h2>
<p>This is a simulated report for: {prompt}. It is generated locally without calling a model provider.</p>
<h2>Market Overview</h2>
<p>The sector grew 12.5% year over year, with total revenue reaching $4,200,000,000.</p>
<h2>Performance Chart</h2>
<p>A chart of quarterly revenue would appear here.</p>
<h2>Key Insights</h2>
<ul><li>Margins are stable.</li><li>Recommendation: monitor guidance at the next earnings call.</li></ul>
"""


def build_mock_report(prompt: str) -> List[str]:
    """Split the canned report into line-sized deltas."""
    text = MOCK_REPORT_TEMPLATE.format(prompt=prompt.strip()[:200] or "your request")
    return [line + "\n" for line in text.splitlines()]


class ScriptedStreamClient:
    """Replays fixed deltas instead of calling a provider.

    Backs ``USE_MOCK_AI`` and is handy for driving the pipeline in tests.
    ``fail_after`` raises :class:`UpstreamModelError` once that many deltas
    have been yielded; ``delay`` sleeps between deltas.
    """

    def __init__(
        self,
        chunks: Optional[Sequence[str]] = None,
        *,
        delay: float = 0.0,
        fail_after: Optional[int] = None,
        usage: Optional[Dict[str, int]] = None,
    ) -> None:
        self.chunks = list(chunks) if chunks is not None else None
        self.delay = delay
        self.fail_after = fail_after
        self.usage = usage
        self.calls: List[Dict[str, Any]] = []

    async def stream_completion(
        self,
        messages: List[Dict[str, Any]],
        *,
        model: str,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> AsyncIterator[TextDelta]:
        self.calls.append({"messages": messages, "model": model})
        chunks = self.chunks
        if chunks is None:
            prompt = str(messages[-1].get("content") or "") if messages else ""
            chunks = build_mock_report(prompt.splitlines()[0] if prompt else "")
        for index, chunk in enumerate(chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise UpstreamModelError(f"scripted failure after {index} chunks")
            if self.delay:
                await asyncio.sleep(self.delay)
            yield TextDelta(text=chunk, model=model)
        if self.fail_after is not None and self.fail_after >= len(chunks):
            raise UpstreamModelError(f"scripted failure after {len(chunks)} chunks")
        if self.usage:
            yield TextDelta(usage=dict(self.usage), model=model)


__all__ = [
    "LiteLLMStreamClient",
    "ModelStreamClient",
    "ScriptedStreamClient",
    "TextDelta",
    "build_mock_report",
]

"""Best-effort extraction of financial entities from finished report text."""

from __future__ import annotations

import asyncio
import html
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol

from core.logging import get_logger
from llm import llm_service
from llm.prompts import extract_entities as extract_entities_prompt

logger = get_logger(__name__)

ENTITY_TYPES = frozenset(
    {"COMPANY", "STOCK", "PERSON", "PRODUCT", "SECTOR", "CRYPTOCURRENCY", "COMMODITY", "INDEX", "ETF"}
)
MAX_ENTITIES = 10
MAX_CONTEXT_CHARS = 200

_TAG_PATTERN = re.compile(r"<[^>]+>")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")


@dataclass(frozen=True)
class ExtractedEntity:
    name: str
    type: str
    slug: str
    ticker: Optional[str] = None
    context: Optional[str] = None
    sentiment: float = 0.0
    relevance: float = 0.5
    mentions: int = 1


class EntityExtractor(Protocol):
    async def extract(self, text: str) -> List[ExtractedEntity]:
        ...


def html_to_text(content: str) -> str:
    """Strip tags and collapse whitespace."""
    return _WHITESPACE_PATTERN.sub(" ", html.unescape(_TAG_PATTERN.sub(" ", content or ""))).strip()


def slugify(name: str) -> str:
    return _SLUG_PATTERN.sub("-", (name or "").lower()).strip("-")


def _clamp(value: Any, lower: float, upper: float, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return max(lower, min(upper, number))


def _normalize(raw_entities: Iterable[Any]) -> List[ExtractedEntity]:
    entities: Dict[str, ExtractedEntity] = {}
    for item in raw_entities:
        if not isinstance(item, dict):
            continue
        name = str(item.get("name") or "").strip()
        slug = slugify(name)
        if not slug or slug in entities:
            continue
        entity_type = str(item.get("type") or "").strip().upper()
        if entity_type not in ENTITY_TYPES:
            entity_type = "COMPANY"
        ticker = item.get("ticker")
        ticker = str(ticker).strip().upper() if ticker and str(ticker).strip().lower() != "null" else None
        context = item.get("context")
        try:
            mentions = max(1, int(item.get("mentions") or 1))
        except (TypeError, ValueError):
            mentions = 1
        entities[slug] = ExtractedEntity(
            name=name[:255],
            type=entity_type,
            slug=slug[:255],
            ticker=ticker[:32] if ticker else None,
            context=str(context)[:MAX_CONTEXT_CHARS] if context else None,
            sentiment=_clamp(item.get("sentiment"), -1.0, 1.0, 0.0),
            relevance=_clamp(item.get("relevance"), 0.0, 1.0, 0.5),
            mentions=mentions,
        )
    ranked = sorted(entities.values(), key=lambda entity: entity.relevance, reverse=True)
    return ranked[:MAX_ENTITIES]


class LiteLLMEntityExtractor:
    """Ask a small model for entities; any failure yields an empty list."""

    def __init__(self, *, model: str, timeout_seconds: float) -> None:
        self.model = model
        self.timeout_seconds = timeout_seconds

    async def extract(self, text: str) -> List[ExtractedEntity]:
        plain = html_to_text(text)
        if not plain:
            return []
        messages = extract_entities_prompt.get_prompt(plain)
        try:
            payload = await asyncio.wait_for(
                llm_service.json_completion(
                    self.model,
                    messages,
                    timeout=self.timeout_seconds,
                    name="entity_extraction",
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Entity extraction timed out after %.1fs.", self.timeout_seconds)
            return []
        if payload.get("error"):
            logger.warning("Entity extraction failed: %s", payload["error"])
            return []
        raw_entities = payload.get("entities")
        if not isinstance(raw_entities, list):
            logger.warning("Entity extraction returned no entity list (keys=%s).", sorted(payload))
            return []
        return _normalize(raw_entities)


class NullEntityExtractor:
    async def extract(self, text: str) -> List[ExtractedEntity]:
        return []


__all__ = [
    "ENTITY_TYPES",
    "EntityExtractor",
    "ExtractedEntity",
    "LiteLLMEntityExtractor",
    "NullEntityExtractor",
    "html_to_text",
    "slugify",
]

"""Incremental heading-based sectioning of streamed report text."""

from __future__ import annotations

import html
import re
import uuid
from dataclasses import dataclass
from typing import List, Optional, Tuple

from schemas.frames import SectionPayload, SectionType

# Headings never span lines: an HTML heading counts once its closing tag has
# arrived, a markdown ATX heading once its line is terminated.
HEADING_PATTERN = re.compile(
    r"<h(?P<level>[1-6])\b[^>\n]*>(?P<html_title>[^\n]*?)</h(?P=level)\s*>"
    r"|^[ \t]{0,3}(?P<hashes>#{1,6})[ \t]+(?P<md_title>[^\n]*?)[ \t]*#*[ \t]*\n",
    re.IGNORECASE | re.MULTILINE,
)
_TAG_PATTERN = re.compile(r"<[^>]+>")
_WHITESPACE_PATTERN = re.compile(r"\s+")
_METRIC_PATTERN = re.compile(r"\d+(?:\.\d+)?%|\$[\d,]+")
_CHART_PATTERN = re.compile(r"\b(?:chart|graph)s?\b")

PREAMBLE_TITLE = "Overview"


def _visible_text(fragment: str) -> str:
    stripped = _TAG_PATTERN.sub(" ", fragment)
    return _WHITESPACE_PATTERN.sub(" ", html.unescape(stripped)).strip()


def classify_section(content: str) -> SectionType:
    lowered = content.lower()
    if "<table" in lowered or re.search(r"^\s*\|.*\|\s*$", content, re.MULTILINE):
        return "TABLE"
    if _CHART_PATTERN.search(lowered):
        return "CHART"
    if _METRIC_PATTERN.search(content):
        return "METRIC"
    if "insight" in lowered or "recommendation" in lowered:
        return "INSIGHT"
    return "TEXT"


@dataclass
class _OpenSection:
    title: str
    content_start: int


class SectionParser:
    """Turn an append-only buffer into ordered, finalized sections.

    A section is finalized when the next heading arrives (or at ``finish``).
    Finalized sections are immutable and orders are handed out 0, 1, 2, ...
    in arrival order. Text before the first heading becomes an order-0
    "Overview" section when it has visible text and is dropped otherwise.
    Scanning resumes at the start of the last unterminated line, so each
    delta is examined once rather than re-parsing the whole buffer.
    """

    def __init__(self) -> None:
        self._text = ""
        self._scan_from = 0
        self._open: Optional[_OpenSection] = None
        self._next_order = 0
        self._sections: List[SectionPayload] = []
        self._finished = False

    @property
    def text(self) -> str:
        return self._text

    @property
    def sections(self) -> Tuple[SectionPayload, ...]:
        return tuple(self._sections)

    @property
    def finished(self) -> bool:
        return self._finished

    def append(self, delta: str) -> List[SectionPayload]:
        """Add a text delta; return the sections it finalized."""
        self._ensure_open()
        if not delta:
            return []
        self._text += delta
        return self._scan(final=False)

    def feed(self, buffer: str) -> List[SectionPayload]:
        """Accept the cumulative buffer; it must extend what was seen so far."""
        self._ensure_open()
        if not buffer.startswith(self._text):
            raise ValueError("section parser buffer must only grow by appending")
        return self.append(buffer[len(self._text):])

    def finish(self) -> List[SectionPayload]:
        """Finalize the trailing section once the stream has ended."""
        self._ensure_open()
        finalized = self._scan(final=True)
        finalized.extend(self._close_current(len(self._text)))
        self._finished = True
        return finalized

    def _ensure_open(self) -> None:
        if self._finished:
            raise RuntimeError("section parser already finished")

    def _scan(self, *, final: bool) -> List[SectionPayload]:
        text = self._text
        if final and not text.endswith("\n"):
            text += "\n"
        finalized: List[SectionPayload] = []
        pos = self._scan_from
        while True:
            match = HEADING_PATTERN.search(text, pos)
            if match is None:
                break
            pos = match.end()
            title = _visible_text(match.group("html_title") or match.group("md_title") or "")
            if not title:
                continue
            finalized.extend(self._close_current(match.start()))
            self._open = _OpenSection(title=title, content_start=min(match.end(), len(self._text)))
        last_newline = self._text.rfind("\n", pos)
        self._scan_from = last_newline + 1 if last_newline >= 0 else pos
        return finalized

    def _close_current(self, end: int) -> List[SectionPayload]:
        if self._open is None:
            preamble = self._text[:end]
            # The preamble slot is consumed even when nothing is emitted for it.
            self._open = _OpenSection(title="", content_start=end)
            if not _visible_text(preamble):
                return []
            return [self._emit(PREAMBLE_TITLE, preamble)]
        if not self._open.title:
            return []
        section = self._emit(self._open.title, self._text[self._open.content_start:end])
        self._open = _OpenSection(title="", content_start=end)
        return [section]

    def _emit(self, title: str, raw_content: str) -> SectionPayload:
        content = raw_content.strip()
        section = SectionPayload(
            id=f"section_{uuid.uuid4().hex[:12]}",
            title=title,
            content=content,
            order=self._next_order,
            status="complete",
            type=classify_section(content),
        )
        self._next_order += 1
        self._sections.append(section)
        return section


def parse_sections(text: str) -> List[SectionPayload]:
    """One-shot parse of finished report text."""
    parser = SectionParser()
    parser.append(text)
    parser.finish()
    return list(parser.sections)


__all__ = ["HEADING_PATTERN", "PREAMBLE_TITLE", "SectionParser", "classify_section", "parse_sections"]

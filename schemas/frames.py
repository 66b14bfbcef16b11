"""Typed frames exchanged over the report generation event stream.

Every frame is one JSON object tagged by ``type`` and framed as a single
Server-Sent-Events record (``data: <json>\\n\\n``). The JSON encoder escapes
newlines inside strings, so ``\\n\\n`` can only ever appear as a record
boundary and a reader can reassemble frames regardless of how the transport
splits the byte stream.
"""

from __future__ import annotations

import codecs
import json
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from core.logging import get_logger

logger = get_logger(__name__)

SectionStatus = Literal["loading", "complete", "error"]
SectionType = Literal["TEXT", "TABLE", "CHART", "METRIC", "INSIGHT"]

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"
RECORD_SEPARATOR = "\n\n"


class SectionPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    content: str
    order: int = Field(ge=0)
    status: SectionStatus = "complete"
    type: SectionType = "TEXT"


class ContentFrame(BaseModel):
    type: Literal["content"] = "content"
    content: str


class SectionsFrame(BaseModel):
    """Sections finalized since the previous ``sections`` frame (never the full list)."""

    type: Literal["sections"] = "sections"
    data: List[SectionPayload]


class CompleteFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["complete"] = "complete"
    report_id: str = Field(alias="reportId", min_length=1)


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    error: str


Frame = Annotated[
    Union[ContentFrame, SectionsFrame, CompleteFrame, ErrorFrame],
    Field(discriminator="type"),
]

TERMINAL_FRAME_TYPES = frozenset({"complete", "error"})

_FRAME_ADAPTER: TypeAdapter[Frame] = TypeAdapter(Frame)


def is_terminal(frame: Frame) -> bool:
    return frame.type in TERMINAL_FRAME_TYPES


def frame_to_dict(frame: Frame) -> dict:
    return frame.model_dump(mode="json", by_alias=True)


def encode_frame(frame: Frame) -> str:
    """Serialize ``frame`` as one SSE record."""
    return f"{DATA_PREFIX} {json.dumps(frame_to_dict(frame), ensure_ascii=False)}{RECORD_SEPARATOR}"


def parse_frame(payload: Any) -> Frame:
    """Validate a decoded JSON payload against the frame union.

    Raises :class:`pydantic.ValidationError` for unknown types or payloads whose
    shape does not match their tag.
    """
    return _FRAME_ADAPTER.validate_python(payload)


class FrameDecoder:
    """Incrementally turn a byte stream into frames.

    Bytes are decoded with an incremental UTF-8 decoder so multi-byte
    characters split across reads survive, and records are only parsed once
    their ``\\n\\n`` terminator has arrived. A record that is not valid JSON is
    skipped and counted in ``malformed``; valid JSON that does not match the
    frame union is skipped and counted in ``invalid`` (protocol drift).
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self.malformed = 0
        self.invalid = 0

    def feed(self, chunk: Union[bytes, str]) -> List[Frame]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        self._buffer = (self._buffer + text).replace("\r\n", "\n")
        frames: List[Frame] = []
        while True:
            boundary = self._buffer.find(RECORD_SEPARATOR)
            if boundary < 0:
                break
            record = self._buffer[:boundary]
            self._buffer = self._buffer[boundary + len(RECORD_SEPARATOR):]
            frame = self._decode_record(record)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> List[Frame]:
        """Parse whatever is left once the stream has ended."""
        tail = self._decoder.decode(b"", final=True)
        remainder = (self._buffer + tail).replace("\r\n", "\n")
        self._buffer = ""
        if not remainder.strip():
            return []
        frame = self._decode_record(remainder.strip("\n"))
        return [frame] if frame is not None else []

    @property
    def pending(self) -> str:
        return self._buffer

    def _decode_record(self, record: str) -> Optional[Frame]:
        data_lines: List[str] = []
        for line in record.split("\n"):
            if not line or line.startswith(":"):
                continue
            if line.startswith(DATA_PREFIX):
                value = line[len(DATA_PREFIX):]
                data_lines.append(value[1:] if value.startswith(" ") else value)
            elif line.split(":", 1)[0] in {"event", "id", "retry"}:
                continue
            else:
                self.malformed += 1
                logger.warning("Skipping stream line without data prefix: %.120r", line)
        if not data_lines:
            return None

        data = "\n".join(data_lines).strip()
        if not data or data == DONE_SENTINEL:
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            self.malformed += 1
            logger.warning("Skipping malformed frame (%s): %.120r", exc.msg, data)
            return None
        try:
            return parse_frame(payload)
        except ValidationError as exc:
            self.invalid += 1
            logger.error("Frame does not match the stream protocol: %.200r (%s)", data, exc.errors()[:3])
            return None


__all__ = [
    "CompleteFrame",
    "ContentFrame",
    "ErrorFrame",
    "Frame",
    "FrameDecoder",
    "SectionPayload",
    "SectionsFrame",
    "TERMINAL_FRAME_TYPES",
    "encode_frame",
    "frame_to_dict",
    "is_terminal",
    "parse_frame",
]

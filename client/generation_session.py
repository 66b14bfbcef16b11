"""Client-side state of one report generation.

A session moves ``idle -> generating -> complete | error`` and never leaves a
terminal state; a retry gets a new session. Frames arriving after the
terminal transition (a slow reader catching up after a cancel, say) are
counted and ignored.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import List, Literal, Optional

from core.logging import get_logger
from schemas.frames import CompleteFrame, ContentFrame, ErrorFrame, Frame, SectionPayload, SectionsFrame

logger = get_logger(__name__)

GenerationStatus = Literal["idle", "generating", "complete", "error"]

CANCELLED_MESSAGE = "Generation cancelled"
INTERRUPTED_MESSAGE = "The connection closed before the report was confirmed. Reload the thread to check whether it was saved."

PROGRESS_STARTED = 10.0
PROGRESS_CONNECTED = 20.0
PROGRESS_CONTENT_CAP = 85.0
PROGRESS_SECTIONS_CAP = 90.0
PROGRESS_DONE = 100.0


class InvalidTransition(RuntimeError):
    pass


@dataclass
class GenerationSession:
    thread_id: str
    generation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: GenerationStatus = "idle"
    content: str = ""
    sections: List[SectionPayload] = field(default_factory=list)
    progress: float = 0.0
    report_id: Optional[str] = None
    error: Optional[str] = None
    cancelled: bool = False
    needs_verification: bool = False
    http_status: Optional[int] = None
    ignored_frames: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in ("complete", "error")

    @property
    def succeeded(self) -> bool:
        return self.status == "complete" and self.report_id is not None

    def start(self) -> None:
        if self.status != "idle":
            raise InvalidTransition(f"cannot start a session in state {self.status!r}; create a new session")
        self.status = "generating"
        self._advance(PROGRESS_STARTED)

    def mark_connected(self, http_status: int) -> None:
        self.http_status = http_status
        if self.status == "generating":
            self._advance(PROGRESS_CONNECTED)

    def apply(self, frame: Frame) -> bool:
        """Apply one frame; returns False when the frame was ignored."""
        if self.is_terminal:
            self.ignored_frames += 1
            logger.debug("Ignoring %s frame for settled generation %s", frame.type, self.generation_id)
            return False
        if self.status != "generating":
            raise InvalidTransition("frames received before the session was started")

        if isinstance(frame, ContentFrame):
            self.content += frame.content
            self._advance(min(PROGRESS_CONTENT_CAP, PROGRESS_CONNECTED + len(self.content) / 100))
        elif isinstance(frame, SectionsFrame):
            for section in frame.data:
                if self.sections and section.order < self.sections[-1].order:
                    logger.warning(
                        "Section %s arrived out of order (%d after %d); keeping arrival order",
                        section.id,
                        section.order,
                        self.sections[-1].order,
                    )
                self.sections.append(section)
            self._advance(min(PROGRESS_SECTIONS_CAP, PROGRESS_CONNECTED + 5 * len(self.sections)))
        elif isinstance(frame, CompleteFrame):
            self.status = "complete"
            self.report_id = frame.report_id
            self._advance(PROGRESS_DONE)
        elif isinstance(frame, ErrorFrame):
            self.status = "error"
            self.error = frame.error
            self.cancelled = frame.error == CANCELLED_MESSAGE
        return True

    def cancel(self) -> bool:
        if self.is_terminal:
            return False
        self.status = "error"
        self.error = CANCELLED_MESSAGE
        self.cancelled = True
        return True

    def fail(self, message: str, *, http_status: Optional[int] = None) -> bool:
        if http_status is not None:
            self.http_status = http_status
        if self.is_terminal:
            return False
        self.status = "error"
        self.error = message
        return True

    def settle_interrupted(self) -> bool:
        """Settle a stream that ended without a terminal frame.

        The report may or may not have been persisted, so the session is marked
        for verification instead of being reported as a success.
        """
        if self.is_terminal:
            return False
        self.status = "error"
        self.error = INTERRUPTED_MESSAGE
        self.needs_verification = True
        return True

    def _advance(self, value: float) -> None:
        self.progress = max(self.progress, min(value, PROGRESS_DONE))


__all__ = [
    "CANCELLED_MESSAGE",
    "GenerationSession",
    "GenerationStatus",
    "INTERRUPTED_MESSAGE",
    "InvalidTransition",
]

"""Python consumer of the report generation stream."""

from __future__ import annotations

from .generation_session import CANCELLED_MESSAGE, GenerationSession, InvalidTransition
from .stream_reader import GenerationHandle, ReportStreamClient

__all__ = [
    "CANCELLED_MESSAGE",
    "GenerationHandle",
    "GenerationSession",
    "InvalidTransition",
    "ReportStreamClient",
]

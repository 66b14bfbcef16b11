"""Error types raised along the report generation path."""

from __future__ import annotations


class GenerationError(RuntimeError):
    """Base class; ``public_message`` is the only text that reaches clients."""

    code = "generation.failed"
    public_message = "Report generation failed. Please try again."

    def __init__(self, message: str = "", *, code: str | None = None, public_message: str | None = None):
        super().__init__(message or self.public_message)
        if code is not None:
            self.code = code
        if public_message is not None:
            self.public_message = public_message


class GenerationInProgressError(GenerationError):
    code = "generation.in_progress"
    public_message = "A report is already being generated for this thread."


class GenerationCancelled(GenerationError):
    code = "generation.cancelled"
    public_message = "Generation cancelled"


class UpstreamModelError(GenerationError):
    code = "generation.upstream_error"
    public_message = "The model provider failed while generating the report."


class UpstreamTimeoutError(UpstreamModelError):
    code = "generation.upstream_timeout"
    public_message = "The model provider timed out while generating the report."


class PersistenceError(GenerationError):
    code = "generation.persistence_failed"
    public_message = "The report was generated but could not be saved. Please try again."


__all__ = [
    "GenerationCancelled",
    "GenerationError",
    "GenerationInProgressError",
    "PersistenceError",
    "UpstreamModelError",
    "UpstreamTimeoutError",
]

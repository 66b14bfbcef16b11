"""Process-wide tracker of the one in-flight generation per thread."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, Optional

from core.logging import get_logger
from services.generation.errors import GenerationInProgressError

logger = get_logger(__name__)


@dataclass
class GenerationLease:
    thread_id: str
    generation_id: str
    expires_at: float
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class GenerationRegistry:
    """Map of thread id -> active lease, guarded by a mutex.

    Leases expire after ``lease_ttl_seconds`` so a response whose body was
    never iterated (and therefore never released its lease) cannot block the
    thread forever. The TTL must exceed the generation timeout.
    """

    def __init__(self, *, lease_ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.lease_ttl_seconds = lease_ttl_seconds
        self._clock = clock
        self._leases: Dict[str, GenerationLease] = {}
        self._lock = Lock()

    def acquire(self, thread_id: str, generation_id: str) -> GenerationLease:
        now = self._clock()
        with self._lock:
            current = self._leases.get(thread_id)
            if current is not None and current.expires_at > now:
                raise GenerationInProgressError(
                    f"generation {current.generation_id} still active for thread {thread_id}"
                )
            if current is not None:
                logger.warning(
                    "Reclaiming expired generation lease thread=%s generation=%s",
                    thread_id,
                    current.generation_id,
                )
            lease = GenerationLease(
                thread_id=thread_id,
                generation_id=generation_id,
                expires_at=now + self.lease_ttl_seconds,
            )
            self._leases[thread_id] = lease
            return lease

    def release(self, lease: GenerationLease) -> bool:
        with self._lock:
            if self._leases.get(lease.thread_id) is not lease:
                return False
            del self._leases[lease.thread_id]
            return True

    def active(self, thread_id: str) -> Optional[GenerationLease]:
        now = self._clock()
        with self._lock:
            lease = self._leases.get(thread_id)
            if lease is None or lease.expires_at <= now:
                return None
            return lease

    def cancel(self, thread_id: str) -> bool:
        """Signal the active generation for ``thread_id`` to stop."""
        lease = self.active(thread_id)
        if lease is None:
            return False
        lease.cancel_event.set()
        logger.info("Cancellation requested thread=%s generation=%s", thread_id, lease.generation_id)
        return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._leases)


__all__ = ["GenerationLease", "GenerationRegistry"]

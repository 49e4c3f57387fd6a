"""
Batched usage recording.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from .models import RecordResult, SuggestionType, UsageEvent

logger = logging.getLogger(__name__)

Recorder = Callable[[UsageEvent], Awaitable[RecordResult]]


@dataclass
class BatchResult:
    """Tally of one submit_batch() call."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    requeued: int = 0
    results: list[RecordResult] = field(default_factory=list)


@dataclass
class RecordingStats:
    """Running totals across all batches."""

    total: int = 0
    success: int = 0
    error: int = 0
    last_error: str | None = None

    @property
    def success_rate(self) -> float:
        return self.success / self.total if self.total else 0.0


class RecordingBatcher:
    """
    Coalesces usage events into delayed, size-bounded batches.

    A queued event reaches the recorder after at most ``batch_delay``
    seconds without further add() calls, or immediately once the queue
    holds ``max_batch_size`` events. Events that fail with a retryable
    error are re-queued for the next cycle, up to ``max_attempts`` tries in
    total. A retried event may be counted twice if the first attempt
    actually landed; usage counts tolerate that.
    """

    def __init__(
        self,
        recorder: Recorder,
        batch_delay: float = 1.0,
        max_batch_size: int = 10,
        max_attempts: int = 3,
    ):
        self.recorder = recorder
        self.batch_delay = batch_delay
        self.max_batch_size = max_batch_size
        self.max_attempts = max_attempts
        self.stats = RecordingStats()

        self._queue: list[UsageEvent] = []
        self._timer: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _arm_timer(self) -> None:
        self._cancel_timer()
        if not self._closed:
            self._timer = asyncio.create_task(self._flush_later())

    async def _flush_later(self) -> None:
        await asyncio.sleep(self.batch_delay)
        # Detach first so a concurrent add() cannot cancel the flush itself
        self._timer = None
        await self.submit_batch()

    async def add(self, event: UsageEvent) -> BatchResult | None:
        """Queue an event. Returns the batch result if this add flushed."""
        if self._closed:
            logger.warning(f"Batcher closed, dropping {event.type.value} event {event.value!r}")
            return None

        self._queue.append(event)

        if len(self._queue) >= self.max_batch_size:
            self._cancel_timer()
            return await self.submit_batch()

        self._arm_timer()
        return None

    async def add_faction(
        self, manufacturer: str, game: str, value: str, metadata: dict[str, Any] | None = None
    ) -> BatchResult | None:
        return await self.add(
            UsageEvent(
                type=SuggestionType.FACTION,
                value=value,
                manufacturer=manufacturer,
                game=game,
                metadata=metadata or {},
            )
        )

    async def add_unit(
        self,
        manufacturer: str,
        game: str,
        faction: str,
        value: str,
        metadata: dict[str, Any] | None = None,
    ) -> BatchResult | None:
        return await self.add(
            UsageEvent(
                type=SuggestionType.UNIT,
                value=value,
                manufacturer=manufacturer,
                game=game,
                faction=faction,
                metadata=metadata or {},
            )
        )

    async def add_manufacturer(
        self, value: str, metadata: dict[str, Any] | None = None
    ) -> BatchResult | None:
        return await self.add(
            UsageEvent(type=SuggestionType.MANUFACTURER, value=value, metadata=metadata or {})
        )

    async def add_game(
        self, manufacturer: str, value: str, metadata: dict[str, Any] | None = None
    ) -> BatchResult | None:
        return await self.add(
            UsageEvent(
                type=SuggestionType.GAME,
                value=value,
                manufacturer=manufacturer,
                metadata=metadata or {},
            )
        )

    async def submit_batch(self) -> BatchResult:
        """Send every queued event to the recorder, one at a time."""
        async with self._lock:
            batch, self._queue = self._queue, []
            result = BatchResult(total=len(batch))
            if not batch:
                return result

            logger.debug(f"Submitting batch of {len(batch)} usage events")
            retry = []

            for index, event in enumerate(batch):
                try:
                    outcome = await self.recorder(event)
                except asyncio.CancelledError:
                    # The in-flight event counts as unrecorded
                    self._queue = retry + batch[index:] + self._queue
                    logger.warning(
                        f"Batch cancelled, re-queued {len(self._queue)} unrecorded usage events"
                    )
                    self._arm_timer()
                    raise
                except Exception as e:
                    logger.exception(f"Recorder failed for {event.type.value} {event.value!r}")
                    outcome = RecordResult(recorded=False, error=str(e), retryable=True)

                result.results.append(outcome)
                self.stats.total += 1

                if outcome.recorded:
                    result.successful += 1
                    self.stats.success += 1
                    continue

                result.failed += 1
                self.stats.error += 1
                self.stats.last_error = outcome.error or outcome.reason

                if not outcome.retryable:
                    continue

                event.attempts += 1
                if event.attempts >= self.max_attempts:
                    logger.warning(
                        f"Dropping {event.type.value} event {event.value!r} "
                        f"after {event.attempts} attempts"
                    )
                    continue
                retry.append(event)

            if retry:
                self._queue = retry + self._queue
                result.requeued = len(retry)
                logger.info(f"Re-queued {len(retry)} failed usage events")

            logger.info(
                f"Batch complete: {result.successful}/{result.total} recorded, "
                f"{result.failed} failed"
            )

        if self._queue and self._timer is None:
            self._arm_timer()

        return result

    def clear(self) -> None:
        """Drop everything queued without recording it."""
        self._cancel_timer()
        self._queue = []

    async def aclose(self, flush: bool = True) -> None:
        """Stop the timer and optionally flush what is left."""
        self._closed = True
        self._cancel_timer()
        if flush and self._queue:
            await self.submit_batch()
        if self._queue:
            logger.warning(f"Discarding {len(self._queue)} unrecorded usage events")
            self._queue = []

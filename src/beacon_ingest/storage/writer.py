from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Awaitable, Callable, Optional

from ..backoff import ExponentialBackoff
from ..batching import BatchingBuffer, summarize_batch
from ..config import BackoffConfig
from ..events import PipelineEvents
from ..models import WriteBatch
from .base import ReadingStore, WriteConnectivityError, WriteDataError, WriteError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    batch_id: int
    rows: int = 0
    error: Optional[WriteError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class PersistenceWriter:
    """Write batches through a ReadingStore with idempotent upserts.

    Connectivity failures are retried forever with exponential backoff while
    the buffer stays open; data failures drop the batch.
    """

    def __init__(
        self,
        store: ReadingStore,
        *,
        events: Optional[PipelineEvents] = None,
        backoff: Optional[BackoffConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._store = store
        self._events = events or PipelineEvents()
        self._backoff = ExponentialBackoff(backoff or BackoffConfig())
        self._sleep = sleep
        self._now = now
        self._connected = False

    async def write(self, batch: WriteBatch) -> WriteResult:
        """Make a single write attempt for ``batch``."""
        batch.attempts += 1
        try:
            if not self._connected:
                await self._store.connect()
                self._connected = True
            rows = await self._store.upsert_readings(batch.readings, self._now())
        except WriteConnectivityError as exc:
            self._connected = False
            return WriteResult(batch_id=batch.batch_id, error=exc)
        except WriteDataError as exc:
            return WriteResult(batch_id=batch.batch_id, error=exc)
        except Exception as exc:  # store bugs and unmapped driver errors
            LOGGER.exception("store_error_unclassified", extra={"batch_id": batch.batch_id})
            error = WriteDataError(f"Unclassified store error: {exc!r}")
            error.__cause__ = exc
            return WriteResult(batch_id=batch.batch_id, error=error)
        return WriteResult(batch_id=batch.batch_id, rows=rows)

    async def run(self, buffer: BatchingBuffer) -> None:
        """Consume batches from ``buffer`` until it is closed and drained."""
        try:
            while True:
                batch = await buffer.next_batch()
                if batch is None:
                    return
                await self._deliver(batch, buffer)
        finally:
            await self.close()

    async def close(self) -> None:
        if self._connected:
            self._connected = False
            await self._store.close()

    async def _deliver(self, batch: WriteBatch, buffer: BatchingBuffer) -> None:
        result = await self.write(batch)
        if result.ok:
            self._backoff.reset()
            self._events.batch_written(batch.batch_id, result.rows, batch.attempts)
            for summary in summarize_batch(batch):
                LOGGER.debug(
                    "device_summary",
                    extra={
                        "batch_id": batch.batch_id,
                        "device_id": summary.device_id,
                        "samples": summary.samples,
                        "temperature_c": summary.temperature_c,
                        "humidity_pct": summary.humidity_pct,
                        "pressure_pa": summary.pressure_pa,
                        "movement_delta": summary.movement_delta,
                    },
                )
            return

        if isinstance(result.error, WriteDataError):
            self._events.batch_failed(
                batch.batch_id,
                str(result.error),
                retrying=False,
                readings_lost=batch.size,
            )
            return

        if buffer.closed:
            # Final flush during shutdown: one attempt per remaining batch.
            self._events.batch_failed(
                batch.batch_id,
                str(result.error),
                retrying=False,
                readings_lost=batch.size,
            )
            return

        delay = self._backoff.next_delay()
        self._events.batch_failed(batch.batch_id, str(result.error), retrying=True)
        buffer.requeue(batch)
        LOGGER.info(
            "write_retry_scheduled",
            extra={"batch_id": batch.batch_id, "delay_seconds": delay, "attempts": batch.attempts},
        )
        await self._sleep_unless_closed(delay, buffer)

    async def _sleep_unless_closed(self, delay: float, buffer: BatchingBuffer) -> None:
        waiters = [
            asyncio.create_task(self._sleep(delay)),
            asyncio.create_task(buffer.wait_closed()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

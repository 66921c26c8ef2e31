from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
import time
from typing import Callable, Deque, Dict, List, Optional

from .events import PipelineEvents
from .models import MOVEMENT_MODULUS, SensorReading, WriteBatch


@dataclass(frozen=True)
class DeviceSummary:
    device_id: str
    samples: int
    temperature_c: Optional[float]
    humidity_pct: Optional[float]
    pressure_pa: Optional[float]
    movement_delta: int


@dataclass
class BatchingBuffer:
    """Aggregate admitted readings into write batches.

    A batch is flushed when it holds ``max_batch_size`` readings or when
    ``max_batch_age_seconds`` passed since its first reading. Flushed batches
    wait in a pending queue bounded by ``max_pending_batches``; when it is full
    the oldest pending batch is evicted so the producer never blocks.
    """

    max_batch_size: int = 100
    max_batch_age_seconds: float = 10.0
    max_pending_batches: int = 32
    events: PipelineEvents = field(default_factory=PipelineEvents)
    clock: Callable[[], float] = time.monotonic
    _current: Optional[WriteBatch] = field(default=None, init=False, repr=False)
    _pending: Deque[WriteBatch] = field(default_factory=deque, init=False, repr=False)
    _next_batch_id: int = field(default=1, init=False, repr=False)
    _available: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)
    _closed: bool = field(default=False, init=False, repr=False)
    _closed_event: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_batch_size <= 0:
            raise ValueError("max_batch_size must be positive.")
        if self.max_batch_age_seconds <= 0:
            raise ValueError("max_batch_age_seconds must be positive.")
        if self.max_pending_batches <= 0:
            raise ValueError("max_pending_batches must be positive.")

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def current(self) -> Optional[WriteBatch]:
        return self._current

    @property
    def pending(self) -> List[WriteBatch]:
        return list(self._pending)

    def add(self, reading: SensorReading) -> Optional[WriteBatch]:
        """Append ``reading``; return the batch if this filled it up."""
        if self._closed:
            raise RuntimeError("Batching buffer is closed.")
        if self._current is None:
            self._current = WriteBatch(batch_id=self._next_batch_id, opened_at=self.clock())
            self._next_batch_id += 1
        self._current.readings.append(reading)
        if self._current.size >= self.max_batch_size:
            return self._flush("size")
        return None

    def seconds_until_due(self, now: Optional[float] = None) -> Optional[float]:
        if self._current is None:
            return None
        now = self.clock() if now is None else now
        return max(self._current.opened_at + self.max_batch_age_seconds - now, 0.0)

    def flush_due(self, now: Optional[float] = None) -> Optional[WriteBatch]:
        remaining = self.seconds_until_due(now)
        if remaining is None or remaining > 0:
            return None
        return self._flush("age")

    def flush(self) -> Optional[WriteBatch]:
        if self._current is None:
            return None
        return self._flush("forced")

    def requeue(self, batch: WriteBatch) -> None:
        """Put a batch whose write failed back at the head of the pending queue."""
        self._pending.appendleft(batch)
        while len(self._pending) > self.max_pending_batches:
            self._evict(self._pending.popleft())
        self._available.set()

    def pop_pending(self) -> Optional[WriteBatch]:
        if not self._pending:
            return None
        return self._pending.popleft()

    async def next_batch(self) -> Optional[WriteBatch]:
        """Wait for the next pending batch; ``None`` once closed and drained."""
        while not self._pending:
            if self._closed:
                return None
            self._available.clear()
            await self._available.wait()
        return self._pending.popleft()

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._available.set()
        self._closed_event.set()

    def _flush(self, trigger: str) -> WriteBatch:
        batch = self._current
        assert batch is not None
        self._current = None
        if len(self._pending) >= self.max_pending_batches:
            self._evict(self._pending.popleft())
        self._pending.append(batch)
        self.events.batch_flushed(batch.batch_id, batch.size, trigger)
        self._available.set()
        return batch

    def _evict(self, batch: WriteBatch) -> None:
        self.events.batch_evicted(batch.batch_id, batch.size)


def summarize_batch(batch: WriteBatch) -> List[DeviceSummary]:
    """Per-device sample counts, means and movement-counter delta for one batch."""
    grouped: Dict[str, List[SensorReading]] = {}
    for reading in batch.readings:
        grouped.setdefault(reading.device_id, []).append(reading)

    summaries: List[DeviceSummary] = []
    for device_id in sorted(grouped):
        readings = grouped[device_id]
        movements = [r.movement_counter for r in readings if r.movement_counter is not None]
        movement_delta = 0
        if len(movements) >= 2:
            movement_delta = (movements[-1] - movements[0]) % MOVEMENT_MODULUS
        summaries.append(
            DeviceSummary(
                device_id=device_id,
                samples=len(readings),
                temperature_c=_mean([r.temperature_c for r in readings], 2),
                humidity_pct=_mean([r.humidity_pct for r in readings], 2),
                pressure_pa=_mean([r.pressure_pa for r in readings], 1),
                movement_delta=movement_delta,
            )
        )
    return summaries


def _mean(values: List[Optional[float]], digits: int) -> Optional[float]:
    present = [value for value in values if value is not None]
    if not present:
        return None
    return round(sum(present) / len(present), digits)

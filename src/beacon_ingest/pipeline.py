from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from .batching import BatchingBuffer
from .channel import Channel
from .config import ConfigError, DatabaseConfig, IngestConfig
from .events import PipelineEvents
from .ingestion.ble_scanner import BleDiscoveryController, ScannerFactory
from .ingestion.decoder import DecodeError, decode_payload
from .models import RawAdvertisement, SensorReading, format_address
from .registry import DeviceRegistry
from .sequencing import SequenceFilter
from .storage import PersistenceWriter, ReadingStore

LOGGER = logging.getLogger(__name__)


def build_store(config: DatabaseConfig) -> ReadingStore:
    """Create the ReadingStore for the configured backend."""
    if config.backend == "postgres":
        from .storage.postgres import PostgresReadingStore

        return PostgresReadingStore(config)
    if config.backend == "sqlite":
        from .storage.sqlite import SQLiteReadingStore

        return SQLiteReadingStore(
            sqlite_path(config.url),
            table=config.table,
            create_schema=config.create_schema,
        )
    raise ConfigError(f"Unsupported database backend: {config.backend!r}.")


def sqlite_path(url: str) -> str:
    for prefix in ("sqlite:///", "sqlite://"):
        if url.startswith(prefix):
            return url[len(prefix):] or ":memory:"
    return url


class IngestPipeline:
    """Wire discovery, decoding, sequencing, batching and persistence together.

    Three tasks run on one event loop: the discovery forwarder, the stage
    that turns advertisements into batched readings, and the writer. Shutdown
    propagates downstream through channel and buffer closure, so every
    accepted reading gets a final write attempt.
    """

    def __init__(
        self,
        config: IngestConfig,
        *,
        store: Optional[ReadingStore] = None,
        events: Optional[PipelineEvents] = None,
        scanner_factory: Optional[ScannerFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.events = events or PipelineEvents()
        self.channel: Channel[RawAdvertisement] = Channel(
            config.discovery.channel_depth, name="advertisements"
        )
        self.registry = DeviceRegistry(config.registry)
        self.sequence_filter = SequenceFilter(self.registry, events=self.events)
        self.buffer = BatchingBuffer(
            max_batch_size=config.batching.max_batch_size,
            max_batch_age_seconds=config.batching.max_batch_age_seconds,
            max_pending_batches=config.batching.max_pending_batches,
            events=self.events,
            clock=clock,
        )
        self.discovery = BleDiscoveryController(
            config.discovery,
            self.channel,
            events=self.events,
            scanner_factory=scanner_factory,
            sleep=sleep,
            clock=clock,
        )
        self.writer = PersistenceWriter(
            store if store is not None else build_store(config.database),
            events=self.events,
            backoff=config.database.backoff,
            sleep=sleep,
        )

    def stop(self) -> None:
        self.discovery.stop()

    async def run(self) -> None:
        """Run until ``stop()`` or a fatal adapter fault; drain before returning."""
        writer_task = asyncio.create_task(self.writer.run(self.buffer), name="beacon-ingest-writer")
        writer_task.add_done_callback(self._on_writer_done)
        stage_task = asyncio.create_task(self._stage(), name="beacon-ingest-stage")
        stage_task.add_done_callback(self._on_stage_done)
        try:
            await self.discovery.run()
        finally:
            await stage_task
            await writer_task
            LOGGER.info("pipeline_stopped", extra={"counters": self.events.snapshot()})

    def process(self, advertisement: RawAdvertisement) -> Optional[SensorReading]:
        """Decode and sequence one advertisement; return the reading if it was batched."""
        device_id = self.registry.resolve(advertisement.address, seen_at=advertisement.received_at)
        if device_id is None:
            self.events.reading_dropped(
                "unknown_device", device_id=format_address(advertisement.address)
            )
            return None
        try:
            reading = decode_payload(
                advertisement.payload,
                advertisement.address,
                received_at=advertisement.received_at,
                rssi=advertisement.rssi,
            )
        except DecodeError as exc:
            self.events.reading_dropped(
                f"decode.{exc.kind.value}", device_id=device_id, detail=exc.message
            )
            return None
        except ValueError as exc:
            self.events.reading_dropped("invalid_reading", device_id=device_id, detail=str(exc))
            return None

        _, admitted = self.sequence_filter.process(reading)
        if admitted is None:
            return None
        self.buffer.add(admitted)
        return admitted

    async def _stage(self) -> None:
        try:
            while True:
                try:
                    advertisement = await self.channel.receive(self.buffer.seconds_until_due())
                except asyncio.TimeoutError:
                    self.buffer.flush_due()
                    continue
                if advertisement is None:
                    return
                self.process(advertisement)
                self.buffer.flush_due()
        finally:
            self.buffer.close()

    def _on_writer_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error("writer_failed", extra={"error": repr(task.exception())})
            self.events.count("writer_failed")
            self.stop()

    def _on_stage_done(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            LOGGER.error("stage_failed", extra={"error": repr(task.exception())})
            self.channel.close()
            self.stop()

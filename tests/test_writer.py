from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from beacon_ingest.batching import BatchingBuffer
from beacon_ingest.config import BackoffConfig
from beacon_ingest.events import PipelineEvents
from beacon_ingest.models import SensorReading, WriteBatch
from beacon_ingest.storage import PersistenceWriter, WriteConnectivityError, WriteDataError
from beacon_ingest.storage.base import build_upsert_sql
from beacon_ingest.storage.sqlite import SQLiteReadingStore

INGESTED_AT = datetime(2024, 7, 3, 12, 0, tzinfo=timezone.utc)


def _reading(sequence: int, temperature: float = 21.0) -> SensorReading:
    return SensorReading(
        device_id="AA:BB:CC:DD:EE:01",
        timestamp=1720000000.0 + sequence,
        sequence_number=sequence,
        temperature_c=temperature,
        humidity_pct=45.5,
        pressure_pa=100100,
        battery_mv=2950,
        movement_counter=3,
    )


def _batch(*sequences: int, batch_id: int = 1) -> WriteBatch:
    return WriteBatch(batch_id=batch_id, opened_at=0.0, readings=[_reading(seq) for seq in sequences])


class _FakeStore:
    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.connects = 0
        self.closes = 0
        self.written: list[list[int]] = []

    async def connect(self) -> None:
        self.connects += 1

    async def upsert_readings(self, readings, ingested_at) -> int:
        if self.failures:
            raise self.failures.pop(0)
        self.written.append([reading.sequence_number for reading in readings])
        return len(readings)

    async def close(self) -> None:
        self.closes += 1


class _Sleeps:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


def test_upsert_sql_targets_conflict_key() -> None:
    sql = build_upsert_sql("sensor_readings", ["?"] * 16)

    assert sql.startswith("INSERT INTO sensor_readings (device_id, sequence_number,")
    assert "ON CONFLICT (device_id, sequence_number) DO UPDATE SET" in sql
    assert "temperature_c = excluded.temperature_c" in sql
    assert "device_id = excluded" not in sql


def test_upsert_sql_rejects_unsafe_table_name() -> None:
    with pytest.raises(ValueError):
        build_upsert_sql("readings; DROP TABLE x", ["?"])


def test_sqlite_double_write_is_idempotent(tmp_path) -> None:
    async def _run() -> list[tuple]:
        store = SQLiteReadingStore(str(tmp_path / "readings.db"))
        writer = PersistenceWriter(store, now=lambda: INGESTED_AT)
        first = await writer.write(_batch(1, 2, 3))
        second = await writer.write(_batch(1, 2, 3))
        rows = await store.fetch_rows()
        await writer.close()
        assert first.ok and second.ok
        assert first.rows == 3
        return rows

    rows = asyncio.run(_run())

    assert [(row[0], row[1]) for row in rows] == [
        ("AA:BB:CC:DD:EE:01", 1),
        ("AA:BB:CC:DD:EE:01", 2),
        ("AA:BB:CC:DD:EE:01", 3),
    ]
    assert rows[0][3] == 21.0
    assert rows[0][15] == INGESTED_AT.isoformat()


def test_sqlite_upsert_replaces_existing_values(tmp_path) -> None:
    async def _run() -> list[tuple]:
        store = SQLiteReadingStore(str(tmp_path / "readings.db"))
        writer = PersistenceWriter(store, now=lambda: INGESTED_AT)
        await writer.write(WriteBatch(batch_id=1, opened_at=0.0, readings=[_reading(5, 20.0)]))
        await writer.write(WriteBatch(batch_id=2, opened_at=0.0, readings=[_reading(5, 23.5)]))
        rows = await store.fetch_rows()
        await writer.close()
        return rows

    rows = asyncio.run(_run())

    assert len(rows) == 1
    assert rows[0][3] == 23.5


def test_write_counts_attempts_and_connects_lazily() -> None:
    store = _FakeStore()
    writer = PersistenceWriter(store)
    batch = _batch(1, 2)

    result = asyncio.run(writer.write(batch))

    assert result.ok
    assert result.rows == 2
    assert batch.attempts == 1
    assert store.connects == 1


def test_connectivity_failure_is_retried_with_backoff() -> None:
    events = PipelineEvents()
    store = _FakeStore(
        failures=[
            WriteConnectivityError("connection refused"),
            WriteConnectivityError("connection refused"),
        ]
    )
    sleeps = _Sleeps()
    writer = PersistenceWriter(
        store,
        events=events,
        backoff=BackoffConfig(initial_seconds=1.0, multiplier=2.0, max_seconds=30.0),
        sleep=sleeps,
    )
    buffer = BatchingBuffer(max_batch_size=2, events=events)

    async def _run() -> None:
        task = asyncio.create_task(writer.run(buffer))
        buffer.add(_reading(1))
        buffer.add(_reading(2))
        while not store.written:
            await asyncio.sleep(0)
        buffer.close()
        await task

    asyncio.run(_run())

    assert store.written == [[1, 2]]
    assert sleeps.delays == [1.0, 2.0]
    assert store.connects == 3
    assert events["batch_failed.retry"] == 2
    assert events["rows_written"] == 2
    assert store.closes == 1


def test_data_error_drops_batch_without_retry() -> None:
    events = PipelineEvents()
    store = _FakeStore(failures=[WriteDataError("value out of range")])
    sleeps = _Sleeps()
    writer = PersistenceWriter(store, events=events, sleep=sleeps)
    buffer = BatchingBuffer(max_batch_size=1, events=events)

    async def _run() -> None:
        buffer.add(_reading(1))
        buffer.add(_reading(2))
        buffer.close()
        await writer.run(buffer)

    asyncio.run(_run())

    assert store.written == [[2]]
    assert sleeps.delays == []
    assert events["batch_failed.dropped"] == 1
    assert events["readings_lost"] == 1


def test_connectivity_failure_after_close_loses_remaining_readings() -> None:
    events = PipelineEvents()
    store = _FakeStore(failures=[WriteConnectivityError("database unreachable")])
    writer = PersistenceWriter(store, events=events, sleep=_Sleeps())
    buffer = BatchingBuffer(max_batch_size=10, events=events)

    async def _run() -> None:
        buffer.add(_reading(1))
        buffer.add(_reading(2))
        buffer.close()
        await writer.run(buffer)

    asyncio.run(_run())

    assert store.written == []
    assert events["readings_lost"] == 2
    assert events["batch_failed.dropped"] == 1


def test_unexpected_store_error_drops_batch() -> None:
    class _BrokenStore(_FakeStore):
        async def connect(self) -> None:
            raise RuntimeError("driver state corrupted")

    events = PipelineEvents()
    store = _BrokenStore()
    writer = PersistenceWriter(store, events=events, sleep=_Sleeps())
    buffer = BatchingBuffer(max_batch_size=1, events=events)

    result = asyncio.run(writer.write(_batch(1)))

    assert not result.ok
    assert isinstance(result.error, WriteDataError)
    assert isinstance(result.error.__cause__, RuntimeError)

    async def _run() -> None:
        buffer.add(_reading(2))
        buffer.close()
        await writer.run(buffer)

    asyncio.run(_run())

    assert events["batch_failed.dropped"] == 1
    assert events["readings_lost"] == 1


def test_close_interrupts_retry_backoff() -> None:
    events = PipelineEvents()
    store = _FakeStore(
        failures=[
            WriteConnectivityError("connection refused"),
            WriteConnectivityError("connection refused"),
        ]
    )

    async def _long_sleep(delay: float) -> None:
        await asyncio.sleep(3600)

    writer = PersistenceWriter(
        store,
        events=events,
        backoff=BackoffConfig(initial_seconds=3600.0, multiplier=2.0, max_seconds=3600.0),
        sleep=_long_sleep,
    )
    buffer = BatchingBuffer(max_batch_size=1, events=events)

    async def _run() -> None:
        task = asyncio.create_task(writer.run(buffer))
        buffer.add(_reading(1))
        while events["batch_failed.retry"] == 0:
            await asyncio.sleep(0)
        buffer.close()
        await asyncio.wait_for(task, timeout=1.0)

    asyncio.run(_run())

    assert store.written == []
    assert events["batch_failed.retry"] == 1
    assert events["batch_failed.dropped"] == 1
    assert events["readings_lost"] == 1


def test_sqlite_missing_table_is_a_data_error(tmp_path) -> None:
    store = SQLiteReadingStore(str(tmp_path / "empty.db"), create_schema=False)
    writer = PersistenceWriter(store, now=lambda: INGESTED_AT)

    result = asyncio.run(writer.write(_batch(1)))

    assert isinstance(result.error, WriteDataError)
    assert "does not exist" in str(result.error)

from __future__ import annotations

from datetime import datetime
import logging
import sqlite3
from typing import Optional, Sequence

import aiosqlite

from ..models import SensorReading
from .base import (
    READING_COLUMNS,
    WriteConnectivityError,
    WriteDataError,
    build_upsert_sql,
    reading_to_row,
)

LOGGER = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    device_id TEXT NOT NULL,
    sequence_number INTEGER NOT NULL,
    measured_at TEXT NOT NULL,
    temperature_c REAL,
    humidity_pct REAL,
    pressure_pa INTEGER,
    acceleration_x_mg INTEGER,
    acceleration_y_mg INTEGER,
    acceleration_z_mg INTEGER,
    battery_mv INTEGER,
    tx_power_dbm INTEGER,
    movement_counter INTEGER,
    mac_address TEXT,
    rssi INTEGER,
    wraparound INTEGER NOT NULL DEFAULT 0,
    ingested_at TEXT NOT NULL,
    PRIMARY KEY (device_id, sequence_number)
)
"""


class SQLiteReadingStore:
    """Local SQLite store with the same upsert semantics as the PostgreSQL store."""

    def __init__(
        self,
        path: str,
        *,
        table: str = "sensor_readings",
        create_schema: bool = True,
    ) -> None:
        self._path = path
        self._table = table
        self._create_schema = create_schema
        placeholders = ["?"] * len(READING_COLUMNS)
        self._sql = build_upsert_sql(table, placeholders)
        self._db: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        if self._db is not None:
            return
        try:
            self._db = await aiosqlite.connect(self._path)
            if self._create_schema:
                await self._db.execute(_SCHEMA.format(table=self._table))
                await self._db.commit()
            async with self._db.execute(
                "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?",
                (self._table,),
            ) as cursor:
                table_exists = await cursor.fetchone() is not None
        except sqlite3.OperationalError as exc:
            await self.close()
            raise WriteConnectivityError(f"SQLite database unavailable: {exc}") from exc
        if not table_exists:
            await self.close()
            raise WriteDataError(
                f"Table {self._table!r} does not exist; enable create_schema or create it."
            )

    async def upsert_readings(
        self, readings: Sequence[SensorReading], ingested_at: datetime
    ) -> int:
        if not readings:
            return 0
        if self._db is None:
            raise WriteConnectivityError("SQLite database is not open.")
        rows = [_sqlite_row(reading, ingested_at) for reading in readings]
        try:
            await self._db.executemany(self._sql, rows)
            await self._db.commit()
        except sqlite3.OperationalError as exc:
            await self._db.rollback()
            raise WriteConnectivityError(f"SQLite write failed: {exc}") from exc
        except (sqlite3.IntegrityError, sqlite3.InterfaceError, sqlite3.DataError) as exc:
            await self._db.rollback()
            raise WriteDataError(f"SQLite rejected batch: {exc}") from exc
        return len(rows)

    async def fetch_rows(self) -> list[tuple]:
        if self._db is None:
            raise WriteConnectivityError("SQLite database is not open.")
        columns = ", ".join(READING_COLUMNS)
        async with self._db.execute(
            f"SELECT {columns} FROM {self._table} ORDER BY device_id, sequence_number"
        ) as cursor:
            return list(await cursor.fetchall())

    async def close(self) -> None:
        db, self._db = self._db, None
        if db is not None:
            await db.close()


def _sqlite_row(reading: SensorReading, ingested_at: datetime) -> tuple:
    row = list(reading_to_row(reading, ingested_at))
    measured_at_index = READING_COLUMNS.index("measured_at")
    row[measured_at_index] = row[measured_at_index].isoformat()
    row[READING_COLUMNS.index("wraparound")] = int(reading.wraparound)
    row[READING_COLUMNS.index("ingested_at")] = ingested_at.isoformat()
    return tuple(row)

from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol, Sequence, Tuple

from ..models import SensorReading

READING_COLUMNS: Tuple[str, ...] = (
    "device_id",
    "sequence_number",
    "measured_at",
    "temperature_c",
    "humidity_pct",
    "pressure_pa",
    "acceleration_x_mg",
    "acceleration_y_mg",
    "acceleration_z_mg",
    "battery_mv",
    "tx_power_dbm",
    "movement_counter",
    "mac_address",
    "rssi",
    "wraparound",
    "ingested_at",
)

CONFLICT_KEY: Tuple[str, ...] = ("device_id", "sequence_number")


class WriteError(RuntimeError):
    """Base class for failures while persisting a batch."""


class WriteConnectivityError(WriteError):
    """The store could not be reached; the batch is safe to retry."""


class WriteDataError(WriteError):
    """The store rejected the batch contents; retrying will not help."""


class ReadingStore(Protocol):
    async def connect(self) -> None: ...

    async def upsert_readings(
        self, readings: Sequence[SensorReading], ingested_at: datetime
    ) -> int: ...

    async def close(self) -> None: ...


def reading_to_row(reading: SensorReading, ingested_at: datetime) -> tuple:
    return (
        reading.device_id,
        reading.sequence_number,
        datetime.fromtimestamp(reading.timestamp, tz=timezone.utc),
        reading.temperature_c,
        reading.humidity_pct,
        reading.pressure_pa,
        reading.acceleration_x_mg,
        reading.acceleration_y_mg,
        reading.acceleration_z_mg,
        reading.battery_mv,
        reading.tx_power_dbm,
        reading.movement_counter,
        reading.mac_address,
        reading.rssi,
        reading.wraparound,
        ingested_at,
    )


def build_upsert_sql(table: str, placeholders: Sequence[str]) -> str:
    """INSERT ... ON CONFLICT (device_id, sequence_number) DO UPDATE for ``table``."""
    if not table.replace("_", "").replace(".", "").isalnum():
        raise ValueError(f"Invalid table name: {table!r}.")
    columns = ", ".join(READING_COLUMNS)
    updates = ", ".join(
        f"{column} = excluded.{column}"
        for column in READING_COLUMNS
        if column not in CONFLICT_KEY
    )
    return (
        f"INSERT INTO {table} ({columns}) VALUES ({', '.join(placeholders)}) "
        f"ON CONFLICT ({', '.join(CONFLICT_KEY)}) DO UPDATE SET {updates}"
    )

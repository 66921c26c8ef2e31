from __future__ import annotations

import asyncio
from datetime import datetime
import logging
import ssl
from typing import Optional, Sequence, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import asyncpg

from ..config import ConfigError, DatabaseConfig
from ..models import SensorReading
from .base import (
    WriteConnectivityError,
    WriteDataError,
    build_upsert_sql,
    reading_to_row,
    READING_COLUMNS,
)

LOGGER = logging.getLogger(__name__)

_CONNECTIVITY_ERRORS: Tuple[type, ...] = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.AdminShutdownError,
    asyncpg.exceptions.TooManyConnectionsError,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS {table} (
    device_id TEXT NOT NULL,
    sequence_number INTEGER NOT NULL,
    measured_at TIMESTAMPTZ NOT NULL,
    temperature_c DOUBLE PRECISION,
    humidity_pct DOUBLE PRECISION,
    pressure_pa INTEGER,
    acceleration_x_mg SMALLINT,
    acceleration_y_mg SMALLINT,
    acceleration_z_mg SMALLINT,
    battery_mv SMALLINT,
    tx_power_dbm SMALLINT,
    movement_counter SMALLINT,
    mac_address TEXT,
    rssi SMALLINT,
    wraparound BOOLEAN NOT NULL DEFAULT FALSE,
    ingested_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (device_id, sequence_number)
)
"""


def split_ssl_params(url: str) -> Tuple[str, Optional[str], Optional[str]]:
    """Strip ``sslrootcert`` and ``sslmode`` from a DSN query string.

    Returns the cleaned DSN, the CA file path and the requested sslmode.
    """
    parts = urlsplit(url)
    if parts.scheme not in {"postgres", "postgresql"}:
        raise ConfigError(f"Unsupported database URL scheme: {parts.scheme!r}.")
    sslrootcert = None
    sslmode = None
    kept = []
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key == "sslrootcert":
            sslrootcert = value
        elif key == "sslmode":
            sslmode = value
        else:
            kept.append((key, value))
    cleaned = urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(kept), parts.fragment)
    )
    return cleaned, sslrootcert, sslmode


def build_ssl_context(
    config: DatabaseConfig,
) -> Tuple[str, Union[ssl.SSLContext, bool]]:
    dsn, url_rootcert, sslmode = split_ssl_params(config.url)
    if sslmode == "disable":
        if not config.allow_insecure:
            raise ConfigError(
                "sslmode=disable requested but allow_insecure is not set; "
                "readings are only written over TLS."
            )
        LOGGER.warning("database_tls_disabled", extra={"dsn_host": urlsplit(dsn).hostname})
        return dsn, False

    cafile = config.sslrootcert or url_rootcert
    try:
        context = ssl.create_default_context(cafile=cafile)
    except (OSError, ssl.SSLError) as exc:
        raise ConfigError(f"Error loading CA certificate {cafile!r}: {exc}") from exc
    if not config.verify_certificate:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return dsn, context


class PostgresReadingStore:
    """Upsert readings into PostgreSQL over TLS using asyncpg."""

    def __init__(self, config: DatabaseConfig) -> None:
        self._config = config
        self._dsn, self._ssl = build_ssl_context(config)
        placeholders = [f"${idx}" for idx in range(1, len(READING_COLUMNS) + 1)]
        self._sql = build_upsert_sql(config.table, placeholders)
        self._connection: Optional[asyncpg.Connection] = None

    async def connect(self) -> None:
        if self._connection is not None and not self._connection.is_closed():
            return
        try:
            self._connection = await asyncpg.connect(
                self._dsn,
                ssl=self._ssl,
                timeout=self._config.connect_timeout_seconds,
            )
        except _CONNECTIVITY_ERRORS as exc:
            self._connection = None
            raise WriteConnectivityError(f"Database connection failed: {exc}") from exc
        except asyncpg.PostgresError as exc:
            # Authentication and catalog errors mean the database is unusable, not the batch.
            self._connection = None
            raise WriteConnectivityError(f"Database refused connection: {exc}") from exc
        if self._config.create_schema:
            try:
                await self._connection.execute(_SCHEMA.format(table=self._config.table))
            except _CONNECTIVITY_ERRORS as exc:
                await self._discard_connection()
                raise WriteConnectivityError(f"Schema setup failed: {exc}") from exc
            except asyncpg.PostgresError as exc:
                await self._discard_connection()
                raise WriteDataError(f"Schema setup rejected: {exc}") from exc
        LOGGER.info("database_connected", extra={"table": self._config.table})

    async def upsert_readings(
        self, readings: Sequence[SensorReading], ingested_at: datetime
    ) -> int:
        if not readings:
            return 0
        if self._connection is None or self._connection.is_closed():
            raise WriteConnectivityError("Database connection is not open.")
        rows = [reading_to_row(reading, ingested_at) for reading in readings]
        try:
            async with self._connection.transaction():
                await self._connection.executemany(self._sql, rows)
        except ValueError as exc:
            # asyncpg reports argument encoding failures as a ValueError subclass of InterfaceError.
            raise WriteDataError(f"Batch could not be encoded: {exc}") from exc
        except _CONNECTIVITY_ERRORS as exc:
            await self._discard_connection()
            raise WriteConnectivityError(f"Database connection lost: {exc}") from exc
        except asyncpg.PostgresError as exc:
            raise WriteDataError(f"Database rejected batch: {exc}") from exc
        return len(rows)

    async def close(self) -> None:
        await self._discard_connection()

    async def _discard_connection(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None or connection.is_closed():
            return
        try:
            await connection.close(timeout=self._config.connect_timeout_seconds)
        except _CONNECTIVITY_ERRORS as exc:
            LOGGER.debug("database_close_failed", extra={"error": str(exc)})
            connection.terminate()

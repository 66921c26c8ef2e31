"""Relational persistence for sensor readings."""

from .base import (
    READING_COLUMNS,
    ReadingStore,
    WriteConnectivityError,
    WriteDataError,
    WriteError,
)
from .writer import PersistenceWriter, WriteResult

__all__ = [
    "READING_COLUMNS",
    "PersistenceWriter",
    "ReadingStore",
    "WriteConnectivityError",
    "WriteDataError",
    "WriteError",
    "WriteResult",
]

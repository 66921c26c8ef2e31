from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

RUUVI_MANUFACTURER_ID = 0x0499


class ConfigError(ValueError):
    """Raised when configuration is missing or inconsistent."""


@dataclass(frozen=True)
class BackoffConfig:
    initial_seconds: float = 1.0
    multiplier: float = 2.0
    max_seconds: float = 30.0


@dataclass(frozen=True)
class DiscoveryConfig:
    adapter_name: Optional[str] = None
    manufacturer_id: int = RUUVI_MANUFACTURER_ID
    channel_depth: int = 256
    radio_buffer_depth: int = 1024
    watchdog_seconds: Optional[float] = 60.0
    max_recovery_attempts: Optional[int] = None
    offline: bool = False
    offline_payloads: Sequence[Mapping[str, object]] = field(default_factory=tuple)
    backoff: BackoffConfig = field(default_factory=BackoffConfig)


@dataclass(frozen=True)
class RegistryConfig:
    """Known sensors keyed by hardware address.

    With ``allowlist_only=True`` only the listed addresses are ingested.
    """

    names: Mapping[str, str] = field(default_factory=dict)
    allowlist_only: bool = False


@dataclass(frozen=True)
class BatchingConfig:
    max_batch_size: int = 100
    max_batch_age_seconds: float = 10.0
    max_pending_batches: int = 32


@dataclass(frozen=True)
class DatabaseConfig:
    url: str
    backend: str = "postgres"
    table: str = "sensor_readings"
    sslrootcert: Optional[str] = None
    verify_certificate: bool = True
    allow_insecure: bool = False
    connect_timeout_seconds: float = 10.0
    create_schema: bool = False
    backoff: BackoffConfig = field(default_factory=BackoffConfig)


@dataclass(frozen=True)
class IngestConfig:
    database: DatabaseConfig
    discovery: DiscoveryConfig = field(default_factory=DiscoveryConfig)
    registry: RegistryConfig = field(default_factory=RegistryConfig)
    batching: BatchingConfig = field(default_factory=BatchingConfig)

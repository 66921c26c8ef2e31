"""Continuous BLE ingestion of RuuviTag environmental readings into a relational store."""

from .batching import BatchingBuffer, DeviceSummary, summarize_batch
from .channel import Channel, ChannelClosed
from .config import (
    BackoffConfig,
    BatchingConfig,
    ConfigError,
    DatabaseConfig,
    DiscoveryConfig,
    IngestConfig,
    RegistryConfig,
)
from .events import PipelineEvents
from .ingestion import (
    AdapterFault,
    AdapterState,
    BleDiscoveryController,
    DecodeError,
    DecodeErrorKind,
    decode_payload,
)
from .models import (
    DeviceRecord,
    RawAdvertisement,
    SensorReading,
    WriteBatch,
    validate_sensor_reading,
)
from .pipeline import IngestPipeline, build_store
from .registry import DeviceRegistry
from .sequencing import Admission, SequenceFilter
from .storage import (
    PersistenceWriter,
    WriteConnectivityError,
    WriteDataError,
    WriteError,
    WriteResult,
)

__all__ = [
    "AdapterFault",
    "AdapterState",
    "Admission",
    "BackoffConfig",
    "BatchingBuffer",
    "BatchingConfig",
    "BleDiscoveryController",
    "Channel",
    "ChannelClosed",
    "ConfigError",
    "DatabaseConfig",
    "DecodeError",
    "DecodeErrorKind",
    "DeviceRecord",
    "DeviceRegistry",
    "DeviceSummary",
    "DiscoveryConfig",
    "IngestConfig",
    "IngestPipeline",
    "PersistenceWriter",
    "PipelineEvents",
    "RawAdvertisement",
    "RegistryConfig",
    "SensorReading",
    "SequenceFilter",
    "WriteBatch",
    "WriteConnectivityError",
    "WriteDataError",
    "WriteError",
    "WriteResult",
    "build_store",
    "decode_payload",
    "summarize_batch",
    "validate_sensor_reading",
]

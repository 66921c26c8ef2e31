"""BLE discovery and payload decoding for environmental sensor beacons."""

from .ble_scanner import (
    AdapterFault,
    AdapterState,
    BleakScannerAdapterError,
    BleDiscoveryController,
    OfflineScanner,
    normalize_offline_payloads,
)
from .decoder import DecodeError, DecodeErrorKind, decode_payload, encode_payload

__all__ = [
    "AdapterFault",
    "AdapterState",
    "BleakScannerAdapterError",
    "BleDiscoveryController",
    "DecodeError",
    "DecodeErrorKind",
    "OfflineScanner",
    "decode_payload",
    "encode_payload",
    "normalize_offline_payloads",
]

"""Decode RuuviTag data format 5 ("RAWv2") manufacturer payloads.

Layout, big-endian, 24 bytes::

    0      format (5)
    1-2    temperature, int16, 0.005 degC steps
    3-4    humidity, uint16, 0.0025 % steps
    5-6    pressure, uint16, Pa with -50000 offset
    7-12   acceleration x/y/z, int16, mG
    13-14  power info: 11 bits battery (mV - 1600), 5 bits tx power ((dBm + 40) / 2)
    15     movement counter, uint8
    16-17  measurement sequence, uint16
    18-23  MAC address

Each field has a "not available" value; those decode to ``None``.
"""

from __future__ import annotations

from dataclasses import dataclass
import enum
import struct
import time
from typing import Optional

from ..models import SensorReading, format_address, parse_address, validate_sensor_reading

SUPPORTED_FORMAT = 5
RESERVED_FORMAT = 0xFF
PAYLOAD_LENGTH = 24

_LAYOUT = struct.Struct(">BhHHhhhHBH6s")

_SIGNED_NA = -0x8000
_UNSIGNED_NA = 0xFFFF
_BATTERY_NA = 0x7FF
_TX_POWER_NA = 0x1F
_MOVEMENT_NA = 0xFF
_MAC_NA = b"\xff" * 6


class DecodeErrorKind(str, enum.Enum):
    UNSUPPORTED_FORMAT = "unsupported_format"
    TRUNCATED_PAYLOAD = "truncated_payload"
    RESERVED_MARKER = "reserved_marker"


@dataclass(frozen=True)
class DecodeError(ValueError):
    kind: DecodeErrorKind
    message: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


def decode_payload(
    payload: bytes,
    address: object = None,
    *,
    received_at: Optional[float] = None,
    rssi: Optional[int] = None,
) -> SensorReading:
    """Decode one manufacturer payload into a SensorReading.

    ``address`` is the hardware address reported by the radio; when omitted the
    MAC embedded in the payload identifies the device.
    """
    if not payload:
        raise DecodeError(DecodeErrorKind.TRUNCATED_PAYLOAD, "Payload is empty.")
    data_format = payload[0]
    if data_format == RESERVED_FORMAT:
        raise DecodeError(
            DecodeErrorKind.RESERVED_MARKER,
            "Payload carries the reserved format marker 0xFF.",
        )
    if data_format != SUPPORTED_FORMAT:
        raise DecodeError(
            DecodeErrorKind.UNSUPPORTED_FORMAT,
            f"Data format {data_format} is not supported; expected {SUPPORTED_FORMAT}.",
        )
    if len(payload) < PAYLOAD_LENGTH:
        raise DecodeError(
            DecodeErrorKind.TRUNCATED_PAYLOAD,
            f"Payload has {len(payload)} bytes; format {SUPPORTED_FORMAT} needs {PAYLOAD_LENGTH}.",
        )

    (
        _,
        temperature_raw,
        humidity_raw,
        pressure_raw,
        acc_x_raw,
        acc_y_raw,
        acc_z_raw,
        power_raw,
        movement_raw,
        sequence_raw,
        mac_raw,
    ) = _LAYOUT.unpack_from(payload)

    battery_raw = power_raw >> 5
    tx_power_raw = power_raw & 0x1F
    embedded_mac = None if mac_raw == _MAC_NA else format_address(mac_raw)

    if address is not None:
        device_id = format_address(parse_address(address))
    elif embedded_mac is not None:
        device_id = embedded_mac
    else:
        raise DecodeError(
            DecodeErrorKind.RESERVED_MARKER,
            "Payload MAC is the not-available marker and no radio address was given.",
        )

    reading = SensorReading(
        device_id=device_id,
        timestamp=time.time() if received_at is None else received_at,
        sequence_number=None if sequence_raw == _UNSIGNED_NA else sequence_raw,
        temperature_c=(
            None if temperature_raw == _SIGNED_NA else round(temperature_raw * 0.005, 3)
        ),
        humidity_pct=None if humidity_raw == _UNSIGNED_NA else round(humidity_raw * 0.0025, 4),
        pressure_pa=None if pressure_raw == _UNSIGNED_NA else pressure_raw + 50000,
        acceleration_x_mg=None if acc_x_raw == _SIGNED_NA else acc_x_raw,
        acceleration_y_mg=None if acc_y_raw == _SIGNED_NA else acc_y_raw,
        acceleration_z_mg=None if acc_z_raw == _SIGNED_NA else acc_z_raw,
        battery_mv=None if battery_raw == _BATTERY_NA else battery_raw + 1600,
        tx_power_dbm=None if tx_power_raw == _TX_POWER_NA else tx_power_raw * 2 - 40,
        movement_counter=None if movement_raw == _MOVEMENT_NA else movement_raw,
        mac_address=embedded_mac,
        rssi=rssi,
    )
    validate_sensor_reading(reading)
    return reading


def encode_payload(reading: SensorReading) -> bytes:
    """Build a format 5 payload from a reading; ``None`` fields become their marker."""
    power_raw = (
        (_BATTERY_NA if reading.battery_mv is None else reading.battery_mv - 1600) << 5
    ) | (_TX_POWER_NA if reading.tx_power_dbm is None else (reading.tx_power_dbm + 40) // 2)
    mac = _MAC_NA if reading.mac_address is None else parse_address(reading.mac_address)
    return _LAYOUT.pack(
        SUPPORTED_FORMAT,
        _SIGNED_NA if reading.temperature_c is None else round(reading.temperature_c / 0.005),
        _UNSIGNED_NA if reading.humidity_pct is None else round(reading.humidity_pct / 0.0025),
        _UNSIGNED_NA if reading.pressure_pa is None else reading.pressure_pa - 50000,
        _SIGNED_NA if reading.acceleration_x_mg is None else reading.acceleration_x_mg,
        _SIGNED_NA if reading.acceleration_y_mg is None else reading.acceleration_y_mg,
        _SIGNED_NA if reading.acceleration_z_mg is None else reading.acceleration_z_mg,
        power_raw,
        _MOVEMENT_NA if reading.movement_counter is None else reading.movement_counter,
        _UNSIGNED_NA if reading.sequence_number is None else reading.sequence_number,
        mac,
    )

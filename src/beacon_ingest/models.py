from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

SEQUENCE_MODULUS = 65536
MOVEMENT_MODULUS = 256
ADDRESS_LENGTH = 6


@dataclass(frozen=True)
class RawAdvertisement:
    address: bytes
    manufacturer_id: int
    payload: bytes
    received_monotonic: float
    received_at: float
    rssi: Optional[int] = None


@dataclass(frozen=True)
class SensorReading:
    device_id: str
    timestamp: float
    sequence_number: Optional[int]
    temperature_c: Optional[float] = None
    humidity_pct: Optional[float] = None
    pressure_pa: Optional[int] = None
    acceleration_x_mg: Optional[int] = None
    acceleration_y_mg: Optional[int] = None
    acceleration_z_mg: Optional[int] = None
    battery_mv: Optional[int] = None
    tx_power_dbm: Optional[int] = None
    movement_counter: Optional[int] = None
    mac_address: Optional[str] = None
    rssi: Optional[int] = None
    wraparound: bool = False


@dataclass
class DeviceRecord:
    device_id: str
    address: bytes
    first_seen: float
    last_sequence: Optional[int] = None
    last_seen: Optional[float] = None
    name: Optional[str] = None


@dataclass
class WriteBatch:
    batch_id: int
    opened_at: float
    readings: List[SensorReading] = field(default_factory=list)
    attempts: int = 0

    @property
    def size(self) -> int:
        return len(self.readings)

    def device_ids(self) -> Tuple[str, ...]:
        return tuple(sorted({reading.device_id for reading in self.readings}))


def parse_address(value: object) -> bytes:
    """Normalize a hardware address given as bytes or ``AA:BB:..`` text into 6 bytes."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != ADDRESS_LENGTH:
            raise ValueError(f"Hardware address must be {ADDRESS_LENGTH} bytes; got {len(value)}.")
        return bytes(value)
    if isinstance(value, str):
        compact = value.replace(":", "").replace("-", "").strip()
        if len(compact) != ADDRESS_LENGTH * 2:
            raise ValueError(f"Invalid hardware address: {value!r}.")
        try:
            return bytes.fromhex(compact)
        except ValueError as exc:
            raise ValueError(f"Invalid hardware address: {value!r}.") from exc
    raise ValueError(f"Unsupported hardware address type: {type(value).__name__}.")


def format_address(address: bytes) -> str:
    return ":".join(f"{octet:02X}" for octet in address)


def validate_sensor_reading(reading: SensorReading) -> None:
    if not reading.device_id:
        raise ValueError("Sensor reading device_id must be set.")
    if reading.timestamp < 0:
        raise ValueError("Sensor reading timestamp must be non-negative.")
    if reading.sequence_number is not None:
        if not 0 <= reading.sequence_number < SEQUENCE_MODULUS:
            raise ValueError("Sequence number must be between 0 and 65535.")
    if reading.movement_counter is not None:
        if not 0 <= reading.movement_counter < MOVEMENT_MODULUS:
            raise ValueError("Movement counter must be between 0 and 255.")
    if reading.humidity_pct is not None and reading.humidity_pct < 0:
        raise ValueError("Humidity must be non-negative when provided.")

from __future__ import annotations

import dataclasses
import enum
from typing import Optional, Tuple

from .events import PipelineEvents
from .models import SEQUENCE_MODULUS, SensorReading
from .registry import DeviceRegistry

HALF_SEQUENCE_RANGE = SEQUENCE_MODULUS // 2


class Admission(str, enum.Enum):
    ADMITTED = "admitted"
    DUPLICATE = "duplicate"
    OUT_OF_ORDER = "out_of_order"
    WRAPAROUND = "wraparound"
    UNSEQUENCED = "unsequenced"
    UNKNOWN_DEVICE = "unknown_device"

    @property
    def forwarded(self) -> bool:
        return self in (Admission.ADMITTED, Admission.WRAPAROUND)


def classify(last_sequence: Optional[int], sequence: int) -> Admission:
    """Classify ``sequence`` against the last admitted one for the same device.

    A frame behind the last one by less than half the 16-bit space is a late
    frame; by half or more it means the counter wrapped.
    """
    if last_sequence is None:
        return Admission.ADMITTED
    if sequence == last_sequence:
        return Admission.DUPLICATE
    if sequence > last_sequence:
        return Admission.ADMITTED
    if last_sequence - sequence < HALF_SEQUENCE_RANGE:
        return Admission.OUT_OF_ORDER
    return Admission.WRAPAROUND


class SequenceFilter:
    """Drop duplicate and stale frames per device using the registry's last sequence."""

    def __init__(
        self,
        registry: DeviceRegistry,
        *,
        events: Optional[PipelineEvents] = None,
    ) -> None:
        self._registry = registry
        self._events = events or PipelineEvents()

    def admit(self, reading: SensorReading) -> Admission:
        return self.process(reading)[0]

    def process(self, reading: SensorReading) -> Tuple[Admission, Optional[SensorReading]]:
        """Classify ``reading`` and return it (flagged on wraparound) when admitted."""
        if reading.sequence_number is None:
            self._events.reading_dropped(
                Admission.UNSEQUENCED.value, device_id=reading.device_id
            )
            return Admission.UNSEQUENCED, None

        record = self._registry.get(reading.device_id)
        if record is None:
            if self._registry.resolve(reading.device_id, seen_at=reading.timestamp) is None:
                self._events.reading_dropped(
                    Admission.UNKNOWN_DEVICE.value,
                    device_id=reading.device_id,
                    sequence_number=reading.sequence_number,
                )
                return Admission.UNKNOWN_DEVICE, None
            record = self._registry.get(reading.device_id)

        last_sequence = record.last_sequence
        admission = classify(last_sequence, reading.sequence_number)
        if not admission.forwarded:
            self._events.reading_dropped(
                admission.value,
                device_id=reading.device_id,
                sequence_number=reading.sequence_number,
                detail=f"last admitted {last_sequence}",
            )
            return admission, None

        self._registry.update(reading.device_id, reading.sequence_number, reading.timestamp)
        self._events.reading_admitted()
        if admission is Admission.WRAPAROUND:
            self._events.wraparound(
                reading.device_id, int(last_sequence), reading.sequence_number
            )
            return admission, dataclasses.replace(reading, wraparound=True)
        return admission, reading

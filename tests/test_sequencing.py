from __future__ import annotations

from beacon_ingest.config import RegistryConfig
from beacon_ingest.events import PipelineEvents
from beacon_ingest.models import SensorReading
from beacon_ingest.registry import DeviceRegistry
from beacon_ingest.sequencing import Admission, SequenceFilter, classify

DEVICE = "AA:BB:CC:DD:EE:01"


def _reading(sequence: int | None, device_id: str = DEVICE) -> SensorReading:
    return SensorReading(
        device_id=device_id,
        timestamp=1720000000.0,
        sequence_number=sequence,
        temperature_c=21.5,
    )


def _filter(config: RegistryConfig | None = None) -> tuple[SequenceFilter, PipelineEvents]:
    events = PipelineEvents()
    return SequenceFilter(DeviceRegistry(config), events=events), events


def test_classify_gaps() -> None:
    assert classify(None, 10) is Admission.ADMITTED
    assert classify(10, 11) is Admission.ADMITTED
    assert classify(10, 500) is Admission.ADMITTED
    assert classify(10, 10) is Admission.DUPLICATE
    assert classify(10, 9) is Admission.OUT_OF_ORDER
    assert classify(40000, 7233) is Admission.OUT_OF_ORDER
    assert classify(40000, 7232) is Admission.WRAPAROUND
    assert classify(65535, 0) is Admission.WRAPAROUND


def test_increasing_sequences_are_admitted() -> None:
    sequence_filter, events = _filter()

    admissions = [sequence_filter.admit(_reading(seq)) for seq in (1, 2, 5)]

    assert admissions == [Admission.ADMITTED] * 3
    assert events["reading_admitted"] == 3


def test_duplicate_frame_is_dropped() -> None:
    sequence_filter, events = _filter()

    assert sequence_filter.admit(_reading(100)) is Admission.ADMITTED
    admission, reading = sequence_filter.process(_reading(100))

    assert admission is Admission.DUPLICATE
    assert reading is None
    assert events["reading_dropped.duplicate"] == 1


def test_stale_frame_is_dropped() -> None:
    sequence_filter, events = _filter()

    sequence_filter.admit(_reading(100))
    assert sequence_filter.admit(_reading(99)) is Admission.OUT_OF_ORDER
    assert sequence_filter.admit(_reading(101)) is Admission.ADMITTED
    assert events["reading_dropped.out_of_order"] == 1


def test_wraparound_is_admitted_and_flagged() -> None:
    sequence_filter, events = _filter()

    sequence_filter.admit(_reading(65535))
    admission, reading = sequence_filter.process(_reading(0))

    assert admission is Admission.WRAPAROUND
    assert reading is not None
    assert reading.wraparound is True
    assert reading.sequence_number == 0
    assert events["sequence_wraparound"] == 1
    assert sequence_filter.admit(_reading(1)) is Admission.ADMITTED


def test_devices_are_sequenced_independently() -> None:
    sequence_filter, _ = _filter()

    assert sequence_filter.admit(_reading(50)) is Admission.ADMITTED
    assert sequence_filter.admit(_reading(10, "AA:BB:CC:DD:EE:02")) is Admission.ADMITTED
    assert sequence_filter.admit(_reading(10)) is Admission.OUT_OF_ORDER


def test_reading_without_sequence_is_dropped() -> None:
    sequence_filter, events = _filter()

    assert sequence_filter.admit(_reading(None)) is Admission.UNSEQUENCED
    assert events["reading_dropped.unsequenced"] == 1


def test_reading_from_device_outside_allowlist_is_dropped() -> None:
    sequence_filter, events = _filter(
        RegistryConfig(names={"AA:BB:CC:DD:EE:02": "Sauna"}, allowlist_only=True)
    )

    assert sequence_filter.admit(_reading(1)) is Admission.UNKNOWN_DEVICE
    assert sequence_filter.admit(_reading(1, "AA:BB:CC:DD:EE:02")) is Admission.ADMITTED
    assert events["reading_dropped.unknown_device"] == 1


def test_admitted_reading_updates_registry() -> None:
    registry = DeviceRegistry()
    sequence_filter = SequenceFilter(registry)

    sequence_filter.admit(_reading(7))

    record = registry.get(DEVICE)
    assert record is not None
    assert record.last_sequence == 7
    assert record.last_seen == 1720000000.0

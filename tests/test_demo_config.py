from __future__ import annotations

import importlib.util
from pathlib import Path

from beacon_ingest.ingestion.decoder import decode_payload

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "demo_offline_config.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("demo_offline_config", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_demo_sequences_skip_unavailable_marker() -> None:
    demo = _load_script()

    assert demo.demo_sequences(65533, 4) == [65533, 65534, 0, 1]


def test_demo_advertisements_cross_the_wrap() -> None:
    demo = _load_script()

    entries = demo._advertisements(30, 65520)
    sequences = [
        decode_payload(bytes.fromhex(entry["manufacturer_data"]["0x0499"])).sequence_number
        for entry in entries
    ]

    assert len(entries) == 30 * len(demo.TAGS)
    assert None not in sequences
    assert 65535 not in sequences
    assert 65534 in sequences
    assert 0 in sequences

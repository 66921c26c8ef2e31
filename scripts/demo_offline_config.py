#!/usr/bin/env python3
"""Write a demo config that replays simulated RuuviTag advertisements offline."""

from __future__ import annotations

import argparse
import json
import math
import random
import time

from beacon_ingest.ingestion.decoder import encode_payload
from beacon_ingest.models import SensorReading

TAGS = {
    "F4:A5:74:89:16:57": "Living room",
    "C8:25:2D:8E:9B:11": "Balcony",
}


def demo_sequences(start: int, count: int) -> list[int]:
    """Consecutive 16-bit sequence numbers, skipping the 65535 "not available" marker."""
    sequences: list[int] = []
    value = start % 65536
    while len(sequences) < count:
        if value != 65535:
            sequences.append(value)
        value = (value + 1) % 65536
    return sequences


def _advertisements(samples: int, start_sequence: int) -> list[dict[str, object]]:
    entries: list[dict[str, object]] = []
    now = time.time()
    for step, sequence in enumerate(demo_sequences(start_sequence, samples)):
        for index, address in enumerate(TAGS):
            reading = SensorReading(
                device_id=address,
                timestamp=now + step,
                sequence_number=sequence,
                temperature_c=round(21.0 + index * -15.0 + math.sin(step / 5.0), 2),
                humidity_pct=round(40.0 + random.uniform(-2.0, 2.0), 2),
                pressure_pa=100800 + random.randint(-50, 50),
                acceleration_x_mg=random.randint(-20, 20),
                acceleration_y_mg=random.randint(-20, 20),
                acceleration_z_mg=1000 + random.randint(-20, 20),
                battery_mv=2950,
                tx_power_dbm=4,
                movement_counter=(step // 10) % 256,
                mac_address=address,
            )
            entries.append(
                {
                    "address": address,
                    "rssi": -55 - index * 12,
                    "manufacturer_data": {"0x0499": encode_payload(reading).hex()},
                }
            )
    return entries


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate an offline beacon-ingest config.")
    parser.add_argument("--output", default="demo_config.json")
    parser.add_argument("--database-url", default="sqlite:///demo_readings.db")
    parser.add_argument("--samples", type=int, default=30)
    parser.add_argument(
        "--start-sequence",
        type=int,
        default=65520,
        help="First sequence number; the default crosses the 16-bit wrap (65535 is skipped).",
    )
    args = parser.parse_args()

    backend = "sqlite" if args.database_url.startswith("sqlite:") else "postgres"
    config = {
        "database": {"url": args.database_url, "backend": backend},
        "discovery": {
            "offline_payloads": _advertisements(args.samples, args.start_sequence),
        },
        "registry": {"tags": TAGS},
        "batching": {"max_batch_size": 20, "max_batch_age_seconds": 5.0},
    }
    with open(args.output, "w", encoding="utf-8") as handle:
        json.dump(config, handle, indent=2)
    print(f"Wrote {args.output}; run: beacon-ingest --config {args.output} --offline")


if __name__ == "__main__":
    main()

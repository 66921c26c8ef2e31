from __future__ import annotations

import logging
import time
from typing import Dict, Iterator, Mapping, Optional

from .config import RegistryConfig
from .models import DeviceRecord, format_address, parse_address

LOGGER = logging.getLogger(__name__)


class DeviceRegistry:
    """Map hardware addresses to stable device identities.

    Identities are derived from the address itself (``AA:BB:CC:DD:EE:FF``), so
    they survive restarts. Last-seen sequence state is held in memory only and
    starts empty in every process. Accessed from the sequencing stage alone.
    """

    def __init__(self, config: Optional[RegistryConfig] = None) -> None:
        self._config = config or RegistryConfig()
        self._names: Dict[str, str] = _normalize_names(self._config.names)
        self._records: Dict[str, DeviceRecord] = {}

    def resolve(self, address: object, *, seen_at: Optional[float] = None) -> Optional[str]:
        """Return the device id for ``address``, registering it on first sight.

        Returns ``None`` for addresses outside the allowlist.
        """
        raw_address = parse_address(address)
        device_id = format_address(raw_address)
        record = self._records.get(device_id)
        if record is not None:
            return device_id
        if self._config.allowlist_only and device_id not in self._names:
            return None
        record = DeviceRecord(
            device_id=device_id,
            address=raw_address,
            first_seen=time.time() if seen_at is None else seen_at,
            name=self._names.get(device_id),
        )
        self._records[device_id] = record
        LOGGER.info(
            "device_registered",
            extra={"device_id": device_id, "device_name": record.name},
        )
        return device_id

    def update(self, device_id: str, sequence: int, timestamp: float) -> DeviceRecord:
        record = self._records.get(device_id)
        if record is None:
            raise KeyError(f"Device {device_id} is not registered.")
        record.last_sequence = sequence
        record.last_seen = timestamp
        return record

    def get(self, device_id: str) -> Optional[DeviceRecord]:
        return self._records.get(device_id)

    def name_for(self, device_id: str) -> Optional[str]:
        return self._names.get(device_id)

    def records(self) -> Iterator[DeviceRecord]:
        return iter(list(self._records.values()))

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._records


def _normalize_names(names: Mapping[str, str]) -> Dict[str, str]:
    normalized: Dict[str, str] = {}
    for address, name in names.items():
        normalized[format_address(parse_address(address))] = name
    return normalized

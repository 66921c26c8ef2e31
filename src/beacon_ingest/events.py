from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
import logging
import time
from typing import Dict, List, Optional


class EventKind:
    ADAPTER_FAULT = "adapter_fault"
    ADAPTER_RECOVERED = "adapter_recovered"
    ADVERTISEMENT_DROPPED = "advertisement_dropped"
    READING_DROPPED = "reading_dropped"
    WRAPAROUND = "sequence_wraparound"
    BATCH_FLUSHED = "batch_flushed"
    BATCH_EVICTED = "batch_evicted"
    BATCH_WRITTEN = "batch_written"
    BATCH_FAILED = "batch_failed"


@dataclass(frozen=True)
class AdapterTransition:
    state: str
    reason: Optional[str]
    captured_at: float = field(default_factory=time.time)


class PipelineEvents:
    """Count pipeline anomalies and outcomes and emit them as structured log records.

    Every record is logged with its fields in ``extra`` so a JSON formatter can
    pick them up; counters are kept for ``snapshot()``.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._counters: Counter[str] = Counter()
        self.adapter_transitions: List[AdapterTransition] = []

    def count(self, name: str, amount: int = 1) -> None:
        self._counters[name] += amount

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counters)

    def __getitem__(self, name: str) -> int:
        return self._counters[name]

    def adapter_state(self, state: str, *, reason: Optional[str] = None) -> None:
        self.adapter_transitions.append(AdapterTransition(state=state, reason=reason))
        self._logger.info(
            "adapter_state",
            extra={"adapter_state": state, "reason": reason},
        )

    def adapter_fault(self, reason: str) -> None:
        self.count(EventKind.ADAPTER_FAULT)
        self._logger.warning(
            EventKind.ADAPTER_FAULT,
            extra={"reason": reason, "faults": self._counters[EventKind.ADAPTER_FAULT]},
        )

    def adapter_recovered(self, attempts: int) -> None:
        self.count(EventKind.ADAPTER_RECOVERED)
        self._logger.info(EventKind.ADAPTER_RECOVERED, extra={"attempts": attempts})

    def advertisement_dropped(self, reason: str, amount: int = 1) -> None:
        self.count(f"{EventKind.ADVERTISEMENT_DROPPED}.{reason}", amount)
        self._logger.warning(
            EventKind.ADVERTISEMENT_DROPPED,
            extra={"reason": reason, "count": amount},
        )

    def reading_dropped(
        self,
        reason: str,
        *,
        device_id: Optional[str] = None,
        sequence_number: Optional[int] = None,
        detail: Optional[str] = None,
    ) -> None:
        self.count(f"{EventKind.READING_DROPPED}.{reason}")
        self._logger.info(
            EventKind.READING_DROPPED,
            extra={
                "reason": reason,
                "device_id": device_id,
                "sequence_number": sequence_number,
                "detail": detail,
                "total": self._counters[f"{EventKind.READING_DROPPED}.{reason}"],
            },
        )

    def reading_admitted(self) -> None:
        self.count("reading_admitted")

    def wraparound(self, device_id: str, previous: int, current: int) -> None:
        self.count(EventKind.WRAPAROUND)
        self._logger.info(
            EventKind.WRAPAROUND,
            extra={"device_id": device_id, "previous": previous, "current": current},
        )

    def batch_flushed(self, batch_id: int, size: int, trigger: str) -> None:
        self.count(EventKind.BATCH_FLUSHED)
        self._logger.info(
            EventKind.BATCH_FLUSHED,
            extra={"batch_id": batch_id, "size": size, "trigger": trigger},
        )

    def batch_evicted(self, batch_id: int, readings_lost: int) -> None:
        self.count(EventKind.BATCH_EVICTED)
        self.count("readings_lost", readings_lost)
        self._logger.warning(
            EventKind.BATCH_EVICTED,
            extra={"batch_id": batch_id, "readings_lost": readings_lost},
        )

    def batch_written(self, batch_id: int, rows: int, attempts: int) -> None:
        self.count(EventKind.BATCH_WRITTEN)
        self.count("rows_written", rows)
        self._logger.info(
            EventKind.BATCH_WRITTEN,
            extra={"batch_id": batch_id, "rows": rows, "attempts": attempts},
        )

    def batch_failed(
        self,
        batch_id: int,
        reason: str,
        *,
        retrying: bool,
        readings_lost: int = 0,
    ) -> None:
        self.count(f"{EventKind.BATCH_FAILED}.{'retry' if retrying else 'dropped'}")
        if readings_lost:
            self.count("readings_lost", readings_lost)
        log = self._logger.warning if retrying else self._logger.error
        log(
            EventKind.BATCH_FAILED,
            extra={
                "batch_id": batch_id,
                "reason": reason,
                "retrying": retrying,
                "readings_lost": readings_lost,
            },
        )

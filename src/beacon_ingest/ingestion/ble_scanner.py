from __future__ import annotations

import asyncio
from collections import deque
import enum
import logging
import time
from types import SimpleNamespace
from typing import (
    Awaitable,
    Callable,
    Deque,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from ..backoff import ExponentialBackoff
from ..channel import Channel, ChannelClosed
from ..config import ConfigError, DiscoveryConfig
from ..events import PipelineEvents
from ..models import RawAdvertisement, parse_address

LOGGER = logging.getLogger(__name__)

DetectionCallback = Callable[[object, object], None]


class AdapterState(str, enum.Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    FAULTED = "faulted"
    RECOVERING = "recovering"
    STOPPED = "stopped"


class AdapterFault(RuntimeError):
    """Raised when the adapter could not be recovered within the configured ceiling."""


class BleakScannerAdapterError(ConfigError):
    """Raised for invalid offline advertisement payloads."""


class ScannerHandle(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...


ScannerFactory = Callable[[DetectionCallback], ScannerHandle]


class OfflineScanner:
    """Replay configured advertisements through the detection callback."""

    def __init__(
        self,
        payloads: Sequence[Tuple[object, object]],
        callback: DetectionCallback,
        on_complete: Optional[Callable[[], None]] = None,
    ) -> None:
        self._payloads = payloads
        self._callback = callback
        self._on_complete = on_complete

    async def start(self) -> None:
        for device, advertisement in self._payloads:
            self._callback(device, advertisement)
            await asyncio.sleep(0)
        if self._on_complete is not None:
            self._on_complete()

    async def stop(self) -> None:
        return None


class BleDiscoveryController:
    """Own the BLE adapter, forward vendor advertisements and recover from faults.

    States: idle -> scanning -> faulted -> recovering -> scanning, until
    ``stop()``. Advertisements land in a bounded radio buffer from the scanner
    callback and are forwarded to ``output`` by a separate task, so a full
    channel pauses forwarding without blocking the radio stack.
    """

    def __init__(
        self,
        config: DiscoveryConfig,
        output: Channel[RawAdvertisement],
        *,
        events: Optional[PipelineEvents] = None,
        scanner_factory: Optional[ScannerFactory] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._output = output
        self._events = events or PipelineEvents()
        self._scanner_factory = scanner_factory or self._default_scanner_factory
        self._sleep = sleep
        self._clock = clock
        self._backoff = ExponentialBackoff(config.backoff)
        self._state = AdapterState.IDLE
        self._radio: Deque[RawAdvertisement] = deque()
        self._radio_ready = asyncio.Event()
        self._stop_event = asyncio.Event()
        self._fault_event = asyncio.Event()
        self._fault_reason: Optional[str] = None
        self._last_payloads: Dict[bytes, bytes] = {}
        self._last_detection = clock()
        self._offline_payloads: Sequence[Tuple[object, object]] = ()
        if config.offline:
            self._offline_payloads = normalize_offline_payloads(config.offline_payloads)
        self.forwarded = 0

    @property
    def state(self) -> AdapterState:
        return self._state

    def stop(self) -> None:
        """Request shutdown; the output channel is closed once the radio buffer drains."""
        self._stop_event.set()
        self._radio_ready.set()

    def report_fault(self, reason: str) -> None:
        """Signal an adapter-level fault (power loss, stack error, device removal)."""
        if self._state is not AdapterState.SCANNING:
            return
        self._fault_reason = reason
        self._fault_event.set()

    def handle_detection(self, device: object, advertisement: object) -> None:
        """Scanner callback: filter by manufacturer id and queue the advertisement."""
        now = self._clock()
        self._last_detection = now
        if self._stop_event.is_set():
            return

        address = _resolve_address(device)
        manufacturer_data = _extract_manufacturer_data(device, advertisement)
        if address is None or manufacturer_data is None:
            self._events.count("advertisement_malformed")
            return
        if self._config.manufacturer_id not in manufacturer_data:
            return
        payload = _coerce_bytes(manufacturer_data[self._config.manufacturer_id])
        if payload is None:
            self._events.count("advertisement_malformed")
            return
        if self._last_payloads.get(address) == payload:
            self._events.count("advertisement_repeated")
            return
        self._last_payloads[address] = payload

        if len(self._radio) >= self._config.radio_buffer_depth:
            self._radio.popleft()
            self._events.advertisement_dropped("radio_buffer_full")
        self._radio.append(
            RawAdvertisement(
                address=address,
                manufacturer_id=self._config.manufacturer_id,
                payload=payload,
                received_monotonic=now,
                received_at=time.time(),
                rssi=_resolve_rssi(device, advertisement),
            )
        )
        self._radio_ready.set()

    async def run(self) -> None:
        """Scan until ``stop()``; raise AdapterFault when recovery is exhausted."""
        forwarder = asyncio.create_task(self._forward(), name="beacon-ingest-forwarder")
        try:
            await self._scan_loop()
        finally:
            self.stop()
            await forwarder
            self._set_state(AdapterState.STOPPED)

    async def _scan_loop(self) -> None:
        failed_attempts = 0
        while not self._stop_event.is_set():
            reason: Optional[str]
            scanner: Optional[ScannerHandle] = None
            try:
                scanner = self._scanner_factory(self.handle_detection)
                await scanner.start()
            except Exception as exc:  # adapter failures surface with many bleak/D-Bus types
                reason = f"adapter acquisition failed: {exc}"
                await self._release(scanner)
            else:
                if failed_attempts:
                    self._events.adapter_recovered(failed_attempts)
                failed_attempts = 0
                self._backoff.reset()
                self._fault_event.clear()
                self._fault_reason = None
                self._last_detection = self._clock()
                self._set_state(AdapterState.SCANNING)
                reason = await self._wait_for_fault()
                await self._release(scanner)
                if reason is None:
                    return

            self._fault_reason = reason
            if self._state is not AdapterState.RECOVERING:
                self._set_state(AdapterState.FAULTED)
                self._events.adapter_fault(reason)
            else:
                LOGGER.debug("adapter_recovery_failed", extra={"reason": reason})
            failed_attempts += 1
            ceiling = self._config.max_recovery_attempts
            if ceiling is not None and failed_attempts > ceiling:
                raise AdapterFault(
                    f"Adapter recovery failed after {ceiling} attempts: {reason}"
                )
            self._set_state(AdapterState.RECOVERING)
            delay = self._backoff.next_delay()
            if await self._wait_stop(delay):
                return

    async def _wait_for_fault(self) -> Optional[str]:
        """Block while scanning; return the fault reason, or None on shutdown."""
        watchdog = self._config.watchdog_seconds
        if self._config.offline:
            watchdog = None
        while True:
            if self._stop_event.is_set():
                return None
            if self._fault_event.is_set():
                return self._fault_reason or "adapter fault reported"
            timeout = None
            if watchdog is not None:
                silent_for = self._clock() - self._last_detection
                if silent_for >= watchdog:
                    return f"no advertisements for {silent_for:.0f}s"
                timeout = watchdog - silent_for
            await self._wait_any(timeout)

    async def _wait_any(self, timeout: Optional[float]) -> None:
        waiters = [
            asyncio.create_task(self._stop_event.wait()),
            asyncio.create_task(self._fault_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def _wait_stop(self, delay: float) -> bool:
        """Sleep ``delay`` seconds unless stopped first; True when stopping."""
        waiters = [
            asyncio.create_task(self._sleep(delay)),
            asyncio.create_task(self._stop_event.wait()),
        ]
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        return self._stop_event.is_set()

    async def _release(self, scanner: Optional[ScannerHandle]) -> None:
        if scanner is None:
            return
        try:
            await scanner.stop()
        except Exception as exc:  # releasing a dead adapter is expected to fail
            LOGGER.debug("adapter_release_failed", extra={"error": str(exc)})

    async def _forward(self) -> None:
        try:
            while True:
                while not self._radio:
                    if self._stop_event.is_set():
                        return
                    self._radio_ready.clear()
                    await self._radio_ready.wait()
                advertisement = self._radio.popleft()
                await self._output.send(advertisement)
                self.forwarded += 1
        except ChannelClosed:
            if self._radio:
                self._events.advertisement_dropped("channel_closed", len(self._radio))
                self._radio.clear()
        finally:
            self._output.close()

    def _set_state(self, state: AdapterState) -> None:
        if state is self._state:
            return
        self._state = state
        self._events.adapter_state(state.value, reason=self._fault_reason)

    def _default_scanner_factory(self, callback: DetectionCallback) -> ScannerHandle:
        if self._config.offline:
            return OfflineScanner(self._offline_payloads, callback, on_complete=self.stop)

        from bleak import BleakScanner

        kwargs: Dict[str, object] = {}
        if self._config.adapter_name:
            kwargs["adapter"] = self._config.adapter_name
        return BleakScanner(detection_callback=callback, **kwargs)


def normalize_offline_payloads(
    payloads: Iterable[Mapping[str, object]],
) -> List[Tuple[object, object]]:
    """Turn configured offline payloads into ``(device, advertisement)`` pairs.

    Each payload needs ``address`` and ``manufacturer_data`` (company id ->
    hex string, bytes or list of ints); ``rssi`` is optional.
    """
    normalized: List[Tuple[object, object]] = []
    for idx, item in enumerate(payloads):
        if not isinstance(item, Mapping):
            raise BleakScannerAdapterError(f"Offline BLE payload #{idx} must be a mapping.")
        address = _optional_str(item.get("address"))
        if not address:
            raise BleakScannerAdapterError(f"Offline BLE payload #{idx} must include address.")
        raw_data = item.get("manufacturer_data")
        if not isinstance(raw_data, Mapping):
            raise BleakScannerAdapterError(
                f"Offline BLE payload #{idx} manufacturer_data must be a mapping."
            )
        manufacturer_data: Dict[int, bytes] = {}
        for company_id, data in raw_data.items():
            company_int = _coerce_int(company_id)
            data_bytes = _coerce_hex_or_bytes(data)
            if company_int is None or data_bytes is None:
                raise BleakScannerAdapterError(
                    f"Offline BLE payload #{idx} has invalid manufacturer entry {company_id!r}."
                )
            manufacturer_data[company_int] = data_bytes
        device = SimpleNamespace(address=address, name=item.get("name"))
        advertisement = SimpleNamespace(
            manufacturer_data=manufacturer_data,
            rssi=item.get("rssi"),
        )
        normalized.append((device, advertisement))
    return normalized


def _optional_str(value: object) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def _resolve_address(device: object) -> Optional[bytes]:
    address = _optional_str(getattr(device, "address", None))
    if address is None:
        return None
    try:
        return parse_address(address)
    except ValueError:
        return None


def _resolve_rssi(device: object, advertisement: object) -> Optional[int]:
    for candidate in (
        getattr(advertisement, "rssi", None),
        getattr(device, "rssi", None),
    ):
        if candidate is None:
            continue
        try:
            return int(candidate)
        except (TypeError, ValueError):
            continue
    return None


def _extract_manufacturer_data(
    device: object, advertisement: object
) -> Optional[Mapping[object, object]]:
    data = getattr(advertisement, "manufacturer_data", None)
    if isinstance(data, Mapping):
        return data
    metadata = getattr(device, "metadata", None)
    if isinstance(metadata, Mapping) and isinstance(metadata.get("manufacturer_data"), Mapping):
        return metadata["manufacturer_data"]
    return None


def _coerce_int(value: object) -> Optional[int]:
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _coerce_bytes(value: object) -> Optional[bytes]:
    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    if isinstance(value, Iterable) and not isinstance(value, (str, bytes, bytearray)):
        try:
            return bytes(int(item) for item in value)
        except (TypeError, ValueError):
            return None
    return None


def _coerce_hex_or_bytes(value: object) -> Optional[bytes]:
    if isinstance(value, str):
        try:
            return bytes.fromhex(value)
        except ValueError:
            return None
    return _coerce_bytes(value)

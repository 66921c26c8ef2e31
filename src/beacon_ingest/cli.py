from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
from pathlib import Path
import signal
from typing import Dict, Mapping, Optional, Sequence

from .config import (
    BackoffConfig,
    BatchingConfig,
    ConfigError,
    DatabaseConfig,
    DiscoveryConfig,
    IngestConfig,
    RUUVI_MANUFACTURER_ID,
    RegistryConfig,
)
from .ingestion.ble_scanner import AdapterFault
from .models import format_address, parse_address
from .pipeline import IngestPipeline

LOGGER = logging.getLogger(__name__)

_RECORD_FIELDS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class _ExtraFormatter(logging.Formatter):
    """Append ``extra`` fields as ``key=value`` pairs after the message."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {
            key: value for key, value in vars(record).items() if key not in _RECORD_FIELDS
        }
        if not extras:
            return line
        return line + " " + " ".join(f"{key}={value}" for key, value in sorted(extras.items()))


def _load_config(path: Path) -> dict:
    try:
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config {path} is not valid JSON: {exc}") from exc


def _require_mapping(value: object, label: str) -> Mapping[str, object]:
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label} must be an object.")
    return value


def _require_sequence(value: object, label: str) -> Sequence[object]:
    if not isinstance(value, Sequence) or isinstance(value, (str, bytes)):
        raise ConfigError(f"{label} must be a list.")
    return value


def _require_float(value: object, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{label} must be numeric.")


def _optional_float(value: object, label: str) -> Optional[float]:
    if value is None:
        return None
    return _require_float(value, label)


def _require_positive_int(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an integer.")
    try:
        number = int(value, 0) if isinstance(value, str) else int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{label} must be an integer.")
    if number <= 0:
        raise ConfigError(f"{label} must be positive.")
    return number


def _optional_str(value: object) -> Optional[str]:
    if isinstance(value, str) and value:
        return value
    return None


def _require_non_empty(value: object, label: str) -> str:
    if value is None:
        raise ConfigError(f"{label} is required.")
    if isinstance(value, str):
        if not value.strip():
            raise ConfigError(f"{label} is required.")
        return value
    return str(value)


def parse_tag_list(value: str) -> Dict[str, str]:
    """Parse ``"AA:BB:CC:DD:EE:FF=Kitchen,11:22:33:44:55:66=Sauna"``."""
    tags: Dict[str, str] = {}
    for pair in value.split(","):
        pair = pair.strip()
        if not pair:
            continue
        address, separator, name = pair.partition("=")
        if not separator or not address.strip() or not name.strip():
            raise ConfigError(f"Invalid tag entry {pair!r}; expected MAC=Name.")
        tags[_normalize_address(address.strip(), "RUUVI_TAGS")] = name.strip()
    return tags


def _legacy_tags(environ: Mapping[str, str]) -> Dict[str, str]:
    tags: Dict[str, str] = {}
    for key, address in environ.items():
        if not (key.startswith("RUUVI_TAG_") and key.endswith("_MAC")):
            continue
        index = key[len("RUUVI_TAG_"):-len("_MAC")]
        name = environ.get(f"RUUVI_TAG_{index}_NAME")
        if name:
            tags[_normalize_address(address, key)] = name
    return tags


def _normalize_address(value: object, label: str) -> str:
    try:
        return format_address(parse_address(value))
    except ValueError as exc:
        raise ConfigError(f"{label}: {exc}") from exc


def _parse_backoff(payload: Mapping[str, object], label: str) -> BackoffConfig:
    backoff = BackoffConfig(
        initial_seconds=_require_float(payload.get("initial_seconds", 1.0), f"{label}.initial_seconds"),
        multiplier=_require_float(payload.get("multiplier", 2.0), f"{label}.multiplier"),
        max_seconds=_require_float(payload.get("max_seconds", 30.0), f"{label}.max_seconds"),
    )
    if backoff.initial_seconds <= 0 or backoff.multiplier < 1 or backoff.max_seconds < backoff.initial_seconds:
        raise ConfigError(f"{label} must satisfy 0 < initial_seconds <= max_seconds and multiplier >= 1.")
    return backoff


def _parse_database_config(
    payload: Mapping[str, object], environ: Mapping[str, str]
) -> DatabaseConfig:
    url = environ.get("DATABASE_URL") or payload.get("url")
    backend = str(payload.get("backend", "postgres"))
    if backend not in {"postgres", "sqlite"}:
        raise ConfigError(f"Unsupported database backend: {backend}")
    return DatabaseConfig(
        url=_require_non_empty(url, "database.url (or DATABASE_URL)"),
        backend=backend,
        table=str(payload.get("table", "sensor_readings")),
        sslrootcert=_optional_str(payload.get("sslrootcert")),
        verify_certificate=bool(payload.get("verify_certificate", True)),
        allow_insecure=bool(payload.get("allow_insecure", False)),
        connect_timeout_seconds=_require_float(
            payload.get("connect_timeout_seconds", 10.0), "database.connect_timeout_seconds"
        ),
        create_schema=bool(payload.get("create_schema", backend == "sqlite")),
        backoff=_parse_backoff(
            _require_mapping(payload.get("backoff", {}), "database.backoff"), "database.backoff"
        ),
    )


def _parse_discovery_config(payload: Mapping[str, object], offline: bool) -> DiscoveryConfig:
    offline_payloads = _require_sequence(
        payload.get("offline_payloads", []), "discovery.offline_payloads"
    )
    normalized_offline_payloads = tuple(
        _require_mapping(item, f"discovery.offline_payloads[{idx}]")
        for idx, item in enumerate(offline_payloads)
    )
    max_recovery_attempts = payload.get("max_recovery_attempts")
    return DiscoveryConfig(
        adapter_name=_optional_str(payload.get("adapter_name")),
        manufacturer_id=_require_positive_int(
            payload.get("manufacturer_id", RUUVI_MANUFACTURER_ID), "discovery.manufacturer_id"
        ),
        channel_depth=_require_positive_int(
            payload.get("channel_depth", 256), "discovery.channel_depth"
        ),
        radio_buffer_depth=_require_positive_int(
            payload.get("radio_buffer_depth", 1024), "discovery.radio_buffer_depth"
        ),
        watchdog_seconds=_optional_float(
            payload.get("watchdog_seconds", 60.0), "discovery.watchdog_seconds"
        ),
        max_recovery_attempts=(
            None
            if max_recovery_attempts is None
            else _require_positive_int(max_recovery_attempts, "discovery.max_recovery_attempts")
        ),
        offline=offline or bool(payload.get("offline", False)),
        offline_payloads=normalized_offline_payloads,
        backoff=_parse_backoff(
            _require_mapping(payload.get("backoff", {}), "discovery.backoff"), "discovery.backoff"
        ),
    )


def _parse_registry_config(
    payload: Mapping[str, object], environ: Mapping[str, str]
) -> RegistryConfig:
    tag_payload = _require_mapping(payload.get("tags", {}), "registry.tags")
    names = {
        _normalize_address(address, "registry.tags"): _require_non_empty(name, f"registry.tags[{address}]")
        for address, name in tag_payload.items()
    }
    allowlist_only = bool(payload.get("allowlist_only", False))
    env_tags = environ.get("RUUVI_TAGS")
    if env_tags is not None:
        names.update(parse_tag_list(env_tags))
        allowlist_only = True
    else:
        legacy = _legacy_tags(environ)
        if legacy:
            names.update(legacy)
            allowlist_only = True
    if allowlist_only and not names:
        raise ConfigError("registry.allowlist_only is set but no tags are configured.")
    return RegistryConfig(names=names, allowlist_only=allowlist_only)


def _parse_batching_config(payload: Mapping[str, object]) -> BatchingConfig:
    return BatchingConfig(
        max_batch_size=_require_positive_int(
            payload.get("max_batch_size", 100), "batching.max_batch_size"
        ),
        max_batch_age_seconds=_require_float(
            payload.get("max_batch_age_seconds", 10.0), "batching.max_batch_age_seconds"
        ),
        max_pending_batches=_require_positive_int(
            payload.get("max_pending_batches", 32), "batching.max_pending_batches"
        ),
    )


def build_config(
    payload: Mapping[str, object],
    environ: Optional[Mapping[str, str]] = None,
    *,
    offline: bool = False,
) -> IngestConfig:
    """Build an IngestConfig from a parsed JSON document plus environment overrides.

    ``DATABASE_URL`` replaces ``database.url``; ``RUUVI_TAGS`` (or the legacy
    ``RUUVI_TAG_<N>_MAC``/``RUUVI_TAG_<N>_NAME`` pairs) adds named tags and
    restricts ingestion to them.
    """
    environ = os.environ if environ is None else environ
    config_map = _require_mapping(payload, "config")
    batching = _parse_batching_config(
        _require_mapping(config_map.get("batching", {}), "batching")
    )
    if batching.max_batch_age_seconds <= 0:
        raise ConfigError("batching.max_batch_age_seconds must be positive.")
    return IngestConfig(
        database=_parse_database_config(
            _require_mapping(config_map.get("database", {}), "database"), environ
        ),
        discovery=_parse_discovery_config(
            _require_mapping(config_map.get("discovery", {}), "discovery"), offline
        ),
        registry=_parse_registry_config(
            _require_mapping(config_map.get("registry", {}), "registry"), environ
        ),
        batching=batching,
    )


def _configure_logging(level: str) -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(_ExtraFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[handler],
    )


async def _run(config: IngestConfig) -> Dict[str, int]:
    pipeline = IngestPipeline(config)
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, pipeline.stop)
        except (NotImplementedError, RuntimeError):
            LOGGER.debug("signal_handler_unavailable", extra={"signal": int(signum)})
    await pipeline.run()
    return pipeline.events.snapshot()


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Ingest RuuviTag BLE advertisements into a relational database."
    )
    parser.add_argument(
        "--config",
        help="Path to a JSON configuration file (DATABASE_URL/RUUVI_TAGS may replace it).",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Replay discovery.offline_payloads instead of scanning, then exit.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default: INFO).",
    )
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)

    try:
        payload = _load_config(Path(args.config)) if args.config else {}
        config = build_config(payload, offline=args.offline)
        counters = asyncio.run(_run(config))
    except ConfigError as exc:
        LOGGER.error("config_invalid", extra={"error": str(exc)})
        return 2
    except AdapterFault as exc:
        LOGGER.error("adapter_unrecoverable", extra={"error": str(exc)})
        return 1
    except KeyboardInterrupt:
        return 0

    LOGGER.info("ingest_finished", extra={"rows_written": counters.get("rows_written", 0)})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import json

import pytest

from beacon_ingest import cli
from beacon_ingest.config import ConfigError, RUUVI_MANUFACTURER_ID

VALID_HEX = "0512FC5394C37C0004FFFC040CAC364200CDCBB8334C884F"


def test_build_config_applies_defaults() -> None:
    config = cli.build_config({"database": {"url": "postgresql://ingest@db.example.com/sensors"}}, {})

    assert config.database.backend == "postgres"
    assert config.database.create_schema is False
    assert config.discovery.manufacturer_id == RUUVI_MANUFACTURER_ID
    assert config.discovery.watchdog_seconds == 60.0
    assert config.batching.max_batch_size == 100
    assert config.registry.allowlist_only is False


def test_build_config_parses_sections() -> None:
    payload = {
        "database": {
            "url": "sqlite:///readings.db",
            "backend": "sqlite",
            "backoff": {"initial_seconds": 0.5, "max_seconds": 8},
        },
        "discovery": {
            "adapter_name": "hci1",
            "manufacturer_id": "0x0499",
            "max_recovery_attempts": 5,
            "watchdog_seconds": None,
        },
        "registry": {"tags": {"aa:bb:cc:dd:ee:ff": "Kitchen"}, "allowlist_only": True},
        "batching": {"max_batch_size": 10, "max_batch_age_seconds": 2.5, "max_pending_batches": 4},
    }

    config = cli.build_config(payload, {})

    assert config.database.create_schema is True
    assert config.database.backoff.initial_seconds == 0.5
    assert config.database.backoff.max_seconds == 8.0
    assert config.discovery.adapter_name == "hci1"
    assert config.discovery.manufacturer_id == 0x0499
    assert config.discovery.max_recovery_attempts == 5
    assert config.discovery.watchdog_seconds is None
    assert config.registry.names == {"AA:BB:CC:DD:EE:FF": "Kitchen"}
    assert config.registry.allowlist_only is True
    assert config.batching.max_pending_batches == 4


def test_database_url_from_environment_wins() -> None:
    config = cli.build_config(
        {"database": {"url": "postgresql://localhost/dev"}},
        {"DATABASE_URL": "postgresql://ingest@prod/sensors?sslrootcert=/etc/ca.pem"},
    )

    assert config.database.url == "postgresql://ingest@prod/sensors?sslrootcert=/etc/ca.pem"


def test_ruuvi_tags_environment_restricts_ingestion() -> None:
    config = cli.build_config(
        {},
        {
            "DATABASE_URL": "postgresql://db/sensors",
            "RUUVI_TAGS": "aa:bb:cc:dd:ee:01=Kitchen, AA:BB:CC:DD:EE:02=Sauna,",
        },
    )

    assert config.registry.names == {
        "AA:BB:CC:DD:EE:01": "Kitchen",
        "AA:BB:CC:DD:EE:02": "Sauna",
    }
    assert config.registry.allowlist_only is True


def test_legacy_tag_variables_are_read() -> None:
    config = cli.build_config(
        {},
        {
            "DATABASE_URL": "postgresql://db/sensors",
            "RUUVI_TAG_1_MAC": "AA:BB:CC:DD:EE:01",
            "RUUVI_TAG_1_NAME": "Garage",
            "RUUVI_TAG_2_MAC": "AA:BB:CC:DD:EE:02",
        },
    )

    assert config.registry.names == {"AA:BB:CC:DD:EE:01": "Garage"}


def test_missing_database_url_is_a_config_error() -> None:
    with pytest.raises(ConfigError, match="database.url"):
        cli.build_config({}, {})


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"batching": {"max_batch_size": 0}}, "max_batch_size must be positive"),
        ({"batching": {"max_batch_age_seconds": "soon"}}, "must be numeric"),
        ({"discovery": {"offline_payloads": {}}}, "must be a list"),
        ({"registry": {"tags": {"nope": "Kitchen"}}}, "registry.tags"),
        ({"database": {"backend": "mysql"}}, "Unsupported database backend"),
        ({"database": {"backoff": {"initial_seconds": 0}}}, "database.backoff"),
    ],
)
def test_invalid_sections_are_rejected(payload: dict, message: str) -> None:
    payload = {**payload}
    payload.setdefault("database", {})
    environ = {"DATABASE_URL": "postgresql://db/sensors"}

    with pytest.raises(ConfigError, match=message):
        cli.build_config(payload, environ)


def test_parse_tag_list_rejects_malformed_pairs() -> None:
    with pytest.raises(ConfigError, match="expected MAC=Name"):
        cli.parse_tag_list("AA:BB:CC:DD:EE:01")


def test_main_returns_2_on_invalid_config(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("RUUVI_TAGS", raising=False)
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"batching": {"max_batch_size": -1}}), encoding="utf-8")

    assert cli.main(["--config", str(config_path), "--log-level", "CRITICAL"]) == 2


def test_main_returns_2_on_missing_config_file(tmp_path) -> None:
    assert cli.main(["--config", str(tmp_path / "missing.json"), "--log-level", "CRITICAL"]) == 2


def test_main_offline_run_writes_to_sqlite(tmp_path, monkeypatch) -> None:
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("RUUVI_TAGS", raising=False)
    db_path = tmp_path / "readings.db"
    config_path = tmp_path / "config.json"
    config_path.write_text(
        json.dumps(
            {
                "database": {"url": f"sqlite:///{db_path}", "backend": "sqlite"},
                "discovery": {
                    "offline_payloads": [
                        {
                            "address": "AA:BB:CC:DD:EE:01",
                            "manufacturer_data": {"0x0499": VALID_HEX},
                        }
                    ]
                },
            }
        ),
        encoding="utf-8",
    )

    exit_code = cli.main(["--config", str(config_path), "--offline", "--log-level", "CRITICAL"])

    assert exit_code == 0
    assert db_path.exists()

import json
import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from evogate.config.defaults import QR_TTL_MAX_SECONDS, QR_TTL_MIN_SECONDS
from evogate.config.loader import (
    _migrate_config,
    convert_keys,
    convert_to_camel,
    get_config_path,
    load_config,
    save_config,
)
from evogate.config.schema import Config
from evogate.utils.helpers import get_logs_path


def test_defaults() -> None:
    config = Config()
    assert config.gateway.port == 10000
    assert config.gateway.base_url == "http://127.0.0.1:10000"
    assert config.instances.qr_ttl_seconds == 60
    assert config.instances.logged_out_policy == "delete"
    assert config.transport.mode == "simulated"
    assert config.transport.reconnect_delay_ms == 5000
    assert config.qr.width == 264
    assert config.api.cors_origins == ["*"]
    assert config.telemetry.backend == "memory"


def test_config_path_honours_evogate_home(evogate_home: Path) -> None:
    assert get_config_path() == evogate_home / "config.json"
    assert get_logs_path() == evogate_home / "var" / "logs"


def test_save_and_load_roundtrip_camel_case(evogate_home: Path) -> None:
    config = Config()
    config.instances.qr_ttl_seconds = 45
    config.instances.logged_out_policy = "mark"
    config.transport.mode = "bridge"
    config.transport.bridge_token = "secret"
    save_config(config)

    path = get_config_path()
    raw = json.loads(path.read_text())
    assert raw["instances"]["qrTtlSeconds"] == 45
    assert raw["instances"]["loggedOutPolicy"] == "mark"
    assert raw["transport"]["bridgeToken"] == "secret"
    assert oct(os.stat(path).st_mode & 0o777) == "0o600"

    loaded = load_config()
    assert loaded.instances.qr_ttl_seconds == 45
    assert loaded.instances.logged_out_policy == "mark"
    assert loaded.transport.mode == "bridge"
    assert loaded.transport.bridge_token == "secret"


def test_load_fills_missing_sections(tmp_path: Path) -> None:
    path = tmp_path / "partial.json"
    path.write_text(json.dumps({"gateway": {"port": 8081}}))

    loaded = load_config(path)
    assert loaded.gateway.port == 8081
    assert loaded.gateway.host == "0.0.0.0"
    assert loaded.instances.qr_ttl_seconds == 60


def test_invalid_file_falls_back_to_defaults(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    assert load_config(path).gateway.port == 10000

    path.write_text(json.dumps({"instances": {"qrTtlSeconds": 5}}))
    assert load_config(path).instances.qr_ttl_seconds == 60

    path.write_text(json.dumps(["not", "an", "object"]))
    assert load_config(path).transport.mode == "simulated"


@pytest.mark.parametrize("ttl", [QR_TTL_MIN_SECONDS - 1, QR_TTL_MAX_SECONDS + 1])
def test_qr_ttl_bounds(ttl: int) -> None:
    with pytest.raises(ValidationError):
        Config.model_validate(convert_keys({"instances": {"qrTtlSeconds": ttl}}))


def test_unknown_transport_mode_is_rejected() -> None:
    with pytest.raises(ValidationError):
        Config.model_validate(convert_keys({"transport": {"mode": "carrier-pigeon"}}))


def test_legacy_qr_timeout_migrates_to_seconds() -> None:
    migrated = _migrate_config({"qrTimeout": 90000, "gateway": {"port": 3000}})
    assert "qrTimeout" not in migrated
    assert migrated["instances"]["qrTtlSeconds"] == 90
    assert migrated["gateway"]["port"] == 3000
    assert migrated["configVersion"] == 1


def test_env_overrides_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"gateway": {"port": 8081}, "transport": {"mode": "simulated"}}))
    monkeypatch.setenv("EVOGATE_TRANSPORT__MODE", "bridge")
    monkeypatch.setenv("EVOGATE_GATEWAY__PORT", "9000")

    loaded = load_config(path)
    assert loaded.transport.mode == "bridge"
    assert loaded.gateway.port == 9000
    assert loaded.gateway.host == "0.0.0.0"


def test_camel_roundtrip_keeps_nested_values() -> None:
    dumped = convert_to_camel(Config().model_dump())
    assert dumped["transport"]["reconnectDelayMs"] == 5000
    assert dumped["logging"]["fileEnabled"] is False
    assert convert_keys(dumped)["transport"]["reconnect_delay_ms"] == 5000

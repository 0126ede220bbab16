"""Centralized opinionated defaults for generated/migrated config files."""

from __future__ import annotations

from copy import deepcopy
from typing import Any

DEFAULT_GATEWAY: dict[str, Any] = {
    "host": "0.0.0.0",
    "port": 10000,
    "banner": "Evolution API",
}

DEFAULT_INSTANCES: dict[str, Any] = {
    "qr_ttl_seconds": 60,
    "logged_out_policy": "delete",
    "sweep_interval_seconds": 0,
}

DEFAULT_QR: dict[str, Any] = {
    "width": 264,
    "margin": 4,
    "dark": "#000000",
    "light": "#ffffff",
}

DEFAULT_TRANSPORT: dict[str, Any] = {
    "mode": "simulated",
    "reconnect_delay_ms": 5000,
    "qr_wait_timeout_ms": 15000,
    "command_timeout_ms": 20000,
    "auto_connect_ms": 0,
    "bridge_url": "ws://127.0.0.1:3001",
    "bridge_token": "",
    "max_payload_bytes": 262144,
}

DEFAULT_LOGGING: dict[str, Any] = {
    "level": "INFO",
    "file_enabled": False,
    "rotation": "10 MB",
    "retention": "7 days",
}

QR_TTL_MIN_SECONDS = 20
QR_TTL_MAX_SECONDS = 300


def default_sections() -> dict[str, dict[str, Any]]:
    return {
        "gateway": deepcopy(DEFAULT_GATEWAY),
        "instances": deepcopy(DEFAULT_INSTANCES),
        "qr": deepcopy(DEFAULT_QR),
        "transport": deepcopy(DEFAULT_TRANSPORT),
        "logging": deepcopy(DEFAULT_LOGGING),
    }


def apply_missing_defaults(snake_config: dict[str, Any]) -> None:
    """Fill absent keys of a snake_case config payload in place.

    Existing values are never overwritten; malformed sections are replaced.
    """
    for section, defaults in default_sections().items():
        current = snake_config.get(section)
        if not isinstance(current, dict):
            snake_config[section] = defaults
            continue
        for key, value in defaults.items():
            current.setdefault(key, value)

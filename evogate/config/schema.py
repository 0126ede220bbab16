"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from evogate.config.defaults import (
    DEFAULT_GATEWAY,
    DEFAULT_INSTANCES,
    DEFAULT_LOGGING,
    DEFAULT_QR,
    DEFAULT_TRANSPORT,
    QR_TTL_MAX_SECONDS,
    QR_TTL_MIN_SECONDS,
)


class GatewayConfig(BaseModel):
    """HTTP server configuration."""

    model_config = ConfigDict(extra="ignore")

    host: str = str(DEFAULT_GATEWAY["host"])
    port: int = int(DEFAULT_GATEWAY["port"])
    banner: str = str(DEFAULT_GATEWAY["banner"])

    @property
    def base_url(self) -> str:
        host = "127.0.0.1" if self.host in {"0.0.0.0", "::", ""} else self.host
        return f"http://{host}:{self.port}"


class InstancesConfig(BaseModel):
    """Instance lifecycle settings."""

    model_config = ConfigDict(extra="ignore")

    qr_ttl_seconds: int = Field(
        default=int(DEFAULT_INSTANCES["qr_ttl_seconds"]),
        ge=QR_TTL_MIN_SECONDS,
        le=QR_TTL_MAX_SECONDS,
    )
    logged_out_policy: Literal["delete", "mark"] = str(DEFAULT_INSTANCES["logged_out_policy"])
    sweep_interval_seconds: int = Field(default=int(DEFAULT_INSTANCES["sweep_interval_seconds"]), ge=0)


class QrConfig(BaseModel):
    """QR image rendering options."""

    model_config = ConfigDict(extra="ignore")

    width: int = Field(default=int(DEFAULT_QR["width"]), ge=21)
    margin: int = Field(default=int(DEFAULT_QR["margin"]), ge=0)
    dark: str = str(DEFAULT_QR["dark"])
    light: str = str(DEFAULT_QR["light"])


class TransportConfig(BaseModel):
    """Transport selection and bridge connection settings."""

    model_config = ConfigDict(extra="ignore")

    mode: Literal["simulated", "bridge"] = str(DEFAULT_TRANSPORT["mode"])
    reconnect_delay_ms: int = Field(default=int(DEFAULT_TRANSPORT["reconnect_delay_ms"]), ge=0)
    qr_wait_timeout_ms: int = Field(default=int(DEFAULT_TRANSPORT["qr_wait_timeout_ms"]), ge=0)
    command_timeout_ms: int = Field(default=int(DEFAULT_TRANSPORT["command_timeout_ms"]), ge=100)
    auto_connect_ms: int = Field(default=int(DEFAULT_TRANSPORT["auto_connect_ms"]), ge=0)
    bridge_url: str = str(DEFAULT_TRANSPORT["bridge_url"])
    bridge_token: str = str(DEFAULT_TRANSPORT["bridge_token"])
    max_payload_bytes: int = int(DEFAULT_TRANSPORT["max_payload_bytes"])


class ApiConfig(BaseModel):
    """HTTP API surface settings."""

    model_config = ConfigDict(extra="ignore")

    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class TelemetryConfig(BaseModel):
    """Telemetry backend selection."""

    model_config = ConfigDict(extra="ignore")

    backend: Literal["memory", "prometheus"] = "memory"


class LoggingConfig(BaseModel):
    """Log sink configuration."""

    model_config = ConfigDict(extra="ignore")

    level: str = str(DEFAULT_LOGGING["level"])
    file_enabled: bool = bool(DEFAULT_LOGGING["file_enabled"])
    rotation: str = str(DEFAULT_LOGGING["rotation"])
    retention: str = str(DEFAULT_LOGGING["retention"])


class Config(BaseSettings):
    """Root configuration for evogate."""

    model_config = SettingsConfigDict(
        extra="ignore",
        populate_by_name=True,
        env_prefix="EVOGATE_",
        env_nested_delimiter="__",
    )

    config_version: int = 1
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    instances: InstancesConfig = Field(default_factory=InstancesConfig)
    qr: QrConfig = Field(default_factory=QrConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    telemetry: TelemetryConfig = Field(default_factory=TelemetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # EVOGATE_* variables win over values read from config.json.
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @property
    def logs_path(self) -> Path:
        """Directory for rotating log files."""
        from evogate.utils.helpers import get_logs_path

        return get_logs_path()

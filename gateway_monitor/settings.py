"""Configuration management for the gateway monitor."""

from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from gateway_monitor.errors import ConfigError


DEFAULT_CONFIG_PATH = "config/gateway-monitor.yaml"


class GatewaySettings(BaseModel):
    """API gateway connection settings."""
    base_url: str = Field(default="", description="Gateway base URL, e.g. http://10.0.0.5:3043")
    username: str = Field(default="", description="Basic auth username for the token endpoint")
    password: str = Field(default="", description="Basic auth password for the token endpoint")
    token_refresh_skew_seconds: float = Field(default=30.0, ge=0, description="Refresh the token this early")


class NotifierSettings(BaseModel):
    """Where the cycle report is delivered."""
    kind: Literal["telegram", "webhook", "none"] = Field(default="telegram", description="Notification transport")
    telegram_bot_token: str = Field(default="", description="Telegram bot token")
    telegram_chat_id: str = Field(default="", description="Telegram chat ID")
    webhook_url: str = Field(default="", description="Chat webhook send_message URL")
    webhook_token: str = Field(default="", description="Authorization header value for the webhook")
    webhook_number: str = Field(default="", description="Recipient number for the webhook")


class PeriodicSettings(BaseModel):
    """Scheduled full-status digests."""
    enabled: bool = Field(default=True, description="Send periodic digests")
    timezone: str = Field(default="UTC", description="Timezone the cron schedules are evaluated in")
    schedules: list[str] = Field(
        default_factory=lambda: ["0 9,14 * * mon-fri"],
        description="5-field cron expressions (minute hour day month day_of_week)",
    )

    @field_validator("schedules")
    @classmethod
    def _check_cron(cls, value: list[str]) -> list[str]:
        for expr in value:
            if len(str(expr).split()) != 5:
                raise ValueError(f"Invalid cron expression: {expr!r}")
        return value


class ApiSettings(BaseModel):
    """Status API bind address."""
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8080, ge=1, le=65535, description="Bind port")


class MonitorSettings(BaseModel):
    """Main configuration for the gateway monitor."""

    interval_seconds: int = Field(default=60, ge=1, description="Change-driven check interval")
    check_concurrency: int = Field(default=25, ge=1, description="Services checked in parallel")
    request_timeout_seconds: float = Field(default=60.0, gt=0, description="Gateway request timeout")
    database_path: str = Field(default="data/gateway-monitor.db", description="SQLite state database")
    report_host: str = Field(default_factory=socket.gethostname, description="Host named in the report footer")
    log_level: str = Field(default="INFO", description="Logging level")

    gateway: GatewaySettings = Field(default_factory=GatewaySettings)
    notifier: NotifierSettings = Field(default_factory=NotifierSettings)
    periodic: PeriodicSettings = Field(default_factory=PeriodicSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)

    def validate_for_run(self) -> None:
        """Checks that only matter once we actually talk to the gateway and the notifier."""
        if not self.gateway.base_url.strip():
            raise ConfigError("Missing gateway.base_url (or API_GATEWAY_BASE_URL)")
        if self.notifier.kind == "telegram":
            if not self.notifier.telegram_bot_token or not self.notifier.telegram_chat_id:
                raise ConfigError("Missing TELEGRAM_BOT_TOKEN and/or TELEGRAM_CHAT_ID")
        elif self.notifier.kind == "webhook":
            if not self.notifier.webhook_url:
                raise ConfigError("Missing notifier.webhook_url (or CHAT_WEBHOOK_URL)")


# env var -> (section or None, key, converter)
_ENV_OVERRIDES: dict[str, tuple[Optional[str], str, Any]] = {
    "LOG_LEVEL": (None, "log_level", str),
    "SERVER_IP": (None, "report_host", str),
    "MONITOR_DB_PATH": (None, "database_path", str),
    "MONITOR_INTERVAL_SECONDS": (None, "interval_seconds", int),
    "API_GATEWAY_BASE_URL": ("gateway", "base_url", str),
    "API_GATEWAY_USERNAME": ("gateway", "username", str),
    "API_GATEWAY_PASSWORD": ("gateway", "password", str),
    "TELEGRAM_BOT_TOKEN": ("notifier", "telegram_bot_token", str),
    "TELEGRAM_CHAT_ID": ("notifier", "telegram_chat_id", str),
    "CHAT_WEBHOOK_URL": ("notifier", "webhook_url", str),
    "CHAT_WEBHOOK_TOKEN": ("notifier", "webhook_token", str),
    "CHAT_WEBHOOK_NUMBER": ("notifier", "webhook_number", str),
}


def _read_yaml(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError("Config YAML must be a mapping")
    return data


def load_settings(config_path: Optional[str] = None) -> MonitorSettings:
    """Load configuration from file (if it exists) and environment variables."""
    if config_path is None:
        config_path = os.getenv("MONITOR_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}
    path = Path(config_path)
    if path.exists():
        try:
            config_data = _read_yaml(path)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    for env_name, (section, key, convert) in _ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw is None or not raw.strip():
            continue
        try:
            value = convert(raw.strip())
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {env_name}: {raw!r}") from exc
        if section is None:
            config_data[key] = value
            continue
        target = config_data.get(section)
        if not isinstance(target, dict):
            target = {}
            config_data[section] = target
        target[key] = value

    try:
        return MonitorSettings(**config_data)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

"""
Configuration management for TLS Certificate Watch.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

DURATION_PATTERN = r"^(\d+)([smhd])$"


class ConfigurationError(ValueError):
    """Raised when a provider or notifier is missing a required option."""


def parse_duration_seconds(duration: str) -> int:
    """Parse duration string to seconds."""
    match = re.match(DURATION_PATTERN, duration)
    if not match:
        raise ValueError(f"Invalid duration format: {duration}")

    value, unit = match.groups()
    multipliers = {"s": 1, "m": 60, "h": 3600, "d": 86400}

    return int(value) * multipliers[unit]


def _split_list(v: Any) -> List[str]:
    """Accept a YAML list or a comma separated string."""
    if v is None:
        return []
    if isinstance(v, str):
        v = v.split(",")
    return [str(item).strip() for item in v if str(item).strip()]


class _OptionsSpec(BaseModel):
    """Common part of provider and notifier specs."""

    name: str = Field(default="")
    options: Dict[str, Any] = Field(default_factory=dict)

    def require(self, key: str) -> Any:
        """
        Get a required option.

        Raises:
            ConfigurationError: if the option is absent or empty
        """
        value = self.options.get(key)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ConfigurationError(f"{self.describe()}: required option '{key}' is missing")
        return value

    def option(self, key: str, default: Any = None) -> Any:
        return self.options.get(key, default)

    def describe(self) -> str:
        """Name the entry in error messages."""
        return f"entry '{self.name}'" if self.name else "unnamed entry"


class ProviderSpec(_OptionsSpec):
    """Hostname source definition."""

    provider: Literal["aliyun", "file", "west"]
    domains: List[str] = Field(default_factory=list)

    @field_validator("domains", mode="before")
    @classmethod
    def validate_domains(cls, v: Any) -> List[str]:
        """Normalize domains given as a list or a comma separated string."""
        return _split_list(v)

    def describe(self) -> str:
        return f"provider '{self.name or self.provider}'"


class NotifySpec(_OptionsSpec):
    """Notification sink definition."""

    type: Literal["dding", "dingtalk"]

    def describe(self) -> str:
        return f"notifier '{self.name or self.type}'"


class Config(BaseModel):
    """Configuration model for TLS Certificate Watch."""

    # Cadence
    check_interval: str = Field(default="24h")
    notify_interval: str = Field(default="1m")
    warn_days: int = Field(default=30, ge=1, le=3650)

    # Pipeline sizing
    workers: int = Field(default=32, ge=1, le=512)
    queue_size: int = Field(default=100, ge=1)

    # Network timeouts
    tls_timeout: str = Field(default="10s")
    http_timeout: str = Field(default="5s")

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = None

    # Health and metrics endpoint
    api_enabled: bool = Field(default=False)
    bind_address: str = Field(default="127.0.0.1")
    port: int = Field(default=3200, ge=1, le=65535)

    providers: List[ProviderSpec] = Field(min_length=1)
    notifiers: List[NotifySpec] = Field(min_length=1)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("check_interval", "notify_interval", "tls_timeout", "http_timeout")
    @classmethod
    def validate_duration(cls, v: str) -> str:
        """Validate duration format (e.g., '5m', '1h', '30s')."""
        if not v:
            raise ValueError("Duration cannot be empty")

        if not re.match(DURATION_PATTERN, v):
            raise ValueError("Duration must be in format like '5m', '1h', '30s', '1d'")
        if parse_duration_seconds(v) == 0:
            raise ValueError("Duration must be greater than zero")
        return v

    @model_validator(mode="after")
    def validate_intervals(self) -> "Config":
        """The flush window has to fit inside one discovery cycle."""
        if self.notify_interval_seconds >= self.check_interval_seconds:
            raise ValueError(
                f"notify_interval ({self.notify_interval}) must be shorter than "
                f"check_interval ({self.check_interval})"
            )
        return self

    @property
    def check_interval_seconds(self) -> int:
        """Get discovery cycle interval in seconds."""
        return parse_duration_seconds(self.check_interval)

    @property
    def notify_interval_seconds(self) -> int:
        """Get flush window in seconds."""
        return parse_duration_seconds(self.notify_interval)

    @property
    def tls_timeout_seconds(self) -> int:
        return parse_duration_seconds(self.tls_timeout)

    @property
    def http_timeout_seconds(self) -> int:
        return parse_duration_seconds(self.http_timeout)


def load_config(config_path: str) -> Config:
    """
    Load configuration from file, then apply environment variable overrides.

    Args:
        config_path: Path to configuration file

    Returns:
        Config object

    Raises:
        FileNotFoundError: if the file does not exist
        yaml.YAMLError: if the file is not valid YAML
        pydantic.ValidationError: if the document does not match the schema
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_file, "r", encoding="utf-8") as f:
        config_data: Dict[str, Any] = yaml.safe_load(f) or {}

    if not isinstance(config_data, dict):
        raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")

    config_data.update(_get_env_overrides())

    return Config(**config_data)


def _get_env_overrides() -> dict:
    """Get configuration overrides from environment variables."""
    env_mapping: Dict[str, tuple[str, Callable[[str], Any]]] = {
        "TLS_CERT_WATCH_CHECK_INTERVAL": ("check_interval", str),
        "TLS_CERT_WATCH_NOTIFY_INTERVAL": ("notify_interval", str),
        "TLS_CERT_WATCH_WARN_DAYS": ("warn_days", int),
        "TLS_CERT_WATCH_WORKERS": ("workers", int),
        "TLS_CERT_WATCH_QUEUE_SIZE": ("queue_size", int),
        "TLS_CERT_WATCH_TLS_TIMEOUT": ("tls_timeout", str),
        "TLS_CERT_WATCH_HTTP_TIMEOUT": ("http_timeout", str),
        "TLS_CERT_WATCH_LOG_LEVEL": ("log_level", str),
        "TLS_CERT_WATCH_LOG_FILE": ("log_file", str),
        "TLS_CERT_WATCH_API_ENABLED": ("api_enabled", lambda x: x.lower() in ("true", "1", "yes")),
        "TLS_CERT_WATCH_BIND_ADDRESS": ("bind_address", str),
        "TLS_CERT_WATCH_PORT": ("port", int),
    }

    overrides = {}
    for env_var, (config_key, converter) in env_mapping.items():
        value = os.getenv(env_var)
        if value is not None:
            try:
                overrides[config_key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.warning(f"Invalid value for {env_var}: {value} - {e}")

    return overrides


def create_example_config(output_path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example_config = {
        "check_interval": "24h",
        "notify_interval": "1m",
        "warn_days": 30,
        "workers": 32,
        "queue_size": 100,
        "tls_timeout": "10s",
        "http_timeout": "5s",
        "log_level": "INFO",
        "api_enabled": False,
        "bind_address": "127.0.0.1",
        "port": 3200,
        "providers": [
            {
                "name": "static-hosts",
                "provider": "file",
                "options": {"file_path": "/etc/tls-cert-watch/hosts.txt"},
            },
            {
                "name": "aliyun-zones",
                "provider": "aliyun",
                "domains": ["example.com", "example.org"],
                "options": {
                    "key_id": "<access key id>",
                    "key_secret": "<access key secret>",
                    "region": "cn-hangzhou",
                },
            },
            {
                "name": "west-zones",
                "provider": "west",
                "domains": ["example.net"],
                "options": {"api_key": "<api domain key>"},
            },
        ],
        "notifiers": [
            {
                "name": "ops-robot",
                "type": "dding",
                "options": {
                    "url": "https://oapi.dingtalk.com/robot/send?access_token=<token>",
                    "at_mobiles": [],
                    "at_all": False,
                },
            }
        ],
    }

    with open(output_path, "w", encoding="utf-8") as f:
        yaml.dump(example_config, f, default_flow_style=False, sort_keys=False)

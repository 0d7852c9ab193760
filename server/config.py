"""
Relay server configuration.

Values come from environment variables; everything has a default so the
server starts with no configuration at all.
"""

import os
from datetime import timedelta
from typing import Mapping, Optional
from pydantic import BaseModel, Field, ValidationError, field_validator


SESSION_CAPACITY = 2
SESSION_EXPIRY_HOURS = 24
SWEEP_INTERVAL_SECONDS = 60 * 60  # 1 hour
DEFAULT_PORT = 3000


class ConfigError(Exception):
    """Raised when the environment holds an unusable value"""
    pass


class Settings(BaseModel):
    """Runtime settings for the relay"""
    host: str = "0.0.0.0"
    port: int = Field(default=DEFAULT_PORT, ge=1, le=65535)
    base_url: Optional[str] = None
    session_expiry_hours: float = Field(default=SESSION_EXPIRY_HOURS, gt=0)
    sweep_interval_seconds: float = Field(default=SWEEP_INTERVAL_SECONDS, gt=0)
    log_level: str = "INFO"
    log_json: bool = False

    @field_validator("base_url")
    @classmethod
    def strip_base_url(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip().rstrip("/")
        return value or None

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {value!r}")
        return value

    @property
    def session_expiry(self) -> timedelta:
        return timedelta(hours=self.session_expiry_hours)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = None) -> "Settings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read instead of os.environ

        Raises:
            ConfigError: If a variable holds an invalid value
        """
        env = os.environ if environ is None else environ
        mapping = {
            "HOST": "host",
            "PORT": "port",
            "BASE_URL": "base_url",
            "SESSION_EXPIRY_HOURS": "session_expiry_hours",
            "SWEEP_INTERVAL_SECONDS": "sweep_interval_seconds",
            "LOG_LEVEL": "log_level",
            "LOG_JSON": "log_json",
        }
        values = {field: env[name] for name, field in mapping.items() if env.get(name)}
        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

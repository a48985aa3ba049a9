"""
Service configuration.

Settings are read once from ``CRUDGUARD_*`` environment variables at
startup and passed explicitly to the application factory.
"""

import secrets
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from loguru import logger
from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PREFIX = "CRUDGUARD_"

LOG_LEVELS = ("TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL")

# Duration fields are configured as plain numbers in these units
DURATION_UNITS = {
    "token_lifetime": "hours",
    "refresh_window": "minutes",
    "rate_window": "seconds",
    "sweep_interval": "seconds",
}


class Settings(BaseSettings):
    """
    Runtime configuration for the service.

    Attributes:
        secret_key: HMAC signing secret for bearer tokens
        secret_file: Optional file the secret is loaded from
        db_path: SQLite database file
        log_level: loguru level name
        log_json: Emit one JSON object per log record
        service_name: Value of the ``service`` field on every log record
        host: Bind address
        port: Bind port
        token_lifetime: Bearer token validity window (env: hours)
        refresh_window: How close to expiry a token must be to be refreshed (env: minutes)
        general_limit: Requests per window on general API routes
        auth_limit: Requests per window on login/register
        strict_limit: Requests per window on sensitive routes
        rate_window: Rate-limit window (env: seconds)
        sweep_interval: Eviction interval, defaults to the window (env: seconds)
        guard_timeout: Deadline for guard-path storage reads
        default_role: Role granted on registration
        bcrypt_rounds: bcrypt work factor
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        case_sensitive=False,
        env_ignore_empty=True,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    secret_key: SecretStr
    secret_file: Optional[Path] = None
    db_path: Path = Path("data") / "crudguard.db"
    log_level: str = "INFO"
    log_json: bool = True
    service_name: str = "crudguard"
    host: str = "0.0.0.0"
    port: int = Field(default=8080, ge=1, le=65535)
    token_lifetime: timedelta = Field(
        default=timedelta(hours=24), validation_alias=ENV_PREFIX + "TOKEN_LIFETIME_HOURS"
    )
    refresh_window: timedelta = Field(
        default=timedelta(hours=1), validation_alias=ENV_PREFIX + "REFRESH_WINDOW_MINUTES"
    )
    general_limit: int = Field(default=100, gt=0)
    auth_limit: int = Field(default=5, gt=0)
    strict_limit: int = Field(default=10, gt=0)
    rate_window: timedelta = Field(
        default=timedelta(minutes=1), validation_alias=ENV_PREFIX + "RATE_WINDOW_SECONDS"
    )
    sweep_interval: Optional[timedelta] = Field(
        default=None, validation_alias=ENV_PREFIX + "SWEEP_INTERVAL_SECONDS"
    )
    guard_timeout: float = Field(
        default=5.0, gt=0, validation_alias=ENV_PREFIX + "GUARD_TIMEOUT_SECONDS"
    )
    default_role: str = "user"
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    @model_validator(mode="before")
    @classmethod
    def _resolve_secret(cls, data: Any) -> Any:
        """Fall back to the secret file, then to an ephemeral generated secret."""
        if not isinstance(data, dict) or data.get("secret_key"):
            return data

        data = dict(data)
        secret_file = data.get("secret_file")
        secret = load_secret(Path(secret_file)) if secret_file else None
        if secret is None:
            logger.warning("No signing secret configured; generated an ephemeral one, "
                           "tokens will not survive a restart")
            secret = secrets.token_urlsafe(64)
        data["secret_key"] = secret
        return data

    @field_validator("token_lifetime", "refresh_window", "rate_window", "sweep_interval",
                     mode="before")
    @classmethod
    def _number_to_duration(cls, value: Any, info) -> Any:
        if isinstance(value, (int, float, str)) and not isinstance(value, bool):
            return timedelta(**{DURATION_UNITS[info.field_name]: float(value)})
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"log_level must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("rate_window", "token_lifetime")
    @classmethod
    def _check_positive(cls, value: timedelta) -> timedelta:
        if value <= timedelta(0):
            raise ValueError("duration must be positive")
        return value


def load_secret(secret_file: Optional[Path]) -> Optional[str]:
    """Load the signing secret from a file, if one is configured and present."""
    if secret_file is None:
        return None
    if not secret_file.exists():
        logger.error(f"Secret file not found: {secret_file}")
        return None
    return secret_file.read_text().strip() or None

"""
Service configuration for Clinisafe.

Settings are a validated pydantic model so that a bad deployment value
(a zero timeout, a concurrency limit of 0) fails at start-up rather than at
the first validation batch.  Values come from three layers, last wins:

1. ``DEFAULT_SETTINGS``
2. a YAML file with a top-level ``settings`` mapping
3. ``CLINISAFE_*`` environment variables

The SLA table and the classifier mapping tables are deliberately **not**
configurable: they are part of the safety taxonomy contract and must be
identical on every deployment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator


_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

_ENV_PREFIX = "CLINISAFE_"


class ServiceSettings(BaseModel):
    """Deployment settings for the validation engine."""

    validator_url: str = Field(
        default="http://care-plan-validator:8080",
        min_length=1,
        description="Base URL of the ML validator service.",
    )
    validator_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description=(
            "Timeout for one /validate/recommendation call.  The batch "
            "endpoint gets this value multiplied by the batch size."
        ),
    )
    health_timeout_seconds: float = Field(
        default=2.0,
        gt=0,
        description=(
            "Timeout for the /health probe that gates every batch.  A timeout "
            "puts the batch into degraded mode; it is not retried."
        ),
    )
    max_concurrency: int = Field(
        default=4,
        ge=1,
        le=64,
        description="Upper bound on in-flight validator calls for one batch.",
    )
    database_path: str = Field(
        default="~/.clinisafe/safety.db",
        min_length=1,
        description="SQLite database file for safety checks and the review queue.",
    )
    default_page_size: int = Field(default=50, ge=1)
    max_page_size: int = Field(default=200, ge=1)
    log_level: str = Field(default="INFO")

    @field_validator("validator_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if level not in allowed:
            raise ValueError(f"log_level must be one of {sorted(allowed)}, got '{v}'")
        return level

    @field_validator("max_page_size")
    @classmethod
    def max_page_not_below_default(cls, v: int, info) -> int:
        default = info.data.get("default_page_size")
        if default is not None and v < default:
            raise ValueError(
                f"max_page_size ({v}) must be >= default_page_size ({default})"
            )
        return v


DEFAULT_SETTINGS = ServiceSettings()
"""Built-in settings used when neither a file nor the environment override them."""


def load_settings_from_yaml(path: str | Path) -> ServiceSettings:
    """Load settings from a YAML file.

    Example YAML structure::

        settings:
          validator_url: "http://validator.internal:8080"
          max_concurrency: 8
          database_path: "/var/lib/clinisafe/safety.db"

    Args:
        path: Path to the YAML file.

    Returns:
        Validated ``ServiceSettings``.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the YAML structure is invalid.
        pydantic.ValidationError: If a value fails validation.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or "settings" not in raw:
        raise ValueError("YAML file must contain a top-level 'settings' mapping.")
    if not isinstance(raw["settings"], dict):
        raise ValueError("'settings' must be a mapping of setting names to values.")

    return ServiceSettings(**raw["settings"])


def _env_overrides() -> dict[str, str]:
    overrides = {}
    for name in ServiceSettings.model_fields:
        value = os.environ.get(f"{_ENV_PREFIX}{name.upper()}")
        if value is not None:
            overrides[name] = value
    return overrides


def load_settings(path: Optional[str | Path] = None) -> ServiceSettings:
    """Resolve settings from defaults, an optional YAML file, and the environment.

    ``CLINISAFE_SETTINGS_FILE`` is used when ``path`` is not given.
    """
    path = path or os.environ.get(f"{_ENV_PREFIX}SETTINGS_FILE")
    base = load_settings_from_yaml(path) if path else DEFAULT_SETTINGS
    overrides = _env_overrides()
    if not overrides:
        return base
    return ServiceSettings(**{**base.model_dump(), **overrides})


def configure_logging(settings: ServiceSettings = DEFAULT_SETTINGS) -> None:
    """Configure root logging for a process hosting the engine."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format=_LOG_FORMAT,
    )

"""Session configuration.

SessionConfig reads ``BOTSESSION_*`` environment variables on construction
(BOTSESSION_MAX_RECONNECT_ATTEMPTS=3, BOTSESSION_WAIT_DEFAULTS__TIMEOUT_SECONDS=60
...) and can be seeded from a YAML file:

    credentials_path: ./auth
    log_level: DEBUG
    max_reconnect_attempts: 3
    queue_capacity: 50
    send_delay_seconds: 0.5
    ignore_self_messages: true
    wait_defaults:
      timeout_seconds: 60
      cancel_keywords: [cancel, stop]

Values passed to the constructor win over YAML, which wins over the
environment.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, ClassVar

import yaml
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .correlator import WaitOptions
from .outbound import DEFAULT_CAPACITY, DEFAULT_MIN_DELAY

ENV_PREFIX = "BOTSESSION_"


class SessionConfig(BaseSettings):
    """Configuration recognized by SessionSupervisor."""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Opaque to the engine; consumed by transport factories
    credentials_path: str = "./auth"
    log_level: str = "INFO"

    max_reconnect_attempts: int = Field(default=5, ge=0)
    queue_capacity: int = Field(default=DEFAULT_CAPACITY, ge=1)
    send_delay_seconds: float = Field(default=DEFAULT_MIN_DELAY, ge=0)
    ignore_self_messages: bool = True

    # Follows ignore_self_messages unless given explicitly
    wait_defaults: WaitOptions = Field(default_factory=WaitOptions)

    @model_validator(mode="before")
    @classmethod
    def _derive_wait_defaults(cls, data: Any) -> Any:
        if isinstance(data, dict) and "wait_defaults" not in data:
            if "ignore_self_messages" in data:
                data = {
                    **data,
                    "wait_defaults": {"ignore_self_messages": data["ignore_self_messages"]},
                }
        return data

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, value: str) -> str:
        level = value.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {value}")
        return level

    @property
    def log_level_number(self) -> int:
        return logging.getLevelNamesMapping()[self.log_level]

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> SessionConfig:
        """Build a config reading ``{prefix}{FIELD_NAME}`` environment variables."""
        return cls(_env_prefix=prefix)

    @classmethod
    def from_yaml(cls, path: str | Path, **overrides: Any) -> SessionConfig:
        """Load a config from a YAML mapping. An empty file yields defaults.

        Keys missing from the file still come from the environment.
        """
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping in {path}, got {type(data).__name__}")
        return cls(**{**data, **overrides})

    def with_overrides(self, **overrides: Any) -> SessionConfig:
        """Return a validated copy with some fields replaced."""
        return self.model_validate({**self.model_dump(), **overrides})

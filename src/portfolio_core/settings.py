from __future__ import annotations

import structlog
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from portfolio_core.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from portfolio_core.logging import AnyLogger, configure_structlog, get_log_level_value


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class BreakerSettings(BaseSettings):
    """Environment settings for one guarded dependency's circuit breaker."""

    model_config = prefixed_settings_config("BREAKER_")

    breaker_name: str = "breaker"
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    timeout_seconds: float = 10.0
    monitoring_period_seconds: float = 10.0
    cancel_on_timeout: bool = True
    log_level: str = "INFO"
    log_json: bool | None = None

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            get_log_level_value(value)
            return value.strip().upper()
        return value

    @model_validator(mode="after")
    def _validate_breaker_settings(self) -> BreakerSettings:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.reset_timeout_seconds < 0:
            raise ValueError("reset_timeout_seconds must be >= 0")
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if self.monitoring_period_seconds <= 0:
            raise ValueError("monitoring_period_seconds must be > 0")
        return self

    def configure_logging(self) -> structlog.stdlib.BoundLogger:
        """Configure process logging at ``log_level`` and return the root logger."""
        return configure_structlog(
            log_level=self.log_level, json_output=self.log_json
        )

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the breaker configuration these settings describe."""
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            reset_timeout=self.reset_timeout_seconds,
            timeout=self.timeout_seconds,
            monitoring_period=self.monitoring_period_seconds,
            cancel_on_timeout=self.cancel_on_timeout,
        )

    def build_breaker(self, *, logger: AnyLogger | None = None) -> CircuitBreaker:
        """Build the breaker for this dependency, named ``breaker_name``."""
        return CircuitBreaker(
            self.breaker_name, config=self.breaker_config(), logger=logger
        )


class GitHubBreakerSettings(BreakerSettings):
    """GitHub REST API breaker, overridable via ``GITHUB_BREAKER_*``."""

    model_config = prefixed_settings_config("GITHUB_BREAKER_")

    breaker_name: str = "GitHub API"
    failure_threshold: int = 5
    reset_timeout_seconds: float = 60.0
    timeout_seconds: float = 10.0


class AiBreakerSettings(BreakerSettings):
    """AI completion API breaker, overridable via ``AI_BREAKER_*``."""

    model_config = prefixed_settings_config("AI_BREAKER_")

    breaker_name: str = "AI API"
    failure_threshold: int = 3
    reset_timeout_seconds: float = 30.0
    timeout_seconds: float = 15.0


class SandboxBreakerSettings(BreakerSettings):
    """Code sandbox API breaker, overridable via ``SANDBOX_BREAKER_*``."""

    model_config = prefixed_settings_config("SANDBOX_BREAKER_")

    breaker_name: str = "CodeSandbox API"
    failure_threshold: int = 3
    reset_timeout_seconds: float = 45.0
    timeout_seconds: float = 20.0

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from resilience_core.circuit_breaker import CircuitBreakerConfig
from resilience_core.monitor import MonitorConfig

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def prefixed_settings_config(prefix: str) -> SettingsConfigDict:
    """Build standard Pydantic settings config for prefixed environments."""
    return SettingsConfigDict(env_prefix=prefix, case_sensitive=False)


class ResilienceSettings(BaseSettings):
    """Settings for the breaker, recovery, audit and monitor components."""

    model_config = prefixed_settings_config("RESILIENCE_")

    log_level: LogLevel = "INFO"
    service_name: str | None = None

    breaker_failure_threshold: int = 5
    breaker_reset_timeout_seconds: float = 300.0
    breaker_call_timeout_seconds: float | None = 60.0

    recovery_max_error_history: int = 1000
    recovery_min_dwell_seconds: float = 600.0

    audit_dir: Path = Path("audit")
    audit_max_cached_entries: int = 1000

    monitor_retention_hours: float = 24.0
    monitor_max_points: int = 1440
    monitor_prune_interval_seconds: float = 60.0
    monitor_alert_interval_seconds: float = 30.0
    monitor_system_interval_seconds: float = 10.0

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator(
        "breaker_failure_threshold",
        "recovery_max_error_history",
        "audit_max_cached_entries",
        "monitor_max_points",
    )
    @classmethod
    def _validate_positive_count(cls, value: int, info: ValidationInfo) -> int:
        if value < 1:
            raise ValueError(f"{info.field_name} must be >= 1")
        return value

    @model_validator(mode="after")
    def _validate_durations(self) -> ResilienceSettings:
        if self.breaker_reset_timeout_seconds < 0:
            raise ValueError("breaker_reset_timeout_seconds must be >= 0")
        if (
            self.breaker_call_timeout_seconds is not None
            and self.breaker_call_timeout_seconds <= 0
        ):
            raise ValueError("breaker_call_timeout_seconds must be > 0")
        if self.recovery_min_dwell_seconds < 0:
            raise ValueError("recovery_min_dwell_seconds must be >= 0")
        if self.monitor_retention_hours <= 0:
            raise ValueError("monitor_retention_hours must be > 0")
        if self.monitor_prune_interval_seconds <= 0:
            raise ValueError("monitor_prune_interval_seconds must be > 0")
        if self.monitor_alert_interval_seconds <= 0:
            raise ValueError("monitor_alert_interval_seconds must be > 0")
        if self.monitor_system_interval_seconds <= 0:
            raise ValueError("monitor_system_interval_seconds must be > 0")
        return self

    def breaker_config(self) -> CircuitBreakerConfig:
        """Build the circuit breaker configuration shared by owned breakers."""
        return CircuitBreakerConfig(
            failure_threshold=self.breaker_failure_threshold,
            recovery_timeout=self.breaker_reset_timeout_seconds,
            call_timeout=self.breaker_call_timeout_seconds,
        )

    def monitor_config(self) -> MonitorConfig:
        """Build the monitor retention and scheduling configuration."""
        return MonitorConfig(
            retention_hours=self.monitor_retention_hours,
            max_points=self.monitor_max_points,
            prune_interval_seconds=self.monitor_prune_interval_seconds,
            alert_interval_seconds=self.monitor_alert_interval_seconds,
            system_interval_seconds=self.monitor_system_interval_seconds,
        )

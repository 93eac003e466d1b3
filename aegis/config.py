"""Configuration for the AEGIS validation engine."""

from __future__ import annotations

from functools import lru_cache

from dotenv import load_dotenv
from pydantic import Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


load_dotenv()


class EngineSettings(BaseSettings):
    """Environment-backed tuning for verification, scoring and safe mode."""

    model_config = SettingsConfigDict(
        env_prefix="AEGIS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Audit trail
    log_capacity: int = Field(default=100, gt=0)

    # Scheduling
    dwell_seconds: float = Field(default=10.0, gt=0)
    validation_timeout_s: float = Field(default=2.0, gt=0)

    # Physical envelope
    max_speed_mps: float = Field(default=20.0, gt=0)
    max_altitude_m: float = Field(default=120.0, gt=0)
    max_position_delta_m: float = Field(default=2000.0, gt=0)
    min_elapsed_s: float = Field(default=0.1, gt=0)
    default_takeoff_altitude_m: float = Field(default=10.0, ge=0)

    # Behavioural expectations
    min_command_interval_s: float = Field(default=0.2, ge=0)
    mode_window_s: float = Field(default=60.0, gt=0)
    max_mode_transitions: int = Field(default=4, ge=0)
    feature_window: int = Field(default=20, gt=1)
    min_window_samples: int = Field(default=5, gt=1)
    zscore_threshold: float = Field(default=3.0, gt=0)
    command_history_size: int = Field(default=256, gt=0)

    # Trust scoring
    score_history_size: int = Field(default=10, gt=0)
    history_weight: float = Field(default=0.2, ge=0, lt=1)
    anomaly_penalty: float = Field(default=1.25, gt=0)
    hard_limit_ceiling: float = Field(default=-0.75, ge=-1.0)
    severe_threshold: float = Field(default=-0.5, ge=-1.0, lt=0)

    @field_validator("hard_limit_ceiling")
    @classmethod
    def _ceiling_forces_rejection(cls, value: float) -> float:
        if value > -0.5:
            raise ValueError("hard_limit_ceiling must be at most -0.5")
        return value

    @field_validator("min_window_samples")
    @classmethod
    def _samples_fit_window(cls, value: int, info: ValidationInfo) -> int:
        window = info.data.get("feature_window")
        if window is not None and value > window:
            raise ValueError("min_window_samples cannot exceed feature_window")
        return value


@lru_cache
def get_settings() -> EngineSettings:
    """Return cached settings loaded from the environment."""

    return EngineSettings()


__all__ = ["EngineSettings", "get_settings"]

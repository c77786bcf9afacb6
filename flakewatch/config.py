from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # SQLite store (empty string means not configured)
    database_path: str = ""

    # Classification
    timeline_limit: int = 50
    min_runs: int = 2

    # Quarantine (confidence is on the 0-100 verdict scale)
    quarantine_confidence_gate: float = 70.0

    # Effectiveness verification
    verification_window_days: int = 7
    baseline_window_days: int = 14
    regression_threshold_percent: float = 20.0
    stabilization_failure_rate: float = 0.1
    cost_per_failure: float = 25.0

    # Aggregate reporting
    cost_savings_expansion_threshold: float = 1000.0
    report_period_days: int = 30
    recommendations_period_days: int = 90

    # Reconciliation scan (0 = scheduler disabled)
    reconcile_interval_minutes: int = 60

    # Remote execution-record source (optional; empty means read from the SQLite store)
    execution_source_url: str = ""
    execution_source_token: str = ""

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()

"""Shared pytest configuration and fixtures."""

from collections.abc import Generator
from typing import Any
from unittest.mock import patch

import pytest

from flakewatch.config import Settings, get_settings
from flakewatch.storage.sqlite import SqliteStore, get_initialized_connection


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that hit real services (requires .env with a reachable EXECUTION_SOURCE_URL)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if config.getoption("--run-e2e"):
        return
    skip_e2e = pytest.mark.skip(reason="Need --run-e2e flag to run")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture(autouse=True)
def _no_dotenv(request: pytest.FixtureRequest) -> Generator[None]:
    """Block .env loading so a developer's local settings never leak into tests.

    Sets Settings.model_config['env_file'] = None before each test (except e2e).
    Tests that use mock_settings bypass Settings() entirely, so this is transparent.
    """
    if "e2e" in request.keywords:
        yield
        return

    get_settings.cache_clear()
    original = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    try:
        yield
    finally:
        Settings.model_config["env_file"] = original
        get_settings.cache_clear()


@pytest.fixture
def mock_settings() -> Generator[Any]:
    """Provide fake settings so tests don't need a .env file.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = type(
        "FakeSettings",
        (),
        {
            "database_path": ":memory:",
            # Classification
            "timeline_limit": 50,
            "min_runs": 2,
            "quarantine_confidence_gate": 70.0,
            # Verification
            "verification_window_days": 7,
            "baseline_window_days": 14,
            "regression_threshold_percent": 20.0,
            "stabilization_failure_rate": 0.1,
            "cost_per_failure": 25.0,
            # Reporting
            "cost_savings_expansion_threshold": 1000.0,
            "report_period_days": 30,
            "recommendations_period_days": 90,
            # Scheduler disabled so TestClient startup never spawns jobs
            "reconcile_interval_minutes": 0,
            # Execution-record source
            "execution_source_url": "",
            "execution_source_token": "",
        },
    )()
    with (
        patch("flakewatch.config.get_settings", return_value=fake_settings),
        patch("flakewatch.storage.sqlite.get_settings", return_value=fake_settings),
        patch("flakewatch.engine.service.get_settings", return_value=fake_settings),
        patch("flakewatch.engine.scheduler.get_settings", return_value=fake_settings),
        patch("flakewatch.api.main.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


@pytest.fixture
def store() -> SqliteStore:
    """A SqliteStore over a fresh in-memory database."""
    return SqliteStore(get_initialized_connection(":memory:"))

"""Shared pytest configuration and fixtures."""

from collections.abc import Generator
from datetime import UTC, datetime
from unittest.mock import patch

import pytest

from src.config import Settings, get_settings
from src.resilience.event_log import EventLog
from src.resilience.scheduling import ManualClock, VirtualScheduler
from src.resilience.store import StateStore

# Monday 2026-03-02 10:00 UTC
START = datetime(2026, 3, 2, 10, 0, tzinfo=UTC)


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-e2e",
        action="store_true",
        default=False,
        help="Run e2e tests that hit real services (requires .env with valid credentials)",
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
    """Block .env loading so tests never pick up a developer's real API key."""
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
def mock_settings() -> Generator[Settings]:
    """Provide explicit settings so tests don't depend on the environment.

    Patches get_settings at every import site so cached references are overridden.
    """
    fake_settings = Settings(
        gemini_api_key="test-gemini-key",
        gemini_model="gemini-pro",
        gemini_base_url="https://gemini.test/v1beta",
        state_db_path="",
        event_log_capacity=50,
        health_check_interval_seconds=300,
        health_max_errors=3,
        health_max_response_time_ms=5000,
        health_auto_recover_after=0,
        security_check_interval_seconds=10,
        security_max_requests_per_minute=60,
        security_rotation_interval_seconds=900,
        personalization_analysis_interval_seconds=60,
        log_level="WARNING",
    )
    with (
        patch("src.config.get_settings", return_value=fake_settings),
        patch("src.resilience.client.get_settings", return_value=fake_settings),
        patch("src.resilience.layer.get_settings", return_value=fake_settings),
        patch("src.api.main.get_settings", return_value=fake_settings),
    ):
        yield fake_settings


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture
def scheduler(clock: ManualClock) -> VirtualScheduler:
    return VirtualScheduler(clock)


@pytest.fixture
def store() -> StateStore:
    return StateStore()


@pytest.fixture
def event_log(store: StateStore, clock: ManualClock) -> EventLog:
    return EventLog(store, clock=clock)

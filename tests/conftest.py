# tests/conftest.py
"""Pytest configuration and fixtures"""
import sys
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from casedispatch.config import Settings  # noqa: E402
from casedispatch.infra.memory_repos import MemoryStore  # noqa: E402
from casedispatch.infra.metrics import get_metrics_collector  # noqa: E402
from casedispatch.infra.wiring import build_services  # noqa: E402
from tests.helpers import FixedClock, RecordingSink  # noqa: E402


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        app_env="dev",
        storage_backend="memory",
        notifications_enabled=True,
        notification_lang="en",
        enable_request_logging=False,
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def services(test_settings, sink, clock, store):
    return build_services(test_settings, backend="memory", sink=sink, clock=clock, store=store)


@pytest.fixture
def sm(services):
    return services.state_machine


@pytest.fixture
def queue(services):
    return services.queue


@pytest.fixture
def dispatcher(services):
    return services.dispatcher

"""
Pytest configuration and fixtures for change tracking staging tests.
Provides an in-memory change tracking provider and wired-up components.
"""

import os
from pathlib import Path

import pytest

from change_staging.catalog import CatalogReader
from change_staging.enumerator import ChangeEnumerator
from change_staging.orchestrator import RunOrchestrator
from change_staging.sink import InMemoryStagingSink
from change_staging.watermark import InMemoryWatermarkStore
from tests.fakes import FakeChangeTrackingProvider


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Get project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture(autouse=True)
def set_test_env_vars() -> None:
    """Set default test environment variables if not already set."""
    defaults = {
        "SQLSERVER_HOST": "localhost",
        "SQLSERVER_DATABASE": "warehouse_source",
        "SQLSERVER_USER": "sa",
        "SQLSERVER_PASSWORD": "YourStrong!Passw0rd",
    }

    for key, value in defaults.items():
        if key not in os.environ:
            os.environ[key] = value


@pytest.fixture
def provider() -> FakeChangeTrackingProvider:
    return FakeChangeTrackingProvider(version=150)


@pytest.fixture
def watermarks() -> InMemoryWatermarkStore:
    return InMemoryWatermarkStore(actor="test")


@pytest.fixture
def sink() -> InMemoryStagingSink:
    return InMemoryStagingSink()


@pytest.fixture
def orchestrator(provider, watermarks, sink) -> RunOrchestrator:
    return RunOrchestrator(
        catalog=CatalogReader(provider),
        watermarks=watermarks,
        enumerator=ChangeEnumerator(provider),
        sink=sink,
        max_workers=4,
        timeout_per_table=60,
        max_retries=2,
        retry_base_delay=0.01,
        sleep=lambda seconds: None,
    )

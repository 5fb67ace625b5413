"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for docker_mock and postgres_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from autopg.config import Config  # noqa: E402
from autopg.credentials import CredentialResolver  # noqa: E402
from autopg.docker_platform import DockerPlatform  # noqa: E402
from autopg.models import ProvisionRequest  # noqa: E402
from docker_mock import MockDockerEngine  # noqa: E402
from postgres_mock import MockPostgresServer  # noqa: E402

PG1_ENV = {
    "AUTOPG_PG1_HOST": "pg1.internal",
    "AUTOPG_PG1_ADMIN": "postgres",
    "AUTOPG_PG1_ADMIN_PASS": "admin-secret",
}

PG1_LABELS = {
    "autopg.pg1.db": "appdb",
    "autopg.pg1.user": "appuser",
    "autopg.pg1.pass": "secret",
}


@pytest.fixture
def config() -> Config:
    """Configuration with fast retries for tests."""
    return Config(
        connect_attempts=3,
        connect_interval_seconds=0,
        reconnect_backoff_seconds=0,
    )


@pytest.fixture
def credentials() -> CredentialResolver:
    return CredentialResolver(PG1_ENV)


@pytest.fixture
def engine() -> MockDockerEngine:
    return MockDockerEngine()


@pytest.fixture
def platform(engine: MockDockerEngine) -> DockerPlatform:
    return DockerPlatform(engine.client())


@pytest.fixture
def pg() -> MockPostgresServer:
    return MockPostgresServer()


@pytest.fixture
def request_pg1() -> ProvisionRequest:
    return ProvisionRequest(target="pg1", database="appdb", user="appuser", password="secret")

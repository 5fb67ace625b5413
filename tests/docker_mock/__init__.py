"""Docker Engine mock for tests.

In-memory container state, label update toggles and controllable event
streams, so the watch loop and marker can be exercised without a daemon.

Usage:
    from docker_mock import MockDockerEngine

    engine = MockDockerEngine()
    platform = DockerPlatform(engine.client())
    engine.add_container({"autopg.pg1.db": "appdb"})
"""

from .context import MockDockerContext, wait_until
from .engine import (
    MockAPIClient,
    MockContainer,
    MockDockerClient,
    MockDockerEngine,
    MockEventStream,
)

__all__ = [
    "MockAPIClient",
    "MockContainer",
    "MockDockerClient",
    "MockDockerContext",
    "MockDockerEngine",
    "MockEventStream",
    "wait_until",
]

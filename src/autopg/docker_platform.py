"""Docker Engine access for container discovery, events and label updates.

Only the low-level API client is used for listing and inspection: the
high-level container objects either inspect every container on list or
refuse to expose labels of sparse objects.
"""

from __future__ import annotations

import logging
from typing import Any

import docker
from docker.errors import DockerException

from .models import Workload

logger = logging.getLogger(__name__)

# Only container start events can introduce new provisioning requests
START_EVENT_FILTERS: dict[str, str] = {"type": "container", "event": "start"}


class StreamError(Exception):
    """Raised when the event subscription fails or ends unexpectedly."""

    pass


class LabelUpdateUnsupported(Exception):
    """Raised when the engine accepts a label update but does not apply it."""

    pass


class EventSubscription:
    """Cancellable handle on a live Docker event stream."""

    def __init__(self, stream: Any) -> None:
        self._stream = stream
        self._iterator = iter(stream)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def next_event(self) -> dict[str, Any]:
        """Block until the next event arrives.

        Raises:
            StreamError: If the stream errors, ends, or was closed.
        """
        if self._closed:
            raise StreamError("subscription closed")
        try:
            return next(self._iterator)
        except StopIteration as e:
            raise StreamError("event stream ended") from e
        except Exception as e:
            # Socket, HTTP and decode errors all surface here
            raise StreamError(f"event stream failed: {e}") from e

    def close(self) -> None:
        """Close the stream, unblocking a pending next_event()."""
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.close()
        except Exception as e:
            logger.debug("Error closing event stream", extra={"error": str(e)})


class DockerPlatform:
    """Thin adapter over the Docker SDK with the operations the daemon needs."""

    def __init__(self, client: docker.DockerClient) -> None:
        self._client = client

    @classmethod
    def from_env(cls) -> DockerPlatform:
        """Create a platform client from DOCKER_HOST and related variables.

        Raises:
            DockerException: If the client cannot be constructed.
        """
        return cls(docker.from_env())

    def list_workloads(self) -> list[Workload]:
        """List all containers, running and stopped, with their labels."""
        entries = self._client.api.containers(all=True)
        return [Workload.from_list_entry(entry) for entry in entries]

    def inspect_workload(self, container_id: str) -> Workload:
        """Fetch a container's current labels.

        Raises:
            docker.errors.NotFound: If the container no longer exists.
            DockerException: On other engine errors.
        """
        return Workload.from_inspect(self._client.api.inspect_container(container_id))

    def subscribe(self, since: int | str | None = None) -> EventSubscription:
        """Subscribe to container start events.

        Args:
            since: Inclusive resume point, if resuming: unix seconds, or a
                "seconds.nanoseconds" string as the engine API accepts.

        Raises:
            StreamError: If the subscription cannot be opened.
        """
        try:
            stream = self._client.events(
                since=since,
                filters=dict(START_EVENT_FILTERS),
                decode=True,
            )
        except (DockerException, OSError) as e:
            raise StreamError(f"could not subscribe to events: {e}") from e
        return EventSubscription(stream)

    def update_labels(self, container_id: str, labels: dict[str, str]) -> None:
        """Replace a container's labels through the container update endpoint.

        Most engine versions accept but ignore a Labels field on update, so
        the result is verified with a fresh inspect.

        Raises:
            LabelUpdateUnsupported: If the engine did not apply the labels.
            DockerException: If the engine rejected the request.
        """
        self._post_container_update(container_id, {"Labels": labels})

        applied = self.inspect_workload(container_id).labels
        missing = {k for k, v in labels.items() if applied.get(k) != v}
        if missing:
            raise LabelUpdateUnsupported(
                f"engine did not apply labels {sorted(missing)} to container {container_id[:12]}"
            )

    def _post_container_update(self, container_id: str, data: dict[str, Any]) -> None:
        """POST a raw body to the container update endpoint.

        The SDK's update_container() has no labels argument, so this goes
        through APIClient internals (_url, _post_json, _result) as of
        docker 7.x; pyproject.toml pins the major version.

        Raises:
            LabelUpdateUnsupported: If the installed SDK lacks those internals.
            DockerException: If the engine rejected the request.
        """
        api = self._client.api
        try:
            post_json = api._post_json
            url = api._url("/containers/{0}/update", container_id)
            result = api._result
        except AttributeError as e:
            raise LabelUpdateUnsupported(
                f"docker SDK {getattr(docker, '__version__', '?')} has no raw update call: {e}"
            ) from e

        result(post_json(url, data=data), True)

    def close(self) -> None:
        self._client.close()

"""Best-effort provisioned markers on containers.

The marker only lets later observations of the same container skip redundant
work. Convergence is idempotent, so a marker that cannot be written costs a
repeated provisioning run and nothing else. Markers are only ever set to
"true"; nothing in this package removes or lowers them.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .labels import DEFAULT_PREFIX, MARKER_VALUE, is_marked, marker_key

if TYPE_CHECKING:
    from .docker_platform import DockerPlatform

logger = logging.getLogger(__name__)


def mark_satisfied(
    platform: DockerPlatform,
    workload_id: str,
    target: str,
    *,
    prefix: str = DEFAULT_PREFIX,
) -> bool:
    """Record on the container that a target's request has been satisfied.

    Never raises. Failures are logged as warnings.

    Args:
        platform: Docker platform adapter.
        workload_id: Container ID.
        target: Target whose request was converged.
        prefix: Request label prefix.

    Returns:
        True if the marker is now present on the container.
    """
    try:
        labels = dict(platform.inspect_workload(workload_id).labels)
        if is_marked(labels, target, prefix):
            return True
        labels[marker_key(target, prefix)] = MARKER_VALUE
        platform.update_labels(workload_id, labels)
    except Exception as e:
        logger.warning(
            "Could not mark container as provisioned",
            extra={
                "container": workload_id[:12],
                "target": target,
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
        return False

    logger.debug(
        "Container marked as provisioned",
        extra={"container": workload_id[:12], "target": target},
    )
    return True

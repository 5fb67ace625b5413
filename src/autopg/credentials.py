"""Per-target admin credential resolution.

Each target names one PostgreSQL server. An instance is authorized to act on
a target only if the environment it was started with carries a complete set
of admin connection parameters for that target:

    AUTOPG_<T>_HOST        required
    AUTOPG_<T>_PORT        optional, default 5432
    AUTOPG_<T>_ADMIN       required
    AUTOPG_<T>_ADMIN_PASS  required

where <T> is the target upper-cased with every character outside [A-Z0-9]
replaced by "_".

SECURITY: Resolution is fail-closed. A partial credential set is treated
exactly like an absent one; no connection is ever attempted with blank
fields.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

logger = logging.getLogger(__name__)

# Prefix shared by every environment variable this daemon reads
ENV_PREFIX = "AUTOPG"

DEFAULT_PORT = 5432

_NON_ALNUM = re.compile(r"[^A-Z0-9]")

_HOST_SUFFIX = "_HOST"


def env_namespace(target: str) -> str:
    """Derive the environment namespace for a target name."""
    return _NON_ALNUM.sub("_", target.upper())


def env_key(target: str, field_name: str) -> str:
    """Build the environment key holding one credential field for a target."""
    return f"{ENV_PREFIX}_{env_namespace(target)}_{field_name}"


@dataclass(frozen=True)
class AdminCredential:
    """Admin connection parameters for one target."""

    target: str
    host: str
    admin_user: str
    admin_password: str = field(repr=False)
    port: int = DEFAULT_PORT

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


class CredentialResolver:
    """Resolves admin credentials from an immutable environment snapshot.

    The snapshot is taken once at construction; later changes to the process
    environment are not observed.
    """

    def __init__(self, environ: Mapping[str, str]) -> None:
        prefix = f"{ENV_PREFIX}_"
        self._environ: Mapping[str, str] = MappingProxyType(
            {k: v for k, v in environ.items() if k.startswith(prefix)}
        )

    @classmethod
    def from_env(cls) -> CredentialResolver:
        """Snapshot the current process environment."""
        return cls(dict(os.environ))

    def resolve(self, target: str) -> AdminCredential | None:
        """Resolve admin credentials for a target.

        Args:
            target: Target name as found in container labels.

        Returns:
            The credential, or None when this instance is not authorized for
            the target (host, admin user or admin password missing, or an
            unusable port).
        """
        host = self._environ.get(env_key(target, "HOST"), "")
        if not host:
            return None

        admin_user = self._environ.get(env_key(target, "ADMIN"), "")
        admin_password = self._environ.get(env_key(target, "ADMIN_PASS"), "")
        if not admin_user or not admin_password:
            return None

        raw_port = self._environ.get(env_key(target, "PORT"), "")
        if not raw_port:
            port = DEFAULT_PORT
        else:
            try:
                port = int(raw_port)
            except ValueError:
                port = 0
            if not (1 <= port <= 65535):
                logger.warning(
                    "Ignoring target with invalid port",
                    extra={"target": target, "env_key": env_key(target, "PORT")},
                )
                return None

        return AdminCredential(
            target=target,
            host=host,
            port=port,
            admin_user=admin_user,
            admin_password=admin_password,
        )

    def configured_targets(self) -> list[str]:
        """List target namespaces that have at least a host configured.

        Namespaces are returned in their environment form (upper-case), so
        they may differ from the label spelling of the target.
        """
        prefix = f"{ENV_PREFIX}_"
        namespaces = {
            key[len(prefix) : -len(_HOST_SUFFIX)]
            for key, value in self._environ.items()
            if key.endswith(_HOST_SUFFIX) and value and len(key) > len(prefix + _HOST_SUFFIX)
        }
        return sorted(namespaces)

"""Provisioning requests declared in container labels.

A container asks for a database on a target with three labels:

    autopg.<target>.db    = appdb
    autopg.<target>.user  = appuser
    autopg.<target>.pass  = secret

and the daemon records completed work with the marker label

    autopg.provisioned.<target> = true
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from .models import ProvisionRequest

DEFAULT_PREFIX = "autopg."

MARKER_VALUE = "true"

# Label field -> ProvisionRequest attribute
REQUEST_FIELDS: dict[str, str] = {
    "db": "database",
    "user": "user",
    "pass": "password",
}


def marker_prefix(prefix: str = DEFAULT_PREFIX) -> str:
    """Prefix of the marker labels for a request label prefix."""
    return f"{prefix}provisioned."


def marker_key(target: str, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{marker_prefix(prefix)}{target}"


def is_marked(labels: Mapping[str, str], target: str, prefix: str = DEFAULT_PREFIX) -> bool:
    """Check whether a target is already marked as provisioned in labels."""
    return labels.get(marker_key(target, prefix)) == MARKER_VALUE


@dataclass
class LabelScan:
    """Result of scanning a label set.

    ``mentioned`` holds every target with at least one request field present;
    ``requests`` only the targets whose three fields are all non-empty.
    """

    requests: dict[str, ProvisionRequest] = field(default_factory=dict)
    mentioned: set[str] = field(default_factory=set)
    fields: dict[str, dict[str, str]] = field(default_factory=dict, repr=False)

    @property
    def incomplete(self) -> set[str]:
        return self.mentioned - self.requests.keys()

    def missing_fields(self, target: str) -> list[str]:
        """Label fields that are absent or empty for a mentioned target."""
        present = self.fields.get(target, {})
        return [name for name in REQUEST_FIELDS if not present.get(name)]


def extract_requests(labels: Mapping[str, str], prefix: str = DEFAULT_PREFIX) -> LabelScan:
    """Extract provisioning requests from a container's labels.

    Keys under ``prefix`` without a ``<target>.<field>`` shape, or with a
    field other than db/user/pass, are not provisioning declarations and are
    ignored silently. Marker labels fall in that second group.

    Args:
        labels: Container labels.
        prefix: Label prefix, including the trailing dot.

    Returns:
        LabelScan with actionable requests and mentioned targets.
    """
    scan = LabelScan()

    for key, value in labels.items():
        if not key.startswith(prefix):
            continue
        target, sep, field_name = key[len(prefix) :].partition(".")
        if not sep or not target or field_name not in REQUEST_FIELDS:
            continue
        scan.mentioned.add(target)
        scan.fields.setdefault(target, {})[field_name] = value or ""

    for target in scan.mentioned:
        values = scan.fields[target]
        if all(values.get(name) for name in REQUEST_FIELDS):
            scan.requests[target] = ProvisionRequest(
                target=target,
                **{attr: values[name] for name, attr in REQUEST_FIELDS.items()},
            )

    return scan

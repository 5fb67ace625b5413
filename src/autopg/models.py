"""Pydantic models for provisioning requests and observed containers.

These models provide:
1. Validation at the boundary (a request with an empty field cannot exist)
2. A single shape for containers whether they come from a list or an inspect
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# Length of the abbreviated container ID used in log lines
SHORT_ID_LENGTH = 12


class ProvisionRequest(BaseModel):
    """Declared intent to have a database, role and password on a target."""

    model_config = {"frozen": True}

    target: Annotated[str, Field(min_length=1)]
    database: Annotated[str, Field(min_length=1)]
    user: Annotated[str, Field(min_length=1)]
    password: Annotated[str, Field(min_length=1, repr=False)]


class Workload(BaseModel):
    """A container as seen by the daemon: identity plus labels."""

    model_config = {"extra": "ignore"}

    id: Annotated[str, Field(min_length=1)]
    name: str = ""
    labels: dict[str, str] = Field(default_factory=dict)

    @field_validator("labels", mode="before")
    @classmethod
    def none_labels_to_empty(cls, v: Any) -> Any:
        # The engine reports containers without labels as null
        return v or {}

    @property
    def short_id(self) -> str:
        return self.id[:SHORT_ID_LENGTH]

    @classmethod
    def from_list_entry(cls, entry: dict[str, Any]) -> Workload:
        """Build from an entry of the container list endpoint."""
        names = entry.get("Names") or []
        name = names[0].lstrip("/") if names else ""
        return cls(id=entry["Id"], name=name, labels=entry.get("Labels"))

    @classmethod
    def from_inspect(cls, data: dict[str, Any]) -> Workload:
        """Build from a container inspect payload."""
        config = data.get("Config") or {}
        return cls(
            id=data["Id"],
            name=(data.get("Name") or "").lstrip("/"),
            labels=config.get("Labels"),
        )

"""Core data models for the session client.

All enums and dataclasses shared between the normalizer, tracker,
monitor, and recovery controller. Single source of truth to avoid
circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SessionStatusType(str, Enum):
    """Remote session states. See tracker.py for transition handling.

    State Diagram:

        IDLE ──> BUSY ──┬──> IDLE
                        ├──> RETRY ──> BUSY | IDLE | ERROR
                        └──> ERROR  (until next status push or retry)
    """
    IDLE = "idle"
    BUSY = "busy"
    RETRY = "retry"
    ERROR = "error"

    @classmethod
    def parse(cls, value: Any) -> SessionStatusType | None:
        try:
            return cls(value)
        except ValueError:
            return None


# Statuses that count as AI-originated activity.
ACTIVE_STATUSES = frozenset({SessionStatusType.BUSY, SessionStatusType.RETRY})
# Statuses that can trigger model failover.
FAILOVER_STATUSES = frozenset({SessionStatusType.ERROR, SessionStatusType.RETRY})


@dataclass(frozen=True)
class ModelDescriptor:
    """A provider + model pair. Compared structurally."""
    provider_id: str
    model_id: str

    @classmethod
    def from_dict(cls, data: Any) -> ModelDescriptor | None:
        if isinstance(data, ModelDescriptor):
            return data
        if not isinstance(data, dict):
            return None
        provider_id = data.get("providerID")
        model_id = data.get("modelID")
        if not provider_id or not model_id:
            return None
        return cls(provider_id=str(provider_id), model_id=str(model_id))

    def to_dict(self) -> dict[str, str]:
        return {"providerID": self.provider_id, "modelID": self.model_id}


@dataclass
class ModelBinding:
    """Primary/secondary/current model configuration for one session."""
    primary: ModelDescriptor
    secondary: ModelDescriptor | None = None
    current: ModelDescriptor | None = None

    def __post_init__(self) -> None:
        if self.current is None:
            self.current = self.primary

    def has_alternative(self) -> bool:
        """True when a secondary exists that differs from current."""
        return self.secondary is not None and self.current != self.secondary


@dataclass
class PendingPrompt:
    """The last user text sent to a session, kept for resubmission."""
    text: str
    agent: str | None = None
    model: ModelDescriptor | None = None
    system: str | None = None


@dataclass
class SessionInfo:
    """Remote session metadata. Fetched, never owned."""
    id: str
    title: str | None = None
    directory: str | None = None
    agent: str | None = None
    created: int | None = None
    updated: int | None = None
    model: ModelDescriptor | None = None
    secondary_model: ModelDescriptor | None = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionInfo:
        time_info = data.get("time")
        if not isinstance(time_info, dict):
            time_info = {}
        return cls(
            id=str(data.get("id", "")),
            title=data.get("title"),
            directory=data.get("directory"),
            agent=data.get("agent"),
            created=time_info.get("created"),
            updated=time_info.get("updated"),
            model=ModelDescriptor.from_dict(data.get("model")),
            secondary_model=ModelDescriptor.from_dict(data.get("secondaryModel")),
            raw=data,
        )

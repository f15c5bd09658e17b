"""Reconciliation output — actions, unmanaged resources, results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ActionType(Enum):
    """What a single action does to a resource."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class ResourceType(Enum):
    """The kind of resource an action targets."""

    CATEGORY = "category"
    CHANNEL = "channel"
    THREAD = "thread"
    BINDING = "binding"


WORKSPACE_RESOURCE_TYPES = frozenset(
    {ResourceType.CATEGORY, ResourceType.CHANNEL, ResourceType.THREAD}
)
ROUTING_RESOURCE_TYPES = frozenset({ResourceType.BINDING})


@dataclass
class Action:
    """One computed change.

    ``before`` and ``after`` are sparse maps keyed with the document's
    camelCase field names; only changed or relevant keys are present.
    """

    type: ActionType
    resource_type: ResourceType
    name: str
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None

    @property
    def is_change(self) -> bool:
        return self.type != ActionType.NOOP

    @property
    def key(self) -> tuple[str, str]:
        return (self.resource_type.value, self.name)


@dataclass
class UnmanagedResource:
    """A live resource with no desired counterpart."""

    resource_type: ResourceType
    name: str
    id: str
    topic: str | None = None


@dataclass
class ReconcileResult:
    actions: list[Action] = field(default_factory=list)
    unmanaged: list[UnmanagedResource] = field(default_factory=list)

    @property
    def changes(self) -> list[Action]:
        return [a for a in self.actions if a.is_change]

    @property
    def has_changes(self) -> bool:
        return any(a.is_change for a in self.actions)

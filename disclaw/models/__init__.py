"""Data models shared by the parser, the providers and the sync engine."""

from disclaw.models.actions import (
    ROUTING_RESOURCE_TYPES,
    WORKSPACE_RESOURCE_TYPES,
    Action,
    ActionType,
    ReconcileResult,
    ResourceType,
    UnmanagedResource,
)
from disclaw.models.state import (
    ActualBinding,
    ActualCategory,
    ActualChannel,
    ActualPin,
    ActualThread,
    DesiredBinding,
    DesiredChannel,
    DesiredThread,
    RoutingState,
    ServerDesiredState,
    ServerSnapshot,
    Snapshot,
    WorkspaceState,
)

__all__ = [
    "ROUTING_RESOURCE_TYPES",
    "WORKSPACE_RESOURCE_TYPES",
    "Action",
    "ActionType",
    "ActualBinding",
    "ActualCategory",
    "ActualChannel",
    "ActualPin",
    "ActualThread",
    "DesiredBinding",
    "DesiredChannel",
    "DesiredThread",
    "ReconcileResult",
    "ResourceType",
    "RoutingState",
    "ServerDesiredState",
    "ServerSnapshot",
    "Snapshot",
    "UnmanagedResource",
    "WorkspaceState",
]

"""State providers: the Discord guild and the OpenClaw routing store."""

from disclaw.providers.base import (
    ApplyContext,
    RoutingProvider,
    StateProvider,
    WorkspaceProvider,
    routing_actions,
    routing_contains,
    workspace_actions,
    workspace_contains,
)

__all__ = [
    "ApplyContext",
    "RoutingProvider",
    "StateProvider",
    "WorkspaceProvider",
    "routing_actions",
    "routing_contains",
    "workspace_actions",
    "workspace_contains",
]

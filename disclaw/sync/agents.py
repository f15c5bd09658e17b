"""Agent-level checks against the routing store: unbound, stale, not allow-listed."""

from __future__ import annotations

from disclaw.models import RoutingState, ServerDesiredState, WorkspaceState
from disclaw.sync.reconciler import DISCORD_CHANNEL_KIND


def unbound_agents(desired: ServerDesiredState, agents: list[str]) -> list[str]:
    """Agents known to OpenClaw that the config never binds."""
    bound = {b.agent_name for b in desired.bindings}
    return sorted(a for a in agents if a not in bound)


def stale_agents(desired: ServerDesiredState, agents: list[str]) -> list[str]:
    """Agents the config binds that OpenClaw does not know."""
    known = set(agents)
    return sorted({b.agent_name for b in desired.bindings if b.agent_name not in known})


def routing_health(
    routing: RoutingState,
    workspace: WorkspaceState,
    allowed_channel_ids: set[str],
) -> list[str]:
    """Bindings into this server whose channel the gateway will not route."""
    names = workspace.channel_names_by_id()
    warnings = []
    for b in routing.bindings:
        if b.channel != DISCORD_CHANNEL_KIND or b.peer_id not in names:
            continue
        if b.peer_id not in allowed_channel_ids:
            warnings.append(
                f'"{names[b.peer_id]}" is bound to {b.agent_id} but not allowlisted, bot cannot respond'
            )
    return warnings

"""Desired and actual state models.

Desired state is the flat, per-server structure produced by the config
parser. Actual state is what the providers fetch from Discord and from the
OpenClaw routing store. Snapshots combine the actual state of every server.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# --- Desired ---


@dataclass
class DesiredChannel:
    name: str
    topic: str | None = None
    restricted: bool = False
    private: bool = False
    add_bot: bool = False
    category_name: str | None = None


@dataclass
class DesiredThread:
    parent_channel: str
    name: str


@dataclass
class DesiredBinding:
    agent_name: str
    channel_ref: str
    require_mention: bool | None = None


@dataclass
class ServerDesiredState:
    """One target's declared structure."""

    name: str
    target_id: str
    categories: list[str] = field(default_factory=list)
    channels: list[DesiredChannel] = field(default_factory=list)
    threads: list[DesiredThread] = field(default_factory=list)
    bindings: list[DesiredBinding] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


# --- Actual: Discord workspace ---


@dataclass
class ActualCategory:
    id: str
    name: str


@dataclass
class ActualChannel:
    id: str
    name: str
    topic: str | None = None
    restricted: bool = False
    private: bool = False
    add_bot: bool = False
    category_id: str | None = None


@dataclass
class ActualThread:
    id: str
    name: str
    parent_channel_id: str


@dataclass
class ActualPin:
    message_id: str
    channel_id: str
    content: str = ""


@dataclass
class WorkspaceState:
    """Live snapshot of one guild's structure."""

    categories: list[ActualCategory] = field(default_factory=list)
    channels: list[ActualChannel] = field(default_factory=list)
    threads: list[ActualThread] = field(default_factory=list)
    pins: list[ActualPin] = field(default_factory=list)

    def category_names_by_id(self) -> dict[str, str]:
        return {c.id: c.name for c in self.categories}

    def channels_by_name(self) -> dict[str, ActualChannel]:
        """Map channel name to channel; the first channel wins on duplicates."""
        by_name: dict[str, ActualChannel] = {}
        for ch in self.channels:
            by_name.setdefault(ch.name, ch)
        return by_name

    def channel_names_by_id(self) -> dict[str, str]:
        return {c.id: c.name for c in self.channels}

    def channel_ids(self) -> set[str]:
        return {c.id for c in self.channels}


# --- Actual: OpenClaw routing store ---


@dataclass
class ActualBinding:
    """A routing-store entry: agent bound to a peer on a channel kind."""

    agent_id: str
    peer_id: str
    channel: str = "discord"
    peer_kind: str = "channel"


@dataclass
class RoutingState:
    bindings: list[ActualBinding] = field(default_factory=list)


# --- Snapshot ---


@dataclass
class ServerSnapshot:
    target_id: str
    workspace_state: WorkspaceState


@dataclass
class Snapshot:
    """Combined pre-mutation capture of every targeted server."""

    timestamp: str
    config_hash: str
    servers: dict[str, ServerSnapshot] = field(default_factory=dict)
    routing_state: RoutingState = field(default_factory=RoutingState)

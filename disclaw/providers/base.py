"""Provider contract — the blast shield between the sync engine and the outside world.

Every source/sink of live state (the Discord guild, the OpenClaw routing
store) implements ``fetch``, ``apply`` and ``verify``. ``apply`` may be
handed actions for resource types the provider does not own; it filters to
its own and ignores the rest.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, TypeVar, runtime_checkable

from disclaw.models import (
    ROUTING_RESOURCE_TYPES,
    WORKSPACE_RESOURCE_TYPES,
    Action,
    RoutingState,
    WorkspaceState,
)

if TYPE_CHECKING:
    from disclaw.providers.openclaw import GuildRoutingConfig

StateT = TypeVar("StateT")


@dataclass(frozen=True)
class ApplyContext:
    """Extra information a provider needs to scope an apply."""

    target_id: str | None = None


@runtime_checkable
class StateProvider(Protocol[StateT]):
    def fetch(self) -> StateT: ...

    def apply(self, actions: list[Action], context: ApplyContext | None = None) -> None: ...

    def verify(self, expected: StateT) -> bool: ...


class WorkspaceProvider(StateProvider[WorkspaceState], Protocol):
    """A Discord-like guild: categories, channels and threads."""

    def close(self) -> None: ...


class RoutingProvider(StateProvider[RoutingState], Protocol):
    """A routing store holding agent bindings, shared by every guild."""

    def close(self) -> None: ...

    def fetch_agents(self) -> list[str]: ...

    def fetch_routing_config(self, guild_id: str) -> GuildRoutingConfig: ...


def workspace_actions(actions: Iterable[Action]) -> list[Action]:
    return [a for a in actions if a.resource_type in WORKSPACE_RESOURCE_TYPES]


def routing_actions(actions: Iterable[Action]) -> list[Action]:
    return [a for a in actions if a.resource_type in ROUTING_RESOURCE_TYPES]


def workspace_contains(actual: WorkspaceState, expected: WorkspaceState) -> bool:
    """True when every expected category, channel and thread exists by name.

    Threads are matched on (parent channel name, thread name). An expected
    thread's parent is looked up in the expected channel list; when it is not
    there, ``parent_channel_id`` is taken to be the parent's name.
    """
    categories = {c.name for c in actual.categories}
    if any(c.name not in categories for c in expected.categories):
        return False

    channels = {c.name for c in actual.channels}
    if any(c.name not in channels for c in expected.channels):
        return False

    actual_names = actual.channel_names_by_id()
    expected_names = expected.channel_names_by_id()
    threads = {(actual_names.get(t.parent_channel_id, ""), t.name) for t in actual.threads}
    for t in expected.threads:
        parent = expected_names.get(t.parent_channel_id, t.parent_channel_id)
        if (parent, t.name) not in threads:
            return False
    return True


def routing_contains(actual: RoutingState, expected: RoutingState) -> bool:
    """True when every expected binding exists in the routing store."""
    present = {(b.agent_id, b.channel, b.peer_id) for b in actual.bindings}
    return all((b.agent_id, b.channel, b.peer_id) in present for b in expected.bindings)

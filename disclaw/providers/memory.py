"""In-memory providers.

Complete implementations of the provider contract over plain Python state.
They back the test suite and offline dry runs, and record every ``apply``
call so callers can inspect ordering.
"""

from __future__ import annotations

import copy
import itertools

from disclaw.errors import ProviderApplyError
from disclaw.models import (
    Action,
    ActionType,
    ActualBinding,
    ActualCategory,
    ActualChannel,
    ActualThread,
    ResourceType,
    RoutingState,
    WorkspaceState,
)
from disclaw.providers.base import (
    ApplyContext,
    routing_actions,
    routing_contains,
    workspace_actions,
    workspace_contains,
)
from disclaw.providers.openclaw import GuildRoutingConfig


class InMemoryWorkspaceProvider:
    """A guild held in memory."""

    def __init__(self, state: WorkspaceState | None = None, id_prefix: str = "id"):
        self.state = copy.deepcopy(state) if state else WorkspaceState()
        self.calls: list[list[Action]] = []
        self.closed = False
        self._ids = (f"{id_prefix}-{n}" for n in itertools.count(1))

    def __enter__(self) -> "InMemoryWorkspaceProvider":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True

    def fetch(self) -> WorkspaceState:
        return copy.deepcopy(self.state)

    def verify(self, expected: WorkspaceState) -> bool:
        return workspace_contains(self.fetch(), expected)

    def apply(self, actions: list[Action], context: ApplyContext | None = None) -> None:
        owned = workspace_actions(actions)
        self.calls.append(owned)
        done = 0
        for action in owned:
            if action.type == ActionType.NOOP:
                continue
            try:
                if action.resource_type == ResourceType.CATEGORY:
                    self._apply_category(action)
                elif action.resource_type == ResourceType.CHANNEL:
                    self._apply_channel(action)
                elif action.resource_type == ResourceType.THREAD:
                    self._apply_thread(action)
            except ProviderApplyError as e:
                e.applied = done
                raise
            done += 1

    def _category_id(self, name: str | None) -> str | None:
        if not name:
            return None
        for cat in self.state.categories:
            if cat.name == name:
                return cat.id
        return None

    def _channel(self, name: str) -> ActualChannel | None:
        return self.state.channels_by_name().get(name)

    def _apply_category(self, action: Action) -> None:
        if action.type == ActionType.CREATE:
            self.state.categories.append(ActualCategory(id=next(self._ids), name=action.name))
        elif action.type == ActionType.DELETE:
            cat_id = (action.before or {}).get("id") or self._category_id(action.name)
            self.state.categories = [c for c in self.state.categories if c.id != cat_id]
            for ch in self.state.channels:
                if ch.category_id == cat_id:
                    ch.category_id = None

    def _apply_channel(self, action: Action) -> None:
        after = action.after or {}
        if action.type == ActionType.CREATE:
            self.state.channels.append(
                ActualChannel(
                    id=next(self._ids),
                    name=action.name,
                    topic=after.get("topic"),
                    restricted=bool(after.get("restricted", False)),
                    private=bool(after.get("private", False)),
                    add_bot=bool(after.get("addBot", False)),
                    category_id=self._category_id(after.get("categoryName")),
                )
            )
        elif action.type == ActionType.UPDATE:
            ch = self._channel(action.name)
            if ch is None:
                raise ProviderApplyError(f'Channel "{action.name}" disappeared before update')
            ch.topic = after.get("topic")
            ch.restricted = bool(after.get("restricted", False))
            ch.private = bool(after.get("private", False))
            ch.add_bot = bool(after.get("addBot", False))
            ch.category_id = self._category_id(after.get("categoryName"))
        elif action.type == ActionType.DELETE:
            ch_id = (action.before or {}).get("id")
            if ch_id is None:
                ch = self._channel(action.name)
                ch_id = ch.id if ch else None
            self.state.channels = [c for c in self.state.channels if c.id != ch_id]
            self.state.threads = [t for t in self.state.threads if t.parent_channel_id != ch_id]

    def _apply_thread(self, action: Action) -> None:
        if action.type == ActionType.CREATE:
            parent_name = (action.after or {}).get("parentChannel", "")
            parent = self._channel(parent_name)
            if parent is None:
                raise ProviderApplyError(
                    f'Cannot create thread "{action.name}": parent channel "{parent_name}" not found'
                )
            self.state.threads.append(ActualThread(id=next(self._ids), name=action.name, parent_channel_id=parent.id))
        elif action.type == ActionType.DELETE:
            th_id = (action.before or {}).get("id")
            self.state.threads = [t for t in self.state.threads if t.id != th_id]


class InMemoryRoutingProvider:
    """A routing store held in memory, with per-guild channel gates."""

    def __init__(self, state: RoutingState | None = None, agents: list[str] | None = None):
        self.state = copy.deepcopy(state) if state else RoutingState()
        self.agents = list(agents or [])
        self.gates: dict[str, dict[str, dict]] = {}
        self.calls: list[tuple[list[Action], ApplyContext | None]] = []
        self.closed = False

    def __enter__(self) -> "InMemoryRoutingProvider":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self.closed = True

    def fetch(self) -> RoutingState:
        return copy.deepcopy(self.state)

    def fetch_agents(self) -> list[str]:
        return list(self.agents)

    def fetch_routing_config(self, guild_id: str) -> GuildRoutingConfig:
        return GuildRoutingConfig.model_validate({"channels": self.gates.get(guild_id, {})})

    def verify(self, expected: RoutingState) -> bool:
        return routing_contains(self.fetch(), expected)

    def apply(self, actions: list[Action], context: ApplyContext | None = None) -> None:
        owned = routing_actions(actions)
        self.calls.append((owned, context))
        for action in owned:
            if action.type == ActionType.CREATE:
                channel_id = (action.after or {}).get("resolvedChannelId")
                if channel_id:
                    self.state.bindings.append(
                        ActualBinding(agent_id=action.after["agentName"], peer_id=channel_id)
                    )
            elif action.type == ActionType.DELETE:
                before = action.before or {}
                self._remove(before.get("agentName"), before.get("resolvedChannelId"))

        if context and context.target_id and owned:
            self._sync_gates(context.target_id, owned)

    def _remove(self, agent_id: str | None, channel_id: str | None) -> None:
        for i, b in enumerate(self.state.bindings):
            if b.agent_id == agent_id and (not channel_id or b.peer_id == channel_id):
                del self.state.bindings[i]
                return

    def _sync_gates(self, target_id: str, actions: list[Action]) -> None:
        gates = self.gates.setdefault(target_id, {})
        bound = {b.peer_id for b in self.state.bindings}
        for action in actions:
            if action.type in (ActionType.CREATE, ActionType.NOOP):
                after = action.after or {}
                channel_id = after.get("resolvedChannelId")
                if not channel_id:
                    continue
                gate = dict(gates.get(channel_id, {}), allow=True)
                if after.get("requireMention") is not None:
                    gate["requireMention"] = after["requireMention"]
                gates[channel_id] = gate
            elif action.type == ActionType.DELETE:
                channel_id = (action.before or {}).get("resolvedChannelId")
                if channel_id and channel_id not in bound and channel_id in gates:
                    gates[channel_id] = dict(gates[channel_id], allow=False)

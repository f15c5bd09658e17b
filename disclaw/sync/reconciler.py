"""Reconciler — compute the ordered action list that moves actual toward desired.

The reconciler is a pure function: it reads the desired state of one server,
that server's live Discord state and the shared OpenClaw routing state, and
returns actions plus the live resources nothing in the config claims.

Ordering is deterministic. Categories, channels and threads are each walked
in name order (threads by parent channel, then name); bindings by agent
name, then channel reference; stale bindings by agent id, then channel id.
"""

from __future__ import annotations

from typing import Any

from disclaw.models import (
    Action,
    ActionType,
    ActualChannel,
    DesiredBinding,
    DesiredChannel,
    ReconcileResult,
    ResourceType,
    RoutingState,
    ServerDesiredState,
    UnmanagedResource,
    WorkspaceState,
)

DISCORD_CHANNEL_KIND = "discord"


def reconcile(
    desired: ServerDesiredState,
    workspace: WorkspaceState,
    routing: RoutingState,
    prune: bool = False,
) -> ReconcileResult:
    """Diff one server's desired state against its live state.

    Args:
        desired: Flat desired state for a single server.
        workspace: Live Discord state of that server.
        routing: Live routing store, shared by every server.
        prune: Emit deletes for unmanaged categories, channels and threads
            instead of reporting them. Stale bindings are always deleted.
    """
    result = ReconcileResult()

    _reconcile_categories(desired, workspace, prune, result)
    _reconcile_channels(desired, workspace, prune, result)
    _reconcile_threads(desired, workspace, prune, result)
    _reconcile_bindings(desired, workspace, routing, result)

    return result


def binding_name(agent_name: str, channel_ref: str) -> str:
    return f"{agent_name} → {channel_ref}"


# --- Categories ---


def _reconcile_categories(
    desired: ServerDesiredState,
    workspace: WorkspaceState,
    prune: bool,
    result: ReconcileResult,
) -> None:
    by_name = {}
    for cat in workspace.categories:
        by_name.setdefault(cat.name, cat)

    for name in sorted(set(desired.categories)):
        if name in by_name:
            result.actions.append(Action(ActionType.NOOP, ResourceType.CATEGORY, name))
        else:
            result.actions.append(
                Action(ActionType.CREATE, ResourceType.CATEGORY, name, after={"name": name})
            )

    wanted = set(desired.categories)
    for cat in sorted(workspace.categories, key=lambda c: (c.name, c.id)):
        if cat.name in wanted and by_name[cat.name] is cat:
            continue
        if prune:
            result.actions.append(
                Action(
                    ActionType.DELETE,
                    ResourceType.CATEGORY,
                    cat.name,
                    before={"id": cat.id},
                )
            )
        else:
            result.unmanaged.append(
                UnmanagedResource(ResourceType.CATEGORY, cat.name, cat.id)
            )


# --- Channels ---


def _reconcile_channels(
    desired: ServerDesiredState,
    workspace: WorkspaceState,
    prune: bool,
    result: ReconcileResult,
) -> None:
    by_name = workspace.channels_by_name()
    category_names = workspace.category_names_by_id()

    for ch in sorted(desired.channels, key=lambda c: c.name):
        existing = by_name.get(ch.name)
        if existing is None:
            result.actions.append(
                Action(
                    ActionType.CREATE,
                    ResourceType.CHANNEL,
                    ch.name,
                    after=_desired_channel_fields(ch),
                )
            )
            continue

        current_category = (
            category_names.get(existing.category_id) if existing.category_id else None
        )
        category_changed = current_category != ch.category_name
        changed = (
            existing.topic != ch.topic
            or category_changed
            or existing.restricted != ch.restricted
            or existing.private != ch.private
            or existing.add_bot != ch.add_bot
        )
        if not changed:
            result.actions.append(Action(ActionType.NOOP, ResourceType.CHANNEL, ch.name))
            continue

        after = _desired_channel_fields(ch)
        if category_changed and ch.category_name is None:
            after["categoryName"] = None
        result.actions.append(
            Action(
                ActionType.UPDATE,
                ResourceType.CHANNEL,
                ch.name,
                before=_actual_channel_fields(existing, current_category),
                after=after,
            )
        )

    wanted = {c.name for c in desired.channels}
    for ch in sorted(workspace.channels, key=lambda c: (c.name, c.id)):
        if ch.name in wanted and by_name[ch.name] is ch:
            continue
        if prune:
            before: dict[str, Any] = {"id": ch.id}
            if ch.topic is not None:
                before["topic"] = ch.topic
            result.actions.append(
                Action(ActionType.DELETE, ResourceType.CHANNEL, ch.name, before=before)
            )
        else:
            result.unmanaged.append(
                UnmanagedResource(ResourceType.CHANNEL, ch.name, ch.id, topic=ch.topic)
            )


def _desired_channel_fields(ch: DesiredChannel) -> dict[str, Any]:
    return _channel_fields(
        ch.topic, ch.restricted, ch.private, ch.add_bot, ch.category_name
    )


def _actual_channel_fields(ch: ActualChannel, category_name: str | None) -> dict[str, Any]:
    return _channel_fields(ch.topic, ch.restricted, ch.private, ch.add_bot, category_name)


def _channel_fields(
    topic: str | None,
    restricted: bool,
    private: bool,
    add_bot: bool,
    category_name: str | None,
) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if topic is not None:
        fields["topic"] = topic
    if restricted:
        fields["restricted"] = True
    if private:
        fields["private"] = True
    if add_bot:
        fields["addBot"] = True
    if category_name:
        fields["categoryName"] = category_name
    return fields


# --- Threads ---


def _reconcile_threads(
    desired: ServerDesiredState,
    workspace: WorkspaceState,
    prune: bool,
    result: ReconcileResult,
) -> None:
    channel_names = workspace.channel_names_by_id()

    live: dict[tuple[str, str], object] = {}
    for th in workspace.threads:
        live.setdefault((channel_names.get(th.parent_channel_id, ""), th.name), th)

    wanted = set()
    for th in sorted(desired.threads, key=lambda t: (t.parent_channel, t.name)):
        key = (th.parent_channel, th.name)
        wanted.add(key)
        if key in live:
            result.actions.append(Action(ActionType.NOOP, ResourceType.THREAD, th.name))
        else:
            result.actions.append(
                Action(
                    ActionType.CREATE,
                    ResourceType.THREAD,
                    th.name,
                    after={"parentChannel": th.parent_channel},
                )
            )

    def _sort_key(t):
        return (t.name, channel_names.get(t.parent_channel_id, ""), t.id)

    for th in sorted(workspace.threads, key=_sort_key):
        key = (channel_names.get(th.parent_channel_id, ""), th.name)
        if key in wanted and live[key] is th:
            continue
        if prune:
            result.actions.append(
                Action(
                    ActionType.DELETE,
                    ResourceType.THREAD,
                    th.name,
                    before={"id": th.id, "parentChannelId": th.parent_channel_id},
                )
            )
        else:
            result.unmanaged.append(UnmanagedResource(ResourceType.THREAD, th.name, th.id))


# --- Bindings ---


def _reconcile_bindings(
    desired: ServerDesiredState,
    workspace: WorkspaceState,
    routing: RoutingState,
    result: ReconcileResult,
) -> None:
    by_name = workspace.channels_by_name()
    live_keys = {
        (b.agent_id, b.peer_id)
        for b in routing.bindings
        if b.channel == DISCORD_CHANNEL_KIND
    }

    desired_keys: set[tuple[str, str]] = set()
    for binding in sorted(desired.bindings, key=lambda b: (b.agent_name, b.channel_ref)):
        resolved = by_name.get(binding.channel_ref)
        key = (binding.agent_name, resolved.id) if resolved else None
        if key:
            desired_keys.add(key)
        action_type = ActionType.NOOP if key in live_keys else ActionType.CREATE
        result.actions.append(
            Action(
                action_type,
                ResourceType.BINDING,
                binding_name(binding.agent_name, binding.channel_ref),
                after=_binding_fields(binding),
            )
        )

    # Only entries pointing at this server's channels can be stale here;
    # the routing store is shared with every other server in the config.
    own_channels = workspace.channel_names_by_id()
    stale = [
        b
        for b in routing.bindings
        if b.channel == DISCORD_CHANNEL_KIND and b.peer_id in own_channels
    ]
    for b in sorted(stale, key=lambda b: (b.agent_id, b.peer_id)):
        if (b.agent_id, b.peer_id) in desired_keys:
            continue
        channel_name = own_channels[b.peer_id]
        result.actions.append(
            Action(
                ActionType.DELETE,
                ResourceType.BINDING,
                binding_name(b.agent_id, channel_name),
                before={
                    "agentName": b.agent_id,
                    "channelRef": channel_name,
                    "resolvedChannelId": b.peer_id,
                },
            )
        )


def _binding_fields(binding: DesiredBinding) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "agentName": binding.agent_name,
        "channelRef": binding.channel_ref,
    }
    if binding.require_mention is not None:
        fields["requireMention"] = binding.require_mention
    return fields

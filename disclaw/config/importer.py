"""Import unmanaged Discord resources and unbound agents into the config document.

The document is edited as plain YAML data and written back with PyYAML, so
comments in the original file are not preserved.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from disclaw.errors import ConfigError
from disclaw.models import (
    ResourceType,
    RoutingState,
    ServerDesiredState,
    UnmanagedResource,
    WorkspaceState,
)
from disclaw.sync.agents import unbound_agents
from disclaw.sync.reconciler import reconcile

logger = logging.getLogger(__name__)

# Written as the channel of an imported agent; the user replaces it.
UNBOUND_AGENT_PLACEHOLDER = "TODO"


@dataclass
class ImportPlan:
    """What ``import`` would add for one server."""

    server: str
    workspace: WorkspaceState
    unmanaged: list[UnmanagedResource] = field(default_factory=list)
    unbound_agents: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.unmanaged and not self.unbound_agents

    @property
    def count(self) -> int:
        return len(self.unmanaged) + len(self.unbound_agents)


def find_unmanaged(desired: ServerDesiredState, workspace: WorkspaceState) -> list[UnmanagedResource]:
    """Live categories, channels and threads the config does not declare."""
    return reconcile(desired, workspace, RoutingState(), prune=False).unmanaged


def build_import_plan(
    desired: ServerDesiredState,
    workspace: WorkspaceState,
    agents: list[str] | None = None,
) -> ImportPlan:
    return ImportPlan(
        server=desired.name,
        workspace=workspace,
        unmanaged=find_unmanaged(desired, workspace),
        unbound_agents=unbound_agents(desired, agents or []),
    )


def _channel_entry(ch) -> dict[str, Any]:
    entry: dict[str, Any] = {"name": ch.name}
    if ch.topic:
        entry["topic"] = ch.topic
    if ch.restricted:
        entry["restricted"] = True
    if ch.private:
        entry["private"] = True
    if ch.add_bot:
        entry["addBot"] = True
    return entry


def _server_node(document: dict, server: str, single_server: bool) -> dict:
    if single_server:
        return document
    try:
        return document["servers"][server]
    except (KeyError, TypeError) as e:
        raise ConfigError(f'Server "{server}" not found in config document') from e


def _find_channel_entry(channels: list[dict], name: str) -> dict | None:
    for entry in channels:
        if "category" in entry:
            for ch in entry.get("channels") or []:
                if ch.get("name") == name:
                    return ch
        elif entry.get("name") == name:
            return entry
    return None


def apply_import(document: dict, plan: ImportPlan, single_server: bool = True) -> int:
    """Add everything in ``plan`` to ``document`` in place.

    Unmanaged categories are added as groups holding their unmanaged
    channels; remaining channels are added standalone; threads are appended
    to their parent channel's entry when it exists in the document.

    Returns:
        Number of resources added.
    """
    node = _server_node(document, plan.server, single_server)
    channels = node.setdefault("channels", [])
    live_channels = {ch.id: ch for ch in plan.workspace.channels}
    live_threads = {th.id: th for th in plan.workspace.threads}
    unmanaged_channel_ids = {
        r.id for r in plan.unmanaged if r.resource_type == ResourceType.CHANNEL
    }

    imported = 0
    nested: set[str] = set()

    for r in plan.unmanaged:
        if r.resource_type != ResourceType.CATEGORY:
            continue
        children = [
            ch
            for ch in plan.workspace.channels
            if ch.category_id == r.id and ch.id in unmanaged_channel_ids
        ]
        nested.update(ch.id for ch in children)
        channels.append({"category": r.name, "channels": [_channel_entry(ch) for ch in children]})
        imported += 1 + len(children)

    for r in plan.unmanaged:
        if r.resource_type == ResourceType.CHANNEL and r.id not in nested:
            channels.append(_channel_entry(live_channels[r.id]))
            imported += 1
        elif r.resource_type == ResourceType.THREAD:
            thread = live_threads.get(r.id)
            parent = live_channels.get(thread.parent_channel_id) if thread else None
            entry = _find_channel_entry(channels, parent.name) if parent else None
            if entry is None:
                logger.warning("Skipping thread %r: parent channel is not in the config", r.name)
                continue
            entry.setdefault("threads", []).append(r.name)
            imported += 1

    if plan.unbound_agents:
        openclaw = node.get("openclaw") or {}
        node["openclaw"] = openclaw
        agents = openclaw.get("agents") or {}
        openclaw["agents"] = agents
        for agent in plan.unbound_agents:
            agents[agent] = UNBOUND_AGENT_PLACEHOLDER
            imported += 1

    return imported


def read_document(path: str | Path) -> dict:
    with open(path, encoding="utf-8") as f:
        document = yaml.safe_load(f)
    if not isinstance(document, dict):
        raise ConfigError(f"{path} is not a YAML mapping")
    return document


def write_document(path: str | Path, document: dict) -> None:
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(document, f, sort_keys=False, allow_unicode=True)

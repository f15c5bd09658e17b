"""Snapshot store — one combined pre-mutation capture per config file.

A snapshot is written immediately before any mutating apply or rollback and
overwrites the previous one: exactly one level of history. Deeper history is
left to whatever version control tracks the config document itself.

Older snapshots held a single server's state inline at the top level; they
are upgraded on load into the multi-server shape under the ``default`` name.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from disclaw.models import (
    ActualBinding,
    ActualCategory,
    ActualChannel,
    ActualPin,
    ActualThread,
    RoutingState,
    ServerSnapshot,
    Snapshot,
    WorkspaceState,
)

logger = logging.getLogger(__name__)

LEGACY_SERVER_NAME = "default"
LEGACY_TARGET_ID = "unknown"
SNAPSHOT_SUFFIX = "-snapshot.json"


def save_snapshot(snapshot: Snapshot, path: str | Path) -> Path:
    """Serialize ``snapshot`` to ``path``, replacing whatever was there."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(snapshot_to_dict(snapshot), f, indent=2)
    logger.debug("Snapshot written to %s (%d server(s))", path, len(snapshot.servers))
    return path


def load_snapshot(path: str | Path) -> Snapshot | None:
    """Load the snapshot at ``path``.

    Returns None when the file does not exist or cannot be parsed, so
    callers can branch on "nothing to roll back to".
    """
    path = Path(path)
    if not path.exists():
        return None
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        return snapshot_from_dict(data)
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
        logger.warning("Ignoring unreadable snapshot %s: %s", path, e)
        return None


def new_snapshot(
    config_hash: str,
    servers: dict[str, ServerSnapshot],
    routing_state: RoutingState,
) -> Snapshot:
    return Snapshot(
        timestamp=datetime.now(timezone.utc).isoformat(),
        config_hash=config_hash,
        servers=dict(servers),
        routing_state=routing_state,
    )


def resolve_snapshot_path(config_path: str | Path) -> Path:
    """Derive the snapshot path from the config path.

    ``/etc/disclaw/prod.v2.yaml`` becomes
    ``/etc/disclaw/prod-v2-snapshot.json``.
    """
    config_path = Path(config_path)
    slug = config_path.stem.replace(".", "-")
    return config_path.parent / f"{slug}{SNAPSHOT_SUFFIX}"


def config_hash(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:12]


# --- Serialization ---


def snapshot_to_dict(snapshot: Snapshot) -> dict:
    return {
        "timestamp": snapshot.timestamp,
        "configHash": snapshot.config_hash,
        "servers": {
            name: {
                "targetId": server.target_id,
                "workspaceState": workspace_to_dict(server.workspace_state),
            }
            for name, server in snapshot.servers.items()
        },
        "routingState": routing_to_dict(snapshot.routing_state),
    }


def snapshot_from_dict(data: dict) -> Snapshot:
    if "servers" not in data:
        data = _migrate_legacy(data)

    servers = {
        name: ServerSnapshot(
            target_id=str(entry.get("targetId", entry.get("guildId", LEGACY_TARGET_ID))),
            workspace_state=workspace_from_dict(
                entry.get("workspaceState", entry.get("discord", {}))
            ),
        )
        for name, entry in data["servers"].items()
    }
    return Snapshot(
        timestamp=data.get("timestamp", ""),
        config_hash=data.get("configHash", ""),
        servers=servers,
        routing_state=routing_from_dict(data.get("routingState", data.get("openclaw", {}))),
    )


def _migrate_legacy(data: dict) -> dict:
    """Lift a single-server snapshot into the multi-server shape."""
    workspace = data.get("workspaceState", data.get("discord"))
    if workspace is None:
        raise KeyError("snapshot has neither 'servers' nor an inline workspace state")
    logger.info("Upgrading legacy single-server snapshot")
    return {
        "timestamp": data.get("timestamp", ""),
        "configHash": data.get("configHash", ""),
        "servers": {
            LEGACY_SERVER_NAME: {
                "targetId": LEGACY_TARGET_ID,
                "workspaceState": workspace,
            }
        },
        "routingState": data.get("routingState", data.get("openclaw", {})),
    }


def workspace_to_dict(state: WorkspaceState) -> dict:
    channels = []
    for ch in state.channels:
        entry: dict = {"id": ch.id, "name": ch.name}
        if ch.topic is not None:
            entry["topic"] = ch.topic
        if ch.restricted:
            entry["restricted"] = True
        if ch.private:
            entry["private"] = True
        if ch.add_bot:
            entry["addBot"] = True
        if ch.category_id is not None:
            entry["categoryId"] = ch.category_id
        channels.append(entry)

    return {
        "categories": [{"id": c.id, "name": c.name} for c in state.categories],
        "channels": channels,
        "threads": [
            {"id": t.id, "name": t.name, "parentChannelId": t.parent_channel_id}
            for t in state.threads
        ],
        "pins": [
            {"messageId": p.message_id, "channelId": p.channel_id, "content": p.content}
            for p in state.pins
        ],
    }


def workspace_from_dict(data: dict) -> WorkspaceState:
    categories = data.get("categories")
    if categories is None:
        # Oldest snapshots carried one managed category under "category".
        categories = [data["category"]] if data.get("category") else []

    return WorkspaceState(
        categories=[ActualCategory(id=str(c["id"]), name=c["name"]) for c in categories],
        channels=[
            ActualChannel(
                id=str(c["id"]),
                name=c["name"],
                topic=c.get("topic"),
                restricted=bool(c.get("restricted", False)),
                private=bool(c.get("private", False)),
                add_bot=bool(c.get("addBot", False)),
                category_id=c.get("categoryId"),
            )
            for c in data.get("channels", [])
        ],
        threads=[
            ActualThread(
                id=str(t["id"]),
                name=t["name"],
                parent_channel_id=str(t["parentChannelId"]),
            )
            for t in data.get("threads", [])
        ],
        pins=[
            ActualPin(
                message_id=str(p["messageId"]),
                channel_id=str(p["channelId"]),
                content=p.get("content", ""),
            )
            for p in data.get("pins", [])
        ],
    )


def routing_to_dict(state: RoutingState) -> dict:
    return {"bindings": [binding_to_dict(b) for b in state.bindings]}


def routing_from_dict(data: dict) -> RoutingState:
    return RoutingState(bindings=[binding_from_dict(b) for b in data.get("bindings", [])])


def binding_to_dict(binding: ActualBinding) -> dict:
    return {
        "agentId": binding.agent_id,
        "match": {
            "channel": binding.channel,
            "peer": {"kind": binding.peer_kind, "id": binding.peer_id},
        },
    }


def binding_from_dict(data: dict) -> ActualBinding:
    match = data["match"]
    peer = match.get("peer", {})
    return ActualBinding(
        agent_id=data["agentId"],
        peer_id=str(peer["id"]),
        channel=match.get("channel", "discord"),
        peer_kind=peer.get("kind", "channel"),
    )

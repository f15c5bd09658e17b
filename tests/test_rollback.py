"""Tests for the rollback engine and drift detection."""

import json
import tempfile
from pathlib import Path

import pytest

from disclaw.config import parse_config
from disclaw.errors import ConfigError, ProviderFetchError, SnapshotNotFoundError
from disclaw.models import (
    Action,
    ActionType,
    ActualBinding,
    ActualCategory,
    ActualChannel,
    ResourceType,
    RoutingState,
    ServerSnapshot,
    WorkspaceState,
)
from disclaw.providers.memory import InMemoryRoutingProvider, InMemoryWorkspaceProvider
from disclaw.sync.apply import ApplyOptions, ApplyOrchestrator, TargetStatus
from disclaw.sync.drift import detect_drift
from disclaw.sync.rollback import (
    PRE_ROLLBACK_PREFIX,
    RollbackEngine,
    RollbackOptions,
    resolve_target_id,
    snapshot_to_desired,
)
from disclaw.sync.snapshot import LEGACY_TARGET_ID, load_snapshot, new_snapshot, save_snapshot

SINGLE_CONFIG = """
version: 1
managedBy: disclaw
guild: "111"
channels:
  - name: general
openclaw:
  agents:
    alice: general
"""


class UnreachableWorkspaceProvider(InMemoryWorkspaceProvider):
    def fetch(self):
        raise ProviderFetchError("guild unreachable")


def _factory(providers):
    return lambda name, target_id: providers[target_id]


def _rollback(config_text, providers, routing, snapshot_path, **options):
    config = parse_config(config_text)
    with RollbackEngine(
        config, _factory(providers), routing, RollbackOptions(snapshot_path=snapshot_path, **options)
    ) as engine:
        return engine.run()


def _save(path, servers, routing_state=None, config_hash="cafe"):
    save_snapshot(new_snapshot(config_hash, servers, routing_state or RoutingState()), path)


# --- Restore Tests ---


def test_rollback_restores_pruned_channel():
    live = WorkspaceState(
        channels=[
            ActualChannel(id="c1", name="general"),
            ActualChannel(id="c2", name="random", topic="chatter"),
        ]
    )
    workspace = InMemoryWorkspaceProvider(live, id_prefix="new")
    routing = InMemoryRoutingProvider(RoutingState(bindings=[ActualBinding(agent_id="alice", peer_id="c1")]))
    providers = {"111": workspace}

    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot_path = Path(tmpdir) / "snap.json"
        config = parse_config(SINGLE_CONFIG)
        options = ApplyOptions(prune=True, confirm=True, snapshot_path=snapshot_path)
        with ApplyOrchestrator(config, _factory(providers), routing, options) as orchestrator:
            _, report = orchestrator.run()
        assert report.ok
        assert [c.name for c in workspace.state.channels] == ["general"]

        plan, report = _rollback(SINGLE_CONFIG, providers, routing, snapshot_path, confirm=True)

    assert report.ok
    assert plan.drift == []
    restored = workspace.state.channels_by_name()
    assert set(restored) == {"general", "random"}
    assert restored["general"].id == "c1"
    assert restored["random"].topic == "chatter"
    assert restored["random"].id.startswith("new-")
    assert routing.state.bindings == [ActualBinding(agent_id="alice", peer_id="c1")]


def test_rollback_dry_run_changes_nothing():
    workspace = InMemoryWorkspaceProvider(WorkspaceState(channels=[ActualChannel(id="c1", name="general")]))
    routing = InMemoryRoutingProvider()

    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot_path = Path(tmpdir) / "snap.json"
        captured = WorkspaceState(channels=[ActualChannel(id="c1", name="general"), ActualChannel(id="c2", name="gone")])
        _save(snapshot_path, {"default": ServerSnapshot("111", captured)})

        plan, report = _rollback(SINGLE_CONFIG, {"111": workspace}, routing, snapshot_path)
        assert load_snapshot(snapshot_path).config_hash == "cafe"

    assert plan.has_changes
    assert [t.status for t in report.targets] == [TargetStatus.DRY_RUN]
    assert workspace.calls == []
    assert routing.calls == []


def test_pre_rollback_snapshot_replaces_previous():
    workspace = InMemoryWorkspaceProvider(WorkspaceState(channels=[ActualChannel(id="c1", name="general")]))

    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot_path = Path(tmpdir) / "snap.json"
        captured = WorkspaceState(channels=[ActualChannel(id="c1", name="general"), ActualChannel(id="c2", name="gone")])
        _save(snapshot_path, {"default": ServerSnapshot("111", captured)})

        _, report = _rollback(
            SINGLE_CONFIG,
            {"111": workspace},
            InMemoryRoutingProvider(),
            snapshot_path,
            confirm=True,
            config_hash="abc",
        )
        pre = load_snapshot(snapshot_path)

    assert report.snapshot_path == snapshot_path
    assert pre.config_hash == f"{PRE_ROLLBACK_PREFIX}abc"
    assert [c.name for c in pre.servers["default"].workspace_state.channels] == ["general"]
    assert sorted(c.name for c in workspace.state.channels) == ["general", "gone"]


def test_pre_rollback_snapshot_keeps_unreachable_server():
    config = """
version: 1
managedBy: disclaw
servers:
  alpha:
    guild: "111"
    channels:
      - name: general
  beta:
    guild: "222"
    channels:
      - name: deploys
"""
    providers = {
        "111": InMemoryWorkspaceProvider(WorkspaceState(channels=[ActualChannel(id="c1", name="general")])),
        "222": UnreachableWorkspaceProvider(),
    }

    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot_path = Path(tmpdir) / "snap.json"
        alpha_captured = WorkspaceState(
            channels=[ActualChannel(id="c1", name="general"), ActualChannel(id="c2", name="gone")]
        )
        beta_captured = WorkspaceState(channels=[ActualChannel(id="c5", name="deploys")])
        _save(
            snapshot_path,
            {"alpha": ServerSnapshot("111", alpha_captured), "beta": ServerSnapshot("222", beta_captured)},
        )

        _, report = _rollback(config, providers, InMemoryRoutingProvider(), snapshot_path, confirm=True)
        after = load_snapshot(snapshot_path)

    assert [(t.name, t.status) for t in report.targets] == [
        ("alpha", TargetStatus.APPLIED),
        ("beta", TargetStatus.FAILED),
    ]
    assert set(after.servers) == {"alpha", "beta"}
    assert [c.name for c in after.servers["alpha"].workspace_state.channels] == ["general"]
    assert after.servers["beta"] == ServerSnapshot("222", beta_captured)


def test_missing_snapshot_raises():
    with tempfile.TemporaryDirectory() as tmpdir:
        with pytest.raises(SnapshotNotFoundError, match="Nothing to roll back to"):
            _rollback(SINGLE_CONFIG, {}, InMemoryRoutingProvider(), Path(tmpdir) / "absent.json")


def test_rollback_without_routing_skips_bindings():
    workspace = InMemoryWorkspaceProvider()

    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot_path = Path(tmpdir) / "snap.json"
        captured = WorkspaceState(channels=[ActualChannel(id="c1", name="general")])
        _save(
            snapshot_path,
            {"default": ServerSnapshot("111", captured)},
            RoutingState(bindings=[ActualBinding(agent_id="alice", peer_id="c1")]),
        )
        plan, report = _rollback(SINGLE_CONFIG, {"111": workspace}, None, snapshot_path, confirm=True)

    assert plan.warnings == ["OpenClaw not available, bindings will not be rolled back"]
    assert not any(a.resource_type == ResourceType.BINDING for t in plan.targets for a in t.actions)
    assert report.ok
    assert [c.name for c in workspace.state.channels] == ["general"]


# --- Drift Tests ---


def test_drift_when_channel_deleted_outside_disclaw():
    workspace = InMemoryWorkspaceProvider()
    routing = InMemoryRoutingProvider()
    config = """
version: 1
managedBy: disclaw
guild: "111"
channels:
  - name: general
"""

    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot_path = Path(tmpdir) / "snap.json"
        captured = WorkspaceState(channels=[ActualChannel(id="c1", name="general")])
        _save(snapshot_path, {"default": ServerSnapshot("111", captured)})
        plan, _ = _rollback(config, {"111": workspace}, routing, snapshot_path)

    assert [d.message for d in plan.drift] == ['DRIFT: channel "general" expected noop, found create']


def test_discord_changed_but_routing_did_not():
    # general was deleted and recreated by hand after the snapshot; the
    # binding still points at the old id.
    workspace = InMemoryWorkspaceProvider(WorkspaceState(channels=[ActualChannel(id="c9", name="general")]))
    routing = InMemoryRoutingProvider(RoutingState(bindings=[ActualBinding(agent_id="alice", peer_id="c1")]))

    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot_path = Path(tmpdir) / "snap.json"
        captured = WorkspaceState(channels=[ActualChannel(id="c1", name="general")])
        _save(
            snapshot_path,
            {"default": ServerSnapshot("111", captured)},
            RoutingState(bindings=[ActualBinding(agent_id="alice", peer_id="c1")]),
        )
        plan, report = _rollback(SINGLE_CONFIG, {"111": workspace}, routing, snapshot_path, confirm=True)

    assert [(d.resource_type, d.name, d.expected, d.found) for d in plan.drift] == [
        (ResourceType.BINDING, "alice → general", ActionType.NOOP, ActionType.CREATE)
    ]
    assert report.ok
    assert ActualBinding(agent_id="alice", peer_id="c9") in routing.state.bindings


def test_drift_is_labelled_with_server_in_multi_server_configs():
    config = """
version: 1
managedBy: disclaw
servers:
  main:
    guild: "111"
    channels:
      - name: general
"""
    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot_path = Path(tmpdir) / "snap.json"
        captured = WorkspaceState(channels=[ActualChannel(id="c1", name="general")])
        _save(snapshot_path, {"main": ServerSnapshot("111", captured)})
        plan, _ = _rollback(config, {"111": InMemoryWorkspaceProvider()}, None, snapshot_path)

    assert [d.message for d in plan.drift] == ['main: DRIFT: channel "general" expected noop, found create']


def test_detect_drift_ignores_resources_missing_from_either_plan():
    snapshot_actions = [
        Action(ActionType.NOOP, ResourceType.CHANNEL, "general"),
        Action(ActionType.CREATE, ResourceType.CHANNEL, "planned"),
    ]
    current_actions = [Action(ActionType.NOOP, ResourceType.CHANNEL, "general")]

    assert detect_drift(snapshot_actions, current_actions) == []


# --- Snapshot Mapping Tests ---


def test_snapshot_to_desired_keeps_flags_and_own_bindings():
    ws = WorkspaceState(
        categories=[ActualCategory(id="k1", name="Ops"), ActualCategory(id="k2", name="Empty")],
        channels=[
            ActualChannel(id="c1", name="secret", private=True, add_bot=True, category_id="k1"),
            ActualChannel(id="c2", name="secret"),
        ],
    )
    routing = RoutingState(
        bindings=[
            ActualBinding(agent_id="alice", peer_id="c1"),
            ActualBinding(agent_id="alice", peer_id="c2"),
            ActualBinding(agent_id="bob", peer_id="other-guild-channel"),
        ]
    )

    desired = snapshot_to_desired("main", ServerSnapshot("111", ws), routing, "111")

    assert desired.categories == ["Ops", "Empty"]
    assert len(desired.channels) == 1
    ch = desired.channels[0]
    assert (ch.private, ch.add_bot, ch.category_name) == (True, True, "Ops")
    assert [(b.agent_name, b.channel_ref) for b in desired.bindings] == [("alice", "secret")]


def test_legacy_snapshot_maps_to_configured_guild():
    workspace = InMemoryWorkspaceProvider()
    legacy = {
        "timestamp": "t",
        "configHash": "old",
        "discord": {"channels": [{"id": "c1", "name": "general"}]},
        "openclaw": {"bindings": []},
    }
    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot_path = Path(tmpdir) / "snap.json"
        snapshot_path.write_text(json.dumps(legacy))
        plan, _ = _rollback(SINGLE_CONFIG, {"111": workspace}, InMemoryRoutingProvider(), snapshot_path)

    assert [(t.name, t.target_id) for t in plan.targets] == [("default", "111")]
    assert plan.targets[0].failure is None


def test_legacy_target_needs_a_matching_server():
    config = parse_config(
        """
version: 1
managedBy: disclaw
servers:
  a:
    guild: "1"
    channels: []
  b:
    guild: "2"
    channels: []
"""
    )
    server = ServerSnapshot(LEGACY_TARGET_ID, WorkspaceState())

    assert resolve_target_id("a", server, config) == "1"
    assert resolve_target_id("x", ServerSnapshot("9", WorkspaceState()), config) == "9"
    with pytest.raises(ConfigError):
        resolve_target_id("default", server, config)

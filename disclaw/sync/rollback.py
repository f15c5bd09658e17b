"""Rollback engine — restore live state to the last snapshot.

The snapshot is turned back into a desired state per server and reconciled
against what is live now, so rollback is an ordinary apply of a synthetic
config. Applying goes through the same phase ordering, binding resolution,
verification and per-server isolation as a normal apply.

Deleted Discord resources come back as new resources with new ids; message
history and pins are not restored.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from disclaw.config.parser import ParsedConfig, flatten_server
from disclaw.errors import ConfigError, SnapshotNotFoundError
from disclaw.models import (
    DesiredBinding,
    DesiredChannel,
    DesiredThread,
    RoutingState,
    ServerDesiredState,
    ServerSnapshot,
    Snapshot,
)
from disclaw.providers.base import RoutingProvider, workspace_actions
from disclaw.sync.apply import (
    ApplyReport,
    Stage,
    TargetFailure,
    TargetPlan,
    WorkspaceFactory,
    WorkspacePool,
    capture_servers,
    dry_run_report,
    execute_targets,
)
from disclaw.sync.drift import DriftWarning, detect_drift
from disclaw.sync.reconciler import DISCORD_CHANNEL_KIND, reconcile
from disclaw.sync.snapshot import LEGACY_TARGET_ID, load_snapshot, new_snapshot, save_snapshot

logger = logging.getLogger(__name__)

PRE_ROLLBACK_PREFIX = "pre-rollback-"


@dataclass
class RollbackOptions:
    snapshot_path: Path
    prune: bool = False
    confirm: bool = False
    config_hash: str = ""


@dataclass
class RollbackPlan:
    snapshot: Snapshot
    targets: list[TargetPlan] = field(default_factory=list)
    drift: list[DriftWarning] = field(default_factory=list)
    routing_state: RoutingState = field(default_factory=RoutingState)
    warnings: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return any(t.has_changes for t in self.targets)


def snapshot_to_desired(name: str, server: ServerSnapshot, routing: RoutingState, target_id: str) -> ServerDesiredState:
    """Rebuild a desired state that describes exactly what the snapshot captured.

    Bindings are restricted to channels captured for this server, so a
    shared routing store never leaks another server's bindings in here.
    """
    ws = server.workspace_state
    category_names = ws.category_names_by_id()
    channel_names = ws.channel_names_by_id()

    desired = ServerDesiredState(name=name, target_id=target_id)
    for cat in ws.categories:
        if cat.name not in desired.categories:
            desired.categories.append(cat.name)

    seen_channels: set[str] = set()
    for ch in ws.channels:
        if ch.name in seen_channels:
            continue
        seen_channels.add(ch.name)
        desired.channels.append(
            DesiredChannel(
                name=ch.name,
                topic=ch.topic,
                restricted=ch.restricted,
                private=ch.private,
                add_bot=ch.add_bot,
                category_name=category_names.get(ch.category_id) if ch.category_id else None,
            )
        )

    seen_threads: set[tuple[str, str]] = set()
    for th in ws.threads:
        parent = channel_names.get(th.parent_channel_id)
        if parent is None or (parent, th.name) in seen_threads:
            continue
        seen_threads.add((parent, th.name))
        desired.threads.append(DesiredThread(parent_channel=parent, name=th.name))

    seen_bindings: set[tuple[str, str]] = set()
    for b in routing.bindings:
        if b.channel != DISCORD_CHANNEL_KIND or b.peer_id not in channel_names:
            continue
        key = (b.agent_id, channel_names[b.peer_id])
        if key in seen_bindings:
            continue
        seen_bindings.add(key)
        desired.bindings.append(DesiredBinding(agent_name=b.agent_id, channel_ref=key[1]))

    return desired


def resolve_target_id(name: str, server: ServerSnapshot, config: ParsedConfig) -> str:
    """The guild a captured server maps to now.

    Legacy single-server snapshots did not record the guild; they map to the
    configured server of the same name, or to the only configured server.
    """
    if server.target_id != LEGACY_TARGET_ID:
        return server.target_id
    if name in config.servers:
        return config.servers[name].guild
    if len(config.servers) == 1:
        return next(iter(config.servers.values())).guild
    raise ConfigError(
        f'Snapshot server "{name}" has no recorded guild and matches no configured server'
    )


class RollbackEngine:
    """Plans and applies a rollback to the last snapshot."""

    def __init__(
        self,
        config: ParsedConfig,
        workspace_factory: WorkspaceFactory,
        routing_provider: RoutingProvider | None,
        options: RollbackOptions,
    ):
        self.config = config
        self.routing = routing_provider
        self.options = options
        self._pool = WorkspacePool(workspace_factory)

    def __enter__(self) -> "RollbackEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._pool.close()

    def run(self) -> tuple[RollbackPlan, ApplyReport]:
        plan = self.plan()
        return plan, self.execute(plan)

    def plan(self) -> RollbackPlan:
        """Load the snapshot, reconcile it against live state, detect drift.

        Raises:
            SnapshotNotFoundError: if there is no readable snapshot.
            ProviderFetchError: if the routing state cannot be read.
        """
        snapshot = load_snapshot(self.options.snapshot_path)
        if snapshot is None:
            raise SnapshotNotFoundError(str(self.options.snapshot_path))
        logger.info("Loaded snapshot from %s (config hash %s)", snapshot.timestamp, snapshot.config_hash)

        plan = RollbackPlan(snapshot=snapshot)
        if self.routing is None:
            plan.warnings.append("OpenClaw not available, bindings will not be rolled back")
        else:
            plan.routing_state = self.routing.fetch()

        for name, server in snapshot.servers.items():
            target = self._plan_target(name, server, snapshot, plan.routing_state)
            plan.targets.append(target)
            if target.failure is None:
                plan.drift.extend(self._drift(name, server, snapshot, target))
        return plan

    def _plan_target(
        self,
        name: str,
        server: ServerSnapshot,
        snapshot: Snapshot,
        routing_state: RoutingState,
    ) -> TargetPlan:
        try:
            target_id = resolve_target_id(name, server, self.config)
        except ConfigError as e:
            return TargetPlan(
                name=name,
                target_id=server.target_id,
                desired=ServerDesiredState(name=name, target_id=server.target_id),
                failure=TargetFailure(stage=Stage.FETCH, error=str(e)),
            )

        desired = snapshot_to_desired(name, server, snapshot.routing_state, target_id)
        target = TargetPlan(name=name, target_id=target_id, desired=desired)
        try:
            target.workspace = self._pool.get(name, target_id).fetch()
        except Exception as e:
            logger.error("%s: fetching Discord state failed: %s", name, e)
            target.failure = TargetFailure(stage=Stage.FETCH, error=str(e))
            return target

        result = reconcile(desired, target.workspace, routing_state, prune=self.options.prune)
        target.actions = result.actions if self.routing is not None else workspace_actions(result.actions)
        target.unmanaged = result.unmanaged
        return target

    def _drift(self, name: str, server: ServerSnapshot, snapshot: Snapshot, target: TargetPlan) -> list[DriftWarning]:
        config_server = self.config.servers.get(name)
        if config_server is None and len(self.config.servers) == 1:
            config_server = next(iter(self.config.servers.values()))
        if config_server is None or config_server.guild != target.target_id:
            return []

        intended = reconcile(
            flatten_server(name, config_server),
            server.workspace_state,
            snapshot.routing_state,
            prune=self.options.prune,
        )
        label = None if self.config.single_server else name
        return detect_drift(intended.actions, target.actions, server=label)

    def execute(self, plan: RollbackPlan) -> ApplyReport:
        if not self.options.confirm:
            return dry_run_report(plan.targets)

        report = ApplyReport()
        if plan.has_changes:
            pre = new_snapshot(
                f"{PRE_ROLLBACK_PREFIX}{self.options.config_hash}",
                capture_servers(plan.targets, plan.snapshot.servers),
                plan.routing_state,
            )
            report.snapshot_path = save_snapshot(pre, self.options.snapshot_path)
            logger.info("Pre-rollback snapshot saved: %s", report.snapshot_path)

        report.targets = execute_targets(plan.targets, self._pool, self.routing)
        return report

"""Apply orchestrator — plan and apply the config across every server.

A run fetches the shared routing state once, then each server's Discord
state, reconciles every server, and (when confirmed) writes one combined
snapshot before touching anything. Each server is then applied on its own:

1. workspace creates and updates, then workspace deletes (threads, then
   channels, then categories)
2. binding actions, with channel references resolved against the freshly
   re-fetched workspace so newly created channels get their real ids
3. verification of both providers

A failure at any stage is recorded against that server and the next server
proceeds. There is no compensation across providers; the snapshot is the
recovery path.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from disclaw.config.parser import ParsedConfig
from disclaw.errors import ProviderApplyError, ProviderVerifyError
from disclaw.models import (
    Action,
    ActionType,
    ActualBinding,
    ActualCategory,
    ActualChannel,
    ActualThread,
    ResourceType,
    RoutingState,
    ServerDesiredState,
    ServerSnapshot,
    UnmanagedResource,
    WorkspaceState,
)
from disclaw.providers.base import (
    ApplyContext,
    RoutingProvider,
    WorkspaceProvider,
    routing_actions,
    workspace_actions,
)
from disclaw.sync.filters import ResourceTypeFilter, filter_actions, filter_unmanaged
from disclaw.sync.reconciler import reconcile
from disclaw.sync.snapshot import load_snapshot, new_snapshot, save_snapshot

logger = logging.getLogger(__name__)

ROLLBACK_HINT = "Run: disclaw rollback --yes"

# (server name, target id) -> provider for that server's workspace
WorkspaceFactory = Callable[[str, str], WorkspaceProvider]


class TargetStatus(Enum):
    DRY_RUN = "dry-run"
    UNCHANGED = "unchanged"
    APPLIED = "applied"
    FAILED = "failed"


class Stage:
    FETCH = "fetch"
    WORKSPACE = "workspace"
    ROUTING = "routing"
    VERIFY = "verify"


@dataclass
class TargetFailure:
    """Where and how a server's apply stopped."""

    stage: str
    error: str
    applied: int = 0
    total: int = 0
    hint: str = ROLLBACK_HINT

    def summary(self) -> str:
        if self.stage == Stage.WORKSPACE:
            return f"failed after {self.applied}/{self.total} Discord changes: {self.error}"
        return f"{self.stage} failed: {self.error}"


@dataclass
class TargetPlan:
    """One server's reconciled plan, or the failure that prevented it."""

    name: str
    target_id: str
    desired: ServerDesiredState
    workspace: WorkspaceState | None = None
    actions: list[Action] = field(default_factory=list)
    unmanaged: list[UnmanagedResource] = field(default_factory=list)
    failure: TargetFailure | None = None

    @property
    def changes(self) -> list[Action]:
        return [a for a in self.actions if a.is_change]

    @property
    def has_changes(self) -> bool:
        return any(a.is_change for a in self.actions)


@dataclass
class ApplyPlan:
    targets: list[TargetPlan] = field(default_factory=list)
    routing_state: RoutingState = field(default_factory=RoutingState)
    routing_available: bool = True
    warnings: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return any(t.has_changes for t in self.targets)

    @property
    def actions(self) -> list[Action]:
        return [a for t in self.targets for a in t.actions]


@dataclass
class TargetResult:
    name: str
    target_id: str
    status: TargetStatus
    actions: list[Action] = field(default_factory=list)
    failure: TargetFailure | None = None


@dataclass
class ApplyReport:
    targets: list[TargetResult] = field(default_factory=list)
    snapshot_path: Path | None = None

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed(self) -> list[TargetResult]:
        return [t for t in self.targets if t.status == TargetStatus.FAILED]

    def summary(self) -> str:
        counts: dict[str, int] = {}
        for t in self.targets:
            counts[t.status.value] = counts.get(t.status.value, 0) + 1
        return ", ".join(f"{n} {status}" for status, n in counts.items()) or "no servers"


@dataclass
class ApplyOptions:
    server: str | None = None
    prune: bool = False
    confirm: bool = False
    type_filter: ResourceTypeFilter | None = None
    snapshot_path: Path | None = None
    config_hash: str = ""


# ---------------------------------------------------------------------------
# Workspace providers
# ---------------------------------------------------------------------------


class WorkspacePool:
    """Opens one workspace provider per server on demand and closes them all."""

    def __init__(self, factory: WorkspaceFactory):
        self._factory = factory
        self._providers: dict[str, WorkspaceProvider] = {}

    def get(self, name: str, target_id: str) -> WorkspaceProvider:
        if name not in self._providers:
            self._providers[name] = self._factory(name, target_id)
        return self._providers[name]

    def close(self) -> None:
        for name, provider in self._providers.items():
            try:
                provider.close()
            except Exception as e:
                logger.warning("Closing provider for %s failed: %s", name, e)
        self._providers.clear()


# ---------------------------------------------------------------------------
# Shared per-server steps
# ---------------------------------------------------------------------------


def resolve_binding_actions(actions: list[Action], workspace: WorkspaceState) -> list[Action]:
    """Attach the live channel id to every binding action that names a channel.

    Actions are copied; the originals are left untouched.
    """
    by_name = workspace.channels_by_name()
    resolved = []
    for action in actions:
        after = action.after
        if after and after.get("channelRef") in by_name:
            channel_id = by_name[after["channelRef"]].id
            action = dataclasses.replace(action, after={**after, "resolvedChannelId": channel_id})
        resolved.append(action)
    return resolved


# Threads go with their channel on Discord, so children are deleted first.
DELETE_ORDER = {ResourceType.THREAD: 0, ResourceType.CHANNEL: 1, ResourceType.CATEGORY: 2}


def order_deletes(actions: Iterable[Action]) -> list[Action]:
    return sorted(actions, key=lambda a: DELETE_ORDER.get(a.resource_type, len(DELETE_ORDER)))


def expected_workspace(desired: ServerDesiredState, type_filter: ResourceTypeFilter | None) -> WorkspaceState:
    """The presence-only state verification expects after an apply.

    Ids are names here; ``workspace_contains`` matches by name.
    """

    def wanted(rt: ResourceType) -> bool:
        return not type_filter or rt in type_filter

    expected = WorkspaceState()
    if wanted(ResourceType.CATEGORY):
        expected.categories = [ActualCategory(id=name, name=name) for name in desired.categories]
    if wanted(ResourceType.CHANNEL):
        expected.channels = [ActualChannel(id=ch.name, name=ch.name) for ch in desired.channels]
    if wanted(ResourceType.THREAD):
        expected.threads = [
            ActualThread(id=f"{t.parent_channel}/{t.name}", name=t.name, parent_channel_id=t.parent_channel)
            for t in desired.threads
        ]
    return expected


def expected_routing(actions: list[Action]) -> RoutingState:
    bindings = []
    for action in actions:
        if action.type == ActionType.DELETE or not action.after:
            continue
        channel_id = action.after.get("resolvedChannelId")
        if channel_id:
            bindings.append(ActualBinding(agent_id=action.after["agentName"], peer_id=channel_id))
    return RoutingState(bindings=bindings)


def apply_target(
    target: TargetPlan,
    workspace: WorkspaceProvider,
    routing: RoutingProvider | None,
    type_filter: ResourceTypeFilter | None = None,
) -> TargetResult:
    """Apply one server's plan in phase order, capturing any failure."""
    context = ApplyContext(target_id=target.target_id)
    ws_changes = [a for a in workspace_actions(target.actions) if a.is_change]
    non_deletes = [a for a in ws_changes if a.type != ActionType.DELETE]
    deletes = order_deletes(a for a in ws_changes if a.type == ActionType.DELETE)
    bindings = routing_actions(target.actions)

    stage = Stage.WORKSPACE
    applied = 0
    resolved: list[Action] = []
    try:
        for phase in (non_deletes, deletes):
            if not phase:
                continue
            if phase is deletes:
                logger.warning("%s: deleting %d Discord resource(s)", target.name, len(phase))
            else:
                logger.info("%s: applying %d Discord change(s)", target.name, len(phase))
            try:
                workspace.apply(phase, context)
            except ProviderApplyError as e:
                applied += e.applied
                raise
            applied += len(phase)

        stage = Stage.ROUTING
        if bindings and routing is not None:
            resolved = resolve_binding_actions(bindings, workspace.fetch())
            logger.info("%s: applying %d binding action(s)", target.name, len(resolved))
            routing.apply(resolved, context)

        stage = Stage.VERIFY
        if not workspace.verify(expected_workspace(target.desired, type_filter)):
            raise ProviderVerifyError("Discord verification failed")
        if resolved and routing is not None and not routing.verify(expected_routing(resolved)):
            raise ProviderVerifyError("OpenClaw verification failed")
    except Exception as e:
        logger.error("%s: %s stage failed: %s", target.name, stage, e)
        return TargetResult(
            name=target.name,
            target_id=target.target_id,
            status=TargetStatus.FAILED,
            actions=target.actions,
            failure=TargetFailure(stage=stage, error=str(e), applied=applied, total=len(ws_changes)),
        )

    status = TargetStatus.APPLIED if target.has_changes else TargetStatus.UNCHANGED
    return TargetResult(name=target.name, target_id=target.target_id, status=status, actions=target.actions)


def execute_targets(
    targets: list[TargetPlan],
    pool: WorkspacePool,
    routing: RoutingProvider | None,
    type_filter: ResourceTypeFilter | None = None,
) -> list[TargetResult]:
    """Apply every planned server in order; a failed server never stops the rest."""
    results = []
    for target in targets:
        if target.failure is not None:
            results.append(
                TargetResult(target.name, target.target_id, TargetStatus.FAILED, target.actions, target.failure)
            )
            continue
        needs_routing = routing is not None and bool(routing_actions(target.actions))
        if not target.has_changes and not needs_routing:
            results.append(TargetResult(target.name, target.target_id, TargetStatus.UNCHANGED, target.actions))
            continue
        provider = pool.get(target.name, target.target_id)
        results.append(apply_target(target, provider, routing, type_filter))
    return results


def dry_run_report(targets: list[TargetPlan]) -> ApplyReport:
    """Report every server as planned only; failed fetches stay failed."""
    return ApplyReport(
        targets=[
            TargetResult(
                t.name,
                t.target_id,
                TargetStatus.FAILED if t.failure else TargetStatus.DRY_RUN,
                t.actions,
                t.failure,
            )
            for t in targets
        ]
    )


def capture_servers(
    targets: list[TargetPlan],
    previous: dict[str, ServerSnapshot] | None = None,
) -> dict[str, ServerSnapshot]:
    """Capture every fetched server for the next snapshot.

    The snapshot file is overwritten, so servers this run could not capture
    (fetch failed, or not part of the run) keep their entry from ``previous``.
    """
    previous = previous or {}
    servers = {}
    for t in targets:
        if t.workspace is not None:
            servers[t.name] = ServerSnapshot(target_id=t.target_id, workspace_state=t.workspace)
        elif t.name in previous:
            logger.warning("%s: fetch failed, keeping its previous snapshot entry", t.name)
            servers[t.name] = previous[t.name]
    planned = {t.name for t in targets}
    for name, server in previous.items():
        if name not in planned:
            servers[name] = server
    return servers


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class ApplyOrchestrator:
    """Plans and applies a parsed config against live providers.

    The routing provider is shared and owned by the caller. Workspace
    providers are created per server through ``workspace_factory`` and closed
    by ``close()``.
    """

    def __init__(
        self,
        config: ParsedConfig,
        workspace_factory: WorkspaceFactory,
        routing_provider: RoutingProvider | None,
        options: ApplyOptions | None = None,
    ):
        self.config = config
        self.routing = routing_provider
        self.options = options or ApplyOptions()
        self._pool = WorkspacePool(workspace_factory)

    def __enter__(self) -> "ApplyOrchestrator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._pool.close()

    def run(self) -> tuple[ApplyPlan, ApplyReport]:
        plan = self.plan()
        return plan, self.execute(plan)

    def plan(self) -> ApplyPlan:
        """Fetch and reconcile every selected server. Mutates nothing.

        Raises:
            ConfigError: if ``options.server`` names no configured server.
            ProviderFetchError: if the routing state cannot be read.
        """
        desired_states = self.config.desired_states(self.options.server)

        plan = ApplyPlan()
        if self.routing is None:
            plan.routing_available = False
            plan.warnings.append("OpenClaw not available, bindings will be skipped")
        else:
            plan.routing_state = self.routing.fetch()

        for name, desired in desired_states.items():
            plan.targets.append(self._plan_target(name, desired, plan.routing_state))
        return plan

    def _plan_target(self, name: str, desired: ServerDesiredState, routing_state: RoutingState) -> TargetPlan:
        target = TargetPlan(name=name, target_id=desired.target_id, desired=desired)
        try:
            target.workspace = self._pool.get(name, desired.target_id).fetch()
        except Exception as e:
            logger.error("%s: fetching Discord state failed: %s", name, e)
            target.failure = TargetFailure(stage=Stage.FETCH, error=str(e))
            return target

        result = reconcile(desired, target.workspace, routing_state, prune=self.options.prune)
        actions = filter_actions(result.actions, self.options.type_filter)
        if self.routing is None:
            actions = workspace_actions(actions)
        target.actions = actions
        target.unmanaged = filter_unmanaged(result.unmanaged, self.options.type_filter)
        return target

    def execute(self, plan: ApplyPlan) -> ApplyReport:
        if not self.options.confirm:
            return dry_run_report(plan.targets)

        report = ApplyReport()
        if self.options.snapshot_path is not None and plan.has_changes:
            snapshot = new_snapshot(
                self.options.config_hash,
                capture_servers(plan.targets, self._previous_servers()),
                plan.routing_state,
            )
            report.snapshot_path = save_snapshot(snapshot, self.options.snapshot_path)
            logger.info("Snapshot saved: %s", report.snapshot_path)

        report.targets = execute_targets(plan.targets, self._pool, self.routing, self.options.type_filter)
        return report

    def _previous_servers(self) -> dict[str, ServerSnapshot]:
        """Entries of the existing snapshot for servers still in the config."""
        previous = load_snapshot(self.options.snapshot_path)
        if previous is None:
            return {}
        return {name: server for name, server in previous.servers.items() if name in self.config.servers}

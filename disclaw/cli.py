"""disclaw CLI — manage Discord structure and OpenClaw routing as code."""

from __future__ import annotations

import dataclasses
import functools
import json
import logging
import sys
from dataclasses import dataclass

import click
from rich.console import Console

from disclaw import __version__
from disclaw.config.importer import apply_import, build_import_plan, read_document, write_document
from disclaw.config.parser import ParsedConfig, load_config
from disclaw.errors import DisclawError, ProviderError
from disclaw.models import ActionType
from disclaw.providers.base import RoutingProvider
from disclaw.providers.discord import DiscordProvider
from disclaw.providers.openclaw import resolve_discord_token, resolve_openclaw_provider
from disclaw.render import (
    filter_summary,
    print_actions,
    print_agents,
    print_drift,
    print_pins,
    print_report,
    print_routing_health,
    print_unmanaged,
    print_warnings,
    report_json,
    server_header,
    to_diff_json,
)
from disclaw.settings import (
    GatewayOptions,
    configure_logging,
    resolve_config_path,
    resolve_gateway_options,
    resolve_snapshot_options,
)
from disclaw.sync.agents import routing_health, stale_agents, unbound_agents
from disclaw.sync.apply import ApplyOptions, ApplyOrchestrator, TargetPlan, WorkspaceFactory
from disclaw.sync.filters import filter_actions, filter_agents, filter_unmanaged, parse_type_filter
from disclaw.sync.rollback import RollbackEngine, RollbackOptions
from disclaw.sync.snapshot import config_hash, resolve_snapshot_path

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)


@dataclass
class CliContext:
    base_dir: str | None
    gateway: GatewayOptions


def build_providers(gateway: GatewayOptions) -> tuple[WorkspaceFactory, RoutingProvider | None]:
    """Resolve the Discord token lazily and the OpenClaw transport eagerly."""
    token: list[str] = []

    def workspace_factory(name: str, guild_id: str) -> DiscordProvider:
        if not token:
            token.append(resolve_discord_token(gateway.url, gateway.token))
        return DiscordProvider(token[0], guild_id)

    return workspace_factory, resolve_openclaw_provider(gateway.url, gateway.token)


def _handle_errors(f):
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except DisclawError as e:
            err_console.print(f"[red]Error:[/] {e}")
            sys.exit(1)

    return wrapper


def _emit_json(data) -> None:
    click.echo(json.dumps(data, indent=2))


def _load(ctx: CliContext, config: str | None, json_out: bool) -> tuple[ParsedConfig, str, str]:
    path = resolve_config_path(config, ctx.base_dir)
    if not json_out:
        console.print(f"Config: {path}")
    parsed, raw = load_config(path)
    return parsed, raw, str(path)


def _parse_filter(filters: str | None):
    try:
        return parse_type_filter(filters)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="-f/--filters") from e


def _close(routing: RoutingProvider | None) -> None:
    if routing is not None:
        routing.close()


config_option = click.option("--config", "-c", default=None, help="Path to disclaw.yaml config file")
filters_option = click.option(
    "--filters", "-f", default=None, help="Filter by resource type (comma separated: category,channel,thread,binding)"
)
json_option = click.option("--json", "-j", "json_out", is_flag=True, help="Output as JSON (no colors)")
server_option = click.option("--server", "-s", default=None, help="Only act on this server")
yes_option = click.option("--yes", "-y", is_flag=True, help="Actually make changes (default is dry-run)")


@click.group()
@click.version_option(version=__version__)
@click.option("--dir", "base_dir", envvar="DISCLAW_DIR", default=None, help="Directory holding disclaw.yaml")
@click.option("--gateway-url", envvar="OPENCLAW_GATEWAY_URL", default=None, help="OpenClaw gateway URL")
@click.option("--gateway-token", envvar="OPENCLAW_GATEWAY_TOKEN", default=None, help="OpenClaw gateway auth token")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, base_dir: str | None, gateway_url: str | None, gateway_token: str | None, verbose: bool):
    """disclaw — Discord workspace structure and OpenClaw routing as code.

    Declare categories, channels, threads and agent bindings in
    disclaw.yaml, preview the diff, apply it, and roll back from the
    automatic snapshot if something goes wrong.
    """
    configure_logging(verbose)
    ctx.obj = CliContext(base_dir=base_dir, gateway=resolve_gateway_options(gateway_url, gateway_token))


# ── Diff ─────────────────────────────────────────────────────────────


@main.command()
@config_option
@filters_option
@json_option
@server_option
@click.pass_obj
@_handle_errors
def diff(ctx: CliContext, config: str | None, filters: str | None, json_out: bool, server: str | None):
    """Show the full diff between config and live state."""
    type_filter = _parse_filter(filters)
    parsed, _, config_path = _load(ctx, config, json_out)
    if not json_out:
        print_warnings(console, parsed.warnings)

    factory, routing = build_providers(ctx.gateway)
    try:
        agents: list[str] | None = None
        if routing is None:
            if not json_out:
                console.print("[yellow]⚠ OpenClaw not available, skipping binding check[/]")
        else:
            try:
                agents = routing.fetch_agents()
            except ProviderError as e:
                logger.debug("Agents list unavailable: %s", e)

        with ApplyOrchestrator(parsed, factory, routing, ApplyOptions(server=server)) as orch:
            plan = orch.plan()

        entries: list[dict] = []
        for target in plan.targets:
            if not json_out:
                server_header(console, target.name, target.target_id, parsed.single_server)
            if target.failure is not None:
                err_console.print(f"[red]Error:[/] {target.name}: {target.failure.error}")
                continue

            unbound = unbound_agents(target.desired, agents) if agents is not None else []
            stale = stale_agents(target.desired, agents) if agents is not None else []
            actions = filter_actions(target.actions, type_filter)
            unmanaged = filter_unmanaged(target.unmanaged, type_filter)
            shown_unbound = filter_agents(unbound, type_filter)
            shown_stale = filter_agents(stale, type_filter)

            if json_out:
                entries.extend(
                    to_diff_json(
                        actions,
                        unmanaged,
                        shown_unbound,
                        shown_stale,
                        target.workspace.pins,
                        target.workspace.channels,
                        server=target.name,
                    )
                )
                continue

            print_actions(console, actions)
            print_unmanaged(console, unmanaged, config_path)
            if not type_filter:
                print_pins(console, target.workspace.pins, target.workspace.channels)
            print_agents(console, shown_unbound, shown_stale)
            if routing is not None:
                print_routing_health(console, _routing_health(routing, plan.routing_state, target))

            total = len(target.actions) + len(target.unmanaged) + len(unbound) + len(stale)
            showing = len(actions) + len(unmanaged) + len(shown_unbound) + len(shown_stale)
            summary = filter_summary(showing, total, type_filter)
            if summary:
                console.print(summary)

        if json_out:
            _emit_json(entries)
    finally:
        _close(routing)


def _routing_health(routing: RoutingProvider, routing_state, target: TargetPlan) -> list[str]:
    try:
        gates = routing.fetch_routing_config(target.target_id)
    except ProviderError as e:
        logger.debug("Routing config unavailable for %s: %s", target.target_id, e)
        return []
    allowed = {channel_id for channel_id, gate in gates.channels.items() if gate.allow is True}
    return routing_health(routing_state, target.workspace, allowed)


# ── Apply ────────────────────────────────────────────────────────────


@main.command()
@config_option
@yes_option
@click.option("--prune", is_flag=True, help="Delete categories, channels and threads not in config")
@filters_option
@json_option
@server_option
@click.option("--snapshot", "snapshot_path", default=None, help="Snapshot file path")
@click.option("--no-snapshot", is_flag=True, help="Do not write a snapshot before applying")
@click.pass_obj
@_handle_errors
def apply(
    ctx: CliContext,
    config: str | None,
    yes: bool,
    prune: bool,
    filters: str | None,
    json_out: bool,
    server: str | None,
    snapshot_path: str | None,
    no_snapshot: bool,
):
    """Apply config changes (dry-run by default)."""
    type_filter = _parse_filter(filters)
    parsed, raw, config_path = _load(ctx, config, json_out)
    if not json_out:
        print_warnings(console, parsed.warnings)

    snapshot = resolve_snapshot_options(config_path, snapshot_path, no_snapshot)
    options = ApplyOptions(
        server=server,
        prune=prune,
        confirm=yes,
        type_filter=type_filter,
        snapshot_path=snapshot.path if snapshot.enabled else None,
        config_hash=config_hash(raw),
    )

    factory, routing = build_providers(ctx.gateway)
    try:
        with ApplyOrchestrator(parsed, factory, routing, options) as orch:
            plan = orch.plan()

            if json_out and not yes:
                entries = []
                for t in plan.targets:
                    entries.extend(to_diff_json(t.actions, server=t.name))
                _emit_json(entries)
                sys.exit(2 if plan.has_changes else 0)

            if not json_out:
                print_warnings(console, plan.warnings)
                for t in plan.targets:
                    server_header(console, t.name, t.target_id, parsed.single_server)
                    if t.failure is not None:
                        err_console.print(f"[red]Error:[/] {t.name}: {t.failure.error}")
                        continue
                    print_actions(console, t.actions)

            if not yes:
                if not json_out:
                    console.print("Dry-run mode. Use --yes to apply changes.")
                sys.exit(0 if all(t.failure is None for t in plan.targets) else 1)

            if not plan.has_changes and not json_out:
                console.print("No changes to apply.")

            report = orch.execute(plan)
    finally:
        _close(routing)

    if json_out:
        _emit_json(report_json(report))
    else:
        print_report(console, report)
        if report.ok and any(a.type == ActionType.DELETE for a in plan.actions):
            console.print("  Note: deleted channels cannot be fully restored via rollback.")
    sys.exit(0 if report.ok else 1)


# ── Rollback ─────────────────────────────────────────────────────────


@main.command()
@config_option
@yes_option
@click.option("--prune", is_flag=True, help="Delete resources that did not exist at snapshot time")
@json_option
@click.option("--snapshot", "snapshot_path", default=None, help="Snapshot file path")
@click.pass_obj
@_handle_errors
def rollback(
    ctx: CliContext,
    config: str | None,
    yes: bool,
    prune: bool,
    json_out: bool,
    snapshot_path: str | None,
):
    """Restore the state captured by the most recent snapshot."""
    parsed, raw, config_path = _load(ctx, config, json_out)
    snapshot = resolve_snapshot_options(config_path, snapshot_path)
    options = RollbackOptions(
        snapshot_path=snapshot.path or resolve_snapshot_path(config_path),
        prune=prune,
        confirm=yes,
        config_hash=config_hash(raw),
    )

    factory, routing = build_providers(ctx.gateway)
    try:
        with RollbackEngine(parsed, factory, routing, options) as engine:
            plan = engine.plan()

            if json_out and not yes:
                entries = []
                for t in plan.targets:
                    entries.extend(to_diff_json(t.actions, server=t.name))
                _emit_json(entries)
                sys.exit(2 if plan.has_changes else 0)

            if not json_out:
                console.print(
                    f"Found snapshot from {plan.snapshot.timestamp} "
                    f"(config hash: {plan.snapshot.config_hash})"
                )
                print_warnings(console, plan.warnings)
                print_drift(console, plan.drift)
                console.print("Rollback would apply:")
                for t in plan.targets:
                    server_header(console, t.name, t.target_id, parsed.single_server)
                    if t.failure is not None:
                        err_console.print(f"[red]Error:[/] {t.name}: {t.failure.error}")
                        continue
                    print_actions(console, t.actions)

            if not plan.has_changes:
                if not json_out:
                    console.print("Current state already matches snapshot. No rollback needed.")
                sys.exit(0 if all(t.failure is None for t in plan.targets) else 1)

            if not yes:
                if not json_out:
                    console.print("Dry-run mode. Use --yes to rollback.")
                sys.exit(0)

            report = engine.execute(plan)
    finally:
        _close(routing)

    if json_out:
        _emit_json(report_json(report))
    else:
        print_report(console, report, verb="Rollback")
    sys.exit(0 if report.ok else 1)


# ── Import ───────────────────────────────────────────────────────────


@main.command(name="import")
@config_option
@yes_option
@filters_option
@json_option
@server_option
@click.pass_obj
@_handle_errors
def import_cmd(
    ctx: CliContext,
    config: str | None,
    yes: bool,
    filters: str | None,
    json_out: bool,
    server: str | None,
):
    """Import unmanaged Discord resources and unbound agents into the config."""
    type_filter = _parse_filter(filters)
    parsed, _, config_path = _load(ctx, config, json_out)
    if not json_out:
        print_warnings(console, parsed.warnings)

    factory, routing = build_providers(ctx.gateway)
    try:
        agents: list[str] = []
        if routing is not None:
            try:
                agents = routing.fetch_agents()
            except ProviderError as e:
                logger.debug("Agents list unavailable: %s", e)

        with ApplyOrchestrator(parsed, factory, routing, ApplyOptions(server=server)) as orch:
            targets = orch.plan().targets
    finally:
        _close(routing)

    plans = []
    total = 0
    for t in targets:
        if t.failure is not None:
            err_console.print(f"[red]Error:[/] {t.name}: {t.failure.error}")
            continue
        full = build_import_plan(t.desired, t.workspace, agents)
        total += full.count
        plans.append(
            dataclasses.replace(
                full,
                unmanaged=filter_unmanaged(full.unmanaged, type_filter),
                unbound_agents=filter_agents(full.unbound_agents, type_filter),
            )
        )

    pending = [p for p in plans if not p.is_empty]
    if not pending:
        if json_out:
            _emit_json([])
        else:
            console.print("No unmanaged resources found. Nothing to import.")
        sys.exit(0 if len(plans) == len(targets) else 1)

    entries = []
    for p in pending:
        entries.extend(to_diff_json([], p.unmanaged, p.unbound_agents, server=p.server))

    if json_out and not yes:
        _emit_json(entries)
        sys.exit(0)

    if not json_out:
        for p in pending:
            server_header(console, p.server, parsed.servers[p.server].guild, parsed.single_server)
            print_unmanaged(console, p.unmanaged, config_path)
            print_agents(console, p.unbound_agents, [])
        summary = filter_summary(sum(p.count for p in pending), total, type_filter)
        if summary:
            console.print(summary)

    if not yes:
        if not json_out:
            console.print("Dry-run mode. Use --yes to import these resources into your config.")
        sys.exit(0)

    document = read_document(config_path)
    imported = sum(apply_import(document, p, parsed.single_server) for p in pending)
    write_document(config_path, document)

    if json_out:
        _emit_json(entries)
    else:
        console.print(f"[green]Imported {imported} resource(s) into {config_path}[/]")
        console.print("Run 'disclaw diff' to verify the updated config.")


# ── Validate ─────────────────────────────────────────────────────────


@main.command()
@config_option
@json_option
@click.pass_obj
def validate(ctx: CliContext, config: str | None, json_out: bool):
    """Validate the config file. Makes no network calls, safe for CI."""
    try:
        parsed, _, _ = _load(ctx, config, json_out)
    except DisclawError as e:
        if json_out:
            _emit_json({"valid": False, "error": str(e)})
        else:
            err_console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    states = parsed.desired_states()
    if json_out:
        details = {}
        for name, state in states.items():
            detail = {
                "guild": state.target_id,
                "categories": len(state.categories),
                "channels": len(state.channels),
                "threads": len(state.threads),
                "bindings": len(state.bindings),
            }
            if state.warnings:
                detail["warnings"] = state.warnings
            details[name] = detail
        result = {"valid": not parsed.warnings, "servers": parsed.server_names(), "details": details}
        if parsed.warnings:
            result["warnings"] = parsed.warnings
        _emit_json(result)
        sys.exit(1 if parsed.warnings else 0)

    for name, state in states.items():
        prefix = "" if parsed.single_server else f"{name}: "
        for w in state.warnings:
            console.print(f"[yellow]⚠ {prefix}{w}[/]")
        console.print(
            f"[green]✓[/] {prefix}{len(state.categories)} categories, {len(state.channels)} channels, "
            f"{len(state.threads)} threads, {len(state.bindings)} bindings"
        )

    if parsed.warnings:
        sys.exit(1)

    count = len(states)
    console.print(f"[green]✓ Config valid{f' ({count} servers)' if count > 1 else ''}[/]")


if __name__ == "__main__":
    main()

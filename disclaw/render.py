"""Rendering — rich console output and JSON entries for plans and reports.

Human output and JSON are built from the same values, so ``--json`` never
shows a different plan than the terminal would.
"""

from __future__ import annotations

from collections import Counter
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from disclaw.models import Action, ActionType, ActualChannel, ActualPin, ResourceType, UnmanagedResource
from disclaw.sync.apply import ApplyReport, TargetStatus
from disclaw.sync.drift import DriftWarning
from disclaw.sync.filters import ResourceTypeFilter, describe_filter


# ── JSON ─────────────────────────────────────────────────────────────


def to_diff_json(
    actions: list[Action],
    unmanaged: list[UnmanagedResource] | None = None,
    unbound_agents: list[str] | None = None,
    stale_agents: list[str] | None = None,
    pins: list[ActualPin] | None = None,
    channels: list[ActualChannel] | None = None,
    server: str | None = None,
) -> list[dict[str, Any]]:
    """Flatten a plan into ``{op, type, name, before?, after?, count?, server?}`` entries."""
    entries: list[dict[str, Any]] = []

    for a in actions:
        entry: dict[str, Any] = {"op": a.type.value, "type": a.resource_type.value, "name": a.name}
        if a.before:
            entry["before"] = a.before
        if a.after:
            entry["after"] = a.after
        entries.append(entry)

    for r in unmanaged or []:
        entries.append({"op": "unmanaged", "type": r.resource_type.value, "name": r.name})
    for name in unbound_agents or []:
        entries.append({"op": "unbound", "type": "agent", "name": name})
    for name in stale_agents or []:
        entries.append({"op": "stale", "type": "agent", "name": name})
    for name, count in pin_counts(pins or [], channels or []):
        entries.append({"op": "pin", "type": "pin", "name": name, "count": count})

    if server is not None:
        for entry in entries:
            entry["server"] = server
    return entries


def report_json(report: ApplyReport) -> list[dict[str, Any]]:
    """One entry per action with its outcome, plus failures."""
    entries: list[dict[str, Any]] = []
    for target in report.targets:
        for a in target.actions:
            if target.status == TargetStatus.FAILED:
                status = "failed"
            elif target.status == TargetStatus.DRY_RUN:
                status = "pending" if a.is_change else "skipped"
            else:
                status = "applied" if a.is_change else "skipped"
            entries.append(
                {
                    "op": a.type.value,
                    "type": a.resource_type.value,
                    "name": a.name,
                    "status": status,
                    "server": target.name,
                }
            )
        if target.failure is not None:
            entries.append(
                {
                    "op": "error",
                    "type": "server",
                    "name": target.name,
                    "stage": target.failure.stage,
                    "error": target.failure.error,
                    "server": target.name,
                }
            )
    return entries


def pin_counts(pins: list[ActualPin], channels: list[ActualChannel]) -> list[tuple[str, int]]:
    names = {c.id: c.name for c in channels}
    counts = Counter(names.get(p.channel_id, "unknown") for p in pins)
    return sorted(counts.items())


# ── Plans ────────────────────────────────────────────────────────────


def print_actions(console: Console, actions: list[Action]) -> None:
    creates = [a for a in actions if a.type == ActionType.CREATE]
    updates = [a for a in actions if a.type == ActionType.UPDATE]
    deletes = [a for a in actions if a.type == ActionType.DELETE]
    noops = [a for a in actions if a.type == ActionType.NOOP]

    console.print()
    if creates:
        console.print("  [bold green]+ Create:[/]")
        for a in creates:
            console.print(f'    [green]+ {a.resource_type.value} "{escape(a.name)}"[/]')

    if updates:
        console.print("  [bold yellow]~ Update:[/]")
        for a in updates:
            console.print(f'    [yellow]~ {a.resource_type.value} "{escape(a.name)}"[/]')
            before = a.before or {}
            for key, value in (a.after or {}).items():
                if before.get(key) != value:
                    console.print(f"      [red]- {key}: {escape(str(before.get(key)))}[/]")
                    console.print(f"      [green]+ {key}: {escape(str(value))}[/]")

    if deletes:
        console.print("  [bold red]- Delete:[/]")
        for a in deletes:
            warn = (
                "  [red]⚠ permanent, messages cannot be recovered[/]"
                if a.resource_type != ResourceType.BINDING
                else ""
            )
            console.print(f'    [red]- {a.resource_type.value} "{escape(a.name)}"[/]{warn}')

    if noops:
        console.print(f"  [dim]= Unchanged: {len(noops)} resources[/]")

    change_count = len(creates) + len(updates) + len(deletes)
    console.print()
    if change_count == 0:
        console.print("  [green]No changes needed.[/]")
    else:
        console.print(f"  [bold]{change_count} change(s)[/] to apply.")
    console.print()


def print_unmanaged(console: Console, unmanaged: list[UnmanagedResource], config_path: str = "disclaw.yaml") -> None:
    if not unmanaged:
        return
    console.print("  [bold cyan]? Unmanaged (in Discord but not in config):[/]")
    for r in unmanaged:
        extra = f' "{escape(r.topic)}"' if r.topic else ""
        console.print(f'    [cyan]? {r.resource_type.value} "{escape(r.name)}"{extra}[/]')
    console.print(f"    [dim]To import: disclaw import -c {escape(config_path)}[/]")
    console.print(f"    [dim]To delete: disclaw apply --prune -c {escape(config_path)}[/]")
    console.print()


def print_pins(console: Console, pins: list[ActualPin], channels: list[ActualChannel]) -> None:
    if not pins:
        return
    console.print("  [dim]Pins (read-only):[/]")
    for name, count in pin_counts(pins, channels):
        console.print(f"    [dim]{escape(name)}: {count} pin(s)[/]")
    console.print()


def print_agents(console: Console, unbound: list[str], stale: list[str]) -> None:
    if unbound:
        console.print("  [bold cyan]? Unbound agents (in OpenClaw but not in config):[/]")
        for a in sorted(unbound):
            console.print(f"    [cyan]? {escape(a)}[/]")
        console.print()
    if stale:
        console.print("  [bold yellow]⚠ Stale agents (in config but not in OpenClaw):[/]")
        for a in sorted(stale):
            console.print(f"    [yellow]⚠ {escape(a)}[/]")
        console.print()


def print_routing_health(console: Console, warnings: list[str]) -> None:
    if not warnings:
        return
    console.print("\n[bold]Routing health:[/]")
    for w in warnings:
        console.print(f"  [yellow]⚠ {escape(w)}[/]")


def print_drift(console: Console, drift: list[DriftWarning]) -> None:
    if not drift:
        return
    console.print("\n  [bold yellow]⚠ Drift detected:[/]")
    for d in drift:
        console.print(f"  [yellow]⚠ {escape(d.message)}[/]")
    console.print()


def print_warnings(console: Console, warnings: list[str]) -> None:
    for w in warnings:
        console.print(f"[yellow]⚠ {escape(w)}[/]")


def filter_summary(showing: int, total: int, type_filter: ResourceTypeFilter | None) -> str:
    if not type_filter:
        return ""
    hidden = total - showing
    return (
        f"  [dim](filtered: showing {showing} of {total} resources, "
        f"{hidden} hidden by -f {describe_filter(type_filter)})[/]"
    )


def server_header(console: Console, name: str, target_id: str, single_server: bool) -> None:
    if not single_server:
        console.print(f"\n[bold]── {escape(name)} ──[/]")
    console.print(f"Guild: {target_id}")


# ── Reports ──────────────────────────────────────────────────────────


def print_report(console: Console, report: ApplyReport, verb: str = "Apply") -> None:
    table = Table(title=f"{verb} results")
    table.add_column("Server", style="cyan")
    table.add_column("Guild", style="dim")
    table.add_column("Status")
    table.add_column("Changes", justify="right")
    table.add_column("Detail")

    styles = {
        TargetStatus.APPLIED: "green",
        TargetStatus.UNCHANGED: "dim",
        TargetStatus.DRY_RUN: "yellow",
        TargetStatus.FAILED: "red",
    }
    for t in report.targets:
        style = styles[t.status]
        detail = escape(t.failure.summary()) if t.failure else ""
        table.add_row(
            escape(t.name),
            t.target_id,
            f"[{style}]{t.status.value}[/]",
            str(sum(1 for a in t.actions if a.is_change)),
            detail,
        )
    console.print(table)

    if report.snapshot_path is not None:
        console.print(f"  Snapshot saved: {escape(str(report.snapshot_path))}")

    if report.ok:
        console.print(f"[green]✓ {verb} complete. All changes verified.[/]")
        return
    console.print(f"[red]⚠ {verb} failed for {len(report.failed)} server(s).[/]")
    hints = {t.failure.hint for t in report.failed if t.failure}
    for hint in sorted(hints):
        console.print(f"  {escape(hint)}")

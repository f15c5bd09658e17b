"""End-to-end CLI tests with in-memory providers."""

import json
import tempfile
from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from disclaw import cli
from disclaw.models import ActualChannel, WorkspaceState
from disclaw.providers.memory import InMemoryRoutingProvider, InMemoryWorkspaceProvider

CONFIG = """version: 1
managedBy: disclaw
guild: "1"
channels:
  - name: general
openclaw:
  agents:
    alice: general
"""


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("DISCLAW_CONFIG", "DISCLAW_SNAPSHOT", "DISCLAW_DIR"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def providers(monkeypatch):
    workspace = InMemoryWorkspaceProvider(WorkspaceState(channels=[ActualChannel(id="c2", name="random")]))
    routing = InMemoryRoutingProvider(agents=["alice", "bob"])
    monkeypatch.setattr(cli, "build_providers", lambda gateway: ((lambda name, guild: workspace), routing))
    return workspace, routing


def _write_config(tmpdir, text=CONFIG) -> Path:
    path = Path(tmpdir) / "disclaw.yaml"
    path.write_text(text)
    return path


# --- Validate Tests ---


def test_validate_valid_config():
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        _write_config(tmpdir)
        result = runner.invoke(cli.main, ["--dir", tmpdir, "validate"])

    assert result.exit_code == 0
    assert "1 channels" in result.output
    assert "Config valid" in result.output


def test_validate_json_reports_warnings():
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir, CONFIG.replace("  - name: general\n", "  - name: general\n  - category: Empty\n"))
        result = runner.invoke(cli.main, ["validate", "-c", str(path), "--json"])

    assert result.exit_code == 1
    data = json.loads(result.stdout)
    assert data["valid"] is False
    assert data["servers"] == ["default"]
    assert data["warnings"] == ['Category "Empty" has no channels']
    assert data["details"]["default"]["bindings"] == 1


def test_validate_missing_config():
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        result = runner.invoke(cli.main, ["validate", "-c", str(Path(tmpdir) / "nope.yaml"), "--json"])

    assert result.exit_code == 1
    assert json.loads(result.stdout)["valid"] is False


# --- Diff Tests ---


def test_diff_json(providers):
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir)
        result = runner.invoke(cli.main, ["diff", "-c", str(path), "--json"])

    assert result.exit_code == 0
    entries = json.loads(result.stdout)
    assert [(e["op"], e["type"], e["name"]) for e in entries] == [
        ("create", "channel", "general"),
        ("create", "binding", "alice → general"),
        ("unmanaged", "channel", "random"),
        ("unbound", "agent", "bob"),
    ]
    assert {e["server"] for e in entries} == {"default"}
    assert providers[1].closed


def test_diff_filter_hides_other_types(providers):
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir)
        result = runner.invoke(cli.main, ["diff", "-c", str(path), "--json", "-f", "binding"])

    entries = json.loads(result.stdout)
    assert [(e["op"], e["name"]) for e in entries] == [("create", "alice → general"), ("unbound", "bob")]


def test_unknown_filter_is_usage_error(providers):
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir)
        result = runner.invoke(cli.main, ["diff", "-c", str(path), "-f", "pins"])

    assert result.exit_code == 2
    assert "Unknown resource type" in result.output


# --- Apply Tests ---


def test_apply_dry_run_json_exits_with_pending_changes(providers):
    workspace, routing = providers
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir)
        result = runner.invoke(cli.main, ["apply", "-c", str(path), "--json"])
        assert not (Path(tmpdir) / "disclaw-snapshot.json").exists()

    assert result.exit_code == 2
    assert [e["op"] for e in json.loads(result.stdout)] == ["create", "create"]
    assert workspace.calls == []
    assert routing.calls == []


def test_apply_yes_applies_and_snapshots(providers):
    workspace, routing = providers
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir)
        result = runner.invoke(cli.main, ["apply", "-c", str(path), "--yes"])
        snapshot_written = (Path(tmpdir) / "disclaw-snapshot.json").exists()

    assert result.exit_code == 0
    assert "Apply complete" in result.output
    assert snapshot_written
    general = workspace.state.channels_by_name()["general"]
    assert [(b.agent_id, b.peer_id) for b in routing.state.bindings] == [("alice", general.id)]


def test_apply_unknown_server(providers):
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir)
        result = runner.invoke(cli.main, ["apply", "-c", str(path), "--server", "nope"])

    assert result.exit_code == 1


# --- Rollback Tests ---


def test_rollback_without_snapshot_fails(providers):
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir)
        result = runner.invoke(cli.main, ["rollback", "-c", str(path), "--yes"])

    assert result.exit_code == 1


def test_apply_then_rollback(providers):
    workspace, routing = providers
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir)
        assert runner.invoke(cli.main, ["apply", "-c", str(path), "--yes"]).exit_code == 0
        result = runner.invoke(cli.main, ["rollback", "-c", str(path), "--yes", "--prune"])

    assert result.exit_code == 0
    assert "Rollback complete" in result.output
    assert [c.name for c in workspace.state.channels] == ["random"]


# --- Import Tests ---


def test_import_writes_unmanaged_into_config(providers):
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir)
        result = runner.invoke(cli.main, ["import", "-c", str(path), "--yes"])
        document = yaml.safe_load(path.read_text())

    assert result.exit_code == 0
    assert document["channels"] == [{"name": "general"}, {"name": "random"}]
    assert document["openclaw"]["agents"] == {"alice": "general", "bob": "TODO"}


def test_import_dry_run_leaves_config_alone(providers):
    runner = CliRunner()
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write_config(tmpdir)
        result = runner.invoke(cli.main, ["import", "-c", str(path)])
        text = path.read_text()

    assert result.exit_code == 0
    assert "Dry-run mode" in result.output
    assert text == CONFIG

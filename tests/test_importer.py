"""Tests for importing unmanaged resources into the config document."""

import tempfile
from pathlib import Path

import pytest
import yaml

from disclaw.config import parse_config
from disclaw.config.importer import (
    UNBOUND_AGENT_PLACEHOLDER,
    apply_import,
    build_import_plan,
    read_document,
    write_document,
)
from disclaw.errors import ConfigError
from disclaw.models import ActualCategory, ActualChannel, ActualThread, ResourceType, WorkspaceState

CONFIG = """
version: 1
managedBy: disclaw
guild: "1"
channels:
  - name: general
openclaw:
  agents:
    alice: general
"""


def _workspace() -> WorkspaceState:
    return WorkspaceState(
        categories=[ActualCategory(id="k1", name="Ops")],
        channels=[
            ActualChannel(id="c1", name="general"),
            ActualChannel(id="c2", name="deploys", topic="ship it", category_id="k1"),
            ActualChannel(id="c3", name="random", private=True),
        ],
        threads=[ActualThread(id="t1", name="standup", parent_channel_id="c1")],
    )


def _plan(agents=None):
    config = parse_config(CONFIG)
    desired = config.desired_states()["default"]
    return build_import_plan(desired, _workspace(), agents)


# --- Plan Tests ---


def test_plan_lists_unmanaged_and_unbound():
    plan = _plan(["alice", "bob"])

    assert [(r.resource_type, r.name) for r in plan.unmanaged] == [
        (ResourceType.CATEGORY, "Ops"),
        (ResourceType.CHANNEL, "deploys"),
        (ResourceType.CHANNEL, "random"),
        (ResourceType.THREAD, "standup"),
    ]
    assert plan.unbound_agents == ["bob"]
    assert plan.count == 5
    assert not plan.is_empty


def test_plan_is_empty_when_everything_is_managed():
    config = parse_config(CONFIG)
    desired = config.desired_states()["default"]
    workspace = WorkspaceState(channels=[ActualChannel(id="c1", name="general")])

    plan = build_import_plan(desired, workspace, ["alice"])

    assert plan.is_empty
    assert plan.count == 0


# --- Apply Tests ---


def test_apply_import_nests_channels_and_threads():
    document = yaml.safe_load(CONFIG)

    added = apply_import(document, _plan(["alice", "bob"]))

    assert added == 5
    assert document["channels"] == [
        {"name": "general", "threads": ["standup"]},
        {"category": "Ops", "channels": [{"name": "deploys", "topic": "ship it"}]},
        {"name": "random", "private": True},
    ]
    assert document["openclaw"]["agents"] == {"alice": "general", "bob": UNBOUND_AGENT_PLACEHOLDER}


def test_imported_document_plans_no_further_imports():
    document = yaml.safe_load(CONFIG)
    apply_import(document, _plan())

    config = parse_config(yaml.safe_dump(document, sort_keys=False))
    desired = config.desired_states()["default"]

    assert build_import_plan(desired, _workspace()).is_empty


def test_apply_import_into_named_server():
    document = {
        "version": 1,
        "managedBy": "disclaw",
        "servers": {"default": {"guild": "1", "channels": [{"name": "general"}]}},
    }

    apply_import(document, _plan(["bob"]), single_server=False)

    server = document["servers"]["default"]
    assert [c.get("name", c.get("category")) for c in server["channels"]] == ["general", "Ops", "random"]
    assert server["openclaw"] == {"agents": {"bob": UNBOUND_AGENT_PLACEHOLDER}}


def test_apply_import_unknown_server():
    document = {"version": 1, "managedBy": "disclaw", "servers": {}}
    with pytest.raises(ConfigError, match='Server "default" not found'):
        apply_import(document, _plan(), single_server=False)


# --- Document IO Tests ---


def test_write_and_read_document():
    document = yaml.safe_load(CONFIG)
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "disclaw.yaml"
        write_document(path, document)
        text = path.read_text()
        assert read_document(path) == document

    assert text.startswith("version: 1\nmanagedBy: disclaw\n")


def test_read_document_rejects_non_mapping():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "disclaw.yaml"
        path.write_text("- a\n")
        with pytest.raises(ConfigError, match="not a YAML mapping"):
            read_document(path)

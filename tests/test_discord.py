"""Tests for the Discord REST provider against a fake API."""

import itertools
import json

import httpx
import pytest

from disclaw.errors import ProviderApplyError, ProviderFetchError
from disclaw.models import (
    Action,
    ActionType,
    DesiredChannel,
    ResourceType,
    RoutingState,
    ServerDesiredState,
)
from disclaw.providers import discord
from disclaw.providers.discord import (
    API_BASE,
    GUILD_CATEGORY,
    GUILD_TEXT,
    PUBLIC_THREAD,
    SEND_MESSAGES,
    VIEW_CHANNEL,
    DiscordProvider,
)
from disclaw.sync.apply import TargetPlan, TargetStatus, apply_target
from disclaw.sync.reconciler import reconcile

GUILD = "g1"
BOT = "bot1"
PREFIX = "/api/v10"


class FakeDiscord:
    def __init__(self, channels=None, threads=None, pins=None, gone=()):
        self.channels = channels or []
        self.threads = threads or []
        self.pins = pins or {}
        self.gone = set(gone)
        self.requests = []
        self.status_override = []
        self._ids = (f"new{n}" for n in itertools.count(1))

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path[len(PREFIX):]
        body = json.loads(request.content) if request.content else None
        self.requests.append((request.method, path, body))
        if self.status_override:
            override = self.status_override.pop(0)
            if isinstance(override, httpx.Response):
                return override
            status, payload = override
            return httpx.Response(status, json=payload)

        if request.method == "GET":
            if path == "/users/@me":
                return httpx.Response(200, json={"id": BOT})
            if path == f"/guilds/{GUILD}/channels":
                return httpx.Response(200, json=self.channels)
            if path == f"/guilds/{GUILD}/threads/active":
                return httpx.Response(200, json={"threads": self.threads})
            if path.endswith("/pins"):
                return httpx.Response(200, json=self.pins.get(path.split("/")[2], []))
        if request.method == "POST":
            new_id = next(self._ids)
            if path == f"/guilds/{GUILD}/channels":
                self.channels.append({"id": new_id, **body})
            return httpx.Response(201, json={"id": new_id, **body})
        if request.method == "DELETE":
            channel_id = path.split("/")[-1]
            if channel_id in self.gone:
                return httpx.Response(404, json={"message": "Unknown Channel", "code": 10003})
            self._delete(channel_id)
            return httpx.Response(204)
        if request.method == "PATCH":
            return httpx.Response(204)
        return httpx.Response(404, json={"message": "Unknown"})

    def _delete(self, channel_id):
        # Discord deletes a channel's threads along with it.
        self.gone.add(channel_id)
        self.gone.update(t["id"] for t in self.threads if t["parent_id"] == channel_id)
        self.channels = [c for c in self.channels if c["id"] != channel_id]
        self.threads = [t for t in self.threads if t["id"] not in self.gone]

    def provider(self) -> DiscordProvider:
        client = httpx.Client(transport=httpx.MockTransport(self.handler), base_url=API_BASE)
        return DiscordProvider("token", GUILD, client=client)

    def writes(self):
        return [r for r in self.requests if r[0] != "GET"]


# --- Fetch Tests ---


def test_fetch_maps_channels_flags_threads_and_pins():
    fake = FakeDiscord(
        channels=[
            {"id": "k1", "name": "Ops", "type": GUILD_CATEGORY},
            {
                "id": "c2",
                "name": "secret",
                "type": GUILD_TEXT,
                "parent_id": "k1",
                "nsfw": True,
                "permission_overwrites": [
                    {"id": GUILD, "type": 0, "allow": "0", "deny": str(VIEW_CHANNEL)},
                    {"id": BOT, "type": 1, "allow": str(VIEW_CHANNEL | SEND_MESSAGES), "deny": "0"},
                ],
            },
            {"id": "c1", "name": "general", "type": GUILD_TEXT, "topic": "hello"},
            {"id": "v1", "name": "voice", "type": 2},
        ],
        threads=[
            {"id": "t1", "name": "standup", "parent_id": "c1"},
            {"id": "t2", "name": "forum-post", "parent_id": "f1"},
        ],
        pins={"c1": [{"id": "m1", "content": "rules"}]},
    )

    with fake.provider() as provider:
        state = provider.fetch()

    assert [c.name for c in state.categories] == ["Ops"]
    general, secret = state.channels
    assert (general.name, general.topic, general.category_id) == ("general", "hello", None)
    assert (secret.restricted, secret.private, secret.add_bot, secret.category_id) == (True, True, True, "k1")
    assert [(t.name, t.parent_channel_id) for t in state.threads] == [("standup", "c1")]
    assert [(p.message_id, p.channel_id, p.content) for p in state.pins] == [("m1", "c1", "rules")]


def test_permission_error_is_explained():
    fake = FakeDiscord()
    fake.status_override = [(403, {"message": "Missing Access"})]
    with fake.provider() as provider:
        with pytest.raises(ProviderFetchError, match="Manage Channels"):
            provider.fetch()


def test_unknown_guild_is_explained():
    fake = FakeDiscord()
    fake.status_override = [(404, {"message": "Unknown Guild"})]
    with fake.provider() as provider:
        with pytest.raises(ProviderFetchError, match='Guild "g1" not found'):
            provider.fetch()


def test_rate_limit_is_retried(monkeypatch):
    slept = []
    monkeypatch.setattr(discord.time, "sleep", slept.append)
    fake = FakeDiscord()
    fake.status_override = [(429, {"retry_after": 0.25})]

    with fake.provider() as provider:
        state = provider.fetch()

    assert slept == [0.25]
    assert state.channels == []


def test_rate_limit_prefers_retry_after_header(monkeypatch):
    slept = []
    monkeypatch.setattr(discord.time, "sleep", slept.append)
    fake = FakeDiscord()
    fake.status_override = [
        httpx.Response(429, headers={"Retry-After": "2"}, text="<html>slow down</html>"),
        httpx.Response(429, text="slow down"),
    ]

    with fake.provider() as provider:
        provider.fetch()

    assert slept == [2.0, discord.DEFAULT_RETRY_AFTER]


# --- Apply Tests ---


def test_apply_creates_category_channel_and_thread():
    fake = FakeDiscord()
    actions = [
        Action(ActionType.CREATE, ResourceType.CATEGORY, "Ops", after={"name": "Ops"}),
        Action(
            ActionType.CREATE,
            ResourceType.CHANNEL,
            "secret",
            after={"topic": "shh", "private": True, "addBot": True, "categoryName": "Ops"},
        ),
        Action(ActionType.CREATE, ResourceType.THREAD, "standup", after={"parentChannel": "secret"}),
        Action(ActionType.NOOP, ResourceType.CHANNEL, "general"),
        Action(ActionType.CREATE, ResourceType.BINDING, "a → secret", after={"agentName": "a"}),
    ]

    with fake.provider() as provider:
        provider.apply(actions)

    posts = [(path, body) for method, path, body in fake.writes() if method == "POST"]
    assert posts[0] == (f"/guilds/{GUILD}/channels", {"name": "Ops", "type": GUILD_CATEGORY})
    path, body = posts[1]
    assert body["parent_id"] == "new1"
    assert body["topic"] == "shh"
    assert body["permission_overwrites"] == [
        {"id": GUILD, "type": 0, "allow": "0", "deny": str(VIEW_CHANNEL)},
        {"id": BOT, "type": 1, "allow": str(VIEW_CHANNEL | SEND_MESSAGES), "deny": "0"},
    ]
    assert posts[2] == ("/channels/new2/threads", {"name": "standup", "type": PUBLIC_THREAD})
    assert len(posts) == 3


def test_apply_update_moves_channel_out_of_category():
    fake = FakeDiscord(channels=[{"id": "c1", "name": "general", "type": GUILD_TEXT, "parent_id": "k1"}])
    update = Action(
        ActionType.UPDATE,
        ResourceType.CHANNEL,
        "general",
        before={"categoryName": "Ops"},
        after={"topic": "hi", "categoryName": None},
    )

    with fake.provider() as provider:
        provider.apply([update])

    assert fake.writes() == [("PATCH", "/channels/c1", {"topic": "hi", "nsfw": False, "parent_id": None})]


def test_apply_deletes_by_captured_id():
    fake = FakeDiscord()
    actions = [
        Action(ActionType.DELETE, ResourceType.THREAD, "idle", before={"id": "t1", "parentChannelId": "c1"}),
        Action(ActionType.DELETE, ResourceType.CHANNEL, "old", before={"id": "c9"}),
    ]

    with fake.provider() as provider:
        provider.apply(actions)

    assert fake.writes() == [("DELETE", "/channels/t1", None), ("DELETE", "/channels/c9", None)]


def test_deleting_resource_already_gone_succeeds():
    fake = FakeDiscord(gone={"t1"})
    action = Action(ActionType.DELETE, ResourceType.THREAD, "idle", before={"id": "t1", "parentChannelId": "c1"})

    with fake.provider() as provider:
        provider.apply([action])

    assert fake.writes() == [("DELETE", "/channels/t1", None)]


def test_prune_channel_with_active_thread():
    fake = FakeDiscord(
        channels=[
            {"id": "c1", "name": "general", "type": GUILD_TEXT},
            {"id": "c2", "name": "old", "type": GUILD_TEXT},
        ],
        threads=[{"id": "t1", "name": "chat", "parent_id": "c2"}],
    )
    desired = ServerDesiredState(name="default", target_id=GUILD, channels=[DesiredChannel(name="general")])

    with fake.provider() as provider:
        live = provider.fetch()
        result = reconcile(desired, live, RoutingState(), prune=True)
        target = TargetPlan(name="default", target_id=GUILD, desired=desired, workspace=live, actions=result.actions)
        outcome = apply_target(target, provider, None)

    assert outcome.status == TargetStatus.APPLIED
    assert fake.writes() == [("DELETE", "/channels/t1", None), ("DELETE", "/channels/c2", None)]
    assert [c["name"] for c in fake.channels] == ["general"]


def test_apply_failure_reports_actions_already_applied():
    fake = FakeDiscord()
    actions = [
        Action(ActionType.CREATE, ResourceType.CATEGORY, "Ops", after={"name": "Ops"}),
        Action(ActionType.CREATE, ResourceType.THREAD, "standup", after={"parentChannel": "missing"}),
    ]

    with fake.provider() as provider:
        with pytest.raises(ProviderApplyError) as excinfo:
            provider.apply(actions)

    assert excinfo.value.applied == 1


def test_apply_thread_without_parent_fails():
    fake = FakeDiscord()
    action = Action(ActionType.CREATE, ResourceType.THREAD, "standup", after={"parentChannel": "missing"})

    with fake.provider() as provider:
        with pytest.raises(ProviderApplyError, match='parent channel "missing" not found'):
            provider.apply([action])


def test_apply_with_only_noops_makes_no_requests():
    fake = FakeDiscord()
    with fake.provider() as provider:
        provider.apply([Action(ActionType.NOOP, ResourceType.CHANNEL, "general")])

    assert fake.requests == []

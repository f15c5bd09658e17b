"""OpenClaw providers — the routing store that binds agents to Discord channels.

Two transports share one implementation of the binding logic:

- ``OpenClawAPIProvider`` talks to the gateway's ``/tools/invoke`` endpoint
- ``OpenClawCLIProvider`` shells out to the ``openclaw`` command

Besides writing bindings, ``apply`` keeps each guild's routing gates in step:
bound channels are allow-listed (with their ``requireMention`` setting) and
channels left without any binding are disallowed. Gates are synced even when
every binding action is a noop, since gate state drifts independently.
"""

from __future__ import annotations

import json
import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from disclaw.errors import ProviderApplyError, ProviderError, ProviderFetchError
from disclaw.models import Action, ActionType, ActualBinding, RoutingState
from disclaw.providers.base import ApplyContext, routing_actions, routing_contains

logger = logging.getLogger(__name__)

DEFAULT_GATEWAY_URL = "http://127.0.0.1:18789"
GATEWAY_TIMEOUT = 15.0
PROBE_TIMEOUT = 5.0
CLI_TIMEOUT = 15


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------


class PeerModel(BaseModel):
    kind: str
    id: str


class MatchModel(BaseModel):
    channel: str
    peer: PeerModel


class BindingModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    agent_id: str = Field(alias="agentId")
    match: MatchModel

    def to_actual(self) -> ActualBinding:
        return ActualBinding(
            agent_id=self.agent_id,
            peer_id=self.match.peer.id,
            channel=self.match.channel,
            peer_kind=self.match.peer.kind,
        )

    @classmethod
    def from_actual(cls, binding: ActualBinding) -> "BindingModel":
        return cls(
            agent_id=binding.agent_id,
            match=MatchModel(
                channel=binding.channel,
                peer=PeerModel(kind=binding.peer_kind, id=binding.peer_id),
            ),
        )


class ChannelGate(BaseModel):
    """Per-channel routing gate: allow-list entry plus mention requirement."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    allow: bool | None = None
    require_mention: bool | None = Field(default=None, alias="requireMention")


class GuildRoutingConfig(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    require_mention: bool | None = Field(default=None, alias="requireMention")
    channels: dict[str, ChannelGate] = Field(default_factory=dict)


class AgentModel(BaseModel):
    id: str


_bindings_adapter = TypeAdapter(list[BindingModel])
_agents_adapter = TypeAdapter(list[AgentModel])


def parse_bindings(raw: Any) -> list[ActualBinding]:
    try:
        return [b.to_actual() for b in _bindings_adapter.validate_python(raw)]
    except ValidationError as e:
        raise ProviderFetchError(
            f"OpenClaw returned unexpected binding data. This usually means the API changed.\n{e}"
        ) from e


def dump_bindings(bindings: list[ActualBinding]) -> list[dict]:
    return [BindingModel.from_actual(b).model_dump(by_alias=True) for b in bindings]


def dump_gates(channels: dict[str, ChannelGate]) -> dict[str, dict]:
    return {
        channel_id: gate.model_dump(by_alias=True, exclude_none=True)
        for channel_id, gate in channels.items()
    }


# ---------------------------------------------------------------------------
# Shared provider logic
# ---------------------------------------------------------------------------


class _OpenClawProvider:
    """Binding and routing-gate logic common to every transport."""

    mode = ""

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        pass

    # Transport primitives

    def _read_bindings(self) -> list[ActualBinding]:
        raise NotImplementedError

    def _write_bindings(self, bindings: list[ActualBinding]) -> None:
        raise NotImplementedError

    def fetch_routing_config(self, guild_id: str) -> GuildRoutingConfig:
        raise NotImplementedError

    def _write_gates(self, guild_id: str, channels: dict[str, ChannelGate]) -> None:
        raise NotImplementedError

    def fetch_agents(self) -> list[str]:
        raise NotImplementedError

    # Provider contract

    def fetch(self) -> RoutingState:
        return RoutingState(bindings=self._read_bindings())

    def verify(self, expected: RoutingState) -> bool:
        return routing_contains(self.fetch(), expected)

    def apply(self, actions: list[Action], context: ApplyContext | None = None) -> None:
        owned = routing_actions(actions)
        mutations = [a for a in owned if a.is_change]

        updated: list[ActualBinding] | None = None
        if mutations:
            updated = list(self._read_bindings())
            for action in mutations:
                if action.type == ActionType.CREATE:
                    after = action.after or {}
                    channel_id = after.get("resolvedChannelId")
                    if channel_id:
                        updated.append(ActualBinding(agent_id=after["agentName"], peer_id=channel_id))
                    else:
                        logger.warning("Skipping binding %r: channel id not resolved", action.name)
                elif action.type == ActionType.DELETE:
                    before = action.before or {}
                    _remove_binding(updated, before.get("agentName"), before.get("resolvedChannelId"))
            logger.info("Writing %d binding change(s) via %s", len(mutations), self.mode)
            self._write_bindings(updated)

        if context and context.target_id and owned:
            self._sync_routing_gates(context.target_id, owned, updated)

    def _sync_routing_gates(
        self,
        guild_id: str,
        actions: list[Action],
        updated: list[ActualBinding] | None,
    ) -> None:
        routing = self.fetch_routing_config(guild_id)
        channels = dict(routing.channels)

        bound_ids = (
            {b.peer_id for b in updated if b.channel == "discord"} if updated is not None else None
        )

        for action in actions:
            if action.type in (ActionType.CREATE, ActionType.NOOP):
                after = action.after or {}
                channel_id = after.get("resolvedChannelId")
                if not channel_id:
                    continue
                gate = channels.get(channel_id, ChannelGate()).model_copy(update={"allow": True})
                if after.get("requireMention") is not None:
                    gate = gate.model_copy(update={"require_mention": after["requireMention"]})
                channels[channel_id] = gate
            elif action.type == ActionType.DELETE:
                channel_id = (action.before or {}).get("resolvedChannelId")
                if not channel_id or bound_ids is None or channel_id in bound_ids:
                    continue
                if channel_id in channels:
                    channels[channel_id] = channels[channel_id].model_copy(update={"allow": False})

        logger.info("Syncing routing gates for guild %s (%d channel(s))", guild_id, len(channels))
        self._write_gates(guild_id, channels)


def _remove_binding(bindings: list[ActualBinding], agent_id: str | None, channel_id: str | None) -> None:
    for i, b in enumerate(bindings):
        if b.agent_id == agent_id and (not channel_id or b.peer_id == channel_id):
            del bindings[i]
            return


# ---------------------------------------------------------------------------
# Gateway HTTP API
# ---------------------------------------------------------------------------


@dataclass
class GatewayConfig:
    """Parsed ``config.get`` result."""

    hash: str
    bindings: list[ActualBinding]
    discord_token: str | None
    full_config: dict

    def guild_routing(self, guild_id: str) -> GuildRoutingConfig:
        guilds = self.full_config.get("channels", {}).get("discord", {}).get("guilds", {})
        guild = guilds.get(guild_id)
        if not guild:
            return GuildRoutingConfig()
        try:
            return GuildRoutingConfig.model_validate(guild)
        except ValidationError as e:
            raise ProviderFetchError(f"Unexpected routing config for guild {guild_id}: {e}") from e


def parse_tools_invoke_response(response: dict) -> Any:
    """Unwrap ``{ok, result: {content: [{type, text}]}}`` into the decoded text."""
    if not response.get("ok"):
        message = (response.get("error") or {}).get("message", "unknown error")
        raise ProviderError(f"Gateway API error: {message}")
    content = (response.get("result") or {}).get("content") or []
    if not content:
        raise ProviderError("Gateway API returned empty content")
    return json.loads(content[0]["text"])


def parse_config_get_response(result: dict) -> GatewayConfig:
    raw = result.get("raw")
    full_config = json.loads(raw) if isinstance(raw, str) else (raw or {})
    raw_bindings = full_config.get("bindings")
    bindings = parse_bindings(raw_bindings) if isinstance(raw_bindings, list) else []
    discord = full_config.get("channels", {}).get("discord", {})
    return GatewayConfig(
        hash=result.get("hash", ""),
        bindings=bindings,
        discord_token=discord.get("token"),
        full_config=full_config,
    )


class OpenClawAPIProvider(_OpenClawProvider):
    """Routing provider backed by the OpenClaw gateway HTTP API."""

    mode = "api"

    def __init__(self, gateway_url: str, gateway_token: str, client: httpx.Client | None = None):
        self.gateway_url = gateway_url.rstrip("/")
        self.gateway_token = gateway_token
        self._client = client or httpx.Client(timeout=GATEWAY_TIMEOUT)
        self._cached: GatewayConfig | None = None

    def close(self) -> None:
        self._client.close()

    def _invoke(self, tool: str, args: dict | None = None, error: type[ProviderError] = ProviderFetchError) -> Any:
        try:
            resp = self._client.post(
                f"{self.gateway_url}/tools/invoke",
                json={"tool": tool, "args": args or {}},
                headers={"Authorization": f"Bearer {self.gateway_token}"},
            )
        except httpx.HTTPError as e:
            raise error(f"Gateway request failed: {e}") from e

        if resp.status_code == 401:
            raise error("Gateway auth failed. Check OPENCLAW_GATEWAY_TOKEN or --gateway-token.")
        if resp.status_code == 404:
            raise error(
                f'Gateway tool "{tool}" not available. Ensure gateway.tools.allow includes '
                '"gateway" in openclaw.json.'
            )
        if resp.is_error:
            raise error(f"Gateway HTTP error {resp.status_code}: {resp.reason_phrase}")

        try:
            return parse_tools_invoke_response(resp.json())
        except ProviderError as e:
            raise error(str(e)) from e

    def _config(self) -> GatewayConfig:
        if self._cached is None:
            self._cached = parse_config_get_response(self._invoke("gateway", {"action": "config.get"}))
        return self._cached

    def _patch(self, patch: dict) -> None:
        base_hash = self._config().hash
        self._invoke(
            "gateway",
            {"action": "config.patch", "raw": json.dumps(patch), "baseHash": base_hash},
            error=ProviderApplyError,
        )
        self._cached = None

    def _read_bindings(self) -> list[ActualBinding]:
        return list(self._config().bindings)

    def _write_bindings(self, bindings: list[ActualBinding]) -> None:
        self._patch({"bindings": dump_bindings(bindings)})

    def fetch_routing_config(self, guild_id: str) -> GuildRoutingConfig:
        return self._config().guild_routing(guild_id)

    def _write_gates(self, guild_id: str, channels: dict[str, ChannelGate]) -> None:
        self._patch({"channels": {"discord": {"guilds": {guild_id: {"channels": dump_gates(channels)}}}}})

    def fetch_agents(self) -> list[str]:
        data = self._invoke("agents_list")
        try:
            return [a.id for a in _agents_adapter.validate_python(data.get("agents", []))]
        except ValidationError as e:
            raise ProviderFetchError(f"Unexpected agents_list response: {e}") from e

    def fetch(self) -> RoutingState:
        self._cached = None
        return super().fetch()

    def discord_token(self) -> str | None:
        return self._config().discord_token


def probe_gateway_api(gateway_url: str, gateway_token: str) -> bool:
    if not gateway_token:
        return False
    try:
        resp = httpx.post(
            f"{gateway_url.rstrip('/')}/tools/invoke",
            json={"tool": "gateway", "args": {"action": "config.get"}},
            headers={"Authorization": f"Bearer {gateway_token}"},
            timeout=PROBE_TIMEOUT,
        )
    except httpx.HTTPError as e:
        logger.debug("Gateway probe failed: %s", e)
        return False
    return resp.is_success


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def run_openclaw(args: list[str], error: type[ProviderError] = ProviderFetchError) -> str:
    try:
        proc = subprocess.run(
            ["openclaw", *args],
            capture_output=True,
            text=True,
            timeout=CLI_TIMEOUT,
            check=True,
        )
    except FileNotFoundError as e:
        raise error("openclaw CLI not found on PATH") from e
    except subprocess.TimeoutExpired as e:
        raise error(f"OpenClaw CLI timed out after {CLI_TIMEOUT}s. Is the openclaw process responsive?") from e
    except subprocess.CalledProcessError as e:
        raise error(f"openclaw {' '.join(args[:3])} failed: {e.stderr.strip() or e}") from e
    return proc.stdout


def _decode(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError as e:
        raise ProviderFetchError(
            f"OpenClaw CLI returned unexpected data. This usually means the API changed.\n"
            f"Raw: {raw[:200]}"
        ) from e


class OpenClawCLIProvider(_OpenClawProvider):
    """Routing provider backed by the ``openclaw`` command line."""

    mode = "cli"

    def _read_bindings(self) -> list[ActualBinding]:
        return parse_bindings(_decode(run_openclaw(["config", "get", "bindings", "--json"])))

    def _write_bindings(self, bindings: list[ActualBinding]) -> None:
        run_openclaw(
            ["config", "set", "bindings", json.dumps(dump_bindings(bindings)), "--json"],
            error=ProviderApplyError,
        )

    def fetch_routing_config(self, guild_id: str) -> GuildRoutingConfig:
        try:
            raw = run_openclaw(["config", "get", f"channels.discord.guilds.{guild_id}", "--json"])
        except ProviderFetchError:
            # The guild has no routing config yet.
            return GuildRoutingConfig()
        try:
            return GuildRoutingConfig.model_validate(_decode(raw))
        except ValidationError as e:
            raise ProviderFetchError(f"Unexpected routing config for guild {guild_id}: {e}") from e

    def _write_gates(self, guild_id: str, channels: dict[str, ChannelGate]) -> None:
        run_openclaw(
            [
                "config",
                "set",
                f"channels.discord.guilds.{guild_id}.channels",
                json.dumps(dump_gates(channels)),
                "--json",
            ],
            error=ProviderApplyError,
        )

    def fetch_agents(self) -> list[str]:
        data = _decode(run_openclaw(["agents", "list", "--json"]))
        try:
            return [a.id for a in _agents_adapter.validate_python(data)]
        except ValidationError as e:
            raise ProviderFetchError(f"Unexpected agents list: {e}") from e


def probe_openclaw_cli() -> bool:
    try:
        run_openclaw(["config", "get", "bindings", "--json"])
    except ProviderError as e:
        logger.debug("OpenClaw CLI probe failed: %s", e)
        return False
    return True


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

OpenClawProvider = OpenClawAPIProvider | OpenClawCLIProvider


def resolve_openclaw_provider(gateway_url: str, gateway_token: str) -> OpenClawProvider | None:
    """Pick the gateway API when reachable, else the CLI, else nothing."""
    if probe_gateway_api(gateway_url, gateway_token):
        return OpenClawAPIProvider(gateway_url, gateway_token)
    if probe_openclaw_cli():
        return OpenClawCLIProvider()
    return None


def resolve_discord_token(gateway_url: str, gateway_token: str) -> str:
    """Find the Discord bot token: environment, then gateway config, then CLI."""
    token = os.environ.get("DISCORD_BOT_TOKEN")
    if token:
        return token

    if gateway_token:
        api = OpenClawAPIProvider(gateway_url, gateway_token)
        try:
            token = api.discord_token()
        except ProviderError as e:
            logger.debug("Gateway token lookup failed: %s", e)
        finally:
            api.close()
        if token:
            return token

    try:
        token = run_openclaw(["config", "get", "channels.discord.token"]).strip()
    except ProviderError as e:
        logger.debug("CLI token lookup failed: %s", e)
    if token:
        return token

    raise ProviderFetchError(
        "Discord bot token not found. Set DISCORD_BOT_TOKEN or ensure OpenClaw is configured."
    )

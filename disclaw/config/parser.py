"""Parse and validate ``disclaw.yaml``.

Parsing runs in three steps: YAML load, structural validation through the
pydantic models in ``disclaw.config.schema``, then the semantic checks the
schema cannot express (unique names, bindings that point at declared
channels). Structural and semantic errors raise ``ConfigError``; advisory
findings come back as warnings.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml
from pydantic import ValidationError

from disclaw.config.schema import (
    BindingObjectConfig,
    CategoryGroupConfig,
    ChannelConfig,
    ConfigDocument,
    ServerConfig,
)
from disclaw.errors import ConfigError
from disclaw.models import DesiredBinding, DesiredChannel, DesiredThread, ServerDesiredState

logger = logging.getLogger(__name__)

DEFAULT_SERVER_NAME = "default"


@dataclass
class ParsedConfig:
    """Validated configuration, always keyed by server name."""

    servers: dict[str, ServerConfig] = field(default_factory=dict)
    single_server: bool = True
    server_warnings: dict[str, list[str]] = field(default_factory=dict)

    @property
    def warnings(self) -> list[str]:
        """All warnings, prefixed with the server name in multi-server configs."""
        out: list[str] = []
        for name, warnings in self.server_warnings.items():
            prefix = "" if self.single_server else f"{name}: "
            out.extend(f"{prefix}{w}" for w in warnings)
        return out

    def server_names(self) -> list[str]:
        return list(self.servers)

    def select(self, server: str | None = None) -> dict[str, ServerConfig]:
        """Return every server, or just the one named ``server``."""
        if server is None:
            return dict(self.servers)
        if server not in self.servers:
            valid = ", ".join(self.servers)
            raise ConfigError(f'Unknown server "{server}". Valid servers: {valid}')
        return {server: self.servers[server]}

    def desired_states(self, server: str | None = None) -> dict[str, ServerDesiredState]:
        return {name: flatten_server(name, cfg) for name, cfg in self.select(server).items()}


def load_config(path: str | Path) -> tuple[ParsedConfig, str]:
    """Read and parse the config at ``path``, returning it with its raw text."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    raw = path.read_text(encoding="utf-8")
    return parse_config(raw), raw


def parse_config(raw: str) -> ParsedConfig:
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("Config must be a YAML mapping")

    try:
        document = ConfigDocument.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid config:\n{e}") from e

    if document.servers is not None:
        servers = dict(document.servers)
        single = False
    else:
        servers = {
            DEFAULT_SERVER_NAME: ServerConfig(
                guild=document.guild,
                channels=document.channels,
                openclaw=document.openclaw,
            )
        }
        single = True

    _check_servers(servers)
    parsed = ParsedConfig(
        servers=servers,
        single_server=single,
        server_warnings={name: validate_server(cfg) for name, cfg in servers.items()},
    )
    logger.debug("Parsed config with %d server(s)", len(servers))
    return parsed


def _check_servers(servers: dict[str, ServerConfig]) -> None:
    guilds: dict[str, str] = {}
    for name, cfg in servers.items():
        if not name.strip():
            raise ConfigError("Empty name not allowed for server")
        if cfg.guild in guilds:
            raise ConfigError(
                f'Servers "{guilds[cfg.guild]}" and "{name}" both target guild {cfg.guild}'
            )
        guilds[cfg.guild] = name


# ---------------------------------------------------------------------------
# Semantic validation
# ---------------------------------------------------------------------------


def validate_server(server: ServerConfig) -> list[str]:
    """Check one server's names and bindings.

    Returns:
        Advisory warnings. Hard errors raise ``ConfigError``.
    """
    warnings: list[str] = []
    channel_names: set[str] = set()
    category_names: set[str] = set()

    for entry in server.channels:
        if isinstance(entry, CategoryGroupConfig):
            if not entry.category.strip():
                raise ConfigError("Empty name not allowed for category")
            if entry.category in category_names:
                raise ConfigError(f'Duplicate category name: "{entry.category}"')
            category_names.add(entry.category)
            if not entry.channels:
                warnings.append(f'Category "{entry.category}" has no channels')
            for ch in entry.channels:
                _check_channel(ch, channel_names, warnings)
        else:
            _check_channel(entry, channel_names, warnings)

    seen: set[tuple[str, str]] = set()
    for agent, ref, _ in _iter_bindings(server):
        if ref not in channel_names:
            raise ConfigError(
                f'Agent "{agent}" binds to "{ref}" but no channel "{ref}" is defined in channels'
            )
        if (agent, ref) in seen:
            raise ConfigError(f'Duplicate binding: agent "{agent}" → channel "{ref}" (defined twice)')
        seen.add((agent, ref))

    return warnings


def _check_channel(ch: ChannelConfig, channel_names: set[str], warnings: list[str]) -> None:
    if not ch.name.strip():
        raise ConfigError("Empty name not allowed for channel")
    if ch.name in channel_names:
        raise ConfigError(f'Duplicate channel name: "{ch.name}"')
    channel_names.add(ch.name)

    if ch.add_bot and not ch.private:
        warnings.append(f'Channel "{ch.name}" sets addBot but is not private; addBot has no effect')

    seen: set[str] = set()
    for thread in ch.threads:
        if not thread.strip():
            raise ConfigError(f'Empty name not allowed for thread in channel "{ch.name}"')
        if thread in seen:
            raise ConfigError(f'Duplicate thread "{thread}" under channel "{ch.name}"')
        seen.add(thread)


def _iter_bindings(server: ServerConfig):
    """Yield ``(agent, channel_ref, require_mention)`` in document order."""
    if server.openclaw is None:
        return
    default = server.openclaw.require_mention
    for agent, value in server.openclaw.agents.items():
        if isinstance(value, str):
            yield agent, value, default
        elif isinstance(value, BindingObjectConfig):
            refs = value.channel if isinstance(value.channel, list) else [value.channel]
            mention = value.require_mention if value.require_mention is not None else default
            for ref in refs:
                yield agent, ref, mention
        else:
            for item in value:
                if isinstance(item, str):
                    yield agent, item, default
                else:
                    mention = item.require_mention if item.require_mention is not None else default
                    yield agent, item.channel, mention


# ---------------------------------------------------------------------------
# Flattening
# ---------------------------------------------------------------------------


def flatten_server(name: str, server: ServerConfig) -> ServerDesiredState:
    """Turn a nested server config into the flat desired state the reconciler reads."""
    state = ServerDesiredState(name=name, target_id=server.guild, warnings=validate_server(server))

    def add_channel(ch: ChannelConfig, category: str | None) -> None:
        state.channels.append(
            DesiredChannel(
                name=ch.name,
                topic=ch.topic,
                restricted=ch.restricted,
                private=ch.private,
                add_bot=ch.add_bot,
                category_name=category,
            )
        )
        state.threads.extend(DesiredThread(parent_channel=ch.name, name=t) for t in ch.threads)

    for entry in server.channels:
        if isinstance(entry, CategoryGroupConfig):
            state.categories.append(entry.category)
            for ch in entry.channels:
                add_channel(ch, entry.category)
        else:
            add_channel(entry, None)

    state.bindings = [
        DesiredBinding(agent_name=agent, channel_ref=ref, require_mention=mention)
        for agent, ref, mention in _iter_bindings(server)
    ]
    return state

"""Runtime settings: where the config and snapshot live, how to reach OpenClaw.

Command line options win, then environment variables, then defaults.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from disclaw.providers.openclaw import DEFAULT_GATEWAY_URL
from disclaw.sync.snapshot import resolve_snapshot_path

CONFIG_FILENAME = "disclaw.yaml"
SNAPSHOT_OFF_VALUES = ("off", "false", "0")


@dataclass(frozen=True)
class GatewayOptions:
    url: str = DEFAULT_GATEWAY_URL
    token: str = ""


@dataclass(frozen=True)
class SnapshotOptions:
    enabled: bool
    path: Path | None = None


def resolve_config_path(config: str | None = None, base_dir: str | None = None) -> Path:
    if config:
        return Path(config)
    env_path = os.environ.get("DISCLAW_CONFIG")
    if env_path:
        return Path(env_path)
    if base_dir:
        return Path(base_dir) / CONFIG_FILENAME
    return Path.cwd() / CONFIG_FILENAME


def resolve_snapshot_options(
    config_path: Path,
    snapshot: str | None = None,
    no_snapshot: bool = False,
) -> SnapshotOptions:
    if no_snapshot:
        return SnapshotOptions(enabled=False)
    if snapshot:
        return SnapshotOptions(enabled=True, path=Path(snapshot))
    env_value = os.environ.get("DISCLAW_SNAPSHOT")
    if env_value and env_value.lower() in SNAPSHOT_OFF_VALUES:
        return SnapshotOptions(enabled=False)
    if env_value:
        return SnapshotOptions(enabled=True, path=Path(env_value))
    return SnapshotOptions(enabled=True, path=resolve_snapshot_path(config_path))


def resolve_gateway_options(url: str | None = None, token: str | None = None) -> GatewayOptions:
    return GatewayOptions(
        url=url or os.environ.get("OPENCLAW_GATEWAY_URL") or DEFAULT_GATEWAY_URL,
        token=token if token is not None else os.environ.get("OPENCLAW_GATEWAY_TOKEN", ""),
    )


def configure_logging(verbose: bool = False, console: Console | None = None) -> None:
    """Route the ``disclaw`` loggers through rich, on stderr."""
    logger = logging.getLogger("disclaw")
    logger.handlers.clear()
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=verbose,
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.propagate = False

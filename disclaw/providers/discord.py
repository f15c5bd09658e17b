"""Discord provider — guild structure over the Discord REST API (v10).

Reads categories, text channels, active threads and pins; creates, edits and
deletes categories, text channels and threads. Channel flags map onto Discord
as follows:

- ``restricted`` is the channel's NSFW flag
- ``private`` is an @everyone role overwrite denying VIEW_CHANNEL
- ``addBot`` is a member overwrite allowing the bot VIEW_CHANNEL + SEND_MESSAGES
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from disclaw.errors import ProviderApplyError, ProviderFetchError, ProviderError
from disclaw.models import (
    Action,
    ActionType,
    ActualCategory,
    ActualChannel,
    ActualPin,
    ActualThread,
    ResourceType,
    WorkspaceState,
)
from disclaw.providers.base import ApplyContext, workspace_actions, workspace_contains

logger = logging.getLogger(__name__)

API_BASE = "https://discord.com/api/v10"
REQUEST_TIMEOUT = 30.0
MAX_RATE_LIMIT_RETRIES = 5

GUILD_TEXT = 0
GUILD_CATEGORY = 4
PUBLIC_THREAD = 11

OVERWRITE_ROLE = 0
OVERWRITE_MEMBER = 1

VIEW_CHANNEL = 1 << 10
SEND_MESSAGES = 1 << 11

DEFAULT_RETRY_AFTER = 1.0


def _retry_after(resp: httpx.Response) -> float:
    """Seconds to wait after a 429, from the header or else the JSON body."""
    header = resp.headers.get("Retry-After")
    if header:
        try:
            return float(header)
        except ValueError:
            pass
    try:
        return float(resp.json().get("retry_after", DEFAULT_RETRY_AFTER))
    except (ValueError, TypeError, AttributeError):
        return DEFAULT_RETRY_AFTER


class DiscordProvider:
    """Workspace provider for a single Discord guild."""

    def __init__(
        self,
        token: str,
        guild_id: str,
        client: httpx.Client | None = None,
    ):
        self.guild_id = guild_id
        self._client = client or httpx.Client(base_url=API_BASE, timeout=REQUEST_TIMEOUT)
        self._client.headers["Authorization"] = f"Bot {token}"
        self._bot_user_id: str | None = None

    def __enter__(self) -> "DiscordProvider":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # ── HTTP ─────────────────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        error: type[ProviderError] = ProviderFetchError,
        missing_ok: bool = False,
        **kwargs: Any,
    ) -> Any:
        """Send one request, retrying while Discord rate limits it.

        With ``missing_ok`` a 404 means the resource is already gone and
        returns None; deleting a channel takes its threads with it.
        """
        for _ in range(MAX_RATE_LIMIT_RETRIES):
            try:
                resp = self._client.request(method, path, **kwargs)
            except httpx.HTTPError as e:
                raise error(f"Discord request {method} {path} failed: {e}") from e

            if resp.status_code == 429:
                retry_after = _retry_after(resp)
                logger.info("Rate limited on %s %s, retrying in %.2fs", method, path, retry_after)
                time.sleep(retry_after)
                continue

            if resp.status_code == 404 and missing_ok:
                logger.info("%s %s: already gone", method, path)
                return None

            if resp.status_code in (401, 403):
                raise error(
                    "Bot lacks permission for this guild. Check the bot token and that "
                    'its role has the "Manage Channels" permission.'
                )
            if resp.status_code == 404 and path.startswith(f"/guilds/{self.guild_id}"):
                raise error(
                    f'Guild "{self.guild_id}" not found. Verify the guild: field in your '
                    "config and that the bot is a member."
                )
            if resp.is_error:
                raise error(f"Discord API error {resp.status_code} on {method} {path}: {resp.text}")

            return resp.json() if resp.content else None

        raise error(f"Discord kept rate limiting {method} {path}; giving up")

    def _bot_id(self) -> str:
        if self._bot_user_id is None:
            self._bot_user_id = str(self._request("GET", "/users/@me")["id"])
        return self._bot_user_id

    # ── Fetch ────────────────────────────────────────────────────────

    def fetch(self) -> WorkspaceState:
        raw_channels = self._request("GET", f"/guilds/{self.guild_id}/channels")
        bot_id = self._bot_id()

        categories: list[ActualCategory] = []
        channels: list[ActualChannel] = []
        for ch in raw_channels:
            if ch["type"] == GUILD_CATEGORY:
                categories.append(ActualCategory(id=str(ch["id"]), name=ch["name"]))
            elif ch["type"] == GUILD_TEXT:
                channels.append(self._parse_text_channel(ch, bot_id))

        text_ids = {c.id for c in channels}
        active = self._request("GET", f"/guilds/{self.guild_id}/threads/active")
        threads = [
            ActualThread(id=str(t["id"]), name=t["name"], parent_channel_id=str(t["parent_id"]))
            for t in active.get("threads", [])
            if str(t.get("parent_id")) in text_ids
        ]

        pins: list[ActualPin] = []
        for ch in channels:
            for msg in self._request("GET", f"/channels/{ch.id}/pins"):
                pins.append(
                    ActualPin(message_id=str(msg["id"]), channel_id=ch.id, content=msg.get("content", ""))
                )

        logger.debug(
            "Fetched guild %s: %d categories, %d channels, %d threads, %d pins",
            self.guild_id,
            len(categories),
            len(channels),
            len(threads),
            len(pins),
        )
        return WorkspaceState(
            categories=sorted(categories, key=lambda c: c.name),
            channels=sorted(channels, key=lambda c: c.name),
            threads=sorted(threads, key=lambda t: t.name),
            pins=pins,
        )

    def _parse_text_channel(self, ch: dict, bot_id: str) -> ActualChannel:
        private = False
        add_bot = False
        for ow in ch.get("permission_overwrites", []):
            if str(ow["id"]) == self.guild_id and ow["type"] == OVERWRITE_ROLE:
                private = bool(int(ow.get("deny", 0)) & VIEW_CHANNEL)
            elif str(ow["id"]) == bot_id and ow["type"] == OVERWRITE_MEMBER:
                add_bot = bool(int(ow.get("allow", 0)) & VIEW_CHANNEL)

        parent = ch.get("parent_id")
        return ActualChannel(
            id=str(ch["id"]),
            name=ch["name"],
            topic=ch.get("topic") or None,
            restricted=bool(ch.get("nsfw", False)),
            private=private,
            add_bot=add_bot,
            category_id=str(parent) if parent else None,
        )

    def verify(self, expected: WorkspaceState) -> bool:
        return workspace_contains(self.fetch(), expected)

    # ── Apply ────────────────────────────────────────────────────────

    def apply(self, actions: list[Action], context: ApplyContext | None = None) -> None:
        owned = [a for a in workspace_actions(actions) if a.is_change]
        if not owned:
            return

        existing = self._request("GET", f"/guilds/{self.guild_id}/channels", error=ProviderApplyError)
        categories: dict[str, str] = {}
        channels: dict[str, str] = {}
        for ch in existing:
            if ch["type"] == GUILD_CATEGORY:
                categories.setdefault(ch["name"], str(ch["id"]))
            elif ch["type"] == GUILD_TEXT:
                channels.setdefault(ch["name"], str(ch["id"]))

        for done, action in enumerate(owned):
            logger.info("%s %s %r", action.type.value, action.resource_type.value, action.name)
            try:
                if action.resource_type == ResourceType.CATEGORY:
                    self._apply_category(action, categories)
                elif action.resource_type == ResourceType.CHANNEL:
                    self._apply_channel(action, categories, channels)
                elif action.resource_type == ResourceType.THREAD:
                    self._apply_thread(action, channels)
            except ProviderApplyError as e:
                e.applied = done
                raise

    def _apply_category(self, action: Action, categories: dict[str, str]) -> None:
        if action.type == ActionType.CREATE:
            created = self._request(
                "POST",
                f"/guilds/{self.guild_id}/channels",
                error=ProviderApplyError,
                json={"name": action.name, "type": GUILD_CATEGORY},
            )
            categories[action.name] = str(created["id"])
        elif action.type == ActionType.DELETE:
            cat_id = (action.before or {}).get("id") or categories.get(action.name)
            if cat_id:
                self._request("DELETE", f"/channels/{cat_id}", error=ProviderApplyError, missing_ok=True)
                categories.pop(action.name, None)

    def _apply_channel(
        self,
        action: Action,
        categories: dict[str, str],
        channels: dict[str, str],
    ) -> None:
        after = action.after or {}
        before = action.before or {}

        if action.type == ActionType.CREATE:
            body: dict[str, Any] = {"name": action.name, "type": GUILD_TEXT}
            if after.get("topic"):
                body["topic"] = after["topic"]
            if after.get("restricted"):
                body["nsfw"] = True
            if after.get("categoryName"):
                body["parent_id"] = categories.get(after["categoryName"])
            overwrites = self._overwrites(after.get("private", False), after.get("addBot", False))
            if overwrites:
                body["permission_overwrites"] = overwrites
            created = self._request(
                "POST", f"/guilds/{self.guild_id}/channels", error=ProviderApplyError, json=body
            )
            channels[action.name] = str(created["id"])

        elif action.type == ActionType.UPDATE:
            ch_id = channels.get(action.name)
            if not ch_id:
                raise ProviderApplyError(f'Channel "{action.name}" disappeared before update')
            body = {"topic": after.get("topic"), "nsfw": bool(after.get("restricted", False))}
            if before.get("categoryName") != after.get("categoryName"):
                name = after.get("categoryName")
                body["parent_id"] = categories.get(name) if name else None
            flags_before = (bool(before.get("private")), bool(before.get("addBot")))
            flags_after = (bool(after.get("private")), bool(after.get("addBot")))
            if flags_before != flags_after:
                body["permission_overwrites"] = self._overwrites(*flags_after)
            self._request("PATCH", f"/channels/{ch_id}", error=ProviderApplyError, json=body)

        elif action.type == ActionType.DELETE:
            ch_id = before.get("id") or channels.get(action.name)
            if ch_id:
                self._request("DELETE", f"/channels/{ch_id}", error=ProviderApplyError, missing_ok=True)
                channels.pop(action.name, None)

    def _apply_thread(self, action: Action, channels: dict[str, str]) -> None:
        if action.type == ActionType.CREATE:
            parent_name = (action.after or {}).get("parentChannel", "")
            parent_id = channels.get(parent_name)
            if not parent_id:
                raise ProviderApplyError(
                    f'Cannot create thread "{action.name}": parent channel "{parent_name}" not found'
                )
            self._request(
                "POST",
                f"/channels/{parent_id}/threads",
                error=ProviderApplyError,
                json={"name": action.name, "type": PUBLIC_THREAD},
            )
        elif action.type == ActionType.DELETE:
            th_id = (action.before or {}).get("id")
            if th_id:
                self._request("DELETE", f"/channels/{th_id}", error=ProviderApplyError, missing_ok=True)

    def _overwrites(self, private: bool, add_bot: bool) -> list[dict[str, Any]]:
        overwrites: list[dict[str, Any]] = []
        if private:
            # The @everyone role shares the guild's id.
            overwrites.append(
                {"id": self.guild_id, "type": OVERWRITE_ROLE, "allow": "0", "deny": str(VIEW_CHANNEL)}
            )
        if add_bot:
            overwrites.append(
                {
                    "id": self._bot_id(),
                    "type": OVERWRITE_MEMBER,
                    "allow": str(VIEW_CHANNEL | SEND_MESSAGES),
                    "deny": "0",
                }
            )
        return overwrites

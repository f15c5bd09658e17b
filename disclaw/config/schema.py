"""Pydantic models for the ``disclaw.yaml`` document.

Two document shapes are accepted:

- single server: ``{version, managedBy, guild, channels, openclaw?}``
- multi server: ``{version, managedBy, servers: {name: {guild, channels, openclaw?}}}``

Channel entries and agent bindings are tagged unions resolved by callable
discriminators, so a malformed entry reports against the shape it resembles.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, field_validator, model_validator


def _coerce_id(value: Any) -> Any:
    # YAML reads unquoted snowflakes as integers.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


class ChannelConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    topic: str | None = None
    restricted: bool = False
    private: bool = False
    add_bot: bool = Field(default=False, alias="addBot")
    threads: list[str] = Field(default_factory=list)


class CategoryGroupConfig(BaseModel):
    category: str
    channels: list[ChannelConfig] = Field(default_factory=list)


def _channel_entry_kind(value: Any) -> str:
    if isinstance(value, dict):
        return "category" if "category" in value else "channel"
    return "category" if isinstance(value, CategoryGroupConfig) else "channel"


ChannelEntry = Annotated[
    Union[
        Annotated[ChannelConfig, Tag("channel")],
        Annotated[CategoryGroupConfig, Tag("category")],
    ],
    Discriminator(_channel_entry_kind),
]


# ---------------------------------------------------------------------------
# Agent bindings
# ---------------------------------------------------------------------------


class BindingItemConfig(BaseModel):
    """``{channel: name, requireMention?}`` inside a binding list."""

    model_config = ConfigDict(populate_by_name=True)

    channel: str
    require_mention: bool | None = Field(default=None, alias="requireMention")


class BindingObjectConfig(BaseModel):
    """``{channel: name | [names], requireMention?}``."""

    model_config = ConfigDict(populate_by_name=True)

    channel: str | list[str]
    require_mention: bool | None = Field(default=None, alias="requireMention")


def _binding_item_kind(value: Any) -> str:
    return "ref" if isinstance(value, str) else "item"


BindingItem = Annotated[
    Union[
        Annotated[str, Tag("ref")],
        Annotated[BindingItemConfig, Tag("item")],
    ],
    Discriminator(_binding_item_kind),
]


def _binding_value_kind(value: Any) -> str:
    if isinstance(value, str):
        return "ref"
    if isinstance(value, list):
        return "list"
    return "object"


BindingValue = Annotated[
    Union[
        Annotated[str, Tag("ref")],
        Annotated[list[BindingItem], Tag("list")],
        Annotated[BindingObjectConfig, Tag("object")],
    ],
    Discriminator(_binding_value_kind),
]


class OpenClawConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    require_mention: bool | None = Field(default=None, alias="requireMention")
    agents: dict[str, BindingValue] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Servers and documents
# ---------------------------------------------------------------------------


class ServerConfig(BaseModel):
    """One Discord guild and the agents bound into it."""

    guild: str
    channels: list[ChannelEntry] = Field(default_factory=list)
    openclaw: OpenClawConfig | None = None

    _normalize_guild = field_validator("guild", mode="before")(_coerce_id)


class ConfigDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: Literal[1]
    managed_by: Literal["disclaw"] = Field(alias="managedBy")
    guild: str | None = None
    channels: list[ChannelEntry] | None = None
    openclaw: OpenClawConfig | None = None
    servers: dict[str, ServerConfig] | None = None

    _normalize_guild = field_validator("guild", mode="before")(_coerce_id)

    @model_validator(mode="after")
    def _one_shape(self) -> "ConfigDocument":
        if self.servers is not None:
            if self.guild is not None or self.channels is not None or self.openclaw is not None:
                raise ValueError("use either top-level guild/channels or servers:, not both")
            if not self.servers:
                raise ValueError("servers: must name at least one server")
        elif self.guild is None or self.channels is None:
            raise ValueError("a single-server config needs both guild and channels")
        return self

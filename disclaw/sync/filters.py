"""Resource-type filters for ``-f/--filters``."""

from __future__ import annotations

from collections.abc import Iterable

from disclaw.models import Action, ResourceType, UnmanagedResource

ResourceTypeFilter = frozenset[ResourceType]

VALID_TYPES = tuple(t.value for t in ResourceType)


def parse_type_filter(raw: str | None) -> ResourceTypeFilter | None:
    """Parse ``"channel,thread"`` into a filter; None or blank means no filter.

    Raises:
        ValueError: if any entry is not a resource type.
    """
    if raw is None or not raw.strip():
        return None
    types = set()
    for part in raw.split(","):
        part = part.strip().lower()
        if not part:
            continue
        if part not in VALID_TYPES:
            raise ValueError(
                f'Unknown resource type "{part}". Valid types: {", ".join(VALID_TYPES)}'
            )
        types.add(ResourceType(part))
    return frozenset(types) or None


def filter_actions(actions: Iterable[Action], type_filter: ResourceTypeFilter | None) -> list[Action]:
    if not type_filter:
        return list(actions)
    return [a for a in actions if a.resource_type in type_filter]


def filter_unmanaged(
    unmanaged: Iterable[UnmanagedResource], type_filter: ResourceTypeFilter | None
) -> list[UnmanagedResource]:
    if not type_filter:
        return list(unmanaged)
    return [r for r in unmanaged if r.resource_type in type_filter]


def filter_agents(agents: Iterable[str], type_filter: ResourceTypeFilter | None) -> list[str]:
    """Agents count as bindings: kept only when bindings are shown."""
    if not type_filter or ResourceType.BINDING in type_filter:
        return list(agents)
    return []


def describe_filter(type_filter: ResourceTypeFilter | None) -> str:
    if not type_filter:
        return ""
    return ", ".join(t.value for t in ResourceType if t in type_filter)

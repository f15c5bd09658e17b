"""Drift detection — has live state moved since the snapshot was taken?

Two plans are compared resource by resource: what the current config would
do to the captured state, and what rollback would do to the current state.
When the two verdicts for the same resource differ, something changed the
resource outside disclaw after the snapshot, and rolling back may not
restore what the user expects.
"""

from __future__ import annotations

from dataclasses import dataclass

from disclaw.models import Action, ActionType, ResourceType


@dataclass
class DriftWarning:
    """A resource whose verdict changed between snapshot time and now."""

    resource_type: ResourceType
    name: str
    expected: ActionType
    found: ActionType
    server: str | None = None

    @property
    def message(self) -> str:
        prefix = f"{self.server}: " if self.server else ""
        return (
            f'{prefix}DRIFT: {self.resource_type.value} "{self.name}" '
            f"expected {self.expected.value}, found {self.found.value}"
        )


def detect_drift(
    snapshot_actions: list[Action],
    current_actions: list[Action],
    server: str | None = None,
) -> list[DriftWarning]:
    """Compare verdicts by (resource type, name).

    Args:
        snapshot_actions: Reconciliation of the current config against the
            captured state.
        current_actions: Reconciliation of the captured state against the
            current live state (the rollback plan).
        server: Label attached to each warning.
    """
    current: dict[tuple[str, str], Action] = {}
    for action in current_actions:
        current.setdefault(action.key, action)

    warnings = []
    for action in snapshot_actions:
        found = current.get(action.key)
        if found is not None and found.type != action.type:
            warnings.append(
                DriftWarning(
                    resource_type=action.resource_type,
                    name=action.name,
                    expected=action.type,
                    found=found.type,
                    server=server,
                )
            )
    return warnings

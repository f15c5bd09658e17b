"""Exception hierarchy shared by the parser, providers and sync engine."""

from __future__ import annotations


class DisclawError(Exception):
    """Base class for every error disclaw raises on purpose."""


class ConfigError(DisclawError):
    """The configuration document is invalid or names an unknown server."""


class ProviderError(DisclawError):
    """An external state provider (Discord, OpenClaw) failed."""


class ProviderFetchError(ProviderError):
    """Reading live state from a provider failed."""


class ProviderApplyError(ProviderError):
    """Mutating live state through a provider failed.

    ``applied`` counts the actions of the failing batch that went through
    before the failure.
    """

    def __init__(self, message: str, applied: int = 0):
        super().__init__(message)
        self.applied = applied


class ProviderVerifyError(ProviderError):
    """A provider could not confirm the expected post-apply state."""


class SnapshotNotFoundError(DisclawError):
    """No snapshot exists to roll back to."""

    def __init__(self, path: str):
        super().__init__(f"No snapshot found at {path}. Nothing to roll back to.")
        self.path = path

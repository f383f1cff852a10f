"""Exception types raised across alertgov."""

from __future__ import annotations


class GovernanceError(Exception):
    """Base class for all alertgov errors."""


class ConfigError(GovernanceError, ValueError):
    """Configuration is malformed or internally inconsistent."""


class AlertNotFoundError(GovernanceError, LookupError):
    def __init__(self, alert_id: str) -> None:
        super().__init__(f"alert not found: {alert_id}")
        self.alert_id = alert_id


class SignalFetchError(GovernanceError):
    """Signal source failed for a group; the group is skipped for the cycle."""

    def __init__(self, group_id: str, message: str = "signal fetch failed") -> None:
        super().__init__(f"{message}: {group_id}")
        self.group_id = group_id


class PersistenceError(GovernanceError):
    """A persistence gateway call failed. Never fatal to in-memory decisions."""

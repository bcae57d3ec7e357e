"""
Exception hierarchy for upkeep.

Package-local failures (download, upgrade, clean install) are not exceptions:
they end as UpgradeOutcome values. These classes cover the run-level faults.
"""


class UpkeepError(Exception):
    """Base class for run-level failures."""


class LockContention(UpkeepError):
    """Another run holds a fresh lock; nothing was processed."""

    def __init__(self, path, holder: str = "", age: float = 0.0):
        self.path = path
        self.holder = holder
        self.age = age
        super().__init__(f"lock {path} held by {holder or 'unknown'} ({age:.0f}s old)")


class InvokerError(UpkeepError):
    """An external process could not be started."""


class ToolingMissing(UpkeepError):
    """The winget CLI is absent or not answering."""


class EnumerationError(UpkeepError):
    """The list of outdated packages could not be obtained."""

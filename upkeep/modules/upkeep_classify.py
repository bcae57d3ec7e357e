"""
upkeep_classify.py

Maps raw installer / winget exit codes to the action the upgrade state
machine takes next. The mapping is pure and total: every integer lands in
exactly one ActionVariant.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet


class ActionVariant(Enum):
    SUCCESS = "success"
    IN_USE = "in_use"
    REBOOT_REQUIRED = "reboot_required"
    TECHNOLOGY_CHANGED = "technology_changed"
    TRANSIENT_RETRY = "transient_retry"
    UNKNOWN_FAILURE = "unknown_failure"

    @property
    def needs_clean_install(self) -> bool:
        return self in (ActionVariant.TECHNOLOGY_CHANGED, ActionVariant.UNKNOWN_FAILURE)


def normalize_code(code: int) -> int:
    """Fold signed 32-bit HRESULTs onto their unsigned value (-1978334975 -> 0x8A150101)."""
    if code < 0:
        return code & 0xFFFFFFFF
    return code


@dataclass(frozen=True)
class ExitCodeTable:
    # winget APPINSTALLER_CLI_ERROR_* values
    in_use: FrozenSet[int] = frozenset({0x8A150101, 0x8A150103})
    reboot_required: int = 0x8A150109
    technology_changed: int = 0x8A15002B
    retryable: FrozenSet[int] = frozenset({0x8A150102, 0x8A150107, 0x8A150008})
    success: int = 0

    def __post_init__(self):
        object.__setattr__(self, "in_use", frozenset(normalize_code(c) for c in self.in_use))
        object.__setattr__(self, "retryable", frozenset(normalize_code(c) for c in self.retryable))
        object.__setattr__(self, "reboot_required", normalize_code(self.reboot_required))
        object.__setattr__(self, "technology_changed", normalize_code(self.technology_changed))


def classify(code: int, table: ExitCodeTable) -> ActionVariant:
    code = normalize_code(code)
    if code == table.success:
        return ActionVariant.SUCCESS
    if code in table.in_use:
        return ActionVariant.IN_USE
    if code == table.reboot_required:
        return ActionVariant.REBOOT_REQUIRED
    if code == table.technology_changed:
        return ActionVariant.TECHNOLOGY_CHANGED
    if code in table.retryable:
        return ActionVariant.TRANSIENT_RETRY
    return ActionVariant.UNKNOWN_FAILURE


def format_code(code: int) -> str:
    if code == 0:
        return "0"
    return f"{code} (0x{normalize_code(code):08X})"

#!/usr/bin/env python3
# upkeep_retention.py
"""
Retention for upkeep artifacts.

 - prune_logs(): drops rotated log files older than log_max_age_days, and any
   beyond the newest log_keep; the live upkeep.log / upkeep-errors.log stay
 - prune_workspaces(): removes package workspaces (cached installers) whose
   newest file is older than workspace_max_age_days
Both honour dry_run and report what they removed.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from upkeep.modules.upkeep_config import UpkeepSettings

_logger = logging.getLogger("upkeep.retention")

LIVE_LOGS = ("upkeep.log", "upkeep-errors.log")
DAY = 86400.0


@dataclass
class RetentionResult:
    removed: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self):
        return asdict(self)


def _newest_mtime(path: Path) -> float:
    newest = path.stat().st_mtime
    for p in path.rglob("*"):
        try:
            newest = max(newest, p.stat().st_mtime)
        except OSError:
            continue
    return newest


class Retention:
    def __init__(self, settings: UpkeepSettings, logger: Any = None, dry_run: bool = False):
        self.settings = settings
        self.logger = logger
        self.dry_run = dry_run

    def _log(self, level: str, event: str, msg: str = "", **meta):
        if self.logger:
            getattr(self.logger, level)(event, msg, **meta)
        else:
            getattr(_logger, level)(f"{event}: {msg}")

    def _remove(self, path: Path, result: RetentionResult) -> None:
        if self.dry_run:
            result.removed.append(str(path))
            return
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
            result.removed.append(str(path))
        except OSError as e:
            result.failed.append({"path": str(path), "error": str(e)})
            self._log("warning", "retention.fail", f"cannot remove {path}: {e}")

    def prune_logs(self, log_dir: Optional[Path] = None, now: Optional[float] = None) -> RetentionResult:
        result = RetentionResult(dry_run=self.dry_run)
        log_dir = log_dir or self.settings.log_dir
        if log_dir is None or not log_dir.is_dir():
            return result
        now = time.time() if now is None else now
        cutoff = now - self.settings.log_max_age_days * DAY

        rotated = [p for p in log_dir.iterdir() if p.is_file() and ".log" in p.name and p.name not in LIVE_LOGS]
        rotated.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        for idx, path in enumerate(rotated):
            if idx >= self.settings.log_keep or path.stat().st_mtime < cutoff:
                self._remove(path, result)
        self._log("info", "retention.logs", f"{len(result.removed)} log file(s) pruned", dry_run=self.dry_run)
        return result

    def prune_workspaces(self, now: Optional[float] = None) -> RetentionResult:
        result = RetentionResult(dry_run=self.dry_run)
        root = self.settings.packages_dir
        if not root.is_dir():
            return result
        now = time.time() if now is None else now
        cutoff = now - self.settings.workspace_max_age_days * DAY
        for ws in sorted(root.iterdir()):
            if ws.is_dir() and _newest_mtime(ws) < cutoff:
                self._remove(ws, result)
        self._log("info", "retention.workspaces", f"{len(result.removed)} workspace(s) pruned", dry_run=self.dry_run)
        return result

#!/usr/bin/env python3
# upkeep_cleaninstall.py
"""
Clean-install fallback: uninstall, then install again.

Used when winget cannot upgrade a package in place (installer technology
changed, or an unclassified failure). Each step first goes through the winget
CLI; when the CLI step fails, the installer cached in the package workspace
is run silently instead. The fallback never retries and returns one exit code.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from upkeep.modules.upkeep_classify import format_code
from upkeep.modules.upkeep_config import UpkeepSettings
from upkeep.modules.upkeep_invoker import Operation

_logger = logging.getLogger("upkeep.cleaninstall")

INSTALLER_SUFFIXES = (".exe", ".msi")


def find_cached_installer(workspace: Optional[Path]) -> Optional[Path]:
    """Return the newest installer executable in the workspace, if any."""
    if workspace is None or not workspace.is_dir():
        return None
    candidates = [p for p in workspace.iterdir() if p.is_file() and p.suffix.lower() in INSTALLER_SUFFIXES]
    if not candidates:
        return None
    return max(candidates, key=lambda p: p.stat().st_mtime)


class CleanInstaller:
    def __init__(self, settings: UpkeepSettings, invoker: Any, logger: Any = None):
        self.settings = settings
        self.invoker = invoker
        self.logger = logger

    def _log(self, level: str, event: str, msg: str = "", **meta):
        if self.logger:
            getattr(self.logger, level)(event, msg, **meta)
        else:
            getattr(_logger, level)(f"{event}: {msg}")

    def _step(self, package: Any, step: str, rc: int) -> int:
        level = "info" if rc == 0 else "warning"
        self._log(level, "cleaninstall.step", f"{package.identifier}: {step} -> {format_code(rc)}", package=package.identifier, step=step, rc=rc)
        return rc

    def run(self, package: Any, workspace: Optional[Path]) -> int:
        self._log("info", "cleaninstall.start", f"{package.identifier}: uninstall + reinstall", package=package.identifier)
        rc = self._uninstall(package, workspace)
        if rc == 0:
            rc = self._install(package, workspace)
        level = "info" if rc == 0 else "error"
        self._log(level, "cleaninstall.result", f"{package.identifier}: clean install -> {format_code(rc)}", package=package.identifier, rc=rc)
        return rc

    def _uninstall(self, package: Any, workspace: Optional[Path]) -> int:
        rc = self._step(package, "winget uninstall", self.invoker.invoke(Operation.UNINSTALL, package))
        if rc == 0:
            return rc
        installer = find_cached_installer(workspace)
        if installer is None:
            self._log("warning", "cleaninstall.no_installer", f"{package.identifier}: no cached installer to uninstall with", package=package.identifier)
            return rc
        return self._step(
            package,
            f"{installer.name} uninstall",
            self.invoker.run_installer(installer, self.settings.uninstall_args, uninstall=True),
        )

    def _install(self, package: Any, workspace: Optional[Path]) -> int:
        rc = self._step(package, "winget install", self.invoker.invoke(Operation.INSTALL, package))
        if rc == 0:
            return rc
        installer = find_cached_installer(workspace)
        if installer is None:
            return rc
        return self._step(
            package,
            f"{installer.name} install",
            self.invoker.run_installer(installer, self.settings.install_args, uninstall=False),
        )

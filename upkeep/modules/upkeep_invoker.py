#!/usr/bin/env python3
# upkeep_invoker.py
"""
Process invoker for upkeep: runs winget and cached installers synchronously
and reports integer exit codes.

 - invoke(operation, package, workspace=None): download / upgrade / uninstall / install via winget
 - run_installer(path, args): run a cached installer (.exe directly with args, .msi through
   msiexec with fixed silent flags; args are not applied to .msi)
 - capture(args): run winget and return (rc, stdout) for table parsing
 - ensure_available(): idempotent check that the winget CLI is present and answers --version

No timeout is applied; the invoked process owns its own limits.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional, Sequence, Tuple

from upkeep.modules.upkeep_config import UpkeepSettings
from upkeep.modules.upkeep_errors import InvokerError, ToolingMissing

_logger = logging.getLogger("upkeep.invoker")

SOURCE_AGREEMENTS = "--accept-source-agreements"
PACKAGE_AGREEMENTS = "--accept-package-agreements"


class Operation(Enum):
    DOWNLOAD = "download"
    UPGRADE = "upgrade"
    UNINSTALL = "uninstall"
    INSTALL = "install"


class WingetInvoker:
    def __init__(self, settings: UpkeepSettings, logger: Any = None):
        self.settings = settings
        self.logger = logger
        self.executable = settings.winget

    def _log(self, level: str, event: str, msg: str = "", **meta):
        if self.logger:
            getattr(self.logger, level)(event, msg, **meta)
        else:
            getattr(_logger, level)(f"{event}: {msg} {meta if meta else ''}")

    # ---------------- command construction ----------------
    def build_command(self, operation: Operation, package: Any, workspace: Optional[Path] = None) -> List[str]:
        cmd = [
            self.executable,
            operation.value,
            "--id",
            package.identifier,
            "--exact",
            "--source",
            package.source or self.settings.source,
        ]
        if operation is Operation.DOWNLOAD:
            if workspace is None:
                raise InvokerError("download requires a workspace directory")
            cmd += ["--download-directory", str(workspace)]
        else:
            cmd += ["--silent", "--disable-interactivity"]
        cmd.append(SOURCE_AGREEMENTS)
        # uninstall has no package agreement to accept
        if operation is not Operation.UNINSTALL:
            cmd.append(PACKAGE_AGREEMENTS)
        return cmd

    def installer_command(self, installer: Path, args: Sequence[str], uninstall: bool = False) -> List[str]:
        if installer.suffix.lower() == ".msi":
            return ["msiexec", "/x" if uninstall else "/i", str(installer), "/qn", "/norestart"]
        return [str(installer), *args]

    # ---------------- execution ----------------
    def run(self, cmd: List[str]) -> int:
        start = time.time()
        try:
            proc = subprocess.run(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except OSError as e:
            raise InvokerError(f"cannot start {cmd[0]}: {e}") from e
        self._log("debug", "invoke.exit", f"{cmd[0]} exited {proc.returncode}", cmd=cmd, duration=round(time.time() - start, 3))
        return proc.returncode

    def capture(self, args: List[str]) -> Tuple[int, str]:
        cmd = [self.executable, *args]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, encoding="utf-8", errors="replace")
        except OSError as e:
            raise InvokerError(f"cannot start {cmd[0]}: {e}") from e
        return proc.returncode, proc.stdout or ""

    def invoke(self, operation: Operation, package: Any, workspace: Optional[Path] = None) -> int:
        return self.run(self.build_command(operation, package, workspace))

    def run_installer(self, installer: Path, args: Sequence[str], uninstall: bool = False) -> int:
        return self.run(self.installer_command(installer, args, uninstall=uninstall))

    # ---------------- tooling ----------------
    def ensure_available(self) -> str:
        """Return the winget version string or raise ToolingMissing."""
        if shutil.which(self.executable) is None:
            raise ToolingMissing(f"{self.executable} not found on PATH")
        try:
            rc, out = self.capture(["--version"])
        except InvokerError as e:
            raise ToolingMissing(str(e)) from e
        if rc != 0:
            raise ToolingMissing(f"{self.executable} --version exited {rc}")
        version = out.strip()
        self._log("info", "tooling.ok", f"{self.executable} {version}")
        return version

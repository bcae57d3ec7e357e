#!/usr/bin/env python3
# upkeep_enumerate.py
"""
Package enumerator: asks winget which installed packages have an upgrade
available and turns its fixed-width table into Package snapshots.

Exclusions come from settings (packages.exclude); `only` narrows the list to
explicitly requested ids.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional

from upkeep.modules.upkeep_config import UpkeepSettings
from upkeep.modules.upkeep_errors import EnumerationError

_logger = logging.getLogger("upkeep.enumerate")

UPGRADE_LIST_ARGS = ["upgrade", "--accept-source-agreements", "--disable-interactivity"]


@dataclass(frozen=True)
class Package:
    identifier: str
    source: str
    update_available: bool = True
    name: str = ""
    installed_version: str = ""
    available_version: str = ""


def parse_upgrade_table(output: str, default_source: str = "winget") -> List[Package]:
    """Parse `winget upgrade` output. Rows without an id or available version are skipped."""
    lines = [line.split("\r")[-1].rstrip() for line in output.splitlines()]
    header_index = next(
        (i for i, line in enumerate(lines) if "Name" in line and "Id" in line and "Version" in line),
        -1,
    )
    if header_index == -1:
        return []

    header = lines[header_index]
    offset = header.find("Name")
    header = header[offset:]
    positions = {
        "id": header.find("Id"),
        "version": header.find("Version"),
        "available": header.find("Available"),
        "source": header.find("Source"),
    }
    if positions["available"] == -1:
        return []

    packages = []
    for line in lines[header_index + 1:]:
        if set(line.strip()) <= {"-"}:
            if not line.strip() and packages:
                break
            continue
        avail_end = positions["source"] if positions["source"] != -1 else len(line)
        name = line[:positions["id"]].strip()
        app_id = line[positions["id"]:positions["version"]].strip()
        installed = line[positions["version"]:positions["available"]].strip()
        available = line[positions["available"]:avail_end].strip()
        source = line[positions["source"]:].strip() if positions["source"] != -1 else ""
        if not app_id or " " in app_id or not available:
            continue
        packages.append(
            Package(
                identifier=app_id,
                source=source or default_source,
                update_available=True,
                name=name,
                installed_version=installed,
                available_version=available,
            )
        )
    return packages


class PackageEnumerator:
    def __init__(self, settings: UpkeepSettings, invoker: Any, logger: Any = None):
        self.settings = settings
        self.invoker = invoker
        self.logger = logger

    def _log(self, level: str, event: str, msg: str = "", **meta):
        if self.logger:
            getattr(self.logger, level)(event, msg, **meta)
        else:
            getattr(_logger, level)(f"{event}: {msg}")

    def list_outdated(self, only: Optional[Iterable[str]] = None) -> List[Package]:
        rc, output = self.invoker.capture(UPGRADE_LIST_ARGS)
        packages = parse_upgrade_table(output, default_source=self.settings.source)
        # a non-zero exit with a readable table still yields its rows
        if rc != 0 and not packages:
            raise EnumerationError(f"winget upgrade exited {rc}")

        wanted = {p.lower() for p in only} if only else None
        result = []
        for pkg in packages:
            key = pkg.identifier.lower()
            if key in self.settings.exclude:
                self._log("info", "enumerate.excluded", f"{pkg.identifier} is excluded", package=pkg.identifier)
                continue
            if wanted is not None and key not in wanted:
                continue
            result.append(pkg)
        self._log("info", "enumerate.done", f"{len(result)} package(s) to upgrade", total=len(packages))
        return result

#!/usr/bin/env python3
# upkeep_cli.py
"""
upkeep CLI

Commands:
 - run       upgrade every outdated package (or only --only ids) under the run lock
 - list      show what winget would upgrade, after exclusions
 - classify  explain what an exit code means to the upgrade state machine
 - cleanup   prune rotated logs and stale package workspaces
 - unlock    remove the run lock (after a crashed run)

Global options: --config PATH (repeatable), --quiet, --json, --verbose.
Exit status: 0 all settled, 1 some package failed, 2 lock contention,
3 winget missing or enumeration failed, 4 bad configuration.
"""

from __future__ import annotations

import argparse
import json
import sys
import time
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, List, Optional

from rich.console import Console
from rich.table import Table

from upkeep.modules.upkeep_classify import classify, format_code, normalize_code
from upkeep.modules.upkeep_cleaninstall import CleanInstaller
from upkeep.modules.upkeep_config import ConfigError, ConfigStore, UpkeepSettings
from upkeep.modules.upkeep_enumerate import PackageEnumerator
from upkeep.modules.upkeep_errors import EnumerationError, LockContention, ToolingMissing, UpkeepError
from upkeep.modules.upkeep_invoker import WingetInvoker
from upkeep.modules.upkeep_lock import RunLock
from upkeep.modules.upkeep_logger import UpkeepLogger
from upkeep.modules.upkeep_retention import Retention
from upkeep.modules.upkeep_upgrade import RunReport, UpgradeOrchestrator, UpgradeStateMachine

EXIT_OK = 0
EXIT_PACKAGE_FAILED = 1
EXIT_LOCKED = 2
EXIT_TOOLING = 3
EXIT_CONFIG = 4

_STATE_STYLE = {
    "succeeded": "green",
    "in_use_blocked": "yellow",
    "reboot_pending": "yellow",
    "failed": "bold red",
}


class UpkeepCLI:
    def __init__(
        self,
        cfg: ConfigStore,
        settings: Optional[UpkeepSettings] = None,
        logger: Any = None,
        invoker: Any = None,
        sleep: Callable[[float], None] = time.sleep,
        json_out: bool = False,
        console: Optional[Console] = None,
    ):
        self.cfg = cfg
        self.settings = settings or UpkeepSettings.from_config(cfg)
        self.logger = logger or UpkeepLogger.from_config(cfg)
        self.json_out = json_out
        self.console = console or Console(highlight=False)

        self.invoker = invoker or WingetInvoker(self.settings, logger=self.logger)
        self.lock = RunLock(self.settings.lock_file, self.settings.lock_max_age, logger=self.logger)
        self.enumerator = PackageEnumerator(self.settings, self.invoker, logger=self.logger)
        self.cleaner = CleanInstaller(self.settings, self.invoker, logger=self.logger)
        self.machine = UpgradeStateMachine(self.settings, self.invoker, self.cleaner, logger=self.logger, sleep=sleep)
        self.orchestrator = UpgradeOrchestrator(self.lock, self.enumerator, self.machine, logger=self.logger)

    # ---------------- helpers for UI ----------------
    def _print_phase(self, text: str):
        if self.json_out:
            return
        self.console.print(f"[bold cyan]{text}[/bold cyan]")

    def _emit_json(self, payload: Any) -> None:
        print(json.dumps(payload, indent=2, ensure_ascii=False, default=str))

    def _print_report(self, report: RunReport) -> None:
        if self.json_out:
            self._emit_json(report.to_dict())
            return
        table = Table(title="upkeep run")
        table.add_column("Package", style="cyan")
        table.add_column("State")
        table.add_column("Action")
        table.add_column("Exit code", justify="right")
        table.add_column("Attempts", justify="right")
        table.add_column("Clean install", justify="center")
        for o in report.outcomes:
            style = _STATE_STYLE.get(o.state.value, "white")
            table.add_row(
                o.package_id,
                f"[{style}]{o.state.value}[/{style}]",
                o.action.value if o.action else "-",
                format_code(o.code) if o.code is not None else (o.error or "-"),
                str(o.attempts),
                "yes" if o.clean_install else "",
            )
        self.console.print(table)
        counts = ", ".join(f"{k}={v}" for k, v in sorted(report.counts().items())) or "nothing to do"
        self.console.print(f"{len(report.outcomes)} package(s): {counts}")

    # ---------------- commands ----------------
    def cmd_run(self, only: Optional[List[str]] = None, check_tooling: bool = True) -> int:
        if check_tooling:
            self.invoker.ensure_available()
        self._print_phase(">>>> Upgrading outdated packages <<<<")
        report = self.orchestrator.run(only=only)
        self._print_report(report)
        return EXIT_OK if report.ok else EXIT_PACKAGE_FAILED

    def cmd_list(self, only: Optional[List[str]] = None) -> int:
        packages = self.enumerator.list_outdated(only=only)
        if self.json_out:
            self._emit_json([asdict(p) for p in packages])
            return EXIT_OK
        table = Table(title="Upgrades available")
        table.add_column("Name")
        table.add_column("Id", style="cyan")
        table.add_column("Installed")
        table.add_column("Available", style="green")
        table.add_column("Source")
        for p in packages:
            table.add_row(p.name, p.identifier, p.installed_version, p.available_version, p.source)
        self.console.print(table)
        return EXIT_OK

    def cmd_classify(self, code: int) -> int:
        action = classify(code, self.settings.exit_codes)
        if self.json_out:
            self._emit_json({"code": code, "hex": f"0x{normalize_code(code):08X}", "action": action.value, "clean_install": action.needs_clean_install})
        else:
            self.console.print(f"{format_code(code)} -> [bold]{action.value}[/bold]")
        return EXIT_OK

    def cmd_cleanup(self, dry_run: bool = False) -> int:
        retention = Retention(self.settings, logger=self.logger, dry_run=dry_run)
        logs = retention.prune_logs()
        # workspaces belong to a live run while it holds the lock
        with self.lock.hold():
            workspaces = retention.prune_workspaces()
        if self.json_out:
            self._emit_json({"logs": logs.to_dict(), "workspaces": workspaces.to_dict()})
        else:
            verb = "would remove" if dry_run else "removed"
            for path in logs.removed + workspaces.removed:
                self.console.print(f"{verb} {path}")
        return EXIT_OK if not (logs.failed or workspaces.failed) else EXIT_PACKAGE_FAILED

    def cmd_unlock(self) -> int:
        info = self.lock.read()
        if info is None:
            self._print_phase("no lock present")
            return EXIT_OK
        self.lock.release()
        self._print_phase(f"removed lock held by {info.holder}")
        return EXIT_OK


def _parse_code(text: str) -> int:
    try:
        return int(text, 0)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer exit code: {text}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="upkeep", description="winget package upgrade orchestration")
    p.add_argument("--config", "-c", action="append", default=[], help="extra TOML config file (repeatable)")
    p.add_argument("--quiet", "-q", action="store_true", help="no log output on the console")
    p.add_argument("--json", action="store_true", help="machine readable output")
    p.add_argument("--verbose", "-v", action="store_true", help="show debug events and metadata")
    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", aliases=["up"], help="upgrade outdated packages")
    run.add_argument("--only", nargs="+", metavar="ID", help="restrict to these package ids")
    run.add_argument("--skip-tooling-check", action="store_true", help="do not verify winget before the run")

    ls = sub.add_parser("list", aliases=["ls"], help="list outdated packages")
    ls.add_argument("--only", nargs="+", metavar="ID")

    cl = sub.add_parser("classify", help="classify an exit code")
    cl.add_argument("code", type=_parse_code, help="decimal or 0x-prefixed exit code")

    cu = sub.add_parser("cleanup", help="prune old logs and package workspaces")
    cu.add_argument("--dry-run", action="store_true")

    sub.add_parser("unlock", help="remove the run lock")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    console = Console(stderr=True, highlight=False)
    try:
        cfg = ConfigStore.load(extra_paths=[Path(c) for c in args.config])
        settings = UpkeepSettings.from_config(cfg)
        logger = UpkeepLogger.from_config(cfg, quiet=args.quiet or None, verbose=args.verbose or None)
    except ConfigError as e:
        console.print(f"[bold red]configuration error:[/bold red] {e}")
        return EXIT_CONFIG

    cli = UpkeepCLI(cfg, settings=settings, logger=logger, json_out=args.json)
    try:
        if args.command in ("run", "up"):
            return cli.cmd_run(only=args.only, check_tooling=not args.skip_tooling_check)
        if args.command in ("list", "ls"):
            return cli.cmd_list(only=args.only)
        if args.command == "classify":
            return cli.cmd_classify(args.code)
        if args.command == "cleanup":
            return cli.cmd_cleanup(dry_run=args.dry_run)
        return cli.cmd_unlock()
    except LockContention as e:
        logger.error("run.locked", str(e))
        return EXIT_LOCKED
    except (ToolingMissing, EnumerationError) as e:
        logger.error("run.aborted", str(e))
        return EXIT_TOOLING
    except UpkeepError as e:
        logger.error("run.aborted", str(e), exc=e)
        return EXIT_PACKAGE_FAILED
    except Exception as e:
        logger.critical("run.crashed", f"unexpected failure: {e}", exc=e)
        return EXIT_PACKAGE_FAILED
    finally:
        logger.flush()


if __name__ == "__main__":
    sys.exit(main())

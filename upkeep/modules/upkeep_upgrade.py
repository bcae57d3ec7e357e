"""
upkeep_upgrade.py

Upgrades outdated winget packages.

- UpgradeStateMachine.run(package): download -> upgrade attempt -> classify ->
  retry / clean install / stop, returning one UpgradeOutcome per package
- UpgradeOrchestrator.run(only=None): holds the run lock, enumerates packages
  and upgrades them one at a time; a failing package never stops the batch

Only TRANSIENT_RETRY classifications are retried, with a fixed delay, and at
most `max_attempts` upgrade attempts are made per package. Clean install runs
for TECHNOLOGY_CHANGED and UNKNOWN_FAILURE only.
"""
from __future__ import annotations

import logging
import time
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from upkeep.modules.upkeep_classify import ActionVariant, classify, format_code
from upkeep.modules.upkeep_config import UpkeepSettings
from upkeep.modules.upkeep_invoker import Operation

_logger = logging.getLogger("upkeep.upgrade")


class UpgradeState(Enum):
    INIT = "init"
    DOWNLOADING = "downloading"
    ATTEMPTING = "attempting"
    BACKOFF = "backoff"
    CLEAN_INSTALLING = "clean_installing"
    SUCCEEDED = "succeeded"
    IN_USE_BLOCKED = "in_use_blocked"
    REBOOT_PENDING = "reboot_pending"
    FAILED = "failed"


# terminal states that are not failures of the run
SETTLED_STATES = (UpgradeState.SUCCEEDED, UpgradeState.IN_USE_BLOCKED, UpgradeState.REBOOT_PENDING)

_TERMINAL_FOR = {
    ActionVariant.SUCCESS: UpgradeState.SUCCEEDED,
    ActionVariant.IN_USE: UpgradeState.IN_USE_BLOCKED,
    ActionVariant.REBOOT_REQUIRED: UpgradeState.REBOOT_PENDING,
}


@dataclass
class UpgradeOutcome:
    package_id: str
    code: Optional[int]
    state: UpgradeState
    action: Optional[ActionVariant] = None
    attempts: int = 0
    retries: int = 0
    clean_install: bool = False
    stage: str = ""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state in SETTLED_STATES

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        d["action"] = self.action.value if self.action else None
        return d


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class UpgradeStateMachine:
    def __init__(
        self,
        settings: UpkeepSettings,
        invoker: Any,
        cleaner: Any,
        logger: Any = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.invoker = invoker
        self.cleaner = cleaner
        self.logger = logger
        self.sleep = sleep
        self.state = UpgradeState.INIT

    def _log(self, level: str, event: str, msg: str = "", **meta):
        if self.logger:
            getattr(self.logger, level)(event, msg, **meta)
        else:
            getattr(_logger, level)(f"{event}: {msg}")

    def _enter(self, state: UpgradeState, pid: str) -> None:
        self.state = state
        self._log("debug", "state", f"{pid}: {state.value}", package=pid)

    def run(self, package: Any) -> UpgradeOutcome:
        pid = package.identifier
        self._enter(UpgradeState.INIT, pid)
        workspace = self.settings.workspace_for(pid)

        # ---------------- download ----------------
        self._enter(UpgradeState.DOWNLOADING, pid)
        workspace.mkdir(parents=True, exist_ok=True)
        self._log("info", "download.start", f"{pid}: downloading installer", package=pid, workspace=str(workspace))
        rc = self.invoker.invoke(Operation.DOWNLOAD, package, workspace)
        if rc != 0:
            self._log("error", "download.result", f"{pid}: download failed {format_code(rc)}", package=pid, rc=rc)
            self._enter(UpgradeState.FAILED, pid)
            return UpgradeOutcome(package_id=pid, code=rc, state=UpgradeState.FAILED, stage="download")
        self._log("info", "download.result", f"{pid}: installer downloaded", package=pid, rc=rc)

        # ---------------- attempts ----------------
        attempts = 0
        action = None
        while attempts < self.settings.max_attempts:
            if attempts > 0:
                self._enter(UpgradeState.BACKOFF, pid)
                self._log(
                    "warning",
                    "attempt.retry",
                    f"{pid}: transient failure, retrying in {self.settings.retry_delay:g}s",
                    package=pid,
                    retry=attempts,
                )
                self.sleep(self.settings.retry_delay)

            self._enter(UpgradeState.ATTEMPTING, pid)
            attempts += 1
            self._log("info", "attempt.start", f"{pid}: upgrade attempt {attempts}/{self.settings.max_attempts}", package=pid, attempt=attempts)
            rc = self.invoker.invoke(Operation.UPGRADE, package)
            action = classify(rc, self.settings.exit_codes)
            self._log("info", "attempt.result", f"{pid}: {format_code(rc)} -> {action.value}", package=pid, rc=rc, action=action.value)

            if action is not ActionVariant.TRANSIENT_RETRY:
                break

        outcome = UpgradeOutcome(
            package_id=pid,
            code=rc,
            state=UpgradeState.FAILED,
            action=action,
            attempts=attempts,
            retries=attempts - 1,
            stage="upgrade",
        )

        if action in _TERMINAL_FOR:
            outcome.state = _TERMINAL_FOR[action]
        elif action.needs_clean_install:
            self._enter(UpgradeState.CLEAN_INSTALLING, pid)
            outcome.clean_install = True
            outcome.stage = "clean_install"
            outcome.code = self.cleaner.run(package, workspace)
            outcome.state = UpgradeState.SUCCEEDED if outcome.code == 0 else UpgradeState.FAILED
        else:
            self._log("error", "attempt.exhausted", f"{pid}: giving up after {attempts} attempts", package=pid, rc=rc)
        self._enter(outcome.state, pid)
        return outcome


@dataclass
class RunReport:
    started_at: str
    finished_at: Optional[str] = None
    outcomes: List[UpgradeOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(o.ok for o in self.outcomes)

    def counts(self) -> Dict[str, int]:
        out: Dict[str, int] = {}
        for o in self.outcomes:
            out[o.state.value] = out.get(o.state.value, 0) + 1
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "counts": self.counts(),
            "outcomes": [o.to_dict() for o in self.outcomes],
        }


class UpgradeOrchestrator:
    def __init__(self, lock: Any, enumerator: Any, machine: UpgradeStateMachine, logger: Any = None):
        self.lock = lock
        self.enumerator = enumerator
        self.machine = machine
        self.logger = logger

    def _log(self, level: str, event: str, msg: str = "", **meta):
        if self.logger:
            getattr(self.logger, level)(event, msg, **meta)
        else:
            getattr(_logger, level)(f"{event}: {msg}")

    def _upgrade_one(self, package: Any) -> UpgradeOutcome:
        try:
            return self.machine.run(package)
        except Exception as e:
            if self.logger:
                self.logger.error("package.error", f"{package.identifier}: unexpected failure: {e}", exc=e, package=package.identifier)
            else:
                _logger.error(f"package.error: {package.identifier}: {e}\n{traceback.format_exc()}")
            return UpgradeOutcome(package_id=package.identifier, code=None, state=UpgradeState.FAILED, stage="unexpected", error=str(e))

    def run(self, only: Optional[Iterable[str]] = None) -> RunReport:
        with self.lock.hold():
            report = RunReport(started_at=_now())
            packages = self.enumerator.list_outdated(only=only)
            self._log("info", "run.start", f"{len(packages)} package(s) to process", packages=[p.identifier for p in packages])
            for pkg in packages:
                report.outcomes.append(self._upgrade_one(pkg))
            report.finished_at = _now()
            self._log("info" if report.ok else "warning", "run.finish", "run finished", counts=report.counts())
            return report

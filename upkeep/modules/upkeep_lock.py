#!/usr/bin/env python3
# upkeep_lock.py
"""
Run-level lock for upkeep.

One lock file guards a whole orchestration run against concurrent runs from
other processes. The file holds two plain-text lines: the holder's pid and
the UTC acquisition time (ISO-8601). A lock older than `max_age` seconds is
considered abandoned and is replaced.

    lock = RunLock(settings.lock_file, settings.lock_max_age)
    with lock.hold():
        ...
"""

from __future__ import annotations

import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, Optional

from upkeep.modules.upkeep_errors import LockContention

_logger = logging.getLogger("upkeep.lock")


@dataclass(frozen=True)
class LockInfo:
    path: Path
    holder: str
    acquired_at: float


class RunLock:
    def __init__(self, path: Path, max_age: float, logger: Any = None, clock: Callable[[], float] = time.time):
        self.path = Path(path)
        self.max_age = float(max_age)
        self.logger = logger
        self.clock = clock
        self.info: Optional[LockInfo] = None

    def _log(self, level: str, event: str, msg: str = "", **meta):
        if self.logger:
            getattr(self.logger, level)(event, msg, **meta)
        else:
            getattr(_logger, level)(f"{event}: {msg}")

    # ---------------- inspection ----------------
    def read(self, path: Optional[Path] = None) -> Optional[LockInfo]:
        """Return the current lock holder, or None when no lock file exists."""
        path = path or self.path
        try:
            text = path.read_text(encoding="utf-8")
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return None
        lines = text.splitlines()
        holder = lines[0].strip() if lines else ""
        acquired = mtime
        if len(lines) > 1:
            try:
                ts = datetime.fromisoformat(lines[1].strip()).timestamp()
                # a timestamp from the future is not trusted
                if ts <= self.clock():
                    acquired = ts
            except ValueError:
                pass
        return LockInfo(path=path, holder=holder, acquired_at=acquired)

    def age(self, info: LockInfo) -> float:
        return self.clock() - info.acquired_at

    # ---------------- acquire / release ----------------
    def _write_new(self) -> LockInfo:
        now = self.clock()
        stamp = datetime.fromtimestamp(now, tz=timezone.utc).isoformat()
        fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(f"{os.getpid()}\n{stamp}\n")
        return LockInfo(path=self.path, holder=str(os.getpid()), acquired_at=now)

    def _discard_stale(self) -> None:
        """
        Move the lock aside under a private name, then re-check it before deleting.
        A claimed file that turns out fresh is linked back and reported as contention.
        """
        claimed = self.path.with_name(f"{self.path.name}.{os.getpid()}.stale")
        try:
            os.replace(self.path, claimed)
        except FileNotFoundError:
            return
        current = self.read(claimed)
        try:
            if current is not None and self.age(current) <= self.max_age:
                try:
                    os.link(claimed, self.path)
                except FileExistsError:
                    pass
                raise LockContention(self.path, current.holder, self.age(current))
        finally:
            claimed.unlink(missing_ok=True)

    def acquire(self) -> LockInfo:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.info = self._write_new()
        except FileExistsError:
            existing = self.read()
            if existing is not None:
                age = self.age(existing)
                if age <= self.max_age:
                    raise LockContention(self.path, existing.holder, age)
                self._log("warning", "lock.stale", f"removing abandoned lock held by {existing.holder}", path=str(self.path), age=round(age))
                self._discard_stale()
            # a concurrent run winning this second attempt surfaces as contention
            try:
                self.info = self._write_new()
            except FileExistsError:
                current = self.read()
                holder = current.holder if current else ""
                raise LockContention(self.path, holder, 0.0)
        self._log("info", "lock.acquired", f"lock acquired by pid {self.info.holder}", path=str(self.path))
        return self.info

    def release(self) -> None:
        """Remove the lock file; a missing file is not an error."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        else:
            self._log("info", "lock.released", "lock released", path=str(self.path))
        self.info = None

    @contextmanager
    def hold(self) -> Iterator[LockInfo]:
        info = self.acquire()
        try:
            yield info
        finally:
            self.release()

#!/usr/bin/env python3
# upkeep_logger.py
"""
UpkeepLogger — log sink for upkeep

Features:
 - Colorized terminal output through rich, with theme support (dark/light/plain)
 - JSON structured output option (one object per line)
 - Respects config: output.quiet, output.json, output.theme, logging.dir, logging.max_bytes, logging.backups
 - RotatingFileHandler for persistent logs (upkeep.log)
 - Separate error log file with tracebacks (upkeep-errors.log)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
import traceback
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

from rich.console import Console
from rich.markup import escape

from upkeep.modules.upkeep_config import DEFAULT_WORK_DIR, is_truthy

_base_logger = logging.getLogger("upkeep.logger")


# ----------------- defaults -----------------
DEFAULT_THEME = "dark"  # dark | light | plain
DEFAULT_LOG_DIR = str(Path(DEFAULT_WORK_DIR) / "logs")
DEFAULT_LOG_FILE = "upkeep.log"
DEFAULT_ERROR_FILE = "upkeep-errors.log"
DEFAULT_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_BACKUPS = 3

_THEMES = {
    "dark": {"info": "green", "warning": "yellow", "error": "bold red", "critical": "bold red", "debug": "cyan"},
    "light": {"info": "dark_green", "warning": "dark_orange", "error": "red", "critical": "red", "debug": "blue"},
}

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _safe_json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, default=str)


class UpkeepLogger:
    """
    UpkeepLogger manages console/file/json logging.
    Use UpkeepLogger.from_config(cfg) to build from a ConfigStore.
    """

    def __init__(
        self,
        *,
        module: str = "upkeep",
        log_dir: Optional[str] = None,
        json_out: bool = False,
        quiet: bool = False,
        verbose: bool = False,
        theme: str = DEFAULT_THEME,
        max_bytes: int = DEFAULT_MAX_BYTES,
        backups: int = DEFAULT_BACKUPS,
        console: Optional[Console] = None,
    ):
        self.module = module
        self.json_out = json_out
        self.quiet = quiet
        self.verbose = verbose
        self.theme = theme if theme in ("dark", "light", "plain") else DEFAULT_THEME
        self.console = console or Console(stderr=True, highlight=False)
        self._lock = threading.RLock()

        base_dir = Path(log_dir or os.environ.get("UPKEEP_LOG_DIR", DEFAULT_LOG_DIR)).expanduser()
        base_dir.mkdir(parents=True, exist_ok=True)
        self.log_path = base_dir / DEFAULT_LOG_FILE
        self.error_log_path = base_dir / DEFAULT_ERROR_FILE

        # one python logger per log directory keeps handlers idempotent
        self._pylogger = logging.getLogger(f"upkeep.sink.{self.module}.{abs(hash(str(base_dir)))}")
        self._pylogger.setLevel(logging.DEBUG)
        self._pylogger.propagate = False
        if not any(isinstance(h, RotatingFileHandler) for h in self._pylogger.handlers):
            self._configure_file_handlers(max_bytes, backups)

    # ----------------- constructor helper -----------------
    @classmethod
    def from_config(cls, cfg: Any, module: str = "upkeep", **overrides) -> "UpkeepLogger":
        kwargs = dict(
            module=module,
            log_dir=cfg.get("logging.dir", DEFAULT_LOG_DIR),
            json_out=is_truthy(cfg.get("output.json", False)),
            quiet=is_truthy(cfg.get("output.quiet", False)),
            theme=cfg.get("output.theme", DEFAULT_THEME),
            max_bytes=int(cfg.get("logging.max_bytes", DEFAULT_MAX_BYTES)),
            backups=int(cfg.get("logging.backups", DEFAULT_BACKUPS)),
        )
        kwargs.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**kwargs)

    # ----------------- internal file handlers -----------------
    def _configure_file_handlers(self, max_bytes: int, backups: int) -> None:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        handler = RotatingFileHandler(str(self.log_path), maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
        handler.setFormatter(formatter)
        self._pylogger.addHandler(handler)
        err_handler = RotatingFileHandler(str(self.error_log_path), maxBytes=max_bytes, backupCount=backups, encoding="utf-8")
        err_handler.setLevel(logging.ERROR)
        err_handler.setFormatter(formatter)
        self._pylogger.addHandler(err_handler)

    def close(self) -> None:
        for h in list(self._pylogger.handlers):
            h.close()
            self._pylogger.removeHandler(h)

    # ----------------- emit helpers -----------------
    def _format_text(self, level: str, message: str, meta: Dict[str, Any]) -> str:
        tag = f"[{level.upper()}]"
        extra = f" {_safe_json(meta)}" if meta and self.verbose else ""
        if self.theme == "plain":
            return escape(f"{tag} {message}{extra}")
        style = _THEMES[self.theme].get(level, "white")
        return f"[{style}]{escape(tag)}[/{style}] {escape(message + extra)}"

    def _format_json(self, level: str, event: str, message: str, meta: Dict[str, Any]) -> str:
        payload = {
            "ts": _now_iso(),
            "level": level.upper(),
            "module": self.module,
            "event": event,
            "msg": message,
            "meta": meta,
        }
        return _safe_json(payload)

    def _emit(self, level: str, event: str, message: str = "", **meta) -> None:
        """Core emit: writes to the console (text or json) and to the log files."""
        with self._lock:
            exc_text = meta.pop("traceback", None)
            if not self.quiet and (level != "debug" or self.verbose):
                if self.json_out:
                    print(self._format_json(level, event, message, meta), file=sys.stderr)
                else:
                    self.console.print(self._format_text(level, message, meta))

            line = f"{event} {message}"
            if meta:
                line += f" {_safe_json(meta)}"
            if exc_text:
                line += f"\n{exc_text}"
            try:
                self._pylogger.log(_LEVELS.get(level, logging.INFO), line)
            except OSError as e:
                _base_logger.warning(f"Failed to write log to file: {e}")

    # ------------- public API -------------
    def info(self, event: str, message: str = "", **meta) -> None:
        self._emit("info", event, message, **meta)

    def warning(self, event: str, message: str = "", **meta) -> None:
        self._emit("warning", event, message, **meta)

    def error(self, event: str, message: str = "", exc: Optional[BaseException] = None, **meta) -> None:
        if exc is not None:
            meta["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self._emit("error", event, message, **meta)

    def critical(self, event: str, message: str = "", exc: Optional[BaseException] = None, **meta) -> None:
        if exc is not None:
            meta["traceback"] = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        self._emit("critical", event, message, **meta)

    def debug(self, event: str, message: str = "", **meta) -> None:
        self._emit("debug", event, message, **meta)

    def flush(self) -> None:
        for h in self._pylogger.handlers:
            h.flush()


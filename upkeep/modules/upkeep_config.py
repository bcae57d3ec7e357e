"""
upkeep.config

Configuration for `upkeep` (winget package maintenance).
- Loads TOML (system file, user file, explicit extra paths)
- Priority: defaults < system < user < extra paths < env
- Variable expansion (${section.key}) with cycle detection
- UpkeepSettings: immutable, typed view handed to every component
"""

from __future__ import annotations

import os
import re
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from upkeep.modules.upkeep_classify import ExitCodeTable


# -------------------------- Utilities --------------------------
VAR_PATTERN = re.compile(r"\$\{([^}\s:-]+)(?::?-([^}]*))?\}")

DEFAULT_WORK_DIR = str(Path(tempfile.gettempdir()) / "upkeep")


def is_truthy(val: Any) -> bool:
    return bool(val) and val not in ("0", "false", "False", "no", "No")


def _read_toml_file(path: Path) -> dict:
    with path.open("rb") as f:
        return tomllib.load(f)


def _merge_dict(a: dict, b: dict) -> dict:
    """Merge b into a (deep), returning new dict."""
    out = dict(a)
    for k, v in b.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _merge_dict(out[k], v)
        else:
            out[k] = v
    return out


def system_config_path() -> Path:
    program_data = os.environ.get("PROGRAMDATA")
    if program_data:
        return Path(program_data) / "upkeep" / "config.toml"
    return Path("/etc/upkeep/config.toml")


def user_config_path() -> Path:
    return Path.home() / ".config" / "upkeep" / "config.toml"


def default_config() -> Dict[str, Any]:
    return {
        "general": {
            "work_dir": DEFAULT_WORK_DIR,
            "lock_file": "${general.work_dir}/upkeep.lock",
            "lock_max_age": 3600,
        },
        "winget": {
            "executable": "winget",
            "source": "winget",
        },
        "upgrade": {
            "max_attempts": 3,
            "retry_delay": 30,
        },
        "exit_codes": {
            "in_use": [0x8A150101, 0x8A150103],
            "reboot_required": 0x8A150109,
            "technology_changed": 0x8A15002B,
            "retryable": [0x8A150102, 0x8A150107, 0x8A150008],
        },
        # arguments for cached .exe installers; .msi always runs as `msiexec /i|/x <file> /qn /norestart`
        "installer": {
            "install_args": ["/quiet", "/norestart"],
            "uninstall_args": ["/uninstall", "/quiet", "/norestart"],
        },
        "packages": {"exclude": []},
        "logging": {
            "dir": "${general.work_dir}/logs",
            "max_bytes": 5 * 1024 * 1024,
            "backups": 3,
        },
        "output": {"quiet": False, "json": False, "theme": "dark"},
        "retention": {
            "log_max_age_days": 30,
            "log_keep": 10,
            "workspace_max_age_days": 14,
        },
    }


# ----------------------- ConfigStore ---------------------------

class ConfigError(Exception):
    pass


@dataclass
class ConfigStore:
    _raw: Dict[str, Any] = field(default_factory=dict)
    fail_on_missing: bool = True

    @classmethod
    def load(
        cls,
        extra_paths: Optional[List[Path]] = None,
        env_prefix: str = "UPKEEP_",
        strict: bool = True,
        environ: Optional[Dict[str, str]] = None,
    ) -> "ConfigStore":
        """Load config following priorities and merge into a ConfigStore.

        Defaults < system config.toml < ~/.config/upkeep/config.toml < extra_paths (ordered) < ENV vars
        """
        store = cls()
        store._raw = default_config()

        for path in (system_config_path(), user_config_path()):
            if path.exists():
                store._raw = _merge_dict(store._raw, _read_toml_file(path))

        if extra_paths:
            for p in extra_paths:
                p = Path(p)
                if not p.exists():
                    raise ConfigError(f"Config file not found: {p}")
                store._raw = _merge_dict(store._raw, _read_toml_file(p))

        # env overrides: UPKEEP_UPGRADE__MAX_ATTEMPTS -> upgrade.max_attempts
        env = os.environ if environ is None else environ
        for k, v in env.items():
            if k.startswith(env_prefix):
                parts = k[len(env_prefix):].lower().split("__")
                dest = store._raw
                for part in parts[:-1]:
                    dest = dest.setdefault(part, {})
                dest[parts[-1]] = v

        store.fail_on_missing = strict
        return store

    # -------------------------------
    # Accessors
    # -------------------------------
    def get(self, key: str, default: Any = None) -> Any:
        """Get a dotted key, expanded. Example: get('general.lock_file')"""
        node = self._lookup(key)
        if node is None:
            return default
        return self._expand_value(node)

    def set(self, key: str, value: Any) -> None:
        parts = key.split(".")
        node = self._raw
        for p in parts[:-1]:
            node = node.setdefault(p, {})
        node[parts[-1]] = value

    def as_dict(self, expanded: bool = True) -> Dict[str, Any]:
        if not expanded:
            return dict(self._raw)
        return self._expand_value(self._raw)

    def _lookup(self, key: str) -> Optional[Any]:
        node = self._raw
        for p in key.split("."):
            if isinstance(node, dict) and p in node:
                node = node[p]
            else:
                return None
        return node

    # -------------------------------
    # Expansion logic
    # -------------------------------
    def _expand_value(self, value: Any, _stack: Optional[List[str]] = None) -> Any:
        if isinstance(value, str):
            return self._expand_str(value, _stack=_stack)
        if isinstance(value, dict):
            return {k: self._expand_value(v, _stack=_stack) for k, v in value.items()}
        if isinstance(value, list):
            return [self._expand_value(v, _stack=_stack) for v in value]
        return value

    def _expand_str(self, s: str, _stack: Optional[List[str]] = None) -> str:
        if _stack is None:
            _stack = []

        # handle escaped \${...}
        s = s.replace("\\${", "__ESCAPED_DOLLAR__{")

        def _repl(m: re.Match) -> str:
            var_name = m.group(1)
            default = m.group(2)
            if var_name in _stack:
                chain = " -> ".join(_stack + [var_name])
                raise ConfigError(f"Cycle detected when expanding variables: {chain}")
            _stack.append(var_name)
            val = self._lookup(var_name)
            if val is None:
                val = os.environ.get(var_name)
            if val is None:
                if default is not None:
                    res = default
                elif self.fail_on_missing:
                    raise ConfigError(f"Variable '{var_name}' not found during expansion and no default provided")
                else:
                    res = ""
            else:
                res = str(self._expand_value(val, _stack=_stack))
            _stack.pop()
            return res

        out = VAR_PATTERN.sub(_repl, s)
        return out.replace("__ESCAPED_DOLLAR__{", "${")


# ----------------------- Settings ------------------------

def _as_int(value: Any, key: str) -> int:
    try:
        if isinstance(value, str):
            return int(value, 0)
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key}: expected an integer, got {value!r}")


def _as_float(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key}: expected a number, got {value!r}")


def _as_int_set(value: Any, key: str) -> FrozenSet[int]:
    if isinstance(value, str):
        value = [v for v in re.split(r"[,\s]+", value) if v]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{key}: expected a list of integers, got {value!r}")
    return frozenset(_as_int(v, key) for v in value)


def _as_str_tuple(value: Any, key: str) -> Tuple[str, ...]:
    if isinstance(value, str):
        return tuple(value.split())
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{key}: expected a list of strings, got {value!r}")
    return tuple(str(v) for v in value)


_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9._-]")


@dataclass(frozen=True)
class UpkeepSettings:
    work_dir: Path
    lock_file: Path
    lock_max_age: float
    winget: str = "winget"
    source: str = "winget"
    max_attempts: int = 3
    retry_delay: float = 30.0
    exit_codes: ExitCodeTable = field(default_factory=ExitCodeTable)
    install_args: Tuple[str, ...] = ("/quiet", "/norestart")
    uninstall_args: Tuple[str, ...] = ("/uninstall", "/quiet", "/norestart")
    exclude: FrozenSet[str] = frozenset()
    log_dir: Optional[Path] = None
    log_max_age_days: float = 30
    log_keep: int = 10
    workspace_max_age_days: float = 14

    @classmethod
    def from_config(cls, cfg: ConfigStore) -> "UpkeepSettings":
        max_attempts = _as_int(cfg.get("upgrade.max_attempts", 3), "upgrade.max_attempts")
        if max_attempts < 1:
            raise ConfigError("upgrade.max_attempts must be >= 1")
        retry_delay = _as_float(cfg.get("upgrade.retry_delay", 30), "upgrade.retry_delay")
        if retry_delay < 0:
            raise ConfigError("upgrade.retry_delay must be >= 0")
        lock_max_age = _as_float(cfg.get("general.lock_max_age", 3600), "general.lock_max_age")
        if lock_max_age < 0:
            raise ConfigError("general.lock_max_age must be >= 0")

        in_use = _as_int_set(cfg.get("exit_codes.in_use", []), "exit_codes.in_use")
        codes = ExitCodeTable(
            in_use=in_use,
            reboot_required=_as_int(cfg.get("exit_codes.reboot_required"), "exit_codes.reboot_required"),
            technology_changed=_as_int(cfg.get("exit_codes.technology_changed"), "exit_codes.technology_changed"),
            retryable=_as_int_set(cfg.get("exit_codes.retryable", []), "exit_codes.retryable"),
        )

        work_dir = Path(cfg.get("general.work_dir", DEFAULT_WORK_DIR)).expanduser()
        log_dir = cfg.get("logging.dir")
        return cls(
            work_dir=work_dir,
            lock_file=Path(cfg.get("general.lock_file", str(work_dir / "upkeep.lock"))).expanduser(),
            lock_max_age=lock_max_age,
            winget=str(cfg.get("winget.executable", "winget")),
            source=str(cfg.get("winget.source", "winget")),
            max_attempts=max_attempts,
            retry_delay=retry_delay,
            exit_codes=codes,
            install_args=_as_str_tuple(cfg.get("installer.install_args", []), "installer.install_args"),
            uninstall_args=_as_str_tuple(cfg.get("installer.uninstall_args", []), "installer.uninstall_args"),
            exclude=frozenset(s.lower() for s in _as_str_tuple(cfg.get("packages.exclude", []), "packages.exclude")),
            log_dir=Path(log_dir).expanduser() if log_dir else None,
            log_max_age_days=_as_float(cfg.get("retention.log_max_age_days", 30), "retention.log_max_age_days"),
            log_keep=_as_int(cfg.get("retention.log_keep", 10), "retention.log_keep"),
            workspace_max_age_days=_as_float(cfg.get("retention.workspace_max_age_days", 14), "retention.workspace_max_age_days"),
        )

    @property
    def packages_dir(self) -> Path:
        return self.work_dir / "packages"

    def workspace_for(self, package_id: str) -> Path:
        return self.packages_dir / _UNSAFE_ID_CHARS.sub("_", package_id)


def load_settings(extra_paths: Optional[List[Path]] = None) -> Tuple[ConfigStore, UpkeepSettings]:
    cfg = ConfigStore.load(extra_paths=extra_paths)
    return cfg, UpkeepSettings.from_config(cfg)

from pathlib import Path

import pytest

from upkeep.modules.upkeep_config import UpkeepSettings
from upkeep.modules.upkeep_enumerate import Package
from upkeep.modules.upkeep_invoker import Operation

IN_USE = 0x8A150101
FILE_IN_USE = 0x8A150103
REBOOT = 0x8A150109
TECH_CHANGED = 0x8A15002B
INSTALL_IN_PROGRESS = 0x8A150102
NO_NETWORK = 0x8A150107
DOWNLOAD_FAILED = 0x8A150008


class FakeInvoker:
    """Scripted stand-in for WingetInvoker; records every call in order."""

    def __init__(self, download=0, upgrade=(0,), uninstall=0, install=0, installer=(0,), table="", table_rc=0):
        self.download = download
        self.upgrade = list(upgrade)
        self.uninstall = uninstall
        self.install = install
        self.installer = list(installer)
        self.table = table
        self.table_rc = table_rc
        self.calls = []

    def invoke(self, operation, package, workspace=None):
        self.calls.append(operation.value)
        if operation is Operation.DOWNLOAD:
            return self.download
        if operation is Operation.UPGRADE:
            return self.upgrade.pop(0) if len(self.upgrade) > 1 else self.upgrade[0]
        if operation is Operation.UNINSTALL:
            return self.uninstall
        return self.install

    def run_installer(self, installer, args, uninstall=False):
        self.calls.append("installer-uninstall" if uninstall else "installer-install")
        return self.installer.pop(0) if len(self.installer) > 1 else self.installer[0]

    def capture(self, args):
        self.calls.append("capture")
        return self.table_rc, self.table

    def ensure_available(self):
        return "v1.9.0"


class RecordingLogger:
    def __init__(self):
        self.events = []

    def _record(self, level, event, message="", **meta):
        self.events.append((level, event, message, meta))

    def info(self, event, message="", **meta):
        self._record("info", event, message, **meta)

    def warning(self, event, message="", **meta):
        self._record("warning", event, message, **meta)

    def error(self, event, message="", exc=None, **meta):
        self._record("error", event, message, **meta)

    def critical(self, event, message="", exc=None, **meta):
        self._record("critical", event, message, **meta)

    def debug(self, event, message="", **meta):
        self._record("debug", event, message, **meta)

    def flush(self):
        pass

    def names(self):
        return [e[1] for e in self.events]


@pytest.fixture
def settings(tmp_path):
    work = tmp_path / "work"
    return UpkeepSettings(
        work_dir=work,
        lock_file=work / "upkeep.lock",
        lock_max_age=60,
        log_dir=tmp_path / "logs",
    )


@pytest.fixture
def make_invoker():
    return FakeInvoker


@pytest.fixture
def recorder():
    return RecordingLogger()


@pytest.fixture
def package():
    return Package(identifier="Contoso.App", source="winget", name="Contoso App", installed_version="1.0", available_version="2.0")


@pytest.fixture(autouse=True)
def isolated_home(tmp_path_factory, monkeypatch):
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.delenv("PROGRAMDATA", raising=False)
    return home


def write_installer(workspace: Path, name: str = "setup.exe") -> Path:
    workspace.mkdir(parents=True, exist_ok=True)
    path = workspace / name
    path.write_bytes(b"MZ")
    return path

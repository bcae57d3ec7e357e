from dataclasses import replace

import pytest

from upkeep.modules.upkeep_enumerate import PackageEnumerator, parse_upgrade_table
from upkeep.modules.upkeep_errors import EnumerationError


def row(name, pid, version, available, source="winget"):
    return f"{name:<35}{pid:<29}{version:<13}{available:<13}{source}"


WINGET_OUTPUT = "\n".join(
    [
        "\r   - \r   \\ \r" + row("Name", "Id", "Version", "Available", "Source"),
        "-" * 95,
        row("Mozilla Firefox (x64 en-US)", "Mozilla.Firefox", "119.0", "120.0.1"),
        row("Microsoft Visual Studio Code", "Microsoft.VisualStudioCode", "1.84.0", "1.85.1"),
        row("7-Zip 22.01 (x64)", "7zip.7zip", "22.01", "23.01", "msstore"),
        "3 upgrades available.",
        "",
        "The following packages have an upgrade available, but require explicit targeting for upgrade:",
        row("Name", "Id", "Version", "Available", "Source"),
        "-" * 95,
        row("Discord", "Discord.Discord", "1.0.9", "1.0.9030"),
    ]
)


def test_parse_upgrade_table():
    packages = parse_upgrade_table(WINGET_OUTPUT)

    assert [p.identifier for p in packages] == ["Mozilla.Firefox", "Microsoft.VisualStudioCode", "7zip.7zip"]
    firefox = packages[0]
    assert firefox.name == "Mozilla Firefox (x64 en-US)"
    assert firefox.installed_version == "119.0"
    assert firefox.available_version == "120.0.1"
    assert firefox.update_available
    assert packages[2].source == "msstore"


def test_parse_without_source_column_uses_default():
    text = "\n".join(
        [
            f"{'Name':<10}{'Id':<12}{'Version':<9}Available",
            "-" * 40,
            f"{'Foo':<10}{'Foo.Foo':<12}{'1.0':<9}1.1",
        ]
    )
    assert parse_upgrade_table(text, default_source="corp")[0].source == "corp"


def test_parse_without_table():
    assert parse_upgrade_table("No installed package found matching input criteria.") == []


def test_list_outdated_applies_exclusions_and_only(settings, make_invoker, recorder):
    invoker = make_invoker(table=WINGET_OUTPUT)
    excluded = replace(settings, exclude=frozenset({"mozilla.firefox"}))
    enumerator = PackageEnumerator(excluded, invoker, logger=recorder)

    assert [p.identifier for p in enumerator.list_outdated()] == ["Microsoft.VisualStudioCode", "7zip.7zip"]
    assert [p.identifier for p in enumerator.list_outdated(only=["7ZIP.7zip"])] == ["7zip.7zip"]
    assert "enumerate.excluded" in recorder.names()


def test_failing_winget_without_table_raises(settings, make_invoker):
    enumerator = PackageEnumerator(settings, make_invoker(table="error", table_rc=1))
    with pytest.raises(EnumerationError):
        enumerator.list_outdated()

from pathlib import Path

import pytest

from upkeep.modules.upkeep_classify import ActionVariant, classify
from upkeep.modules.upkeep_config import ConfigError, ConfigStore, UpkeepSettings, load_settings


def test_defaults_build_settings():
    cfg = ConfigStore.load(environ={})
    settings = UpkeepSettings.from_config(cfg)

    assert settings.max_attempts == 3
    assert settings.retry_delay == 30
    assert settings.lock_file == settings.work_dir / "upkeep.lock"
    assert settings.log_dir == settings.work_dir / "logs"
    assert classify(0x8A150109, settings.exit_codes) is ActionVariant.REBOOT_REQUIRED


def test_toml_file_overrides_defaults(tmp_path):
    conf = tmp_path / "upkeep.toml"
    conf.write_text(
        "\n".join(
            [
                "[general]",
                f'work_dir = "{(tmp_path / "w").as_posix()}"',
                "lock_max_age = 120",
                "[upgrade]",
                "retry_delay = 5",
                "[exit_codes]",
                "retryable = [0x8A150107, 1618]",
                "[packages]",
                'exclude = ["Microsoft.Teams"]',
            ]
        ),
        encoding="utf-8",
    )
    _, settings = load_settings([conf])

    assert settings.work_dir == tmp_path / "w"
    assert settings.lock_file == tmp_path / "w" / "upkeep.lock"
    assert settings.lock_max_age == 120
    assert settings.retry_delay == 5
    assert classify(1618, settings.exit_codes) is ActionVariant.TRANSIENT_RETRY
    assert settings.exclude == frozenset({"microsoft.teams"})


def test_missing_extra_file_is_an_error(tmp_path):
    with pytest.raises(ConfigError):
        ConfigStore.load(extra_paths=[tmp_path / "nope.toml"], environ={})


def test_environment_overrides(tmp_path):
    cfg = ConfigStore.load(
        environ={
            "UPKEEP_UPGRADE__MAX_ATTEMPTS": "5",
            "UPKEEP_EXIT_CODES__RETRYABLE": "0x10, 0x20",
            "UNRELATED": "x",
        }
    )
    settings = UpkeepSettings.from_config(cfg)

    assert settings.max_attempts == 5
    assert settings.exit_codes.retryable == frozenset({0x10, 0x20})


def test_variable_expansion_and_cycles():
    cfg = ConfigStore.load(environ={})
    cfg.set("general.work_dir", "/srv/upkeep")
    assert cfg.get("general.lock_file") == "/srv/upkeep/upkeep.lock"

    cfg.set("a.x", "${a.y}")
    cfg.set("a.y", "${a.x}")
    with pytest.raises(ConfigError):
        cfg.get("a.x")

    cfg.set("a.z", "${missing.key:-fallback}")
    assert cfg.get("a.z") == "fallback"


def test_invalid_values_are_rejected():
    cfg = ConfigStore.load(environ={})
    cfg.set("upgrade.max_attempts", 0)
    with pytest.raises(ConfigError):
        UpkeepSettings.from_config(cfg)

    cfg = ConfigStore.load(environ={})
    cfg.set("exit_codes.reboot_required", "soon")
    with pytest.raises(ConfigError):
        UpkeepSettings.from_config(cfg)


def test_workspace_names_are_sanitized(settings):
    ws = settings.workspace_for("Vendor.App/../x:y")
    assert ws.parent == settings.packages_dir
    assert ws.name == "Vendor.App_.._x_y"
    assert isinstance(ws, Path)


def test_non_numeric_durations_are_config_errors():
    cfg = ConfigStore.load(environ={"UPKEEP_UPGRADE__RETRY_DELAY": "thirty"})
    with pytest.raises(ConfigError, match="upgrade.retry_delay"):
        UpkeepSettings.from_config(cfg)

    cfg = ConfigStore.load(environ={})
    cfg.set("retention.workspace_max_age_days", "fortnight")
    with pytest.raises(ConfigError, match="retention.workspace_max_age_days"):
        UpkeepSettings.from_config(cfg)

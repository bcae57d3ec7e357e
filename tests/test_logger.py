import io
import json

from rich.console import Console

from upkeep.modules.upkeep_config import ConfigStore
from upkeep.modules.upkeep_logger import UpkeepLogger


def make_logger(tmp_path, **kwargs):
    buf = io.StringIO()
    console = Console(file=buf, width=200, color_system=None)
    logger = UpkeepLogger(log_dir=str(tmp_path / "logs"), console=console, **kwargs)
    return logger, buf


def test_events_reach_console_and_file(tmp_path):
    logger, buf = make_logger(tmp_path, theme="plain")
    logger.info("attempt.start", "Contoso.App: upgrade attempt 1/3", package="Contoso.App")
    logger.flush()

    assert "[INFO] Contoso.App: upgrade attempt 1/3" in buf.getvalue()
    text = logger.log_path.read_text(encoding="utf-8")
    assert "attempt.start Contoso.App: upgrade attempt 1/3" in text
    assert '"package": "Contoso.App"' in text
    logger.close()


def test_errors_carry_traceback_into_error_log(tmp_path):
    logger, _ = make_logger(tmp_path, quiet=True)
    try:
        raise ValueError("installer exploded")
    except ValueError as e:
        logger.error("package.error", "Contoso.App failed", exc=e)
    logger.info("run.finish", "done")
    logger.flush()

    errors = logger.error_log_path.read_text(encoding="utf-8")
    assert "ValueError: installer exploded" in errors
    assert "run.finish" not in errors
    logger.close()


def test_quiet_and_debug_suppression(tmp_path):
    logger, buf = make_logger(tmp_path, quiet=True)
    logger.warning("lock.stale", "old lock")
    assert buf.getvalue() == ""
    logger.close()

    logger, buf = make_logger(tmp_path / "other")
    logger.debug("state", "x: attempting")
    assert buf.getvalue() == ""
    logger.close()


def test_json_lines_go_to_stderr(tmp_path, capsys):
    logger, _ = make_logger(tmp_path, json_out=True)
    logger.info("run.start", "2 package(s) to process", packages=["A", "B"])

    payload = json.loads(capsys.readouterr().err.strip())
    assert payload["event"] == "run.start"
    assert payload["meta"] == {"packages": ["A", "B"]}
    logger.close()


def test_from_config(tmp_path):
    cfg = ConfigStore.load(environ={})
    cfg.set("logging.dir", str(tmp_path / "cfg-logs"))
    cfg.set("output.quiet", "true")

    logger = UpkeepLogger.from_config(cfg, verbose=True)

    assert logger.quiet
    assert logger.verbose
    assert logger.log_path.parent == tmp_path / "cfg-logs"
    logger.close()

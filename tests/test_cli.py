"""
CLI tests: flag parsing in-process, full runs as a subprocess.
"""
import json
import os
import signal
import subprocess
import sys

import pytest

from botwatch.cli import build_config, build_parser, main
from botwatch.config import SupervisorConfig

from conftest import REPO_ROOT


def run_cli(args, **kwargs):
    env = os.environ.copy()
    env["PYTHONPATH"] = REPO_ROOT + os.pathsep + env.get("PYTHONPATH", "")
    env["PYTHONUNBUFFERED"] = "1"
    env.pop("GUI_PORT", None)
    return subprocess.Popen(
        [sys.executable, "-m", "botwatch.cli", *args],
        cwd=REPO_ROOT,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        **kwargs,
    )


class TestParser:
    def test_defaults(self):
        args = build_parser().parse_args([])
        cfg = build_config(args, SupervisorConfig())
        assert cfg.gui_port == 3001
        assert cfg.command == ["node", "index.js"]
        assert cfg.gui_enabled is True
        assert cfg.startup_timeout == 30

    def test_gui_port_and_command(self):
        args = build_parser().parse_args(["--gui-port", "4000", "--no-gui", "--", "python", "bot.py", "--fast"])
        cfg = build_config(args, SupervisorConfig())
        assert cfg.gui_port == 4000
        assert cfg.gui_enabled is False
        assert cfg.command == ["python", "bot.py", "--fast"]

    def test_flags_override_environment(self, monkeypatch):
        monkeypatch.setenv("GUI_PORT", "5000")
        monkeypatch.setenv("BOTWATCH_LOG_DIR", "/tmp/env-logs")
        monkeypatch.setenv("BOTWATCH_COMMAND", "node bot.js --prod")
        base = SupervisorConfig.from_env()
        assert base.gui_port == 5000
        assert base.command == ["node", "bot.js", "--prod"]

        args = build_parser(base).parse_args(["--gui-port", "6000"])
        cfg = build_config(args, base)
        assert cfg.gui_port == 6000
        assert cfg.log_dir == "/tmp/env-logs"
        assert cfg.command == ["node", "bot.js", "--prod"]

    def test_bad_port_rejected(self, capsys):
        with pytest.raises(SystemExit) as exc:
            build_parser().parse_args(["--gui-port", "abc"])
        assert exc.value.code == 2

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc:
            build_parser().parse_args(["--version"])
        assert exc.value.code == 0
        assert "botwatch" in capsys.readouterr().out


class TestEnvConfig:
    def test_env_parsing(self, monkeypatch):
        monkeypatch.setenv("BOTWATCH_STARTUP_TIMEOUT", "12.5")
        monkeypatch.setenv("BOTWATCH_FLUSH_THRESHOLD", "0")
        monkeypatch.setenv("BOTWATCH_NO_GUI", "yes")
        monkeypatch.setenv("BOTWATCH_TOOL_NAMES", "deploy_site, read_file")
        monkeypatch.setenv("GUI_PORT", "not-a-number")
        cfg = SupervisorConfig.from_env()
        assert cfg.startup_timeout == 12.5
        assert cfg.flush_threshold == 1
        assert cfg.gui_enabled is False
        assert cfg.tool_names.count("read_file") == 1
        assert "deploy_site" in cfg.tool_names
        assert cfg.gui_port == 3001


class TestStatus:
    def test_empty_dir(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["status", "--log-dir", str(tmp_path / "missing")])
        assert exc.value.code == 0
        assert "does not exist yet" in capsys.readouterr().out

    def test_lists_reports(self, tmp_path, capsys):
        report = {
            "session": {"id": "bot-session-2025-03-01_12-00-00", "duration": "2m 5s",
                        "exitCode": 0, "exitReason": "SIGINT"},
            "summary": "SUCCESS: Bot session lasted 2m 5s",
        }
        (tmp_path / "bot-session-2025-03-01_12-00-00-report.json").write_text(json.dumps(report))
        (tmp_path / "bot-session-2025-03-01_12-00-00-raw.log").write_text("a\nb\nc\nd\n")
        with pytest.raises(SystemExit):
            main(["status", "--log-dir", str(tmp_path)])
        out = capsys.readouterr().out
        assert "✅  bot-session-2025-03-01_12-00-00" in out
        assert "SUCCESS: Bot session lasted 2m 5s" in out
        assert "    b\n    c\n    d" in out


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signal semantics")
class TestRun:
    def test_child_exit_code_propagates(self, tmp_path):
        log_dir = tmp_path / "logs"
        proc = run_cli([
            "--no-gui", "--log-dir", str(log_dir), "--startup-timeout", "10",
            "--", sys.executable, "-c", "print('Bot is ready'); import sys; sys.exit(3)",
        ])
        out, _ = proc.communicate(timeout=60)
        assert proc.returncode == 3, out.decode(errors="replace")
        reports = list(log_dir.glob("*-report.json"))
        assert len(reports) == 1
        assert json.loads(reports[0].read_text())["session"]["exitReason"] == "3"
        assert (log_dir / "botwatch.log").exists()
        assert b"] Bot is ready" in out

    def test_sigint_exits_zero(self, tmp_path):
        log_dir = tmp_path / "logs"
        proc = run_cli([
            "--no-gui", "--log-dir", str(log_dir),
            "--", sys.executable, "-u", "-c", "import time; print('Bot is ready'); time.sleep(60)",
        ])
        seen = []
        for raw in proc.stdout:
            seen.append(raw)
            if b"Bot is ready and logging activity" in raw:
                break
        proc.send_signal(signal.SIGINT)
        rest, _ = proc.communicate(timeout=60)
        out = b"".join(seen) + rest
        assert proc.returncode == 0, out.decode(errors="replace")
        report = json.loads(next(log_dir.glob("*-report.json")).read_text())
        assert report["session"]["exitReason"] == "SIGINT"
        assert report["session"]["exitCode"] == 0
        assert b"Shutdown complete" in out

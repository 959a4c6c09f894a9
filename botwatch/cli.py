"""CLI entry point for the botwatch package."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from botwatch import __version__
from botwatch.config import SupervisorConfig

LOG_FORMAT = "%(asctime)s [botwatch] %(levelname)s %(message)s"
LOG_FILE_NAME = "botwatch.log"


def build_parser(defaults: Optional[SupervisorConfig] = None) -> argparse.ArgumentParser:
    cfg = defaults or SupervisorConfig()
    parser = argparse.ArgumentParser(
        prog="botwatch",
        description="botwatch - supervise a chat bot and keep a report of every session",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Environment variables:\n"
               "  BOTWATCH_COMMAND          Bot command line (default: node index.js)\n"
               "  BOTWATCH_LOG_DIR          Session log directory (default: session-logs)\n"
               "  BOTWATCH_READY_MARKER     Output text that means the bot is up\n"
               "  BOTWATCH_STARTUP_TIMEOUT  Seconds to wait for the ready marker (default: 30)\n"
               "  BOTWATCH_NO_GUI           Set to 1 to skip the dashboard\n"
               "  GUI_PORT                  Dashboard port (default: 3001)\n"
               "\n"
               "Sub-commands:\n"
               "  botwatch status           Show recent session reports\n",
    )
    parser.add_argument('--gui-port', type=int, default=cfg.gui_port,
                        help=f'Port for the GUI dashboard (default: {cfg.gui_port})')
    parser.add_argument('--log-dir', '-l', type=str, default=cfg.log_dir,
                        help=f'Session log directory (default: {cfg.log_dir})')
    parser.add_argument('--no-gui', dest='gui', action='store_false', default=cfg.gui_enabled,
                        help='Do not start the GUI dashboard')
    parser.add_argument('--ready-marker', type=str, default=cfg.ready_marker,
                        help=f'Output text that marks the bot as ready (default: {cfg.ready_marker!r})')
    parser.add_argument('--startup-timeout', type=float, default=cfg.startup_timeout,
                        help=f'Seconds to wait for the ready marker (default: {cfg.startup_timeout:g})')
    parser.add_argument('--cwd', type=str, default=cfg.cwd, help='Working directory for the bot')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    parser.add_argument('--version', '-v', action='version', version=f'botwatch {__version__}')
    parser.add_argument('command', nargs=argparse.REMAINDER,
                        help='Bot command line, after "--" (default: node index.js)')
    return parser


def build_config(args: argparse.Namespace, base: Optional[SupervisorConfig] = None) -> SupervisorConfig:
    """Apply parsed CLI flags on top of the environment-derived config."""
    cfg = base or SupervisorConfig.from_env()
    command = list(args.command or [])
    if command and command[0] == "--":
        command = command[1:]
    if command:
        cfg.command = command
    cfg.gui_port = args.gui_port
    cfg.log_dir = args.log_dir
    cfg.gui_enabled = args.gui
    cfg.ready_marker = args.ready_marker
    cfg.startup_timeout = args.startup_timeout
    cfg.cwd = args.cwd
    return cfg


def setup_logging(log_dir: str, verbose: bool = False) -> None:
    """Console logging plus a persistent botwatch.log in the session directory."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    try:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, LOG_FILE_NAME)))
    except OSError as e:
        print(f"⚠️  Cannot write {LOG_FILE_NAME} in {log_dir}: {e}", file=sys.stderr)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def _cmd_run(argv: List[str]) -> int:
    """botwatch [flags] [-- command ...]: supervise one bot session."""
    from botwatch.supervisor import SessionSupervisor

    base = SupervisorConfig.from_env()
    args = build_parser(base).parse_args(argv)
    cfg = build_config(args, base)
    setup_logging(cfg.log_dir, args.verbose)
    supervisor = SessionSupervisor(cfg, forward_stdin=sys.stdin is not None)
    return asyncio.run(supervisor.run())


def _recent_reports(log_dir: Path, limit: int) -> List[Path]:
    reports = sorted(log_dir.glob("bot-session-*-report.json"), reverse=True)
    return reports[:limit]


def _cmd_status(argv: List[str]) -> int:
    """botwatch status: summarise recent sessions from the log directory."""
    parser = argparse.ArgumentParser(prog="botwatch status")
    parser.add_argument('--log-dir', '-l', type=str,
                        default=os.getenv("BOTWATCH_LOG_DIR", SupervisorConfig().log_dir))
    parser.add_argument('--limit', '-n', type=int, default=5, help='Number of sessions to show (default: 5)')
    args = parser.parse_args(argv)

    log_dir = Path(args.log_dir)
    print("botwatch Status\n" + "─" * 40)
    if not log_dir.is_dir():
        print(f"  Log dir:     ○  {log_dir} does not exist yet")
        return 0
    print(f"  Log dir:     {log_dir}")

    reports = _recent_reports(log_dir, max(1, args.limit))
    if not reports:
        print("  Sessions:    ○  No session reports yet")
    for path in reports:
        try:
            report = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            print(f"  {path.name}: unreadable ({e})")
            continue
        session = report.get("session", {})
        mark = "✅" if session.get("exitCode") == 0 else "❌"
        print()
        print(f"  {mark}  {session.get('id', path.stem)}")
        print(f"      Duration:  {session.get('duration', '?')}")
        print(f"      Exit:      {session.get('exitCode')} ({session.get('exitReason')})")
        print(f"      Summary:   {report.get('summary', '')}")

    raw_logs = sorted(log_dir.glob("bot-session-*-raw.log"), reverse=True)
    if raw_logs:
        print()
        print(f"  Latest log:  {raw_logs[0]}")
        lines = raw_logs[0].read_text(errors="replace").splitlines()[-3:]
        for ln in lines:
            print(f"    {ln}")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    argv = sys.argv[1:] if argv is None else list(argv)
    if argv and argv[0] == "status":
        code = _cmd_status(argv[1:])
    else:
        code = _cmd_run(argv)
    sys.exit(code)


if __name__ == "__main__":
    main()

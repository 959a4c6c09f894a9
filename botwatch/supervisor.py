"""
botwatch/supervisor.py: one supervised bot session.

SessionSupervisor owns every piece of per-run state: the Session, the
counters, the event collections, the raw-log buffer, the child process and
the shutdown coordinator. Nothing here is module-global, so several
supervisors can coexist in one process (the test suite relies on that).

Data flow:
    bot stdout/stderr -> ProcessSupervisor readers -> queue -> _dispatch
        -> LineClassifier -> EventLog / HealthSnapshot / BufferedLogWriter
    any trigger -> ShutdownCoordinator -> report artifacts
"""
from __future__ import annotations

import asyncio
import atexit
import importlib.util
import logging
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from botwatch.classifier import ErrorEvent, LineClassifier, WarningEvent, categorize_error
from botwatch.config import SupervisorConfig
from botwatch.extensions import ExtensionRegistry
from botwatch.health import HealthMonitor
from botwatch.logwriter import BufferedLogWriter
from botwatch.process import LaunchError, ProcessSupervisor, StartupTimeout, describe_exit
from botwatch.report import build_report, raw_log_path, write_report
from botwatch.session import EventLog, HealthSnapshot, LogLine, Session, isoformat_utc, parse_timestamp, utcnow
from botwatch.shutdown import RUNNING, ShutdownCoordinator

log = logging.getLogger("botwatch.supervisor")

STARTUP_TIMEOUT_REASON = "startup-timeout"
NORMAL_EXIT_REASON = "normal"
HANDLED_SIGNALS = ("SIGINT", "SIGTERM", "SIGHUP")


def default_dashboard_command(config: SupervisorConfig) -> Optional[List[str]]:
    """Command line for the bundled Flask dashboard, or None if it isn't installed."""
    spec = importlib.util.find_spec("dashboard")
    if spec is None or not spec.origin:
        return None
    return [
        sys.executable, spec.origin,
        "--port", str(config.gui_port),
        "--log-dir", str(Path(config.log_dir).resolve()),
        "--no-debug",
    ]


class SessionSupervisor:
    def __init__(self, config: Optional[SupervisorConfig] = None, *, forward_stdin: bool = False):
        self.config = config or SupervisorConfig()
        self.session = Session.begin()
        self.log_dir = Path(self.config.log_dir)
        self.health = HealthSnapshot(session_start=self.session.start)
        self.events = EventLog()
        self.extensions = ExtensionRegistry()
        self.classifier = LineClassifier(tool_names=self.config.tool_names)
        self.writer = BufferedLogWriter(raw_log_path(self.log_dir, self.session.id), self.config.flush_threshold)
        self.process = ProcessSupervisor(
            ready_marker=self.config.ready_marker,
            startup_timeout=self.config.startup_timeout,
            grace_period=self.config.grace_period,
        )
        self.monitor = HealthMonitor(
            self.health,
            interval=self.config.health_interval,
            threshold=self.config.hang_threshold,
            on_hang=self._on_hang,
            is_active=lambda: self.process.is_running,
        )
        self.coordinator = ShutdownCoordinator(
            steps=[
                ("stop timers", self._stop_background),
                ("flush log buffer", self.writer.flush),
                ("terminate bot", self.process.terminate),
                ("terminate dashboard", self.process.terminate_auxiliary),
                ("drain output", self._drain),
                ("final flush", self.writer.flush),
            ],
            write_report=self._save_report,
            final_flush=self.writer.flush_sync,
        )
        self.forward_stdin = forward_stdin
        self.ready = False
        self.report: Optional[Dict[str, Any]] = None
        self.report_paths: Optional[Tuple[Path, Path]] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._exit_watcher: Optional[asyncio.Task] = None
        self._signals: List[int] = []

    # ── Lifecycle ─────────────────────────────────────────────────────────────

    async def run(self) -> int:
        """Run the whole session and return the process exit code."""
        loop = asyncio.get_running_loop()
        atexit.register(self.coordinator.unplanned_exit)
        self._install_signal_handlers(loop)
        loop.set_exception_handler(self._loop_exception)
        try:
            try:
                self.log_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                print(f"❌ Failed to create log directory {self.log_dir}: {e}", file=sys.stderr)
                log.error(f"Failed to create log directory {self.log_dir}: {e}")
                self.coordinator.abandon()
                return 1

            self.extensions.load_plugins()
            try:
                await self.start()
            except LaunchError as e:
                print(f"❌ Failed to start bot: {e}", file=sys.stderr)
                log.error(str(e))
                self.coordinator.abandon()
                return 1
            except StartupTimeout as e:
                self.log_error("Bot startup timeout", e)
                return await self.coordinator.shutdown(STARTUP_TIMEOUT_REASON, 1)
            except Exception as e:
                return await self.handle_fault("uncaught-exception", e)
            code = await self.coordinator.wait()
            await self._stop_late_starters()
            return code
        finally:
            self._remove_signal_handlers(loop)
            loop.set_exception_handler(None)
            if self.coordinator.state != RUNNING:
                atexit.unregister(self.coordinator.unplanned_exit)

    async def start(self) -> bool:
        """Launch the dashboard and the bot, then wait for the ready marker."""
        print("🤖 Starting bot with log preservation")
        print(f"📊 Session ID: {self.session.id}")
        print(f"🕐 Start time: {isoformat_utc(self.session.start)}")
        print(f"📁 Session logs directory: {self.log_dir}\n")

        if self.config.gui_enabled:
            await self._start_dashboard()
            if self.coordinator.is_shutting_down:
                log.info("Shutdown requested while the dashboard was starting; not launching the bot")
                return False

        command, *args = self.config.command
        env = {
            "SESSION_ID": self.session.id,
            self.config.port_env_var: str(self.config.gui_port),
        }
        proc = await self.process.launch(command, args, env=env, cwd=self.config.cwd)
        print(f"🚀 Bot process started (PID: {proc.pid})\n")
        if self.coordinator.is_shutting_down:
            # Shutdown ran its steps while the spawn was in flight.
            await self._stop_late_starters()
            return False

        self._dispatcher = self._spawn(self._dispatch(), "dispatch-output")
        self._exit_watcher = self._spawn(self._watch_exit(), "watch-exit")
        if self.forward_stdin:
            self.process.start_forwarding()
        self.monitor.start()

        self.ready = await self.process.wait_ready()
        if self.ready:
            print("✅ Bot is ready and logging activity\n")
            if self.process.auxiliary is not None:
                print(f"📊 GUI Dashboard: http://localhost:{self.config.gui_port}")
            print("📋 Use Ctrl+C to stop and generate session report\n")
        return self.ready

    def request_shutdown(self, reason: str = "requested", exit_code: int = 0) -> Optional[asyncio.Task]:
        """Deliberate shutdown (signal handlers land here too)."""
        return self.coordinator.request(reason, exit_code)

    async def _start_dashboard(self) -> None:
        command = self.config.gui_command or default_dashboard_command(self.config)
        if not command:
            print("ℹ️  GUI dashboard not available (dashboard module not installed)")
            return
        print(f"🖥️  Starting GUI dashboard on port {self.config.gui_port}...")
        await self.process.launch_auxiliary(
            command,
            env={
                self.config.port_env_var: str(self.config.gui_port),
                "SESSION_ID": self.session.id,
            },
            settle_delay=self.config.gui_settle_delay,
        )

    # ── Output handling ───────────────────────────────────────────────────────

    async def _dispatch(self) -> None:
        async for entry in self.process.lines():
            await self.handle_line(entry)

    async def handle_line(self, entry: LogLine) -> None:
        """Echo, classify, count and buffer one captured line."""
        print(f"[{entry.timestamp}] {entry.text}", flush=True)
        event = self.classifier.classify(entry.text, entry.timestamp)
        if event is not None:
            self.events.add(event)
            self.extensions.emit("event.classified", event.to_dict())
        self.health.record(parse_timestamp(entry.timestamp))
        await self.writer.append(entry)

    async def _watch_exit(self) -> None:
        code = await self.process.process.wait()
        reason, status = describe_exit(code)
        how = f"signal {reason}" if code < 0 else f"code {code}"
        print(f"\n🛑 [{isoformat_utc(utcnow())}] Bot process exited with {how}")

        if self.coordinator.is_shutting_down:
            return
        if code == 0:
            await self.coordinator.shutdown(NORMAL_EXIT_REASON, 0)
            return
        self.log_error("Bot process crashed unexpectedly", RuntimeError(f"Exit {how}"))
        await self.coordinator.shutdown(reason, status)

    async def _drain(self) -> None:
        """Let the dispatcher consume whatever the bot wrote before it died."""
        if self._dispatcher is None or self._dispatcher.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(self._dispatcher), timeout=self.config.drain_timeout)
        except asyncio.TimeoutError:
            log.warning("Bot output streams still open after exit; dropping the rest")
            self.process.cancel_readers()
            self._dispatcher.cancel()

    async def _stop_late_starters(self) -> None:
        """Stop any child that came up after the shutdown steps had run."""
        self.process.cancel_startup_watchdog()
        if self.process.is_running:
            log.warning(f"Bot (pid {self.process.pid}) outlived the shutdown sequence; stopping it")
            await self.process.terminate()
            self.process.cancel_readers()
        await self.process.terminate_auxiliary()

    async def _stop_background(self) -> None:
        self.process.cancel_startup_watchdog()
        await self.monitor.stop()
        await self.process.stop_forwarding()

    # ── Faults / diagnostics ─────────────────────────────────────────────────

    def log_error(self, message: str, error: Optional[BaseException] = None) -> ErrorEvent:
        timestamp = isoformat_utc(utcnow())
        detail = str(error) if error is not None else None
        event = ErrorEvent(
            timestamp=timestamp,
            raw=message,
            severity=categorize_error(f"{message} {detail or ''}"),
            detail=detail,
        )
        self.events.add(event)
        print(f"\n❌ [{timestamp}] {message}: {detail}", file=sys.stderr)
        log.error(f"{message}: {detail}")
        return event

    def log_warning(self, message: str, data: Optional[Dict[str, Any]] = None) -> WarningEvent:
        timestamp = isoformat_utc(utcnow())
        event = WarningEvent(timestamp=timestamp, raw=message, data=data or None)
        self.events.add(event)
        print(f"\n⚠️  [{timestamp}] {message}")
        if data:
            print(f"    Data: {data}")
        log.warning(message)
        return event

    def _on_hang(self, elapsed: float, activity_count: int) -> None:
        data = {"timeSinceActivity": f"{round(elapsed)}s", "activityCount": activity_count}
        self.log_warning("Bot appears to be hanging", data)
        self.extensions.emit("health.hang", {"timeSinceActivity": elapsed, "activityCount": activity_count})

    async def handle_fault(self, fault: str, error: BaseException) -> int:
        log.error(f"Internal fault ({fault})", exc_info=error)
        self.log_error(f"Process {fault}", error)
        return await self.coordinator.shutdown(fault, 1)

    def _fault_nowait(self, fault: str, error: BaseException) -> None:
        if self.coordinator.is_shutting_down:
            log.error(f"Fault during shutdown ({fault})", exc_info=error)
            return
        log.error(f"Internal fault ({fault})", exc_info=error)
        self.log_error(f"Process {fault}", error)
        self.coordinator.request(fault, 1)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._fault_nowait("unhandled-task-exception", exc)

    def _loop_exception(self, loop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        if exc is None:
            exc = RuntimeError(context.get("message", "unknown event loop error"))
        self._fault_nowait("unhandled-loop-exception", exc)

    # ── Signals ───────────────────────────────────────────────────────────────

    def _install_signal_handlers(self, loop) -> None:
        for name in HANDLED_SIGNALS:
            sig = getattr(signal, name, None)
            if sig is None:
                continue
            try:
                loop.add_signal_handler(sig, self.request_shutdown, name, 0)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                log.debug(f"Cannot handle {name}: {e}")
                continue
            self._signals.append(sig)

    def _remove_signal_handlers(self, loop) -> None:
        for sig in self._signals:
            try:
                loop.remove_signal_handler(sig)
            except (NotImplementedError, RuntimeError, ValueError):
                pass
        self._signals = []

    # ── Report ────────────────────────────────────────────────────────────────

    def _save_report(self, exit_code: int, reason: str) -> None:
        self.session.close(exit_code, reason)
        report = build_report(self.session, self.health, self.events, self.config.tool_call_window)
        self.report = report
        json_path, md_path = write_report(report, self.log_dir)
        self.report_paths = (json_path, md_path)
        print("\n📊 Session report saved:")
        print(f"   JSON: {json_path}")
        print(f"   Summary: {md_path}\n")
        self.extensions.emit("session.report", {**report, "paths": {"json": str(json_path), "markdown": str(md_path)}})

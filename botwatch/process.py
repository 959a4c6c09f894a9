"""
Child process ownership: spawn, stream capture, readiness, escalation.

The bot runs with every stdio stream piped. Each output stream gets a reader
task that splits it into LogLines and pushes them onto one bounded queue, so
a single consumer sees lines in the order they arrived.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from typing import AsyncIterator, Dict, List, Optional, Sequence, Tuple

from botwatch.session import LogLine, isoformat_utc, utcnow

log = logging.getLogger("botwatch.process")

STARTUP_TIMEOUT = 30     # seconds to wait for the ready marker
GRACE_PERIOD = 5         # seconds between SIGTERM and SIGKILL
STREAM_LIMIT = 1024 * 1024
TRUNCATED_LINE_BYTES = 4096  # kept from a line longer than STREAM_LIMIT
QUEUE_SIZE = 1000


class LaunchError(RuntimeError):
    """The child could not be spawned at all."""


class StartupTimeout(RuntimeError):
    """The ready marker never showed up."""


def describe_exit(returncode: int) -> Tuple[str, int]:
    """Map a returncode to (exit reason, propagated exit status).

    A negative returncode means the child died on a signal; the reason is
    the signal name and the status follows the shell's 128 + N convention.
    """
    if returncode < 0:
        signum = -returncode
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = f"SIG{signum}"
        return name, 128 + signum
    return str(returncode), returncode


class ProcessSupervisor:
    def __init__(
        self,
        *,
        ready_marker: str = "Bot is ready",
        startup_timeout: float = STARTUP_TIMEOUT,
        grace_period: float = GRACE_PERIOD,
        queue_size: int = QUEUE_SIZE,
    ):
        self.ready_marker = ready_marker
        self.startup_timeout = startup_timeout
        self.grace_period = grace_period
        self.process: Optional[asyncio.subprocess.Process] = None
        self.auxiliary: Optional[asyncio.subprocess.Process] = None
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._readers: List[asyncio.Task] = []
        self._stdin_task: Optional[asyncio.Task] = None
        self._ready: Optional[asyncio.Future] = None
        self._startup_timer: Optional[asyncio.TimerHandle] = None
        self._grace_timer: Optional[asyncio.TimerHandle] = None
        self.signals_sent: List[str] = []
        self.force_killed = False

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    # ── Launch ────────────────────────────────────────────────────────────────

    async def launch(
        self,
        command: str,
        args: Sequence[str] = (),
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ) -> asyncio.subprocess.Process:
        """Spawn the bot with the caller's environment plus ``env``.

        Arms the startup watchdog; await wait_ready() to learn the outcome.
        """
        full_env = dict(os.environ)
        full_env.update(env or {})
        try:
            proc = await asyncio.create_subprocess_exec(
                command, *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=full_env,
                cwd=cwd,
                limit=STREAM_LIMIT,
                start_new_session=(os.name == "posix"),
            )
        except OSError as e:
            raise LaunchError(f"Failed to start {command!r}: {e}") from e

        self.process = proc
        self._arm_startup_watchdog()
        self._readers = [
            asyncio.create_task(self._read_stream(proc.stdout, "stdout"), name="read-stdout"),
            asyncio.create_task(self._read_stream(proc.stderr, "stderr"), name="read-stderr"),
        ]
        log.info(f"Bot process started (pid {proc.pid}): {command} {' '.join(args)}")
        return proc

    async def _read_stream(self, stream: asyncio.StreamReader, tag: str) -> None:
        while True:
            raw = await self._read_line(stream, tag)
            if not raw:
                break
            text = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not text.strip():
                continue
            self._check_ready(text)
            await self._queue.put(LogLine(isoformat_utc(utcnow()), tag, text))
        log.debug(f"{tag} reader hit EOF")
        await self._queue.put(None)

    async def _read_line(self, stream: asyncio.StreamReader, tag: str) -> bytes:
        """Next line including its newline; b"" at EOF.

        A line longer than the stream limit is cut to TRUNCATED_LINE_BYTES
        and the rest of it is skipped.
        """
        try:
            return await stream.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            return e.partial
        except asyncio.LimitOverrunError:
            pass

        head = await stream.read(TRUNCATED_LINE_BYTES)
        skipped = 0
        while True:
            try:
                skipped += len(await stream.readuntil(b"\n"))
                break
            except asyncio.IncompleteReadError as e:
                skipped += len(e.partial)
                break
            except asyncio.LimitOverrunError as e:
                skipped += len(await stream.read(max(e.consumed, 1)))
        log.warning(f"Oversized line on {tag}: kept {len(head)} bytes, skipped {skipped}")
        return head + f" ... [truncated, {skipped} more bytes]".encode()

    async def lines(self) -> AsyncIterator[LogLine]:
        """Captured lines from both streams, in arrival order, until both hit EOF."""
        open_streams = len(self._readers)
        while open_streams:
            item = await self._queue.get()
            if item is None:
                open_streams -= 1
                continue
            yield item

    def cancel_readers(self) -> None:
        for task in self._readers:
            task.cancel()

    # ── Readiness ─────────────────────────────────────────────────────────────

    def _arm_startup_watchdog(self) -> None:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._startup_timer = loop.call_later(self.startup_timeout, self._startup_expired)

    def _check_ready(self, text: str) -> None:
        if self._ready is None or self._ready.done():
            return
        if self.ready_marker in text:
            self._cancel_startup_timer()
            self._ready.set_result(True)

    def _startup_expired(self) -> None:
        self._startup_timer = None
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(StartupTimeout(
                f"Bot failed to start within {self.startup_timeout:g} seconds"
            ))

    def _cancel_startup_timer(self) -> None:
        if self._startup_timer is not None:
            self._startup_timer.cancel()
            self._startup_timer = None

    def cancel_startup_watchdog(self) -> None:
        """Disarm the watchdog; a pending wait_ready() resolves to False."""
        self._cancel_startup_timer()
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(False)

    async def wait_ready(self) -> bool:
        """True once the marker is seen, False if the wait was abandoned.

        Raises StartupTimeout when the watchdog fires first.
        """
        if self._ready is None:
            raise RuntimeError("wait_ready() called before launch()")
        return await self._ready

    @property
    def timers_armed(self) -> List[str]:
        armed = []
        if self._startup_timer is not None:
            armed.append("startup")
        if self._grace_timer is not None:
            armed.append("grace")
        return armed

    # ── Stdin pass-through ───────────────────────────────────────────────────

    def start_forwarding(self, source=None) -> None:
        if self._stdin_task is None:
            self._stdin_task = asyncio.create_task(self.forward(source), name="forward-stdin")

    async def forward(self, source=None) -> None:
        """Copy our stdin to the bot's stdin byte for byte until EOF."""
        proc = self.process
        if proc is None or proc.stdin is None:
            return
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        try:
            await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), source or sys.stdin)
        except (ValueError, OSError, AttributeError) as e:
            log.debug(f"stdin forwarding unavailable: {e}")
            return
        while True:
            data = await reader.read(4096)
            if not data:
                break
            try:
                proc.stdin.write(data)
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                log.debug(f"Bot stdin closed: {e}")
                return
        proc.stdin.close()

    async def stop_forwarding(self) -> None:
        if self._stdin_task is not None:
            self._stdin_task.cancel()
            try:
                await self._stdin_task
            except asyncio.CancelledError:
                pass
            self._stdin_task = None

    # ── Termination ───────────────────────────────────────────────────────────

    def _send(self, proc, name: str) -> bool:
        try:
            if name == "SIGKILL":
                proc.kill()
            else:
                proc.terminate()
        except ProcessLookupError:
            log.debug(f"{name} not delivered: process already gone")
            return False
        self.signals_sent.append(name)
        return True

    async def terminate(self, grace_period: Optional[float] = None) -> bool:
        """SIGTERM, then SIGKILL if the bot outlives the grace period.

        Returns True when the forceful signal had to be sent.
        """
        proc = self.process
        if proc is None or proc.returncode is not None:
            return False
        grace = self.grace_period if grace_period is None else grace_period

        print("🛑 Stopping bot process...")
        if not self._send(proc, "SIGTERM"):
            await proc.wait()
            return False
        loop = asyncio.get_running_loop()
        self._grace_timer = loop.call_later(grace, self._grace_expired, proc)
        try:
            await proc.wait()
        finally:
            if self._grace_timer is not None:
                self._grace_timer.cancel()
                self._grace_timer = None
        return self.force_killed

    def _grace_expired(self, proc) -> None:
        self._grace_timer = None
        if proc.returncode is not None:
            log.debug("Grace timer fired after the bot exited; nothing to kill")
            return
        print("🔥 Force killing bot process...")
        if self._send(proc, "SIGKILL"):
            self.force_killed = True

    # ── Auxiliary process ─────────────────────────────────────────────────────

    async def launch_auxiliary(
        self,
        command: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        settle_delay: float = 2.0,
    ) -> Optional[asyncio.subprocess.Process]:
        """Best effort: failure to start is logged and otherwise ignored."""
        full_env = dict(os.environ)
        full_env.update(env or {})
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
                env=full_env,
            )
        except OSError as e:
            print(f"ℹ️  GUI dashboard not available ({e})")
            log.info(f"Auxiliary process not started: {e}")
            return None
        self.auxiliary = proc
        if settle_delay > 0:
            await asyncio.sleep(settle_delay)
        if proc.returncode is not None:
            log.info(f"Auxiliary process exited early with code {proc.returncode}")
        return proc

    async def terminate_auxiliary(self) -> None:
        proc = self.auxiliary
        if proc is None or proc.returncode is not None:
            return
        print("🖥️  Stopping GUI server...")
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self.grace_period)
        except asyncio.TimeoutError:
            log.debug("Auxiliary process ignored SIGTERM; killing")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()

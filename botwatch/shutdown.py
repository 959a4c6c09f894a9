"""Exactly-once shutdown arbitration.

Any number of triggers (OS signals, a crashed bot, an internal fault, the
startup watchdog) may call shutdown(); only the first runs the sequence.
Later callers wait for it and get the same exit code back.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

log = logging.getLogger("botwatch.shutdown")

RUNNING = "running"
SHUTTING_DOWN = "shutting_down"
TERMINATED = "terminated"

UNEXPECTED_EXIT = "unexpected-exit"

Step = Tuple[str, Callable[[], Awaitable[object]]]


class ShutdownCoordinator:
    """
    Runs the shutdown steps in order, logging and skipping past any that
    fail, then writes the report through ``write_report(exit_code, reason)``.

    ``final_flush`` is the synchronous flush used by the unplanned-exit path,
    when no event loop is available any more.
    """

    def __init__(
        self,
        steps: Sequence[Step],
        write_report: Callable[[int, str], object],
        final_flush: Optional[Callable[[], object]] = None,
    ):
        self.steps: List[Step] = list(steps)
        self._write_report = write_report
        self._final_flush = final_flush
        self.state = RUNNING
        self.reason: Optional[str] = None
        self.exit_code: Optional[int] = None
        self.report_written = False
        self.failed_steps: List[str] = []
        self._done: Optional[asyncio.Event] = None
        self._pending: Optional[asyncio.Task] = None

    @property
    def is_shutting_down(self) -> bool:
        return self.state != RUNNING or self._pending is not None

    def _done_event(self) -> asyncio.Event:
        if self._done is None:
            self._done = asyncio.Event()
        return self._done

    async def shutdown(self, reason: str, exit_code: int) -> int:
        if self.state != RUNNING:
            log.debug(f"Shutdown already in progress; ignoring trigger {reason!r}")
            return await self.wait()

        self.state = SHUTTING_DOWN
        self.reason = reason
        self.exit_code = exit_code
        done = self._done_event()
        print(f"\n🔄 Shutdown initiated ({reason})")
        log.info(f"Shutdown initiated: reason={reason} exit_code={exit_code}")

        for name, step in self.steps:
            try:
                await step()
            except Exception:
                self.failed_steps.append(name)
                log.exception(f"Shutdown step {name!r} failed")

        self._report_once(exit_code, reason)
        self.state = TERMINATED
        done.set()
        print("✅ Shutdown complete\n")
        return exit_code

    def request(self, reason: str, exit_code: int) -> Optional[asyncio.Task]:
        """Schedule shutdown from a synchronous callback (signal handler, timer)."""
        if self.state != RUNNING or self._pending is not None:
            log.debug(f"Ignoring shutdown request {reason!r}; already handled")
            return None
        self._pending = asyncio.create_task(self.shutdown(reason, exit_code), name="shutdown")
        return self._pending

    async def wait(self) -> int:
        """Block until the sequence has finished; returns the exit code."""
        await self._done_event().wait()
        return self.exit_code if self.exit_code is not None else 1

    def abandon(self) -> None:
        """Mark the session finished without a report (fatal launch failure)."""
        self.state = TERMINATED
        self._done_event().set()

    def unplanned_exit(self, exit_code: int = 1) -> None:
        """Last resort when the interpreter exits without shutdown ever starting."""
        if self.state != RUNNING:
            return
        self.state = TERMINATED
        self.reason = UNEXPECTED_EXIT
        self.exit_code = exit_code
        log.warning("Process exiting without a shutdown; writing unplanned-exit report")
        if self._final_flush is not None:
            try:
                self._final_flush()
            except Exception:
                log.exception("Final flush failed")
        self._report_once(exit_code, UNEXPECTED_EXIT)

    def _report_once(self, exit_code: int, reason: str) -> None:
        if self.report_written:
            return
        self.report_written = True
        try:
            self._write_report(exit_code, reason)
        except Exception:
            log.exception("Failed to save session report")

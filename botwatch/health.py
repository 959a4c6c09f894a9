"""Periodic liveness check over the session's activity counters.

Purely observational: the monitor prints a heartbeat every tick and reports
a possible hang through ``on_hang``; it never stops the bot.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from botwatch.session import HealthSnapshot

log = logging.getLogger("botwatch.health")

CHECK_INTERVAL = 30      # seconds between ticks
HANG_THRESHOLD = 300     # seconds of silence before warning

NOMINAL = "nominal"
HANGING = "hanging"


class HealthMonitor:
    def __init__(
        self,
        snapshot: HealthSnapshot,
        *,
        interval: float = CHECK_INTERVAL,
        threshold: float = HANG_THRESHOLD,
        on_hang: Optional[Callable[[float, int], None]] = None,
        is_active: Optional[Callable[[], bool]] = None,
    ):
        self.snapshot = snapshot
        self.interval = interval
        self.threshold = threshold
        self._on_hang = on_hang
        self._is_active = is_active
        self._task: Optional[asyncio.Task] = None
        self.state = NOMINAL
        self.ticks = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            log.warning("Health monitor already running")
            return
        self._task = asyncio.create_task(self._run(), name="health-monitor")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.tick()

    def tick(self, now: Optional[datetime] = None) -> str:
        """Run one check. Returns the resulting state."""
        if self._is_active is not None and not self._is_active():
            return self.state
        self.ticks += 1
        elapsed = self.snapshot.time_since_activity(now)
        count = self.snapshot.activity_count
        print(f"\n🔍 Health Check: {count} events, last activity {round(elapsed)}s ago")

        if elapsed > self.threshold:
            self.state = HANGING
            log.warning(f"No bot output for {round(elapsed)}s (threshold {round(self.threshold)}s)")
            if self._on_hang is not None:
                self._on_hang(elapsed, count)
        else:
            self.state = NOMINAL
        return self.state

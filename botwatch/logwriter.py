"""Append-only raw session log with size-triggered batching."""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Union

from botwatch.session import LogLine

log = logging.getLogger("botwatch.logwriter")

FLUSH_THRESHOLD = 100


class BufferedLogWriter:
    """Buffers LogLines in memory and appends them to ``path`` in batches.

    Entries leave the buffer only after a successful write. One flush runs
    at a time; the actual file append happens on a worker thread.
    """

    def __init__(self, path: Union[str, Path], threshold: int = FLUSH_THRESHOLD):
        self.path = Path(path)
        self.threshold = max(1, int(threshold))
        self._buffer: List[LogLine] = []
        self._lock = asyncio.Lock()
        self._flush_at = self.threshold
        self.flush_count = 0
        self.failed_flushes = 0

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def pending(self) -> List[LogLine]:
        return list(self._buffer)

    async def append(self, entry: LogLine) -> None:
        self._buffer.append(entry)
        if len(self._buffer) >= self._flush_at:
            await self.flush()

    async def flush(self) -> bool:
        """Write everything buffered so far. Returns False if the write failed."""
        async with self._lock:
            if not self._buffer:
                return True
            batch = list(self._buffer)
            try:
                await asyncio.to_thread(self._write_batch, batch)
            except OSError as e:
                self._on_failure(e)
                return False
            self._on_success(batch)
            return True

    def flush_sync(self) -> bool:
        """Blocking flush for paths where no event loop is left (interpreter exit)."""
        if not self._buffer:
            return True
        batch = list(self._buffer)
        try:
            self._write_batch(batch)
        except OSError as e:
            self._on_failure(e)
            return False
        self._on_success(batch)
        return True

    def _on_success(self, batch: List[LogLine]) -> None:
        # Lines appended while the write was in flight stay for the next batch.
        del self._buffer[:len(batch)]
        self._flush_at = self.threshold
        self.flush_count += 1
        log.debug(f"Flushed {len(batch)} lines to {self.path}")

    def _on_failure(self, error: OSError) -> None:
        self.failed_flushes += 1
        self._flush_at = len(self._buffer) + self.threshold
        log.error(f"Failed to flush log buffer to {self.path}: {error} ({len(self._buffer)} lines retained)")

    def _write_batch(self, batch: List[LogLine]) -> None:
        text = "\n".join(entry.render() for entry in batch) + "\n"
        d = os.path.dirname(str(self.path))
        if d:
            os.makedirs(d, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(text)

"""
Health file writer for the aggregator daemon.

Writes a JSON health file at a configurable path with four fields:
- last_tick_ts: ISO timestamp of the most recent completed tick.
- last_publish_ts: ISO timestamp of the most recent published snapshot.
- last_rollover_ts: ISO timestamp of the most recent daily/monthly reset.
- device_count: Number of tracked devices.

The file is rewritten atomically (temp file, then os.replace) on every
state change, providing a simple liveness signal that Docker HEALTHCHECK or
monitoring can inspect without ever reading a half-written file.

CHANGELOG:
- 2026-10-20: Replace the file atomically
- 2026-10-09: Initial creation (STORY-114)

TODO:
- None
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path


class HealthWriter:
    """Writes aggregator health status to a JSON file.

    Each mutating method updates the in-memory state and immediately
    rewrites the health file so it always reflects the latest status.

    Args:
        path: Filesystem path for the health JSON file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._last_tick_ts: str | None = None
        self._last_publish_ts: str | None = None
        self._last_rollover_ts: str | None = None
        self._device_count: int = 0

    def record_tick(self) -> None:
        """Record a completed tick and write health file."""
        self._last_tick_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_publish(self) -> None:
        """Record a published snapshot and write health file."""
        self._last_publish_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def record_rollover(self) -> None:
        """Record a daily or monthly reset and write health file."""
        self._last_rollover_ts = datetime.now(tz=UTC).isoformat()
        self._write()

    def set_device_count(self, count: int) -> None:
        """Update the tracked device count and write health file."""
        self._device_count = count
        self._write()

    def _write(self) -> None:
        data = {
            "last_tick_ts": self._last_tick_ts,
            "last_publish_ts": self._last_publish_ts,
            "last_rollover_ts": self._last_rollover_ts,
            "device_count": self._device_count,
        }
        tmp = self.path.with_name(self.path.name + ".tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp, self.path)

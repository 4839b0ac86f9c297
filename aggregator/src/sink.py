"""
Snapshot sinks: where published totals go.

A sink receives every Totals snapshot the service publishes, after each
event batch, tick, rollover or manual push. Sinks never raise to the
caller: a sink that cannot deliver logs the problem and tries again with the
next snapshot.

Two sinks:
- SummaryFileSink: keeps the latest totals as a JSON file, the local
  stand-in for the "Energy Summary" device.
- HttpSink: POSTs totals to ``{base_url}/v1/summary`` over HTTPS with a
  bearer token. Unchanged totals are not re-sent, and consecutive failures
  arm an exponential backoff (1s -> 2s -> 4s -> ... capped)
  during which snapshots are dropped; the next one after the backoff
  carries the latest totals anyway.

CHANGELOG:
- 2026-10-20: Any httpx transport error arms the backoff instead of escaping
- 2026-10-10: Add HttpSink (STORY-113)
- 2026-10-07: Initial creation (STORY-111)

TODO:
- None
"""

from __future__ import annotations

import logging
import os
import time
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import httpx

if TYPE_CHECKING:
    from aggregator.src.models import Totals

logger = logging.getLogger(__name__)

_INITIAL_BACKOFF_S = 1.0
_DEFAULT_MAX_BACKOFF_S = 300.0


class SnapshotSink(Protocol):
    """Receives published totals. Must be safe to call on every event and tick."""

    async def publish(self, totals: Totals) -> None: ...


def _content(totals: Totals) -> dict[str, Any]:
    """Totals as JSON-ready data without the timestamp, for change detection."""
    return totals.model_dump(mode="json", exclude={"timestamp"})


class SummaryFileSink:
    """Writes the latest totals as JSON, replacing the file atomically.

    Args:
        path: Destination file. Accepts str or Path.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    async def publish(self, totals: Totals) -> None:
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            tmp.write_text(totals.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except OSError:
            logger.error("Failed to write summary file %s", self.path, exc_info=True)


class HttpSink:
    """HTTPS push of totals to a remote summary endpoint.

    The URL must use HTTPS; ``http://`` URLs are rejected at construction
    time. TLS certificate verification is always enabled.

    Args:
        base_url: Base URL of the receiving service. Must start with
            ``https://``.
        token: Bearer token for the receiving service.
        max_backoff_s: Maximum backoff delay in seconds (default 300).
        clock: Monotonic clock, injectable for tests.

    Raises:
        ValueError: If *base_url* does not start with ``https://``.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        max_backoff_s: float = _DEFAULT_MAX_BACKOFF_S,
        clock: Any = time.monotonic,
    ) -> None:
        if not base_url.lower().startswith("https://"):
            raise ValueError(f"Sink URL must use HTTPS (got: '{base_url}').")
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._max_backoff_s = max_backoff_s
        self._clock = clock
        self._current_backoff = _INITIAL_BACKOFF_S
        self._retry_at: float = 0.0
        self._last_sent: dict[str, Any] | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def current_backoff(self) -> float:
        """Delay armed by the next failure, in seconds.

        Starts at 1s, doubles on each consecutive failure, capped at
        ``max_backoff_s``. Resets to 1s on a successful push.
        """
        return self._current_backoff

    async def publish(self, totals: Totals) -> None:
        content = _content(totals)
        if content == self._last_sent:
            logger.debug("Totals unchanged; skipping push.")
            return

        now = self._clock()
        if now < self._retry_at:
            logger.debug("Backoff: dropping push (%.1fs left)", self._retry_at - now)
            return

        try:
            async with httpx.AsyncClient(verify=True) as client:
                response = await client.post(
                    f"{self._base_url}/v1/summary",
                    content=totals.model_dump_json(),
                    headers={
                        "Authorization": f"Bearer {self._token}",
                        "Content-Type": "application/json",
                    },
                )
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning("Push failed (network error): %s", exc)
            self._fail()
            return
        except httpx.HTTPError:
            logger.warning("Unexpected error during push", exc_info=True)
            self._fail()
            return

        if response.status_code in (200, 201, 202, 204):
            self._last_sent = content
            self._current_backoff = _INITIAL_BACKOFF_S
            self._retry_at = 0.0
            logger.debug("Pushed totals (today_cost=%s)", content["today_cost"])
            return

        logger.warning(
            "Push failed (HTTP %d), will retry after %.1fs backoff.",
            response.status_code,
            self._current_backoff,
        )
        self._fail()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _fail(self) -> None:
        self._retry_at = self._clock() + self._current_backoff
        self._current_backoff = min(self._current_backoff * 2, self._max_backoff_s)

"""
Async live-read of device states over the Home Assistant style REST API.

Fetches ``GET {base_url}/api/states/{entity_id}`` for every tracked entity
(meters, estimated devices and the price device) with a bearer token and a
short timeout, and returns the decoded entity documents keyed by entity id.
Designed to be robust:

- All entities are fetched concurrently over one client, so a read takes
  about one timeout at worst, not one per entity.
- A missing entity (404) or an unreadable document is simply absent from
  the result; the caller keeps the last known values for it.
- A transport failure (connection refused, timeout) fails the whole read
  and returns ``None``.
- Consecutive failures arm an exponential backoff (capped at
  MAX_BACKOFF_S) during which reads are skipped without touching the
  network, so a dead state API never stalls the tick loop.
- Never raises to the caller.

CHANGELOG:
- 2026-10-20: Fetch entities concurrently
- 2026-10-12: Skip reads during backoff instead of sleeping in the tick path
- 2026-10-05: Initial creation (STORY-109)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BASE_BACKOFF_S: float = 1.0
"""Initial backoff delay in seconds after the first failed read."""

MAX_BACKOFF_S: float = 60.0
"""Maximum backoff delay in seconds (cap for exponential growth)."""


class StatePoller:
    """Stateful live-read client with exponential backoff.

    Args:
        base_url: Base URL of the state API (no trailing slash).
        token: Bearer token for the state API.
        timeout_s: Timeout per request in seconds.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        *,
        base_url: str,
        token: str,
        timeout_s: float = 5.0,
        clock: Any = time.monotonic,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._timeout_s = timeout_s
        self._clock = clock
        self._consecutive_failures: int = 0
        self._retry_at: float = 0.0

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    def current_backoff(self) -> float:
        """Backoff delay armed by the current failure streak, in seconds."""
        if self._consecutive_failures == 0:
            return 0.0
        return min(
            BASE_BACKOFF_S * (2 ** (self._consecutive_failures - 1)),
            MAX_BACKOFF_S,
        )

    async def poll(self, entity_ids: list[str]) -> dict[str, dict[str, Any]] | None:
        """Read the current state document of every entity in *entity_ids*.

        Returns:
            ``{entity_id: document}`` for every entity that could be read
            (possibly empty), or ``None`` when the read failed or was
            skipped because of backoff.
        """
        if not entity_ids:
            return {}

        now = self._clock()
        if now < self._retry_at:
            logger.debug(
                "Backoff: skipping live read for %.1fs more (consecutive failures: %d)",
                self._retry_at - now,
                self._consecutive_failures,
            )
            return None

        try:
            result = await self._read_all(entity_ids)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning("Live read failed (network error): %s", exc)
            result = None
        except httpx.HTTPError:
            logger.warning("Unexpected error during live read", exc_info=True)
            result = None

        if result is not None:
            if self._consecutive_failures:
                logger.info("Live read recovered after %d failure(s)", self._consecutive_failures)
            self._consecutive_failures = 0
            self._retry_at = 0.0
        else:
            self._consecutive_failures += 1
            delay = self.current_backoff()
            self._retry_at = self._clock() + delay
            logger.warning(
                "Backoff: next live read in %.1fs (consecutive failures: %d)",
                delay,
                self._consecutive_failures,
            )

        return result

    async def _read_all(self, entity_ids: list[str]) -> dict[str, dict[str, Any]]:
        async with httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._token}"},
            timeout=self._timeout_s,
        ) as client:
            results = await asyncio.gather(
                *(self._read_one(client, entity_id) for entity_id in entity_ids),
                return_exceptions=True,
            )

        documents: dict[str, dict[str, Any]] = {}
        for entity_id, result in zip(entity_ids, results, strict=True):
            if isinstance(result, BaseException):
                raise result
            if result is not None:
                documents[entity_id] = result
        return documents

    async def _read_one(self, client: httpx.AsyncClient, entity_id: str) -> dict[str, Any] | None:
        response = await client.get(f"/api/states/{entity_id}")
        if response.status_code == 404:
            logger.warning("Entity %s not found on state API", entity_id)
            return None
        if response.status_code != 200:
            logger.warning(
                "Live read of %s failed (HTTP %d)",
                entity_id,
                response.status_code,
            )
            return None
        try:
            document = response.json()
        except ValueError:
            logger.warning("Entity %s returned a non-JSON body", entity_id)
            return None
        if not isinstance(document, dict):
            logger.warning("Entity %s returned an unexpected document", entity_id)
            return None
        return document

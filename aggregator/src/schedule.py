"""
Calendar arithmetic for the daemon's periodic jobs.

Three jobs drive the engine besides device events:
- **tick**: every 1, 5 or 15 minutes, aligned to wall-clock multiples of
  the interval (a 5 minute tick fires at :00, :05, :10, ...).
- **daily rollover**: once a day at a configured local time.
- **monthly rollover**: on a configured day (1..28) of each month at a
  configured local time.

When several jobs fall due at the same instant they are returned in a fixed
order (daily rollover, monthly rollover, tick), so a tick at midnight always
lands in the new day. Triggers missed while the daemon was down are not
caught up, and a trigger delayed by a late wakeup fires once; the next
trigger is always computed from the current time.

CHANGELOG:
- 2026-10-08: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, time, timedelta
from enum import StrEnum
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

ALLOWED_TICK_MINUTES = (1, 5, 15)
MAX_MONTHLY_DAY = 28

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class Job(StrEnum):
    """Scheduled job kinds, declared in the order they run when due together."""

    DAILY_ROLLOVER = "daily_rollover"
    MONTHLY_ROLLOVER = "monthly_rollover"
    TICK = "tick"


JOB_ORDER: tuple[Job, ...] = (Job.DAILY_ROLLOVER, Job.MONTHLY_ROLLOVER, Job.TICK)


def _next_month(day: date) -> date:
    if day.month == 12:
        return day.replace(year=day.year + 1, month=1, day=1)
    return day.replace(month=day.month + 1, day=1)


class RolloverSchedule:
    """Computes trigger instants and reports which jobs are due.

    Args:
        daily_at: Local time of the daily rollover.
        monthly_day: Day of month (1..28) of the monthly rollover.
        monthly_at: Local time of the monthly rollover.
        tz: Time zone the rollover times are expressed in.
        tick_minutes: Tick interval, one of 1, 5 or 15.

    Raises:
        ValueError: If *monthly_day* or *tick_minutes* is out of range.
    """

    def __init__(
        self,
        *,
        daily_at: time = time(0, 0),
        monthly_day: int = 1,
        monthly_at: time = time(0, 5),
        tz: ZoneInfo | None = None,
        tick_minutes: int = 1,
    ) -> None:
        if not 1 <= monthly_day <= MAX_MONTHLY_DAY:
            raise ValueError(f"monthly_day must be in 1..{MAX_MONTHLY_DAY}, got {monthly_day}")
        if tick_minutes not in ALLOWED_TICK_MINUTES:
            raise ValueError(f"tick_minutes must be one of {ALLOWED_TICK_MINUTES}, got {tick_minutes}")
        self._daily_at = daily_at.replace(tzinfo=None)
        self._monthly_day = monthly_day
        self._monthly_at = monthly_at.replace(tzinfo=None)
        self._tz = tz or ZoneInfo("UTC")
        self._tick = timedelta(minutes=tick_minutes)
        self._next: dict[Job, datetime] = {}

    # ------------------------------------------------------------------
    # Pure calendar arithmetic
    # ------------------------------------------------------------------

    def next_daily(self, after: datetime) -> datetime:
        """First daily rollover instant strictly after *after*."""
        local = after.astimezone(self._tz)
        candidate = datetime.combine(local.date(), self._daily_at, tzinfo=self._tz)
        if candidate <= local:
            candidate = datetime.combine(
                local.date() + timedelta(days=1), self._daily_at, tzinfo=self._tz
            )
        return candidate

    def next_monthly(self, after: datetime) -> datetime:
        """First monthly rollover instant strictly after *after*."""
        local = after.astimezone(self._tz)
        day = local.date().replace(day=self._monthly_day)
        candidate = datetime.combine(day, self._monthly_at, tzinfo=self._tz)
        if candidate <= local:
            day = _next_month(day).replace(day=self._monthly_day)
            candidate = datetime.combine(day, self._monthly_at, tzinfo=self._tz)
        return candidate

    def next_tick(self, after: datetime) -> datetime:
        """First tick instant strictly after *after*, aligned to the interval."""
        intervals = (after - _EPOCH) // self._tick
        return _EPOCH + (intervals + 1) * self._tick

    # ------------------------------------------------------------------
    # Due-job tracking
    # ------------------------------------------------------------------

    def prime(self, now: datetime) -> None:
        """Compute the first trigger of every job after *now*."""
        self._next = {
            Job.DAILY_ROLLOVER: self.next_daily(now),
            Job.MONTHLY_ROLLOVER: self.next_monthly(now),
            Job.TICK: self.next_tick(now),
        }
        logger.info(
            "Schedule primed: next tick %s, daily %s, monthly %s",
            self._next[Job.TICK].isoformat(),
            self._next[Job.DAILY_ROLLOVER].isoformat(),
            self._next[Job.MONTHLY_ROLLOVER].isoformat(),
        )

    def next_wakeup(self) -> datetime:
        """Earliest pending trigger instant. Requires prime()."""
        assert self._next, "prime() must be called first"
        return min(self._next.values())

    def due_jobs(self, now: datetime) -> list[Job]:
        """Return the jobs due at *now* in execution order and re-arm them.

        Each returned job is re-armed to its first trigger after *now*, so
        triggers missed while the daemon was not running fire once, not once
        per missed period.
        """
        if not self._next:
            self.prime(now)
        due = [job for job in JOB_ORDER if self._next[job] <= now]
        for job in due:
            if job is Job.DAILY_ROLLOVER:
                self._next[job] = self.next_daily(now)
            elif job is Job.MONTHLY_ROLLOVER:
                self._next[job] = self.next_monthly(now)
            else:
                self._next[job] = self.next_tick(now)
        return due

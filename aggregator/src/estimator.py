"""
Power estimation for devices without an energy meter.

A bulb or switch only tells us whether it is on and, for dimmers, its
level. Its draw is inferred from configured standby and maximum watts:

- off: standby power.
- on, not scaling with level (or no level known): maximum power.
- on, scaling with level: ``standby + (max - standby) * level / 100``
  with the level clamped to [0, 100].

A missing level counts as 100 so a dimmer is never under-estimated. A device
without a configured maximum contributes nothing at all, and the result is
never negative.

CHANGELOG:
- 2026-10-04: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from aggregator.src.normalizer import LEVEL, SWITCH, parse_level, parse_switch

if TYPE_CHECKING:
    from aggregator.src.attributes import AttributeReader
    from aggregator.src.models import DeviceRecord

_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def estimate_power(
    *,
    standby_w: Decimal,
    max_w: Decimal | None,
    scale_with_level: bool,
    switch_on: bool | None,
    level: Decimal | None,
) -> Decimal:
    """Estimate instantaneous power in watts from decoded device state.

    Args:
        standby_w: Configured standby power.
        max_w: Configured maximum power, or ``None`` if unconfigured.
        scale_with_level: Whether to interpolate with the level when on.
        switch_on: Decoded switch state; ``None`` (unknown) counts as off.
        level: Decoded level in [0, 100], or ``None`` if absent.

    Returns:
        Estimated power in watts, ``>= 0``.
    """
    if max_w is None:
        return _ZERO

    standby = max(standby_w, _ZERO)
    maximum = max(max_w, _ZERO)

    if not switch_on:
        return standby

    if not scale_with_level:
        return maximum

    if level is None:
        level = _HUNDRED
    level = min(max(level, _ZERO), _HUNDRED)
    return max(standby + (maximum - standby) * level / _HUNDRED, _ZERO)


class PowerEstimator:
    """Estimates an estimated device's power from the attribute store."""

    def __init__(self, reader: AttributeReader) -> None:
        self._reader = reader

    def estimate(self, record: DeviceRecord) -> Decimal:
        """Return the current power estimate for *record* in watts."""
        switch_on = parse_switch(self._reader.read_current_value(record.device_id, SWITCH))
        level = parse_level(self._reader.read_current_value(record.device_id, LEVEL))
        return estimate_power(
            standby_w=record.standby_power_w,
            max_w=record.max_power_w,
            scale_with_level=record.scale_with_level,
            switch_on=switch_on,
            level=level,
        )

"""
Pure decoding boundary for raw values coming from devices.

Every value that enters the daemon (event payloads, live-read entity
documents, price attributes) passes through this module before the engine
sees it. Raw values are loosely typed (numbers, numeric strings, "on"/"off",
None, garbage); the functions here turn them into Decimal, bool or an
explicit ``None`` meaning "absent". None of them raise.

This module is pure: no I/O, no clock, no shared state.

CHANGELOG:
- 2026-10-08: Map light brightness (0-255) to a 0-100 level
- 2026-10-05: Add entity_attributes for live-read entity documents (STORY-109)
- 2026-10-02: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from aggregator.src.models import DeviceEvent, DeviceKind

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Attribute vocabulary shared by events, live reads and the engine
# ---------------------------------------------------------------------------

ENERGY = "energy"
POWER = "power"
SWITCH = "switch"
LEVEL = "level"

_HUNDRED = Decimal("100")
_MAX_BRIGHTNESS = Decimal("255")
_WH_PER_KWH = Decimal("1000")


# ---------------------------------------------------------------------------
# Scalar decoders
# ---------------------------------------------------------------------------


def parse_decimal(raw: Any) -> Decimal | None:
    """Decode a raw value into a finite Decimal, or ``None`` if not numeric.

    Accepts ints, floats, Decimals and numeric strings (surrounding
    whitespace allowed). Booleans, None, empty strings, NaN and infinities
    are all treated as absent. Floats go through ``str`` so that 0.1 stays
    0.1 instead of its binary expansion.
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, Decimal):
        value = raw
    elif isinstance(raw, int):
        value = Decimal(raw)
    elif isinstance(raw, float):
        value = Decimal(str(raw))
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            value = Decimal(text)
        except InvalidOperation:
            return None
    else:
        return None

    if not value.is_finite():
        return None
    return value


def parse_switch(raw: Any) -> bool | None:
    """Decode a switch state. ``"on"`` is on, any other string is off."""
    if raw is None:
        return None
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        return raw.strip().lower() == "on"
    return None


def parse_level(raw: Any) -> Decimal | None:
    """Decode a dimming level, clamped to [0, 100]."""
    value = parse_decimal(raw)
    if value is None:
        return None
    return min(max(value, Decimal(0)), _HUNDRED)


def brightness_to_level(raw: Any) -> Decimal | None:
    """Convert a 0-255 brightness into a 0-100 level."""
    value = parse_decimal(raw)
    if value is None:
        return None
    value = min(max(value, Decimal(0)), _MAX_BRIGHTNESS)
    return value * _HUNDRED / _MAX_BRIGHTNESS


def to_kwh(value: Decimal, unit: str) -> Decimal:
    """Convert an energy reading in *unit* (``kWh`` or ``Wh``) to kWh."""
    if unit == "Wh":
        return value / _WH_PER_KWH
    return value


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


def entity_attributes(
    entity: dict[str, Any],
    *,
    kind: DeviceKind | None = None,
) -> dict[str, Any]:
    """Flatten a live-read entity document into attribute name -> raw value.

    The document has the shape ``{"state": ..., "attributes": {...}}``.
    The entity's own attributes are kept under their names, its state under
    ``"state"``. Depending on *kind* the state is also exposed as
    ``"energy"`` (meters) or ``"switch"`` (estimated devices), and a light's
    ``brightness`` becomes ``"level"`` when no explicit level exists.

    Args:
        entity: Decoded JSON entity document.
        kind: Kind of the tracked device, or ``None`` for other entities
            such as the price device.

    Returns:
        Dict of raw attribute values. Values are not decoded here except
        for the brightness conversion.
    """
    attributes = entity.get("attributes")
    result: dict[str, Any] = dict(attributes) if isinstance(attributes, dict) else {}
    state = entity.get("state")
    result["state"] = state

    if kind == DeviceKind.METERED:
        result[ENERGY] = state
    elif kind == DeviceKind.ESTIMATED:
        result[SWITCH] = state
        if LEVEL not in result and "brightness" in result:
            result[LEVEL] = brightness_to_level(result["brightness"])

    return result


def normalize_event(raw: Any) -> DeviceEvent | None:
    """Validate a raw inbound event into a :class:`DeviceEvent`.

    Returns:
        The validated event, or ``None`` if required fields are missing or
        malformed. The raw ``value`` is not decoded here.
    """
    try:
        return DeviceEvent.model_validate(raw)
    except ValidationError:
        logger.warning("Dropping malformed device event: %r", raw)
        return None

"""
Price sources: resolve the effective price per kWh right now.

Two modes:
- **fixed**: a configured constant.
- **device**: a numeric attribute of a price device (e.g. a Tibber or
  Nord Pool sensor), read from the attribute store.

Both add an optional flat surcharge per kWh (taxes, grid fees). A negative
surcharge is clamped to zero, and so is a negative effective price, so cost
totals can only grow between resets.

Resolving never raises: an unavailable or non-numeric price is returned as
``None`` and the caller decides what to do with it. Nothing is cached here.

CHANGELOG:
- 2026-10-04: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Protocol

from aggregator.src.normalizer import parse_decimal

if TYPE_CHECKING:
    from aggregator.src.attributes import AttributeReader

logger = logging.getLogger(__name__)

_ZERO = Decimal("0")


class PriceSource(Protocol):
    """Resolves the currently effective price (base + surcharge)."""

    def resolve_effective_price(self) -> Decimal | None: ...


def _effective(base: Decimal, surcharge: Decimal) -> Decimal:
    return max(base + surcharge, _ZERO)


def _clamp_surcharge(surcharge: Decimal | None) -> Decimal:
    if surcharge is None or surcharge < _ZERO:
        return _ZERO
    return surcharge


class FixedPriceSource:
    """A configured constant price plus surcharge.

    Args:
        price: Base price per kWh, or ``None`` when not configured.
        surcharge: Extra cost per kWh added to the base price.
    """

    def __init__(self, price: Decimal | None, surcharge: Decimal | None = None) -> None:
        self._price = price
        self._surcharge = _clamp_surcharge(surcharge)

    def resolve_effective_price(self) -> Decimal | None:
        if self._price is None:
            return None
        return _effective(self._price, self._surcharge)


class DevicePriceSource:
    """Price read from an attribute of an external price device.

    Args:
        reader: Attribute store holding the price device's latest values.
        device_id: Price device identifier.
        attribute: Attribute carrying the numeric price (``"state"`` for
            the entity state itself).
        surcharge: Extra cost per kWh added to the base price.
    """

    def __init__(
        self,
        reader: AttributeReader,
        device_id: str,
        attribute: str,
        surcharge: Decimal | None = None,
    ) -> None:
        self._reader = reader
        self._device_id = device_id
        self._attribute = attribute
        self._surcharge = _clamp_surcharge(surcharge)

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def attribute(self) -> str:
        return self._attribute

    def resolve_effective_price(self) -> Decimal | None:
        raw = self._reader.read_current_value(self._device_id, self._attribute)
        base = parse_decimal(raw)
        if base is None:
            logger.debug(
                "Price unavailable from %s.%s (raw=%r)",
                self._device_id,
                self._attribute,
                raw,
            )
            return None
        return _effective(base, self._surcharge)


def build_price_source(
    *,
    mode: str,
    reader: AttributeReader,
    fixed_price: Decimal | None = None,
    price_device: str = "",
    price_attribute: str = "state",
    surcharge: Decimal | None = None,
) -> FixedPriceSource | DevicePriceSource:
    """Build the price source for the configured *mode*.

    Unknown modes fall back to ``fixed``.
    """
    if mode == "device":
        return DevicePriceSource(reader, price_device, price_attribute, surcharge)
    return FixedPriceSource(fixed_price, surcharge)

"""
Unit tests for power estimation of unmetered devices.

Tests verify:
- Off (or unknown switch) draws standby power.
- On without level scaling draws max power.
- On with scaling interpolates between standby and max by level.
- Missing level counts as 100; out-of-range levels clamp.
- Unconfigured max contributes zero; negative configuration clamps.
- PowerEstimator reads switch and level from the attribute store.

CHANGELOG:
- 2026-10-04: Initial creation (STORY-105)

TODO:
- None
"""

from __future__ import annotations

from decimal import Decimal

from aggregator.src.attributes import AttributeStore
from aggregator.src.estimator import PowerEstimator, estimate_power
from aggregator.src.models import DeviceKind, DeviceRecord


def _estimate(
    *,
    standby: str = "0.5",
    max_w: str | None = "60",
    scale: bool = True,
    switch_on: bool | None = True,
    level: str | None = None,
) -> Decimal:
    return estimate_power(
        standby_w=Decimal(standby),
        max_w=None if max_w is None else Decimal(max_w),
        scale_with_level=scale,
        switch_on=switch_on,
        level=None if level is None else Decimal(level),
    )


class TestEstimatePower:
    def test_off_draws_standby(self) -> None:
        assert _estimate(switch_on=False, level="80") == Decimal("0.5")

    def test_unknown_switch_counts_as_off(self) -> None:
        assert _estimate(switch_on=None) == Decimal("0.5")

    def test_on_without_scaling_draws_max(self) -> None:
        assert _estimate(scale=False, level="10") == Decimal("60")

    def test_on_with_scaling_interpolates(self) -> None:
        """0.5 + (60 - 0.5) * 50 / 100 = 30.25 W."""
        assert _estimate(level="50") == Decimal("30.25")

    def test_missing_level_counts_as_full(self) -> None:
        assert _estimate(level=None) == Decimal("60")

    def test_level_clamped(self) -> None:
        assert _estimate(level="250") == Decimal("60")
        assert _estimate(level="-5") == Decimal("0.5")

    def test_unconfigured_max_contributes_nothing(self) -> None:
        assert _estimate(max_w=None) == Decimal("0")
        assert _estimate(max_w=None, switch_on=False) == Decimal("0")

    def test_negative_configuration_clamped(self) -> None:
        assert _estimate(standby="-1", switch_on=False) == Decimal("0")
        assert _estimate(standby="-1", max_w="-10", level="50") == Decimal("0")


class TestPowerEstimator:
    def test_reads_switch_and_level_from_store(self) -> None:
        store = AttributeStore()
        store.update("bulbB", "switch", "on")
        store.update("bulbB", "level", "50")
        record = DeviceRecord(
            device_id="bulbB",
            kind=DeviceKind.ESTIMATED,
            standby_power_w=Decimal("0.5"),
            max_power_w=Decimal("60"),
            scale_with_level=True,
        )
        assert PowerEstimator(store).estimate(record) == Decimal("30.25")

    def test_non_numeric_level_treated_as_absent(self) -> None:
        store = AttributeStore()
        store.update("bulbB", "switch", "on")
        store.update("bulbB", "level", "bright")
        record = DeviceRecord(
            device_id="bulbB",
            kind=DeviceKind.ESTIMATED,
            standby_power_w=Decimal("0.5"),
            max_power_w=Decimal("60"),
            scale_with_level=True,
        )
        assert PowerEstimator(store).estimate(record) == Decimal("60")

    def test_unknown_device_draws_standby(self) -> None:
        record = DeviceRecord(
            device_id="bulbC",
            kind=DeviceKind.ESTIMATED,
            standby_power_w=Decimal("0.5"),
            max_power_w=Decimal("9"),
        )
        assert PowerEstimator(AttributeStore()).estimate(record) == Decimal("0.5")

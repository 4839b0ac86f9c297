"""
In-memory store of the latest known attribute values per device.

The device event source and the live-read poller both write here; the
engine, the price source and the power estimator read from here. Reads are
synchronous dictionary lookups, so the engine never performs I/O while the
service holds its state lock. A value that was never seen reads as ``None``.

Every write stamps the attribute with a store-wide generation number. A live
read takes ``generation`` before it starts and passes it to ``merge`` as
``since``; attributes written after that point (by events that arrived while
the read was in flight) are newer than the document and are left alone.

CHANGELOG:
- 2026-10-20: Generation stamps so a stale live read never overwrites newer events
- 2026-10-05: Initial creation (STORY-109)

TODO:
- None
"""

from __future__ import annotations

from typing import Any, Protocol


class AttributeStore:
    """Latest raw attribute values keyed by device id and attribute name."""

    def __init__(self) -> None:
        self._values: dict[str, dict[str, Any]] = {}
        self._written_at: dict[tuple[str, str], int] = {}
        self._generation = 0

    @property
    def generation(self) -> int:
        """Generation of the most recent write."""
        return self._generation

    def update(self, device_id: str, attribute: str, value: Any) -> None:
        """Record a single attribute change."""
        self._generation += 1
        self._values.setdefault(device_id, {})[attribute] = value
        self._written_at[(device_id, attribute)] = self._generation

    def merge(
        self,
        device_id: str,
        attributes: dict[str, Any],
        *,
        since: int | None = None,
    ) -> list[str]:
        """Record several attribute values at once (e.g. from a live read).

        Args:
            device_id: Device the values belong to.
            attributes: Attribute name -> raw value.
            since: Generation observed before the values were read. Attributes
                written after it are kept as they are.

        Returns:
            Names of the attributes that were skipped as stale.
        """
        self._generation += 1
        values = self._values.setdefault(device_id, {})
        stale: list[str] = []
        for attribute, value in attributes.items():
            if since is not None and self._written_at.get((device_id, attribute), 0) > since:
                stale.append(attribute)
                continue
            values[attribute] = value
            self._written_at[(device_id, attribute)] = self._generation
        return stale

    def read_current_value(self, device_id: str, attribute: str) -> Any | None:
        """Return the latest raw value, or ``None`` when unknown. Never raises."""
        return self._values.get(device_id, {}).get(attribute)


class AttributeReader(Protocol):
    """Anything that can answer "what is the current value of this attribute"."""

    def read_current_value(self, device_id: str, attribute: str) -> Any | None: ...

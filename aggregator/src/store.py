"""
Durable engine state store using async SQLite.

Running totals, meter baselines and the cached price must survive a restart,
otherwise a restart would either lose today's cost or attribute a meter's
entire counter as one delta. The engine exports its state as a single JSON
blob; this store keeps exactly one row holding the latest blob in a SQLite
database in WAL mode.

Operations:
- save(payload): UPSERT the state blob.
- load(): SELECT the state blob, or None before the first save.
- close(): Close the underlying database connection.

Supports async context manager protocol for clean resource management.

CHANGELOG:
- 2026-10-06: Initial creation (STORY-110)

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path

import aiosqlite

_CREATE_TABLE_SQL = """\
CREATE TABLE IF NOT EXISTS engine_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    payload TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_UPSERT_SQL = """\
INSERT INTO engine_state (id, payload, updated_at)
VALUES (1, ?, datetime('now'))
ON CONFLICT (id) DO UPDATE SET
    payload = excluded.payload,
    updated_at = excluded.updated_at;
"""

_LOAD_SQL = "SELECT payload FROM engine_state WHERE id = 1;"


class StateStore:
    """Single-row state blob store backed by a SQLite database.

    The payload is stored as an opaque TEXT blob. The caller is
    responsible for JSON serialization/deserialization.

    Args:
        path: Filesystem path for the SQLite database file.
              Accepts ``str`` or ``pathlib.Path``.

    Usage::

        async with StateStore(path="/data/state.db") as store:
            await store.save(engine.export_state().model_dump_json())
            payload = await store.load()
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        """Open the SQLite connection and initialize the schema."""
        self._db = await aiosqlite.connect(str(self._path))
        await self._db.execute("PRAGMA journal_mode=WAL;")
        await self._db.execute(_CREATE_TABLE_SQL)
        await self._db.commit()

    async def close(self) -> None:
        """Close the underlying SQLite connection."""
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> StateStore:
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def save(self, payload: str) -> None:
        """Replace the stored state blob with *payload*."""
        assert self._db is not None, "StateStore not opened. Call open() or use async with."
        await self._db.execute(_UPSERT_SQL, (payload,))
        await self._db.commit()

    async def load(self) -> str | None:
        """Return the stored state blob, or ``None`` if nothing was saved yet."""
        assert self._db is not None, "StateStore not opened. Call open() or use async with."
        cursor = await self._db.execute(_LOAD_SQL)
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return None
        return row[0]

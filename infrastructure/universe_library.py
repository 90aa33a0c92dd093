"""
Universe Library - SQLite persistence for universes and their snapshots.

Stores:
- Universes (the whole universe as one msgspec JSON document per row)
- Activation flags (which universes feed GAP context as read-only memory)
- Snapshots (one immutable pre-exploration copy per universe, for revert)

Every write is a single sqlite transaction, so a universe is always saved
whole or not at all.

Layer: L1 (Database)
"""
import logging
import sqlite3
from pathlib import Path
from typing import List, Optional

import msgspec

from core.schemas import Snapshot, Universe, now_utc

logger = logging.getLogger(__name__)


class LibraryError(Exception):
    """Base exception for library operations."""
    pass


class UniverseNotFoundError(LibraryError):
    def __init__(self, universe_id: str):
        self.universe_id = universe_id
        super().__init__(f"Universe not found: {universe_id}")


class SnapshotNotFoundError(LibraryError):
    def __init__(self, universe_id: str):
        self.universe_id = universe_id
        super().__init__(f"No snapshot for universe: {universe_id}")


class UniverseLibrary:
    """SQLite-backed storage for universes."""

    DB_PATH = Path("data/universes.db")

    def __init__(self, db_path: Path | str | None = None):
        """
        Initialize the library.

        Args:
            db_path: Optional path to database file (defaults to data/universes.db)
        """
        self.db_path = Path(db_path) if db_path else self.DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with sqlite3.connect(self.db_path) as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS universes (
                    universe_id TEXT PRIMARY KEY,
                    title TEXT NOT NULL DEFAULT '',
                    payload BLOB NOT NULL,
                    entity_count INTEGER NOT NULL DEFAULT 0,
                    activated INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS snapshots (
                    universe_id TEXT PRIMARY KEY,
                    captured_at TEXT NOT NULL,
                    payload BLOB NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_universes_activated
                    ON universes(activated);
            """
            )

    # === Write Methods ===

    def save(self, universe_id: str, universe: Universe) -> None:
        """
        Save a whole universe atomically (insert or replace).

        The activation flag of an existing row is preserved.
        """
        if universe.id != universe_id:
            universe = msgspec.structs.replace(universe, id=universe_id)
        payload = msgspec.json.encode(universe)

        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO universes (universe_id, title, payload, entity_count, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(universe_id) DO UPDATE SET
                    title = excluded.title,
                    payload = excluded.payload,
                    entity_count = excluded.entity_count,
                    updated_at = excluded.updated_at
            """,
                (universe_id, universe.title, payload, universe.entity_count(), now_utc()),
            )

        logger.debug(f"Saved universe {universe_id} ({universe.entity_count()} entities)")

    def create_snapshot(self, universe_id: str) -> Snapshot:
        """
        Capture the saved state of a universe as its revert point.

        Replaces any earlier snapshot of the same universe.

        Raises:
            UniverseNotFoundError: If the universe was never saved
        """
        universe = self.load(universe_id)
        if universe is None:
            raise UniverseNotFoundError(universe_id)

        snapshot = Snapshot.capture(universe)
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO snapshots (universe_id, captured_at, payload)
                VALUES (?, ?, ?)
            """,
                (universe_id, snapshot.captured_at, snapshot.payload),
            )

        logger.info(f"Snapshot taken for universe {universe_id}")
        return snapshot

    def revert_to_snapshot(self, universe_id: str) -> Universe:
        """
        Replace the saved universe with its snapshot.

        Returns:
            The restored universe

        Raises:
            SnapshotNotFoundError: If no snapshot exists
        """
        snapshot = self.get_snapshot(universe_id)
        if snapshot is None:
            raise SnapshotNotFoundError(universe_id)

        universe = snapshot.restore()
        self.save(universe_id, universe)
        logger.info(
            f"Reverted universe {universe_id} to snapshot from {snapshot.captured_at}"
        )
        return universe

    def activate(self, universe_id: str) -> None:
        self._set_activated(universe_id, True)

    def deactivate(self, universe_id: str) -> None:
        self._set_activated(universe_id, False)

    def _set_activated(self, universe_id: str, activated: bool) -> None:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "UPDATE universes SET activated = ? WHERE universe_id = ?",
                (1 if activated else 0, universe_id),
            )
            if cursor.rowcount == 0:
                raise UniverseNotFoundError(universe_id)
        logger.info(f"Universe {universe_id} {'activated' if activated else 'deactivated'}")

    def delete(self, universe_id: str) -> bool:
        """Remove a universe and its snapshot. Returns False if it did not exist."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM universes WHERE universe_id = ?", (universe_id,)
            )
            conn.execute("DELETE FROM snapshots WHERE universe_id = ?", (universe_id,))
            return cursor.rowcount > 0

    # === Read Methods ===

    def load(self, universe_id: str) -> Optional[Universe]:
        """
        Load a universe.

        Returns:
            The universe, or None if it was never saved
        """
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "SELECT payload FROM universes WHERE universe_id = ?", (universe_id,)
            )
            row = cursor.fetchone()

        if row is None:
            return None
        return msgspec.json.decode(row[0], type=Universe)

    def get_snapshot(self, universe_id: str) -> Optional[Snapshot]:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "SELECT captured_at, payload FROM snapshots WHERE universe_id = ?",
                (universe_id,),
            )
            row = cursor.fetchone()

        if row is None:
            return None
        return Snapshot(universe_id=universe_id, captured_at=row[0], payload=bytes(row[1]))

    def list_activated(self) -> List[str]:
        """Ids of activated universes, oldest update first."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                SELECT universe_id FROM universes
                WHERE activated = 1
                ORDER BY updated_at, universe_id
            """
            )
            return [row[0] for row in cursor.fetchall()]

    def list_universes(self) -> List[dict]:
        """
        Summaries of every saved universe.

        Returns:
            List of dicts with keys: universe_id, title, entity_count,
            activated, updated_at, has_snapshot
        """
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.execute(
                """
                SELECT u.universe_id, u.title, u.entity_count, u.activated, u.updated_at,
                       s.universe_id IS NOT NULL AS has_snapshot
                FROM universes u
                LEFT JOIN snapshots s ON s.universe_id = u.universe_id
                ORDER BY u.updated_at DESC
            """
            )
            rows = [dict(row) for row in cursor.fetchall()]

        for row in rows:
            row["activated"] = bool(row["activated"])
            row["has_snapshot"] = bool(row["has_snapshot"])
        return rows

    def get_universe_count(self) -> int:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("SELECT COUNT(*) FROM universes")
            return cursor.fetchone()[0]

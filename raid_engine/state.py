"""Engine state management and persistence."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .models import Event, Faction, Location, WarLogEntry

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS factions (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS locations (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    data TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS war_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    faction_id TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    type TEXT NOT NULL,
    activity TEXT NOT NULL,
    summary TEXT NOT NULL,
    outcome TEXT,
    payload TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_war_log_faction
    ON war_log (faction_id, id);
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    action TEXT NOT NULL,
    payload TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS orders (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    order_type TEXT NOT NULL,
    actor_id TEXT,
    subject_id TEXT,
    payload TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    result TEXT
);
CREATE INDEX IF NOT EXISTS idx_orders_actor_status
    ON orders (actor_id, status);
"""


class PersistenceError(RuntimeError):
    """Raised when a write to the state database fails."""


class EngineState:
    """SQLite-backed store for factions, locations, the war log and orders.

    Getters return fresh objects decoded from the database, so callers may
    mutate them freely and discard them if a later write fails.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        admin_notifier: Optional[Callable[[str], None]] = None,
    ) -> None:
        self._db_path = db_path
        self._admin_notifier = admin_notifier
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _ensure_schema(self) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.executescript(_DB_SCHEMA)
            conn.commit()

    def _notify(self, message: str) -> None:
        if self._admin_notifier is not None:
            self._admin_notifier(message)

    # Factions ----------------------------------------------------------
    def upsert_faction(self, faction: Faction) -> None:
        self.write_batch(factions=[faction])

    def get_faction(self, faction_id: str) -> Optional[Faction]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT id, name, data FROM factions WHERE id = ?",
                (faction_id,),
            ).fetchone()
        if not row:
            return None
        return Faction.from_document(row[0], row[1], json.loads(row[2]))

    def all_factions(self) -> List[Faction]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute("SELECT id, name, data FROM factions ORDER BY id").fetchall()
        return [Faction.from_document(row[0], row[1], json.loads(row[2])) for row in rows]

    def faction_documents(self) -> Dict[str, Dict[str, object]]:
        return self._documents("factions")

    def save_faction_document(self, faction_id: str, document: Dict[str, object]) -> None:
        self._save_document("factions", faction_id, document)

    # Locations ---------------------------------------------------------
    def upsert_location(self, location: Location) -> None:
        self.write_batch(locations=[location])

    def get_location(self, location_id: str) -> Optional[Location]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT id, name, data FROM locations WHERE id = ?",
                (location_id,),
            ).fetchone()
        if not row:
            return None
        return Location.from_document(row[0], row[1], json.loads(row[2]))

    def all_locations(self) -> List[Location]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute("SELECT id, name, data FROM locations ORDER BY id").fetchall()
        return [Location.from_document(row[0], row[1], json.loads(row[2])) for row in rows]

    def location_documents(self) -> Dict[str, Dict[str, object]]:
        return self._documents("locations")

    def save_location_document(self, location_id: str, document: Dict[str, object]) -> None:
        self._save_document("locations", location_id, document)

    def _documents(self, table: str) -> Dict[str, Dict[str, object]]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(f"SELECT id, data FROM {table} ORDER BY id").fetchall()  # nosec B608 - fixed table names
        return {row[0]: json.loads(row[1]) for row in rows}

    def _save_document(self, table: str, entity_id: str, document: Dict[str, object]) -> None:
        try:
            with closing(sqlite3.connect(self._db_path)) as conn:
                conn.execute(
                    f"UPDATE {table} SET data = ? WHERE id = ?",  # nosec B608 - fixed table names
                    (json.dumps(document), entity_id),
                )
                conn.commit()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to save {table} document {entity_id}: {exc}") from exc

    # Atomic writes -----------------------------------------------------
    def write_batch(
        self,
        *,
        factions: Iterable[Faction] = (),
        locations: Iterable[Location] = (),
        war_log: Iterable[WarLogEntry] = (),
        events: Iterable[Event] = (),
        order_updates: Iterable[Tuple[int, str, Optional[Dict[str, object]]]] = (),
    ) -> None:
        """Persist entities, war log entries, events and order statuses in one transaction."""

        now = datetime.now(timezone.utc).isoformat()

        try:
            with closing(sqlite3.connect(self._db_path)) as conn:
                try:
                    for faction in factions:
                        conn.execute(
                            """INSERT INTO factions (id, name, data) VALUES (?, ?, ?)
                                   ON CONFLICT(id) DO UPDATE SET name = excluded.name, data = excluded.data""",
                            (faction.id, faction.name, json.dumps(faction.to_document())),
                        )
                    for location in locations:
                        conn.execute(
                            """INSERT INTO locations (id, name, data) VALUES (?, ?, ?)
                                   ON CONFLICT(id) DO UPDATE SET name = excluded.name, data = excluded.data""",
                            (location.id, location.name, json.dumps(location.to_document())),
                        )
                    for entry in war_log:
                        conn.execute(
                            """INSERT INTO war_log
                                   (faction_id, timestamp, type, activity, summary, outcome, payload)
                                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                            (
                                entry.faction_id,
                                entry.timestamp.isoformat(),
                                entry.type,
                                entry.activity,
                                entry.summary,
                                entry.outcome,
                                json.dumps(entry.payload, default=str),
                            ),
                        )
                    for event in events:
                        conn.execute(
                            "INSERT INTO events (timestamp, action, payload) VALUES (?, ?, ?)",
                            (event.timestamp.isoformat(), event.action, json.dumps(event.payload, default=str)),
                        )
                    for order_id, status, result in order_updates:
                        conn.execute(
                            "UPDATE orders SET status = ?, updated_at = ?, result = ? WHERE id = ?",
                            (status, now, json.dumps(result) if result is not None else None, order_id),
                        )
                    conn.commit()
                except sqlite3.Error:
                    conn.rollback()
                    raise
        except sqlite3.Error as exc:
            message = f"State write failed for {self._db_path}: {exc}"
            logger.error(message)
            self._notify(message)
            raise PersistenceError(message) from exc

    # War log -----------------------------------------------------------
    def war_log(self, faction_id: Optional[str] = None, limit: Optional[int] = None) -> List[WarLogEntry]:
        query = "SELECT id, faction_id, timestamp, type, activity, summary, outcome, payload FROM war_log"
        params: List[object] = []
        if faction_id:
            query += " WHERE faction_id = ?"
            params.append(faction_id)
        query += " ORDER BY id"
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(query, params).fetchall()
        entries = [
            WarLogEntry(
                id=int(row[0]),
                faction_id=row[1],
                timestamp=datetime.fromisoformat(row[2]),
                type=row[3],
                activity=row[4],
                summary=row[5],
                outcome=row[6],
                payload=json.loads(row[7]),
            )
            for row in rows
        ]
        if limit is not None:
            entries = entries[-limit:]
        return entries

    # Events ------------------------------------------------------------
    def export_events(self) -> List[Event]:
        events: List[Event] = []
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT timestamp, action, payload FROM events ORDER BY id ASC"
            ).fetchall()
        for ts, action, payload in rows:
            events.append(
                Event(
                    timestamp=datetime.fromisoformat(ts),
                    action=action,
                    payload=json.loads(payload),
                )
            )
        return events

    # Orders ------------------------------------------------------------
    def enqueue_order(
        self,
        order_type: str,
        *,
        payload: Dict[str, object],
        actor_id: Optional[str] = None,
        subject_id: Optional[str] = None,
    ) -> int:
        now = datetime.now(timezone.utc).isoformat()
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                """INSERT INTO orders
                       (order_type, actor_id, subject_id, payload, status, created_at, updated_at, result)
                       VALUES (?, ?, ?, ?, 'pending', ?, ?, NULL)""",
                (order_type, actor_id, subject_id, json.dumps(payload), now, now),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def list_orders(
        self,
        order_type: Optional[str] = None,
        status: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> List[Dict[str, object]]:
        query = "SELECT id, order_type, actor_id, subject_id, payload, status, created_at, updated_at, result FROM orders"
        conditions: List[str] = []
        params: List[object] = []
        if order_type:
            conditions.append("order_type = ?")
            params.append(order_type)
        if status:
            conditions.append("status = ?")
            params.append(status)
        if actor_id:
            conditions.append("actor_id = ?")
            params.append(actor_id)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id"

        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(query, params).fetchall()

        orders: List[Dict[str, object]] = []
        for row in rows:
            orders.append(
                {
                    "id": int(row[0]),
                    "order_type": row[1],
                    "actor_id": row[2],
                    "subject_id": row[3],
                    "payload": json.loads(row[4]),
                    "status": row[5],
                    "created_at": datetime.fromisoformat(row[6]),
                    "updated_at": datetime.fromisoformat(row[7]),
                    "result": json.loads(row[8]) if row[8] else None,
                }
            )
        return orders


__all__ = ["EngineState", "PersistenceError"]

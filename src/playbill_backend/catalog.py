"""
Existence checks for catalog entities that posters can be attached to.

The musical and performance tables are owned by the catalog side of the
application; the upload pipeline only asks whether an id exists.
"""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from uuid import uuid4

from .errors import RegistryFault
from .models import EntityType
from .utils import ensure_directory

_TABLES = {
    EntityType.MUSICAL: "musicals",
    EntityType.PERFORMANCE: "performances",
}


class EntityCatalog:
    def __init__(self, db_path: str | Path = "data/playbill.db"):
        self.db_path = Path(db_path)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        ensure_directory(self.db_path.parent)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize the catalog schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS musicals (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS performances (
                    id TEXT PRIMARY KEY,
                    musical_id TEXT NOT NULL REFERENCES musicals(id),
                    title TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def exists(self, entity_type: EntityType, entity_id: str) -> bool:
        """
        Whether a musical or performance with ``entity_id`` exists.

        Users are not catalog entities and always return False here.
        """
        table = _TABLES.get(EntityType(entity_type))
        if table is None:
            return False
        try:
            with self._get_conn() as conn:
                row = conn.execute(f"SELECT 1 FROM {table} WHERE id = ?", (entity_id,)).fetchone()
        except sqlite3.Error as exc:
            raise RegistryFault(f"Catalog lookup failed: {exc}") from exc
        return row is not None

    def add_musical(self, title: str, musical_id: Optional[str] = None) -> str:
        musical_id = musical_id or str(uuid4())
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO musicals (id, title, created_at) VALUES (?, ?, ?)",
                (musical_id, title, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
        return musical_id

    def add_performance(self, musical_id: str, title: str, performance_id: Optional[str] = None) -> str:
        performance_id = performance_id or str(uuid4())
        with self._get_conn() as conn:
            conn.execute(
                "INSERT INTO performances (id, musical_id, title, created_at) VALUES (?, ?, ?, ?)",
                (performance_id, musical_id, title, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()
        return performance_id

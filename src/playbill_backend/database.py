"""
SQLite asset registry.

This module is the store of record for uploaded images: one row per asset,
linking it to its owning entity, its uploader, its purpose and its object
store location. Object store writes and registry writes are not covered by
a shared transaction; the upload manager compensates instead.
"""

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from .errors import RegistryFault
from .models import EntityType, ImagePurpose, ImageView
from .utils import ensure_directory

# Default database path
DEFAULT_DB_PATH = Path("data/playbill.db")


def _serialize_datetime(dt: datetime) -> str:
    """Serialize datetime to ISO format string."""
    return dt.isoformat()


def _deserialize_datetime(s: str) -> datetime:
    """Deserialize ISO format string to datetime."""
    return datetime.fromisoformat(s)


@dataclass(frozen=True)
class AssetRecord:
    """
    A registered image.

    Attributes:
        id: Asset id (UUID4), also embedded in the storage key
        original_filename: Client-supplied filename, display only
        storage_key: Object store key; never exposed to clients
        storage_locator: URL clients use to fetch the bytes
        byte_size: Size of the stored (processed) bytes
        mime_type: MIME type of the stored bytes
        width: Stored image width in pixels
        height: Stored image height in pixels
        uploaded_by: Id of the principal that uploaded the asset
        entity_type: Kind of owning entity
        entity_id: Id of the owning entity
        purpose: poster or profile
        created_at: Registration timestamp (UTC)
    """

    id: str
    original_filename: str
    storage_key: str
    storage_locator: str
    byte_size: int
    mime_type: str
    width: Optional[int]
    height: Optional[int]
    uploaded_by: str
    entity_type: EntityType
    entity_id: str
    purpose: ImagePurpose
    created_at: datetime

    def to_view(self) -> ImageView:
        """Public projection; the storage key is deliberately left out."""
        return ImageView(
            id=self.id,
            url=self.storage_locator,
            image_type=self.purpose,
            width=self.width,
            height=self.height,
            file_size=self.byte_size,
            created_at=self.created_at,
        )


class AssetDatabase:
    """
    SQLite registry for uploaded image metadata.

    Thread-safe: each call opens its own connection and SQLite handles
    concurrent access with WAL mode. Every sqlite3 error is re-raised as
    RegistryFault.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        ensure_directory(self.db_path.parent)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        except sqlite3.Error as exc:
            raise RegistryFault(f"Failed to open image registry: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise RegistryFault(f"Image registry error: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS uploaded_images (
                    id TEXT PRIMARY KEY,
                    original_filename TEXT NOT NULL,
                    storage_key TEXT UNIQUE NOT NULL,
                    storage_locator TEXT NOT NULL,
                    byte_size INTEGER NOT NULL,
                    mime_type TEXT NOT NULL,
                    width INTEGER,
                    height INTEGER,
                    uploaded_by TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    purpose TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_images_entity
                ON uploaded_images(entity_type, entity_id, purpose)
            """)

    def create(self, record: AssetRecord) -> AssetRecord:
        """
        Insert a new asset row.

        Args:
            record: Fully populated asset

        Returns:
            The stored record

        Raises:
            RegistryFault: On any database error, including a duplicate id or key
        """
        with self._get_connection() as conn:
            conn.execute("""
                INSERT INTO uploaded_images (
                    id, original_filename, storage_key, storage_locator,
                    byte_size, mime_type, width, height, uploaded_by,
                    entity_type, entity_id, purpose, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.original_filename,
                record.storage_key,
                record.storage_locator,
                record.byte_size,
                record.mime_type,
                record.width,
                record.height,
                record.uploaded_by,
                record.entity_type.value,
                record.entity_id,
                record.purpose.value,
                _serialize_datetime(record.created_at),
            ))
        return record

    def get(self, asset_id: str) -> Optional[AssetRecord]:
        """
        Retrieve an asset by id.

        Returns:
            The asset or None if not found
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM uploaded_images WHERE id = ?", (asset_id,)
            ).fetchone()
            return self._row_to_record(row) if row else None

    def list_by_entity(
        self,
        entity_type: EntityType,
        entity_id: str,
        purpose: Optional[ImagePurpose] = None,
    ) -> List[AssetRecord]:
        """
        List assets owned by an entity, oldest first.

        Args:
            entity_type: Owning entity kind
            entity_id: Owning entity id
            purpose: Optional purpose filter

        Returns:
            Matching assets ordered by creation time
        """
        query = "SELECT * FROM uploaded_images WHERE entity_type = ? AND entity_id = ?"
        values: list = [EntityType(entity_type).value, entity_id]
        if purpose is not None:
            query += " AND purpose = ?"
            values.append(ImagePurpose(purpose).value)
        query += " ORDER BY created_at ASC, rowid ASC"

        with self._get_connection() as conn:
            rows = conn.execute(query, values).fetchall()
            return [self._row_to_record(row) for row in rows]

    def delete(self, asset_id: str) -> bool:
        """
        Delete an asset row.

        Returns:
            True if deleted, False if not found
        """
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM uploaded_images WHERE id = ?", (asset_id,))
            return cursor.rowcount > 0

    def _row_to_record(self, row: sqlite3.Row) -> AssetRecord:
        """Convert a database row to an AssetRecord."""
        return AssetRecord(
            id=row["id"],
            original_filename=row["original_filename"],
            storage_key=row["storage_key"],
            storage_locator=row["storage_locator"],
            byte_size=row["byte_size"],
            mime_type=row["mime_type"],
            width=row["width"],
            height=row["height"],
            uploaded_by=row["uploaded_by"],
            entity_type=EntityType(row["entity_type"]),
            entity_id=row["entity_id"],
            purpose=ImagePurpose(row["purpose"]),
            created_at=_deserialize_datetime(row["created_at"]),
        )

import hashlib
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple
from uuid import uuid4

from .utils import ensure_directory

# secrets.token_urlsafe(32) always yields 43 characters
TOKEN_LENGTH = 43


@dataclass(frozen=True)
class Principal:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class TokenStore:
    """
    Bearer tokens for authenticated principals, backed by SQLite.

    Only the SHA-256 hash of a token is stored.
    """

    def __init__(self, db_path: str | Path = "data/playbill.db"):
        self.db_path = Path(db_path)
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        ensure_directory(self.db_path.parent)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS access_tokens (
                    id TEXT PRIMARY KEY,
                    token_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

    def _hash_token(self, token: str) -> str:
        """SHA-256 hash of the token."""
        return hashlib.sha256(token.encode()).hexdigest()

    def issue_token(self, user_id: str, role: str = "user") -> Tuple[str, dict]:
        """
        Issue a new bearer token for a user.

        Returns:
            Tuple[str, dict]: (raw_token, token_record_dict)
            WARNING: raw_token is shown ONLY ONCE here.
        """
        raw_token = secrets.token_urlsafe(32)
        token_id = str(uuid4())
        created_at = datetime.now(timezone.utc).isoformat()

        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO access_tokens (id, token_hash, prefix, user_id, role, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (token_id, self._hash_token(raw_token), raw_token[:8], user_id, role, created_at))
            conn.commit()

        record = {
            "id": token_id,
            "prefix": raw_token[:8],
            "user_id": user_id,
            "role": role,
            "is_active": True,
            "created_at": created_at,
        }
        return raw_token, record

    def resolve(self, token: Optional[str]) -> Optional[Principal]:
        """
        Resolve a raw bearer token to its principal.

        Malformed, unknown and revoked tokens all resolve to None.
        """
        if not token or len(token) != TOKEN_LENGTH:
            return None

        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT user_id, role FROM access_tokens WHERE token_hash = ? AND is_active = 1",
                (self._hash_token(token),),
            ).fetchone()

        if row:
            return Principal(id=row["user_id"], role=row["role"])
        return None

    def revoke_token(self, token_id: str) -> bool:
        """Revoke a token by ID."""
        with self._get_conn() as conn:
            cursor = conn.execute("UPDATE access_tokens SET is_active = 0 WHERE id = ?", (token_id,))
            conn.commit()
            return cursor.rowcount > 0

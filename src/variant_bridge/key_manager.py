import hashlib
import hmac
import secrets
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple
from uuid import uuid4

from .models import APIKeyRecord, Role
from .utils import utcnow


@dataclass(frozen=True)
class AuthContext:
    """Outcome of the authorization gate for one request."""

    authenticated: bool
    role: Optional[Role] = None
    owner: Optional[str] = None
    key_id: Optional[str] = None


ANONYMOUS = AuthContext(authenticated=False)


class KeyManager:
    """
    Manages API keys and their roles using a local SQLite database.

    The master key never touches the table; it is compared in constant time
    and always resolves to the admin role.
    """

    def __init__(self, db_path: str = "data/variant_bridge.db", master_key: str = "", bypass: bool = False):
        self.db_path = Path(db_path)
        self.master_key = master_key
        self.bypass = bypass
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self):
        """Initialize the database schema if it doesn't exist."""
        with self._get_conn() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    key_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    role TEXT NOT NULL,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)
            conn.commit()

    def _hash_key(self, key: str) -> str:
        """SHA-256 hash of the API key."""
        return hashlib.sha256(key.encode()).hexdigest()

    def _row_to_record(self, row: sqlite3.Row) -> APIKeyRecord:
        return APIKeyRecord(
            id=row["id"],
            owner=row["owner"],
            prefix=row["prefix"],
            role=row["role"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def create_key(self, owner: str, role: Role = Role.DESIGNER) -> Tuple[str, APIKeyRecord]:
        """
        Generate a new API key.

        Returns:
            (raw_api_key, record). The raw key is shown ONLY ONCE here.
        """
        raw_key = f"vb_{secrets.token_urlsafe(32)}"
        key_id = str(uuid4())
        created_at = utcnow().isoformat()

        with self._get_conn() as conn:
            conn.execute("""
                INSERT INTO api_keys (id, key_hash, prefix, owner, role, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (key_id, self._hash_key(raw_key), raw_key[:8], owner, Role(role).value, created_at))
            conn.commit()
            row = conn.execute("SELECT * FROM api_keys WHERE id = ?", (key_id,)).fetchone()

        return raw_key, self._row_to_record(row)

    def authenticate(self, key: Optional[str]) -> AuthContext:
        """Resolve a presented key (possibly absent) into an auth context."""
        if self.bypass:
            return AuthContext(authenticated=True, role=Role.ADMIN, owner="bypass")
        if not key:
            return ANONYMOUS
        if self.master_key and hmac.compare_digest(key.encode(), self.master_key.encode()):
            return AuthContext(authenticated=True, role=Role.ADMIN, owner="master")

        record = self.validate_key(key)
        if record is None:
            return ANONYMOUS
        return AuthContext(authenticated=True, role=record.role, owner=record.owner, key_id=record.id)

    def validate_key(self, key: str) -> Optional[APIKeyRecord]:
        """
        Validate an API key and return its record if valid.
        """
        if not key:
            return None

        with self._get_conn() as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE key_hash = ? AND is_active = 1",
                (self._hash_key(key),)
            ).fetchone()

        return self._row_to_record(row) if row else None

    def list_keys(self) -> list[APIKeyRecord]:
        """List all API keys (admin only)."""
        with self._get_conn() as conn:
            rows = conn.execute("SELECT * FROM api_keys ORDER BY created_at DESC").fetchall()
            return [self._row_to_record(row) for row in rows]

    def revoke_key(self, key_id: str) -> bool:
        """Revoke a key by ID."""
        with self._get_conn() as conn:
            cursor = conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
            conn.commit()
            return cursor.rowcount > 0

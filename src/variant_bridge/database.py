"""
SQLite persistence for design variants and bridge jobs.

The database is the single authority for ordering and mutual exclusion: every
mutating operation runs inside ``transaction()``, which takes the write lock
up front (``BEGIN IMMEDIATE``) so check-then-write sequences cannot interleave
across requests or processes. Row helpers take the open connection so callers
can compose several of them into one atomic unit.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from .errors import PersistenceError, ValidationError
from .models import (
    ArtifactRef,
    BridgeJob,
    DesignVariant,
    ItemContext,
    ProjectContext,
    SchoolContext,
    TeamContext,
    TemplateContext,
)

logger = logging.getLogger(__name__)

# Default database path
DEFAULT_DB_PATH = Path("data/variant_bridge.db")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS schools (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    abbreviation TEXT,
    primary_color TEXT,
    secondary_color TEXT
);

CREATE TABLE IF NOT EXISTS teams (
    id TEXT PRIMARY KEY,
    school_id TEXT REFERENCES schools(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    sport TEXT
);

CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    team_id TEXT REFERENCES teams(id) ON DELETE CASCADE,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS templates (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    category TEXT,
    svg_path TEXT,
    svg_is_public INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS items (
    id TEXT PRIMARY KEY,
    project_id TEXT REFERENCES projects(id) ON DELETE CASCADE,
    template_id TEXT REFERENCES templates(id) ON DELETE SET NULL,
    name TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS design_variants (
    id TEXT PRIMARY KEY,
    item_id TEXT NOT NULL REFERENCES items(id) ON DELETE CASCADE,
    variant_name TEXT NOT NULL,
    configuration TEXT,
    status TEXT NOT NULL DEFAULT 'preview',
    preview_path TEXT,
    preview_is_public INTEGER NOT NULL DEFAULT 0,
    final_path TEXT,
    final_is_public INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_variants_item
ON design_variants(item_id, created_at);

CREATE TABLE IF NOT EXISTS bridge_jobs (
    id TEXT PRIMARY KEY,
    variant_id TEXT NOT NULL REFERENCES design_variants(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'pending',
    priority INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    artifact_path TEXT,
    artifact_is_public INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_jobs_dispatch
ON bridge_jobs(status, priority DESC, created_at);

CREATE INDEX IF NOT EXISTS idx_jobs_variant
ON bridge_jobs(variant_id, created_at);

-- At most one non-terminal job per variant
CREATE UNIQUE INDEX IF NOT EXISTS uq_jobs_active_variant
ON bridge_jobs(variant_id) WHERE status IN ('pending', 'processing');
"""

CONTEXT_TABLES = {
    "schools": ("id", "name", "abbreviation", "primary_color", "secondary_color"),
    "teams": ("id", "school_id", "name", "sport"),
    "projects": ("id", "team_id", "name"),
    "templates": ("id", "name", "category", "svg_path", "svg_is_public"),
    "items": ("id", "project_id", "template_id", "name"),
}

_VARIANT_COLUMNS = frozenset(
    {
        "variant_name",
        "configuration",
        "status",
        "preview_path",
        "preview_is_public",
        "final_path",
        "final_is_public",
        "error_message",
    }
)
_JOB_COLUMNS = frozenset(
    {"status", "error_message", "artifact_path", "artifact_is_public", "started_at", "completed_at"}
)

# Priority first, then FIFO; rowid settles identical timestamps by insertion order
DISPATCH_ORDER = "ORDER BY priority DESC, created_at ASC, rowid ASC"


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to a fixed-width ISO string so text order matches time order."""
    return dt.isoformat(timespec="microseconds") if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    if not s:
        return None
    return datetime.fromisoformat(s)


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _artifact(path: Optional[str], is_public: Any) -> Optional[ArtifactRef]:
    if not path:
        return None
    return ArtifactRef(path=path, is_public=bool(is_public))


class BridgeDatabase:
    """
    SQLite database for variant and job persistence.

    Concurrency: WAL mode plus ``BEGIN IMMEDIATE`` transactions; writers queue
    on the database lock for up to ``timeout`` seconds.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH, timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.timeout = timeout
        _ensure_db_dir(self.db_path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        return conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Open a connection holding the write lock for one logical operation.

        Commits on success. Any exception rolls everything back; sqlite
        failures are re-raised as ``PersistenceError``, service errors raised
        inside the block propagate unchanged.
        """
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Could not open database: {exc}") from exc

        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            logger.error(f"Transaction rolled back: {exc}")
            raise PersistenceError(f"Database operation failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """Plain connection for reads; commits whatever the block wrote."""
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(f"Database operation failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self.connection() as conn:
            conn.executescript(_SCHEMA)

    # ------------------------------------------------------------------
    # Organization context
    # ------------------------------------------------------------------

    def insert_context_record(self, table: str, values: Dict[str, Any]) -> None:
        """
        Insert or replace one school/team/project/template/item row.

        These records are owned by the surrounding application; the queue only
        reads them to denormalize dispatch payloads.

        Raises:
            ValidationError: Unknown table or column
        """
        columns = CONTEXT_TABLES.get(table)
        if columns is None:
            raise ValidationError(f"Unknown context table: {table}")
        unknown = set(values) - set(columns)
        if unknown:
            raise ValidationError(f"Unknown columns for {table}: {', '.join(sorted(unknown))}")

        names = list(values)
        with self.transaction() as conn:
            conn.execute(
                f"INSERT OR REPLACE INTO {table} ({', '.join(names)}) VALUES ({_placeholders(names)})",
                [values[name] for name in names],
            )

    def item_exists(self, conn: sqlite3.Connection, item_id: str) -> bool:
        row = conn.execute("SELECT 1 FROM items WHERE id = ?", (item_id,)).fetchone()
        return row is not None

    def load_item_contexts(self, conn: sqlite3.Connection, item_ids: Iterable[str]) -> Dict[str, ItemContext]:
        """Fetch item -> project -> team -> school and item -> template in one query."""
        ids = list(set(item_ids))
        if not ids:
            return {}

        rows = conn.execute(
            f"""
            SELECT
                i.id AS item_id, i.name AS item_name,
                p.id AS project_id, p.name AS project_name,
                t.id AS team_id, t.name AS team_name, t.sport AS team_sport,
                s.id AS school_id, s.name AS school_name, s.abbreviation AS school_abbreviation,
                s.primary_color AS school_primary_color, s.secondary_color AS school_secondary_color,
                tp.id AS template_id, tp.name AS template_name, tp.category AS template_category,
                tp.svg_path AS template_svg_path, tp.svg_is_public AS template_svg_is_public
            FROM items i
            LEFT JOIN projects p ON p.id = i.project_id
            LEFT JOIN teams t ON t.id = p.team_id
            LEFT JOIN schools s ON s.id = t.school_id
            LEFT JOIN templates tp ON tp.id = i.template_id
            WHERE i.id IN ({_placeholders(ids)})
            """,
            ids,
        ).fetchall()

        contexts: Dict[str, ItemContext] = {}
        for row in rows:
            school = None
            if row["school_id"]:
                school = SchoolContext(
                    id=row["school_id"],
                    name=row["school_name"],
                    abbreviation=row["school_abbreviation"],
                    primary_color=row["school_primary_color"],
                    secondary_color=row["school_secondary_color"],
                )
            team = None
            if row["team_id"]:
                team = TeamContext(id=row["team_id"], name=row["team_name"], sport=row["team_sport"], school=school)
            project = None
            if row["project_id"]:
                project = ProjectContext(id=row["project_id"], name=row["project_name"], team=team)
            template = None
            if row["template_id"]:
                template = TemplateContext(
                    id=row["template_id"],
                    name=row["template_name"],
                    category=row["template_category"],
                    svg_path=row["template_svg_path"],
                    svg_is_public=bool(row["template_svg_is_public"]),
                )
            contexts[row["item_id"]] = ItemContext(
                id=row["item_id"], name=row["item_name"], project=project, template=template
            )
        return contexts

    # ------------------------------------------------------------------
    # Design variants
    # ------------------------------------------------------------------

    def insert_variant(self, conn: sqlite3.Connection, variant: DesignVariant) -> None:
        preview = variant.preview_artifact
        final = variant.final_artifact
        conn.execute(
            """
            INSERT INTO design_variants (
                id, item_id, variant_name, configuration, status,
                preview_path, preview_is_public, final_path, final_is_public,
                error_message, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                variant.id,
                variant.item_id,
                variant.variant_name,
                json.dumps(variant.configuration),
                variant.status.value,
                preview.path if preview else None,
                int(preview.is_public) if preview else 0,
                final.path if final else None,
                int(final.is_public) if final else 0,
                variant.error_message,
                serialize_datetime(variant.created_at),
            ),
        )

    def get_variant(self, conn: sqlite3.Connection, variant_id: str) -> Optional[DesignVariant]:
        row = conn.execute("SELECT * FROM design_variants WHERE id = ?", (variant_id,)).fetchone()
        return self._row_to_variant(row) if row else None

    def get_variants(self, conn: sqlite3.Connection, variant_ids: Sequence[str]) -> List[DesignVariant]:
        if not variant_ids:
            return []
        rows = conn.execute(
            f"SELECT * FROM design_variants WHERE id IN ({_placeholders(variant_ids)})",
            list(variant_ids),
        ).fetchall()
        return [self._row_to_variant(row) for row in rows]

    def list_variants(self, conn: sqlite3.Connection, item_id: str) -> List[DesignVariant]:
        rows = conn.execute(
            "SELECT * FROM design_variants WHERE item_id = ? ORDER BY created_at ASC, rowid ASC",
            (item_id,),
        ).fetchall()
        return [self._row_to_variant(row) for row in rows]

    def update_variant(self, conn: sqlite3.Connection, variant_id: str, **fields: Any) -> None:
        """
        Set columns on one variant row.

        Args:
            conn: Open transaction connection
            variant_id: The variant to update
            **fields: Column values; ``configuration`` is JSON-encoded here
        """
        if not fields:
            return
        unknown = set(fields) - _VARIANT_COLUMNS
        if unknown:
            raise ValueError(f"Not a variant column: {', '.join(sorted(unknown))}")

        if "configuration" in fields:
            fields["configuration"] = json.dumps(fields["configuration"])

        updates = [f"{name} = ?" for name in fields]
        values = [value.value if hasattr(value, "value") else value for value in fields.values()]
        values.append(variant_id)
        conn.execute(f"UPDATE design_variants SET {', '.join(updates)} WHERE id = ?", values)

    def delete_variants(self, conn: sqlite3.Connection, variant_ids: Sequence[str]) -> int:
        if not variant_ids:
            return 0
        ids = list(variant_ids)
        # Jobs cascade through the foreign key; deleted explicitly so the count
        # does not depend on the foreign_keys pragma
        conn.execute(f"DELETE FROM bridge_jobs WHERE variant_id IN ({_placeholders(ids)})", ids)
        cursor = conn.execute(f"DELETE FROM design_variants WHERE id IN ({_placeholders(ids)})", ids)
        return cursor.rowcount

    def _row_to_variant(self, row: sqlite3.Row) -> DesignVariant:
        return DesignVariant(
            id=row["id"],
            item_id=row["item_id"],
            variant_name=row["variant_name"],
            configuration=json.loads(row["configuration"]) if row["configuration"] is not None else None,
            status=row["status"],
            preview_artifact=_artifact(row["preview_path"], row["preview_is_public"]),
            final_artifact=_artifact(row["final_path"], row["final_is_public"]),
            error_message=row["error_message"],
            created_at=_deserialize_datetime(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Bridge jobs
    # ------------------------------------------------------------------

    def insert_job(self, conn: sqlite3.Connection, job: BridgeJob) -> bool:
        """
        Insert a job unless the variant already has an active one.

        Returns:
            False when the active-job unique index rejected the row
        """
        cursor = conn.execute(
            """
            INSERT INTO bridge_jobs (id, variant_id, status, priority, error_message, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (
                job.id,
                job.variant_id,
                job.status.value,
                job.priority,
                job.error_message,
                serialize_datetime(job.created_at),
            ),
        )
        return cursor.rowcount > 0

    def get_job(self, conn: sqlite3.Connection, job_id: str) -> Optional[BridgeJob]:
        row = conn.execute("SELECT * FROM bridge_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def get_jobs(self, conn: sqlite3.Connection, job_ids: Sequence[str]) -> List[BridgeJob]:
        """Fetch jobs by id, returned in dispatch order."""
        if not job_ids:
            return []
        rows = conn.execute(
            f"SELECT * FROM bridge_jobs WHERE id IN ({_placeholders(job_ids)}) {DISPATCH_ORDER}",
            list(job_ids),
        ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def jobs_for_variants(
        self,
        conn: sqlite3.Connection,
        variant_ids: Sequence[str],
        statuses: Optional[Sequence[str]] = None,
    ) -> List[BridgeJob]:
        if not variant_ids:
            return []
        query = f"SELECT * FROM bridge_jobs WHERE variant_id IN ({_placeholders(variant_ids)})"
        params: List[Any] = list(variant_ids)
        if statuses:
            query += f" AND status IN ({_placeholders(statuses)})"
            params.extend(str(getattr(status, "value", status)) for status in statuses)
        rows = conn.execute(query + " ORDER BY created_at ASC, rowid ASC", params).fetchall()
        return [self._row_to_job(row) for row in rows]

    def latest_job_id(self, conn: sqlite3.Connection, variant_id: str) -> Optional[str]:
        row = conn.execute(
            "SELECT id FROM bridge_jobs WHERE variant_id = ? ORDER BY created_at DESC, rowid DESC LIMIT 1",
            (variant_id,),
        ).fetchone()
        return row["id"] if row else None

    def select_job_ids(self, conn: sqlite3.Connection, status: str, limit: int) -> List[str]:
        rows = conn.execute(
            f"SELECT id FROM bridge_jobs WHERE status = ? {DISPATCH_ORDER} LIMIT ?",
            (status, limit),
        ).fetchall()
        return [row["id"] for row in rows]

    def stale_job_ids(self, conn: sqlite3.Connection, started_before: datetime) -> List[str]:
        rows = conn.execute(
            "SELECT id FROM bridge_jobs WHERE status = 'processing' AND started_at < ? ORDER BY started_at ASC",
            (serialize_datetime(started_before),),
        ).fetchall()
        return [row["id"] for row in rows]

    def update_job(self, conn: sqlite3.Connection, job_id: str, **fields: Any) -> None:
        if not fields:
            return
        unknown = set(fields) - _JOB_COLUMNS
        if unknown:
            raise ValueError(f"Not a job column: {', '.join(sorted(unknown))}")

        updates = [f"{name} = ?" for name in fields]
        values: List[Any] = []
        for value in fields.values():
            if isinstance(value, datetime):
                value = serialize_datetime(value)
            elif hasattr(value, "value"):
                value = value.value
            values.append(value)
        values.append(job_id)
        conn.execute(f"UPDATE bridge_jobs SET {', '.join(updates)} WHERE id = ?", values)

    def claim_jobs(self, conn: sqlite3.Connection, job_ids: Sequence[str], started_at: datetime) -> None:
        """Move pending jobs to processing, keeping any startedAt already written."""
        if not job_ids:
            return
        conn.execute(
            f"""
            UPDATE bridge_jobs
            SET status = 'processing', started_at = COALESCE(started_at, ?)
            WHERE status = 'pending' AND id IN ({_placeholders(job_ids)})
            """,
            [serialize_datetime(started_at), *job_ids],
        )

    def delete_job(self, conn: sqlite3.Connection, job_id: str) -> bool:
        cursor = conn.execute("DELETE FROM bridge_jobs WHERE id = ?", (job_id,))
        return cursor.rowcount > 0

    def _row_to_job(self, row: sqlite3.Row) -> BridgeJob:
        return BridgeJob(
            id=row["id"],
            variant_id=row["variant_id"],
            status=row["status"],
            priority=row["priority"],
            error_message=row["error_message"],
            artifact=_artifact(row["artifact_path"], row["artifact_is_public"]),
            created_at=_deserialize_datetime(row["created_at"]),
            started_at=_deserialize_datetime(row["started_at"]),
            completed_at=_deserialize_datetime(row["completed_at"]),
        )

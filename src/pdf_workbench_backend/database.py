"""
SQLite persistence for stored file metadata and processing tasks.

This module provides the embedded-database implementations of the file
record repository and the task store. They are drop-in replacements for the
in-memory backends, selected with ``database.backend: sqlite``.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Sequence

from .file_store import FileRecordRepository, StoredFile
from .models import TaskKind, TaskStatus
from .task_store import OutputFile, ProcessingTask, TaskStore, check_transition
from .utils import utcnow


# Default database path
DEFAULT_DB_PATH = Path("data/pdf_workbench.db")


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: datetime) -> str:
    """Serialize datetime to ISO format string."""
    return dt.isoformat()


def _deserialize_datetime(s: str) -> datetime:
    """Deserialize ISO format string to datetime."""
    return datetime.fromisoformat(s)


class SqliteDatabase:
    """
    Shared connection handling and schema for the SQLite backends.

    Thread-safe: every operation opens its own connection; SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Run statements inside a write transaction that is taken up front."""
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS stored_files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    storage_name TEXT NOT NULL UNIQUE,
                    display_name TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    content_type TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    location TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS processing_tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    input_file_ids TEXT NOT NULL,
                    output_files TEXT NOT NULL,
                    error TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_processing_tasks_status
                ON processing_tasks(status)
            """)


class SqliteFileRecords(FileRecordRepository):
    """Stored file metadata in the ``stored_files`` table."""

    def __init__(self, database: SqliteDatabase):
        self.database = database

    def insert(self, storage_name, display_name, size_bytes, content_type, created_at, location) -> StoredFile:
        with self.database.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO stored_files (
                    storage_name, display_name, size_bytes,
                    content_type, created_at, location
                ) VALUES (?, ?, ?, ?, ?, ?)
            """, (
                storage_name,
                display_name,
                size_bytes,
                content_type,
                _serialize_datetime(created_at),
                location,
            ))
            file_id = cursor.lastrowid

        return StoredFile(
            id=file_id,
            storage_name=storage_name,
            display_name=display_name,
            size_bytes=size_bytes,
            content_type=content_type,
            created_at=created_at,
            location=location,
        )

    def get(self, file_id: int) -> Optional[StoredFile]:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM stored_files WHERE id = ?", (file_id,)
            ).fetchone()

        return self._row_to_file(row) if row else None

    def list(self) -> list[StoredFile]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM stored_files ORDER BY id"
            ).fetchall()

        return [self._row_to_file(row) for row in rows]

    def remove(self, file_id: int) -> bool:
        with self.database.transaction() as conn:
            cursor = conn.execute("DELETE FROM stored_files WHERE id = ?", (file_id,))
            return cursor.rowcount > 0

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> StoredFile:
        """Convert a database row to a StoredFile."""
        return StoredFile(
            id=row["id"],
            storage_name=row["storage_name"],
            display_name=row["display_name"],
            size_bytes=row["size_bytes"],
            content_type=row["content_type"],
            created_at=_deserialize_datetime(row["created_at"]),
            location=row["location"],
        )


class SqliteTaskStore(TaskStore):
    """Processing tasks in the ``processing_tasks`` table."""

    def __init__(self, database: SqliteDatabase):
        self.database = database

    def create(self, kind: TaskKind, input_file_ids: Sequence[int]) -> ProcessingTask:
        if not input_file_ids:
            raise ValueError("A task needs at least one input file")
        now = utcnow()
        with self.database.transaction() as conn:
            cursor = conn.execute("""
                INSERT INTO processing_tasks (
                    kind, status, created_at, updated_at,
                    input_file_ids, output_files, error
                ) VALUES (?, ?, ?, ?, ?, ?, NULL)
            """, (
                kind.value,
                TaskStatus.PENDING.value,
                _serialize_datetime(now),
                _serialize_datetime(now),
                json.dumps(list(input_file_ids)),
                json.dumps([]),
            ))
            task_id = cursor.lastrowid

        return ProcessingTask(
            id=task_id,
            kind=kind,
            status=TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
            input_file_ids=tuple(input_file_ids),
        )

    def get(self, task_id: int) -> Optional[ProcessingTask]:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM processing_tasks WHERE id = ?", (task_id,)
            ).fetchone()

        return self._row_to_task(row) if row else None

    def list(self) -> list[ProcessingTask]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM processing_tasks ORDER BY id"
            ).fetchall()

        return [self._row_to_task(row) for row in rows]

    def update(
        self,
        task_id: int,
        *,
        status: Optional[TaskStatus] = None,
        output_files: Optional[Iterable[OutputFile]] = None,
        error: Optional[str] = None,
    ) -> Optional[ProcessingTask]:
        # read-check-write in one immediate transaction so concurrent
        # updates cannot interleave between the transition check and the write
        with self.database.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM processing_tasks WHERE id = ?", (task_id,)
            ).fetchone()
            if not row:
                return None

            updates = ["updated_at = ?"]
            values: list = [_serialize_datetime(utcnow())]

            if status is not None:
                check_transition(task_id, TaskStatus(row["status"]), status)
                updates.append("status = ?")
                values.append(status.value)

            if output_files is not None:
                updates.append("output_files = ?")
                values.append(json.dumps([
                    {"id": output.id, "filename": output.filename, "type": output.content_type}
                    for output in output_files
                ]))

            if error is not None:
                updates.append("error = ?")
                values.append(error)

            values.append(task_id)
            conn.execute(
                f"UPDATE processing_tasks SET {', '.join(updates)} WHERE id = ?",
                values
            )
            row = conn.execute(
                "SELECT * FROM processing_tasks WHERE id = ?", (task_id,)
            ).fetchone()

        return self._row_to_task(row)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> ProcessingTask:
        """Convert a database row to a ProcessingTask snapshot."""
        return ProcessingTask(
            id=row["id"],
            kind=TaskKind(row["kind"]),
            status=TaskStatus(row["status"]),
            created_at=_deserialize_datetime(row["created_at"]),
            updated_at=_deserialize_datetime(row["updated_at"]),
            input_file_ids=tuple(json.loads(row["input_file_ids"])),
            output_files=tuple(
                OutputFile(id=item["id"], filename=item["filename"], content_type=item["type"])
                for item in json.loads(row["output_files"] or "[]")
            ),
            error=row["error"],
        )

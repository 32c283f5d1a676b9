"""SQLite-backed record store for projects, files and chat messages."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from .config import SCHEMA_VERSION
from .errors import StorageError
from .models import (
    FileCreate,
    FileRecord,
    MessageCreate,
    MessageRecord,
    Project,
    ProjectCreate,
    StoreStats,
)

logger = logging.getLogger(__name__)

# One script per schema version; entry N upgrades version N to N + 1.
_MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        files TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_projects_name ON projects(name);
    CREATE INDEX IF NOT EXISTS idx_projects_created ON projects(created_at);

    CREATE TABLE IF NOT EXISTS files (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        content TEXT NOT NULL,
        type TEXT NOT NULL,
        size INTEGER NOT NULL,
        project_id TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_files_project ON files(project_id);
    CREATE INDEX IF NOT EXISTS idx_files_name ON files(name);

    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        content TEXT NOT NULL,
        role TEXT NOT NULL,
        timestamp TEXT NOT NULL,
        project_id TEXT
    );

    CREATE INDEX IF NOT EXISTS idx_messages_project ON messages(project_id);
    CREATE INDEX IF NOT EXISTS idx_messages_timestamp ON messages(timestamp);
    """,
]


class ProjectStore:
    """Indexed store for projects, files and chat messages.

    Call ``init()`` once before use; every operation on an uninitialized or
    closed store raises StorageError. Each write runs in its own transaction.
    The connection is shared between threads, one statement batch at a time.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def init(self) -> None:
        if self.conn is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        except sqlite3.Error as e:
            raise StorageError(f"Failed to open store at {self.db_path}: {e}") from e
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            self._migrate(conn)
        except sqlite3.Error as e:
            conn.close()
            raise StorageError(f"Failed to open store at {self.db_path}: {e}") from e
        self.conn = conn

    def _migrate(self, conn: sqlite3.Connection):
        version = conn.execute("PRAGMA user_version").fetchone()[0]
        if version > SCHEMA_VERSION:
            conn.close()
            raise StorageError(
                f"Store schema version {version} is newer than supported {SCHEMA_VERSION}"
            )
        for target in range(version + 1, SCHEMA_VERSION + 1):
            logger.info("Migrating store schema to version %d", target)
            conn.executescript(_MIGRATIONS[target - 1])
            conn.execute(f"PRAGMA user_version = {target}")
            conn.commit()

    def close(self):
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    @property
    def schema_version(self) -> int:
        with self._read() as conn:
            return conn.execute("PRAGMA user_version").fetchone()[0]

    def _connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StorageError("Store is not initialized; call init() first")
        return self.conn

    @contextmanager
    def _transaction(self, action: str):
        conn = self._connection()
        with self._lock:
            try:
                with conn:
                    yield conn
            except sqlite3.Error as e:
                raise StorageError(f"{action} failed: {e}") from e

    @contextmanager
    def _read(self):
        conn = self._connection()
        with self._lock:
            try:
                yield conn
            except sqlite3.Error as e:
                raise StorageError(f"Read failed: {e}") from e

    # -- projects --------------------------------------------------------

    def create_project(self, project: ProjectCreate) -> Project:
        now = _now()
        record = Project(id=_new_id(), created_at=now, updated_at=now, **project.model_dump())
        with self._transaction("Project creation") as conn:
            conn.execute(
                """INSERT INTO projects (id, name, description, files, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (record.id, record.name, record.description, json.dumps(record.files),
                 now.isoformat(), now.isoformat()),
            )
        return record

    def get_projects(self) -> list[Project]:
        with self._read() as conn:
            rows = conn.execute("SELECT * FROM projects ORDER BY created_at").fetchall()
        return [
            Project(
                id=r["id"],
                name=r["name"],
                description=r["description"],
                files=json.loads(r["files"]),
                created_at=r["created_at"],
                updated_at=r["updated_at"],
            )
            for r in rows
        ]

    # -- files -----------------------------------------------------------

    def save_file(self, file: FileCreate) -> FileRecord:
        now = _now()
        record = FileRecord(id=_new_id(), created_at=now, updated_at=now, **file.model_dump())
        with self._transaction("File save") as conn:
            conn.execute(
                """INSERT INTO files (id, name, content, type, size, project_id,
                   created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (record.id, record.name, record.content, record.type, record.size,
                 record.project_id, now.isoformat(), now.isoformat()),
            )
        return record

    def get_files_by_project(self, project_id: str) -> list[FileRecord]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM files WHERE project_id = ? ORDER BY created_at",
                (project_id,),
            ).fetchall()
        return [FileRecord.model_validate(dict(r)) for r in rows]

    # -- messages --------------------------------------------------------

    def save_chat_message(self, message: MessageCreate) -> MessageRecord:
        data = message.model_dump()
        ts = data["timestamp"] or _now()
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        # Stored as UTC text so ORDER BY timestamp is chronological
        data["timestamp"] = ts.astimezone(timezone.utc)
        record = MessageRecord(id=_new_id(), **data)
        with self._transaction("Message save") as conn:
            conn.execute(
                """INSERT INTO messages (id, content, role, timestamp, project_id)
                   VALUES (?, ?, ?, ?, ?)""",
                (record.id, record.content, record.role, record.timestamp.isoformat(),
                 record.project_id),
            )
        return record

    def get_chat_messages(self, project_id: str | None = None) -> list[MessageRecord]:
        """All messages, or only a project's, oldest first."""
        with self._read() as conn:
            if project_id:
                rows = conn.execute(
                    "SELECT * FROM messages WHERE project_id = ? ORDER BY timestamp",
                    (project_id,),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM messages ORDER BY timestamp").fetchall()
        return [MessageRecord.model_validate(dict(r)) for r in rows]

    # -- stats -----------------------------------------------------------

    def get_stats(self) -> StoreStats:
        """Dashboard counts. The three reads are not one snapshot."""
        with self._read() as conn:
            project_count = conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0]
        with self._read() as conn:
            # Only files owned by an existing project count
            file_count = conn.execute(
                """SELECT COUNT(*) FROM files f
                   JOIN projects p ON f.project_id = p.id"""
            ).fetchone()[0]
        with self._read() as conn:
            msg_count = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

        return StoreStats(
            total_projects=project_count,
            total_files=file_count,
            total_messages=msg_count,
        )


def _new_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)

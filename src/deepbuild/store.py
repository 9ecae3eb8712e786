from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterator, Protocol

from pydantic import ValidationError

from .errors import NotFoundError
from .models import FileStatus, FileTask, FileUpdate, Project, ProjectBrief, ProjectPhase
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


class ProjectStore(Protocol):
    """Durable keyed storage for projects and their file tasks."""

    def create_project(self, name: str, brief: ProjectBrief) -> str: ...

    def get_project(self, project_id: str) -> Project | None: ...

    def list_projects(self) -> list[Project]: ...

    def update_file(self, project_id: str, path: str, update: FileUpdate) -> FileTask: ...

    def update_project(
        self,
        project_id: str,
        *,
        phase: ProjectPhase | None = None,
        answers: dict[str, str] | None = None,
    ) -> None: ...

    def delete_project(self, project_id: str) -> None: ...

    def close(self) -> None: ...


def new_project_id() -> str:
    return uuid.uuid4().hex


def build_file_tasks(project_id: str, brief: ProjectBrief) -> list[FileTask]:
    """Derive one pending FileTask per brief file-list entry, in brief order."""
    return [
        FileTask(project_id=project_id, path=entry.path, purpose=entry.purpose)
        for entry in brief.file_list
    ]


# ---------------------------------------------------------------------------
# SQLite backend
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS projects (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    brief TEXT NOT NULL,
    phase TEXT NOT NULL,
    answers TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_projects_created_at ON projects (created_at);
CREATE TABLE IF NOT EXISTS files (
    project_id TEXT NOT NULL REFERENCES projects (id) ON DELETE CASCADE,
    path TEXT NOT NULL,
    position INTEGER NOT NULL,
    purpose TEXT NOT NULL DEFAULT '',
    content TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL,
    error TEXT,
    PRIMARY KEY (project_id, path)
);
"""


class SqliteProjectStore:
    """SQLite store with one table per entity kind.

    Project creation and deletion each run as a single transaction over both
    tables. File updates touch exactly one ``files`` row, so updates to
    different files of one project never overwrite each other. All access goes
    through one connection guarded by a re-entrant lock.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        if str(self.path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(_SCHEMA)

    def __enter__(self) -> "SqliteProjectStore":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self, *, write: bool = False) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_file(row: sqlite3.Row) -> FileTask:
        return FileTask(
            project_id=row["project_id"],
            path=row["path"],
            purpose=row["purpose"],
            content=row["content"],
            status=FileStatus(row["status"]),
            error=row["error"],
        )

    @staticmethod
    def _row_to_project(row: sqlite3.Row, files: list[FileTask]) -> Project:
        try:
            brief = ProjectBrief.model_validate_json(row["brief"])
        except ValidationError as exc:
            raise ValueError(f"brief of project {row['id']} failed validation: {exc}") from exc
        return Project(
            id=row["id"],
            name=row["name"],
            created_at=datetime.fromisoformat(row["created_at"]),
            brief=brief,
            files=files,
            phase=ProjectPhase(row["phase"]),
            answers=json.loads(row["answers"]),
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def create_project(self, name: str, brief: ProjectBrief) -> str:
        """Persist a project and one pending file row per brief file-list entry.

        Both tables are written in one transaction; nothing is stored if any
        insert fails.

        Returns:
            The generated project id.
        """
        project_id = new_project_id()
        tasks = build_file_tasks(project_id, brief)
        with self._transaction(write=True) as conn:
            conn.execute(
                "INSERT INTO projects (id, name, created_at, brief, phase, answers) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    project_id,
                    name,
                    datetime.now(UTC).isoformat(timespec="microseconds"),
                    brief.model_dump_json(),
                    ProjectPhase.AWAITING_ANSWERS.value,
                    "{}",
                ),
            )
            conn.executemany(
                "INSERT INTO files (project_id, path, position, purpose, content, status, error) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                [
                    (project_id, task.path, position, task.purpose, task.content, task.status.value, task.error)
                    for position, task in enumerate(tasks)
                ],
            )
        logger.info("Created project %s (%s) with %d files", project_id, name, len(tasks))
        return project_id

    def get_project(self, project_id: str) -> Project | None:
        """Return the project joined with its files in brief order, or None."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
            if row is None:
                return None
            file_rows = conn.execute(
                "SELECT * FROM files WHERE project_id = ? ORDER BY position", (project_id,)
            ).fetchall()
        return self._row_to_project(row, [self._row_to_file(file_row) for file_row in file_rows])

    def list_projects(self) -> list[Project]:
        """Return all projects, newest first.

        Never raises: a read failure is logged and reported as an empty list.
        """
        try:
            with self._transaction() as conn:
                rows = conn.execute("SELECT * FROM projects ORDER BY created_at DESC, rowid DESC").fetchall()
                file_rows = conn.execute("SELECT * FROM files ORDER BY project_id, position").fetchall()
            files_by_project: dict[str, list[FileTask]] = {}
            for file_row in file_rows:
                files_by_project.setdefault(file_row["project_id"], []).append(self._row_to_file(file_row))
            return [self._row_to_project(row, files_by_project.get(row["id"], [])) for row in rows]
        except (sqlite3.Error, ValueError) as exc:
            logger.warning("Failed to list projects from %s: %s", self.path, exc)
            return []

    def update_file(self, project_id: str, path: str, update: FileUpdate) -> FileTask:
        """Apply a partial update to one file row.

        Raises:
            NotFoundError: If the project has no file at ``path``.
        """
        with self._transaction(write=True) as conn:
            row = conn.execute(
                "SELECT * FROM files WHERE project_id = ? AND path = ?", (project_id, path)
            ).fetchone()
            if row is None:
                raise NotFoundError(f"File not found: {path} in project {project_id}")
            updated = update.apply(self._row_to_file(row))
            conn.execute(
                "UPDATE files SET content = ?, status = ?, error = ? WHERE project_id = ? AND path = ?",
                (updated.content, updated.status.value, updated.error, project_id, path),
            )
        return updated

    def update_project(
        self,
        project_id: str,
        *,
        phase: ProjectPhase | None = None,
        answers: dict[str, str] | None = None,
    ) -> None:
        """Update the workflow fields of one project row.

        Raises:
            NotFoundError: If the project does not exist.
        """
        with self._transaction(write=True) as conn:
            cursor = conn.execute(
                "UPDATE projects SET phase = COALESCE(?, phase), answers = COALESCE(?, answers) WHERE id = ?",
                (
                    phase.value if phase is not None else None,
                    json.dumps(answers) if answers is not None else None,
                    project_id,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Project not found: {project_id}")

    def delete_project(self, project_id: str) -> None:
        """Delete a project and every file row it owns in one transaction."""
        with self._transaction(write=True) as conn:
            conn.execute("DELETE FROM files WHERE project_id = ?", (project_id,))
            conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        logger.info("Deleted project %s", project_id)


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------

class InMemoryProjectStore:
    """Per-process store with the same semantics as the SQLite backend.

    Snapshots returned to callers are deep copies.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._projects: dict[str, Project] = {}
        self._files: dict[tuple[str, str], FileTask] = {}
        self._sequence: dict[str, int] = {}
        self._counter = 0

    def close(self) -> None:
        return None

    def create_project(self, name: str, brief: ProjectBrief) -> str:
        project_id = new_project_id()
        tasks = build_file_tasks(project_id, brief)
        with self._lock:
            self._counter += 1
            self._projects[project_id] = Project(
                id=project_id,
                name=name,
                created_at=datetime.now(UTC),
                brief=brief,
                phase=ProjectPhase.AWAITING_ANSWERS,
            )
            self._sequence[project_id] = self._counter
            for task in tasks:
                self._files[(project_id, task.path)] = task
        logger.info("Created project %s (%s) with %d files", project_id, name, len(tasks))
        return project_id

    def _snapshot(self, project_id: str) -> Project:
        record = self._projects[project_id]
        order = {entry.path: index for index, entry in enumerate(record.brief.file_list)}
        files = sorted(
            (task for (owner, _), task in self._files.items() if owner == project_id),
            key=lambda task: order.get(task.path, len(order)),
        )
        return record.model_copy(update={"files": [task.model_copy() for task in files]}, deep=True)

    def get_project(self, project_id: str) -> Project | None:
        with self._lock:
            if project_id not in self._projects:
                return None
            return self._snapshot(project_id)

    def list_projects(self) -> list[Project]:
        with self._lock:
            ordered = sorted(
                self._projects.values(),
                key=lambda project: (project.created_at, self._sequence[project.id]),
                reverse=True,
            )
            return [self._snapshot(project.id) for project in ordered]

    def update_file(self, project_id: str, path: str, update: FileUpdate) -> FileTask:
        with self._lock:
            current = self._files.get((project_id, path))
            if current is None:
                raise NotFoundError(f"File not found: {path} in project {project_id}")
            updated = update.apply(current)
            self._files[(project_id, path)] = updated
            return updated.model_copy()

    def update_project(
        self,
        project_id: str,
        *,
        phase: ProjectPhase | None = None,
        answers: dict[str, str] | None = None,
    ) -> None:
        with self._lock:
            record = self._projects.get(project_id)
            if record is None:
                raise NotFoundError(f"Project not found: {project_id}")
            changes: dict[str, object] = {}
            if phase is not None:
                changes["phase"] = phase
            if answers is not None:
                changes["answers"] = dict(answers)
            self._projects[project_id] = record.model_copy(update=changes)

    def delete_project(self, project_id: str) -> None:
        with self._lock:
            self._projects.pop(project_id, None)
            self._sequence.pop(project_id, None)
            for key in [key for key in self._files if key[0] == project_id]:
                del self._files[key]
        logger.info("Deleted project %s", project_id)


def open_store(settings: RuntimeSettings, *, repo_root: Path | None = None) -> ProjectStore:
    """Build the store backend selected by ``settings.store_backend``."""
    if settings.store_backend == "memory":
        return InMemoryProjectStore()
    root = repo_root if repo_root is not None else Path.cwd()
    return SqliteProjectStore(settings.store_file(root))

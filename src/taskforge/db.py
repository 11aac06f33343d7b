"""SQLite store for tasks, logs, reviews, leases and steps."""

from __future__ import annotations

import contextlib
import sqlite3
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TypedDict, cast

from taskforge.errors import (
    AlreadyLeased,
    ConstraintViolation,
    InvalidTransition,
    NotFound,
)
from taskforge.task_types import task_type

VALID_TASK_STATUSES = {"todo", "in-progress", "in-review", "completed"}
TASK_TERMINAL_STATUS = "completed"
VALID_REVIEW_STATUSES = {"pending", "approved", "rejected"}
REVIEW_DECISION_STATUSES = {"approved", "rejected"}

TASK_SORT_COLUMNS = {"id", "created_at", "updated_at", "title", "status"}
DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100

_STEP_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _utcnow() -> str:
    """ISO 8601 UTC timestamp matching SQLite strftime format."""
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def _utcnow_precise() -> str:
    """Millisecond timestamp for step start/end (durations are in ms)."""
    return datetime.now(UTC).strftime(_STEP_TIME_FORMAT)[:-4] + "Z"


def _parse_step_time(value: str) -> datetime:
    return datetime.strptime(value, _STEP_TIME_FORMAT).replace(tzinfo=UTC)


SCHEMA_VERSION = 1

SCHEMA = """\
CREATE TABLE IF NOT EXISTS tasks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    acceptance_criteria TEXT NOT NULL DEFAULT '',
    upstream_dependency_id INTEGER REFERENCES tasks(id) ON DELETE SET NULL,
    review_required INTEGER NOT NULL DEFAULT 0,
    parent_id INTEGER REFERENCES tasks(id) ON DELETE CASCADE,
    status TEXT NOT NULL DEFAULT 'todo'
        CHECK (status IN ('todo', 'in-progress', 'in-review', 'completed')),
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS task_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    message TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS task_reviews (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    message TEXT NOT NULL,
    attachment TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'approved', 'rejected')),
    feedback TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS steps (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    active INTEGER NOT NULL DEFAULT 1,
    rolled_back INTEGER NOT NULL DEFAULT 0,
    parent_step_id INTEGER REFERENCES steps(id),
    commit_sha_before TEXT,
    commit_sha_after TEXT,
    agent_config_name TEXT,
    start_time TEXT NOT NULL,
    end_time TEXT,
    duration_ms INTEGER,
    prompt_tokens INTEGER NOT NULL DEFAULT 0,
    completion_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    cost REAL NOT NULL DEFAULT 0,
    exit_code INTEGER,
    error TEXT,
    log_path TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE TABLE IF NOT EXISTS task_leases (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    task_id INTEGER NOT NULL REFERENCES tasks(id) ON DELETE CASCADE,
    step_id INTEGER NOT NULL REFERENCES steps(id) ON DELETE CASCADE,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    released_at TEXT
);

-- One active lease per task; enforced by the store, not by callers.
CREATE UNIQUE INDEX IF NOT EXISTS idx_task_leases_active
    ON task_leases(task_id) WHERE released_at IS NULL;
"""


class TaskRow(TypedDict):
    id: int
    title: str
    description: str
    acceptance_criteria: str
    upstream_dependency_id: int | None
    review_required: int
    parent_id: int | None
    status: str
    created_at: str
    updated_at: str


class TaskLogRow(TypedDict):
    id: int
    task_id: int
    message: str
    created_at: str


class ReviewRow(TypedDict):
    id: int
    task_id: int
    message: str
    attachment: str | None
    status: str
    feedback: str | None
    created_at: str
    updated_at: str


class LeaseRow(TypedDict):
    id: int
    task_id: int
    step_id: int
    created_at: str
    released_at: str | None


class StepRow(TypedDict):
    id: int
    project_id: str
    active: int
    rolled_back: int
    parent_step_id: int | None
    commit_sha_before: str | None
    commit_sha_after: str | None
    agent_config_name: str | None
    start_time: str
    end_time: str | None
    duration_ms: int | None
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    exit_code: int | None
    error: str | None
    log_path: str | None
    created_at: str


def get_connection(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.execute("PRAGMA busy_timeout=10000")
    conn.create_function("task_type", 1, task_type, deterministic=True)
    conn.executescript(SCHEMA)

    current_version = conn.execute("PRAGMA user_version").fetchone()[0]
    if current_version < SCHEMA_VERSION:
        _create_indexes(conn)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    return conn


@contextlib.contextmanager
def connect(db_path: Path):
    """Context manager wrapper for get_connection().

    Usage:
        with connect(config.db_path) as conn:
            do_stuff(conn)
    # conn.close() is guaranteed even on exceptions.
    """
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


def _create_indexes(conn: sqlite3.Connection) -> None:
    """Create non-PK indexes for common query patterns. Idempotent."""
    conn.executescript("""
        CREATE INDEX IF NOT EXISTS idx_tasks_parent_id ON tasks(parent_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_upstream ON tasks(upstream_dependency_id);
        CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);
        CREATE INDEX IF NOT EXISTS idx_task_logs_task_id ON task_logs(task_id);
        CREATE INDEX IF NOT EXISTS idx_task_reviews_task_status
            ON task_reviews(task_id, status);
        CREATE INDEX IF NOT EXISTS idx_task_leases_step
            ON task_leases(step_id, released_at);
        CREATE INDEX IF NOT EXISTS idx_steps_project ON steps(project_id, rolled_back);
    """)


def _require_task(conn: sqlite3.Connection, task_id: int) -> sqlite3.Row:
    row = conn.execute("SELECT id, status FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        raise NotFound(f"Task {task_id} not found")
    return row


# -- tasks --


def create_task(
    conn: sqlite3.Connection,
    *,
    title: str,
    description: str = "",
    acceptance_criteria: str = "",
    upstream_dependency_id: int | None = None,
    review_required: bool = False,
    parent_id: int | None = None,
) -> int:
    """Insert a task in ``todo`` status and return its ID.

    A dangling parent or dependency reference is rejected by the foreign keys
    and surfaces as ConstraintViolation.
    """
    try:
        cursor = conn.execute(
            "INSERT INTO tasks "
            "(title, description, acceptance_criteria, upstream_dependency_id, "
            "review_required, parent_id) VALUES (?, ?, ?, ?, ?, ?)",
            (
                title,
                description,
                acceptance_criteria,
                upstream_dependency_id,
                int(review_required),
                parent_id,
            ),
        )
    except sqlite3.IntegrityError as exc:
        conn.rollback()
        raise ConstraintViolation(f"Cannot create task '{title}': {exc}") from None
    conn.commit()
    return cast(int, cursor.lastrowid)


def get_task(conn: sqlite3.Connection, task_id: int) -> TaskRow:
    row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        raise NotFound(f"Task {task_id} not found")
    return cast(TaskRow, dict(row))


_UNSET = object()


def update_task(
    conn: sqlite3.Connection,
    task_id: int,
    *,
    title: str | None = None,
    description: str | None = None,
    acceptance_criteria: str | None = None,
    review_required: bool | None = None,
    upstream_dependency_id: int | None | object = _UNSET,
    parent_id: int | None | object = _UNSET,
) -> TaskRow:
    """Update task content fields. Status changes go through update_task_status().

    ``upstream_dependency_id`` and ``parent_id`` accept ``None`` to clear them;
    omit them to leave them unchanged.
    """
    _require_task(conn, task_id)
    assignments: list[str] = []
    params: list[object] = []
    for column, value in (
        ("title", title),
        ("description", description),
        ("acceptance_criteria", acceptance_criteria),
    ):
        if value is not None:
            assignments.append(f"{column} = ?")
            params.append(value)
    if review_required is not None:
        assignments.append("review_required = ?")
        params.append(int(review_required))
    if upstream_dependency_id is not _UNSET:
        if upstream_dependency_id == task_id:
            raise ValueError(f"Task {task_id} cannot depend on itself")
        assignments.append("upstream_dependency_id = ?")
        params.append(upstream_dependency_id)
    if parent_id is not _UNSET:
        if parent_id == task_id:
            raise ValueError(f"Task {task_id} cannot be its own parent")
        assignments.append("parent_id = ?")
        params.append(parent_id)

    if assignments:
        assignments.append("updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now')")
        try:
            conn.execute(
                f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?",
                (*params, task_id),
            )
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConstraintViolation(f"Cannot update task {task_id}: {exc}") from None
        conn.commit()
    return get_task(conn, task_id)


def delete_task(conn: sqlite3.Connection, task_id: int) -> None:
    """Delete a task with all descendants, logs, reviews and leases (cascade)."""
    _require_task(conn, task_id)
    conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
    conn.commit()


def list_tasks(
    conn: sqlite3.Connection,
    *,
    statuses: Sequence[str] | None = None,
    task_type_filter: str | None = None,
    parent_id: int | None = None,
    search: str | None = None,
    sort_by: str = "id",
    sort_order: str = "asc",
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
) -> tuple[list[TaskRow], int]:
    """Return one page of tasks plus the total number of matches.

    Filters combine with AND; ``statuses`` matches any of the listed values.
    Pages are 1-indexed and ``limit`` is clamped to ``MAX_PAGE_LIMIT``.
    """
    if sort_by not in TASK_SORT_COLUMNS:
        raise ValueError(f"Invalid sort column '{sort_by}'. Must be one of: {TASK_SORT_COLUMNS}")
    order = sort_order.lower()
    if order not in ("asc", "desc"):
        raise ValueError(f"Invalid sort order '{sort_order}'. Must be 'asc' or 'desc'")
    page = max(1, page)
    limit = min(max(1, limit), MAX_PAGE_LIMIT)

    conditions: list[str] = []
    params: list[object] = []
    if statuses:
        invalid = set(statuses) - VALID_TASK_STATUSES
        if invalid:
            raise ValueError(
                f"Invalid task status {sorted(invalid)}. Must be one of: {VALID_TASK_STATUSES}"
            )
        placeholders = ",".join("?" for _ in statuses)
        conditions.append(f"status IN ({placeholders})")
        params.extend(statuses)
    if task_type_filter:
        conditions.append("task_type(title) = ?")
        params.append(task_type_filter)
    if parent_id is not None:
        conditions.append("parent_id = ?")
        params.append(parent_id)
    if search:
        conditions.append("(title LIKE ? OR description LIKE ?)")
        pattern = f"%{search}%"
        params.extend([pattern, pattern])

    where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
    total = conn.execute(f"SELECT COUNT(*) FROM tasks{where}", params).fetchone()[0]
    tie_break = "" if sort_by == "id" else f", id {order.upper()}"
    rows = conn.execute(
        f"SELECT * FROM tasks{where} ORDER BY {sort_by} {order.upper()}{tie_break} "
        "LIMIT ? OFFSET ?",
        (*params, limit, (page - 1) * limit),
    ).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows], total


def list_children(conn: sqlite3.Connection, task_id: int) -> list[TaskRow]:
    rows = conn.execute(
        "SELECT * FROM tasks WHERE parent_id = ? ORDER BY id", (task_id,)
    ).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def list_dependents(conn: sqlite3.Connection, task_id: int) -> list[TaskRow]:
    """Tasks whose upstream dependency is *task_id*."""
    rows = conn.execute(
        "SELECT * FROM tasks WHERE upstream_dependency_id = ? ORDER BY id", (task_id,)
    ).fetchall()
    return [cast(TaskRow, dict(row)) for row in rows]


def _completion_blockers(conn: sqlite3.Connection, task_id: int) -> tuple[int, int]:
    incomplete_children = conn.execute(
        "SELECT COUNT(*) FROM tasks WHERE parent_id = ? AND status != 'completed'",
        (task_id,),
    ).fetchone()[0]
    pending_reviews = conn.execute(
        "SELECT COUNT(*) FROM task_reviews WHERE task_id = ? AND status = 'pending'",
        (task_id,),
    ).fetchone()[0]
    return incomplete_children, pending_reviews


def update_task_status(conn: sqlite3.Connection, task_id: int, status: str) -> bool:
    """Move a task to *status*. Returns False when it already had that status.

    ``completed`` is terminal. Completion requires every child to be completed
    and no pending review; the check and the write are one UPDATE statement so
    a concurrent child/review change cannot slip between them.
    """
    if status not in VALID_TASK_STATUSES:
        raise ValueError(f"Invalid task status '{status}'. Must be one of: {VALID_TASK_STATUSES}")
    old_status = _require_task(conn, task_id)["status"]
    if old_status == status:
        return False
    if old_status == TASK_TERMINAL_STATUS:
        raise InvalidTransition(f"Task {task_id} is completed and cannot move to '{status}'")

    if status == TASK_TERMINAL_STATUS:
        cursor = conn.execute(
            "UPDATE tasks SET status = 'completed', "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
            "WHERE id = ? AND status = ? "
            "AND NOT EXISTS (SELECT 1 FROM tasks c WHERE c.parent_id = tasks.id "
            "AND c.status != 'completed') "
            "AND NOT EXISTS (SELECT 1 FROM task_reviews r WHERE r.task_id = tasks.id "
            "AND r.status = 'pending')",
            (task_id, old_status),
        )
    else:
        cursor = conn.execute(
            "UPDATE tasks SET status = ?, updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
            "WHERE id = ? AND status = ?",
            (status, task_id, old_status),
        )
    conn.commit()
    if cursor.rowcount > 0:
        return True

    if status == TASK_TERMINAL_STATUS:
        incomplete_children, pending_reviews = _completion_blockers(conn, task_id)
        reasons = []
        if incomplete_children:
            reasons.append(f"{incomplete_children} incomplete child task(s)")
        if pending_reviews:
            reasons.append(f"{pending_reviews} pending review(s)")
        if reasons:
            raise InvalidTransition(
                f"Task {task_id} cannot be completed: {' and '.join(reasons)}"
            )
    # Status changed underneath us between the read and the write.
    return False


def complete_task(conn: sqlite3.Connection, task_id: int) -> bool:
    return update_task_status(conn, task_id, TASK_TERMINAL_STATUS)


# -- logs --


def add_task_log(conn: sqlite3.Connection, task_id: int, message: str) -> TaskLogRow:
    _require_task(conn, task_id)
    cursor = conn.execute(
        "INSERT INTO task_logs (task_id, message) VALUES (?, ?)", (task_id, message)
    )
    conn.commit()
    row = conn.execute("SELECT * FROM task_logs WHERE id = ?", (cursor.lastrowid,)).fetchone()
    return cast(TaskLogRow, dict(row))


def list_task_logs(conn: sqlite3.Connection, task_id: int) -> list[TaskLogRow]:
    """Logs for a task, newest first."""
    _require_task(conn, task_id)
    rows = conn.execute(
        "SELECT * FROM task_logs WHERE task_id = ? ORDER BY created_at DESC, id DESC",
        (task_id,),
    ).fetchall()
    return [cast(TaskLogRow, dict(row)) for row in rows]


# -- reviews --


def create_review(
    conn: sqlite3.Connection,
    task_id: int,
    message: str,
    attachment: str | None = None,
) -> ReviewRow:
    """Insert a pending review and move its task to ``in-review`` atomically."""
    status = _require_task(conn, task_id)["status"]
    if status == TASK_TERMINAL_STATUS:
        raise InvalidTransition(f"Task {task_id} is completed; cannot request a review")
    try:
        cursor = conn.execute(
            "INSERT INTO task_reviews (task_id, message, attachment) VALUES (?, ?, ?)",
            (task_id, message, attachment),
        )
        updated = conn.execute(
            "UPDATE tasks SET status = 'in-review', "
            "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') "
            "WHERE id = ? AND status != 'completed'",
            (task_id,),
        )
        if updated.rowcount == 0:
            raise InvalidTransition(f"Task {task_id} was completed concurrently")
    except BaseException:
        conn.rollback()
        raise
    conn.commit()
    return get_review(conn, cast(int, cursor.lastrowid))


def get_review(conn: sqlite3.Connection, review_id: int) -> ReviewRow:
    row = conn.execute("SELECT * FROM task_reviews WHERE id = ?", (review_id,)).fetchone()
    if not row:
        raise NotFound(f"Review {review_id} not found")
    return cast(ReviewRow, dict(row))


def list_reviews(conn: sqlite3.Connection, task_id: int) -> list[ReviewRow]:
    _require_task(conn, task_id)
    rows = conn.execute(
        "SELECT * FROM task_reviews WHERE task_id = ? ORDER BY created_at, id", (task_id,)
    ).fetchall()
    return [cast(ReviewRow, dict(row)) for row in rows]


def list_all_reviews(conn: sqlite3.Connection, status: str | None = None) -> list[ReviewRow]:
    """Reviews across the whole project, oldest first."""
    if status:
        if status not in VALID_REVIEW_STATUSES:
            raise ValueError(
                f"Invalid review status '{status}'. Must be one of: {VALID_REVIEW_STATUSES}"
            )
        rows = conn.execute(
            "SELECT * FROM task_reviews WHERE status = ? ORDER BY created_at, id", (status,)
        ).fetchall()
    else:
        rows = conn.execute("SELECT * FROM task_reviews ORDER BY created_at, id").fetchall()
    return [cast(ReviewRow, dict(row)) for row in rows]


def update_review(
    conn: sqlite3.Connection,
    review_id: int,
    status: str,
    feedback: str | None = None,
) -> ReviewRow:
    """Record a review decision. Never touches the task's status."""
    if status not in REVIEW_DECISION_STATUSES:
        raise ValueError(
            f"Invalid review decision '{status}'. Must be one of: {REVIEW_DECISION_STATUSES}"
        )
    cursor = conn.execute(
        "UPDATE task_reviews SET status = ?, feedback = ?, "
        "updated_at = strftime('%Y-%m-%dT%H:%M:%SZ', 'now') WHERE id = ?",
        (status, feedback, review_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        raise NotFound(f"Review {review_id} not found")
    return get_review(conn, review_id)


# -- leases --


def get_active_lease(conn: sqlite3.Connection, task_id: int) -> LeaseRow | None:
    row = conn.execute(
        "SELECT * FROM task_leases WHERE task_id = ? AND released_at IS NULL", (task_id,)
    ).fetchone()
    return cast(LeaseRow, dict(row)) if row else None


def lease_task(conn: sqlite3.Connection, task_id: int, step_id: int) -> LeaseRow:
    """Record that *step_id* owns *task_id*.

    Fails fast with AlreadyLeased when another step holds the task. Leasing a
    task the same step already holds is a no-op. The partial unique index on
    active leases makes concurrent attempts resolve to exactly one winner.
    """
    _require_task(conn, task_id)
    error = ""
    # A second attempt covers a holder releasing between the insert and the lookup.
    for _attempt in range(2):
        try:
            conn.execute(
                "INSERT INTO task_leases (task_id, step_id) VALUES (?, ?)", (task_id, step_id)
            )
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            holder = get_active_lease(conn, task_id)
            if holder is None:
                error = str(exc)
                continue
            if holder["step_id"] == step_id:
                return holder
            raise AlreadyLeased(task_id, holder["step_id"]) from None
        conn.commit()
        return cast(LeaseRow, get_active_lease(conn, task_id))
    raise ConstraintViolation(f"Cannot lease task {task_id} for step {step_id}: {error}")


def is_leased(conn: sqlite3.Connection, task_id: int, step_id: int) -> bool:
    """True only if *step_id* itself holds the active lease on *task_id*."""
    row = conn.execute(
        "SELECT 1 FROM task_leases WHERE task_id = ? AND step_id = ? AND released_at IS NULL",
        (task_id, step_id),
    ).fetchone()
    return row is not None


def list_step_leases(conn: sqlite3.Connection, step_id: int) -> list[LeaseRow]:
    rows = conn.execute(
        "SELECT * FROM task_leases WHERE step_id = ? ORDER BY id", (step_id,)
    ).fetchall()
    return [cast(LeaseRow, dict(row)) for row in rows]


def release_all_leases(conn: sqlite3.Connection, step_id: int) -> int:
    """Release every active lease held by *step_id*. Idempotent; returns the count."""
    cursor = conn.execute(
        "UPDATE task_leases SET released_at = ? WHERE step_id = ? AND released_at IS NULL",
        (_utcnow(), step_id),
    )
    conn.commit()
    return cursor.rowcount


# -- steps --


def get_latest_step(conn: sqlite3.Connection, project_id: str) -> StepRow | None:
    """Most recent step of the project that has not been rolled back."""
    row = conn.execute(
        "SELECT * FROM steps WHERE project_id = ? AND rolled_back = 0 ORDER BY id DESC LIMIT 1",
        (project_id,),
    ).fetchone()
    return cast(StepRow, dict(row)) if row else None


def create_step(
    conn: sqlite3.Connection,
    *,
    project_id: str,
    agent_config_name: str | None,
    commit_sha_before: str | None,
) -> StepRow:
    """Open an active step chained to the project's latest step."""
    parent = get_latest_step(conn, project_id)
    cursor = conn.execute(
        "INSERT INTO steps "
        "(project_id, parent_step_id, commit_sha_before, agent_config_name, start_time) "
        "VALUES (?, ?, ?, ?, ?)",
        (
            project_id,
            parent["id"] if parent else None,
            commit_sha_before,
            agent_config_name,
            _utcnow_precise(),
        ),
    )
    conn.commit()
    return get_step(conn, cast(int, cursor.lastrowid))


def get_step(conn: sqlite3.Connection, step_id: int) -> StepRow:
    row = conn.execute("SELECT * FROM steps WHERE id = ?", (step_id,)).fetchone()
    if not row:
        raise NotFound(f"Step {step_id} not found")
    return cast(StepRow, dict(row))


def list_steps(
    conn: sqlite3.Connection,
    project_id: str | None = None,
    *,
    include_rolled_back: bool = True,
) -> list[StepRow]:
    """Steps newest first."""
    query = "SELECT * FROM steps"
    conditions: list[str] = []
    params: list[object] = []
    if project_id:
        conditions.append("project_id = ?")
        params.append(project_id)
    if not include_rolled_back:
        conditions.append("rolled_back = 0")
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY id DESC"
    return [cast(StepRow, dict(row)) for row in conn.execute(query, params).fetchall()]


def set_step_log_path(conn: sqlite3.Connection, step_id: int, log_path: str) -> None:
    conn.execute("UPDATE steps SET log_path = ? WHERE id = ?", (log_path, step_id))
    conn.commit()


def finalize_step(
    conn: sqlite3.Connection,
    step_id: int,
    *,
    exit_code: int | None = None,
    commit_sha_after: str | None = None,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    total_tokens: int = 0,
    cost: float = 0.0,
    error: str | None = None,
) -> StepRow:
    """Close a step: release its leases, stamp end time and duration, deactivate.

    Lease release and the step update commit together.
    """
    step = get_step(conn, step_id)
    end = _utcnow_precise()
    duration_ms = int(
        (_parse_step_time(end) - _parse_step_time(step["start_time"])).total_seconds() * 1000
    )
    try:
        conn.execute(
            "UPDATE task_leases SET released_at = ? WHERE step_id = ? AND released_at IS NULL",
            (_utcnow(), step_id),
        )
        conn.execute(
            "UPDATE steps SET active = 0, end_time = ?, duration_ms = ?, exit_code = ?, "
            "commit_sha_after = ?, prompt_tokens = ?, completion_tokens = ?, "
            "total_tokens = ?, cost = ?, error = ? WHERE id = ?",
            (
                end,
                duration_ms,
                exit_code,
                commit_sha_after,
                prompt_tokens,
                completion_tokens,
                total_tokens,
                cost,
                error,
                step_id,
            ),
        )
    except BaseException:
        conn.rollback()
        raise
    conn.commit()
    return get_step(conn, step_id)


def mark_steps_rolled_back(conn: sqlite3.Connection, project_id: str, from_step_id: int) -> int:
    """Flag *from_step_id* and every later step of the project as rolled back."""
    cursor = conn.execute(
        "UPDATE steps SET rolled_back = 1, active = 0 WHERE project_id = ? AND id >= ?",
        (project_id, from_step_id),
    )
    conn.commit()
    return cursor.rowcount

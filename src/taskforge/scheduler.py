"""Next-task selection and lease acquisition on top of the task store."""

from __future__ import annotations

import logging
import sqlite3
from typing import cast

from taskforge.db import LeaseRow, TaskRow, lease_task, release_all_leases

log = logging.getLogger(__name__)

# Eligible: workable status, no pending review, upstream dependency (if any)
# completed. Child tasks come before top-level tasks, then oldest first.
_NEXT_TASK_QUERY = """\
SELECT t.* FROM tasks t
WHERE t.status IN ('todo', 'in-progress', 'in-review')
  AND NOT EXISTS (
      SELECT 1 FROM task_reviews r WHERE r.task_id = t.id AND r.status = 'pending'
  )
  AND (
      t.upstream_dependency_id IS NULL
      OR EXISTS (
          SELECT 1 FROM tasks u
          WHERE u.id = t.upstream_dependency_id AND u.status = 'completed'
      )
  )
  {extra}
ORDER BY CASE WHEN t.parent_id IS NULL THEN 1 ELSE 0 END, t.id
LIMIT 1
"""

_UNLEASED_CLAUSE = (
    "AND NOT EXISTS (SELECT 1 FROM task_leases l "
    "WHERE l.task_id = t.id AND l.released_at IS NULL)"
)


def select_next_task(conn: sqlite3.Connection, *, exclude_leased: bool = False) -> TaskRow | None:
    """Return the next workable task, or None when nothing qualifies.

    With ``exclude_leased`` tasks currently held by any step are skipped, which
    is what an automatic picker wants; the plain query mirrors what an agent
    sees when it asks for "the next task".
    """
    query = _NEXT_TASK_QUERY.format(extra=_UNLEASED_CLAUSE if exclude_leased else "")
    row = conn.execute(query).fetchone()
    return cast(TaskRow, dict(row)) if row else None


def acquire_lease(conn: sqlite3.Connection, task_id: int, step_id: int) -> LeaseRow:
    """Lease *task_id* to *step_id*; raises AlreadyLeased without waiting.

    A step may hold several tasks at once. A task is held by at most one step.
    """
    lease = lease_task(conn, task_id, step_id)
    log.info("Step %d leased task %d", step_id, task_id)
    return lease


def release_step_leases(conn: sqlite3.Connection, step_id: int) -> int:
    released = release_all_leases(conn, step_id)
    if released:
        log.info("Released %d lease(s) held by step %d", released, step_id)
    return released

"""Tests for next-task selection and leasing."""

import pytest

from taskforge.db import (
    complete_task,
    create_review,
    create_step,
    create_task,
    finalize_step,
    update_review,
    update_task_status,
)
from taskforge.errors import AlreadyLeased
from taskforge.scheduler import acquire_lease, release_step_leases, select_next_task


def _step_id(conn):
    return create_step(
        conn, project_id="proj1", agent_config_name="default", commit_sha_before="abc"
    )["id"]


def test_empty_backlog_returns_none(db_conn):
    assert select_next_task(db_conn) is None


def test_oldest_first(db_conn):
    first = create_task(db_conn, title="first")
    create_task(db_conn, title="second")
    assert select_next_task(db_conn)["id"] == first


def test_children_preferred_over_top_level(db_conn):
    top = create_task(db_conn, title="top-level")
    parent = create_task(db_conn, title="parent")
    child = create_task(db_conn, title="child", parent_id=parent)
    assert top < child
    assert select_next_task(db_conn)["id"] == child


def test_skips_tasks_with_incomplete_dependency(db_conn):
    dep = create_task(db_conn, title="dep")
    blocked = create_task(db_conn, title="blocked", upstream_dependency_id=dep)
    update_task_status(db_conn, dep, "in-progress")

    assert select_next_task(db_conn)["id"] == dep
    complete_task(db_conn, dep)
    assert select_next_task(db_conn)["id"] == blocked


def test_skips_tasks_with_pending_review(db_conn):
    reviewed = create_task(db_conn, title="reviewed")
    other = create_task(db_conn, title="other")
    review = create_review(db_conn, reviewed, "check")

    assert select_next_task(db_conn)["id"] == other
    update_review(db_conn, review["id"], "rejected", "try again")
    # in-review with no pending review is workable again
    assert select_next_task(db_conn)["id"] == reviewed


def test_completed_tasks_never_selected(db_conn):
    done = create_task(db_conn, title="done")
    complete_task(db_conn, done)
    assert select_next_task(db_conn) is None


def test_exclude_leased(db_conn):
    t1 = create_task(db_conn, title="t1")
    t2 = create_task(db_conn, title="t2")
    step_id = _step_id(db_conn)
    acquire_lease(db_conn, t1, step_id)

    assert select_next_task(db_conn)["id"] == t1
    assert select_next_task(db_conn, exclude_leased=True)["id"] == t2


def test_lease_handoff_between_steps(db_conn):
    task_id = create_task(db_conn, title="T1")
    s1 = _step_id(db_conn)
    s2 = _step_id(db_conn)

    acquire_lease(db_conn, task_id, s1)
    with pytest.raises(AlreadyLeased):
        acquire_lease(db_conn, task_id, s2)

    assert release_step_leases(db_conn, s1) == 1
    acquire_lease(db_conn, task_id, s2)
    finalize_step(db_conn, s2, exit_code=0)
    assert release_step_leases(db_conn, s2) == 0

"""Tests for taskforge.api JSON dispatch."""

import io
import json
import os
from unittest.mock import patch

import pytest

from taskforge.api import dispatch, main
from taskforge.auth import mint_step_token
from taskforge.db import connect, create_review, create_step, create_task, get_task
from taskforge.scheduler import acquire_lease

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _call(config, method, **params):
    return dispatch({"method": method, "params": params}, config=config)


def _data(response):
    assert response["ok"] is True, response
    return response["data"]


def _step(config) -> int:
    with connect(config.db_path) as conn:
        return create_step(
            conn, project_id=config.project_id, agent_config_name="coder", commit_sha_before="a"
        )["id"]


@pytest.fixture()
def task_id(forge_config):
    with connect(forge_config.db_path) as conn:
        return create_task(conn, title="[DOCS] Write guide")


# ---------------------------------------------------------------------------
# Protocol errors
# ---------------------------------------------------------------------------


def test_missing_method(forge_config):
    response = dispatch({}, config=forge_config)
    assert response == {"ok": False, "error": "Missing or invalid 'method'", "code": "INVALID_METHOD"}


def test_unknown_method(forge_config):
    response = _call(forge_config, "task.explode")
    assert response["code"] == "INVALID_METHOD"


def test_params_must_be_object(forge_config):
    response = dispatch({"method": "task.show", "params": [1]}, config=forge_config)
    assert response["code"] == "INVALID_PARAMS"


def test_missing_required_param(forge_config):
    response = _call(forge_config, "task.show")
    assert response["ok"] is False
    assert response["code"] == "INVALID_PARAMS"
    assert "id" in response["error"]


def test_non_integer_param(forge_config):
    assert _call(forge_config, "task.show", id="abc")["code"] == "INVALID_PARAMS"


def test_not_found_maps_error_code(forge_config):
    response = _call(forge_config, "task.show", id=999)
    assert response == {"ok": False, "error": "Task 999 not found", "code": "NOT_FOUND"}


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------


def test_task_create_and_show(forge_config):
    created = _data(
        _call(
            forge_config,
            "task.create",
            title="[BUG] Fix it",
            description="desc",
            review_required=True,
        )
    )
    assert created["type"] == "BUG"
    assert created["status"] == "todo"
    assert created["review_required"] is True

    shown = _data(_call(forge_config, "task.show", id=created["id"]))
    assert shown["description"] == "desc"


def test_task_create_bad_parent(forge_config):
    response = _call(forge_config, "task.create", title="orphan", parent_id=42)
    assert response["code"] == "CONSTRAINT_VIOLATION"


def test_task_list_pagination_and_filters(forge_config):
    with connect(forge_config.db_path) as conn:
        for i in range(5):
            create_task(conn, title=f"[FEAT] item {i}")
        create_task(conn, title="[BUG] broken")

    page = _data(_call(forge_config, "task.list", page=2, limit=2))
    assert page["total"] == 6
    assert page["pages"] == 3
    assert [t["title"] for t in page["tasks"]] == ["[FEAT] item 2", "[FEAT] item 3"]

    bugs = _data(_call(forge_config, "task.list", type="BUG"))
    assert [t["title"] for t in bugs["tasks"]] == ["[BUG] broken"]

    by_status = _data(_call(forge_config, "task.list", status=["todo", "in-progress"]))
    assert by_status["total"] == 6

    assert _call(forge_config, "task.list", status="bogus")["code"] == "INVALID_PARAMS"
    assert _call(forge_config, "task.list", sort_by="secret")["code"] == "INVALID_PARAMS"


def test_task_next(forge_config, task_id):
    assert _data(_call(forge_config, "task.next"))["id"] == task_id
    acquire_step = _step(forge_config)
    with connect(forge_config.db_path) as conn:
        acquire_lease(conn, task_id, acquire_step)
    assert _data(_call(forge_config, "task.next", unleased=True)) is None


def test_task_status_and_update(forge_config, task_id):
    result = _data(_call(forge_config, "task.status", id=task_id, status="in-progress"))
    assert result["changed"] is True
    assert result["task"]["status"] == "in-progress"
    again = _data(_call(forge_config, "task.status", id=task_id, status="in-progress"))
    assert again["changed"] is False

    updated = _data(
        _call(forge_config, "task.update", id=task_id, title="[DOCS] Write the guide")
    )
    assert updated["title"] == "[DOCS] Write the guide"
    assert _call(forge_config, "task.status", id=task_id, status="done")["code"] == (
        "INVALID_PARAMS"
    )


def test_task_update_clears_dependency(forge_config, task_id):
    with connect(forge_config.db_path) as conn:
        other = create_task(conn, title="dependent", upstream_dependency_id=task_id)
    cleared = _data(_call(forge_config, "task.update", id=other, upstream_dependency_id=None))
    assert cleared["upstream_dependency_id"] is None


def test_completion_blocked_by_child(forge_config, task_id):
    with connect(forge_config.db_path) as conn:
        create_task(conn, title="child", parent_id=task_id)
    response = _call(forge_config, "task.status", id=task_id, status="completed")
    assert response["code"] == "INVALID_TRANSITION"


def test_task_logs_newest_first(forge_config, task_id):
    _data(_call(forge_config, "task.log", id=task_id, message="first"))
    _data(_call(forge_config, "task.log", id=task_id, message="second"))
    logs = _data(_call(forge_config, "task.logs", id=task_id))
    assert [entry["message"] for entry in logs] == ["second", "first"]


# ---------------------------------------------------------------------------
# Reviews
# ---------------------------------------------------------------------------


def test_review_flow(forge_config, task_id):
    review = _data(
        _call(forge_config, "review.request", task_id=task_id, message="look", attachment="diff")
    )
    assert review["status"] == "pending"
    with connect(forge_config.db_path) as conn:
        assert get_task(conn, task_id)["status"] == "in-review"

    pending = _data(_call(forge_config, "review.list", status="pending"))
    assert [r["id"] for r in pending] == [review["id"]]

    decided = _data(
        _call(forge_config, "review.update", id=review["id"], status="approved", feedback="ok")
    )
    assert decided["status"] == "approved"
    assert decided["feedback"] == "ok"
    # Approval never moves the task.
    with connect(forge_config.db_path) as conn:
        assert get_task(conn, task_id)["status"] == "in-review"

    assert _data(_call(forge_config, "review.list", task_id=task_id, status="pending")) == []


def test_review_update_rejects_pending(forge_config, task_id):
    with connect(forge_config.db_path) as conn:
        review = create_review(conn, task_id, "look")
    response = _call(forge_config, "review.update", id=review["id"], status="pending")
    assert response["code"] == "INVALID_PARAMS"


# ---------------------------------------------------------------------------
# Step tokens
# ---------------------------------------------------------------------------


def test_invalid_token_rejected(forge_config, task_id):
    response = _call(forge_config, "task.show", id=task_id, token="garbage")
    assert response["code"] == "UNAUTHORIZED"


def test_token_requires_lease_for_mutations(forge_config, task_id):
    step_id = _step(forge_config)
    token = mint_step_token(forge_config.step_secret, step_id)

    # Reads are allowed without a lease.
    assert _data(_call(forge_config, "task.show", id=task_id, token=token))["id"] == task_id
    denied = _call(forge_config, "task.status", id=task_id, status="in-progress", token=token)
    assert denied["code"] == "UNAUTHORIZED"

    lease = _data(_call(forge_config, "lease.acquire", task_id=task_id, token=token))
    assert lease["step_id"] == step_id
    allowed = _call(forge_config, "task.status", id=task_id, status="in-progress", token=token)
    assert _data(allowed)["changed"] is True
    assert _data(_call(forge_config, "task.log", id=task_id, message="hi", token=token))


def test_lease_contention(forge_config, task_id):
    first = mint_step_token(forge_config.step_secret, _step(forge_config))
    second = mint_step_token(forge_config.step_secret, _step(forge_config))
    _data(_call(forge_config, "lease.acquire", task_id=task_id, token=first))
    response = _call(forge_config, "lease.acquire", task_id=task_id, token=second)
    assert response["code"] == "ALREADY_LEASED"


def test_lease_acquire_requires_token(forge_config, task_id):
    assert _call(forge_config, "lease.acquire", task_id=task_id)["code"] == "UNAUTHORIZED"


def test_steps_cannot_decide_reviews(forge_config, task_id):
    step_id = _step(forge_config)
    token = mint_step_token(forge_config.step_secret, step_id)
    with connect(forge_config.db_path) as conn:
        review = create_review(conn, task_id, "look")
    response = _call(forge_config, "review.update", id=review["id"], status="approved", token=token)
    assert response["code"] == "UNAUTHORIZED"


def test_step_show_and_list(forge_config):
    step_id = _step(forge_config)
    shown = _data(_call(forge_config, "step.show", id=step_id))
    assert shown["active"] is True
    assert shown["token_usage"]["total_tokens"] == 0
    listed = _data(_call(forge_config, "step.list", project_id=forge_config.project_id))
    assert [s["id"] for s in listed] == [step_id]


# ---------------------------------------------------------------------------
# main()
# ---------------------------------------------------------------------------


def _run_main(stdin_text, env):
    out = io.StringIO()
    with (
        patch("sys.stdin", io.StringIO(stdin_text)),
        patch("sys.stdout", out),
        patch.dict(os.environ, env),
    ):
        main()
    return json.loads(out.getvalue())


def test_main_round_trip(forge_config, task_id):
    env = {
        "TASKFORGE_PROJECT_DIR": str(forge_config.project_dir),
        "TASKFORGE_DB_PATH": str(forge_config.db_path),
    }
    response = _run_main(json.dumps({"method": "task.show", "params": {"id": task_id}}), env)
    assert response["ok"] is True
    assert response["data"]["type"] == "DOCS"


def test_main_invalid_json(forge_config):
    response = _run_main("{not json", {"TASKFORGE_PROJECT_DIR": str(forge_config.project_dir)})
    assert response["ok"] is False
    assert response["code"] == "INVALID_PARAMS"


def test_main_empty_request(forge_config):
    response = _run_main("   ", {})
    assert response == {"ok": False, "error": "Empty request", "code": "INVALID_PARAMS"}

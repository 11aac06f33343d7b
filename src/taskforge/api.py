"""JSON stdin/stdout dispatch layer for agents and any non-CLI consumer.

Protocol:
    stdin:  {"method": "task.show", "params": {"id": 3}}
    stdout: {"ok": true, "data": {...}}
    stdout: {"ok": false, "error": "Task 3 not found", "code": "NOT_FOUND"}

A request made from inside a step passes the step token as ``params.token``.
Task-mutating methods then only succeed for tasks the step holds a lease on.

Always exits 0. Always returns JSON on stdout.
Entry point: ``taskforge-api`` console script (pyproject.toml).
"""

from __future__ import annotations

import json
import os
import sqlite3
import sys
from collections.abc import Callable
from typing import Any

from taskforge.auth import verify_step_token
from taskforge.config import ForgeConfig, apply_env_overrides, load_config
from taskforge.db import (
    add_task_log,
    connect,
    create_review,
    create_task,
    get_review,
    get_step,
    get_task,
    is_leased,
    list_all_reviews,
    list_reviews,
    list_steps,
    list_task_logs,
    list_tasks,
    update_review,
    update_task,
    update_task_status,
)
from taskforge.errors import ForgeError, Unauthorized
from taskforge.queries import (
    normalize_logs,
    normalize_review,
    normalize_step,
    normalize_task,
    page_payload,
)
from taskforge.scheduler import acquire_lease, select_next_task

# ---------------------------------------------------------------------------
# Error codes
# ---------------------------------------------------------------------------

INVALID_PARAMS = "INVALID_PARAMS"
INVALID_METHOD = "INVALID_METHOD"
INTERNAL = "INTERNAL"


class ApiError(Exception):
    """Raised by handlers to produce a structured error response."""

    def __init__(self, message: str, code: str = INTERNAL):
        super().__init__(message)
        self.code = code


def _require(params: dict, key: str) -> str:
    """Extract a required string param, raising ApiError if missing."""
    val = params.get(key)
    if val is None or val == "":
        raise ApiError(f"Missing required param: {key}", INVALID_PARAMS)
    return str(val)


def _require_int(params: dict, key: str) -> int:
    val = _require(params, key)
    try:
        return int(val)
    except ValueError:
        raise ApiError(f"Param '{key}' must be an integer", INVALID_PARAMS) from None


def _optional(params: dict, key: str) -> str | None:
    val = params.get(key)
    return str(val) if val is not None else None


def _optional_int(params: dict, key: str, default: int | None = None) -> int | None:
    val = params.get(key)
    if val is None:
        return default
    try:
        return int(val)
    except (TypeError, ValueError):
        raise ApiError(f"Param '{key}' must be an integer", INVALID_PARAMS) from None


def _optional_bool(params: dict, key: str, default: bool = False) -> bool:
    val = params.get(key)
    if val is None:
        return default
    return bool(val)


def _check_lease(conn: sqlite3.Connection, task_id: int, step_id: int | None) -> None:
    """Inside a step, a task may only be mutated while the step leases it."""
    if step_id is None:
        return
    if not is_leased(conn, task_id, step_id):
        raise Unauthorized(f"Step {step_id} does not hold a lease on task {task_id}")


# ---------------------------------------------------------------------------
# Handlers: each takes (conn, params, step_id) and returns JSON-serializable data
# ---------------------------------------------------------------------------

# -- tasks --


def _handle_task_show(conn, params, _step_id):
    return normalize_task(get_task(conn, _require_int(params, "id")))


def _handle_task_list(conn, params, _step_id):
    status = params.get("status")
    statuses = [status] if isinstance(status, str) else status
    page = _optional_int(params, "page", 1) or 1
    limit = _optional_int(params, "limit", 50) or 50
    rows, total = list_tasks(
        conn,
        statuses=statuses,
        task_type_filter=_optional(params, "type"),
        parent_id=_optional_int(params, "parent_id"),
        search=_optional(params, "search"),
        sort_by=_optional(params, "sort_by") or "id",
        sort_order=_optional(params, "sort_order") or "asc",
        page=page,
        limit=limit,
    )
    return page_payload(rows, total, max(1, page), min(max(1, limit), 100))


def _handle_task_next(conn, params, _step_id):
    task = select_next_task(conn, exclude_leased=_optional_bool(params, "unleased"))
    return normalize_task(task) if task else None


def _handle_task_create(conn, params, _step_id):
    task_id = create_task(
        conn,
        title=_require(params, "title"),
        description=_optional(params, "description") or "",
        acceptance_criteria=_optional(params, "acceptance_criteria") or "",
        upstream_dependency_id=_optional_int(params, "upstream_dependency_id"),
        review_required=_optional_bool(params, "review_required"),
        parent_id=_optional_int(params, "parent_id"),
    )
    return normalize_task(get_task(conn, task_id))


def _handle_task_update(conn, params, step_id):
    task_id = _require_int(params, "id")
    _check_lease(conn, task_id, step_id)
    fields: dict[str, Any] = {}
    for key in ("title", "description", "acceptance_criteria"):
        if key in params:
            fields[key] = _optional(params, key)
    if "review_required" in params:
        fields["review_required"] = _optional_bool(params, "review_required")
    for key in ("upstream_dependency_id", "parent_id"):
        if key in params:
            fields[key] = _optional_int(params, key)
    return normalize_task(update_task(conn, task_id, **fields))


def _handle_task_status(conn, params, step_id):
    task_id = _require_int(params, "id")
    _check_lease(conn, task_id, step_id)
    changed = update_task_status(conn, task_id, _require(params, "status"))
    return {"changed": changed, "task": normalize_task(get_task(conn, task_id))}


def _handle_task_log(conn, params, step_id):
    task_id = _require_int(params, "id")
    _check_lease(conn, task_id, step_id)
    return normalize_logs([add_task_log(conn, task_id, _require(params, "message"))])[0]


def _handle_task_logs(conn, params, _step_id):
    return normalize_logs(list_task_logs(conn, _require_int(params, "id")))


# -- reviews --


def _handle_review_request(conn, params, step_id):
    task_id = _require_int(params, "task_id")
    _check_lease(conn, task_id, step_id)
    review = create_review(
        conn, task_id, _require(params, "message"), _optional(params, "attachment")
    )
    return normalize_review(review)


def _handle_review_list(conn, params, _step_id):
    task_id = _optional_int(params, "task_id")
    status = _optional(params, "status")
    if task_id is not None:
        reviews = list_reviews(conn, task_id)
        if status:
            reviews = [r for r in reviews if r["status"] == status]
    else:
        reviews = list_all_reviews(conn, status)
    return [normalize_review(r) for r in reviews]


def _handle_review_update(conn, params, step_id):
    review_id = _require_int(params, "id")
    if step_id is not None:
        get_review(conn, review_id)
        raise Unauthorized("Reviews cannot be decided from inside a step")
    review = update_review(
        conn, review_id, _require(params, "status"), _optional(params, "feedback")
    )
    return normalize_review(review)


# -- leases and steps --


def _handle_lease_acquire(conn, params, step_id):
    if step_id is None:
        raise Unauthorized("lease.acquire requires a step token")
    lease = acquire_lease(conn, _require_int(params, "task_id"), step_id)
    return dict(lease)


def _handle_step_show(conn, params, _step_id):
    return normalize_step(get_step(conn, _require_int(params, "id")))


def _handle_step_list(conn, params, _step_id):
    include = _optional_bool(params, "include_rolled_back", default=True)
    return [
        normalize_step(s)
        for s in list_steps(conn, _optional(params, "project_id"), include_rolled_back=include)
    ]


METHODS: dict[str, Callable] = {
    "task.show": _handle_task_show,
    "task.list": _handle_task_list,
    "task.next": _handle_task_next,
    "task.create": _handle_task_create,
    "task.update": _handle_task_update,
    "task.status": _handle_task_status,
    "task.log": _handle_task_log,
    "task.logs": _handle_task_logs,
    "review.request": _handle_review_request,
    "review.list": _handle_review_list,
    "review.update": _handle_review_update,
    "lease.acquire": _handle_lease_acquire,
    "step.show": _handle_step_show,
    "step.list": _handle_step_list,
}


def dispatch(request: dict, *, config: ForgeConfig) -> dict:
    """Process a single API request and return the response dict.

    Args:
        request: ``{"method": "...", "params": {...}}``
        config: Project configuration; supplies the database path and the
            secret used to verify step tokens.
    """
    method = request.get("method")
    if not method or not isinstance(method, str):
        return {"ok": False, "error": "Missing or invalid 'method'", "code": INVALID_METHOD}

    handler = METHODS.get(method)
    if not handler:
        return {"ok": False, "error": f"Unknown method: {method}", "code": INVALID_METHOD}

    params = request.get("params") or {}
    if not isinstance(params, dict):
        return {"ok": False, "error": "'params' must be an object", "code": INVALID_PARAMS}

    try:
        token = params.get("token")
        step_id = verify_step_token(config.step_secret, str(token)) if token else None
        with connect(config.db_path) as conn:
            data = handler(conn, params, step_id)
        return {"ok": True, "data": data}
    except ApiError as exc:
        return {"ok": False, "error": str(exc), "code": exc.code}
    except ForgeError as exc:
        return {"ok": False, "error": str(exc), "code": exc.code}
    except ValueError as exc:
        return {"ok": False, "error": str(exc), "code": INVALID_PARAMS}
    except Exception as exc:
        return {"ok": False, "error": str(exc), "code": INTERNAL}


def main() -> None:
    """Read JSON request from stdin, dispatch, write JSON response to stdout."""
    try:
        raw = sys.stdin.read()
        if not raw.strip():
            response = {"ok": False, "error": "Empty request", "code": INVALID_PARAMS}
        else:
            request = json.loads(raw)
            config = load_config(os.environ.get("TASKFORGE_PROJECT_DIR") or os.getcwd())
            config = apply_env_overrides(config, os.environ)
            response = dispatch(request, config=config)
    except json.JSONDecodeError as exc:
        response = {"ok": False, "error": f"Invalid JSON: {exc}", "code": INVALID_PARAMS}
    except Exception as exc:
        response = {"ok": False, "error": str(exc), "code": INTERNAL}

    sys.stdout.write(json.dumps(response, default=str))
    sys.stdout.write("\n")
    sys.stdout.flush()


if __name__ == "__main__":
    main()

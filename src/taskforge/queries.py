"""Shared presentation logic used by both the CLI and the JSON API.

All functions are pure data transformations. No Click imports, no output.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from typing import Any

from taskforge.db import ReviewRow, StepRow, TaskLogRow, TaskRow
from taskforge.task_types import task_type


def normalize_task(task: TaskRow | Mapping[str, Any]) -> dict[str, Any]:
    """Task row as JSON: adds the derived ``type`` and a boolean ``review_required``."""
    data = dict(task)
    data["type"] = task_type(data.get("title"))
    data["review_required"] = bool(data.get("review_required"))
    return data


def normalize_tasks(tasks: Sequence[TaskRow]) -> list[dict[str, Any]]:
    return [normalize_task(t) for t in tasks]


def normalize_review(review: ReviewRow | Mapping[str, Any]) -> dict[str, Any]:
    return {
        "id": review["id"],
        "task_id": review["task_id"],
        "message": review["message"],
        "attachment": review.get("attachment"),
        "status": review["status"],
        "feedback": review.get("feedback"),
        "created_at": review.get("created_at"),
        "updated_at": review.get("updated_at"),
    }


def normalize_logs(logs: Sequence[TaskLogRow]) -> list[dict[str, Any]]:
    """Normalize log entries for JSON output."""
    return [
        {
            "id": log["id"],
            "task_id": log["task_id"],
            "message": log["message"],
            "created_at": log["created_at"],
        }
        for log in logs
    ]


def normalize_step(step: StepRow | Mapping[str, Any]) -> dict[str, Any]:
    """Step row as JSON, with the token counters nested under ``token_usage``."""
    return {
        "id": step["id"],
        "project_id": step["project_id"],
        "active": bool(step["active"]),
        "rolled_back": bool(step["rolled_back"]),
        "parent_step_id": step.get("parent_step_id"),
        "agent_config_name": step.get("agent_config_name"),
        "commit_sha_before": step.get("commit_sha_before"),
        "commit_sha_after": step.get("commit_sha_after"),
        "start_time": step["start_time"],
        "end_time": step.get("end_time"),
        "duration_ms": step.get("duration_ms"),
        "exit_code": step.get("exit_code"),
        "error": step.get("error"),
        "log_path": step.get("log_path"),
        "token_usage": {
            "prompt_tokens": step["prompt_tokens"],
            "completion_tokens": step["completion_tokens"],
            "total_tokens": step["total_tokens"],
            "cost": step["cost"],
        },
    }


def page_payload(
    rows: Sequence[TaskRow], total: int, page: int, limit: int
) -> dict[str, Any]:
    """Wrap one page of tasks with the counters a paginating client needs."""
    return {
        "tasks": normalize_tasks(rows),
        "total": total,
        "page": page,
        "limit": limit,
        "pages": math.ceil(total / limit) if limit else 0,
    }

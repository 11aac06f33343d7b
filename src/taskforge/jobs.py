"""Job functions executed by rq workers."""

from __future__ import annotations

import logging
from typing import Any

from taskforge.config import ForgeConfig
from taskforge.db import add_task_log, connect
from taskforge.errors import NotFound
from taskforge.steps import StepCoordinator

log = logging.getLogger(__name__)


def run_step_job(
    config_data: dict[str, Any], agent_name: str | None, task_ids: list[int]
) -> dict[str, Any]:
    """Run one step in a worker process and return its result as a dict."""
    config = ForgeConfig.from_dict(config_data)
    with connect(config.db_path) as conn:
        result = StepCoordinator(config, conn).run_step(agent_name, task_ids)
    log.info("Step S%d finished with status %s", result.step_id, result.status)
    return result.to_dict()


def on_step_failure(job, _connection, _exc_type, exc_value, _traceback):
    """Callback when a step job raises. Records the failure on each requested task."""
    if len(job.args) < 3:
        return
    config = ForgeConfig.from_dict(job.args[0])
    task_ids = job.args[2] or []
    with connect(config.db_path) as conn:
        for task_id in task_ids:
            try:
                add_task_log(conn, task_id, f"Step job {job.id} failed: {exc_value}")
            except NotFound:
                log.warning("Step job %s failure callback: task %s not found", job.id, task_id)

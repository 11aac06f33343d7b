"""rq-based job queue for running steps in the background.

``taskforge step run --queue`` enqueues a step here and spawns a burst worker
that exits once the queue is drained.
"""

from __future__ import annotations

import logging
import subprocess
import sys
import uuid
from collections.abc import Iterable

from redis import ConnectionPool, Redis
from redis.exceptions import RedisError
from rq import Callback, Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job

from taskforge.config import ForgeConfig
from taskforge.paths import WORKER_LOG_DIR

log = logging.getLogger(__name__)

QUEUE_STEPS = "taskforge:steps"
FAILURE_TTL = 7 * 24 * 3600  # 7 days; failed jobs expire from Redis

_pools: dict[str, ConnectionPool] = {}


def get_redis(url: str) -> Redis:
    pool = _pools.get(url)
    if pool is None:
        pool = _pools[url] = ConnectionPool.from_url(url)
    return Redis(connection_pool=pool)


def get_queue(url: str, name: str = QUEUE_STEPS) -> Queue:
    # No rq-level timeout: the agent configuration owns the container timeout.
    return Queue(name, connection=get_redis(url), default_timeout=-1)


def enqueue_step(
    config: ForgeConfig, agent_name: str | None = None, task_ids: Iterable[int] = ()
) -> Job:
    """Enqueue a step run and make sure a worker picks it up."""
    from taskforge.jobs import run_step_job

    ids = list(task_ids)
    q = get_queue(config.redis_url)
    job_id = f"step-{uuid.uuid4().hex[:12]}"
    job = q.enqueue(
        run_step_job,
        config.to_dict(),
        agent_name,
        ids,
        job_id=job_id,
        on_failure=Callback("taskforge.jobs.on_step_failure"),
        failure_ttl=FAILURE_TTL,
        description=f"Step for {config.project_name} (agent={agent_name or 'default'})",
    )
    _spawn_worker(config.redis_url, QUEUE_STEPS, job_id=job_id)
    return job


def _spawn_worker(url: str, queue_name: str = QUEUE_STEPS, *, job_id: str | None = None) -> None:
    """Spawn a background rq worker process in burst mode.

    When job_id is provided, worker stdout/stderr is captured to
    ~/.config/taskforge/logs/{job_id}.log.
    """
    cmd = [sys.executable, "-m", "rq.cli", "worker", "--burst", "--url", url, queue_name]

    log_fh = None
    try:
        if job_id:
            WORKER_LOG_DIR.mkdir(parents=True, exist_ok=True, mode=0o700)
            log_fh = open(WORKER_LOG_DIR / f"{job_id}.log", "w")  # noqa: SIM115
            stdout_target = log_fh
            stderr_target = subprocess.STDOUT
        else:
            stdout_target = subprocess.DEVNULL
            stderr_target = subprocess.DEVNULL

        proc = subprocess.Popen(
            cmd,
            stdout=stdout_target,
            stderr=stderr_target,
            start_new_session=True,
        )
    except Exception:
        if log_fh is not None:
            log_fh.close()
        raise

    if log_fh is not None:
        log_fh.close()  # parent closes its copy; child keeps writing

    log.info("Spawned worker pid=%d for %s", proc.pid, queue_name)


def get_job(url: str, job_id: str) -> Job | None:
    try:
        return Job.fetch(job_id, connection=get_redis(url))
    except (NoSuchJobError, RedisError):
        return None

"""Step pipeline: lease tasks, isolate a worktree, run the agent, merge back.

One :class:`StepCoordinator` call drives one step::

    Pending -> Leased -> Running -> Finalizing -> Closed

Any failure escapes straight to Closed, but finalization (lease release, end
time, duration, exit code, token usage) always runs, so a crashed step never
leaves a task blocked behind an orphaned lease.
"""

from __future__ import annotations

import contextlib
import contextvars
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from taskforge import db, git_ops
from taskforge.agents_config import AgentConfig, AgentsConfig, load_agents_config, resolve_agent
from taskforge.auth import mint_step_token
from taskforge.config import ForgeConfig
from taskforge.errors import (
    ContainerError,
    ContainerTimeout,
    GitError,
    InvalidTransition,
    MergeConflict,
    NotFound,
)
from taskforge.metrics import TokenUsage, extract_token_usage
from taskforge.runner import AgentRunner
from taskforge.scheduler import acquire_lease

log = logging.getLogger(__name__)
# Container output goes to the step log file only, never to task logs.
container_log = logging.getLogger("taskforge.container")

COMMIT_MESSAGE_FILE = "COMMIT.md"
STEP_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

STEP_SUCCEEDED = "succeeded"
STEP_FAILED = "failed"
STEP_TIMEOUT = "timeout"
STEP_CONFLICT = "conflict"

# Step whose pipeline is running in the current thread.
_active_step: contextvars.ContextVar[int | None] = contextvars.ContextVar(
    "taskforge_active_step", default=None
)

_level_lock = threading.Lock()
_level_holders = 0
_saved_level = logging.NOTSET


def step_branch(step_id: int) -> str:
    return f"step-S{step_id}"


class GitBackend(Protocol):
    """The subset of :mod:`taskforge.git_ops` a step needs."""

    def head_sha(self, repo_dir: str | Path, ref: str = "HEAD") -> str: ...

    def current_branch(self, repo_dir: str | Path) -> str: ...

    def switch_branch(self, repo_dir: str | Path, branch: str) -> None: ...

    def create_isolated_worktree(
        self, repo_path: str | Path, branch: str, base: str = "HEAD"
    ) -> git_ops.Worktree: ...

    def remove_worktree(
        self, worktree: git_ops.Worktree, *, delete_branch_too: bool = False
    ) -> None: ...

    def has_changes(self, repo_dir: str | Path, exclude: Iterable[str] = ()) -> bool: ...

    def commit_all(
        self, repo_dir: str | Path, message: str, *, exclude: Iterable[str] = ()
    ) -> str | None: ...

    def add_note(self, repo_dir: str | Path, message: str, ref: str = "HEAD") -> None: ...

    def merge_into(
        self, repo_dir: str | Path, source_branch: str, target_branch: str, message: str
    ) -> str: ...

    def reset_hard(self, repo_dir: str | Path, commit_sha: str) -> None: ...


@dataclass
class StepResult:
    step_id: int
    agent_name: str
    task_ids: list[int]
    commit_sha_before: str
    status: str = STEP_FAILED
    exit_code: int | None = None
    commit_sha_after: str | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    error: str | None = None
    log_path: str | None = None
    worktree_path: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == STEP_SUCCEEDED

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "agent": self.agent_name,
            "task_ids": self.task_ids,
            "status": self.status,
            "exit_code": self.exit_code,
            "commit_sha_before": self.commit_sha_before,
            "commit_sha_after": self.commit_sha_after,
            "token_usage": self.token_usage.to_dict(),
            "error": self.error,
            "log_path": self.log_path,
            "worktree_path": self.worktree_path,
        }


class TaskLogHandler(logging.Handler):
    """Logging handler that persists log records to the task_logs table."""

    def __init__(self, conn: sqlite3.Connection, task_id: int):
        super().__init__()
        self.conn = conn
        self.task_id = task_id

    def emit(self, record: logging.LogRecord) -> None:
        try:
            db.add_task_log(self.conn, self.task_id, self.format(record))
        except Exception:
            self.handleError(record)


class StepLogFilter(logging.Filter):
    """Pass only records emitted on behalf of one step.

    Container output is logged from the reader thread and carries an explicit
    ``step_id`` attribute; everything else is attributed through the active
    step of the emitting thread.
    """

    def __init__(self, step_id: int):
        super().__init__()
        self.step_id = step_id

    def filter(self, record: logging.LogRecord) -> bool:
        step_id = getattr(record, "step_id", None)
        if step_id is None:
            step_id = _active_step.get()
        return step_id == self.step_id


def _hold_debug_level() -> None:
    global _level_holders, _saved_level
    pkg_logger = logging.getLogger("taskforge")
    with _level_lock:
        if _level_holders == 0:
            _saved_level = pkg_logger.level
            if pkg_logger.level > logging.DEBUG or pkg_logger.level == logging.NOTSET:
                pkg_logger.setLevel(logging.DEBUG)
        _level_holders += 1


def _release_debug_level() -> None:
    global _level_holders
    with _level_lock:
        _level_holders -= 1
        if _level_holders == 0:
            logging.getLogger("taskforge").setLevel(_saved_level)


def _read_commit_message(work_dir: str | Path, step_id: int) -> str:
    path = Path(work_dir) / COMMIT_MESSAGE_FILE
    try:
        message = path.read_text().strip()
    except FileNotFoundError:
        message = ""
    except OSError as exc:
        log.warning("Failed to read %s: %s", path, exc)
        message = ""
    return message or f"taskforge step S{step_id} - automated changes"


class StepCoordinator:
    def __init__(
        self,
        config: ForgeConfig,
        conn: sqlite3.Connection,
        *,
        runner: AgentRunner | None = None,
        git: GitBackend = git_ops,
        agents: AgentsConfig | None = None,
    ):
        self.config = config
        self.conn = conn
        self.runner = runner or AgentRunner()
        self.git = git
        self.agents = agents if agents is not None else load_agents_config(config.agents_path)

    # -- logging --

    @contextlib.contextmanager
    def _step_logging(self, step_id: int, task_ids: list[int]) -> Iterator[Path]:
        """Route this step's ``taskforge`` records into its log file for the step's duration.

        Step milestones are also copied to each leased task's log. Other steps
        running concurrently in the same process are filtered out.
        """
        self.config.log_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
        log_path = self.config.log_dir / f"step-S{step_id}-{stamp}.log"
        step_filter = StepLogFilter(step_id)

        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(STEP_LOG_FORMAT))
        file_handler.addFilter(step_filter)
        pkg_logger = logging.getLogger("taskforge")
        pkg_logger.addHandler(file_handler)
        _hold_debug_level()

        task_handlers = []
        for task_id in task_ids:
            handler = TaskLogHandler(self.conn, task_id)
            handler.setLevel(logging.INFO)
            handler.setFormatter(logging.Formatter(f"[S{step_id}] %(levelname)s %(message)s"))
            handler.addFilter(step_filter)
            log.addHandler(handler)
            task_handlers.append(handler)
        active = _active_step.set(step_id)
        try:
            yield log_path
        finally:
            _active_step.reset(active)
            for handler in task_handlers:
                log.removeHandler(handler)
            pkg_logger.removeHandler(file_handler)
            _release_debug_level()
            file_handler.close()

    @staticmethod
    def _container_sink(step_id: int) -> Callable[[str], None]:
        def sink(line: str) -> None:
            container_log.info("%s", line.rstrip("\n"), extra={"step_id": step_id})

        return sink

    # -- pipeline --

    def run_step(self, agent_name: str | None = None, task_ids: Iterable[int] = ()) -> StepResult:
        """Run one step against *task_ids* with the named (or default) agent.

        Lease contention raises AlreadyLeased after the step is closed. Agent
        and git failures are recorded on the returned result instead.
        """
        agent = resolve_agent(self.agents, agent_name)
        ids = list(dict.fromkeys(task_ids))
        project_dir = self.config.project_dir
        sha_before = self.git.head_sha(project_dir)

        step = db.create_step(
            self.conn,
            project_id=self.config.project_id,
            agent_config_name=agent.name,
            commit_sha_before=sha_before,
        )
        step_id = step["id"]
        result = StepResult(
            step_id=step_id, agent_name=agent.name, task_ids=ids, commit_sha_before=sha_before
        )
        log.info("Step S%d created (agent=%s, tasks=%s)", step_id, agent.name, ids or "none")
        try:
            for task_id in ids:
                acquire_lease(self.conn, task_id, step_id)
            token = self._mint_token(step_id)
            with self._step_logging(step_id, ids) as log_path:
                result.log_path = str(log_path)
                db.set_step_log_path(self.conn, step_id, str(log_path))
                self._execute(result, agent, token)
        except Exception as exc:
            if result.error is None:
                result.error = f"{type(exc).__name__}: {exc}"
            raise
        finally:
            usage = result.token_usage
            db.finalize_step(
                self.conn,
                step_id,
                exit_code=result.exit_code,
                commit_sha_after=result.commit_sha_after,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                total_tokens=usage.total_tokens,
                cost=usage.cost,
                error=result.error,
            )
            log.info("Step S%d closed: %s", step_id, result.status)
        return result

    def _mint_token(self, step_id: int) -> str:
        if not self.config.step_secret:
            log.warning("No step secret configured; agent will run without a step token")
            return ""
        return mint_step_token(
            self.config.step_secret, step_id, ttl_hours=self.config.token_ttl_hours
        )

    def _execute(self, result: StepResult, agent: AgentConfig, token: str) -> None:
        step_id = result.step_id
        branch = step_branch(step_id)
        try:
            worktree = self.git.create_isolated_worktree(self.config.project_dir, branch)
        except GitError as exc:
            result.error = str(exc)
            log.error("Step S%d: %s\n%s", step_id, exc, exc.output)
            return

        keep_worktree = False
        try:
            env = {"TASKFORGE_STEP_ID": str(step_id)}
            if token:
                env["TASKFORGE_STEP_TOKEN"] = token
            try:
                run = self.runner.run(
                    agent, worktree.path, self._container_sink(step_id), env=env
                )
            except ContainerTimeout as exc:
                result.status = STEP_TIMEOUT
                result.error = str(exc)
                result.token_usage = extract_token_usage(exc.output)
                log.error("Step S%d timed out: %s", step_id, exc)
                return
            except ContainerError as exc:
                result.error = str(exc)
                log.error("Step S%d container failure: %s\n%s", step_id, exc, exc.output)
                return

            result.exit_code = run.exit_code
            result.token_usage = run.metrics.token_usage
            log.info(
                "Agent exited with code %d after %dms (%d error line(s), %d warning line(s))",
                run.exit_code,
                run.metrics.duration_ms,
                run.metrics.error_count,
                run.metrics.warning_count,
            )
            if run.exit_code != 0:
                result.error = f"Agent exited with code {run.exit_code}"
                return

            try:
                result.commit_sha_after = self._merge_back(step_id, worktree)
            except MergeConflict as exc:
                keep_worktree = True
                result.status = STEP_CONFLICT
                result.error = str(exc)
                result.worktree_path = worktree.path
                log.error(
                    "Step S%d: %s; worktree kept at %s for manual resolution\n%s",
                    step_id,
                    exc,
                    worktree.path,
                    exc.output,
                )
                return
            except GitError as exc:
                result.error = str(exc)
                log.error("Step S%d: %s\n%s", step_id, exc, exc.output)
                return
            result.status = STEP_SUCCEEDED
        finally:
            if not keep_worktree:
                self.git.remove_worktree(worktree)

    def _merge_back(self, step_id: int, worktree: git_ops.Worktree) -> str:
        """Commit the agent's changes on the step branch and merge them into main."""
        project_dir = self.config.project_dir
        main_branch = self.config.main_branch
        commit_file = Path(worktree.path) / COMMIT_MESSAGE_FILE

        if not self.git.has_changes(worktree.path, exclude=(COMMIT_MESSAGE_FILE,)):
            commit_file.unlink(missing_ok=True)
            log.info("Step S%d made no changes", step_id)
            return self.git.head_sha(project_dir, main_branch)

        message = _read_commit_message(worktree.path, step_id)
        self.git.commit_all(worktree.path, message, exclude=(COMMIT_MESSAGE_FILE,))
        self.git.add_note(worktree.path, f"Step-id: S{step_id}")
        commit_file.unlink(missing_ok=True)

        sha = self.git.merge_into(
            project_dir,
            worktree.branch,
            main_branch,
            f"Automerge {worktree.branch} into {main_branch}",
        )
        log.info("Merged %s into %s at %s", worktree.branch, main_branch, sha[:12])
        return sha

    # -- rollback --

    def rollback_to_step(self, step_id: int) -> int:
        """Reset the project to the state before *step_id*; returns steps marked rolled back."""
        step = db.get_step(self.conn, step_id)
        if step["project_id"] != self.config.project_id:
            raise NotFound(f"Step {step_id} not found in project {self.config.project_id}")
        if step["active"]:
            raise InvalidTransition(f"Step {step_id} is still running")
        sha = step["commit_sha_before"]
        if not sha:
            raise InvalidTransition(f"Step {step_id} has no recorded starting commit")

        project_dir = self.config.project_dir
        if self.git.current_branch(project_dir) != self.config.main_branch:
            self.git.switch_branch(project_dir, self.config.main_branch)
        self.git.reset_hard(project_dir, sha)
        count = db.mark_steps_rolled_back(self.conn, self.config.project_id, step_id)
        log.info("Rolled back to before step S%d (%d step(s) marked)", step_id, count)
        return count

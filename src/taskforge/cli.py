from __future__ import annotations

import dataclasses
import json
import logging
import os
import secrets
import subprocess
import uuid
from pathlib import Path

import click

from taskforge import __version__, git_ops
from taskforge.agents_config import (
    default_agents_config,
    load_agents_config,
    render_agents_toml,
    resolve_agent,
)
from taskforge.config import ForgeConfig, apply_env_overrides, load_config, write_config
from taskforge.db import (
    DEFAULT_PAGE_LIMIT,
    TASK_SORT_COLUMNS,
    VALID_TASK_STATUSES,
    add_task_log,
    complete_task,
    connect,
    create_review,
    create_task,
    delete_task,
    get_step,
    get_task,
    list_all_reviews,
    list_children,
    list_reviews,
    list_steps,
    list_task_logs,
    list_tasks,
    update_review,
    update_task,
    update_task_status,
)
from taskforge.errors import ForgeError
from taskforge.paths import FORGE_DIR_NAME
from taskforge.queries import (
    normalize_logs,
    normalize_review,
    normalize_step,
    normalize_task,
    normalize_tasks,
    page_payload,
)
from taskforge.scheduler import select_next_task

log = logging.getLogger(__name__)

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


def _echo(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _load_agents(config: ForgeConfig):
    try:
        return load_agents_config(config.agents_path)
    except ValueError as e:
        raise click.ClickException(str(e)) from None


class _JsonAwareGroup(click.Group):
    """Group that always outputs JSON errors with command suggestions.

    Click usage errors and taskforge errors are both emitted as a JSON error
    object on stdout. Unknown commands get fuzzy-matched suggestions via
    ``difflib.get_close_matches``.
    """

    def resolve_command(self, ctx, args):  # type: ignore[override]
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError:
            if args:
                import difflib

                cmd_name = args[0]
                matches = difflib.get_close_matches(
                    cmd_name, self.list_commands(ctx), n=2, cutoff=0.5
                )
                hint = f" Did you mean: {', '.join(matches)}?" if matches else ""
                raise click.UsageError(f"No such command '{cmd_name}'.{hint}") from None
            raise

    def main(self, args=None, standalone_mode=True, **kwargs):  # type: ignore[override]
        try:
            rv = super().main(args=args, standalone_mode=False, **kwargs)
            if standalone_mode:
                raise SystemExit(rv or 0)
            return rv
        except ForgeError as e:
            payload = {"ok": False, "error": str(e), "code": e.code}
            if e.output:
                payload["output"] = e.output
            click.echo(json.dumps(payload))
            if standalone_mode:
                raise SystemExit(1) from None
            return 1
        except click.ClickException as e:
            click.echo(json.dumps({"ok": False, "error": e.format_message()}))
            code = getattr(e, "exit_code", 1)
            if standalone_mode:
                raise SystemExit(code) from None
            return code
        except click.Abort:
            if standalone_mode:
                click.echo("Aborted!", err=True)
                raise SystemExit(1) from None
            raise


_cli_handler: logging.Handler | None = None


def _configure_logging(verbose: bool) -> None:
    """(Re)attach the stderr handler; each invocation may have a fresh stderr."""
    global _cli_handler
    pkg_logger = logging.getLogger("taskforge")
    if _cli_handler is not None:
        pkg_logger.removeHandler(_cli_handler)
    _cli_handler = logging.StreamHandler()
    _cli_handler.setLevel(logging.INFO if verbose else logging.WARNING)
    _cli_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    pkg_logger.addHandler(_cli_handler)
    if pkg_logger.level == logging.NOTSET or pkg_logger.level > _cli_handler.level:
        pkg_logger.setLevel(_cli_handler.level)


@click.group(cls=_JsonAwareGroup)
@click.version_option(version=__version__)
@click.option(
    "--project-dir",
    "-C",
    default=None,
    type=click.Path(file_okay=False, resolve_path=True),
    help="Project directory (default: current directory).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log progress to stderr.")
@click.pass_context
def main(ctx: click.Context, project_dir: str | None, verbose: bool):
    """Drive coding agents through a leased task backlog, one step at a time.

    \b
    Quick start:
      taskforge init                          Set up .taskforge/ in a git repo
      taskforge task add "[BUG] Fix login"    Add a task
      taskforge step run --next               Run the default agent on the next task
      taskforge step list                     Inspect step history
    """
    _configure_logging(verbose)
    try:
        config = load_config(project_dir or Path.cwd())
    except ValueError as e:
        raise click.ClickException(str(e)) from None
    ctx.obj = apply_env_overrides(config, os.environ)


# -- init --


def _init_git_repo(cwd: Path) -> None:
    """Ensure cwd is a git repo with at least one commit."""
    if not git_ops.is_git_repository(cwd):
        try:
            subprocess.run(
                ["git", "init"], cwd=str(cwd), check=True, capture_output=True, text=True
            )
        except (subprocess.CalledProcessError, FileNotFoundError) as exc:
            raise click.ClickException(f"Failed to initialize git repo: {exc}") from exc

    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"], cwd=str(cwd), capture_output=True, text=True
        )
        has_commits = result.returncode == 0
    except FileNotFoundError:
        raise click.ClickException("git not found on PATH") from None

    if not has_commits:
        _ensure_gitignore_entry(cwd)
        try:
            subprocess.run(
                ["git", "add", ".gitignore"],
                cwd=str(cwd),
                check=True,
                capture_output=True,
                text=True,
            )
            subprocess.run(
                ["git", "commit", "-m", "Initial commit"],
                cwd=str(cwd),
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as exc:
            detail = (exc.stderr or exc.stdout or "").strip()
            suffix = f": {detail}" if detail else ""
            raise click.ClickException(f"Failed to create initial commit{suffix}") from exc


def _ensure_gitignore_entry(cwd: Path) -> None:
    """Add .taskforge/ to .gitignore if not already present."""
    gitignore = cwd / ".gitignore"
    entry = f"{FORGE_DIR_NAME}/"
    if gitignore.exists():
        content = gitignore.read_text()
        for line in content.splitlines():
            stripped = line.strip()
            if stripped in (entry, FORGE_DIR_NAME):
                return
        with open(gitignore, "a") as f:
            if content and not content.endswith("\n"):
                f.write("\n")
            f.write(f"{entry}\n")
    else:
        gitignore.write_text(f"{entry}\n")


@main.command()
@click.option("--name", "-n", default=None, help="Project name (default: directory name).")
@click.option("--main-branch", default=None, help="Branch steps merge into (default: current).")
@click.pass_obj
def init(config: ForgeConfig, name: str | None, main_branch: str | None):
    """Set up taskforge in a git repo.

    Works on existing repos and empty directories. If the directory is not a
    git repo, taskforge initializes one. An existing configuration is kept.
    """
    target = config.project_dir
    target.mkdir(parents=True, exist_ok=True)
    _init_git_repo(target)
    _ensure_gitignore_entry(target)

    created = not config.config_path.exists()
    if created:
        config = dataclasses.replace(
            config,
            project_id=uuid.uuid4().hex[:12],
            project_name=name or target.name,
            main_branch=main_branch or git_ops.current_branch(target),
            step_secret=secrets.token_hex(32),
        )
        write_config(config)
    if not config.agents_path.exists():
        config.agents_path.write_text(render_agents_toml(default_agents_config()))
    with connect(config.db_path):
        pass

    payload = config.to_dict()
    payload.pop("step_secret")
    payload["created"] = created
    _echo(payload)


# -- task --


@main.group()
def task():
    """Create, inspect and move tasks through their lifecycle."""


@task.command("add")
@click.argument("title")
@click.option("--description", "-d", default="", help="Task description.")
@click.option("--criteria", default="", help="Acceptance criteria.")
@click.option("--depends-on", type=int, default=None, help="Upstream dependency task ID.")
@click.option("--parent", type=int, default=None, help="Parent task ID.")
@click.option("--review-required", is_flag=True, help="Require an approved review to complete.")
@click.pass_obj
def task_add(
    config: ForgeConfig,
    title: str,
    description: str,
    criteria: str,
    depends_on: int | None,
    parent: int | None,
    review_required: bool,
):
    """Add a task. Prefix the title with [TYPE] to tag it (default FEAT)."""
    with connect(config.db_path) as conn:
        task_id = create_task(
            conn,
            title=title,
            description=description,
            acceptance_criteria=criteria,
            upstream_dependency_id=depends_on,
            review_required=review_required,
            parent_id=parent,
        )
        _echo(normalize_task(get_task(conn, task_id)))


@task.command("show")
@click.argument("task_id", type=int)
@click.pass_obj
def task_show(config: ForgeConfig, task_id: int):
    """Show a task with its children and reviews."""
    with connect(config.db_path) as conn:
        output = normalize_task(get_task(conn, task_id))
        output["children"] = normalize_tasks(list_children(conn, task_id))
        output["reviews"] = [normalize_review(r) for r in list_reviews(conn, task_id)]
    _echo(output)


@task.command("list")
@click.option(
    "--status",
    "-s",
    "statuses",
    multiple=True,
    type=click.Choice(sorted(VALID_TASK_STATUSES)),
    help="Filter by status (repeatable; any match).",
)
@click.option("--type", "task_type_filter", default=None, help="Filter by [TYPE] tag.")
@click.option("--parent", type=int, default=None, help="Only children of this task.")
@click.option("--search", default=None, help="Substring match on title or description.")
@click.option("--sort", "sort_by", type=click.Choice(sorted(TASK_SORT_COLUMNS)), default="id")
@click.option("--order", "sort_order", type=click.Choice(["asc", "desc"]), default="asc")
@click.option("--page", type=click.IntRange(min=1), default=1)
@click.option("--limit", type=click.IntRange(1, 100), default=DEFAULT_PAGE_LIMIT)
@click.pass_obj
def task_list(
    config: ForgeConfig,
    statuses: tuple[str, ...],
    task_type_filter: str | None,
    parent: int | None,
    search: str | None,
    sort_by: str,
    sort_order: str,
    page: int,
    limit: int,
):
    """List tasks, one page at a time."""
    with connect(config.db_path) as conn:
        rows, total = list_tasks(
            conn,
            statuses=list(statuses) or None,
            task_type_filter=task_type_filter,
            parent_id=parent,
            search=search,
            sort_by=sort_by,
            sort_order=sort_order,
            page=page,
            limit=limit,
        )
    _echo(page_payload(rows, total, page, limit))


@task.command("update")
@click.argument("task_id", type=int)
@click.option("--title", default=None)
@click.option("--description", "-d", default=None)
@click.option("--criteria", default=None, help="Acceptance criteria.")
@click.option("--depends-on", type=int, default=None, help="Set the upstream dependency.")
@click.option("--no-depends-on", is_flag=True, help="Clear the upstream dependency.")
@click.option("--parent", type=int, default=None, help="Set the parent task.")
@click.option("--review-required/--no-review-required", default=None)
@click.pass_obj
def task_update(
    config: ForgeConfig,
    task_id: int,
    title: str | None,
    description: str | None,
    criteria: str | None,
    depends_on: int | None,
    no_depends_on: bool,
    parent: int | None,
    review_required: bool | None,
):
    """Update task fields. Use 'task status' to change status."""
    if depends_on is not None and no_depends_on:
        raise click.ClickException("Use either --depends-on or --no-depends-on, not both.")
    fields: dict = {}
    if depends_on is not None:
        fields["upstream_dependency_id"] = depends_on
    elif no_depends_on:
        fields["upstream_dependency_id"] = None
    if parent is not None:
        fields["parent_id"] = parent
    with connect(config.db_path) as conn:
        try:
            row = update_task(
                conn,
                task_id,
                title=title,
                description=description,
                acceptance_criteria=criteria,
                review_required=review_required,
                **fields,
            )
        except ValueError as e:
            raise click.ClickException(str(e)) from None
    _echo(normalize_task(row))


@task.command("status")
@click.argument("task_id", type=int)
@click.argument("status", type=click.Choice(sorted(VALID_TASK_STATUSES)))
@click.pass_obj
def task_status(config: ForgeConfig, task_id: int, status: str):
    """Move a task to STATUS."""
    with connect(config.db_path) as conn:
        changed = update_task_status(conn, task_id, status)
        _echo({"changed": changed, "task": normalize_task(get_task(conn, task_id))})


@task.command("complete")
@click.argument("task_id", type=int)
@click.pass_obj
def task_complete(config: ForgeConfig, task_id: int):
    """Complete a task. Fails while children are open or a review is pending."""
    with connect(config.db_path) as conn:
        changed = complete_task(conn, task_id)
        _echo({"changed": changed, "task": normalize_task(get_task(conn, task_id))})


@task.command("delete")
@click.argument("task_id", type=int)
@click.pass_obj
def task_delete(config: ForgeConfig, task_id: int):
    """Delete a task together with its children, logs and reviews."""
    with connect(config.db_path) as conn:
        delete_task(conn, task_id)
    _echo({"deleted": task_id})


@task.command("log")
@click.argument("task_id", type=int)
@click.argument("message")
@click.pass_obj
def task_log(config: ForgeConfig, task_id: int, message: str):
    """Append a log message to a task."""
    with connect(config.db_path) as conn:
        entry = add_task_log(conn, task_id, message)
    _echo(normalize_logs([entry])[0])


@task.command("logs")
@click.argument("task_id", type=int)
@click.pass_obj
def task_logs(config: ForgeConfig, task_id: int):
    """Show a task's logs, newest first."""
    with connect(config.db_path) as conn:
        _echo(normalize_logs(list_task_logs(conn, task_id)))


@task.command("children")
@click.argument("task_id", type=int)
@click.pass_obj
def task_children(config: ForgeConfig, task_id: int):
    """List the direct children of a task."""
    with connect(config.db_path) as conn:
        get_task(conn, task_id)
        _echo(normalize_tasks(list_children(conn, task_id)))


@task.command("next")
@click.option("--unleased", is_flag=True, help="Skip tasks currently leased by a step.")
@click.pass_obj
def task_next(config: ForgeConfig, unleased: bool):
    """Show the next eligible task (null when nothing qualifies)."""
    with connect(config.db_path) as conn:
        row = select_next_task(conn, exclude_leased=unleased)
    _echo(normalize_task(row) if row else None)


# -- review --


@main.group()
def review():
    """Request and decide task reviews."""


@review.command("request")
@click.argument("task_id", type=int)
@click.argument("message")
@click.option("--attachment", default=None, help="Path or URL attached to the review.")
@click.pass_obj
def review_request(config: ForgeConfig, task_id: int, message: str, attachment: str | None):
    """Open a pending review; the task moves to in-review."""
    with connect(config.db_path) as conn:
        _echo(normalize_review(create_review(conn, task_id, message, attachment)))


@review.command("list")
@click.option("--task", "task_id", type=int, default=None, help="Only reviews of this task.")
@click.option(
    "--status", type=click.Choice(["pending", "approved", "rejected"]), default=None
)
@click.pass_obj
def review_list(config: ForgeConfig, task_id: int | None, status: str | None):
    """List reviews across the project."""
    with connect(config.db_path) as conn:
        if task_id is not None:
            rows = [r for r in list_reviews(conn, task_id) if not status or r["status"] == status]
        else:
            rows = list_all_reviews(conn, status)
    _echo([normalize_review(r) for r in rows])


def _decide_review(config: ForgeConfig, review_id: int, status: str, feedback: str | None):
    with connect(config.db_path) as conn:
        _echo(normalize_review(update_review(conn, review_id, status, feedback)))


@review.command("approve")
@click.argument("review_id", type=int)
@click.option("--feedback", "-f", default=None)
@click.pass_obj
def review_approve(config: ForgeConfig, review_id: int, feedback: str | None):
    """Approve a review. The task's status is left unchanged."""
    _decide_review(config, review_id, "approved", feedback)


@review.command("reject")
@click.argument("review_id", type=int)
@click.option("--feedback", "-f", default=None)
@click.pass_obj
def review_reject(config: ForgeConfig, review_id: int, feedback: str | None):
    """Reject a review. The task's status is left unchanged."""
    _decide_review(config, review_id, "rejected", feedback)


# -- step --


@main.group()
def step():
    """Run agent steps and inspect or roll back their history."""


@step.command("run")
@click.option("--agent", "-a", "agent_name", default=None, help="Agent configuration name.")
@click.option("--task", "-t", "task_ids", type=int, multiple=True, help="Task to lease.")
@click.option("--next", "pick_next", is_flag=True, help="Lease the next eligible task.")
@click.option("--queue", "use_queue", is_flag=True, help="Run in a background rq worker.")
@click.pass_obj
def step_run(
    config: ForgeConfig,
    agent_name: str | None,
    task_ids: tuple[int, ...],
    pick_next: bool,
    use_queue: bool,
):
    """Run one step: lease tasks, run the agent in a worktree, merge back."""
    from taskforge.steps import StepCoordinator

    if pick_next and task_ids:
        raise click.ClickException("Use either --task or --next, not both.")
    agents_config = _load_agents(config)
    ids = list(task_ids)
    if pick_next:
        with connect(config.db_path) as conn:
            row = select_next_task(conn, exclude_leased=True)
        if row is None:
            _echo({"step": None, "reason": "No eligible task"})
            return
        ids = [row["id"]]

    if use_queue:
        from taskforge.queue import QUEUE_STEPS, enqueue_step

        job = enqueue_step(config, agent_name, ids)
        _echo({"job_id": job.id, "queue": QUEUE_STEPS, "task_ids": ids})
        return

    with connect(config.db_path) as conn:
        result = StepCoordinator(config, conn, agents=agents_config).run_step(agent_name, ids)
    _echo(result.to_dict())
    if not result.ok:
        raise SystemExit(1)


@step.command("list")
@click.option("--hide-rolled-back", is_flag=True, help="Omit rolled-back steps.")
@click.pass_obj
def step_list(config: ForgeConfig, hide_rolled_back: bool):
    """List this project's steps, newest first."""
    with connect(config.db_path) as conn:
        rows = list_steps(conn, config.project_id, include_rolled_back=not hide_rolled_back)
    _echo([normalize_step(s) for s in rows])


@step.command("show")
@click.argument("step_id", type=int)
@click.pass_obj
def step_show(config: ForgeConfig, step_id: int):
    """Show one step."""
    with connect(config.db_path) as conn:
        _echo(normalize_step(get_step(conn, step_id)))


@step.command("rollback")
@click.argument("step_id", type=int)
@click.pass_obj
def step_rollback(config: ForgeConfig, step_id: int):
    """Reset the repository to before STEP_ID and mark later steps rolled back."""
    from taskforge.steps import StepCoordinator

    with connect(config.db_path) as conn:
        coordinator = StepCoordinator(config, conn, agents=_load_agents(config))
        count = coordinator.rollback_to_step(step_id)
        sha = get_step(conn, step_id)["commit_sha_before"]
    _echo({"rolled_back_from": step_id, "steps_marked": count, "head": sha})


# -- agents --


@main.group()
def agents():
    """Inspect agent configurations from .taskforge/agents.toml."""


@agents.command("list")
@click.pass_obj
def agents_list(config: ForgeConfig):
    """List configured agents."""
    agents_config = _load_agents(config)
    default = agents_config.get_default_agent()
    _echo(
        [
            {
                "name": a.name,
                "image": a.image,
                "description": a.description,
                "default": default is not None and a.name == default.name,
            }
            for a in agents_config.agents.values()
        ]
    )


@agents.command("show")
@click.argument("name", required=False)
@click.pass_obj
def agents_show(config: ForgeConfig, name: str | None):
    """Show one agent configuration (the default when NAME is omitted)."""
    _echo(dataclasses.asdict(resolve_agent(_load_agents(config), name)))


# -- worktree --


@main.group()
def worktree():
    """Inspect and clean up step worktrees."""


@worktree.command("list")
@click.pass_obj
def worktree_list(config: ForgeConfig):
    """List the repository's linked worktrees."""
    _echo(git_ops.list_worktrees(config.project_dir))


@worktree.command("cleanup")
@click.pass_obj
def worktree_cleanup(config: ForgeConfig):
    """Remove leftover step worktrees (e.g. kept after a merge conflict)."""
    _echo({"removed": git_ops.cleanup_worktrees(config.project_dir)})

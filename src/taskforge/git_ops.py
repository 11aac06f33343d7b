"""Git operations for step isolation: worktrees, commits, merges and resets.

Functions raise taskforge.errors.GitError subclasses on failure, with the
tool's raw output attached, so callers can record it on the step.
"""

from __future__ import annotations

import contextlib
import logging
import shutil
import subprocess
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from taskforge.errors import (
    GitError,
    MergeConflict,
    MergeFailed,
    NotARepository,
    WorktreeCreationFailed,
)

log = logging.getLogger(__name__)

WORKTREE_PREFIX = "taskforge-worktree-"


@dataclass
class Worktree:
    path: str
    branch: str
    repo_path: str
    removed: bool = False


def _git(
    args: list[str], cwd: str | Path, *, check: bool = True
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        ["git", *args],
        cwd=str(cwd),
        check=check,
        capture_output=True,
        text=True,
    )


def _output(exc: subprocess.CalledProcessError) -> str:
    return f"{exc.stdout or ''}{exc.stderr or ''}".strip()


def is_git_repository(path: str | Path) -> bool:
    """True when *path* has a ``.git`` directory (main checkout) or file (worktree)."""
    return (Path(path) / ".git").exists()


def head_sha(repo_dir: str | Path, ref: str = "HEAD") -> str:
    try:
        return _git(["rev-parse", ref], repo_dir).stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError(f"Cannot resolve '{ref}'", output=_output(e)) from None


def current_branch(repo_dir: str | Path) -> str:
    try:
        return _git(["rev-parse", "--abbrev-ref", "HEAD"], repo_dir).stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GitError("Cannot determine current branch", output=_output(e)) from None


def branch_exists(repo_dir: str | Path, branch: str) -> bool:
    result = _git(["branch", "--list", branch], repo_dir, check=False)
    return result.returncode == 0 and bool(result.stdout.strip())


def switch_branch(repo_dir: str | Path, branch: str) -> None:
    try:
        _git(["checkout", branch], repo_dir)
    except subprocess.CalledProcessError as e:
        raise GitError(f"Failed to switch to branch '{branch}'", output=_output(e)) from None


def delete_branch(repo_dir: str | Path, branch: str, *, force: bool = False) -> None:
    """Delete *branch*. Missing branches are a no-op.

    Deleting the branch that is checked out is a caller bug and raises ValueError.
    """
    if not branch_exists(repo_dir, branch):
        return
    if current_branch(repo_dir) == branch:
        raise ValueError(f"Cannot delete '{branch}': it is the current branch")
    try:
        _git(["branch", "-D" if force else "-d", branch], repo_dir)
    except subprocess.CalledProcessError as e:
        raise GitError(f"Failed to delete branch '{branch}'", output=_output(e)) from None


def create_isolated_worktree(
    repo_path: str | Path, branch: str, base: str = "HEAD"
) -> Worktree:
    """Create *branch* from *base* checked out in a fresh temporary directory.

    The directory is removed again if git refuses to create the worktree.
    """
    if not is_git_repository(repo_path):
        raise NotARepository(f"{repo_path} is not a git repository")

    tmp = tempfile.mkdtemp(prefix=f"{WORKTREE_PREFIX}{branch}-")
    try:
        _git(["worktree", "add", "-b", branch, tmp, base], repo_path)
    except subprocess.CalledProcessError as e:
        shutil.rmtree(tmp, ignore_errors=True)
        raise WorktreeCreationFailed(
            f"Failed to create worktree for branch '{branch}'", output=_output(e)
        ) from None
    log.info("Created worktree %s on branch %s", tmp, branch)
    return Worktree(path=tmp, branch=branch, repo_path=str(repo_path))


def remove_worktree(worktree: Worktree, *, delete_branch_too: bool = False) -> None:
    """Detach and delete the worktree directory. Safe if the directory is gone.

    The branch is kept unless ``delete_branch_too`` is set.
    """
    if worktree.removed:
        log.debug("Worktree %s already removed", worktree.path)
        return
    try:
        _git(["worktree", "remove", "--force", worktree.path], worktree.repo_path)
    except subprocess.CalledProcessError as exc:
        log.debug("git worktree remove %s: %s", worktree.path, exc.stderr.strip())
    shutil.rmtree(worktree.path, ignore_errors=True)

    # Prune stale worktree records left by already-deleted directories
    with contextlib.suppress(subprocess.CalledProcessError):
        _git(["worktree", "prune"], worktree.repo_path)
    worktree.removed = True

    if delete_branch_too:
        try:
            delete_branch(worktree.repo_path, worktree.branch, force=True)
        except (GitError, ValueError) as exc:
            log.warning("Failed to delete branch %s: %s", worktree.branch, exc)


def merge_into(
    repo_dir: str | Path, source_branch: str, target_branch: str, message: str
) -> str:
    """Merge *source_branch* into *target_branch* and return the new target SHA.

    Checks out the target first when needed and always returns to the original
    branch afterwards, even when the merge fails. A conflict aborts the merge
    and raises MergeConflict; any other failure raises MergeFailed.
    """
    original = current_branch(repo_dir)
    switched = original != target_branch
    if switched:
        switch_branch(repo_dir, target_branch)
    try:
        result = _git(["merge", source_branch, "-m", message], repo_dir, check=False)
        if result.returncode != 0:
            output = f"{result.stdout}{result.stderr}".strip()
            if "CONFLICT" in output:
                with contextlib.suppress(subprocess.CalledProcessError):
                    _git(["merge", "--abort"], repo_dir)
                raise MergeConflict(source_branch, target_branch, output=output)
            raise MergeFailed(
                f"Failed to merge '{source_branch}' into '{target_branch}'", output=output
            )
        return head_sha(repo_dir)
    finally:
        if switched:
            try:
                switch_branch(repo_dir, original)
            except GitError as exc:
                log.warning("Failed to restore branch %s: %s", original, exc.output)


def reset_hard(repo_dir: str | Path, commit_sha: str) -> None:
    """Reset the checkout to *commit_sha* after checking it names a real commit."""
    verify = _git(
        ["rev-parse", "--verify", "--quiet", f"{commit_sha}^{{commit}}"], repo_dir, check=False
    )
    if verify.returncode != 0:
        raise GitError(f"'{commit_sha}' is not a commit in {repo_dir}")
    try:
        _git(["reset", "--hard", commit_sha], repo_dir)
    except subprocess.CalledProcessError as e:
        raise GitError(f"Failed to reset to {commit_sha}", output=_output(e)) from None


def _porcelain_paths(repo_dir: str | Path) -> list[str]:
    try:
        status = _git(["status", "--porcelain"], repo_dir)
    except subprocess.CalledProcessError as e:
        raise GitError("Failed to read git status", output=_output(e)) from None
    return [line[3:].strip() for line in status.stdout.splitlines() if line.strip()]


def has_changes(repo_dir: str | Path, exclude: Iterable[str] = ()) -> bool:
    """True when the checkout has modified or untracked files outside *exclude*.

    *exclude* holds paths relative to the repository root.
    """
    excluded = set(exclude)
    return any(p.strip('"') not in excluded for p in _porcelain_paths(repo_dir))


def commit_all(
    repo_dir: str | Path, message: str, *, exclude: Iterable[str] = ()
) -> str | None:
    """Stage everything except *exclude*, commit, and return the commit SHA.

    Returns None when there was nothing to commit.
    """
    try:
        _git(["add", "-A"], repo_dir)
    except subprocess.CalledProcessError as e:
        raise GitError("Failed to stage changes", output=_output(e)) from None
    for path in exclude:
        with contextlib.suppress(subprocess.CalledProcessError):
            _git(["reset", "--quiet", "--", path], repo_dir)

    result = _git(["commit", "-m", message], repo_dir, check=False)
    if result.returncode != 0:
        output = f"{result.stdout}{result.stderr}"
        if "nothing to commit" in output or "nothing added to commit" in output:
            return None
        raise GitError("Failed to commit changes", output=output.strip())
    return head_sha(repo_dir)


def add_note(repo_dir: str | Path, message: str, ref: str = "HEAD") -> None:
    try:
        _git(["notes", "add", "-f", "-m", message, ref], repo_dir)
    except subprocess.CalledProcessError as e:
        raise GitError(f"Failed to add note to {ref}", output=_output(e)) from None


def list_worktrees(repo_dir: str | Path) -> list[dict[str, str]]:
    """Parse ``git worktree list --porcelain`` into ``{path, head, branch}`` dicts."""
    try:
        result = _git(["worktree", "list", "--porcelain"], repo_dir)
    except subprocess.CalledProcessError as e:
        raise GitError("Failed to list worktrees", output=_output(e)) from None

    worktrees: list[dict[str, str]] = []
    current: dict[str, str] = {}
    for line in result.stdout.splitlines():
        if not line.strip():
            if current:
                worktrees.append(current)
            current = {}
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            current = {"path": value, "head": "", "branch": ""}
        elif key == "HEAD":
            current["head"] = value
        elif key == "branch":
            current["branch"] = value.removeprefix("refs/heads/")
    if current:
        worktrees.append(current)
    return worktrees


def cleanup_worktrees(repo_dir: str | Path, prefix: str = WORKTREE_PREFIX) -> list[str]:
    """Remove linked worktrees whose directory name starts with *prefix*.

    Returns the removed paths. Branches are kept.
    """
    removed = []
    for entry in list_worktrees(repo_dir):
        path = entry["path"]
        if not Path(path).name.startswith(prefix):
            continue
        remove_worktree(Worktree(path=path, branch=entry["branch"], repo_path=str(repo_dir)))
        removed.append(path)
    return removed

"""Tests for git_ops against real repositories."""

import shutil
from pathlib import Path

import pytest
from conftest import git, init_repo

from taskforge import git_ops
from taskforge.errors import GitError, MergeConflict, NotARepository, WorktreeCreationFailed

pytestmark = [
    pytest.mark.slow,
    pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed"),
    pytest.mark.usefixtures("git_identity_env"),
]


def _commit(repo: Path, name: str, content: str, message: str) -> str:
    (repo / name).write_text(content)
    git(repo, "add", ".")
    git(repo, "commit", "-m", message)
    return git(repo, "rev-parse", "HEAD")


def test_branch_queries(tmp_path):
    repo = init_repo(tmp_path / "repo")
    assert git_ops.is_git_repository(repo)
    assert git_ops.current_branch(repo) == "main"
    assert git_ops.branch_exists(repo, "main")
    assert not git_ops.branch_exists(repo, "nope")
    assert git_ops.head_sha(repo) == git(repo, "rev-parse", "HEAD")


def test_delete_current_branch_is_a_programming_error(tmp_path):
    repo = init_repo(tmp_path / "repo")
    with pytest.raises(ValueError):
        git_ops.delete_branch(repo, "main")
    git_ops.delete_branch(repo, "missing")  # no-op

    git(repo, "branch", "feature")
    git_ops.delete_branch(repo, "feature")
    assert not git_ops.branch_exists(repo, "feature")


def test_create_and_remove_worktree(tmp_path):
    repo = init_repo(tmp_path / "repo")
    wt = git_ops.create_isolated_worktree(repo, "step-S1")
    assert Path(wt.path).is_dir()
    assert (Path(wt.path) / "file.txt").read_text() == "original\n"
    assert git_ops.branch_exists(repo, "step-S1")
    assert any(entry["branch"] == "step-S1" for entry in git_ops.list_worktrees(repo))

    git_ops.remove_worktree(wt)
    assert not Path(wt.path).exists()
    assert wt.removed
    # Branch is retained unless asked otherwise.
    assert git_ops.branch_exists(repo, "step-S1")
    git_ops.remove_worktree(wt)  # second teardown is a no-op


def test_remove_worktree_tolerates_missing_directory(tmp_path):
    repo = init_repo(tmp_path / "repo")
    wt = git_ops.create_isolated_worktree(repo, "step-S2")
    shutil.rmtree(wt.path)
    git_ops.remove_worktree(wt, delete_branch_too=True)
    assert not git_ops.branch_exists(repo, "step-S2")
    assert all(entry["path"] != wt.path for entry in git_ops.list_worktrees(repo))


def test_create_worktree_not_a_repository(tmp_path):
    plain = tmp_path / "plain"
    plain.mkdir()
    with pytest.raises(NotARepository):
        git_ops.create_isolated_worktree(plain, "step-S1")


def test_create_worktree_failure_cleans_up(tmp_path):
    repo = init_repo(tmp_path / "repo")
    git(repo, "branch", "step-S1")
    before = set(Path(git_ops.tempfile.gettempdir()).glob(f"{git_ops.WORKTREE_PREFIX}step-S1-*"))
    with pytest.raises(WorktreeCreationFailed) as excinfo:
        git_ops.create_isolated_worktree(repo, "step-S1")
    assert "step-S1" in excinfo.value.output
    after = set(Path(git_ops.tempfile.gettempdir()).glob(f"{git_ops.WORKTREE_PREFIX}step-S1-*"))
    assert after == before


def test_commit_all_excludes_paths_and_adds_note(tmp_path):
    repo = init_repo(tmp_path / "repo")
    wt = git_ops.create_isolated_worktree(repo, "step-S3")
    try:
        work = Path(wt.path)
        (work / "COMMIT.md").write_text("Add feature\n")
        assert not git_ops.has_changes(work, exclude=("COMMIT.md",))
        (work / "feature.txt").write_text("new\n")
        assert git_ops.has_changes(work, exclude=("COMMIT.md",))

        sha = git_ops.commit_all(work, "Add feature", exclude=("COMMIT.md",))
        assert sha == git(work, "rev-parse", "HEAD")
        assert "COMMIT.md" not in git(work, "show", "--name-only", "--format=", "HEAD")
        git_ops.add_note(work, "Step-id: S3")
        assert git(work, "notes", "show", "HEAD") == "Step-id: S3"

        assert git_ops.commit_all(work, "empty", exclude=("COMMIT.md",)) is None
    finally:
        git_ops.remove_worktree(wt)


def test_nested_file_named_like_exclude_counts_as_change(tmp_path):
    repo = init_repo(tmp_path / "repo")
    (repo / "docs").mkdir()
    _commit(repo, "docs/COMMIT.md", "v1\n", "docs")

    (repo / "docs" / "COMMIT.md").write_text("v2\n")
    assert git_ops.has_changes(repo, exclude=("COMMIT.md",))

    git_ops.commit_all(repo, "Update docs", exclude=("COMMIT.md",))
    assert git(repo, "show", "--name-only", "--format=", "HEAD") == "docs/COMMIT.md"


def test_merge_into_returns_new_sha(tmp_path):
    repo = init_repo(tmp_path / "repo")
    git(repo, "checkout", "-b", "feature")
    _commit(repo, "feature.txt", "feature\n", "feature")
    git(repo, "checkout", "-b", "elsewhere")

    sha = git_ops.merge_into(repo, "feature", "main", "Automerge feature into main")
    assert sha == git(repo, "rev-parse", "main")
    assert git_ops.current_branch(repo) == "elsewhere"


def test_merge_conflict_names_branches_and_restores_branch(tmp_path):
    repo = init_repo(tmp_path / "repo")
    git(repo, "checkout", "-b", "feature")
    _commit(repo, "file.txt", "feature version\n", "feature")
    git(repo, "checkout", "main")
    main_sha = _commit(repo, "file.txt", "main version\n", "main change")
    git(repo, "checkout", "-b", "side")

    with pytest.raises(MergeConflict) as excinfo:
        git_ops.merge_into(repo, "feature", "main", "Automerge feature into main")
    assert excinfo.value.source_branch == "feature"
    assert excinfo.value.target_branch == "main"
    assert "CONFLICT" in excinfo.value.output
    assert git_ops.current_branch(repo) == "side"
    assert git(repo, "rev-parse", "main") == main_sha
    assert git(repo, "status", "--porcelain") == ""


def test_reset_hard_validates_sha(tmp_path):
    repo = init_repo(tmp_path / "repo")
    base = git(repo, "rev-parse", "HEAD")
    _commit(repo, "file.txt", "changed\n", "change")

    with pytest.raises(GitError):
        git_ops.reset_hard(repo, "0" * 40)
    git_ops.reset_hard(repo, base)
    assert git(repo, "rev-parse", "HEAD") == base
    assert (repo / "file.txt").read_text() == "original\n"


def test_cleanup_worktrees_only_removes_prefixed(tmp_path):
    repo = init_repo(tmp_path / "repo")
    ours = git_ops.create_isolated_worktree(repo, "step-S9")
    manual = tmp_path / "manual-wt"
    git(repo, "worktree", "add", "-b", "manual", str(manual))

    removed = git_ops.cleanup_worktrees(repo)
    assert [Path(p).resolve() for p in removed] == [Path(ours.path).resolve()]
    assert manual.is_dir()

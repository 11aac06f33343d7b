"""Shared test fixtures: template DB for fast per-test isolation, git helpers, fakes."""

import shutil
import sqlite3
import subprocess
import tempfile
from pathlib import Path

import pytest

from taskforge.config import ForgeConfig
from taskforge.db import get_connection


@pytest.fixture(scope="session")
def _db_template_path() -> Path:
    """Create a single template DB with the full schema applied.

    Copying this file is cheaper than applying the schema in every test.
    """
    fd, path_str = tempfile.mkstemp(suffix=".db")
    path = Path(path_str)
    try:
        conn = get_connection(path)
        conn.close()
        yield path
    finally:
        path.unlink(missing_ok=True)


@pytest.fixture()
def db_conn(tmp_path: Path, _db_template_path: Path) -> sqlite3.Connection:
    """Per-test DB connection with the schema pre-loaded."""
    db_path = tmp_path / "test.db"
    shutil.copy2(_db_template_path, db_path)
    conn = get_connection(db_path)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture()
def forge_config(tmp_path: Path, _db_template_path: Path) -> ForgeConfig:
    """Config for a project at tmp_path/project with a copied template DB."""
    project = tmp_path / "project"
    project.mkdir()
    config = ForgeConfig.for_project(
        project,
        project_id="proj1",
        project_name="proj",
        step_secret="test-secret",
    )
    config.db_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(_db_template_path, config.db_path)
    return config


@pytest.fixture()
def git_identity_env(monkeypatch):
    """Ensure commits succeed without relying on global git config."""
    monkeypatch.setenv("GIT_AUTHOR_NAME", "taskforge-tests")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "taskforge-tests@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "taskforge-tests")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "taskforge-tests@example.com")


def git(cwd: Path, *args: str) -> str:
    return subprocess.run(
        ["git", *args], cwd=str(cwd), check=True, capture_output=True, text=True
    ).stdout.strip()


def init_repo(path: Path) -> Path:
    """A git repo on branch ``main`` with one commit of ``file.txt``."""
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-b", "main")
    (path / "file.txt").write_text("original\n")
    git(path, "add", ".")
    git(path, "commit", "-m", "init")
    return path


class FakeStream:
    def __init__(self, lines):
        self.lines = lines
        self.closed = False

    def __iter__(self):
        yield from self.lines

    def close(self):
        self.closed = True


class FakeRuntime:
    """In-memory ContainerRuntime. ``on_start`` receives the spec, e.g. to edit the work dir."""

    def __init__(self, *, lines=(), exit_code=0, images=("agent:1",), on_start=None):
        self.lines = list(lines)
        self.exit_code = exit_code
        self.images = set(images)
        self.on_start = on_start
        self.pulled: list[str] = []
        self.started = []
        self.stopped: list[str] = []
        self.removed: list[str] = []
        self.streams: list[FakeStream] = []
        self.wait_error: Exception | None = None
        self.start_error: Exception | None = None
        self.pull_error: Exception | None = None

    def image_exists(self, image):
        return image in self.images

    def pull_image(self, image):
        if self.pull_error is not None:
            raise self.pull_error
        self.pulled.append(image)
        self.images.add(image)

    def run_detached(self, spec):
        if self.start_error is not None:
            raise self.start_error
        self.started.append(spec)
        if self.on_start is not None:
            self.on_start(spec)
        return f"cid-{len(self.started)}"

    def follow_logs(self, container_id):
        stream = FakeStream(self.lines)
        self.streams.append(stream)
        return stream

    def wait(self, container_id, timeout):
        if self.wait_error is not None:
            raise self.wait_error
        return self.exit_code

    def stop(self, container_id, grace_seconds=10):
        self.stopped.append(container_id)

    def remove(self, container_id):
        self.removed.append(container_id)

"""Explicit per-project configuration.

Nothing in the library reads the process environment. Entry points (CLI,
JSON API, queue jobs) build a :class:`ForgeConfig` once and pass it down.
"""

from __future__ import annotations

import dataclasses
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from string import Template
from typing import Any

from taskforge.paths import project_state_dir

CONFIG_FILE_NAME = "config.toml"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"

_CONFIG_TEMPLATE = Template(
    """\
# taskforge project configuration
[project]
id = "${project_id}"
name = "${project_name}"
main_branch = "${main_branch}"

[queue]
redis_url = "${redis_url}"

[auth]
step_secret = "${step_secret}"
token_ttl_hours = ${token_ttl_hours}
"""
)

_PATH_FIELDS = ("project_dir", "db_path", "agents_path", "log_dir")


@dataclass(frozen=True)
class ForgeConfig:
    project_dir: Path
    project_id: str
    project_name: str
    db_path: Path
    agents_path: Path
    log_dir: Path
    main_branch: str = "main"
    redis_url: str = DEFAULT_REDIS_URL
    step_secret: str = ""
    token_ttl_hours: int = 24

    @classmethod
    def for_project(cls, project_dir: str | Path, **overrides: Any) -> ForgeConfig:
        """Build a config with the standard ``.taskforge/`` layout under *project_dir*."""
        root = Path(project_dir).resolve()
        state = project_state_dir(root)
        values: dict[str, Any] = {
            "project_dir": root,
            "project_id": root.name,
            "project_name": root.name,
            "db_path": state / "forge.db",
            "agents_path": state / "agents.toml",
            "log_dir": state / "logs",
        }
        values.update(overrides)
        return cls(**values)

    @property
    def config_path(self) -> Path:
        return project_state_dir(self.project_dir) / CONFIG_FILE_NAME

    def to_dict(self) -> dict[str, Any]:
        data = dataclasses.asdict(self)
        for key in _PATH_FIELDS:
            data[key] = str(data[key])
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ForgeConfig:
        values = dict(data)
        for key in _PATH_FIELDS:
            values[key] = Path(values[key])
        return cls(**values)


def _read_toml_file(path: Path) -> dict[str, Any]:
    """Read a TOML file, returning an empty dict when it does not exist."""
    try:
        with path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return {}
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Invalid TOML in {path}: {exc}") from None
    return raw if isinstance(raw, dict) else {}


def load_config(project_dir: str | Path) -> ForgeConfig:
    """Load ``.taskforge/config.toml`` for *project_dir*, falling back to defaults."""
    base = ForgeConfig.for_project(project_dir)
    document = _read_toml_file(base.config_path)
    project = document.get("project") or {}
    queue = document.get("queue") or {}
    auth = document.get("auth") or {}

    overrides: dict[str, Any] = {}
    if project.get("id"):
        overrides["project_id"] = str(project["id"])
    if project.get("name"):
        overrides["project_name"] = str(project["name"])
    if project.get("main_branch"):
        overrides["main_branch"] = str(project["main_branch"])
    if queue.get("redis_url"):
        overrides["redis_url"] = str(queue["redis_url"])
    if auth.get("step_secret"):
        overrides["step_secret"] = str(auth["step_secret"])
    if "token_ttl_hours" in auth:
        overrides["token_ttl_hours"] = int(auth["token_ttl_hours"])
    return dataclasses.replace(base, **overrides)


def apply_env_overrides(config: ForgeConfig, environ: Mapping[str, str]) -> ForgeConfig:
    """Return *config* with ``TASKFORGE_DB_PATH`` / ``TASKFORGE_REDIS_URL`` applied."""
    overrides: dict[str, Any] = {}
    db_path = environ.get("TASKFORGE_DB_PATH")
    if db_path:
        overrides["db_path"] = Path(db_path).expanduser()
    redis_url = environ.get("TASKFORGE_REDIS_URL")
    if redis_url:
        overrides["redis_url"] = redis_url
    return dataclasses.replace(config, **overrides) if overrides else config


def write_config(config: ForgeConfig) -> Path:
    path = config.config_path
    path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    path.write_text(
        _CONFIG_TEMPLATE.substitute(
            project_id=config.project_id,
            project_name=config.project_name,
            main_branch=config.main_branch,
            redis_url=config.redis_url,
            step_secret=config.step_secret,
            token_ttl_hours=config.token_ttl_hours,
        )
    )
    return path

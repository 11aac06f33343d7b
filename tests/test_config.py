"""Tests for project configuration loading and overrides."""

from pathlib import Path

import pytest

from taskforge.config import (
    DEFAULT_REDIS_URL,
    ForgeConfig,
    apply_env_overrides,
    load_config,
    write_config,
)


def test_defaults_without_config_file(tmp_path):
    config = load_config(tmp_path)
    assert config.project_dir == tmp_path.resolve()
    assert config.project_id == tmp_path.name
    assert config.db_path == tmp_path.resolve() / ".taskforge" / "forge.db"
    assert config.main_branch == "main"
    assert config.redis_url == DEFAULT_REDIS_URL
    assert config.step_secret == ""


def test_write_then_load(tmp_path):
    original = ForgeConfig.for_project(
        tmp_path,
        project_id="abc123",
        project_name="demo",
        main_branch="trunk",
        redis_url="redis://cache:6379/2",
        step_secret="s3cret",
        token_ttl_hours=6,
    )
    path = write_config(original)
    assert path == tmp_path.resolve() / ".taskforge" / "config.toml"

    loaded = load_config(tmp_path)
    assert loaded == original


def test_invalid_toml(tmp_path):
    state = tmp_path / ".taskforge"
    state.mkdir()
    (state / "config.toml").write_text("[project\n")
    with pytest.raises(ValueError, match="Invalid TOML"):
        load_config(tmp_path)


def test_env_overrides(tmp_path):
    config = load_config(tmp_path)
    assert apply_env_overrides(config, {}) is config

    updated = apply_env_overrides(
        config,
        {"TASKFORGE_DB_PATH": str(tmp_path / "other.db"), "TASKFORGE_REDIS_URL": "redis://x/1"},
    )
    assert updated.db_path == tmp_path / "other.db"
    assert updated.redis_url == "redis://x/1"
    assert config.redis_url == DEFAULT_REDIS_URL


def test_dict_round_trip_for_queue_jobs(tmp_path):
    config = ForgeConfig.for_project(tmp_path, step_secret="k")
    data = config.to_dict()
    assert isinstance(data["db_path"], str)
    assert ForgeConfig.from_dict(data) == config
    assert isinstance(ForgeConfig.from_dict(data).log_dir, Path)

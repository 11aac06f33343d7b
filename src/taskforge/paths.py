"""Canonical filesystem locations for taskforge state."""

from __future__ import annotations

from pathlib import Path

FORGE_DIR_NAME = ".taskforge"

# Per-user state shared by every project (queue worker logs).
GLOBAL_CONFIG_DIR = Path.home() / ".config" / "taskforge"
WORKER_LOG_DIR = GLOBAL_CONFIG_DIR / "logs"


def project_state_dir(project_dir: str | Path) -> Path:
    return Path(project_dir) / FORGE_DIR_NAME

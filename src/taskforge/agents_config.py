"""Named agent configurations loaded from ``.taskforge/agents.toml``.

An agent bundles the container image, environment, volumes, resource limits,
runtime flags, command and timeout used for one step.
"""

from __future__ import annotations

import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from string import Template
from typing import Any

from taskforge.errors import NotFound

DEFAULT_AGENT_NAME = "default"
DEFAULT_IMAGE = "taskforge-agent:latest"
DEFAULT_WORKING_DIR = "/src"
DEFAULT_TIMEOUT = "30m"
VALID_NETWORK_MODES = {"", "bridge", "host", "none"}
_VOLUME_MODES = {"ro", "rw", "z", "Z"}

_MEMORY_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(b|k|kb|m|mb|g|gb)?$", re.IGNORECASE)
_MEMORY_UNITS = {
    "b": 1,
    "k": 1024,
    "kb": 1024,
    "m": 1024**2,
    "mb": 1024**2,
    "g": 1024**3,
    "gb": 1024**3,
}
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_DURATION_UNITS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


def parse_memory(value: str) -> int:
    """Convert ``512m`` / ``2GB`` / ``1024`` to bytes."""
    match = _MEMORY_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid memory limit '{value}' (expected e.g. 512m, 2g)")
    unit = (match.group(2) or "b").lower()
    return int(float(match.group(1)) * _MEMORY_UNITS[unit])


def parse_duration(value: str) -> float:
    """Convert a duration string such as ``30m``, ``1h30m`` or ``45s`` to seconds."""
    text = value.strip()
    if not text:
        raise ValueError("Empty duration")
    pos = 0
    total = 0.0
    for match in _DURATION_RE.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ValueError(f"Invalid duration '{value}' (expected e.g. 30m, 1h30m, 45s)")
    return total


def validate_volume(spec: str) -> None:
    parts = spec.split(":")
    if len(parts) not in (2, 3) or not parts[0] or not parts[1]:
        raise ValueError(f"Invalid volume '{spec}' (expected host:container[:mode])")
    if len(parts) == 3 and parts[2] not in _VOLUME_MODES:
        raise ValueError(f"Invalid volume mode '{parts[2]}' in '{spec}'")


@dataclass
class ResourceLimits:
    memory: str = ""
    cpu_shares: int = 0
    cpu_limit: float = 0.0
    pids_limit: int = 0


@dataclass
class RuntimeOptions:
    auto_remove: bool = False
    timeout: str = DEFAULT_TIMEOUT
    network_mode: str = ""
    privileged: bool = False
    capabilities: list[str] = field(default_factory=list)
    devices: list[str] = field(default_factory=list)


@dataclass
class AgentConfig:
    name: str
    image: str
    description: str = ""
    environment: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    resources: ResourceLimits = field(default_factory=ResourceLimits)
    runtime: RuntimeOptions = field(default_factory=RuntimeOptions)
    command: list[str] = field(default_factory=list)
    working_dir: str = DEFAULT_WORKING_DIR

    @property
    def timeout_seconds(self) -> float | None:
        return parse_duration(self.runtime.timeout) if self.runtime.timeout else None

    def validate(self) -> None:
        """Raise ValueError naming the agent and the offending field."""
        try:
            if not self.image:
                raise ValueError("image is required")
            for volume in self.volumes:
                validate_volume(volume)
            if self.resources.memory:
                parse_memory(self.resources.memory)
            if self.resources.cpu_shares < 0 or self.resources.pids_limit < 0:
                raise ValueError("resource limits must not be negative")
            if self.runtime.timeout:
                parse_duration(self.runtime.timeout)
            if self.runtime.network_mode not in VALID_NETWORK_MODES:
                raise ValueError(
                    f"network_mode '{self.runtime.network_mode}' must be one of "
                    f"{sorted(VALID_NETWORK_MODES)}"
                )
        except ValueError as exc:
            raise ValueError(f"Agent '{self.name}': {exc}") from None


@dataclass
class AgentsConfig:
    version: str = "1.0"
    default: str = ""
    agents: dict[str, AgentConfig] = field(default_factory=dict)

    def get_default_agent(self) -> AgentConfig | None:
        """The configured default, else the first agent declared."""
        if self.default and self.default in self.agents:
            return self.agents[self.default]
        return next(iter(self.agents.values()), None)


def default_agents_config() -> AgentsConfig:
    agent = AgentConfig(
        name=DEFAULT_AGENT_NAME,
        image=DEFAULT_IMAGE,
        description="Default coding agent",
        resources=ResourceLimits(memory="512m", cpu_shares=512),
        runtime=RuntimeOptions(timeout=DEFAULT_TIMEOUT, network_mode="bridge"),
    )
    return AgentsConfig(default=DEFAULT_AGENT_NAME, agents={DEFAULT_AGENT_NAME: agent})


def _str_list(raw: object, where: str) -> list[str]:
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(item, str) for item in raw):
        raise ValueError(f"{where} must be a list of strings")
    return list(raw)


def _agent_from_table(name: str, table: dict[str, Any]) -> AgentConfig:
    resources = table.get("resources") or {}
    runtime = table.get("runtime") or {}
    command = table.get("command")
    environment = table.get("environment") or {}
    if isinstance(command, str):
        command = command.split()
    agent = AgentConfig(
        name=name,
        image=str(table.get("image", "")),
        description=str(table.get("description", "")),
        environment={str(k): str(v) for k, v in environment.items()},
        volumes=_str_list(table.get("volumes"), f"agents.{name}.volumes"),
        resources=ResourceLimits(
            memory=str(resources.get("memory", "")),
            cpu_shares=int(resources.get("cpu_shares", 0)),
            cpu_limit=float(resources.get("cpu_limit", 0.0)),
            pids_limit=int(resources.get("pids_limit", 0)),
        ),
        runtime=RuntimeOptions(
            auto_remove=bool(runtime.get("auto_remove", False)),
            timeout=str(runtime.get("timeout", DEFAULT_TIMEOUT)),
            network_mode=str(runtime.get("network_mode", "")),
            privileged=bool(runtime.get("privileged", False)),
            capabilities=_str_list(runtime.get("capabilities"), f"agents.{name}.capabilities"),
            devices=_str_list(runtime.get("devices"), f"agents.{name}.devices"),
        ),
        command=_str_list(command, f"agents.{name}.command"),
        working_dir=str(table.get("working_dir") or DEFAULT_WORKING_DIR),
    )
    agent.validate()
    return agent


def parse_agents_config(document: dict[str, Any]) -> AgentsConfig:
    tables = document.get("agents") or {}
    if not isinstance(tables, dict):
        raise ValueError("'agents' must be a table of agent definitions")
    agents = {}
    for name, table in tables.items():
        if not isinstance(table, dict):
            raise ValueError(f"Agent '{name}' must be a table")
        agents[name] = _agent_from_table(name, table)
    default = str(document.get("default", ""))
    if default and default not in agents:
        raise ValueError(f"Default agent '{default}' is not defined")
    return AgentsConfig(version=str(document.get("version", "1.0")), default=default, agents=agents)


def load_agents_config(path: Path) -> AgentsConfig:
    """Load *path*; a missing file yields the built-in default agent."""
    try:
        with path.open("rb") as handle:
            document = tomllib.load(handle)
    except FileNotFoundError:
        return default_agents_config()
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Invalid TOML in {path}: {exc}") from None
    return parse_agents_config(document)


def resolve_agent(agents: AgentsConfig, name: str | None = None) -> AgentConfig:
    """Resolve *name*, or the default agent when *name* is empty."""
    if name:
        agent = agents.agents.get(name)
        if agent is None:
            raise NotFound(f"Agent configuration '{name}' not found")
        return agent
    agent = agents.get_default_agent()
    if agent is None:
        raise NotFound("No agent configurations defined")
    return agent


_AGENT_TEMPLATE = Template(
    """\
[agents.${name}]
image = "${image}"
description = "${description}"
working_dir = "${working_dir}"

[agents.${name}.resources]
memory = "${memory}"
cpu_shares = ${cpu_shares}

[agents.${name}.runtime]
timeout = "${timeout}"
network_mode = "${network_mode}"
"""
)


def render_agents_toml(agents: AgentsConfig) -> str:
    """Render a scaffold ``agents.toml`` for *agents* (core fields only)."""
    sections = [f'version = "{agents.version}"', f'default = "{agents.default}"', ""]
    for agent in agents.agents.values():
        sections.append(
            _AGENT_TEMPLATE.substitute(
                name=agent.name,
                image=agent.image,
                description=agent.description,
                working_dir=agent.working_dir,
                memory=agent.resources.memory,
                cpu_shares=agent.resources.cpu_shares,
                timeout=agent.runtime.timeout,
                network_mode=agent.runtime.network_mode,
            )
        )
    return "\n".join(sections)

"""Run an agent inside a container and harvest metrics from its output.

The container engine sits behind :class:`ContainerRuntime`, a narrow
structural interface. :class:`~taskforge.docker.DockerCLI` implements it by
shelling out to ``docker``; tests pass an in-memory fake.

Lifecycle of one execution::

    create -> start -> (stream_logs || wait) -> cleanup

``cleanup`` runs on every path, including start failures and timeouts.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from taskforge.agents_config import AgentConfig
from taskforge.errors import ContainerError, ContainerTimeout
from taskforge.metrics import TokenUsage, count_errors, count_warnings, extract_token_usage

log = logging.getLogger(__name__)

LOG_DRAIN_TIMEOUT = 5.0
_CLOSE_JOIN_TIMEOUT = 5.0
CONTAINER_NAME_PREFIX = "taskforge-agent"

LogSink = Callable[[str], None]


@dataclass
class ContainerSpec:
    """Everything needed to launch one container, independent of the engine."""

    name: str
    image: str
    environment: dict[str, str] = field(default_factory=dict)
    volumes: list[str] = field(default_factory=list)
    working_dir: str = "/src"
    memory: str = ""
    cpu_shares: int = 0
    cpu_limit: float = 0.0
    pids_limit: int = 0
    network_mode: str = ""
    capabilities: list[str] = field(default_factory=list)
    devices: list[str] = field(default_factory=list)
    privileged: bool = False
    auto_remove: bool = False
    command: list[str] = field(default_factory=list)


@runtime_checkable
class LogStream(Protocol):
    """An iterable of output lines that can be closed from another thread."""

    def __iter__(self) -> Iterator[str]: ...

    def close(self) -> None: ...


@runtime_checkable
class ContainerRuntime(Protocol):
    def image_exists(self, image: str) -> bool: ...

    def pull_image(self, image: str) -> None: ...

    def run_detached(self, spec: ContainerSpec) -> str: ...

    def follow_logs(self, container_id: str) -> LogStream: ...

    def wait(self, container_id: str, timeout: float | None) -> int: ...

    def stop(self, container_id: str, grace_seconds: int = 10) -> None: ...

    def remove(self, container_id: str) -> None: ...


@dataclass
class ContainerMetrics:
    start_time: datetime | None = None
    end_time: datetime | None = None
    exit_code: int | None = None
    log_size: int = 0
    error_count: int = 0
    warning_count: int = 0
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def duration_ms(self) -> int:
        if self.start_time is None or self.end_time is None:
            return 0
        return int((self.end_time - self.start_time).total_seconds() * 1000)


@dataclass
class ContainerHandle:
    spec: ContainerSpec
    timeout: float | None
    container_id: str | None = None
    state: str = "created"
    metrics: ContainerMetrics = field(default_factory=ContainerMetrics)


@dataclass
class RunResult:
    exit_code: int
    logs: str
    metrics: ContainerMetrics


class LogStreamer:
    """Copies a LogStream into a sink and an in-memory buffer on a daemon thread."""

    def __init__(self, stream: LogStream, sink: LogSink | None = None):
        self._stream = stream
        self._sink = sink
        self._lines: list[str] = []
        self._lock = threading.Lock()
        self._stopped = False
        self._thread = threading.Thread(target=self._pump, name="container-logs", daemon=True)

    def start(self) -> LogStreamer:
        self._thread.start()
        return self

    def _pump(self) -> None:
        try:
            for line in self._stream:
                with self._lock:
                    self._lines.append(line)
                if self._sink is not None:
                    try:
                        self._sink(line)
                    except Exception:
                        log.exception("Log sink failed; continuing to buffer output")
        except (OSError, ValueError):
            # Raised when the stream is closed underneath the reader.
            log.debug("Log stream closed", exc_info=True)

    def stop(self, drain_timeout: float = LOG_DRAIN_TIMEOUT) -> None:
        """Give the reader *drain_timeout* seconds to finish, then close the stream.

        Idempotent.
        """
        if self._stopped:
            return
        self._stopped = True
        self._thread.join(timeout=drain_timeout)
        self._stream.close()
        self._thread.join(timeout=_CLOSE_JOIN_TIMEOUT)
        if self._thread.is_alive():
            log.warning("Log reader thread did not exit after close()")

    def text(self) -> str:
        with self._lock:
            return "".join(
                line if line.endswith("\n") else f"{line}\n" for line in self._lines
            )


def build_container_spec(
    agent: AgentConfig,
    work_dir: str | Path,
    *,
    env: Mapping[str, str] | None = None,
    name: str | None = None,
) -> ContainerSpec:
    """Translate an agent configuration into a ContainerSpec.

    The step's work directory is always mounted at the agent's working
    directory, and auto-remove is always off so logs outlive the process.
    """
    environment = dict(agent.environment)
    if env:
        environment.update(env)
    return ContainerSpec(
        name=name or f"{CONTAINER_NAME_PREFIX}-{agent.name}-{int(time.time() * 1000)}",
        image=agent.image,
        environment=environment,
        volumes=[*agent.volumes, f"{Path(work_dir).resolve()}:{agent.working_dir}"],
        working_dir=agent.working_dir,
        memory=agent.resources.memory,
        cpu_shares=agent.resources.cpu_shares,
        cpu_limit=agent.resources.cpu_limit,
        pids_limit=agent.resources.pids_limit,
        network_mode=agent.runtime.network_mode,
        capabilities=list(agent.runtime.capabilities),
        devices=list(agent.runtime.devices),
        privileged=agent.runtime.privileged,
        auto_remove=False,
        command=list(agent.command),
    )


class AgentRunner:
    def __init__(
        self, runtime: ContainerRuntime | None = None, *, drain_timeout: float = LOG_DRAIN_TIMEOUT
    ):
        if runtime is None:
            from taskforge.docker import DockerCLI

            runtime = DockerCLI()
        self.runtime = runtime
        self.drain_timeout = drain_timeout

    def create(
        self,
        agent: AgentConfig,
        work_dir: str | Path,
        *,
        env: Mapping[str, str] | None = None,
    ) -> ContainerHandle:
        """Resolve the image (pulling it if absent) and prepare a handle.

        Raises ImageUnavailable when the image cannot be found or pulled.
        """
        spec = build_container_spec(agent, work_dir, env=env)
        if not self.runtime.image_exists(spec.image):
            log.info("Image %s not present locally, pulling", spec.image)
            self.runtime.pull_image(spec.image)
        return ContainerHandle(spec=spec, timeout=agent.timeout_seconds)

    def start(self, handle: ContainerHandle) -> None:
        handle.metrics.start_time = datetime.now(UTC)
        try:
            handle.container_id = self.runtime.run_detached(handle.spec)
        except ContainerError:
            handle.state = "failed"
            raise
        handle.state = "started"
        log.info("Started container %s (%s)", handle.spec.name, handle.container_id)

    def stream_logs(self, handle: ContainerHandle, sink: LogSink | None = None) -> LogStreamer:
        if handle.container_id is None:
            raise ContainerError(f"Container {handle.spec.name} has not been started")
        return LogStreamer(self.runtime.follow_logs(handle.container_id), sink).start()

    def wait(self, handle: ContainerHandle, timeout: float | None = None) -> int:
        """Block until the container exits; raises ContainerTimeout when it overruns."""
        if handle.container_id is None:
            raise ContainerError(f"Container {handle.spec.name} has not been started")
        effective = timeout if timeout is not None else handle.timeout
        try:
            exit_code = self.runtime.wait(handle.container_id, effective)
        except ContainerError:
            handle.state = "failed"
            raise
        finally:
            handle.metrics.end_time = datetime.now(UTC)
        handle.metrics.exit_code = exit_code
        handle.state = "completed"
        return exit_code

    def cleanup(self, handle: ContainerHandle) -> None:
        """Stop then remove the container. Never raises."""
        if handle.container_id is not None:
            try:
                self.runtime.stop(handle.container_id)
            except ContainerError as exc:
                log.debug("Stop %s: %s", handle.container_id, exc)
            try:
                self.runtime.remove(handle.container_id)
            except ContainerError as exc:
                log.warning(
                    "Failed to remove container %s: %s %s", handle.container_id, exc, exc.output
                )
        handle.state = "cleaned_up"

    def run(
        self,
        agent: AgentConfig,
        work_dir: str | Path,
        sink: LogSink | None = None,
        *,
        env: Mapping[str, str] | None = None,
    ) -> RunResult:
        """create -> start -> stream/wait -> cleanup, then derive metrics from the logs.

        On timeout the container is stopped and removed before ContainerTimeout
        propagates; the captured output is attached to the error.
        """
        handle = self.create(agent, work_dir, env=env)
        streamer: LogStreamer | None = None
        try:
            self.start(handle)
            streamer = self.stream_logs(handle, sink)
            try:
                exit_code = self.wait(handle)
            except ContainerTimeout as exc:
                streamer.stop(drain_timeout=0)
                exc.output = streamer.text()
                raise
            streamer.stop(self.drain_timeout)
        finally:
            if streamer is not None and handle.state == "failed":
                streamer.stop(drain_timeout=0)
            self.cleanup(handle)

        logs = streamer.text()
        metrics = handle.metrics
        metrics.log_size = len(logs)
        metrics.error_count = count_errors(logs)
        metrics.warning_count = count_warnings(logs)
        metrics.token_usage = extract_token_usage(logs)
        return RunResult(exit_code=exit_code, logs=logs, metrics=metrics)

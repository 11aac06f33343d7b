"""ContainerRuntime implementation that shells out to the ``docker`` CLI."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Iterator

from taskforge.errors import (
    ContainerError,
    ContainerStartFailed,
    ContainerTimeout,
    ImageUnavailable,
)
from taskforge.runner import ContainerSpec

log = logging.getLogger(__name__)

_ALREADY_GONE = ("No such container", "is not running")


def _output(exc: subprocess.CalledProcessError) -> str:
    return f"{exc.stdout or ''}{exc.stderr or ''}".strip()


def _with_default_tag(image: str) -> str:
    """``ubuntu`` -> ``ubuntu:latest``; tagged, digest and registry:port refs keep their tag."""
    if "@" in image or ":" in image.rsplit("/", 1)[-1]:
        return image
    return f"{image}:latest"


class _ProcessLogStream:
    """Lines from a ``docker logs -f`` process; close() kills the process."""

    def __init__(self, proc: subprocess.Popen[str]):
        self._proc = proc

    def __iter__(self) -> Iterator[str]:
        assert self._proc.stdout is not None
        yield from self._proc.stdout

    def close(self) -> None:
        if self._proc.poll() is None:
            self._proc.kill()
        try:
            self._proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            log.warning("docker logs process %d did not exit after kill", self._proc.pid)
        if self._proc.stdout is not None:
            self._proc.stdout.close()


def build_run_args(spec: ContainerSpec) -> list[str]:
    """The ``docker run -d`` argument list for *spec*."""
    args = ["run", "-d", "--name", spec.name]
    for key, value in spec.environment.items():
        args += ["-e", f"{key}={value}"]
    for volume in spec.volumes:
        args += ["-v", volume]
    args += ["-w", spec.working_dir or "/src"]
    if spec.memory:
        args += ["-m", spec.memory]
    if spec.cpu_shares:
        args += ["-c", str(spec.cpu_shares)]
    if spec.cpu_limit:
        args += ["--cpus", str(spec.cpu_limit)]
    if spec.pids_limit:
        args += ["--pids-limit", str(spec.pids_limit)]
    if spec.network_mode:
        args += ["--network", spec.network_mode]
    for capability in spec.capabilities:
        args += ["--cap-add", capability]
    for device in spec.devices:
        args += ["--device", device]
    if spec.auto_remove:
        args.append("--rm")
    if spec.privileged:
        args.append("--privileged")
    args.append(spec.image)
    args += spec.command
    return args


class DockerCLI:
    def __init__(self, executable: str = "docker"):
        self.executable = executable

    def _run(
        self, args: list[str], *, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.run(
            [self.executable, *args],
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout,
        )

    def image_exists(self, image: str) -> bool:
        try:
            result = self._run(["images", "--format", "{{.Repository}}:{{.Tag}}"])
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            output = _output(e) if isinstance(e, subprocess.CalledProcessError) else str(e)
            raise ImageUnavailable(f"Cannot list images for {image}", output=output) from None
        return _with_default_tag(image) in {line.strip() for line in result.stdout.splitlines()}

    def pull_image(self, image: str) -> None:
        try:
            self._run(["pull", image])
        except subprocess.CalledProcessError as e:
            raise ImageUnavailable(f"Failed to pull image {image}", output=_output(e)) from None
        except FileNotFoundError as e:
            raise ImageUnavailable(f"Failed to pull image {image}", output=str(e)) from None

    def run_detached(self, spec: ContainerSpec) -> str:
        try:
            result = self._run(build_run_args(spec))
        except subprocess.CalledProcessError as e:
            raise ContainerStartFailed(
                f"Failed to start container {spec.name}", output=_output(e)
            ) from None
        except FileNotFoundError as e:
            raise ContainerStartFailed(
                f"Failed to start container {spec.name}", output=str(e)
            ) from None
        return result.stdout.strip()

    def follow_logs(self, container_id: str) -> _ProcessLogStream:
        proc = subprocess.Popen(
            [self.executable, "logs", "-f", container_id],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors="replace",
        )
        return _ProcessLogStream(proc)

    def wait(self, container_id: str, timeout: float | None) -> int:
        try:
            result = self._run(["wait", container_id], timeout=timeout)
        except subprocess.TimeoutExpired:
            raise ContainerTimeout(
                f"Container {container_id} did not exit within {timeout:.0f}s"
            ) from None
        except subprocess.CalledProcessError as e:
            raise ContainerError(
                f"Failed waiting for container {container_id}", output=_output(e)
            ) from None
        try:
            return int(result.stdout.strip().splitlines()[-1])
        except (IndexError, ValueError):
            raise ContainerError(
                f"Unexpected 'docker wait' output for {container_id}", output=result.stdout
            ) from None

    def stop(self, container_id: str, grace_seconds: int = 10) -> None:
        try:
            self._run(["stop", "-t", str(grace_seconds), container_id])
        except subprocess.CalledProcessError as e:
            output = _output(e)
            if any(marker in output for marker in _ALREADY_GONE):
                return
            raise ContainerError(f"Failed to stop container {container_id}", output=output) from None

    def remove(self, container_id: str) -> None:
        try:
            self._run(["rm", "-f", container_id])
        except subprocess.CalledProcessError as e:
            output = _output(e)
            if "No such container" in output:
                return
            raise ContainerError(
                f"Failed to remove container {container_id}", output=output
            ) from None

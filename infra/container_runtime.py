"""Read-only container runtime introspection.

The supervisor only ever asks two questions of the runtime: "is this
container running?" and "what did it log recently?". Both go through the
:class:`ContainerRuntime` protocol so tests can supply a fake and a native
API client can replace the Docker CLI without touching the scan.

Failures never raise: they come back as ``supported=False`` with a reason.
"""
from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

CONTAINER_NAME_RE = re.compile(r"^[a-zA-Z0-9_.-]+$")
DEFAULT_TIMEOUT = 20.0


@dataclass(frozen=True)
class ContainerState:
    """Result of an inspect query."""

    supported: bool
    container: str | None = None
    running: bool | None = None
    state: str | None = None
    reason: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class ContainerLogs:
    """Result of a tail-logs query."""

    supported: bool
    container: str | None = None
    since: str | None = None
    text: str = ""
    reason: str | None = None
    error: str | None = None


@runtime_checkable
class ContainerRuntime(Protocol):
    """Capability interface over a container runtime."""

    def inspect(self, name: str) -> ContainerState:
        """Return the running state of container *name*."""
        ...

    def tail_logs(self, name: str, since: str, tail: int) -> ContainerLogs:
        """Return log output of *name* since the ISO timestamp *since*."""
        ...


def check_container_name(name: str | None) -> tuple[str | None, str | None]:
    """Return ``(container, reason)``; reason is set when *name* is unusable."""
    container = str(name or "").strip()
    if not container:
        return None, "no_container"
    if not CONTAINER_NAME_RE.match(container):
        return container, "invalid_container_name"
    return container, None


class DockerCliRuntime:
    """:class:`ContainerRuntime` backed by the ``docker`` CLI.

    Parameters
    ----------
    timeout:
        Seconds to wait for each CLI call before treating it as failed.
    docker_bin:
        Executable name or path of the Docker CLI.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, docker_bin: str = "docker") -> None:
        self._timeout = timeout
        self._docker = docker_bin

    # -- ContainerRuntime interface -------------------------------------------

    def inspect(self, name: str) -> ContainerState:
        container, reason = check_container_name(name)
        if reason:
            return ContainerState(supported=False, container=container, reason=reason)

        ok, stdout, err = self._run(
            ["inspect", "-f", "{{.State.Status}}\t{{.State.Running}}", container]
        )
        if not ok:
            return ContainerState(
                supported=False,
                container=container,
                reason="docker_inspect_failed",
                error=err or None,
            )

        state_raw, _, running_raw = stdout.strip().partition("\t")
        running_key = running_raw.strip().lower()
        running: bool | None = None
        if running_key == "true":
            running = True
        elif running_key == "false":
            running = False
        return ContainerState(
            supported=True,
            container=container,
            running=running,
            state=state_raw.strip().lower() or None,
        )

    def tail_logs(self, name: str, since: str, tail: int) -> ContainerLogs:
        container, reason = check_container_name(name)
        if reason:
            return ContainerLogs(supported=False, container=container, reason=reason)

        # stderr is part of the log stream for docker logs
        ok, output, err = self._run(
            ["logs", "--since", since, "--tail", str(int(tail)), container],
            merge_stderr=True,
        )
        if not ok:
            return ContainerLogs(
                supported=False,
                container=container,
                since=since,
                reason="docker_logs_failed",
                error=err or output.strip() or None,
            )
        return ContainerLogs(supported=True, container=container, since=since, text=output)

    # -- Internals ------------------------------------------------------------

    def _run(self, args: list[str], merge_stderr: bool = False) -> tuple[bool, str, str]:
        try:
            proc = subprocess.run(
                [self._docker, *args],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if merge_stderr else subprocess.PIPE,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning("docker %s timed out after %.1fs", args[0], self._timeout)
            return False, "", f"timeout after {self._timeout:g}s"
        except OSError as exc:
            logger.warning("docker %s could not start: %s", args[0], exc)
            return False, "", str(exc)
        if proc.returncode != 0:
            err = (proc.stderr or "").strip() or f"exit_code={proc.returncode}"
            return False, proc.stdout or "", err
        return True, proc.stdout or "", ""

"""Command executors.

An executor runs one shell command on one host and either returns a
``CommandResult`` or raises ``RemoteExecutionError``. The deployer never
opens connections itself; ``SSHExecutor`` shells out to the system ``ssh``.
"""

from __future__ import annotations

import abc
import shlex
import subprocess
import threading
from typing import Mapping, NamedTuple, Sequence

from .errors import RemoteExecutionError
from .logging import get_logger


log = get_logger("deployer.executor")

LOCAL_HOSTS = {"localhost", "127.0.0.1", "local"}

# ssh reserves 255 for its own failures (unreachable host, auth, ...)
SSH_CONNECTION_FAILURE = 255


class CommandResult(NamedTuple):
    stdout: str
    exit_code: int


def build_command(
    command: str, env: Mapping[str, str] | None = None, cwd: str | None = None
) -> str:
    """Wrap ``command`` with exported variables and an optional ``cd``."""
    parts = []
    if env:
        assigns = " ".join(f"{k}={shlex.quote(str(v))}" for k, v in env.items())
        parts.append(f"export {assigns};")
    if cwd:
        parts.append(f"cd {shlex.quote(cwd)} &&")
    parts.append(command)
    return " ".join(parts)


class RemoteExecutor(abc.ABC):
    """Base executor: holds the environment exported before every command."""

    def __init__(self, env: Mapping[str, str] | None = None, timeout: float | None = None):
        self.env = dict(env or {})
        self.timeout = timeout

    @abc.abstractmethod
    def execute(self, host: str, command: str, cwd: str | None = None) -> CommandResult:
        """Run ``command`` on ``host``; raise ``RemoteExecutionError`` on failure."""

    def _run(self, host: str, argv: Sequence[str], command: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                list(argv),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise RemoteExecutionError(host, command, None, stderr=str(e)) from e


class SSHExecutor(RemoteExecutor):
    def __init__(
        self,
        env: Mapping[str, str] | None = None,
        options: Sequence[str] = (),
        ssh_binary: str = "ssh",
        timeout: float | None = None,
    ):
        super().__init__(env=env, timeout=timeout)
        self.options = list(options)
        self.ssh_binary = ssh_binary

    def argv(self, host: str, remote_command: str) -> list[str]:
        return [self.ssh_binary, *self.options, host, remote_command]

    def execute(self, host: str, command: str, cwd: str | None = None) -> CommandResult:
        remote_command = build_command(command, self.env, cwd)
        log.debug("%s $ %s", host, remote_command)
        proc = self._run(host, self.argv(host, remote_command), command)
        if proc.returncode == SSH_CONNECTION_FAILURE:
            raise RemoteExecutionError(host, command, None, proc.stdout, proc.stderr)
        if proc.returncode != 0:
            raise RemoteExecutionError(
                host, command, proc.returncode, proc.stdout, proc.stderr
            )
        return CommandResult(proc.stdout, proc.returncode)


class LocalExecutor(RemoteExecutor):
    """Runs commands through ``sh -c`` on this machine."""

    def execute(self, host: str, command: str, cwd: str | None = None) -> CommandResult:
        full = build_command(command, self.env, cwd)
        log.debug("%s $ %s", host, full)
        proc = self._run(host, ["sh", "-c", full], command)
        if proc.returncode != 0:
            raise RemoteExecutionError(
                host, command, proc.returncode, proc.stdout, proc.stderr
            )
        return CommandResult(proc.stdout, proc.returncode)


class HostRouter(RemoteExecutor):
    """Sends local host names to a ``LocalExecutor`` and the rest over ssh."""

    def __init__(self, remote: RemoteExecutor, local: RemoteExecutor):
        super().__init__(env=remote.env, timeout=remote.timeout)
        self.remote = remote
        self.local = local

    def execute(self, host: str, command: str, cwd: str | None = None) -> CommandResult:
        target = self.local if host in LOCAL_HOSTS else self.remote
        return target.execute(host, command, cwd=cwd)


class DryRunExecutor(RemoteExecutor):
    """Logs and records commands without running them."""

    def __init__(self, env: Mapping[str, str] | None = None):
        super().__init__(env=env)
        self.commands: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def execute(self, host: str, command: str, cwd: str | None = None) -> CommandResult:
        full = build_command(command, self.env, cwd)
        with self._lock:
            self.commands.append((host, full))
        log.info("[dry-run] %s $ %s", host, full)
        return CommandResult("", 0)


def executor_from_config(config: dict, dry_run: bool = False) -> RemoteExecutor:
    env = config.get("default_environment") or {}
    if dry_run:
        return DryRunExecutor(env=env)
    ssh_cfg = config.get("ssh") or {}
    remote = SSHExecutor(
        env=env,
        options=ssh_cfg.get("options", []),
        ssh_binary=ssh_cfg.get("binary", "ssh"),
        timeout=ssh_cfg.get("timeout"),
    )
    return HostRouter(remote=remote, local=LocalExecutor(env=env, timeout=remote.timeout))

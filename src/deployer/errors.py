"""Exception hierarchy for deployments.

``ConfigError`` is raised before any remote command runs. Remote failures
surface as ``RemoteExecutionError`` (one host) or ``PartialFailureError``
(some hosts of a task succeeded, others did not).
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .core import TaskResult


class DeployError(Exception):
    """Base class for everything the deployer raises on purpose."""


class ConfigError(DeployError):
    pass


class DuplicateTaskError(ConfigError):
    def __init__(self, name: str):
        super().__init__(f"Task already defined: {name}")
        self.name = name


class RemoteExecutionError(DeployError):
    """A command failed on a host.

    ``exit_code`` is ``None`` when the host could not be reached at all.
    """

    def __init__(
        self,
        host: str,
        command: str,
        exit_code: int | None,
        stdout: str = "",
        stderr: str = "",
    ):
        self.host = host
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        if exit_code is None:
            reason = "connection failed"
        else:
            reason = f"exit status {exit_code}"
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        msg = f"{host}: `{command}` failed ({reason})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)

    @property
    def connection_failed(self) -> bool:
        return self.exit_code is None


class PartialFailureError(DeployError):
    def __init__(self, result: "TaskResult"):
        self.result = result
        self.task = result.task
        failed = ", ".join(r.host for r in result.failed)
        super().__init__(f"Task {result.task} failed on: {failed}")

    @property
    def failed_hosts(self) -> list[str]:
        return [r.host for r in self.result.failed]

    @property
    def succeeded_hosts(self) -> list[str]:
        return [r.host for r in self.result.succeeded]

"""Deploy-hook orchestrator.

Provides a task catalog, before/after hook registry, per-host fan-out over a
bounded worker pool, and a Typer CLI that walks the deployment lifecycle.
"""

from .core import (  # re-export for convenience
    Deployment,
    HookRegistry,
    HostContext,
    Phase,
    TaskCatalog,
    TaskResult,
    TaskSpec,
    task,
)
from .errors import (
    ConfigError,
    DeployError,
    DuplicateTaskError,
    PartialFailureError,
    RemoteExecutionError,
)

__all__ = [
    "Deployment",
    "HookRegistry",
    "HostContext",
    "Phase",
    "TaskCatalog",
    "TaskResult",
    "TaskSpec",
    "task",
    "ConfigError",
    "DeployError",
    "DuplicateTaskError",
    "PartialFailureError",
    "RemoteExecutionError",
]

from __future__ import annotations

import json
import os
import shlex
import sys
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import ModuleType
from typing import Callable, Iterable, Iterator

from . import config as config_mod
from .digest import sequence_digest
from .errors import (
    ConfigError,
    DeployError,
    DuplicateTaskError,
    PartialFailureError,
    RemoteExecutionError,
)
from .executor import CommandResult, RemoteExecutor
from .logging import close_file_log, get_logger
from .utils import application, new_release_id


LIFECYCLE = [
    "deploy:starting",
    "deploy:started",
    "deploy:updating",
    "deploy:updated",
    "deploy:publishing",
    "deploy:published",
    "deploy:finishing",
    "deploy:finished",
]


@dataclass(frozen=True)
class TaskSpec:
    name: str
    fn: Callable[["HostContext"], None]
    roles: tuple[str, ...] = (config_mod.ALL_ROLE,)
    description: str = ""


def task(name: str, roles: Iterable[str] = (config_mod.ALL_ROLE,), description: str | None = None):
    """Decorator to declare a deploy task on a function.

    The wrapped function receives a single ``HostContext`` and is called once
    per host of ``roles``. Raising aborts the task on that host.
    """

    def deco(fn: Callable[["HostContext"], None]):
        desc = description
        if desc is None:
            lines = (fn.__doc__ or "").strip().splitlines()
            desc = lines[0] if lines else ""
        spec = TaskSpec(name=name, fn=fn, roles=tuple(roles), description=desc)
        setattr(fn, "_task_spec", spec)
        return fn

    return deco


class HostContext:
    """What a task sees while running on one host."""

    def __init__(self, host: str, params: dict, executor: RemoteExecutor):
        self.host = host
        self.params = params
        self.executor = executor
        self._cwd: str | None = None

    def execute(self, *args) -> CommandResult:
        """Run a command on this host.

        The first argument is passed through as shell text; the rest are
        quoted, so paths with spaces stay one word.
        """
        head, *rest = [str(a) for a in args]
        command = " ".join([head] + [shlex.quote(a) for a in rest])
        return self.executor.execute(self.host, command, cwd=self._cwd)

    def capture(self, *args) -> str:
        return self.execute(*args).stdout.strip()

    def test(self, *args) -> bool:
        """Run a command and report whether it exited 0.

        Connection failures still raise.
        """
        try:
            self.execute(*args)
        except RemoteExecutionError as e:
            if e.connection_failed:
                raise
            return False
        return True

    @contextmanager
    def within(self, path: str) -> Iterator["HostContext"]:
        prev = self._cwd
        self._cwd = path
        try:
            yield self
        finally:
            self._cwd = prev


class HostStatus(str, Enum):
    OK = "ok"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class HostResult:
    host: str
    status: HostStatus
    error: BaseException | None = None
    duration: float = 0.0

    def as_dict(self) -> dict:
        out = {"host": self.host, "status": self.status.value}
        if self.error is not None:
            out["error"] = str(self.error)
        return out


@dataclass
class TaskResult:
    task: str
    results: list[HostResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def failed(self) -> list[HostResult]:
        return [r for r in self.results if r.status is HostStatus.FAILED]

    @property
    def succeeded(self) -> list[HostResult]:
        return [r for r in self.results if r.status is HostStatus.OK]

    @property
    def skipped(self) -> list[HostResult]:
        return [r for r in self.results if r.status is HostStatus.SKIPPED]

    def raise_for_status(self) -> None:
        if not self.failed:
            return
        if self.succeeded:
            raise PartialFailureError(self)
        first = self.failed[0]
        if isinstance(first.error, DeployError):
            raise first.error
        raise DeployError(
            f"Task {self.task} failed on {first.host}: {first.error}"
        ) from first.error


class TaskCatalog:
    def __init__(self):
        self._tasks: dict[str, TaskSpec] = {}
        self.logger = get_logger("deployer.catalog")

    def __contains__(self, name: str) -> bool:
        return name in self._tasks

    def __len__(self) -> int:
        return len(self._tasks)

    def names(self) -> list[str]:
        return sorted(self._tasks)

    def define(
        self,
        name: str,
        fn: Callable[[HostContext], None],
        roles: Iterable[str] = (config_mod.ALL_ROLE,),
        description: str = "",
    ) -> TaskSpec:
        return self.add(TaskSpec(name=name, fn=fn, roles=tuple(roles), description=description))

    def add(self, spec: TaskSpec) -> TaskSpec:
        if spec.name in self._tasks:
            raise DuplicateTaskError(spec.name)
        self._tasks[spec.name] = spec
        return spec

    def register_module(self, mod: ModuleType) -> list[str]:
        """Add every ``@task`` decorated function found on a module."""
        added = []
        for attr_name in dir(mod):
            spec = getattr(getattr(mod, attr_name), "_task_spec", None)
            if isinstance(spec, TaskSpec):
                self.add(spec)
                added.append(spec.name)
        return added

    def get(self, name: str) -> TaskSpec:
        try:
            return self._tasks[name]
        except KeyError:
            raise ConfigError(f"Unknown task: {name}") from None

    def invoke(
        self,
        name: str,
        hosts: Iterable[str],
        executor: RemoteExecutor,
        params: dict | None = None,
        max_workers: int = 1,
    ) -> TaskResult:
        """Run a task once per host on a bounded worker pool.

        At most ``max_workers`` hosts are in flight. After the first failure
        no further host is dispatched; those report ``skipped``. Hosts already
        in flight run to completion.
        """
        spec = self.get(name)
        hosts = list(hosts)
        params = params or {}
        if not hosts:
            self.logger.warning("Task %s has no hosts to run on", name)
            return TaskResult(task=name)

        def run_one(host: str) -> HostResult:
            started = time.monotonic()
            ctx = HostContext(host, params, executor)
            try:
                spec.fn(ctx)
            except Exception as e:  # noqa: BLE001
                self.logger.error("%s failed on %s: %s", name, host, e)
                return HostResult(host, HostStatus.FAILED, e, time.monotonic() - started)
            elapsed = time.monotonic() - started
            self.logger.debug("%s ok on %s (%.2fs)", name, host, elapsed)
            return HostResult(host, HostStatus.OK, None, elapsed)

        results: list[HostResult | None] = [None] * len(hosts)
        queue = iter(enumerate(hosts))
        in_flight = {}
        failed = False
        workers = max(1, min(max_workers, len(hosts)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"task-{name}") as pool:

            def dispatch() -> None:
                while not failed and len(in_flight) < workers:
                    nxt = next(queue, None)
                    if nxt is None:
                        return
                    idx, host = nxt
                    in_flight[pool.submit(run_one, host)] = idx

            dispatch()
            while in_flight:
                done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for fut in done:
                    idx = in_flight.pop(fut)
                    res = fut.result()
                    results[idx] = res
                    if res.status is HostStatus.FAILED:
                        failed = True
                dispatch()

        return TaskResult(
            task=name,
            results=[
                r if r is not None else HostResult(hosts[i], HostStatus.SKIPPED)
                for i, r in enumerate(results)
            ],
        )


class Phase(str, Enum):
    BEFORE = "before"
    AFTER = "after"


@dataclass(frozen=True)
class HookBinding:
    event: str
    phase: Phase
    task_name: str


def topo_sort(nodes: Iterable[str], edges: Iterable[tuple[str, str]]) -> list[str]:
    nodes = list(dict.fromkeys(nodes))
    incoming = {n: set() for n in nodes}
    outgoing = {n: set() for n in nodes}
    for u, v in edges:
        if u not in incoming or v not in incoming:
            raise ValueError(f"Edge references unknown node: {(u, v)}")
        outgoing[u].add(v)
        incoming[v].add(u)
    ordered: list[str] = []
    roots = [n for n in nodes if not incoming[n]]
    while roots:
        n = roots.pop()
        ordered.append(n)
        for m in list(outgoing[n]):
            incoming[m].discard(n)
            outgoing[n].discard(m)
            if not incoming[m]:
                roots.append(m)
    if any(incoming[n] for n in nodes):
        stuck = sorted(n for n in nodes if incoming[n])
        raise ConfigError(f"Hook cycle between: {', '.join(stuck)}")
    return ordered


class HookRegistry:
    """Ordered ``before``/``after`` bindings from events to task names.

    When built with a catalog, registering an unknown task fails right away.
    """

    def __init__(self, catalog: TaskCatalog | None = None):
        self.catalog = catalog
        self._bindings: list[HookBinding] = []

    @classmethod
    def from_config(cls, entries: list, catalog: TaskCatalog | None = None) -> "HookRegistry":
        """Build from entries like ``{"after": "deploy:updated", "task": "amber:rebuild"}``."""
        reg = cls(catalog=catalog)
        if not isinstance(entries, list):
            raise ConfigError("hooks must be a list")
        for entry in entries:
            if not isinstance(entry, dict) or "task" not in entry:
                raise ConfigError(f"Malformed hook entry: {entry!r}")
            phases = [p for p in Phase if p.value in entry]
            if len(phases) != 1:
                raise ConfigError(
                    f"Hook entry needs exactly one of before/after: {entry!r}"
                )
            reg.register(entry[phases[0].value], phases[0], entry["task"])
        return reg

    @property
    def bindings(self) -> list[HookBinding]:
        return list(self._bindings)

    def register(self, event: str, phase: Phase | str, task_name: str) -> HookBinding:
        try:
            phase = Phase(phase)
        except ValueError:
            raise ConfigError(f"Unknown hook phase: {phase!r}") from None
        if not event or not task_name:
            raise ConfigError("Hook needs both an event and a task name")
        if self.catalog is not None and task_name not in self.catalog:
            raise ConfigError(f"Hook {phase.value} {event} references unknown task: {task_name}")
        binding = HookBinding(event=event, phase=phase, task_name=task_name)
        self._bindings.append(binding)
        return binding

    def before(self, event: str, task_name: str) -> HookBinding:
        return self.register(event, Phase.BEFORE, task_name)

    def after(self, event: str, task_name: str) -> HookBinding:
        return self.register(event, Phase.AFTER, task_name)

    def resolve(self, event: str, phase: Phase | str) -> list[str]:
        phase = Phase(phase)
        return [
            b.task_name for b in self._bindings if b.event == event and b.phase is phase
        ]

    def events(self) -> list[str]:
        return list(dict.fromkeys(b.event for b in self._bindings))

    def validate(self, catalog: TaskCatalog) -> None:
        unknown = [b for b in self._bindings if b.task_name not in catalog]
        if unknown:
            names = ", ".join(
                f"{b.phase.value} {b.event} -> {b.task_name}" for b in unknown
            )
            raise ConfigError(f"Hooks reference unknown tasks: {names}")
        nodes = [b.event for b in self._bindings] + [b.task_name for b in self._bindings]
        topo_sort(nodes, [(b.event, b.task_name) for b in self._bindings])


class Deployment:
    """Runs the lifecycle for one stage.

    Construction validates hooks and task roles, so configuration problems
    surface before any command reaches a host.
    """

    def __init__(
        self,
        catalog: TaskCatalog,
        hooks: HookRegistry,
        executor: RemoteExecutor,
        config: dict,
        lifecycle: list[str] | None = None,
        release_id: str | None = None,
    ):
        self.catalog = catalog
        self.hooks = hooks
        self.executor = executor
        self.config = config
        self.lifecycle = list(lifecycle or LIFECYCLE)
        self.name = application(config)
        self.stage = config.get("stage", "default")
        self.max_workers = int(config.get("max_workers", 1))
        self.release_id = release_id or new_release_id()
        self.logger = get_logger(f"deployer.{self.stage}")

        hooks.validate(catalog)
        roles = config.get("roles") or {}
        self._hosts: dict[str, list[str]] = {}
        for name in self._reachable():
            spec = catalog.get(name)
            self._hosts[name] = config_mod.hosts_for(roles, spec.roles)

        self.sequence: list[dict] = []

    def _reachable(self) -> list[str]:
        names = [n for n in self.lifecycle if n in self.catalog]
        names += [b.task_name for b in self.hooks.bindings]
        return list(dict.fromkeys(names))

    def hosts_for(self, name: str) -> list[str]:
        if name not in self._hosts:
            spec = self.catalog.get(name)
            self._hosts[name] = config_mod.hosts_for(self.config.get("roles") or {}, spec.roles)
        return self._hosts[name]

    def params(self, run_id: str) -> dict:
        params = dict(self.config)
        params["runtime"] = {
            "run_id": run_id,
            "release": self.release_id,
            "stage": self.stage,
        }
        return params

    def run(self) -> list[dict]:
        """Walk the whole lifecycle; returns the invocation sequence."""
        return self._execute(self.lifecycle)

    def invoke(self, name: str) -> list[dict]:
        """Run one task together with the hooks bound to it."""
        self.catalog.get(name)
        return self._execute([name])

    def _execute(self, names: list[str]) -> list[dict]:
        run_id = time.strftime("%Y%m%d-%H%M%S")
        run_dir = None
        run_log = None
        if self.config.get("runs_dir"):
            run_dir = Path(self.config["runs_dir"]) / self.name / run_id
            os.makedirs(run_dir, exist_ok=True)
            # Everything under the deployer namespace goes to the run's log
            run_log = get_logger("deployer", log_file=run_dir / "deploy.log")
        try:
            return self._execute_in(names, run_id, run_dir)
        finally:
            if run_log is not None:
                close_file_log(run_log)

    def _execute_in(self, names: list[str], run_id: str, run_dir: Path | None) -> list[dict]:
        params = self.params(run_id)
        self.sequence = []
        state = {
            "application": self.name,
            "stage": self.stage,
            "run_id": run_id,
            "release": self.release_id,
            "sequence": self.sequence,
            "python": sys.version,
        }
        self.logger.info(
            "Deploying %s to %s (release %s)", self.name, self.stage, self.release_id
        )
        try:
            for name in names:
                self._run_event(name, params, via=None, run_dir=run_dir, state=state)
        except DeployError as e:
            state["status"] = "error"
            state["error"] = str(e)
            _write_state(run_dir, state)
            raise
        state["status"] = "ok"
        _write_state(run_dir, state)
        self.logger.info("Deployment of %s to %s finished", self.name, self.stage)
        return self.sequence

    def _run_event(self, name: str, params: dict, via: str | None, run_dir, state: dict) -> None:
        for t in self.hooks.resolve(name, Phase.BEFORE):
            self._run_event(t, params, f"before {name}", run_dir, state)
        if name in self.catalog:
            self._invoke(name, params, via, run_dir, state)
        else:
            self.logger.debug("Event: %s", name)
            self.sequence.append({"kind": "event", "name": name, "via": via})
        for t in self.hooks.resolve(name, Phase.AFTER):
            self._run_event(t, params, f"after {name}", run_dir, state)

    def _invoke(self, name: str, params: dict, via: str | None, run_dir, state: dict) -> None:
        hosts = self.hosts_for(name)
        task_logger = get_logger(f"deployer.{self.stage}.{name}")
        task_logger.info(
            "Run: %s on %s%s",
            name,
            ", ".join(hosts) or "no hosts",
            f" ({via})" if via else "",
        )
        result = self.catalog.invoke(
            name, hosts, self.executor, params=params, max_workers=self.max_workers
        )
        self.sequence.append(
            {
                "kind": "task",
                "name": name,
                "via": via,
                "hosts": [r.as_dict() for r in result.results],
            }
        )
        _write_state(run_dir, state)
        result.raise_for_status()


def _write_state(run_dir: Path | None, state: dict) -> None:
    if run_dir is None:
        return
    state = dict(state, digest=sequence_digest(state["sequence"]))
    with open(run_dir / "state.json", "w", encoding="utf-8") as f:
        json.dump(state, f, indent=2)

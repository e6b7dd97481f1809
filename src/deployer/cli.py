from __future__ import annotations

import importlib
import pkgutil
from typing import Optional

import typer
from dotenv import load_dotenv

from .config import DEFAULT_CONFIG, load_config, resolve_stage
from .core import Deployment, HookRegistry, Phase, TaskCatalog
from .errors import DeployError, PartialFailureError
from .executor import executor_from_config
from .logging import get_logger


load_dotenv()

app = typer.Typer(add_completion=False, help="Deploy-hook orchestrator CLI")
log = get_logger("deployer.cli")

TASKS_PACKAGE = "src.tasks"


def discover_tasks(tasks_pkg: str = TASKS_PACKAGE) -> TaskCatalog:
    """Import all modules in the tasks package and collect decorated functions."""
    catalog = TaskCatalog()
    try:
        pkg = importlib.import_module(tasks_pkg)
    except ModuleNotFoundError:
        log.warning("No tasks package found: %s", tasks_pkg)
        return catalog
    for m in pkgutil.iter_modules(pkg.__path__, prefix=f"{tasks_pkg}."):
        try:
            mod = importlib.import_module(m.name)
        except Exception as e:  # noqa: BLE001
            log.warning("Failed to import %s: %s", m.name, e)
            continue
        catalog.register_module(mod)
    return catalog


def build_deployment(
    environment: str, config: str, dry_run: bool = False, max_workers: int | None = None
) -> Deployment:
    settings = resolve_stage(load_config(config), environment)
    if max_workers is not None:
        settings["max_workers"] = max_workers
    catalog = discover_tasks()
    hooks = HookRegistry.from_config(settings.get("hooks") or [], catalog=catalog)
    return Deployment(
        catalog=catalog,
        hooks=hooks,
        executor=executor_from_config(settings, dry_run=dry_run),
        config=settings,
    )


def _report(err: DeployError) -> None:
    typer.echo(f"Deployment failed: {err}", err=True)
    if isinstance(err, PartialFailureError):
        for r in err.result.results:
            line = f"  {r.host}: {r.status.value}"
            if r.error is not None:
                line += f" ({r.error})"
            typer.echo(line, err=True)


@app.command("list")
def list_tasks():
    """List discovered tasks."""
    catalog = discover_tasks()
    if not len(catalog):
        typer.echo(
            "No tasks discovered. Create modules under `tasks/` and decorate functions with @task()."
        )
        raise typer.Exit(code=0)
    typer.echo("Discovered tasks:")
    for name in catalog.names():
        spec = catalog.get(name)
        suffix = f"  # {spec.description}" if spec.description else ""
        typer.echo(f"- {name}{suffix}")


@app.command()
def hooks(
    environment: Optional[str] = typer.Argument(None, help="Stage whose overrides to apply"),
    config: str = typer.Option(DEFAULT_CONFIG, help="Path to YAML config"),
):
    """Show hook bindings in the order they fire."""
    try:
        settings = load_config(config)
        if environment:
            settings = resolve_stage(settings, environment)
        registry = HookRegistry.from_config(
            settings.get("hooks") or [], catalog=discover_tasks()
        )
    except DeployError as e:
        _report(e)
        raise typer.Exit(code=1)
    for event in registry.events():
        for phase in Phase:
            for name in registry.resolve(event, phase):
                typer.echo(f"{phase.value} {event}: {name}")


@app.command()
def deploy(
    environment: str = typer.Argument(..., help="Stage to deploy, e.g. production"),
    config: str = typer.Option(DEFAULT_CONFIG, help="Path to YAML config"),
    dry_run: bool = typer.Option(False, help="Log commands instead of running them"),
    max_workers: Optional[int] = typer.Option(None, min=1, help="Hosts to run in parallel per task"),
):
    """Run the full deployment lifecycle for an environment."""
    try:
        build_deployment(environment, config, dry_run, max_workers).run()
    except DeployError as e:
        log.error("Deployment to %s failed: %s", environment, e)
        _report(e)
        raise typer.Exit(code=1)


@app.command()
def invoke(
    name: str = typer.Argument(..., help="Task name to run"),
    environment: str = typer.Argument(..., help="Stage whose hosts to use"),
    config: str = typer.Option(DEFAULT_CONFIG, help="Path to YAML config"),
    dry_run: bool = typer.Option(False, help="Log commands instead of running them"),
    max_workers: Optional[int] = typer.Option(None, min=1, help="Hosts to run in parallel"),
):
    """Run a single task, with its hooks, against an environment."""
    try:
        build_deployment(environment, config, dry_run, max_workers).invoke(name)
    except DeployError as e:
        log.error("Task %s on %s failed: %s", name, environment, e)
        _report(e)
        raise typer.Exit(code=1)


def main():  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()

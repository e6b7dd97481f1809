"""Site task modules live here.

Each module declares tasks with ``@deployer.task(name=..., roles=[...])``;
the CLI imports every module in this package and collects them. Hooks that
bind these tasks to lifecycle events belong in the YAML config.
"""

"""
Shared pytest fixtures for the deployer test suite.

Tasks run against a recording fake executor so no test opens a connection.
Hosts listed in ``fail_on`` raise ``RemoteExecutionError``, for every command
or only for commands containing ``when``.
"""

import copy
import threading

import pytest
import yaml

from src.deployer.config import resolve_stage
from src.deployer.core import TaskCatalog
from src.deployer.errors import RemoteExecutionError
from src.deployer.executor import CommandResult, RemoteExecutor
from src.tasks import amber, deploy, leap


class FakeExecutor(RemoteExecutor):
    def __init__(self, fail_on=None, env=None, when=None):
        super().__init__(env=env)
        self.fail_on = dict(fail_on or {})
        self.when = when
        self.calls = []
        self._lock = threading.Lock()

    def execute(self, host, command, cwd=None):
        with self._lock:
            self.calls.append((host, command, cwd))
        if host in self.fail_on and (self.when is None or self.when in command):
            raise RemoteExecutionError(host, command, self.fail_on[host], stderr="boom")
        return CommandResult("", 0)

    def hosts_called(self):
        return [h for h, _, _ in self.calls]


BASE_CONFIG = {
    "application": "leap_se",
    "deploy_to": "/home/website/leap-website",
    "default_environment": {"GEM_PATH": "", "GEM_HOME": ""},
    "max_workers": 1,
    "runs_dir": None,
    "hooks": [
        {"after": "deploy:updated", "task": "amber:rebuild"},
        {"before": "deploy:published", "task": "leap:link_to_chiliproject"},
    ],
    "stages": {
        "production": {"roles": {"web": ["web1", "web2"]}},
        "single": {"roles": {"web": ["web1"]}},
    },
}


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def site_catalog():
    """Catalog holding the release steps and the two site tasks."""
    catalog = TaskCatalog()
    catalog.register_module(deploy)
    catalog.register_module(amber)
    catalog.register_module(leap)
    return catalog


@pytest.fixture
def base_config():
    return copy.deepcopy(BASE_CONFIG)


@pytest.fixture
def production(base_config):
    return resolve_stage(base_config, "production")


@pytest.fixture
def write_config(tmp_path, base_config):
    """Write a config file under tmp_path and return its path."""

    def _write(overrides=None):
        data = dict(base_config)
        data["runs_dir"] = str(tmp_path / "runs")
        data.update(overrides or {})
        path = tmp_path / "deploy.yaml"
        path.write_text(yaml.safe_dump(data))
        return path

    return _write

"""Tests for task definition and per-host invocation."""

import time

import pytest

from src.deployer.core import HostStatus, TaskCatalog, task
from src.deployer.errors import (
    ConfigError,
    DeployError,
    DuplicateTaskError,
    PartialFailureError,
    RemoteExecutionError,
)
from src.tasks import amber

from conftest import FakeExecutor


def run_true(ctx):
    ctx.execute("true")


HOSTS = ["web1", "web2", "web3", "web4"]


# ---------------------------------------------------------------------------
# Definition
# ---------------------------------------------------------------------------


class TestDefine:
    def test_duplicate_name_fails(self):
        catalog = TaskCatalog()
        catalog.define("rebuild", run_true)
        with pytest.raises(DuplicateTaskError):
            catalog.define("rebuild", run_true)

    def test_duplicate_is_a_config_error(self):
        assert issubclass(DuplicateTaskError, ConfigError)

    def test_unknown_task(self):
        with pytest.raises(ConfigError, match="Unknown task"):
            TaskCatalog().get("nope")

    def test_register_module_collects_decorated_tasks(self):
        catalog = TaskCatalog()
        assert catalog.register_module(amber) == ["amber:rebuild"]
        assert "amber:rebuild" in catalog

    def test_decorator_takes_description_from_docstring(self):
        @task(name="x", roles=["web"])
        def fn(ctx):
            """First line.

            More.
            """

        spec = fn._task_spec
        assert spec.description == "First line."
        assert spec.roles == ("web",)

    def test_spec_is_frozen(self):
        spec = TaskCatalog().define("x", run_true)
        with pytest.raises(AttributeError):
            spec.name = "y"


# ---------------------------------------------------------------------------
# Invocation
# ---------------------------------------------------------------------------


class TestInvoke:
    def test_runs_once_per_host(self):
        catalog = TaskCatalog()
        catalog.define("t", run_true)
        ex = FakeExecutor()
        result = catalog.invoke("t", HOSTS, ex, max_workers=2)
        assert result.ok
        assert sorted(ex.hosts_called()) == sorted(HOSTS)
        assert [r.host for r in result.results] == HOSTS

    @pytest.mark.parametrize("k", range(len(HOSTS)))
    def test_parallel_failure_marks_exactly_that_host(self, k):
        catalog = TaskCatalog()
        catalog.define("t", run_true)
        ex = FakeExecutor(fail_on={HOSTS[k]: 1})
        result = catalog.invoke("t", HOSTS, ex, max_workers=len(HOSTS))
        assert len(result.results) == len(HOSTS)
        assert [r.host for r in result.failed] == [HOSTS[k]]
        assert len(result.succeeded) == len(HOSTS) - 1

    @pytest.mark.parametrize("k", range(len(HOSTS)))
    def test_sequential_failure_short_circuits(self, k):
        catalog = TaskCatalog()
        catalog.define("t", run_true)
        ex = FakeExecutor(fail_on={HOSTS[k]: 1})
        result = catalog.invoke("t", HOSTS, ex, max_workers=1)
        statuses = [r.status for r in result.results]
        assert len(statuses) == len(HOSTS)
        assert statuses[k] is HostStatus.FAILED
        assert all(s is HostStatus.OK for s in statuses[:k])
        assert all(s is HostStatus.SKIPPED for s in statuses[k + 1:])
        assert ex.hosts_called() == HOSTS[: k + 1]

    def test_in_flight_hosts_finish_after_a_failure(self):
        def action(ctx):
            if ctx.host == "web1":
                raise RuntimeError("broken")
            time.sleep(0.2)

        catalog = TaskCatalog()
        catalog.define("t", action)
        result = catalog.invoke("t", ["web1", "web2", "web3"], FakeExecutor(), max_workers=2)
        assert [r.status for r in result.results] == [
            HostStatus.FAILED,
            HostStatus.OK,
            HostStatus.SKIPPED,
        ]

    def test_no_hosts(self):
        catalog = TaskCatalog()
        catalog.define("t", run_true)
        result = catalog.invoke("t", [], FakeExecutor())
        assert result.results == []
        assert result.ok

    def test_error_is_kept_on_the_host_result(self):
        catalog = TaskCatalog()
        catalog.define("t", run_true)
        result = catalog.invoke("t", ["web1"], FakeExecutor(fail_on={"web1": 7}))
        err = result.failed[0].error
        assert isinstance(err, RemoteExecutionError)
        assert err.exit_code == 7
        assert result.failed[0].as_dict()["status"] == "failed"


# ---------------------------------------------------------------------------
# raise_for_status
# ---------------------------------------------------------------------------


class TestRaiseForStatus:
    def test_ok_does_not_raise(self):
        catalog = TaskCatalog()
        catalog.define("t", run_true)
        catalog.invoke("t", HOSTS, FakeExecutor()).raise_for_status()

    def test_partial_failure(self):
        catalog = TaskCatalog()
        catalog.define("rebuild", run_true)
        result = catalog.invoke(
            "rebuild", ["web1", "web2"], FakeExecutor(fail_on={"web2": 1})
        )
        with pytest.raises(PartialFailureError) as excinfo:
            result.raise_for_status()
        assert excinfo.value.failed_hosts == ["web2"]
        assert excinfo.value.succeeded_hosts == ["web1"]
        assert "web2" in str(excinfo.value)

    def test_no_success_reraises_remote_error(self):
        catalog = TaskCatalog()
        catalog.define("t", run_true)
        result = catalog.invoke("t", ["web1", "web2"], FakeExecutor(fail_on={"web1": 2}))
        with pytest.raises(RemoteExecutionError) as excinfo:
            result.raise_for_status()
        assert excinfo.value.host == "web1"

    def test_plain_exception_is_wrapped(self):
        def boom(ctx):
            raise KeyError("release")

        catalog = TaskCatalog()
        catalog.define("t", boom)
        result = catalog.invoke("t", ["web1"], FakeExecutor())
        with pytest.raises(DeployError, match="web1") as excinfo:
            result.raise_for_status()
        assert isinstance(excinfo.value.__cause__, KeyError)

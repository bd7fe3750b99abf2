import signal
import threading
import time

from fake_hypervisor.client import FakeHypervisor
from fake_hypervisor.config import FakeHypervisorSettings
from provisioner.config import Settings
from provisioner.models import SourceType, VMSpec
from provisioner.services.orchestrator import Orchestrator, install_signal_handlers


def _settings(**kwargs) -> Settings:
    base = {"poll_interval_sec": 0.01, "ready_timeout_sec": 0.3, "max_workers": 4}
    base.update(kwargs)
    return Settings(**base)


def _template(name: str, *, after=(), linked=False) -> VMSpec:
    return VMSpec(
        name=name,
        source_type=SourceType.TEMPLATE,
        source_ref="base-tmpl",
        cpus=2,
        memory_mb=2048,
        disk_gb=20,
        linked_clone=linked,
        start_after=frozenset(after),
    )


def _by_name(summary):
    return {r.name: r for r in summary.results}


def test_dependent_created_only_after_dependency_ready():
    client = FakeHypervisor(FakeHypervisorSettings(templates_csv="base-tmpl"))
    orchestrator = Orchestrator(client, _settings())
    summary = orchestrator.apply([_template("db", linked=True), _template("app", after=["db"])])

    assert summary.succeeded
    last_db_call = max(i for i, c in enumerate(client.calls) if len(c) > 1 and "db" in c[1:3])
    app_clone = client.calls.index(("clone", "base-tmpl", "app", "full"))
    assert app_clone > last_db_call
    assert ("clone", "base-tmpl", "db", "linked") in client.calls


def test_dependency_failure_propagates_without_backend_calls():
    client = FakeHypervisor(FakeHypervisorSettings(never_ready_csv="db"))
    orchestrator = Orchestrator(client, _settings())
    summary = orchestrator.apply([_template("db"), _template("app", after=["db"])])

    results = _by_name(summary)
    assert not summary.succeeded
    assert results["db"].error_type == "ReadinessTimeoutError"
    assert results["app"].state == "FAILED"
    assert results["app"].error_type == "DependencyFailedError"
    assert "db" in results["app"].reason
    assert not any(len(c) > 1 and "app" in c[1:3] for c in client.calls)


def test_transitive_dependents_fail_too():
    client = FakeHypervisor(FakeHypervisorSettings())
    client.fail("clone", "base-tmpl")
    orchestrator = Orchestrator(client, _settings())
    summary = orchestrator.apply(
        [_template("db"), _template("app", after=["db"]), _template("web", after=["app"])]
    )
    results = _by_name(summary)
    assert results["db"].error_type == "BackendError"
    assert results["app"].error_type == "DependencyFailedError"
    assert results["web"].error_type == "DependencyFailedError"


def test_independent_instances_run_in_parallel():
    client = FakeHypervisor(FakeHypervisorSettings(never_ready_csv="a,b"))
    orchestrator = Orchestrator(client, _settings(ready_timeout_sec=0.5))
    started = time.monotonic()
    summary = orchestrator.apply([_template("a"), _template("b")], max_workers=2)
    elapsed = time.monotonic() - started

    assert [r.error_type for r in summary.results] == ["ReadinessTimeoutError", "ReadinessTimeoutError"]
    assert elapsed < 0.95


def test_sibling_timeout_does_not_block_others():
    client = FakeHypervisor(FakeHypervisorSettings(never_ready_csv="slow"))
    orchestrator = Orchestrator(client, _settings())
    summary = orchestrator.apply([_template("slow"), _template("fast")])
    results = _by_name(summary)
    assert results["fast"].succeeded
    assert results["fast"].info.ip_address
    assert not results["slow"].succeeded
    assert client.find("slow").status == "running"
    assert summary.counters["instances_ready_total"] == 1.0
    assert summary.counters["instances_failed_total"] == 1.0
    assert summary.counters["step_await_ready_seconds_total"] > 0


def test_stop_before_apply_cancels_everything():
    client = FakeHypervisor(FakeHypervisorSettings())
    stop = threading.Event()
    stop.set()
    orchestrator = Orchestrator(client, _settings(), stop_event=stop)
    summary = orchestrator.apply([_template("a"), _template("b", after=["a"])])
    assert [r.error_type for r in summary.results] == ["RunCancelled", "RunCancelled"]
    assert client.calls == []


def test_unknown_dependency_fails_instance():
    client = FakeHypervisor(FakeHypervisorSettings())
    orchestrator = Orchestrator(client, _settings())
    summary = orchestrator.apply([_template("app", after=["ghost"])])
    assert summary.results[0].error_type == "DependencyFailedError"
    assert client.calls == []


def test_summary_preserves_declaration_order():
    client = FakeHypervisor(FakeHypervisorSettings())
    orchestrator = Orchestrator(client, _settings())
    summary = orchestrator.apply([_template("c"), _template("a"), _template("b")])
    assert [r.name for r in summary.results] == ["c", "a", "b"]
    assert summary.elapsed_sec >= 0
    assert summary.finished_at >= summary.started_at


def test_destroy_reports_per_name():
    client = FakeHypervisor(FakeHypervisorSettings())
    client.add_vm("web", status="running")
    client.add_vm("stuck", status="running")
    client.fail("delete", "stuck")
    orchestrator = Orchestrator(client, _settings())
    results = {r.name: r for r in orchestrator.destroy(["web", "ghost", "stuck"])}
    assert results["web"].succeeded
    assert results["ghost"].succeeded
    assert not results["stuck"].succeeded
    assert results["stuck"].error_type == "BackendError"
    assert client.find("web") is None


def test_signal_handlers_set_stop_event_and_restore():
    previous = signal.getsignal(signal.SIGTERM)
    stop = threading.Event()
    restore = install_signal_handlers(stop)
    try:
        handler = signal.getsignal(signal.SIGTERM)
        handler(signal.SIGTERM, None)
        assert stop.is_set()
    finally:
        restore()
    assert signal.getsignal(signal.SIGTERM) == previous

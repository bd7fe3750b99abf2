import threading

import pytest

from fake_hypervisor.client import FakeHypervisor
from fake_hypervisor.config import FakeHypervisorSettings
from provisioner.config import Settings
from provisioner.metrics import RunMetrics
from provisioner.models import InstanceState, SourceType, VMSpec
from provisioner.services.lifecycle import LifecycleController


@pytest.fixture
def iso_image(tmp_path):
    image = tmp_path / "ubuntu.iso"
    image.write_bytes(b"iso")
    return str(image)


def _settings(**kwargs) -> Settings:
    base = {"poll_interval_sec": 0.01, "ready_timeout_sec": 0.3, "host_arch": "arm64"}
    base.update(kwargs)
    return Settings(**base)


def _controller(client, stop_event=None, **kwargs) -> LifecycleController:
    return LifecycleController(client, _settings(**kwargs), stop_event=stop_event, metrics=RunMetrics())


def _web(image: str) -> VMSpec:
    return VMSpec(
        name="web",
        source_type=SourceType.ISO,
        source_ref=image,
        cpus=2,
        memory_mb=2048,
        disk_gb=20,
    )


def _provision_then_stop(controller, stop, spec, after_sec=0.1):
    timer = threading.Timer(after_sec, stop.set)
    timer.start()
    try:
        return controller.provision(spec)
    finally:
        timer.cancel()


class StopOnConfigure(FakeHypervisor):
    """Sets the stop event from inside the configure step."""

    def __init__(self, settings, stop):
        super().__init__(settings)
        self.stop_event = stop

    def set(self, name, args):
        self.stop_event.set()
        super().set(name, args)


def test_iso_instance_reaches_ready_with_info(iso_image):
    client = FakeHypervisor(FakeHypervisorSettings())
    controller = _controller(client)
    assert controller.provision(_web(iso_image)) == InstanceState.READY

    result = controller.result_for("web")
    assert result.succeeded
    assert result.history == ["CREATED", "CONFIGURED", "STARTING", "AWAITING_READY", "READY"]
    assert result.info is not None
    assert result.info.ip_address.startswith("10.211.55.")
    assert result.info.status == "running"
    assert result.info.memory_mb == 2048
    assert result.info.disk_gb == 20
    assert controller.metrics.snapshot()["instances_ready_total"] == 1.0


def test_reapply_replaces_existing_instance(iso_image):
    client = FakeHypervisor(FakeHypervisorSettings())
    controller = _controller(client)
    controller.provision(_web(iso_image))
    first_uuid = client.vm("web")["uuid"]

    assert controller.provision(_web(iso_image)) == InstanceState.READY
    ops = client.ops("web")
    last_create = max(i for i, op in enumerate(ops) if op == "create")
    assert ops.count("create") == 2
    assert ops.index("stop") < ops.index("delete") < last_create
    assert client.vm("web")["uuid"] != first_uuid
    assert len(controller.result_for("web").history) == 5


def test_readiness_timeout_fails_and_leaves_instance_running(iso_image):
    client = FakeHypervisor(FakeHypervisorSettings(never_ready_csv="web"))
    controller = _controller(client)
    assert controller.provision(_web(iso_image)) == InstanceState.FAILED

    result = controller.result_for("web")
    assert result.error_type == "ReadinessTimeoutError"
    assert result.history[-2:] == ["AWAITING_READY", "FAILED"]
    listing = client.find("web")
    assert listing is not None
    assert listing.status == "running"
    assert "delete" not in client.ops("web")


def test_create_failure_never_reaches_created(iso_image):
    client = FakeHypervisor(FakeHypervisorSettings())
    client.fail("create", "web")
    controller = _controller(client)
    assert controller.provision(_web(iso_image)) == InstanceState.FAILED
    result = controller.result_for("web")
    assert result.history == ["FAILED"]
    assert result.error_type == "BackendError"
    assert controller.metrics.snapshot()["instances_failed_total"] == 1.0


def test_missing_bundle_fails_after_register():
    client = FakeHypervisor(FakeHypervisorSettings())
    controller = _controller(client)
    spec = VMSpec(
        name="imported",
        source_type=SourceType.BUNDLE,
        source_ref="/nonexistent.pvm",
        cpus=2,
        memory_mb=2048,
        disk_gb=20,
    )
    assert controller.provision(spec) == InstanceState.FAILED
    assert controller.result_for("imported").error_type == "BackendError"
    assert client.ops()[-1] == "register"


def test_destroy_leaves_no_orphan(iso_image):
    client = FakeHypervisor(FakeHypervisorSettings())
    controller = _controller(client)
    controller.provision(_web(iso_image))
    assert controller.destroy("web") is True
    assert client.find("web") is None
    assert controller.result_for("web").state == "DESTROYED"


def test_destroy_absent_is_success():
    controller = _controller(FakeHypervisor(FakeHypervisorSettings()))
    assert controller.destroy("ghost") is False
    assert controller.result_for("ghost").state == "DESTROYED"


def test_cancelled_wait_is_torn_down(iso_image):
    client = FakeHypervisor(FakeHypervisorSettings(never_ready_csv="web"))
    stop = threading.Event()
    controller = _controller(client, stop_event=stop, ready_timeout_sec=30.0)

    state = _provision_then_stop(controller, stop, _web(iso_image))
    assert state == InstanceState.AWAITING_READY
    assert controller.teardown_unfinished() == ["web"]
    assert client.find("web") is None
    assert controller.result_for("web").state == "DESTROYED"
    assert controller.metrics.snapshot()["teardowns_total"] == 1.0


def test_teardown_failure_is_logged_not_raised(iso_image):
    client = FakeHypervisor(FakeHypervisorSettings(never_ready_csv="web"))
    stop = threading.Event()
    controller = _controller(client, stop_event=stop, ready_timeout_sec=30.0)
    _provision_then_stop(controller, stop, _web(iso_image))
    client.fail("stop", "web")
    assert controller.teardown_unfinished() == []
    assert client.find("web") is not None


def test_stop_during_configure_skips_start_and_is_torn_down(iso_image):
    stop = threading.Event()
    client = StopOnConfigure(FakeHypervisorSettings(), stop)
    controller = _controller(client, stop_event=stop)

    state = controller.provision(_web(iso_image))
    assert state == InstanceState.CONFIGURED
    assert "start" not in client.ops("web")
    assert controller.result_for("web").error_type == "RunCancelled"
    assert controller.teardown_unfinished() == ["web"]
    assert client.find("web") is None


def test_stop_before_create_fails_without_creating(iso_image):
    client = FakeHypervisor(FakeHypervisorSettings())
    stop = threading.Event()
    stop.set()
    controller = _controller(client, stop_event=stop)

    state = controller.provision(_web(iso_image))
    assert state == InstanceState.FAILED
    assert "create" not in client.ops()
    result = controller.result_for("web")
    assert result.error_type == "RunCancelled"
    assert result.reason == "run cancelled name=web"
    assert controller.teardown_unfinished() == []


def test_same_name_operations_are_serialized(iso_image):
    client = FakeHypervisor(FakeHypervisorSettings())
    controller = _controller(client)
    lock = controller.lock_for("web")
    assert lock is controller.lock_for("web")
    assert lock is not controller.lock_for("db")

    lock.acquire()
    done = threading.Event()

    def run():
        controller.destroy("web")
        done.set()

    thread = threading.Thread(target=run)
    thread.start()
    assert not done.wait(0.1)
    lock.release()
    thread.join(timeout=2.0)
    assert done.is_set()

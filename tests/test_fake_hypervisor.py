import pytest

from fake_hypervisor.client import FakeHypervisor
from fake_hypervisor.config import FakeHypervisorSettings
from provisioner.errors import BackendError
from provisioner.metrics import RunMetrics


def test_address_and_marker_appear_after_polls():
    client = FakeHypervisor(FakeHypervisorSettings(address_after_polls=1, marker_after_polls=2))
    client.add_vm("web")
    client.start("web")
    assert client.find("web").ip_address is None
    answer = client.exec("web", ["ip", "-4", "addr", "show", "scope", "global"])
    assert "inet 10.211.55.10/24" in answer.stdout
    assert client.find("web").ip_address == "10.211.55.10"
    assert client.exec("web", ["test", "-f", "/marker"]).ok


def test_never_ready_instance_has_no_address():
    client = FakeHypervisor(FakeHypervisorSettings(never_ready_csv="web"))
    client.add_vm("web")
    client.start("web")
    for _ in range(3):
        client.exec("web", ["ip", "-4"])
    assert client.find("web").ip_address is None
    assert not client.exec("web", ["test", "-f", "/marker"]).ok


def test_exec_on_stopped_vm_fails():
    client = FakeHypervisor(FakeHypervisorSettings())
    client.add_vm("web")
    assert client.exec("web", ["true"]).returncode == 255


def test_prlctl_like_errors():
    client = FakeHypervisor(FakeHypervisorSettings(allow_unknown_templates=False))
    client.add_vm("web", status="running")
    with pytest.raises(BackendError):
        client.delete("web")
    with pytest.raises(BackendError):
        client.create("web", "ubuntu")
    with pytest.raises(BackendError):
        client.clone("missing", "db")
    client.stop("web")
    with pytest.raises(BackendError):
        client.stop("web")


def test_templates_cannot_start():
    client = FakeHypervisor(FakeHypervisorSettings(templates_csv="base"))
    with pytest.raises(BackendError):
        client.start("base")


def test_injected_failure_and_metrics():
    metrics = RunMetrics()
    client = FakeHypervisor(FakeHypervisorSettings(), metrics=metrics)
    client.add_vm("web")
    client.fail("start", "web", exit_status=3)
    with pytest.raises(BackendError) as exc:
        client.start("web")
    assert exc.value.exit_status == 3
    assert metrics.snapshot()["backend_commands_total"] == 1.0


def test_register_names_vm_after_bundle(tmp_path):
    bundle = tmp_path / "golden.pvm"
    bundle.mkdir()
    client = FakeHypervisor(FakeHypervisorSettings())
    client.register(str(bundle))
    assert client.vm("golden")["bundle"] == str(bundle)
    with pytest.raises(BackendError):
        client.register(str(bundle))

"""In-memory stand-in for ``prlctl`` used by tests and ``--fake`` dry runs."""

import threading
import uuid as uuidlib
from pathlib import Path

from fake_hypervisor.config import FakeHypervisorSettings
from provisioner.clients.hypervisor import CommandResult, VMDetails, VMListing
from provisioner.errors import BackendError
from provisioner.metrics import RunMetrics


class FakeHypervisor:
    def __init__(
        self,
        settings: FakeHypervisorSettings | None = None,
        metrics: RunMetrics | None = None,
    ):
        self.settings = settings or FakeHypervisorSettings()
        self.metrics = metrics
        self._lock = threading.Lock()
        self._vms: dict[str, dict] = {}
        self._bundles: dict[str, str] = {}
        self._failures: dict[tuple[str, str | None], int] = {}
        self._next_host = 10
        self.never_ready: set[str] = set(self.settings.never_ready)
        self.calls: list[tuple[str, ...]] = []
        for name in self.settings.templates:
            self.add_vm(name, template=True)

    # -- test helpers -----------------------------------------------------

    def add_vm(self, name: str, *, status: str = "stopped", template: bool = False) -> str:
        with self._lock:
            return self._insert(name, status=status, template=template)

    def add_bundle(self, path: str, internal_name: str) -> None:
        with self._lock:
            self._bundles[path] = internal_name

    def fail(self, op: str, name: str | None = None, exit_status: int = 1) -> None:
        with self._lock:
            self._failures[(op, name)] = exit_status

    def recover(self, op: str, name: str | None = None) -> None:
        with self._lock:
            self._failures.pop((op, name), None)

    def ops(self, name: str | None = None) -> list[str]:
        with self._lock:
            return [c[0] for c in self.calls if name is None or (len(c) > 1 and c[1] == name)]

    def vm(self, name: str) -> dict | None:
        with self._lock:
            row = self._vms.get(name)
            return dict(row) if row else None

    # -- internals ---------------------------------------------------------

    def _insert(self, name: str, *, status: str = "stopped", template: bool = False, **extra) -> str:
        vm_uuid = str(uuidlib.uuid4())
        self._vms[name] = {
            "uuid": vm_uuid,
            "status": status,
            "template": template,
            "cpus": 2,
            "memory_mb": 1024,
            "disk_mb": 0,
            "devices": [],
            "boot_order": None,
            "polls": 0,
            "ip": None,
            "snapshots": [],
            **extra,
        }
        return vm_uuid

    def _record(self, op: str, *args: str) -> None:
        self.calls.append((op, *args))
        if self.metrics is not None:
            self.metrics.inc("backend_commands_total")
        status = self._failures.get((op, args[0] if args else None))
        if status is None:
            status = self._failures.get((op, None))
        if status is not None:
            raise BackendError(
                command=["prlctl", op, *args], exit_status=status, detail="injected failure"
            )

    def _require(self, op: str, name: str) -> dict:
        row = self._vms.get(name)
        if row is None:
            raise BackendError(
                command=["prlctl", op, name],
                exit_status=255,
                detail=f"Failed to get VM config: The virtual machine could not be found: {name}",
            )
        return row

    def _address_for(self, name: str, row: dict) -> str | None:
        if row["status"] != "running" or name in self.never_ready:
            return None
        if row["polls"] < self.settings.address_after_polls:
            return None
        if row["ip"] is None:
            row["ip"] = f"{self.settings.address_prefix}{self._next_host}"
            self._next_host += 1
        return row["ip"]

    # -- HypervisorClient --------------------------------------------------

    def list_vms(
        self, *, timeout: float | None = None, cancel: threading.Event | None = None
    ) -> list[VMListing]:
        with self._lock:
            self._record("list")
            return [
                VMListing(
                    name=name,
                    uuid=row["uuid"],
                    status=row["status"],
                    ip_address=self._address_for(name, row),
                )
                for name, row in self._vms.items()
            ]

    def find(
        self, name: str, *, timeout: float | None = None, cancel: threading.Event | None = None
    ) -> VMListing | None:
        for listing in self.list_vms():
            if listing.name == name:
                return listing
        return None

    def details(self, name: str) -> VMDetails | None:
        with self._lock:
            self._record("info", name)
            row = self._vms.get(name)
            if row is None:
                return None
            ip = self._address_for(name, row)
            return VMDetails(
                name=name,
                uuid=row["uuid"],
                status=row["status"],
                cpus=row["cpus"],
                memory_mb=row["memory_mb"],
                disk_gb=row["disk_mb"] // 1024 if row["disk_mb"] else None,
                addresses=[ip] if ip else [],
            )

    def create(self, name: str, distribution: str) -> None:
        with self._lock:
            self._record("create", name, distribution)
            if name in self._vms:
                raise BackendError(
                    command=["prlctl", "create", name],
                    exit_status=255,
                    detail=f"The virtual machine {name} already exists",
                )
            self._insert(name, distribution=distribution)

    def set(self, name: str, args: list[str]) -> None:
        with self._lock:
            self._record("set", name, *args)
            row = self._require("set", name)
            opts = dict(zip(args[::2], args[1::2]))
            if "--cpus" in opts:
                row["cpus"] = int(opts["--cpus"])
            if "--memsize" in opts:
                row["memory_mb"] = int(opts["--memsize"])
            if "--template" in opts:
                row["template"] = opts["--template"] == "on"
            if "--device-bootorder" in opts:
                row["boot_order"] = opts["--device-bootorder"]
            if args[:2] == ["--device-add", "hdd"] and "--size" in opts:
                row["disk_mb"] = int(opts["--size"])
            elif args and args[0] in {"--device-add", "--device-set"}:
                row["devices"].append(list(args))
            if "--name" in opts:
                new = opts["--name"]
                if new in self._vms:
                    raise BackendError(
                        command=["prlctl", "set", name, "--name", new],
                        exit_status=255,
                        detail=f"name {new} already in use",
                    )
                self._vms[new] = self._vms.pop(name)

    def start(self, name: str) -> None:
        with self._lock:
            self._record("start", name)
            row = self._require("start", name)
            if row["template"]:
                raise BackendError(
                    command=["prlctl", "start", name], exit_status=255, detail="cannot start a template"
                )
            row["status"] = "running"
            row["polls"] = 0

    def stop(self, name: str, kill: bool = True) -> None:
        with self._lock:
            self._record("stop", name)
            row = self._require("stop", name)
            if row["status"] != "running":
                raise BackendError(
                    command=["prlctl", "stop", name, "--kill"],
                    exit_status=255,
                    detail="The virtual machine is not running",
                )
            row["status"] = "stopped"
            row["ip"] = None

    def delete(self, name: str) -> None:
        with self._lock:
            self._record("delete", name)
            row = self._require("delete", name)
            if row["status"] == "running":
                raise BackendError(
                    command=["prlctl", "delete", name],
                    exit_status=255,
                    detail="The virtual machine is running",
                )
            del self._vms[name]

    def clone(self, source: str, name: str, linked: bool = False, template: bool = False) -> None:
        with self._lock:
            self._record("clone", source, name, "linked" if linked else "full")
            if source not in self._vms:
                if not self.settings.allow_unknown_templates:
                    self._require("clone", source)
                self._insert(source, template=True)
            if name in self._vms:
                raise BackendError(
                    command=["prlctl", "clone", source, "--name", name],
                    exit_status=255,
                    detail=f"The virtual machine {name} already exists",
                )
            src = self._vms[source]
            self._insert(
                name,
                template=template,
                linked_to=source if linked else None,
                cpus=src["cpus"],
                memory_mb=src["memory_mb"],
                disk_mb=src["disk_mb"],
            )

    def register(self, path: str) -> None:
        with self._lock:
            self._record("register", path)
            internal = self._bundles.get(path)
            if internal is None:
                if not Path(path).exists():
                    raise BackendError(
                        command=["prlctl", "register", path, "--regenerate-src-uuid"],
                        exit_status=255,
                        detail=f"Failed to register the VM: {path} does not exist",
                    )
                internal = Path(path.rstrip("/")).stem
            if internal in self._vms:
                raise BackendError(
                    command=["prlctl", "register", path],
                    exit_status=255,
                    detail=f"The virtual machine {internal} is already registered",
                )
            self._insert(internal, bundle=path)

    def rename(self, current: str, new: str) -> None:
        self.set(current, ["--name", new])

    def export(self, name: str, output_path: str) -> None:
        with self._lock:
            self._record("export", name, output_path)
            self._require("export", name)
            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            Path(output_path).write_bytes(f"fake bundle {name}\n".encode("utf-8"))

    def snapshot(self, name: str, snapshot_name: str, description: str) -> None:
        with self._lock:
            self._record("snapshot", name, snapshot_name)
            self._require("snapshot", name)["snapshots"].append((snapshot_name, description))

    def exec(
        self,
        name: str,
        argv: list[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        cmd = ["prlctl", "exec", name, *argv]
        with self._lock:
            try:
                self._record("exec", name, *argv)
            except BackendError as exc:
                return CommandResult(command=cmd, returncode=exc.exit_status, stderr=exc.detail)
            row = self._vms.get(name)
            if row is None or row["status"] != "running":
                return CommandResult(command=cmd, returncode=255, stderr="VM is not running")
            row["polls"] += 1
            if argv[:2] == ["ip", "-4"]:
                ip = self._address_for(name, row)
                if ip is None:
                    return CommandResult(command=cmd, returncode=0, stdout="")
                return CommandResult(
                    command=cmd,
                    returncode=0,
                    stdout=f"2: eth0: <BROADCAST,UP>\n    inet {ip}/24 brd 10.211.55.255 scope global eth0\n",
                )
            if argv[:2] == ["test", "-f"]:
                done = (
                    name not in self.never_ready
                    and row["polls"] >= self.settings.marker_after_polls
                )
                return CommandResult(command=cmd, returncode=0 if done else 1)
            return CommandResult(command=cmd, returncode=0)

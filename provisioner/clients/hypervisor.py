"""Narrow wrapper around the Parallels Desktop ``prlctl`` command line tool.

Backends talk to :class:`HypervisorClient`; :class:`PrlctlClient` is the real
implementation and ``fake_hypervisor.client.FakeHypervisor`` the in-memory one.
Listing output is the only channel for status and addresses, so every parser
here tolerates empty output, non-JSON noise and missing keys.
"""

import json
import logging
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

from provisioner.errors import BackendError
from provisioner.metrics import RunMetrics


logger = logging.getLogger(__name__)

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)i?b?\s*$", re.IGNORECASE)


@dataclass
class CommandResult:
    command: list[str]
    returncode: int | None
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class VMListing:
    name: str
    uuid: str
    status: str
    ip_address: str | None = None


@dataclass
class VMDetails:
    name: str
    uuid: str
    status: str
    cpus: int | None = None
    memory_mb: int | None = None
    disk_gb: int | None = None
    addresses: list[str] = field(default_factory=list)


class HypervisorClient(Protocol):
    def list_vms(
        self, *, timeout: float | None = None, cancel: threading.Event | None = None
    ) -> list[VMListing]: ...

    def find(
        self, name: str, *, timeout: float | None = None, cancel: threading.Event | None = None
    ) -> VMListing | None: ...

    def details(self, name: str) -> VMDetails | None: ...

    def create(self, name: str, distribution: str) -> None: ...

    def set(self, name: str, args: list[str]) -> None: ...

    def start(self, name: str) -> None: ...

    def stop(self, name: str, kill: bool = True) -> None: ...

    def delete(self, name: str) -> None: ...

    def clone(
        self, source: str, name: str, linked: bool = False, template: bool = False
    ) -> None: ...

    def register(self, path: str) -> None: ...

    def rename(self, current: str, new: str) -> None: ...

    def export(self, name: str, output_path: str) -> None: ...

    def snapshot(self, name: str, snapshot_name: str, description: str) -> None: ...

    def exec(
        self,
        name: str,
        argv: list[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult: ...


def normalize_uuid(raw: object) -> str:
    if not isinstance(raw, str):
        return ""
    return raw.strip().strip("{}").lower()


def normalize_address(raw: object) -> str | None:
    if not isinstance(raw, str):
        return None
    value = raw.strip()
    if not value or value in {"-", "null", "none"}:
        return None
    return value.split("/", 1)[0]


def parse_size_mb(raw: object) -> int | None:
    if isinstance(raw, (int, float)):
        return int(raw)
    if not isinstance(raw, str):
        return None
    match = _SIZE_RE.match(raw)
    if not match:
        return None
    amount = float(match.group(1))
    unit = match.group(2).upper()
    factor = {"": 1, "K": 1 / 1024, "M": 1, "G": 1024, "T": 1024 * 1024}[unit]
    return int(amount * factor)


def _load_json_list(text: str) -> list[dict[str, Any]]:
    text = (text or "").strip()
    if not text:
        return []
    # prlctl occasionally prefixes warnings before the JSON document.
    start = min((i for i in (text.find("["), text.find("{")) if i >= 0), default=-1)
    if start < 0:
        return []
    try:
        data = json.loads(text[start:])
    except json.JSONDecodeError:
        return []
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


def parse_listing(text: str) -> list[VMListing]:
    listings: list[VMListing] = []
    for item in _load_json_list(text):
        name = item.get("name")
        if not isinstance(name, str) or not name:
            continue
        status = item.get("status")
        listings.append(
            VMListing(
                name=name,
                uuid=normalize_uuid(item.get("uuid")),
                status=status.lower() if isinstance(status, str) else "unknown",
                ip_address=normalize_address(item.get("ip_configured")),
            )
        )
    return listings


def parse_details(text: str) -> VMDetails | None:
    items = _load_json_list(text)
    if not items:
        return None
    item = items[0]
    name = item.get("Name")
    if not isinstance(name, str) or not name:
        return None
    hardware = item.get("Hardware")
    if not isinstance(hardware, dict):
        hardware = {}

    cpus = None
    cpu = hardware.get("cpu")
    if isinstance(cpu, dict):
        try:
            cpus = int(cpu.get("cpus"))
        except (TypeError, ValueError):
            cpus = None

    memory_mb = None
    memory = hardware.get("memory")
    if isinstance(memory, dict):
        memory_mb = parse_size_mb(memory.get("size"))

    disk_gb = None
    hdd = hardware.get("hdd0")
    if isinstance(hdd, dict):
        size_mb = parse_size_mb(hdd.get("size"))
        if size_mb is not None:
            disk_gb = size_mb // 1024

    addresses: list[str] = []
    network = item.get("Network")
    if isinstance(network, dict):
        raw = network.get("ipAddresses") or network.get("IP Addresses") or []
        if isinstance(raw, str):
            raw = [part for part in re.split(r"[,\s]+", raw) if part]
        if isinstance(raw, list):
            for entry in raw:
                if isinstance(entry, dict):
                    entry = entry.get("ip")
                address = normalize_address(entry)
                if address:
                    addresses.append(address)

    state = item.get("State")
    return VMDetails(
        name=name,
        uuid=normalize_uuid(item.get("ID")),
        status=state.lower() if isinstance(state, str) else "unknown",
        cpus=cpus,
        memory_mb=memory_mb,
        disk_gb=disk_gb,
        addresses=addresses,
    )


class PrlctlClient:
    # how often a running command checks its cancel event
    cancel_check_sec = 0.1

    def __init__(
        self,
        binary: str = "prlctl",
        timeout_sec: float = 300.0,
        metrics: RunMetrics | None = None,
    ):
        self.binary = binary
        self.timeout_sec = timeout_sec
        self.metrics = metrics

    def _invoke(
        self,
        args: list[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        """Run one command, bounded by ``timeout`` (capped at ``timeout_sec``) and ``cancel``."""
        cmd = [self.binary, *args]
        limit = self.timeout_sec if timeout is None else max(min(self.timeout_sec, timeout), 0.0)
        logger.debug("running hypervisor command=%s timeout=%.1fs", " ".join(cmd), limit)
        if self.metrics is not None:
            self.metrics.inc("backend_commands_total")
        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as exc:
            raise BackendError(
                command=cmd, exit_status=None, detail=f"cannot execute {self.binary}: {exc}"
            ) from exc

        deadline = time.monotonic() + limit
        while True:
            remaining = deadline - time.monotonic()
            slice_sec = remaining if cancel is None else min(remaining, self.cancel_check_sec)
            try:
                stdout, stderr = proc.communicate(timeout=max(slice_sec, 0.0))
                break
            except subprocess.TimeoutExpired:
                if cancel is not None and cancel.is_set():
                    _kill(proc)
                    raise BackendError(command=cmd, exit_status=None, detail="cancelled") from None
                if time.monotonic() >= deadline:
                    _kill(proc)
                    raise BackendError(
                        command=cmd, exit_status=None, detail=f"timed out after {limit:.1f}s"
                    ) from None
        return CommandResult(
            command=cmd,
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
        )

    def _run(
        self,
        args: list[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        result = self._invoke(args, timeout=timeout, cancel=cancel)
        if not result.ok:
            stderr = result.stderr.strip()
            stdout = result.stdout.strip()
            raise BackendError(
                command=result.command,
                exit_status=result.returncode,
                detail=stderr or stdout or "no output",
            )
        return result

    def list_vms(
        self, *, timeout: float | None = None, cancel: threading.Event | None = None
    ) -> list[VMListing]:
        result = self._run(["list", "-a", "-f", "--json"], timeout=timeout, cancel=cancel)
        return parse_listing(result.stdout)

    def find(
        self, name: str, *, timeout: float | None = None, cancel: threading.Event | None = None
    ) -> VMListing | None:
        for listing in self.list_vms(timeout=timeout, cancel=cancel):
            if listing.name == name:
                return listing
        return None

    def details(self, name: str) -> VMDetails | None:
        result = self._invoke(["list", "-i", name, "--json"])
        if not result.ok:
            return None
        return parse_details(result.stdout)

    def create(self, name: str, distribution: str) -> None:
        self._run(["create", name, "--distribution", distribution, "--no-hdd"])

    def set(self, name: str, args: list[str]) -> None:
        self._run(["set", name, *args])

    def start(self, name: str) -> None:
        self._run(["start", name])

    def stop(self, name: str, kill: bool = True) -> None:
        args = ["stop", name]
        if kill:
            args.append("--kill")
        self._run(args)

    def delete(self, name: str) -> None:
        self._run(["delete", name])

    def clone(
        self, source: str, name: str, linked: bool = False, template: bool = False
    ) -> None:
        args = ["clone", source, "--name", name]
        if linked:
            args.append("--linked")
        if template:
            args.append("--template")
        self._run(args)

    def register(self, path: str) -> None:
        self._run(["register", path, "--regenerate-src-uuid"])

    def rename(self, current: str, new: str) -> None:
        self._run(["set", current, "--name", new])

    def export(self, name: str, output_path: str) -> None:
        self._run(["export", name, "-o", output_path])

    def snapshot(self, name: str, snapshot_name: str, description: str) -> None:
        self._run(["snapshot", name, "--name", snapshot_name, "--description", description])

    def exec(
        self,
        name: str,
        argv: list[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
    ) -> CommandResult:
        try:
            return self._invoke(["exec", name, *argv], timeout=timeout, cancel=cancel)
        except BackendError as exc:
            # a hung or missing guest exec only means "no answer yet"
            return CommandResult(command=exc.command, returncode=None, stderr=exc.detail)


def _kill(proc: subprocess.Popen) -> None:
    proc.kill()
    try:
        proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        logger.warning("hypervisor command did not exit after kill pid=%s", proc.pid)

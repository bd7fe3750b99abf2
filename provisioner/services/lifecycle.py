import logging
import threading
import time
from collections.abc import Callable
from typing import TypeVar

from provisioner.clients.hypervisor import HypervisorClient
from provisioner.config import Settings
from provisioner.errors import (
    DependencyFailedError,
    ProvisionerError,
    ReadinessCancelled,
    RunCancelled,
    TeardownError,
)
from provisioner.metrics import RunMetrics
from provisioner.models import InstanceRecord, InstanceState, VMSpec
from provisioner.schemas import InstanceInfo, InstanceResult
from provisioner.services.backends import remove_instance, select_backend
from provisioner.services.info import collect_info
from provisioner.services.readiness import ReadinessPoller
from provisioner.state_machine import advance, is_terminal


logger = logging.getLogger(__name__)

T = TypeVar("T")


class LifecycleController:
    """Drives one instance at a time through create, configure, start, wait and collect.

    Operations on the same name are serialized with a per-name lock. Different
    names proceed concurrently from the orchestrator's worker threads.
    """

    def __init__(
        self,
        client: HypervisorClient,
        settings: Settings,
        *,
        stop_event: threading.Event | None = None,
        metrics: RunMetrics | None = None,
        poller: ReadinessPoller | None = None,
    ):
        self.client = client
        self.settings = settings
        self.stop_event = stop_event or threading.Event()
        self.metrics = metrics or RunMetrics()
        self.poller = poller or ReadinessPoller(
            client,
            interval_sec=settings.poll_interval_sec,
            timeout_sec=settings.ready_timeout_sec,
            marker_path=settings.ready_marker_path,
            stop_event=self.stop_event,
        )
        self.records: dict[str, InstanceRecord] = {}
        self.infos: dict[str, InstanceInfo] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    def _new_record(self, name: str) -> InstanceRecord:
        record = InstanceRecord(name=name)
        with self._guard:
            self.records[name] = record
            self.infos.pop(name, None)
        return record

    def _step(self, record: InstanceRecord, step: str, action: Callable[[], T]) -> T:
        started = time.monotonic()
        logger.debug("step start name=%s step=%s", record.name, step)
        try:
            return action()
        finally:
            self.metrics.observe(step, time.monotonic() - started)

    def provision(self, spec: VMSpec) -> InstanceState:
        with self.lock_for(spec.name):
            record = self._new_record(spec.name)
            try:
                backend = select_backend(spec.source_type, self.client, self.settings)
                self._step(record, "teardown_existing", lambda: backend.teardown_existing(spec.name))

                self._check_stop(spec)
                record.handle = self._step(record, "create", lambda: backend.create(spec))
                advance(record, InstanceState.CREATED)
                logger.info(
                    "instance created name=%s source_type=%s uuid=%s",
                    spec.name,
                    spec.source_type.value,
                    record.handle.backend_uuid,
                )

                handle = record.handle
                self._step(record, "configure", lambda: backend.configure(handle, spec))
                advance(record, InstanceState.CONFIGURED)

                self._check_stop(spec)
                advance(record, InstanceState.STARTING)
                self._step(record, "start", lambda: self.client.start(spec.name))

                advance(record, InstanceState.AWAITING_READY)
                record.ip_address = self._step(
                    record, "await_ready", lambda: self.poller.wait(spec.name)
                )
                advance(record, InstanceState.READY)
                self.metrics.inc("instances_ready_total")
            except (ReadinessCancelled, RunCancelled) as exc:
                if record.state == InstanceState.ABSENT:
                    self._fail(record, exc)
                    return record.state
                # left non-terminal; teardown_unfinished removes it
                record.error = exc
                logger.warning("instance cancelled name=%s state=%s", spec.name, record.state.value)
                return record.state
            except ProvisionerError as exc:
                self._fail(record, exc)
                return record.state
            except Exception as exc:  # noqa: BLE001
                logger.exception("unexpected provisioning failure name=%s", spec.name)
                self._fail(record, exc)
                return record.state

            self._collect(record, spec)
            return record.state

    def _check_stop(self, spec: VMSpec) -> None:
        if self.stop_event.is_set():
            raise RunCancelled(spec.name)

    def _collect(self, record: InstanceRecord, spec: VMSpec) -> None:
        handle = record.handle
        try:
            info = self._step(
                record,
                "collect_info",
                lambda: collect_info(
                    self.client,
                    spec.name,
                    uuid=handle.backend_uuid if handle else None,
                    spec=spec,
                    ip_address=record.ip_address,
                ),
            )
        except ProvisionerError as exc:
            logger.warning("info collection failed name=%s: %s", spec.name, exc)
            return
        with self._guard:
            self.infos[spec.name] = info

    def _fail(self, record: InstanceRecord, exc: Exception) -> None:
        record.error = exc
        advance(record, InstanceState.FAILED)
        self.metrics.inc("instances_failed_total")
        logger.error(
            "instance failed name=%s error_type=%s reason=%s",
            record.name,
            type(exc).__name__,
            exc,
        )

    def fail_dependency(self, spec: VMSpec, dependency: str) -> InstanceState:
        record = self._new_record(spec.name)
        self._fail(record, DependencyFailedError(name=spec.name, dependency=dependency))
        return record.state

    def cancel(self, spec: VMSpec) -> InstanceState:
        record = self._new_record(spec.name)
        self._fail(record, RunCancelled(spec.name))
        return record.state

    def destroy(self, name: str) -> bool:
        """Remove ``name`` from the hypervisor. Absence counts as success."""
        with self.lock_for(name):
            existed = remove_instance(self.client, name)
            with self._guard:
                record = self.records.get(name)
                if record is None:
                    record = InstanceRecord(name=name)
                    self.records[name] = record
                self.infos.pop(name, None)
            advance(record, InstanceState.DESTROYED)
            logger.info("instance destroyed name=%s existed=%s", name, existed)
            return existed

    def teardown_unfinished(self) -> list[str]:
        """Best-effort removal of instances stuck between creation and a terminal state."""
        with self._guard:
            stuck = [
                r.name
                for r in self.records.values()
                if not is_terminal(r.state) and r.state != InstanceState.ABSENT
            ]
        removed: list[str] = []
        for name in stuck:
            try:
                self.destroy(name)
                removed.append(name)
                self.metrics.inc("teardowns_total")
            except Exception as exc:  # noqa: BLE001
                err = TeardownError(name=name, detail=str(exc))
                logger.warning("%s", err)
        return removed

    def result_for(self, name: str) -> InstanceResult:
        with self._guard:
            record = self.records.get(name) or InstanceRecord(name=name)
            info = self.infos.get(name)
        err = record.error
        return InstanceResult(
            name=name,
            state=record.state.value,
            succeeded=record.state == InstanceState.READY,
            error_type=type(err).__name__ if err else None,
            reason=str(err) if err else None,
            info=info,
            history=[s.value for s in record.history],
        )

import logging
import signal
import threading
from collections.abc import Callable
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import UTC, datetime

from provisioner.clients.hypervisor import HypervisorClient
from provisioner.config import Settings
from provisioner.metrics import RunMetrics
from provisioner.models import InstanceState, VMSpec
from provisioner.schemas import InstanceResult, RunSummary
from provisioner.services.lifecycle import LifecycleController


logger = logging.getLogger(__name__)


class Orchestrator:
    """Schedules declared instances over a bounded worker pool.

    Instances without ``start_after`` edges run in parallel. A dependent is only
    submitted once every dependency is READY; if any dependency failed it is
    marked failed without touching the hypervisor.
    """

    def __init__(
        self,
        client: HypervisorClient,
        settings: Settings,
        *,
        stop_event: threading.Event | None = None,
        metrics: RunMetrics | None = None,
        controller: LifecycleController | None = None,
    ):
        self.client = client
        self.settings = settings
        self.stop_event = stop_event or threading.Event()
        self.metrics = metrics or RunMetrics()
        self.controller = controller or LifecycleController(
            client, settings, stop_event=self.stop_event, metrics=self.metrics
        )

    def apply(self, specs: list[VMSpec], max_workers: int | None = None) -> RunSummary:
        started_at = datetime.now(UTC)
        workers = max_workers or self.settings.max_workers
        pending: list[VMSpec] = list(specs)
        finished: dict[str, InstanceState] = {}
        running: dict[Future, str] = {}
        logger.info("apply start instances=%s workers=%s", len(specs), workers)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="provision") as pool:
            while pending or running:
                if self.stop_event.is_set():
                    for spec in pending:
                        finished[spec.name] = self.controller.cancel(spec)
                    pending = []
                else:
                    pending = self._schedule(pending, finished, running, pool)

                if not running:
                    if pending:
                        # unreachable with normalized input; never spin
                        for spec in pending:
                            finished[spec.name] = self.controller.cancel(spec)
                        pending = []
                    break

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    name = running.pop(future)
                    finished[name] = future.result()

        if self.stop_event.is_set():
            removed = self.controller.teardown_unfinished()
            if removed:
                logger.warning("interrupted run cleaned up instances=%s", ",".join(removed))

        finished_at = datetime.now(UTC)
        results = [self.controller.result_for(spec.name) for spec in specs]
        summary = RunSummary(
            started_at=started_at,
            finished_at=finished_at,
            elapsed_sec=round((finished_at - started_at).total_seconds(), 3),
            results=results,
            counters=self.metrics.snapshot(),
        )
        logger.info(
            "apply finished ready=%s failed=%s elapsed=%.1fs",
            sum(1 for r in results if r.succeeded),
            sum(1 for r in results if not r.succeeded),
            summary.elapsed_sec,
        )
        return summary

    def _schedule(
        self,
        pending: list[VMSpec],
        finished: dict[str, InstanceState],
        running: dict[Future, str],
        pool: ThreadPoolExecutor,
    ) -> list[VMSpec]:
        known = {spec.name for spec in pending} | set(finished) | set(running.values())
        changed = True
        while changed:
            changed = False
            still_pending: list[VMSpec] = []
            for spec in pending:
                failed_dep = next(
                    (
                        dep
                        for dep in sorted(spec.start_after)
                        if dep not in known
                        or (dep in finished and finished[dep] != InstanceState.READY)
                    ),
                    None,
                )
                if failed_dep is not None:
                    finished[spec.name] = self.controller.fail_dependency(spec, failed_dep)
                    changed = True
                    continue
                if all(finished.get(dep) == InstanceState.READY for dep in spec.start_after):
                    future = pool.submit(self.controller.provision, spec)
                    running[future] = spec.name
                    continue
                still_pending.append(spec)
            pending = still_pending
        return pending

    def destroy(self, names: list[str]) -> list[InstanceResult]:
        results: list[InstanceResult] = []
        for name in names:
            try:
                self.controller.destroy(name)
            except Exception as exc:  # noqa: BLE001
                record = self.controller.records.get(name)
                if record is not None:
                    record.error = exc
                logger.error("destroy failed name=%s: %s", name, exc)
                results.append(
                    InstanceResult(
                        name=name,
                        state=record.state.value if record else InstanceState.ABSENT.value,
                        succeeded=False,
                        error_type=type(exc).__name__,
                        reason=str(exc),
                    )
                )
                continue
            results.append(self.controller.result_for(name).model_copy(update={"succeeded": True}))
        return results


def install_signal_handlers(stop_event: threading.Event) -> Callable[[], None]:
    """Route SIGINT/SIGTERM to ``stop_event``; returns a function restoring the old handlers."""
    if threading.current_thread() is not threading.main_thread():
        return lambda: None

    def _handle(signum, _frame) -> None:
        logger.warning("interrupt received signal=%s; stopping", signum)
        stop_event.set()

    previous = {
        sig: signal.signal(sig, _handle) for sig in (signal.SIGINT, signal.SIGTERM)
    }

    def restore() -> None:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    return restore

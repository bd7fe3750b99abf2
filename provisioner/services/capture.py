import hashlib
import logging
from datetime import UTC, datetime
from pathlib import Path

from provisioner.clients.hypervisor import HypervisorClient
from provisioner.config import Settings
from provisioner.errors import BackendError, ProvisionerError
from provisioner.models import CaptureStep
from provisioner.schemas import CaptureReport, CaptureStepResult, ExportMetadata
from provisioner.services.backends import STOPPED_STATES, remove_instance


logger = logging.getLogger(__name__)


def sha256_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _path_size(path: Path) -> int:
    if path.is_file():
        return path.stat().st_size
    if path.is_dir():
        return sum(p.stat().st_size for p in path.rglob("*") if p.is_file())
    return 0


def _checksum(path: Path) -> str:
    if path.is_file():
        return sha256_file(path)
    digest = hashlib.sha256()
    for p in sorted(q for q in path.rglob("*") if q.is_file()):
        digest.update(p.relative_to(path).as_posix().encode("utf-8"))
        digest.update(sha256_file(p).encode("ascii"))
    return digest.hexdigest()


class CaptureService:
    """Turns an existing instance into reusable artifacts, one explicit step at a time."""

    def __init__(self, client: HypervisorClient, settings: Settings):
        self.client = client
        self.settings = settings

    def capture(
        self, name: str, steps: list[CaptureStep], now: datetime | None = None
    ) -> CaptureReport:
        report = CaptureReport(name=name)
        listing = self.client.find(name)
        if listing is None:
            report.steps.append(
                CaptureStepResult(step="locate", succeeded=False, detail=f"instance {name} not found")
            )
            return report
        if listing.status not in STOPPED_STATES:
            logger.info("stopping instance before capture name=%s status=%s", name, listing.status)
            try:
                self.client.stop(name, kill=True)
            except BackendError as exc:
                report.steps.append(CaptureStepResult(step="stop", succeeded=False, detail=str(exc)))
                return report

        timestamp = (now or datetime.now(UTC)).strftime("%Y%m%d-%H%M%S")
        handlers = {
            CaptureStep.TEMPLATE: self._template,
            CaptureStep.EXPORT: self._export,
            CaptureStep.SNAPSHOT: self._snapshot,
        }
        for step in steps:
            try:
                artifact = handlers[CaptureStep(step)](name, listing.uuid, timestamp)
            except (ProvisionerError, OSError) as exc:
                logger.error("capture step failed name=%s step=%s: %s", name, step, exc)
                report.steps.append(
                    CaptureStepResult(step=CaptureStep(step).value, succeeded=False, detail=str(exc))
                )
                break
            logger.info("capture step done name=%s step=%s artifact=%s", name, step, artifact)
            report.steps.append(
                CaptureStepResult(step=CaptureStep(step).value, succeeded=True, artifact=artifact)
            )
        return report

    def _template(self, name: str, _uuid: str, _timestamp: str) -> str:
        template_name = f"{name}-template"
        remove_instance(self.client, template_name)
        self.client.clone(name, template_name, template=True)
        return template_name

    def _export(self, name: str, uuid: str, timestamp: str) -> str:
        export_dir = Path(self.settings.export_dir)
        export_dir.mkdir(parents=True, exist_ok=True)
        export_path = export_dir / f"{name}-{timestamp}.pvm"
        self.client.export(name, str(export_path))

        checksum = _checksum(export_path)
        checksum_path = export_path.with_name(export_path.name + ".sha256")
        checksum_path.write_text(f"{checksum}  {export_path.name}\n", encoding="utf-8")

        metadata = ExportMetadata(
            name=name,
            uuid=uuid or None,
            exported=datetime.now(UTC),
            size_bytes=_path_size(export_path),
            checksum=checksum,
        )
        export_path.with_name(export_path.name + ".json").write_text(
            metadata.model_dump_json(indent=2), encoding="utf-8"
        )
        return str(export_path)

    def _snapshot(self, name: str, _uuid: str, timestamp: str) -> str:
        snapshot_name = f"template-{timestamp}"
        self.client.snapshot(
            name, snapshot_name, f"Template snapshot created on {timestamp}"
        )
        return snapshot_name

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class VMDeclaration(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    source_type: str | None = None
    source_ref: str | None = None
    iso: str | None = None
    template: str | None = None
    bundle: str | None = None
    cpus: int | None = Field(default=None, ge=1)
    memory_mb: int | None = Field(default=None, ge=256)
    disk_gb: int | None = Field(default=None, ge=1)
    network: str | None = None
    linked_clone: bool = False
    start_after: list[str] = Field(default_factory=list)
    cloud_init: str | None = None


class DeclarationDefaults(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cpus: int | None = Field(default=None, ge=1)
    memory_mb: int | None = Field(default=None, ge=256)
    disk_gb: int | None = Field(default=None, ge=1)
    network: str | None = None
    iso: str | None = None
    template: str | None = None


class DeclarationsFile(BaseModel):
    model_config = ConfigDict(extra="forbid")

    defaults: DeclarationDefaults = Field(default_factory=DeclarationDefaults)
    vms: dict[str, VMDeclaration | None] = Field(default_factory=dict)


class InstanceInfo(BaseModel):
    name: str
    ip_address: str | None = None
    status: str
    uuid: str | None = None
    cpus: int | None = None
    memory_mb: int | None = None
    disk_gb: int | None = None


class InstanceResult(BaseModel):
    name: str
    state: str
    succeeded: bool
    error_type: str | None = None
    reason: str | None = None
    info: InstanceInfo | None = None
    history: list[str] = Field(default_factory=list)


class RunSummary(BaseModel):
    started_at: datetime
    finished_at: datetime
    elapsed_sec: float
    results: list[InstanceResult] = Field(default_factory=list)
    counters: dict[str, float] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return all(r.succeeded for r in self.results)


class ExportMetadata(BaseModel):
    name: str
    uuid: str | None
    exported: datetime
    size_bytes: int
    checksum: str
    type: str = "pvm-bundle"


class CaptureStepResult(BaseModel):
    step: str
    succeeded: bool
    artifact: str | None = None
    detail: str | None = None


class CaptureReport(BaseModel):
    name: str
    steps: list[CaptureStepResult] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(s.succeeded for s in self.steps)

from dataclasses import dataclass, field
from enum import Enum


class SourceType(str, Enum):
    ISO = "iso"
    TEMPLATE = "template"
    BUNDLE = "bundle"


class NetworkMode(str, Enum):
    SHARED = "shared"
    BRIDGED = "bridged"
    HOST_ONLY = "host-only"


class InstanceState(str, Enum):
    ABSENT = "ABSENT"
    CREATED = "CREATED"
    CONFIGURED = "CONFIGURED"
    STARTING = "STARTING"
    AWAITING_READY = "AWAITING_READY"
    READY = "READY"
    FAILED = "FAILED"
    DESTROYED = "DESTROYED"


class CaptureStep(str, Enum):
    TEMPLATE = "template"
    EXPORT = "export"
    SNAPSHOT = "snapshot"


@dataclass(frozen=True)
class VMSpec:
    name: str
    source_type: SourceType
    source_ref: str
    cpus: int
    memory_mb: int
    disk_gb: int
    network: NetworkMode = NetworkMode.SHARED
    linked_clone: bool = False
    start_after: frozenset[str] = field(default_factory=frozenset)
    cloud_init_payload: str | None = None


@dataclass(frozen=True)
class InstanceHandle:
    name: str
    backend_uuid: str
    source_type: SourceType


@dataclass
class InstanceRecord:
    """Per-run bookkeeping for one declared instance, owned by the lifecycle controller."""

    name: str
    state: InstanceState = InstanceState.ABSENT
    handle: InstanceHandle | None = None
    ip_address: str | None = None
    error: Exception | None = None
    history: list[InstanceState] = field(default_factory=list)

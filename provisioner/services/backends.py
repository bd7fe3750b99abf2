import logging
from abc import ABC, abstractmethod
from pathlib import Path

from provisioner.clients.hypervisor import HypervisorClient, VMListing
from provisioner.config import Settings
from provisioner.errors import BackendError, UnsupportedBackendError
from provisioner.models import InstanceHandle, SourceType, VMSpec
from provisioner.services.seed import write_seed_image


logger = logging.getLogger(__name__)

STOPPED_STATES = {"stopped", "unknown", ""}


def remove_instance(client: HypervisorClient, name: str) -> bool:
    """Force-stop and delete ``name``; absence is success. Returns whether it existed."""
    existing = client.find(name)
    if existing is None:
        return False
    logger.info(
        "removing instance name=%s uuid=%s status=%s",
        name,
        existing.uuid,
        existing.status,
    )
    if existing.status not in STOPPED_STATES:
        client.stop(name, kill=True)
    client.delete(name)
    return True


def firmware_args(arch: str) -> list[str]:
    # Apple silicon hosts only boot guests through EFI and reject the flag.
    if arch == "arm64":
        return []
    return ["--efi-boot", "on"]


class ProvisioningBackend(ABC):
    source_type: SourceType

    def __init__(self, client: HypervisorClient, settings: Settings):
        self.client = client
        self.settings = settings

    def teardown_existing(self, name: str) -> bool:
        """Idempotent pre-clean before create: replace, never patch."""
        return remove_instance(self.client, name)

    @abstractmethod
    def create(self, spec: VMSpec) -> InstanceHandle:
        raise NotImplementedError

    def configure(self, handle: InstanceHandle, spec: VMSpec) -> None:
        self.reconfigure(handle, spec)

    def reconfigure(self, handle: InstanceHandle, spec: VMSpec) -> None:
        """In-place tweaks the hypervisor applies reliably to a stopped instance."""
        self.client.set(
            handle.name,
            [
                "--cpus",
                str(spec.cpus),
                "--memsize",
                str(spec.memory_mb),
                "--startup-view",
                self.settings.startup_view,
            ],
        )
        self.client.set(handle.name, ["--device-set", "net0", "--type", spec.network.value])

    def attach_seed(self, handle: InstanceHandle, spec: VMSpec) -> None:
        if not spec.cloud_init_payload:
            return
        seed = write_seed_image(
            self.settings.seed_dir,
            spec.name,
            spec.cloud_init_payload,
            timeout_sec=self.settings.command_timeout_sec,
        )
        self.client.set(
            handle.name, ["--device-add", "cdrom", "--image", str(seed), "--connect"]
        )

    def _handle_for(self, name: str) -> InstanceHandle:
        listing = self.client.find(name)
        if listing is None:
            raise BackendError(
                command=["prlctl", "list", "-a", "-f", "--json"],
                exit_status=0,
                detail=f"instance {name} missing right after creation",
            )
        return InstanceHandle(name=name, backend_uuid=listing.uuid, source_type=self.source_type)


class IsoInstaller(ProvisioningBackend):
    source_type = SourceType.ISO

    def create(self, spec: VMSpec) -> InstanceHandle:
        image = Path(spec.source_ref)
        if not image.is_file():
            raise BackendError(
                command=[
                    "prlctl", "set", spec.name, "--device-set", "cdrom0", "--image", spec.source_ref
                ],
                exit_status=None,
                detail=f"boot image not found: {spec.source_ref}",
            )
        self.client.create(spec.name, self.settings.distribution)
        return self._handle_for(spec.name)

    def configure(self, handle: InstanceHandle, spec: VMSpec) -> None:
        self.reconfigure(handle, spec)
        firmware = firmware_args(self.settings.resolved_arch())
        if firmware:
            self.client.set(handle.name, firmware)
        self.client.set(handle.name, ["--device-add", "hdd", "--size", str(spec.disk_gb * 1024)])
        self.client.set(
            handle.name,
            [
                "--device-set",
                "cdrom0",
                "--image",
                str(Path(spec.source_ref).resolve()),
                "--connect",
            ],
        )
        self.attach_seed(handle, spec)
        self.client.set(handle.name, ["--device-bootorder", "cdrom0 hdd0"])


class TemplateCloner(ProvisioningBackend):
    source_type = SourceType.TEMPLATE

    def create(self, spec: VMSpec) -> InstanceHandle:
        if spec.linked_clone:
            logger.info(
                "linked clone depends on template staying intact name=%s template=%s",
                spec.name,
                spec.source_ref,
            )
        self.client.clone(spec.source_ref, spec.name, linked=spec.linked_clone)
        return self._handle_for(spec.name)

    def configure(self, handle: InstanceHandle, spec: VMSpec) -> None:
        self.reconfigure(handle, spec)
        self.attach_seed(handle, spec)


class BundleImporter(ProvisioningBackend):
    source_type = SourceType.BUNDLE

    def create(self, spec: VMSpec) -> InstanceHandle:
        before = {listing.uuid for listing in self.client.list_vms()}
        self.client.register(spec.source_ref)
        registered = self._find_registered(before, spec)
        if registered.name != spec.name:
            logger.info(
                "renaming imported bundle from=%s to=%s", registered.name, spec.name
            )
            try:
                self.client.rename(registered.name, spec.name)
            except BackendError:
                self._unregister(registered.name)
                raise
        return InstanceHandle(
            name=spec.name, backend_uuid=registered.uuid, source_type=self.source_type
        )

    def _unregister(self, name: str) -> None:
        # a registration left under its bundle name blocks the next import
        try:
            remove_instance(self.client, name)
        except BackendError as exc:
            logger.warning("could not remove imported bundle name=%s: %s", name, exc)

    def _find_registered(self, before: set[str], spec: VMSpec) -> VMListing:
        fresh = [listing for listing in self.client.list_vms() if listing.uuid not in before]
        if len(fresh) == 1:
            return fresh[0]
        bundle_stem = Path(spec.source_ref.rstrip("/")).stem
        for listing in fresh:
            if listing.name in {spec.name, bundle_stem}:
                return listing
        raise BackendError(
            command=["prlctl", "register", spec.source_ref],
            exit_status=0,
            detail=f"could not identify registered instance ({len(fresh)} new entries)",
        )


BACKENDS: dict[SourceType, type[ProvisioningBackend]] = {
    SourceType.ISO: IsoInstaller,
    SourceType.TEMPLATE: TemplateCloner,
    SourceType.BUNDLE: BundleImporter,
}


def select_backend(
    source_type: SourceType | str, client: HypervisorClient, settings: Settings
) -> ProvisioningBackend:
    try:
        key = SourceType(source_type)
    except ValueError:
        raise UnsupportedBackendError(source_type) from None
    backend_cls = BACKENDS.get(key)
    if backend_cls is None:
        raise UnsupportedBackendError(source_type)
    return backend_cls(client, settings)

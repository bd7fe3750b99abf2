from provisioner.clients.hypervisor import HypervisorClient
from provisioner.models import VMSpec
from provisioner.schemas import InstanceInfo
from provisioner.services.readiness import usable_ipv4


def collect_info(
    client: HypervisorClient,
    name: str,
    *,
    uuid: str | None = None,
    spec: VMSpec | None = None,
    ip_address: str | None = None,
) -> InstanceInfo:
    """Assemble the final record from hypervisor state; never waits."""
    listing = client.find(name)
    if listing is None:
        return InstanceInfo(name=name, status="absent")
    details = client.details(name)

    address = ip_address
    if not address and usable_ipv4(listing.ip_address):
        address = listing.ip_address
    if not address and details is not None:
        address = next((a for a in details.addresses if usable_ipv4(a)), None)

    status = listing.status
    if details is not None and details.status != "unknown":
        status = details.status

    resolved_uuid = listing.uuid or uuid
    if details is not None and details.uuid:
        resolved_uuid = details.uuid

    return InstanceInfo(
        name=name,
        ip_address=address,
        status=status,
        uuid=resolved_uuid or None,
        cpus=_first(details and details.cpus, spec and spec.cpus),
        memory_mb=_first(details and details.memory_mb, spec and spec.memory_mb),
        disk_gb=_first(details and details.disk_gb, spec and spec.disk_gb),
    )


def _first(*values):
    for value in values:
        if value:
            return value
    return None

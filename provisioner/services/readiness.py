import ipaddress
import logging
import re
import threading
import time
from collections.abc import Callable

from provisioner.clients.hypervisor import HypervisorClient
from provisioner.errors import BackendError, ReadinessCancelled, ReadinessTimeoutError


logger = logging.getLogger(__name__)

_INET_RE = re.compile(r"\binet\s+(\d{1,3}(?:\.\d{1,3}){3})(?:/\d+)?")

ADDRESS_COMMAND = ["ip", "-4", "addr", "show", "scope", "global"]


def usable_ipv4(value: str | None) -> bool:
    if not value:
        return False
    try:
        addr = ipaddress.ip_address(value.strip())
    except ValueError:
        return False
    return (
        addr.version == 4
        and not addr.is_link_local
        and not addr.is_loopback
        and not addr.is_unspecified
    )


def parse_guest_addresses(output: str) -> list[str]:
    return [m.group(1) for m in _INET_RE.finditer(output or "") if usable_ipv4(m.group(1))]


class ReadinessPoller:
    def __init__(
        self,
        client: HypervisorClient,
        *,
        interval_sec: float,
        timeout_sec: float,
        marker_path: str,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.interval_sec = interval_sec
        self.timeout_sec = timeout_sec
        self.marker_path = marker_path
        self.stop_event = stop_event or threading.Event()
        self.clock = clock

    def _budget(self, deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return max(deadline - self.clock(), 0.0)

    def lookup_address(self, name: str, deadline: float | None = None) -> str | None:
        budget = self._budget(deadline)
        if budget == 0.0:
            return None
        try:
            listing = self.client.find(name, timeout=budget, cancel=self.stop_event)
        except BackendError as exc:
            logger.debug("listing failed name=%s: %s", name, exc)
            listing = None
        if listing is not None and usable_ipv4(listing.ip_address):
            return listing.ip_address
        if self.stop_event.is_set():
            return None
        budget = self._budget(deadline)
        if budget == 0.0:
            return None
        result = self.client.exec(name, ADDRESS_COMMAND, timeout=budget, cancel=self.stop_event)
        if not result.ok:
            return None
        addresses = parse_guest_addresses(result.stdout)
        return addresses[0] if addresses else None

    def check_marker(self, name: str, deadline: float | None = None) -> bool:
        budget = self._budget(deadline)
        if budget == 0.0 or self.stop_event.is_set():
            return False
        return self.client.exec(
            name, ["test", "-f", self.marker_path], timeout=budget, cancel=self.stop_event
        ).ok

    def wait(self, name: str) -> str:
        """Block until ``name`` has a usable address and its marker, or raise.

        Every listing and guest command is bounded by the time left before the deadline and aborts
        when ``stop_event`` is set, so neither a hung guest nor an interrupt
        can hold the caller past ``timeout_sec``.
        """
        started = self.clock()
        deadline = started + self.timeout_sec
        address: str | None = None
        attempt = 0
        while True:
            attempt += 1
            address = self.lookup_address(name, deadline)
            if address and self.check_marker(name, deadline):
                logger.info(
                    "instance ready name=%s ip=%s attempts=%s elapsed=%.1fs",
                    name,
                    address,
                    attempt,
                    self.clock() - started,
                )
                return address
            if self.stop_event.is_set():
                raise ReadinessCancelled(name)
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ReadinessTimeoutError(
                    name=name, waited_sec=self.clock() - started, last_address=address
                )
            logger.debug(
                "waiting for readiness name=%s address=%s attempt=%s remaining=%.0fs",
                name,
                address or "-",
                attempt,
                remaining,
            )
            if self.stop_event.wait(min(self.interval_sec, remaining)):
                raise ReadinessCancelled(name)

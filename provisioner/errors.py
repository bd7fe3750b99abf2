class ProvisionerError(RuntimeError):
    """Base class for every error the orchestrator reports per instance."""


class ValidationError(ProvisionerError):
    def __init__(self, detail: str, *, name: str | None = None):
        self.detail = detail
        self.name = name
        prefix = f"invalid declaration name={name}: " if name else "invalid declaration: "
        super().__init__(prefix + detail)


class UnsupportedBackendError(ProvisionerError):
    def __init__(self, source_type: object):
        self.source_type = source_type
        super().__init__(f"no provisioning backend for source_type={source_type!r}")


class BackendError(ProvisionerError):
    def __init__(self, *, command: list[str], exit_status: int | None, detail: str):
        self.command = list(command)
        self.exit_status = exit_status
        self.detail = detail
        super().__init__(
            f"hypervisor command failed exit_status={exit_status} command={' '.join(self.command)}: {detail}"
        )


class SeedImageError(BackendError):
    pass


class ReadinessTimeoutError(ProvisionerError):
    def __init__(self, *, name: str, waited_sec: float, last_address: str | None):
        self.name = name
        self.waited_sec = waited_sec
        self.last_address = last_address
        super().__init__(
            f"instance not ready name={name} waited={waited_sec:.0f}s last_address={last_address or '-'}"
        )


class ReadinessCancelled(ProvisionerError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"readiness wait cancelled name={name}")


class DependencyFailedError(ProvisionerError):
    def __init__(self, *, name: str, dependency: str):
        self.name = name
        self.dependency = dependency
        super().__init__(f"dependency failed name={name} dependency={dependency}")


class TeardownError(ProvisionerError):
    def __init__(self, *, name: str, detail: str):
        self.name = name
        self.detail = detail
        super().__init__(f"teardown failed name={name}: {detail}")


class InvalidTransitionError(ProvisionerError):
    def __init__(self, *, name: str, current: str, target: str):
        self.name = name
        self.current = current
        self.target = target
        super().__init__(f"invalid transition name={name} {current} -> {target}")


class ReportError(ProvisionerError):
    def __init__(self, *, url: str, attempts: int, detail: str):
        self.url = url
        self.attempts = attempts
        self.detail = detail
        super().__init__(f"report delivery failed after {attempts} attempts url={url}: {detail}")


class RunCancelled(ProvisionerError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"run cancelled name={name}")

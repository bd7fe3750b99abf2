from functools import lru_cache
import platform

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


NETWORK_MODES = {"shared", "bridged", "host-only"}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="VMPROV_", env_file=".env", extra="ignore")

    prlctl_binary: str = Field(default="prlctl")
    hypervisor_backend: str = Field(default="prlctl")
    command_timeout_sec: float = Field(default=300.0, gt=0)

    max_workers: int = Field(default=4, ge=1)
    poll_interval_sec: float = Field(default=10.0, gt=0)
    ready_timeout_sec: float = Field(default=600.0, gt=0)
    ready_marker_path: str = Field(default="/var/lib/cloud/instance/boot-finished")

    default_cpus: int = Field(default=2, ge=1)
    default_memory_mb: int = Field(default=4096, ge=256)
    default_disk_gb: int = Field(default=20, ge=1)
    default_network: str = Field(default="shared")
    default_iso: str | None = Field(default=None)
    default_template: str | None = Field(default=None)

    distribution: str = Field(default="ubuntu")
    startup_view: str = Field(default="headless")
    host_arch: str | None = Field(default=None)
    login_user: str = Field(default="ubuntu")

    seed_dir: str = Field(default="./work/cloud-init")
    export_dir: str = Field(default="./templates")

    report_url: str | None = Field(default=None)
    report_retry_attempts: int = Field(default=3, ge=1)
    report_retry_sleep_sec: float = Field(default=2.0, ge=0)

    log_level: str = Field(default="INFO")

    @field_validator("hypervisor_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        allowed = {"prlctl", "fake"}
        if value not in allowed:
            raise ValueError(
                f"unsupported hypervisor_backend {value}; expected one of {sorted(allowed)}"
            )
        return value

    @field_validator("startup_view")
    @classmethod
    def _check_view(cls, value: str) -> str:
        if value not in {"headless", "window"}:
            raise ValueError(f"unsupported startup_view {value}")
        return value

    @field_validator("default_network")
    @classmethod
    def _check_network(cls, value: str) -> str:
        normalized = value.strip().lower().replace("_", "-")
        if normalized == "hostonly":
            normalized = "host-only"
        if normalized not in NETWORK_MODES:
            raise ValueError(
                f"unsupported default_network {value}; expected one of {sorted(NETWORK_MODES)}"
            )
        return normalized

    def resolved_arch(self) -> str:
        arch = (self.host_arch or platform.machine() or "x86_64").lower()
        if arch in {"aarch64", "arm64"}:
            return "arm64"
        if arch in {"amd64", "x86_64", "x64"}:
            return "x86_64"
        return arch


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class FakeHypervisorSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FAKE_HYPERVISOR_", extra="ignore")

    address_prefix: str = Field(default="10.211.55.")
    address_after_polls: int = Field(default=1, ge=0)
    marker_after_polls: int = Field(default=2, ge=0)
    never_ready_csv: str = Field(default="")
    templates_csv: str = Field(default="")
    allow_unknown_templates: bool = Field(default=True)

    @property
    def never_ready(self) -> set[str]:
        return {x.strip() for x in self.never_ready_csv.split(",") if x.strip()}

    @property
    def templates(self) -> list[str]:
        return [x.strip() for x in self.templates_csv.split(",") if x.strip()]


@lru_cache(maxsize=1)
def get_settings() -> FakeHypervisorSettings:
    return FakeHypervisorSettings()

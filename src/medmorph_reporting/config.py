"""Runtime configuration loaded from the environment."""

from __future__ import annotations

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

DEFAULT_FHIR_BASE_URL = "http://localhost:8080/fhir"
DEFAULT_PAGE_SIZE = 1000


class Settings(BaseModel):
    """Coordinates of a reporting run plus connection details."""

    fhir_base_url: str = Field(default=DEFAULT_FHIR_BASE_URL)
    fhir_auth_token: str | None = Field(default=None)
    plan_url: str | None = Field(
        default=None, description="Canonical URL of the PlanDefinition to run"
    )
    action_id: str | None = Field(default=None, description="Action id to start from")
    report_endpoint: str | None = Field(
        default=None, description="Destination the finished report is POSTed to"
    )
    report_auth_token: str | None = Field(default=None)
    notification_endpoint: str | None = Field(
        default=None, description="Where generated subscriptions deliver notifications"
    )
    patient_identifier_system: str | None = Field(
        default=None,
        description="Identifier system used to resolve the subject of a clinical resource",
    )
    search_page_size: int = Field(default=DEFAULT_PAGE_SIZE, ge=1)
    message_source_endpoint: str = Field(default="http://example.org/fhir/endpoint")

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> Settings:
        """Build settings from environment variables (and ``.env`` if present)."""
        if load_env_file:
            load_dotenv()

        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = os.getenv(name.upper())
            if raw:
                values[name] = raw
        return cls.model_validate(values)

    def missing_run_coordinates(self) -> list[str]:
        """Names of the run coordinates that are not configured."""
        return [
            name.upper()
            for name in ("plan_url", "action_id", "report_endpoint")
            if not getattr(self, name)
        ]

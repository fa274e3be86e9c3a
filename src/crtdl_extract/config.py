"""Application settings loaded from environment variables."""

from pathlib import Path

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Central configuration — values come from .env or environment variables."""

    # FHIR server
    fhir_base_url: str = "http://localhost:8080/fhir"
    fhir_page_count: int = 500
    fhir_request_timeout: float = 30.0

    # Retry of transient fetch failures
    fhir_max_attempts: int = 5
    fhir_retry_min_seconds: float = 1.0
    fhir_retry_max_seconds: float = 30.0

    # Fan-out limits
    max_concurrent_groups: int = 8
    max_concurrent_patients: int = 4

    # Data paths (relative to project root)
    compartment_file: Path | None = None
    group_catalogue_file: Path = Path("data/attribute_groups.json")

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()

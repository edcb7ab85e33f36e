"""
Application settings using Pydantic.

Provides environment-based configuration loading with GUARDIAN_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from guardian.policies.models import FailurePolicy, Severity


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="GUARDIAN_",
    )

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # API
    api_prefix: str = "/api/v1"
    host: str = "0.0.0.0"
    port: int = 8443
    tls_cert_file: str | None = None
    tls_key_file: str | None = None

    # Admission
    failure_policy: FailurePolicy = FailurePolicy.FAIL_CLOSED
    admission_timeout: float = 2.0
    deny_severity: Severity = Severity.HIGH

    # Reconciliation
    reconcile_workers: int = 4
    backoff_base: float = 1.0
    backoff_factor: float = 2.0
    backoff_cap: float = 300.0
    manage_finalizer: bool = True
    finalizer_name: str = "guardian.io/finalizer"

    # Aggregation
    aggregation_interval: float = 30.0
    cluster_poll_timeout: float = 5.0
    clusters_file: str | None = None

    # Kubernetes (used when no clusters file is configured)
    cluster_id: str = "local"
    kubeconfig: str | None = None
    kube_context: str | None = None
    kube_request_timeout: float = 10.0


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

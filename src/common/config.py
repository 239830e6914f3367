"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Pipeline settings loaded from environment variables.

    Variables are read with a ``DEPLOY_`` prefix (``DEPLOY_MANIFEST_DIR``)
    so generic host variables such as ``CONTAINER_NAME`` are never picked up.
    AWS and CI variables keep their conventional names through aliases.
    """

    model_config = SettingsConfigDict(
        env_prefix="DEPLOY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
    )

    # Environment
    environment: Literal["dev", "staging", "prod"] = "dev"

    # AWS
    aws_region: str | None = Field(
        default=None,
        validation_alias=AliasChoices("AWS_REGION", "AWS_DEFAULT_REGION", "aws_region"),
    )
    aws_profile: str | None = None

    # Terraform backend
    state_bucket: str = "deploy-terraform-state"
    lock_table: str = "deploy-terraform-locks"
    bucket_wait_attempts: int = Field(default=10, ge=1)
    bucket_wait_interval: float = Field(default=5.0, ge=0)

    # Image
    ecr_repository: str = "web-app"
    docker_context: Path = Path(".")
    dockerfile: Path = Path("Dockerfile")
    revision: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "REVISION", "GIT_COMMIT", "CODEBUILD_RESOLVED_SOURCE_VERSION", "revision"
        ),
    )
    build_number: int | None = Field(
        default=None,
        validation_alias=AliasChoices("BUILD_NUMBER", "CODEBUILD_BUILD_NUMBER", "build_number"),
    )

    # Scanning (informational only)
    scan_enabled: bool = True
    scan_command: str = "trivy"

    # Manifests
    manifest_dir: Path | None = None
    namespace_manifest: str = "namespace.yaml"
    config_manifest: str = "configmap.yaml"
    secret_manifest: str = "secret.yaml"
    workload_manifest: str = "deployment.yaml"
    primary_service_manifest: str = "service-nlb.yaml"
    secondary_service_manifest: str = "service-clb.yaml"
    container_name: str | None = None

    # Kubernetes
    kube_context: str | None = None

    # Polling
    exposure_poll_interval: float = 15.0
    exposure_deadline: float = 360.0
    rollout_timeout: float = 300.0
    rollout_poll_interval: float = 5.0

    # Diagnostics
    diagnostics_event_limit: int = Field(default=100, ge=1)
    diagnostics_dir: Path | None = None

    # Logging
    log_level: str = "INFO"
    log_format: Literal["json", "console"] = "json"

    # Metrics
    metrics_pushgateway: str | None = None
    metrics_job: str = "deploy-pipeline"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance
    """
    return Settings()

"""
Application settings and configuration management.

This module provides centralized configuration management using Pydantic settings
for type safety and validation. Each concern reads its own environment prefix,
and the combined ``Settings`` object is injected into services at construction.
Only the entry points (``run.py`` and ``main.py``) call ``get_settings()``.
"""

from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SourceKind(str, Enum):
    """Where pipeline changes come from."""

    VCS = "vcs"
    REGISTRY = "registry"


class ConcurrencyPolicy(str, Enum):
    """How concurrent deploys to one service are handled."""

    REJECT = "reject"
    QUEUE = "queue"


class AppSettings(BaseSettings):
    """Namespace and stage of the deployment."""

    model_config = SettingsConfigDict(env_prefix="APP_")

    ns: str = Field(default="Dev")
    """Resource namespace, prefixed to pipeline names."""

    stage: str = Field(default="dev")
    """Deployment stage label (dev, staging, prod)."""


class AWSSettings(BaseSettings):
    """AWS client configuration."""

    model_config = SettingsConfigDict(env_prefix="AWS_")

    region: str = Field(default="us-east-1")
    """Region hosting the registry and the service."""

    account_id: Optional[str] = Field(default=None)
    """Account ID. Resolved through STS when unset."""

    endpoint_url: Optional[str] = Field(default=None)
    """Endpoint override for local AWS emulators."""

    profile: Optional[str] = Field(default=None)
    """Named profile used to create the boto3 session."""


class SourceSettings(BaseSettings):
    """Artifact source configuration."""

    model_config = SettingsConfigDict(env_prefix="SOURCE_")

    kind: SourceKind = Field(default=SourceKind.VCS)
    """Source variant. Fixed per deployment, never switched per run."""

    repository_url: Optional[str] = Field(default=None)
    """Git repository URL for the VCS variant."""

    branch: str = Field(default="main")
    """Branch the VCS variant is pinned to."""


class RegistrySettings(BaseSettings):
    """Container registry configuration."""

    model_config = SettingsConfigDict(env_prefix="REGISTRY_")

    repository_name: str = Field(default="echo")
    """Name of the image repository in the registry."""

    latest_tag: str = Field(default="latest")
    """Tag the registry variant promotes from."""


class BuildSettings(BaseSettings):
    """Build stage configuration."""

    model_config = SettingsConfigDict(env_prefix="BUILD_")

    workspace_dir: Path = Field(default=Path("./.builds"))
    """Directory where per-run build workspaces are created."""

    context_dir: str = Field(default="app")
    """Directory inside the checkout that holds the Dockerfile."""

    artifact_file: str = Field(default="imagedefinitions.json")
    """File name of the image descriptor artifact."""

    runtime_versions: Dict[str, str] = Field(default={"golang": "1.20"})
    """Runtime versions declared in the install phase."""

    command_timeout: int = Field(default=900)
    """Maximum seconds a single build command may run."""

    @field_validator("workspace_dir", mode="before")
    @classmethod
    def convert_to_path(cls, v):
        """Convert string paths to Path objects."""
        return Path(v) if isinstance(v, str) else v


class ServiceSettings(BaseSettings):
    """The externally provisioned service that deploys target."""

    model_config = SettingsConfigDict(env_prefix="SERVICE_")

    name: str = Field(default="echo")
    """Service name."""

    cluster: str = Field(default="dev")
    """Cluster running the service."""

    service_arn: Optional[str] = Field(default=None)
    """Service name or ARN in the cluster. Defaults to ``<ns><name>``."""

    container_name: Optional[str] = Field(default=None)
    """Container to update. Defaults to the service name."""

    target_group_arn: Optional[str] = Field(default=None)
    """Load balancer target group used to gate rollout health."""


class DeploySettings(BaseSettings):
    """Deploy stage configuration."""

    model_config = SettingsConfigDict(env_prefix="DEPLOY_")

    timeout_seconds: int = Field(default=900)
    """Deployment window for the new revision to become healthy."""

    poll_interval: float = Field(default=15.0)
    """Seconds between service status polls."""

    rollback_timeout: int = Field(default=600)
    """Maximum seconds to wait for a rollback to stabilize."""

    concurrency_policy: ConcurrencyPolicy = Field(default=ConcurrencyPolicy.REJECT)
    """Reject or queue a deploy when the target is busy."""

    queue_timeout: float = Field(default=300.0)
    """Seconds a queued deploy waits before it is rejected."""


class NotificationSettings(BaseSettings):
    """Webhook notification configuration."""

    model_config = SettingsConfigDict(env_prefix="NOTIFICATION_")

    hook_url: Optional[str] = Field(default=None)
    """Webhook URL. Delivery is disabled when unset."""

    timeout: float = Field(default=10.0)
    """HTTP timeout for webhook calls."""

    max_workers: int = Field(default=2)
    """Threads dedicated to event delivery."""


class PipelineSettings(BaseSettings):
    """Pipeline execution configuration settings."""

    model_config = SettingsConfigDict(env_prefix="PIPELINE_")

    max_concurrent_runs: int = Field(default=3)
    """Maximum number of concurrent pipeline runs."""

    name: Optional[str] = Field(default=None)
    """Pipeline name override. Defaults to ``<ns><service name>``."""


class DatabaseSettings(BaseSettings):
    """Database configuration settings."""

    model_config = SettingsConfigDict(env_prefix="DB_")

    url: str = Field(default="sqlite:///./delivery_pipeline.db")
    """Database connection URL."""

    echo: bool = Field(default=False)
    """Enable SQL query logging."""


class LoggingSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(env_prefix="LOG_")

    level: str = Field(default="INFO")
    """Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)."""

    format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    """Log message format."""

    json_format: bool = Field(default=False)
    """Emit one JSON object per record instead of the text format."""

    file_path: Optional[Path] = Field(default=None)
    """Path to log file. If None, logs to console only."""

    max_file_size: int = Field(default=10 * 1024 * 1024)  # 10MB
    """Maximum log file size before rotation."""

    backup_count: int = Field(default=5)
    """Number of backup log files to keep."""


class APISettings(BaseSettings):
    """API configuration settings."""

    model_config = SettingsConfigDict(env_prefix="API_")

    host: str = Field(default="127.0.0.1")
    """API server host."""

    port: int = Field(default=8000)
    """API server port."""

    reload: bool = Field(default=False)
    """Enable auto-reload for development."""

    cors_origins: List[str] = Field(default=["http://localhost:3000"])
    """List of allowed CORS origins."""


class Settings(BaseSettings):
    """
    Main application settings.

    This class combines all configuration settings and provides a single
    point of access for application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app: AppSettings = Field(default_factory=AppSettings)
    aws: AWSSettings = Field(default_factory=AWSSettings)
    source: SourceSettings = Field(default_factory=SourceSettings)
    registry: RegistrySettings = Field(default_factory=RegistrySettings)
    build: BuildSettings = Field(default_factory=BuildSettings)
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    deploy: DeploySettings = Field(default_factory=DeploySettings)
    notification: NotificationSettings = Field(default_factory=NotificationSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    api: APISettings = Field(default_factory=APISettings)

    app_name: str = Field(default="Delivery Pipeline")
    version: str = Field(default="1.0.0")

    @property
    def pipeline_name(self) -> str:
        """Pipeline name, ``<ns><service name>`` unless overridden."""
        return self.pipeline.name or f"{self.app.ns}{self.service.name}"

    @property
    def container_name(self) -> str:
        """Name of the container the image descriptor must address."""
        return self.service.container_name or self.service.name

    @property
    def service_identifier(self) -> str:
        """Service name or ARN as known to the cluster."""
        return self.service.service_arn or f"{self.app.ns}{self.service.name}"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global application settings instance.

    This function implements the singleton pattern to ensure only one
    settings instance exists throughout the application lifecycle.

    Returns:
        Settings: The global application settings instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """
    Reload settings from environment variables.

    This function forces a reload of settings, useful for testing
    or when environment variables change during runtime.

    Returns:
        Settings: A new settings instance with current environment values.
    """
    global _settings
    _settings = Settings()
    return _settings

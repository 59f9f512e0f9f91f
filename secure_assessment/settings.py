"""Application settings using pydantic-settings.

Loads configuration from environment variables with .env file support,
e.g. ``CONTAINER_RUNTIME_PATH=docker``.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: Literal["development", "staging", "production", "testing"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Container runtime (podman or docker CLI)
    container_runtime_path: str = Field(
        default="podman",
        description="Path to the podman/docker executable",
    )
    runtime_command_timeout_seconds: int = Field(
        default=120,
        ge=5,
        le=1800,
        description="Upper bound on a single runtime CLI call",
    )

    # Images per codebase type
    image_nodejs: str = Field(default="node:20-alpine", description="Image for Node.js codebases")
    image_solidity: str = Field(
        default="ethereum/solc:stable",
        description="Image for Solidity codebases",
    )
    image_mixed: str = Field(default="node:20-alpine", description="Image for mixed codebases")

    # Mounting
    workspace_root: str = Field(
        default="/workspace",
        description="Host directory from which codebases may be mounted",
    )
    container_workspace: str = Field(
        default="/workspace",
        description="Working directory inside assessment containers",
    )
    scan_max_file_bytes: int = Field(
        default=100 * 1024 * 1024,
        ge=1024,
        description="Codebases holding a file larger than this are refused at mount time",
    )

    # Lifecycle
    stop_grace_seconds: int = Field(default=10, ge=0, le=300)
    max_recovery_attempts: int = Field(default=3, ge=0, le=10)

    # Circuit breaker guarding environment creation
    breaker_failure_threshold: int = Field(default=5, ge=1)
    breaker_cooldown_seconds: float = Field(default=60.0, ge=0)
    breaker_success_threshold: int = Field(default=1, ge=1)

    # Resource policy
    cpu_period_us: int = Field(default=100000, ge=1000, le=1000000)
    min_memory_mb: int = Field(default=64, ge=4)
    max_memory_mb: int = Field(default=8192, ge=64)
    min_cpu: float = Field(default=0.1, gt=0)
    max_cpu: float = Field(default=4.0, gt=0)
    host_capacity_fraction: float = Field(
        default=0.8,
        gt=0,
        le=1.0,
        description="Share of host memory/CPUs a single environment may claim",
    )

    # Network
    egress_proxy_url: str | None = Field(
        default=None,
        description="Controlled proxy used when egress is allow-listed",
    )

    # External resources
    allowed_registries: list[str] = Field(
        default=["registry.npmjs.org", "docker.io", "ghcr.io", "quay.io"],
        description="Package and image registries assessments may pull from ('*' allows any)",
    )
    npm_registry_url: str = Field(
        default="https://registry.npmjs.org/",
        description="Registry every npm invocation inside an environment is pinned to",
    )
    integrity_validation: bool = Field(
        default=True,
        description="Check images against image_digests before creating containers",
    )
    image_digests: dict[str, str] = Field(
        default_factory=dict,
        description='Expected repo digest per image, e.g. {"node:20-alpine": "sha256:..."}',
    )

    # Workflow execution
    step_backoff_base_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Per-step retry waits base * 2^attempt seconds",
    )
    tool_exec_ceiling_seconds: int = Field(
        default=3600,
        ge=60,
        description="Runtime-level cap on one tool command; step timeouts are advisory",
    )
    workflow_degrade_on_failure: bool = Field(
        default=False,
        description="Consult a degradation plan instead of aborting on step failure",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance (cached after first call)
    """
    return Settings()

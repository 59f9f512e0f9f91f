"""Core data models shared across the assessment sandbox.

Environments, the configurations they are created from, and the analysis
results that workflows aggregate.
"""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class CodebaseType(StrEnum):
    """Kinds of codebase an environment can assess."""

    NODEJS = "nodejs"
    SOLIDITY = "solidity"
    MIXED = "mixed"


class EnvironmentStatus(StrEnum):
    """Lifecycle status of an environment."""

    CREATING = "creating"
    READY = "ready"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class ResourceLimitSpec(BaseModel):
    """Human-unit resource quotas, e.g. ``cpu="0.5"``, ``memory="512m"``."""

    model_config = ConfigDict(frozen=True)

    cpu: str = Field(default="1.0", description="CPU cores as a decimal string")
    memory: str = Field(default="512m", description="Memory quota with k/m/g suffix")
    disk_space: str = Field(default="1g", description="Disk quota with k/m/g suffix")


class FilesystemAccess(BaseModel):
    """Partition of container paths into read-only and writable mounts."""

    model_config = ConfigDict(frozen=True)

    read_only_mounts: tuple[str, ...] = Field(default=("/code",))
    writable_mounts: tuple[str, ...] = Field(default=("/tmp", "/output"))  # nosec B108


class SecurityConfiguration(BaseModel):
    """Security settings of an environment. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    network_isolation: bool = Field(default=True, description="Disable general egress")
    allowed_network_access: tuple[str, ...] = Field(
        default=(),
        description="Host patterns reachable through the egress proxy",
    )
    resource_limits: ResourceLimitSpec = Field(default_factory=ResourceLimitSpec)
    filesystem_access: FilesystemAccess = Field(default_factory=FilesystemAccess)
    security_policies: tuple[str, ...] = Field(
        default=("no-privileged", "no-host-network", "no-host-pid"),
    )

    @classmethod
    def default(cls) -> "SecurityConfiguration":
        return cls()


class AnalysisConfiguration(BaseModel):
    """What to analyse inside an environment.

    ``codebase_type`` is kept as a plain string so that an unsupported value
    is reported as a configuration error at environment creation.
    """

    model_config = ConfigDict(frozen=True)

    codebase_type: str = Field(..., description="nodejs, solidity or mixed")
    analysis_tools: tuple[str, ...] = Field(default=())
    test_frameworks: tuple[str, ...] = Field(default=())
    report_formats: tuple[str, ...] = Field(default=("json",))
    custom_workflows: tuple[str, ...] = Field(default=())
    quick_scan: bool = Field(default=False, description="Prefer the quick-scan workflow")


class Environment(BaseModel):
    """One isolated sandbox hosting a single assessment run."""

    id: str
    status: EnvironmentStatus = EnvironmentStatus.CREATING
    security_config: SecurityConfiguration
    analysis_config: AnalysisConfiguration
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None


RESULT_CATEGORIES = (
    "security_findings",
    "code_quality_issues",
    "test_results",
    "performance_metrics",
    "recommendations",
)


class ResultFragment(BaseModel):
    """Output of one tool invocation. Any category may be absent."""

    security_findings: list[Any] | None = None
    code_quality_issues: list[Any] | None = None
    test_results: list[Any] | None = None
    performance_metrics: list[Any] | None = None
    recommendations: list[Any] | None = None

    def is_empty(self) -> bool:
        return not any(getattr(self, name) for name in RESULT_CATEGORIES)


class AnalysisResults(BaseModel):
    """Aggregate of every fragment a workflow produced.

    Merging appends; duplicates are kept.
    """

    security_findings: list[Any] = Field(default_factory=list)
    code_quality_issues: list[Any] = Field(default_factory=list)
    test_results: list[Any] = Field(default_factory=list)
    performance_metrics: list[Any] = Field(default_factory=list)
    recommendations: list[Any] = Field(default_factory=list)

    def merge(self, fragment: "ResultFragment | AnalysisResults") -> None:
        for name in RESULT_CATEGORIES:
            items = getattr(fragment, name)
            if items:
                getattr(self, name).extend(items)

    @property
    def total_findings(self) -> int:
        return sum(len(getattr(self, name)) for name in RESULT_CATEGORIES)


class ProgressUpdate(BaseModel):
    """Best-effort progress notification."""

    stage: str
    percent: int = Field(..., ge=0, le=100)
    message: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class AssessmentSummary(BaseModel):
    """Outcome of a full mount-analyse run against one environment."""

    environment_id: str
    workflow: str
    status: str = Field(..., description="completed, degraded or partial")
    executed_steps: list[str] = Field(default_factory=list)
    skipped_steps: list[str] = Field(default_factory=list)
    failed_steps: list[str] = Field(default_factory=list)
    results: AnalysisResults = Field(default_factory=AnalysisResults)
    duration_seconds: float = 0.0
    errors: list[str] = Field(default_factory=list)

    @property
    def total_findings(self) -> int:
        return self.results.total_findings

"""Container sandbox: runtime access, security policy and environment lifecycle."""

from secure_assessment.sandbox.alerts import SecurityAlert, SecurityAlerter
from secure_assessment.sandbox.external import ExternalResourcePolicy
from secure_assessment.sandbox.limits import (
    cpu_quota_for,
    format_memory_limit,
    parse_cpu_limit,
    parse_disk_limit,
    parse_memory_limit,
)
from secure_assessment.sandbox.manager import ContainerManager, MountResult
from secure_assessment.sandbox.monitor import ActivityEvent, ActivityKind, ActivityMonitor
from secure_assessment.sandbox.runtime import (
    CliContainerRuntime,
    ContainerRuntime,
    ContainerSpec,
    ContainerState,
    ExecResult,
    HostConstraints,
    RuntimeCommandError,
)
from secure_assessment.sandbox.scanner import (
    ScanFinding,
    ScanReport,
    scan_source,
    validate_container_path,
    validate_source_path,
)
from secure_assessment.sandbox.security import (
    HostCapacity,
    NetworkConfig,
    NetworkMode,
    ResourceQuota,
    SecurityPolicyEngine,
    create_default_security_config,
)

__all__ = [
    # Lifecycle
    "ContainerManager",
    "MountResult",
    # Runtime
    "CliContainerRuntime",
    "ContainerRuntime",
    "ContainerSpec",
    "ContainerState",
    "ExecResult",
    "HostConstraints",
    "RuntimeCommandError",
    # Policy
    "HostCapacity",
    "NetworkConfig",
    "NetworkMode",
    "ResourceQuota",
    "SecurityPolicyEngine",
    "create_default_security_config",
    "ExternalResourcePolicy",
    # Monitoring
    "ActivityEvent",
    "ActivityKind",
    "ActivityMonitor",
    "SecurityAlert",
    "SecurityAlerter",
    # Scanning
    "ScanFinding",
    "ScanReport",
    "scan_source",
    "validate_container_path",
    "validate_source_path",
    # Limits
    "cpu_quota_for",
    "format_memory_limit",
    "parse_cpu_limit",
    "parse_disk_limit",
    "parse_memory_limit",
]

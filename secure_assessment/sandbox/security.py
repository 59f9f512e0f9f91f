"""Security policy engine.

Translates a SecurityConfiguration into runtime-level isolation: network
mode and egress allow-list, resource quotas (degraded rather than refused
when the host is short), filesystem permission plans and activity
monitoring.
"""

import ipaddress
import logging
import os
import re
from enum import StrEnum

from pydantic import BaseModel, Field

from secure_assessment.exceptions import (
    AssessmentError,
    configuration_error,
    network_violation,
    resource_limit_exceeded_error,
)
from secure_assessment.models import FilesystemAccess, ResourceLimitSpec, SecurityConfiguration
from secure_assessment.sandbox.alerts import SecurityAlerter
from secure_assessment.sandbox.external import ExternalResourcePolicy
from secure_assessment.sandbox.limits import (
    cpu_quota_for,
    format_memory_limit,
    parse_cpu_limit,
    parse_disk_limit,
    parse_memory_limit,
)
from secure_assessment.sandbox.monitor import ActivityEvent, ActivityKind, ActivityMonitor
from secure_assessment.sandbox.runtime import ContainerRuntime
from secure_assessment.settings import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_ALLOWED_HOSTS = 100
MIN_DISK_BYTES = 100 * 1024**2

_HOSTNAME = re.compile(
    r"^(\*\.)?[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?(\.[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?)*$"
)

# Runtime network names that would defeat isolation
SENSITIVE_NETWORK_NAMES = frozenset({"host", "none", "container", "bridge", "default"})

# Hosts that expose host or cloud control planes
SENSITIVE_HOSTS = frozenset(
    {
        "localhost",
        "metadata",
        "metadata.google.internal",
        "metadata.azure.com",
        "instance-data",
        "host.docker.internal",
        "host.containers.internal",
    }
)

RESTRICTED_PATHS: tuple[str, ...] = ("/etc", "/usr", "/bin", "/sbin", "/lib")


class NetworkMode(StrEnum):
    """How an environment reaches the network."""

    NONE = "none"
    RESTRICTED = "restricted"
    BRIDGE = "bridge"


class NetworkConfig(BaseModel):
    """Resolved network isolation for one environment."""

    mode: NetworkMode
    network_name: str | None = Field(default=None, description="Dedicated restricted network")
    allowed_hosts: list[str] = Field(default_factory=list)
    proxy_env: dict[str, str] = Field(default_factory=dict)

    @property
    def runtime_network_mode(self) -> str:
        if self.mode is NetworkMode.RESTRICTED and self.network_name:
            return self.network_name
        return self.mode.value


class HostCapacity(BaseModel):
    """Resources of the machine running the environments."""

    memory_bytes: int | None = None
    cpus: float | None = None

    @classmethod
    def detect(cls) -> "HostCapacity":
        memory = None
        try:
            memory = os.sysconf("SC_PAGE_SIZE") * os.sysconf("SC_PHYS_PAGES")
        except (AttributeError, ValueError, OSError) as e:
            logger.warning("Could not determine host memory: %s", e)
        return cls(memory_bytes=memory, cpus=float(os.cpu_count() or 1))


class ResourceQuota(BaseModel):
    """Runtime-native resource limits."""

    memory_bytes: int
    cpus: float
    cpu_quota: int
    cpu_period: int
    disk_bytes: int
    degraded: bool = False
    notes: list[str] = Field(default_factory=list)


class FilesystemPlan(BaseModel):
    """Permission commands realising a read-only/writable partition."""

    read_only: list[str] = Field(default_factory=list)
    writable: list[str] = Field(default_factory=list)
    commands: list[list[str]] = Field(default_factory=list)


class SecurityPolicyEngine:
    """Applies security configuration to environments.

    Usage:
        engine = SecurityPolicyEngine()
        network = engine.build_network_config(env_id, config)
        quota = engine.translate_resource_limits(config.resource_limits)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        alerter: SecurityAlerter | None = None,
        host_capacity: HostCapacity | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.alerter = alerter or SecurityAlerter()
        self.monitor = ActivityMonitor(self.alerter)
        self.host_capacity = host_capacity or HostCapacity.detect()
        self.external = ExternalResourcePolicy.from_settings(self.settings)

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_security_config(self, config: SecurityConfiguration) -> ResourceQuota:
        """Validate a configuration in full; returns the resource quota it implies."""
        quota = self.translate_resource_limits(config.resource_limits)
        if config.network_isolation and config.allowed_network_access:
            self.validate_allowed_hosts(list(config.allowed_network_access))
        self.plan_filesystem_access(config.filesystem_access)
        return quota

    def validate_allowed_hosts(self, hosts: list[str]) -> list[str]:
        """Normalise an egress allow-list, rejecting unsafe entries.

        Raises:
            AssessmentError: SECURITY_VIOLATION_NETWORK
        """
        if len(hosts) > MAX_ALLOWED_HOSTS:
            raise network_violation(
                f"too many allowed hosts specified (maximum {MAX_ALLOWED_HOSTS})",
                allowed_hosts_count=len(hosts),
            )

        normalized = []
        for raw in hosts:
            host = raw.strip().lower().rstrip(".")
            if host in SENSITIVE_NETWORK_NAMES or host in SENSITIVE_HOSTS:
                raise network_violation(f"{raw} is a security-sensitive network target", host=raw)
            try:
                address = ipaddress.ip_address(host)
            except ValueError:
                address = None
            if address is not None:
                if (
                    address.is_loopback
                    or address.is_link_local
                    or address.is_unspecified
                    or address.is_multicast
                ):
                    raise network_violation(f"{raw} is a security-sensitive address", host=raw)
            elif len(host) > 253 or not _HOSTNAME.match(host):
                raise network_violation(f"invalid hostname format: {raw}", host=raw)
            normalized.append(host)
        return normalized

    # =========================================================================
    # NETWORK
    # =========================================================================

    def build_network_config(self, environment_id: str, config: SecurityConfiguration) -> NetworkConfig:
        """Resolve network isolation.

        Isolated environments with no allow-list get no network at all. An
        allow-list gets a dedicated internal network whose only way out is
        the configured egress proxy.
        """
        if not config.network_isolation:
            return NetworkConfig(mode=NetworkMode.BRIDGE)

        if not config.allowed_network_access:
            return NetworkConfig(mode=NetworkMode.NONE)

        hosts = self.validate_allowed_hosts(list(config.allowed_network_access))
        proxy_env: dict[str, str] = {}
        proxy = self.settings.egress_proxy_url
        if proxy:
            proxy_env = {
                "HTTP_PROXY": proxy,
                "HTTPS_PROXY": proxy,
                "http_proxy": proxy,
                "https_proxy": proxy,
                "NO_PROXY": "localhost,127.0.0.1",
                "ASSESSMENT_ALLOWED_HOSTS": ",".join(hosts),
            }
        else:
            logger.warning(
                "No egress proxy configured; allow-listed hosts for %s will be unreachable",
                environment_id,
            )
        return NetworkConfig(
            mode=NetworkMode.RESTRICTED,
            network_name=f"restricted-{environment_id}",
            allowed_hosts=hosts,
            proxy_env=proxy_env,
        )

    async def provision_network(self, runtime: ContainerRuntime, network: NetworkConfig) -> None:
        """Create the dedicated internal network, if any."""
        if network.mode is NetworkMode.RESTRICTED and network.network_name:
            await runtime.create_network(network.network_name, internal=True)
            logger.info("Created restricted network %s", network.network_name)

    # =========================================================================
    # RESOURCES
    # =========================================================================

    def translate_resource_limits(self, limits: ResourceLimitSpec, reduce: bool = False) -> ResourceQuota:
        """Parse human units into a runtime quota.

        Values outside policy bounds are rejected. Values beyond what the
        host can spare are degraded to the available share and logged.
        ``reduce`` halves the request first, for retries after a resource
        failure.

        Raises:
            AssessmentError: CONFIGURATION_ERROR for malformed or too-small
                values, RESOURCE_LIMIT_EXCEEDED above policy maximums
        """
        s = self.settings
        memory = parse_memory_limit(limits.memory)
        cpus = parse_cpu_limit(limits.cpu)
        disk = parse_disk_limit(limits.disk_space)

        min_memory = s.min_memory_mb * 1024**2
        max_memory = s.max_memory_mb * 1024**2
        if memory < min_memory:
            raise configuration_error(
                f"memory limit too low (minimum {s.min_memory_mb}MB)", memory=limits.memory
            )
        if memory > max_memory:
            raise resource_limit_exceeded_error("memory", limits.memory, f"{s.max_memory_mb}m")
        if cpus < s.min_cpu:
            raise configuration_error(f"cpu limit too low (minimum {s.min_cpu})", cpu=limits.cpu)
        if cpus > s.max_cpu:
            raise resource_limit_exceeded_error("cpu", limits.cpu, s.max_cpu)

        notes: list[str] = []
        degraded = False

        if reduce:
            memory = max(min_memory, memory // 2)
            cpus = max(s.min_cpu, cpus / 2)
            disk = max(MIN_DISK_BYTES, disk // 2)
            degraded = True
            notes.append("halved after resource failure")

        capacity = self.host_capacity
        fraction = s.host_capacity_fraction
        if capacity.memory_bytes:
            available = int(capacity.memory_bytes * fraction)
            if memory > available:
                notes.append(
                    f"memory {format_memory_limit(memory)} exceeds host share, "
                    f"degraded to {format_memory_limit(max(min_memory, available))}"
                )
                memory = max(min_memory, available)
                degraded = True
        if capacity.cpus:
            available_cpus = capacity.cpus * fraction
            if cpus > available_cpus:
                notes.append(f"cpu {cpus} exceeds host share, degraded to {available_cpus:.2f}")
                cpus = max(s.min_cpu, available_cpus)
                degraded = True

        if degraded:
            logger.warning("Resource limits degraded: %s", "; ".join(notes))

        return ResourceQuota(
            memory_bytes=memory,
            cpus=cpus,
            cpu_quota=cpu_quota_for(cpus, s.cpu_period_us),
            cpu_period=s.cpu_period_us,
            disk_bytes=disk,
            degraded=degraded,
            notes=notes,
        )

    # =========================================================================
    # FILESYSTEM
    # =========================================================================

    def plan_filesystem_access(self, access: FilesystemAccess) -> FilesystemPlan:
        """Commands making declared mounts read-only/writable and system dirs read-only.

        Raises:
            AssessmentError: CONFIGURATION_ERROR if a path is both read-only and writable
        """
        read_only = list(dict.fromkeys(access.read_only_mounts))
        writable = list(dict.fromkeys(access.writable_mounts))
        overlap = sorted(set(read_only) & set(writable))
        if overlap:
            raise configuration_error(
                f"paths declared both read-only and writable: {', '.join(overlap)}",
                paths=overlap,
            )
        for path in read_only + writable:
            if not path.startswith("/"):
                raise configuration_error(f"mount path {path!r} must be absolute", path=path)

        commands: list[list[str]] = []
        for path in writable:
            commands.append(["mkdir", "-p", path])
            commands.append(["chmod", "755", path])
        for path in read_only:
            commands.append(["chmod", "-R", "a-w", path])
        for path in RESTRICTED_PATHS:
            if path not in writable:
                commands.append(["chmod", "-R", "a-w", path])
        return FilesystemPlan(read_only=read_only, writable=writable, commands=commands)

    async def apply_filesystem_access(
        self,
        runtime: ContainerRuntime,
        handle: str,
        access: FilesystemAccess,
    ) -> list[str]:
        """Apply the permission plan; failures are logged and returned, not raised."""
        plan = self.plan_filesystem_access(access)
        failures: list[str] = []
        for command in plan.commands:
            try:
                result = await runtime.exec(handle, command)
            except Exception as e:
                failures.append(f"{' '.join(command)}: {e}")
                continue
            if not result.ok:
                failures.append(f"{' '.join(command)}: exit {result.exit_code}")
        if failures:
            logger.warning(
                "Filesystem permissions partially applied for %s (%d failures)",
                handle,
                len(failures),
            )
        return failures

    # =========================================================================
    # MONITORING
    # =========================================================================

    def enable_monitoring(self, environment_id: str, config: SecurityConfiguration) -> None:
        """Start recording activity; non-isolated environments only alert on privilege actions."""
        self.monitor.enable(
            environment_id,
            allowed_hosts=list(config.allowed_network_access),
            unrestricted_egress=not config.network_isolation,
        )

    def disable_monitoring(self, environment_id: str) -> None:
        self.monitor.disable(environment_id)

    async def record_activity(
        self,
        environment_id: str,
        kind: ActivityKind | str,
        target: str,
        detail: str = "",
    ) -> ActivityEvent | None:
        return await self.monitor.record(environment_id, kind, target, detail)

    def get_activity_log(self, environment_id: str) -> list[ActivityEvent]:
        return self.monitor.get_activity(environment_id)

    def release(self, environment_id: str) -> None:
        """Forget all monitoring state for an environment."""
        self.monitor.clear(environment_id)

    async def alert(self, environment_id: str, error: AssessmentError, source: str) -> None:
        await self.alerter.raise_alert(environment_id, error, source)


def create_default_security_config() -> SecurityConfiguration:
    return SecurityConfiguration.default()

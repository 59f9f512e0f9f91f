"""Assessment error taxonomy.

A single exception type carries every failure the system can raise. The
error ``code`` determines its family, severity and whether it is
recoverable; retry predicates, the circuit breaker and recovery strategies
all reason over these fields rather than over exception classes.

Usage:
    from secure_assessment.exceptions import AssessmentError, container_creation_error

    try:
        await manager.create_environment(security, analysis)
    except AssessmentError as e:
        print(e.format_for_user())
"""

import errno
import logging
import uuid
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


class Severity(StrEnum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorFamily(StrEnum):
    """Groups of related error codes."""

    CONTAINER = "container"
    RESOURCE = "resource"
    SECURITY_VIOLATION = "security_violation"
    ANALYSIS = "analysis"
    WORKFLOW = "workflow"
    CONFIGURATION = "configuration"
    VALIDATION = "validation"
    NETWORK = "network"
    EXTERNAL_RESOURCE = "external_resource"
    TIMEOUT = "timeout"


class ErrorCode(StrEnum):
    """Every error code the system raises."""

    CONTAINER_CREATION_FAILED = "CONTAINER_CREATION_FAILED"
    CONTAINER_START_FAILED = "CONTAINER_START_FAILED"
    CONTAINER_STOP_FAILED = "CONTAINER_STOP_FAILED"
    CONTAINER_DESTROY_FAILED = "CONTAINER_DESTROY_FAILED"

    RESOURCE_ALLOCATION_FAILED = "RESOURCE_ALLOCATION_FAILED"
    RESOURCE_LIMIT_EXCEEDED = "RESOURCE_LIMIT_EXCEEDED"
    INSUFFICIENT_RESOURCES = "INSUFFICIENT_RESOURCES"

    SECURITY_VIOLATION_NETWORK = "SECURITY_VIOLATION_NETWORK"
    SECURITY_VIOLATION_FILESYSTEM = "SECURITY_VIOLATION_FILESYSTEM"
    SECURITY_VIOLATION_PRIVILEGE_ESCALATION = "SECURITY_VIOLATION_PRIVILEGE_ESCALATION"
    SECURITY_VIOLATION_MALICIOUS_CODE = "SECURITY_VIOLATION_MALICIOUS_CODE"

    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    PARTIAL_ANALYSIS_FAILURE = "PARTIAL_ANALYSIS_FAILURE"
    WORKFLOW_EXECUTION_FAILED = "WORKFLOW_EXECUTION_FAILED"

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ENVIRONMENT_NOT_FOUND = "ENVIRONMENT_NOT_FOUND"

    NETWORK_ERROR = "NETWORK_ERROR"
    EXTERNAL_RESOURCE_ERROR = "EXTERNAL_RESOURCE_ERROR"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"


# code -> (family, severity, recoverable)
_TRAITS: dict[ErrorCode, tuple[ErrorFamily, Severity, bool]] = {
    ErrorCode.CONTAINER_CREATION_FAILED: (ErrorFamily.CONTAINER, Severity.HIGH, True),
    ErrorCode.CONTAINER_START_FAILED: (ErrorFamily.CONTAINER, Severity.HIGH, True),
    ErrorCode.CONTAINER_STOP_FAILED: (ErrorFamily.CONTAINER, Severity.MEDIUM, True),
    ErrorCode.CONTAINER_DESTROY_FAILED: (ErrorFamily.CONTAINER, Severity.MEDIUM, True),
    ErrorCode.RESOURCE_ALLOCATION_FAILED: (ErrorFamily.RESOURCE, Severity.MEDIUM, True),
    ErrorCode.RESOURCE_LIMIT_EXCEEDED: (ErrorFamily.RESOURCE, Severity.HIGH, False),
    ErrorCode.INSUFFICIENT_RESOURCES: (ErrorFamily.RESOURCE, Severity.MEDIUM, True),
    ErrorCode.SECURITY_VIOLATION_NETWORK: (ErrorFamily.SECURITY_VIOLATION, Severity.CRITICAL, False),
    ErrorCode.SECURITY_VIOLATION_FILESYSTEM: (ErrorFamily.SECURITY_VIOLATION, Severity.CRITICAL, False),
    ErrorCode.SECURITY_VIOLATION_PRIVILEGE_ESCALATION: (
        ErrorFamily.SECURITY_VIOLATION,
        Severity.CRITICAL,
        False,
    ),
    ErrorCode.SECURITY_VIOLATION_MALICIOUS_CODE: (
        ErrorFamily.SECURITY_VIOLATION,
        Severity.CRITICAL,
        False,
    ),
    ErrorCode.ANALYSIS_FAILED: (ErrorFamily.ANALYSIS, Severity.MEDIUM, True),
    ErrorCode.PARTIAL_ANALYSIS_FAILURE: (ErrorFamily.ANALYSIS, Severity.MEDIUM, True),
    ErrorCode.WORKFLOW_EXECUTION_FAILED: (ErrorFamily.WORKFLOW, Severity.MEDIUM, True),
    ErrorCode.CONFIGURATION_ERROR: (ErrorFamily.CONFIGURATION, Severity.HIGH, False),
    ErrorCode.VALIDATION_ERROR: (ErrorFamily.VALIDATION, Severity.HIGH, False),
    ErrorCode.ENVIRONMENT_NOT_FOUND: (ErrorFamily.VALIDATION, Severity.HIGH, False),
    ErrorCode.NETWORK_ERROR: (ErrorFamily.NETWORK, Severity.MEDIUM, True),
    ErrorCode.EXTERNAL_RESOURCE_ERROR: (ErrorFamily.EXTERNAL_RESOURCE, Severity.MEDIUM, True),
    ErrorCode.CIRCUIT_OPEN: (ErrorFamily.EXTERNAL_RESOURCE, Severity.HIGH, False),
    ErrorCode.TIMEOUT_ERROR: (ErrorFamily.TIMEOUT, Severity.MEDIUM, True),
}

_FAIL_FAST_FAMILIES = frozenset(
    {ErrorFamily.SECURITY_VIOLATION, ErrorFamily.CONFIGURATION, ErrorFamily.VALIDATION}
)

_SEVERITY_LOG_LEVELS = {
    Severity.LOW: logging.INFO,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.ERROR,
}

# OS-level failures that mean the host itself is starved
_RESOURCE_ERRNOS = frozenset({errno.ENOSPC, errno.ENOMEM, errno.EMFILE, errno.ENFILE})
_CRITICAL_MARKERS = ("ENOSPC", "ENOMEM", "EMFILE", "ENOTFOUND", "ECONNREFUSED")


class AssessmentError(Exception):
    """Base exception for every assessment failure.

    Carries the error code, its derived traits, a UTC timestamp, a context
    map and a correlation_id for tracing the error across layers.
    Security violations are always critical and never recoverable.
    """

    def __init__(
        self,
        code: ErrorCode | str,
        message: str,
        *,
        context: dict[str, Any] | None = None,
        severity: Severity | None = None,
        recoverable: bool | None = None,
        correlation_id: str | None = None,
    ):
        self.code = ErrorCode(code)
        family, default_severity, default_recoverable = _TRAITS[self.code]
        self.family = family
        self.severity = severity or default_severity
        self.recoverable = default_recoverable if recoverable is None else recoverable
        if family is ErrorFamily.SECURITY_VIOLATION:
            self.severity = Severity.CRITICAL
            self.recoverable = False
        self.message = message
        self.context: dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(UTC)
        self.correlation_id = correlation_id or str(uuid.uuid4())
        super().__init__(message)

    def __repr__(self) -> str:
        return f"AssessmentError(code={self.code.value!r}, message={self.message!r})"

    def __reduce__(self):
        # Constructor takes (code, message); other attributes come back via state
        return (self.__class__, (self.code, self.message), self.__dict__.copy())

    @property
    def is_security_violation(self) -> bool:
        return self.family is ErrorFamily.SECURITY_VIOLATION

    @property
    def is_fail_fast(self) -> bool:
        """True for errors that must never be retried or recovered."""
        return self.family in _FAIL_FAST_FAMILIES

    @property
    def timeout_ms(self) -> int | None:
        return self.context.get("timeout_ms")

    def format_for_user(self) -> str:
        """Single-line message safe to show a caller."""
        stamp = self.timestamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        return f"[{stamp}] {self.severity.value.upper()}: {self.message} (Code: {self.code.value})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "family": self.family.value,
            "message": self.message,
            "severity": self.severity.value,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp.isoformat(),
            "correlation_id": self.correlation_id,
            "context": self.context,
        }

    def format_for_logging(self) -> dict[str, Any]:
        """Full structured record, including the underlying cause."""
        record = self.to_dict()
        cause = self.__cause__
        if cause is not None:
            record["cause"] = f"{type(cause).__name__}: {cause}"
        return record


# =============================================================================
# FACTORIES
# =============================================================================


def container_creation_error(message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.CONTAINER_CREATION_FAILED,
        f"Container creation failed: {message}",
        context=context,
    )


def container_start_error(container_id: str, message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.CONTAINER_START_FAILED,
        f"Container {container_id} failed to start: {message}",
        context={"container_id": container_id, **context},
    )


def container_stop_error(container_id: str, message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.CONTAINER_STOP_FAILED,
        f"Container {container_id} failed to stop: {message}",
        context={"container_id": container_id, **context},
    )


def container_destroy_error(container_id: str, message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.CONTAINER_DESTROY_FAILED,
        f"Container {container_id} could not be destroyed: {message}",
        context={"container_id": container_id, **context},
    )


def resource_allocation_error(resource: str, message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.RESOURCE_ALLOCATION_FAILED,
        f"Failed to allocate {resource}: {message}",
        context={"resource": resource, **context},
    )


def resource_limit_exceeded_error(
    resource: str, requested: Any, limit: Any, **context: Any
) -> AssessmentError:
    return AssessmentError(
        ErrorCode.RESOURCE_LIMIT_EXCEEDED,
        f"Requested {resource} {requested} exceeds the allowed limit {limit}",
        context={"resource": resource, "requested": requested, "limit": limit, **context},
    )


def insufficient_resources_error(message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.INSUFFICIENT_RESOURCES,
        f"Insufficient system resources: {message}",
        context=context,
    )


def network_violation(message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.SECURITY_VIOLATION_NETWORK,
        f"Network security violation: {message}",
        context=context,
    )


def filesystem_violation(message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.SECURITY_VIOLATION_FILESYSTEM,
        f"Filesystem security violation: {message}",
        context=context,
    )


def privilege_escalation_violation(message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.SECURITY_VIOLATION_PRIVILEGE_ESCALATION,
        f"Privilege escalation attempt: {message}",
        context=context,
    )


def malicious_code_violation(message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.SECURITY_VIOLATION_MALICIOUS_CODE,
        f"Potentially malicious code detected: {message}",
        context=context,
    )


def analysis_error(message: str, *, tool: str | None = None, **context: Any) -> AssessmentError:
    if tool:
        context["tool"] = tool
    return AssessmentError(ErrorCode.ANALYSIS_FAILED, message, context=context)


def workflow_execution_error(
    workflow: str, message: str, *, step: str | None = None, **context: Any
) -> AssessmentError:
    where = f"{workflow}/{step}" if step else workflow
    return AssessmentError(
        ErrorCode.WORKFLOW_EXECUTION_FAILED,
        f"Workflow {where} failed: {message}",
        context={"workflow": workflow, "step": step, **context},
    )


def partial_analysis_error(
    message: str,
    completed_steps: list[str],
    failed_steps: list[str],
    partial_results: Any = None,
    **context: Any,
) -> AssessmentError:
    return AssessmentError(
        ErrorCode.PARTIAL_ANALYSIS_FAILURE,
        message,
        context={
            "completed_steps": list(completed_steps),
            "failed_steps": list(failed_steps),
            "partial_results": partial_results,
            **context,
        },
    )


def configuration_error(message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.CONFIGURATION_ERROR,
        f"Invalid configuration: {message}",
        context=context,
    )


def validation_error(field: str, message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.VALIDATION_ERROR,
        f"Validation failed for {field}: {message}",
        context={"field": field, **context},
    )


def environment_not_found_error(environment_id: str) -> AssessmentError:
    return AssessmentError(
        ErrorCode.ENVIRONMENT_NOT_FOUND,
        f"Environment {environment_id} not found",
        context={"environment_id": environment_id},
    )


def network_error(message: str, **context: Any) -> AssessmentError:
    return AssessmentError(ErrorCode.NETWORK_ERROR, f"Network error: {message}", context=context)


def external_resource_error(resource: str, message: str, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.EXTERNAL_RESOURCE_ERROR,
        f"External resource {resource} unavailable: {message}",
        context={"resource": resource, **context},
    )


def circuit_open_error(label: str, retry_after_seconds: float) -> AssessmentError:
    return AssessmentError(
        ErrorCode.CIRCUIT_OPEN,
        f"Circuit breaker open for {label}; retry in {retry_after_seconds:.1f}s",
        context={"operation": label, "retry_after_seconds": retry_after_seconds},
    )


def timeout_error(operation: str, timeout_ms: int, **context: Any) -> AssessmentError:
    return AssessmentError(
        ErrorCode.TIMEOUT_ERROR,
        f"Operation {operation} timed out after {timeout_ms}ms",
        context={"operation": operation, "timeout_ms": timeout_ms, **context},
    )


# =============================================================================
# HELPERS
# =============================================================================


def classify_exception(exc: BaseException, **context: Any) -> AssessmentError:
    """Convert any exception into an AssessmentError.

    AssessmentErrors are returned unchanged. Other exceptions are mapped by
    type first and then by message keywords; anything unrecognised becomes
    an analysis failure.
    """
    if isinstance(exc, AssessmentError):
        return exc

    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    context = {"original_error": type(exc).__name__, **context}

    if isinstance(exc, TimeoutError):
        error = timeout_error(context.pop("operation", "unknown"), 30000, **context)
    elif isinstance(exc, OSError) and exc.errno in _RESOURCE_ERRNOS:
        error = insufficient_resources_error(message, **context)
    elif isinstance(exc, ConnectionError):
        error = network_error(message, **context)
    elif "container" in lowered and "create" in lowered:
        error = container_creation_error(message, **context)
    elif any(word in lowered for word in ("resource", "memory", "cpu")):
        error = resource_allocation_error("system resources", message, **context)
    elif "network" in lowered or "connection" in lowered:
        error = network_error(message, **context)
    elif "timeout" in lowered or "timed out" in lowered:
        error = timeout_error(context.pop("operation", "unknown"), 30000, **context)
    else:
        error = analysis_error(message, **context)

    error.__cause__ = exc
    return error


def is_critical_system_error(exc: BaseException) -> bool:
    """Host-level failures (disk, memory, descriptors, DNS, refused connections)."""
    if isinstance(exc, OSError) and exc.errno in _RESOURCE_ERRNOS:
        return True
    text = str(exc).upper()
    return any(marker in text for marker in _CRITICAL_MARKERS)


def is_recoverable(exc: BaseException) -> bool:
    """Foreign exceptions count as recoverable unless the host itself is failing."""
    if isinstance(exc, AssessmentError):
        return exc.recoverable
    return not is_critical_system_error(exc)


def is_security_violation(exc: BaseException) -> bool:
    return isinstance(exc, AssessmentError) and exc.is_security_violation


def is_fail_fast(exc: BaseException) -> bool:
    return isinstance(exc, AssessmentError) and exc.is_fail_fast


def log_assessment_error(
    logger: logging.Logger,
    error: AssessmentError,
    message: str | None = None,
) -> None:
    """Log an error at a level derived from its severity with full context."""
    level = _SEVERITY_LOG_LEVELS[error.severity]
    logger.log(
        level,
        "%s [%s] %s",
        message or "Assessment error",
        error.code.value,
        error.message,
        extra={"assessment_error": error.format_for_logging()},
        exc_info=error if logger.isEnabledFor(logging.DEBUG) else None,
    )

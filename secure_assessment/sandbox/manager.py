"""Container lifecycle manager.

Provisions assessment environments, mounts untrusted codebases into them,
and tears them down again. Provisioning runs through a circuit breaker
wrapping a bounded retry; recoverable failures get one more pass after the
recovery manager approves it. Security violations bypass all of that and
terminate the environment immediately.
"""

import asyncio
import logging
import time
import uuid
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel

from secure_assessment.exceptions import (
    AssessmentError,
    classify_exception,
    configuration_error,
    container_creation_error,
    container_destroy_error,
    container_start_error,
    container_stop_error,
    external_resource_error,
    filesystem_violation,
    log_assessment_error,
    malicious_code_violation,
    validation_error,
)
from secure_assessment.models import (
    AnalysisConfiguration,
    CodebaseType,
    Environment,
    EnvironmentStatus,
    SecurityConfiguration,
)
from secure_assessment.recovery.checkpoints import Checkpoint
from secure_assessment.recovery.manager import RecoveryManager
from secure_assessment.recovery.strategies import RecoveryState
from secure_assessment.resilience.circuit_breaker import CircuitBreakerRegistry
from secure_assessment.resilience.retry import DEFAULT_RETRY_POLICIES, RetryPolicy, with_retry
from secure_assessment.sandbox.alerts import SecurityAlert
from secure_assessment.sandbox.registry import EnvironmentRecord, EnvironmentRegistry
from secure_assessment.sandbox.runtime import (
    CliContainerRuntime,
    ContainerRuntime,
    ContainerSpec,
    HostConstraints,
    RuntimeCommandError,
)
from secure_assessment.sandbox.scanner import (
    default_allowed_roots,
    scan_source,
    validate_container_path,
    validate_source_path,
)
from secure_assessment.sandbox.security import ResourceQuota, SecurityPolicyEngine
from secure_assessment.settings import Settings, get_settings

logger = logging.getLogger(__name__)

CREATION_BREAKER = "environment-creation"
ENVIRONMENT_LABEL = "security-assessment"


class MountResult(BaseModel):
    """Outcome of mounting a codebase."""

    environment_id: str
    source_path: str
    container_path: str
    files_scanned: int
    files_skipped: int
    verified: bool


class ContainerManager:
    """Owns the lifecycle of every assessment environment.

    Usage:
        manager = ContainerManager()
        env = await manager.create_environment(security, analysis)
        await manager.mount_codebase(env.id, "/workspace/project")
        await manager.destroy_environment(env.id)
    """

    def __init__(
        self,
        runtime: ContainerRuntime | None = None,
        *,
        settings: Settings | None = None,
        policy_engine: SecurityPolicyEngine | None = None,
        recovery: RecoveryManager | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        retry_policies: dict[str, RetryPolicy] | None = None,
        allowed_mount_roots: list[Path] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.runtime = runtime or CliContainerRuntime()
        self.policy = policy_engine or SecurityPolicyEngine(self.settings)
        self.recovery = recovery or RecoveryManager()
        self.breakers = breakers or CircuitBreakerRegistry(
            failure_threshold=self.settings.breaker_failure_threshold,
            cooldown_seconds=self.settings.breaker_cooldown_seconds,
            success_threshold=self.settings.breaker_success_threshold,
        )
        self.retry_policies = {**DEFAULT_RETRY_POLICIES, **(retry_policies or {})}
        self.allowed_mount_roots = allowed_mount_roots or default_allowed_roots(
            self.settings.workspace_root
        )
        self.registry = EnvironmentRegistry()
        self.policy.alerter.register_handler(self._on_security_alert)

    # =========================================================================
    # CREATION
    # =========================================================================

    def _validate_configuration(
        self,
        security_config: SecurityConfiguration,
        analysis_config: AnalysisConfiguration,
    ) -> ResourceQuota:
        supported = [t.value for t in CodebaseType]
        if analysis_config.codebase_type not in supported:
            raise configuration_error(
                f"unsupported codebase type {analysis_config.codebase_type!r} "
                f"(expected one of {', '.join(supported)})",
                codebase_type=analysis_config.codebase_type,
            )
        self.policy.external.check_image(self._image_for(analysis_config.codebase_type))
        return self.policy.validate_security_config(security_config)

    @staticmethod
    def _new_environment_id() -> str:
        return f"assessment-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"

    async def create_environment(
        self,
        security_config: SecurityConfiguration,
        analysis_config: AnalysisConfiguration,
    ) -> Environment:
        """Validate configuration and provision a ready environment.

        Raises:
            AssessmentError: CONFIGURATION_ERROR for invalid configuration or a
                disallowed or mismatched image (never retried), or the
                classified provisioning error
        """
        quota = self._validate_configuration(security_config, analysis_config)
        await self.policy.external.verify_image(self.runtime, self._image_for(analysis_config.codebase_type))

        environment = Environment(
            id=self._new_environment_id(),
            status=EnvironmentStatus.CREATING,
            security_config=security_config,
            analysis_config=analysis_config,
        )
        record = EnvironmentRecord(
            environment=environment,
            recovery_state=RecoveryState(
                environment_id=environment.id,
                max_recovery_attempts=self.settings.max_recovery_attempts,
            ),
            quota=quota,
        )
        self.registry.add(record)
        logger.info(
            "Creating environment %s (%s, memory=%d bytes, cpu_quota=%d)",
            environment.id,
            analysis_config.codebase_type,
            quota.memory_bytes,
            quota.cpu_quota,
        )

        async with self.registry.lock(environment.id):
            self._checkpoint(record, "creation-start")
            await self._provision(record, allow_recovery=True)

            environment.status = EnvironmentStatus.READY
            record.recovery_state.record_completed("container-creation")
            self._checkpoint(record, "creation-complete")

            failures = await self.policy.apply_filesystem_access(
                self.runtime, record.handle, security_config.filesystem_access
            )
            if failures:
                logger.debug("Permission failures for %s: %s", environment.id, failures)
            self.policy.enable_monitoring(environment.id, security_config)

        logger.info("Environment %s ready", environment.id)
        return environment.model_copy()

    async def _provision(self, record: EnvironmentRecord, allow_recovery: bool) -> None:
        breaker = self.breakers.get(CREATION_BREAKER)
        policy = self.retry_policies["container_creation"].replace(
            on_retry=lambda error, attempt: self._note_retry(record, error, attempt)
        )

        async def provision_with_retry() -> str:
            result = await with_retry(
                lambda: self._provision_once(record),
                policy,
                f"create_environment[{record.id}]",
            )
            return result.unwrap()

        try:
            record.handle = await breaker.call(provision_with_retry, label="environment creation")
        except Exception as e:
            error = classify_exception(e, environment_id=record.id, operation="create_environment")
            record.recovery_state.record_failed("container-creation", error)
            await self._handle_creation_failure(record, error, allow_recovery)

    async def _handle_creation_failure(
        self,
        record: EnvironmentRecord,
        error: AssessmentError,
        allow_recovery: bool,
    ) -> None:
        if allow_recovery and error.recoverable and not error.is_fail_fast:
            outcome = await self.recovery.attempt_recovery(error, record.recovery_state)
            if outcome.new_state is not None:
                outcome.new_state.last_error = error
                record.recovery_state = outcome.new_state
            if outcome.should_continue:
                logger.info(
                    "Recovery (%s) approved another creation pass for %s: %s",
                    outcome.strategy,
                    record.id,
                    outcome.message,
                )
                await self._release_runtime_resources(record, graceful=False)
                if outcome.adjustments.get("reduce_resources"):
                    record.quota = self.policy.translate_resource_limits(
                        record.environment.security_config.resource_limits, reduce=True
                    )
                self._checkpoint(record, "creation-recovery", metadata={"strategy": outcome.strategy})
                await self._provision(record, allow_recovery=False)
                return

        log_assessment_error(logger, error, f"Environment {record.id} creation failed")
        record.environment.status = EnvironmentStatus.FAILED
        await self._release_runtime_resources(record, graceful=False)
        self._forget(record.id)
        raise error

    async def _provision_once(self, record: EnvironmentRecord) -> str:
        """Create and start the container for ``record``; one attempt."""
        if record.network is None:
            record.network = self.policy.build_network_config(
                record.id, record.environment.security_config
            )
        if not record.network_created and record.network.network_name:
            try:
                await self.policy.provision_network(self.runtime, record.network)
            except RuntimeCommandError as e:
                raise external_resource_error("network", str(e), environment_id=record.id) from e
            record.network_created = True

        spec = self._build_spec(record)
        try:
            handle = await self.runtime.create(spec)
        except RuntimeCommandError as e:
            raise container_creation_error(str(e), environment_id=record.id, image=spec.image) from e

        try:
            await self.runtime.start(handle)
        except RuntimeCommandError as e:
            try:
                await self.runtime.remove(handle, force=True)
            except RuntimeCommandError as cleanup_error:
                logger.warning("Could not remove unstarted container %s: %s", handle, cleanup_error)
            raise container_start_error(handle, str(e), environment_id=record.id) from e
        return handle

    def _image_for(self, codebase_type: str) -> str:
        images = {
            CodebaseType.NODEJS.value: self.settings.image_nodejs,
            CodebaseType.SOLIDITY.value: self.settings.image_solidity,
            CodebaseType.MIXED.value: self.settings.image_mixed,
        }
        return images[codebase_type]

    def _build_spec(self, record: EnvironmentRecord) -> ContainerSpec:
        env = record.environment
        analysis = env.analysis_config
        quota = record.quota
        network = record.network

        variables = {
            "NODE_ENV": "development",
            "NPM_CONFIG_AUDIT_LEVEL": "moderate",
            "NPM_CONFIG_REGISTRY": self.policy.external.npm_registry_url,
            "ANALYSIS_TYPE": analysis.codebase_type,
            "CUSTOM_WORKFLOWS": ",".join(analysis.custom_workflows),
        }
        if network is not None:
            variables.update(network.proxy_env)

        disk_mb = max(1, quota.disk_bytes // 1024**2)
        return ContainerSpec(
            name=env.id,
            image=self._image_for(analysis.codebase_type),
            workdir=self.settings.container_workspace,
            env=variables,
            labels={
                ENVIRONMENT_LABEL: "true",
                "assessment.environment-id": env.id,
                "assessment.codebase-type": analysis.codebase_type,
                "assessment.created-at": env.created_at.isoformat(),
            },
            host=HostConstraints(
                memory_bytes=quota.memory_bytes,
                cpu_quota=quota.cpu_quota,
                cpu_period=quota.cpu_period,
                network_mode=network.runtime_network_mode if network else "none",
                tmpfs={"/tmp": f"size={disk_mb}m,mode=1777"},  # nosec B108
            ),
        )

    def _note_retry(self, record: EnvironmentRecord, error: BaseException, attempt: int) -> None:
        record.recovery_state.failed_steps.append(f"container-creation-attempt-{attempt}")
        self._checkpoint(record, "creation-retry", metadata={"attempt": attempt, "error": str(error)})

    # =========================================================================
    # MOUNTING
    # =========================================================================

    async def mount_codebase(
        self,
        environment_id: str,
        source_path: str | Path,
        container_path: str | None = None,
    ) -> MountResult:
        """Validate, scan and copy an untrusted codebase into an environment.

        Any security violation terminates the environment before it is raised.

        Raises:
            AssessmentError: SECURITY_VIOLATION_* for disallowed paths or
                malicious content, or the copy failure after retries
        """
        record = self.registry.require(environment_id)
        target = container_path or self.settings.container_workspace

        async with self.registry.lock(environment_id):
            if record.environment.status not in (EnvironmentStatus.READY, EnvironmentStatus.RUNNING):
                raise validation_error(
                    "environment",
                    f"{environment_id} is {record.environment.status.value}, not ready for mounting",
                )

            try:
                source = validate_source_path(source_path, self.allowed_mount_roots)
                target = validate_container_path(target)
                report = await asyncio.to_thread(
                    scan_source, source, max_file_bytes=self.settings.scan_max_file_bytes
                )
                if report.escaping_links:
                    raise filesystem_violation(
                        f"symlinks point outside the codebase: {', '.join(report.escaping_links[:5])}",
                        environment_id=environment_id,
                    )
                if report.findings:
                    first = report.findings[0]
                    raise malicious_code_violation(
                        f"{len(report.findings)} high-risk pattern(s), first {first.pattern} "
                        f"in {first.path}:{first.line}",
                        environment_id=environment_id,
                        findings=[finding.model_dump() for finding in report.findings[:50]],
                    )
                if report.unscanned:
                    raise filesystem_violation(
                        f"{len(report.unscanned)} file(s) could not be scanned: "
                        f"{', '.join(report.unscanned[:5])}",
                        environment_id=environment_id,
                        unscanned=report.unscanned[:50],
                    )
            except AssessmentError as e:
                if e.is_security_violation:
                    await self.policy.alert(environment_id, e, source="mount-scan")
                raise

            await self._copy_codebase(record, source, target)
            verified = await self._verify_mount(record, target)

            record.mount_source = source
            record.mount_target = target
            record.recovery_state.record_completed("codebase-mount")
            self._checkpoint(record, "codebase-mounted", metadata={"target": target})

        logger.info("Mounted %s into %s:%s", source, environment_id, target)
        return MountResult(
            environment_id=environment_id,
            source_path=str(source),
            container_path=target,
            files_scanned=report.files_scanned,
            files_skipped=report.files_skipped,
            verified=verified,
        )

    async def _copy_codebase(self, record: EnvironmentRecord, source: Path, target: str) -> None:
        handle = record.handle

        async def copy() -> None:
            try:
                await self.runtime.exec(handle, ["mkdir", "-p", target])
                await self.runtime.copy_in(handle, str(source), target)
            except RuntimeCommandError as e:
                raise external_resource_error(
                    "container filesystem", str(e), environment_id=record.id, target=target
                ) from e

        result = await with_retry(copy, self.retry_policies["codebase_mount"], f"mount_codebase[{record.id}]")
        if not result.success:
            error = classify_exception(result.error, environment_id=record.id)
            record.recovery_state.record_failed("codebase-mount", error)
            log_assessment_error(logger, error, f"Mounting codebase into {record.id} failed")
            raise error

    async def _verify_mount(self, record: EnvironmentRecord, target: str) -> bool:
        try:
            result = await self.runtime.exec(record.handle, ["test", "-r", target])
        except Exception as e:
            logger.warning("Could not verify mount permissions in %s: %s", record.id, e)
            return False
        if not result.ok:
            logger.warning("Mount target %s not readable in %s", target, record.id)
        return result.ok

    # =========================================================================
    # DESTRUCTION
    # =========================================================================

    async def destroy_environment(self, environment_id: str) -> bool:
        """Stop, remove and forget an environment.

        Unknown ids are treated as already destroyed. Local bookkeeping is
        cleared even when the runtime refuses to remove the container.

        Returns:
            True if a tracked environment was destroyed

        Raises:
            AssessmentError: CONTAINER_DESTROY_FAILED if removal kept failing
        """
        record = self.registry.get(environment_id)
        if record is None:
            self.recovery.clear_recovery_data(environment_id)
            self.policy.release(environment_id)
            logger.debug("Environment %s already gone", environment_id)
            return False

        async with self.registry.lock(environment_id):
            try:
                problems = await self._release_runtime_resources(record, graceful=True)
            finally:
                record.environment.status = EnvironmentStatus.STOPPED
                record.environment.completed_at = datetime.now(UTC)
                self._forget(environment_id)

        if problems:
            raise container_destroy_error(environment_id, "; ".join(problems))
        logger.info("Environment %s destroyed", environment_id)
        return True

    async def _release_runtime_resources(self, record: EnvironmentRecord, graceful: bool) -> list[str]:
        """Stop/kill/remove the container and drop its network. Returns problems."""
        problems: list[str] = []
        handle = record.handle

        if handle:
            if graceful:
                await self._stop_or_kill(handle)
            result = await with_retry(
                lambda: self._remove(handle),
                self.retry_policies["container_removal"],
                f"remove[{handle}]",
            )
            if not result.success:
                problems.append(f"remove {handle}: {result.error}")
            record.handle = None

        if record.network_created and record.network and record.network.network_name:
            try:
                await self.runtime.remove_network(record.network.network_name)
            except RuntimeCommandError as e:
                if not e.not_found:
                    problems.append(f"remove network {record.network.network_name}: {e}")
            record.network_created = False

        for problem in problems:
            logger.warning("Cleanup problem for %s: %s", record.id, problem)
        return problems

    async def _stop_or_kill(self, handle: str) -> None:
        try:
            await self.runtime.stop(handle, self.settings.stop_grace_seconds)
            return
        except RuntimeCommandError as e:
            if e.not_found:
                return
            logger.warning("Graceful stop of %s failed, killing: %s", handle, e)
        try:
            await self.runtime.kill(handle)
        except RuntimeCommandError as e:
            if not e.not_found:
                logger.warning("Kill of %s failed: %s", handle, e)

    async def _remove(self, handle: str) -> None:
        try:
            await self.runtime.remove(handle, force=True)
        except RuntimeCommandError as e:
            if e.not_found:
                return
            raise container_destroy_error(handle, str(e)) from e

    def _forget(self, environment_id: str) -> None:
        self.registry.remove(environment_id)
        self.recovery.clear_recovery_data(environment_id)
        self.policy.release(environment_id)

    async def emergency_terminate(self, environment_id: str, error: AssessmentError | None = None) -> None:
        """Kill and force-remove an environment at once, without retry or recovery.

        Every teardown step is attempted whatever the previous one raised,
        and the environment is always forgotten afterwards.
        """
        record = self.registry.get(environment_id)
        if record is None:
            return
        logger.critical(
            "Emergency termination of %s: %s",
            environment_id,
            error.message if error else "requested",
        )
        record.environment.status = EnvironmentStatus.FAILED
        try:
            handle = record.handle
            if handle:
                try:
                    await self.runtime.kill(handle)
                except Exception as e:
                    logger.warning("Emergency kill of %s failed: %s", handle, e)
                try:
                    await self.runtime.remove(handle, force=True)
                except Exception as e:
                    logger.error("Emergency removal of %s failed: %s", handle, e)
                record.handle = None
            if record.network_created and record.network and record.network.network_name:
                try:
                    await self.runtime.remove_network(record.network.network_name)
                except Exception as e:
                    logger.warning("Emergency network removal failed: %s", e)
        finally:
            self._forget(environment_id)

    async def _on_security_alert(self, alert: SecurityAlert, error: AssessmentError) -> None:
        if alert.environment_id in self.registry:
            await self.emergency_terminate(alert.environment_id, error)

    # =========================================================================
    # QUERIES AND SIMPLE OPERATIONS
    # =========================================================================

    def get_environment(self, environment_id: str) -> Environment:
        return self.registry.require(environment_id).environment.model_copy()

    def get_environment_status(self, environment_id: str) -> EnvironmentStatus:
        return self.registry.require(environment_id).environment.status

    async def list_environments(self) -> list[Environment]:
        """Tracked environments whose containers can be inspected.

        Environments whose inspection fails are left out with a warning.
        """
        environments = []
        for record in self.registry.records():
            if record.handle is not None:
                try:
                    state = await self.runtime.inspect(record.handle)
                except Exception as e:
                    logger.warning("Failed to inspect environment %s: %s", record.id, e)
                    continue
                if not state.running and record.environment.status in (
                    EnvironmentStatus.READY,
                    EnvironmentStatus.RUNNING,
                ):
                    record.environment.status = EnvironmentStatus.STOPPED
            environments.append(record.environment.model_copy())
        return environments

    async def stop_environment(self, environment_id: str) -> None:
        """Stop within the grace period, escalating to a kill."""
        record = self.registry.require(environment_id)
        async with self.registry.lock(environment_id):
            if record.handle is None:
                record.environment.status = EnvironmentStatus.STOPPED
                return
            try:
                await self.runtime.stop(record.handle, self.settings.stop_grace_seconds)
            except RuntimeCommandError as e:
                if not e.not_found:
                    logger.warning("Graceful stop of %s failed, killing: %s", environment_id, e)
                    try:
                        await self.runtime.kill(record.handle)
                    except RuntimeCommandError as kill_error:
                        if not kill_error.not_found:
                            raise container_stop_error(
                                environment_id, str(kill_error)
                            ) from kill_error
            record.environment.status = EnvironmentStatus.STOPPED
            self.policy.disable_monitoring(environment_id)
        logger.info("Environment %s stopped", environment_id)

    def set_status(self, environment_id: str, status: EnvironmentStatus) -> None:
        record = self.registry.require(environment_id)
        record.environment.status = status
        if status in (EnvironmentStatus.FAILED, EnvironmentStatus.STOPPED):
            record.environment.completed_at = datetime.now(UTC)

    def record_workflow_outcome(
        self,
        environment_id: str,
        completed_steps: list[str],
        failed_steps: list[str],
        error: AssessmentError | None = None,
    ) -> None:
        record = self.registry.get(environment_id)
        if record is None:
            return
        for step in completed_steps:
            record.recovery_state.record_completed(step)
        for step in failed_steps:
            record.recovery_state.record_failed(step, error)

    def get_recovery_state(self, environment_id: str) -> RecoveryState:
        return self.registry.require(environment_id).recovery_state.model_copy(deep=False)

    def get_mount(self, environment_id: str) -> tuple[Path | None, str | None]:
        record = self.registry.require(environment_id)
        return record.mount_source, record.mount_target

    def runtime_handle(self, environment_id: str) -> str:
        record = self.registry.require(environment_id)
        if record.handle is None:
            raise validation_error("environment", f"{environment_id} has no running container")
        return record.handle

    def get_checkpoints(self, environment_id: str) -> list[Checkpoint]:
        return self.recovery.get_checkpoints(environment_id)

    async def cleanup_all_environments(self) -> int:
        """Destroy every tracked environment; returns how many were destroyed."""
        ids = self.registry.ids()
        results = await asyncio.gather(
            *(self.destroy_environment(environment_id) for environment_id in ids),
            return_exceptions=True,
        )
        destroyed = 0
        for environment_id, result in zip(ids, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Cleanup of %s failed: %s", environment_id, result)
            elif result:
                destroyed += 1
        logger.info("Cleaned up %d of %d environments", destroyed, len(ids))
        return destroyed

    def _checkpoint(self, record: EnvironmentRecord, step: str, metadata: dict | None = None) -> None:
        self.recovery.create_checkpoint(
            record.id,
            step,
            {
                "status": record.environment.status.value,
                "handle": record.handle,
                "recovery_state": record.recovery_state,
            },
            metadata=metadata,
        )

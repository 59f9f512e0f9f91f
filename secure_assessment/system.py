"""Assessment system facade.

Wires the lifecycle manager, security policy engine, recovery manager and
workflow executor together and exposes the operations callers use.
"""

import logging
import time
from pathlib import Path

from secure_assessment.exceptions import AssessmentError, ErrorCode, log_assessment_error
from secure_assessment.models import (
    AnalysisConfiguration,
    AssessmentSummary,
    Environment,
    EnvironmentStatus,
    SecurityConfiguration,
)
from secure_assessment.recovery.checkpoints import Checkpoint
from secure_assessment.sandbox.manager import ContainerManager, MountResult
from secure_assessment.sandbox.monitor import ActivityEvent, ActivityKind
from secure_assessment.sandbox.runtime import ContainerRuntime
from secure_assessment.settings import Settings, get_settings
from secure_assessment.workflows.adapters import ToolRegistry
from secure_assessment.workflows.catalog import detect_frameworks, detect_languages
from secure_assessment.workflows.definition import WorkflowDefinition
from secure_assessment.workflows.executor import (
    ProgressCallback,
    WorkflowContext,
    WorkflowExecutor,
    WorkflowResult,
    resolve_workflow,
)

logger = logging.getLogger(__name__)


class AssessmentSystem:
    """Entry point for running assessments.

    Usage:
        async with AssessmentSystem() as system:
            summary = await system.conduct_assessment(
                SecurityConfiguration.default(),
                AnalysisConfiguration(codebase_type="nodejs"),
                "/workspace/project",
            )
    """

    def __init__(
        self,
        runtime: ContainerRuntime | None = None,
        *,
        settings: Settings | None = None,
        tools: ToolRegistry | None = None,
        manager: ContainerManager | None = None,
        executor: WorkflowExecutor | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.manager = manager or ContainerManager(runtime, settings=self.settings)
        self.executor = executor or WorkflowExecutor(
            tools,
            recovery=self.manager.recovery,
            settings=self.settings,
        )

    async def __aenter__(self) -> "AssessmentSystem":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.cleanup_all()

    # =========================================================================
    # ENVIRONMENTS
    # =========================================================================

    async def create_environment(
        self,
        security_config: SecurityConfiguration | None,
        analysis_config: AnalysisConfiguration,
    ) -> Environment:
        return await self.manager.create_environment(
            security_config or SecurityConfiguration.default(),
            analysis_config,
        )

    async def mount_codebase(
        self,
        environment_id: str,
        source_path: str | Path,
        container_path: str | None = None,
    ) -> MountResult:
        return await self.manager.mount_codebase(environment_id, source_path, container_path)

    async def destroy_environment(self, environment_id: str) -> bool:
        return await self.manager.destroy_environment(environment_id)

    def get_environment_status(self, environment_id: str) -> EnvironmentStatus:
        return self.manager.get_environment_status(environment_id)

    async def list_environments(self) -> list[Environment]:
        return await self.manager.list_environments()

    async def stop_environment(self, environment_id: str) -> None:
        await self.manager.stop_environment(environment_id)

    def get_checkpoints(self, environment_id: str) -> list[Checkpoint]:
        return self.manager.get_checkpoints(environment_id)

    async def cleanup_all(self) -> int:
        return await self.manager.cleanup_all_environments()

    # =========================================================================
    # MONITORING
    # =========================================================================

    async def record_activity(
        self,
        environment_id: str,
        kind: ActivityKind | str,
        target: str,
        detail: str = "",
    ) -> ActivityEvent | None:
        """Report an observed action; a violation terminates the environment."""
        return await self.manager.policy.record_activity(environment_id, kind, target, detail)

    def get_activity_log(self, environment_id: str) -> list[ActivityEvent]:
        return self.manager.policy.get_activity_log(environment_id)

    # =========================================================================
    # WORKFLOWS
    # =========================================================================

    def build_context(self, environment_id: str) -> WorkflowContext:
        environment = self.manager.get_environment(environment_id)
        analysis = environment.analysis_config
        mount_source, mount_target = self.manager.get_mount(environment_id)
        return WorkflowContext(
            environment_id=environment_id,
            codebase_type=analysis.codebase_type,
            runtime=self.manager.runtime,
            handle=self.manager.runtime_handle(environment_id),
            detected_languages=detect_languages(analysis.codebase_type),
            detected_frameworks=detect_frameworks(analysis.test_frameworks),
            workspace_path=mount_source,
            container_workspace=mount_target or self.settings.container_workspace,
            exec_ceiling_seconds=self.settings.tool_exec_ceiling_seconds,
        )

    async def execute_workflow(
        self,
        environment_id: str,
        workflow: WorkflowDefinition | str | Path | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> WorkflowResult:
        """Run a workflow in a ready environment.

        Args:
            environment_id: Target environment
            workflow: Definition, catalog name or file path; auto-selected when omitted
            on_progress: Best-effort progress callback

        Raises:
            AssessmentError: security violations (the environment is terminated
                first), PARTIAL_ANALYSIS_FAILURE or WORKFLOW_EXECUTION_FAILED
        """
        context = self.build_context(environment_id)
        analysis = self.manager.get_environment(environment_id).analysis_config
        definition = resolve_workflow(
            workflow,
            context.codebase_type,
            context.detected_languages,
            context.detected_frameworks,
            quick_scan=analysis.quick_scan,
        )

        self.manager.set_status(environment_id, EnvironmentStatus.RUNNING)
        self.manager.recovery.create_checkpoint(
            environment_id, "workflow-start", {"workflow": definition.name, "version": definition.version}
        )

        try:
            result = await self.executor.execute(definition, context, on_progress)
        except AssessmentError as e:
            if e.is_security_violation:
                await self.manager.policy.alert(environment_id, e, source="workflow")
                raise
            outcome = e.context.get("workflow_result")
            if isinstance(outcome, WorkflowResult):
                self.manager.record_workflow_outcome(
                    environment_id, outcome.executed_steps, outcome.failed_steps, e
                )
            if environment_id in self.manager.registry:
                self.manager.set_status(environment_id, EnvironmentStatus.FAILED)
            raise

        self.manager.record_workflow_outcome(environment_id, result.executed_steps, result.failed_steps)
        self.manager.set_status(environment_id, EnvironmentStatus.READY)
        self.manager.recovery.create_checkpoint(
            environment_id,
            "workflow-complete",
            {"workflow": definition.name, "success": result.success},
            results=result.results,
            metadata={"executed": len(result.executed_steps), "failed": len(result.failed_steps)},
        )
        return result

    async def conduct_assessment(
        self,
        security_config: SecurityConfiguration | None,
        analysis_config: AnalysisConfiguration,
        source_path: str | Path,
        workflow: WorkflowDefinition | str | Path | None = None,
        on_progress: ProgressCallback | None = None,
        keep_environment: bool = False,
    ) -> AssessmentSummary:
        """Create an environment, mount, analyse and (by default) destroy it.

        A run that aborted after some steps completed is summarised as
        ``partial`` instead of raising.
        """
        started = time.monotonic()
        environment = await self.create_environment(security_config, analysis_config)
        environment_id = environment.id
        try:
            await self.mount_codebase(environment_id, source_path)
            try:
                result = await self.execute_workflow(environment_id, workflow, on_progress)
                status = "degraded" if result.degraded else "completed"
            except AssessmentError as e:
                outcome = e.context.get("workflow_result")
                if e.code is not ErrorCode.PARTIAL_ANALYSIS_FAILURE or not isinstance(outcome, WorkflowResult):
                    raise
                logger.warning("Assessment of %s completed partially: %s", environment_id, e.message)
                result, status = outcome, "partial"

            return AssessmentSummary(
                environment_id=environment_id,
                workflow=result.workflow,
                status=status,
                executed_steps=result.executed_steps,
                skipped_steps=result.skipped_steps,
                failed_steps=result.failed_steps,
                results=result.results,
                duration_seconds=time.monotonic() - started,
                errors=result.errors,
            )
        finally:
            if not keep_environment and environment_id in self.manager.registry:
                try:
                    await self.destroy_environment(environment_id)
                except AssessmentError as e:
                    log_assessment_error(logger, e, f"Cleanup of {environment_id} failed")

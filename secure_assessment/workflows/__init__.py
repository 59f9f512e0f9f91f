"""Declarative analysis workflows: definitions, catalog, tool adapters and executor."""

from secure_assessment.workflows.adapters import (
    CommandToolAdapter,
    SetupToolAdapter,
    ToolAdapter,
    ToolRegistry,
    default_tool_registry,
)
from secure_assessment.workflows.catalog import (
    all_workflows,
    auto_select_workflow,
    compatible_workflows,
    detect_frameworks,
    detect_languages,
    get_workflow,
)
from secure_assessment.workflows.definition import (
    ConditionKind,
    ConditionOperator,
    StepCategory,
    WorkflowCondition,
    WorkflowDefinition,
    WorkflowStep,
    create_template,
    evaluate_condition,
    load_workflow,
    parse_workflow,
    save_workflow,
)
from secure_assessment.workflows.executor import (
    RetryEvent,
    StepOutcome,
    StepStatus,
    WorkflowContext,
    WorkflowExecutor,
    WorkflowResult,
    build_schedule,
    resolve_workflow,
)

__all__ = [
    # Definitions
    "ConditionKind",
    "ConditionOperator",
    "StepCategory",
    "WorkflowCondition",
    "WorkflowDefinition",
    "WorkflowStep",
    "create_template",
    "evaluate_condition",
    "load_workflow",
    "parse_workflow",
    "save_workflow",
    # Catalog
    "all_workflows",
    "auto_select_workflow",
    "compatible_workflows",
    "detect_frameworks",
    "detect_languages",
    "get_workflow",
    # Adapters
    "CommandToolAdapter",
    "SetupToolAdapter",
    "ToolAdapter",
    "ToolRegistry",
    "default_tool_registry",
    # Execution
    "RetryEvent",
    "StepOutcome",
    "StepStatus",
    "WorkflowContext",
    "WorkflowExecutor",
    "WorkflowResult",
    "build_schedule",
    "resolve_workflow",
]

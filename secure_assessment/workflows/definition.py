"""Workflow definition schema.

Pydantic models for declarative analysis workflows: ordered steps bound to
tool adapters, optional conditions, parallel groups and cleanup steps.
Definitions are immutable once loaded and are validated structurally
(unique step names, parallel-group references) at load time.

Definitions can be written in snake_case or in the camelCase spelling used
by existing JSON workflow files (``parallelSteps``, ``continueOnError``...).
"""

import json
import logging
import re
from collections.abc import Callable, Mapping
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator

from secure_assessment.exceptions import configuration_error, validation_error

if TYPE_CHECKING:
    from secure_assessment.workflows.executor import WorkflowContext

logger = logging.getLogger(__name__)

WILDCARD = "*"


class ConditionKind(StrEnum):
    """What a step condition inspects."""

    FILE_EXISTS = "file-exists"
    LANGUAGE_DETECTED = "language-detected"
    FRAMEWORK_DETECTED = "framework-detected"
    CUSTOM = "custom"


class ConditionOperator(StrEnum):
    """How a condition value is compared against detected values."""

    EQUALS = "equals"
    CONTAINS = "contains"
    MATCHES = "matches"


class StepCategory(StrEnum):
    """Broad purpose of a step, used when planning degradation."""

    SETUP = "setup"
    BUILD = "build"
    ANALYSIS = "analysis"
    TEST = "test"
    CUSTOM = "custom"
    CLEANUP = "cleanup"


class WorkflowCondition(BaseModel):
    """Gate deciding whether a step runs."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: ConditionKind = Field(..., validation_alias=AliasChoices("kind", "type"))
    value: str = Field(..., min_length=1)
    operator: ConditionOperator = ConditionOperator.EQUALS


class WorkflowStep(BaseModel):
    """One named, conditionally gated, independently retryable unit of work."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Unique step name")
    description: str = ""
    tool: str = Field(..., min_length=1, description="Tool adapter identifier")
    config: dict[str, Any] = Field(default_factory=dict, description="Tool-specific settings")
    condition: WorkflowCondition | None = None
    timeout_ms: int | None = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("timeout_ms", "timeoutMs"),
    )
    retries: int = Field(default=0, ge=0, le=10)
    continue_on_error: bool = Field(
        default=False,
        validation_alias=AliasChoices("continue_on_error", "continueOnError"),
    )
    category: StepCategory = Field(
        default=StepCategory.ANALYSIS,
        validation_alias=AliasChoices("category", "type"),
    )

    @property
    def command(self) -> list[str]:
        """Command-line arguments passed to the tool, if any."""
        return [str(arg) for arg in self.config.get("command", [])]


class WorkflowDefinition(BaseModel):
    """A complete, validated workflow."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    name: str = Field(..., min_length=1)
    description: str = ""
    version: str = Field(..., min_length=1)
    codebase_types: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("codebase_types", "codebaseTypes"),
        description="Supported codebase types; '*' matches any",
    )
    steps: list[WorkflowStep] = Field(..., min_length=1)
    parallel_groups: list[list[str]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("parallel_groups", "parallelGroups", "parallelSteps"),
    )
    cleanup: list[WorkflowStep] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "WorkflowDefinition":
        names = [step.name for step in self.steps]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate step names: {', '.join(duplicates)}")
        declared = set(names)
        for group in self.parallel_groups:
            for name in group:
                if name not in declared:
                    raise ValueError(f"Parallel step reference not found: {name}")
        return self

    def is_compatible(self, codebase_type: str) -> bool:
        return codebase_type in self.codebase_types or WILDCARD in self.codebase_types

    def get_step(self, name: str) -> WorkflowStep | None:
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_defaults=True)


def parse_workflow(data: Mapping[str, Any], source: str = "<data>") -> WorkflowDefinition:
    """Validate raw workflow data.

    Raises:
        AssessmentError: VALIDATION_ERROR describing every problem found
    """
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'workflow'}: {err['msg']}"
            for err in e.errors()
        )
        raise validation_error("workflow", problems, source=source) from e


def load_workflow(path: str | Path) -> WorkflowDefinition:
    """Load a workflow definition from a JSON or YAML file."""
    path = Path(path)
    if not path.is_file():
        raise configuration_error(f"Workflow file not found: {path}", path=str(path))

    content = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(content)
        else:
            data = json.loads(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise validation_error("workflow", f"Invalid workflow file {path}: {e}", path=str(path)) from e

    if not isinstance(data, Mapping):
        raise validation_error("workflow", f"{path} does not contain a workflow object")
    return parse_workflow(data, source=str(path))


def save_workflow(workflow: WorkflowDefinition, path: str | Path) -> Path:
    """Write a workflow to JSON or YAML, creating parent directories."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = workflow.to_dict()
    if path.suffix.lower() in (".yaml", ".yml"):
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    else:
        path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


def create_template(name: str, codebase_type: str) -> WorkflowDefinition:
    """Minimal single-step workflow for a codebase type."""
    return WorkflowDefinition(
        name=name,
        description=f"Auto-generated workflow for {codebase_type} projects",
        version="1.0.0",
        codebase_types=[codebase_type],
        steps=[
            WorkflowStep(
                name="setup",
                description="Initialize analysis environment",
                tool="setup",
                config={"install_dependencies": True, "create_output_dir": True},
                category=StepCategory.SETUP,
            )
        ],
    )


# =============================================================================
# CONDITIONS
# =============================================================================

CustomCondition = Callable[["WorkflowContext", WorkflowCondition], bool]


def _check_values(values: list[str], condition: WorkflowCondition) -> bool:
    if condition.operator is ConditionOperator.EQUALS:
        return condition.value in values
    if condition.operator is ConditionOperator.CONTAINS:
        return any(condition.value in value for value in values)
    try:
        pattern = re.compile(condition.value)
    except re.error as e:
        logger.warning("Invalid condition pattern %r: %s", condition.value, e)
        return False
    return any(pattern.search(value) for value in values)


def evaluate_condition(
    condition: WorkflowCondition,
    context: "WorkflowContext",
    custom_conditions: Mapping[str, CustomCondition] | None = None,
) -> bool:
    """Decide whether a gated step should run.

    ``file-exists`` checks the host copy of the mounted codebase. Custom
    conditions are looked up by value; unknown custom conditions pass.
    """
    match condition.kind:
        case ConditionKind.FILE_EXISTS:
            if context.workspace_path is None:
                return False
            return (Path(context.workspace_path) / condition.value).exists()
        case ConditionKind.LANGUAGE_DETECTED:
            return _check_values(context.detected_languages, condition)
        case ConditionKind.FRAMEWORK_DETECTED:
            return _check_values(context.detected_frameworks, condition)
        case ConditionKind.CUSTOM:
            evaluator = (custom_conditions or {}).get(condition.value)
            if evaluator is None:
                return True
            return bool(evaluator(context, condition))
    return False

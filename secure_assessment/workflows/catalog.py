"""Predefined workflows and workflow auto-selection."""

import logging
from collections.abc import Iterable

from secure_assessment.models import CodebaseType
from secure_assessment.workflows.definition import (
    ConditionKind,
    StepCategory,
    WorkflowCondition,
    WorkflowDefinition,
    WorkflowStep,
)

logger = logging.getLogger(__name__)

KNOWN_FRAMEWORKS = ("hardhat", "truffle", "jest", "mocha", "foundry")


def _when_file(path: str) -> WorkflowCondition:
    return WorkflowCondition(kind=ConditionKind.FILE_EXISTS, value=path)


def _when_language(language: str) -> WorkflowCondition:
    return WorkflowCondition(kind=ConditionKind.LANGUAGE_DETECTED, value=language)


def _npm_audit(name: str, description: str, audit_level: str, **config) -> WorkflowStep:
    return WorkflowStep(
        name=name,
        description=description,
        tool="npm-audit",
        config={"audit_level": audit_level, "output_format": "json", **config},
        condition=_when_file("package.json"),
    )


def nodejs_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="nodejs-standard",
        description="Standard security assessment for Node.js applications",
        version="1.0.0",
        codebase_types=[CodebaseType.NODEJS.value, CodebaseType.MIXED.value],
        steps=[
            WorkflowStep(
                name="setup-nodejs",
                description="Set up Node.js environment",
                tool="setup",
                config={"node_version": "lts", "install_dependencies": True, "create_output_dir": True},
                category=StepCategory.SETUP,
            ),
            _npm_audit(
                "dependency-audit",
                "Audit npm dependencies for vulnerabilities",
                "moderate",
                include_dev_dependencies=True,
            ),
            WorkflowStep(
                name="static-analysis",
                description="Run ESLint static analysis",
                tool="eslint",
                config={"extensions": [".js", ".ts", ".jsx", ".tsx"], "output_format": "json"},
            ),
            WorkflowStep(
                name="security-scan",
                description="Run Semgrep security analysis",
                tool="semgrep",
                config={"rules": ["javascript", "typescript", "security"], "output_format": "json"},
            ),
            WorkflowStep(
                name="test-execution",
                description="Run test suite safely",
                tool="test-runner",
                config={"framework": "auto-detect", "coverage": True},
                condition=_when_file("package.json"),
                timeout_ms=300_000,
                category=StepCategory.TEST,
            ),
        ],
        parallel_groups=[["static-analysis", "security-scan"]],
    )


def solidity_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="solidity-standard",
        description="Standard security assessment for Solidity smart contracts",
        version="1.0.0",
        codebase_types=[CodebaseType.SOLIDITY.value, CodebaseType.MIXED.value],
        steps=[
            WorkflowStep(
                name="setup-solidity",
                description="Set up Solidity development environment",
                tool="setup",
                config={"solidity_version": "latest", "install_hardhat": True, "create_output_dir": True},
                category=StepCategory.SETUP,
            ),
            WorkflowStep(
                name="compile-contracts",
                description="Compile Solidity contracts",
                tool="solidity-compiler",
                config={"version": "auto", "optimizer": True},
                condition=_when_file("contracts"),
                category=StepCategory.BUILD,
            ),
            WorkflowStep(
                name="slither-analysis",
                description="Run Slither security analysis",
                tool="slither",
                config={"detectors": "all", "exclude_informational": False},
            ),
            WorkflowStep(
                name="mythx-analysis",
                description="Run Mythril symbolic analysis",
                tool="mythx",
                config={"mode": "quick"},
                timeout_ms=600_000,
            ),
            WorkflowStep(
                name="gas-analysis",
                description="Analyze gas usage patterns",
                tool="gas-analyzer",
                config={"optimization_level": 200, "report_threshold": 100000},
            ),
            WorkflowStep(
                name="contract-tests",
                description="Run smart contract tests",
                tool="hardhat-test",
                config={"network": "hardhat", "coverage": True},
                condition=_when_file("test"),
                timeout_ms=300_000,
                category=StepCategory.TEST,
            ),
        ],
        parallel_groups=[["slither-analysis", "mythx-analysis", "gas-analysis"]],
    )


def mixed_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="mixed-comprehensive",
        description="Comprehensive assessment for mixed Node.js and Solidity projects",
        version="1.0.0",
        codebase_types=[CodebaseType.MIXED.value],
        steps=[
            WorkflowStep(
                name="setup-mixed",
                description="Set up mixed development environment",
                tool="setup",
                config={
                    "node_version": "lts",
                    "solidity_version": "latest",
                    "install_dependencies": True,
                    "install_hardhat": True,
                    "create_output_dir": True,
                },
                category=StepCategory.SETUP,
            ),
            _npm_audit(
                "dependency-audit",
                "Audit npm dependencies",
                "moderate",
                include_dev_dependencies=True,
            ),
            WorkflowStep(
                name="compile-contracts",
                description="Compile Solidity contracts",
                tool="solidity-compiler",
                config={"version": "auto", "optimizer": True},
                condition=_when_file("contracts"),
                category=StepCategory.BUILD,
            ),
            WorkflowStep(
                name="nodejs-static-analysis",
                description="Run ESLint on Node.js code",
                tool="eslint",
                config={"extensions": [".js", ".ts", ".jsx", ".tsx"]},
            ),
            WorkflowStep(
                name="nodejs-security-scan",
                description="Run Semgrep on Node.js code",
                tool="semgrep",
                config={"rules": ["javascript", "typescript", "security"]},
            ),
            WorkflowStep(
                name="solidity-security-scan",
                description="Run Slither on smart contracts",
                tool="slither",
                config={"detectors": "all"},
            ),
            WorkflowStep(
                name="integration-tests",
                description="Run integration tests",
                tool="test-runner",
                config={"framework": "auto-detect", "include_integration": True, "coverage": True},
                timeout_ms=600_000,
                category=StepCategory.TEST,
            ),
        ],
        parallel_groups=[["nodejs-static-analysis", "nodejs-security-scan", "solidity-security-scan"]],
    )


def quick_scan_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="quick-scan",
        description="Fast security scan for quick assessment",
        version="1.0.0",
        codebase_types=["*"],
        steps=[
            WorkflowStep(
                name="setup-quick",
                description="Quick environment setup",
                tool="setup",
                config={"minimal": True, "create_output_dir": True},
                category=StepCategory.SETUP,
            ),
            _npm_audit("dependency-check", "Quick dependency vulnerability check", "high", quick=True),
            WorkflowStep(
                name="basic-static-analysis",
                description="Basic static analysis",
                tool="semgrep",
                config={"rules": ["security"], "quick": True},
            ),
            WorkflowStep(
                name="contract-quick-scan",
                description="Quick contract security scan",
                tool="slither",
                config={"detectors": "high,medium", "quick": True},
                condition=_when_language("solidity"),
            ),
        ],
    )


def deep_analysis_workflow() -> WorkflowDefinition:
    return WorkflowDefinition(
        name="deep-analysis",
        description="Comprehensive deep security analysis",
        version="1.0.0",
        codebase_types=["*"],
        steps=[
            WorkflowStep(
                name="setup-comprehensive",
                description="Comprehensive environment setup",
                tool="setup",
                config={
                    "node_version": "lts",
                    "solidity_version": "latest",
                    "install_dependencies": True,
                    "create_output_dir": True,
                },
                category=StepCategory.SETUP,
            ),
            _npm_audit(
                "comprehensive-dependency-audit",
                "Comprehensive dependency analysis",
                "low",
                include_dev_dependencies=True,
            ),
            WorkflowStep(
                name="advanced-static-analysis",
                description="Advanced static code analysis",
                tool="semgrep",
                config={"rules": ["security", "performance", "correctness"], "deep": True},
            ),
            WorkflowStep(
                name="comprehensive-contract-analysis",
                description="Comprehensive smart contract analysis",
                tool="slither",
                config={"detectors": "all", "deep": True},
                condition=_when_language("solidity"),
            ),
            WorkflowStep(
                name="mythx-deep-analysis",
                description="Deep symbolic security analysis",
                tool="mythx",
                config={"mode": "deep"},
                condition=_when_language("solidity"),
                timeout_ms=1_800_000,
            ),
            WorkflowStep(
                name="comprehensive-testing",
                description="Comprehensive test execution",
                tool="test-runner",
                config={"framework": "auto-detect", "include_integration": True, "coverage": True},
                timeout_ms=900_000,
                category=StepCategory.TEST,
            ),
            WorkflowStep(
                name="performance-analysis",
                description="Performance and gas optimization analysis",
                tool="gas-analyzer",
                config={"comprehensive": True, "optimization_suggestions": True},
                condition=_when_language("solidity"),
            ),
        ],
        parallel_groups=[
            ["advanced-static-analysis", "comprehensive-contract-analysis"],
            ["mythx-deep-analysis", "performance-analysis"],
        ],
    )


def all_workflows() -> list[WorkflowDefinition]:
    return [
        nodejs_workflow(),
        solidity_workflow(),
        mixed_workflow(),
        quick_scan_workflow(),
        deep_analysis_workflow(),
    ]


def get_workflow(name: str) -> WorkflowDefinition | None:
    for workflow in all_workflows():
        if workflow.name == name:
            return workflow
    return None


def compatible_workflows(codebase_type: str) -> list[WorkflowDefinition]:
    return [workflow for workflow in all_workflows() if workflow.is_compatible(codebase_type)]


def detect_languages(codebase_type: str) -> list[str]:
    """Languages implied by the declared codebase type."""
    languages = []
    if codebase_type in (CodebaseType.NODEJS, CodebaseType.MIXED):
        languages.extend(["javascript", "typescript"])
    if codebase_type in (CodebaseType.SOLIDITY, CodebaseType.MIXED):
        languages.append("solidity")
    return languages


def detect_frameworks(test_frameworks: Iterable[str]) -> list[str]:
    """Known frameworks among those declared in the analysis configuration."""
    declared = {framework.lower() for framework in test_frameworks}
    return [framework for framework in KNOWN_FRAMEWORKS if framework in declared]


def auto_select_workflow(
    codebase_type: str,
    detected_languages: list[str],
    detected_frameworks: list[str] | None = None,
    quick_scan: bool = False,
) -> WorkflowDefinition:
    """Pick a predefined workflow for a codebase.

    Quick scan wins when requested; otherwise the most specific workflow for
    the type and languages, falling back to quick scan.
    """
    if quick_scan:
        workflow = quick_scan_workflow()
    elif codebase_type == CodebaseType.MIXED or (
        "javascript" in detected_languages and "solidity" in detected_languages
    ):
        workflow = mixed_workflow()
    elif codebase_type == CodebaseType.SOLIDITY or "solidity" in detected_languages:
        workflow = solidity_workflow()
    elif (
        codebase_type == CodebaseType.NODEJS
        or "javascript" in detected_languages
        or "typescript" in detected_languages
    ):
        workflow = nodejs_workflow()
    else:
        workflow = quick_scan_workflow()

    logger.debug(
        "Auto-selected workflow %s for %s (frameworks: %s)",
        workflow.name,
        codebase_type,
        ", ".join(detected_frameworks or []) or "none",
    )
    return workflow

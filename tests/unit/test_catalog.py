"""Unit tests for predefined workflows and auto-selection."""

import pytest

from secure_assessment.workflows.catalog import (
    all_workflows,
    auto_select_workflow,
    compatible_workflows,
    detect_frameworks,
    detect_languages,
    get_workflow,
)
from secure_assessment.workflows.executor import build_schedule


class TestPredefinedWorkflows:
    def test_names(self):
        assert [w.name for w in all_workflows()] == [
            "nodejs-standard",
            "solidity-standard",
            "mixed-comprehensive",
            "quick-scan",
            "deep-analysis",
        ]

    def test_nodejs_standard_shape(self):
        workflow = get_workflow("nodejs-standard")

        schedule = [[step.name for step in unit] for unit in build_schedule(workflow)]

        assert schedule == [
            ["setup-nodejs"],
            ["dependency-audit"],
            ["static-analysis", "security-scan"],
            ["test-execution"],
        ]
        assert workflow.get_step("dependency-audit").condition.value == "package.json"
        assert workflow.get_step("test-execution").timeout_ms == 300_000

    def test_deep_analysis_has_two_groups(self):
        schedule = [[s.name for s in unit] for unit in build_schedule(get_workflow("deep-analysis"))]

        assert ["advanced-static-analysis", "comprehensive-contract-analysis"] in schedule
        assert ["mythx-deep-analysis", "performance-analysis"] in schedule

    def test_unknown_name(self):
        assert get_workflow("nope") is None

    @pytest.mark.parametrize(
        "codebase_type, expected",
        [
            ("nodejs", {"nodejs-standard", "quick-scan", "deep-analysis"}),
            ("solidity", {"solidity-standard", "quick-scan", "deep-analysis"}),
            ("mixed", {"nodejs-standard", "solidity-standard", "mixed-comprehensive", "quick-scan", "deep-analysis"}),
        ],
    )
    def test_compatibility(self, codebase_type, expected):
        assert {w.name for w in compatible_workflows(codebase_type)} == expected


class TestDetection:
    def test_languages(self):
        assert detect_languages("nodejs") == ["javascript", "typescript"]
        assert detect_languages("solidity") == ["solidity"]
        assert detect_languages("mixed") == ["javascript", "typescript", "solidity"]
        assert detect_languages("cobol") == []

    def test_frameworks(self):
        assert detect_frameworks(["Jest", "hardhat", "karma"]) == ["hardhat", "jest"]


class TestAutoSelect:
    @pytest.mark.parametrize(
        "codebase_type, languages, expected",
        [
            ("nodejs", ["javascript"], "nodejs-standard"),
            ("solidity", ["solidity"], "solidity-standard"),
            ("mixed", [], "mixed-comprehensive"),
            ("unknown", ["javascript", "solidity"], "mixed-comprehensive"),
            ("unknown", ["typescript"], "nodejs-standard"),
            ("unknown", [], "quick-scan"),
        ],
    )
    def test_selection(self, codebase_type, languages, expected):
        assert auto_select_workflow(codebase_type, languages).name == expected

    def test_quick_scan_wins(self):
        assert auto_select_workflow("solidity", ["solidity"], quick_scan=True).name == "quick-scan"

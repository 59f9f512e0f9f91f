"""Tool adapters.

Every analysis tool is reached through one uniform call,
``execute(config, context) -> ResultFragment``. Most tools are commands run
inside the environment whose JSON output is translated into findings;
``config["command"]`` overrides the built argv for any of them.
"""

import json
import logging
import re
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from secure_assessment.exceptions import analysis_error, timeout_error
from secure_assessment.models import ResultFragment
from secure_assessment.sandbox.external import NPMRC_PATH, ExternalResourcePolicy
from secure_assessment.sandbox.runtime import ExecResult, RuntimeCommandError
from secure_assessment.settings import Settings, get_settings

if TYPE_CHECKING:
    from secure_assessment.workflows.executor import WorkflowContext

logger = logging.getLogger(__name__)

STDERR_TAIL = 500

CommandBuilder = Callable[[dict[str, Any], "WorkflowContext"], list[str]]
OutputParser = Callable[[ExecResult, dict[str, Any]], ResultFragment]


@runtime_checkable
class ToolAdapter(Protocol):
    """Uniform contract for one analysis tool."""

    name: str

    async def execute(self, config: dict[str, Any], context: "WorkflowContext") -> ResultFragment: ...


class ToolRegistry:
    """Adapters keyed by tool identifier."""

    def __init__(self, adapters: list[ToolAdapter] | None = None) -> None:
        self._adapters: dict[str, ToolAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ToolAdapter) -> None:
        if adapter.name in self._adapters:
            logger.info("Replacing tool adapter: %s", adapter.name)
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ToolAdapter:
        """Look up an adapter.

        Raises:
            AssessmentError: ANALYSIS_FAILED for an unknown tool
        """
        adapter = self._adapters.get(name)
        if adapter is None:
            raise analysis_error(f"Unknown tool: {name}", tool=name)
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def __contains__(self, name: object) -> bool:
        return name in self._adapters


async def run_in_environment(
    context: "WorkflowContext",
    argv: list[str],
    tool: str,
    env: dict[str, str] | None = None,
) -> ExecResult:
    """Exec ``argv`` in the context's container, mapping runtime failures."""
    merged_env = {**context.env, **(env or {})}
    try:
        return await context.runtime.exec(
            context.handle,
            argv,
            env=merged_env or None,
            timeout_seconds=context.exec_ceiling_seconds,
        )
    except RuntimeCommandError as e:
        if e.timed_out:
            raise timeout_error(
                tool,
                int((context.exec_ceiling_seconds or 0) * 1000),
                environment_id=context.environment_id,
            ) from e
        raise analysis_error(f"{tool} could not be run: {e}", tool=tool) from e


class CommandToolAdapter:
    """Runs a command in the environment and parses its output.

    Tools that report findings through a non-zero exit status set
    ``nonzero_means_findings``; their output is still parsed.
    """

    def __init__(
        self,
        name: str,
        build_command: CommandBuilder,
        parse_output: OutputParser,
        *,
        nonzero_means_findings: bool = False,
        env: dict[str, str] | None = None,
    ) -> None:
        self.name = name
        self.build_command = build_command
        self.parse_output = parse_output
        self.nonzero_means_findings = nonzero_means_findings
        self.env = dict(env or {})

    def command_for(self, config: dict[str, Any], context: "WorkflowContext") -> list[str]:
        if config.get("command"):
            return [str(arg) for arg in config["command"]]
        return self.build_command(config, context)

    async def execute(self, config: dict[str, Any], context: "WorkflowContext") -> ResultFragment:
        argv = self.command_for(config, context)
        logger.info("Running %s in %s: %s", self.name, context.environment_id, " ".join(argv))
        result = await run_in_environment(context, argv, self.name, env=self.env)

        if not result.ok and not (self.nonzero_means_findings and result.stdout.strip()):
            raise analysis_error(
                f"{self.name} exited with {result.exit_code}: {result.stderr.strip()[-STDERR_TAIL:]}",
                tool=self.name,
                exit_code=result.exit_code,
            )
        try:
            return self.parse_output(result, config)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise analysis_error(f"Unreadable {self.name} output: {e}", tool=self.name) from e


class SetupToolAdapter:
    """Prepares the workspace: output directory and dependency install.

    Installs are pinned to the allow-listed npm registry through a
    locked-down npm config and never run package lifecycle scripts. A
    project .npmrc or lock file naming another registry is a network
    violation. When the install itself fails (typically no network) the
    run continues with a recommendation.
    """

    name = "setup"

    def __init__(self, policy: ExternalResourcePolicy | None = None) -> None:
        self.policy = policy or ExternalResourcePolicy.from_settings(get_settings())

    async def _read_project_file(self, context: "WorkflowContext", path: str) -> str:
        result = await run_in_environment(context, ["cat", path], self.name)
        return result.stdout if result.ok else ""

    async def _install_dependencies(self, context: "WorkflowContext") -> ExecResult:
        self.policy.check_dependency_sources(
            npmrc_text=await self._read_project_file(context, ".npmrc"),
            lockfile_text=await self._read_project_file(context, "package-lock.json"),
        )
        written = await run_in_environment(
            context,
            ["sh", "-c", 'printf "%s" "$1" > "$2"', "sh", self.policy.npmrc(), NPMRC_PATH],
            self.name,
        )
        if not written.ok:
            raise analysis_error(
                f"Could not write npm configuration: {written.stderr.strip()[-STDERR_TAIL:]}",
                tool=self.name,
            )
        return await run_in_environment(context, self.policy.install_command(), self.name)

    async def execute(self, config: dict[str, Any], context: "WorkflowContext") -> ResultFragment:
        recommendations = []

        if config.get("create_output_dir", True):
            result = await run_in_environment(context, ["mkdir", "-p", context.output_path], self.name)
            if not result.ok:
                raise analysis_error(
                    f"Could not create {context.output_path}: {result.stderr.strip()[-STDERR_TAIL:]}",
                    tool=self.name,
                )

        if config.get("install_dependencies") and not config.get("minimal"):
            manifest = await run_in_environment(context, ["test", "-f", "package.json"], self.name)
            if manifest.ok:
                install = await self._install_dependencies(context)
                if install.ok:
                    logger.info("Dependencies installed in %s", context.environment_id)
                else:
                    logger.warning(
                        "Dependency install failed in %s (exit %d)",
                        context.environment_id,
                        install.exit_code,
                    )
                    recommendations.append(
                        {
                            "tool": self.name,
                            "title": "Dependencies could not be installed",
                            "description": install.stderr.strip()[-STDERR_TAIL:],
                            "recommendation": "Allow registry access or vendor dependencies for full coverage",
                        }
                    )

        return ResultFragment(recommendations=recommendations or None)


# =============================================================================
# COMMAND BUILDERS
# =============================================================================

SEMGREP_RULESETS = {"security": "p/security-audit"}
SLITHER_IMPACTS = ("informational", "low", "medium", "high")


def npm_audit_command(config: dict[str, Any], context: "WorkflowContext") -> list[str]:
    argv = ["npm", "audit", "--json", f"--audit-level={config.get('audit_level', 'moderate')}"]
    if not config.get("include_dev_dependencies", True):
        argv.append("--omit=dev")
    return argv


def eslint_command(config: dict[str, Any], context: "WorkflowContext") -> list[str]:
    argv = ["npx", "--no-install", "eslint", "--format", "json"]
    if config.get("config_file"):
        argv.extend(["--config", str(config["config_file"])])
    extensions = config.get("extensions")
    if extensions:
        argv.extend(["--ext", ",".join(extensions)])
    argv.append(".")
    return argv


def semgrep_command(config: dict[str, Any], context: "WorkflowContext") -> list[str]:
    argv = ["semgrep", "scan", "--json", "--quiet"]
    for rule in config.get("rules", ["security"]):
        argv.extend(["--config", SEMGREP_RULESETS.get(rule, f"p/{rule}")])
    return argv


def slither_command(config: dict[str, Any], context: "WorkflowContext") -> list[str]:
    argv = ["slither", ".", "--json", "-"]
    detectors = str(config.get("detectors", "all"))
    if detectors != "all":
        wanted = {part.strip() for part in detectors.split(",")}
        if wanted <= set(SLITHER_IMPACTS):
            argv.extend(f"--exclude-{impact}" for impact in SLITHER_IMPACTS if impact not in wanted)
        else:
            argv.extend(["--detect", detectors])
    elif config.get("exclude_informational"):
        argv.append("--exclude-informational")
    return argv


def mythril_command(config: dict[str, Any], context: "WorkflowContext") -> list[str]:
    seconds = 900 if config.get("mode") == "deep" else 120
    return ["myth", "analyze", "--execution-timeout", str(seconds), "-o", "json", "contracts"]


def hardhat_compile_command(config: dict[str, Any], context: "WorkflowContext") -> list[str]:
    return ["npx", "--no-install", "hardhat", "compile", "--quiet"]


def hardhat_test_command(config: dict[str, Any], context: "WorkflowContext") -> list[str]:
    argv = ["npx", "--no-install", "hardhat", "test"]
    if config.get("network"):
        argv.extend(["--network", str(config["network"])])
    return argv


def run_tests_command(config: dict[str, Any], context: "WorkflowContext") -> list[str]:
    framework = config.get("framework", "auto-detect")
    if framework == "auto-detect":
        framework = "mocha" if "mocha" in context.detected_frameworks else "jest"
    if framework == "mocha":
        return ["npx", "--no-install", "mocha", "--reporter", "json"]
    argv = ["npx", "--no-install", "jest", "--json", "--silent"]
    if config.get("coverage"):
        argv.append("--coverage")
    return argv


# =============================================================================
# OUTPUT PARSERS
# =============================================================================

_SEVERITY_NAMES = {
    "error": "high",
    "warning": "medium",
    "info": "low",
    "informational": "low",
    "optimization": "low",
}


def normalize_severity(value: Any) -> str:
    text = str(value or "unknown").lower()
    return _SEVERITY_NAMES.get(text, text)


def parse_npm_audit(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    data = json.loads(result.stdout)
    findings = []
    for package, vulnerability in (data.get("vulnerabilities") or {}).items():
        titles = [
            via.get("title", "") for via in vulnerability.get("via", []) if isinstance(via, dict)
        ]
        findings.append(
            {
                "id": f"npm-audit-{package}",
                "severity": normalize_severity(vulnerability.get("severity")),
                "title": f"Vulnerable dependency {package}",
                "description": "; ".join(title for title in titles if title),
                "location": {"file": "package.json"},
                "tool": "npm-audit",
                "category": "dependency-security",
                "recommendation": (
                    "Update to a fixed version"
                    if vulnerability.get("fixAvailable")
                    else "No fix available; consider replacing the dependency"
                ),
            }
        )
    return ResultFragment(security_findings=findings)


def parse_eslint(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    issues = []
    for file_report in json.loads(result.stdout):
        for message in file_report.get("messages", []):
            issues.append(
                {
                    "id": f"eslint-{message.get('ruleId') or 'parse'}",
                    "severity": "medium" if message.get("severity") == 2 else "low",
                    "title": message.get("message", ""),
                    "location": {"file": file_report.get("filePath"), "line": message.get("line")},
                    "tool": "eslint",
                    "category": "code-quality",
                }
            )
    return ResultFragment(code_quality_issues=issues)


def parse_semgrep(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    findings = []
    for match in json.loads(result.stdout).get("results", []):
        extra = match.get("extra", {})
        check_id = match.get("check_id", "semgrep")
        findings.append(
            {
                "id": check_id,
                "severity": normalize_severity(extra.get("severity")),
                "title": check_id.rsplit(".", 1)[-1],
                "description": extra.get("message", ""),
                "location": {"file": match.get("path"), "line": match.get("start", {}).get("line")},
                "tool": "semgrep",
                "category": "security",
                "recommendation": extra.get("fix") or "Review security implementation",
            }
        )
    return ResultFragment(security_findings=findings)


def parse_slither(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    data = json.loads(result.stdout)
    findings = []
    for detector in (data.get("results") or {}).get("detectors", []):
        location: dict[str, Any] = {}
        elements = detector.get("elements") or []
        if elements:
            mapping = elements[0].get("source_mapping", {})
            lines = mapping.get("lines") or [None]
            location = {"file": mapping.get("filename_relative"), "line": lines[0]}
        findings.append(
            {
                "id": f"slither-{detector.get('check')}",
                "severity": normalize_severity(detector.get("impact")),
                "title": detector.get("check", ""),
                "description": detector.get("description", "").strip(),
                "location": location,
                "tool": "slither",
                "category": "smart-contract-security",
                "confidence": detector.get("confidence"),
            }
        )
    return ResultFragment(security_findings=findings)


def parse_mythril(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    data = json.loads(result.stdout)
    if data.get("error"):
        raise ValueError(data["error"])
    findings = [
        {
            "id": f"swc-{issue.get('swc-id', 'unknown')}",
            "severity": normalize_severity(issue.get("severity")),
            "title": issue.get("title", ""),
            "description": issue.get("description", ""),
            "location": {"file": issue.get("filename"), "line": issue.get("lineno")},
            "tool": "mythx",
            "category": "smart-contract-security",
        }
        for issue in data.get("issues", [])
    ]
    return ResultFragment(security_findings=findings)


def parse_jest(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    tests = []
    for suite in json.loads(result.stdout).get("testResults", []):
        for assertion in suite.get("assertionResults", []):
            tests.append(
                {
                    "suite": " > ".join(assertion.get("ancestorTitles", [])) or suite.get("name"),
                    "test": assertion.get("title", ""),
                    "status": assertion.get("status", "unknown"),
                    "duration": assertion.get("duration"),
                    "framework": "jest",
                }
            )
    return ResultFragment(test_results=tests)


def parse_mocha(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    tests = [
        {
            "suite": test.get("fullTitle", "").removesuffix(test.get("title", "")).strip(),
            "test": test.get("title", ""),
            "status": "failed" if test.get("err") else "passed",
            "duration": test.get("duration"),
            "framework": "mocha",
        }
        for test in json.loads(result.stdout).get("tests", [])
    ]
    return ResultFragment(test_results=tests)


def parse_test_runner(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    data = json.loads(result.stdout)
    if "testResults" in data:
        return parse_jest(result, config)
    return parse_mocha(result, config)


_PASSING = re.compile(r"(\d+)\s+passing")
_FAILING = re.compile(r"(\d+)\s+failing")


def parse_hardhat_test(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    passing = _PASSING.search(result.stdout)
    failing = _FAILING.search(result.stdout)
    passed = int(passing.group(1)) if passing else 0
    failed = int(failing.group(1)) if failing else 0
    return ResultFragment(
        test_results=[
            {
                "suite": "Contract Tests",
                "test": "hardhat test",
                "status": "failed" if failed or not result.ok else "passed",
                "passed": passed,
                "failed": failed,
                "framework": "hardhat",
            }
        ]
    )


def parse_compile(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    return ResultFragment()


_GAS_ROW = re.compile(r"^[|·]\s*(?P<contract>\w+)\s*[|·]\s*(?P<method>\w+)\s*[|·](?P<rest>.*)$")


def parse_gas_report(result: ExecResult, config: dict[str, Any]) -> ResultFragment:
    """Read method rows of a hardhat-gas-reporter table."""
    threshold = int(config.get("report_threshold", 100000))
    metrics = []
    recommendations = []
    for line in result.stdout.splitlines():
        match = _GAS_ROW.match(line.strip())
        if not match:
            continue
        numbers = [int(cell) for cell in re.findall(r"\d+", match.group("rest"))]
        if len(numbers) < 2:
            continue
        # min/max columns are blank for single-call methods; avg and #calls are last
        average, calls = numbers[-2], numbers[-1]
        metric = {
            "contract": match.group("contract"),
            "method": match.group("method"),
            "avg_gas": average,
            "calls": calls,
            "tool": "gas-analyzer",
        }
        metrics.append(metric)
        if average > threshold:
            recommendations.append(
                {
                    "tool": "gas-analyzer",
                    "title": f"{metric['contract']}.{metric['method']} averages {average} gas",
                    "recommendation": "Review storage writes and loops in this method",
                }
            )
    return ResultFragment(performance_metrics=metrics, recommendations=recommendations or None)


def default_tool_registry(settings: Settings | None = None) -> ToolRegistry:
    """Registry with every tool the predefined workflows use."""
    policy = ExternalResourcePolicy.from_settings(settings or get_settings())
    return ToolRegistry(
        [
            SetupToolAdapter(policy),
            CommandToolAdapter("npm-audit", npm_audit_command, parse_npm_audit, nonzero_means_findings=True),
            CommandToolAdapter("eslint", eslint_command, parse_eslint, nonzero_means_findings=True),
            CommandToolAdapter("semgrep", semgrep_command, parse_semgrep, nonzero_means_findings=True),
            CommandToolAdapter("slither", slither_command, parse_slither, nonzero_means_findings=True),
            CommandToolAdapter("mythx", mythril_command, parse_mythril, nonzero_means_findings=True),
            CommandToolAdapter("solidity-compiler", hardhat_compile_command, parse_compile),
            CommandToolAdapter(
                "gas-analyzer",
                hardhat_test_command,
                parse_gas_report,
                env={"REPORT_GAS": "true", "NO_COLOR": "1"},
            ),
            CommandToolAdapter(
                "test-runner", run_tests_command, parse_test_runner, nonzero_means_findings=True
            ),
            CommandToolAdapter(
                "hardhat-test", hardhat_test_command, parse_hardhat_test, nonzero_means_findings=True
            ),
        ]
    )

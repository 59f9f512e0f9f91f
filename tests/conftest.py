"""Shared test fixtures for the assessment sandbox.

Provides settings, an in-memory container runtime, a wired lifecycle
manager and a clean Node.js codebase fixture.
"""

from pathlib import Path

import pytest

from secure_assessment.models import AnalysisConfiguration, ResourceLimitSpec, SecurityConfiguration
from secure_assessment.recovery.manager import RecoveryManager
from secure_assessment.resilience.circuit_breaker import CircuitBreakerRegistry
from secure_assessment.resilience.retry import DEFAULT_RETRY_POLICIES, zero_delay
from secure_assessment.sandbox.manager import ContainerManager
from secure_assessment.sandbox.security import HostCapacity, SecurityPolicyEngine
from secure_assessment.settings import Settings
from tests.mocks import FakeContainerRuntime

# =============================================================================
# SETTINGS
# =============================================================================


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Provide test settings with safe defaults."""
    return Settings(
        environment="testing",
        container_runtime_path="podman",
        workspace_root=str(tmp_path),
        stop_grace_seconds=1,
        step_backoff_base_seconds=0.0,
        egress_proxy_url=None,
    )


@pytest.fixture
def mock_settings(test_settings: Settings, monkeypatch: pytest.MonkeyPatch) -> Settings:
    """Mock get_settings() to return test settings."""
    from secure_assessment import settings

    monkeypatch.setattr(settings, "get_settings", lambda: test_settings)
    return test_settings


# =============================================================================
# SANDBOX
# =============================================================================


@pytest.fixture
def fake_runtime() -> FakeContainerRuntime:
    return FakeContainerRuntime()


@pytest.fixture
def host_capacity() -> HostCapacity:
    """A host large enough that no request is degraded."""
    return HostCapacity(memory_bytes=64 * 1024**3, cpus=16.0)


@pytest.fixture
def policy_engine(test_settings: Settings, host_capacity: HostCapacity) -> SecurityPolicyEngine:
    return SecurityPolicyEngine(test_settings, host_capacity=host_capacity)


@pytest.fixture
def fast_retry_policies():
    return {name: zero_delay(policy) for name, policy in DEFAULT_RETRY_POLICIES.items()}


@pytest.fixture
def manager(
    fake_runtime: FakeContainerRuntime,
    test_settings: Settings,
    policy_engine: SecurityPolicyEngine,
    fast_retry_policies,
    tmp_path: Path,
) -> ContainerManager:
    return ContainerManager(
        fake_runtime,
        settings=test_settings,
        policy_engine=policy_engine,
        recovery=RecoveryManager(),
        breakers=CircuitBreakerRegistry(failure_threshold=5, cooldown_seconds=60),
        retry_policies=fast_retry_policies,
        allowed_mount_roots=[tmp_path],
    )


# =============================================================================
# CONFIGURATIONS AND CODEBASES
# =============================================================================


@pytest.fixture
def security_config() -> SecurityConfiguration:
    return SecurityConfiguration(
        network_isolation=True,
        resource_limits=ResourceLimitSpec(cpu="0.5", memory="512m", disk_space="2g"),
    )


@pytest.fixture
def nodejs_config() -> AnalysisConfiguration:
    return AnalysisConfiguration(codebase_type="nodejs")


@pytest.fixture
def nodejs_codebase(tmp_path: Path) -> Path:
    """A small, clean Node.js project."""
    project = tmp_path / "project"
    (project / "src").mkdir(parents=True)
    (project / "package.json").write_text(
        '{"name": "fixture", "version": "1.0.0", "scripts": {"test": "jest"}}\n'
    )
    (project / "src" / "index.js").write_text(
        "const add = (a, b) => a + b;\nmodule.exports = { add };\n"
    )
    return project

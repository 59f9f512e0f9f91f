"""Unit tests for the security policy engine."""

import pytest

from secure_assessment.exceptions import AssessmentError, ErrorCode
from secure_assessment.models import FilesystemAccess, ResourceLimitSpec, SecurityConfiguration
from secure_assessment.sandbox.runtime import ContainerSpec, ExecResult, HostConstraints
from secure_assessment.sandbox.security import (
    MAX_ALLOWED_HOSTS,
    HostCapacity,
    NetworkMode,
    SecurityPolicyEngine,
)


def _limits(cpu="1.0", memory="512m", disk_space="1g"):
    return ResourceLimitSpec(cpu=cpu, memory=memory, disk_space=disk_space)


class TestValidateAllowedHosts:
    def test_normalises(self, policy_engine):
        hosts = policy_engine.validate_allowed_hosts(["Registry.NPMJS.org.", "*.github.com", "140.82.112.3"])

        assert hosts == ["registry.npmjs.org", "*.github.com", "140.82.112.3"]

    @pytest.mark.parametrize(
        "host",
        ["host", "localhost", "metadata.google.internal", "127.0.0.1", "::1", "169.254.169.254", "0.0.0.0"],
    )
    def test_sensitive_targets_rejected(self, policy_engine, host):
        with pytest.raises(AssessmentError) as exc_info:
            policy_engine.validate_allowed_hosts([host])

        assert exc_info.value.code is ErrorCode.SECURITY_VIOLATION_NETWORK

    @pytest.mark.parametrize("host", ["bad host", "-leading.example", "under_score.example", "a" * 254])
    def test_invalid_hostnames(self, policy_engine, host):
        with pytest.raises(AssessmentError, match="invalid hostname"):
            policy_engine.validate_allowed_hosts([host])

    def test_too_many_hosts(self, policy_engine):
        hosts = [f"h{i}.example.com" for i in range(MAX_ALLOWED_HOSTS + 1)]

        with pytest.raises(AssessmentError) as exc_info:
            policy_engine.validate_allowed_hosts(hosts)

        assert exc_info.value.context["allowed_hosts_count"] == MAX_ALLOWED_HOSTS + 1


class TestBuildNetworkConfig:
    def test_isolated_without_allow_list_has_no_network(self, policy_engine):
        network = policy_engine.build_network_config("env-1", SecurityConfiguration())

        assert network.mode is NetworkMode.NONE
        assert network.runtime_network_mode == "none"

    def test_not_isolated_uses_bridge(self, policy_engine):
        network = policy_engine.build_network_config("env-1", SecurityConfiguration(network_isolation=False))

        assert network.runtime_network_mode == "bridge"

    def test_allow_list_gets_dedicated_network_and_proxy(self, test_settings, host_capacity):
        settings = test_settings.model_copy(update={"egress_proxy_url": "http://proxy:3128"})
        engine = SecurityPolicyEngine(settings, host_capacity=host_capacity)
        config = SecurityConfiguration(allowed_network_access=("registry.npmjs.org",))

        network = engine.build_network_config("env-1", config)

        assert network.mode is NetworkMode.RESTRICTED
        assert network.runtime_network_mode == "restricted-env-1"
        assert network.proxy_env["HTTPS_PROXY"] == "http://proxy:3128"
        assert network.proxy_env["ASSESSMENT_ALLOWED_HOSTS"] == "registry.npmjs.org"

    def test_allow_list_without_proxy_has_no_proxy_env(self, policy_engine):
        config = SecurityConfiguration(allowed_network_access=("registry.npmjs.org",))

        network = policy_engine.build_network_config("env-1", config)

        assert network.mode is NetworkMode.RESTRICTED
        assert network.proxy_env == {}

    async def test_provision_network_only_for_restricted(self, policy_engine, fake_runtime):
        restricted = policy_engine.build_network_config(
            "env-1", SecurityConfiguration(allowed_network_access=("example.com",))
        )
        isolated = policy_engine.build_network_config("env-2", SecurityConfiguration())

        await policy_engine.provision_network(fake_runtime, restricted)
        await policy_engine.provision_network(fake_runtime, isolated)

        assert fake_runtime.networks == {"restricted-env-1"}
        assert fake_runtime.calls_to("create_network") == [("restricted-env-1", True)]


class TestTranslateResourceLimits:
    def test_half_core_half_gig(self, policy_engine):
        quota = policy_engine.translate_resource_limits(_limits(cpu="0.5", memory="512m", disk_space="2g"))

        assert quota.memory_bytes == 512 * 1024**2
        assert quota.cpus == 0.5
        assert quota.cpu_quota == 50000
        assert quota.cpu_period == 100000
        assert quota.disk_bytes == 2 * 1024**3
        assert not quota.degraded

    def test_below_minimum_is_configuration_error(self, policy_engine):
        with pytest.raises(AssessmentError) as exc_info:
            policy_engine.translate_resource_limits(_limits(memory="16m"))

        assert exc_info.value.code is ErrorCode.CONFIGURATION_ERROR

    def test_above_maximum_is_limit_exceeded(self, policy_engine):
        with pytest.raises(AssessmentError) as exc_info:
            policy_engine.translate_resource_limits(_limits(memory="16g"))

        assert exc_info.value.code is ErrorCode.RESOURCE_LIMIT_EXCEEDED

    def test_cpu_bounds(self, policy_engine):
        with pytest.raises(AssessmentError) as low:
            policy_engine.translate_resource_limits(_limits(cpu="0.05"))
        with pytest.raises(AssessmentError) as high:
            policy_engine.translate_resource_limits(_limits(cpu="8"))

        assert low.value.code is ErrorCode.CONFIGURATION_ERROR
        assert high.value.code is ErrorCode.RESOURCE_LIMIT_EXCEEDED

    def test_degraded_to_host_share(self, test_settings):
        engine = SecurityPolicyEngine(
            test_settings, host_capacity=HostCapacity(memory_bytes=1024**3, cpus=2.0)
        )

        quota = engine.translate_resource_limits(_limits(cpu="4", memory="2g"))

        assert quota.degraded
        assert quota.memory_bytes == int(1024**3 * 0.8)
        assert quota.cpus == pytest.approx(1.6)
        assert len(quota.notes) == 2

    def test_reduce_halves_request(self, policy_engine):
        quota = policy_engine.translate_resource_limits(_limits(cpu="1.0", memory="512m", disk_space="1g"), reduce=True)

        assert quota.memory_bytes == 256 * 1024**2
        assert quota.cpus == 0.5
        assert quota.disk_bytes == 512 * 1024**2
        assert quota.degraded

    def test_reduce_respects_minimums(self, policy_engine):
        quota = policy_engine.translate_resource_limits(_limits(cpu="0.1", memory="64m"), reduce=True)

        assert quota.memory_bytes == 64 * 1024**2
        assert quota.cpus == 0.1

    def test_unknown_host_capacity_never_degrades(self, test_settings):
        engine = SecurityPolicyEngine(test_settings, host_capacity=HostCapacity())

        assert not engine.translate_resource_limits(_limits(cpu="4", memory="8g")).degraded


class TestFilesystemAccess:
    def test_plan(self, policy_engine):
        plan = policy_engine.plan_filesystem_access(FilesystemAccess())

        assert plan.read_only == ["/code"]
        assert plan.writable == ["/tmp", "/output"]
        assert ["mkdir", "-p", "/output"] in plan.commands
        assert ["chmod", "-R", "a-w", "/code"] in plan.commands
        assert ["chmod", "-R", "a-w", "/etc"] in plan.commands

    def test_overlap_rejected(self, policy_engine):
        access = FilesystemAccess(read_only_mounts=("/data",), writable_mounts=("/data",))

        with pytest.raises(AssessmentError) as exc_info:
            policy_engine.plan_filesystem_access(access)

        assert exc_info.value.code is ErrorCode.CONFIGURATION_ERROR
        assert exc_info.value.context["paths"] == ["/data"]

    def test_relative_mount_rejected(self, policy_engine):
        with pytest.raises(AssessmentError, match="must be absolute"):
            policy_engine.plan_filesystem_access(FilesystemAccess(writable_mounts=("tmp",)))

    async def test_apply_reports_failures_without_raising(self, policy_engine, fake_runtime):
        handle = await fake_runtime.create(_spec())
        fake_runtime.exec_handler = lambda h, argv: ExecResult(exit_code=1) if "/etc" in argv else None

        failures = await policy_engine.apply_filesystem_access(fake_runtime, handle, FilesystemAccess())

        assert failures == ["chmod -R a-w /etc: exit 1"]


class TestValidateSecurityConfig:
    def test_returns_quota(self, policy_engine, security_config):
        quota = policy_engine.validate_security_config(security_config)

        assert quota.cpu_quota == 50000

    def test_checks_allow_list(self, policy_engine):
        config = SecurityConfiguration(allowed_network_access=("localhost",))

        with pytest.raises(AssessmentError) as exc_info:
            policy_engine.validate_security_config(config)

        assert exc_info.value.is_security_violation


class TestMonitoring:
    async def test_allowed_egress_recorded(self, policy_engine):
        config = SecurityConfiguration(allowed_network_access=("*.npmjs.org",))
        policy_engine.enable_monitoring("env-1", config)

        event = await policy_engine.record_activity("env-1", "egress", "registry.npmjs.org")

        assert event.allowed
        assert policy_engine.alerter.alerts("env-1") == []
        assert policy_engine.get_activity_log("env-1") == [event]

    async def test_disallowed_egress_raises_alert(self, policy_engine):
        handled = []
        policy_engine.alerter.register_handler(lambda alert, error: handled.append(error.code))
        policy_engine.enable_monitoring("env-1", SecurityConfiguration())

        event = await policy_engine.record_activity("env-1", "egress", "evil.example.com")

        assert not event.allowed
        assert handled == [ErrorCode.SECURITY_VIOLATION_NETWORK]
        alert = policy_engine.alerter.alerts("env-1")[0]
        assert alert.source == "monitor"
        assert alert.context["target"] == "evil.example.com"

    async def test_privilege_action_always_violation(self, policy_engine):
        policy_engine.enable_monitoring("env-1", SecurityConfiguration(network_isolation=False))

        egress = await policy_engine.record_activity("env-1", "egress", "anything.example.com")
        privilege = await policy_engine.record_activity("env-1", "privilege", "setuid", "/usr/bin/su")

        assert egress.allowed
        assert not privilege.allowed
        assert policy_engine.alerter.alerts("env-1")[0].code == "SECURITY_VIOLATION_PRIVILEGE_ESCALATION"

    async def test_unmonitored_environment_ignored(self, policy_engine):
        assert await policy_engine.record_activity("env-9", "egress", "x.example.com") is None

    async def test_disable_keeps_log_until_release(self, policy_engine):
        policy_engine.enable_monitoring("env-1", SecurityConfiguration(network_isolation=False))
        await policy_engine.record_activity("env-1", "egress", "x.example.com")

        policy_engine.disable_monitoring("env-1")
        assert len(policy_engine.get_activity_log("env-1")) == 1
        assert await policy_engine.record_activity("env-1", "egress", "y.example.com") is None

        policy_engine.release("env-1")
        assert policy_engine.get_activity_log("env-1") == []

    async def test_failing_handler_does_not_stop_others(self, policy_engine):
        seen = []

        def broken(alert, error):
            raise RuntimeError("handler bug")

        async def recorder(alert, error):
            seen.append(alert.environment_id)

        policy_engine.alerter.register_handler(broken)
        policy_engine.alerter.register_handler(recorder)
        policy_engine.enable_monitoring("env-1", SecurityConfiguration())

        await policy_engine.record_activity("env-1", "privilege", "mount")

        assert seen == ["env-1"]


def _spec():
    return ContainerSpec(
        name="fs-test",
        image="node:20-alpine",
        host=HostConstraints(memory_bytes=512 * 1024**2, cpu_quota=50000),
    )

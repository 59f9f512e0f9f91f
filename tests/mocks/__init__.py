"""In-memory container runtime and recording tool adapters.

Lets lifecycle and workflow tests run without podman/docker and without
any real analysis tools installed.
"""

import asyncio
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from secure_assessment.exceptions import analysis_error
from secure_assessment.models import ResultFragment
from secure_assessment.sandbox.runtime import (
    ContainerSpec,
    ContainerState,
    ExecResult,
    RuntimeCommandError,
)
from secure_assessment.workflows.adapters import ToolRegistry

# =============================================================================
# CONTAINER RUNTIME
# =============================================================================


@dataclass
class FakeContainer:
    handle: str
    spec: ContainerSpec
    running: bool = False
    copies: list[tuple[str, str]] = field(default_factory=list)


class FakeContainerRuntime:
    """ContainerRuntime that keeps containers in a dict.

    Failures are queued per operation name with ``fail()``; exec output can
    be scripted with ``exec_handler``.
    """

    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.networks: set[str] = set()
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.inspect_failures: set[str] = set()
        self.exec_handler: Callable[[str, list[str]], ExecResult | None] | None = None
        self.repo_digests: dict[str, list[str]] = {}
        self._failures: dict[str, list[BaseException]] = defaultdict(list)
        self._counter = 0

    def fail(self, operation: str, error: BaseException | None = None, times: int = 1) -> None:
        error = error or RuntimeCommandError(f"{operation} failed: temporary failure")
        self._failures[operation].extend([error] * times)

    def calls_to(self, operation: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == operation]

    def _enter(self, operation: str, *args: Any) -> None:
        self.calls.append((operation, args))
        if self._failures[operation]:
            raise self._failures[operation].pop(0)

    def _get(self, handle: str) -> FakeContainer:
        container = self.containers.get(handle)
        if container is None:
            raise RuntimeCommandError(f"no such container: {handle}")
        return container

    async def create(self, spec: ContainerSpec) -> str:
        self._enter("create", spec)
        self._counter += 1
        handle = f"fake-{self._counter}"
        self.containers[handle] = FakeContainer(handle=handle, spec=spec)
        return handle

    async def start(self, handle: str) -> None:
        self._enter("start", handle)
        self._get(handle).running = True

    async def stop(self, handle: str, grace_seconds: int) -> None:
        self._enter("stop", handle, grace_seconds)
        self._get(handle).running = False

    async def kill(self, handle: str) -> None:
        self._enter("kill", handle)
        self._get(handle).running = False

    async def remove(self, handle: str, force: bool = False) -> None:
        self._enter("remove", handle, force)
        container = self._get(handle)
        if container.running and not force:
            raise RuntimeCommandError(f"container {handle} is running")
        del self.containers[handle]

    async def inspect(self, handle: str) -> ContainerState:
        self._enter("inspect", handle)
        if handle in self.inspect_failures:
            raise RuntimeCommandError(f"inspect {handle} failed: connection reset")
        container = self._get(handle)
        return ContainerState(
            handle=handle,
            name=container.spec.name,
            status="running" if container.running else "exited",
            running=container.running,
            labels=container.spec.labels,
        )

    async def exec(
        self,
        handle: str,
        argv: list[str],
        env: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecResult:
        self._enter("exec", handle, list(argv))
        self._get(handle)
        if self.exec_handler is not None:
            result = self.exec_handler(handle, list(argv))
            if result is not None:
                return result
        return ExecResult(exit_code=0)

    async def copy_in(self, handle: str, host_path: str, container_path: str) -> None:
        self._enter("copy_in", handle, host_path, container_path)
        self._get(handle).copies.append((host_path, container_path))

    async def create_network(self, name: str, internal: bool = True) -> None:
        self._enter("create_network", name, internal)
        self.networks.add(name)

    async def remove_network(self, name: str) -> None:
        self._enter("remove_network", name)
        if name not in self.networks:
            raise RuntimeCommandError(f"network {name} not found")
        self.networks.discard(name)

    async def image_digests(self, image: str) -> list[str]:
        self._enter("image_digests", image)
        return list(self.repo_digests.get(image, []))


# =============================================================================
# TOOL ADAPTERS
# =============================================================================

DEFAULT_TOOL_NAMES = (
    "setup",
    "npm-audit",
    "eslint",
    "semgrep",
    "slither",
    "mythx",
    "solidity-compiler",
    "gas-analyzer",
    "test-runner",
    "hardhat-test",
)


class RecordingToolAdapter:
    """Adapter returning a fixed fragment, optionally failing first."""

    def __init__(
        self,
        name: str,
        fragment: ResultFragment | None = None,
        *,
        failures: int = 0,
        error: BaseException | None = None,
        delay: float = 0.0,
        log: list[str] | None = None,
    ) -> None:
        self.name = name
        self.fragment = fragment or ResultFragment()
        self.failures = failures
        self.error = error
        self.delay = delay
        self.log = log if log is not None else []
        self.calls: list[dict[str, Any]] = []

    async def execute(self, config: dict[str, Any], context: Any) -> ResultFragment:
        self.calls.append(dict(config))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise self.error or analysis_error(f"{self.name} failed", tool=self.name)
        self.log.append(self.name)
        return self.fragment


def finding(tool: str, title: str, severity: str = "medium") -> dict[str, Any]:
    return {"id": f"{tool}-{title}", "tool": tool, "title": title, "severity": severity}


def recording_registry(
    overrides: dict[str, RecordingToolAdapter] | None = None,
    log: list[str] | None = None,
) -> tuple[ToolRegistry, dict[str, RecordingToolAdapter]]:
    """Registry with a recording adapter for every predefined tool."""
    adapters = {name: RecordingToolAdapter(name, log=log) for name in DEFAULT_TOOL_NAMES}
    adapters.update(overrides or {})
    return ToolRegistry(list(adapters.values())), adapters

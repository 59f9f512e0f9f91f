"""Container runtime boundary.

``ContainerRuntime`` is the capability the lifecycle manager consumes.
``CliContainerRuntime`` implements it over the podman (or docker) CLI using
asyncio subprocesses; tests substitute an in-memory runtime.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, Field

from secure_assessment.settings import get_settings

logger = logging.getLogger(__name__)

KEEPALIVE_COMMAND = ["/bin/sh", "-c", "tail -f /dev/null"]

# podman/docker exit code for errors in the runtime itself rather than the command
RUNTIME_FAILURE_EXIT_CODE = 125

_NOT_FOUND_MARKERS = ("no such container", "no such object", "no container with", "not found")


class HostConstraints(BaseModel):
    """Isolation and resource constraints applied at container creation."""

    memory_bytes: int = Field(..., gt=0)
    cpu_quota: int = Field(..., gt=0, description="CFS quota in microseconds")
    cpu_period: int = Field(default=100000, gt=0, description="CFS period in microseconds")
    network_mode: str = Field(default="none", description="none, bridge or a network name")
    cap_drop: list[str] = Field(default_factory=lambda: ["ALL"])
    cap_add: list[str] = Field(default_factory=list)
    privileged: bool = False
    security_opt: list[str] = Field(default_factory=lambda: ["no-new-privileges:true"])
    pids_limit: int = Field(default=256, ge=8)
    tmpfs: dict[str, str] = Field(default_factory=dict, description="Container path -> mount options")

    def to_cli_args(self) -> list[str]:
        """Convert constraints to podman/docker ``create`` arguments."""
        args = [
            "--memory",
            str(self.memory_bytes),
            "--cpu-period",
            str(self.cpu_period),
            "--cpu-quota",
            str(self.cpu_quota),
            "--pids-limit",
            str(self.pids_limit),
            f"--network={self.network_mode}",
        ]
        for cap in self.cap_drop:
            args.extend(["--cap-drop", cap])
        for cap in self.cap_add:
            args.extend(["--cap-add", cap])
        if self.privileged:
            args.append("--privileged")
        for opt in self.security_opt:
            args.extend(["--security-opt", opt])
        for target, options in self.tmpfs.items():
            args.extend(["--tmpfs", f"{target}:{options}" if options else target])
        return args


class ContainerSpec(BaseModel):
    """Everything needed to create one assessment container."""

    name: str
    image: str
    workdir: str = "/workspace"
    env: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    command: list[str] = Field(default_factory=lambda: list(KEEPALIVE_COMMAND))
    host: HostConstraints

    def to_cli_args(self) -> list[str]:
        args = ["--name", self.name, "--workdir", self.workdir]
        for key, value in self.env.items():
            args.extend(["--env", f"{key}={value}"])
        for key, value in self.labels.items():
            args.extend(["--label", f"{key}={value}"])
        args.extend(self.host.to_cli_args())
        args.append(self.image)
        args.extend(self.command)
        return args


class ContainerState(BaseModel):
    """Inspected state of a container."""

    handle: str
    name: str = ""
    status: str = Field(..., description="created, running, exited...")
    running: bool = False
    exit_code: int | None = None
    labels: dict[str, str] = Field(default_factory=dict)


class ExecResult(BaseModel):
    """Result of a command executed inside a container."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RuntimeCommandError(Exception):
    """A runtime call failed."""

    def __init__(
        self,
        message: str,
        *,
        command: list[str] | None = None,
        returncode: int | None = None,
        stderr: str = "",
        timed_out: bool = False,
    ):
        self.command = command or []
        self.returncode = returncode
        self.stderr = stderr
        self.timed_out = timed_out
        super().__init__(message)

    @property
    def not_found(self) -> bool:
        """True when the target container or network does not exist."""
        text = f"{self} {self.stderr}".lower()
        return any(marker in text for marker in _NOT_FOUND_MARKERS)


@runtime_checkable
class ContainerRuntime(Protocol):
    """Container runtime capability consumed by the lifecycle manager."""

    async def create(self, spec: ContainerSpec) -> str: ...

    async def start(self, handle: str) -> None: ...

    async def stop(self, handle: str, grace_seconds: int) -> None: ...

    async def kill(self, handle: str) -> None: ...

    async def remove(self, handle: str, force: bool = False) -> None: ...

    async def inspect(self, handle: str) -> ContainerState: ...

    async def exec(
        self,
        handle: str,
        argv: list[str],
        env: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecResult: ...

    async def copy_in(self, handle: str, host_path: str, container_path: str) -> None: ...

    async def create_network(self, name: str, internal: bool = True) -> None: ...

    async def remove_network(self, name: str) -> None: ...

    async def image_digests(self, image: str) -> list[str]: ...


class CliContainerRuntime:
    """ContainerRuntime over the podman/docker command line.

    Usage:
        runtime = CliContainerRuntime()
        handle = await runtime.create(spec)
        await runtime.start(handle)
    """

    def __init__(
        self,
        runtime_path: str | None = None,
        command_timeout: float | None = None,
    ) -> None:
        """Initialize the CLI runtime.

        Args:
            runtime_path: podman/docker executable (default: settings.container_runtime_path)
            command_timeout: Upper bound for a single CLI call in seconds
        """
        settings = get_settings()
        self.runtime_path = runtime_path or settings.container_runtime_path
        self.command_timeout = command_timeout or settings.runtime_command_timeout_seconds

    async def _run(self, *args: str, timeout: float | None = None) -> tuple[int, str, str]:
        cmd = [self.runtime_path, *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise RuntimeCommandError(
                f"Container runtime not found at '{self.runtime_path}'",
                command=cmd,
                returncode=127,
            ) from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(),
                timeout=timeout or self.command_timeout,
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise RuntimeCommandError(
                f"{args[0]} timed out after {timeout or self.command_timeout}s",
                command=cmd,
                timed_out=True,
            ) from e

        returncode = process.returncode or 0
        return (
            returncode,
            stdout_bytes.decode("utf-8", errors="replace"),
            stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def _check(self, *args: str) -> str:
        returncode, stdout, stderr = await self._run(*args)
        if returncode != 0:
            raise RuntimeCommandError(
                f"{self.runtime_path} {args[0]} failed: {stderr.strip() or stdout.strip()}",
                command=[self.runtime_path, *args],
                returncode=returncode,
                stderr=stderr,
            )
        return stdout

    async def create(self, spec: ContainerSpec) -> str:
        stdout = await self._check("create", *spec.to_cli_args())
        return stdout.strip().splitlines()[-1] if stdout.strip() else spec.name

    async def start(self, handle: str) -> None:
        await self._check("start", handle)

    async def stop(self, handle: str, grace_seconds: int) -> None:
        await self._check("stop", "-t", str(grace_seconds), handle)

    async def kill(self, handle: str) -> None:
        await self._check("kill", handle)

    async def remove(self, handle: str, force: bool = False) -> None:
        args = ["rm"]
        if force:
            args.append("-f")
        await self._check(*args, handle)

    async def inspect(self, handle: str) -> ContainerState:
        stdout = await self._check("container", "inspect", handle)
        try:
            payload: Any = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise RuntimeCommandError(f"Unreadable inspect output for {handle}") from e
        data = payload[0] if isinstance(payload, list) and payload else payload
        state = data.get("State", {}) if isinstance(data, dict) else {}
        config = data.get("Config", {}) if isinstance(data, dict) else {}
        return ContainerState(
            handle=data.get("Id", handle),
            name=str(data.get("Name", "")).lstrip("/"),
            status=str(state.get("Status", "unknown")).lower(),
            running=bool(state.get("Running", False)),
            exit_code=state.get("ExitCode"),
            labels=config.get("Labels") or {},
        )

    async def exec(
        self,
        handle: str,
        argv: list[str],
        env: dict[str, str] | None = None,
        timeout_seconds: float | None = None,
    ) -> ExecResult:
        args = ["exec"]
        for key, value in (env or {}).items():
            args.extend(["--env", f"{key}={value}"])
        args.append(handle)
        args.extend(argv)
        returncode, stdout, stderr = await self._run(*args, timeout=timeout_seconds)
        if returncode == RUNTIME_FAILURE_EXIT_CODE:
            raise RuntimeCommandError(
                f"exec in {handle} failed: {stderr.strip()}",
                command=[self.runtime_path, *args],
                returncode=returncode,
                stderr=stderr,
            )
        return ExecResult(exit_code=returncode, stdout=stdout, stderr=stderr)

    async def copy_in(self, handle: str, host_path: str, container_path: str) -> None:
        source = Path(host_path)
        # Trailing "/." copies directory contents rather than the directory itself
        src = f"{source}/." if source.is_dir() else str(source)
        await self._check("cp", src, f"{handle}:{container_path}")

    async def create_network(self, name: str, internal: bool = True) -> None:
        args = ["network", "create"]
        if internal:
            args.append("--internal")
        await self._check(*args, name)

    async def remove_network(self, name: str) -> None:
        await self._check("network", "rm", name)

    async def image_digests(self, image: str) -> list[str]:
        """Repo digests of ``image``, pulling it first when it is not present locally."""
        inspect = ("image", "inspect", "--format", "{{json .RepoDigests}}", image)
        returncode, stdout, _ = await self._run(*inspect)
        if returncode != 0:
            logger.info("Pulling %s to verify its digest", image)
            await self._check("pull", image)
            stdout = await self._check(*inspect)
        try:
            digests = json.loads(stdout.strip() or "[]")
        except json.JSONDecodeError as e:
            raise RuntimeCommandError(f"Unreadable digest output for {image}") from e
        return [str(entry) for entry in digests or []]

    async def check_runtime(self) -> bool:
        """Check whether the runtime binary is usable."""
        try:
            returncode, _, _ = await self._run("version", timeout=10)
        except RuntimeCommandError as e:
            logger.warning("Container runtime unavailable: %s", e)
            return False
        return returncode == 0

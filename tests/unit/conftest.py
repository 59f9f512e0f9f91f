"""Unit-test conftest: container runtime isolation safety net.

Provides an ``autouse`` fixture that prevents any unit test from spawning
a real podman/docker process. Tests exercising ``CliContainerRuntime``
patch ``asyncio.create_subprocess_exec`` themselves; everything else uses
the in-memory runtime from ``tests.mocks``.

Tests that intentionally need a real runtime live in ``tests/integration/``
and are unaffected.
"""

import pytest


@pytest.fixture(autouse=True)
def _guard_runtime_processes(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _guarded_create_subprocess_exec(*args, **kwargs):
        raise RuntimeError(
            "Unit test attempted to spawn a real process "
            f"({' '.join(str(a) for a in args[:3])}). "
            "Use FakeContainerRuntime or patch asyncio.create_subprocess_exec."
        )

    monkeypatch.setattr("asyncio.create_subprocess_exec", _guarded_create_subprocess_exec)

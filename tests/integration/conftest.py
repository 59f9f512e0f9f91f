"""Integration-test fixtures."""

import shutil

import pytest


@pytest.fixture
def runtime_binary() -> str:
    """podman or docker on PATH; skips the test when neither is installed."""
    for candidate in ("podman", "docker"):
        path = shutil.which(candidate)
        if path:
            return path
    pytest.skip("No container runtime (podman/docker) available")

"""Package registry and container image policy.

Dependencies and images are the only outside artefacts an assessment pulls
in. Both must come from an allow-listed registry, and images can be pinned
to an expected repo digest.
"""

import json
import logging
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

from secure_assessment.exceptions import configuration_error, external_resource_error, network_violation
from secure_assessment.sandbox.runtime import ContainerRuntime, RuntimeCommandError
from secure_assessment.settings import Settings

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_REGISTRY = "docker.io"
NPMRC_PATH = "/tmp/assessment.npmrc"


def registry_host(location: str) -> str:
    """Lowercased host of a registry URL or bare host name ("" if none)."""
    location = location.strip()
    parsed = urlparse(location if "://" in location else f"//{location}")
    return (parsed.hostname or "").lower()


def image_registry(image: str) -> str:
    """Registry an image reference pulls from; unqualified names use docker.io."""
    first, sep, _ = image.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first.lower()
    return DEFAULT_IMAGE_REGISTRY


def npmrc_registries(text: str) -> list[str]:
    """Registry URLs set by an .npmrc, both ``registry=`` and ``@scope:registry=``."""
    found = []
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith(("#", ";")):
            continue
        key, sep, value = line.partition("=")
        key = key.strip().lower()
        if sep and (key == "registry" or key.endswith(":registry")):
            found.append(value.strip().strip("\"'"))
    return found


def lockfile_hosts(text: str) -> set[str]:
    """Hosts of every remote ``resolved`` URL in a package-lock.json.

    Raises:
        ValueError: the lock file is not JSON
    """
    hosts = set()
    stack = [json.loads(text)]
    while stack:
        node = stack.pop()
        if isinstance(node, dict):
            resolved = node.get("resolved")
            if isinstance(resolved, str) and "://" in resolved:
                hosts.add(registry_host(resolved))
            stack.extend(value for value in node.values() if isinstance(value, (dict, list)))
        elif isinstance(node, list):
            stack.extend(node)
    return hosts


def digest_matches(expected: str, repo_digests: list[str]) -> bool:
    """``expected`` is either a full ``repo@sha256:...`` entry or the bare digest."""
    return any(entry == expected or entry.partition("@")[2] == expected for entry in repo_digests)


class ExternalResourcePolicy(BaseModel):
    """Where packages and images may come from.

    Usage:
        policy = ExternalResourcePolicy.from_settings(settings)
        policy.check_image("node:20-alpine")
        await policy.verify_image(runtime, "node:20-alpine")
    """

    model_config = ConfigDict(frozen=True)

    allowed_registries: tuple[str, ...] = ("registry.npmjs.org", "docker.io", "ghcr.io", "quay.io")
    npm_registry_url: str = "https://registry.npmjs.org/"
    integrity_validation: bool = True
    image_digests: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExternalResourcePolicy":
        """Build the policy from settings.

        Raises:
            AssessmentError: CONFIGURATION_ERROR if the npm registry itself
                is outside the allow-list
        """
        policy = cls(
            allowed_registries=tuple(settings.allowed_registries),
            npm_registry_url=settings.npm_registry_url,
            integrity_validation=settings.integrity_validation,
            image_digests=dict(settings.image_digests),
        )
        if not policy.is_registry_allowed(policy.npm_registry_url):
            raise configuration_error(
                f"npm registry {policy.npm_registry_url} is not in the allowed registries",
                allowed_registries=list(policy.allowed_registries),
            )
        return policy

    def is_registry_allowed(self, location: str) -> bool:
        host = registry_host(location)
        if not host:
            return False
        for allowed in self.allowed_registries:
            allowed = allowed.strip().lower()
            if allowed == "*" or host == allowed or host.endswith("." + allowed):
                return True
        return False

    # =========================================================================
    # IMAGES
    # =========================================================================

    def check_image(self, image: str) -> None:
        """Raises CONFIGURATION_ERROR if ``image`` comes from a registry outside the allow-list."""
        registry = image_registry(image)
        if not self.is_registry_allowed(registry):
            raise configuration_error(
                f"image {image} comes from registry {registry}, which is not allowed",
                image=image,
                registry=registry,
            )

    def expected_digest(self, image: str) -> str | None:
        if not self.integrity_validation:
            return None
        return self.image_digests.get(image)

    async def verify_image(self, runtime: ContainerRuntime, image: str) -> None:
        """Compare a pinned image with its repo digests; no-op when unpinned.

        Raises:
            AssessmentError: CONFIGURATION_ERROR on a digest mismatch,
                EXTERNAL_RESOURCE_ERROR if the image cannot be inspected
        """
        expected = self.expected_digest(image)
        if expected is None:
            return
        try:
            digests = await runtime.image_digests(image)
        except RuntimeCommandError as e:
            raise external_resource_error("image", f"could not inspect {image}: {e}", image=image) from e
        if not digest_matches(expected, digests):
            logger.error("Image %s does not match pinned digest %s (found %s)", image, expected, digests)
            raise configuration_error(
                f"image {image} does not match pinned digest {expected}",
                image=image,
                expected=expected,
                found=digests,
            )
        logger.info("Image %s matches pinned digest", image)

    # =========================================================================
    # NPM
    # =========================================================================

    def npmrc(self) -> str:
        """Locked-down npm configuration written into environments before installs."""
        return "\n".join(
            [
                f"registry={self.npm_registry_url}",
                "ignore-scripts=true",
                "audit-level=moderate",
                "fund=false",
                "update-notifier=false",
                "save=false",
                "",
            ]
        )

    def install_command(self) -> list[str]:
        return [
            "npm",
            "install",
            "--ignore-scripts",
            "--no-audit",
            "--no-fund",
            "--userconfig",
            NPMRC_PATH,
            "--registry",
            self.npm_registry_url,
        ]

    def check_dependency_sources(self, npmrc_text: str = "", lockfile_text: str = "") -> None:
        """Reject project npm configuration that points outside the allow-list.

        Raises:
            AssessmentError: SECURITY_VIOLATION_NETWORK naming the registries
        """
        disallowed = [url for url in npmrc_registries(npmrc_text) if not self.is_registry_allowed(url)]
        if lockfile_text.strip():
            try:
                hosts = lockfile_hosts(lockfile_text)
            except ValueError as e:
                logger.warning("Unreadable package-lock.json, resolved URLs not checked: %s", e)
                hosts = set()
            disallowed.extend(sorted(host for host in hosts if not self.is_registry_allowed(host)))
        if disallowed:
            raise network_violation(
                f"dependencies reference registries outside the allow-list: {', '.join(disallowed[:5])}",
                registries=disallowed,
            )

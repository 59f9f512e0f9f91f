"""Mount-time validation of untrusted source trees.

Validates where a codebase may be mounted from and to, and scans its files
for high-risk textual patterns before anything is copied into an
environment.
"""

import logging
import os
import posixpath
import re
import tempfile
from pathlib import Path

from pydantic import BaseModel, Field

from secure_assessment.exceptions import filesystem_violation, validation_error

logger = logging.getLogger(__name__)


# =============================================================================
# PATTERNS
# =============================================================================

# (name, pattern) pairs; any match rejects the whole tree
MALICIOUS_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("destructive-rm", re.compile(r"rm\s+-rf\s+/")),
    ("curl-pipe-shell", re.compile(r"curl.*\|\s*(?:ba|z)?sh\b")),
    ("wget-pipe-shell", re.compile(r"wget.*\|\s*(?:ba|z)?sh\b")),
    ("eval-call", re.compile(r"\beval\s*\(")),
    ("exec-call", re.compile(r"\bexec\s*\(")),
    ("system-call", re.compile(r"\bsystem\s*\(")),
]

FORBIDDEN_CONTAINER_PATHS: tuple[str, ...] = ("/etc", "/usr", "/bin", "/sbin", "/root")

_SKIPPED_DIRECTORIES = frozenset({".git", ".hg", ".svn"})

_READ_LIMIT_BYTES = 64 * 1024
_OVERLAP_BYTES = 4096


# =============================================================================
# SCAN RESULTS
# =============================================================================


class ScanFinding(BaseModel):
    """One pattern match in a scanned file."""

    path: str = Field(..., description="Path relative to the scanned root")
    line: int
    pattern: str
    excerpt: str = ""


class ScanReport(BaseModel):
    """Outcome of scanning a source tree."""

    root: str
    files_scanned: int = 0
    files_skipped: int = 0
    findings: list[ScanFinding] = Field(default_factory=list)
    escaping_links: list[str] = Field(
        default_factory=list,
        description="Symlinks resolving outside the scanned root",
    )
    unscanned: list[str] = Field(
        default_factory=list,
        description="Files that could not be read or exceed the size cap",
    )

    @property
    def clean(self) -> bool:
        return not self.findings and not self.escaping_links and not self.unscanned


# =============================================================================
# PATH VALIDATION
# =============================================================================


def default_allowed_roots(workspace_root: str | Path) -> list[Path]:
    """Temp dir, designated workspace root and the process working directory."""
    return [Path(tempfile.gettempdir()), Path(workspace_root), Path.cwd()]


def validate_source_path(source_path: str | Path, allowed_roots: list[Path]) -> Path:
    """Resolve ``source_path`` and require it to sit under an allowed root.

    Raises:
        AssessmentError: SECURITY_VIOLATION_FILESYSTEM outside the roots,
            VALIDATION_ERROR if the path does not exist
    """
    resolved = Path(source_path).resolve()
    roots = [Path(root).resolve() for root in allowed_roots]
    if not any(resolved == root or resolved.is_relative_to(root) for root in roots):
        raise filesystem_violation(
            f"source path {resolved} is outside the allowed mount roots",
            source_path=str(source_path),
            allowed_roots=[str(root) for root in roots],
        )
    if not resolved.exists():
        raise validation_error("source_path", f"{resolved} does not exist")
    return resolved


def validate_container_path(container_path: str) -> str:
    """Normalise ``container_path`` and reject sensitive system locations."""
    if not container_path or not container_path.startswith("/"):
        raise validation_error("container_path", f"{container_path!r} must be an absolute path")
    normalized = posixpath.normpath(container_path)
    # normpath keeps a leading "//"
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    if normalized == "/":
        raise filesystem_violation("cannot mount over the container root", container_path=container_path)
    for forbidden in FORBIDDEN_CONTAINER_PATHS:
        if normalized == forbidden or normalized.startswith(forbidden + "/"):
            raise filesystem_violation(
                f"container path {normalized} targets a protected system directory",
                container_path=container_path,
            )
    return normalized


# =============================================================================
# SCANNING
# =============================================================================


def _scan_file(
    path: Path,
    relative: str,
    patterns: list[tuple[str, re.Pattern[str]]],
) -> list[ScanFinding]:
    """Scan ``path`` line by line from an open handle.

    Lines longer than the read limit are scanned in pieces that overlap by
    ``_OVERLAP_BYTES``; a pattern is reported once per line.
    """
    findings = []
    number = 1
    carry = b""
    seen: set[str] = set()
    with path.open("rb") as handle:
        while True:
            chunk = handle.readline(_READ_LIMIT_BYTES)
            if not chunk:
                break
            window = carry + chunk
            text = window.decode("utf-8", errors="replace")
            for name, pattern in patterns:
                if name not in seen and pattern.search(text):
                    seen.add(name)
                    findings.append(
                        ScanFinding(path=relative, line=number, pattern=name, excerpt=text.strip()[:200])
                    )
            if chunk.endswith(b"\n"):
                number += 1
                carry = b""
                seen = set()
            else:
                carry = window[-_OVERLAP_BYTES:]
    return findings


def scan_source(
    root: Path,
    patterns: list[tuple[str, re.Pattern[str]]] | None = None,
    max_file_bytes: int | None = None,
) -> ScanReport:
    """Recursively scan a file or directory for malicious patterns.

    Symlinks are never followed; links resolving outside ``root`` are
    reported. Version-control metadata is skipped. Files that cannot be
    read, or that exceed ``max_file_bytes`` when a cap is given, are listed
    as unscanned and leave the report unclean.
    """
    patterns = patterns if patterns is not None else MALICIOUS_PATTERNS
    root = Path(root).resolve()
    report = ScanReport(root=str(root))

    if root.is_file():
        candidates = [(root, root.name)]
    else:
        candidates = []
        for dirpath, dirnames, filenames in os.walk(root, followlinks=False):
            current = Path(dirpath)
            kept = []
            for name in sorted(dirnames):
                if name in _SKIPPED_DIRECTORIES:
                    continue
                if (current / name).is_symlink():
                    filenames.append(name)
                    continue
                kept.append(name)
            dirnames[:] = kept
            for name in sorted(filenames):
                path = current / name
                candidates.append((path, path.relative_to(root).as_posix()))

    for path, relative in candidates:
        if path.is_symlink():
            target = path.resolve()
            if not (target == root or target.is_relative_to(root)):
                logger.warning("Symlink escapes scanned tree: %s -> %s", relative, target)
                report.escaping_links.append(relative)
            report.files_skipped += 1
            continue
        try:
            if max_file_bytes is not None and path.stat().st_size > max_file_bytes:
                logger.warning("File exceeds scan limit of %d bytes: %s", max_file_bytes, relative)
                report.unscanned.append(relative)
                continue
            report.findings.extend(_scan_file(path, relative, patterns))
        except OSError as e:
            logger.warning("Could not scan %s: %s", relative, e)
            report.unscanned.append(relative)
            continue
        report.files_scanned += 1

    if report.findings:
        logger.warning(
            "Scan of %s found %d suspicious pattern(s) in %d file(s)",
            root,
            len(report.findings),
            len({finding.path for finding in report.findings}),
        )
    return report

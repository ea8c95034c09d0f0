"""Archive and checksum helper tests."""
from __future__ import annotations

import gzip
import io
import subprocess
import tarfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pytest

from veriscopectl.archive import (
    checksum_path_for,
    compute_checksum,
    create_archive,
    extract_archive,
    gunzip_file,
    gzip_file,
    list_archive,
    read_checksum_file,
    verify_gzip,
    write_checksum_file,
)
from veriscopectl.errors import CommandError, IntegrityError


class RecordingRunner:
    """Capture commands instead of running tar."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[list[str]] = []

    def run(self, args: Sequence[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append([str(arg) for arg in args])
        if self.fail:
            raise CommandError("tar failed (exit 2)", returncode=2)
        return subprocess.CompletedProcess(list(args), 0, "", "")


def _tarball(path: Path, members: dict[str, bytes]) -> Path:
    with tarfile.open(path, "w:gz") as handle:
        for name, data in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            handle.addfile(info, io.BytesIO(data))
    return path


def test_create_archive_invokes_tar(tmp_path: Path) -> None:
    """Members are archived relative to the base directory."""
    runner = RecordingRunner()
    archive = tmp_path / "config.tar.gz"

    create_archive(tmp_path, [".env", "veriscope_ta_node/.env"], archive, runner=runner)  # type: ignore[arg-type]

    command = runner.calls[0]
    assert command[1:] == ["-czf", str(archive), "-C", str(tmp_path), ".env", "veriscope_ta_node/.env"]


def test_create_archive_removes_partial_output(tmp_path: Path) -> None:
    """A failing tar leaves no half-written archive."""
    archive = tmp_path / "config.tar.gz"
    archive.write_bytes(b"partial")

    with pytest.raises(CommandError):
        create_archive(tmp_path, [".env"], archive, runner=RecordingRunner(fail=True))  # type: ignore[arg-type]
    assert not archive.exists()


def test_list_archive_rejects_garbage(tmp_path: Path) -> None:
    """Unreadable archives are integrity errors."""
    bogus = tmp_path / "bogus.tar.gz"
    bogus.write_bytes(b"not a tarball")

    with pytest.raises(IntegrityError, match="not a valid tar.gz"):
        list_archive(bogus)


def test_extract_archive_checks_members(tmp_path: Path) -> None:
    """Only expected, relative members are extracted."""
    archive = _tarball(tmp_path / "ok.tar.gz", {".env": b"A=1\n", "veriscope_ta_node/.env": b"B=2\n"})
    runner = RecordingRunner()

    members = extract_archive(
        archive,
        tmp_path / "restore",
        allowed=[".env", "veriscope_ta_node/.env"],
        runner=runner,  # type: ignore[arg-type]
    )

    assert members == [".env", "veriscope_ta_node/.env"]
    assert runner.calls[0][1:] == ["-xzf", str(archive), "-C", str(tmp_path / "restore")]


@pytest.mark.parametrize(
    ("name", "message"),
    [
        ("../etc/passwd", "unsafe path"),
        ("/etc/passwd", "unsafe path"),
        ("notes.txt", "unexpected file"),
    ],
)
def test_extract_archive_rejects_bad_members(tmp_path: Path, name: str, message: str) -> None:
    """Traversal, absolute and unlisted members stop the restore before tar runs."""
    archive = _tarball(tmp_path / "bad.tar.gz", {name: b"x"})
    runner = RecordingRunner()

    with pytest.raises(IntegrityError, match=message):
        extract_archive(archive, tmp_path, allowed=[".env"], runner=runner)  # type: ignore[arg-type]
    assert runner.calls == []


def test_gzip_and_gunzip(tmp_path: Path) -> None:
    """Compression removes the source unless asked to keep it."""
    source = tmp_path / "dump.sql"
    source.write_text("CREATE TABLE t();\n")
    packed = tmp_path / "dump.sql.gz"

    gzip_file(source, packed)

    assert not source.exists()
    assert packed.stat().st_mode & 0o777 == 0o640
    verify_gzip(packed)

    restored = tmp_path / "restored.sql"
    gunzip_file(packed, restored)
    assert restored.read_text() == "CREATE TABLE t();\n"


def test_truncated_gzip_is_detected(tmp_path: Path) -> None:
    """A truncated stream fails verification and decompression."""
    packed = tmp_path / "dump.sql.gz"
    packed.write_bytes(gzip.compress(b"x" * 4096)[:20])

    with pytest.raises(IntegrityError, match="corrupted"):
        verify_gzip(packed)
    with pytest.raises(IntegrityError):
        gunzip_file(packed, tmp_path / "out.sql")
    assert not (tmp_path / "out.sql").exists()


def test_checksum_sidecar(tmp_path: Path) -> None:
    """The sidecar uses the sha256sum layout."""
    artifact = tmp_path / "redis-backup.rdb.gz"
    artifact.write_bytes(b"payload")
    assert read_checksum_file(artifact) is None

    digest = compute_checksum(artifact)
    sidecar = write_checksum_file(artifact, digest)

    assert sidecar == checksum_path_for(artifact)
    assert sidecar.name == "redis-backup.rdb.gz.sha256"
    assert sidecar.read_text() == f"{digest}  redis-backup.rdb.gz\n"
    assert read_checksum_file(artifact) == digest

"""Archive, compression and checksum helpers used by backups."""
from __future__ import annotations

import gzip
import hashlib
import os
import shutil
import tarfile
import zlib
from collections.abc import Sequence
from pathlib import Path, PurePosixPath

from .errors import CommandError, IntegrityError
from .providers.process import ProcessRunner

ARCHIVE_MODE = 0o640
_CHUNK = 1024 * 1024


def create_archive(
    base_dir: Path,
    members: Sequence[str],
    archive_path: Path,
    *,
    runner: ProcessRunner | None = None,
) -> None:
    """Create a gzip tarball at *archive_path* holding *members* relative to *base_dir*."""
    runner = runner or ProcessRunner()
    tar_bin = shutil.which("tar") or "tar"
    try:
        runner.run(
            [tar_bin, "-czf", str(archive_path), "-C", str(base_dir), *members],
            error_prefix="tar",
        )
    except CommandError:
        archive_path.unlink(missing_ok=True)
        raise
    _restrict(archive_path)


def list_archive(archive_path: Path) -> list[str]:
    """Return member names; raises :class:`IntegrityError` for unreadable archives."""
    try:
        with tarfile.open(archive_path, "r:gz") as handle:
            return handle.getnames()
    except (tarfile.TarError, OSError, EOFError, zlib.error) as exc:
        raise IntegrityError(f"{archive_path.name} is not a valid tar.gz archive: {exc}") from exc


def extract_archive(
    archive_path: Path,
    destination: Path,
    *,
    allowed: Sequence[str] | None = None,
    runner: ProcessRunner | None = None,
) -> list[str]:
    """Extract *archive_path* into *destination* and return the member names.

    Absolute member paths and ``..`` components are rejected, as are members
    not listed in *allowed* when it is given.
    """
    members = list_archive(archive_path)
    for name in members:
        pure = PurePosixPath(name)
        if pure.is_absolute() or ".." in pure.parts:
            raise IntegrityError(f"{archive_path.name} contains an unsafe path: {name}")
        normalised = str(pure)
        if allowed is not None and normalised not in allowed:
            raise IntegrityError(f"{archive_path.name} contains an unexpected file: {name}")
    runner = runner or ProcessRunner()
    tar_bin = shutil.which("tar") or "tar"
    runner.run(
        [tar_bin, "-xzf", str(archive_path), "-C", str(destination)],
        error_prefix="tar",
    )
    return members


def gzip_file(source: Path, destination: Path, *, remove_source: bool = True) -> None:
    """Compress *source* into *destination*."""
    try:
        with source.open("rb") as raw, gzip.open(destination, "wb") as packed:
            shutil.copyfileobj(raw, packed, _CHUNK)
    except OSError:
        destination.unlink(missing_ok=True)
        raise
    _restrict(destination)
    if remove_source:
        source.unlink(missing_ok=True)


def gunzip_file(source: Path, destination: Path) -> None:
    """Decompress *source* into *destination*."""
    try:
        with gzip.open(source, "rb") as packed, destination.open("wb") as raw:
            shutil.copyfileobj(packed, raw, _CHUNK)
    except (OSError, EOFError, zlib.error) as exc:
        destination.unlink(missing_ok=True)
        raise IntegrityError(f"Could not decompress {source.name}: {exc}") from exc


def verify_gzip(path: Path) -> None:
    """Read *path* to the end; raises :class:`IntegrityError` when corrupt."""
    try:
        with gzip.open(path, "rb") as handle:
            while handle.read(_CHUNK):
                pass
    except (OSError, EOFError, zlib.error) as exc:
        raise IntegrityError(f"Backup file is corrupted: {path.name} ({exc})") from exc


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def checksum_path_for(archive_path: Path) -> Path:
    """Return the ``<archive>.sha256`` sidecar path."""
    return archive_path.with_name(f"{archive_path.name}.sha256")


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = checksum_path_for(archive_path)
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    _restrict(checksum_path)
    return checksum_path


def read_checksum_file(archive_path: Path) -> str | None:
    """Return the recorded checksum, or ``None`` when there is no sidecar."""
    checksum_path = checksum_path_for(archive_path)
    try:
        text = checksum_path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return text.split()[0] if text else None


def _restrict(path: Path) -> None:
    try:
        os.chmod(path, ARCHIVE_MODE)
    except OSError:
        pass


__all__ = [
    "checksum_path_for",
    "compute_checksum",
    "create_archive",
    "extract_archive",
    "gunzip_file",
    "gzip_file",
    "list_archive",
    "read_checksum_file",
    "verify_gzip",
    "write_checksum_file",
]

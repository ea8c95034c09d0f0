"""Backups and restores of the database, the cache snapshot and the env files.

Each operation checks its preconditions before touching anything, writes
compressed artifacts with a ``.sha256`` sidecar, and appends one line per
outcome to ``backup-restore.log`` in the backup directory.
"""
from __future__ import annotations

import os
import re
import shutil
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

from .archive import (
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
from .confirm import Confirmer, require
from .errors import (
    IntegrityError,
    OperatorAbort,
    ReconciliationError,
    ServiceNotRunningError,
    ValidationError,
    VeriscopeError,
)
from .logging import OperationLog
from .providers.database import DEPENDENT_HOST_SERVICES, restore_scratch_path
from .providers.process import ProcessRunner

if TYPE_CHECKING:
    from .config import AppConfig
    from .providers.cache import RedisClient
    from .providers.database import PostgresClient
    from .providers.runtime import ServiceRuntime

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"
LOG_FILE_NAME = "backup-restore.log"

KIND_DATABASE = "database"
KIND_CACHE = "cache"
KIND_CONFIG = "config-files"

_PATTERNS: Mapping[str, re.Pattern[str]] = {
    KIND_DATABASE: re.compile(r"^postgres-(\d{8}-\d{6})(?:-(\d+))?\.sql\.gz$"),
    KIND_CACHE: re.compile(r"^redis-(\d{8}-\d{6})(?:-(\d+))?\.rdb\.gz$"),
    KIND_CONFIG: re.compile(r"^app-files-(\d{8}-\d{6})(?:-(\d+))?\.tar\.gz$"),
}
_PREFIXES: Mapping[str, str] = {
    KIND_DATABASE: "postgres",
    KIND_CACHE: "redis",
    KIND_CONFIG: "app-files",
}
_SUFFIXES: Mapping[str, str] = {
    KIND_DATABASE: ".sql.gz",
    KIND_CACHE: ".rdb.gz",
    KIND_CONFIG: ".tar.gz",
}
_LOG_NAMES: Mapping[str, str] = {
    KIND_DATABASE: "DATABASE",
    KIND_CACHE: "REDIS",
    KIND_CONFIG: "APP_FILES",
}


@dataclass(slots=True, frozen=True)
class BackupArtifact:
    """A backup file on disk."""

    kind: str
    timestamp: str
    path: Path
    compressed: bool = True
    verified: bool = False
    size_bytes: int = 0
    checksum: str | None = None

    @property
    def created_at(self) -> datetime:
        """Return the timestamp embedded in the file name."""
        return datetime.strptime(self.timestamp, TIMESTAMP_FORMAT).replace(tzinfo=UTC)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "kind": self.kind,
            "timestamp": self.timestamp,
            "path": str(self.path),
            "compressed": self.compressed,
            "verified": self.verified,
            "size_bytes": self.size_bytes,
            "checksum": self.checksum,
        }


@dataclass(slots=True)
class FullBackupReport:
    """Per-component outcome of a full backup."""

    artifacts: dict[str, BackupArtifact] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        """Return ``success``, ``partial`` or ``failed``."""
        if not self.failures:
            return "success"
        if self.artifacts or self.skipped:
            return "partial"
        return "failed"

    @property
    def ok(self) -> bool:
        """Return ``True`` when no component failed."""
        return not self.failures

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status,
            "artifacts": {kind: artifact.to_dict() for kind, artifact in self.artifacts.items()},
            "failures": dict(self.failures),
            "skipped": list(self.skipped),
        }


@dataclass(slots=True)
class CleanupResult:
    """Outcome of pruning old backups."""

    candidates: list[Path] = field(default_factory=list)
    deleted: list[Path] = field(default_factory=list)


@dataclass(slots=True)
class BackupEngine:
    """Back up and restore deployment state."""

    config: AppConfig
    runtime: ServiceRuntime
    db: PostgresClient
    cache: RedisClient
    confirmer: Confirmer
    log: OperationLog | None = None
    runner: ProcessRunner = field(default_factory=ProcessRunner)
    now: Callable[[], datetime] = field(default=lambda: datetime.now(tz=UTC))
    disk_free_mb: Callable[[Path], int] | None = None

    def __post_init__(self) -> None:
        if self.log is None:
            self.log = OperationLog(self.backup_dir / LOG_FILE_NAME)

    @property
    def backup_dir(self) -> Path:
        """Return the backup directory."""
        return self.config.backups.root

    # Database ------------------------------------------------------
    def backup_database(self) -> BackupArtifact:
        """Dump the application database to ``postgres-<ts>.sql.gz``."""
        operation = "DATABASE_BACKUP"
        with self._logged(operation):
            self._check_destination(KIND_DATABASE)
            self._require_running(self.db.service, "PostgreSQL")
            self._wait(self.db.wait_ready)
            target = self._artifact_path(KIND_DATABASE)
            raw = target.with_suffix("")
            try:
                with raw.open("wb") as handle:
                    self.db.dump_to(handle)
                if raw.stat().st_size == 0:
                    raise IntegrityError("pg_dump produced an empty file")
                gzip_file(raw, target)
            except BaseException:
                raw.unlink(missing_ok=True)
                target.unlink(missing_ok=True)
                raise
            artifact = self._finalise(KIND_DATABASE, target)
        self._log_success(operation, artifact)
        return artifact

    def restore_database(self, path: Path, *, allow_outside: bool = False) -> BackupArtifact:
        """Replace the application database with the dump at *path*."""
        operation = "DATABASE_RESTORE"
        with self._logged(operation, path):
            source = self._check_source(path, allow_outside=allow_outside)
            artifact = self.verify_artifact(source)
            self._require_running(self.db.service, "PostgreSQL")
            self._wait(self.db.wait_ready)
            creds = self.db.credentials()
            self._confirm_overwrite(
                operation,
                source,
                f"This will OVERWRITE database '{creds.name}' with {source.name}.",
            )
            scratch = restore_scratch_path(self.backup_dir)
            stopped = self._stop_dependents()
            try:
                if artifact.compressed:
                    gunzip_file(source, scratch)
                else:
                    shutil.copyfile(source, scratch)
                with scratch.open("rb") as handle:
                    self.db.restore_from(handle)
            finally:
                scratch.unlink(missing_ok=True)
                for service in stopped:
                    self.runtime.start(service)
        self.log.append(operation, "SUCCESS", str(source))
        return artifact

    # Cache ---------------------------------------------------------
    def backup_cache_store(self) -> BackupArtifact:
        """Snapshot Redis and store it as ``redis-<ts>.rdb.gz``."""
        operation = "REDIS_BACKUP"
        with self._logged(operation):
            self._check_destination(KIND_CACHE)
            self._require_running(self.cache.service, "Redis")
            self._wait(self.cache.wait_ready)
            self.cache.save()
            target = self._artifact_path(KIND_CACHE)
            raw = target.with_suffix("")
            try:
                self.cache.export_snapshot(raw)
                if not raw.exists() or raw.stat().st_size == 0:
                    raise IntegrityError("Redis snapshot is empty or was not copied")
                gzip_file(raw, target)
            except BaseException:
                raw.unlink(missing_ok=True)
                target.unlink(missing_ok=True)
                raise
            artifact = self._finalise(KIND_CACHE, target)
        self._log_success(operation, artifact)
        return artifact

    def restore_cache_store(self, path: Path, *, allow_outside: bool = False) -> BackupArtifact:
        """Stop Redis, replace its snapshot with *path* and start it again."""
        operation = "REDIS_RESTORE"
        with self._logged(operation, path):
            source = self._check_source(path, allow_outside=allow_outside)
            artifact = self.verify_artifact(source)
            self._require_running(self.cache.service, "Redis")
            self._confirm_overwrite(
                operation, source, f"This will OVERWRITE the current Redis data with {source.name}."
            )
            scratch = self.backup_dir / ".restore.rdb"
            try:
                if artifact.compressed:
                    gunzip_file(source, scratch)
                else:
                    shutil.copyfile(source, scratch)
                self.runtime.stop(self.cache.service)
                try:
                    self.cache.import_snapshot(scratch)
                finally:
                    self.runtime.start(self.cache.service)
            finally:
                scratch.unlink(missing_ok=True)
            self._wait(self.cache.wait_ready)
        self.log.append(operation, "SUCCESS", str(source))
        return artifact

    # Config files --------------------------------------------------
    def config_files(self) -> list[str]:
        """Return the env files that exist, relative to the project root."""
        root = self.config.project_root
        candidates = (
            self.config.root_env_path,
            self.config.dashboard_env_path,
            self.config.ta_node_env_path,
        )
        return [str(path.relative_to(root)) for path in candidates if path.is_file()]

    def backup_config_files(self) -> BackupArtifact | None:
        """Archive the env files; returns ``None`` when there are none."""
        operation = "APP_FILES_BACKUP"
        with self._logged(operation):
            self._check_destination(KIND_CONFIG)
            members = self.config_files()
            if not members:
                self.log.append(operation, "SKIPPED", "No .env files found")
                return None
            target = self._artifact_path(KIND_CONFIG)
            create_archive(self.config.project_root, members, target, runner=self.runner)
            artifact = self._finalise(KIND_CONFIG, target)
        self._log_success(operation, artifact)
        return artifact

    def restore_config_files(
        self, path: Path, *, allow_outside: bool = False
    ) -> tuple[BackupArtifact, Path | None]:
        """Restore env files from *path*, saving the current ones first.

        Returns the restored artifact and the ``pre-restore-<ts>.tar.gz``
        archive of the files it replaced (``None`` when there were none).
        """
        operation = "APP_FILES_RESTORE"
        with self._logged(operation, path):
            source = self._check_source(path, allow_outside=allow_outside)
            artifact = self.verify_artifact(source)
            members = list_archive(source)
            self._confirm_overwrite(
                operation,
                source,
                f"This will OVERWRITE existing .env files: {', '.join(members)}",
            )
            saved: Path | None = None
            current = self.config_files()
            if current:
                saved = self._reserve("pre-restore", ".tar.gz")
                create_archive(self.config.project_root, current, saved, runner=self.runner)
            extract_archive(
                source,
                self.config.project_root,
                allowed=self._allowed_config_members(),
                runner=self.runner,
            )
        self.log.append(operation, "SUCCESS", str(source))
        return artifact, saved

    # Aggregates ----------------------------------------------------
    def full_backup(self) -> FullBackupReport:
        """Back up every component, continuing past individual failures."""
        report = FullBackupReport()
        steps: Iterable[tuple[str, Callable[[], BackupArtifact | None]]] = (
            (KIND_DATABASE, self.backup_database),
            (KIND_CACHE, self.backup_cache_store),
            (KIND_CONFIG, self.backup_config_files),
        )
        for kind, action in steps:
            try:
                artifact = action()
            except (VeriscopeError, OSError) as exc:
                report.failures[kind] = str(exc)
                continue
            if artifact is None:
                report.skipped.append(kind)
            else:
                report.artifacts[kind] = artifact

        if report.ok:
            self.log.append("FULL_BACKUP", "SUCCESS", f"All components backed up to {self.backup_dir}")
        else:
            failed = " ".join(_LOG_NAMES[kind] for kind in report.failures)
            self.log.append("FULL_BACKUP", "PARTIAL", f"Failed: {failed}")
        return report

    def list_backups(self) -> list[BackupArtifact]:
        """Return recognised backups, newest first."""
        if not self.backup_dir.is_dir():
            return []
        found: list[tuple[str, int, str, BackupArtifact]] = []
        for entry in self.backup_dir.iterdir():
            parsed = _parse_name(entry.name)
            if parsed is None or not entry.is_file():
                continue
            kind, timestamp, sequence = parsed
            artifact = BackupArtifact(
                kind=kind,
                timestamp=timestamp,
                path=entry,
                size_bytes=entry.stat().st_size,
                checksum=read_checksum_file(entry),
            )
            found.append((timestamp, sequence, kind, artifact))
        found.sort(key=lambda item: item[:3], reverse=True)
        return [item[3] for item in found]

    def old_backups(self, days: int | None = None) -> list[BackupArtifact]:
        """Return the backups last modified more than *days* ago, newest first."""
        days = self.config.backups.retention_days if days is None else days
        if days < 0:
            raise ValidationError(f"days must not be negative (got {days})")
        if not self.backup_dir.is_dir():
            raise ValidationError(f"Backup directory does not exist: {self.backup_dir}")
        cutoff = self.now() - timedelta(days=days)
        return [
            artifact
            for artifact in self.list_backups()
            if datetime.fromtimestamp(artifact.path.stat().st_mtime, tz=UTC) < cutoff
        ]

    def clean_old_backups(
        self, days: int | None = None, confirmer: Confirmer | None = None
    ) -> CleanupResult:
        """Delete backups older than *days* after the operator types ``DELETE``.

        The confirmation prompt lists every candidate, grouped by kind.
        """
        operation = "CLEANUP"
        days = self.config.backups.retention_days if days is None else days
        old = self.old_backups(days)
        result = CleanupResult(candidates=[artifact.path for artifact in old])
        if not old:
            return result

        try:
            require(
                confirmer or self.confirmer,
                _cleanup_prompt(old, days),
                phrase="DELETE",
            )
        except OperatorAbort:
            self.log.append(
                operation, "CANCELLED", f"User cancelled deletion of {len(result.candidates)} file(s)"
            )
            raise

        failed: dict[str, str] = {}
        for path in result.candidates:
            try:
                path.unlink()
                checksum_path_for(path).unlink(missing_ok=True)
            except OSError as exc:
                failed[path.name] = str(exc)
            else:
                result.deleted.append(path)

        if failed:
            self.log.append(operation, "PARTIAL", f"Deleted {len(result.deleted)}, {len(failed)} failed")
            raise ReconciliationError(
                f"{len(failed)} backup(s) could not be deleted",
                succeeded=[path.name for path in result.deleted],
                failed=failed,
            )
        self.log.append(
            operation, "SUCCESS", f"Deleted {len(result.deleted)} file(s) older than {days} days"
        )
        return result

    def verify_artifact(self, path: Path) -> BackupArtifact:
        """Check that *path* is a non-empty, readable backup matching its checksum."""
        path = Path(path)
        if not path.is_file():
            raise ValidationError(f"Backup file not found: {path}")
        size = path.stat().st_size
        if size == 0:
            raise IntegrityError(f"Backup file is empty: {path.name}")

        parsed = _parse_name(path.name)
        kind = parsed[0] if parsed else _kind_from_suffix(path.name)
        timestamp = parsed[1] if parsed else ""
        compressed = path.name.endswith(".gz")
        if kind == KIND_CONFIG or path.name.endswith(".tar.gz"):
            list_archive(path)
        elif compressed:
            verify_gzip(path)

        recorded = read_checksum_file(path)
        checksum = compute_checksum(path)
        if recorded is not None and recorded != checksum:
            raise IntegrityError(
                f"Checksum mismatch for {path.name}",
                remediation="The file was modified or truncated; use another backup.",
            )
        return BackupArtifact(
            kind=kind,
            timestamp=timestamp,
            path=path,
            compressed=compressed,
            verified=True,
            size_bytes=size,
            checksum=checksum,
        )

    # ------------------------------------------------------------------
    # Preconditions and bookkeeping
    # ------------------------------------------------------------------
    def _check_destination(self, kind: str) -> None:
        directory = self.backup_dir
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ValidationError(f"Cannot create backup directory {directory}: {exc}") from exc
        if not os.access(directory, os.W_OK):
            raise ValidationError(f"Backup directory not writable: {directory}")
        floor = self.config.backups.floor_for(kind)
        probe = self.disk_free_mb or _free_mb
        available = probe(directory)
        if available < floor:
            raise ValidationError(
                f"Insufficient disk space. Required: {floor}MB, Available: {available}MB"
            )

    def _check_source(self, path: Path, *, allow_outside: bool) -> Path:
        source = Path(path).expanduser()
        if not source.is_file():
            raise ValidationError(f"Backup file not found: {source}")
        resolved = source.resolve()
        roots = (self.backup_dir.resolve(), self.config.project_root.resolve())
        if not allow_outside and not any(resolved.is_relative_to(root) for root in roots):
            raise ValidationError(
                f"Backup file is outside the backup directory and project root: {resolved}",
                remediation="Move it into the backup directory or pass --allow-outside.",
            )
        return resolved

    def _require_running(self, service: str, label: str) -> None:
        if not self.runtime.is_running(service):
            hint = (
                f"sudo systemctl start {service}"
                if self.config.is_host_mode
                else f"docker compose -f {self.config.compose.file} up -d"
            )
            raise ServiceNotRunningError(f"{label} is not running", remediation=f"Start it with: {hint}")

    def _wait(self, waiter: Callable[..., float]) -> None:
        waiter(timeout=self.config.backups.ready_timeout, interval=self.config.backups.ready_interval)

    def _confirm_overwrite(self, operation: str, source: Path, prompt: str) -> None:
        try:
            require(self.confirmer, prompt, phrase="yes")
        except OperatorAbort:
            self.log.append(operation, "CANCELLED", str(source))
            raise

    def _stop_dependents(self) -> list[str]:
        if not self.config.is_host_mode:
            return []
        stopped: list[str] = []
        for service in DEPENDENT_HOST_SERVICES:
            if self.runtime.is_running(service):
                self.runtime.stop(service)
                stopped.append(service)
        return stopped

    def _allowed_config_members(self) -> list[str]:
        root = self.config.project_root
        return [
            str(path.relative_to(root))
            for path in (
                self.config.root_env_path,
                self.config.dashboard_env_path,
                self.config.ta_node_env_path,
            )
        ]

    def _timestamp(self) -> str:
        return self.now().strftime(TIMESTAMP_FORMAT)

    def _artifact_path(self, kind: str) -> Path:
        return self._reserve(_PREFIXES[kind], _SUFFIXES[kind])

    def _reserve(self, prefix: str, suffix: str) -> Path:
        """Create and return an empty file under a name no earlier backup used.

        Backups taken within the same second get a ``-N`` suffix after the
        timestamp. A leftover ``.sha256`` sidecar also marks a name as taken.
        """
        stamp = self._timestamp()
        sequence = 0
        while True:
            tail = f"-{sequence}" if sequence else ""
            path = self.backup_dir / f"{prefix}-{stamp}{tail}{suffix}"
            if not checksum_path_for(path).exists():
                try:
                    with path.open("xb"):
                        return path
                except FileExistsError:
                    pass
            sequence += 1

    def _finalise(self, kind: str, target: Path) -> BackupArtifact:
        try:
            artifact = self.verify_artifact(target)
        except IntegrityError:
            target.unlink(missing_ok=True)
            raise
        write_checksum_file(target, artifact.checksum or compute_checksum(target))
        return artifact

    def _log_success(self, operation: str, artifact: BackupArtifact) -> None:
        self.log.append(operation, "SUCCESS", f"{artifact.path} ({_human_size(artifact.size_bytes)})")

    @contextmanager
    def _logged(self, operation: str, path: Path | None = None) -> Iterator[None]:
        try:
            yield
        except OperatorAbort:
            raise
        except (VeriscopeError, OSError) as exc:
            detail = f"{path} - {exc}" if path else str(exc)
            self.log.append(operation, "FAILED", detail)
            raise


def _parse_name(name: str) -> tuple[str, str, int] | None:
    for kind, pattern in _PATTERNS.items():
        match = pattern.match(name)
        if match:
            return kind, match.group(1), int(match.group(2) or 0)
    return None


def _kind_from_suffix(name: str) -> str:
    if name.endswith((".sql", ".sql.gz")):
        return KIND_DATABASE
    if name.endswith((".rdb", ".rdb.gz")):
        return KIND_CACHE
    return KIND_CONFIG


def _free_mb(path: Path) -> int:
    return shutil.disk_usage(path).free // (1024 * 1024)


def _cleanup_prompt(artifacts: Iterable[BackupArtifact], days: int) -> str:
    artifacts = list(artifacts)
    lines = [f"The following {len(artifacts)} backup(s) are older than {days} days:"]
    for kind in (KIND_DATABASE, KIND_CACHE, KIND_CONFIG):
        lines.extend(f"  {kind}: {artifact.path.name}" for artifact in artifacts if artifact.kind == kind)
    lines.append("Delete them?")
    return "\n".join(lines)


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "K", "M", "G"):
        if value < 1024 or unit == "G":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"


__all__ = [
    "BackupArtifact",
    "BackupEngine",
    "CleanupResult",
    "FullBackupReport",
    "KIND_CACHE",
    "KIND_CONFIG",
    "KIND_DATABASE",
    "LOG_FILE_NAME",
    "TIMESTAMP_FORMAT",
]

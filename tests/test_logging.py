"""Tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from veriscopectl.errors import OperatorAbort, ValidationError
from veriscopectl.logging import OperationLog, StructuredLogger


def _records(log_dir: Path) -> list[dict[str, object]]:
    lines = (log_dir / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_writes_json_and_human_records(tmp_path: Path) -> None:
    """A finished scope produces one JSON record and one human line."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("backup database", args={"path": tmp_path}) as op:
        op.add_step("dump", status="success", detail="12 KB")
        op.success("Database backed up", changed=1, backups=[tmp_path / "a.sql.gz"])

    record = _records(tmp_path / "logs")[0]
    assert record["command"] == "backup database"
    assert record["args"] == {"path": str(tmp_path)}
    assert record["steps"][0]["detail"] == "12 KB"  # type: ignore[index]
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["backups"] == [str(tmp_path / "a.sql.gz")]  # type: ignore[index]

    human = (tmp_path / "logs" / "veriscopectl.log").read_text(encoding="utf-8")
    assert "[SUCCESS] backup database - Database backed up" in human


def test_uncaught_error_records_exit_code(tmp_path: Path) -> None:
    """Exceptions escaping the scope are logged with their exit code."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValidationError):
        with logger.operation("install"):
            raise ValidationError("bad network")

    result = _records(tmp_path / "logs")[0]["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["rc"] == 2  # type: ignore[index]
    assert result["errors"] == ["bad network"]  # type: ignore[index]


def test_operator_abort_is_not_an_error(tmp_path: Path) -> None:
    """A declined confirmation exits zero and is recorded as completed."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(OperatorAbort):
        with logger.operation("restore cache"):
            raise OperatorAbort("Cancelled")

    assert _records(tmp_path / "logs")[0]["result"]["status"] == "success"  # type: ignore[index]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger.enabled is False

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger.enabled is False

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)


def test_operation_log_appends_formatted_lines(tmp_path: Path) -> None:
    """Backup log lines carry status and operation."""
    log = OperationLog(tmp_path / "backups" / "backup-restore.log")

    log.append("DATABASE_BACKUP", "success", "db.sql.gz (1 KB)")
    log.append("FULL_BACKUP", "partial", "Failed: REDIS")

    lines = log.lines()
    assert len(lines) == 2
    assert lines[0].endswith("[SUCCESS] DATABASE_BACKUP - db.sql.gz (1 KB)")
    assert "[PARTIAL] FULL_BACKUP - Failed: REDIS" in lines[1]


def test_operation_log_missing_file_reads_empty(tmp_path: Path) -> None:
    """Reading a log that was never written returns nothing."""
    assert OperationLog(tmp_path / "none.log").lines() == []

"""Structured operation logging.

Each CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects steps and a final outcome, then appends one JSON record to
``operations.jsonl`` and one human-readable line to ``veriscopectl.log``.
Logging problems never interrupt the operation being logged: the logger
disables itself instead.

:class:`OperationLog` is the plain append-only log kept beside backup
artifacts (``[timestamp] [STATUS] OPERATION - detail``).
"""
from __future__ import annotations

import json
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from . import __version__

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "veriscopectl.log"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _line_timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _sanitise(value: object) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Mutable record of a single logged operation."""

    command: str
    args: Mapping[str, object]
    target: Mapping[str, object]
    steps: list[dict[str, object]] = field(default_factory=list)
    result: dict[str, object] | None = None
    started: float = field(default_factory=time.monotonic)
    started_at: str = field(default_factory=_now_iso)

    def add_step(self, name: str, *, status: str = "info", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] = (),
        backups: Iterable[object] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._finish("success", message, changed, warnings, (), backups, context, rc=0)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int = 0,
        backups: Iterable[object] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation complete with warnings."""
        self._finish("warning", message, changed, warnings, errors, backups, context, rc=0)

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        error_list = list(errors) if errors else [message]
        self._finish("error", message, changed, (), error_list, (), context, rc=rc)

    @property
    def status(self) -> str | None:
        """Return the recorded status, if an outcome has been set."""
        if self.result is None:
            return None
        return str(self.result.get("status"))

    # ------------------------------------------------------------------
    def _finish(
        self,
        status: str,
        message: str,
        changed: int,
        warnings: Iterable[str],
        errors: Iterable[str],
        backups: Iterable[object],
        context: Mapping[str, object] | None,
        *,
        rc: int,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings],
            "errors": [str(item) for item in errors],
            "backups": [str(item) for item in backups],
            "context": _sanitise(dict(context or {})),
            "rc": rc,
        }


class StructuredLogger:
    """Append operation records to the log directory."""

    def __init__(self, log_dir: Path) -> None:
        self.log_dir = Path(log_dir)
        self._operations_log_path = self.log_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.log_dir / HUMAN_LOG_NAME
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return ``True`` while records are still being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command=command, args=dict(args or {}), target=dict(target or {}))
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                code = getattr(exc, "exit_code", None)
                rc = int(code) if isinstance(code, int) else 1
                if rc == 0:
                    scope.success("completed")
                else:
                    scope.error(str(exc) or type(exc).__name__, rc=rc)
            raise
        finally:
            if scope.result is None:
                scope.success("completed")
            self._write(scope)

    # ------------------------------------------------------------------
    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        result = scope.result or {}
        record = {
            "command": scope.command,
            "args": _sanitise(scope.args),
            "target": _sanitise(scope.target),
            "steps": scope.steps,
            "result": result,
            "started_at": scope.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.monotonic() - scope.started) * 1000),
            "context": {"veriscopectl_version": __version__},
        }
        status = str(result.get("status", "success")).upper()
        line = f"[{_line_timestamp()}] [{status}] {scope.command} - {result.get('message', '')}"
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with self._human_log_path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError:
            self._enabled = False


class OperationLog:
    """Append-only ``[timestamp] [STATUS] OPERATION - detail`` log."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._enabled = True

    def append(self, operation: str, status: str, detail: str = "") -> None:
        """Append a line; write failures disable the log silently."""
        if not self._enabled:
            return
        line = f"[{_line_timestamp()}] [{status.upper()}] {operation} - {detail}\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError:
            self._enabled = False

    def lines(self) -> list[str]:
        """Return the log contents (empty when missing)."""
        try:
            return self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []


__all__ = ["OperationLog", "OperationScope", "StructuredLogger"]

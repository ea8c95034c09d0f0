"""Read and reconcile ``.env``-style configuration files.

Writes are atomic (temporary file + ``os.replace``) and every upsert is
verified by re-reading the file from disk; a mismatch is a
:class:`~veriscopectl.errors.ReconciliationError`, never assumed success.
"""
from __future__ import annotations

import os
import re
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ReconciliationError, ValidationError

KEY_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
LINE_PATTERN = re.compile(r"^\s*(?:export\s+)?([A-Za-z_][A-Za-z0-9_]*)\s*=(.*)$")
_DOUBLE_QUOTE_ESCAPES = {"\\": "\\", '"': '"', "$": "$", "`": "`"}


def quote_value(value: str) -> str:
    """Return *value* rendered for the right-hand side of ``KEY=``."""
    if "\n" in value or "\r" in value:
        raise ValidationError("Values written to .env files must be single-line.")
    escaped = "".join(f"\\{char}" if char in _DOUBLE_QUOTE_ESCAPES else char for char in value)
    return f'"{escaped}"'


def parse_value(raw: str) -> str:
    """Return the logical value of a raw right-hand side."""
    text = raw.strip()
    if not text:
        return ""
    if text[0] == "'":
        end = text.find("'", 1)
        return text[1:end] if end != -1 else text[1:]
    if text[0] == '"':
        chars: list[str] = []
        index = 1
        while index < len(text):
            char = text[index]
            if char == "\\" and index + 1 < len(text):
                nxt = text[index + 1]
                if nxt in _DOUBLE_QUOTE_ESCAPES:
                    chars.append(nxt)
                    index += 2
                    continue
            if char == '"':
                break
            chars.append(char)
            index += 1
        return "".join(chars)
    comment = re.search(r"\s#", text)
    if comment:
        text = text[: comment.start()]
    return text.strip()


@dataclass(slots=True)
class EnvFile:
    """A single ``KEY=VALUE`` configuration file."""

    path: Path
    mode: int = 0o600

    def __post_init__(self) -> None:
        """Normalise the file path."""
        self.path = Path(self.path).expanduser()

    # Basic helpers -------------------------------------------------
    def exists(self) -> bool:
        """Return ``True`` when the file is present."""
        return self.path.is_file()

    def read(self) -> dict[str, str]:
        """Return every key mapped to its first value (empty when missing)."""
        values: dict[str, str] = {}
        for line in self._lines():
            match = LINE_PATTERN.match(line)
            if match and match.group(1) not in values:
                values[match.group(1)] = parse_value(match.group(2))
        return values

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return the unquoted value for *key*."""
        return self.read().get(key, default)

    def has_value(self, key: str) -> bool:
        """Return ``True`` when *key* is present with a non-empty value."""
        return bool(self.get(key))

    # Mutation ------------------------------------------------------
    def upsert_key(self, key: str, value: str, *, create: bool = False) -> bool:
        """Set *key* to *value*, verify on disk and return whether it changed."""
        return bool(self.upsert_many({key: value}, create=create))

    def upsert_many(self, values: Mapping[str, str], *, create: bool = False) -> list[str]:
        """Set several keys in one atomic write; return the keys that changed."""
        for key in values:
            _check_key(key)
        if not self.exists() and not create:
            raise ReconciliationError(
                f"Environment file not found: {self.path}",
                failed={str(self.path): "missing"},
            )
        lines = self._lines()
        current = self.read()
        changed = [key for key, value in values.items() if current.get(key) != value]
        if not changed and all(_count(lines, key) == 1 for key in values):
            return []

        pending = dict(values)
        output: list[str] = []
        for line in lines:
            match = LINE_PATTERN.match(line)
            if match and match.group(1) in values:
                key = match.group(1)
                if key not in pending:
                    continue  # drop duplicate definitions
                output.append(f"{key}={quote_value(pending.pop(key))}")
                continue
            output.append(line)
        for key, value in pending.items():
            output.append(f"{key}={quote_value(value)}")

        self._write(output)
        self.verify(values)
        return changed

    def remove_key(self, key: str) -> bool:
        """Remove *key*; return ``True`` when a line was removed."""
        _check_key(key)
        lines = self._lines()
        kept = [
            line
            for line in lines
            if not ((match := LINE_PATTERN.match(line)) and match.group(1) == key)
        ]
        if len(kept) == len(lines):
            return False
        self._write(kept)
        if key in self.read():
            raise ReconciliationError(f"{key} still present in {self.path} after removal.")
        return True

    def verify(self, values: Mapping[str, str]) -> None:
        """Re-read the file and raise when any key differs from *values*."""
        on_disk = self.read()
        mismatched = [key for key, value in values.items() if on_disk.get(key) != value]
        if mismatched:
            joined = ", ".join(sorted(mismatched))
            raise ReconciliationError(
                f"Verification failed for {joined} in {self.path}",
                failed={str(self.path): f"mismatch: {joined}"},
            )

    # ------------------------------------------------------------------
    def _lines(self) -> list[str]:
        try:
            return self.path.read_text(encoding="utf-8").splitlines()
        except FileNotFoundError:
            return []

    def _write(self, lines: Iterable[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        mode = self.path.stat().st_mode & 0o777 if self.path.exists() else self.mode
        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.path.parent), prefix=f".{self.path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write("\n".join(lines) + "\n")
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise ReconciliationError(
                f"Failed to write {self.path}: {exc}",
                failed={str(self.path): str(exc)},
            ) from exc
        finally:
            tmp_path.unlink(missing_ok=True)


@dataclass(slots=True)
class SyncReport:
    """Per-file outcome of writing one value into several files."""

    key: str
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """Return ``True`` when no file failed."""
        return not self.failed

    def raise_for_partial(self) -> None:
        """Raise :class:`ReconciliationError` naming which files failed."""
        if self.complete:
            return
        ok = ", ".join(self.succeeded) or "none"
        bad = ", ".join(f"{path} ({reason})" for path, reason in self.failed.items())
        raise ReconciliationError(
            f"{self.key} is NOT synchronized. Updated: {ok}. Failed: {bad}.",
            succeeded=self.succeeded,
            failed=self.failed,
            remediation="Fix the failed files and re-run the same command.",
        )


def sync_key(
    files: Iterable[EnvFile],
    key: str,
    value: str,
    *,
    skip_missing: bool = False,
) -> SyncReport:
    """Upsert *key* into every file, verifying each independently.

    An invalid key or value raises :class:`ValidationError` before any file
    is written.
    """
    _check_key(key)
    quote_value(value)
    report = SyncReport(key=key)
    for env_file in files:
        label = str(env_file.path)
        if skip_missing and not env_file.exists():
            report.skipped.append(label)
            continue
        try:
            env_file.upsert_key(key, value)
        except ReconciliationError as exc:
            report.failed[label] = str(exc)
            continue
        report.succeeded.append(label)
    return report


def _check_key(key: str) -> None:
    if not KEY_PATTERN.match(key):
        raise ValidationError(f"Invalid environment key: {key!r}")


def _count(lines: Iterable[str], key: str) -> int:
    return sum(
        1 for line in lines if (match := LINE_PATTERN.match(line)) and match.group(1) == key
    )


__all__ = ["EnvFile", "SyncReport", "parse_value", "quote_value", "sync_key"]

"""Subprocess execution shared by every collaborator provider."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from ..errors import CommandError, ServiceTimeoutError


@dataclass(slots=True)
class ProcessRunner:
    """Run external commands and translate failures into typed errors.

    ``calls`` records every argument vector, which keeps dry runs and tests
    inspectable.
    """

    dry_run: bool = False
    default_timeout: float | None = None
    calls: list[list[str]] = field(default_factory=list)

    def run(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        error_prefix: str | None = None,
        input: str | None = None,
        stdin: IO[Any] | None = None,
        stdout: IO[Any] | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
        cwd: Path | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* and return the completed process.

        Missing binaries raise :class:`CommandError` with ``not found`` in the
        message, timeouts raise :class:`ServiceTimeoutError` and, when
        ``check`` is set, a non-zero exit raises :class:`CommandError`.
        """
        command = [str(arg) for arg in args]
        self.calls.append(command)
        prefix = error_prefix or " ".join(command[:2])
        if self.dry_run:
            return subprocess.CompletedProcess(command, returncode=0, stdout="", stderr="")

        kwargs: dict[str, Any] = {
            "text": True,
            "check": False,
            "timeout": timeout if timeout is not None else self.default_timeout,
            "stderr": subprocess.PIPE,
            "stdout": stdout if stdout is not None else subprocess.PIPE,
        }
        if input is not None:
            kwargs["input"] = input
        elif stdin is not None:
            kwargs["stdin"] = stdin
        if env is not None:
            kwargs["env"] = dict(env)
        if cwd is not None:
            kwargs["cwd"] = str(cwd)

        try:
            result = subprocess.run(command, **kwargs)  # noqa: S603 - controlled command execution
        except FileNotFoundError as exc:
            raise CommandError(
                f"{command[0]} not found: {exc}",
                remediation=f"Install '{command[0]}' or fix its path in the config file.",
            ) from exc
        except subprocess.TimeoutExpired as exc:
            raise ServiceTimeoutError(
                f"{prefix} timed out after {exc.timeout:g}s"
            ) from exc

        if check and result.returncode != 0:
            stdout_text = result.stdout if isinstance(result.stdout, str) else ""
            stderr_text = result.stderr or ""
            message = stderr_text.strip() or stdout_text.strip() or "no output"
            raise CommandError(
                f"{prefix} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
                output=message,
            )
        return result


__all__ = ["ProcessRunner"]

"""PostgreSQL client built on the service runtime."""
from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from ..envfile import EnvFile
from ..errors import CommandError, ValidationError
from .waiting import wait_until

if TYPE_CHECKING:
    from ..config import AppConfig
    from .runtime import ServiceRuntime

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
DEPENDENT_HOST_SERVICES: tuple[str, ...] = ("app", "websocket", "scheduler", "horizon")


@dataclass(slots=True, frozen=True)
class DatabaseCredentials:
    """Connection identity for the application database."""

    user: str
    name: str
    password: str | None = None


@dataclass(slots=True)
class PostgresClient:
    """Readiness, dump and restore for the application database."""

    runtime: ServiceRuntime
    config: AppConfig
    sleep: Callable[[float], None] = field(default=time.sleep)
    clock: Callable[[], float] = field(default=time.monotonic)

    @property
    def service(self) -> str:
        """Return the logical database service name."""
        return self.config.database.service

    def credentials(self) -> DatabaseCredentials:
        """Return the credentials recorded in the root ``.env``."""
        values = EnvFile(self.config.root_env_path).read()
        return DatabaseCredentials(
            user=values.get("POSTGRES_USER") or self.config.database.user,
            name=values.get("POSTGRES_DB") or self.config.database.name,
            password=values.get("POSTGRES_PASSWORD") or None,
        )

    # Readiness -----------------------------------------------------
    def is_ready(self) -> bool:
        """Return ``True`` when ``pg_isready`` succeeds."""
        creds = self.credentials()
        try:
            result = self.runtime.exec(
                self.service,
                ["pg_isready", *self._connection_args(creds)],
                check=False,
                env=self._env(creds),
                timeout=10,
            )
        except CommandError:
            return False
        return result.returncode == 0

    def wait_ready(self, *, timeout: float, interval: float) -> float:
        """Wait (bounded) until the database accepts connections."""
        return wait_until(
            self.is_ready,
            timeout=timeout,
            interval=interval,
            what="PostgreSQL",
            sleep=self.sleep,
            clock=self.clock,
        )

    # Dump / restore ------------------------------------------------
    def dump_to(self, handle: IO[Any]) -> None:
        """Write a plain SQL dump (with DROP statements) to *handle*."""
        creds = self.credentials()
        self.runtime.exec(
            self.service,
            [
                "pg_dump",
                *self._connection_args(creds),
                "--clean",
                "--if-exists",
                creds.name,
            ],
            stdout=handle,
            env=self._env(creds),
        )

    def restore_from(self, handle: IO[Any]) -> None:
        """Replay the SQL read from *handle* into the application database."""
        creds = self.credentials()
        if self.runtime.mode == "host":
            self._recreate_database(creds)
        self.runtime.exec(
            self.service,
            [
                "psql",
                *self._connection_args(creds),
                "-v",
                "ON_ERROR_STOP=1",
                "-q",
                creds.name,
            ],
            stdin=handle,
            env=self._env(creds),
        )

    # Provisioning --------------------------------------------------
    def ensure_database(self, password: str) -> bool:
        """Create the role and database on a host install; return ``True`` if created.

        In container mode the database image creates both from the
        ``POSTGRES_*`` variables, so nothing is done here.
        """
        if self.runtime.mode != "host":
            return False
        creds = self.credentials()
        _check_identifier(creds.user)
        _check_identifier(creds.name)
        exists = self._superuser_sql(
            f"SELECT 1 FROM pg_roles WHERE rolname = '{creds.user}'", check=False
        )
        if (exists.stdout or "").strip() == "1":
            return False
        quoted = password.replace("'", "''")
        self._superuser_sql(f"CREATE USER {creds.user} WITH CREATEDB LOGIN PASSWORD '{quoted}'")
        self._superuser_sql(f"CREATE DATABASE {creds.name} OWNER {creds.user}")
        return True

    # ------------------------------------------------------------------
    def _connection_args(self, creds: DatabaseCredentials) -> list[str]:
        args = ["-U", creds.user]
        if self.runtime.mode == "host":
            args.extend(["-h", "localhost", "-p", str(self.config.database.port)])
        return args

    def _env(self, creds: DatabaseCredentials) -> dict[str, str] | None:
        if creds.password:
            return {"PGPASSWORD": creds.password}
        return None

    def _recreate_database(self, creds: DatabaseCredentials) -> None:
        _check_identifier(creds.user)
        _check_identifier(creds.name)
        self._superuser_sql(f"DROP DATABASE IF EXISTS {creds.name}")
        self._superuser_sql(f"CREATE DATABASE {creds.name} OWNER {creds.user}")

    def _superuser_sql(self, statement: str, *, check: bool = True) -> Any:
        return self.runtime.exec(
            self.service,
            ["sudo", "-u", "postgres", "psql", "-tAc", statement],
            check=check,
        )


def _check_identifier(value: str) -> None:
    if not _IDENTIFIER.match(value):
        raise ValidationError(f"Unsafe database identifier: {value!r}")


def restore_scratch_path(backup_dir: Path) -> Path:
    """Return where a decompressed dump is staged before replay."""
    return backup_dir / ".restore.sql"


__all__ = [
    "DEPENDENT_HOST_SERVICES",
    "DatabaseCredentials",
    "PostgresClient",
    "restore_scratch_path",
]

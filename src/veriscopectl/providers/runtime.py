"""Service runtime abstraction and its container (compose) implementation.

Both runtimes expose the same logical service names (``app``, ``ta-node``,
``nethermind``, ``postgres``, ``redis``, ``nginx`` ...). The compose runtime
maps them to compose services; :class:`~veriscopectl.providers.systemd.SystemdRuntime`
maps them to systemd units.
"""
from __future__ import annotations

import subprocess
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any, Protocol

from ..errors import CommandError, ServiceNotRunningError
from .process import ProcessRunner

if TYPE_CHECKING:
    from ..config import AppConfig

HELPER_IMAGE = "alpine"


class ServiceRuntime(Protocol):
    """Lifecycle and command surface shared by both deployment modes."""

    mode: str

    def daemon_alive(self) -> bool:
        """Return ``True`` when the service manager itself is reachable."""
        ...

    def is_running(self, service: str) -> bool:
        """Return ``True`` when *service* is up."""
        ...

    def start(self, service: str) -> None:
        """Start *service*."""
        ...

    def stop(self, service: str) -> None:
        """Stop *service*."""
        ...

    def restart(self, service: str) -> None:
        """Restart *service*."""
        ...

    def exec(
        self,
        service: str,
        args: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,
        stdin: IO[Any] | None = None,
        stdout: IO[Any] | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* inside the running *service*."""
        ...

    def run_oneoff(
        self,
        service: str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* in a throwaway instance of *service*."""
        ...

    def copy_from(self, service: str, source: str, destination: Path) -> None:
        """Copy *source* out of *service* to the local *destination*."""
        ...

    def copy_to(self, service: str, source: Path, destination: str) -> None:
        """Copy the local *source* into *service* at *destination*."""
        ...

    def remove_node_files(self, relative_paths: Iterable[str]) -> list[str]:
        """Remove files under the blockchain client's data directory."""
        ...

    def install_artifacts(self, source: Path) -> None:
        """Make the chain *source* artifacts available to the trust-anchor node."""
        ...

    def list_instances(self) -> list[str]:
        """Return the names of existing deployment instances (running or not)."""
        ...

    def running_instances(self) -> list[str]:
        """Return the names of running deployment instances."""
        ...

    def pull_and_build(self) -> None:
        """Refresh images or host packages."""
        ...


@dataclass(slots=True)
class ComposeRuntime:
    """Drive services through ``docker compose``."""

    config: AppConfig
    runner: ProcessRunner = field(default_factory=ProcessRunner)
    mode: str = "container"

    # Paths ---------------------------------------------------------
    @property
    def compose_file(self) -> Path:
        """Return the absolute compose file path."""
        path = Path(self.config.compose.file)
        return path if path.is_absolute() else self.config.project_root / path

    @property
    def docker_bin(self) -> str:
        """Return the docker binary."""
        return self.config.compose.docker_bin

    # Lifecycle -----------------------------------------------------
    def daemon_alive(self) -> bool:
        """Return ``True`` when ``docker info`` succeeds."""
        try:
            result = self.runner.run([self.docker_bin, "info"], check=False, timeout=15)
        except CommandError:
            return False
        return result.returncode == 0

    def is_running(self, service: str) -> bool:
        """Return ``True`` when *service* has a running container."""
        try:
            result = self._compose(
                ["ps", "--status", "running", "--services"], check=False, timeout=30
            )
        except CommandError:
            return False
        if result.returncode != 0:
            return False
        return service in {line.strip() for line in (result.stdout or "").splitlines()}

    def start(self, service: str) -> None:
        """Start *service* detached."""
        self._compose(["up", "-d", service])

    def stop(self, service: str) -> None:
        """Stop *service*."""
        self._compose(["stop", service])

    def restart(self, service: str) -> None:
        """Restart *service*."""
        self._compose(["restart", service])

    # Commands ------------------------------------------------------
    def exec(
        self,
        service: str,
        args: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,
        stdin: IO[Any] | None = None,
        stdout: IO[Any] | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``docker compose exec -T`` in *service*."""
        command: list[str] = ["exec", "-T"]
        for key, value in (env or {}).items():
            command.extend(["-e", f"{key}={value}"])
        command.append(service)
        command.extend(args)
        return self._compose(
            command,
            check=check,
            input=input,
            stdin=stdin,
            stdout=stdout,
            timeout=timeout,
            error_prefix=f"{service}: {' '.join(args[:2])}",
        )

    def run_oneoff(
        self,
        service: str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run ``docker compose run --rm --no-deps -T`` for *service*."""
        return self._compose(
            ["run", "--rm", "--no-deps", "-T", service, *args],
            timeout=timeout,
            error_prefix=f"{service}: one-off command",
        )

    def copy_from(self, service: str, source: str, destination: Path) -> None:
        """Copy *source* out of the service container."""
        container = self._container_id(service)
        self.runner.run(
            [self.docker_bin, "cp", f"{container}:{source}", str(destination)],
            error_prefix="docker cp",
        )

    def copy_to(self, service: str, source: Path, destination: str) -> None:
        """Copy *source* into the service container (running or stopped)."""
        container = self._container_id(service, include_stopped=True)
        self.runner.run(
            [self.docker_bin, "cp", str(source), f"{container}:{destination}"],
            error_prefix="docker cp",
        )

    def remove_node_files(self, relative_paths: Iterable[str]) -> list[str]:
        """Delete files from the blockchain data volume via a helper container."""
        data_dir = self.config.chain.data_dir.strip("/")
        targets = [f"/data/{data_dir}/{path.lstrip('/')}" for path in relative_paths]
        if not targets:
            return []
        self.runner.run(
            [
                self.docker_bin,
                "run",
                "--rm",
                "-v",
                f"{self.config.chain.data_volume}:/data",
                HELPER_IMAGE,
                "rm",
                "-f",
                *targets,
            ],
            error_prefix="clear peer cache",
        )
        return targets

    def install_artifacts(self, source: Path) -> None:
        """Replace the artifacts volume contents with *source*."""
        volume = f"{self.config.compose.project_name}_artifacts"
        self.runner.run([self.docker_bin, "volume", "create", volume], check=False)
        self.runner.run(
            [
                self.docker_bin,
                "run",
                "--rm",
                "-v",
                f"{source.resolve()}:/source:ro",
                "-v",
                f"{volume}:/target",
                HELPER_IMAGE,
                "sh",
                "-c",
                "rm -rf /target/* && cp -r /source/. /target/",
            ],
            error_prefix="copy chain artifacts",
        )

    def list_instances(self) -> list[str]:
        """Return every container whose name carries the deployment prefix."""
        return self._docker_ps(all_containers=True)

    def running_instances(self) -> list[str]:
        """Return running containers whose name carries the deployment prefix."""
        return self._docker_ps(all_containers=False)

    def pull_and_build(self) -> None:
        """Pull published images and build local ones."""
        self._compose(["pull", "--ignore-buildable"], check=False)
        self._compose(["build"])

    # ------------------------------------------------------------------
    def _docker_ps(self, *, all_containers: bool) -> list[str]:
        args = [self.docker_bin, "ps"]
        if all_containers:
            args.append("-a")
        args.extend(
            ["--filter", f"name={self.config.compose.container_prefix}", "--format", "{{.Names}}"]
        )
        try:
            result = self.runner.run(args, check=False, timeout=30)
        except CommandError:
            return []
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def _container_id(self, service: str, *, include_stopped: bool = False) -> str:
        args = ["ps", "-aq" if include_stopped else "-q", service]
        result = self._compose(args)
        ids = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
        if not ids:
            raise ServiceNotRunningError(
                f"No container found for service '{service}'",
                remediation=f"Start it with: docker compose -f {self.compose_file} up -d {service}",
            )
        if len(ids) > 1:
            raise CommandError(f"Multiple containers found for service '{service}'")
        return ids[0]

    def _compose(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        input: str | None = None,
        stdin: IO[Any] | None = None,
        stdout: IO[Any] | None = None,
        timeout: float | None = None,
        error_prefix: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, "compose", "-f", str(self.compose_file), *args]
        return self.runner.run(
            command,
            check=check,
            error_prefix=error_prefix or f"docker compose {args[0]}",
            input=input,
            stdin=stdin,
            stdout=stdout,
            timeout=timeout,
            cwd=self.config.project_root,
        )


__all__ = ["ComposeRuntime", "HELPER_IMAGE", "ServiceRuntime"]

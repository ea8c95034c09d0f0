"""Host runtime: services managed as systemd units, commands run locally."""
from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from ..errors import CommandError
from .process import ProcessRunner

if TYPE_CHECKING:
    from ..config import AppConfig

HOST_PACKAGES: tuple[str, ...] = (
    "curl",
    "git",
    "jq",
    "unzip",
    "moreutils",
    "nodejs",
    "postgresql",
    "redis-server",
    "nginx",
    "certbot",
    "php8.3-fpm",
    "php8.3-pgsql",
    "php8.3-redis",
    "php8.3-mbstring",
    "php8.3-curl",
    "php8.3-gmp",
)


@dataclass(slots=True)
class SystemdRuntime:
    """Manage the deployment's systemd units on a single host."""

    config: AppConfig
    runner: ProcessRunner = field(default_factory=ProcessRunner)
    mode: str = "host"

    @property
    def systemctl_bin(self) -> str:
        """Return the systemctl binary."""
        return self.config.systemd.systemctl_bin

    def unit_name(self, service: str) -> str:
        """Return the unit backing the logical *service*."""
        return self.config.systemd.unit_for(service)

    def working_directory(self, service: str) -> Path:
        """Return the directory commands for *service* run in."""
        if service == "app":
            return self.config.dashboard_env_path.parent
        if service == "ta-node":
            return self.config.ta_node_env_path.parent
        return self.config.project_root

    # Lifecycle -----------------------------------------------------
    def daemon_alive(self) -> bool:
        """Return ``True`` when systemd answers."""
        try:
            result = self.runner.run(
                [self.systemctl_bin, "show", "--property=Version"], check=False, timeout=15
            )
        except CommandError:
            return False
        return result.returncode == 0

    def is_running(self, service: str) -> bool:
        """Return ``True`` when the unit is active."""
        try:
            result = self._systemctl("is-active", self.unit_name(service), check=False)
        except CommandError:
            return False
        return result.returncode == 0

    def start(self, service: str) -> None:
        """Start the unit."""
        self._systemctl("start", self.unit_name(service))

    def stop(self, service: str) -> None:
        """Stop the unit."""
        self._systemctl("stop", self.unit_name(service))

    def restart(self, service: str) -> None:
        """Restart the unit."""
        self._systemctl("restart", self.unit_name(service))

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
        """Run *args* on the host in *service*'s working directory."""
        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)
        return self.runner.run(
            args,
            check=check,
            input=input,
            stdin=stdin,
            stdout=stdout,
            env=merged_env,
            timeout=timeout,
            cwd=self.working_directory(service),
            error_prefix=f"{service}: {' '.join(args[:2])}",
        )

    def run_oneoff(
        self,
        service: str,
        args: Sequence[str],
        *,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *args* once on the host."""
        return self.exec(service, args, timeout=timeout)

    def copy_from(self, service: str, source: str, destination: Path) -> None:
        """Copy the host file *source* to *destination*."""
        try:
            shutil.copy2(source, destination)
        except OSError as exc:
            raise CommandError(f"Failed to copy {source} from {service}: {exc}") from exc

    def copy_to(self, service: str, source: Path, destination: str) -> None:
        """Copy *source* over the host file *destination*."""
        try:
            shutil.copy2(source, destination)
        except OSError as exc:
            raise CommandError(f"Failed to copy {source} to {service}: {exc}") from exc

    def remove_node_files(self, relative_paths: Iterable[str]) -> list[str]:
        """Delete files below the node's data directory; missing files are fine."""
        base = Path(self.config.chain.data_dir)
        removed: list[str] = []
        for relative in relative_paths:
            path = base / relative
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise CommandError(f"Failed to remove {path}: {exc}") from exc
            removed.append(str(path))
        return removed

    def install_artifacts(self, source: Path) -> None:
        """Copy chain artifacts next to the trust-anchor node."""
        destination = self.config.ta_node_env_path.parent / "artifacts"
        try:
            shutil.copytree(source, destination, dirs_exist_ok=True)
        except OSError as exc:
            raise CommandError(f"Failed to copy chain artifacts: {exc}") from exc

    def list_instances(self) -> list[str]:
        """Return configured units that systemd knows about."""
        units = self._configured_units()
        try:
            result = self.runner.run(
                [
                    self.systemctl_bin,
                    "list-units",
                    "--all",
                    "--plain",
                    "--no-legend",
                    "--type=service",
                ],
                check=False,
                timeout=30,
            )
        except CommandError:
            return []
        known: list[str] = []
        for line in (result.stdout or "").splitlines():
            parts = line.split()
            if not parts:
                continue
            name = parts[0].removesuffix(".service")
            if name in units:
                known.append(name)
        return known

    def running_instances(self) -> list[str]:
        """Return configured units that are currently active."""
        running: list[str] = []
        for service, unit in (self.config.systemd.units or {}).items():
            if self.is_running(service):
                running.append(unit)
        return running

    def pull_and_build(self) -> None:
        """Refresh the host's package index and required packages."""
        env = dict(os.environ)
        env["DEBIAN_FRONTEND"] = "noninteractive"
        self.runner.run(["apt-get", "-y", "update"], env=env, error_prefix="apt-get update")
        self.runner.run(
            ["apt-get", "install", "-y", *HOST_PACKAGES],
            env=env,
            error_prefix="apt-get install",
        )

    # ------------------------------------------------------------------
    def _configured_units(self) -> set[str]:
        return set((self.config.systemd.units or {}).values())

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self.runner.run(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            timeout=120,
        )


__all__ = ["HOST_PACKAGES", "SystemdRuntime"]

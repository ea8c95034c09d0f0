"""Web application (Laravel dashboard) commands run through the service runtime."""
from __future__ import annotations

import shutil
import subprocess
import sys
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..envfile import EnvFile
from ..errors import CommandError, ValidationError

if TYPE_CHECKING:
    from ..config import AppConfig
    from .runtime import ServiceRuntime

APP_SERVICE = "app"
ADDRESS_PROOF_DIR = "/opt/veriscope/veriscope_addressproof"


@dataclass(slots=True)
class WebSetupResult:
    """Outcome of :meth:`WebAppClient.full_setup`."""

    completed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WebAppClient:
    """Run artisan, composer and npm in the web application service."""

    runtime: ServiceRuntime
    config: AppConfig
    service: str = APP_SERVICE

    # Primitive commands --------------------------------------------
    def artisan(
        self, *args: str, check: bool = True, timeout: float | None = None
    ) -> subprocess.CompletedProcess[str]:
        """Run ``php artisan`` with *args*."""
        return self.runtime.exec(self.service, ["php", "artisan", *args], check=check, timeout=timeout)

    def composer(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run ``composer`` with *args*."""
        return self.runtime.exec(self.service, ["composer", *args], check=check)

    def npm(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Run ``npm`` with *args*."""
        return self.runtime.exec(self.service, ["npm", *args], check=check)

    # Composite operations ------------------------------------------
    def init_dashboard_env(self) -> bool:
        """Create the dashboard ``.env`` from ``.env.example`` when it is missing.

        Returns ``True`` when a file was created.
        """
        target = self.config.dashboard_env_path
        if target.exists():
            return False
        example = target.with_name(".env.example")
        if not example.exists():
            raise ValidationError(
                f"Neither {target} nor {example} exists",
                remediation="Check that the dashboard sources are present under the project root.",
            )
        shutil.copy2(example, target)
        target.chmod(0o600)
        return True

    def full_setup(self) -> WebSetupResult:
        """Install dependencies, migrate, seed, generate keys and build assets.

        Dependency installation and key generation are hard failures;
        migrations, seeding and the asset build only warn, since they are
        expected to fail harmlessly on re-runs.
        """
        result = WebSetupResult()
        self.composer("install")
        result.completed.append("composer install")

        for label, args in (
            ("migrate", ("migrate", "--force")),
            ("db:seed", ("db:seed", "--force")),
        ):
            outcome = self.artisan(*args, check=False)
            if outcome.returncode == 0:
                result.completed.append(label)
            else:
                result.warnings.append(f"{label} failed or was already applied")

        self.artisan("key:generate", "--force")
        result.completed.append("key:generate")
        self.artisan("passport:install", "--force")
        result.completed.append("passport:install")

        if EnvFile(self.config.dashboard_env_path).has_value("ENCRYPTION_KEY"):
            result.warnings.append("Encryption keys already exist, skipped encrypt:generate")
        else:
            self.artisan("encrypt:generate")
            result.completed.append("encrypt:generate")

        self.npm("install", "--legacy-peer-deps")
        result.completed.append("npm install")
        build = self.npm("run", "development", check=False)
        if build.returncode == 0:
            result.completed.append("npm run development")
        else:
            result.warnings.append(
                "Frontend build failed; rebuild later with: npm run development"
            )
        return result

    def install_horizon(self) -> None:
        """Install the queue dashboard and apply its migrations."""
        self.artisan("horizon:install")
        self.artisan("migrate", "--force")

    def install_passport_env(self) -> None:
        """Link the OAuth client credentials into the environment."""
        self.artisan("passportenv:link")

    def install_address_proofs(self) -> bool:
        """Download address proof data; return ``False`` if the download failed."""
        self.runtime.exec(self.service, ["mkdir", "-p", ADDRESS_PROOF_DIR])
        try:
            self.artisan("download:addressproof")
        except CommandError:
            return False
        return True

    def create_admin(self) -> None:
        """Run the interactive admin user creation with the operator's terminal."""
        self.runtime.exec(
            self.service,
            ["php", "artisan", "createuser:admin"],
            stdin=sys.stdin,
            stdout=sys.stdout,
        )

    def clear_cache(self) -> list[str]:
        """Clear the application caches; return the caches that failed to clear."""
        failed: list[str] = []
        for cache in _CACHES:
            if self.artisan(f"{cache}:clear", check=False).returncode != 0:
                failed.append(cache)
        return failed


_CACHES: Sequence[str] = ("cache", "config", "route", "view")


__all__ = ["ADDRESS_PROOF_DIR", "APP_SERVICE", "WebAppClient", "WebSetupResult"]

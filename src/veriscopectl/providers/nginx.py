"""Nginx provider for the dashboard's reverse-proxy site on host installs."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import CommandError
from ..templates import TemplateEngine
from .process import ProcessRunner

if TYPE_CHECKING:
    from ..config import AppConfig
    from .certbot import CertificatePaths

SITE_NAME = "ta-dashboard.conf"
PHP_FPM_SOCKET = "/var/run/php/php-fpm.sock"


class NginxError(CommandError):
    """Raised when nginx operations fail."""


@dataclass(slots=True)
class NginxRenderResult:
    """Outcome of rendering the site configuration."""

    changed: bool
    validation: subprocess.CompletedProcess[str] | None = None
    reload: subprocess.CompletedProcess[str] | None = None
    validation_error: str | None = None


@dataclass(slots=True)
class NginxProvider:
    """Render, validate and reload the dashboard site."""

    templates: TemplateEngine
    sites_enabled: Path = Path("/etc/nginx/sites-enabled")
    nginx_bin: str = "nginx"
    runner: ProcessRunner = field(default_factory=ProcessRunner)

    @property
    def site_path(self) -> Path:
        """Return the path of the rendered site configuration."""
        return self.sites_enabled / SITE_NAME

    def render_site(
        self,
        context: Mapping[str, object],
        *,
        reload_on_change: bool = True,
    ) -> NginxRenderResult:
        """Render the site configuration.

        When the content changed the result is validated with ``nginx -t``
        before reloading. Validation failures restore the previous file (or
        remove a first-time render) so nginx keeps a working configuration.
        """
        destination = self.site_path
        destination.parent.mkdir(parents=True, exist_ok=True)

        previous: tuple[str, int] | None = None
        if destination.exists():
            previous = (
                destination.read_text(encoding="utf-8"),
                destination.stat().st_mode,
            )

        changed = self.templates.render_to_path(
            "nginx/site.conf.j2",
            destination,
            context,
            mode=0o644,
        )
        if not changed:
            return NginxRenderResult(changed=False)

        try:
            validation_result = self.test_config()
        except NginxError as exc:
            if previous is None:
                destination.unlink(missing_ok=True)
            else:
                content, mode = previous
                destination.write_text(content, encoding="utf-8")
                destination.chmod(mode)
            return NginxRenderResult(changed=False, validation_error=str(exc))

        reload_result: subprocess.CompletedProcess[str] | None = None
        if reload_on_change:
            reload_result = self.reload()
        return NginxRenderResult(
            changed=True,
            validation=validation_result,
            reload=reload_result,
        )

    def site_exists(self) -> bool:
        """Return True when the rendered site configuration exists."""
        return self.site_path.exists()

    def test_config(self) -> subprocess.CompletedProcess[str]:
        """Run ``nginx -t`` to validate the configuration."""
        return self._run_nginx(["-t"])

    def reload(self) -> subprocess.CompletedProcess[str]:
        """Reload nginx to apply configuration changes."""
        return self._run_nginx(["-s", "reload"])

    # ------------------------------------------------------------------
    def _run_nginx(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        result = self.runner.run([self.nginx_bin, *args], check=False)
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise NginxError(
                f"{self.nginx_bin} {' '.join(args)} failed (exit {result.returncode}): {message}",
                returncode=result.returncode,
                output=message,
            )
        return result


def site_context(
    config: AppConfig,
    certificate: CertificatePaths | None,
) -> dict[str, object]:
    """Build the template context for the dashboard site.

    Without *certificate* the site is served over plain HTTP only.
    """
    return {
        "server_name": config.service_host or "localhost",
        "http_listen_port": 80,
        "https_listen_port": 443,
        "document_root": str(config.dashboard_env_path.parent / "public"),
        "node_api": "127.0.0.1:8080",
        "websocket_upstream": "127.0.0.1:6001",
        "php_fpm_socket": PHP_FPM_SOCKET,
        "tls": {
            "enabled": certificate is not None,
            "certificate": certificate.certificate if certificate else "",
            "certificate_key": certificate.private_key if certificate else "",
        },
    }


__all__ = ["NginxError", "NginxProvider", "NginxRenderResult", "SITE_NAME", "site_context"]

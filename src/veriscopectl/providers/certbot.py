"""Let's Encrypt certificates via certbot in webroot mode."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from cryptography import x509

from ..errors import CommandError, IntegrityError, ValidationError
from ..validators import certificate_domain_problems
from .process import ProcessRunner

if TYPE_CHECKING:
    from ..config import AppConfig

CERTBOT_SERVICE = "certbot"


@dataclass(slots=True, frozen=True)
class CertificatePaths:
    """Locations of an issued certificate chain and key, as seen by nginx."""

    domain: str
    certificate: str
    private_key: str


@dataclass(slots=True, frozen=True)
class CertificateExpiry:
    """Validity window summary for an issued certificate."""

    domain: str
    not_valid_after: datetime
    days_remaining: int
    warn_days: int

    @property
    def expired(self) -> bool:
        """Return ``True`` once the certificate is no longer valid."""
        return self.days_remaining < 0

    @property
    def expiring_soon(self) -> bool:
        """Return ``True`` when renewal is due."""
        return self.days_remaining < self.warn_days

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "domain": self.domain,
            "not_valid_after": self.not_valid_after.isoformat(),
            "days_remaining": self.days_remaining,
            "expired": self.expired,
            "expiring_soon": self.expiring_soon,
        }


@dataclass(slots=True)
class CertbotProvider:
    """Issue, renew and inspect certificates for the service host.

    In container mode certbot runs as a one-off of the ``certbot`` compose
    service sharing the ACME webroot with nginx; in host mode the local
    ``certbot`` binary is used.
    """

    config: AppConfig
    runner: ProcessRunner = field(default_factory=ProcessRunner)

    def paths_for(self, domain: str) -> CertificatePaths:
        """Return where certbot stores the material for *domain*."""
        live = PurePosixPath(str(self.config.certificates.live_dir)) / domain
        return CertificatePaths(
            domain=domain,
            certificate=str(live / "fullchain.pem"),
            private_key=str(live / "privkey.pem"),
        )

    def issue(self, domain: str) -> CertificatePaths:
        """Obtain a certificate for *domain* using the HTTP-01 webroot challenge."""
        problems = certificate_domain_problems(domain)
        if problems:
            raise ValidationError(
                f"'{domain}' cannot be used with Let's Encrypt",
                reasons=problems,
                remediation="Set service_host to a publicly resolvable domain name.",
            )
        self.runner.run(
            [
                *self._certbot(),
                "certonly",
                "--webroot",
                f"--webroot-path={self.config.certificates.webroot}",
                "--non-interactive",
                "--agree-tos",
                "--register-unsafely-without-email",
                "--preferred-challenges",
                "http",
                "-d",
                domain,
            ],
            error_prefix="certbot certonly",
            timeout=600,
        )
        return self.paths_for(domain)

    def renew(self) -> bool:
        """Renew every certificate that is due; return ``False`` when certbot refused."""
        result = self.runner.run(
            [*self._certbot(), "renew", "--non-interactive"],
            check=False,
            error_prefix="certbot renew",
            timeout=600,
        )
        return result.returncode == 0

    def expiry(self, domain: str, *, now: datetime | None = None) -> CertificateExpiry:
        """Read the issued certificate for *domain* and report its expiry."""
        pem = self._read_certificate(self.paths_for(domain).certificate)
        try:
            certificate = x509.load_pem_x509_certificate(pem)
        except ValueError as exc:
            raise IntegrityError(f"Certificate for {domain} could not be parsed: {exc}") from exc
        not_after = certificate.not_valid_after_utc
        moment = now or datetime.now(tz=UTC)
        return CertificateExpiry(
            domain=domain,
            not_valid_after=not_after,
            days_remaining=(not_after - moment).days,
            warn_days=self.config.certificates.warn_expiry_days,
        )

    # ------------------------------------------------------------------
    def _compose_run(self, entrypoint: str) -> list[str]:
        compose_file = Path(self.config.compose.file)
        if not compose_file.is_absolute():
            compose_file = self.config.project_root / compose_file
        return [
            self.config.compose.docker_bin,
            "compose",
            "-f",
            str(compose_file),
            "run",
            "--rm",
            "--no-deps",
            "-T",
            "--entrypoint",
            entrypoint,
            CERTBOT_SERVICE,
        ]

    def _certbot(self) -> list[str]:
        if self.config.is_host_mode:
            return ["certbot"]
        return self._compose_run("certbot")

    def _read_certificate(self, path: str) -> bytes:
        if self.config.is_host_mode:
            try:
                return Path(path).read_bytes()
            except FileNotFoundError as exc:
                raise ValidationError(
                    f"No certificate found at {path}",
                    remediation="Issue one with: veriscopectl cert issue",
                ) from exc
        try:
            result = self.runner.run([*self._compose_run("cat"), path], error_prefix="read certificate")
        except CommandError as exc:
            raise ValidationError(
                f"No certificate found at {path}",
                remediation="Issue one with: veriscopectl cert issue",
            ) from exc
        return (result.stdout or "").encode("ascii", errors="replace")


__all__ = ["CERTBOT_SERVICE", "CertbotProvider", "CertificateExpiry", "CertificatePaths"]

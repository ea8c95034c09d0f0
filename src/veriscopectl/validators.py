"""Predicates and read-only probes used to gate provisioning.

Nothing in this module mutates state. Environment probes fail open: when the
host offers no way to check something, the probe reports it as
available/reachable instead of blocking the operator.
"""
from __future__ import annotations

import ipaddress
import re
import shutil
import socket
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

import httpx

from .errors import InvalidNetworkTargetError, ValidationError
from .networks import NetworkTarget

WEAK_PASSWORDS: frozenset[str] = frozenset(
    {
        "trustanchor_dev",
        "password",
        "Password123",
        "admin",
        "trustanchor",
        "postgres",
        "root",
        "123456",
        "password123",
        "admin123",
    }
)

DEFAULT_MIN_PASSWORD_LENGTH = 16
PRODUCTION_MIN_PASSWORD_LENGTH = 20
DEVELOPMENT_MIN_PASSWORD_LENGTH = 12

RESERVED_SUFFIXES: tuple[str, ...] = (".local", ".test", ".example", ".invalid", ".localhost")
_LOOPBACK_PATTERN = re.compile(r"^(localhost|127\.\d+\.\d+\.\d+)$")
_DEV_HOST_PATTERN = re.compile(r"^(localhost|127\.0\.0\.1|.*\.local|.*\.test)$")
_DEV_APP_ENVS = {"local", "development"}


class Tier(str, Enum):
    """Deployment tier; decides how strict credential checks are."""

    DEVELOPMENT = "development"
    PRODUCTION = "production"


@dataclass(slots=True, frozen=True)
class PasswordCheck:
    """Outcome of a password check."""

    ok: bool
    reasons: tuple[str, ...] = field(default_factory=tuple)
    warnings: tuple[str, ...] = field(default_factory=tuple)

    def raise_for_failure(self, label: str = "Password") -> None:
        """Raise :class:`ValidationError` when the check failed."""
        if not self.ok:
            raise ValidationError(
                f"{label} rejected: {'; '.join(self.reasons)}",
                reasons=self.reasons,
            )


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


def is_weak_password(password: str) -> bool:
    """Return ``True`` when *password* is on the deny-list."""
    return password in WEAK_PASSWORDS


def validate_password_strength(
    password: str | None,
    min_length: int = DEFAULT_MIN_PASSWORD_LENGTH,
) -> PasswordCheck:
    """Check *password* against the deny-list and *min_length*.

    Missing digits or letters only produce warnings.
    """
    if not password:
        return PasswordCheck(ok=False, reasons=("Password cannot be empty",))
    if is_weak_password(password):
        return PasswordCheck(ok=False, reasons=("Password is a commonly used weak password",))

    reasons: list[str] = []
    if len(password) < min_length:
        reasons.append(
            f"Password must be at least {min_length} characters (got {len(password)})"
        )
    warnings: list[str] = []
    if not any(char.isdigit() for char in password):
        warnings.append("Password should contain at least one number")
    if not any(char.isascii() and char.isalpha() for char in password):
        warnings.append("Password should contain at least one letter")
    return PasswordCheck(ok=not reasons, reasons=tuple(reasons), warnings=tuple(warnings))


def validate_credential_for_tier(password: str | None, tier: Tier) -> PasswordCheck:
    """Apply the tier policy to *password*.

    Production failures are hard failures; in development every weakness is
    downgraded to a warning and the check passes.
    """
    if tier is Tier.PRODUCTION:
        return validate_password_strength(password, PRODUCTION_MIN_PASSWORD_LENGTH)

    check = validate_password_strength(password, DEVELOPMENT_MIN_PASSWORD_LENGTH)
    if check.ok:
        return check
    if password and is_weak_password(password):
        notes = ("Development mode: using a weak password; it would be rejected in production",)
    else:
        notes = tuple(
            f"Development mode: {reason}; it would be rejected in production"
            for reason in check.reasons
        )
    return PasswordCheck(ok=True, warnings=notes + check.warnings)


def detect_tier(
    env_values: Mapping[str, str | None],
    *,
    compose_file: str | None = None,
    override: str | None = None,
) -> Tier:
    """Return the deployment tier from the configured marker signals.

    An explicit ``override`` (``development`` or ``production``) wins. Otherwise
    the tier is development when the compose file name mentions ``dev``,
    ``APP_ENV`` is ``local``/``development``, or the service host looks local.
    """
    if override and override != "auto":
        return Tier(override)
    if compose_file and "dev" in compose_file:
        return Tier.DEVELOPMENT
    if (env_values.get("APP_ENV") or "") in _DEV_APP_ENVS:
        return Tier.DEVELOPMENT
    host = env_values.get("VERISCOPE_SERVICE_HOST") or ""
    if host and _DEV_HOST_PATTERN.match(host):
        return Tier.DEVELOPMENT
    return Tier.PRODUCTION


# ---------------------------------------------------------------------------
# Certificate domains
# ---------------------------------------------------------------------------


def certificate_domain_problems(domain: str | None) -> list[str]:
    """Return every reason *domain* cannot receive a public certificate."""
    text = (domain or "").strip().lower().rstrip(".")
    if not text:
        return ["domain is empty"]
    problems: list[str] = []
    if _LOOPBACK_PATTERN.match(text):
        problems.append(f"'{text}' is a loopback address")
    for suffix in RESERVED_SUFFIXES:
        if text.endswith(suffix):
            problems.append(f"'{suffix}' is a reserved top-level domain")
    if _is_ip_literal(text):
        if not text.startswith("127."):
            problems.append("IP addresses cannot receive certificates")
    elif "." not in text:
        problems.append("single-label hostnames cannot receive certificates")
    return problems


def is_eligible_certificate_domain(domain: str | None) -> bool:
    """Return ``True`` when certificate issuance may be attempted for *domain*."""
    return not certificate_domain_problems(domain)


def _is_ip_literal(text: str) -> bool:
    candidate = text.strip("[]")
    try:
        ipaddress.ip_address(candidate)
    except ValueError:
        return False
    return True


# ---------------------------------------------------------------------------
# Environment probes
# ---------------------------------------------------------------------------


def is_port_available(port: int, host: str = "0.0.0.0") -> bool:
    """Return ``True`` when nothing is listening on *port*.

    Without the privilege to bind *port*, a local connect attempt decides:
    a refused connection means the port is free.
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind((host, port))
    except PermissionError:
        return not _accepts_connections("127.0.0.1", port)
    except OSError:
        return False
    return True


def _accepts_connections(host: str, port: int, timeout: float = 1.0) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        return sock.connect_ex((host, port)) == 0


def available_disk_space_gb(path: Path) -> int | None:
    """Return the whole gigabytes free on the filesystem holding *path*.

    ``None`` means the free space could not be determined.
    """
    existing = Path(path)
    while not existing.exists() and existing != existing.parent:
        existing = existing.parent
    try:
        usage = shutil.disk_usage(existing)
    except OSError:
        return None
    return int(usage.free // (1024**3))


def can_resolve_dns(host: str) -> bool:
    """Return ``True`` when *host* resolves."""
    try:
        socket.getaddrinfo(host, None)
    except socket.gaierror:
        return False
    except OSError:
        return True
    return True


def has_internet_reachability(
    hosts: Iterable[str] = ("8.8.8.8", "1.1.1.1"),
    *,
    port: int = 53,
    timeout: float = 3.0,
) -> bool:
    """Return ``True`` when any of *hosts* accepts a TCP connection."""
    for host in hosts:
        try:
            with socket.create_connection((host, port), timeout=timeout):
                return True
        except OSError:
            continue
    return False


def can_reach_registry(url: str = "https://hub.docker.com/", *, timeout: float = 5.0) -> bool:
    """Return ``True`` when the container image registry answers 200."""
    if "://" not in url:
        url = f"https://{url}/"
    try:
        response = httpx.get(url, timeout=timeout, follow_redirects=True)
    except httpx.HTTPError:
        return False
    return response.status_code == 200


# ---------------------------------------------------------------------------
# Deployment settings
# ---------------------------------------------------------------------------


def validate_deployment_settings(
    *,
    service_host: str | None,
    common_name: str | None,
    network: str | None,
) -> None:
    """Raise :class:`ValidationError` listing every missing or invalid setting."""
    reasons: list[str] = []
    if not service_host or service_host == "unset":
        reasons.append(
            "service_host is not set; use your domain or 'localhost' for development"
        )
    if not common_name or common_name == "unset":
        reasons.append("common_name is not set; use your organization name")
    if not network or network == "unset":
        reasons.append(f"network is not set; choose one of: {NetworkTarget.choices()}")
    else:
        try:
            NetworkTarget.parse(network)
        except InvalidNetworkTargetError as exc:
            reasons.append(str(exc))
    if reasons:
        raise ValidationError(
            "Deployment settings are incomplete.",
            reasons=reasons,
            remediation="Set the missing values in the config file or VERISCOPECTL_* variables.",
        )


__all__ = [
    "PasswordCheck",
    "Tier",
    "WEAK_PASSWORDS",
    "available_disk_space_gb",
    "can_reach_registry",
    "can_resolve_dns",
    "certificate_domain_problems",
    "detect_tier",
    "has_internet_reachability",
    "is_eligible_certificate_domain",
    "is_port_available",
    "is_weak_password",
    "validate_credential_for_tier",
    "validate_deployment_settings",
    "validate_password_strength",
]

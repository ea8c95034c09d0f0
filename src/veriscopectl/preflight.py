"""Pre-flight host checks run before an install.

Each check yields a :class:`CheckResult`; hard checks that fail block the
install unless the operator forces it, soft checks only warn.
"""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .config import DEFAULT_PORTS
from .errors import PreflightError
from .validators import (
    available_disk_space_gb,
    can_reach_registry,
    can_resolve_dns,
    has_internet_reachability,
    is_port_available,
)

if TYPE_CHECKING:
    from .config import AppConfig
    from .providers.runtime import ServiceRuntime


class CheckStatus(str, Enum):
    """Outcome of a single pre-flight check."""

    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


@dataclass(slots=True, frozen=True)
class CheckResult:
    """Result of one pre-flight check."""

    id: str
    status: CheckStatus
    message: str
    hard: bool = True
    remediation: str | None = None
    data: Mapping[str, Any] | None = None

    @property
    def is_failure(self) -> bool:
        """Return ``True`` for a failed hard check."""
        return self.status is CheckStatus.RED

    @property
    def is_warning(self) -> bool:
        """Return ``True`` for a warning."""
        return self.status is CheckStatus.YELLOW

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "id": self.id,
            "status": self.status.value,
            "message": self.message,
            "hard": self.hard,
        }
        if self.remediation:
            payload["remediation"] = self.remediation
        if self.data:
            payload["data"] = dict(self.data)
        return payload


@dataclass(slots=True, frozen=True)
class PreflightReport:
    """All pre-flight results in the order they ran."""

    results: Sequence[CheckResult]

    @property
    def hard_failures(self) -> list[CheckResult]:
        """Return the failed hard checks."""
        return [result for result in self.results if result.is_failure]

    @property
    def warnings(self) -> list[CheckResult]:
        """Return checks that produced warnings."""
        return [result for result in self.results if result.is_warning]

    @property
    def passed(self) -> bool:
        """Return ``True`` when no hard check failed."""
        return not self.hard_failures

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "passed": self.passed,
            "results": [result.to_dict() for result in self.results],
            "totals": {
                status.value: sum(1 for r in self.results if r.status is status)
                for status in CheckStatus
            },
        }


@dataclass(slots=True, frozen=True)
class PreflightProbes:
    """The host probes used by :func:`preflight_check`; swapped out in tests."""

    port_available: Callable[[int], bool] = is_port_available
    disk_free_gb: Callable[[Path], int | None] = available_disk_space_gb
    resolves: Callable[[str], bool] = can_resolve_dns
    internet: Callable[..., bool] = has_internet_reachability
    registry: Callable[..., bool] = can_reach_registry


def preflight_check(
    config: AppConfig,
    runtime: ServiceRuntime,
    *,
    probes: PreflightProbes | None = None,
) -> PreflightReport:
    """Run every pre-flight check and return the report."""
    probes = probes or PreflightProbes()
    settings = config.preflight
    results: list[CheckResult] = [_check_daemon(config, runtime)]
    results.extend(_check_ports(settings.ports or DEFAULT_PORTS, probes))
    results.append(_check_disk(config, probes))

    if probes.resolves(settings.dns_host):
        results.append(CheckResult("dns", CheckStatus.GREEN, "DNS resolution is working"))
    else:
        results.append(
            CheckResult(
                "dns",
                CheckStatus.RED,
                f"DNS resolution of {settings.dns_host} failed",
                remediation="Check /etc/resolv.conf and the host's network configuration.",
            )
        )

    if probes.internet(settings.reachability_hosts, timeout=settings.reachability_timeout):
        results.append(
            CheckResult("internet", CheckStatus.GREEN, "Internet connectivity is available", hard=False)
        )
    else:
        results.append(
            CheckResult(
                "internet",
                CheckStatus.YELLOW,
                "No internet connectivity detected; certificates and image pulls may fail",
                hard=False,
            )
        )

    if not config.is_host_mode:
        if probes.registry(settings.registry_host, timeout=settings.reachability_timeout):
            results.append(
                CheckResult("registry", CheckStatus.GREEN, "Docker Hub is reachable", hard=False)
            )
        else:
            results.append(
                CheckResult(
                    "registry",
                    CheckStatus.YELLOW,
                    "Docker Hub is not reachable; image pulls may fail",
                    hard=False,
                )
            )

    results.append(_check_existing_instances(runtime))
    return PreflightReport(results=tuple(results))


def require_preflight(report: PreflightReport, *, override: bool = False) -> None:
    """Raise :class:`PreflightError` when hard checks failed and no override was given."""
    if report.passed or override:
        return
    failures = [result.message for result in report.hard_failures]
    raise PreflightError(
        f"{len(failures)} critical pre-flight check(s) failed",
        failures=failures,
        remediation="Resolve the issues above or re-run with --force to continue anyway.",
    )


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def _check_daemon(config: AppConfig, runtime: ServiceRuntime) -> CheckResult:
    label = "systemd" if config.is_host_mode else "Docker daemon"
    if runtime.daemon_alive():
        return CheckResult("daemon", CheckStatus.GREEN, f"{label} is running")
    remediation = (
        "Boot the host with systemd as init."
        if config.is_host_mode
        else "Start Docker: sudo systemctl start docker"
    )
    return CheckResult(
        "daemon", CheckStatus.RED, f"{label} is not running", remediation=remediation
    )


def _check_ports(ports: Mapping[int, str], probes: PreflightProbes) -> Iterable[CheckResult]:
    for port, name in sorted(ports.items()):
        if probes.port_available(port):
            yield CheckResult(
                f"port-{port}", CheckStatus.GREEN, f"Port {port} ({name}) is available"
            )
        else:
            yield CheckResult(
                f"port-{port}",
                CheckStatus.RED,
                f"Port {port} ({name}) is already in use",
                remediation=f"Stop whatever listens on port {port} (ss -ltnp 'sport = :{port}').",
            )


def _check_disk(config: AppConfig, probes: PreflightProbes) -> CheckResult:
    settings = config.preflight
    free = probes.disk_free_gb(config.project_root)
    data = {"path": str(config.project_root), "free_gb": free}
    if free is None:
        return CheckResult(
            "disk",
            CheckStatus.YELLOW,
            "Could not determine free disk space",
            hard=False,
            data=data,
        )
    if free < settings.min_disk_gb:
        return CheckResult(
            "disk",
            CheckStatus.RED,
            f"Insufficient disk space: {free}GB free (minimum {settings.min_disk_gb}GB)",
            data=data,
        )
    if free < settings.recommended_disk_gb:
        return CheckResult(
            "disk",
            CheckStatus.YELLOW,
            f"{free}GB free is below the recommended {settings.recommended_disk_gb}GB",
            hard=False,
            data=data,
        )
    return CheckResult("disk", CheckStatus.GREEN, f"{free}GB free", data=data)


def _check_existing_instances(runtime: ServiceRuntime) -> CheckResult:
    running = runtime.running_instances()
    existing = runtime.list_instances()
    data = {"running": running, "existing": existing}
    if running:
        return CheckResult(
            "instances",
            CheckStatus.YELLOW,
            f"Found {len(running)} running deployment instance(s): {', '.join(running)}",
            hard=False,
            data=data,
        )
    if existing:
        return CheckResult(
            "instances",
            CheckStatus.GREEN,
            f"Found {len(existing)} stopped instance(s); a fresh install replaces them",
            hard=False,
            data=data,
        )
    return CheckResult(
        "instances", CheckStatus.GREEN, "No existing deployment instances", hard=False, data=data
    )


__all__ = [
    "CheckResult",
    "CheckStatus",
    "PreflightProbes",
    "PreflightReport",
    "preflight_check",
    "require_preflight",
]

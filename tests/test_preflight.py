"""Pre-flight check tests."""
from __future__ import annotations

from collections.abc import Callable

import pytest

from tests.fakes import FakeRuntime
from veriscopectl.config import AppConfig
from veriscopectl.errors import PreflightError
from veriscopectl.preflight import (
    CheckStatus,
    PreflightProbes,
    preflight_check,
    require_preflight,
)


def _probes(
    *,
    busy: set[int] | None = None,
    free_gb: int | None = 100,
    dns: bool = True,
    internet: bool = True,
    registry: bool = True,
) -> PreflightProbes:
    return PreflightProbes(
        port_available=lambda port: port not in (busy or set()),
        disk_free_gb=lambda path: free_gb,
        resolves=lambda host: dns,
        internet=lambda hosts, timeout: internet,
        registry=lambda host, timeout: registry,
    )


def _by_id(report: object) -> dict[str, CheckStatus]:
    return {result.id: result.status for result in report.results}  # type: ignore[attr-defined]


def test_all_checks_green(make_config: Callable[..., AppConfig]) -> None:
    """A healthy host passes with no warnings."""
    report = preflight_check(make_config(), FakeRuntime(), probes=_probes())

    assert report.passed is True
    assert report.warnings == []
    statuses = _by_id(report)
    assert statuses["daemon"] is CheckStatus.GREEN
    assert statuses["port-5432"] is CheckStatus.GREEN
    assert statuses["registry"] is CheckStatus.GREEN
    assert report.to_dict()["totals"] == {"green": len(report.results), "yellow": 0, "red": 0}


def test_hard_failures_block_install(make_config: Callable[..., AppConfig]) -> None:
    """Busy ports, no daemon, low disk and DNS failures are hard failures."""
    runtime = FakeRuntime()
    runtime.daemon = False

    report = preflight_check(
        make_config(), runtime, probes=_probes(busy={443}, free_gb=5, dns=False)
    )

    assert report.passed is False
    failed = {result.id for result in report.hard_failures}
    assert failed == {"daemon", "port-443", "disk", "dns"}
    with pytest.raises(PreflightError) as excinfo:
        require_preflight(report)
    assert "Port 443 (HTTPS) is already in use" in excinfo.value.failures
    assert excinfo.value.exit_code == 3

    require_preflight(report, override=True)


def test_soft_checks_only_warn(make_config: Callable[..., AppConfig]) -> None:
    """Connectivity and disk headroom problems are warnings."""
    runtime = FakeRuntime(running={"veriscope-app-1"})
    runtime.instances = ["veriscope-app-1"]

    report = preflight_check(
        make_config(), runtime, probes=_probes(free_gb=30, internet=False, registry=False)
    )

    assert report.passed is True
    assert {result.id for result in report.warnings} == {"disk", "internet", "registry", "instances"}


def test_unknown_disk_space_is_a_warning(make_config: Callable[..., AppConfig]) -> None:
    """A check that cannot tell fails open."""
    report = preflight_check(make_config(), FakeRuntime(), probes=_probes(free_gb=None))

    assert _by_id(report)["disk"] is CheckStatus.YELLOW


def test_host_mode_skips_registry_check(make_config: Callable[..., AppConfig]) -> None:
    """Image registry reachability only matters for containers."""
    report = preflight_check(make_config(mode="host"), FakeRuntime(mode="host"), probes=_probes())

    assert "registry" not in _by_id(report)
    assert report.results[0].message == "systemd is running"


def test_configured_ports_are_checked(make_config: Callable[..., AppConfig]) -> None:
    """Extra configured ports are checked alongside the defaults, in ascending order."""
    config = make_config(preflight={"ports": {8080: "Node API"}})

    report = preflight_check(config, FakeRuntime(), probes=_probes())

    port_ids = [result.id for result in report.results if result.id.startswith("port-")]
    assert port_ids[-1] == "port-8080"
    assert port_ids == sorted(port_ids, key=lambda item: int(item.split("-")[1]))

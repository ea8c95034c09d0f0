"""Installation orchestrator tests."""
from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from tests.fakes import FakeRuntime
from veriscopectl.config import AppConfig
from veriscopectl.confirm import AutoConfirmer, Confirmer, DeclineConfirmer
from veriscopectl.errors import CommandError, OperatorAbort, ValidationError
from veriscopectl.logging import OperationScope
from veriscopectl.networks import NetworkTarget
from veriscopectl.orchestrator import (
    DEFAULT_STEPS,
    ActionResult,
    InstallationStep,
    InstallContext,
    Installer,
    StepStatus,
)
from veriscopectl.validators import Tier


def _collaborators(
    config: AppConfig,
    *,
    confirmer: Confirmer | None = None,
    automated: bool = False,
    scope: OperationScope | None = None,
) -> Callable[[NetworkTarget, Tier], InstallContext]:
    placeholder: Any = object()

    def build(target: NetworkTarget, tier: Tier) -> InstallContext:
        return InstallContext(
            config=config,
            runtime=FakeRuntime(mode=config.mode),  # type: ignore[arg-type]
            webapp=placeholder,
            db=placeholder,
            cache=placeholder,
            certbot=placeholder,
            proxy=None,
            feed=placeholder,
            rpc=placeholder,
            confirmer=confirmer or AutoConfirmer(),
            tier=tier,
            target=target,
            automated=automated,
            scope=scope,
        )

    return build


def _recording_steps(ran: list[str], *, fail: str | None = None) -> list[InstallationStep]:
    def action_for(name: str) -> Callable[[InstallContext], ActionResult]:
        def action(ctx: InstallContext) -> ActionResult:
            ran.append(name)
            if name == fail:
                raise CommandError("docker compose up failed", returncode=1, output="boom")
            return ActionResult(f"{name} done")

        return action

    return [InstallationStep(name, action_for(name)) for name in ("one", "two", "three")]


def test_runs_every_step_in_order(make_config: Callable[..., AppConfig], project: Any) -> None:
    """A clean run reports success for each step."""
    config = make_config(network="fed_testnet")
    ran: list[str] = []

    report = Installer(config, _collaborators(config), steps=_recording_steps(ran)).run()

    assert ran == ["one", "two", "three"]
    assert report.ok is True
    assert report.target == "fed_testnet"
    assert [o.status for o in report.outcomes] == [StepStatus.SUCCESS] * 3
    assert report.retry_command is None


def test_failure_stops_later_steps(make_config: Callable[..., AppConfig], project: Any) -> None:
    """The failing step is reported with a retry command; the rest are not run."""
    config = make_config(network="fed_testnet")
    ran: list[str] = []

    report = Installer(config, _collaborators(config), steps=_recording_steps(ran, fail="two")).run()

    assert ran == ["one", "two"]
    statuses = {o.name: o.status for o in report.outcomes}
    assert statuses == {
        "one": StepStatus.SUCCESS,
        "two": StepStatus.FAILED,
        "three": StepStatus.NOT_RUN,
    }
    assert report.ok is False
    assert report.retry_command == "veriscopectl install --from two"
    assert report.failed_step is not None
    assert report.failed_step.exit_code == 4


def test_resume_skips_earlier_steps(make_config: Callable[..., AppConfig], project: Any) -> None:
    """Resuming runs the named step and everything after it."""
    config = make_config(network="veriscope_testnet")
    ran: list[str] = []

    report = Installer(config, _collaborators(config), steps=_recording_steps(ran)).run(
        start_at="two"
    )

    assert ran == ["two", "three"]
    assert report.outcomes[0].status is StepStatus.SKIPPED
    assert report.outcomes[0].detail == "resumed at two"


def test_unknown_resume_step_is_rejected(
    make_config: Callable[..., AppConfig], project: Any
) -> None:
    """Resuming from a step that does not exist is a validation error."""
    config = make_config(network="fed_testnet")

    with pytest.raises(ValidationError) as excinfo:
        Installer(config, _collaborators(config), steps=_recording_steps([])).run(start_at="nope")
    assert "valid steps: one, two, three" in excinfo.value.reasons[0]


def test_invalid_target_halts_before_any_step(
    make_config: Callable[..., AppConfig], project: Any
) -> None:
    """An unsupported network runs nothing."""
    config = make_config(network="ropsten")
    ran: list[str] = []

    report = Installer(config, _collaborators(config), steps=_recording_steps(ran)).run()

    assert ran == []
    assert report.ok is False
    assert report.halted is not None and "ropsten" in report.halted
    assert {o.status for o in report.outcomes} == {StepStatus.NOT_RUN}
    assert report.to_dict()["target"] is None


def test_satisfied_step_is_not_run(make_config: Callable[..., AppConfig], project: Any) -> None:
    """A step whose result is already in place is reported as satisfied."""
    config = make_config(network="fed_testnet")
    ran: list[str] = []
    steps = [
        InstallationStep(
            "cert",
            lambda ctx: ran.append("cert"),  # type: ignore[arg-type,return-value]
            is_satisfied=lambda ctx: True,
        )
    ]

    report = Installer(config, _collaborators(config), steps=steps).run()

    assert ran == []
    assert report.outcomes[0].status is StepStatus.SATISFIED


def test_declined_optional_step_is_skipped(
    make_config: Callable[..., AppConfig], project: Any
) -> None:
    """Declining an optional step does not fail the install."""
    config = make_config(network="fed_testnet")

    def decline(ctx: InstallContext) -> ActionResult:
        raise OperatorAbort("Cancelled: create admin user")

    steps = [
        InstallationStep("extras", decline, optional=True),
        InstallationStep("required", decline),
    ]

    report = Installer(config, _collaborators(config), steps=steps).run()

    assert report.outcomes[0].status is StepStatus.SKIPPED
    assert report.outcomes[1].status is StepStatus.FAILED
    assert report.outcomes[1].exit_code == 0


def test_automated_run_skips_interactive_step(
    make_config: Callable[..., AppConfig], project: Any
) -> None:
    """Interactive steps are skipped with a remediation command when automated."""
    config = make_config(network="fed_testnet")
    steps = [
        InstallationStep(
            "admin",
            lambda ctx: ActionResult("created"),
            automated_skip=True,
            remediation="veriscopectl install --from admin",
        )
    ]

    report = Installer(config, _collaborators(config, automated=True), steps=steps).run()

    outcome = report.outcomes[0]
    assert outcome.status is StepStatus.SKIPPED
    assert outcome.remediation == "veriscopectl install --from admin"
    assert report.ok is True


def test_warnings_are_prefixed_and_logged(
    make_config: Callable[..., AppConfig], project: Any
) -> None:
    """Step warnings surface on the report and each step lands in the scope."""
    config = make_config(network="fed_testnet")
    scope = OperationScope(command="install", args={}, target={})
    steps = [InstallationStep("chain", lambda ctx: ActionResult("ok", warnings=["stale genesis"]))]

    report = Installer(config, _collaborators(config, scope=scope), steps=steps).run()

    assert report.warnings == ["chain: stale genesis"]
    assert scope.steps[0]["name"] == "install.chain"
    assert scope.steps[0]["status"] == "success"
    assert report.to_dict()["steps"] == [
        {"name": "chain", "status": "success", "detail": "ok", "warnings": ["stale genesis"]}
    ]


def test_default_steps_depend_on_mode(make_config: Callable[..., AppConfig]) -> None:
    """Peer refresh is host-only; the interactive extras are container-only."""
    container = Installer(make_config(), _collaborators(make_config()))
    host = Installer(make_config(mode="host"), _collaborators(make_config(mode="host")))

    assert container.step_names()[0] == "dependency-refresh"
    assert "admin-and-extras" in container.step_names()
    assert "peer-refresh" not in container.step_names()
    assert "peer-refresh" in host.step_names()
    assert "admin-and-extras" not in host.step_names()


def test_tier_follows_service_host(make_config: Callable[..., AppConfig], project: Any) -> None:
    """A local service host makes the deployment a development one."""
    config = make_config(network="fed_testnet", service_host="localhost")

    assert Installer(config, _collaborators(config)).resolve_tier() is Tier.DEVELOPMENT
    forced = make_config(network="fed_testnet", service_host="localhost", tier="production")
    assert Installer(forced, _collaborators(forced)).resolve_tier() is Tier.PRODUCTION


def _certificate_step() -> list[InstallationStep]:
    return [step for step in DEFAULT_STEPS if step.name == "certificate"]


def test_certificate_for_local_host_skipped_in_development(
    make_config: Callable[..., AppConfig], project: Any
) -> None:
    """Development deployments carry on without a certificate."""
    config = make_config(network="fed_testnet", service_host="localhost")

    report = Installer(config, _collaborators(config), steps=_certificate_step()).run()

    outcome = report.outcomes[0]
    assert report.tier == "development"
    assert outcome.status is StepStatus.SKIPPED
    assert outcome.warnings[0].startswith("Certificate skipped:")


def test_certificate_for_local_host_fails_in_production(
    make_config: Callable[..., AppConfig], project: Any
) -> None:
    """Production deployments need a public domain."""
    config = make_config(network="fed_testnet", service_host="localhost", tier="production")

    report = Installer(config, _collaborators(config), steps=_certificate_step()).run()

    assert report.outcomes[0].status is StepStatus.FAILED
    assert report.outcomes[0].exit_code == 2


def test_extras_with_nothing_selected_are_skipped(
    make_config: Callable[..., AppConfig], project: Any
) -> None:
    """Declining both extras reports the step as skipped."""
    config = make_config(network="fed_testnet")
    steps = [step for step in DEFAULT_STEPS if step.name == "admin-and-extras"]

    report = Installer(
        config, _collaborators(config, confirmer=DeclineConfirmer()), steps=steps
    ).run()

    assert report.outcomes[0].status is StepStatus.SKIPPED
    assert report.outcomes[0].detail == "Nothing selected"

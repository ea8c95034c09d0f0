"""Full installation as an ordered sequence of resumable steps.

The installer resolves the network target and the deployment tier once,
then runs each step in order. The first failing step stops the run; the
remaining steps are reported as ``not-run`` and the report carries the
command that resumes from the failed step.
"""
from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from .confirm import Confirmer, require
from .credentials import provision_database_credentials
from .envfile import EnvFile
from .exit_codes import ExitCode
from .errors import (
    InvalidNetworkTargetError,
    OperatorAbort,
    ValidationError,
    VeriscopeError,
)
from .networks import NetworkTarget, configure_chain
from .providers.nginx import NginxError, site_context
from .registry import apply_peer_refresh
from .secrets import provision_sealer_keypair
from .validators import Tier, certificate_domain_problems, detect_tier

if TYPE_CHECKING:
    from .config import AppConfig
    from .logging import OperationScope
    from .providers.cache import RedisClient
    from .providers.certbot import CertbotProvider
    from .providers.database import PostgresClient
    from .providers.nginx import NginxProvider
    from .providers.runtime import ServiceRuntime
    from .providers.webapp import WebAppClient
    from .registry import NodeRpcClient, PeerFeedClient

BOTH_MODES = frozenset({"container", "host"})


class StepStatus(str, Enum):
    """Terminal state of a step within one run."""

    SUCCESS = "success"
    SKIPPED = "skipped"
    SATISFIED = "satisfied"
    FAILED = "failed"
    NOT_RUN = "not-run"


@dataclass(slots=True)
class ActionResult:
    """What a step action reports back when it returns normally."""

    detail: str = ""
    warnings: list[str] = field(default_factory=list)
    skipped: bool = False


@dataclass(slots=True, frozen=True)
class InstallContext:
    """Collaborators and run-wide facts shared by every step."""

    config: AppConfig
    runtime: ServiceRuntime
    webapp: WebAppClient
    db: PostgresClient
    cache: RedisClient
    certbot: CertbotProvider
    proxy: NginxProvider | None
    feed: PeerFeedClient
    rpc: NodeRpcClient
    confirmer: Confirmer
    tier: Tier
    target: NetworkTarget
    automated: bool = False
    scope: OperationScope | None = None


@dataclass(slots=True, frozen=True)
class InstallationStep:
    """A named step of the install."""

    name: str
    action: Callable[[InstallContext], ActionResult | None]
    is_satisfied: Callable[[InstallContext], bool] | None = None
    optional: bool = False
    automated_skip: bool = False
    remediation: str | None = None
    modes: frozenset[str] = BOTH_MODES
    description: str = ""


@dataclass(slots=True)
class StepOutcome:
    """Result of one step in one run."""

    name: str
    status: StepStatus
    detail: str = ""
    warnings: list[str] = field(default_factory=list)
    remediation: str | None = None
    exit_code: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "name": self.name,
            "status": self.status.value,
            "detail": self.detail,
        }
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        if self.remediation:
            payload["remediation"] = self.remediation
        return payload


@dataclass(slots=True)
class InstallReport:
    """Ordered outcomes of an install run."""

    mode: str
    target: str | None
    tier: str | None
    outcomes: list[StepOutcome] = field(default_factory=list)
    halted: str | None = None

    @property
    def failed_step(self) -> StepOutcome | None:
        """Return the step that stopped the run, if any."""
        for outcome in self.outcomes:
            if outcome.status is StepStatus.FAILED:
                return outcome
        return None

    @property
    def ok(self) -> bool:
        """Return ``True`` when the run was not halted and no step failed."""
        return self.halted is None and self.failed_step is None

    @property
    def retry_command(self) -> str | None:
        """Return the command that resumes from the failed step."""
        failed = self.failed_step
        if failed is None:
            return None
        return f"veriscopectl install --from {failed.name}"

    @property
    def warnings(self) -> list[str]:
        """Return warnings from every step, prefixed with the step name."""
        return [f"{o.name}: {w}" for o in self.outcomes for w in o.warnings]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "mode": self.mode,
            "target": self.target,
            "tier": self.tier,
            "ok": self.ok,
            "halted": self.halted,
            "retry": self.retry_command,
            "steps": [outcome.to_dict() for outcome in self.outcomes],
        }


# ---------------------------------------------------------------------------
# Step actions
# ---------------------------------------------------------------------------


def _refresh_dependencies(ctx: InstallContext) -> ActionResult:
    ctx.runtime.pull_and_build()
    what = "host packages" if ctx.config.is_host_mode else "images"
    return ActionResult(f"Refreshed {what}")


def _configure_chain(ctx: InstallContext) -> ActionResult:
    result = configure_chain(ctx.config, ctx.target, runtime=ctx.runtime)
    detail = f"Configured {ctx.target.value} ({result.changed} setting(s) changed)"
    return ActionResult(detail, warnings=list(result.warnings))


def _ensure_started(ctx: InstallContext, service: str) -> None:
    if not ctx.runtime.is_running(service):
        ctx.runtime.start(service)


def _provision_database(ctx: InstallContext) -> ActionResult:
    config = ctx.config
    warnings: list[str] = []
    if ctx.webapp.init_dashboard_env():
        warnings.append(f"Created {config.dashboard_env_path} from .env.example")
    result = provision_database_credentials(
        config.root_env_path,
        config.dashboard_env_path,
        tier=ctx.tier,
        mode=config.mode,
        defaults=config.database,
        service_host=config.service_host,
    )
    warnings.extend(result.warnings)

    _ensure_started(ctx, ctx.db.service)
    ctx.db.wait_ready(
        timeout=config.backups.ready_timeout, interval=config.backups.ready_interval
    )
    created = ctx.db.ensure_database(result.password)
    state = "reused" if result.reused else "generated"
    detail = f"Database credentials {state} for user {result.user}"
    if created:
        detail += f"; created database {result.database}"
    return ActionResult(detail, warnings=warnings)


def _provision_cache(ctx: InstallContext) -> ActionResult:
    _ensure_started(ctx, ctx.cache.service)
    waited = ctx.cache.wait_ready(
        timeout=ctx.config.backups.ready_timeout, interval=ctx.config.backups.ready_interval
    )
    return ActionResult(f"Redis answered after {waited:.0f}s")


def _certificate_current(ctx: InstallContext) -> bool:
    domain = ctx.config.service_host
    if not domain or certificate_domain_problems(domain):
        return False
    if not EnvFile(ctx.config.root_env_path).has_value("SSL_CERT_PATH"):
        return False
    try:
        expiry = ctx.certbot.expiry(domain)
    except VeriscopeError:
        return False
    return not expiry.expiring_soon


def _issue_certificate(ctx: InstallContext) -> ActionResult:
    domain = ctx.config.service_host or ""
    problems = certificate_domain_problems(domain)
    if problems:
        if ctx.tier is Tier.DEVELOPMENT:
            return ActionResult(
                f"No certificate for '{domain}'",
                warnings=[f"Certificate skipped: {'; '.join(problems)}"],
                skipped=True,
            )
        raise ValidationError(
            f"'{domain}' cannot receive a certificate",
            reasons=problems,
            remediation="Set service_host to a public domain name.",
        )
    if not ctx.confirmer.confirm(f"Obtain a certificate for {domain}?", default=True):
        return ActionResult(
            "Operator declined certificate issuance",
            warnings=["Obtain one later with: veriscopectl cert issue"],
            skipped=True,
        )
    if not ctx.config.is_host_mode:
        _ensure_started(ctx, "nginx")
    paths = ctx.certbot.issue(domain)
    EnvFile(ctx.config.root_env_path).upsert_many(
        {"SSL_CERT_PATH": paths.certificate, "SSL_KEY_PATH": paths.private_key}, create=True
    )
    return ActionResult(f"Certificate issued for {domain}")


def _configure_reverse_proxy(ctx: InstallContext) -> ActionResult:
    if not ctx.config.is_host_mode or ctx.proxy is None:
        if ctx.runtime.is_running("nginx"):
            ctx.runtime.restart("nginx")
            return ActionResult("Restarted nginx")
        ctx.runtime.start("nginx")
        return ActionResult("Started nginx")

    certificate = None
    env = EnvFile(ctx.config.root_env_path)
    if env.has_value("SSL_CERT_PATH") and ctx.config.service_host:
        certificate = ctx.certbot.paths_for(ctx.config.service_host)
    result = ctx.proxy.render_site(site_context(ctx.config, certificate))
    if result.validation_error:
        raise NginxError(
            f"nginx rejected the rendered site: {result.validation_error}",
            remediation="Previous configuration restored; fix the cause and retry.",
        )
    warnings = [] if certificate else ["Site served over plain HTTP (no certificate)"]
    detail = "Site configuration updated" if result.changed else "Site configuration unchanged"
    return ActionResult(detail, warnings=warnings)


def _provision_node_identity(ctx: InstallContext) -> ActionResult:
    result = provision_sealer_keypair(
        ctx.config.ta_node_env_path,
        ctx.config.dashboard_env_path,
        runtime=ctx.runtime,
        common_name=ctx.config.common_name,
    )
    state = "created" if result.created else "already present"
    return ActionResult(f"Sealer account {result.address} {state}", warnings=result.warnings)


def _setup_web_tier(ctx: InstallContext) -> ActionResult:
    if not ctx.config.is_host_mode:
        _ensure_started(ctx, ctx.webapp.service)
    result = ctx.webapp.full_setup()
    return ActionResult(f"Completed: {', '.join(result.completed)}", warnings=result.warnings)


def _install_job_queue(ctx: InstallContext) -> ActionResult:
    ctx.webapp.install_horizon()
    ctx.webapp.install_passport_env()
    return ActionResult("Horizon installed and passport client linked")


def _refresh_peers(ctx: InstallContext) -> ActionResult:
    result = apply_peer_refresh(
        ctx.config,
        ctx.target,
        runtime=ctx.runtime,
        feed=ctx.feed,
        rpc=ctx.rpc,
        confirmer=ctx.confirmer,
    )
    warnings = list(result.messages)
    if result.fetch_error:
        warnings.append(f"Peer list not refreshed: {result.fetch_error}")
    if result.identity_error:
        warnings.append(f"Registry contact not updated: {result.identity_error}")
    return ActionResult(f"{len(result.peers)} peer(s) fetched", warnings=warnings)


def _admin_and_extras(ctx: InstallContext) -> ActionResult:
    warnings: list[str] = []
    done: list[str] = []
    if ctx.confirmer.confirm("Download address proofs now (needs a GitHub token)?"):
        if ctx.webapp.install_address_proofs():
            done.append("address proofs")
        else:
            warnings.append("Address proof download failed; retry with: veriscopectl install --from admin-and-extras")
    if ctx.confirmer.confirm("Create an admin user now?", default=True):
        ctx.webapp.create_admin()
        done.append("admin user")
    return ActionResult(
        f"Completed: {', '.join(done)}" if done else "Nothing selected",
        warnings=warnings,
        skipped=not done,
    )


DEFAULT_STEPS: tuple[InstallationStep, ...] = (
    InstallationStep(
        "dependency-refresh",
        _refresh_dependencies,
        description="Pull/build images or refresh host packages",
    ),
    InstallationStep(
        "chain-config",
        _configure_chain,
        description="Write network settings and seed the node environment",
    ),
    InstallationStep(
        "database-credentials",
        _provision_database,
        description="Provision database credentials and start the database",
    ),
    InstallationStep("cache", _provision_cache, description="Start Redis and wait for it"),
    InstallationStep(
        "certificate",
        _issue_certificate,
        is_satisfied=_certificate_current,
        description="Obtain a TLS certificate for the service host",
    ),
    InstallationStep(
        "reverse-proxy", _configure_reverse_proxy, description="Configure and reload nginx"
    ),
    InstallationStep(
        "node-identity",
        _provision_node_identity,
        description="Create the sealer keypair and sync the webhook secret",
    ),
    InstallationStep("web-tier", _setup_web_tier, description="Laravel setup and asset build"),
    InstallationStep("job-queue", _install_job_queue, description="Horizon and passport"),
    InstallationStep(
        "peer-refresh",
        _refresh_peers,
        modes=frozenset({"host"}),
        description="Refresh static peers and the registry contact",
    ),
    InstallationStep(
        "admin-and-extras",
        _admin_and_extras,
        optional=True,
        automated_skip=True,
        remediation="veriscopectl install --from admin-and-extras",
        modes=frozenset({"container"}),
        description="Address proofs and admin user (interactive)",
    ),
)


# ---------------------------------------------------------------------------
# Installer
# ---------------------------------------------------------------------------


class Installer:
    """Run the installation steps for one deployment."""

    def __init__(
        self,
        config: AppConfig,
        collaborators: Callable[[NetworkTarget, Tier], InstallContext],
        *,
        steps: Sequence[InstallationStep] = DEFAULT_STEPS,
    ) -> None:
        self.config = config
        self._collaborators = collaborators
        self.steps = [step for step in steps if config.mode in step.modes]

    def step_names(self) -> list[str]:
        """Return the step names for this deployment's mode, in order."""
        return [step.name for step in self.steps]

    def resolve_tier(self) -> Tier:
        """Detect the tier from the root ``.env`` and config, once per run."""
        env_values: dict[str, str | None] = dict(EnvFile(self.config.root_env_path).read())
        if self.config.service_host:
            env_values["VERISCOPE_SERVICE_HOST"] = self.config.service_host
        return detect_tier(
            env_values, compose_file=self.config.compose.file, override=self.config.tier
        )

    def run(self, *, start_at: str | None = None) -> InstallReport:
        """Run the steps in order, optionally resuming at *start_at*."""
        names = self.step_names()
        if start_at is not None and start_at not in names:
            raise ValidationError(
                f"Unknown step '{start_at}'",
                reasons=(f"valid steps: {', '.join(names)}",),
            )

        report = InstallReport(mode=self.config.mode, target=None, tier=None)
        try:
            target = NetworkTarget.parse(self.config.network)
        except InvalidNetworkTargetError as exc:
            report.halted = f"invalid target: {exc}"
            report.outcomes = [
                StepOutcome(name, StepStatus.NOT_RUN, "halted before the first step")
                for name in names
            ]
            return report

        tier = self.resolve_tier()
        report.target = target.value
        report.tier = tier.value
        context = self._collaborators(target, tier)

        reached = start_at is None
        stopped = False
        for step in self.steps:
            if stopped:
                outcome = StepOutcome(step.name, StepStatus.NOT_RUN, "earlier step failed")
            elif not reached and step.name != start_at:
                outcome = StepOutcome(step.name, StepStatus.SKIPPED, f"resumed at {start_at}")
            else:
                reached = True
                outcome = self._run_step(step, context)
                stopped = outcome.status is StepStatus.FAILED
            report.outcomes.append(outcome)
            if context.scope is not None and outcome.status is not StepStatus.NOT_RUN:
                context.scope.add_step(
                    f"install.{outcome.name}", status=outcome.status.value, detail=outcome.detail
                )
        return report

    # ------------------------------------------------------------------
    def _run_step(self, step: InstallationStep, context: InstallContext) -> StepOutcome:
        if step.automated_skip and context.automated:
            return StepOutcome(
                step.name,
                StepStatus.SKIPPED,
                "skipped in automated install",
                remediation=step.remediation,
            )
        if step.is_satisfied is not None and step.is_satisfied(context):
            return StepOutcome(step.name, StepStatus.SATISFIED, "already in place")
        try:
            result = step.action(context) or ActionResult()
        except OperatorAbort as exc:
            status = StepStatus.SKIPPED if step.optional else StepStatus.FAILED
            return StepOutcome(
                step.name,
                status,
                str(exc),
                remediation=self._retry(step),
                exit_code=int(exc.exit_code),
            )
        except VeriscopeError as exc:
            return StepOutcome(
                step.name,
                StepStatus.FAILED,
                str(exc),
                remediation=exc.remediation or self._retry(step),
                exit_code=int(exc.exit_code),
            )
        except OSError as exc:
            return StepOutcome(
                step.name,
                StepStatus.FAILED,
                str(exc),
                remediation=self._retry(step),
                exit_code=int(ExitCode.ENVIRONMENT),
            )
        status = StepStatus.SKIPPED if result.skipped else StepStatus.SUCCESS
        return StepOutcome(step.name, status, result.detail, warnings=list(result.warnings))

    @staticmethod
    def _retry(step: InstallationStep) -> str:
        return f"veriscopectl install --from {step.name}"


def confirm_full_install(confirmer: Confirmer, config: AppConfig) -> None:
    """Ask once before an install touches the host."""
    require(
        confirmer,
        f"Install Veriscope ({config.mode} mode) into {config.project_root}?",
    )


__all__ = [
    "ActionResult",
    "DEFAULT_STEPS",
    "InstallContext",
    "InstallReport",
    "InstallationStep",
    "Installer",
    "StepOutcome",
    "StepStatus",
    "confirm_full_install",
]

"""Typer-powered command line for ``veriscopectl``.

Every command loads the configuration once, builds its collaborators from
it, and records its outcome through the structured logger. Failures print a
red reason plus the remediation hint and exit with the code carried by the
error.
"""
from __future__ import annotations

import json
import sys
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupArtifact, BackupEngine
from .config import AppConfig, ConfigError, load_config
from .confirm import Confirmer, PresetPhraseConfirmer, select_confirmer
from .credentials import provision_database_credentials
from .envfile import EnvFile
from .errors import OperatorAbort, VeriscopeError
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .networks import NetworkTarget, configure_chain, update_chainspec
from .orchestrator import (
    InstallContext,
    Installer,
    InstallReport,
    StepStatus,
    confirm_full_install,
)
from .preflight import CheckStatus, PreflightReport, preflight_check, require_preflight
from .providers import (
    CertbotProvider,
    ComposeRuntime,
    NginxProvider,
    PostgresClient,
    ProcessRunner,
    RedisClient,
    ServiceRuntime,
    SystemdRuntime,
    WebAppClient,
)
from .registry import HttpNodeRpc, WebSocketPeerFeed, apply_peer_refresh, check_sync_status
from .secrets import (
    generate_hex_secret,
    generate_secret,
    provision_sealer_keypair,
    regenerate_shared_secret,
    synchronize_shared_secret,
)
from .templates import TemplateEngine
from .validators import Tier, detect_tier

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to veriscopectl's YAML config file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)
ALLOW_OUTSIDE_OPTION = typer.Option(
    False,
    "--allow-outside",
    help="Accept a backup file outside the backup directory and project root.",
)
CONFIRM_PHRASE_OPTION = typer.Option(
    None,
    "--confirm-phrase",
    help="Answer the typed confirmation (DELETE or yes) up front; --yes alone does not.",
)
NETWORK_OPTION = typer.Option(
    None,
    "--network",
    help=f"Network to use instead of the configured one ({NetworkTarget.choices()}).",
)
DOMAIN_OPTION = typer.Option(
    None,
    "--domain",
    help="Domain to use instead of the configured service_host.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Veriscope deployment toolkit.

        Validates the host, provisions credentials and secrets, reconciles the
        network registry, runs the full install and manages backups for a
        container or host deployment.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    confirmer: Confirmer
    runner: ProcessRunner
    runtime: ServiceRuntime
    templates: TemplateEngine
    interactive: bool

    @property
    def db(self) -> PostgresClient:
        """Return a database client bound to this runtime."""
        return PostgresClient(self.runtime, self.config)

    @property
    def cache(self) -> RedisClient:
        """Return a Redis client bound to this runtime."""
        return RedisClient(self.runtime, self.config)

    @property
    def webapp(self) -> WebAppClient:
        """Return the dashboard application client."""
        return WebAppClient(self.runtime, self.config)

    @property
    def certbot(self) -> CertbotProvider:
        """Return the certificate provider."""
        return CertbotProvider(self.config, self.runner)

    @property
    def nginx(self) -> NginxProvider:
        """Return the host reverse-proxy provider."""
        return NginxProvider(self.templates, runner=self.runner)

    def backups(self, phrase: str | None = None) -> BackupEngine:
        """Return a backup engine logging to the backup directory.

        *phrase* pre-answers typed confirmations for scripted runs.
        """
        confirmer = self.confirmer
        if phrase is not None:
            confirmer = PresetPhraseConfirmer(base=confirmer, typed=phrase)
        return BackupEngine(
            config=self.config,
            runtime=self.runtime,
            db=self.db,
            cache=self.cache,
            confirmer=confirmer,
            runner=self.runner,
        )

    def rpc(self) -> HttpNodeRpc:
        """Return the node JSON-RPC client."""
        return HttpNodeRpc(self.config.chain.rpc_url, timeout=self.config.chain.rpc_timeout)

    def peer_feed(self) -> WebSocketPeerFeed:
        """Return the registry peer feed client."""
        return WebSocketPeerFeed()

    def target(self, override: str | None = None) -> NetworkTarget:
        """Parse the network target from *override* or the config."""
        return NetworkTarget.parse(override if override is not None else self.config.network)

    def tier(self) -> Tier:
        """Detect the deployment tier from the root ``.env`` and config."""
        values: dict[str, str | None] = dict(EnvFile(self.config.root_env_path).read())
        if self.config.service_host:
            values["VERISCOPE_SERVICE_HOST"] = self.config.service_host
        return detect_tier(values, compose_file=self.config.compose.file, override=self.config.tier)


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    *,
    assume_yes: bool = False,
    non_interactive: bool = False,
    mode: str | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if assume_yes:
        overrides["assume_yes"] = True
    if mode is not None:
        overrides["mode"] = mode
    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    interactive = not non_interactive and sys.stdin.isatty()
    runner = ProcessRunner()
    service_runtime: ServiceRuntime = (
        SystemdRuntime(config, runner) if config.is_host_mode else ComposeRuntime(config, runner)
    )
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        confirmer=select_confirmer(assume_yes=config.assume_yes, interactive=interactive),
        runner=runner,
        runtime=service_runtime,
        templates=TemplateEngine.with_overrides(config.config_file.parent / "templates"),
        interactive=interactive,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the veriscopectl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    assume_yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Approve every confirmation gate (typed phrases included).",
    ),
    non_interactive: bool = typer.Option(
        False,
        "--non-interactive",
        help="Never prompt; unapproved gates are declined.",
    ),
    mode: str | None = typer.Option(
        None,
        "--mode",
        help="Runtime mode for this invocation (container|host).",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"veriscopectl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(
        ctx,
        config_file,
        assume_yes=assume_yes,
        non_interactive=non_interactive,
        mode=mode,
    )

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
    remediation: str | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    for item in errors or ():
        if item != message:
            console.print(f"  - {item}")
    if remediation:
        console.print(f"[yellow]Hint:[/yellow] {remediation}")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _fail(op: OperationScope, exc: VeriscopeError) -> NoReturn:
    """Report *exc*; an operator abort is a clean no-op exit."""
    if isinstance(exc, OperatorAbort):
        console.print(f"[yellow]{exc}[/yellow]")
        op.warning(str(exc), warnings=[str(exc)])
        raise typer.Exit(code=int(ExitCode.OK))
    details: list[str] = [str(exc)]
    details.extend(getattr(exc, "reasons", ()))
    details.extend(getattr(exc, "failures", ()))
    failed = getattr(exc, "failed", None)
    if failed:
        details.extend(f"{name}: {reason}" for name, reason in failed.items())
    _command_error(
        op,
        str(exc),
        rc=int(exc.exit_code),
        errors=details,
        remediation=exc.remediation,
    )


def _print_warnings(warnings: Sequence[str]) -> None:
    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


_STATUS_STYLES = {
    CheckStatus.GREEN: "[green]OK[/green]",
    CheckStatus.YELLOW: "[yellow]WARN[/yellow]",
    CheckStatus.RED: "[red]FAIL[/red]",
}

_STEP_STYLES = {
    StepStatus.SUCCESS: "[green]success[/green]",
    StepStatus.SATISFIED: "[green]satisfied[/green]",
    StepStatus.SKIPPED: "[yellow]skipped[/yellow]",
    StepStatus.FAILED: "[red]failed[/red]",
    StepStatus.NOT_RUN: "[dim]not-run[/dim]",
}


def _render_preflight(report: PreflightReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Check", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    for result in report.results:
        detail = result.message
        if result.remediation and result.status is not CheckStatus.GREEN:
            detail += f"\n[dim]{result.remediation}[/dim]"
        table.add_row(result.id, _STATUS_STYLES[result.status], detail)
    console.print(table)


def _render_install(report: InstallReport) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Step", style="bold")
    table.add_column("Status")
    table.add_column("Detail")
    for outcome in report.outcomes:
        table.add_row(outcome.name, _STEP_STYLES[outcome.status], outcome.detail)
    console.print(table)
    _print_warnings(report.warnings)


def _render_artifacts(artifacts: Sequence[BackupArtifact]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Kind", style="bold")
    table.add_column("Timestamp")
    table.add_column("Size", justify="right")
    table.add_column("Path")
    for artifact in artifacts:
        table.add_row(
            artifact.kind, artifact.timestamp, str(artifact.size_bytes), str(artifact.path)
        )
    console.print(table)


# ---------------------------------------------------------------------------
# check / install
# ---------------------------------------------------------------------------


@app.command("check")
def check(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Run the pre-flight host checks."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "check", args={"json": json_output}, target={"kind": "host", "mode": runtime.config.mode}
    ) as op:
        report = preflight_check(runtime.config, runtime.runtime)
        for result in report.results:
            op.add_step(f"preflight.{result.id}", status=result.status.value, detail=result.message)
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_preflight(report)
        if not report.passed:
            _command_error(
                op,
                f"{len(report.hard_failures)} critical pre-flight check(s) failed.",
                rc=int(ExitCode.ENVIRONMENT),
                errors=[result.message for result in report.hard_failures],
            )
        if report.warnings:
            op.warning(
                "Pre-flight checks passed with warnings.",
                warnings=[result.message for result in report.warnings],
            )
        else:
            op.success("All pre-flight checks passed.")


@app.command("install")
def install(
    ctx: typer.Context,
    start_at: str | None = typer.Option(
        None,
        "--from",
        help="Resume at this step (earlier steps are reported as skipped).",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Continue even when critical pre-flight checks fail.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Run the full installation."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "install",
        args={"from": start_at, "force": force, "json": json_output},
        target={"kind": "deployment", "mode": config.mode, "network": config.network},
    ) as op:
        try:
            report = preflight_check(config, runtime.runtime)
            if not json_output:
                _render_preflight(report)
            require_preflight(report, override=force)
            if not report.passed:
                console.print("[yellow]Continuing despite failed checks (--force).[/yellow]")
            confirm_full_install(runtime.confirmer, config)
        except VeriscopeError as exc:
            _fail(op, exc)

        def collaborators(target: NetworkTarget, tier: Tier) -> InstallContext:
            return InstallContext(
                config=config,
                runtime=runtime.runtime,
                webapp=runtime.webapp,
                db=runtime.db,
                cache=runtime.cache,
                certbot=runtime.certbot,
                proxy=runtime.nginx if config.is_host_mode else None,
                feed=runtime.peer_feed(),
                rpc=runtime.rpc(),
                confirmer=runtime.confirmer,
                tier=tier,
                target=target,
                automated=config.assume_yes or not runtime.interactive,
                scope=op,
            )

        installer = Installer(config, collaborators)
        try:
            result = installer.run(start_at=start_at)
        except VeriscopeError as exc:
            _fail(op, exc)

        if json_output:
            console.print_json(data=result.to_dict())
        else:
            _render_install(result)

        if result.halted:
            _command_error(op, result.halted, rc=int(ExitCode.VALIDATION))
        failed = result.failed_step
        if failed is not None:
            _command_error(
                op,
                f"Step '{failed.name}' failed: {failed.detail}",
                rc=failed.exit_code or int(ExitCode.PROVIDER),
                remediation=f"{failed.remediation}\nResume with: {result.retry_command}"
                if failed.remediation and failed.remediation != result.retry_command
                else f"Resume with: {result.retry_command}",
            )
        console.print(f"[green]Installation complete ({result.target}, {result.tier}).[/green]")
        if result.warnings:
            op.warning("Installation complete with warnings.", warnings=result.warnings)
        else:
            op.success("Installation complete.", changed=len(result.outcomes))


# ---------------------------------------------------------------------------
# secrets
# ---------------------------------------------------------------------------

secrets_app = typer.Typer(help="Generate and synchronise shared secrets.")
db_app = typer.Typer(help="Database credential provisioning.")
chain_app = typer.Typer(help="Network configuration and peer registry.")
cert_app = typer.Typer(help="TLS certificate issuance and renewal.")
backup_app = typer.Typer(help="Create, list and prune backups.")
restore_app = typer.Typer(help="Restore from backups.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(secrets_app, name="secrets")
app.add_typer(db_app, name="db")
app.add_typer(chain_app, name="chain")
app.add_typer(cert_app, name="cert")
app.add_typer(backup_app, name="backup")
app.add_typer(restore_app, name="restore")
app.add_typer(config_app, name="config")


@secrets_app.command("generate")
def secrets_generate(
    length: int = typer.Option(32, "--length", min=1, help="Number of characters."),
    hex_output: bool = typer.Option(False, "--hex", help="Use hex digits instead of alphanumerics."),
) -> None:
    """Print a random secret."""
    try:
        if hex_output:
            value = generate_hex_secret((length + 1) // 2)[:length]
        else:
            value = generate_secret(length).value
    except VeriscopeError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc
    typer.echo(value)


@secrets_app.command("sync-webhook")
def secrets_sync_webhook(ctx: typer.Context) -> None:
    """Make the node and dashboard share one webhook secret."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("secrets sync-webhook", target={"kind": "secret"}) as op:
        try:
            result = synchronize_shared_secret(config.ta_node_env_path, config.dashboard_env_path)
        except VeriscopeError as exc:
            _fail(op, exc)
        _print_warnings(result.warnings)
        console.print(
            f"[green]Webhook secret synchronised (source: {result.source}, "
            f"{result.length} chars, {len(result.report.succeeded)} file(s)).[/green]"
        )
        op.success(
            "Webhook secret synchronised.",
            changed=len(result.report.succeeded),
            warnings=result.warnings,
        )


@secrets_app.command("regenerate-webhook")
def secrets_regenerate_webhook(ctx: typer.Context) -> None:
    """Replace the webhook secret and restart the services that use it."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("secrets regenerate-webhook", target={"kind": "secret"}) as op:
        try:
            result = regenerate_shared_secret(
                [config.ta_node_env_path, config.dashboard_env_path],
                confirmer=runtime.confirmer,
                runtime=runtime.runtime,
            )
        except VeriscopeError as exc:
            _fail(op, exc)
        _print_warnings(result.warnings)
        if result.restarted:
            console.print(f"Restarted: {', '.join(result.restarted)}")
        console.print("[green]Webhook secret regenerated.[/green]")
        op.success(
            "Webhook secret regenerated.",
            changed=len(result.report.succeeded),
            warnings=result.warnings,
        )


@secrets_app.command("create-sealer")
def secrets_create_sealer(ctx: typer.Context) -> None:
    """Generate the trust anchor's sealer keypair unless one exists."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("secrets create-sealer", target={"kind": "keypair"}) as op:
        try:
            result = provision_sealer_keypair(
                config.ta_node_env_path,
                config.dashboard_env_path,
                runtime=runtime.runtime,
                common_name=config.common_name,
            )
        except VeriscopeError as exc:
            _fail(op, exc)
        _print_warnings(result.warnings)
        state = "created" if result.created else "already present"
        console.print(f"[green]Sealer account {result.address} {state}.[/green]")
        op.success(f"Sealer account {state}.", changed=int(result.created), warnings=result.warnings)


# ---------------------------------------------------------------------------
# db
# ---------------------------------------------------------------------------


@db_app.command("provision-credentials")
def db_provision_credentials(ctx: typer.Context) -> None:
    """Reuse or generate the database password and wire it into both env files."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation("db provision-credentials", target={"kind": "database"}) as op:
        try:
            result = provision_database_credentials(
                config.root_env_path,
                config.dashboard_env_path,
                tier=runtime.tier(),
                mode=config.mode,
                defaults=config.database,
                service_host=config.service_host,
            )
        except VeriscopeError as exc:
            _fail(op, exc)
        _print_warnings(result.warnings)
        state = "reused" if result.reused else "generated"
        console.print(f"[green]Database password {state} for user {result.user}.[/green]")
        op.success(
            f"Database credentials {state}.",
            changed=len(result.root_changed) + len(result.dashboard_changed),
            warnings=result.warnings,
        )


# ---------------------------------------------------------------------------
# chain
# ---------------------------------------------------------------------------


@chain_app.command("configure")
def chain_configure(ctx: typer.Context, network: str | None = NETWORK_OPTION) -> None:
    """Write the network's settings into the env files."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "chain configure", args={"network": network}, target={"kind": "chain"}
    ) as op:
        try:
            target = runtime.target(network)
            result = configure_chain(runtime.config, target, runtime=runtime.runtime)
        except VeriscopeError as exc:
            _fail(op, exc)
        _print_warnings(result.warnings)
        console.print(
            f"[green]Configured {target.value}: {result.changed} setting(s) changed.[/green]"
        )
        op.success("Chain configured.", changed=result.changed, warnings=result.warnings)


@chain_app.command("refresh-peers")
def chain_refresh_peers(ctx: typer.Context, network: str | None = NETWORK_OPTION) -> None:
    """Fetch the peer list from the registry and update the node."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "chain refresh-peers", args={"network": network}, target={"kind": "chain"}
    ) as op:
        try:
            target = runtime.target(network)
            result = apply_peer_refresh(
                runtime.config,
                target,
                runtime=runtime.runtime,
                feed=runtime.peer_feed(),
                rpc=runtime.rpc(),
                confirmer=runtime.confirmer,
            )
        except VeriscopeError as exc:
            _fail(op, exc)
        if result.persisted:
            console.print(f"Wrote {len(result.peers)} peer(s) to {result.peers_path}")
        if result.fetch_error:
            console.print(f"[red]Peer list not refreshed: {result.fetch_error}[/red]")
        if result.identity_error:
            console.print(f"[yellow]Registry contact not updated: {result.identity_error}[/yellow]")
        for message in result.messages:
            console.print(message)
        if result.restarted:
            console.print("[green]Node restarted with a clean peer cache.[/green]")
        if not result.ok:
            errors = [e for e in (result.fetch_error, result.identity_error) if e]
            _command_error(
                op,
                "Peer refresh incomplete.",
                rc=int(ExitCode.PROVIDER),
                errors=errors,
            )
        op.success("Peer refresh complete.", changed=int(result.persisted) + int(result.contact_changed))


@chain_app.command("sync-status")
def chain_sync_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report block sync progress and peer count."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("chain sync-status", target={"kind": "chain"}) as op:
        try:
            status = check_sync_status(runtime.rpc())
        except VeriscopeError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=status.to_dict())
        else:
            table = Table(show_header=True, header_style="bold magenta")
            table.add_column("Key", style="bold")
            table.add_column("Value")
            for key, value in status.to_dict().items():
                table.add_row(key, "unknown" if value is None else str(value))
            console.print(table)
        if status.isolated:
            console.print("[yellow]The node has no peers; run: veriscopectl chain refresh-peers[/yellow]")
            op.warning("Node has no peers.", warnings=["no peers"])
        else:
            op.success("Reported sync status.")


@chain_app.command("update-chainspec")
def chain_update_chainspec(ctx: typer.Context, network: str | None = NETWORK_OPTION) -> None:
    """Download the published chainspec and replace the local copy if it changed."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "chain update-chainspec", args={"network": network}, target={"kind": "chain"}
    ) as op:
        try:
            update = update_chainspec(runtime.config, runtime.target(network))
        except VeriscopeError as exc:
            _fail(op, exc)
        if update.changed:
            console.print(
                f"[green]Chainspec updated ({update.size} bytes); previous copy at {update.backup}.[/green]"
            )
            console.print("Restart the node to apply it.")
        else:
            console.print("Chainspec already up to date.")
        op.success("Chainspec checked.", changed=int(update.changed))


# ---------------------------------------------------------------------------
# cert
# ---------------------------------------------------------------------------


def _domain(runtime: RuntimeContext, op: OperationScope, override: str | None) -> str:
    domain = override or runtime.config.service_host
    if not domain:
        _command_error(
            op,
            "No domain given.",
            rc=int(ExitCode.VALIDATION),
            remediation="Pass --domain or set service_host in the config file.",
        )
    return domain


@cert_app.command("issue")
def cert_issue(ctx: typer.Context, domain: str | None = DOMAIN_OPTION) -> None:
    """Obtain a certificate for the service host."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cert issue", args={"domain": domain}, target={"kind": "tls"}) as op:
        name = _domain(runtime, op, domain)
        try:
            paths = runtime.certbot.issue(name)
        except VeriscopeError as exc:
            _fail(op, exc)
        console.print(f"[green]Certificate issued: {paths.certificate}[/green]")
        op.success("Certificate issued.", changed=1)


@cert_app.command("renew")
def cert_renew(ctx: typer.Context) -> None:
    """Renew certificates that are due."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cert renew", target={"kind": "tls"}) as op:
        try:
            renewed = runtime.certbot.renew()
        except VeriscopeError as exc:
            _fail(op, exc)
        if not renewed:
            _command_error(op, "certbot renew failed.", rc=int(ExitCode.PROVIDER))
        console.print("[green]Renewal complete.[/green]")
        op.success("Certificates renewed.")


@cert_app.command("expiry")
def cert_expiry(
    ctx: typer.Context,
    domain: str | None = DOMAIN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report when the certificate expires."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("cert expiry", args={"domain": domain}, target={"kind": "tls"}) as op:
        name = _domain(runtime, op, domain)
        try:
            expiry = runtime.certbot.expiry(name)
        except VeriscopeError as exc:
            _fail(op, exc)
        if json_output:
            console.print_json(data=expiry.to_dict())
        else:
            console.print(
                f"{expiry.domain}: expires {expiry.not_valid_after:%Y-%m-%d} "
                f"({expiry.days_remaining} day(s) left)"
            )
        if expiry.expired:
            _command_error(op, f"Certificate for {name} has expired.", rc=int(ExitCode.INTEGRITY))
        if expiry.expiring_soon:
            console.print("[yellow]Renew soon: veriscopectl cert renew[/yellow]")
            op.warning("Certificate expiring soon.", warnings=[f"{expiry.days_remaining} days left"])
        else:
            op.success("Certificate valid.")


# ---------------------------------------------------------------------------
# backup / restore
# ---------------------------------------------------------------------------


def _backup_one(ctx: typer.Context, command: str, kind: str) -> None:
    runtime = _get_runtime(ctx)
    engine = runtime.backups()
    actions = {
        "database": engine.backup_database,
        "cache": engine.backup_cache_store,
        "config-files": engine.backup_config_files,
    }
    with runtime.logger.operation(command, target={"kind": "backup", "component": kind}) as op:
        try:
            artifact = actions[kind]()
        except VeriscopeError as exc:
            _fail(op, exc)
        if artifact is None:
            console.print("[yellow]No .env files found to back up.[/yellow]")
            op.warning("Nothing to back up.", warnings=["no .env files"])
            return
        console.print(f"[green]Backup written: {artifact.path}[/green]")
        op.success("Backup created.", changed=1, backups=[artifact.path])


@backup_app.command("database")
def backup_database(ctx: typer.Context) -> None:
    """Dump the application database."""
    _backup_one(ctx, "backup database", "database")


@backup_app.command("cache")
def backup_cache(ctx: typer.Context) -> None:
    """Snapshot the Redis store."""
    _backup_one(ctx, "backup cache", "cache")


@backup_app.command("config")
def backup_config(ctx: typer.Context) -> None:
    """Archive the deployment's .env files."""
    _backup_one(ctx, "backup config", "config-files")


@backup_app.command("full")
def backup_full(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Back up every component, continuing past failures."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("backup full", target={"kind": "backup"}) as op:
        report = runtime.backups().full_backup()
        if json_output:
            console.print_json(data=report.to_dict())
        else:
            _render_artifacts(list(report.artifacts.values()))
            for kind in report.skipped:
                console.print(f"[yellow]{kind}: skipped[/yellow]")
        if not report.ok:
            _command_error(
                op,
                f"Full backup {report.status}.",
                rc=int(ExitCode.PROVIDER),
                errors=[f"{kind}: {reason}" for kind, reason in report.failures.items()],
            )
        console.print("[green]Full backup complete.[/green]")
        op.success(
            "Full backup complete.",
            changed=len(report.artifacts),
            backups=[artifact.path for artifact in report.artifacts.values()],
        )


@backup_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List backups, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("backup list", target={"kind": "backup"}) as op:
        artifacts = runtime.backups().list_backups()
        if json_output:
            console.print_json(data=[artifact.to_dict() for artifact in artifacts])
        elif artifacts:
            _render_artifacts(artifacts)
        else:
            console.print(f"No backups found in {runtime.config.backups.root}.")
        op.success(f"Listed {len(artifacts)} backup(s).")


@backup_app.command("clean")
def backup_clean(
    ctx: typer.Context,
    days: int | None = typer.Option(
        None,
        "--days",
        min=0,
        help="Delete backups older than this many days (defaults to retention_days).",
    ),
    confirm_phrase: str | None = CONFIRM_PHRASE_OPTION,
) -> None:
    """Delete old backups after typing DELETE."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("backup clean", args={"days": days}, target={"kind": "backup"}) as op:
        try:
            result = runtime.backups(confirm_phrase).clean_old_backups(days)
        except VeriscopeError as exc:
            _fail(op, exc)
        if not result.candidates:
            console.print("No backups old enough to delete.")
        else:
            for path in result.deleted:
                console.print(f"Deleted: {path.name}")
        op.success(f"Deleted {len(result.deleted)} backup(s).", changed=len(result.deleted))


def _restore(
    ctx: typer.Context,
    command: str,
    kind: str,
    path: Path,
    allow_outside: bool,
    confirm_phrase: str | None,
) -> None:
    runtime = _get_runtime(ctx)
    engine = runtime.backups(confirm_phrase)
    with runtime.logger.operation(
        command,
        args={"path": str(path), "allow_outside": allow_outside},
        target={"kind": "restore", "component": kind},
    ) as op:
        try:
            if kind == "database":
                engine.restore_database(path, allow_outside=allow_outside)
            elif kind == "cache":
                engine.restore_cache_store(path, allow_outside=allow_outside)
            else:
                _, saved = engine.restore_config_files(path, allow_outside=allow_outside)
                if saved is not None:
                    console.print(f"Previous .env files saved to {saved}")
                console.print("[yellow]Restart services for the restored settings to apply.[/yellow]")
        except VeriscopeError as exc:
            _fail(op, exc)
        console.print(f"[green]Restored {kind} from {path}.[/green]")
        op.success(f"Restored {kind}.", changed=1)


RESTORE_PATH_ARGUMENT = typer.Argument(..., help="Backup file to restore.", dir_okay=False)


@restore_app.command("database")
def restore_database(
    ctx: typer.Context,
    path: Path = RESTORE_PATH_ARGUMENT,
    allow_outside: bool = ALLOW_OUTSIDE_OPTION,
    confirm_phrase: str | None = CONFIRM_PHRASE_OPTION,
) -> None:
    """Overwrite the application database from a dump."""
    _restore(ctx, "restore database", "database", path, allow_outside, confirm_phrase)


@restore_app.command("cache")
def restore_cache(
    ctx: typer.Context,
    path: Path = RESTORE_PATH_ARGUMENT,
    allow_outside: bool = ALLOW_OUTSIDE_OPTION,
    confirm_phrase: str | None = CONFIRM_PHRASE_OPTION,
) -> None:
    """Overwrite the Redis store from a snapshot."""
    _restore(ctx, "restore cache", "cache", path, allow_outside, confirm_phrase)


@restore_app.command("config")
def restore_config(
    ctx: typer.Context,
    path: Path = RESTORE_PATH_ARGUMENT,
    allow_outside: bool = ALLOW_OUTSIDE_OPTION,
    confirm_phrase: str | None = CONFIRM_PHRASE_OPTION,
) -> None:
    """Overwrite the .env files from an archive."""
    _restore(ctx, "restore config", "config-files", path, allow_outside, confirm_phrase)


# ---------------------------------------------------------------------------
# config
# ---------------------------------------------------------------------------


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]

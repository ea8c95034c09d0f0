"""Database, cache, web application and certificate client tests."""
from __future__ import annotations

import io
import subprocess
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

import pytest

from tests.fakes import FakeRuntime, completed, self_signed_pem
from veriscopectl.config import AppConfig
from veriscopectl.errors import CommandError, ExternalServiceError, IntegrityError, ValidationError
from veriscopectl.providers.cache import RedisClient
from veriscopectl.providers.certbot import CertbotProvider
from veriscopectl.providers.database import PostgresClient
from veriscopectl.providers.process import ProcessRunner
from veriscopectl.providers.webapp import WebAppClient


def _root_env(config: AppConfig, text: str) -> None:
    config.root_env_path.parent.mkdir(parents=True, exist_ok=True)
    config.root_env_path.write_text(text)


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


def test_credentials_fall_back_to_defaults(make_config: Callable[..., AppConfig]) -> None:
    """Missing root .env values use the configured defaults."""
    config = make_config()
    client = PostgresClient(FakeRuntime(), config)

    creds = client.credentials()

    assert (creds.user, creds.name, creds.password) == ("trustanchor", "trustanchor", None)


def test_is_ready_passes_password_via_environment(make_config: Callable[..., AppConfig]) -> None:
    """pg_isready receives PGPASSWORD and never sees it on the command line."""
    config = make_config()
    _root_env(config, "POSTGRES_PASSWORD=s3cret\nPOSTGRES_USER=ta\n")
    runtime = FakeRuntime()
    seen: list[Mapping[str, Any]] = []

    def handler(service: str, args: Sequence[str], kwargs: Mapping[str, Any]) -> Any:
        seen.append(kwargs)
        return completed()

    runtime.exec_handler = handler

    assert PostgresClient(runtime, config).is_ready() is True
    assert runtime.calls[0] == ("exec", "postgres", "pg_isready", "-U", "ta")
    assert seen[0]["env"] == {"PGPASSWORD": "s3cret"}


def test_is_ready_false_on_failure(make_config: Callable[..., AppConfig]) -> None:
    """A failing readiness check or missing service is not ready."""
    runtime = FakeRuntime()
    runtime.exec_handler = lambda service, args, kwargs: completed(returncode=2)
    assert PostgresClient(runtime, make_config()).is_ready() is False

    def missing(service: str, args: Sequence[str], kwargs: Mapping[str, Any]) -> Any:
        raise CommandError("docker not found")

    runtime.exec_handler = missing
    assert PostgresClient(runtime, make_config()).is_ready() is False


def test_dump_to_streams_into_handle(make_config: Callable[..., AppConfig]) -> None:
    """pg_dump output is written to the handle given."""
    runtime = FakeRuntime()

    def handler(service: str, args: Sequence[str], kwargs: Mapping[str, Any]) -> Any:
        kwargs["stdout"].write("CREATE TABLE t();\n")
        return completed()

    runtime.exec_handler = handler
    buffer = io.StringIO()

    PostgresClient(runtime, make_config()).dump_to(buffer)

    assert buffer.getvalue() == "CREATE TABLE t();\n"
    assert "--clean" in runtime.calls[0]
    assert "--if-exists" in runtime.calls[0]


def test_host_restore_recreates_database(make_config: Callable[..., AppConfig]) -> None:
    """On a host install the database is dropped and recreated before replay."""
    runtime = FakeRuntime(mode="host")
    client = PostgresClient(runtime, make_config(mode="host"))

    client.restore_from(io.StringIO("SELECT 1;"))

    statements = [call[-1] for call in runtime.calls[:2]]
    assert statements == [
        "DROP DATABASE IF EXISTS trustanchor",
        "CREATE DATABASE trustanchor OWNER trustanchor",
    ]
    assert runtime.calls[2][2] == "psql"
    assert "ON_ERROR_STOP=1" in runtime.calls[2]


def test_ensure_database_only_on_host(make_config: Callable[..., AppConfig]) -> None:
    """Container images create their own database."""
    runtime = FakeRuntime()

    assert PostgresClient(runtime, make_config()).ensure_database("pw") is False
    assert runtime.calls == []


def test_ensure_database_creates_missing_role(make_config: Callable[..., AppConfig]) -> None:
    """A host install without the role gets a user and database."""
    runtime = FakeRuntime(mode="host")

    created = PostgresClient(runtime, make_config(mode="host")).ensure_database("it's")

    assert created is True
    assert runtime.calls[1][-1] == "CREATE USER trustanchor WITH CREATEDB LOGIN PASSWORD 'it''s'"
    assert runtime.calls[2][-1] == "CREATE DATABASE trustanchor OWNER trustanchor"


def test_ensure_database_existing_role(make_config: Callable[..., AppConfig]) -> None:
    """An existing role is left alone."""
    runtime = FakeRuntime(mode="host")
    runtime.exec_handler = lambda service, args, kwargs: completed("1\n")

    assert PostgresClient(runtime, make_config(mode="host")).ensure_database("pw") is False
    assert len(runtime.calls) == 1


def test_unsafe_identifier_rejected(make_config: Callable[..., AppConfig]) -> None:
    """Identifiers are validated before being interpolated into SQL."""
    config = make_config(mode="host")
    _root_env(config, "POSTGRES_USER=bad;drop\n")

    with pytest.raises(ValidationError):
        PostgresClient(FakeRuntime(mode="host"), config).ensure_database("pw")


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


def test_redis_ping_and_save(make_config: Callable[..., AppConfig]) -> None:
    """PONG means ready; SAVE must answer OK."""
    runtime = FakeRuntime()
    answers = {"ping": "PONG\n", "SAVE": "ERR busy\n"}
    runtime.exec_handler = lambda service, args, kwargs: completed(answers[args[-1]])
    client = RedisClient(runtime, make_config())

    assert client.ping() is True
    with pytest.raises(ExternalServiceError, match="ERR busy"):
        client.save()


def test_redis_wait_ready_times_out(make_config: Callable[..., AppConfig]) -> None:
    """wait_ready gives up after the timeout."""
    now = [0.0]
    runtime = FakeRuntime()
    runtime.exec_handler = lambda service, args, kwargs: completed("LOADING")
    client = RedisClient(
        runtime,
        make_config(),
        sleep=lambda seconds: now.__setitem__(0, now[0] + seconds),
        clock=lambda: now[0],
    )

    with pytest.raises(ExternalServiceError, match="Redis"):
        client.wait_ready(timeout=3, interval=1)


def test_redis_snapshot_transfer(make_config: Callable[..., AppConfig], tmp_path: Path) -> None:
    """Snapshots are copied from and to the configured path."""
    runtime = FakeRuntime()
    runtime.files["/data/dump.rdb"] = b"REDIS0009"
    client = RedisClient(runtime, make_config())

    client.export_snapshot(tmp_path / "out.rdb")
    client.import_snapshot(tmp_path / "out.rdb")

    assert (tmp_path / "out.rdb").read_bytes() == b"REDIS0009"
    assert runtime.copied_in == {"/data/dump.rdb": b"REDIS0009"}


# ---------------------------------------------------------------------------
# Web application
# ---------------------------------------------------------------------------


def test_init_dashboard_env_copies_example(
    project: Path, make_config: Callable[..., AppConfig]
) -> None:
    """The example file seeds a missing dashboard .env."""
    config = make_config()
    example = config.dashboard_env_path.with_name(".env.example")
    example.write_text("APP_ENV=production\n")
    client = WebAppClient(FakeRuntime(), config)

    assert client.init_dashboard_env() is True
    assert client.init_dashboard_env() is False
    assert config.dashboard_env_path.read_text() == "APP_ENV=production\n"
    assert config.dashboard_env_path.stat().st_mode & 0o777 == 0o600


def test_init_dashboard_env_requires_sources(
    project: Path, make_config: Callable[..., AppConfig]
) -> None:
    """Without an example there is nothing to seed from."""
    with pytest.raises(ValidationError):
        WebAppClient(FakeRuntime(), make_config()).init_dashboard_env()


def test_full_setup_tolerates_migration_and_build_failures(
    project: Path, make_config: Callable[..., AppConfig]
) -> None:
    """Soft steps become warnings; hard steps still run."""
    config = make_config()
    config.dashboard_env_path.write_text("ENCRYPTION_KEY=present\n")
    runtime = FakeRuntime()

    def handler(service: str, args: Sequence[str], kwargs: Mapping[str, Any]) -> Any:
        if "migrate" in args or list(args[-2:]) == ["run", "development"]:
            return completed(returncode=1)
        return completed()

    runtime.exec_handler = handler

    result = WebAppClient(runtime, config).full_setup()

    assert "migrate" not in result.completed
    assert "db:seed" in result.completed
    assert "key:generate" in result.completed
    assert "encrypt:generate" not in result.completed
    assert any("migrate failed" in warning for warning in result.warnings)
    assert any("Frontend build failed" in warning for warning in result.warnings)


def test_full_setup_stops_on_dependency_failure(make_config: Callable[..., AppConfig]) -> None:
    """composer install failing is a hard error."""
    runtime = FakeRuntime()

    def handler(service: str, args: Sequence[str], kwargs: Mapping[str, Any]) -> Any:
        raise CommandError("app: composer install failed (exit 1)")

    runtime.exec_handler = handler

    with pytest.raises(CommandError):
        WebAppClient(runtime, make_config()).full_setup()


def test_install_address_proofs_reports_failure(make_config: Callable[..., AppConfig]) -> None:
    """A failed download returns False instead of raising."""
    runtime = FakeRuntime()

    def handler(service: str, args: Sequence[str], kwargs: Mapping[str, Any]) -> Any:
        if "download:addressproof" in args:
            raise CommandError("download failed")
        return completed()

    runtime.exec_handler = handler

    assert WebAppClient(runtime, make_config()).install_address_proofs() is False


# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


class PemRunner(ProcessRunner):
    """ProcessRunner returning a fixed certificate for every command."""

    def __init__(self, pem: bytes) -> None:
        super().__init__()
        self.pem = pem

    def run(self, args: Sequence[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        self.calls.append([str(arg) for arg in args])
        return subprocess.CompletedProcess(list(args), 0, self.pem.decode("ascii"), "")


def test_issue_rejects_ineligible_domain(make_config: Callable[..., AppConfig]) -> None:
    """Local names never reach certbot."""
    runner = ProcessRunner(dry_run=True)

    with pytest.raises(ValidationError) as excinfo:
        CertbotProvider(make_config(), runner).issue("ta.local")

    assert excinfo.value.reasons
    assert runner.calls == []


def test_issue_runs_certbot_in_compose(make_config: Callable[..., AppConfig]) -> None:
    """Container mode runs certbot as a one-off compose service."""
    runner = ProcessRunner(dry_run=True)
    config = make_config()

    paths = CertbotProvider(config, runner).issue("ta.example.org")

    command = runner.calls[0]
    assert command[:2] == ["docker", "compose"]
    assert command[command.index("--entrypoint") + 1 :][:2] == ["certbot", "certbot"]
    assert "--webroot-path=/var/www/certbot" in command
    assert command[-2:] == ["-d", "ta.example.org"]
    assert paths.certificate == "/etc/letsencrypt/live/ta.example.org/fullchain.pem"
    assert paths.private_key == "/etc/letsencrypt/live/ta.example.org/privkey.pem"


def test_renew_host_mode(make_config: Callable[..., AppConfig]) -> None:
    """Host mode calls the local certbot binary."""
    runner = ProcessRunner(dry_run=True)

    assert CertbotProvider(make_config(mode="host"), runner).renew() is True
    assert runner.calls == [["certbot", "renew", "--non-interactive"]]


def test_expiry_host_mode(make_config: Callable[..., AppConfig], tmp_path: Path) -> None:
    """Host certificates are read straight from the live directory."""
    live = tmp_path / "live"
    (live / "ta.example.org").mkdir(parents=True)
    (live / "ta.example.org" / "fullchain.pem").write_bytes(self_signed_pem(days=10))
    config = make_config(mode="host", certificates={"live_dir": str(live)})

    expiry = CertbotProvider(config).expiry("ta.example.org")

    assert expiry.days_remaining == 10
    assert expiry.expired is False
    assert expiry.expiring_soon is True
    assert expiry.to_dict()["expiring_soon"] is True


def test_expiry_container_mode_reads_through_compose(make_config: Callable[..., AppConfig]) -> None:
    """Container certificates are read via a one-off container."""
    runner = PemRunner(self_signed_pem(days=80))

    expiry = CertbotProvider(make_config(), runner).expiry("ta.example.org")

    assert expiry.days_remaining == 80
    assert expiry.expiring_soon is False
    assert runner.calls[0][-1] == "/etc/letsencrypt/live/ta.example.org/fullchain.pem"


def test_expiry_missing_or_corrupt(make_config: Callable[..., AppConfig], tmp_path: Path) -> None:
    """Missing certificates are a validation error; garbage is an integrity error."""
    config = make_config(mode="host", certificates={"live_dir": str(tmp_path)})
    with pytest.raises(ValidationError, match="No certificate found"):
        CertbotProvider(config).expiry("ta.example.org")

    (tmp_path / "ta.example.org").mkdir()
    (tmp_path / "ta.example.org" / "fullchain.pem").write_text("not a certificate")
    with pytest.raises(IntegrityError):
        CertbotProvider(config).expiry("ta.example.org")

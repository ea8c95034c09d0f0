"""Tests for the veriscopectl CLI."""
from __future__ import annotations

import gzip
import json
import os
import string
import tarfile
import time
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from tests.fakes import FakeRuntime
from veriscopectl import __version__
from veriscopectl.cli import app
from veriscopectl.config import AppConfig
from veriscopectl.preflight import PreflightProbes, PreflightReport, preflight_check
from veriscopectl.providers.database import DatabaseCredentials, PostgresClient
from veriscopectl.providers.runtime import ComposeRuntime

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path, *, config_overrides: dict[str, object] | None = None
) -> tuple[dict[str, str], Path]:
    project_root = tmp_path / "veriscope"
    (project_root / "veriscope_ta_dashboard").mkdir(parents=True)
    (project_root / "veriscope_ta_node").mkdir(parents=True)
    config: dict[str, object] = {
        "project_root": str(project_root),
        "logs_dir": str(tmp_path / "logs"),
        "network": "fed_testnet",
        "backups": {"root": str(tmp_path / "backups")},
    }
    if config_overrides:
        config.update(config_overrides)
    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"VERISCOPECTL_CONFIG_FILE": str(config_file)}, project_root


def _stub_preflight(monkeypatch: pytest.MonkeyPatch, *, busy: set[int] | None = None) -> None:
    probes = PreflightProbes(
        port_available=lambda port: port not in (busy or set()),
        disk_free_gb=lambda path: 100,
        resolves=lambda host: True,
        internet=lambda hosts, timeout: True,
        registry=lambda host, timeout: True,
    )

    def fake(config: AppConfig, runtime: object) -> PreflightReport:
        return preflight_check(config, FakeRuntime(mode=config.mode), probes=probes)  # type: ignore[arg-type]

    monkeypatch.setattr("veriscopectl.cli.preflight_check", fake)


def test_version_flag(tmp_path: Path) -> None:
    """`--version` prints the package version."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(tmp_path: Path) -> None:
    """Calling the CLI without a subcommand shows help output."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, env=env)

    assert result.exit_code == 0
    assert "Veriscope deployment toolkit" in result.stdout


def test_config_show_json(tmp_path: Path) -> None:
    """`config show --json` emits the merged configuration and logs the call."""
    env, project_root = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["project_root"] == str(project_root)
    assert payload["network"] == "fed_testnet"
    operations = (tmp_path / "logs" / "operations.jsonl").read_text().splitlines()
    assert json.loads(operations[-1])["command"] == "config show"


def test_config_show_table(tmp_path: Path) -> None:
    """Without --json the configuration renders as a table."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 0
    assert "project_root" in result.stdout
    assert "retention_days" in result.stdout


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """A bad config value stops before any command runs."""
    env, _ = _prepare_environment(tmp_path, config_overrides={"tier": "staging"})

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 2
    assert "Configuration error" in result.stdout


def test_secrets_generate(tmp_path: Path) -> None:
    """Generated secrets honour the requested length and alphabet."""
    env, _ = _prepare_environment(tmp_path)

    plain = runner.invoke(app, ["secrets", "generate", "--length", "24"], env=env)
    hexed = runner.invoke(app, ["secrets", "generate", "--length", "9", "--hex"], env=env)

    assert plain.exit_code == 0
    value = plain.stdout.strip()
    assert len(value) == 24
    assert set(value) <= set(string.ascii_letters + string.digits)
    assert hexed.exit_code == 0
    assert len(hexed.stdout.strip()) == 9
    assert set(hexed.stdout.strip()) <= set(string.hexdigits.lower())


def test_check_reports_json(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A healthy host exits zero with every check in the payload."""
    env, _ = _prepare_environment(tmp_path)
    _stub_preflight(monkeypatch)

    result = runner.invoke(app, ["check", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["passed"] is True


def test_check_fails_on_busy_port(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A hard failure maps to the environment exit code."""
    env, _ = _prepare_environment(tmp_path)
    _stub_preflight(monkeypatch, busy={5432})

    result = runner.invoke(app, ["check"], env=env)

    assert result.exit_code == 3
    assert "critical pre-flight check(s) failed" in result.stdout


def test_install_non_interactive_without_yes_is_cancelled(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Without --yes a non-interactive install declines and changes nothing."""
    env, project_root = _prepare_environment(tmp_path)
    _stub_preflight(monkeypatch)

    result = runner.invoke(app, ["--non-interactive", "install"], env=env)

    assert result.exit_code == 0
    assert "Cancelled" in result.stdout
    assert not (project_root / ".env").exists()


def test_install_with_invalid_network_halts(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """An unsupported network stops the install before the first step."""
    env, _ = _prepare_environment(tmp_path, config_overrides={"network": "ropsten"})
    _stub_preflight(monkeypatch)

    result = runner.invoke(app, ["--yes", "install", "--json"], env=env)

    assert result.exit_code == 2
    payload = _extract_json(result.stdout)
    assert payload["ok"] is False
    assert "ropsten" in str(payload["halted"])


def test_install_blocked_by_preflight(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Critical pre-flight failures stop the install unless forced."""
    env, _ = _prepare_environment(tmp_path)
    _stub_preflight(monkeypatch, busy={443})

    result = runner.invoke(app, ["--yes", "install"], env=env)

    assert result.exit_code == 3
    assert "Port 443" in result.stdout


def test_install_rejects_unknown_resume_step(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Resuming from a step that does not exist is a validation error."""
    env, _ = _prepare_environment(tmp_path)
    _stub_preflight(monkeypatch)

    result = runner.invoke(app, ["--yes", "install", "--from", "bogus"], env=env)

    assert result.exit_code == 2
    assert "Unknown step 'bogus'" in result.stdout


def test_chain_configure_rejects_unknown_network(tmp_path: Path) -> None:
    """Network overrides are validated before anything is written."""
    env, project_root = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["chain", "configure", "--network", "mainnet"], env=env)

    assert result.exit_code == 2
    assert "Invalid network target" in result.stdout
    assert not (project_root / "veriscope_ta_node" / ".env").exists()


def test_cert_expiry_needs_a_domain(tmp_path: Path) -> None:
    """Without --domain or service_host there is nothing to check."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["cert", "expiry"], env=env)

    assert result.exit_code == 2
    assert "No domain given." in result.stdout


def test_backup_list_json(tmp_path: Path) -> None:
    """Backups are listed newest first."""
    env, _ = _prepare_environment(tmp_path)
    backups = tmp_path / "backups"
    backups.mkdir()
    (backups / "postgres-20260101-000000.sql.gz").write_bytes(b"x")
    (backups / "redis-20260102-000000.rdb.gz").write_bytes(b"y")

    result = runner.invoke(app, ["backup", "list", "--json"], env=env)

    assert result.exit_code == 0
    start = result.stdout.find("[")
    payload = json.loads(result.stdout[start:])
    assert [item["kind"] for item in payload] == ["cache", "database"]


def test_backup_clean_without_directory(tmp_path: Path) -> None:
    """Cleaning a missing backup directory is a validation error."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["backup", "clean", "--days", "7"], env=env)

    assert result.exit_code == 2
    assert "Backup directory does not exist" in result.stdout


def test_restore_outside_backup_directory_refused(tmp_path: Path) -> None:
    """Restores from arbitrary locations need --allow-outside."""
    env, _ = _prepare_environment(tmp_path)
    stray = tmp_path / "stray.sql.gz"
    stray.write_bytes(gzip.compress(b"SELECT 1;"))

    result = runner.invoke(app, ["restore", "database", str(stray)], env=env)

    assert result.exit_code == 2
    assert "--allow-outside" in result.stdout


def test_restore_declined_exits_cleanly(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Declining the overwrite gate is a no-op, not a failure."""
    env, _ = _prepare_environment(tmp_path)
    backups = tmp_path / "backups"
    backups.mkdir()
    source = backups / "redis-20260101-000000.rdb.gz"
    source.write_bytes(gzip.compress(b"REDIS0011"))
    monkeypatch.setattr(ComposeRuntime, "is_running", lambda self, service: True)

    result = runner.invoke(app, ["--non-interactive", "restore", "cache", str(source)], env=env)

    assert result.exit_code == 0
    assert "Cancelled" in result.stdout
    assert "[CANCELLED] REDIS_RESTORE" in (backups / "backup-restore.log").read_text()


def _old_backups(backups: Path, *names: str) -> list[Path]:
    backups.mkdir(exist_ok=True)
    stamp = time.time() - 60 * 86400
    paths = []
    for name in names:
        path = backups / name
        path.write_bytes(b"x")
        os.utime(path, (stamp, stamp))
        paths.append(path)
    return paths


def test_backup_clean_with_yes_still_needs_phrase(tmp_path: Path) -> None:
    """--yes does not answer DELETE; the candidates are named and kept."""
    env, _ = _prepare_environment(tmp_path)
    old = _old_backups(
        tmp_path / "backups", "postgres-20260101-000000.sql.gz", "redis-20260101-000000.rdb.gz"
    )

    result = runner.invoke(app, ["--yes", "backup", "clean", "--days", "30"], env=env)

    assert result.exit_code == 0
    assert "Cancelled" in result.stdout
    assert "postgres-20260101-000000.sql.gz" in result.stdout
    assert "redis-20260101-000000.rdb.gz" in result.stdout
    assert all(path.exists() for path in old)


def test_backup_clean_with_confirm_phrase(tmp_path: Path) -> None:
    """Scripted cleanups pass the phrase explicitly."""
    env, _ = _prepare_environment(tmp_path)
    (old,) = _old_backups(tmp_path / "backups", "postgres-20260101-000000.sql.gz")

    result = runner.invoke(
        app,
        ["--yes", "backup", "clean", "--days", "30", "--confirm-phrase", "DELETE"],
        env=env,
    )

    assert result.exit_code == 0
    assert f"Deleted: {old.name}" in result.stdout
    assert not old.exists()


@pytest.mark.parametrize("kind", ["database", "cache", "config"])
def test_restore_with_yes_still_needs_phrase(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, kind: str
) -> None:
    """--yes alone cancels every restore instead of overwriting data."""
    env, project_root = _prepare_environment(tmp_path)
    (project_root / ".env").write_text("POSTGRES_DB=trustanchor\n")
    backups = tmp_path / "backups"
    backups.mkdir()
    sources = {
        "database": backups / "postgres-20260101-000000.sql.gz",
        "cache": backups / "redis-20260101-000000.rdb.gz",
    }
    sources["database"].write_bytes(gzip.compress(b"SELECT 1;"))
    sources["cache"].write_bytes(gzip.compress(b"REDIS0011"))
    sources["config"] = backups / "app-files-20260101-000000.tar.gz"
    with tarfile.open(sources["config"], "w:gz") as handle:
        handle.add(project_root / ".env", arcname=".env")
    monkeypatch.setattr(ComposeRuntime, "is_running", lambda self, service: True)
    monkeypatch.setattr(PostgresClient, "wait_ready", lambda self, **kwargs: 0.0)
    monkeypatch.setattr(
        PostgresClient,
        "credentials",
        lambda self: DatabaseCredentials(user="trustanchor", name="trustanchor", password="pw"),
    )

    result = runner.invoke(app, ["--yes", "restore", kind, str(sources[kind])], env=env)

    assert result.exit_code == 0
    assert "Cancelled" in result.stdout
    assert "[CANCELLED]" in (backups / "backup-restore.log").read_text()
    assert list(backups.glob("pre-restore-*")) == []

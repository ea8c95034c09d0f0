"""Database credential provisioning for the root and dashboard environments."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .envfile import EnvFile
from .errors import SecretGenerationError
from .secrets import generate_secret
from .validators import Tier, validate_credential_for_tier

if TYPE_CHECKING:
    from .config import DatabaseConfig

GENERATED_PASSWORD_LENGTH = 32
_GENERATION_ATTEMPTS = 5

_LOCAL_HOSTS = ("localhost", "127.0.0.1")

# Dashboard keys that point at localhost on a single host but must use
# compose service names inside the container network.
CONTAINER_REWRITES: Mapping[str, Mapping[str, str]] = {
    "REDIS_HOST": {"127.0.0.1": "redis", "localhost": "redis"},
    "PUSHER_APP_HOST": {"127.0.0.1": "app", "localhost": "app"},
    "HTTP_API_URL": {"http://localhost:8080": "http://ta-node:8080"},
    "SHYFT_TEMPLATE_HELPER_URL": {"http://localhost:8090": "http://ta-node:8090"},
}


@dataclass(slots=True)
class DatabaseCredentialResult:
    """Outcome of :func:`provision_database_credentials`."""

    user: str
    database: str
    password: str = field(repr=False)
    reused: bool
    root_changed: list[str] = field(default_factory=list)
    dashboard_changed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def provision_database_credentials(
    root_env: Path,
    dashboard_env: Path,
    *,
    tier: Tier,
    mode: str,
    defaults: DatabaseConfig,
    service_host: str | None,
) -> DatabaseCredentialResult:
    """Make sure a policy-compliant database password exists and is wired up.

    An existing password that passes the tier policy is reused. One that
    fails is replaced with a generated password and a warning. The root
    ``.env`` receives the ``POSTGRES_*`` keys; the dashboard ``.env`` (when
    present) receives the ``DB_*`` keys, ``APP_URL`` and, in container mode,
    service-name rewrites for keys still pointing at localhost.
    """
    root = EnvFile(root_env)
    current = root.read()
    warnings: list[str] = []

    existing = current.get("POSTGRES_PASSWORD") or ""
    reused = False
    password = ""
    if existing:
        check = validate_credential_for_tier(existing, tier)
        if check.ok:
            password = existing
            reused = True
            warnings.extend(check.warnings)
        else:
            warnings.append(
                "Existing PostgreSQL password was rejected "
                f"({'; '.join(check.reasons)}); a new one was generated"
            )
    if not password:
        password = _generate_password(tier)

    user = current.get("POSTGRES_USER") or defaults.user
    database = current.get("POSTGRES_DB") or defaults.name
    root_changed = root.upsert_many(
        {
            "POSTGRES_PASSWORD": password,
            "POSTGRES_USER": user,
            "POSTGRES_DB": database,
        },
        create=True,
    )

    result = DatabaseCredentialResult(
        user=user,
        database=database,
        password=password,
        reused=reused,
        root_changed=root_changed,
        warnings=warnings,
    )

    dashboard = EnvFile(dashboard_env)
    if not dashboard.exists():
        result.warnings.append(f"{dashboard_env} not found; dashboard database settings not written")
        return result

    dashboard_values = dashboard.read()
    updates: dict[str, str] = {
        "DB_CONNECTION": "pgsql",
        "DB_HOST": "localhost" if mode == "host" else defaults.service,
        "DB_PORT": str(defaults.port),
        "DB_DATABASE": database,
        "DB_USERNAME": user,
        "DB_PASSWORD": password,
        "APP_URL": app_url_for(service_host),
    }
    if mode != "host":
        for key, mapping in CONTAINER_REWRITES.items():
            value = dashboard_values.get(key)
            if value in mapping:
                updates[key] = mapping[value]
    result.dashboard_changed = dashboard.upsert_many(updates)
    return result


def app_url_for(service_host: str | None) -> str:
    """Return the dashboard's public URL; loopback hosts are served over plain HTTP."""
    host = service_host or "localhost"
    scheme = "http" if host in _LOCAL_HOSTS else "https"
    return f"{scheme}://{host}"


def _generate_password(tier: Tier) -> str:
    for _ in range(_GENERATION_ATTEMPTS):
        candidate = generate_secret(GENERATED_PASSWORD_LENGTH).value
        check = validate_credential_for_tier(candidate, tier)
        if check.ok and not check.warnings:
            return candidate
    raise SecretGenerationError("Could not generate a password that satisfies the policy")


__all__ = [
    "CONTAINER_REWRITES",
    "DatabaseCredentialResult",
    "GENERATED_PASSWORD_LENGTH",
    "app_url_for",
    "provision_database_credentials",
]

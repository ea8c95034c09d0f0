"""Secret generation and the secrets shared between deployment components.

Covers random secret generation with an entropy fallback chain, the webhook
secret the trust-anchor node and the dashboard must agree on, and the
sealer keypair that identifies this trust anchor on chain.
"""
from __future__ import annotations

import base64
import json
import os
import re
import secrets as _stdlib_secrets
import string
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from .confirm import Confirmer, require
from .envfile import EnvFile, SyncReport, sync_key
from .errors import (
    IntegrityError,
    MalformedResponseError,
    SecretGenerationError,
    ValidationError,
)

if TYPE_CHECKING:
    from .providers.runtime import ServiceRuntime

WEBHOOK_SECRET_KEY = "WEBHOOK_CLIENT_SECRET"
MIN_SHARED_SECRET_LENGTH = 32
SECRET_RESTART_SERVICES: tuple[str, ...] = ("app", "ta-node")

_ALPHANUMERIC = string.ascii_letters + string.digits
_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")
_PRIVATE_KEY = re.compile(r"^[0-9a-fA-F]{64}$")

KEYPAIR_SCRIPT = (
    "const ethers = require('ethers');"
    "const wallet = ethers.Wallet.createRandom();"
    "console.log(JSON.stringify({address: wallet.address,"
    " privateKey: wallet.privateKey.substring(2)}));"
)


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class EntropySources:
    """Byte sources tried in order; ``None`` marks a source as unavailable."""

    strong: Callable[[int], bytes] | None = _stdlib_secrets.token_bytes
    weak: Callable[[int], bytes] | None = os.urandom


@dataclass(slots=True, frozen=True)
class GeneratedSecret:
    """A generated secret and the entropy source that produced it."""

    value: str
    source: str

    def __repr__(self) -> str:
        return f"GeneratedSecret(source={self.source!r}, length={len(self.value)})"


def generate_secret(length: int = 32, *, sources: EntropySources | None = None) -> GeneratedSecret:
    """Return a random alphanumeric secret of exactly *length* characters.

    The strong source is base64-encoded with ``=``, ``+`` and ``/`` removed.
    When it is unavailable the weak source's bytes are mapped onto
    alphanumerics instead. Raises :class:`SecretGenerationError` when neither
    source works.
    """
    if length < 1:
        raise ValidationError(f"Secret length must be at least 1 (got {length})")
    chosen = sources or EntropySources()

    if chosen.strong is not None:
        try:
            return GeneratedSecret(_from_strong(chosen.strong, length), "strong")
        except (OSError, NotImplementedError):
            pass
    if chosen.weak is not None:
        try:
            return GeneratedSecret(_from_weak(chosen.weak, length), "weak")
        except (OSError, NotImplementedError) as exc:
            raise SecretGenerationError(f"No secure random source available: {exc}") from exc
    raise SecretGenerationError("No secure random source available")


def generate_hex_secret(nbytes: int = 32) -> str:
    """Return ``2 * nbytes`` hex characters."""
    try:
        return _stdlib_secrets.token_hex(nbytes)
    except (OSError, NotImplementedError) as exc:
        raise SecretGenerationError(f"No secure random source available: {exc}") from exc


def _from_strong(source: Callable[[int], bytes], length: int) -> str:
    collected = ""
    while len(collected) < length:
        encoded = base64.b64encode(source(48)).decode("ascii")
        collected += encoded.translate(str.maketrans("", "", "=+/"))
    return collected[:length]


def _from_weak(source: Callable[[int], bytes], length: int) -> str:
    limit = 256 - (256 % len(_ALPHANUMERIC))
    chars: list[str] = []
    while len(chars) < length:
        for byte in source(length * 2):
            if byte < limit:
                chars.append(_ALPHANUMERIC[byte % len(_ALPHANUMERIC)])
                if len(chars) == length:
                    break
    return "".join(chars)


# ---------------------------------------------------------------------------
# Webhook shared secret
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SharedSecretResult:
    """Outcome of synchronising the webhook secret."""

    source: str
    report: SyncReport
    length: int
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RegenerationResult:
    """Outcome of replacing the webhook secret."""

    report: SyncReport
    length: int
    restarted: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def synchronize_shared_secret(
    ta_node_env: Path,
    dashboard_env: Path,
    *,
    key: str = WEBHOOK_SECRET_KEY,
    min_length: int = MIN_SHARED_SECRET_LENGTH,
) -> SharedSecretResult:
    """Make both files carry the same secret, keeping an existing one if possible.

    The node's value wins, then the dashboard's, then a fresh one is
    generated. A missing dashboard file is skipped with a warning; a
    missing node file is a validation error.
    """
    node = EnvFile(ta_node_env)
    dashboard = EnvFile(dashboard_env)
    if not node.exists():
        raise ValidationError(
            f"TA node environment file not found: {ta_node_env}",
            remediation="Run: veriscopectl chain configure",
        )

    value = node.get(key)
    source = "ta_node"
    if not value and dashboard.exists():
        value = dashboard.get(key)
        source = "dashboard"
    if not value:
        value = generate_hex_secret()
        source = "generated"

    if len(value) < min_length:
        raise IntegrityError(
            f"{key} from {source} is too short ({len(value)} chars, minimum {min_length})",
            remediation="Run: veriscopectl secrets regenerate-webhook",
        )

    report = sync_key([node, dashboard], key, value, skip_missing=True)
    report.raise_for_partial()
    warnings = [f"{path} not found; {key} set in the TA node only" for path in report.skipped]
    return SharedSecretResult(source=source, report=report, length=len(value), warnings=warnings)


def regenerate_shared_secret(
    files: Sequence[Path],
    *,
    confirmer: Confirmer,
    runtime: ServiceRuntime,
    services: Sequence[str] = SECRET_RESTART_SERVICES,
    key: str = WEBHOOK_SECRET_KEY,
) -> RegenerationResult:
    """Replace the shared secret in every file and restart running consumers.

    Nothing is written when the operator declines. The first file must
    exist; later ones are skipped with a warning when absent.
    """
    if not files:
        raise ValidationError("No environment files given")
    require(confirmer, f"Generate a new {key}? The current secret will stop working.")
    primary = EnvFile(files[0])
    if not primary.exists():
        raise ValidationError(
            f"Environment file not found: {files[0]}",
            remediation="Run: veriscopectl chain configure",
        )

    value = generate_hex_secret()
    report = sync_key([EnvFile(path) for path in files], key, value, skip_missing=True)
    report.raise_for_partial()

    result = RegenerationResult(report=report, length=len(value))
    result.warnings.extend(f"{path} not found; not updated" for path in report.skipped)
    for service in services:
        if runtime.is_running(service):
            runtime.restart(service)
            result.restarted.append(service)
    if not result.restarted:
        result.warnings.append("No services were restarted - please restart manually")
    return result


# ---------------------------------------------------------------------------
# Sealer keypair
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class SealerKeypairResult:
    """Outcome of provisioning the trust anchor's sealer keypair."""

    address: str
    created: bool
    secret: SharedSecretResult | None = None
    warnings: list[str] = field(default_factory=list)


def provision_sealer_keypair(
    ta_node_env: Path,
    dashboard_env: Path,
    *,
    runtime: ServiceRuntime,
    common_name: str | None,
) -> SealerKeypairResult:
    """Generate the sealer keypair unless one is already recorded."""
    node = EnvFile(ta_node_env)
    if not node.exists():
        raise ValidationError(
            f"TA node environment file not found: {ta_node_env}",
            remediation="Run: veriscopectl chain configure",
        )

    existing = node.read()
    if existing.get("TRUST_ANCHOR_ACCOUNT") and existing.get("TRUST_ANCHOR_PK"):
        secret = synchronize_shared_secret(ta_node_env, dashboard_env)
        return SealerKeypairResult(
            address=existing["TRUST_ANCHOR_ACCOUNT"],
            created=False,
            secret=secret,
            warnings=list(secret.warnings),
        )

    output = runtime.run_oneoff("ta-node", ["node", "-e", KEYPAIR_SCRIPT], timeout=300)
    address, private_key = parse_keypair_output(output.stdout or "")

    values = {"TRUST_ANCHOR_ACCOUNT": address, "TRUST_ANCHOR_PK": private_key}
    warnings: list[str] = []
    if common_name:
        values["TRUST_ANCHOR_PREFNAME"] = common_name
    else:
        warnings.append(f"common_name is not set; set TRUST_ANCHOR_PREFNAME in {ta_node_env}")
    node.upsert_many(values)

    secret = synchronize_shared_secret(ta_node_env, dashboard_env)
    warnings.extend(secret.warnings)
    return SealerKeypairResult(address=address, created=True, secret=secret, warnings=warnings)


def parse_keypair_output(output: str) -> tuple[str, str]:
    """Return ``(address, private_key)`` from the key generator's output.

    The private key is returned without a ``0x`` prefix.
    """
    for line in reversed(output.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict):
            continue
        address = str(payload.get("address", ""))
        private_key = str(payload.get("privateKey", "")).removeprefix("0x")
        if _ADDRESS.match(address) and _PRIVATE_KEY.match(private_key):
            return address, private_key
        break
    raise MalformedResponseError("Key generator did not return a valid address and private key")


__all__ = [
    "EntropySources",
    "GeneratedSecret",
    "KEYPAIR_SCRIPT",
    "MIN_SHARED_SECRET_LENGTH",
    "RegenerationResult",
    "SECRET_RESTART_SERVICES",
    "SealerKeypairResult",
    "SharedSecretResult",
    "WEBHOOK_SECRET_KEY",
    "generate_hex_secret",
    "generate_secret",
    "parse_keypair_output",
    "provision_sealer_keypair",
    "regenerate_shared_secret",
    "synchronize_shared_secret",
]

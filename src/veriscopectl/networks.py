"""Named blockchain networks and the chain configuration derived from them."""
from __future__ import annotations

import json
import os
import shutil
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

import httpx

from .envfile import EnvFile
from .errors import (
    ExternalServiceError,
    IntegrityError,
    InvalidNetworkTargetError,
    ReconciliationError,
    ServiceTimeoutError,
    ServiceUnreachableError,
    ValidationError,
)

if TYPE_CHECKING:
    from .config import AppConfig
    from .providers.runtime import ServiceRuntime

MIN_CHAINSPEC_BYTES = 5120
_PRIMUS_QUERY = "?_primuscb=1627594389337-0"

# Localhost URLs in the bundled node template, rewritten to service names when
# the node runs inside the compose network.
CONTAINER_URL_REWRITES: tuple[tuple[str, str], ...] = (
    ("http://localhost:8545", "http://nethermind:8545"),
    ("ws://localhost:8545", "ws://nethermind:8545"),
    ("http://localhost:8000", "http://nginx:80"),
    ("redis://127.0.0.1:6379", "redis://redis:6379"),
    ("/opt/veriscope/veriscope_ta_node/artifacts/", "/app/artifacts/"),
)


class NetworkTarget(str, Enum):
    """The blockchain networks a deployment can join."""

    VERISCOPE_TESTNET = "veriscope_testnet"
    FED_TESTNET = "fed_testnet"
    FED_MAINNET = "fed_mainnet"

    @classmethod
    def parse(cls, value: str | NetworkTarget | None) -> NetworkTarget:
        """Return the member named by *value* or raise."""
        if isinstance(value, NetworkTarget):
            return value
        text = (value or "").strip()
        for member in cls:
            if member.value == text:
                return member
        raise InvalidNetworkTargetError(
            f"Invalid network target: {text or '<empty>'!r}",
            reasons=(f"must be one of: {cls.choices()}",),
            remediation="Set 'network' in the config file to a supported network.",
        )

    @classmethod
    def choices(cls) -> str:
        """Return the accepted names as a comma separated string."""
        return ", ".join(member.value for member in cls)


@dataclass(slots=True, frozen=True)
class NetworkSettings:
    """Fixed registry endpoints and secret for a network."""

    target: NetworkTarget
    stats_server: str
    stats_secret: str
    peer_feed_url: str
    chainspec_url: str | None = None


NETWORKS: Mapping[NetworkTarget, NetworkSettings] = {
    NetworkTarget.VERISCOPE_TESTNET: NetworkSettings(
        target=NetworkTarget.VERISCOPE_TESTNET,
        stats_server="wss://fedstats.veriscope.network/api",
        stats_secret="Oogongi4",
        peer_feed_url=f"wss://fedstats.veriscope.network/primus/{_PRIMUS_QUERY}",
    ),
    NetworkTarget.FED_TESTNET: NetworkSettings(
        target=NetworkTarget.FED_TESTNET,
        stats_server="wss://stats.testnet.shyft.network/api",
        stats_secret="Ish9phieph",
        peer_feed_url=f"wss://stats.testnet.shyft.network/primus/{_PRIMUS_QUERY}",
        chainspec_url="https://spec.shyft.network/ShyftTestnet-current.json",
    ),
    NetworkTarget.FED_MAINNET: NetworkSettings(
        target=NetworkTarget.FED_MAINNET,
        stats_server="wss://stats.shyft.network/api",
        stats_secret="uL4tohChia",
        peer_feed_url=f"wss://stats.shyft.network/primus/{_PRIMUS_QUERY}",
        chainspec_url="https://spec.shyft.network/ShyftMainnet-current.json",
    ),
}


def settings_for(target: NetworkTarget | str) -> NetworkSettings:
    """Return the fixed settings for *target*."""
    return NETWORKS[NetworkTarget.parse(target)]


# ---------------------------------------------------------------------------
# Chain configuration
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ChainConfigResult:
    """What :func:`configure_chain` changed."""

    target: NetworkTarget
    changed_keys: list[str] = field(default_factory=list)
    seeded_node_env: bool = False
    copied: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> int:
        """Return the number of individual changes made."""
        return len(self.changed_keys) + len(self.copied) + int(self.seeded_node_env)


def configure_chain(
    config: AppConfig,
    target: NetworkTarget,
    *,
    runtime: ServiceRuntime | None = None,
) -> ChainConfigResult:
    """Point the deployment at *target*.

    Writes the registry settings into the root ``.env``, seeds the
    trust-anchor node's ``.env`` from the bundled template when it is absent,
    installs chain artifacts and copies the chainspec and peer list into the
    node configuration directory.
    """
    settings = NETWORKS[target]
    result = ChainConfigResult(target=target)
    chain_dir = config.chain_dir(target.value)
    if not chain_dir.is_dir():
        raise ValidationError(
            f"Chain directory not found: {chain_dir}",
            remediation="Check that project_root points at a Veriscope checkout.",
        )

    root_env = EnvFile(config.root_env_path)
    result.changed_keys = root_env.upsert_many(
        {
            "VERISCOPE_TARGET": target.value,
            "NETHERMIND_ETHSTATS_SERVER": settings.stats_server,
            "NETHERMIND_ETHSTATS_SECRET": settings.stats_secret,
            "NETHERMIND_ETHSTATS_ENABLED": "true",
        },
        create=True,
    )

    artifacts = chain_dir / "artifacts"
    if artifacts.is_dir() and runtime is not None:
        runtime.install_artifacts(artifacts)
        result.copied.append(str(artifacts))
    elif not artifacts.is_dir():
        result.warnings.append(f"No artifacts directory found in {chain_dir}")

    node_env = config.ta_node_env_path
    if node_env.is_dir():
        shutil.rmtree(node_env)
    if not node_env.is_file() or node_env.stat().st_size == 0:
        template = chain_dir / "ta-node-env"
        if template.is_file():
            text = template.read_text(encoding="utf-8")
            if not config.is_host_mode:
                for old, new in CONTAINER_URL_REWRITES:
                    text = text.replace(old, new)
            atomic_write(node_env, text.encode("utf-8"), mode=0o600)
            result.seeded_node_env = True
            result.warnings.append("Run 'veriscopectl secrets create-sealer' to generate the sealer keypair.")
        else:
            result.warnings.append(f"No ta-node-env template found in {chain_dir}")

    node_dir = node_config_dir(config)
    if node_dir is not None:
        node_dir.mkdir(parents=True, exist_ok=True)
        for name in ("shyftchainspec.json", "static-nodes.json"):
            source = chain_dir / name
            if not source.is_file():
                continue
            destination = node_dir / name
            if destination.exists() and destination.read_bytes() == source.read_bytes():
                continue
            atomic_write(destination, source.read_bytes(), mode=0o644)
            result.copied.append(str(destination))
    return result


def node_config_dir(config: AppConfig) -> Path | None:
    """Return the blockchain client's config directory, if one is in use."""
    if config.chain.node_config_dir is not None:
        return config.chain.node_config_dir
    candidate = config.project_root / "nethermind"
    return candidate if candidate.is_dir() else None


# ---------------------------------------------------------------------------
# Chainspec
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ChainspecUpdate:
    """Outcome of :func:`update_chainspec`."""

    path: Path
    url: str
    size: int
    changed: bool
    backup: Path | None = None


def chainspec_url_for(target: NetworkTarget, override: str | None = None) -> str:
    """Return the download URL for *target*'s chainspec."""
    if override:
        return override
    url = NETWORKS[target].chainspec_url
    if url is None:
        raise ValidationError(
            f"No default chainspec URL for {target.value}",
            remediation="Set chain.chainspec_url in the config file.",
        )
    return url


def update_chainspec(
    config: AppConfig,
    target: NetworkTarget,
    *,
    client: httpx.Client | None = None,
) -> ChainspecUpdate:
    """Download the published chainspec and replace the local copy if it changed."""
    url = chainspec_url_for(target, config.chain.chainspec_url)
    destination = config.chain_dir(target.value) / "shyftchainspec.json"
    if not destination.is_file():
        raise ValidationError(f"Chainspec file not found: {destination}")

    payload = _download(url, client=client, timeout=config.chain.rpc_timeout * 3)
    if len(payload) < MIN_CHAINSPEC_BYTES:
        raise IntegrityError(
            f"Downloaded chainspec is too small ({len(payload)} bytes); "
            f"expected at least {MIN_CHAINSPEC_BYTES}."
        )
    try:
        json.loads(payload)
    except ValueError as exc:
        raise IntegrityError("Downloaded chainspec is not valid JSON; update rejected.") from exc

    if destination.read_bytes() == payload:
        return ChainspecUpdate(path=destination, url=url, size=len(payload), changed=False)

    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    backup = destination.with_name(f"{destination.name}.backup.{stamp}")
    shutil.copy2(destination, backup)
    atomic_write(destination, payload, mode=0o644)
    return ChainspecUpdate(
        path=destination, url=url, size=len(payload), changed=True, backup=backup
    )


def _download(url: str, *, client: httpx.Client | None, timeout: float) -> bytes:
    owns_client = client is None
    http = client or httpx.Client(timeout=timeout, follow_redirects=True)
    try:
        response = http.get(url)
        response.raise_for_status()
        return response.content
    except httpx.TimeoutException as exc:
        raise ServiceTimeoutError(f"Timed out downloading {url}") from exc
    except httpx.HTTPStatusError as exc:
        raise ExternalServiceError(
            f"Download of {url} failed with HTTP {exc.response.status_code}"
        ) from exc
    except httpx.HTTPError as exc:
        raise ServiceUnreachableError(f"Could not reach {url}: {exc}") from exc
    finally:
        if owns_client:
            http.close()


def atomic_write(path: Path, data: bytes, *, mode: int) -> None:
    """Write *data* to *path* via a temporary file and rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(data)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    except OSError as exc:
        raise ReconciliationError(f"Failed to write {path}: {exc}") from exc
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "CONTAINER_URL_REWRITES",
    "ChainConfigResult",
    "ChainspecUpdate",
    "MIN_CHAINSPEC_BYTES",
    "NETWORKS",
    "NetworkSettings",
    "NetworkTarget",
    "chainspec_url_for",
    "configure_chain",
    "settings_for",
    "atomic_write",
    "node_config_dir",
    "update_chainspec",
]

"""Configuration loader for veriscopectl.

Values are read from several sources, lowest precedence first:

1. Built-in defaults.
2. ``/etc/veriscopectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``VERISCOPECTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export VERISCOPECTL_MODE=host
    export VERISCOPECTL_BACKUPS__RETENTION_DAYS=14

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The result is an immutable :class:`AppConfig` that is built
once per invocation and handed to every component explicitly.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "VERISCOPECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

ALLOWED_MODES = {"container", "host"}
ALLOWED_TIERS = {"auto", "development", "production"}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ComposeConfig:
    """Container runtime settings (``docker compose``)."""

    file: str = "docker-compose.yml"
    docker_bin: str = "docker"
    project_name: str = "veriscope"
    container_prefix: str = "veriscope-"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "file": self.file,
            "docker_bin": self.docker_bin,
            "project_name": self.project_name,
            "container_prefix": self.container_prefix,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Host runtime settings (systemd units per logical service)."""

    systemctl_bin: str = "systemctl"
    units: Mapping[str, str] | None = None

    def unit_for(self, service: str) -> str:
        """Return the unit name for a logical *service*."""
        if self.units and service in self.units:
            return self.units[service]
        return service

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"systemctl_bin": self.systemctl_bin, "units": dict(self.units or {})}


@dataclass(frozen=True)
class DatabaseConfig:
    """Relational database defaults."""

    service: str = "postgres"
    user: str = "trustanchor"
    name: str = "trustanchor"
    port: int = 5432
    min_password_length: int = 16

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "service": self.service,
            "user": self.user,
            "name": self.name,
            "port": self.port,
            "min_password_length": self.min_password_length,
        }


@dataclass(frozen=True)
class CacheConfig:
    """Cache service settings."""

    service: str = "redis"
    snapshot_path: str = "/data/dump.rdb"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"service": self.service, "snapshot_path": self.snapshot_path}


@dataclass(frozen=True)
class ChainConfig:
    """Blockchain client and registry settings."""

    service: str = "nethermind"
    rpc_url: str = "http://localhost:8545"
    rpc_timeout: float = 10.0
    handshake_delay: float = 2.0
    feed_window: float = 10.0
    data_dir: str = "db"
    data_volume: str = "veriscope_nethermind_data"
    peer_cache_files: tuple[str, ...] = (
        "discoveryNodes/SimpleFileDb.db",
        "peers/SimpleFileDb.db",
    )
    node_config_dir: Path | None = None
    static_nodes_file: Path | None = None
    contact_file: Path | None = None
    chainspec_url: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "service": self.service,
            "rpc_url": self.rpc_url,
            "rpc_timeout": self.rpc_timeout,
            "handshake_delay": self.handshake_delay,
            "feed_window": self.feed_window,
            "data_dir": self.data_dir,
            "data_volume": self.data_volume,
            "peer_cache_files": list(self.peer_cache_files),
            "node_config_dir": str(self.node_config_dir) if self.node_config_dir else None,
            "static_nodes_file": (
                str(self.static_nodes_file) if self.static_nodes_file else None
            ),
            "contact_file": str(self.contact_file) if self.contact_file else None,
            "chainspec_url": self.chainspec_url,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage, retention and precondition thresholds."""

    root: Path
    retention_days: int = 30
    min_free_mb: Mapping[str, int] | None = None
    ready_timeout: float = 30.0
    ready_interval: float = 2.0

    def floor_for(self, kind: str) -> int:
        """Return the free-space floor (MB) required before backing up *kind*."""
        if self.min_free_mb and kind in self.min_free_mb:
            return self.min_free_mb[kind]
        return 100 if kind == "database" else 50

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "retention_days": self.retention_days,
            "min_free_mb": dict(self.min_free_mb or {}),
            "ready_timeout": self.ready_timeout,
            "ready_interval": self.ready_interval,
        }


@dataclass(frozen=True)
class CertificateConfig:
    """Certificate authority settings."""

    webroot: str = "/var/www/certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "webroot": self.webroot,
            "live_dir": str(self.live_dir),
            "warn_expiry_days": self.warn_expiry_days,
        }


@dataclass(frozen=True)
class PreflightConfig:
    """Thresholds and targets for pre-flight checks."""

    ports: Mapping[int, str] | None = None
    min_disk_gb: int = 20
    recommended_disk_gb: int = 50
    dns_host: str = "github.com"
    reachability_hosts: tuple[str, ...] = ("8.8.8.8", "1.1.1.1")
    reachability_timeout: float = 3.0
    registry_host: str = "hub.docker.com"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ports": {str(port): label for port, label in (self.ports or {}).items()},
            "min_disk_gb": self.min_disk_gb,
            "recommended_disk_gb": self.recommended_disk_gb,
            "dns_host": self.dns_host,
            "reachability_hosts": list(self.reachability_hosts),
            "reachability_timeout": self.reachability_timeout,
            "registry_host": self.registry_host,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for veriscopectl."""

    config_file: Path
    project_root: Path
    mode: str
    network: str | None
    service_host: str | None
    common_name: str | None
    tier: str
    assume_yes: bool
    logs_dir: Path
    service_wait_timeout: float
    compose: ComposeConfig
    systemd: SystemdConfig
    database: DatabaseConfig
    cache: CacheConfig
    chain: ChainConfig
    backups: BackupConfig
    certificates: CertificateConfig
    preflight: PreflightConfig

    # Derived locations -------------------------------------------------
    @property
    def root_env_path(self) -> Path:
        """Return the deployment-wide ``.env`` file."""
        return self.project_root / ".env"

    @property
    def dashboard_env_path(self) -> Path:
        """Return the web application's ``.env`` file."""
        return self.project_root / "veriscope_ta_dashboard" / ".env"

    @property
    def ta_node_env_path(self) -> Path:
        """Return the trust-anchor node's ``.env`` file."""
        return self.project_root / "veriscope_ta_node" / ".env"

    @property
    def is_host_mode(self) -> bool:
        """Return ``True`` when services run as systemd units on the host."""
        return self.mode == "host"

    def chain_dir(self, network: str) -> Path:
        """Return the bundled chain directory for *network*."""
        return self.project_root / "chains" / network

    def static_nodes_path(self, network: str) -> Path:
        """Return the peer list file used by the blockchain client."""
        if self.chain.static_nodes_file is not None:
            return self.chain.static_nodes_file
        return self.chain_dir(network) / "static-nodes.json"

    def contact_path(self) -> Path:
        """Return the file holding the registry contact identity."""
        if self.chain.contact_file is not None:
            return self.chain.contact_file
        return self.root_env_path

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "project_root": str(self.project_root),
            "mode": self.mode,
            "network": self.network,
            "service_host": self.service_host,
            "common_name": self.common_name,
            "tier": self.tier,
            "assume_yes": self.assume_yes,
            "logs_dir": str(self.logs_dir),
            "service_wait_timeout": self.service_wait_timeout,
            "compose": self.compose.to_dict(),
            "systemd": self.systemd.to_dict(),
            "database": self.database.to_dict(),
            "cache": self.cache.to_dict(),
            "chain": self.chain.to_dict(),
            "backups": self.backups.to_dict(),
            "certificates": self.certificates.to_dict(),
            "preflight": self.preflight.to_dict(),
        }


DEFAULT_PORTS: dict[int, str] = {
    80: "HTTP",
    443: "HTTPS",
    5432: "PostgreSQL",
    6379: "Redis",
    8545: "Nethermind RPC",
}

HOST_UNITS: dict[str, str] = {
    "app": "ta",
    "websocket": "ta-wss",
    "scheduler": "ta-schedule",
    "horizon": "horizon",
    "ta-node": "ta-node-1",
    "nethermind": "nethermind",
    "postgres": "postgresql",
    "redis": "redis-server",
    "nginx": "nginx",
}

DEFAULTS: dict[str, object] = {
    "config_file": "/etc/veriscopectl/config.yml",
    "project_root": "/opt/veriscope",
    "mode": "container",
    "network": None,
    "service_host": None,
    "common_name": None,
    "tier": "auto",
    "assume_yes": False,
    "logs_dir": "/var/log/veriscopectl",
    "service_wait_timeout": 120.0,
    "compose": {
        "file": "docker-compose.yml",
        "docker_bin": "docker",
        "project_name": "veriscope",
        "container_prefix": "veriscope-",
    },
    "systemd": {
        "systemctl_bin": "systemctl",
        "units": dict(HOST_UNITS),
    },
    "database": {
        "service": "postgres",
        "user": "trustanchor",
        "name": "trustanchor",
        "port": 5432,
        "min_password_length": 16,
    },
    "cache": {
        "service": "redis",
        "snapshot_path": None,  # derived from mode when absent
    },
    "chain": {
        "service": "nethermind",
        "rpc_url": "http://localhost:8545",
        "rpc_timeout": 10.0,
        "handshake_delay": 2.0,
        "feed_window": 10.0,
        "data_dir": None,  # derived from mode when absent
        "data_volume": "veriscope_nethermind_data",
        "peer_cache_files": [
            "discoveryNodes/SimpleFileDb.db",
            "peers/SimpleFileDb.db",
        ],
        "node_config_dir": None,
        "static_nodes_file": None,
        "contact_file": None,
        "chainspec_url": None,
    },
    "backups": {
        "root": None,  # derived from project_root when absent
        "retention_days": 30,
        "min_free_mb": {"database": 100, "cache": 50, "config-files": 50},
        "ready_timeout": 30.0,
        "ready_interval": 2.0,
    },
    "certificates": {
        "webroot": "/var/www/certbot",
        "live_dir": "/etc/letsencrypt/live",
        "warn_expiry_days": 30,
    },
    "preflight": {
        "ports": dict(DEFAULT_PORTS),
        "min_disk_gb": 20,
        "recommended_disk_gb": 50,
        "dns_host": "github.com",
        "reachability_hosts": ["8.8.8.8", "1.1.1.1"],
        "reachability_timeout": 3.0,
        "registry_host": "hub.docker.com",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
SECTION_KEYS: dict[str, set[str]] = {
    name: set(_value.keys())
    for name, _value in DEFAULTS.items()
    if isinstance(_value, dict)
}
# Free-form mappings whose keys are not validated.
OPEN_SECTIONS = {"systemd.units", "backups.min_free_mb", "preflight.ports"}

HOST_MODE_PATHS = {
    "cache.snapshot_path": "/var/lib/redis/dump.rdb",
    "chain.data_dir": "/opt/nm/nethermind_db/vasp",
    "chain.node_config_dir": "/opt/nm",
    "chain.static_nodes_file": "/opt/nm/static-nodes.json",
    "chain.contact_file": "/opt/nm/config.cfg",
}
CONTAINER_MODE_PATHS = {
    "cache.snapshot_path": "/data/dump.rdb",
    "chain.data_dir": "db",
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, _deep_copy(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")
        for key, nested in mapping.items():
            if f"{section}.{key}" in OPEN_SECTIONS and nested is not None:
                _as_dict(nested, f"{section}.{key}")

    mode = str(raw.get("mode", "container"))
    if mode not in ALLOWED_MODES:
        allowed = ", ".join(sorted(ALLOWED_MODES))
        raise ConfigError(f"Unsupported mode '{mode}'. Allowed: {allowed}.")

    tier = str(raw.get("tier", "auto"))
    if tier not in ALLOWED_TIERS:
        allowed = ", ".join(sorted(ALLOWED_TIERS))
        raise ConfigError(f"Unsupported tier '{tier}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    mode = str(raw.get("mode", "container"))
    mode_paths = HOST_MODE_PATHS if mode == "host" else CONTAINER_MODE_PATHS
    project_root = _to_path(raw.get("project_root"))

    compose_map = _as_dict(raw.get("compose"), "compose")
    compose = ComposeConfig(
        file=str(compose_map.get("file", "docker-compose.yml")),
        docker_bin=str(compose_map.get("docker_bin", "docker")),
        project_name=str(compose_map.get("project_name", "veriscope")),
        container_prefix=str(compose_map.get("container_prefix", "veriscope-")),
    )

    systemd_map = _as_dict(raw.get("systemd"), "systemd")
    units_map = _as_dict(systemd_map.get("units"), "systemd.units")
    systemd = SystemdConfig(
        systemctl_bin=str(systemd_map.get("systemctl_bin", "systemctl")),
        units={str(key): str(value) for key, value in units_map.items()},
    )

    db_map = _as_dict(raw.get("database"), "database")
    min_length = _expect_int(
        db_map.get("min_password_length"), "database.min_password_length", default=16
    )
    if min_length < 1:
        raise ConfigError("database.min_password_length must be at least 1.")
    database = DatabaseConfig(
        service=str(db_map.get("service", "postgres")),
        user=_non_empty(db_map.get("user", "trustanchor"), "database.user"),
        name=_non_empty(db_map.get("name", "trustanchor"), "database.name"),
        port=_expect_int(db_map.get("port"), "database.port", default=5432),
        min_password_length=min_length,
    )

    cache_map = _as_dict(raw.get("cache"), "cache")
    cache = CacheConfig(
        service=str(cache_map.get("service", "redis")),
        snapshot_path=str(
            cache_map.get("snapshot_path") or mode_paths["cache.snapshot_path"]
        ),
    )

    chain_map = _as_dict(raw.get("chain"), "chain")
    peer_files = _as_sequence(chain_map.get("peer_cache_files", []), "chain.peer_cache_files")
    chain = ChainConfig(
        service=str(chain_map.get("service", "nethermind")),
        rpc_url=str(chain_map.get("rpc_url", "http://localhost:8545")),
        rpc_timeout=_expect_positive_float(
            chain_map.get("rpc_timeout"), "chain.rpc_timeout", default=10.0
        ),
        handshake_delay=_expect_positive_float(
            chain_map.get("handshake_delay"), "chain.handshake_delay", default=2.0
        ),
        feed_window=_expect_positive_float(
            chain_map.get("feed_window"), "chain.feed_window", default=10.0
        ),
        data_dir=str(chain_map.get("data_dir") or mode_paths["chain.data_dir"]),
        data_volume=str(chain_map.get("data_volume", "veriscope_nethermind_data")),
        peer_cache_files=tuple(str(item) for item in peer_files),
        node_config_dir=_optional_path(
            chain_map.get("node_config_dir") or mode_paths.get("chain.node_config_dir")
        ),
        static_nodes_file=_optional_path(
            chain_map.get("static_nodes_file") or mode_paths.get("chain.static_nodes_file")
        ),
        contact_file=_optional_path(
            chain_map.get("contact_file") or mode_paths.get("chain.contact_file")
        ),
        chainspec_url=_optional_str(chain_map.get("chainspec_url")),
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_map.get("root")
    backups_root = (
        _to_path(backups_root_value) if backups_root_value else project_root / "backups"
    )
    retention = _expect_int(
        backups_map.get("retention_days"), "backups.retention_days", default=30
    )
    if retention < 1:
        raise ConfigError("backups.retention_days must be at least 1.")
    floors_map = _as_dict(backups_map.get("min_free_mb"), "backups.min_free_mb")
    backups = BackupConfig(
        root=backups_root,
        retention_days=retention,
        min_free_mb={
            str(kind): _expect_int(value, f"backups.min_free_mb.{kind}", default=50)
            for kind, value in floors_map.items()
        },
        ready_timeout=_expect_positive_float(
            backups_map.get("ready_timeout"), "backups.ready_timeout", default=30.0
        ),
        ready_interval=_expect_positive_float(
            backups_map.get("ready_interval"), "backups.ready_interval", default=2.0
        ),
    )

    cert_map = _as_dict(raw.get("certificates"), "certificates")
    warn_days = _expect_int(
        cert_map.get("warn_expiry_days"), "certificates.warn_expiry_days", default=30
    )
    if warn_days < 0:
        raise ConfigError("certificates.warn_expiry_days must be non-negative.")
    certificates = CertificateConfig(
        webroot=str(cert_map.get("webroot", "/var/www/certbot")),
        live_dir=_to_path(cert_map.get("live_dir", "/etc/letsencrypt/live")),
        warn_expiry_days=warn_days,
    )

    preflight_map = _as_dict(raw.get("preflight"), "preflight")
    ports_map = _as_dict(preflight_map.get("ports"), "preflight.ports")
    ports: dict[int, str] = {}
    for port_key, label in ports_map.items():
        port = _expect_int(port_key, "preflight.ports", default=0)
        if not 0 < port < 65536:
            raise ConfigError(f"preflight.ports contains an invalid port: {port_key!r}.")
        ports[port] = str(label)
    hosts = _as_sequence(
        preflight_map.get("reachability_hosts", []), "preflight.reachability_hosts"
    )
    preflight = PreflightConfig(
        ports=ports,
        min_disk_gb=_expect_int(
            preflight_map.get("min_disk_gb"), "preflight.min_disk_gb", default=20
        ),
        recommended_disk_gb=_expect_int(
            preflight_map.get("recommended_disk_gb"),
            "preflight.recommended_disk_gb",
            default=50,
        ),
        dns_host=str(preflight_map.get("dns_host", "github.com")),
        reachability_hosts=tuple(str(host) for host in hosts),
        reachability_timeout=_expect_positive_float(
            preflight_map.get("reachability_timeout"),
            "preflight.reachability_timeout",
            default=3.0,
        ),
        registry_host=str(preflight_map.get("registry_host", "hub.docker.com")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        project_root=project_root,
        mode=mode,
        network=_optional_str(raw.get("network")),
        service_host=_optional_str(raw.get("service_host")),
        common_name=_optional_str(raw.get("common_name")),
        tier=str(raw.get("tier", "auto")),
        assume_yes=_expect_bool(raw.get("assume_yes"), "assume_yes", default=False),
        logs_dir=_to_path(raw.get("logs_dir")),
        service_wait_timeout=_expect_positive_float(
            raw.get("service_wait_timeout"), "service_wait_timeout", default=120.0
        ),
        compose=compose,
        systemd=systemd,
        database=database,
        cache=cache,
        chain=chain,
        backups=backups,
        certificates=certificates,
        preflight=preflight,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _as_dict(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    return {key: item for key, item in value.items()}


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object) -> Path | None:
    if value in (None, ""):
        return None
    return _to_path(value)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _non_empty(value: object, label: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text:
        raise ConfigError(f"{label} must be a non-empty string.")
    return text


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"1", "true", "yes", "on"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected '{key}' to be a string. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero.")
    return number


__all__ = [
    "AppConfig",
    "BackupConfig",
    "CacheConfig",
    "ChainConfig",
    "ComposeConfig",
    "ConfigError",
    "CertificateConfig",
    "DatabaseConfig",
    "PreflightConfig",
    "SystemdConfig",
    "load_config",
]

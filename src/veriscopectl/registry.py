"""Peer discovery through the network registry and the node's own identity.

The registry is a Primus websocket feed that, after a ``ready`` emit,
pushes the nodes it currently tracks. The blockchain client exposes its
own ``enode://`` identity over JSON-RPC; that identity is written back as
the registry contact so other nodes can find this one.
"""
from __future__ import annotations

import json
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI, WebSocketException
from websockets.sync.client import connect

from .confirm import Confirmer
from .envfile import EnvFile
from .errors import (
    ExternalServiceError,
    MalformedResponseError,
    ServiceNotRunningError,
    ServiceRefusedError,
    ServiceTimeoutError,
    ServiceUnreachableError,
    ValidationError,
    VeriscopeError,
)
from .networks import NetworkTarget, atomic_write, node_config_dir, settings_for

if TYPE_CHECKING:
    from .config import AppConfig
    from .providers.runtime import ServiceRuntime

READY_MESSAGE = json.dumps({"emit": ["ready"]}, separators=(",", ":"))
CONTACT_ENV_KEY = "NETHERMIND_ETHSTATS_CONTACT"
ENODE_PREFIX = "enode://"
DEFERRED_MESSAGE = "Node is not running; apply on next manual start"


# ---------------------------------------------------------------------------
# Registry feed
# ---------------------------------------------------------------------------


class PeerFeedClient(Protocol):
    """Collects raw messages from a registry feed."""

    def collect(
        self,
        url: str,
        *,
        greeting: str,
        handshake_delay: float,
        window: float,
    ) -> list[str]:
        """Connect, send *greeting* after *handshake_delay*, return messages seen in *window*."""
        ...


@dataclass(slots=True)
class WebSocketPeerFeed:
    """:class:`PeerFeedClient` over a synchronous websocket connection."""

    open_timeout: float = 10.0
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic

    def collect(
        self,
        url: str,
        *,
        greeting: str,
        handshake_delay: float,
        window: float,
    ) -> list[str]:
        """Return every text message received before the window closes."""
        messages: list[str] = []
        try:
            with connect(url, open_timeout=self.open_timeout) as socket:
                self.sleep(handshake_delay)
                socket.send(greeting)
                deadline = self.clock() + window
                while (remaining := deadline - self.clock()) > 0:
                    try:
                        message = socket.recv(timeout=remaining)
                    except TimeoutError:
                        break
                    except ConnectionClosed:
                        break
                    if isinstance(message, bytes):
                        message = message.decode("utf-8", errors="replace")
                    messages.append(message)
        except InvalidURI as exc:
            raise ServiceUnreachableError(f"Invalid registry URL {url}: {exc}") from exc
        except ConnectionRefusedError as exc:
            raise ServiceRefusedError(f"Registry {url} refused the connection") from exc
        except TimeoutError as exc:
            raise ServiceTimeoutError(f"Timed out connecting to registry {url}") from exc
        except InvalidHandshake as exc:
            raise ServiceUnreachableError(f"Registry {url} rejected the handshake: {exc}") from exc
        except OSError as exc:
            raise ServiceUnreachableError(f"Could not reach registry {url}: {exc}") from exc
        except WebSocketException as exc:
            raise ExternalServiceError(f"Registry {url} failed: {exc}") from exc
        return messages


def parse_peer_messages(messages: Iterable[str]) -> list[str]:
    """Extract unique ``enode://`` addresses from registry messages, in order."""
    peers: list[str] = []
    seen: set[str] = set()
    for message in messages:
        if "enode" not in message:
            continue
        try:
            payload = json.loads(message)
        except ValueError:
            continue
        emit = payload.get("emit") if isinstance(payload, dict) else None
        if not isinstance(emit, list) or len(emit) < 2 or not isinstance(emit[1], dict):
            continue
        for enode in _walk_enodes(emit[1].get("nodes")):
            if enode not in seen:
                seen.add(enode)
                peers.append(enode)
    return peers


def _walk_enodes(node: Any) -> Iterable[str]:
    if isinstance(node, str):
        if node.startswith(ENODE_PREFIX):
            yield node
    elif isinstance(node, dict):
        for value in node.values():
            yield from _walk_enodes(value)
    elif isinstance(node, list):
        for item in node:
            yield from _walk_enodes(item)


def fetch_peer_list(
    target: NetworkTarget,
    feed: PeerFeedClient,
    *,
    handshake_delay: float = 2.0,
    window: float = 10.0,
) -> list[str]:
    """Return the registry's current peers for *target*; never touches disk."""
    url = settings_for(target).peer_feed_url
    messages = feed.collect(
        url, greeting=READY_MESSAGE, handshake_delay=handshake_delay, window=window
    )
    peers = parse_peer_messages(messages)
    if not peers:
        raise MalformedResponseError(
            f"Registry {url} returned no peers ({len(messages)} messages received)",
            remediation="Existing peer list kept; retry later with: veriscopectl chain refresh-peers",
        )
    return peers


def persist_peer_list(peers: Sequence[str], path: Path) -> str:
    """Atomically write *peers* as a JSON array and return the written text."""
    text = json.dumps(list(peers), indent=2) + "\n"
    atomic_write(path, text.encode("utf-8"), mode=0o644)
    return text


# ---------------------------------------------------------------------------
# Node RPC
# ---------------------------------------------------------------------------


class NodeRpcClient(Protocol):
    """JSON-RPC access to the local blockchain client."""

    def call(self, method: str, params: Sequence[Any] = ()) -> Any:
        """Invoke *method* and return its ``result``."""
        ...


@dataclass(slots=True)
class HttpNodeRpc:
    """:class:`NodeRpcClient` over HTTP using httpx."""

    url: str
    timeout: float = 10.0
    client: httpx.Client | None = None

    def call(self, method: str, params: Sequence[Any] = ()) -> Any:
        """POST a JSON-RPC request and return the decoded ``result``."""
        body = {"jsonrpc": "2.0", "id": 1, "method": method, "params": list(params)}
        owns_client = self.client is None
        http = self.client or httpx.Client(timeout=self.timeout)
        try:
            response = http.post(self.url, json=body)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ServiceTimeoutError(f"{method}: node RPC at {self.url} timed out") from exc
        except httpx.ConnectError as exc:
            if "refused" in str(exc).lower():
                raise ServiceRefusedError(
                    f"{method}: node RPC at {self.url} refused the connection"
                ) from exc
            raise ServiceUnreachableError(
                f"{method}: node RPC at {self.url} is unreachable: {exc}"
            ) from exc
        except httpx.HTTPStatusError as exc:
            raise ExternalServiceError(
                f"{method}: node RPC answered HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ServiceUnreachableError(f"{method}: node RPC failed: {exc}") from exc
        finally:
            if owns_client:
                http.close()

        try:
            payload = response.json()
        except ValueError as exc:
            raise MalformedResponseError(f"{method}: node RPC returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise MalformedResponseError(f"{method}: unexpected RPC payload")
        if payload.get("error"):
            error = payload["error"]
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ExternalServiceError(f"{method}: node RPC error: {message}")
        if "result" not in payload:
            raise MalformedResponseError(f"{method}: RPC response has no result")
        return payload["result"]


def fetch_own_registry_identity(
    rpc: NodeRpcClient,
    runtime: ServiceRuntime,
    *,
    service: str = "nethermind",
) -> str:
    """Return this node's ``enode://`` identity."""
    if not runtime.is_running(service):
        raise ServiceNotRunningError(
            f"{service} is not running",
            remediation="Start the node, then run: veriscopectl chain refresh-peers",
        )
    result = rpc.call("admin_nodeInfo")
    enode = result.get("enode") if isinstance(result, dict) else None
    if not isinstance(enode, str) or not enode.startswith(ENODE_PREFIX):
        raise MalformedResponseError("admin_nodeInfo did not include an enode identity")
    return enode


def reconcile_registry_contact(identity: str, path: Path) -> bool:
    """Record *identity* as the registry contact; return ``True`` if it changed.

    ``.cfg``/``.json`` files are node JSON configs (``EthStats.Contact``);
    anything else is treated as an environment file.
    """
    if path.suffix in {".cfg", ".json"}:
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ValidationError(
                f"Node config {path} not found",
                remediation="Run: veriscopectl chain configure",
            ) from exc
        except ValueError as exc:
            raise MalformedResponseError(f"Node config {path} is not valid JSON") from exc
        section = document.setdefault("EthStats", {})
        if section.get("Contact") == identity:
            return False
        section["Contact"] = identity
        mode = path.stat().st_mode & 0o777
        atomic_write(path, (json.dumps(document, indent=2) + "\n").encode("utf-8"), mode=mode)
        return True
    return EnvFile(path).upsert_key(CONTACT_ENV_KEY, identity, create=True)


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class PeerRefreshResult:
    """What :func:`apply_peer_refresh` did, step by step."""

    peers: list[str] = field(default_factory=list)
    peers_path: Path | None = None
    peers_text: str | None = None
    fetch_error: str | None = None
    identity: str | None = None
    identity_error: str | None = None
    contact_changed: bool = False
    restarted: bool = False
    deferred: bool = False
    declined: bool = False
    removed: list[str] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)

    @property
    def persisted(self) -> bool:
        """Return ``True`` when a new peer list was written."""
        return self.peers_text is not None

    @property
    def ok(self) -> bool:
        """Return ``True`` when every attempted step succeeded."""
        return self.fetch_error is None and self.identity_error is None


def apply_peer_refresh(
    config: AppConfig,
    target: NetworkTarget,
    *,
    runtime: ServiceRuntime,
    feed: PeerFeedClient,
    rpc: NodeRpcClient,
    confirmer: Confirmer,
) -> PeerRefreshResult:
    """Refresh the peer list and contact, then restart the node with a clean peer cache.

    A failed fetch leaves the stored peer list untouched. The restart needs
    the operator's approval; when the node was not running it is skipped
    and reported as deferred.
    """
    service = config.chain.service
    result = PeerRefreshResult(peers_path=config.static_nodes_path(target.value))
    was_running = runtime.is_running(service)

    try:
        result.peers = fetch_peer_list(
            target,
            feed,
            handshake_delay=config.chain.handshake_delay,
            window=config.chain.feed_window,
        )
    except VeriscopeError as exc:
        result.fetch_error = str(exc)
        result.messages.append("Keeping the existing peer list unchanged")
    else:
        result.peers_text = persist_peer_list(result.peers, result.peers_path)
        mirror = node_config_dir(config)
        if mirror is not None and mirror.is_dir():
            copy = mirror / "static-nodes.json"
            if copy != result.peers_path:
                persist_peer_list(result.peers, copy)

    if not was_running:
        result.deferred = True
        result.messages.append(DEFERRED_MESSAGE)
        return result

    try:
        result.identity = fetch_own_registry_identity(rpc, runtime, service=service)
    except VeriscopeError as exc:
        result.identity_error = str(exc)
    else:
        result.contact_changed = reconcile_registry_contact(result.identity, config.contact_path())

    if not (result.persisted or result.contact_changed):
        result.messages.append("Nothing changed; node restart not needed")
        return result

    if not confirmer.confirm(f"Restart {service} and clear its peer cache?", default=False):
        result.declined = True
        result.messages.append("Restart skipped; changes will apply on the next restart")
        return result

    runtime.stop(service)
    result.removed = runtime.remove_node_files(config.chain.peer_cache_files)
    runtime.start(service)
    result.restarted = True
    return result


# ---------------------------------------------------------------------------
# Sync status
# ---------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class SyncStatus:
    """Point-in-time view of the node's chain synchronisation."""

    syncing: bool | None
    current_block: int | None
    highest_block: int | None
    peer_count: int | None

    @property
    def progress_percent(self) -> int | None:
        """Return integer sync progress while syncing."""
        if not self.syncing or self.current_block is None or not self.highest_block:
            return None
        return self.current_block * 100 // self.highest_block

    @property
    def isolated(self) -> bool:
        """Return ``True`` when the node has no peers."""
        return self.peer_count == 0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "syncing": self.syncing,
            "current_block": self.current_block,
            "highest_block": self.highest_block,
            "peer_count": self.peer_count,
            "progress_percent": self.progress_percent,
            "isolated": self.isolated,
        }


def check_sync_status(rpc: NodeRpcClient) -> SyncStatus:
    """Query sync state, peer count and head block.

    Individual failures leave that field unknown; if neither the block
    number nor the peer count could be read the first error is raised.
    """
    errors: list[VeriscopeError] = []

    def _query(method: str) -> Any:
        try:
            return rpc.call(method)
        except VeriscopeError as exc:
            errors.append(exc)
            return None

    syncing_raw = _query("eth_syncing")
    peers = parse_hex_quantity(_query("net_peerCount"))
    block = parse_hex_quantity(_query("eth_blockNumber"))
    if block is None and peers is None and errors:
        raise errors[0]

    syncing: bool | None
    highest: int | None = None
    if syncing_raw is False:
        syncing = False
    elif isinstance(syncing_raw, dict):
        syncing = True
        highest = parse_hex_quantity(syncing_raw.get("highestBlock"))
        if block is None:
            block = parse_hex_quantity(syncing_raw.get("currentBlock"))
    else:
        syncing = None
    return SyncStatus(syncing=syncing, current_block=block, highest_block=highest, peer_count=peers)


def parse_hex_quantity(value: Any) -> int | None:
    """Decode a JSON-RPC quantity (``"0x1a"``); ``None`` when absent or invalid."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if not isinstance(value, str) or not value:
        return None
    try:
        return int(value, 16)
    except ValueError:
        return None


__all__ = [
    "CONTACT_ENV_KEY",
    "DEFERRED_MESSAGE",
    "HttpNodeRpc",
    "NodeRpcClient",
    "PeerFeedClient",
    "PeerRefreshResult",
    "READY_MESSAGE",
    "SyncStatus",
    "WebSocketPeerFeed",
    "apply_peer_refresh",
    "check_sync_status",
    "fetch_own_registry_identity",
    "fetch_peer_list",
    "parse_hex_quantity",
    "parse_peer_messages",
    "persist_peer_list",
    "reconcile_registry_contact",
]

"""Redis client: readiness probes and snapshot transfer."""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from ..errors import CommandError, ExternalServiceError
from .waiting import wait_until

if TYPE_CHECKING:
    from ..config import AppConfig
    from .runtime import ServiceRuntime


@dataclass(slots=True)
class RedisClient:
    """Talk to the cache service through the runtime."""

    runtime: ServiceRuntime
    config: AppConfig
    sleep: Callable[[float], None] = field(default=time.sleep)
    clock: Callable[[], float] = field(default=time.monotonic)

    @property
    def service(self) -> str:
        """Return the logical cache service name."""
        return self.config.cache.service

    def ping(self) -> bool:
        """Return ``True`` when ``redis-cli ping`` answers ``PONG``."""
        try:
            result = self.runtime.exec(self.service, ["redis-cli", "ping"], check=False, timeout=10)
        except CommandError:
            return False
        return result.returncode == 0 and (result.stdout or "").strip() == "PONG"

    def wait_ready(self, *, timeout: float, interval: float) -> float:
        """Wait (bounded) until Redis answers ``PONG``."""
        return wait_until(
            self.ping,
            timeout=timeout,
            interval=interval,
            what="Redis",
            sleep=self.sleep,
            clock=self.clock,
        )

    def save(self) -> None:
        """Force a synchronous snapshot to disk."""
        result = self.runtime.exec(self.service, ["redis-cli", "SAVE"], timeout=300)
        if (result.stdout or "").strip() != "OK":
            raise ExternalServiceError(
                f"Redis SAVE did not succeed: {(result.stdout or '').strip() or 'no output'}"
            )

    def export_snapshot(self, destination: Path) -> None:
        """Copy the on-disk snapshot to *destination*."""
        self.runtime.copy_from(self.service, self.config.cache.snapshot_path, destination)

    def import_snapshot(self, source: Path) -> None:
        """Replace the on-disk snapshot with *source*; the service should be stopped."""
        self.runtime.copy_to(self.service, source, self.config.cache.snapshot_path)


__all__ = ["RedisClient"]

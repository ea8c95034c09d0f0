"""Provider interfaces for veriscopectl."""
from __future__ import annotations

from .cache import RedisClient
from .certbot import CertbotProvider, CertificateExpiry, CertificatePaths
from .database import DatabaseCredentials, PostgresClient
from .nginx import NginxError, NginxProvider, NginxRenderResult
from .process import ProcessRunner
from .runtime import ComposeRuntime, ServiceRuntime
from .systemd import SystemdRuntime
from .webapp import WebAppClient, WebSetupResult

__all__ = [
    "CertbotProvider",
    "CertificateExpiry",
    "CertificatePaths",
    "ComposeRuntime",
    "DatabaseCredentials",
    "NginxError",
    "NginxProvider",
    "NginxRenderResult",
    "PostgresClient",
    "ProcessRunner",
    "RedisClient",
    "ServiceRuntime",
    "SystemdRuntime",
    "WebAppClient",
    "WebSetupResult",
]

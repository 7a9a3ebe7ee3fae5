"""Adapters around the external tools odooctl drives."""
from __future__ import annotations

from .certbot import CertbotError, CertbotProvider, CertificatePaths
from .commands import as_user, run_command
from .git import GitError, GitProvider
from .nginx import NginxApplyResult, NginxError, NginxProvider
from .postgres import PostgresError, PostgresProvider
from .systemd import SystemdError, SystemdProvider
from .virtualenv import VirtualenvError, VirtualenvProvider

__all__ = [
    "CertbotError",
    "CertbotProvider",
    "CertificatePaths",
    "GitError",
    "GitProvider",
    "NginxApplyResult",
    "NginxError",
    "NginxProvider",
    "PostgresError",
    "PostgresProvider",
    "SystemdError",
    "SystemdProvider",
    "VirtualenvError",
    "VirtualenvProvider",
    "as_user",
    "run_command",
]

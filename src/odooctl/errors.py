"""Error taxonomy shared by the registry, providers and lifecycle manager."""
from __future__ import annotations

from .exit_codes import ExitCode


class OdooctlError(RuntimeError):
    """Base class for every error odooctl reports to the operator."""

    exit_code: ExitCode = ExitCode.PROVIDER


class ValidationError(OdooctlError):
    """Raised for malformed instance names, domains, e-mails or options."""

    exit_code = ExitCode.VALIDATION


class NotFoundError(OdooctlError):
    """Raised when no instance matches the requested name or selection."""

    exit_code = ExitCode.VALIDATION


class DatabaseError(OdooctlError):
    """Raised when a PostgreSQL role or database operation fails."""


class DependencyError(OdooctlError):
    """Raised when the instance runtime environment cannot be prepared."""


class ExternalToolError(OdooctlError):
    """Raised when an invoked system tool exits non-zero or times out."""


__all__ = [
    "DatabaseError",
    "DependencyError",
    "ExternalToolError",
    "NotFoundError",
    "OdooctlError",
    "ValidationError",
]

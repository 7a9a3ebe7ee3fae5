"""Inspection of certificates issued for instance domains."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from cryptography import x509
from cryptography.x509.oid import ExtensionOID, NameOID


class CertificateSeverity(Enum):
    """Severities for certificate checks."""

    OK = "ok"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class CertificateFinding:
    """Individual check outcome."""

    check: str
    severity: CertificateSeverity
    message: str


@dataclass(frozen=True)
class CertificateReport:
    """Aggregate result of inspecting one certificate file."""

    path: Path
    domain: str
    findings: tuple[CertificateFinding, ...]
    not_valid_after: datetime | None = None

    @property
    def has_errors(self) -> bool:
        """Return True when any finding is classified as an error."""
        return any(f.severity is CertificateSeverity.ERROR for f in self.findings)

    @property
    def errors(self) -> list[str]:
        """Return the messages of error findings."""
        return [f.message for f in self.findings if f.severity is CertificateSeverity.ERROR]

    @property
    def warnings(self) -> list[str]:
        """Return the messages of warning findings."""
        return [f.message for f in self.findings if f.severity is CertificateSeverity.WARNING]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation of the report."""
        return {
            "path": str(self.path),
            "domain": self.domain,
            "not_valid_after": self.not_valid_after.isoformat() if self.not_valid_after else None,
            "findings": [
                {"check": f.check, "severity": f.severity.value, "message": f.message}
                for f in self.findings
            ],
        }


def inspect_certificate(
    path: Path,
    domain: str,
    *,
    warn_expiry_days: int = 30,
    now: datetime | None = None,
) -> CertificateReport:
    """Check that *path* holds a current certificate covering *domain*."""
    now = now or datetime.now(UTC)
    findings: list[CertificateFinding] = []

    if not path.is_file():
        findings.append(
            CertificateFinding("exists", CertificateSeverity.ERROR, f"{path} does not exist.")
        )
        return CertificateReport(path=path, domain=domain, findings=tuple(findings))

    try:
        certificate = _load_certificate(path)
    except ValueError as exc:
        findings.append(
            CertificateFinding(
                "parse", CertificateSeverity.ERROR, f"Failed to parse certificate: {exc}"
            )
        )
        return CertificateReport(path=path, domain=domain, findings=tuple(findings))

    names = certificate_names(certificate)
    if _covers(names, domain):
        findings.append(
            CertificateFinding("domain", CertificateSeverity.OK, f"Certificate covers {domain}.")
        )
    else:
        findings.append(
            CertificateFinding(
                "domain",
                CertificateSeverity.ERROR,
                f"Certificate names {sorted(names)} do not cover {domain}.",
            )
        )

    not_after = certificate.not_valid_after_utc
    if not_after <= now:
        findings.append(
            CertificateFinding(
                "expiry",
                CertificateSeverity.ERROR,
                f"Certificate expired on {not_after.isoformat()}",
            )
        )
    else:
        days_remaining = (not_after - now).days
        severity = (
            CertificateSeverity.WARNING
            if days_remaining <= warn_expiry_days
            else CertificateSeverity.OK
        )
        findings.append(
            CertificateFinding(
                "expiry",
                severity,
                f"Certificate valid until {not_after.isoformat()} ({days_remaining} day(s)).",
            )
        )

    return CertificateReport(
        path=path,
        domain=domain,
        findings=tuple(findings),
        not_valid_after=not_after,
    )


def certificate_names(certificate: x509.Certificate) -> set[str]:
    """Return the lower-cased DNS names and common name of *certificate*."""
    names: set[str] = set()
    try:
        extension = certificate.extensions.get_extension_for_oid(
            ExtensionOID.SUBJECT_ALTERNATIVE_NAME
        )
    except x509.ExtensionNotFound:
        pass
    else:
        names.update(
            name.lower() for name in extension.value.get_values_for_type(x509.DNSName)
        )
    for attribute in certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME):
        value = attribute.value
        if isinstance(value, bytes):
            value = value.decode("utf-8", "replace")
        names.add(value.lower())
    return names


def _covers(names: set[str], domain: str) -> bool:
    domain = domain.lower()
    if domain in names:
        return True
    head, _, rest = domain.partition(".")
    return bool(head and rest) and f"*.{rest}" in names


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


__all__ = [
    "CertificateFinding",
    "CertificateReport",
    "CertificateSeverity",
    "certificate_names",
    "inspect_certificate",
]

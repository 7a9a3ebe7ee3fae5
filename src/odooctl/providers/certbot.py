"""Certbot provider for Let's Encrypt certificates."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..errors import ExternalToolError
from .commands import run_command


class CertbotError(ExternalToolError):
    """Raised when certificate issuance fails."""


@dataclass(frozen=True, slots=True)
class CertificatePaths:
    """Locations of an issued certificate in the certbot live directory."""

    domain: str
    fullchain: Path
    privkey: Path


@dataclass(slots=True)
class CertbotProvider:
    """Obtain certificates through certbot's nginx authenticator."""

    certbot_bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    timeout: float | None = None

    def paths_for(self, domain: str) -> CertificatePaths:
        """Return where certbot stores the certificate for *domain*."""
        base = self.live_dir / domain
        return CertificatePaths(
            domain=domain,
            fullchain=base / "fullchain.pem",
            privkey=base / "privkey.pem",
        )

    def obtain(self, domain: str, email: str) -> CertificatePaths:
        """Request (or renew) a certificate for *domain*."""
        run_command(
            [
                self.certbot_bin,
                "certonly",
                "--nginx",
                "-d",
                domain,
                "--non-interactive",
                "--agree-tos",
                "--keep-until-expiring",
                "--email",
                email,
            ],
            error_cls=CertbotError,
            error_prefix=f"{self.certbot_bin} certonly -d {domain}",
            timeout=self.timeout,
        )
        return self.paths_for(domain)


__all__ = ["CertbotError", "CertbotProvider", "CertificatePaths"]

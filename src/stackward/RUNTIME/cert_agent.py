"""
Capability interface for the ACME certificate agent, and a certbot implementation.
"""
import os
import subprocess
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Optional

from ..errors import CertificateError, InfrastructureError


class CertAgent(ABC):
    """Issues and renews certificates. Cryptography stays inside the agent."""

    @abstractmethod
    def expiry(self, hostname: str) -> Optional[datetime]:
        """Expiry of the current certificate for ``hostname``, or None if there is none."""

    @abstractmethod
    def issue_or_renew(self, hostname: str) -> None:
        """Obtain or renew the certificate. Raises CertificateError on failure."""


class CertbotAgent(CertAgent):
    """
    Drives ``certbot certonly --webroot`` and reads expiry with ``openssl x509``.
    """

    def __init__(
        self,
        email: Optional[str] = None,
        webroot: str = "/var/www/certbot",
        live_dir: str = "/etc/letsencrypt/live",
        certbot: str = "certbot",
        timeout: float = 300,
    ):
        self.email = email
        self.webroot = webroot
        self.live_dir = live_dir
        self.certbot = certbot
        self.timeout = timeout

    def _cert_path(self, hostname: str) -> str:
        return os.path.join(self.live_dir, hostname, "cert.pem")

    def expiry(self, hostname: str) -> Optional[datetime]:
        path = self._cert_path(hostname)
        if not os.path.exists(path):
            return None
        try:
            result = subprocess.run(
                ["openssl", "x509", "-enddate", "-noout", "-in", path],
                capture_output=True,
                text=True,
                timeout=30,
            )
        except FileNotFoundError as e:
            raise InfrastructureError("openssl is not installed") from e
        except subprocess.TimeoutExpired:
            return None
        if result.returncode != 0:
            return None
        return parse_enddate(result.stdout)

    def issue_or_renew(self, hostname: str) -> None:
        command: List[str] = [
            self.certbot, "certonly", "--webroot", "-w", self.webroot,
            "-d", hostname, "--non-interactive", "--agree-tos",
        ]
        # renewal timing is decided by CertManager, not by certbot's own window
        if os.path.exists(self._cert_path(hostname)):
            command.append("--force-renewal")
        if self.email:
            command += ["-m", self.email]
        else:
            command.append("--register-unsafely-without-email")

        try:
            result = subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise InfrastructureError(f"{self.certbot} is not installed") from e
        except subprocess.TimeoutExpired:
            raise CertificateError(f"{self.certbot} timed out after {self.timeout}s") from None
        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip()[-500:]
            raise CertificateError(f"{self.certbot} exited {result.returncode}: {detail}")


def parse_enddate(output: str) -> Optional[datetime]:
    """
    Parses ``notAfter=Jan  1 00:00:00 2027 GMT`` as printed by openssl.
    """
    line = output.strip()
    if "=" in line:
        line = line.split("=", 1)[1]
    try:
        parsed = datetime.strptime(" ".join(line.split()), "%b %d %H:%M:%S %Y %Z")
    except ValueError:
        return None
    return parsed.replace(tzinfo=timezone.utc)

"""
Certificate Provisioner

Certificates are issued by the edge (on-demand TLS at the ingress). Provisioning
here means probing https://<domain>/ until it answers with a certificate that
validates; any HTTP status counts, only the TLS handshake matters.
"""
import logging
import os
from typing import Optional

import httpx

from ..errors import DomainVerificationFailed

logger = logging.getLogger(__name__)


SSL_PROBE_TIMEOUT_SECONDS = float(os.getenv("SSL_PROBE_TIMEOUT_SECONDS", "10"))


class CertificateProvisioner:

    def __init__(self, timeout: float = SSL_PROBE_TIMEOUT_SECONDS, transport: Optional[httpx.BaseTransport] = None):
        self.timeout = timeout
        self.transport = transport

    def provision(self, domain: str) -> None:
        """Raises DomainVerificationFailed when the certificate is not served yet."""
        url = f"https://{domain}/"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport, follow_redirects=False) as client:
                response = client.head(url)
        except httpx.HTTPError as e:
            raise DomainVerificationFailed(f"HTTPS probe failed for {domain}: {e}") from e
        logger.info(f"Certificate active for {domain} (probe status {response.status_code})")

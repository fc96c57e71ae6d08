"""
DNS Ownership Check

A custom domain is verified when:
- TXT  _cloaker.<domain>  contains the domain's verification token, and
- A    <domain>           points at the cloaker ingress (CLOAKER_INGRESS_IP).

When no ingress IP is configured, any A record is accepted.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import dns.exception
import dns.resolver

from ..errors import DomainVerificationFailed

logger = logging.getLogger(__name__)


CLOAKER_INGRESS_IP = os.getenv("CLOAKER_INGRESS_IP", "")
DNS_TIMEOUT_SECONDS = float(os.getenv("DNS_TIMEOUT_SECONDS", "3"))
TXT_PREFIX = "_cloaker"

_EMPTY_ANSWER = (
    dns.resolver.NXDOMAIN,
    dns.resolver.NoAnswer,
    dns.resolver.NoNameservers,
    dns.exception.Timeout,
)


@dataclass
class DnsCheckResult:
    txt_records: List[str] = field(default_factory=list)
    a_records: List[str] = field(default_factory=list)


class DnsChecker:
    """Thin wrapper over dnspython so tests can swap in a fake resolver."""

    def __init__(self, resolver: Optional[dns.resolver.Resolver] = None, ingress_ip: Optional[str] = None):
        if resolver is None:
            resolver = dns.resolver.Resolver()
            resolver.timeout = DNS_TIMEOUT_SECONDS
            resolver.lifetime = DNS_TIMEOUT_SECONDS * 2
        self.resolver = resolver
        self.ingress_ip = CLOAKER_INGRESS_IP if ingress_ip is None else ingress_ip

    def lookup_txt(self, name: str) -> List[str]:
        try:
            answer = self.resolver.resolve(name, "TXT")
        except _EMPTY_ANSWER:
            return []
        values = []
        for rdata in answer:
            values.append(b"".join(rdata.strings).decode("utf-8", errors="replace"))
        return values

    def lookup_a(self, name: str) -> List[str]:
        try:
            answer = self.resolver.resolve(name, "A")
        except _EMPTY_ANSWER:
            return []
        return [rdata.to_text() for rdata in answer]

    def check(self, domain: str, token: str) -> DnsCheckResult:
        """Raises DomainVerificationFailed describing the first missing record."""
        txt_name = f"{TXT_PREFIX}.{domain}"
        try:
            result = DnsCheckResult(
                txt_records=self.lookup_txt(txt_name),
                a_records=self.lookup_a(domain),
            )
        except dns.exception.DNSException as e:
            raise DomainVerificationFailed(f"DNS lookup failed: {e}") from e

        if token not in result.txt_records:
            raise DomainVerificationFailed(
                f"TXT record {txt_name} does not contain the verification token",
                detail={"found": result.txt_records},
            )
        if not result.a_records:
            raise DomainVerificationFailed(f"No A record for {domain}")
        if self.ingress_ip and self.ingress_ip not in result.a_records:
            raise DomainVerificationFailed(
                f"A record for {domain} does not point to {self.ingress_ip}",
                detail={"found": result.a_records},
            )
        logger.debug(f"DNS verified for {domain}: A={result.a_records}")
        return result

"""Custom domain verification and default-domain management."""
from .dns_checker import DnsChecker
from .lifecycle import DomainLifecycleManager, normalize_domain
from .ssl_provisioner import CertificateProvisioner

__all__ = [
    "CertificateProvisioner",
    "DnsChecker",
    "DomainLifecycleManager",
    "normalize_domain",
]

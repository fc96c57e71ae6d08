"""
Cloaker Error Taxonomy

Visitor path: none of these ever reach the visitor. The click service turns
them into a generic block (or the safe page) and logs them.

Management path: routers map them to HTTP status codes.
"""
from typing import Optional


class CloakerError(Exception):
    """Base class for all typed cloaker errors."""

    code = "cloaker_error"

    def __init__(self, message: str = "", *, detail: Optional[dict] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail or {}


class PolicyNotFound(CloakerError):
    """Unknown slug or domain. Treated as a hard block."""
    code = "policy_not_found"


class InvalidConfiguration(CloakerError):
    """Link cannot be enforced as configured (e.g. no destinations). Fails closed."""
    code = "invalid_configuration"


class SignalUnavailable(CloakerError):
    """Client did not supply a usable signal bundle."""
    code = "signal_unavailable"


class StoreUnavailable(CloakerError):
    """Policy store or counter store could not be reached."""
    code = "store_unavailable"


class WebhookDeliveryFailed(CloakerError):
    """One webhook delivery attempt failed (transport error or non-2xx)."""
    code = "webhook_delivery_failed"


class DomainVerificationFailed(CloakerError):
    """DNS ownership or certificate check did not pass."""
    code = "domain_verification_failed"


class DomainNotFound(CloakerError):
    code = "domain_not_found"


class DomainConflict(CloakerError):
    """Domain already registered, or invalid for registration."""
    code = "domain_conflict"


class VerificationTooSoon(CloakerError):
    """Re-check requested before the minimum interval elapsed."""
    code = "verification_too_soon"

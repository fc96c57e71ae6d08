"""
Threat Detection

UA classification, network classification and the combined ThreatFlags used by
the admission filters.
"""
from .network import build_visitor_context, client_ip, ip_in_list
from .threat_flags import detect_threat_flags, fingerprint_hash
from .user_agent import device_type, is_bot_ua, is_social_preview

__all__ = [
    "build_visitor_context",
    "client_ip",
    "ip_in_list",
    "detect_threat_flags",
    "fingerprint_hash",
    "device_type",
    "is_bot_ua",
    "is_social_preview",
]

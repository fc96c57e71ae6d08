"""
Admission Filters

Ordered, pure filter pipeline. The first failing step wins.

Steps 1-11 run before scoring and only need the policy, the request and the
threat flags. Counter state and the rate-limit verdict are passed in, so this
module never touches the database. Step 12 runs after scoring.
"""
from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional, Tuple
from urllib.parse import urlparse

from dateutil import tz

from ...models.click import SignalBundle, ThreatFlags, VisitorContext
from ...models.policy import LinkPolicy
from ..detection.network import ip_in_list


class AdmissionStatus(str, Enum):
    PASS = "pass"        # continue to scoring
    BYPASS = "bypass"    # whitelisted, allow without further filtering
    SAFE = "safe"        # serve the safe page
    BLOCK = "block"


@dataclass(frozen=True)
class AdmissionOutcome:
    status: AdmissionStatus
    reason: Optional[str] = None
    step: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != AdmissionStatus.PASS


@dataclass(frozen=True)
class CounterSnapshot:
    """Today's view of the click counters, after the lazy daily reset."""
    clicks_today: int = 0
    clicks_count: int = 0


PASS = AdmissionOutcome(AdmissionStatus.PASS)


def _block(reason: str, step: int) -> AdmissionOutcome:
    return AdmissionOutcome(AdmissionStatus.BLOCK, reason, step)


def _safe(reason: str, step: int) -> AdmissionOutcome:
    return AdmissionOutcome(AdmissionStatus.SAFE, reason, step)


# =============================================================================
# MATCHERS
# =============================================================================

def referer_matches(referer: Optional[str], patterns: Iterable[str]) -> bool:
    """Host-suffix or substring match, case-insensitive."""
    if not referer:
        return False
    text = referer.lower()
    host = (urlparse(text).hostname or "").rstrip(".")
    for pattern in patterns:
        if not pattern:
            continue
        if pattern in text:
            return True
        if host and (host == pattern or host.endswith("." + pattern)):
            return True
    return False


def language_matches(language: Optional[str], entries: Iterable[str]) -> bool:
    """'pt-BR' matches 'pt' and 'pt-br'; 'pt' does not match 'pt-br'."""
    if not language:
        return False
    full = language.lower()
    primary = full.split("-")[0]
    return any(entry == full or entry == primary for entry in entries)


def params_missing(
    query: dict, required: Tuple[Tuple[str, Optional[str]], ...]
) -> Optional[str]:
    for name, expected in required:
        value = query.get(name)
        if value is None or value == "":
            return name
        if expected is not None and value != expected:
            return name
    return None


def params_blocked(
    query: dict, blocked: Tuple[Tuple[str, Optional[str]], ...]
) -> Optional[str]:
    for name, expected in blocked:
        if name not in query:
            continue
        if expected is None or query.get(name) == expected:
            return name
    return None


def local_hour(now: datetime, timezone_name: str) -> int:
    zone = tz.gettz(timezone_name) or tz.UTC
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz.UTC)
    return now.astimezone(zone).hour


def hour_allowed(hour: int, start: Optional[int], end: Optional[int]) -> bool:
    """Inclusive [start, end]; wraps past midnight when start > end."""
    if start is None or end is None:
        return True
    if start <= end:
        return start <= hour <= end
    return hour >= start or hour <= end


# =============================================================================
# PIPELINE
# =============================================================================

def run_pre_score_filters(
    policy: LinkPolicy,
    visitor: VisitorContext,
    flags: ThreatFlags,
    counters: CounterSnapshot,
    rate_limited: bool,
    now: datetime,
) -> AdmissionOutcome:
    """Steps 1-11. Returns PASS when the click should go on to scoring."""

    # 1. Link state
    if not policy.is_active:
        return _block("link_inactive", 1)

    # 2. IP lists
    if flags.is_blacklisted or ip_in_list(visitor.ip, policy.blacklist_ips):
        return _block("ip_blacklisted", 2)
    if ip_in_list(visitor.ip, policy.whitelist_ips):
        return AdmissionOutcome(AdmissionStatus.BYPASS, "ip_whitelisted", 2)

    # 3. Geo and network operator
    if policy.allowed_countries and (visitor.country or "") not in policy.allowed_countries:
        return _block("country_not_allowed", 3)
    if visitor.country and visitor.country in policy.blocked_countries:
        return _block("country_blocked", 3)
    isp = (visitor.isp or "").lower()
    if isp and any(name in isp for name in policy.blocked_isps):
        return _block("isp_blocked", 3)
    if visitor.asn and visitor.asn.upper() in policy.blocked_asns:
        return _block("asn_blocked", 3)

    # 4. Device
    if policy.allowed_devices and flags.device_type not in policy.allowed_devices:
        return _block("device_not_allowed", 4)

    # 5. Referer
    if policy.allowed_referers and not referer_matches(visitor.referer, policy.allowed_referers):
        return _block("referer_not_allowed", 5)
    if policy.blocked_referers and referer_matches(visitor.referer, policy.blocked_referers):
        return _block("referer_blocked", 5)

    # 6. Language
    if policy.allowed_languages and not language_matches(visitor.language, policy.allowed_languages):
        return _block("language_not_allowed", 6)
    if policy.blocked_languages and language_matches(visitor.language, policy.blocked_languages):
        return _block("language_blocked", 6)

    # 7. URL params
    query = dict(visitor.query_params)
    missing = params_missing(query, policy.required_url_params)
    if missing:
        return _block(f"missing_param:{missing}", 7)
    blocked = params_blocked(query, policy.blocked_url_params)
    if blocked:
        return _block(f"blocked_param:{blocked}", 7)

    # 8. Schedule
    if policy.allowed_hours_start is not None and policy.allowed_hours_end is not None:
        hour = local_hour(now, policy.timezone)
        if not hour_allowed(hour, policy.allowed_hours_start, policy.allowed_hours_end):
            return _block("outside_allowed_hours", 8)

    # 9. Quota
    if policy.max_clicks_daily is not None and counters.clicks_today >= policy.max_clicks_daily:
        return _block("daily_quota_exceeded", 9)
    if policy.max_clicks_total is not None and counters.clicks_count >= policy.max_clicks_total:
        return _block("total_quota_exceeded", 9)

    # 10. Rate limit
    if rate_limited:
        return _block("rate_limited", 10)

    # 11. Threat flags
    if flags.custom_ua_match:
        return _block("custom_user_agent", 11)
    if flags.is_social_preview and policy.allow_social_previews:
        return _safe("social_preview", 11)
    if flags.is_bot and policy.block_bots:
        return _block("bot_detected", 11)
    if flags.is_vpn and policy.block_vpn:
        return _block("vpn_detected", 11)
    if flags.is_proxy and policy.block_proxy:
        return _block("proxy_detected", 11)
    if flags.is_datacenter and policy.block_datacenter:
        return _block("datacenter_detected", 11)
    if flags.is_tor and policy.block_tor:
        return _block("tor_detected", 11)

    return PASS


def run_score_filter(
    policy: LinkPolicy,
    flags: ThreatFlags,
    score: int,
    bundle: Optional[SignalBundle],
) -> AdmissionOutcome:
    """Step 12 (score-dependent) and step 13 (allow)."""
    if score < policy.min_score:
        if policy.block_bots and flags.is_bot:
            return _block("bot_low_score", 12)
        return _safe("score_below_minimum", 12)
    if policy.collect_fingerprint and bundle is None:
        return _safe("fingerprint_missing", 12)
    if policy.require_behavior and (bundle is None or not bundle.has_behavior):
        return _safe("behavior_missing", 12)
    return AdmissionOutcome(AdmissionStatus.PASS, "passed", 13)

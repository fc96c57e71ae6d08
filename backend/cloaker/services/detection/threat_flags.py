"""
Threat Flag Detection

Cheap boolean classification of a click, computed before any scoring so the
admission filters can reject on network / UA grounds alone.
"""
import hashlib
from typing import FrozenSet, List, Optional

from ...models.click import SignalBundle, ThreatFlags, VisitorContext
from ...models.policy import LinkPolicy
from .network import (
    ip_in_list, is_datacenter_isp, is_proxy_request, is_tor_exit, is_vpn_isp,
)
from .user_agent import (
    device_type, is_automation_ua, is_bot_ua, is_social_preview, match_custom_agent,
)


AUTOMATION_SIGNALS = (
    ("has_webdriver", "webdriver"),
    ("has_selenium", "selenium"),
    ("has_puppeteer", "puppeteer"),
    ("has_playwright", "playwright"),
    ("has_cypress", "cypress"),
    ("has_phantom", "phantom"),
)


def detect_threat_flags(
    policy: LinkPolicy,
    visitor: VisitorContext,
    bundle: Optional[SignalBundle],
    tor_exit_nodes: Optional[FrozenSet[str]] = None,
) -> ThreatFlags:
    reasons: List[str] = []
    ua = visitor.user_agent or (bundle.user_agent if bundle else "") or ""

    social = is_social_preview(ua)
    bot = is_bot_ua(ua)
    if social:
        reasons.append("social_preview_ua")
    elif bot:
        reasons.append("bot_ua")

    automated = is_automation_ua(ua)
    headless = "headless" in ua.lower()
    if bundle is not None:
        for attr, name in AUTOMATION_SIGNALS:
            if getattr(bundle, attr):
                automated = True
                reasons.append(name)
        if bundle.is_automated:
            automated = True
            reasons.append("automated")
        if bundle.is_headless:
            headless = True
            reasons.append("headless")
    if automated or headless:
        bot = True

    vpn = is_vpn_isp(visitor.isp)
    if vpn:
        reasons.append("vpn_isp")
    if bundle is not None and bundle.webrtc_public_ip and visitor.ip and bundle.webrtc_public_ip != visitor.ip:
        vpn = True
        reasons.append("webrtc_ip_mismatch")

    proxy = is_proxy_request(visitor.headers)
    if proxy:
        reasons.append("proxy_headers")

    datacenter = is_datacenter_isp(visitor.isp)
    if datacenter:
        reasons.append("datacenter_isp")

    tor = is_tor_exit(visitor.ip, tor_exit_nodes)
    if tor:
        reasons.append("tor_exit")

    blacklisted = ip_in_list(visitor.ip, policy.blacklist_ips)
    if blacklisted:
        reasons.append("ip_blacklisted")

    custom = match_custom_agent(ua, policy.custom_user_agents)
    if custom:
        reasons.append("custom_user_agent")

    return ThreatFlags(
        is_bot=bot,
        is_headless=headless,
        is_automated=automated,
        is_vpn=vpn,
        is_proxy=proxy,
        is_datacenter=datacenter,
        is_tor=tor,
        is_blacklisted=blacklisted,
        is_social_preview=social,
        custom_ua_match=custom,
        device_type=device_type(ua),
        reasons=tuple(reasons),
    )


def fingerprint_hash(bundle: Optional[SignalBundle]) -> Optional[str]:
    """Stable visitor hash from device/browser signals. None without a bundle."""
    if bundle is None:
        return None
    components = [
        bundle.user_agent, bundle.language, bundle.timezone, bundle.screen_resolution,
        bundle.color_depth, bundle.device_memory, bundle.hardware_concurrency,
        bundle.platform, bundle.webgl_vendor, bundle.webgl_renderer,
        bundle.canvas_hash, bundle.fonts_hash,
    ]
    if all(c is None for c in components):
        return None
    joined = "|".join("" if c is None else str(c) for c in components)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:32]

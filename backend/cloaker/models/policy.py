"""
Cloaker - Link Policy

Immutable, typed view of a CloakedLinkDB row. Loaded once per click by the
PolicyStore and handed to the filters and the decision engine; nothing on the
click path reads the ORM row directly.

Absent filters are empty tuples / None and mean "no restriction".
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, Optional, Tuple


@dataclass(frozen=True)
class WeightedTarget:
    url: str
    weight: float


def _tuple(values: Optional[Iterable[Any]], *, upper: bool = False, lower: bool = False) -> Tuple[str, ...]:
    if not values:
        return ()
    out = []
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if not text:
            continue
        if upper:
            text = text.upper()
        elif lower:
            text = text.lower()
        out.append(text)
    return tuple(out)


def _params(values: Optional[Dict[str, Any]]) -> Tuple[Tuple[str, Optional[str]], ...]:
    if not values or not isinstance(values, dict):
        return ()
    return tuple(
        (str(name), None if value in (None, "", "*") else str(value))
        for name, value in values.items()
    )


def _targets(raw: Any) -> Tuple[WeightedTarget, ...]:
    if not raw or not isinstance(raw, list):
        return ()
    targets = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("url"):
            continue
        try:
            weight = float(item.get("weight", 1))
        except (TypeError, ValueError):
            continue
        if weight > 0:
            targets.append(WeightedTarget(url=str(item["url"]), weight=weight))
    return tuple(targets)


@dataclass(frozen=True)
class LinkPolicy:
    id: str
    user_id: str
    slug: str
    safe_url: str
    target_url: Optional[str] = None
    target_urls: Tuple[WeightedTarget, ...] = ()
    custom_domain: Optional[str] = None
    is_active: bool = True

    allowed_countries: Tuple[str, ...] = ()
    blocked_countries: Tuple[str, ...] = ()
    allowed_devices: Tuple[str, ...] = ()
    allowed_referers: Tuple[str, ...] = ()
    blocked_referers: Tuple[str, ...] = ()
    allowed_languages: Tuple[str, ...] = ()
    blocked_languages: Tuple[str, ...] = ()
    required_url_params: Tuple[Tuple[str, Optional[str]], ...] = ()
    blocked_url_params: Tuple[Tuple[str, Optional[str]], ...] = ()
    whitelist_ips: Tuple[str, ...] = ()
    blacklist_ips: Tuple[str, ...] = ()
    custom_user_agents: Tuple[str, ...] = ()
    blocked_isps: Tuple[str, ...] = ()
    blocked_asns: Tuple[str, ...] = ()

    block_bots: bool = True
    block_vpn: bool = False
    block_proxy: bool = False
    block_datacenter: bool = False
    block_tor: bool = False
    allow_social_previews: bool = False

    min_score: int = 40
    collect_fingerprint: bool = False
    require_behavior: bool = False
    behavior_time_ms: int = 2000

    max_clicks_daily: Optional[int] = None
    max_clicks_total: Optional[int] = None
    clicks_today: int = 0
    clicks_count: int = 0
    last_click_reset: Optional[date] = None
    timezone: str = "UTC"

    allowed_hours_start: Optional[int] = None
    allowed_hours_end: Optional[int] = None

    rate_limit_per_ip: Optional[int] = None
    rate_limit_window_minutes: Optional[int] = None

    redirect_delay_ms: int = 0
    passthrough_utm: bool = False

    webhook_url: Optional[str] = None
    webhook_enabled: bool = False
    webhook_events: Tuple[str, ...] = ()

    @property
    def has_destination(self) -> bool:
        return bool(self.target_urls) or bool(self.target_url)

    @property
    def has_rate_limit(self) -> bool:
        return bool(self.rate_limit_per_ip) and bool(self.rate_limit_window_minutes)

    @classmethod
    def from_record(cls, link) -> "LinkPolicy":
        """Build from a CloakedLinkDB row."""
        return cls(
            id=link.id,
            user_id=link.user_id,
            slug=link.slug,
            safe_url=link.safe_url,
            target_url=link.target_url or None,
            target_urls=_targets(link.target_urls),
            custom_domain=link.custom_domain,
            is_active=bool(link.is_active),
            allowed_countries=_tuple(link.allowed_countries, upper=True),
            blocked_countries=_tuple(link.blocked_countries, upper=True),
            allowed_devices=_tuple(link.allowed_devices, lower=True),
            allowed_referers=_tuple(link.allowed_referers, lower=True),
            blocked_referers=_tuple(link.blocked_referers, lower=True),
            allowed_languages=_tuple(link.allowed_languages, lower=True),
            blocked_languages=_tuple(link.blocked_languages, lower=True),
            required_url_params=_params(link.required_url_params),
            blocked_url_params=_params(link.blocked_url_params),
            whitelist_ips=_tuple(link.whitelist_ips),
            blacklist_ips=_tuple(link.blacklist_ips),
            custom_user_agents=_tuple(link.custom_user_agents, lower=True),
            blocked_isps=_tuple(link.blocked_isps, lower=True),
            blocked_asns=_tuple(link.blocked_asns, upper=True),
            block_bots=bool(link.block_bots),
            block_vpn=bool(link.block_vpn),
            block_proxy=bool(link.block_proxy),
            block_datacenter=bool(link.block_datacenter),
            block_tor=bool(link.block_tor),
            allow_social_previews=bool(link.allow_social_previews),
            min_score=int(link.min_score if link.min_score is not None else 40),
            collect_fingerprint=bool(link.collect_fingerprint),
            require_behavior=bool(link.require_behavior),
            behavior_time_ms=int(link.behavior_time_ms or 2000),
            max_clicks_daily=link.max_clicks_daily,
            max_clicks_total=link.max_clicks_total,
            clicks_today=int(link.clicks_today or 0),
            clicks_count=int(link.clicks_count or 0),
            last_click_reset=link.last_click_reset,
            timezone=link.timezone or "UTC",
            allowed_hours_start=link.allowed_hours_start,
            allowed_hours_end=link.allowed_hours_end,
            rate_limit_per_ip=link.rate_limit_per_ip,
            rate_limit_window_minutes=link.rate_limit_window_minutes,
            redirect_delay_ms=int(link.redirect_delay_ms or 0),
            passthrough_utm=bool(link.passthrough_utm),
            webhook_url=link.webhook_url,
            webhook_enabled=bool(link.webhook_enabled),
            webhook_events=_tuple(link.webhook_events, lower=True),
        )

"""
User-Agent Classification

Pattern tables for crawlers, ad-review bots, automation frameworks and
social-preview fetchers, plus device-category detection.
"""
import re
from typing import Optional

from ...models.db_models import DeviceType


# =============================================================================
# PATTERN TABLES
# =============================================================================

# Social link-preview fetchers. Blocked as bots unless the link allows previews.
SOCIAL_PREVIEW_PATTERNS = [
    re.compile(p, re.I) for p in (
        r"facebookexternalhit", r"facebot", r"facebookcatalog", r"meta-externalagent",
        r"twitterbot", r"linkedinbot", r"slackbot", r"discordbot", r"telegrambot",
        r"whatsapp", r"pinterest", r"skypeuripreview", r"redditbot", r"embedly",
    )
]

AUTOMATION_UA_PATTERNS = [
    re.compile(p, re.I) for p in (
        r"headless", r"phantomjs", r"selenium", r"puppeteer", r"playwright",
        r"cypress", r"webdriver", r"nightmare", r"casperjs", r"slimerjs",
        r"splinter", r"zombie",
    )
]

BOT_UA_PATTERNS = [
    re.compile(p, re.I) for p in (
        # Ad platforms
        r"adsbot", r"mediapartners-google", r"googleads", r"google-adwords",
        r"google-inspectiontool", r"google-safety", r"google-site-verification",
        r"google-structured-data", r"bingads", r"adidxbot",
        # Search engines
        r"googlebot", r"google-extended", r"apis-google", r"feedfetcher-google",
        r"storebot-google", r"google-read-aloud", r"bingbot", r"bingpreview", r"slurp",
        r"duckduckbot", r"baiduspider", r"yandexbot", r"sogou", r"exabot",
        r"ia_archiver", r"archive\.org", r"lighthouse",
        # SEO tools
        r"semrush", r"ahrefsbot", r"mj12bot", r"dotbot", r"petalbot", r"bytespider",
        r"screaming frog", r"rogerbot", r"seokicks", r"sistrix", r"blexbot", r"dataforseo",
        # HTTP clients and generic markers
        r"\bbot\b", r"bot/", r"crawl", r"spider", r"archiver", r"transcoder", r"wget",
        r"curl/", r"httpx", r"python-requests", r"python-urllib", r"aiohttp", r"java/",
        r"axios", r"node-fetch", r"go-http-client", r"libwww", r"scrapy", r"scraper",
        r"scanner", r"httpclient",
    )
]

TABLET_RE = re.compile(r"tablet|ipad|playbook|silk|kindle", re.I)
MOBILE_RE = re.compile(r"mobile|iphone|ipod|android|blackberry|opera mini|iemobile", re.I)


# =============================================================================
# CLASSIFIERS
# =============================================================================

def device_type(user_agent: Optional[str]) -> str:
    """Device category from the UA string: tablet, mobile or desktop."""
    ua = user_agent or ""
    if TABLET_RE.search(ua):
        return DeviceType.TABLET.value
    if MOBILE_RE.search(ua):
        return DeviceType.MOBILE.value
    return DeviceType.DESKTOP.value


def is_social_preview(user_agent: Optional[str]) -> bool:
    ua = user_agent or ""
    return any(p.search(ua) for p in SOCIAL_PREVIEW_PATTERNS)


def is_automation_ua(user_agent: Optional[str]) -> bool:
    ua = user_agent or ""
    return any(p.search(ua) for p in AUTOMATION_UA_PATTERNS)


def is_bot_ua(user_agent: Optional[str]) -> bool:
    """True for crawlers, preview fetchers, automation frameworks and bare HTTP clients."""
    ua = (user_agent or "").strip()
    if not ua:
        return True
    return (
        is_social_preview(ua)
        or is_automation_ua(ua)
        or any(p.search(ua) for p in BOT_UA_PATTERNS)
    )


def match_custom_agent(user_agent: Optional[str], patterns) -> Optional[str]:
    """First owner-configured substring found in the UA, case-insensitive."""
    ua = (user_agent or "").lower()
    for pattern in patterns:
        if pattern and pattern in ua:
            return pattern
    return None

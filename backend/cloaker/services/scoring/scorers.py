"""
Signal Scorers

One pure function per trust category, each mapping the click's signals to an
integer in [0, 100] (100 = confidently human). A scorer whose input signals are
missing returns None so the composite step can leave the category out instead
of penalizing it.

The heuristics here are deliberately simple and replaceable: callers can pass
their own registry to score_all().
"""
from __future__ import annotations
import logging
import math
import re
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Sequence

from ...models.click import SignalBundle, SubScores, VisitorContext, SCORE_CATEGORIES
from ..detection.network import is_datacenter_isp
from ..detection.user_agent import is_bot_ua

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScoringContext:
    """Everything a scorer may read. Scorers never touch the database."""
    bundle: Optional[SignalBundle]
    visitor: VisitorContext
    min_dwell_ms: int = 2000


Scorer = Callable[[ScoringContext], Optional[int]]


def _clamp(value: float) -> int:
    return int(max(0, min(100, round(value))))


def _variance(values: Sequence[float]) -> float:
    mean = sum(values) / len(values)
    return sum((v - mean) ** 2 for v in values) / len(values)


def _is_mobile_ua(ua: str) -> bool:
    return bool(re.search(r"mobile|android|iphone|ipad|ipod|touch", ua, re.I))


# =============================================================================
# DEVICE CONSISTENCY
# =============================================================================

SOFTWARE_RENDERERS = re.compile(r"swiftshader|llvmpipe|mesa|software|virtualbox|vmware", re.I)

SUSPICIOUS_TZ_LANG = {
    "asia": {"en", "es", "pt", "fr", "de"},
    "europe": {"zh", "ja", "ko"},
    "america": {"zh", "ja", "ko", "ar"},
}


def score_device_consistency(ctx: ScoringContext) -> Optional[int]:
    """Do the UA, platform, touch, memory, screen and GPU claims agree with each other?"""
    b = ctx.bundle
    if b is None or not b.platform:
        return None
    ua = (b.user_agent or ctx.visitor.user_agent or "").lower()
    platform = b.platform.lower()
    score = 100

    ua_android = "android" in ua
    checks = [
        ("windows" in ua, "win" in platform, 30),
        (bool(re.search(r"mac os|macos|macintosh", ua)), "mac" in platform, 30),
        (ua_android, "android" in platform or "linux" in platform, 25),
        (bool(re.search(r"iphone|ipad|ipod", ua)), bool(re.search(r"iphone|ipad|ipod", platform)), 30),
    ]
    for claimed, matches, penalty in checks:
        if claimed and not matches:
            score -= penalty

    mobile = _is_mobile_ua(ua)
    if mobile and not b.touch_support and (b.max_touch_points or 0) == 0:
        score -= 25
    if not mobile and (b.max_touch_points or 0) > 10:
        score -= 15

    if mobile and (b.device_memory or 0) > 16:
        score -= 15
    if not mobile and b.device_memory == 0.25:
        score -= 10
    if mobile and (b.hardware_concurrency or 0) > 16:
        score -= 15

    if b.screen_resolution and "x" in b.screen_resolution:
        try:
            width, height = (int(float(p)) for p in b.screen_resolution.lower().split("x", 1))
        except ValueError:
            width = height = 0
        if mobile and width > 2560:
            score -= 20
        if not mobile and 0 < width < 800 and height < 600:
            score -= 15

    if b.webgl_renderer and SOFTWARE_RENDERERS.search(b.webgl_renderer):
        score -= 35
    if b.color_depth is not None and b.color_depth not in (24, 30, 32):
        score -= 10

    if b.timezone and b.languages:
        region = b.timezone.split("/")[0].lower()
        primary = (b.languages[0] or "")[:2].lower()
        if primary in SUSPICIOUS_TZ_LANG.get(region, ()):
            score -= 5

    return _clamp(score)


# =============================================================================
# WEBRTC LEAK
# =============================================================================

def score_webrtc(ctx: ScoringContext) -> Optional[int]:
    """A WebRTC public address that differs from the request IP suggests a tunnel."""
    b = ctx.bundle
    if b is None or (b.webrtc_supported is None and b.webrtc_public_ip is None and b.webrtc_local_ips is None):
        return None
    if b.webrtc_supported is False:
        return 80
    if b.webrtc_public_ip and ctx.visitor.ip and b.webrtc_public_ip != ctx.visitor.ip:
        return 40
    if not b.webrtc_public_ip and not b.webrtc_local_ips:
        return 85
    return 100


# =============================================================================
# MOUSE PATTERN
# =============================================================================

def score_mouse_pattern(ctx: ScoringContext) -> Optional[int]:
    """Velocity, acceleration, path straightness and timing regularity of pointer movement."""
    b = ctx.bundle
    if b is None or (b.mouse_movements is None and b.mouse_path is None):
        return None
    if b.touch_support and not b.mouse_movements:
        return None
    path = b.mouse_path or []
    movements = b.mouse_movements or len(path)
    if movements < 5 or len(path) < 5:
        return 70

    score = 100
    velocities = b.mouse_velocities or []
    if len(velocities) > 3:
        var = _variance(velocities)
        if var < 0.001:
            score -= 30
        elif var > 100:
            score -= 15

    accelerations = b.mouse_accelerations or []
    if len(accelerations) > 3 and _variance(accelerations) < 0.0001:
        score -= 25

    if len(path) > 10:
        total_turn = 0.0
        straight = 0
        for p1, p2, p3 in zip(path, path[1:], path[2:]):
            a1 = math.atan2(p2.y - p1.y, p2.x - p1.x)
            a2 = math.atan2(p3.y - p2.y, p3.x - p2.x)
            diff = abs(a2 - a1)
            if diff > math.pi:
                diff = 2 * math.pi - diff
            total_turn += diff
            if diff < 0.001:
                straight += 1
        segments = len(path) - 2
        if straight / segments > 0.8:
            score -= 25
        if total_turn / segments < 0.01:
            score -= 20

    gaps = [p2.t - p1.t for p1, p2 in zip(path, path[1:])]
    if gaps:
        mean_gap = sum(gaps) / len(gaps)
        if mean_gap > 0 and _variance(gaps) < 0.5:
            score -= 20

    if b.time_on_page:
        rate = movements / (b.time_on_page / 1000)
        if rate > 50:
            score -= 25
        elif rate < 0.1 and b.time_on_page > 3000:
            score -= 15

    return _clamp(score)


# =============================================================================
# KEYBOARD DYNAMICS
# =============================================================================

def score_keyboard(ctx: ScoringContext) -> Optional[int]:
    b = ctx.bundle
    if b is None or b.keypress_events is None:
        return None
    if b.keypress_events == 0:
        return 90

    score = 100
    times = b.keypress_times or []
    if len(times) > 3:
        intervals = [t2 - t1 for t1, t2 in zip(times, times[1:])]
        mean_interval = sum(intervals) / len(intervals)
        if _variance(intervals) < 5 and mean_interval < 100:
            score -= 35
        if mean_interval < 30:
            score -= 40

    if b.time_on_page:
        if b.keypress_events / (b.time_on_page / 1000) > 20:
            score -= 50

    return _clamp(score)


# =============================================================================
# SESSION REPLAY
# =============================================================================

def score_session_replay(ctx: ScoringContext) -> Optional[int]:
    """Replay / recording tooling on the collector page is typical of ad reviewers."""
    b = ctx.bundle
    if b is None or b.replay_tools is None:
        return None
    tools = [t for t in b.replay_tools if t]
    if not tools:
        return 100
    return _clamp(70 - 5 * len(tools))


# =============================================================================
# AUTOMATION
# =============================================================================

AUTOMATION_PENALTIES = (
    ("has_webdriver", 100),
    ("has_selenium", 100),
    ("has_puppeteer", 100),
    ("has_playwright", 100),
    ("has_cypress", 80),
    ("has_phantom", 80),
)

_AUTOMATION_FIELDS = tuple(name for name, _ in AUTOMATION_PENALTIES) + (
    "is_headless", "is_automated", "cookies_enabled", "local_storage",
    "performance_entries", "media_devices",
)


def score_automation(ctx: ScoringContext) -> Optional[int]:
    b = ctx.bundle
    if b is None or all(getattr(b, name) is None for name in _AUTOMATION_FIELDS):
        return None

    score = 100
    for name, penalty in AUTOMATION_PENALTIES:
        if getattr(b, name):
            score -= penalty

    if b.is_headless and b.is_automated:
        score -= 100
    elif b.is_headless:
        score -= 40
    elif b.is_automated:
        score -= 60

    ua = b.user_agent or ctx.visitor.user_agent
    if ua and is_bot_ua(ua):
        score -= 100
    if b.cookies_enabled is False and b.local_storage is False:
        score -= 32
    if b.performance_entries == 0:
        score -= 20
    if b.media_devices == 0:
        score -= 12

    return _clamp(score)


# =============================================================================
# BEHAVIOR
# =============================================================================

def score_behavior(ctx: ScoringContext) -> Optional[int]:
    """Dwell time and interaction volume against the link's minimum dwell."""
    b = ctx.bundle
    if b is None or b.time_on_page is None:
        return None

    score = 50
    if b.time_on_page >= ctx.min_dwell_ms:
        score += 20
    elif b.time_on_page < 500:
        score -= 40
    elif b.time_on_page < 1000:
        score -= 20
    elif b.time_on_page < 1500:
        score -= 10

    movements = b.mouse_movements or 0
    if movements > 10:
        score += 15
    elif movements > 3:
        score += 8
    elif movements == 0 and not b.touch_support:
        score -= 30

    if b.scroll_events:
        score += 6
    if b.scroll_depth and b.scroll_depth > 20:
        score += 4
    if b.click_events:
        score += 6
    if b.focus_changes and 0 < b.focus_changes < 10:
        score += 4
    if b.timing_variance is not None and 0 <= b.timing_variance < 0.0001:
        score -= 16

    return _clamp(score)


# =============================================================================
# FINGERPRINT
# =============================================================================

HEADLESS_RESOLUTIONS = {"800x600", "1024x768"}

_FINGERPRINT_FIELDS = (
    "webgl_renderer", "webgl_vendor", "canvas_hash", "fonts_hash", "device_memory",
    "hardware_concurrency", "screen_resolution", "plugins_count", "languages",
)


def score_fingerprint(ctx: ScoringContext) -> Optional[int]:
    """Is the browser fingerprint complete and internally plausible?"""
    b = ctx.bundle
    if b is None or all(getattr(b, name) is None for name in _FINGERPRINT_FIELDS):
        return None

    score = 100
    if b.webgl_renderer and b.webgl_vendor:
        if SOFTWARE_RENDERERS.search(b.webgl_renderer):
            score -= 40
    else:
        score -= 40

    if b.hardware_acceleration is False:
        score -= 20
    if not b.canvas_hash or b.canvas_hash == "0" or len(b.canvas_hash) <= 6:
        score -= 32
    if b.canvas_noise:
        score -= 20
    if b.audio_noise:
        score -= 20
    if b.fonts_list is not None and len(b.fonts_list) < 5:
        score -= 12

    if not b.device_memory:
        score -= 20
    if not b.hardware_concurrency or not 2 <= b.hardware_concurrency <= 64:
        score -= 20
    if b.screen_resolution and b.screen_resolution.lower() in HEADLESS_RESOLUTIONS:
        score -= 12

    mobile = _is_mobile_ua(b.user_agent or ctx.visitor.user_agent or "")
    if mobile and b.touch_support is False:
        score -= 20
    if not mobile and b.plugins_count == 0:
        score -= 20
    if not b.languages:
        score -= 12
    if b.webrtc_supported is False:
        score -= 8
    if b.speech_synthesis is False:
        score -= 4

    return _clamp(score)


# =============================================================================
# NETWORK
# =============================================================================

SUSPICIOUS_ISPS = ["google", "facebook", "meta", "amazon", "microsoft"]
GOOGLE_INTERNAL_HEADER_PREFIXES = ("x-google-internal", "x-adsbot-google", "x-goog-")


def score_network(ctx: ScoringContext) -> Optional[int]:
    """Header hygiene and ISP reputation. Computed server-side, so always available."""
    v = ctx.visitor
    headers = v.headers
    score = 100

    isp = (v.isp or "").lower()
    if is_datacenter_isp(isp):
        score -= 60
    if isp and any(name in isp for name in SUSPICIOUS_ISPS):
        score -= 40
    if any(h.startswith(GOOGLE_INTERNAL_HEADER_PREFIXES) for h in headers):
        score -= 80
    if re.search(r"google|facebook|meta", headers.get("via", ""), re.I):
        score -= 60

    accept = headers.get("accept", "")
    if "text/html" not in accept and "*/*" not in accept:
        score -= 20
    accept_language = headers.get("accept-language", "")
    if not accept_language or accept_language.strip() == "*":
        score -= 20

    return _clamp(score)


# =============================================================================
# REGISTRY
# =============================================================================

DEFAULT_SCORERS: Dict[str, Scorer] = {
    "device": score_device_consistency,
    "webrtc": score_webrtc,
    "mouse": score_mouse_pattern,
    "keyboard": score_keyboard,
    "session": score_session_replay,
    "automation": score_automation,
    "behavior": score_behavior,
    "fingerprint": score_fingerprint,
    "network": score_network,
}


def score_all(
    bundle: Optional[SignalBundle],
    visitor: VisitorContext,
    registry: Optional[Mapping[str, Scorer]] = None,
    min_dwell_ms: int = 2000,
) -> SubScores:
    """Run every registered scorer. A scorer that raises counts as unavailable."""
    ctx = ScoringContext(bundle=bundle, visitor=visitor, min_dwell_ms=min_dwell_ms)
    registry = registry if registry is not None else DEFAULT_SCORERS
    values: Dict[str, Optional[int]] = {}
    for category in SCORE_CATEGORIES:
        scorer = registry.get(category)
        if scorer is None:
            values[category] = None
            continue
        try:
            result = scorer(ctx)
        except Exception as e:
            logger.warning(f"Scorer '{category}' failed, treating as unavailable: {e}")
            result = None
        values[category] = None if result is None else _clamp(result)
    return SubScores(**values)

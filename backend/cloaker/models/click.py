"""
Cloaker - Click Models

Runtime data structures that flow through one click:
SignalBundle (client signals) + VisitorContext (request) → ThreatFlags + SubScores.

These are built once per request and never mutated downstream.
"""

from __future__ import annotations
import math
import re
from dataclasses import dataclass, field, fields
from typing import Any, Callable, Dict, List, Mapping, Optional


# =============================================================================
# SIGNAL BUNDLE
# =============================================================================

@dataclass(frozen=True)
class MousePoint:
    x: float
    y: float
    t: float


# Client keys that do not follow plain camelCase of the field name
_BUNDLE_ALIASES = {
    "webRTC": "webrtc_supported",
    "timingAttack": "timing_variance",
}

_CAMEL_RE = re.compile(r"_([a-z0-9])")


def _camel(name: str) -> str:
    return _CAMEL_RE.sub(lambda m: m.group(1).upper(), name)


@dataclass(frozen=True)
class SignalBundle:
    """
    Opaque client signal bundle, as collected by the browser-side script.

    Every field is optional: a field the client did not send stays None and
    the scorer that needs it reports the category as unavailable.
    """
    # Fingerprint
    user_agent: Optional[str] = None
    language: Optional[str] = None
    languages: Optional[List[str]] = None
    timezone: Optional[str] = None
    screen_resolution: Optional[str] = None
    color_depth: Optional[int] = None
    device_memory: Optional[float] = None
    hardware_concurrency: Optional[int] = None
    platform: Optional[str] = None
    webgl_vendor: Optional[str] = None
    webgl_renderer: Optional[str] = None
    canvas_hash: Optional[str] = None
    audio_hash: Optional[str] = None
    fonts_hash: Optional[str] = None
    fonts_list: Optional[List[str]] = None
    plugins_count: Optional[int] = None
    touch_support: Optional[bool] = None
    max_touch_points: Optional[int] = None
    device_pixel_ratio: Optional[float] = None
    hardware_acceleration: Optional[bool] = None
    canvas_noise: Optional[bool] = None
    audio_noise: Optional[bool] = None
    speech_synthesis: Optional[bool] = None

    # Behavior
    mouse_movements: Optional[int] = None
    mouse_velocities: Optional[List[float]] = None
    mouse_accelerations: Optional[List[float]] = None
    mouse_path: Optional[List[MousePoint]] = None
    scroll_events: Optional[int] = None
    scroll_depth: Optional[float] = None
    keypress_events: Optional[int] = None
    keypress_times: Optional[List[float]] = None
    click_events: Optional[int] = None
    time_on_page: Optional[int] = None
    focus_changes: Optional[int] = None
    timing_variance: Optional[float] = None

    # Automation
    has_webdriver: Optional[bool] = None
    has_phantom: Optional[bool] = None
    has_selenium: Optional[bool] = None
    has_puppeteer: Optional[bool] = None
    has_playwright: Optional[bool] = None
    has_cypress: Optional[bool] = None
    is_headless: Optional[bool] = None
    is_automated: Optional[bool] = None
    cookies_enabled: Optional[bool] = None
    local_storage: Optional[bool] = None
    performance_entries: Optional[int] = None
    media_devices: Optional[int] = None

    # WebRTC
    webrtc_supported: Optional[bool] = None
    webrtc_local_ips: Optional[List[str]] = None
    webrtc_public_ip: Optional[str] = None

    # Session replay tools seen on the collector page
    replay_tools: Optional[List[str]] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> Optional["SignalBundle"]:
        """Build from a client payload. Accepts snake_case or camelCase keys."""
        if not data or not isinstance(data, Mapping):
            return None

        normalized: Dict[str, Any] = {}
        for key, value in data.items():
            if key in _BUNDLE_ALIASES:
                normalized[_BUNDLE_ALIASES[key]] = value
            else:
                normalized[key] = value

        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name in normalized:
                value = normalized[f.name]
            elif _camel(f.name) in normalized:
                value = normalized[_camel(f.name)]
            else:
                continue
            if f.name == "mouse_path":
                value = _parse_path(value)
            else:
                value = _coerce(f.type, value)
            if value is not None:
                kwargs[f.name] = value

        return cls(**kwargs)

    @property
    def has_behavior(self) -> bool:
        return any(
            value is not None
            for value in (
                self.time_on_page, self.mouse_movements, self.scroll_events,
                self.keypress_events, self.click_events, self.mouse_path,
            )
        )


# The bundle is visitor-controlled: values of the wrong type are dropped
_TRUE_STRINGS = {"true", "1", "yes"}
_FALSE_STRINGS = {"false", "0", "no", ""}


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_STRINGS:
            return True
        if lowered in _FALSE_STRINGS:
            return False
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        value = float(value)
    except OverflowError:
        return None
    return value if math.isfinite(value) else None


def _as_int(value: Any) -> Optional[int]:
    number = _as_float(value)
    return int(number) if number is not None else None


def _as_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _list_of(item_coercer: Callable[[Any], Any]) -> Callable[[Any], Optional[list]]:
    def coerce(value: Any) -> Optional[list]:
        if not isinstance(value, list):
            return None
        items = (item_coercer(item) for item in value)
        return [item for item in items if item is not None]
    return coerce


_COERCERS: Dict[str, Callable[[Any], Any]] = {
    "Optional[str]": _as_str,
    "Optional[bool]": _as_bool,
    "Optional[int]": _as_int,
    "Optional[float]": _as_float,
    "Optional[List[str]]": _list_of(_as_str),
    "Optional[List[float]]": _list_of(_as_float),
}


def _coerce(annotation: Any, value: Any) -> Any:
    coercer = _COERCERS.get(annotation if isinstance(annotation, str) else str(annotation))
    if coercer is None:
        return None
    return coercer(value)


def _parse_path(raw: Any) -> Optional[List[MousePoint]]:
    if not isinstance(raw, list):
        return None
    points = []
    for item in raw:
        try:
            point = MousePoint(float(item["x"]), float(item["y"]), float(item["t"]))
        except (KeyError, TypeError, ValueError, OverflowError):
            continue
        if all(math.isfinite(v) for v in (point.x, point.y, point.t)):
            points.append(point)
    return points


# =============================================================================
# REQUEST CONTEXT
# =============================================================================

UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content")


@dataclass(frozen=True)
class VisitorContext:
    """Network and request metadata for one click."""
    ip: Optional[str] = None
    user_agent: str = ""
    country: Optional[str] = None
    city: Optional[str] = None
    isp: Optional[str] = None
    asn: Optional[str] = None
    referer: Optional[str] = None
    accept_language: Optional[str] = None
    host: Optional[str] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    query_params: Mapping[str, str] = field(default_factory=dict)

    @property
    def language(self) -> Optional[str]:
        """Primary language tag from Accept-Language (e.g. 'pt-BR')."""
        if not self.accept_language:
            return None
        first = self.accept_language.split(",")[0].split(";")[0].strip()
        return first or None

    @property
    def utm(self) -> Dict[str, str]:
        return {k: self.query_params[k] for k in UTM_KEYS if self.query_params.get(k)}


# =============================================================================
# DETECTION OUTPUTS
# =============================================================================

@dataclass(frozen=True)
class ThreatFlags:
    """Boolean threat classification. Cheap to compute; no scoring required."""
    is_bot: bool = False
    is_headless: bool = False
    is_automated: bool = False
    is_vpn: bool = False
    is_proxy: bool = False
    is_datacenter: bool = False
    is_tor: bool = False
    is_blacklisted: bool = False
    is_social_preview: bool = False
    custom_ua_match: Optional[str] = None
    device_type: str = "desktop"
    reasons: tuple = ()

    @property
    def automation_tool(self) -> bool:
        return self.is_automated or self.is_headless


SCORE_CATEGORIES = (
    "device", "webrtc", "mouse", "keyboard", "session",
    "automation", "behavior", "fingerprint", "network",
)


@dataclass(frozen=True)
class SubScores:
    """Per-signal sub-scores. None means the signal was unavailable, not zero."""
    device: Optional[int] = None
    webrtc: Optional[int] = None
    mouse: Optional[int] = None
    keyboard: Optional[int] = None
    session: Optional[int] = None
    automation: Optional[int] = None
    behavior: Optional[int] = None
    fingerprint: Optional[int] = None
    network: Optional[int] = None

    def as_dict(self) -> Dict[str, Optional[int]]:
        return {name: getattr(self, name) for name in SCORE_CATEGORIES}

    def present(self) -> Dict[str, int]:
        return {name: value for name, value in self.as_dict().items() if value is not None}

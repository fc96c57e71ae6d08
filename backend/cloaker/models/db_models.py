"""
Cloaker - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, DateTime, Date, Text, JSON, ForeignKey, Boolean,
    Enum as SQLEnum, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class Decision(str, Enum):
    """Terminal states of the decision engine."""
    ALLOW = "allow"
    SAFE = "safe"
    BLOCK = "block"


class DeviceType(str, Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"
    TABLET = "tablet"


class WebhookEvent(str, Enum):
    """Event types a link owner can subscribe to. CLICK receives every decision."""
    CLICK = "click"
    ALLOW = "allow"
    SAFE = "safe"
    BLOCK = "block"


class DnsStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class SslStatus(str, Enum):
    PENDING = "pending"
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    FAILED = "failed"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# =============================================================================
# CLOAKED LINK (POLICY)
# =============================================================================

class CloakedLinkDB(Base):
    """One traffic-cloaking policy. Only counters are written by the click path."""
    __tablename__ = "cloaked_links"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")
    slug = Column(String(100), unique=True, nullable=False, index=True)
    custom_domain = Column(String(255), nullable=True, index=True)

    # ==========================================================================
    # DESTINATIONS
    # ==========================================================================
    safe_url = Column(Text, nullable=False)
    target_url = Column(Text, nullable=True)
    # Format: [{"url": "https://...", "weight": 3}, ...]
    target_urls = Column(JSON, nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    # ==========================================================================
    # FILTERS - null or empty means "no restriction"
    # ==========================================================================
    allowed_countries = Column(JSON, nullable=True)
    blocked_countries = Column(JSON, nullable=True)
    allowed_devices = Column(JSON, nullable=True)
    allowed_referers = Column(JSON, nullable=True)
    blocked_referers = Column(JSON, nullable=True)
    allowed_languages = Column(JSON, nullable=True)
    blocked_languages = Column(JSON, nullable=True)
    # Format: {"param": "value"} - null or "*" value means presence only
    required_url_params = Column(JSON, nullable=True)
    blocked_url_params = Column(JSON, nullable=True)
    whitelist_ips = Column(JSON, nullable=True)
    blacklist_ips = Column(JSON, nullable=True)
    custom_user_agents = Column(JSON, nullable=True)
    blocked_isps = Column(JSON, nullable=True)
    blocked_asns = Column(JSON, nullable=True)

    block_bots = Column(Boolean, nullable=False, default=True)
    block_vpn = Column(Boolean, nullable=False, default=False)
    block_proxy = Column(Boolean, nullable=False, default=False)
    block_datacenter = Column(Boolean, nullable=False, default=False)
    block_tor = Column(Boolean, nullable=False, default=False)
    allow_social_previews = Column(Boolean, nullable=False, default=False)

    # ==========================================================================
    # SCORING
    # ==========================================================================
    min_score = Column(Integer, nullable=False, default=40)
    collect_fingerprint = Column(Boolean, nullable=False, default=False)
    require_behavior = Column(Boolean, nullable=False, default=False)
    behavior_time_ms = Column(Integer, nullable=True, default=2000)

    # ==========================================================================
    # QUOTAS - clicks_today is reset lazily on the first click of a new local day
    # ==========================================================================
    max_clicks_daily = Column(Integer, nullable=True)
    max_clicks_total = Column(Integer, nullable=True)
    clicks_today = Column(Integer, nullable=False, default=0)
    clicks_count = Column(Integer, nullable=False, default=0)
    last_click_reset = Column(Date, nullable=True)
    timezone = Column(String(64), nullable=False, default="UTC")

    allowed_hours_start = Column(Integer, nullable=True)  # 0-23, link-local
    allowed_hours_end = Column(Integer, nullable=True)    # 0-23, inclusive

    rate_limit_per_ip = Column(Integer, nullable=True)
    rate_limit_window_minutes = Column(Integer, nullable=True)

    redirect_delay_ms = Column(Integer, nullable=True)
    passthrough_utm = Column(Boolean, nullable=False, default=False)

    # ==========================================================================
    # WEBHOOK
    # ==========================================================================
    webhook_url = Column(Text, nullable=True)
    webhook_enabled = Column(Boolean, nullable=False, default=False)
    webhook_events = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    visitors = relationship(
        "CloakerVisitorDB",
        back_populates="link",
        cascade="all, delete-orphan",
    )


# =============================================================================
# VISITOR (DECISION RECORD) - append-only
# =============================================================================

class CloakerVisitorDB(Base):
    """One classified click. Written once, never updated."""
    __tablename__ = "cloaker_visitors"

    id = Column(String(36), primary_key=True)  # UUID
    link_id = Column(String(36), ForeignKey("cloaked_links.id", ondelete="CASCADE"), nullable=False, index=True)

    fingerprint_hash = Column(String(64), nullable=True, index=True)
    score = Column(Integer, nullable=False)
    composite_score = Column(Integer, nullable=False)

    # Sub-scores - null when the signal was unavailable
    score_device_consistency = Column(Integer, nullable=True)
    score_webrtc = Column(Integer, nullable=True)
    score_mouse_pattern = Column(Integer, nullable=True)
    score_keyboard = Column(Integer, nullable=True)
    score_session_replay = Column(Integer, nullable=True)
    score_automation = Column(Integer, nullable=True)
    score_behavior = Column(Integer, nullable=True)
    score_fingerprint = Column(Integer, nullable=True)
    score_network = Column(Integer, nullable=True)

    decision = Column(SQLEnum(Decision, values_callable=_enum_values, name="cloaker_decision"), nullable=False)
    decision_reason = Column(String(100), nullable=True)

    # Network / geo
    ip_address = Column(String(64), nullable=True, index=True)
    country_code = Column(String(8), nullable=True)
    city = Column(String(120), nullable=True)
    isp = Column(String(255), nullable=True)
    asn = Column(String(32), nullable=True)
    device_type = Column(String(16), nullable=True)
    user_agent = Column(Text, nullable=True)
    language = Column(String(64), nullable=True)

    # Threat flags
    is_bot = Column(Boolean, nullable=False, default=False)
    is_headless = Column(Boolean, nullable=False, default=False)
    is_automated = Column(Boolean, nullable=False, default=False)
    is_vpn = Column(Boolean, nullable=False, default=False)
    is_proxy = Column(Boolean, nullable=False, default=False)
    is_datacenter = Column(Boolean, nullable=False, default=False)
    is_tor = Column(Boolean, nullable=False, default=False)
    is_blacklisted = Column(Boolean, nullable=False, default=False)

    # Attribution
    referer = Column(Text, nullable=True)
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    utm_term = Column(String(255), nullable=True)
    utm_content = Column(String(255), nullable=True)

    redirect_url = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    detection_details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    link = relationship("CloakedLinkDB", back_populates="visitors")


# =============================================================================
# CUSTOM DOMAIN
# =============================================================================

class CloakerDomainDB(Base):
    """Custom domain bound to an owner. At most one default per owner."""
    __tablename__ = "cloaker_domains"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    domain = Column(String(255), unique=True, nullable=False, index=True)

    is_verified = Column(Boolean, nullable=False, default=False)
    is_default = Column(Boolean, nullable=False, default=False)
    verification_token = Column(String(64), nullable=False)

    dns_status = Column(
        SQLEnum(DnsStatus, values_callable=_enum_values, name="cloaker_dns_status"),
        nullable=False,
        default=DnsStatus.PENDING,
    )
    ssl_status = Column(
        SQLEnum(SslStatus, values_callable=_enum_values, name="cloaker_ssl_status"),
        nullable=False,
        default=SslStatus.PENDING,
    )
    last_check_at = Column(DateTime, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Backs the one-default-per-owner invariant; set_default also swaps in one transaction
Index(
    "uq_cloaker_domains_one_default",
    CloakerDomainDB.user_id,
    unique=True,
    postgresql_where=CloakerDomainDB.is_default.is_(True),
    sqlite_where=CloakerDomainDB.is_default.is_(True),
)


# =============================================================================
# RATE LIMIT WINDOWS
# =============================================================================

class RateLimitCounterDB(Base):
    """Fixed-window hit counter per (link, ip, window)."""
    __tablename__ = "cloaker_rate_limits"
    __table_args__ = (
        UniqueConstraint("link_id", "ip_address", "window_start", name="uq_cloaker_rate_limit_window"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    link_id = Column(String(36), ForeignKey("cloaked_links.id", ondelete="CASCADE"), nullable=False)
    ip_address = Column(String(64), nullable=False)
    window_start = Column(DateTime, nullable=False, index=True)
    hits = Column(Integer, nullable=False, default=0)

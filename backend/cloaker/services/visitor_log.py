"""
Visitor Log Writer

Append-only decision records. Written after the response has been sent, in a
session of its own, so a logging failure can never change what the visitor
saw.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.click import SubScores, ThreatFlags, VisitorContext, UTM_KEYS
from ..models.db_models import CloakerVisitorDB
from ..models.policy import LinkPolicy
from .decision.engine import DecisionResult

logger = logging.getLogger(__name__)


# Sub-score category -> column on cloaker_visitors
SCORE_COLUMNS = {
    "device": "score_device_consistency",
    "webrtc": "score_webrtc",
    "mouse": "score_mouse_pattern",
    "keyboard": "score_keyboard",
    "session": "score_session_replay",
    "automation": "score_automation",
    "behavior": "score_behavior",
    "fingerprint": "score_fingerprint",
    "network": "score_network",
}


def build_visitor_record(
    policy: LinkPolicy,
    visitor: VisitorContext,
    flags: ThreatFlags,
    result: DecisionResult,
    subscores: Optional[SubScores],
    composite: int,
    overrides: List[str],
    fingerprint: Optional[str],
    processing_time_ms: int,
    admission_step: Optional[int] = None,
) -> Dict[str, Any]:
    """Column values for one CloakerVisitorDB row."""
    record: Dict[str, Any] = {
        "id": str(uuid.uuid4()),
        "link_id": policy.id,
        "fingerprint_hash": fingerprint,
        "score": result.score if result.score is not None else 0,
        "composite_score": composite,
        "decision": result.decision,
        "decision_reason": (result.reason or "")[:100] or None,
        "ip_address": visitor.ip,
        "country_code": visitor.country,
        "city": visitor.city,
        "isp": visitor.isp,
        "asn": visitor.asn,
        "device_type": flags.device_type,
        "user_agent": visitor.user_agent or None,
        "language": visitor.language,
        "is_bot": flags.is_bot,
        "is_headless": flags.is_headless,
        "is_automated": flags.is_automated,
        "is_vpn": flags.is_vpn,
        "is_proxy": flags.is_proxy,
        "is_datacenter": flags.is_datacenter,
        "is_tor": flags.is_tor,
        "is_blacklisted": flags.is_blacklisted,
        "referer": visitor.referer,
        "redirect_url": result.redirect_url,
        "processing_time_ms": processing_time_ms,
        "detection_details": {
            "reasons": list(flags.reasons),
            "overrides": list(overrides),
            "admission_step": admission_step,
            "custom_user_agent": flags.custom_ua_match,
            "social_preview": flags.is_social_preview,
        },
        "created_at": datetime.utcnow(),
    }
    utm = visitor.utm
    for key in UTM_KEYS:
        record[key] = utm.get(key)
    values = subscores.as_dict() if subscores is not None else {}
    for category, column in SCORE_COLUMNS.items():
        record[column] = values.get(category)
    return record


class VisitorLogWriter:

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def write(self, record: Dict[str, Any]) -> bool:
        """Persist one record. Errors are logged and swallowed; returns success."""
        db = self.session_factory()
        try:
            db.add(CloakerVisitorDB(**record))
            db.commit()
            return True
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Failed to write visitor record for link {record.get('link_id')}: {e}")
            return False
        finally:
            db.close()

"""
Cloaked Links API Routes

Owner-scoped CRUD for link policies and read access to their visitor log.
Every write invalidates the cached policy so the click path sees it within
one request.
"""
import ipaddress
import secrets
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from dateutil import tz
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..auth import get_current_owner
from ..database import get_db
from ..models.db_models import CloakedLinkDB, CloakerDomainDB, CloakerVisitorDB, DeviceType, WebhookEvent
from ..services.counters import MAX_WINDOW_MINUTES
from ..services.policy import get_policy_cache, normalize_host


router = APIRouter(prefix="/links", tags=["links"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class TargetUrl(BaseModel):
    """One weighted destination."""
    url: str = Field(..., min_length=1)
    weight: float = Field(1, gt=0, description="Relative weight; must be positive")


class LinkFields(BaseModel):
    """Fields shared by create and update. None means 'no restriction'."""
    name: Optional[str] = Field(None, max_length=255)
    custom_domain: Optional[str] = Field(None, description="Verified custom domain this link is bound to")
    safe_url: Optional[str] = Field(None, min_length=1)
    target_url: Optional[str] = None
    target_urls: Optional[List[TargetUrl]] = None
    is_active: Optional[bool] = None

    allowed_countries: Optional[List[str]] = None
    blocked_countries: Optional[List[str]] = None
    allowed_devices: Optional[List[DeviceType]] = None
    allowed_referers: Optional[List[str]] = None
    blocked_referers: Optional[List[str]] = None
    allowed_languages: Optional[List[str]] = None
    blocked_languages: Optional[List[str]] = None
    # {"name": "value"}; value "*" accepts any non-empty value
    required_url_params: Optional[Dict[str, str]] = None
    blocked_url_params: Optional[Dict[str, str]] = None
    whitelist_ips: Optional[List[str]] = None
    blacklist_ips: Optional[List[str]] = None
    custom_user_agents: Optional[List[str]] = None
    blocked_isps: Optional[List[str]] = None
    blocked_asns: Optional[List[str]] = None

    block_bots: Optional[bool] = None
    block_vpn: Optional[bool] = None
    block_proxy: Optional[bool] = None
    block_datacenter: Optional[bool] = None
    block_tor: Optional[bool] = None
    allow_social_previews: Optional[bool] = None

    min_score: Optional[int] = Field(None, ge=0, le=100)
    collect_fingerprint: Optional[bool] = None
    require_behavior: Optional[bool] = None
    behavior_time_ms: Optional[int] = Field(None, ge=0, le=60000)

    max_clicks_daily: Optional[int] = Field(None, ge=0)
    max_clicks_total: Optional[int] = Field(None, ge=0)
    timezone: Optional[str] = None
    allowed_hours_start: Optional[int] = Field(None, ge=0, le=23)
    allowed_hours_end: Optional[int] = Field(None, ge=0, le=23)

    rate_limit_per_ip: Optional[int] = Field(None, ge=1)
    rate_limit_window_minutes: Optional[int] = Field(None, ge=1, le=MAX_WINDOW_MINUTES)

    redirect_delay_ms: Optional[int] = Field(None, ge=0, le=10000)
    passthrough_utm: Optional[bool] = None

    webhook_url: Optional[str] = None
    webhook_enabled: Optional[bool] = None
    webhook_events: Optional[List[WebhookEvent]] = None

    @field_validator("whitelist_ips", "blacklist_ips")
    @classmethod
    def _valid_ips(cls, values: Optional[List[str]]) -> Optional[List[str]]:
        if values is None:
            return values
        for value in values:
            try:
                if "/" in value:
                    ipaddress.ip_network(value, strict=False)
                else:
                    ipaddress.ip_address(value)
            except ValueError:
                raise ValueError(f"Invalid IP or CIDR: {value}")
        return values

    @field_validator("timezone")
    @classmethod
    def _valid_timezone(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and tz.gettz(value) is None:
            raise ValueError(f"Unknown timezone: {value}")
        return value

    @field_validator("custom_domain")
    @classmethod
    def _normalize_domain(cls, value: Optional[str]) -> Optional[str]:
        return normalize_host(value)


class CreateLinkRequest(LinkFields):
    """Request to create a cloaked link."""
    slug: Optional[str] = Field(None, min_length=3, max_length=100, pattern=r"^[A-Za-z0-9_-]+$")
    safe_url: str = Field(..., min_length=1)

    @model_validator(mode="after")
    def _has_destination(self):
        if not self.target_url and not self.target_urls:
            raise ValueError("target_url or target_urls is required")
        return self


class UpdateLinkRequest(LinkFields):
    """Partial update. Only fields present in the body are changed."""
    slug: Optional[str] = Field(None, min_length=3, max_length=100, pattern=r"^[A-Za-z0-9_-]+$")


# Columns whose payload value needs converting before it is stored
_ENUM_LISTS = ("allowed_devices", "webhook_events")


def _column_values(payload: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(payload)
    if values.get("target_urls") is not None:
        values["target_urls"] = [
            {"url": t["url"], "weight": t["weight"]} for t in values["target_urls"]
        ]
    for name in _ENUM_LISTS:
        if values.get(name) is not None:
            values[name] = [getattr(v, "value", v) for v in values[name]]
    return values


def _link_to_dict(link: CloakedLinkDB) -> Dict[str, Any]:
    data = {column.name: getattr(link, column.name) for column in CloakedLinkDB.__table__.columns}
    for name in ("created_at", "updated_at", "last_click_reset"):
        if data.get(name) is not None:
            data[name] = data[name].isoformat()
    return data


def _visitor_to_dict(visitor: CloakerVisitorDB) -> Dict[str, Any]:
    data = {column.name: getattr(visitor, column.name) for column in CloakerVisitorDB.__table__.columns}
    data["decision"] = visitor.decision.value if visitor.decision else None
    if visitor.created_at:
        data["created_at"] = visitor.created_at.isoformat()
    return data


def _invalidate(*links_state: Dict[str, Any]) -> None:
    cache = get_policy_cache()
    for state in links_state:
        if state.get("slug"):
            cache.invalidate_slug(state["slug"])
        if state.get("custom_domain"):
            cache.invalidate_host(state["custom_domain"])


def _get_owned_link(db: Session, link_id: str, owner: str) -> CloakedLinkDB:
    link = db.query(CloakedLinkDB).filter(
        CloakedLinkDB.id == link_id,
        CloakedLinkDB.user_id == owner,
    ).first()
    if not link:
        raise HTTPException(status_code=404, detail="Link not found")
    return link


def _check_domain_owned(db: Session, domain: Optional[str], owner: str) -> None:
    if not domain:
        return
    owned = db.query(CloakerDomainDB).filter(
        CloakerDomainDB.domain == domain,
        CloakerDomainDB.user_id == owner,
    ).first()
    if not owned:
        raise HTTPException(status_code=422, detail=f"Domain {domain} is not registered to this account")


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("", response_model=List[dict])
async def list_links(
    owner: str = Depends(get_current_owner),
    db: Session = Depends(get_db),
):
    """List the owner's links, newest first."""
    links = db.query(CloakedLinkDB).filter(
        CloakedLinkDB.user_id == owner
    ).order_by(CloakedLinkDB.created_at.desc()).all()
    return [_link_to_dict(link) for link in links]


@router.post("", response_model=dict, status_code=201)
async def create_link(
    request: CreateLinkRequest,
    owner: str = Depends(get_current_owner),
    db: Session = Depends(get_db),
):
    """Create a link. A random slug is generated when none is given."""
    values = _column_values(request.model_dump(exclude_none=True))
    _check_domain_owned(db, values.get("custom_domain"), owner)
    values.setdefault("slug", secrets.token_urlsafe(6).replace("_", "x").replace("-", "y"))
    values.setdefault("name", values["slug"])

    link = CloakedLinkDB(id=str(uuid.uuid4()), user_id=owner, **values)
    db.add(link)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail=f"Slug '{values['slug']}' is already taken")
    db.refresh(link)

    _invalidate({"slug": link.slug, "custom_domain": link.custom_domain})
    return _link_to_dict(link)


@router.get("/{link_id}", response_model=dict)
async def get_link(
    link_id: str,
    owner: str = Depends(get_current_owner),
    db: Session = Depends(get_db),
):
    return _link_to_dict(_get_owned_link(db, link_id, owner))


@router.patch("/{link_id}", response_model=dict)
async def update_link(
    link_id: str,
    request: UpdateLinkRequest,
    owner: str = Depends(get_current_owner),
    db: Session = Depends(get_db),
):
    """Partial update. Explicit nulls clear a filter."""
    link = _get_owned_link(db, link_id, owner)
    before = {"slug": link.slug, "custom_domain": link.custom_domain}

    changes = _column_values(request.model_dump(exclude_unset=True))
    columns = CloakedLinkDB.__table__.c
    for name, value in changes.items():
        if value is None and not columns[name].nullable:
            raise HTTPException(status_code=422, detail=f"{name} cannot be null")
    _check_domain_owned(db, changes.get("custom_domain"), owner)
    for name, value in changes.items():
        setattr(link, name, value)

    if not link.target_url and not link.target_urls:
        db.rollback()
        raise HTTPException(status_code=422, detail="target_url or target_urls is required")

    link.updated_at = datetime.utcnow()
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Slug is already taken")
    db.refresh(link)

    _invalidate(before, {"slug": link.slug, "custom_domain": link.custom_domain})
    return _link_to_dict(link)


@router.delete("/{link_id}", response_model=dict)
async def delete_link(
    link_id: str,
    owner: str = Depends(get_current_owner),
    db: Session = Depends(get_db),
):
    """Delete a link and its visitor log."""
    link = _get_owned_link(db, link_id, owner)
    state = {"slug": link.slug, "custom_domain": link.custom_domain}
    db.delete(link)
    db.commit()
    _invalidate(state)
    return {"deleted": True, "id": link_id}


@router.get("/{link_id}/visitors", response_model=dict)
async def list_visitors(
    link_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    owner: str = Depends(get_current_owner),
    db: Session = Depends(get_db),
):
    """Paged decision log for one link, newest first."""
    _get_owned_link(db, link_id, owner)
    query = db.query(CloakerVisitorDB).filter(CloakerVisitorDB.link_id == link_id)
    total = query.count()
    visitors = query.order_by(CloakerVisitorDB.created_at.desc()).offset(offset).limit(limit).all()
    return {
        "total": total,
        "limit": limit,
        "offset": offset,
        "visitors": [_visitor_to_dict(v) for v in visitors],
    }

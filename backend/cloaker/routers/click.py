"""
Click API Routes

Visitor-facing endpoints. Never returns a 5xx: unknown links, store failures
and invalid configuration all end as a generic block response.

- GET /{slug}      redirect flow; signals via `_sb` query param or `_cloak_sb` cookie
- GET /            same, for a link bound to a verified custom domain
- POST /r/{slug}   JSON flow for the client-side collector page
"""
import base64
import binascii
import html
import json
import logging
import os
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..database import get_db, get_session_factory
from ..models.click import SignalBundle
from ..models.db_models import Decision
from ..services.click_service import ClickOutcome, ClickService
from ..services.detection import build_visitor_context
from ..services.visitor_log import VisitorLogWriter
from ..services.webhooks import get_webhook_dispatcher

logger = logging.getLogger(__name__)


router = APIRouter(tags=["click"])


BLOCK_RESPONSE_MODE = os.getenv("BLOCK_RESPONSE_MODE", "403")
BUNDLE_PARAM = "_sb"
BUNDLE_COOKIE = "_cloak_sb"
FINGERPRINT_COOKIE = "_cloak_fp"
FINGERPRINT_COOKIE_MAX_AGE = 365 * 24 * 3600


class CollectorRequest(BaseModel):
    """Signals posted by the collector page."""
    fingerprint: Optional[Dict[str, Any]] = Field(None, description="Client signal bundle")


# =============================================================================
# HELPERS
# =============================================================================

def decode_bundle(raw: Optional[str]) -> Optional[SignalBundle]:
    """base64url(JSON) -> SignalBundle. Malformed input is treated as absent."""
    if not raw:
        return None
    try:
        padded = raw + "=" * (-len(raw) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, binascii.Error, UnicodeError) as e:
        logger.debug(f"Ignoring malformed signal bundle: {e}")
        return None
    return SignalBundle.from_dict(data) if isinstance(data, dict) else None


def _visitor(request: Request):
    query = {k: v for k, v in request.query_params.items() if k != BUNDLE_PARAM}
    remote = request.client.host if request.client else None
    return build_visitor_context(request.headers, query, remote)


async def _run_click(
    request: Request,
    slug: Optional[str],
    bundle: Optional[SignalBundle],
    db: Session,
    session_factory,
    background_tasks: BackgroundTasks,
) -> ClickOutcome:
    outcome = await ClickService(db).handle(slug, _visitor(request), bundle)
    if outcome.visitor_record is not None:
        background_tasks.add_task(VisitorLogWriter(session_factory).write, outcome.visitor_record)
    if outcome.webhook is not None:
        get_webhook_dispatcher().enqueue(outcome.webhook)
    return outcome


def _set_fingerprint_cookie(response: Response, outcome: ClickOutcome) -> None:
    if outcome.fingerprint:
        response.set_cookie(
            FINGERPRINT_COOKIE, outcome.fingerprint,
            max_age=FINGERPRINT_COOKIE_MAX_AGE, httponly=True, samesite="lax",
        )


def _delayed_redirect(url: str, delay_ms: int) -> HTMLResponse:
    target = html.escape(url, quote=True)
    seconds = max(delay_ms, 0) / 1000
    body = (
        "<!doctype html><html><head>"
        f'<meta http-equiv="refresh" content="{seconds:.3f};url={target}">'
        '<meta name="robots" content="noindex,nofollow">'
        f"</head><body><script>setTimeout(function(){{location.replace({json.dumps(url)})}},{int(delay_ms)});</script>"
        "</body></html>"
    )
    return HTMLResponse(body, headers={"Cache-Control": "no-store"})


def redirect_response(outcome: ClickOutcome, block_mode: str = BLOCK_RESPONSE_MODE) -> Response:
    """HTTP response for the redirect flow."""
    result = outcome.result
    if result.decision == Decision.BLOCK:
        if block_mode == "safe" and outcome.policy is not None and outcome.policy.safe_url:
            response = RedirectResponse(outcome.policy.safe_url, status_code=302)
        elif block_mode == "204":
            response = Response(status_code=204)
        else:
            response = Response("Forbidden", status_code=403, media_type="text/plain")
    elif result.delay_ms > 0:
        response = _delayed_redirect(result.redirect_url, result.delay_ms)
    else:
        response = RedirectResponse(result.redirect_url, status_code=302)
    response.headers["Cache-Control"] = "no-store"
    _set_fingerprint_cookie(response, outcome)
    return response


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/r/{slug}")
async def collect_click(
    slug: str,
    body: CollectorRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Decide for a click whose signals were gathered by the collector page."""
    bundle = SignalBundle.from_dict(body.fingerprint)
    outcome = await _run_click(request, slug, bundle, db, session_factory, background_tasks)
    result = outcome.result
    response = JSONResponse({
        "redirect_url": None if result.decision == Decision.BLOCK else result.redirect_url,
        "decision": result.decision.value,
        "score": result.score,
        "min_score": outcome.policy.min_score if outcome.policy else None,
        "delay_ms": result.delay_ms,
    })
    _set_fingerprint_cookie(response, outcome)
    return response


@router.get("/", include_in_schema=False)
async def click_domain_root(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    """Bare custom domain: resolves to the link bound to the host."""
    bundle = decode_bundle(request.query_params.get(BUNDLE_PARAM) or request.cookies.get(BUNDLE_COOKIE))
    outcome = await _run_click(request, None, bundle, db, session_factory, background_tasks)
    return redirect_response(outcome)


@router.get("/{slug}", include_in_schema=False)
async def click_slug(
    slug: str,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    session_factory=Depends(get_session_factory),
):
    bundle = decode_bundle(request.query_params.get(BUNDLE_PARAM) or request.cookies.get(BUNDLE_COOKIE))
    outcome = await _run_click(request, slug, bundle, db, session_factory, background_tasks)
    return redirect_response(outcome)

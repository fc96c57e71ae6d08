"""
Shared fixtures for the cloaker test suite.

API tests run against an in-memory SQLite database (StaticPool, one shared
connection). Concurrency tests use a file-backed SQLite database so that
every thread gets its own connection.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")

import uuid
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from cloaker.database import Base
from cloaker.models import db_models  # noqa: F401  registers tables
from cloaker.models.db_models import CloakedLinkDB
from cloaker.services.policy import get_policy_cache


OWNER_ID = "owner-1"
OTHER_OWNER_ID = "owner-2"

CHROME_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

BROWSER_HEADERS = {
    "user-agent": CHROME_UA,
    "accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "accept-language": "en-US,en;q=0.9",
    "cf-connecting-ip": "203.0.113.7",
    "cf-ipcountry": "US",
    "cf-isp": "Comcast Cable",
}


def human_bundle_dict():
    """Signals of an ordinary desktop Chrome visitor who moved the mouse for 5s."""
    path = [{"x": i * 10, "y": (i * i) % 37 * 3, "t": i * 16 + (i * 7) % 11} for i in range(20)]
    return {
        "userAgent": CHROME_UA,
        "platform": "Win32",
        "language": "en-US",
        "languages": ["en-US", "en"],
        "timezone": "America/New_York",
        "screenResolution": "1920x1080",
        "colorDepth": 24,
        "deviceMemory": 8,
        "hardwareConcurrency": 8,
        "webglVendor": "Google Inc. (NVIDIA)",
        "webglRenderer": "ANGLE (NVIDIA GeForce RTX 3060)",
        "canvasHash": "a1b2c3d4e5f6",
        "fontsList": ["Arial", "Calibri", "Cambria", "Consolas", "Georgia", "Verdana"],
        "pluginsCount": 5,
        "touchSupport": False,
        "maxTouchPoints": 0,
        "hardwareAcceleration": True,
        "speechSynthesis": True,
        "mouseMovements": 40,
        "mouseVelocities": [1.2, 3.4, 0.8, 2.2, 5.1],
        "mouseAccelerations": [0.3, -0.2, 0.5, -0.1],
        "mousePath": path,
        "scrollEvents": 3,
        "scrollDepth": 40,
        "clickEvents": 1,
        "keypressEvents": 0,
        "timeOnPage": 5000,
        "focusChanges": 1,
        "timingVariance": 0.5,
        "hasWebdriver": False,
        "hasSelenium": False,
        "hasPuppeteer": False,
        "hasPlaywright": False,
        "isHeadless": False,
        "isAutomated": False,
        "cookiesEnabled": True,
        "localStorage": True,
        "performanceEntries": 30,
        "mediaDevices": 3,
        "webRTC": True,
        "webrtcLocalIps": ["192.168.1.10"],
        "replayTools": [],
    }


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_engine(tmp_path):
    """File-backed SQLite so concurrent threads use separate connections."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'cloaker.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def clear_policy_cache():
    get_policy_cache().clear()
    yield
    get_policy_cache().clear()


def make_link(db, **overrides) -> CloakedLinkDB:
    """Insert a link with sane defaults and no filters."""
    values = {
        "id": str(uuid.uuid4()),
        "user_id": OWNER_ID,
        "name": "Test link",
        "slug": f"l{uuid.uuid4().hex[:8]}",
        "safe_url": "https://safe.example.com/",
        "target_url": "https://offer.example.com/",
        "is_active": True,
        "block_bots": True,
        "min_score": 40,
        "clicks_today": 0,
        "clicks_count": 0,
        "timezone": "UTC",
        "created_at": datetime.utcnow(),
    }
    values.update(overrides)
    link = CloakedLinkDB(**values)
    db.add(link)
    db.commit()
    db.refresh(link)
    return link


@pytest.fixture
def link_factory(db_session):
    def _make(**overrides):
        return make_link(db_session, **overrides)
    return _make


# =============================================================================
# DOMAIN CHECK FAKES
# =============================================================================

class FakeDns:
    """Stands in for DnsChecker; records every check."""

    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    def check(self, domain, token):
        from cloaker.services.errors import DomainVerificationFailed
        self.calls.append((domain, token))
        if not self.ok:
            raise DomainVerificationFailed(f"TXT record _cloaker.{domain} does not contain the verification token")


class FakeProvisioner:

    def __init__(self, ok=True):
        self.ok = ok
        self.calls = []

    def provision(self, domain):
        from cloaker.services.errors import DomainVerificationFailed
        self.calls.append(domain)
        if not self.ok:
            raise DomainVerificationFailed("handshake failed")


# =============================================================================
# API
# =============================================================================

@pytest.fixture
def client(engine, session_factory):
    from fastapi.testclient import TestClient
    from cloaker.database import get_db, get_session_factory
    from cloaker.main import app

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(owner_id: str = OWNER_ID) -> dict:
    from cloaker.auth import create_access_token
    return {"Authorization": f"Bearer {create_access_token(owner_id)}"}

"""
Policy Store

Read-mostly lookup of LinkPolicy by slug and/or custom domain.

Lookups go through a small in-process TTL + LRU cache because policy changes
are rare compared with click volume. Every management write calls
invalidate() for the affected slug; the TTL bounds staleness across replicas.

Contract:
- get_policy() returns (policy, True) or (None, False); it never raises for an
  unknown slug or domain.
- Backing-store failures raise StoreUnavailable.
"""
import logging
import os
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import CloakedLinkDB, CloakerDomainDB
from ...models.policy import LinkPolicy
from ..errors import StoreUnavailable

logger = logging.getLogger(__name__)


POLICY_CACHE_TTL_SECONDS = float(os.getenv("POLICY_CACHE_TTL_SECONDS", "30"))
POLICY_CACHE_MAX_ENTRIES = int(os.getenv("POLICY_CACHE_MAX_ENTRIES", "5000"))


# =============================================================================
# CACHE
# =============================================================================

class PolicyCache:
    """TTL + LRU cache keyed by (host, slug). Negative lookups are cached too."""

    def __init__(
        self,
        ttl_seconds: float = POLICY_CACHE_TTL_SECONDS,
        max_entries: int = POLICY_CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl = ttl_seconds
        self.cap = max_entries
        self.clock = clock
        self._data: "OrderedDict[tuple, tuple]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: tuple):
        """Returns (hit, policy)."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return False, None
            stored_at, policy = entry
            if self.clock() - stored_at > self.ttl:
                self._data.pop(key, None)
                return False, None
            self._data.move_to_end(key)
            return True, policy

    def put(self, key: tuple, policy: Optional[LinkPolicy]) -> None:
        with self._lock:
            self._data[key] = (self.clock(), policy)
            self._data.move_to_end(key)
            while len(self._data) > self.cap:
                self._data.popitem(last=False)

    def invalidate_slug(self, slug: str) -> int:
        with self._lock:
            stale = [key for key in self._data if key[1] == slug]
            for key in stale:
                self._data.pop(key, None)
            return len(stale)

    def invalidate_host(self, host: str) -> int:
        with self._lock:
            stale = [key for key in self._data if key[0] == host]
            for key in stale:
                self._data.pop(key, None)
            return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


_shared_cache = PolicyCache()


def get_policy_cache() -> PolicyCache:
    return _shared_cache


# =============================================================================
# STORE
# =============================================================================

def normalize_host(host: Optional[str]) -> Optional[str]:
    if not host:
        return None
    host = host.strip().lower()
    if ":" in host:
        host = host.split(":", 1)[0]
    return host.rstrip(".") or None


class PolicyStore:
    """
    Resolves the policy for an inbound click.

    Resolution rules:
    - No host, or a host that is not a verified custom domain: slug lookup.
    - Verified custom domain with a slug: the owner's link with that slug,
      provided it is bound to this host, or unbound and this host is the
      owner's default domain.
    - Verified custom domain with no slug: the active link bound to the host.
    """

    def __init__(self, db_session: Session, cache: Optional[PolicyCache] = None):
        self.db = db_session
        self.cache = cache if cache is not None else get_policy_cache()

    def get_policy(self, slug: Optional[str], host: Optional[str] = None) -> Tuple[Optional[LinkPolicy], bool]:
        slug = (slug or "").strip().strip("/")
        host = normalize_host(host)
        key = (host or "", slug)

        hit, policy = self.cache.get(key)
        if hit:
            return policy, policy is not None

        try:
            policy = self._load(slug, host)
        except SQLAlchemyError as e:
            logger.error(f"Policy store unavailable for slug={slug!r} host={host!r}: {e}")
            raise StoreUnavailable("policy store unavailable") from e

        self.cache.put(key, policy)
        return policy, policy is not None

    def invalidate(self, slug: str) -> None:
        """Drop every cached entry for this slug. Called on each config write."""
        removed = self.cache.invalidate_slug(slug)
        logger.debug(f"Invalidated {removed} cached policy entries for slug={slug!r}")

    def invalidate_host(self, host: str) -> None:
        self.cache.invalidate_host(normalize_host(host) or "")

    # -------------------------------------------------------------------------

    def _load(self, slug: str, host: Optional[str]) -> Optional[LinkPolicy]:
        domain = None
        if host:
            domain = self.db.query(CloakerDomainDB).filter(
                CloakerDomainDB.domain == host,
                CloakerDomainDB.is_verified == True,  # noqa: E712
            ).first()

        if domain is None:
            if not slug:
                return None
            link = self.db.query(CloakedLinkDB).filter(CloakedLinkDB.slug == slug).first()
            return LinkPolicy.from_record(link) if link else None

        if not slug:
            link = self.db.query(CloakedLinkDB).filter(
                CloakedLinkDB.user_id == domain.user_id,
                CloakedLinkDB.custom_domain == domain.domain,
                CloakedLinkDB.is_active == True,  # noqa: E712
            ).order_by(CloakedLinkDB.created_at.desc()).first()
            return LinkPolicy.from_record(link) if link else None

        link = self.db.query(CloakedLinkDB).filter(
            CloakedLinkDB.slug == slug,
            CloakedLinkDB.user_id == domain.user_id,
        ).first()
        if link is None:
            return None
        if link.custom_domain:
            bound = link.custom_domain == domain.domain
        else:
            bound = bool(domain.is_default)
        return LinkPolicy.from_record(link) if bound else None

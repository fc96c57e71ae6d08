"""
Per-IP Rate Limiter

Fixed windows aligned to the epoch, one counter row per (link, ip, window).
The count is bumped with UPDATE ... RETURNING; the first hit of a window
inserts the row, and a lost insert race falls back to the UPDATE.

Fixed windows may let up to 2x the limit through across a boundary. They
never block a request that a sliding window would allow.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import RateLimitCounterDB
from ..errors import StoreUnavailable

logger = logging.getLogger(__name__)


# Longest window a link may configure; rows older than this are garbage
MAX_WINDOW_MINUTES = 1440


@dataclass(frozen=True)
class RateLimitResult:
    blocked: bool
    count: int
    limit: int
    window_start: datetime
    retry_after_seconds: int = 0


def window_start_for(now: datetime, window_minutes: int) -> datetime:
    """Start of the fixed window containing `now`, as naive UTC."""
    if now.tzinfo is not None:
        now = now.astimezone(timezone.utc).replace(tzinfo=None)
    size = window_minutes * 60
    epoch = datetime(1970, 1, 1)
    elapsed = int((now - epoch).total_seconds())
    return epoch + timedelta(seconds=elapsed - elapsed % size)


class RateLimiter:

    def __init__(self, db_session: Session):
        self.db = db_session

    def hit(
        self,
        link_id: str,
        ip: str,
        limit: int,
        window_minutes: int,
        now: Optional[datetime] = None,
    ) -> RateLimitResult:
        """Record one request from `ip` and report whether it is over the limit."""
        now = now or datetime.utcnow()
        start = window_start_for(now, window_minutes)
        try:
            count = self._increment(link_id, ip, start)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Rate limiter unavailable for link {link_id}: {e}")
            raise StoreUnavailable("rate limiter unavailable") from e

        blocked = count > limit
        retry_after = 0
        if blocked:
            naive_now = now.astimezone(timezone.utc).replace(tzinfo=None) if now.tzinfo else now
            window_end = start + timedelta(minutes=window_minutes)
            retry_after = max(0, int((window_end - naive_now).total_seconds()))
            logger.info(f"Rate limit hit: link={link_id} ip={ip} count={count} limit={limit}")
        return RateLimitResult(blocked, count, limit, start, retry_after)

    def _increment(self, link_id: str, ip: str, start: datetime) -> int:
        row = RateLimitCounterDB.__table__.c
        bump = (
            update(RateLimitCounterDB.__table__)
            .where(row.link_id == link_id, row.ip_address == ip, row.window_start == start)
            .values(hits=row.hits + 1)
            .returning(row.hits)
        )
        count = self.db.execute(bump).scalar()
        if count is None:
            try:
                self.db.execute(
                    insert(RateLimitCounterDB.__table__).values(
                        link_id=link_id, ip_address=ip, window_start=start, hits=1,
                    )
                )
                count = 1
            except IntegrityError:
                # Another request created the window row first
                self.db.rollback()
                count = self.db.execute(bump).scalar() or 1
        self.db.commit()
        return count

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        """Delete counter rows whose window can no longer be current."""
        now = now or datetime.utcnow()
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc).replace(tzinfo=None)
        cutoff = now - timedelta(minutes=MAX_WINDOW_MINUTES)
        try:
            result = self.db.execute(
                delete(RateLimitCounterDB.__table__).where(RateLimitCounterDB.__table__.c.window_start < cutoff)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Rate limit purge failed: {e}")
            raise StoreUnavailable("rate limiter unavailable") from e
        logger.info(f"Purged {result.rowcount} expired rate limit windows")
        return result.rowcount

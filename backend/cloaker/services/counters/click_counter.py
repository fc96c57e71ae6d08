"""
Click Counter

Daily and lifetime click quotas, enforced with single conditional UPDATE
statements so concurrent clicks can never push a counter past its limit.

Daily counters reset lazily: the first click of a new link-local day zeroes
clicks_today and stamps last_click_reset in the same transaction as its own
increment.
"""
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from dateutil import tz
from sqlalchemy import or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import CloakedLinkDB
from ...models.policy import LinkPolicy
from ..errors import StoreUnavailable
from ..filters.admission import CounterSnapshot

logger = logging.getLogger(__name__)


def local_today(timezone_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Calendar date in the link's timezone. Unknown zones fall back to UTC."""
    zone = tz.gettz(timezone_name or "UTC") or tz.UTC
    now = now or datetime.now(tz.UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=tz.UTC)
    return now.astimezone(zone).date()


@dataclass(frozen=True)
class ConsumeResult:
    consumed: bool
    reason: Optional[str] = None


class ClickCounter:
    """Atomic quota accounting for one link at a time."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def snapshot(self, policy: LinkPolicy, today: date) -> CounterSnapshot:
        """Counter view for the filters, with the lazy daily reset applied in memory."""
        clicks_today = policy.clicks_today if policy.last_click_reset == today else 0
        return CounterSnapshot(clicks_today=clicks_today, clicks_count=policy.clicks_count)

    def consume(
        self,
        link_id: str,
        max_daily: Optional[int],
        max_total: Optional[int],
        today: date,
    ) -> ConsumeResult:
        """
        Count one click if it fits both quotas.

        Counter writes pin updated_at so it only tracks configuration edits.
        Both statements are writes so the transaction takes the write lock
        up front. The increment only matches while both counters are below
        their limits, so exactly max_daily clicks per day can succeed.
        """
        link = CloakedLinkDB.__table__.c
        try:
            self.db.execute(
                update(CloakedLinkDB.__table__)
                .where(
                    link.id == link_id,
                    or_(link.last_click_reset.is_(None), link.last_click_reset != today),
                )
                .values(clicks_today=0, last_click_reset=today, updated_at=link.updated_at)
            )

            conditions = [link.id == link_id]
            if max_daily is not None:
                conditions.append(link.clicks_today < max_daily)
            if max_total is not None:
                conditions.append(link.clicks_count < max_total)
            result = self.db.execute(
                update(CloakedLinkDB.__table__)
                .where(*conditions)
                .values(
                    clicks_today=link.clicks_today + 1,
                    clicks_count=link.clicks_count + 1,
                    updated_at=link.updated_at,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Click counter unavailable for link {link_id}: {e}")
            raise StoreUnavailable("click counter unavailable") from e

        if result.rowcount == 1:
            return ConsumeResult(consumed=True)
        return ConsumeResult(consumed=False, reason=self._exhausted_reason(link_id, max_total))

    def _exhausted_reason(self, link_id: str, max_total: Optional[int]) -> str:
        try:
            row = self.db.execute(
                select(CloakedLinkDB.__table__.c.clicks_count).where(CloakedLinkDB.__table__.c.id == link_id)
            ).first()
        except SQLAlchemyError as e:
            logger.error(f"Could not read counters for link {link_id}: {e}")
            return "daily_quota_exceeded"
        finally:
            self.db.rollback()
        if row is None:
            return "link_not_found"
        if max_total is not None and row[0] >= max_total:
            return "total_quota_exceeded"
        return "daily_quota_exceeded"

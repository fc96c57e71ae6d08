"""
Domain Lifecycle Manager
========================
Custom domains move through two independent state machines:

    DNS:  pending -> verified | failed        (failed -> verified on a later check)
    SSL:  pending -> provisioning -> active | failed

SSL is only attempted once DNS is verified. A domain that is DNS-verified with
an active certificate is settled: re-verifying it only refreshes last_check_at.

At most one domain per owner is the default. set_default() swaps it in a
single transaction; the partial unique index uq_cloaker_domains_one_default
rejects any interleaving that would leave two.
"""
import logging
import os
import re
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import CloakerDomainDB, DnsStatus, SslStatus
from ..errors import (
    DomainConflict, DomainNotFound, DomainVerificationFailed, StoreUnavailable,
    VerificationTooSoon,
)
from .dns_checker import DnsChecker
from .ssl_provisioner import CertificateProvisioner

logger = logging.getLogger(__name__)


DOMAIN_MIN_CHECK_INTERVAL_SECONDS = int(os.getenv("DOMAIN_MIN_CHECK_INTERVAL_SECONDS", "60"))

DOMAIN_RE = re.compile(r"^([a-z0-9]+(-[a-z0-9]+)*\.)+[a-z]{2,}$")


def normalize_domain(raw: str) -> str:
    """Lowercase, strip scheme, path, port and trailing dot. Raises DomainConflict if invalid."""
    value = (raw or "").strip().lower()
    value = re.sub(r"^[a-z]+://", "", value)
    value = value.split("/", 1)[0].split(":", 1)[0].rstrip(".")
    if len(value) > 253 or not DOMAIN_RE.match(value):
        raise DomainConflict(f"Invalid domain: {raw!r}")
    return value


def generate_verification_token() -> str:
    return f"cloaker-verify-{secrets.token_hex(16)}"


class DomainLifecycleManager:
    """Owner-scoped domain operations. Every public method commits its own transaction."""

    def __init__(
        self,
        db_session: Session,
        dns_checker: Optional[DnsChecker] = None,
        provisioner: Optional[CertificateProvisioner] = None,
        min_check_interval_seconds: int = DOMAIN_MIN_CHECK_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.db = db_session
        self.dns = dns_checker or DnsChecker()
        self.provisioner = provisioner or CertificateProvisioner()
        self.min_check_interval = timedelta(seconds=min_check_interval_seconds)
        self.clock = clock

    # =========================================================================
    # QUERIES
    # =========================================================================

    def list_domains(self, owner: str) -> List[CloakerDomainDB]:
        return self.db.query(CloakerDomainDB).filter(
            CloakerDomainDB.user_id == owner
        ).order_by(CloakerDomainDB.created_at.asc()).all()

    def get_domain(self, domain_id: str, owner: str) -> CloakerDomainDB:
        row = self.db.query(CloakerDomainDB).filter(
            CloakerDomainDB.id == domain_id,
            CloakerDomainDB.user_id == owner,
        ).first()
        if row is None:
            raise DomainNotFound(f"Domain {domain_id} not found")
        return row

    # =========================================================================
    # COMMANDS
    # =========================================================================

    def create_domain(self, owner: str, domain: str, is_default: bool = False) -> CloakerDomainDB:
        name = normalize_domain(domain)
        existing = self.db.query(CloakerDomainDB).filter(CloakerDomainDB.domain == name).first()
        if existing is not None:
            raise DomainConflict(f"Domain {name} is already registered")

        row = CloakerDomainDB(
            id=str(uuid.uuid4()),
            user_id=owner,
            domain=name,
            is_verified=False,
            is_default=False,
            verification_token=generate_verification_token(),
            dns_status=DnsStatus.PENDING,
            ssl_status=SslStatus.PENDING,
        )
        self.db.add(row)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DomainConflict(f"Domain {name} is already registered") from e

        logger.info(f"Domain {name} registered for owner {owner}")
        if is_default:
            row = self.set_default(row.id, owner)
        return row

    def verify(self, domain_id: str, owner: str) -> CloakerDomainDB:
        row = self.get_domain(domain_id, owner)
        now = self.clock()

        if self._is_settled(row):
            # Only the check timestamp moves; updated_at is pinned to itself
            table = CloakerDomainDB.__table__
            self.db.execute(
                update(table)
                .where(table.c.id == row.id)
                .values(last_check_at=now, updated_at=table.c.updated_at)
            )
            self.db.commit()
            self.db.refresh(row)
            return row

        if row.last_check_at is not None and now - row.last_check_at < self.min_check_interval:
            wait = self.min_check_interval - (now - row.last_check_at)
            raise VerificationTooSoon(
                f"Domain {row.domain} was checked recently",
                detail={"retry_after_seconds": int(wait.total_seconds()) + 1},
            )

        return self._check(row, now)

    def set_default(self, domain_id: str, owner: str) -> CloakerDomainDB:
        """Make this the owner's only default domain, in one transaction."""
        table = CloakerDomainDB.__table__
        try:
            # Lock the owner's rows in id order so concurrent swaps queue up
            owned = self.db.query(CloakerDomainDB.id).filter(
                CloakerDomainDB.user_id == owner
            ).order_by(CloakerDomainDB.id).with_for_update().all()
            if domain_id not in {r.id for r in owned}:
                self.db.rollback()
                raise DomainNotFound(f"Domain {domain_id} not found")

            self.db.execute(
                update(table)
                .where(table.c.user_id == owner, table.c.id != domain_id)
                .values(is_default=False)
            )
            self.db.execute(
                update(table)
                .where(table.c.id == domain_id, table.c.user_id == owner)
                .values(is_default=True)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"set_default failed for domain {domain_id}: {e}")
            raise StoreUnavailable("could not update default domain") from e

        row = self.get_domain(domain_id, owner)
        self.db.refresh(row)
        logger.info(f"Domain {row.domain} is now the default for owner {owner}")
        return row

    def delete_domain(self, domain_id: str, owner: str) -> bool:
        """Idempotent. Returns True if a row was removed."""
        deleted = self.db.query(CloakerDomainDB).filter(
            CloakerDomainDB.id == domain_id,
            CloakerDomainDB.user_id == owner,
        ).delete(synchronize_session=False)
        self.db.commit()
        if deleted:
            logger.info(f"Domain {domain_id} deleted for owner {owner}")
        return bool(deleted)

    def poll_pending(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Re-check every unsettled domain whose last check is older than the minimum interval.

        `changed` counts domains whose verification or certificate status moved
        in either direction; callers drop cached policies when it is non-zero.
        """
        now = now or self.clock()
        cutoff = now - self.min_check_interval
        due = self.db.query(CloakerDomainDB).filter(
            or_(
                CloakerDomainDB.dns_status != DnsStatus.VERIFIED,
                CloakerDomainDB.ssl_status != SslStatus.ACTIVE,
            ),
            or_(
                CloakerDomainDB.last_check_at.is_(None),
                CloakerDomainDB.last_check_at <= cutoff,
            ),
        ).all()

        summary = {"checked": 0, "verified": 0, "failed": 0, "changed": 0}
        for row in due:
            before = (row.is_verified, row.dns_status, row.ssl_status)
            try:
                row = self._check(row, now)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Domain poll failed for {row.domain}: {e}")
                summary["failed"] += 1
                continue
            summary["checked"] += 1
            if (row.is_verified, row.dns_status, row.ssl_status) != before:
                summary["changed"] += 1
            if self._is_settled(row):
                summary["verified"] += 1
            elif row.dns_status == DnsStatus.FAILED or row.ssl_status == SslStatus.FAILED:
                summary["failed"] += 1

        if due:
            logger.info(f"Domain poll: {summary}")
        return summary

    # =========================================================================
    # INTERNALS
    # =========================================================================

    @staticmethod
    def _is_settled(row: CloakerDomainDB) -> bool:
        return row.dns_status == DnsStatus.VERIFIED and row.ssl_status == SslStatus.ACTIVE

    def _check(self, row: CloakerDomainDB, now: datetime) -> CloakerDomainDB:
        row.last_check_at = now
        try:
            self.dns.check(row.domain, row.verification_token)
        except DomainVerificationFailed as e:
            row.dns_status = DnsStatus.FAILED
            row.is_verified = False
            row.last_error = e.message
            self.db.commit()
            logger.info(f"DNS verification failed for {row.domain}: {e.message}")
            return row

        row.dns_status = DnsStatus.VERIFIED
        row.is_verified = True
        row.verified_at = row.verified_at or now
        row.last_error = None

        if row.ssl_status != SslStatus.ACTIVE:
            row.ssl_status = SslStatus.PROVISIONING
            self.db.commit()
            try:
                self.provisioner.provision(row.domain)
            except DomainVerificationFailed as e:
                row.ssl_status = SslStatus.FAILED
                row.last_error = e.message
                logger.info(f"Certificate not ready for {row.domain}: {e.message}")
            else:
                row.ssl_status = SslStatus.ACTIVE

        self.db.commit()
        return row

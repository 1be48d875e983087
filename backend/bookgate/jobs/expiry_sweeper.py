"""
Expiry Sweeper Job.

Periodic batch worker that keeps entitlement state consistent with the clock:
- book_access: ACTIVE grants past their end_date -> EXPIRED, is_active false
- book_access: one ACCESS_EXPIRING notification per grant entering the warning window
- subscriptions: ACTIVE/CANCELED past their end_date -> EXPIRED

Expiry is a state transition, rows are never deleted. Re-running the sweep
is a no-op on rows it already handled.

Run as a cron job:
    python -m bookgate.jobs.expiry_sweeper

Configuration:
- ACCESS_EXPIRY_WARNING_DAYS: Days before end_date to warn (default: 7)
- EXPIRY_SWEEP_BATCH_SIZE: Grants transitioned per commit (default: 500)
"""

import os
import sys
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from bookgate.database.session import get_db_session_sync
from bookgate.models.base import ensure_utc, utcnow
from bookgate.models.book_access import AccessStatus, BookAccess
from bookgate.models.subscription import Subscription, SubscriptionStatus
from bookgate.services.notification_service import NotificationService

logger = logging.getLogger(__name__)

ACCESS_EXPIRY_WARNING_DAYS = int(os.getenv("ACCESS_EXPIRY_WARNING_DAYS", "7"))
EXPIRY_SWEEP_BATCH_SIZE = int(os.getenv("EXPIRY_SWEEP_BATCH_SIZE", "500"))


class SweepStats:
    """Track sweep run statistics."""

    def __init__(self):
        self.expired_count = 0
        self.expiring_notified = 0
        self.subscriptions_expired = 0
        self.notification_errors = 0
        self.start_time = utcnow()

    def to_dict(self) -> dict:
        duration = (utcnow() - self.start_time).total_seconds()
        return {
            "expired_count": self.expired_count,
            "expiring_notified": self.expiring_notified,
            "subscriptions_expired": self.subscriptions_expired,
            "notification_errors": self.notification_errors,
            "duration_seconds": duration,
        }


class ExpirySweeper:
    """
    Transitions time-expired grants to EXPIRED and emits expiry notifications.

    Safe to run concurrently with reads: the access resolution engine checks
    the date window itself and never trusts a stale ACTIVE status.
    """

    def __init__(
        self,
        db_session: Session,
        batch_size: int = EXPIRY_SWEEP_BATCH_SIZE,
        warning_days: int = ACCESS_EXPIRY_WARNING_DAYS,
    ):
        self.db = db_session
        self.batch_size = batch_size
        self.warning_days = warning_days
        self.notifications = NotificationService(db_session)

    def sweep(self, now: Optional[datetime] = None) -> SweepStats:
        """
        Run one full sweep.

        Returns:
            SweepStats; stats.expired_count is the number of grants
            transitioned by this run.
        """
        now = ensure_utc(now) if now else utcnow()
        stats = SweepStats()

        logger.info("Starting expiry sweep", extra={"now": now.isoformat(), "batch_size": self.batch_size})

        stats.expired_count = self.expire_access(now, stats)
        stats.expiring_notified = self.warn_expiring(now, stats)
        stats.subscriptions_expired = self.expire_subscriptions(now)

        logger.info("Expiry sweep completed", extra=stats.to_dict())
        return stats

    def expire_access(self, now: datetime, stats: Optional[SweepStats] = None) -> int:
        """Transition ACTIVE grants with end_date < now, one commit per batch."""
        total = 0

        while True:
            batch: List[BookAccess] = (
                self.db.query(BookAccess)
                .filter(
                    BookAccess.status == AccessStatus.ACTIVE,
                    BookAccess.end_date < now,
                )
                .order_by(BookAccess.end_date)
                .limit(self.batch_size)
                .all()
            )
            if not batch:
                break

            try:
                for access in batch:
                    access.status = AccessStatus.EXPIRED
                    access.is_active = False
                self.db.commit()
            except Exception:
                self.db.rollback()
                logger.error(
                    "Error expiring book access batch",
                    extra={"batch_size": len(batch), "total_expired": total},
                    exc_info=True,
                )
                raise

            total += len(batch)
            logger.info(
                "Expired book access batch",
                extra={"batch_size": len(batch), "total_expired": total},
            )

            for access in batch:
                self._notify_expired(access, stats)

            if len(batch) < self.batch_size:
                break

        return total

    def warn_expiring(self, now: datetime, stats: Optional[SweepStats] = None) -> int:
        """Emit ACCESS_EXPIRING once per grant ending within the warning window."""
        window_end = now + timedelta(days=self.warning_days)
        total = 0

        while True:
            batch: List[BookAccess] = (
                self.db.query(BookAccess)
                .filter(
                    BookAccess.status == AccessStatus.ACTIVE,
                    BookAccess.is_active.is_(True),
                    BookAccess.expiry_warning_sent_at.is_(None),
                    BookAccess.end_date >= now,
                    BookAccess.end_date <= window_end,
                )
                .order_by(BookAccess.end_date)
                .limit(self.batch_size)
                .all()
            )
            if not batch:
                break

            for access in batch:
                try:
                    self.notifications.notify_access_expiring(
                        access.user_id,
                        access.id,
                        access.book.title,
                        ensure_utc(access.end_date),
                        commit=False,
                    )
                    access.expiry_warning_sent_at = now
                    self.db.commit()
                    total += 1
                except Exception:
                    self.db.rollback()
                    if stats is not None:
                        stats.notification_errors += 1
                    logger.warning(
                        "Expiring notification could not be created",
                        extra={"access_id": access.id, "user_id": access.user_id},
                        exc_info=True,
                    )
                    # Leave the row for the next run instead of spinning on it
                    return total

            if len(batch) < self.batch_size:
                break

        return total

    def expire_subscriptions(self, now: datetime) -> int:
        try:
            updated = (
                self.db.query(Subscription)
                .filter(
                    Subscription.status.in_([SubscriptionStatus.ACTIVE, SubscriptionStatus.CANCELED]),
                    Subscription.end_date < now,
                )
                .update(
                    {
                        Subscription.status: SubscriptionStatus.EXPIRED,
                        Subscription.auto_renew: False,
                        Subscription.next_billing_date: None,
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            logger.error("Error expiring subscriptions", exc_info=True)
            raise

        if updated:
            logger.info("Expired subscriptions", extra={"subscriptions_expired": updated})
        return updated

    def _notify_expired(self, access: BookAccess, stats: Optional[SweepStats]) -> None:
        try:
            self.notifications.notify_access_expired(
                access.user_id,
                access.id,
                access.book.title,
                ensure_utc(access.end_date),
            )
        except Exception:
            self.db.rollback()
            if stats is not None:
                stats.notification_errors += 1
            logger.warning(
                "Expired notification could not be created",
                extra={"access_id": access.id, "user_id": access.user_id},
                exc_info=True,
            )


def main():
    """Main entry point for the expiry sweeper job."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logger.info("Expiry Sweeper starting")
    try:
        for session in get_db_session_sync():
            stats = ExpirySweeper(session).sweep()
            logger.info("Expiry Sweeper stats", extra=stats.to_dict())
    except Exception as e:
        logger.error("Expiry Sweeper failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    logger.info("Expiry Sweeper finished")


if __name__ == "__main__":
    main()

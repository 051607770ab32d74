# src/signalrelay/application/services/subscription_service.py
"""
SubscriptionService - turns an approved payment into a time-bounded entitlement.

`activate` is the only writer of subscription rows apart from expiry. It runs
inside the caller's session so that payment approval and provisioning commit
or roll back together.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from signalrelay.domain.entities import SubscriptionStatus
from signalrelay.domain.errors import NotFoundError
from signalrelay.domain.value_objects import as_utc, utcnow
from signalrelay.infrastructure.db.models import Payment, Subscription
from signalrelay.infrastructure.db.repository import PlanRepository, SubscriptionRepository
from signalrelay.infrastructure.db.uow import SessionScope, session_scope as default_session_scope

log = logging.getLogger(__name__)


class SubscriptionService:
    def __init__(self, session_scope: SessionScope = default_session_scope, clock: Callable[[], datetime] = utcnow):
        self.session_scope = session_scope
        self.clock = clock

    def activate(self, session: Session, payment: Payment, now: Optional[datetime] = None) -> Subscription:
        """
        end = start + plan months, then extra days.

        Same (user, plan, transaction) as an existing row: that row is refreshed
        in place and no other row is touched. Otherwise a new active row is
        inserted; any other active row for the same (user, plan) is closed first
        and its unused time is added to the new end date.
        """
        now = now or self.clock()
        plan = PlanRepository(session).get(payment.plan_id)
        if plan is None:
            raise NotFoundError(f"Subscription plan #{payment.plan_id} not found.")
        end_date = plan.duration.apply(now)

        repo = SubscriptionRepository(session)
        existing = repo.find_by_transaction(payment.user_id, payment.plan_id, payment.transaction_id)
        if existing is not None:
            return self._refresh(session, repo, existing, payment, now, end_date)

        carried, superseded = self._close_other_active(repo, payment.user_id, payment.plan_id, now)
        subscription = repo.add(
            user_id=payment.user_id,
            plan_id=payment.plan_id,
            payment_id=payment.id,
            transaction_id=payment.transaction_id,
            start_date=now,
            end_date=end_date + carried,
            status=SubscriptionStatus.ACTIVE,
            auto_renew=False,
        )
        for superseded_id in superseded:
            repo.transition(
                superseded_id, SubscriptionStatus.CANCELLED, [SubscriptionStatus.CANCELLED],
                superseded_by_id=subscription.id,
            )
        log.info(
            f"Subscription #{subscription.id} activated for user {payment.user_id} plan {payment.plan_id} "
            f"(txn {payment.transaction_id}), ends {as_utc(subscription.end_date).isoformat()}"
            + (f", carried over {carried}" if carried else "")
        )
        return subscription

    def _refresh(
        self, session: Session, repo: SubscriptionRepository, existing: Subscription, payment: Payment,
        now: datetime, end_date: datetime,
    ) -> Subscription:
        """Re-activation of the same transaction; the refreshed row never ends earlier than it already did."""
        for other in repo.list_status_active(payment.user_id, [payment.plan_id]):
            if other.id == existing.id:
                continue
            if as_utc(other.end_date) > now:
                log.info(
                    f"Subscription #{existing.id} (txn {payment.transaction_id}) left as is, "
                    f"#{other.id} is the live subscription for this plan"
                )
                return existing
            repo.transition(other.id, SubscriptionStatus.EXPIRED, [SubscriptionStatus.ACTIVE])

        existing.start_date = now
        existing.end_date = max(as_utc(existing.end_date), end_date)
        existing.status = SubscriptionStatus.ACTIVE
        existing.payment_id = payment.id
        session.flush()
        log.info(
            f"Subscription #{existing.id} refreshed for txn {payment.transaction_id}, "
            f"ends {as_utc(existing.end_date).isoformat()}"
        )
        return existing

    def _close_other_active(
        self, repo: SubscriptionRepository, user_id: int, plan_id: int, now: datetime,
    ) -> Tuple[timedelta, List[int]]:
        """Cancels (with carry-over) or expires every other active row; the partial unique index needs this before insert."""
        carried = timedelta(0)
        superseded: List[int] = []
        for other in repo.list_status_active(user_id, [plan_id]):
            remaining = as_utc(other.end_date) - now
            if remaining > timedelta(0):
                carried += remaining
                repo.transition(other.id, SubscriptionStatus.CANCELLED, [SubscriptionStatus.ACTIVE])
                superseded.append(other.id)
                log.info(f"Subscription #{other.id} superseded, {remaining} carried over")
            else:
                repo.transition(other.id, SubscriptionStatus.EXPIRED, [SubscriptionStatus.ACTIVE])
        return carried, superseded

    # --- Queries & maintenance ---

    def user_subscriptions(self, user_id: int) -> List[Subscription]:
        with self.session_scope() as session:
            return SubscriptionRepository(session).list_by_user(user_id)

    def active_subscription(self, user_id: int, plan_id: int) -> Optional[Subscription]:
        now = self.clock()
        with self.session_scope() as session:
            for sub in SubscriptionRepository(session).list_status_active(user_id, [plan_id]):
                if sub.is_active(now):
                    return sub
        return None

    def expiring_subscriptions(self, days: int = 7) -> List[Subscription]:
        now = self.clock()
        with self.session_scope() as session:
            return SubscriptionRepository(session).list_expiring(now, now + timedelta(days=days))

    def expire_ended(self) -> int:
        with self.session_scope() as session:
            count = SubscriptionRepository(session).expire_ended(self.clock())
        if count:
            log.info(f"Expired {count} ended subscription(s).")
        return count

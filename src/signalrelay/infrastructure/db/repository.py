# src/signalrelay/infrastructure/db/repository.py
"""
Repositories over the ORM models.

Status changes for alerts, payments and subscriptions go through
`_conditional_update`: a single UPDATE ... WHERE status IN (<allowed sources>)
whose rowcount tells the caller whether it won. Two racing writers can
therefore never both move the same record.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Set

import sqlalchemy as sa
from sqlalchemy import func
from sqlalchemy.orm import Session

from signalrelay.domain.entities import (
    AlertStatus, PaymentStatus, SubscriptionStatus, ConfigurationStatus,
    PlanStatus, TradeStatus, TradeActionType, MatchedUser,
    ALERT_TRANSITIONS, PAYMENT_TRANSITIONS, sources_for,
)
from .models import (
    User, TelegramLink, Alert, AlertRecipient, AlertTradeAction, AlertErrorRecord,
    AlertConfiguration, ConfigurationPlan, ConfigSubscription,
    SubscriptionPlan, Payment, Subscription, Trade,
)

logger = logging.getLogger(__name__)


def _conditional_update(session: Session, model, record_id: int, allowed: Iterable, values: Dict[str, Any]) -> bool:
    stmt = (
        sa.update(model)
        .where(model.id == record_id, model.status.in_(list(allowed)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    return result.rowcount == 1


# ==========================================================
# USERS & TELEGRAM LINKS
# ==========================================================
class UserRepository:
    def __init__(self, session: Session):
        self.session = session

    def find_by_id(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def add(self, email: Optional[str] = None, name: Optional[str] = None, status: str = 'active') -> User:
        user = User(email=email, name=name, status=status)
        self.session.add(user)
        self.session.flush()
        return user


class TelegramLinkRepository:
    def __init__(self, session: Session):
        self.session = session

    def find_by_user(self, user_id: int) -> Optional[TelegramLink]:
        return self.session.query(TelegramLink).filter(TelegramLink.user_id == user_id).one_or_none()

    def link(self, user_id: int, chat_id: int, username: Optional[str] = None) -> TelegramLink:
        link = self.find_by_user(user_id)
        if link:
            link.chat_id = chat_id
            link.username = username or link.username
            link.is_active = True
            link.is_blocked = False
            link.blocked_at = None
            link.block_reason = None
        else:
            link = TelegramLink(user_id=user_id, chat_id=chat_id, username=username, is_active=True, is_blocked=False)
            self.session.add(link)
        self.session.flush()
        return link

    def mark_blocked(self, user_id: int, reason: str, now: datetime) -> bool:
        stmt = (
            sa.update(TelegramLink)
            .where(TelegramLink.user_id == user_id, TelegramLink.is_blocked == sa.false())
            .values(is_blocked=True, blocked_at=now, block_reason=reason[:500])
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def touch_delivery(self, user_id: int, now: datetime) -> None:
        self.session.execute(
            sa.update(TelegramLink)
            .where(TelegramLink.user_id == user_id)
            .values(last_delivery_at=now)
            .execution_options(synchronize_session=False)
        )


# ==========================================================
# ALERTS
# ==========================================================
class AlertRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, **fields) -> Alert:
        fields.setdefault('status', AlertStatus.RECEIVED)
        alert = Alert(**fields)
        self.session.add(alert)
        self.session.flush()
        logger.debug(f"Alert record created with ID: {alert.id}")
        return alert

    def get(self, alert_id: int, fresh: bool = False) -> Optional[Alert]:
        return self.session.get(Alert, alert_id, populate_existing=fresh)

    def transition(
        self,
        alert_id: int,
        target: AlertStatus,
        allowed: Optional[Iterable[AlertStatus]] = None,
        **values,
    ) -> bool:
        allowed = allowed if allowed is not None else sources_for(ALERT_TRANSITIONS, target)
        values['status'] = target
        return _conditional_update(self.session, Alert, alert_id, allowed, values)

    def set_derived_fields(self, alert_id: int, **values) -> None:
        self.session.execute(
            sa.update(Alert).where(Alert.id == alert_id).values(**values)
            .execution_options(synchronize_session=False)
        )

    def add_error(self, alert_id: int, kind: str, message: str, now: datetime) -> AlertErrorRecord:
        record = AlertErrorRecord(alert_id=alert_id, kind=kind, message=message, created_at=now)
        self.session.add(record)
        self.session.flush()
        return record

    # --- recipients ---

    def recipient_user_ids(self, alert_id: int) -> Set[int]:
        rows = self.session.query(AlertRecipient.user_id).filter(AlertRecipient.alert_id == alert_id).all()
        return {r[0] for r in rows}

    def add_recipient(self, alert_id: int, matched: MatchedUser, now: datetime) -> AlertRecipient:
        recipient = AlertRecipient(
            alert_id=alert_id,
            user_id=matched.user_id,
            subscription_id=matched.subscription_id,
            configuration_id=matched.configuration_id,
            chat_id=matched.chat_id,
            delivered=False,
            attempts=0,
            created_at=now,
        )
        self.session.add(recipient)
        self.session.flush()
        return recipient

    def unclaimed_recipients(self, alert_id: int) -> List[AlertRecipient]:
        return (
            self.session.query(AlertRecipient)
            .filter(
                AlertRecipient.alert_id == alert_id,
                AlertRecipient.delivered == sa.false(),
                AlertRecipient.claimed_at.is_(None),
            )
            .order_by(AlertRecipient.id)
            .all()
        )

    def claim_recipient(self, recipient_id: int, now: datetime) -> bool:
        stmt = (
            sa.update(AlertRecipient)
            .where(
                AlertRecipient.id == recipient_id,
                AlertRecipient.claimed_at.is_(None),
                AlertRecipient.delivered == sa.false(),
            )
            .values(claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def mark_recipient_delivered(self, recipient_id: int, attempts: int, message_id: Optional[int], now: datetime) -> bool:
        stmt = (
            sa.update(AlertRecipient)
            .where(AlertRecipient.id == recipient_id, AlertRecipient.delivered == sa.false())
            .values(delivered=True, delivered_at=now, attempts=attempts, message_id=message_id, error=None)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def mark_recipient_failed(self, recipient_id: int, attempts: int, error: str) -> bool:
        # never touches `delivered`
        stmt = (
            sa.update(AlertRecipient)
            .where(AlertRecipient.id == recipient_id, AlertRecipient.delivered == sa.false())
            .values(attempts=attempts, error=error)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    # --- trade actions ---

    def add_trade_action(
        self,
        alert_id: int,
        action: TradeActionType,
        user_id: int,
        trade_id: Optional[int],
        now: datetime,
        error: Optional[str] = None,
    ) -> AlertTradeAction:
        record = AlertTradeAction(
            alert_id=alert_id,
            action=action,
            user_id=user_id,
            trade_id=trade_id,
            executed=error is None,
            executed_at=now if error is None else None,
            error=error,
        )
        self.session.add(record)
        self.session.flush()
        return record

    # --- queries ---

    def status_counts(self) -> Dict[str, int]:
        rows = self.session.query(Alert.status, func.count(Alert.id)).group_by(Alert.status).all()
        counts = {s.value: 0 for s in AlertStatus}
        for status, count in rows:
            counts[status.value] = count
        return counts

    def list_recent(self, limit: int = 10, status: Optional[AlertStatus] = None) -> List[Alert]:
        query = self.session.query(Alert)
        if status is not None:
            query = query.filter(Alert.status == status)
        return query.order_by(Alert.id.desc()).limit(limit).all()


# ==========================================================
# ALERT CONFIGURATIONS
# ==========================================================
class AlertConfigurationRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, plan_ids: Iterable[int] = (), **fields) -> AlertConfiguration:
        fields.setdefault('status', ConfigurationStatus.ACTIVE)
        config = AlertConfiguration(**fields)
        for plan_id in plan_ids:
            config.plan_links.append(ConfigurationPlan(plan_id=plan_id))
        self.session.add(config)
        self.session.flush()
        return config

    def get(self, configuration_id: int) -> Optional[AlertConfiguration]:
        return self.session.get(AlertConfiguration, configuration_id)

    def list_candidates(self, symbol: str, strategy: str) -> List[AlertConfiguration]:
        """Active configurations for a symbol/strategy; timeframe, signal and price filters are applied by the caller."""
        return (
            self.session.query(AlertConfiguration)
            .filter(
                AlertConfiguration.symbol == symbol,
                AlertConfiguration.strategy == strategy,
                AlertConfiguration.status == ConfigurationStatus.ACTIVE,
            )
            .order_by(AlertConfiguration.id)
            .all()
        )

    def subscribe(self, user_id: int, configuration_id: int) -> ConfigSubscription:
        link = (
            self.session.query(ConfigSubscription)
            .filter(ConfigSubscription.user_id == user_id, ConfigSubscription.configuration_id == configuration_id)
            .one_or_none()
        )
        if link:
            link.is_active = True
        else:
            link = ConfigSubscription(user_id=user_id, configuration_id=configuration_id, is_active=True)
            self.session.add(link)
        self.session.flush()
        return link

    def subscriber_ids(self, configuration_id: int) -> List[int]:
        rows = (
            self.session.query(ConfigSubscription.user_id)
            .filter(
                ConfigSubscription.configuration_id == configuration_id,
                ConfigSubscription.is_active == sa.true(),
            )
            .order_by(ConfigSubscription.id)
            .all()
        )
        return [r[0] for r in rows]

    def record_alert(self, configuration_id: int, success: bool, now: datetime) -> None:
        values = {
            'total_alerts': AlertConfiguration.total_alerts + 1,
            'last_alert_at': now,
        }
        if success:
            values['successful_alerts'] = AlertConfiguration.successful_alerts + 1
        else:
            values['failed_alerts'] = AlertConfiguration.failed_alerts + 1
        self.session.execute(
            sa.update(AlertConfiguration).where(AlertConfiguration.id == configuration_id).values(**values)
            .execution_options(synchronize_session=False)
        )


# ==========================================================
# PLANS, PAYMENTS, SUBSCRIPTIONS
# ==========================================================
class PlanRepository:
    def __init__(self, session: Session):
        self.session = session

    def get(self, plan_id: int) -> Optional[SubscriptionPlan]:
        return self.session.get(SubscriptionPlan, plan_id)

    def add(self, **fields) -> SubscriptionPlan:
        fields.setdefault('status', PlanStatus.ACTIVE)
        plan = SubscriptionPlan(**fields)
        self.session.add(plan)
        self.session.flush()
        return plan


class PaymentRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, **fields) -> Payment:
        fields.setdefault('status', PaymentStatus.INITIATED)
        payment = Payment(**fields)
        self.session.add(payment)
        self.session.flush()
        logger.debug(f"Payment record created with ID: {payment.id} ({payment.transaction_id})")
        return payment

    def get(self, payment_id: int, fresh: bool = False) -> Optional[Payment]:
        return self.session.get(Payment, payment_id, populate_existing=fresh)

    def get_for_update(self, payment_id: int) -> Optional[Payment]:
        # FOR UPDATE is a no-op on SQLite; the conditional write still serializes.
        return (
            self.session.query(Payment)
            .filter(Payment.id == payment_id)
            .with_for_update(of=Payment)
            .populate_existing()
            .one_or_none()
        )

    def find_by_transaction_id(self, transaction_id: str) -> Optional[Payment]:
        return self.session.query(Payment).filter(Payment.transaction_id == transaction_id).one_or_none()

    def transaction_id_exists(self, transaction_id: str) -> bool:
        return self.session.query(
            sa.exists().where(Payment.transaction_id == transaction_id)
        ).scalar()

    def transition(
        self,
        payment_id: int,
        target: PaymentStatus,
        allowed: Optional[Iterable[PaymentStatus]] = None,
        **values,
    ) -> bool:
        allowed = allowed if allowed is not None else sources_for(PAYMENT_TRANSITIONS, target)
        values['status'] = target
        return _conditional_update(self.session, Payment, payment_id, allowed, values)

    def link_subscription(self, payment_id: int, subscription_id: int) -> None:
        self.session.execute(
            sa.update(Payment).where(Payment.id == payment_id).values(subscription_id=subscription_id)
            .execution_options(synchronize_session=False)
        )

    def list_by_user(self, user_id: int, status: Optional[PaymentStatus] = None, limit: int = 10) -> List[Payment]:
        query = self.session.query(Payment).filter(Payment.user_id == user_id)
        if status is not None:
            query = query.filter(Payment.status == status)
        return query.order_by(Payment.id.desc()).limit(limit).all()

    def list_pending(self, limit: int = 50) -> List[Payment]:
        return (
            self.session.query(Payment)
            .filter(Payment.status == PaymentStatus.PENDING)
            .order_by(Payment.created_at.asc(), Payment.id.asc())
            .limit(limit)
            .all()
        )

    def list_stale(self, now: datetime) -> List[Payment]:
        return (
            self.session.query(Payment)
            .filter(
                Payment.status.in_([PaymentStatus.INITIATED, PaymentStatus.PENDING]),
                Payment.expires_at <= now,
            )
            .order_by(Payment.id)
            .all()
        )

    def stats(self) -> Dict[str, Dict[str, Any]]:
        rows = (
            self.session.query(Payment.status, func.count(Payment.id), func.coalesce(func.sum(Payment.amount), 0))
            .group_by(Payment.status)
            .all()
        )
        out = {s.value: {"count": 0, "total_amount": Decimal("0.00")} for s in PaymentStatus}
        for status, count, total in rows:
            out[status.value] = {"count": count, "total_amount": Decimal(str(total)).quantize(Decimal("0.01"))}
        return out


class SubscriptionRepository:
    def __init__(self, session: Session):
        self.session = session

    def add(self, **fields) -> Subscription:
        fields.setdefault('status', SubscriptionStatus.ACTIVE)
        sub = Subscription(**fields)
        self.session.add(sub)
        self.session.flush()
        return sub

    def get(self, subscription_id: int) -> Optional[Subscription]:
        return self.session.get(Subscription, subscription_id)

    def find_by_transaction(self, user_id: int, plan_id: int, transaction_id: str) -> Optional[Subscription]:
        return (
            self.session.query(Subscription)
            .filter(
                Subscription.user_id == user_id,
                Subscription.plan_id == plan_id,
                Subscription.transaction_id == transaction_id,
            )
            .one_or_none()
        )

    def list_status_active(self, user_id: int, plan_ids: Optional[Iterable[int]] = None) -> List[Subscription]:
        """Rows with status=active; the caller still has to check end_date."""
        query = self.session.query(Subscription).filter(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE,
        )
        if plan_ids is not None:
            query = query.filter(Subscription.plan_id.in_(list(plan_ids)))
        return query.order_by(Subscription.end_date.desc()).all()

    def list_by_user(self, user_id: int) -> List[Subscription]:
        return (
            self.session.query(Subscription)
            .filter(Subscription.user_id == user_id)
            .order_by(Subscription.id.desc())
            .all()
        )

    def transition(self, subscription_id: int, target: SubscriptionStatus, allowed: Iterable[SubscriptionStatus], **values) -> bool:
        values['status'] = target
        return _conditional_update(self.session, Subscription, subscription_id, allowed, values)

    def increment_usage(self, subscription_id: int, now: datetime) -> None:
        self.session.execute(
            sa.update(Subscription)
            .where(Subscription.id == subscription_id)
            .values(alerts_received=Subscription.alerts_received + 1, last_activity_at=now)
            .execution_options(synchronize_session=False)
        )

    def expire_ended(self, now: datetime) -> int:
        result = self.session.execute(
            sa.update(Subscription)
            .where(Subscription.status == SubscriptionStatus.ACTIVE, Subscription.end_date <= now)
            .values(status=SubscriptionStatus.EXPIRED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    def list_expiring(self, now: datetime, until: datetime) -> List[Subscription]:
        return (
            self.session.query(Subscription)
            .filter(
                Subscription.status == SubscriptionStatus.ACTIVE,
                Subscription.end_date > now,
                Subscription.end_date <= until,
            )
            .order_by(Subscription.end_date.asc())
            .all()
        )


# ==========================================================
# TRADES
# ==========================================================
class TradeRepository:
    def __init__(self, session: Session):
        self.session = session

    def next_trade_number(self) -> int:
        current = self.session.query(func.max(Trade.trade_number)).scalar()
        return (current or 0) + 1

    def add(self, **fields) -> Trade:
        fields.setdefault('status', TradeStatus.OPEN)
        fields.setdefault('trade_number', self.next_trade_number())
        trade = Trade(**fields)
        self.session.add(trade)
        self.session.flush()
        return trade

    def list_open(
        self,
        user_id: int,
        configuration_id: Optional[int] = None,
        symbol: Optional[str] = None,
        strategy: Optional[str] = None,
    ) -> List[Trade]:
        """Open trades, oldest first."""
        query = self.session.query(Trade).filter(Trade.user_id == user_id, Trade.status == TradeStatus.OPEN)
        if configuration_id is not None:
            query = query.filter(Trade.configuration_id == configuration_id)
        if symbol is not None:
            query = query.filter(Trade.symbol == symbol)
        if strategy is not None:
            query = query.filter(Trade.strategy == strategy)
        return (
            query
            .order_by(Trade.opened_at.asc(), Trade.id.asc())
            .all()
        )

    def find_open_by_number(self, user_id: int, trade_number: int) -> Optional[Trade]:
        return (
            self.session.query(Trade)
            .filter(Trade.user_id == user_id, Trade.trade_number == trade_number, Trade.status == TradeStatus.OPEN)
            .one_or_none()
        )

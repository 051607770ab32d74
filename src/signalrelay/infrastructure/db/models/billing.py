# src/signalrelay/infrastructure/db/models/billing.py
"""
SQLAlchemy ORM models for subscription plans, payment attempts and the
time-bounded subscriptions that approved payments activate.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, ForeignKey, Text,
    Numeric, UniqueConstraint, CheckConstraint, Index, func, false, text
)
from sqlalchemy.orm import relationship

from signalrelay.domain.entities import (
    PaymentStatus, PaymentMethod, SubscriptionStatus, PlanStatus,
)
from signalrelay.domain.value_objects import PlanDuration, as_utc, utcnow
from .base import Base, enum_column_type


class SubscriptionPlan(Base):
    __tablename__ = 'subscription_plans'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), unique=True, nullable=False)
    description = Column(Text, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default='INR', server_default='INR')
    duration_months = Column(Integer, nullable=False, default=1, server_default='1')
    duration_days = Column(Integer, nullable=False, default=0, server_default='0')
    status = Column(enum_column_type(PlanStatus, "plan_status"), nullable=False, default=PlanStatus.ACTIVE)
    display_order = Column(Integer, nullable=False, default=0, server_default='0')
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def duration(self) -> PlanDuration:
        return PlanDuration(months=self.duration_months or 0, days=self.duration_days or 0)

    def __repr__(self):
        return f"<SubscriptionPlan(id={self.id}, name='{self.name}', amount={self.amount} {self.currency})>"


class Payment(Base):
    __tablename__ = 'payments'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey('subscription_plans.id'), nullable=False)
    transaction_id = Column(String(32), unique=True, nullable=False, index=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default='INR')
    method = Column(enum_column_type(PaymentMethod, "payment_method"), nullable=False, default=PaymentMethod.UPI)

    upi_vpa = Column(String(255), nullable=True)
    upi_merchant_name = Column(String(255), nullable=True)
    upi_merchant_code = Column(String(50), nullable=True)
    payment_string = Column(Text, nullable=True)
    qr_code_path = Column(String(512), nullable=True)
    qr_code_url = Column(String(512), nullable=True)

    proof_original_name = Column(String(255), nullable=True)
    proof_filename = Column(String(255), nullable=True)
    proof_path = Column(String(512), nullable=True)
    proof_url = Column(String(512), nullable=True)
    proof_size = Column(Integer, nullable=True)
    proof_mimetype = Column(String(64), nullable=True)
    proof_uploaded_at = Column(DateTime(timezone=True), nullable=True)

    status = Column(
        enum_column_type(PaymentStatus, "payment_status"),
        nullable=False, default=PaymentStatus.INITIATED, index=True,
    )
    verified_by = Column(Integer, nullable=True)
    verified_at = Column(DateTime(timezone=True), nullable=True)
    verification_notes = Column(Text, nullable=True)
    rejection_reason = Column(String(200), nullable=True)

    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)

    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey('subscriptions.id', use_alter=True, ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    plan = relationship("SubscriptionPlan", lazy="joined")

    __table_args__ = (
        Index('ix_payments_user_status', 'user_id', 'status'),
    )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= as_utc(self.expires_at)

    def can_be_verified(self, now: Optional[datetime] = None) -> bool:
        return self.status == PaymentStatus.PENDING and not self.is_expired(now)

    def __repr__(self):
        return f"<Payment(id={self.id}, txn='{self.transaction_id}', status={self.status})>"


class Subscription(Base):
    __tablename__ = 'subscriptions'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    plan_id = Column(Integer, ForeignKey('subscription_plans.id'), nullable=False, index=True)
    payment_id = Column(Integer, ForeignKey('payments.id', ondelete="SET NULL"), nullable=True)
    transaction_id = Column(String(32), nullable=False)

    start_date = Column(DateTime(timezone=True), nullable=False)
    end_date = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(
        enum_column_type(SubscriptionStatus, "subscription_status"),
        nullable=False, default=SubscriptionStatus.ACTIVE, index=True,
    )
    auto_renew = Column(Boolean, nullable=False, default=False, server_default=false())
    renewal_notification_sent = Column(Boolean, nullable=False, default=False, server_default=false())
    alerts_received = Column(Integer, nullable=False, default=0, server_default='0')
    last_activity_at = Column(DateTime(timezone=True), nullable=True)
    superseded_by_id = Column(Integer, ForeignKey('subscriptions.id', ondelete="SET NULL"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    plan = relationship("SubscriptionPlan", lazy="joined")

    __table_args__ = (
        UniqueConstraint('user_id', 'plan_id', 'transaction_id', name='uq_subscription_user_plan_txn'),
        CheckConstraint('end_date > start_date', name='ck_subscription_end_after_start'),
        Index('ix_subscriptions_user_status', 'user_id', 'status'),
        # at most one active row per (user, plan)
        Index(
            'uq_subscription_one_active', 'user_id', 'plan_id', unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return self.status == SubscriptionStatus.ACTIVE and (now or utcnow()) < as_utc(self.end_date)

    def days_remaining(self, now: Optional[datetime] = None) -> int:
        if not self.is_active(now):
            return 0
        delta = as_utc(self.end_date) - (now or utcnow())
        return max(0, delta.days)

    def __repr__(self):
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, plan_id={self.plan_id}, "
            f"status={self.status}, end={self.end_date})>"
        )

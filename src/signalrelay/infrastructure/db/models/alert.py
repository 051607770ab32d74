# src/signalrelay/infrastructure/db/models/alert.py
"""
SQLAlchemy ORM models for ingested alerts and the admin-defined alert
configurations users subscribe to.

An Alert row carries three ordered child collections: matched recipients,
trade-action intents and error records. Alerts are never deleted.
"""

from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, ForeignKey, Text,
    BigInteger, Numeric, UniqueConstraint, Index, func, true, false
)
from sqlalchemy.orm import relationship, validates

from signalrelay.domain.entities import (
    AlertStatus, SignalKind, ConfigurationStatus, TradeActionType,
)
from signalrelay.domain.errors import InvalidStateError
from .base import Base, JSONType, enum_column_type


class Alert(Base):
    __tablename__ = 'alerts'

    id = Column(Integer, primary_key=True)
    source = Column(String(32), nullable=False, default='tradingview', server_default='tradingview')

    # Verbatim request body and its parsed form. Write-once.
    raw_body = Column(Text, nullable=False)
    raw_payload = Column(JSONType, nullable=False)
    signature = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)

    symbol = Column(String(20), nullable=False, index=True)
    timeframe = Column(String(8), nullable=False)
    strategy = Column(String(100), nullable=False, index=True)
    signal = Column(enum_column_type(SignalKind, "signal_kind"), nullable=False)
    price = Column(Numeric(20, 8), nullable=False)
    take_profit_price = Column(Numeric(20, 8), nullable=True)
    stop_loss_price = Column(Numeric(20, 8), nullable=True)
    event_time = Column(DateTime(timezone=True), nullable=False)
    additional_data = Column(JSONType, nullable=True)

    status = Column(
        enum_column_type(AlertStatus, "alert_status"),
        nullable=False, default=AlertStatus.RECEIVED, index=True,
    )
    retry_count = Column(Integer, nullable=False, default=0, server_default='0')
    received_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    recipients = relationship(
        "AlertRecipient", back_populates="alert", order_by="AlertRecipient.id",
        lazy="selectin", cascade="all, delete-orphan",
    )
    trade_actions = relationship(
        "AlertTradeAction", back_populates="alert", order_by="AlertTradeAction.id",
        lazy="selectin", cascade="all, delete-orphan",
    )
    errors = relationship(
        "AlertErrorRecord", back_populates="alert", order_by="AlertErrorRecord.id",
        lazy="selectin", cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index('ix_alerts_symbol_strategy', 'symbol', 'strategy'),
    )

    @validates('raw_body', 'raw_payload')
    def _validate_raw_write_once(self, key, value):
        if getattr(self, key, None) is not None:
            raise InvalidStateError(f"Alert {key} is immutable once stored.")
        return value

    def __repr__(self):
        return f"<Alert(id={self.id}, {self.symbol} {self.signal}, status={self.status})>"


class AlertRecipient(Base):
    """One matched user for one alert, plus the delivery outcome."""
    __tablename__ = 'alert_recipients'

    id = Column(Integer, primary_key=True)
    alert_id = Column(Integer, ForeignKey('alerts.id', ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey('subscriptions.id', ondelete="SET NULL"), nullable=True)
    configuration_id = Column(Integer, ForeignKey('alert_configurations.id', ondelete="SET NULL"), nullable=True)
    chat_id = Column(BigInteger, nullable=False)

    claimed_at = Column(DateTime(timezone=True), nullable=True)
    delivered = Column(Boolean, nullable=False, default=False, server_default=false())
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    attempts = Column(Integer, nullable=False, default=0, server_default='0')
    message_id = Column(BigInteger, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    alert = relationship("Alert", back_populates="recipients")

    __table_args__ = (
        UniqueConstraint('alert_id', 'user_id', name='uq_alert_recipient_user'),
    )

    @validates('delivered')
    def _validate_delivered_monotonic(self, key, value):
        if self.delivered and not value:
            raise InvalidStateError("A delivered recipient cannot be marked undelivered.")
        return value


class AlertTradeAction(Base):
    __tablename__ = 'alert_trade_actions'

    id = Column(Integer, primary_key=True)
    alert_id = Column(Integer, ForeignKey('alerts.id', ondelete="CASCADE"), nullable=False, index=True)
    action = Column(enum_column_type(TradeActionType, "trade_action_type"), nullable=False)
    trade_id = Column(Integer, ForeignKey('trades.id', ondelete="SET NULL"), nullable=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete="CASCADE"), nullable=False)
    executed = Column(Boolean, nullable=False, default=False, server_default=false())
    executed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)

    alert = relationship("Alert", back_populates="trade_actions")


class AlertErrorRecord(Base):
    __tablename__ = 'alert_errors'

    id = Column(Integer, primary_key=True)
    alert_id = Column(Integer, ForeignKey('alerts.id', ondelete="CASCADE"), nullable=False, index=True)
    # 'parse_warning' | 'processing' | 'delivery' | 'trade'
    kind = Column(String(32), nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    alert = relationship("Alert", back_populates="errors")


class AlertConfiguration(Base):
    __tablename__ = 'alert_configurations'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)

    symbol = Column(String(20), nullable=False, index=True)
    # NULL means "any timeframe"
    timeframe = Column(String(8), nullable=True)
    strategy = Column(String(100), nullable=False, index=True)

    entry_enabled = Column(Boolean, nullable=False, default=True, server_default=true())
    entry_signals = Column(JSONType, nullable=False, default=lambda: ["BUY", "SELL"])
    exit_enabled = Column(Boolean, nullable=False, default=True, server_default=true())
    exit_signals = Column(JSONType, nullable=False, default=lambda: ["TP_HIT", "SL_HIT"])

    status = Column(
        enum_column_type(ConfigurationStatus, "configuration_status"),
        nullable=False, default=ConfigurationStatus.ACTIVE, index=True,
    )

    max_open_trades = Column(Integer, nullable=False, default=3, server_default='3')
    replace_on_same_signal = Column(Boolean, nullable=False, default=True, server_default=true())
    allow_opposite_signals = Column(Boolean, nullable=False, default=True, server_default=true())

    price_min = Column(Numeric(20, 8), nullable=True)
    price_max = Column(Numeric(20, 8), nullable=True)

    total_alerts = Column(Integer, nullable=False, default=0, server_default='0')
    successful_alerts = Column(Integer, nullable=False, default=0, server_default='0')
    failed_alerts = Column(Integer, nullable=False, default=0, server_default='0')
    last_alert_at = Column(DateTime(timezone=True), nullable=True)

    created_by = Column(Integer, ForeignKey('users.id', ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    plan_links = relationship("ConfigurationPlan", cascade="all, delete-orphan", lazy="selectin")

    @property
    def plan_ids(self):
        return [link.plan_id for link in self.plan_links]

    def allows_signal(self, kind: SignalKind) -> bool:
        if kind.is_entry:
            return bool(self.entry_enabled) and kind.wire_name in (self.entry_signals or [])
        return bool(self.exit_enabled) and kind.wire_name in (self.exit_signals or [])

    def passes_price_filter(self, price) -> bool:
        if self.price_min is not None and price < self.price_min:
            return False
        if self.price_max is not None and price > self.price_max:
            return False
        return True

    def __repr__(self):
        return f"<AlertConfiguration(id={self.id}, {self.symbol}/{self.timeframe or '*'}/{self.strategy})>"


class ConfigurationPlan(Base):
    """Which subscription plans unlock a configuration. No rows means any plan."""
    __tablename__ = 'alert_configuration_plans'

    configuration_id = Column(Integer, ForeignKey('alert_configurations.id', ondelete="CASCADE"), primary_key=True)
    plan_id = Column(Integer, ForeignKey('subscription_plans.id', ondelete="CASCADE"), primary_key=True)


class ConfigSubscription(Base):
    """A user's declared interest in an alert configuration."""
    __tablename__ = 'config_subscriptions'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    configuration_id = Column(
        Integer, ForeignKey('alert_configurations.id', ondelete="CASCADE"), nullable=False, index=True
    )
    is_active = Column(Boolean, nullable=False, default=True, server_default=true())
    subscribed_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint('user_id', 'configuration_id', name='uq_config_subscription_user'),
    )

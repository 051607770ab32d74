# src/signalrelay/infrastructure/db/models/trade.py
"""Paper trades opened and closed by incoming signals, tracked per subscriber."""

from sqlalchemy import (
    Column, Integer, String, DateTime, ForeignKey, Numeric, Index, func
)

from signalrelay.domain.entities import SignalKind, TradeStatus, ExitReason
from .base import Base, enum_column_type


class Trade(Base):
    __tablename__ = 'trades'

    id = Column(Integer, primary_key=True)
    trade_number = Column(Integer, nullable=False, unique=True, index=True)

    user_id = Column(Integer, ForeignKey('users.id', ondelete="CASCADE"), nullable=False, index=True)
    configuration_id = Column(Integer, ForeignKey('alert_configurations.id', ondelete="SET NULL"), nullable=True)
    subscription_id = Column(Integer, ForeignKey('subscriptions.id', ondelete="SET NULL"), nullable=True)

    symbol = Column(String(20), nullable=False)
    timeframe = Column(String(8), nullable=False)
    strategy = Column(String(100), nullable=False)
    signal = Column(enum_column_type(SignalKind, "trade_signal_kind"), nullable=False)

    entry_price = Column(Numeric(20, 8), nullable=False)
    take_profit_price = Column(Numeric(20, 8), nullable=True)
    stop_loss_price = Column(Numeric(20, 8), nullable=True)
    exit_price = Column(Numeric(20, 8), nullable=True)
    exit_reason = Column(enum_column_type(ExitReason, "exit_reason"), nullable=True)
    status = Column(enum_column_type(TradeStatus, "trade_status"), nullable=False, default=TradeStatus.OPEN, index=True)
    pnl_amount = Column(Numeric(20, 8), nullable=True)
    pnl_percentage = Column(Numeric(10, 2), nullable=True)

    entry_alert_id = Column(Integer, ForeignKey('alerts.id', ondelete="SET NULL"), nullable=True)
    exit_alert_id = Column(Integer, ForeignKey('alerts.id', ondelete="SET NULL"), nullable=True)
    replaced_by_id = Column(Integer, ForeignKey('trades.id', ondelete="SET NULL"), nullable=True)
    replacement_reason = Column(String(100), nullable=True)

    opened_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    replaced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_trades_user_symbol_status', 'user_id', 'symbol', 'strategy', 'status'),
    )

    def __repr__(self):
        return f"<Trade(#{self.trade_number}, {self.symbol} {self.signal}, status={self.status})>"

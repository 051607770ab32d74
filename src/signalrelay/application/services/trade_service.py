# src/signalrelay/application/services/trade_service.py
"""
TradeService - paper-trade bookkeeping driven by incoming signals.

Entry signals (BUY/SELL) open a trade per matched subscriber, honouring the
configuration's open-trade limit; exit signals (TP/SL hit) close the
subscriber's open trades for that configuration, or only the trade named by
`tradeNumber`. Nothing here places real orders.

Every action lands in the alert's trade-action list. A failure for one user
is recorded against the alert and does not affect the others.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from signalrelay.domain.entities import (
    ExitReason, MatchedUser, SignalKind, TradeActionType, TradeContext, TradeStatus,
)
from signalrelay.domain.errors import NotFoundError
from signalrelay.domain.value_objects import utcnow
from signalrelay.infrastructure.db.models import Alert, AlertConfiguration, Trade
from signalrelay.infrastructure.db.repository import (
    AlertConfigurationRepository, AlertRepository, TradeRepository,
)
from signalrelay.infrastructure.db.uow import SessionScope, session_scope as default_session_scope

log = logging.getLogger(__name__)

_TWO_PLACES = Decimal("0.01")


def calculate_pnl(signal: SignalKind, entry: Decimal, exit_price: Decimal) -> Dict[str, Decimal]:
    """Amount per unit and percentage, long for BUY and short for SELL."""
    if not entry or not exit_price:
        return {"amount": Decimal("0"), "percentage": Decimal("0")}
    if signal == SignalKind.SELL:
        amount = entry - exit_price
    else:
        amount = exit_price - entry
    percentage = (amount / entry) * 100
    return {"amount": amount, "percentage": percentage.quantize(_TWO_PLACES)}


def _trade_number_hint(alert: Alert) -> Optional[int]:
    raw = (alert.additional_data or {}).get("tradeNumber")
    if raw is None:
        return None
    try:
        return int(str(raw).strip().lstrip("#"))
    except ValueError:
        return None


class TradeService:
    def __init__(self, session_scope: SessionScope = default_session_scope, clock: Callable[[], datetime] = utcnow):
        self.session_scope = session_scope
        self.clock = clock

    def apply_signal(self, alert_id: int, matched: Iterable[MatchedUser]) -> Dict[int, TradeContext]:
        """Runs trade bookkeeping for each matched user; returns the per-user context for message rendering."""
        contexts: Dict[int, TradeContext] = {}
        for m in matched:
            try:
                with self.session_scope() as session:
                    contexts[m.user_id] = self._apply_for_user(session, alert_id, m)
            except NotFoundError:
                raise
            except Exception as e:
                log.error(f"Alert #{alert_id}: trade bookkeeping failed for user {m.user_id}: {e}", exc_info=True)
                self._record_failure(alert_id, m, str(e))
                contexts[m.user_id] = TradeContext()
        return contexts

    def _apply_for_user(self, session: Session, alert_id: int, m: MatchedUser) -> TradeContext:
        alert = AlertRepository(session).get(alert_id)
        if alert is None:
            raise NotFoundError(f"Alert #{alert_id} not found.")
        config = AlertConfigurationRepository(session).get(m.configuration_id)
        if config is None:
            raise NotFoundError(f"Alert configuration #{m.configuration_id} not found.")
        if alert.signal.is_entry:
            return self._open(session, alert, config, m)
        return self._close(session, alert, config, m)

    def _open(self, session: Session, alert: Alert, config: AlertConfiguration, m: MatchedUser) -> TradeContext:
        now = self.clock()
        trades = TradeRepository(session)
        alerts = AlertRepository(session)

        open_trades = trades.list_open(m.user_id, configuration_id=config.id)
        to_replace: Optional[Trade] = None
        reason = None
        if len(open_trades) >= config.max_open_trades:
            same_signal = next((t for t in open_trades if t.signal == alert.signal), None)
            if config.replace_on_same_signal and same_signal is not None:
                to_replace, reason = same_signal, "Same signal replacement"
            elif config.replace_on_same_signal and config.allow_opposite_signals:
                to_replace, reason = open_trades[0], "Trade limit reached"
            else:
                log.info(
                    f"Alert #{alert.id}: trade limit reached for user {m.user_id} "
                    f"({len(open_trades)}/{config.max_open_trades}), no trade opened"
                )
                return TradeContext()

        trade = trades.add(
            user_id=m.user_id,
            configuration_id=config.id,
            subscription_id=m.subscription_id,
            symbol=alert.symbol,
            timeframe=alert.timeframe,
            strategy=alert.strategy,
            signal=alert.signal,
            entry_price=alert.price,
            take_profit_price=alert.take_profit_price,
            stop_loss_price=alert.stop_loss_price,
            entry_alert_id=alert.id,
            opened_at=now,
        )
        action = TradeActionType.OPEN_TRADE
        if to_replace is not None:
            to_replace.status = TradeStatus.REPLACED
            to_replace.exit_reason = ExitReason.REPLACED
            to_replace.replaced_at = now
            to_replace.replaced_by_id = trade.id
            to_replace.replacement_reason = reason
            action = TradeActionType.REPLACE_TRADE
            log.info(f"Trade #{to_replace.trade_number} replaced by #{trade.trade_number} ({reason})")

        alerts.add_trade_action(alert.id, action, m.user_id, trade.id, now)
        log.info(f"Trade #{trade.trade_number} opened for user {m.user_id}: {alert.symbol} {alert.signal.wire_name} @ {alert.price}")
        return TradeContext(action=action, trade_number=trade.trade_number)

    def _close(self, session: Session, alert: Alert, config: AlertConfiguration, m: MatchedUser) -> TradeContext:
        now = self.clock()
        trades = TradeRepository(session)
        alerts = AlertRepository(session)

        number = _trade_number_hint(alert)
        if number is not None:
            found = trades.find_open_by_number(m.user_id, number)
            to_close: List[Trade] = [found] if found else []
        else:
            to_close = trades.list_open(
                m.user_id, configuration_id=config.id, symbol=alert.symbol, strategy=alert.strategy
            )

        exit_reason = ExitReason.TP_HIT if alert.signal == SignalKind.TAKE_PROFIT_HIT else ExitReason.SL_HIT
        for trade in to_close:
            pnl = calculate_pnl(trade.signal, trade.entry_price, alert.price)
            trade.exit_price = alert.price
            trade.exit_reason = exit_reason
            trade.status = TradeStatus.CLOSED
            trade.closed_at = now
            trade.exit_alert_id = alert.id
            trade.pnl_amount = pnl["amount"]
            trade.pnl_percentage = pnl["percentage"]
            alerts.add_trade_action(alert.id, TradeActionType.CLOSE_TRADE, m.user_id, trade.id, now)
            log.info(
                f"Trade #{trade.trade_number} closed for user {m.user_id} ({exit_reason.value}), "
                f"P&L {pnl['percentage']}%"
            )

        if not to_close:
            return TradeContext()
        return TradeContext(
            action=TradeActionType.CLOSE_TRADE,
            trade_number=to_close[0].trade_number if len(to_close) == 1 else None,
            closed_trades=len(to_close),
        )

    def _record_failure(self, alert_id: int, m: MatchedUser, error: str) -> None:
        with self.session_scope() as session:
            alert = AlertRepository(session).get(alert_id)
            action = (
                TradeActionType.OPEN_TRADE if alert is not None and alert.signal.is_entry
                else TradeActionType.CLOSE_TRADE
            )
            repo = AlertRepository(session)
            now = self.clock()
            repo.add_trade_action(alert_id, action, m.user_id, None, now, error=error)
            repo.add_error(alert_id, "trade", f"user {m.user_id}: {error}", now)

    def contexts_from_actions(self, alert_id: int) -> Dict[int, TradeContext]:
        """Rebuilds per-user contexts from recorded actions (used when delivery runs separately, e.g. on retry)."""
        contexts: Dict[int, TradeContext] = {}
        with self.session_scope() as session:
            alert = AlertRepository(session).get(alert_id)
            if alert is None:
                raise NotFoundError(f"Alert #{alert_id} not found.")
            trade_numbers = {}
            trade_ids = [a.trade_id for a in alert.trade_actions if a.trade_id and a.executed]
            if trade_ids:
                rows = session.query(Trade.id, Trade.trade_number).filter(Trade.id.in_(trade_ids)).all()
                trade_numbers = {tid: num for tid, num in rows}
            for action in alert.trade_actions:
                if not action.executed:
                    continue
                ctx = contexts.setdefault(action.user_id, TradeContext())
                ctx.action = action.action
                if action.action == TradeActionType.CLOSE_TRADE:
                    ctx.closed_trades += 1
                    ctx.trade_number = trade_numbers.get(action.trade_id) if ctx.closed_trades == 1 else None
                else:
                    ctx.trade_number = trade_numbers.get(action.trade_id)
        return contexts

import json
from decimal import Decimal

import pytest

from signalrelay.domain.entities import ExitReason, TradeActionType, TradeStatus
from signalrelay.infrastructure.db.models import Trade
from signalrelay.infrastructure.db.uow import session_scope


@pytest.fixture
def signal(intake, matching, trades, alert_payload):
    """Ingests an alert, matches it and runs trade bookkeeping; returns (alert_id, contexts)."""
    def _signal(**overrides):
        alert_id = intake.ingest(json.dumps(alert_payload(**overrides)).encode("utf-8")).id
        return alert_id, trades.apply_signal(alert_id, matching.match(alert_id))
    return _signal


@pytest.fixture
def subscriber(make_plan, make_configuration, make_subscriber):
    def _make(**config_fields):
        plan = make_plan()
        config = make_configuration(**config_fields)
        return make_subscriber(111, plan, configuration_ids=[config])
    return _make


def _trades(user_id):
    with session_scope() as session:
        return session.query(Trade).filter(Trade.user_id == user_id).order_by(Trade.id).all()


def test_entry_signal_opens_a_trade(signal, subscriber):
    user = subscriber()
    alert_id, contexts = signal(takeProfitPrice=52000, stopLossPrice=49000)

    (trade,) = _trades(user)
    assert trade.trade_number == 1
    assert trade.status == TradeStatus.OPEN
    assert trade.entry_price == Decimal("50000")
    assert trade.take_profit_price == Decimal("52000")
    assert trade.entry_alert_id == alert_id
    assert contexts[user].action == TradeActionType.OPEN_TRADE
    assert contexts[user].trade_number == 1


def test_trade_limit_without_replacement(signal, subscriber):
    user = subscriber(max_open_trades=1, replace_on_same_signal=False)
    signal()
    _, contexts = signal()

    assert len(_trades(user)) == 1
    assert contexts[user].action is None


def test_same_signal_replaces_the_open_trade(signal, subscriber):
    user = subscriber(max_open_trades=1)
    signal()
    _, contexts = signal(price=51000)

    old, new = _trades(user)
    assert old.status == TradeStatus.REPLACED
    assert old.exit_reason == ExitReason.REPLACED
    assert old.replaced_by_id == new.id
    assert old.replacement_reason == "Same signal replacement"
    assert new.status == TradeStatus.OPEN and new.trade_number == 2
    assert contexts[user].action == TradeActionType.REPLACE_TRADE


def test_exit_signal_closes_open_trades_with_pnl(signal, subscriber):
    user = subscriber()
    signal()
    signal(signal="SELL", price=50500)
    alert_id, contexts = signal(signal="TP_HIT", price=52000)

    long_trade, short_trade = _trades(user)
    assert long_trade.status == TradeStatus.CLOSED and short_trade.status == TradeStatus.CLOSED
    assert long_trade.exit_reason == ExitReason.TP_HIT
    assert long_trade.exit_alert_id == alert_id
    assert long_trade.pnl_amount == Decimal("2000")
    assert long_trade.pnl_percentage == Decimal("4.00")
    assert short_trade.pnl_amount == Decimal("-1500")
    assert contexts[user].action == TradeActionType.CLOSE_TRADE
    assert contexts[user].closed_trades == 2
    assert contexts[user].trade_number is None


def test_trade_number_targets_one_trade(signal, subscriber):
    user = subscriber()
    signal()
    signal(price=50100)
    _, contexts = signal(signal="SL_HIT", price=49000, tradeNumber="#2")

    first, second = _trades(user)
    assert first.status == TradeStatus.OPEN
    assert second.status == TradeStatus.CLOSED
    assert second.exit_reason == ExitReason.SL_HIT
    assert contexts[user].trade_number == 2 and contexts[user].closed_trades == 1


def test_exit_without_open_trades_is_a_no_op(signal, subscriber):
    user = subscriber()
    alert_id, contexts = signal(signal="SL_HIT")
    assert contexts[user].action is None
    assert _trades(user) == []


def test_contexts_are_rebuilt_from_recorded_actions(signal, subscriber, trades):
    user = subscriber()
    signal()
    alert_id, contexts = signal(signal="TP_HIT", price=51000)

    rebuilt = trades.contexts_from_actions(alert_id)
    assert rebuilt[user] == contexts[user]

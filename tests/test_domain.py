import re
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from signalrelay.domain.entities import (
    ALERT_TRANSITIONS, PAYMENT_TRANSITIONS, AlertStatus, PaymentStatus, SignalKind,
    can_transition, sources_for,
)
from signalrelay.domain.value_objects import (
    Money, PlanDuration, Price, Symbol, Timeframe, add_months, as_utc,
)
from signalrelay.application.services.trade_service import calculate_pnl
from signalrelay.infrastructure.payments.upi import (
    UpiPayee, decode_payment_string, generate_payment_string, generate_transaction_id,
)

# --- Value objects ---

def test_symbol_is_normalized_and_validated():
    assert Symbol(" btcusdt ").value == "BTCUSDT"
    assert Symbol("NSE:NIFTY".replace(":", "_")).value == "NSE_NIFTY"
    with pytest.raises(ValueError):
        Symbol("BTC/USDT")
    with pytest.raises(ValueError):
        Symbol("A" * 21)


def test_timeframe_is_case_sensitive():
    assert Timeframe("1M").value == "1M"
    assert Timeframe("1m").value == "1m"
    with pytest.raises(ValueError):
        Timeframe("2d")


def test_price_must_be_positive():
    assert Price.of("50000.5").value == Decimal("50000.5")
    for bad in (0, -1, "abc", "NaN", True):
        with pytest.raises(ValueError):
            Price.of(bad)


def test_money_quantizes_to_two_places():
    assert Money(Decimal("999")).format_amount() == "999.00"
    assert Money(Decimal("10.005")).format_amount() == "10.01"
    with pytest.raises(ValueError):
        Money(Decimal("-1"))


def test_add_months_clamps_to_month_end():
    jan31 = datetime(2026, 1, 31, 12, 0, tzinfo=timezone.utc)
    assert add_months(jan31, 1) == datetime(2026, 2, 28, 12, 0, tzinfo=timezone.utc)
    assert add_months(jan31, 13) == datetime(2027, 2, 28, 12, 0, tzinfo=timezone.utc)
    assert add_months(datetime(2027, 11, 30, tzinfo=timezone.utc), 3) == datetime(2028, 2, 29, tzinfo=timezone.utc)


def test_plan_duration_applies_months_then_days():
    start = datetime(2026, 1, 15, tzinfo=timezone.utc)
    assert PlanDuration(months=1, days=5).apply(start) == datetime(2026, 2, 20, tzinfo=timezone.utc)
    assert PlanDuration(months=0, days=7).apply(start) == datetime(2026, 1, 22, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        PlanDuration(months=0, days=0)


def test_as_utc_treats_naive_values_as_utc():
    naive = datetime(2026, 1, 1, 10, 0)
    assert as_utc(naive).tzinfo == timezone.utc
    assert as_utc(None) is None

# --- Enums & transitions ---

@pytest.mark.parametrize("raw,expected", [
    ("BUY", SignalKind.BUY),
    ("sell", SignalKind.SELL),
    ("TP_HIT", SignalKind.TAKE_PROFIT_HIT),
    ("sl_hit", SignalKind.STOP_LOSS_HIT),
    ("TAKE_PROFIT_HIT", SignalKind.TAKE_PROFIT_HIT),
])
def test_signal_kind_accepts_wire_spellings(raw, expected):
    assert SignalKind.parse(raw) is expected


def test_signal_kind_rejects_unknown_values():
    with pytest.raises(ValueError):
        SignalKind.parse("HOLD")
    with pytest.raises(ValueError):
        SignalKind.parse("")


def test_signal_wire_names_and_kinds():
    assert SignalKind.TAKE_PROFIT_HIT.wire_name == "TP_HIT"
    assert SignalKind.BUY.wire_name == "BUY"
    assert SignalKind.SELL.is_entry and not SignalKind.SELL.is_exit
    assert SignalKind.STOP_LOSS_HIT.is_exit


def test_alert_status_never_leaves_processed():
    assert not ALERT_TRANSITIONS[AlertStatus.PROCESSED]
    assert can_transition(ALERT_TRANSITIONS, AlertStatus.RECEIVED, AlertStatus.PROCESSING)
    assert not can_transition(ALERT_TRANSITIONS, AlertStatus.PROCESSED, AlertStatus.FAILED)
    assert sources_for(ALERT_TRANSITIONS, AlertStatus.FAILED) == {AlertStatus.RECEIVED, AlertStatus.PROCESSING}


def test_payment_terminal_states_have_no_exits():
    for status in PaymentStatus:
        if status.is_terminal:
            assert not PAYMENT_TRANSITIONS[status]
    assert sources_for(PAYMENT_TRANSITIONS, PaymentStatus.APPROVED) == {PaymentStatus.PENDING}
    assert sources_for(PAYMENT_TRANSITIONS, PaymentStatus.EXPIRED) == {PaymentStatus.INITIATED, PaymentStatus.PENDING}

# --- P&L ---

def test_pnl_for_long_and_short_trades():
    long_pnl = calculate_pnl(SignalKind.BUY, Decimal("100"), Decimal("110"))
    assert long_pnl == {"amount": Decimal("10"), "percentage": Decimal("10.00")}

    short_pnl = calculate_pnl(SignalKind.SELL, Decimal("200"), Decimal("210"))
    assert short_pnl["amount"] == Decimal("-10")
    assert short_pnl["percentage"] == Decimal("-5.00")

# --- UPI payment strings ---

PAYEE = UpiPayee(vpa="alerts@paytm", merchant_name="TradingView Alert Bot", merchant_code="TVAB001")


def test_transaction_id_format():
    txn = generate_transaction_id(now_ms=1760000000000)
    assert re.fullmatch(r"TXN1760000000000[0-9A-F]{8}", txn)
    assert generate_transaction_id() != generate_transaction_id()


def test_payment_string_layout_and_encoding():
    s = generate_payment_string(PAYEE, Decimal("999"), "TXN1ABC", "Gold plan & more")
    assert s == (
        "upi://pay?pa=alerts%40paytm&pn=TradingView%20Alert%20Bot&mc=TVAB001"
        "&tr=TXN1ABC&tn=Gold%20plan%20%26%20more&am=999.00&cu=INR"
    )


def test_payment_string_default_note_and_round_trip():
    s = generate_payment_string(PAYEE, "1499.5", "TXN42")
    decoded = decode_payment_string(s)
    assert decoded.vpa == "alerts@paytm"
    assert decoded.merchant_name == "TradingView Alert Bot"
    assert decoded.transaction_id == "TXN42"
    assert decoded.note == "Payment for subscription - TXN42"
    assert decoded.amount == Decimal("1499.50")
    assert decoded.currency == "INR"


@pytest.mark.parametrize("bad", [
    "http://pay?pa=x",
    "upi://pay?pa=x&pn=y",
    "upi://pay?pa",
    None,
])
def test_decode_payment_string_rejects_malformed_input(bad):
    with pytest.raises(ValueError):
        decode_payment_string(bad)

# --- Message formatting ---

def _alert_row(**overrides):
    from types import SimpleNamespace
    data = dict(
        symbol="BTCUSDT", timeframe="1h", strategy="EMA <Cross>", signal=SignalKind.BUY,
        price=Decimal("50000.00000000"), take_profit_price=Decimal("52000"), stop_loss_price=None,
        event_time=datetime(2026, 1, 15, 9, 29, tzinfo=timezone.utc),
    )
    data.update(overrides)
    return SimpleNamespace(**data)


def test_alert_message_escapes_and_formats_prices():
    from signalrelay.interfaces.telegram.formatters import build_alert_message

    text = build_alert_message(_alert_row(), configuration_name="BTC Swing")
    assert "<b>Symbol:</b> BTCUSDT" in text
    assert "EMA &lt;Cross&gt;" in text
    assert "<b>Price:</b> 50000.00" in text
    assert "<b>Take Profit:</b> 52000.00" in text
    assert "Stop Loss" not in text
    assert "<b>Config:</b> BTC Swing" in text
    assert "2026-01-15 09:29 UTC" in text


def test_alert_message_shows_trade_context():
    from signalrelay.domain.entities import TradeActionType, TradeContext
    from signalrelay.interfaces.telegram.formatters import build_alert_message

    replaced = build_alert_message(
        _alert_row(), trade=TradeContext(action=TradeActionType.REPLACE_TRADE, trade_number=7)
    )
    assert "<b>Trade #:</b> 7" in replaced
    assert "Trade Replaced" in replaced

    closed = build_alert_message(
        _alert_row(signal=SignalKind.TAKE_PROFIT_HIT),
        trade=TradeContext(action=TradeActionType.CLOSE_TRADE, closed_trades=2),
    )
    assert "<b>Signal:</b> TP_HIT" in closed
    assert "2 Trade(s) Closed" in closed
    assert "Trade #" not in closed

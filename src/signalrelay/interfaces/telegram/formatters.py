# src/signalrelay/interfaces/telegram/formatters.py
"""HTML message bodies sent to subscribers' Telegram chats."""

import html
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from signalrelay.domain.entities import SignalKind, TradeActionType, TradeContext
from signalrelay.domain.value_objects import as_utc

_SIGNAL_ICONS = {
    SignalKind.BUY: "🟢",
    SignalKind.SELL: "🔴",
    SignalKind.TAKE_PROFIT_HIT: "🎯",
    SignalKind.STOP_LOSS_HIT: "🛑",
}


def _format_price(price: Any) -> str:
    if price is None:
        return "N/A"
    try:
        d = Decimal(str(price))
    except (InvalidOperation, TypeError, ValueError):
        return "N/A"
    if not d.is_finite():
        return "N/A"
    # strip trailing zeros without switching to exponent notation
    text = f"{d.normalize():f}"
    if "." not in text:
        text += ".00"
    elif len(text.split(".")[1]) == 1:
        text += "0"
    return text


def _format_time(value: Optional[datetime]) -> str:
    value = as_utc(value)
    return value.strftime("%Y-%m-%d %H:%M UTC") if value else "N/A"


def build_alert_message(alert, configuration_name: Optional[str] = None, trade: Optional[TradeContext] = None) -> str:
    """Renders one alert for one recipient. `alert` is an Alert row (or anything with the same attributes)."""
    signal = alert.signal if isinstance(alert.signal, SignalKind) else SignalKind.parse(alert.signal)
    esc = html.escape

    lines = [
        "🚨 <b>Trading Alert</b>",
        "",
        f"📊 <b>Symbol:</b> {esc(alert.symbol)}",
        f"⏰ <b>Timeframe:</b> {esc(alert.timeframe)}",
        f"🧭 <b>Strategy:</b> {esc(alert.strategy)}",
        f"{_SIGNAL_ICONS[signal]} <b>Signal:</b> {signal.wire_name}",
        f"💰 <b>Price:</b> {_format_price(alert.price)}",
    ]
    if alert.take_profit_price is not None:
        lines.append(f"🎯 <b>Take Profit:</b> {_format_price(alert.take_profit_price)}")
    if alert.stop_loss_price is not None:
        lines.append(f"🛑 <b>Stop Loss:</b> {_format_price(alert.stop_loss_price)}")

    if trade is not None:
        if trade.trade_number is not None:
            lines += ["", f"🔢 <b>Trade #:</b> {trade.trade_number}"]
        if trade.action == TradeActionType.REPLACE_TRADE:
            lines += ["", "🔄 <b>Action:</b> Trade Replaced"]
        elif trade.action == TradeActionType.CLOSE_TRADE and trade.closed_trades:
            lines += ["", f"✅ <b>Action:</b> {trade.closed_trades} Trade(s) Closed"]

    lines.append("")
    if configuration_name:
        lines.append(f"📋 <b>Config:</b> {esc(configuration_name)}")
    lines.append(f"⏱️ <b>Time:</b> {_format_time(alert.event_time)}")
    return "\n".join(lines)


def build_payment_proof_notice(payment) -> str:
    """Operator notice sent when a payer uploads proof and the payment awaits review."""
    return (
        "💳 <b>Payment awaiting verification</b>\n"
        f"Txn: <code>{html.escape(payment.transaction_id)}</code>\n"
        f"User: {payment.user_id} | Plan: {payment.plan_id}\n"
        f"Amount: {payment.amount} {html.escape(payment.currency or '')}"
    )

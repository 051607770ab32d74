# src/signalrelay/infrastructure/payments/upi.py
"""
UPI deep-link ("upi://pay?...") construction and parsing, plus transaction ids.

Values are percent-encoded the way browsers' encodeURIComponent does it, so
strings produced here are byte-identical to the ones payer apps already scan.
"""

import secrets
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional
from urllib.parse import quote, unquote

from signalrelay.domain.value_objects import Money, to_decimal

UPI_SCHEME_PREFIX = "upi://pay?"
# encodeURIComponent leaves these unescaped in addition to alphanumerics and "-_.~"
_URI_COMPONENT_SAFE = "!*'()"
_PARAM_ORDER = ("pa", "pn", "mc", "tr", "tn", "am", "cu")


def generate_transaction_id(now_ms: Optional[int] = None) -> str:
    """TXN + 13-digit epoch milliseconds + 8 upper-case hex chars."""
    timestamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"TXN{timestamp}{secrets.token_hex(4).upper()}"


def default_note(transaction_id: str) -> str:
    return f"Payment for subscription - {transaction_id}"


@dataclass(frozen=True)
class UpiPayee:
    vpa: str
    merchant_name: str
    merchant_code: str
    currency: str = "INR"


@dataclass(frozen=True)
class UpiPaymentRequest:
    vpa: str
    merchant_name: str
    merchant_code: str
    transaction_id: str
    note: str
    amount: Decimal
    currency: str


def generate_payment_string(payee: UpiPayee, amount, transaction_id: str, note: str = "") -> str:
    money = Money(to_decimal(amount), payee.currency)
    params = {
        "pa": payee.vpa,
        "pn": payee.merchant_name,
        "mc": payee.merchant_code,
        "tr": transaction_id,
        "tn": note or default_note(transaction_id),
        "am": money.format_amount(),
        "cu": money.currency,
    }
    query = "&".join(f"{key}={quote(str(params[key]), safe=_URI_COMPONENT_SAFE)}" for key in _PARAM_ORDER)
    return UPI_SCHEME_PREFIX + query


def _parse_query(query: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for part in query.split("&"):
        if not part:
            continue
        key, sep, value = part.partition("=")
        if not sep:
            raise ValueError(f"Malformed UPI parameter: '{part}'")
        out[unquote(key)] = unquote(value)
    return out


def decode_payment_string(payment_string: str) -> UpiPaymentRequest:
    """Inverse of generate_payment_string. Raises ValueError on anything else."""
    if not isinstance(payment_string, str) or not payment_string.startswith(UPI_SCHEME_PREFIX):
        raise ValueError("Not a UPI payment string.")
    params = _parse_query(payment_string[len(UPI_SCHEME_PREFIX):])
    missing = [k for k in _PARAM_ORDER if k not in params]
    if missing:
        raise ValueError(f"UPI payment string is missing: {', '.join(missing)}")
    return UpiPaymentRequest(
        vpa=params["pa"],
        merchant_name=params["pn"],
        merchant_code=params["mc"],
        transaction_id=params["tr"],
        note=params["tn"],
        amount=to_decimal(params["am"]),
        currency=params["cu"],
    )

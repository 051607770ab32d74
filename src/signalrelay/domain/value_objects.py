# src/signalrelay/domain/value_objects.py
"""
Value objects for the domain. Immutable, no identity.

- Symbol: upper-cased ticker as sent by the signal source ("btcusdt" -> "BTCUSDT").
  Matching against alert configurations is exact, so no exchange-specific
  rewriting happens here.
- Timeframe: one of the chart intervals TradingView can emit.
- Price / Money: Decimal based.
- PlanDuration: months + days, applied with end-of-month clamping.
"""
from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

_SYMBOL_RE = re.compile(r"^[A-Z0-9._-]{1,20}$")

TIMEFRAMES = (
    "1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d", "1w", "1M",
)

_TWO_PLACES = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_decimal(value: Any) -> Decimal:
    """Strict conversion; raises ValueError for anything that is not a finite number."""
    if isinstance(value, bool):
        raise ValueError(f"Invalid numeric value: {value!r}")
    if isinstance(value, Decimal):
        d = value
    else:
        try:
            d = Decimal(str(value).strip())
        except (InvalidOperation, TypeError, ValueError):
            raise ValueError(f"Invalid numeric value: {value!r}")
    if not d.is_finite():
        raise ValueError(f"Invalid numeric value: {value!r}")
    return d


class Symbol:
    """Represents a trading symbol. Immutable and always uppercase."""

    def __init__(self, value: str) -> None:
        if not isinstance(value, str) or not value.strip():
            raise ValueError("Symbol value must be a non-empty string.")
        normalized = value.strip().upper()
        if not _SYMBOL_RE.match(normalized):
            raise ValueError(f"Invalid symbol format: '{value}'")
        self.value = normalized

    def __repr__(self) -> str:
        return f"Symbol('{self.value}')"

    def __eq__(self, other) -> bool:
        return isinstance(other, Symbol) and self.value == other.value

    def __hash__(self) -> int:
        return hash(self.value)


class Timeframe:
    """Chart interval. Case matters: 1m is a minute, 1M is a month."""

    def __init__(self, value: str) -> None:
        if not isinstance(value, str) or value.strip() not in TIMEFRAMES:
            raise ValueError(f"Invalid timeframe '{value}'. Must be one of: {', '.join(TIMEFRAMES)}")
        self.value = value.strip()

    def __repr__(self) -> str:
        return f"Timeframe('{self.value}')"

    def __eq__(self, other) -> bool:
        return isinstance(other, Timeframe) and self.value == other.value

    def __hash__(self) -> int:
        return hash(self.value)


@dataclass(frozen=True)
class Price:
    """A strictly positive price."""
    value: Decimal

    def __post_init__(self) -> None:
        if not isinstance(self.value, Decimal):
            raise TypeError("Price value must be a Decimal.")
        if self.value <= Decimal(0):
            raise ValueError("Price must be a positive number.")

    @classmethod
    def of(cls, raw: Any) -> "Price":
        return cls(to_decimal(raw))


@dataclass(frozen=True)
class Money:
    """Amount quantized to two decimal places, plus an ISO currency code."""
    amount: Decimal
    currency: str = "INR"

    def __post_init__(self) -> None:
        if not isinstance(self.amount, Decimal):
            raise TypeError("Money amount must be a Decimal.")
        if self.amount < Decimal(0):
            raise ValueError("Amount cannot be negative.")
        object.__setattr__(self, "amount", self.amount.quantize(_TWO_PLACES, rounding=ROUND_HALF_UP))
        object.__setattr__(self, "currency", (self.currency or "INR").upper())

    def format_amount(self) -> str:
        return f"{self.amount:.2f}"


def add_months(start: datetime, months: int) -> datetime:
    """Calendar month arithmetic; Jan 31 + 1 month lands on the last day of February."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


@dataclass(frozen=True)
class PlanDuration:
    months: int
    days: int = 0

    def __post_init__(self) -> None:
        if self.months < 0 or self.days < 0:
            raise ValueError("Plan duration cannot be negative.")
        if self.months == 0 and self.days == 0:
            raise ValueError("Plan duration must be positive.")

    def apply(self, start: datetime) -> datetime:
        """End date for a subscription starting at `start` (months first, then days)."""
        end = add_months(start, self.months) if self.months else start
        return end + timedelta(days=self.days)

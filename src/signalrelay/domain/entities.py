# src/signalrelay/domain/entities.py
"""
Core business enums, state-transition tables and plain value carriers.

Persistence lives in infrastructure/db; this module only knows which
transitions are legal. Repositories turn these tables into conditional
writes ("update ... where status in <allowed sources>").
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Any

# --- ENUMERATIONS ---

class AlertStatus(Enum):
    """Processing lifecycle of an ingested alert."""
    RECEIVED = "received"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class SignalKind(Enum):
    """Trade action implied by an alert."""
    BUY = "BUY"
    SELL = "SELL"
    TAKE_PROFIT_HIT = "TAKE_PROFIT_HIT"
    STOP_LOSS_HIT = "STOP_LOSS_HIT"

    @classmethod
    def parse(cls, raw: Any) -> "SignalKind":
        """Accepts the wire spellings (BUY, sell, TP_HIT, sl_hit, ...)."""
        if isinstance(raw, SignalKind):
            return raw
        if not isinstance(raw, str) or not raw.strip():
            raise ValueError("Signal must be a non-empty string.")
        key = raw.strip().upper()
        kind = _SIGNAL_ALIASES.get(key)
        if kind is None:
            raise ValueError(f"Invalid signal '{raw}'. Must be one of: BUY, SELL, TP_HIT, SL_HIT")
        return kind

    @property
    def is_entry(self) -> bool:
        return self in (SignalKind.BUY, SignalKind.SELL)

    @property
    def is_exit(self) -> bool:
        return self in (SignalKind.TAKE_PROFIT_HIT, SignalKind.STOP_LOSS_HIT)

    @property
    def wire_name(self) -> str:
        return {
            SignalKind.TAKE_PROFIT_HIT: "TP_HIT",
            SignalKind.STOP_LOSS_HIT: "SL_HIT",
        }.get(self, self.value)


_SIGNAL_ALIASES: Dict[str, SignalKind] = {
    "BUY": SignalKind.BUY,
    "SELL": SignalKind.SELL,
    "TP_HIT": SignalKind.TAKE_PROFIT_HIT,
    "TAKE_PROFIT_HIT": SignalKind.TAKE_PROFIT_HIT,
    "SL_HIT": SignalKind.STOP_LOSS_HIT,
    "STOP_LOSS_HIT": SignalKind.STOP_LOSS_HIT,
}


class PaymentStatus(Enum):
    INITIATED = "initiated"
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.APPROVED, PaymentStatus.REJECTED, PaymentStatus.EXPIRED)


class PaymentMethod(Enum):
    UPI = "UPI"
    BANK_TRANSFER = "bank_transfer"
    NET_BANKING = "net_banking"
    CARD = "card"
    OTHER = "other"


class SubscriptionStatus(Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class PlanStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class ConfigurationStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    TESTING = "testing"


class TradeActionType(Enum):
    OPEN_TRADE = "open_trade"
    CLOSE_TRADE = "close_trade"
    REPLACE_TRADE = "replace_trade"


class TradeStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"
    REPLACED = "replaced"


class ExitReason(Enum):
    TP_HIT = "TP_HIT"
    SL_HIT = "SL_HIT"
    REPLACED = "REPLACED"
    MANUAL = "MANUAL"


# --- TRANSITION TABLES ---

ALERT_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.RECEIVED: frozenset({AlertStatus.PROCESSING, AlertStatus.FAILED}),
    AlertStatus.PROCESSING: frozenset({AlertStatus.PROCESSED, AlertStatus.FAILED}),
    # failed may only re-enter processing through an explicit retry
    AlertStatus.FAILED: frozenset({AlertStatus.PROCESSING}),
    AlertStatus.PROCESSED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.INITIATED: frozenset({PaymentStatus.PENDING, PaymentStatus.EXPIRED}),
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PENDING, PaymentStatus.APPROVED, PaymentStatus.REJECTED, PaymentStatus.EXPIRED,
    }),
    PaymentStatus.APPROVED: frozenset(),
    PaymentStatus.REJECTED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
}


def sources_for(table: Dict[Enum, FrozenSet[Enum]], target: Enum) -> FrozenSet[Enum]:
    """All states from which `target` may be entered."""
    return frozenset(src for src, targets in table.items() if target in targets)


def can_transition(table: Dict[Enum, FrozenSet[Enum]], current: Enum, target: Enum) -> bool:
    return target in table.get(current, frozenset())


# --- VALUE CARRIERS ---

@dataclass
class SignalEvent:
    """The parsed, typed view of one webhook payload."""
    symbol: str
    timeframe: str
    strategy: str
    signal: SignalKind
    price: Decimal
    event_time: datetime
    take_profit: Optional[Decimal] = None
    stop_loss: Optional[Decimal] = None
    trade_number: Optional[str] = None
    original_entry: Optional[Decimal] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MatchedUser:
    """One eligible recipient of an alert."""
    user_id: int
    subscription_id: int
    configuration_id: int
    chat_id: int


@dataclass
class DeliveryOutcome:
    user_id: int
    delivered: bool
    attempts: int = 0
    message_id: Optional[int] = None
    error: Optional[str] = None
    permanent: bool = False


@dataclass
class DeliveryReport:
    """Per-alert summary of one delivery pass."""
    alert_id: int
    outcomes: List[DeliveryOutcome] = field(default_factory=list)

    @property
    def delivered(self) -> List[DeliveryOutcome]:
        return [o for o in self.outcomes if o.delivered]

    @property
    def failed(self) -> List[DeliveryOutcome]:
        return [o for o in self.outcomes if not o.delivered]

    @property
    def blocked(self) -> List[DeliveryOutcome]:
        return [o for o in self.outcomes if o.permanent]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "attempted": len(self.outcomes),
            "delivered": len(self.delivered),
            "failed": len(self.failed),
            "blocked": len(self.blocked),
        }


@dataclass
class TradeContext:
    """What an alert did to one subscriber's tracked trades, if anything."""
    action: Optional[TradeActionType] = None
    trade_number: Optional[int] = None
    closed_trades: int = 0

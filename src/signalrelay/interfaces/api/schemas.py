# src/signalrelay/interfaces/api/schemas.py
from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from typing import Any, List

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _to_str(v: Any) -> str | None:
    if v is None: return None
    if hasattr(v, "value"): return str(v.value)
    return str(v)


class PaymentCreateIn(BaseModel):
    user_id: int
    plan_id: int
    note: str | None = None


class ApproveIn(BaseModel):
    verifier_id: int
    notes: str | None = None


class RejectIn(BaseModel):
    verifier_id: int
    reason: str = Field(..., max_length=500)
    notes: str | None = None


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    user_id: int
    plan_id: int
    transaction_id: str
    amount: Decimal
    currency: str
    method: str
    status: str
    payment_string: str | None = None
    qr_code_url: str | None = None
    proof_url: str | None = None
    proof_uploaded_at: datetime | None = None
    verified_by: int | None = None
    verified_at: datetime | None = None
    verification_notes: str | None = None
    rejection_reason: str | None = None
    subscription_id: int | None = None
    expires_at: datetime
    created_at: datetime | None = None

    @field_validator("status", "method", mode="before")
    def _v_enum(cls, v): return _to_str(v) or ""


class AlertErrorOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    kind: str
    message: str
    created_at: datetime | None = None


class RecipientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    user_id: int
    chat_id: int
    delivered: bool
    delivered_at: datetime | None = None
    attempts: int
    message_id: int | None = None
    error: str | None = None


class TradeActionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    action: str
    user_id: int | None = None
    trade_id: int | None = None
    executed: bool
    error: str | None = None

    @field_validator("action", mode="before")
    def _v_action(cls, v): return _to_str(v) or ""


class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: int
    source: str | None = None
    symbol: str
    timeframe: str
    strategy: str
    signal: str
    price: Decimal
    take_profit_price: Decimal | None = None
    stop_loss_price: Decimal | None = None
    event_time: datetime
    status: str
    retry_count: int
    received_at: datetime | None = None
    processed_at: datetime | None = None
    recipients: List[RecipientOut] = []
    trade_actions: List[TradeActionOut] = []
    errors: List[AlertErrorOut] = []

    @field_validator("signal", mode="before")
    def _v_signal(cls, v): return v.wire_name if hasattr(v, "wire_name") else (_to_str(v) or "")
    @field_validator("status", mode="before")
    def _v_status(cls, v): return _to_str(v) or ""


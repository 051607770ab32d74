# src/signalrelay/application/services/alert_intake_service.py
"""
AlertIntakeService - accepts raw webhook payloads and owns the alert
processing lifecycle (received -> processing -> processed | failed).

Required fields are validated before anything touches the database, so a
rejected payload leaves no trace. Once the required fields pass, the raw body
is stored verbatim and optional fields are parsed on top of it; a malformed
optional field becomes a `parse_warning` error record instead of losing the
event.
"""

import hashlib
import hmac
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from signalrelay.domain.entities import AlertStatus, SignalEvent, SignalKind
from signalrelay.domain.errors import InvalidStateError, NotFoundError, ValidationError
from signalrelay.domain.value_objects import Price, Symbol, Timeframe, as_utc, utcnow
from signalrelay.infrastructure.db.models import Alert
from signalrelay.infrastructure.db.repository import AlertRepository
from signalrelay.infrastructure.db.uow import SessionScope, session_scope as default_session_scope

log = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="
MAX_STRATEGY_LENGTH = 100
MAX_TRADE_NUMBER_LENGTH = 50


def compute_signature(body: bytes, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def parse_event_time(raw: Any) -> datetime:
    """ISO-8601, with a trailing 'Z' accepted. Naive values are taken as UTC."""
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("Timestamp must be a valid ISO 8601 date")
    text = raw.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError:
        raise ValueError("Timestamp must be a valid ISO 8601 date")
    return as_utc(value)


def _positive(raw: Any, label: str) -> Decimal:
    try:
        return Price.of(raw).value
    except (ValueError, TypeError):
        raise ValueError(f"{label} must be a positive number")


class AlertIntakeService:
    def __init__(
        self,
        session_scope: SessionScope = default_session_scope,
        webhook_secret: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_scope = session_scope
        self.webhook_secret = webhook_secret
        self.clock = clock

    # --- Authentication ---

    def verify_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """True when no secret is configured, else a constant-time HMAC check."""
        if not self.webhook_secret:
            return True
        if not signature or not signature.startswith(SIGNATURE_PREFIX):
            return False
        expected = compute_signature(body, self.webhook_secret)
        return hmac.compare_digest(expected.lower(), signature.strip().lower())

    # --- Validation ---

    @staticmethod
    def decode_body(raw_body: Union[bytes, str]) -> Tuple[str, Dict[str, Any]]:
        if isinstance(raw_body, bytes):
            try:
                text = raw_body.decode("utf-8")
            except UnicodeDecodeError:
                raise ValidationError("Payload must be UTF-8 encoded JSON.")
        else:
            text = raw_body
        try:
            payload = json.loads(text)
        except (json.JSONDecodeError, TypeError):
            raise ValidationError("Payload is not valid JSON.")
        if not isinstance(payload, dict):
            raise ValidationError("Payload must be a JSON object.")
        return text, payload

    @staticmethod
    def validate_required(payload: Dict[str, Any]) -> SignalEvent:
        """Checks the fields an alert cannot exist without. Collects every problem before raising."""
        errors: List[str] = []

        def _field(name: str, fn: Callable[[Any], Any], missing_msg: str):
            raw = payload.get(name)
            if raw is None or (isinstance(raw, str) and not raw.strip()):
                errors.append(missing_msg)
                return None
            try:
                return fn(raw)
            except (ValueError, TypeError) as e:
                errors.append(str(e))
                return None

        symbol = _field("symbol", lambda v: Symbol(v).value, "Symbol is required")
        timeframe = _field("timeframe", lambda v: Timeframe(v).value, "Timeframe is required")

        def _strategy(v):
            if not isinstance(v, str):
                raise ValueError("Strategy must be a string")
            v = v.strip()
            if len(v) > MAX_STRATEGY_LENGTH:
                raise ValueError("Strategy name must be between 1 and 100 characters")
            return v

        strategy = _field("strategy", _strategy, "Strategy is required")
        signal = _field("signal", SignalKind.parse, "Signal is required")
        price = _field("price", lambda v: _positive(v, "Price"), "Price is required")
        event_time = _field("timestamp", parse_event_time, "Timestamp is required")

        if errors:
            raise ValidationError("; ".join(errors), errors)

        return SignalEvent(
            symbol=symbol, timeframe=timeframe, strategy=strategy,
            signal=signal, price=price, event_time=event_time,
        )

    @staticmethod
    def check_price_levels(event: SignalEvent, payload: Dict[str, Any]) -> None:
        """For entries carrying both TP and SL, they must sit on the correct side of the price."""
        if not event.signal.is_entry:
            return
        try:
            tp = _positive(payload["takeProfitPrice"], "Take profit price")
            sl = _positive(payload["stopLossPrice"], "Stop loss price")
        except (KeyError, ValueError):
            # absent or malformed levels are handled as optional fields
            return
        errors = []
        if event.signal == SignalKind.BUY:
            if tp <= event.price:
                errors.append("Take profit price must be higher than entry price for BUY signals")
            if sl >= event.price:
                errors.append("Stop loss price must be lower than entry price for BUY signals")
        else:
            if tp >= event.price:
                errors.append("Take profit price must be lower than entry price for SELL signals")
            if sl <= event.price:
                errors.append("Stop loss price must be higher than entry price for SELL signals")
        if errors:
            raise ValidationError("; ".join(errors), errors)

    @staticmethod
    def parse_optional(payload: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
        """Returns (column values, warnings). Never raises."""
        values: Dict[str, Any] = {}
        additional: Dict[str, Any] = {}
        warnings: List[str] = []

        for key, column, label in (
            ("takeProfitPrice", "take_profit_price", "Take profit price"),
            ("stopLossPrice", "stop_loss_price", "Stop loss price"),
        ):
            if payload.get(key) is None:
                continue
            try:
                values[column] = _positive(payload[key], label)
            except ValueError as e:
                warnings.append(f"{key}: {e}")

        trade_number = payload.get("tradeNumber")
        if trade_number is not None:
            text = str(trade_number).strip() if isinstance(trade_number, (str, int)) and not isinstance(trade_number, bool) else None
            if not text or len(text) > MAX_TRADE_NUMBER_LENGTH:
                warnings.append("tradeNumber: Trade number must be a string of at most 50 characters")
            else:
                additional["tradeNumber"] = text

        original_entry = payload.get("originalEntry")
        if original_entry is not None:
            try:
                additional["originalEntry"] = str(_positive(original_entry, "Original entry price"))
            except ValueError as e:
                warnings.append(f"originalEntry: {e}")

        metadata = payload.get("metadata")
        if metadata is not None:
            if isinstance(metadata, dict):
                additional["metadata"] = metadata
            else:
                warnings.append("metadata: Metadata must be an object")

        if additional:
            values["additional_data"] = additional
        return values, warnings

    # --- Intake ---

    def ingest(self, raw_body: Union[bytes, str], source_metadata: Optional[Dict[str, Any]] = None) -> Alert:
        """Validates, persists (status=received) and returns the new alert. Raises ValidationError."""
        source_metadata = source_metadata or {}
        text, payload = self.decode_body(raw_body)
        event = self.validate_required(payload)
        self.check_price_levels(event, payload)
        derived, warnings = self.parse_optional(payload)
        now = self.clock()

        with self.session_scope() as session:
            repo = AlertRepository(session)
            alert = repo.add(
                source=source_metadata.get("source", "tradingview"),
                raw_body=text,
                raw_payload=payload,
                signature=source_metadata.get("signature"),
                ip_address=source_metadata.get("ip_address"),
                symbol=event.symbol,
                timeframe=event.timeframe,
                strategy=event.strategy,
                signal=event.signal,
                price=event.price,
                event_time=event.event_time,
                status=AlertStatus.RECEIVED,
                received_at=now,
            )
            if derived:
                repo.set_derived_fields(alert.id, **derived)
            for warning in warnings:
                repo.add_error(alert.id, "parse_warning", warning, now)
            session.refresh(alert)
            alert_id = alert.id

        log.info(
            f"Alert #{alert_id} received: {event.symbol} {event.timeframe} {event.strategy} "
            f"{event.signal.wire_name} @ {event.price}"
            + (f" ({len(warnings)} parse warnings)" if warnings else "")
        )
        return alert

    # --- Lifecycle ---

    def _transition(self, alert_id: int, target: AlertStatus, allowed, **values) -> Alert:
        with self.session_scope() as session:
            repo = AlertRepository(session)
            if not repo.transition(alert_id, target, allowed, **values):
                alert = repo.get(alert_id, fresh=True)
                if alert is None:
                    raise NotFoundError(f"Alert #{alert_id} not found.")
                raise InvalidStateError(
                    f"Alert #{alert_id} cannot move from {alert.status.value} to {target.value}.",
                    current=alert.status.value,
                )
            alert = repo.get(alert_id, fresh=True)
            session.refresh(alert)
            return alert

    def mark_processing(self, alert_id: int, retry: bool = False) -> Alert:
        """received -> processing; with retry=True a failed alert may re-enter processing."""
        allowed = [AlertStatus.RECEIVED, AlertStatus.FAILED] if retry else [AlertStatus.RECEIVED]
        if retry:
            return self._transition(alert_id, AlertStatus.PROCESSING, allowed, retry_count=Alert.retry_count + 1)
        return self._transition(alert_id, AlertStatus.PROCESSING, allowed)

    def mark_processed(self, alert_id: int) -> Alert:
        return self._transition(alert_id, AlertStatus.PROCESSED, [AlertStatus.PROCESSING], processed_at=self.clock())

    def mark_failed(self, alert_id: int, error: str) -> Alert:
        """Any non-terminal state -> failed. The error is appended in the same transaction."""
        now = self.clock()
        with self.session_scope() as session:
            repo = AlertRepository(session)
            if not repo.transition(alert_id, AlertStatus.FAILED, [AlertStatus.RECEIVED, AlertStatus.PROCESSING]):
                alert = repo.get(alert_id, fresh=True)
                if alert is None:
                    raise NotFoundError(f"Alert #{alert_id} not found.")
                raise InvalidStateError(
                    f"Alert #{alert_id} cannot move from {alert.status.value} to failed.",
                    current=alert.status.value,
                )
            repo.add_error(alert_id, "processing", error, now)
            alert = repo.get(alert_id, fresh=True)
            session.refresh(alert)
        log.warning(f"Alert #{alert_id} marked failed: {error}")
        return alert

    def record_error(self, alert_id: int, kind: str, message: str) -> None:
        """Appends an error without touching the status."""
        with self.session_scope() as session:
            AlertRepository(session).add_error(alert_id, kind, message, self.clock())

    # --- Queries ---

    def get_alert(self, alert_id: int) -> Alert:
        with self.session_scope() as session:
            alert = AlertRepository(session).get(alert_id, fresh=True)
            if alert is None:
                raise NotFoundError(f"Alert #{alert_id} not found.")
            session.refresh(alert)
            return alert

    def stats(self, recent: int = 10) -> Dict[str, Any]:
        with self.session_scope() as session:
            repo = AlertRepository(session)
            counts = repo.status_counts()
            recent_alerts = [
                {
                    "id": a.id,
                    "symbol": a.symbol,
                    "timeframe": a.timeframe,
                    "strategy": a.strategy,
                    "signal": a.signal.wire_name,
                    "status": a.status.value,
                    "received_at": a.received_at.isoformat() if a.received_at else None,
                }
                for a in repo.list_recent(limit=recent)
            ]
        return {
            "total": sum(counts.values()),
            "by_status": counts,
            "in_flight": counts.get(AlertStatus.PROCESSING.value, 0),
            "recent": recent_alerts,
        }

# src/signalrelay/application/services/delivery_service.py
"""
DeliveryService - fans an alert out to its recorded recipients.

Each recipient is claimed with a conditional write before any send, so a
recipient is attempted at most once per alert even if two delivery passes
overlap. Sends run concurrently under a semaphore; every database write is a
short unit of work of its own and no session is held across a send.

Failure handling per recipient:
  - PermanentDeliveryError: chat marked blocked, no retry.
  - TransientDeliveryError or timeout: retried with exponential backoff up to
    `max_attempts` (flood-wait hints are honoured); the last error is kept.
  - any other DeliveryError: recorded, no retry.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional, Protocol

from signalrelay.config import settings
from signalrelay.domain.entities import (
    DeliveryOutcome, DeliveryReport, SignalKind, TradeContext,
)
from signalrelay.domain.errors import (
    DeliveryError, NotFoundError, PermanentDeliveryError, TransientDeliveryError,
)
from signalrelay.domain.value_objects import utcnow
from signalrelay.infrastructure.db.repository import (
    AlertConfigurationRepository, AlertRepository, SubscriptionRepository, TelegramLinkRepository,
)
from signalrelay.infrastructure.db.uow import SessionScope, session_scope as default_session_scope
from signalrelay.infrastructure.metrics import DELIVERIES, DELIVERY_LATENCY
from signalrelay.interfaces.telegram.formatters import build_alert_message

log = logging.getLogger(__name__)


class ChannelAdapter(Protocol):
    async def send_message(self, destination, text: str, format_options: Optional[dict] = None) -> int: ...


@dataclass(frozen=True)
class _AlertView:
    """Detached copy of the fields the message needs."""
    id: int
    symbol: str
    timeframe: str
    strategy: str
    signal: SignalKind
    price: Decimal
    take_profit_price: Optional[Decimal]
    stop_loss_price: Optional[Decimal]
    event_time: datetime


@dataclass(frozen=True)
class _RecipientView:
    id: int
    user_id: int
    subscription_id: Optional[int]
    configuration_id: Optional[int]
    chat_id: int


class DeliveryService:
    def __init__(
        self,
        adapter: ChannelAdapter,
        session_scope: SessionScope = default_session_scope,
        timeout: float = settings.DELIVERY_TIMEOUT_SECONDS,
        max_attempts: int = settings.DELIVERY_MAX_ATTEMPTS,
        backoff: float = settings.DELIVERY_BACKOFF_SECONDS,
        concurrency: int = settings.DELIVERY_CONCURRENCY,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.adapter = adapter
        self.session_scope = session_scope
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff = backoff
        self.concurrency = max(1, concurrency)
        self.clock = clock
        self.sleep = sleep

    async def deliver(self, alert_id: int, trade_contexts: Optional[Dict[int, TradeContext]] = None) -> DeliveryReport:
        with self.session_scope() as session:
            alerts = AlertRepository(session)
            alert = alerts.get(alert_id)
            if alert is None:
                raise NotFoundError(f"Alert #{alert_id} not found.")
            view = _AlertView(
                id=alert.id, symbol=alert.symbol, timeframe=alert.timeframe, strategy=alert.strategy,
                signal=alert.signal, price=alert.price, take_profit_price=alert.take_profit_price,
                stop_loss_price=alert.stop_loss_price, event_time=alert.event_time,
            )
            recipients = [
                _RecipientView(r.id, r.user_id, r.subscription_id, r.configuration_id, r.chat_id)
                for r in alerts.unclaimed_recipients(alert_id)
            ]
            configs = AlertConfigurationRepository(session)
            config_names = {}
            for r in recipients:
                if r.configuration_id and r.configuration_id not in config_names:
                    config = configs.get(r.configuration_id)
                    config_names[r.configuration_id] = config.name if config else None

        report = DeliveryReport(alert_id=alert_id)
        if not recipients:
            log.info(f"Alert #{alert_id}: nothing to deliver")
            return report

        contexts = trade_contexts or {}
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(recipient: _RecipientView):
            async with semaphore:
                text = build_alert_message(
                    view, config_names.get(recipient.configuration_id), contexts.get(recipient.user_id)
                )
                return await self._deliver_one(alert_id, recipient, text)

        results = await asyncio.gather(*(_bounded(r) for r in recipients))
        report.outcomes = [o for o in results if o is not None]
        log.info(
            f"Alert #{alert_id}: delivered {len(report.delivered)}/{len(report.outcomes)} "
            f"(blocked {len(report.blocked)})"
        )
        return report

    async def _deliver_one(self, alert_id: int, recipient: _RecipientView, text: str) -> Optional[DeliveryOutcome]:
        with self.session_scope() as session:
            if not AlertRepository(session).claim_recipient(recipient.id, self.clock()):
                log.debug(f"Alert #{alert_id}: recipient {recipient.user_id} already claimed")
                return None

        started = time.monotonic()
        attempts = 0
        last_error: Optional[str] = None
        while attempts < self.max_attempts:
            attempts += 1
            retry_after: Optional[float] = None
            try:
                message_id = await asyncio.wait_for(
                    self.adapter.send_message(recipient.chat_id, text), timeout=self.timeout
                )
            except asyncio.TimeoutError:
                last_error = f"Send timed out after {self.timeout}s"
            except TransientDeliveryError as e:
                last_error = str(e)
                retry_after = e.retry_after
            except PermanentDeliveryError as e:
                DELIVERY_LATENCY.observe(time.monotonic() - started)
                return self._record_permanent(alert_id, recipient, attempts, str(e))
            except DeliveryError as e:
                DELIVERY_LATENCY.observe(time.monotonic() - started)
                return self._record_failure(alert_id, recipient, attempts, str(e), outcome="error")
            else:
                DELIVERY_LATENCY.observe(time.monotonic() - started)
                return self._record_success(recipient, attempts, message_id)

            if attempts < self.max_attempts:
                delay = self.backoff * (2 ** (attempts - 1))
                if retry_after is not None:
                    delay = max(delay, retry_after)
                log.debug(
                    f"Alert #{alert_id}: transient failure for user {recipient.user_id} "
                    f"(attempt {attempts}/{self.max_attempts}), retrying in {delay:.2f}s: {last_error}"
                )
                await self.sleep(delay)

        DELIVERY_LATENCY.observe(time.monotonic() - started)
        return self._record_failure(
            alert_id, recipient, attempts,
            f"Gave up after {attempts} attempt(s): {last_error}", outcome="exhausted",
        )

    def _record_success(self, recipient: _RecipientView, attempts: int, message_id: Optional[int]) -> DeliveryOutcome:
        now = self.clock()
        with self.session_scope() as session:
            AlertRepository(session).mark_recipient_delivered(recipient.id, attempts, message_id, now)
            if recipient.subscription_id:
                SubscriptionRepository(session).increment_usage(recipient.subscription_id, now)
            TelegramLinkRepository(session).touch_delivery(recipient.user_id, now)
        DELIVERIES.labels(outcome="delivered").inc()
        return DeliveryOutcome(user_id=recipient.user_id, delivered=True, attempts=attempts, message_id=message_id)

    def _record_permanent(self, alert_id: int, recipient: _RecipientView, attempts: int, error: str) -> DeliveryOutcome:
        now = self.clock()
        with self.session_scope() as session:
            alerts = AlertRepository(session)
            alerts.mark_recipient_failed(recipient.id, attempts, error)
            alerts.add_error(alert_id, "delivery", f"user {recipient.user_id}: {error}", now)
            TelegramLinkRepository(session).mark_blocked(recipient.user_id, error, now)
        log.warning(f"Alert #{alert_id}: chat of user {recipient.user_id} is unreachable, marked blocked: {error}")
        DELIVERIES.labels(outcome="blocked").inc()
        return DeliveryOutcome(
            user_id=recipient.user_id, delivered=False, attempts=attempts, error=error, permanent=True,
        )

    def _record_failure(
        self, alert_id: int, recipient: _RecipientView, attempts: int, error: str, outcome: str,
    ) -> DeliveryOutcome:
        with self.session_scope() as session:
            alerts = AlertRepository(session)
            alerts.mark_recipient_failed(recipient.id, attempts, error)
            alerts.add_error(alert_id, "delivery", f"user {recipient.user_id}: {error}", self.clock())
        log.warning(f"Alert #{alert_id}: delivery to user {recipient.user_id} failed: {error}")
        DELIVERIES.labels(outcome=outcome).inc()
        return DeliveryOutcome(user_id=recipient.user_id, delivered=False, attempts=attempts, error=error)

# src/signalrelay/infrastructure/sched/payment_sweeper.py
"""Periodic maintenance: expires stale payments and subscriptions past their end date."""

import asyncio
import logging
from typing import Optional

log = logging.getLogger(__name__)


class PaymentSweeper:
    def __init__(self, payment_service, subscription_service, interval_seconds: float = 900):
        self.payment_service = payment_service
        self.subscription_service = subscription_service
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def start(self):
        if self._running:
            log.warning("PaymentSweeper already running.")
            return
        self._running = True
        self._task = asyncio.create_task(self._run())
        log.info(f"PaymentSweeper started (every {self.interval_seconds}s).")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        log.info("PaymentSweeper stopped.")

    def sweep_once(self) -> dict:
        payments = self.payment_service.expire_stale_payments()
        subscriptions = self.subscription_service.expire_ended()
        if payments or subscriptions:
            log.info(f"Sweep expired {payments} payment(s) and {subscriptions} subscription(s).")
        return {"payments": payments, "subscriptions": subscriptions}

    async def _run(self):
        while self._running:
            try:
                self.sweep_once()
            except Exception as e:
                log.error(f"Payment sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

# src/signalrelay/boot.py
"""Builds and wires the application services into a name -> instance container."""

import logging
from typing import Any, Dict, Optional

from signalrelay.config import settings
from signalrelay.application.services import (
    AlertIntakeService,
    AlertProcessingService,
    DeliveryService,
    MatchingService,
    PaymentService,
    SubscriptionService,
    TradeService,
)
from signalrelay.infrastructure.db.uow import SessionScope, session_scope as default_session_scope
from signalrelay.infrastructure.notify.telegram import TelegramChannelAdapter
from signalrelay.infrastructure.payments.proof_storage import ProofStorage
from signalrelay.infrastructure.payments.qr import QrCodeStore
from signalrelay.infrastructure.sched.payment_sweeper import PaymentSweeper

log = logging.getLogger(__name__)


def build_adapter() -> Optional[TelegramChannelAdapter]:
    if not settings.TELEGRAM_BOT_TOKEN:
        log.error("TELEGRAM_BOT_TOKEN not set. Alerts will be stored but not delivered.")
        return None
    return TelegramChannelAdapter(settings.TELEGRAM_BOT_TOKEN)


def build_services(adapter=None, session_scope: SessionScope = default_session_scope) -> Dict[str, Any]:
    """Build and wire all application services and dependencies."""
    log.info("Building application services...")
    services: Dict[str, Any] = {}

    try:
        intake = AlertIntakeService(session_scope, webhook_secret=settings.TV_WEBHOOK_SECRET)
        subscriptions = SubscriptionService(session_scope)
        payments = PaymentService(
            subscriptions,
            qr_store=QrCodeStore(settings.QR_CODE_DIR),
            proof_storage=ProofStorage(settings.PROOF_UPLOAD_DIR),
            session_scope=session_scope,
        )
        services["alert_intake_service"] = intake
        services["subscription_service"] = subscriptions
        services["payment_service"] = payments
        services["payment_sweeper"] = PaymentSweeper(
            payments, subscriptions, interval_seconds=settings.PAYMENT_SWEEP_INTERVAL_SECONDS
        )

        if adapter is not None:
            services["channel_adapter"] = adapter
            matching = MatchingService(session_scope)
            trades = TradeService(session_scope)
            delivery = DeliveryService(adapter, session_scope)
            services["matching_service"] = matching
            services["trade_service"] = trades
            services["delivery_service"] = delivery
            services["alert_processing_service"] = AlertProcessingService(
                intake, matching, trades, delivery, session_scope
            )
        else:
            log.warning("No channel adapter; alert processing is disabled.")

        log.info("✅ All services built and wired successfully.")
        return services

    except Exception as e:
        log.critical(f"❌ Service building failed: {e}", exc_info=True)
        raise

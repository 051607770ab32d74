# src/signalrelay/application/services/__init__.py

from .alert_intake_service import AlertIntakeService
from .matching_service import MatchingService
from .trade_service import TradeService
from .delivery_service import DeliveryService
from .alert_processing_service import AlertProcessingService
from .subscription_service import SubscriptionService
from .payment_service import PaymentService

__all__ = [
    "AlertIntakeService",
    "MatchingService",
    "TradeService",
    "DeliveryService",
    "AlertProcessingService",
    "SubscriptionService",
    "PaymentService",
]

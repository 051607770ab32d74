# --- src/signalrelay/infrastructure/db/models/__init__.py ---
"""
This file makes the 'models' directory a package and ensures all SQLAlchemy ORM
models are discoverable by Alembic and the application.
"""

from .base import Base, JSONType
from .auth import User, TelegramLink
from .alert import (
    Alert,
    AlertRecipient,
    AlertTradeAction,
    AlertErrorRecord,
    AlertConfiguration,
    ConfigurationPlan,
    ConfigSubscription,
)
from .billing import SubscriptionPlan, Payment, Subscription
from .trade import Trade

__all__ = [
    "Base",
    "JSONType",
    "User",
    "TelegramLink",
    "Alert",
    "AlertRecipient",
    "AlertTradeAction",
    "AlertErrorRecord",
    "AlertConfiguration",
    "ConfigurationPlan",
    "ConfigSubscription",
    "SubscriptionPlan",
    "Payment",
    "Subscription",
    "Trade",
]
# --- END of models init ---

# tests/conftest.py
"""
Fixtures and test setup for the Pytest suite.

Every test gets a fresh in-memory SQLite schema; the services under test use
the same session factory the application uses and a controllable clock.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

# Set test environment variables BEFORE any application code is imported.
_MEDIA_DIR = tempfile.mkdtemp(prefix="signalrelay-tests-")
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENV"] = "test"
os.environ["API_KEY"] = "test_api_key"
os.environ["TELEGRAM_BOT_TOKEN"] = ""
os.environ["TV_WEBHOOK_SECRET"] = ""
os.environ["QR_CODE_DIR"] = os.path.join(_MEDIA_DIR, "qr-codes")
os.environ["PROOF_UPLOAD_DIR"] = os.path.join(_MEDIA_DIR, "payment-proofs")

from signalrelay.application.services import (  # noqa: E402
    AlertIntakeService, AlertProcessingService, DeliveryService, MatchingService,
    PaymentService, SubscriptionService, TradeService,
)
from signalrelay.domain.entities import SubscriptionStatus  # noqa: E402
from signalrelay.infrastructure.db.models import Base  # noqa: E402
from signalrelay.infrastructure.db.repository import (  # noqa: E402
    AlertConfigurationRepository, PlanRepository, SubscriptionRepository,
    TelegramLinkRepository, UserRepository,
)
from signalrelay.infrastructure.db.uow import engine, session_scope  # noqa: E402
from signalrelay.infrastructure.payments.proof_storage import ProofStorage  # noqa: E402
from signalrelay.infrastructure.payments.qr import QrCodeStore  # noqa: E402
from signalrelay.infrastructure.payments.upi import UpiPayee  # noqa: E402

T0 = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def db():
    """Fresh schema for every test."""
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield engine


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def adapter() -> MagicMock:
    """Channel adapter that accepts every message; override send_message.side_effect per test."""
    mock_adapter = MagicMock()
    mock_adapter.send_message = AsyncMock(side_effect=lambda destination, text, format_options=None: 1000 + int(destination) % 1000)
    mock_adapter.edit_message = AsyncMock(return_value=True)
    mock_adapter.send_admin_alert = AsyncMock()
    mock_adapter.start = AsyncMock()
    mock_adapter.stop = AsyncMock()
    return mock_adapter


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def intake(clock) -> AlertIntakeService:
    return AlertIntakeService(session_scope, clock=clock)


@pytest.fixture
def matching(clock) -> MatchingService:
    return MatchingService(session_scope, clock=clock)


@pytest.fixture
def trades(clock) -> TradeService:
    return TradeService(session_scope, clock=clock)


@pytest.fixture
def delivery(adapter, clock, no_sleep) -> DeliveryService:
    return DeliveryService(
        adapter, session_scope, timeout=0.5, max_attempts=3, backoff=0.01,
        concurrency=5, clock=clock, sleep=no_sleep,
    )


@pytest.fixture
def processing(intake, matching, trades, delivery, clock) -> AlertProcessingService:
    return AlertProcessingService(intake, matching, trades, delivery, session_scope, clock=clock)


@pytest.fixture
def subscriptions(clock) -> SubscriptionService:
    return SubscriptionService(session_scope, clock=clock)


@pytest.fixture
def qr_store(tmp_path) -> QrCodeStore:
    return QrCodeStore(str(tmp_path / "qr"))


@pytest.fixture
def proof_storage(tmp_path) -> ProofStorage:
    return ProofStorage(str(tmp_path / "proofs"))


@pytest.fixture
def payee() -> UpiPayee:
    return UpiPayee(vpa="alerts@paytm", merchant_name="TradingView Alert Bot", merchant_code="TVAB001")


@pytest.fixture
def payments(subscriptions, qr_store, proof_storage, payee, clock) -> PaymentService:
    return PaymentService(
        subscriptions, qr_store=qr_store, proof_storage=proof_storage, session_scope=session_scope,
        payee=payee, ttl_hours=24, proof_max_bytes=5 * 1024 * 1024, clock=clock,
    )


# --- Seed helpers ---

@pytest.fixture
def make_plan():
    def _make(name="Monthly", amount="999.00", months=1, days=0):
        with session_scope() as session:
            plan = PlanRepository(session).add(
                name=name, amount=Decimal(amount), currency="INR",
                duration_months=months, duration_days=days,
            )
            return plan.id
    return _make


@pytest.fixture
def make_configuration():
    def _make(symbol="BTCUSDT", strategy="EMA Cross", timeframe="1h", plan_ids=(), **fields):
        with session_scope() as session:
            config = AlertConfigurationRepository(session).add(
                plan_ids=plan_ids, name=fields.pop("name", f"{symbol} {strategy}"),
                symbol=symbol, strategy=strategy, timeframe=timeframe, **fields,
            )
            return config.id
    return _make


@pytest.fixture
def make_subscriber(clock):
    """User + Telegram chat + active subscription to `plan_id` + interest in `configuration_ids`."""
    def _make(chat_id, plan_id, configuration_ids=(), days_left=30, blocked=False, status="active"):
        with session_scope() as session:
            user = UserRepository(session).add(email=f"user{chat_id}@example.com", name=f"User {chat_id}", status=status)
            link = TelegramLinkRepository(session).link(user.id, chat_id, username=f"user{chat_id}")
            link.is_blocked = blocked
            SubscriptionRepository(session).add(
                user_id=user.id, plan_id=plan_id, transaction_id=f"TXNSEED{chat_id}",
                start_date=clock() - timedelta(days=1), end_date=clock() + timedelta(days=days_left),
                status=SubscriptionStatus.ACTIVE,
            )
            configs = AlertConfigurationRepository(session)
            for config_id in configuration_ids:
                configs.subscribe(user.id, config_id)
            return user.id
    return _make


@pytest.fixture
def make_user():
    def _make(email="buyer@example.com", chat_id=None):
        with session_scope() as session:
            user = UserRepository(session).add(email=email, name="Buyer")
            if chat_id is not None:
                TelegramLinkRepository(session).link(user.id, chat_id)
            return user.id
    return _make


@pytest.fixture
def alert_payload():
    """Builds a valid webhook payload; pass field=None to drop a field."""
    def _make(**overrides) -> dict:
        payload = {
            "symbol": "BTCUSDT",
            "timeframe": "1h",
            "strategy": "EMA Cross",
            "signal": "BUY",
            "price": 50000,
            "timestamp": "2026-01-15T09:29:00Z",
        }
        payload.update(overrides)
        return {k: v for k, v in payload.items() if v is not None}
    return _make

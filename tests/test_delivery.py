import asyncio
import json

import pytest

from signalrelay.application.services import DeliveryService
from signalrelay.domain.errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError
from signalrelay.infrastructure.db.repository import SubscriptionRepository, TelegramLinkRepository
from signalrelay.infrastructure.db.uow import session_scope


@pytest.fixture
def matched_alert(intake, matching, alert_payload, make_plan, make_configuration, make_subscriber):
    """An alert with recipients recorded for the given chat ids; returns (alert_id, {chat_id: user_id})."""
    def _make(*chat_ids):
        plan = make_plan()
        config = make_configuration(name="BTC Swing")
        users = {chat_id: make_subscriber(chat_id, plan, configuration_ids=[config]) for chat_id in chat_ids}
        alert_id = intake.ingest(json.dumps(alert_payload()).encode("utf-8")).id
        matching.match(alert_id)
        return alert_id, users
    return _make


def _recipients(intake, alert_id):
    return {r.chat_id: r for r in intake.get_alert(alert_id).recipients}


@pytest.mark.asyncio
async def test_delivers_to_every_recipient(delivery, adapter, intake, matched_alert):
    alert_id, users = matched_alert(111, 222)

    report = await delivery.deliver(alert_id)

    assert report.as_dict() == {"alert_id": alert_id, "attempted": 2, "delivered": 2, "failed": 0, "blocked": 0}
    sent_to = sorted(call.args[0] for call in adapter.send_message.await_args_list)
    assert sent_to == [111, 222]
    text = adapter.send_message.await_args_list[0].args[1]
    assert "BTCUSDT" in text and "BTC Swing" in text

    recipients = _recipients(intake, alert_id)
    assert recipients[111].delivered and recipients[111].message_id == 1111
    assert recipients[222].attempts == 1 and recipients[222].error is None
    assert recipients[222].claimed_at is not None

    with session_scope() as session:
        (sub,) = SubscriptionRepository(session).list_by_user(users[111])
        assert sub.alerts_received == 1


@pytest.mark.asyncio
async def test_permanent_failure_blocks_the_chat(delivery, adapter, intake, matched_alert):
    alert_id, users = matched_alert(111, 222)

    async def _send(destination, text, format_options=None):
        if destination == 222:
            raise PermanentDeliveryError("Forbidden: bot was blocked by the user", str(destination))
        return 7

    adapter.send_message.side_effect = _send
    report = await delivery.deliver(alert_id)

    assert len(report.delivered) == 1
    (blocked,) = report.blocked
    assert blocked.user_id == users[222] and blocked.attempts == 1
    assert adapter.send_message.await_count == 2

    alert = intake.get_alert(alert_id)
    assert [e.kind for e in alert.errors] == ["delivery"]
    assert not _recipients(intake, alert_id)[222].delivered

    with session_scope() as session:
        link = TelegramLinkRepository(session).find_by_user(users[222])
        assert link.is_blocked and "blocked" in link.block_reason


@pytest.mark.asyncio
async def test_transient_failure_is_retried(delivery, adapter, intake, no_sleep, matched_alert):
    alert_id, _ = matched_alert(111)
    adapter.send_message.side_effect = [TransientDeliveryError("Flood control exceeded", "111", retry_after=3), 55]

    report = await delivery.deliver(alert_id)

    (outcome,) = report.outcomes
    assert outcome.delivered and outcome.attempts == 2 and outcome.message_id == 55
    no_sleep.assert_awaited_once_with(3)
    assert _recipients(intake, alert_id)[111].attempts == 2


@pytest.mark.asyncio
async def test_retries_are_bounded(delivery, adapter, intake, no_sleep, matched_alert):
    alert_id, _ = matched_alert(111)
    adapter.send_message.side_effect = TransientDeliveryError("Bad Gateway", "111")

    report = await delivery.deliver(alert_id)

    (outcome,) = report.outcomes
    assert not outcome.delivered and not outcome.permanent
    assert outcome.attempts == 3
    assert outcome.error == "Gave up after 3 attempt(s): Bad Gateway"
    assert [c.args[0] for c in no_sleep.await_args_list] == [0.01, 0.02]
    recipient = _recipients(intake, alert_id)[111]
    assert recipient.attempts == 3 and recipient.error.startswith("Gave up")


@pytest.mark.asyncio
async def test_other_delivery_errors_are_not_retried(delivery, adapter, matched_alert):
    alert_id, _ = matched_alert(111)
    adapter.send_message.side_effect = DeliveryError("Bad Request: message text is empty", "111")

    (outcome,) = (await delivery.deliver(alert_id)).outcomes
    assert outcome.attempts == 1 and not outcome.delivered
    assert adapter.send_message.await_count == 1


@pytest.mark.asyncio
async def test_timeouts_count_as_transient(adapter, clock, no_sleep, matched_alert):
    alert_id, _ = matched_alert(111)

    async def _hang(destination, text, format_options=None):
        await asyncio.sleep(5)

    adapter.send_message.side_effect = _hang
    service = DeliveryService(
        adapter, session_scope, timeout=0.01, max_attempts=2, backoff=0.01, clock=clock, sleep=no_sleep,
    )
    (outcome,) = (await service.deliver(alert_id)).outcomes
    assert outcome.attempts == 2
    assert "timed out" in outcome.error


@pytest.mark.asyncio
async def test_each_recipient_is_attempted_at_most_once(delivery, adapter, matched_alert):
    alert_id, _ = matched_alert(111, 222, 333)

    first, second = await asyncio.gather(delivery.deliver(alert_id), delivery.deliver(alert_id))

    assert len(first.outcomes) + len(second.outcomes) == 3
    assert adapter.send_message.await_count == 3

    third = await delivery.deliver(alert_id)
    assert third.outcomes == []
    assert adapter.send_message.await_count == 3


def test_max_attempts_must_be_positive(adapter):
    with pytest.raises(ValueError):
        DeliveryService(adapter, session_scope, max_attempts=0)


@pytest.mark.asyncio
async def test_second_pass_leaves_delivered_recipients_alone(delivery, adapter, intake, matched_alert):
    alert_id, _ = matched_alert(111, 222)
    await delivery.deliver(alert_id)

    again = await delivery.deliver(alert_id)

    assert again.outcomes == []
    assert adapter.send_message.await_count == 2
    recipients = _recipients(intake, alert_id)
    assert {c: (r.delivered, r.message_id, r.attempts) for c, r in recipients.items()} == {
        111: (True, 1111, 1), 222: (True, 1222, 1),
    }


@pytest.mark.asyncio
async def test_failure_record_never_reverts_a_delivered_recipient(delivery, intake, matched_alert):
    from signalrelay.infrastructure.db.repository import AlertRepository

    alert_id, _ = matched_alert(111)
    await delivery.deliver(alert_id)
    recipient_id = _recipients(intake, alert_id)[111].id

    with session_scope() as session:
        assert not AlertRepository(session).mark_recipient_failed(recipient_id, attempts=3, error="late timeout")

    recipient = _recipients(intake, alert_id)[111]
    assert recipient.delivered
    assert recipient.error is None and recipient.attempts == 1


@pytest.mark.asyncio
async def test_delivered_flag_cannot_be_cleared_on_the_model(delivery, intake, matched_alert):
    from signalrelay.domain.errors import InvalidStateError
    from signalrelay.infrastructure.db.models import AlertRecipient

    alert_id, _ = matched_alert(111)
    await delivery.deliver(alert_id)
    recipient_id = _recipients(intake, alert_id)[111].id

    with session_scope() as session:
        recipient = session.get(AlertRecipient, recipient_id)
        with pytest.raises(InvalidStateError):
            recipient.delivered = False

    assert _recipients(intake, alert_id)[111].delivered

import json

import pytest

from signalrelay.domain.entities import ConfigurationStatus, MatchedUser, SubscriptionStatus
from signalrelay.domain.errors import NotFoundError
from signalrelay.infrastructure.db.repository import SubscriptionRepository
from signalrelay.infrastructure.db.uow import session_scope


@pytest.fixture
def ingest(intake, alert_payload):
    def _ingest(**overrides) -> int:
        return intake.ingest(json.dumps(alert_payload(**overrides)).encode("utf-8")).id
    return _ingest


def _subscription_ids(user_id):
    with session_scope() as session:
        return [s.id for s in SubscriptionRepository(session).list_by_user(user_id)]


def test_interested_subscriber_is_matched(matching, intake, ingest, make_plan, make_configuration, make_subscriber):
    plan = make_plan()
    config = make_configuration(plan_ids=[plan])
    user = make_subscriber(111, plan, configuration_ids=[config])
    make_subscriber(222, plan)  # subscribed but not interested in this configuration

    alert_id = ingest()
    matched = matching.match(alert_id)

    assert matched == [MatchedUser(user_id=user, subscription_id=_subscription_ids(user)[0], configuration_id=config, chat_id=111)]
    recipients = intake.get_alert(alert_id).recipients
    assert [(r.user_id, r.chat_id, r.delivered, r.attempts) for r in recipients] == [(user, 111, False, 0)]


@pytest.mark.parametrize("config_fields,alert_fields", [
    ({"timeframe": "4h"}, {}),
    ({"entry_signals": ["BUY"]}, {"signal": "SELL"}),
    ({"exit_enabled": False}, {"signal": "TP_HIT"}),
    ({"price_min": 60000}, {}),
    ({"price_max": 40000}, {}),
    ({"status": ConfigurationStatus.INACTIVE}, {}),
    ({}, {"strategy": "RSI Divergence"}),
    ({}, {"symbol": "ETHUSDT"}),
])
def test_configuration_filters(matching, ingest, make_plan, make_configuration, make_subscriber, config_fields, alert_fields):
    plan = make_plan()
    config = make_configuration(**config_fields)
    make_subscriber(111, plan, configuration_ids=[config])

    assert matching.match_with_configurations(ingest(**alert_fields)) == ([], [])


def test_configuration_without_timeframe_accepts_any(matching, ingest, make_plan, make_configuration, make_subscriber):
    plan = make_plan()
    config = make_configuration(timeframe=None)
    make_subscriber(111, plan, configuration_ids=[config])
    assert len(matching.match(ingest(timeframe="15m"))) == 1


def test_plan_restricted_configuration(matching, ingest, make_plan, make_configuration, make_subscriber):
    gold, silver = make_plan("Gold", "1999.00"), make_plan("Silver")
    config = make_configuration(plan_ids=[gold])
    gold_user = make_subscriber(111, gold, configuration_ids=[config])
    make_subscriber(222, silver, configuration_ids=[config])

    assert [m.user_id for m in matching.match(ingest())] == [gold_user]


def test_ended_subscription_is_expired_lazily(matching, ingest, clock, make_plan, make_configuration, make_subscriber):
    plan = make_plan()
    config = make_configuration()
    user = make_subscriber(111, plan, configuration_ids=[config], days_left=30)

    clock.advance(days=31)
    assert matching.match(ingest()) == []

    with session_scope() as session:
        (sub,) = SubscriptionRepository(session).list_by_user(user)
        assert sub.status == SubscriptionStatus.EXPIRED


def test_unreachable_or_inactive_users_are_skipped(matching, ingest, make_plan, make_configuration, make_subscriber):
    plan = make_plan()
    config = make_configuration()
    make_subscriber(111, plan, configuration_ids=[config], blocked=True)
    make_subscriber(222, plan, configuration_ids=[config], status="suspended")
    reachable = make_subscriber(333, plan, configuration_ids=[config])

    assert [m.user_id for m in matching.match(ingest())] == [reachable]


def test_user_matched_once_across_configurations(matching, intake, ingest, make_plan, make_configuration, make_subscriber):
    plan = make_plan()
    pinned = make_configuration(name="1h only")
    any_tf = make_configuration(name="any timeframe", timeframe=None)
    user = make_subscriber(111, plan, configuration_ids=[pinned, any_tf])

    alert_id = ingest()
    config_ids, matched = matching.match_with_configurations(alert_id)

    assert config_ids == [pinned, any_tf]
    assert [(m.user_id, m.configuration_id) for m in matched] == [(user, pinned)]
    assert len(intake.get_alert(alert_id).recipients) == 1


def test_rematching_never_duplicates_recipients(matching, intake, ingest, make_plan, make_configuration, make_subscriber):
    plan = make_plan()
    config = make_configuration()
    make_subscriber(111, plan, configuration_ids=[config])
    alert_id = ingest()

    assert len(matching.match(alert_id)) == 1
    late = make_subscriber(222, plan, configuration_ids=[config])

    again = matching.match(alert_id)
    assert [m.user_id for m in again] == [late]
    assert len(intake.get_alert(alert_id).recipients) == 2
    assert matching.match(alert_id) == []


def test_unknown_alert(matching):
    with pytest.raises(NotFoundError):
        matching.match(42)

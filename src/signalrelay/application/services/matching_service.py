# src/signalrelay/application/services/matching_service.py
"""
MatchingService - resolves which users should receive an alert.

A user is matched when, for at least one active configuration the alert
satisfies, they have declared interest in that configuration, hold a
subscription that is active *right now* for one of its plans, and own a
reachable Telegram chat. Each surviving user becomes one recipient row;
users already recorded for the alert are left alone, so re-running a match
never duplicates anyone.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from signalrelay.domain.entities import MatchedUser, SubscriptionStatus
from signalrelay.domain.errors import NotFoundError
from signalrelay.domain.value_objects import as_utc, utcnow
from signalrelay.infrastructure.db.models import Alert, AlertConfiguration, Subscription
from signalrelay.infrastructure.db.repository import (
    AlertConfigurationRepository, AlertRepository, SubscriptionRepository,
    TelegramLinkRepository, UserRepository,
)
from signalrelay.infrastructure.db.uow import SessionScope, session_scope as default_session_scope

log = logging.getLogger(__name__)


def configuration_accepts(config: AlertConfiguration, alert: Alert) -> bool:
    """Timeframe pin, allowed signal kinds and the optional price range."""
    if config.timeframe and config.timeframe != alert.timeframe:
        return False
    if not config.allows_signal(alert.signal):
        return False
    return config.passes_price_filter(alert.price)


def resolve_active_subscription(
    session: Session,
    user_id: int,
    plan_ids: Optional[Sequence[int]],
    now: datetime,
) -> Optional[Subscription]:
    """Latest subscription active at `now`; rows past their end date are flipped to expired on the way."""
    repo = SubscriptionRepository(session)
    active = None
    for sub in repo.list_status_active(user_id, plan_ids):
        if as_utc(sub.end_date) <= now:
            if repo.transition(sub.id, SubscriptionStatus.EXPIRED, [SubscriptionStatus.ACTIVE]):
                log.info(f"Subscription #{sub.id} (user {user_id}) expired lazily at match time.")
            continue
        if active is None:
            active = sub
    return active


class MatchingService:
    def __init__(self, session_scope: SessionScope = default_session_scope, clock: Callable[[], datetime] = utcnow):
        self.session_scope = session_scope
        self.clock = clock

    def match(self, alert_id: int) -> List[MatchedUser]:
        """Appends recipient rows for newly matched users and returns them."""
        _, matched = self.match_with_configurations(alert_id)
        return matched

    def match_with_configurations(self, alert_id: int) -> Tuple[List[int], List[MatchedUser]]:
        now = self.clock()
        with self.session_scope() as session:
            alerts = AlertRepository(session)
            configs = AlertConfigurationRepository(session)
            links = TelegramLinkRepository(session)
            users = UserRepository(session)

            alert = alerts.get(alert_id)
            if alert is None:
                raise NotFoundError(f"Alert #{alert_id} not found.")

            candidates = [
                c for c in configs.list_candidates(alert.symbol, alert.strategy)
                if configuration_accepts(c, alert)
            ]
            if not candidates:
                log.info(
                    f"Alert #{alert_id}: no matching configurations for "
                    f"{alert.symbol}/{alert.timeframe}/{alert.strategy} {alert.signal.wire_name}"
                )
                return [], []

            already_recorded = alerts.recipient_user_ids(alert_id)
            seen = set()
            matched: List[MatchedUser] = []

            for config in candidates:
                plan_ids = config.plan_ids or None
                for user_id in configs.subscriber_ids(config.id):
                    if user_id in seen:
                        continue
                    user = users.find_by_id(user_id)
                    if user is None or not user.is_active:
                        continue
                    subscription = resolve_active_subscription(session, user_id, plan_ids, now)
                    if subscription is None:
                        log.debug(f"Alert #{alert_id}: user {user_id} has no active subscription for config #{config.id}")
                        continue
                    link = links.find_by_user(user_id)
                    if link is None or not link.is_reachable:
                        log.debug(f"Alert #{alert_id}: user {user_id} skipped, no reachable Telegram chat")
                        continue

                    seen.add(user_id)
                    if user_id in already_recorded:
                        continue
                    m = MatchedUser(
                        user_id=user_id,
                        subscription_id=subscription.id,
                        configuration_id=config.id,
                        chat_id=link.chat_id,
                    )
                    alerts.add_recipient(alert_id, m, now)
                    matched.append(m)

            log.info(
                f"Alert #{alert_id}: {len(candidates)} configuration(s), {len(matched)} new recipient(s)"
                + (f", {len(seen) - len(matched)} already recorded" if len(seen) > len(matched) else "")
            )
            return [c.id for c in candidates], matched

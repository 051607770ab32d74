# src/signalrelay/application/services/alert_processing_service.py
"""
AlertProcessingService - runs one stored alert through the pipeline.

    received -> processing -> match -> trades -> deliver -> processed
                                |
                                +-- matching error -> failed

`failed` is only reached when the alert never got as far as a successful
match. Anything that goes wrong after that (a trade or delivery crash,
per-recipient send failures) is appended to the alert's error list and the
alert still ends `processed`. An admin retry re-runs a failed alert from the
top, or re-delivers a processed one to the recipients nobody ever claimed.
Recipients already claimed are never sent to again.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from signalrelay.domain.entities import AlertStatus, DeliveryReport, MatchedUser
from signalrelay.domain.errors import InvalidStateError
from signalrelay.domain.value_objects import utcnow
from signalrelay.infrastructure.db.repository import AlertConfigurationRepository
from signalrelay.infrastructure.db.uow import SessionScope, session_scope as default_session_scope
from signalrelay.infrastructure.metrics import ALERTS_FINISHED
from .alert_intake_service import AlertIntakeService
from .delivery_service import DeliveryService
from .matching_service import MatchingService
from .trade_service import TradeService

log = logging.getLogger(__name__)


class AlertProcessingService:
    def __init__(
        self,
        intake: AlertIntakeService,
        matching: MatchingService,
        trades: TradeService,
        delivery: DeliveryService,
        session_scope: SessionScope = default_session_scope,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.intake = intake
        self.matching = matching
        self.trades = trades
        self.delivery = delivery
        self.session_scope = session_scope
        self.clock = clock
        self._in_flight: Dict[int, datetime] = {}

    async def process(self, alert_id: int, retry: bool = False) -> Optional[DeliveryReport]:
        """Returns the delivery report; None when the alert was not picked up or failed."""
        try:
            self.intake.mark_processing(alert_id, retry=retry)
        except InvalidStateError as e:
            log.info(f"Alert #{alert_id} not picked up: {e}")
            return None

        self._in_flight[alert_id] = self.clock()
        config_ids: List[int] = []
        try:
            config_ids, matched = self.matching.match_with_configurations(alert_id)
            log.info(f"Alert #{alert_id}: {len(matched)} new recipient(s) across {len(config_ids)} configuration(s)")

            report, completed = await self._fan_out(alert_id, matched, retry)
            self.intake.mark_processed(alert_id)
        except Exception as e:
            log.error(f"Alert #{alert_id}: processing failed: {e}", exc_info=True)
            self._finish(alert_id, config_ids, success=False)
            try:
                self.intake.mark_failed(alert_id, str(e) or e.__class__.__name__)
            except InvalidStateError:
                log.warning(f"Alert #{alert_id} left processing before it could be marked failed")
            ALERTS_FINISHED.labels(status=AlertStatus.FAILED.value).inc()
            return None
        finally:
            self._in_flight.pop(alert_id, None)

        self._finish(alert_id, config_ids, success=completed)
        ALERTS_FINISHED.labels(status=AlertStatus.PROCESSED.value).inc()
        return report

    async def _fan_out(
        self, alert_id: int, matched: List[MatchedUser], retry: bool,
    ) -> Tuple[DeliveryReport, bool]:
        """Trades then delivery; a crash here is recorded on the alert, not raised."""
        try:
            contexts = self.trades.apply_signal(alert_id, matched)
            if retry:
                recorded = self.trades.contexts_from_actions(alert_id)
                recorded.update(contexts)
                contexts = recorded
            return await self.delivery.deliver(alert_id, contexts), True
        except Exception as e:
            log.error(f"Alert #{alert_id}: delivery stage crashed after matching: {e}", exc_info=True)
            self.intake.record_error(alert_id, "delivery", str(e) or e.__class__.__name__)
            return DeliveryReport(alert_id=alert_id), False

    def _finish(self, alert_id: int, config_ids: List[int], success: bool) -> None:
        if not config_ids:
            return
        now = self.clock()
        try:
            with self.session_scope() as session:
                repo = AlertConfigurationRepository(session)
                for config_id in config_ids:
                    repo.record_alert(config_id, success, now)
        except Exception as e:
            log.error(f"Alert #{alert_id}: could not update configuration statistics: {e}", exc_info=True)

    async def retry(self, alert_id: int) -> Optional[DeliveryReport]:
        """
        Admin retry. A failed alert is processed again from the top; a processed
        alert with recipients that were never claimed is re-delivered in place.
        """
        alert = self.intake.get_alert(alert_id)
        if alert.status == AlertStatus.FAILED:
            return await self.process(alert_id, retry=True)
        unclaimed = [r for r in alert.recipients if not r.delivered and r.claimed_at is None]
        if alert.status == AlertStatus.PROCESSED and unclaimed:
            return await self.redeliver(alert_id)
        raise InvalidStateError(
            f"Alert #{alert_id} is {alert.status.value} with nothing left to deliver; "
            "only failed alerts or processed alerts with undelivered recipients can be retried.",
            current=alert.status.value,
        )

    async def redeliver(self, alert_id: int) -> DeliveryReport:
        """Delivers the recorded trade contexts to unclaimed recipients; the alert status is left alone."""
        report = await self.delivery.deliver(alert_id, self.trades.contexts_from_actions(alert_id))
        log.info(f"Alert #{alert_id} re-delivered: {report.as_dict()}")
        return report

    def stats(self, recent: int = 10) -> Dict[str, Any]:
        data = self.intake.stats(recent=recent)
        data["in_flight_ids"] = sorted(self._in_flight)
        return data

# src/signalrelay/interfaces/api/routers/admin.py
import logging
from typing import List

from fastapi import APIRouter, Depends, Query

from signalrelay.application.services import (
    AlertIntakeService, AlertProcessingService, PaymentService,
)
from signalrelay.domain.errors import SignalRelayError
from signalrelay.interfaces.api.deps import (
    get_intake_service, get_payment_service, get_processing_service, require_api_key,
)
from signalrelay.interfaces.api.errors import to_http
from signalrelay.interfaces.api.schemas import AlertOut, ApproveIn, PaymentOut, RejectIn

log = logging.getLogger(__name__)
router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_api_key)])


@router.get("/payments/pending", response_model=List[PaymentOut])
def pending_payments(
    limit: int = Query(default=50, ge=1, le=500),
    payments: PaymentService = Depends(get_payment_service),
):
    return payments.list_pending(limit)


@router.get("/payments/stats")
def payment_stats(payments: PaymentService = Depends(get_payment_service)):
    return {
        status: {"count": row["count"], "total_amount": str(row["total_amount"])}
        for status, row in payments.stats().items()
    }


@router.post("/payments/{payment_id}/approve", response_model=PaymentOut)
def approve_payment(payment_id: int, payload: ApproveIn, payments: PaymentService = Depends(get_payment_service)):
    try:
        return payments.approve(payment_id, payload.verifier_id, payload.notes)
    except SignalRelayError as e:
        raise to_http(e)


@router.post("/payments/{payment_id}/reject", response_model=PaymentOut)
def reject_payment(payment_id: int, payload: RejectIn, payments: PaymentService = Depends(get_payment_service)):
    try:
        return payments.reject(payment_id, payload.verifier_id, payload.reason, payload.notes)
    except SignalRelayError as e:
        raise to_http(e)


@router.get("/alerts/{alert_id}", response_model=AlertOut)
def get_alert(alert_id: int, intake: AlertIntakeService = Depends(get_intake_service)):
    try:
        return intake.get_alert(alert_id)
    except SignalRelayError as e:
        raise to_http(e)


@router.post("/alerts/{alert_id}/retry")
async def retry_alert(alert_id: int, processing: AlertProcessingService = Depends(get_processing_service)):
    try:
        report = await processing.retry(alert_id)
    except SignalRelayError as e:
        raise to_http(e)
    alert = processing.intake.get_alert(alert_id)
    return {
        "alertId": alert_id,
        "status": alert.status.value,
        "delivery": report.as_dict() if report is not None else None,
    }

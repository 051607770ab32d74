# src/signalrelay/interfaces/webhook/tradingview.py
"""
Webhook endpoint for TradingView alerts.

The alert is validated and persisted before the response is sent, so a 200
means it is durably stored. Matching, trade bookkeeping and delivery run
afterwards as a background task and never block TradingView's request.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from signalrelay.application.services import AlertIntakeService, AlertProcessingService
from signalrelay.domain.errors import ValidationError
from signalrelay.infrastructure.metrics import ALERTS_INGESTED, ALERTS_REJECTED
from signalrelay.interfaces.api.deps import get_intake_service, require_api_key

log = logging.getLogger(__name__)
router = APIRouter(prefix="/webhook", tags=["Webhooks"])

SIGNATURE_HEADER = "X-TradingView-Signature"


async def _run_processing(processing: AlertProcessingService, alert_id: int):
    """Background entry point; failures are recorded on the alert by the service."""
    try:
        await processing.process(alert_id)
    except Exception as e:
        log.error(f"[BG Task Alert {alert_id}]: CRITICAL FAILURE: {e}", exc_info=True)


@router.post("/tradingview")
async def tradingview_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    intake: AlertIntakeService = Depends(get_intake_service),
):
    body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADER)
    if not intake.verify_signature(body, signature):
        log.warning("Invalid TradingView signature received.")
        ALERTS_REJECTED.labels(reason="signature").inc()
        raise HTTPException(status_code=401, detail="Invalid TradingView signature")

    try:
        alert = intake.ingest(body, {
            "source": "tradingview",
            "signature": signature,
            "ip_address": request.client.host if request.client else None,
        })
    except ValidationError as e:
        log.warning(f"Rejected TradingView payload: {e}")
        ALERTS_REJECTED.labels(reason="validation").inc()
        raise HTTPException(status_code=400, detail={"message": "Invalid alert payload", "errors": e.errors})
    except Exception:
        log.exception("An internal error occurred in the TradingView webhook")
        raise HTTPException(status_code=500, detail="An internal server error occurred.")

    ALERTS_INGESTED.labels(signal=alert.signal.wire_name).inc()

    processing = (request.app.state.services or {}).get("alert_processing_service")
    if processing is not None:
        background_tasks.add_task(_run_processing, processing, alert.id)
    else:
        log.warning(f"Alert #{alert.id} stored but alert processing is not configured.")

    return {"success": True, "alertId": alert.id}


@router.get("/stats", dependencies=[Depends(require_api_key)])
async def webhook_stats(request: Request, intake: AlertIntakeService = Depends(get_intake_service)):
    processing = (request.app.state.services or {}).get("alert_processing_service")
    return processing.stats() if processing is not None else intake.stats()

# src/signalrelay/interfaces/api/routers/payments.py
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from signalrelay.application.services import PaymentService
from signalrelay.domain.entities import PaymentStatus
from signalrelay.domain.errors import SignalRelayError
from signalrelay.interfaces.api.deps import get_payment_service
from signalrelay.interfaces.api.errors import to_http
from signalrelay.interfaces.api.schemas import PaymentCreateIn, PaymentOut
from signalrelay.interfaces.telegram.formatters import build_payment_proof_notice

log = logging.getLogger(__name__)
router = APIRouter(prefix="/payments", tags=["Payments"])


@router.post("", response_model=PaymentOut, status_code=201)
def create_payment(
    payload: PaymentCreateIn,
    request: Request,
    payments: PaymentService = Depends(get_payment_service),
):
    try:
        return payments.create_payment_request(payload.user_id, payload.plan_id, {
            "note": payload.note,
            "ip_address": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
        })
    except SignalRelayError as e:
        raise to_http(e)


async def read_capped_body(request: Request, payments: PaymentService) -> bytes:
    """Reads the upload in chunks; stops as soon as it passes the proof size limit."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit():
        payments.check_proof_size(int(declared))
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        payments.check_proof_size(len(body))
    return bytes(body)


@router.post("/{payment_id}/proof", response_model=PaymentOut)
async def upload_proof(
    payment_id: int,
    request: Request,
    user_id: int = Query(...),
    content_type: str = Header(default=""),
    x_filename: Optional[str] = Header(default=None),
    payments: PaymentService = Depends(get_payment_service),
):
    """Raw file body; the MIME type comes from Content-Type, the original name from X-Filename."""
    mimetype = content_type.split(";", 1)[0].strip().lower()
    try:
        content = await read_capped_body(request, payments)
        payment = payments.submit_proof(payment_id, user_id, content, mimetype, x_filename or "")
    except SignalRelayError as e:
        raise to_http(e)

    adapter = (request.app.state.services or {}).get("channel_adapter")
    if adapter is not None and hasattr(adapter, "send_admin_alert"):
        await adapter.send_admin_alert(build_payment_proof_notice(payment))
    return payment


@router.get("/{payment_id}", response_model=PaymentOut)
def get_payment(payment_id: int, payments: PaymentService = Depends(get_payment_service)):
    try:
        return payments.get_payment(payment_id)
    except SignalRelayError as e:
        raise to_http(e)


@router.get("", response_model=List[PaymentOut])
def list_payments(
    user_id: int = Query(...),
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=10, ge=1, le=100),
    payments: PaymentService = Depends(get_payment_service),
):
    try:
        status_filter = PaymentStatus(status) if status else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown payment status '{status}'")
    return payments.list_user_payments(user_id, status=status_filter, limit=limit)

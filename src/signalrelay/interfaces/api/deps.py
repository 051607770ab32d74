# src/signalrelay/interfaces/api/deps.py

from __future__ import annotations
from fastapi import Header, HTTPException, Request

from signalrelay.config import settings
from signalrelay.application.services import (
    AlertIntakeService, AlertProcessingService, PaymentService,
)


def _service(request: Request, name: str, label: str):
    services = request.app.state.services or {}
    service = services.get(name)
    if not service:
        raise HTTPException(status_code=503, detail=f"{label} is currently unavailable.")
    return service


def get_intake_service(request: Request) -> AlertIntakeService:
    return _service(request, "alert_intake_service", "Alert intake")


def get_processing_service(request: Request) -> AlertProcessingService:
    return _service(request, "alert_processing_service", "Alert processing")


def get_payment_service(request: Request) -> PaymentService:
    return _service(request, "payment_service", "Payment service")


def require_api_key(x_api_key: str | None = Header(default=None)):
    if settings.API_KEY and x_api_key != settings.API_KEY:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return True

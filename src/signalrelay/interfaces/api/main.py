# src/signalrelay/interfaces/api/main.py
import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from signalrelay.config import settings
from signalrelay.boot import build_adapter, build_services
from signalrelay.logging_conf import setup_logging
from signalrelay.interfaces.api.metrics import router as metrics_router
from signalrelay.interfaces.api.routers import admin as admin_router
from signalrelay.interfaces.api.routers import payments as payments_router
from signalrelay.interfaces.webhook import tradingview as tradingview_router

setup_logging()
log = logging.getLogger(__name__)

# --- FastAPI App ---
app = FastAPI(title="SignalRelay API", version="1.0.0")
app.state.services = None

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in settings.CORS_ORIGINS.split(",") if o.strip()],
    allow_methods=["*"],
    allow_headers=["*"],
)

# QR images and uploaded proofs are served from disk
os.makedirs(settings.QR_CODE_DIR, exist_ok=True)
os.makedirs(settings.PROOF_UPLOAD_DIR, exist_ok=True)
app.mount("/qr-codes", StaticFiles(directory=settings.QR_CODE_DIR), name="qr-codes")
app.mount("/uploads/payment-proofs", StaticFiles(directory=settings.PROOF_UPLOAD_DIR), name="payment-proofs")


@app.on_event("startup")
async def on_startup():
    log.info("🚀 Application startup sequence initiated...")
    if app.state.services is None:
        adapter = build_adapter()
        if adapter is not None:
            try:
                await adapter.start()
            except Exception as e:
                log.critical(f"Telegram adapter failed to start: {e}", exc_info=True)
                adapter = None
        app.state.services = build_services(adapter=adapter)

    sweeper = app.state.services.get("payment_sweeper")
    if sweeper:
        sweeper.start()
    log.info("🚀 Application startup complete.")


@app.on_event("shutdown")
async def on_shutdown():
    services = app.state.services or {}
    sweeper = services.get("payment_sweeper")
    if sweeper:
        await sweeper.stop()
    adapter = services.get("channel_adapter")
    if adapter is not None and hasattr(adapter, "stop"):
        await adapter.stop()


@app.get("/")
def root(): return {"message": "SignalRelay API Running"}

@app.get("/health")
def health_check(): return {"status": "ok"}


app.include_router(tradingview_router.router)
app.include_router(payments_router.router)
app.include_router(admin_router.router)
if settings.METRICS_ENABLED:
    app.include_router(metrics_router)

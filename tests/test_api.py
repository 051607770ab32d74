import json
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from signalrelay.application.services.alert_intake_service import compute_signature
from signalrelay.boot import build_services
from signalrelay.interfaces.api.main import app

from conftest import FakeClock

HEADERS = {"X-API-Key": "test_api_key"}
PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


@pytest.fixture
def clock() -> FakeClock:
    # the app's services run on the wall clock, so seeded subscriptions must too
    return FakeClock(datetime.now(timezone.utc))


@pytest.fixture
def services(adapter):
    return build_services(adapter=adapter)


@pytest.fixture
def client(services):
    app.state.services = services
    with TestClient(app) as c:
        yield c
    app.state.services = None


def _post_alert(client, payload, headers=None):
    return client.post(
        "/webhook/tradingview", content=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json", **(headers or {})},
    )


def test_health(client):
    assert client.get("/").json() == {"message": "SignalRelay API Running"}
    assert client.get("/health").json() == {"status": "ok"}

# --- Webhook ---

def test_webhook_stores_and_delivers_alert(client, adapter, alert_payload, make_plan, make_configuration, make_subscriber):
    plan = make_plan()
    config = make_configuration()
    make_subscriber(111, plan, configuration_ids=[config])

    resp = _post_alert(client, alert_payload())
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True

    alert = client.get(f"/admin/alerts/{body['alertId']}", headers=HEADERS).json()
    assert alert["status"] == "processed"
    assert alert["signal"] == "BUY"
    assert [(r["chat_id"], r["delivered"]) for r in alert["recipients"]] == [(111, True)]
    assert alert["trade_actions"][0]["action"] == "open_trade"
    assert adapter.send_message.await_args.args[0] == 111


def test_webhook_rejects_invalid_payload(client, alert_payload):
    resp = _post_alert(client, alert_payload(signal="HOLD", price=None))
    assert resp.status_code == 400
    detail = resp.json()["detail"]
    assert detail["message"] == "Invalid alert payload"
    assert "Price is required" in detail["errors"]

    assert client.post("/webhook/tradingview", content=b"{broken").status_code == 400
    assert client.get("/webhook/stats", headers=HEADERS).json()["total"] == 0


def test_webhook_signature(client, services, alert_payload):
    services["alert_intake_service"].webhook_secret = "s3cret"
    body = json.dumps(alert_payload()).encode("utf-8")

    resp = client.post("/webhook/tradingview", content=body)
    assert resp.status_code == 401

    signed = client.post(
        "/webhook/tradingview", content=body,
        headers={"X-TradingView-Signature": compute_signature(body, "s3cret")},
    )
    assert signed.status_code == 200


def test_webhook_stats_require_api_key(client, alert_payload):
    _post_alert(client, alert_payload())
    assert client.get("/webhook/stats").status_code == 401

    stats = client.get("/webhook/stats", headers=HEADERS).json()
    assert stats["total"] == 1
    assert stats["by_status"]["processed"] == 1
    assert stats["in_flight_ids"] == []


def test_retry_only_accepts_failed_alerts(client, alert_payload):
    alert_id = _post_alert(client, alert_payload()).json()["alertId"]
    resp = client.post(f"/admin/alerts/{alert_id}/retry", headers=HEADERS)
    assert resp.status_code == 409
    assert resp.json()["detail"]["current"] == "processed"
    assert client.post("/admin/alerts/999/retry", headers=HEADERS).status_code == 404

# --- Payments ---

@pytest.fixture
def buyer_and_plan(make_user, make_plan):
    return make_user(), make_plan("Monthly", "999.00")


def _create(client, user_id, plan_id):
    resp = client.post("/payments", json={"user_id": user_id, "plan_id": plan_id})
    assert resp.status_code == 201
    return resp.json()


def _upload(client, payment_id, user_id, content=PNG, content_type="image/png"):
    return client.post(
        f"/payments/{payment_id}/proof", params={"user_id": user_id}, content=content,
        headers={"Content-Type": content_type, "X-Filename": "receipt.png"},
    )


def test_payment_lifecycle_over_http(client, adapter, buyer_and_plan):
    user, plan = buyer_and_plan
    payment = _create(client, user, plan)
    assert payment["status"] == "initiated"
    assert payment["method"] == "UPI"
    assert payment["payment_string"].startswith("upi://pay?pa=alerts%40paytm")
    assert client.get(payment["qr_code_url"]).status_code == 200

    uploaded = _upload(client, payment["id"], user)
    assert uploaded.status_code == 200
    assert uploaded.json()["status"] == "pending"
    notice = adapter.send_admin_alert.await_args.args[0]
    assert payment["transaction_id"] in notice

    pending = client.get("/admin/payments/pending", headers=HEADERS).json()
    assert [p["id"] for p in pending] == [payment["id"]]

    approved = client.post(
        f"/admin/payments/{payment['id']}/approve", json={"verifier_id": 7, "notes": "ok"}, headers=HEADERS,
    )
    assert approved.status_code == 200
    assert approved.json()["status"] == "approved"
    assert approved.json()["subscription_id"] is not None

    again = client.post(f"/admin/payments/{payment['id']}/approve", json={"verifier_id": 7}, headers=HEADERS)
    assert again.status_code == 409
    assert again.json()["detail"]["current"] == "approved"

    stats = client.get("/admin/payments/stats", headers=HEADERS).json()
    assert stats["approved"] == {"count": 1, "total_amount": "999.00"}


def test_payment_errors_over_http(client, buyer_and_plan):
    user, plan = buyer_and_plan
    assert client.post("/payments", json={"user_id": user, "plan_id": 999}).status_code == 404
    assert client.get("/payments/999").status_code == 404

    payment = _create(client, user, plan)
    bad_type = _upload(client, payment["id"], user, content=b"hello", content_type="text/plain")
    assert bad_type.status_code == 400
    assert _upload(client, payment["id"], user + 1).status_code == 404

    early = client.post(f"/admin/payments/{payment['id']}/approve", json={"verifier_id": 7}, headers=HEADERS)
    assert early.status_code == 409

    _upload(client, payment["id"], user)
    blank = client.post(
        f"/admin/payments/{payment['id']}/reject", json={"verifier_id": 7, "reason": "  "}, headers=HEADERS,
    )
    assert blank.status_code == 400

    rejected = client.post(
        f"/admin/payments/{payment['id']}/reject", json={"verifier_id": 7, "reason": "No credit seen"},
        headers=HEADERS,
    )
    assert rejected.json()["status"] == "rejected"
    assert rejected.json()["rejection_reason"] == "No credit seen"


def test_oversize_proof_is_refused_before_it_is_stored(client, services, buyer_and_plan):
    user, plan = buyer_and_plan
    payment = _create(client, user, plan)
    services["payment_service"].proof_max_bytes = 16

    resp = _upload(client, payment["id"], user, content=PNG)

    assert resp.status_code == 400
    assert "16 byte limit" in resp.json()["detail"]["message"]
    assert client.get(f"/payments/{payment['id']}").json()["status"] == "initiated"


@pytest.mark.asyncio
async def test_capped_read_stops_once_the_limit_is_passed(services):
    from types import SimpleNamespace
    from signalrelay.domain.errors import ValidationError
    from signalrelay.interfaces.api.routers.payments import read_capped_body

    payments = services["payment_service"]
    payments.proof_max_bytes = 16
    consumed = []

    async def stream():
        for _ in range(10):
            consumed.append(1)
            yield b"x" * 8

    # chunked upload: no Content-Length to check up front
    request = SimpleNamespace(headers={}, stream=stream)
    with pytest.raises(ValidationError):
        await read_capped_body(request, payments)
    assert len(consumed) == 3

    small = SimpleNamespace(headers={"content-length": "8"}, stream=lambda: _chunks(b"abcd", b"efgh"))
    assert await read_capped_body(small, payments) == b"abcdefgh"


async def _chunks(*parts):
    for part in parts:
        yield part


def test_list_user_payments(client, buyer_and_plan):
    user, plan = buyer_and_plan
    first = _create(client, user, plan)
    second = _create(client, user, plan)
    _upload(client, first["id"], user)

    listed = client.get("/payments", params={"user_id": user}).json()
    assert [p["id"] for p in listed] == [second["id"], first["id"]]
    pending = client.get("/payments", params={"user_id": user, "status": "pending"}).json()
    assert [p["id"] for p in pending] == [first["id"]]
    assert client.get("/payments", params={"user_id": user, "status": "bogus"}).status_code == 400


def test_admin_routes_require_api_key(client):
    assert client.get("/admin/payments/pending").status_code == 401
    assert client.get("/admin/payments/pending", headers={"X-API-Key": "wrong"}).status_code == 401
    assert client.post("/admin/payments/1/approve", json={"verifier_id": 1}).status_code == 401


def test_missing_services_answer_503(client, services):
    app.state.services = {}
    try:
        assert client.post("/payments", json={"user_id": 1, "plan_id": 1}).status_code == 503
    finally:
        app.state.services = services


def test_metrics_endpoint(client, alert_payload):
    _post_alert(client, alert_payload())
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "sr_alerts_ingested_total" in resp.text

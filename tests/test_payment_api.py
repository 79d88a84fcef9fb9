import sys
from pathlib import Path

from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

from payment_fixtures import add_channel, build_engine, order_request, run, sign

import paygate.main as main


def setup_client(tmp_path, monkeypatch):
    async def prepare():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        return engine

    engine = run(prepare())
    monkeypatch.setattr(main.app.state, "payment_engine", engine)
    return TestClient(main.app), engine


def create_order(client, **overrides):
    response = client.post("/api/payment/create", json=order_request(**overrides))
    assert response.status_code == 200
    return response.json()["data"]


def callback_payload(order_no, status="paid"):
    payload = {"order_no": order_no, "status": status, "trade_no": "T-1"}
    payload["sign"] = sign(payload)
    return payload


def test_create_payment_endpoint(tmp_path, monkeypatch):
    client, _ = setup_client(tmp_path, monkeypatch)

    response = client.post("/api/payment/create", json=order_request(extra_params={"plan": "pro"}))

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["order_no"].startswith("PAY")
    assert body["data"]["status"] == "processing"
    assert body["data"]["channel_code"] == "FAKE"


def test_create_payment_errors_are_structured(tmp_path, monkeypatch):
    client, _ = setup_client(tmp_path, monkeypatch)

    invalid = client.post("/api/payment/create", json=order_request(amount="0"))
    no_channel = client.post("/api/payment/create", json=order_request(currency="JPY"))
    malformed = client.post("/api/payment/create", json={"amount": "1"})

    assert invalid.status_code == 400
    assert invalid.json()["success"] is False
    assert invalid.json()["error"] == "ValidationError"
    assert no_channel.status_code == 409
    assert no_channel.json()["error"] == "ChannelUnavailable"
    assert malformed.status_code == 422


def test_callback_endpoint_answers_plain_text(tmp_path, monkeypatch):
    client, _ = setup_client(tmp_path, monkeypatch)
    order_no = create_order(client)["order_no"]

    bogus = client.post("/api/payment/callback/FAKE", json={**callback_payload(order_no), "sign": "bogus"})
    good = client.post("/api/payment/callback/FAKE", json=callback_payload(order_no))
    unknown = client.post("/api/payment/callback/NOPE", json=callback_payload(order_no))

    assert bogus.status_code == 400
    assert bogus.text == "FAIL"
    assert good.status_code == 200
    assert good.text == "SUCCESS"
    assert unknown.status_code == 400
    assert unknown.text == "FAIL"

    status = client.get(f"/api/payment/query/{order_no}").json()["data"]["status"]
    assert status == "success"


def test_form_encoded_callback_is_accepted(tmp_path, monkeypatch):
    client, _ = setup_client(tmp_path, monkeypatch)
    order_no = create_order(client)["order_no"]

    response = client.post("/api/payment/callback/FAKE", data=callback_payload(order_no))

    assert response.status_code == 200
    assert response.text == "SUCCESS"


def test_query_refund_and_sync_endpoints(tmp_path, monkeypatch):
    client, _ = setup_client(tmp_path, monkeypatch)
    order_no = create_order(client)["order_no"]

    missing = client.get("/api/payment/query/PAYNOPE")
    early_refund = client.post("/api/payment/refund", json={"order_no": order_no, "amount": "5"})
    sync = client.post(f"/api/payment/sync/{order_no}")

    assert missing.status_code == 404
    assert missing.json()["error"] == "OrderNotFound"
    assert early_refund.status_code == 409
    assert early_refund.json()["error"] == "InvalidStateTransition"
    assert sync.status_code == 200
    assert sync.json()["data"]["status"] == "processing"

    client.post("/api/payment/callback/FAKE", json=callback_payload(order_no))
    refund = client.post("/api/payment/refund", json={"order_no": order_no, "reason": "duplicate"})
    assert refund.status_code == 200
    assert refund.json()["data"]["order_status"] == "refunded"


def test_channels_and_orders_listing(tmp_path, monkeypatch):
    client, _ = setup_client(tmp_path, monkeypatch)
    created = create_order(client)
    client.post("/api/payment/callback/FAKE", json=callback_payload(created["order_no"]))

    channels = client.get("/api/payment/channels", params={"currency": "USD", "amount": "50"}).json()["data"]
    none_for_eur = client.get("/api/payment/channels", params={"currency": "EUR"}).json()["data"]
    orders = client.get("/api/payment/orders", params={"status": "success"}).json()["data"]
    order_id = orders["orders"][0]["id"]
    detail = client.get(f"/api/payment/orders/{order_id}").json()["data"]
    missing = client.get("/api/payment/orders/9999")

    assert [c["channel_code"] for c in channels] == ["FAKE"]
    assert "configs" not in channels[0]
    assert none_for_eur == []
    assert orders["total"] == 1
    assert detail["order_no"] == created["order_no"]
    assert len(detail["callbacks"]) == 1
    assert detail["transactions"][0]["type"] == "payment"
    assert missing.status_code == 404

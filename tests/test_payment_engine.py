import asyncio
import re
import sys
from decimal import Decimal
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from payment_fixtures import PAID_AT, FakePay, add_channel, build_engine, order_request, run, sign
from paygate.services.payment.alerts import AlertSink
from paygate.services.payment.errors import (
    ChannelUnavailable,
    InvalidStateTransition,
    ProviderError,
    UnsupportedOperation,
    ValidationError,
)


class BrokenPay(FakePay):
    plugin_name = "BrokenPay"

    async def create_order(self, order, channel):
        raise RuntimeError("gateway exploded")


class SlowPay(FakePay):
    plugin_name = "SlowPay"

    async def create_order(self, order, channel):
        await asyncio.sleep(5)


class NoRefundPay(FakePay):
    plugin_name = "NoRefundPay"

    async def refund(self, order, amount, reason, channel):
        raise UnsupportedOperation("refunds are manual")


def signed_callback(order_no, status="paid", **extra):
    payload = {"order_no": order_no, "status": status, "trade_no": "T-42", **extra}
    payload["sign"] = sign({k: v for k, v in payload.items()})
    return payload


async def paid_order(engine):
    created = await engine.create_payment(order_request())
    result = await engine.handle_callback("FAKE", signed_callback(created["order_no"]))
    assert result.success
    return created["order_no"]


def test_create_payment_returns_provider_artifacts(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        return await engine.create_payment(order_request(extra_params={"plan": "pro"}))

    result = run(scenario())
    assert re.fullmatch(r"PAY\d+[A-Z0-9]{6}", result["order_no"])
    assert result["merchant_order_no"] == "M-1001"
    assert result["status"] == "processing"
    assert result["gateway_order_no"] == f"GW-{result['order_no']}"
    assert result["payment_url"].endswith(result["order_no"])
    assert result["amount"] == Decimal("100.00")
    assert result["channel_code"] == "FAKE"


@pytest.mark.parametrize(
    "overrides",
    [
        {"subject": ""},
        {"merchant_order_no": None},
        {"amount": "0"},
        {"amount": "-5"},
        {"amount": "lots"},
    ],
)
def test_create_payment_rejects_bad_input(tmp_path, overrides):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        with pytest.raises(ValidationError):
            await engine.create_payment(order_request(**overrides))
        return await engine.order_manager.list_orders()

    assert run(scenario())["total"] == 0


def test_create_payment_without_eligible_channel(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        with pytest.raises(ChannelUnavailable):
            await engine.create_payment(order_request(currency="JPY"))
        with pytest.raises(ChannelUnavailable):
            await engine.create_payment(order_request(amount="5000"))
        with pytest.raises(ChannelUnavailable):
            await engine.create_payment(order_request(channel_code="NOPE"))

    run(scenario())


def test_provider_failure_leaves_order_pending(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path, adapters={"broken_pay": BrokenPay})
        await add_channel(engine, plugin_code="broken_pay")
        with pytest.raises(ProviderError):
            await engine.create_payment(order_request())
        return await engine.order_manager.list_orders()

    orders = run(scenario())
    assert orders["total"] == 1
    assert orders["orders"][0]["status"] == "pending"


def test_slow_provider_times_out(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path, adapters={"slow_pay": SlowPay}, plugin_timeout=0.05)
        await add_channel(engine, plugin_code="slow_pay")
        with pytest.raises(ProviderError, match="timed out"):
            await engine.create_payment(order_request())

    run(scenario())


def test_signed_callback_marks_order_paid(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        created = await engine.create_payment(order_request())
        result = await engine.handle_callback(
            "FAKE",
            signed_callback(created["order_no"]),
            {"method": "POST", "client_ip": "10.0.0.1", "user_agent": "fake-gateway"},
        )
        order = await engine.order_manager.get_order_by_no(created["order_no"])
        callbacks = await engine.order_manager.get_order_callbacks(order.id)
        transactions = await engine.order_manager.get_order_transactions(order.id)
        return result, order, callbacks, transactions

    result, order, callbacks, transactions = run(scenario())
    assert result.success
    assert result.response == "SUCCESS"
    assert order.status == "success"
    assert order.paid_at == PAID_AT
    assert order.gateway_trade_no == "T-42"
    assert len(callbacks) == 1
    assert callbacks[0].is_verified and callbacks[0].is_processed
    assert callbacks[0].client_ip == "10.0.0.1"
    assert [(t.type, t.status) for t in transactions] == [("payment", "success")]


def test_bogus_signature_leaves_order_untouched(tmp_path):
    sent = []

    async def sender(text):
        sent.append(text)

    async def scenario():
        engine = await build_engine(tmp_path)
        engine.alerts = AlertSink(sender)
        await add_channel(engine)
        created = await engine.create_payment(order_request())
        payload = {**signed_callback(created["order_no"]), "sign": "bogus"}
        result = await engine.handle_callback("FAKE", payload)
        await engine.alerts.drain()

        order = await engine.order_manager.get_order_by_no(created["order_no"])
        callbacks = await engine.order_manager.get_order_callbacks(order.id)
        return result, order, callbacks

    result, order, callbacks = run(scenario())
    assert not result.success
    assert result.response == "FAIL"
    assert result.error == "SignatureInvalid"
    assert order.status == "processing"
    assert order.paid_at is None
    assert len(callbacks) == 1
    assert callbacks[0].is_verified is False
    assert callbacks[0].is_processed is False
    assert len(sent) == 1


def test_replayed_callback_is_idempotent(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        created = await engine.create_payment(order_request())
        payload = signed_callback(created["order_no"])

        first = await engine.handle_callback("FAKE", payload)
        paid_at = (await engine.order_manager.get_order_by_no(created["order_no"])).paid_at
        second = await engine.handle_callback("FAKE", payload)

        order = await engine.order_manager.get_order_by_no(created["order_no"])
        transactions = await engine.order_manager.get_order_transactions(order.id)
        callbacks = await engine.order_manager.get_order_callbacks(order.id)
        return first, second, paid_at, order, transactions, callbacks

    first, second, paid_at, order, transactions, callbacks = run(scenario())
    assert first.success and second.success
    assert order.paid_at == paid_at
    assert len(transactions) == 1
    assert len(callbacks) == 2
    assert all(c.is_processed for c in callbacks)
    assert callbacks[1].process_result["changed"] is False


def test_verified_callback_that_cannot_apply_is_recorded(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        order_no = await paid_order(engine)
        # a late "failed" report for an already paid order
        result = await engine.handle_callback("FAKE", signed_callback(order_no, status="failed"))
        order = await engine.order_manager.get_order_by_no(order_no)
        callbacks = await engine.order_manager.get_order_callbacks(order.id)
        return result, order, callbacks

    result, order, callbacks = run(scenario())
    assert not result.success
    assert result.error == "InvalidStateTransition"
    assert order.status == "success"
    late = callbacks[-1]
    assert late.is_verified is True
    assert late.is_processed is False
    assert late.process_result["error"] == "InvalidStateTransition"


def test_callback_for_unknown_channel_or_order_fails(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        unknown_channel = await engine.handle_callback("NOPE", signed_callback("PAY1"))
        unknown_order = await engine.handle_callback("FAKE", signed_callback("PAY-NOT-THERE"))
        return unknown_channel, unknown_order

    unknown_channel, unknown_order = run(scenario())
    assert not unknown_channel.success
    assert unknown_channel.error == "ChannelNotFound"
    assert not unknown_order.success
    assert unknown_order.error == "OrderNotFound"


def test_callback_cannot_touch_order_of_another_channel(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine, "FAKE", priority=50)
        await add_channel(engine, "SECOND", priority=1)
        created = await engine.create_payment(order_request())
        result = await engine.handle_callback("SECOND", signed_callback(created["order_no"]))
        order = await engine.order_manager.get_order_by_no(created["order_no"])
        return result, order

    result, order = run(scenario())
    assert not result.success
    assert order.status == "processing"


def test_query_pulls_provider_status(tmp_path, monkeypatch):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        created = await engine.create_payment(order_request())
        still_open = await engine.query_order(created["order_no"])
        monkeypatch.setattr(FakePay, "query_status", "paid")
        settled = await engine.query_order(created["order_no"])
        sync = await engine.sync_order_status(created["order_no"])
        return still_open, settled, sync

    still_open, settled, sync = run(scenario())
    assert still_open["status"] == "processing"
    assert settled["status"] == "success"
    assert settled["gateway_trade_no"].startswith("Q-")
    assert settled["paid_at"] is not None
    assert sync == {
        "order_no": settled["order_no"],
        "previous_status": "success",
        "status": "success",
        "changed": False,
    }


def test_sync_pending_orders_reports_counts(tmp_path, monkeypatch):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        for i in range(3):
            await engine.create_payment(order_request(merchant_order_no=f"M-{i}"))
        monkeypatch.setattr(FakePay, "query_status", "failed")
        stats = await engine.sync_pending_orders()
        again = await engine.sync_pending_orders()
        return stats, again

    stats, again = run(scenario())
    assert stats == {"checked": 3, "updated": 3, "failed": 0}
    assert again == {"checked": 0, "updated": 0, "failed": 0}


def test_refund_on_pending_order_is_rejected(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        created = await engine.create_payment(order_request())
        with pytest.raises(InvalidStateTransition):
            await engine.refund(created["order_no"], "10.00", "changed mind")
        order = await engine.order_manager.get_order_by_no(created["order_no"])
        return await engine.order_manager.get_order_transactions(order.id)

    assert run(scenario()) == []


def test_refund_success_moves_order_to_refunded(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        order_no = await paid_order(engine)
        with pytest.raises(ValidationError):
            await engine.refund(order_no, "100.01")
        result = await engine.refund(order_no, None, "duplicate charge")
        with pytest.raises(InvalidStateTransition):
            await engine.refund(order_no)
        return result

    result = run(scenario())
    assert result["status"] == "success"
    assert result["order_status"] == "refunded"
    assert result["amount"] == Decimal("100.00")
    assert result["refund_no"].startswith("RF-")
    assert result["transaction_no"].startswith("TXN")


def test_pending_refund_keeps_order_paid(tmp_path, monkeypatch):
    async def scenario():
        engine = await build_engine(tmp_path)
        await add_channel(engine)
        order_no = await paid_order(engine)
        monkeypatch.setattr(FakePay, "refund_status", "processing")
        return await engine.refund(order_no, "10.00")

    result = run(scenario())
    assert result["status"] == "pending"
    assert result["order_status"] == "success"


def test_unsupported_refund_is_recorded_and_raised(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path, adapters={"no_refund": NoRefundPay})
        await add_channel(engine, plugin_code="no_refund")
        order_no = await paid_order(engine)
        with pytest.raises(UnsupportedOperation):
            await engine.refund(order_no, "10.00", "please")
        order = await engine.order_manager.get_order_by_no(order_no)
        transactions = await engine.order_manager.get_order_transactions(order.id)
        return order, transactions

    order, transactions = run(scenario())
    assert order.status == "success"
    refund = transactions[-1]
    assert (refund.type, refund.status, refund.error_code) == ("refund", "failed", "UnsupportedOperation")
    assert refund.amount == Decimal("10.00")


class EagerPay(FakePay):
    plugin_name = "EagerPay"

    async def create_order(self, order, channel):
        return {"gateway_order_no": "GW-1", "status": "success"}


class SloppyPay(FakePay):
    plugin_name = "SloppyPay"

    async def handle_callback(self, callback_data, channel):
        return None

    async def query_order(self, order, channel):
        return "paid"


class PickyRefundPay(FakePay):
    plugin_name = "PickyRefundPay"

    async def refund(self, order, amount, reason, channel):
        raise ValidationError("amount below provider minimum")


def test_create_result_cannot_settle_order(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path, adapters={"eager_pay": EagerPay})
        await add_channel(engine, plugin_code="eager_pay")
        created = await engine.create_payment(order_request())
        order = await engine.order_manager.get_order_by_no(created["order_no"])
        before = (order.status, order.paid_at, await engine.order_manager.get_order_transactions(order.id))

        await engine.handle_callback("FAKE", signed_callback(created["order_no"]))
        order = await engine.order_manager.get_order_by_no(created["order_no"])
        transactions = await engine.order_manager.get_order_transactions(order.id)
        return created, before, order, transactions

    created, before, order, transactions = run(scenario())
    assert created["status"] == "pending"
    assert created["gateway_order_no"] == "GW-1"
    assert before == ("pending", None, [])
    assert order.status == "success"
    assert order.paid_at == PAID_AT
    assert [t.type for t in transactions] == ["payment"]


def test_malformed_plugin_result_is_a_provider_failure(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path, adapters={"sloppy_pay": SloppyPay})
        await add_channel(engine, plugin_code="sloppy_pay")
        created = await engine.create_payment(order_request())
        result = await engine.handle_callback("FAKE", signed_callback(created["order_no"]))
        with pytest.raises(ProviderError, match="malformed"):
            await engine.query_order(created["order_no"])
        order = await engine.order_manager.get_order_by_no(created["order_no"])
        callbacks = await engine.order_manager.get_order_callbacks(order.id)
        return result, order, callbacks

    result, order, callbacks = run(scenario())
    assert not result.success
    assert result.response == "FAIL"
    assert result.error == "ProviderError"
    assert order.status == "processing"
    assert callbacks[-1].is_verified is True
    assert callbacks[-1].is_processed is False
    assert callbacks[-1].process_result["error"] == "ProviderError"


def test_any_refund_error_is_recorded(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path, adapters={"picky": PickyRefundPay})
        await add_channel(engine, plugin_code="picky")
        order_no = await paid_order(engine)
        with pytest.raises(ValidationError):
            await engine.refund(order_no, "1.00")
        order = await engine.order_manager.get_order_by_no(order_no)
        return order, await engine.order_manager.get_order_transactions(order.id)

    order, transactions = run(scenario())
    assert order.status == "success"
    refund = transactions[-1]
    assert (refund.type, refund.status, refund.error_code) == ("refund", "failed", "ValidationError")


def test_plugin_status_change_refreshes_channel_cache(tmp_path):
    async def scenario():
        engine = await build_engine(tmp_path)
        channel = await add_channel(engine)
        warm = await engine.config_manager.get_channel(channel.id)
        pid = warm.plugin_id
        await engine.plugin_manager.update_plugin_status(pid, "inactive")
        cold = await engine.config_manager.get_channel(channel.id)
        with pytest.raises(ChannelUnavailable):
            await engine.create_payment(order_request())
        return warm, cold

    warm, cold = run(scenario())
    assert warm.plugin_status == "active"
    assert cold.plugin_status == "inactive"

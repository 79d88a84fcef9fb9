"""Shared helpers for the payment tests: in-memory database, fake adapter, engine builder."""

import asyncio
import datetime
import sys
from pathlib import Path

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

sys.path.append(str(Path(__file__).resolve().parents[1]))

from paygate.db.base import Base
from paygate.plugins.base import BasePaymentPlugin
from paygate.services.payment.engine import PaymentEngine
from paygate.settings import PaymentSettings

SECRET = "fake-secret"
PAID_AT = datetime.datetime(2026, 1, 1, 12, 0, 0)


class FakePay(BasePaymentPlugin):
    plugin_name = "FakePay"
    plugin_version = "0.1.0"
    supported_methods = ("fake_wallet",)
    supported_currencies = ("USD", "EUR")
    description = "In-memory provider for tests"
    status_map = {
        "paid": "success",
        "success": "success",
        "failed": "failed",
        "waiting": "processing",
    }

    # tests patch these to steer the provider
    query_status = "waiting"
    refund_status = "success"

    async def create_order(self, order, channel):
        return {
            "gateway_order_no": f"GW-{order.order_no}",
            "payment_url": f"https://pay.example/{order.order_no}",
            "status": "processing",
        }

    async def handle_callback(self, callback_data, channel):
        status = self.map_status(callback_data.get("status"))
        return {
            "order_no": callback_data.get("order_no"),
            "status": status,
            "gateway_trade_no": callback_data.get("trade_no"),
            "paid_at": PAID_AT if status == "success" else None,
            "response": "SUCCESS",
        }

    async def verify_callback(self, callback_data, channel):
        secret = self.get_channel_config(channel, "secret_key")
        if not secret:
            return False
        params = {k: v for k, v in callback_data.items() if k != "sign"}
        return self.verify_signature(params, callback_data.get("sign"), secret, "sha256")

    async def query_order(self, order, channel):
        return {
            "status": self.map_status(self.query_status),
            "gateway_trade_no": f"Q-{order.order_no}",
            "paid_at": None,
        }

    async def refund(self, order, amount, reason, channel):
        return {"status": self.refund_status, "refund_no": f"RF-{order.order_no}"}


def sign(params: dict, secret: str = SECRET) -> str:
    return FakePay().generate_signature(params, secret, "sha256")


def setup_test_db():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)
    return engine, TestingSessionLocal


async def init_models(engine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def make_settings(tmp_path, **overrides) -> PaymentSettings:
    values = {
        "encryption_key": "test-encryption-key",
        "plugin_dir": tmp_path / "plugins",
        "plugin_timeout": 2.0,
        "jobs_enabled": False,
    }
    values.update(overrides)
    return PaymentSettings(**values)


async def build_engine(tmp_path, adapters=None, **settings_overrides) -> PaymentEngine:
    db_engine, TestingSessionLocal = setup_test_db()
    await init_models(db_engine)

    engine = PaymentEngine(TestingSessionLocal, make_settings(tmp_path, **settings_overrides))
    for code, adapter_cls in (adapters or {"fake_pay": FakePay}).items():
        engine.plugin_manager.register_adapter(code, adapter_cls)
    await engine.initialize()
    return engine


async def plugin_id(engine, code: str = "fake_pay") -> int:
    plugins = await engine.plugin_manager.get_all_plugins()
    return next(p.id for p in plugins if p.plugin_code == code)


async def add_channel(engine, channel_code: str = "FAKE", plugin_code: str = "fake_pay", **overrides):
    data = {
        "channel_code": channel_code,
        "channel_name": f"{channel_code} channel",
        "plugin_id": await plugin_id(engine, plugin_code),
        "supported_currencies": ["USD"],
        "priority": 10,
        "min_amount": "1.00",
        "max_amount": "1000.00",
        "fee_rate": "0.02",
    }
    data.update(overrides)
    channel = await engine.config_manager.create_channel(data)
    await engine.config_manager.set_channel_config(channel.id, "secret_key", SECRET, is_encrypted=True)
    return channel


def order_request(**overrides) -> dict:
    data = {
        "merchant_order_no": "M-1001",
        "amount": "100.00",
        "currency": "USD",
        "subject": "Pro plan",
    }
    data.update(overrides)
    return data


def run(coro):
    return asyncio.run(coro)

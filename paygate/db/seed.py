"""Populate the database with the default UsdtPay plugin and channel."""

import asyncio
from decimal import Decimal

from sqlalchemy import select

from paygate.db.session import DATABASE_URL, SessionLocal, init_models
from paygate.models.channel import PaymentChannel
from paygate.models.plugin import PaymentPlugin
from paygate.plugins.payment.usdt_pay import UsdtPay
from paygate.services.payment.config_manager import ConfigManager
from paygate.settings import PaymentSettings

# (key, value, encrypted, description); значения-заглушки меняет администратор
DEFAULT_CONFIGS = [
    ("merchant_id", "YOUR_MERCHANT_ID", False, "Merchant id issued by UsdtPay"),
    ("api_key", "YOUR_API_KEY", True, "API key issued by UsdtPay"),
    ("secret_key", "YOUR_SECRET_KEY", True, "Signing secret issued by UsdtPay"),
    ("gateway_url", "https://api.usdtpay.com", False, "UsdtPay gateway"),
    ("callback_url", "http://localhost:8000/api/payment/callback/UsdtPay", False, "Notify URL"),
    ("timeout", "30", False, "Request timeout, seconds"),
    ("default_protocol", "TRC20", False, "Default USDT network"),
]


async def seed(session_factory, settings: PaymentSettings) -> bool:
    """Insert defaults once. Returns False when the plugin already exists."""
    async with session_factory() as session:
        result = await session.execute(select(PaymentPlugin).filter_by(plugin_code="usdt_pay"))
        if result.scalars().first():
            return False

        info = UsdtPay().get_plugin_info()
        plugin = PaymentPlugin(
            plugin_name=info["plugin_name"],
            plugin_code="usdt_pay",
            plugin_version=info["plugin_version"],
            plugin_path=str(settings.plugin_dir / "usdt_pay.py"),
            status="active",
            description=info["description"],
            author=info["author"],
            config_schema=info["config_schema"],
            supported_methods=info["supported_methods"],
            supported_currencies=info["supported_currencies"],
            load_priority=100,
        )
        session.add(plugin)
        await session.flush()

        # Канал выключен, пока не заполнены настройки
        channel = PaymentChannel(
            channel_code="UsdtPay",
            channel_name="USDT",
            plugin_id=plugin.id,
            status="inactive",
            priority=100,
            supported_currencies=["USDT", "USD"],
            min_amount=Decimal("1.00"),
            max_amount=Decimal("50000.00"),
            fee_rate=Decimal("0.0200"),
            description="USDT payments over TRC20, ERC20 and OMNI",
        )
        session.add(channel)
        await session.commit()
        channel_id = channel.id

    config_manager = ConfigManager(session_factory, settings)
    for key, value, encrypted, description in DEFAULT_CONFIGS:
        await config_manager.set_channel_config(channel_id, key, value, encrypted, description)
    return True


async def main() -> None:
    print(f"🗂 Используется база данных: {DATABASE_URL}")
    await init_models()
    created = await seed(SessionLocal, PaymentSettings.from_env())
    if created:
        print("✅ Плагин UsdtPay и канал созданы.")
    else:
        print("ℹ️ Данные уже на месте, ничего не изменено.")


if __name__ == "__main__":
    asyncio.run(main())

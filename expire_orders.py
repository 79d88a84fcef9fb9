"""Utility script to cancel expired payment orders right now, outside the scheduler."""

import asyncio

from paygate.db.session import SessionLocal
from paygate.services.payment.order_manager import OrderManager
from paygate.settings import PaymentSettings


async def main() -> None:
    manager = OrderManager(SessionLocal, PaymentSettings.from_env())
    count = await manager.expire_orders()
    print(f"Отменено просроченных заказов: {count}")


if __name__ == "__main__":
    asyncio.run(main())

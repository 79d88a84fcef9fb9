"""Persistence of orders, ledger transactions and callback audit records.

Every status change goes through :mod:`order_states`; orders carry a version
counter so two writers racing on the same row cannot both win.
"""

import logging
import math
import secrets
import string
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload
from sqlalchemy.orm.exc import StaleDataError

from paygate.models.callback import PaymentCallback
from paygate.models.order import PaymentOrder
from paygate.models.transaction import PaymentTransaction
from paygate.services.payment.errors import ConcurrentModification, OrderNotFound, ValidationError
from paygate.services.payment.order_states import (
    CANCELLED,
    FAILED,
    OPEN_STATUSES,
    PENDING,
    PROCESSING,
    REFUNDED,
    SUCCESS,
    check_transition,
)

logger = logging.getLogger(__name__)

CATEGORY = "ORDER_MANAGER"
NUMBER_ALPHABET = string.ascii_uppercase + string.digits
MAX_NUMBER_ATTEMPTS = 5
CENT = Decimal("0.01")


def generate_number(prefix: str) -> str:
    """``prefix`` + epoch milliseconds + 6 random upper-case alphanumerics."""
    suffix = "".join(secrets.choice(NUMBER_ALPHABET) for _ in range(6))
    return f"{prefix}{int(time.time() * 1000)}{suffix}"


def json_safe(value):
    """Convert datetimes and decimals so the value fits a JSON column."""
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass
class StatusUpdate:
    order: PaymentOrder
    changed: bool
    transaction: Optional[PaymentTransaction] = None


class OrderManager:
    def __init__(self, session_factory, settings):
        self.session_factory = session_factory
        self.settings = settings

    # --- orders ---

    async def create_order(self, order_data: dict, channel) -> PaymentOrder:
        amount = Decimal(str(order_data["amount"])).quantize(CENT, rounding=ROUND_HALF_UP)
        fee_amount = (amount * channel.fee_rate).quantize(CENT, rounding=ROUND_HALF_UP)
        expired_at = datetime.utcnow() + timedelta(minutes=self.settings.order_ttl_minutes)

        for attempt in range(1, MAX_NUMBER_ATTEMPTS + 1):
            order = PaymentOrder(
                order_no=generate_number("PAY"),
                merchant_order_no=order_data["merchant_order_no"],
                channel_id=channel.id,
                user_id=order_data.get("user_id"),
                amount=amount,
                currency=order_data["currency"].upper(),
                status=PENDING,
                payment_method=order_data.get("payment_method"),
                subject=order_data["subject"],
                body=order_data.get("body"),
                notify_url=order_data.get("notify_url"),
                return_url=order_data.get("return_url"),
                extra_params=json_safe(order_data.get("extra_params") or {}),
                fee_amount=fee_amount,
                actual_amount=amount - fee_amount,
                expired_at=expired_at,
            )
            async with self.session_factory() as db:
                db.add(order)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.warning(
                        "Order number collision, regenerating",
                        extra={"category": CATEGORY, "attempt": attempt},
                    )
                    continue
                await db.refresh(order)

            logger.info(
                "Order created",
                extra={
                    "category": CATEGORY,
                    "order_no": order.order_no,
                    "merchant_order_no": order.merchant_order_no,
                    "channel_code": channel.channel_code,
                },
            )
            return order

        raise ValidationError("Could not allocate a unique order number")

    async def get_order_by_no(self, order_no: str) -> Optional[PaymentOrder]:
        async with self.session_factory() as db:
            result = await db.execute(select(PaymentOrder).filter_by(order_no=order_no))
            return result.scalars().first()

    async def get_order_by_id(self, order_id: int) -> Optional[PaymentOrder]:
        async with self.session_factory() as db:
            return await db.get(PaymentOrder, order_id)

    async def get_order_by_merchant_order_no(
        self, merchant_order_no: str, channel_id: Optional[int] = None
    ) -> Optional[PaymentOrder]:
        query = select(PaymentOrder).filter_by(merchant_order_no=merchant_order_no)
        if channel_id is not None:
            query = query.filter_by(channel_id=channel_id)
        async with self.session_factory() as db:
            result = await db.execute(query.order_by(PaymentOrder.id.desc()))
            return result.scalars().first()

    async def list_orders(self, filters: Optional[dict] = None, page: int = 1, limit: int = 20) -> dict:
        filters = filters or {}
        page = max(int(page), 1)
        limit = min(max(int(limit), 1), 100)

        conditions = []
        for key in ("status", "channel_id", "user_id", "merchant_order_no"):
            if filters.get(key) is not None:
                conditions.append(getattr(PaymentOrder, key) == filters[key])
        if filters.get("start_date"):
            conditions.append(PaymentOrder.created_at >= filters["start_date"])
        if filters.get("end_date"):
            conditions.append(PaymentOrder.created_at <= filters["end_date"])

        async with self.session_factory() as db:
            total = await db.scalar(select(func.count(PaymentOrder.id)).filter(*conditions))
            result = await db.execute(
                select(PaymentOrder)
                .filter(*conditions)
                .order_by(PaymentOrder.created_at.desc(), PaymentOrder.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            )
            orders = result.scalars().all()

        return {
            "orders": [o.to_dict() for o in orders],
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    async def get_order_detail(self, order_id: int) -> dict:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentOrder)
                .options(
                    selectinload(PaymentOrder.transactions),
                    selectinload(PaymentOrder.callbacks),
                    selectinload(PaymentOrder.channel),
                )
                .filter(PaymentOrder.id == order_id)
            )
            order = result.scalars().first()

        if order is None:
            raise OrderNotFound(f"Order not found: {order_id}", order_id=order_id)

        data = order.to_dict()
        data["channel_code"] = order.channel.channel_code if order.channel else None
        data["transactions"] = [t.to_dict() for t in order.transactions]
        data["callbacks"] = [c.to_dict() for c in order.callbacks]
        return data

    async def get_order_transactions(self, order_id: int) -> List[PaymentTransaction]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentTransaction).filter_by(order_id=order_id).order_by(PaymentTransaction.id)
            )
            return result.scalars().all()

    async def get_order_callbacks(self, order_id: int) -> List[PaymentCallback]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentCallback).filter_by(order_id=order_id).order_by(PaymentCallback.id)
            )
            return result.scalars().all()

    # --- status changes ---

    async def attach_gateway_result(self, order_id: int, result: dict) -> PaymentOrder:
        """Store the provider identifiers returned by order creation."""
        async with self.session_factory() as db:
            order = await db.get(PaymentOrder, order_id)
            if order is None:
                raise OrderNotFound(f"Order not found: {order_id}", order_id=order_id)

            if result.get("gateway_order_no"):
                order.gateway_order_no = result["gateway_order_no"]
            # success и failed приходят только через колбэк или запрос статуса
            target = result.get("status")
            if target == PROCESSING and order.status != PROCESSING:
                check_transition(order.status, target, order.order_no)
                order.status = target
            elif target and target not in (PENDING, PROCESSING):
                logger.warning(
                    "Ignoring status returned by order creation",
                    extra={"category": CATEGORY, "order_no": order.order_no, "status": target},
                )

            await self._commit(db, order.order_no)
        return order

    async def apply_status(
        self,
        order_no: str,
        result: dict,
        callback_id: Optional[int] = None,
        channel_id: Optional[int] = None,
    ) -> StatusUpdate:
        """Move an order to the status reported by the provider.

        A ``pending`` report, or one matching the current status, changes
        nothing. Entering ``success`` or ``failed`` appends a payment
        transaction. When ``callback_id`` is given the callback record is
        marked processed in the same database transaction.
        """
        async with self.session_factory() as db:
            result_query = await db.execute(select(PaymentOrder).filter_by(order_no=order_no))
            order = result_query.scalars().first()
            if order is None:
                raise OrderNotFound(f"Order not found: {order_no}", order_no=order_no)
            if channel_id is not None and order.channel_id != channel_id:
                raise ValidationError(
                    f"Order {order_no} does not belong to this channel", order_no=order_no
                )

            target = result.get("status") or PENDING
            transaction = None
            changed = target not in (PENDING, order.status)
            if changed:
                check_transition(order.status, target, order.order_no)
                previous = order.status
                order.status = target
                if result.get("gateway_trade_no"):
                    order.gateway_trade_no = result["gateway_trade_no"]
                if target == SUCCESS and order.paid_at is None:
                    order.paid_at = result.get("paid_at") or datetime.utcnow()
                if target in (SUCCESS, FAILED):
                    transaction = self._new_transaction(
                        order,
                        "payment",
                        amount=order.amount,
                        status=target,
                        gateway_transaction_no=result.get("gateway_trade_no"),
                        gateway_response=result,
                    )
                    db.add(transaction)
                logger.info(
                    "Order status changed",
                    extra={
                        "category": CATEGORY,
                        "order_no": order.order_no,
                        "from_status": previous,
                        "to_status": target,
                    },
                )

            if callback_id is not None:
                callback = await db.get(PaymentCallback, callback_id)
                if callback is not None:
                    callback.order_id = order.id
                    callback.is_processed = True
                    callback.process_result = json_safe(
                        {"success": True, "status": target, "changed": changed}
                    )

            await self._commit(db, order.order_no)
        return StatusUpdate(order=order, changed=changed, transaction=transaction)

    async def record_refund(
        self,
        order_no: str,
        amount: Decimal,
        status: str,
        refund_no: Optional[str] = None,
        gateway_response: Optional[dict] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> StatusUpdate:
        """Append a refund transaction; a successful one moves the order to refunded."""
        async with self.session_factory() as db:
            result = await db.execute(select(PaymentOrder).filter_by(order_no=order_no))
            order = result.scalars().first()
            if order is None:
                raise OrderNotFound(f"Order not found: {order_no}", order_no=order_no)

            changed = status == SUCCESS
            if changed:
                check_transition(order.status, REFUNDED, order.order_no)
                order.status = REFUNDED

            transaction = self._new_transaction(
                order,
                "refund",
                amount=amount,
                status=status,
                gateway_transaction_no=refund_no,
                gateway_response=gateway_response,
                error_code=error_code,
                error_message=error_message,
            )
            db.add(transaction)
            await self._commit(db, order.order_no)

        logger.info(
            "Refund recorded",
            extra={
                "category": CATEGORY,
                "order_no": order_no,
                "transaction_no": transaction.transaction_no,
                "status": status,
            },
        )
        return StatusUpdate(order=order, changed=changed, transaction=transaction)

    async def expire_orders(self, now: Optional[datetime] = None) -> int:
        """Cancel every open order whose expiry has passed. Returns the count."""
        now = now or datetime.utcnow()
        async with self.session_factory() as db:
            result = await db.execute(
                update(PaymentOrder)
                .where(PaymentOrder.status.in_(OPEN_STATUSES), PaymentOrder.expired_at < now)
                .values(status=CANCELLED, version=PaymentOrder.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount:
            logger.info(
                "Expired orders cancelled",
                extra={"category": CATEGORY, "count": result.rowcount},
            )
        return result.rowcount

    async def find_orders_to_sync(self, window_hours: int, limit: int) -> List[PaymentOrder]:
        since = datetime.utcnow() - timedelta(hours=window_hours)
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentOrder)
                .filter(PaymentOrder.status.in_(OPEN_STATUSES), PaymentOrder.created_at >= since)
                .order_by(PaymentOrder.created_at.asc())
                .limit(limit)
            )
            return result.scalars().all()

    # --- callbacks ---

    async def log_callback(self, channel_code: str, callback_data: dict, request_meta: Optional[dict] = None) -> PaymentCallback:
        request_meta = request_meta or {}
        async with self.session_factory() as db:
            order_id = None
            if callback_data.get("order_no"):
                order_id = await db.scalar(
                    select(PaymentOrder.id).filter_by(order_no=str(callback_data["order_no"]))
                )

            callback = PaymentCallback(
                order_id=order_id,
                channel_code=channel_code,
                callback_type=request_meta.get("callback_type") or "notify",
                request_method=request_meta.get("method"),
                request_headers=json_safe(request_meta.get("headers") or {}),
                request_body=json_safe(callback_data),
                request_params=json_safe(request_meta.get("params") or {}),
                client_ip=request_meta.get("client_ip"),
                user_agent=request_meta.get("user_agent"),
            )
            db.add(callback)
            await db.commit()
            await db.refresh(callback)
        return callback

    async def mark_callback_verified(self, callback_id: int, verified: bool) -> None:
        async with self.session_factory() as db:
            callback = await db.get(PaymentCallback, callback_id)
            if callback is None:
                return
            callback.is_verified = verified
            if not verified:
                callback.process_result = {"success": False, "error": "signature verification failed"}
            await db.commit()

    async def record_callback_failure(self, callback_id: int, error: Exception) -> None:
        async with self.session_factory() as db:
            callback = await db.get(PaymentCallback, callback_id)
            if callback is None:
                return
            callback.is_processed = False
            callback.process_result = {
                "success": False,
                "error": type(error).__name__,
                "message": str(error),
            }
            await db.commit()

    # --- internals ---

    def _new_transaction(self, order: PaymentOrder, transaction_type: str, amount, status: str, **fields) -> PaymentTransaction:
        return PaymentTransaction(
            transaction_no=generate_number("TXN"),
            order_id=order.id,
            type=transaction_type,
            amount=amount,
            currency=order.currency,
            status=status,
            gateway_transaction_no=fields.get("gateway_transaction_no"),
            gateway_response=json_safe(fields.get("gateway_response") or {}),
            error_code=fields.get("error_code"),
            error_message=fields.get("error_message"),
            processed_at=datetime.utcnow() if status != PENDING else None,
        )

    async def _commit(self, db, order_no: str) -> None:
        try:
            await db.commit()
        except StaleDataError as exc:
            await db.rollback()
            logger.warning(
                "Concurrent order update rejected",
                extra={"category": CATEGORY, "order_no": order_no},
            )
            raise ConcurrentModification(
                f"Order {order_no} was modified concurrently", order_no=order_no
            ) from exc

"""Payment engine: create, callback, query and refund workflows.

The engine composes the plugin manager, the channel resolver and the order
manager. It owns no state of its own besides the initialization flag; all
order data lives in the database.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional

from paygate.services.payment.alerts import AlertSink
from paygate.services.payment.config_manager import ConfigManager
from paygate.services.payment.errors import (
    ChannelNotFound,
    OrderNotFound,
    PaymentError,
    ProviderError,
    SignatureInvalid,
    ValidationError,
)
from paygate.services.payment.order_manager import OrderManager
from paygate.services.payment.order_states import FAILED, OPEN_STATUSES, PENDING, REFUNDED, SUCCESS, check_transition
from paygate.services.payment.plugin_manager import PluginManager

logger = logging.getLogger(__name__)

CATEGORY = "PAYMENT_ENGINE"
REQUIRED_ORDER_FIELDS = ("merchant_order_no", "amount", "currency", "subject")
REFUND_STATUSES = {"success": SUCCESS, "pending": PENDING, "processing": PENDING}


@dataclass
class CallbackResult:
    success: bool
    response: str
    order_no: Optional[str] = None
    status: Optional[str] = None
    error: Optional[str] = None


class PaymentEngine:
    def __init__(self, session_factory, settings, alerts: Optional[AlertSink] = None):
        self.settings = settings
        self.alerts = alerts or AlertSink()
        self.plugin_manager = PluginManager(session_factory, settings, self.alerts)
        self.config_manager = ConfigManager(session_factory, settings)
        # каналы кэшируют статус своего плагина
        self.plugin_manager.status_listeners.append(lambda plugin_id: self.config_manager.clear_cache())
        self.order_manager = OrderManager(session_factory, settings)
        self.initialized = False
        self._init_lock = asyncio.Lock()

    async def initialize(self) -> None:
        async with self._init_lock:
            if self.initialized:
                return
            logger.info("Initializing payment engine", extra={"category": CATEGORY})
            await self.plugin_manager.initialize()
            await self.config_manager.initialize()
            self.initialized = True
            logger.info("Payment engine initialized", extra={"category": CATEGORY})

    async def shutdown(self) -> None:
        await self.plugin_manager.shutdown()
        await self.alerts.drain()
        self.initialized = False

    async def _ensure_initialized(self) -> None:
        if not self.initialized:
            await self.initialize()

    # --- create ---

    def _validate_order_data(self, order_data: dict) -> dict:
        missing = [key for key in REQUIRED_ORDER_FIELDS if order_data.get(key) in (None, "")]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)

        try:
            amount = Decimal(str(order_data["amount"]))
        except (InvalidOperation, ValueError):
            raise ValidationError("amount must be a number")
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("amount must be greater than zero")

        return {**order_data, "amount": amount, "currency": str(order_data["currency"]).upper()}

    async def create_payment(self, order_data: dict) -> dict:
        await self._ensure_initialized()
        data = self._validate_order_data(order_data)

        channel = await self.config_manager.select_channel(
            {
                "currency": data["currency"],
                "amount": data["amount"],
                "payment_method": data.get("payment_method"),
            },
            channel_code=data.get("channel_code"),
        )
        plugin = await self.plugin_manager.get_plugin(channel.plugin_id)
        order = await self.order_manager.create_order(data, channel)

        try:
            result = await self._call_plugin("create_order", plugin.create_order(order, channel), order.order_no)
            order = await self.order_manager.attach_gateway_result(order.id, result)
        except PaymentError as exc:
            # Заказ остаётся в pending, его закроет очистка по таймауту
            logger.error(
                "Payment creation failed",
                extra={"category": CATEGORY, "order_no": order.order_no, "error": str(exc)},
            )
            raise

        logger.info(
            "Payment created",
            extra={"category": CATEGORY, "order_no": order.order_no, "channel_code": channel.channel_code},
        )
        return {
            **result,
            "order_no": order.order_no,
            "merchant_order_no": order.merchant_order_no,
            "amount": order.amount,
            "currency": order.currency,
            "status": order.status,
            "channel_code": channel.channel_code,
            "gateway_order_no": order.gateway_order_no,
            "expired_at": order.expired_at,
        }

    # --- callback ---

    async def handle_callback(
        self, channel_code: str, callback_data: dict, request_meta: Optional[dict] = None
    ) -> CallbackResult:
        """Process a provider notification. Never raises on provider-facing errors."""
        await self._ensure_initialized()

        channel = await self.config_manager.get_channel_by_code(channel_code)
        if channel is None:
            logger.warning("Callback for unknown channel", extra={"category": CATEGORY, "channel_code": channel_code})
            return CallbackResult(False, "FAIL", error=ChannelNotFound.__name__)
        try:
            plugin = await self.plugin_manager.get_plugin(channel.plugin_id)
        except PaymentError as exc:
            logger.error(
                "Callback plugin unavailable",
                extra={"category": CATEGORY, "channel_code": channel_code, "error": str(exc)},
            )
            return CallbackResult(False, "FAIL", error=type(exc).__name__)

        callback = await self.order_manager.log_callback(channel_code, callback_data, request_meta)

        try:
            verified = await self._call_plugin("verify_callback", plugin.verify_callback(callback_data, channel))
        except PaymentError as exc:
            logger.error(
                "Callback verification errored",
                extra={"category": CATEGORY, "callback_id": callback.id, "error": str(exc)},
            )
            verified = False
        await self.order_manager.mark_callback_verified(callback.id, bool(verified))

        if not verified:
            error = SignatureInvalid("Callback signature verification failed", channel_code=channel_code)
            logger.warning(
                error.message,
                extra={
                    "category": CATEGORY,
                    "callback_id": callback.id,
                    "channel_code": channel_code,
                    "order_no": callback_data.get("order_no"),
                },
            )
            self.alerts.send(
                f"Payment callback with invalid signature on {channel_code}, callback #{callback.id}"
            )
            return CallbackResult(False, "FAIL", order_no=callback_data.get("order_no"), error=type(error).__name__)

        order_no = callback_data.get("order_no")
        try:
            result = await self._call_plugin(
                "handle_callback", plugin.handle_callback(callback_data, channel), order_no
            )
            order_no = result.get("order_no")
            if not order_no:
                raise ProviderError("Plugin callback result has no order_no")
            update = await self.order_manager.apply_status(
                order_no, result, callback_id=callback.id, channel_id=channel.id
            )
        except PaymentError as exc:
            logger.error(
                "Callback processing failed",
                extra={
                    "category": CATEGORY,
                    "callback_id": callback.id,
                    "order_no": order_no,
                    "error": str(exc),
                },
            )
            await self.order_manager.record_callback_failure(callback.id, exc)
            return CallbackResult(False, "FAIL", order_no=order_no, error=type(exc).__name__)

        logger.info(
            "Callback processed",
            extra={
                "category": CATEGORY,
                "callback_id": callback.id,
                "order_no": order_no,
                "status": update.order.status,
                "changed": update.changed,
            },
        )
        return CallbackResult(True, result.get("response") or "SUCCESS", order_no=order_no, status=update.order.status)

    # --- query / sync ---

    async def _load_order(self, order_no: str):
        order = await self.order_manager.get_order_by_no(order_no)
        if order is None:
            raise OrderNotFound(f"Order not found: {order_no}", order_no=order_no)
        return order

    async def _order_context(self, order):
        channel = await self.config_manager.get_channel(order.channel_id)
        if channel is None:
            raise ChannelNotFound(f"Channel not found: {order.channel_id}", channel_id=order.channel_id)
        plugin = await self.plugin_manager.get_plugin(channel.plugin_id)
        return channel, plugin

    async def query_order(self, order_no: str) -> dict:
        """Return the order, refreshing open orders from the provider first."""
        await self._ensure_initialized()
        order = await self._load_order(order_no)

        if order.status in OPEN_STATUSES:
            channel, plugin = await self._order_context(order)
            result = await self._call_plugin("query_order", plugin.query_order(order, channel), order_no)
            order = (await self.order_manager.apply_status(order_no, result)).order

        return order.to_dict()

    async def sync_order_status(self, order_no: str) -> dict:
        await self._ensure_initialized()
        order = await self._load_order(order_no)
        previous = order.status
        if previous not in OPEN_STATUSES:
            return {"order_no": order_no, "previous_status": previous, "status": previous, "changed": False}

        channel, plugin = await self._order_context(order)
        result = await self._call_plugin("query_order", plugin.query_order(order, channel), order_no)
        update = await self.order_manager.apply_status(order_no, result)
        return {
            "order_no": order_no,
            "previous_status": previous,
            "status": update.order.status,
            "changed": update.changed,
        }

    async def sync_pending_orders(self) -> dict:
        """Reconcile recent open orders with their providers."""
        await self._ensure_initialized()
        orders = await self.order_manager.find_orders_to_sync(
            self.settings.sync_window_hours, self.settings.sync_batch_size
        )
        stats = {"checked": 0, "updated": 0, "failed": 0}
        for order in orders:
            stats["checked"] += 1
            try:
                outcome = await self.sync_order_status(order.order_no)
            except PaymentError as exc:
                stats["failed"] += 1
                logger.warning(
                    "Order sync failed",
                    extra={"category": CATEGORY, "order_no": order.order_no, "error": str(exc)},
                )
                continue
            if outcome["changed"]:
                stats["updated"] += 1

        logger.info("Pending orders synced", extra={"category": CATEGORY, **stats})
        return stats

    async def expire_orders(self) -> int:
        return await self.order_manager.expire_orders()

    # --- refund ---

    async def refund(self, order_no: str, amount=None, reason: str = "") -> dict:
        await self._ensure_initialized()
        order = await self._load_order(order_no)
        check_transition(order.status, REFUNDED, order_no)

        if amount is None:
            refund_amount = Decimal(str(order.amount))
        else:
            try:
                refund_amount = Decimal(str(amount))
            except (InvalidOperation, ValueError):
                raise ValidationError("amount must be a number")
        if not refund_amount.is_finite() or refund_amount <= 0 or refund_amount > order.amount:
            raise ValidationError("Refund amount must be positive and not exceed the order amount")

        channel, plugin = await self._order_context(order)
        try:
            result = await self._call_plugin(
                "refund", plugin.refund(order, refund_amount, reason, channel), order_no
            )
        except PaymentError as exc:
            await self.order_manager.record_refund(
                order_no,
                refund_amount,
                FAILED,
                error_code=type(exc).__name__,
                error_message=exc.message,
            )
            raise

        status = REFUND_STATUSES.get(str(result.get("status", "")).lower(), FAILED)
        update = await self.order_manager.record_refund(
            order_no,
            refund_amount,
            status,
            refund_no=result.get("refund_no"),
            gateway_response=result,
        )
        logger.info(
            "Refund processed",
            extra={"category": CATEGORY, "order_no": order_no, "status": status},
        )
        return {
            "order_no": order_no,
            "refund_no": result.get("refund_no"),
            "transaction_no": update.transaction.transaction_no,
            "amount": refund_amount,
            "status": status,
            "order_status": update.order.status,
        }

    # --- channels ---

    async def get_available_channels(self, filters: Optional[dict] = None) -> list:
        await self._ensure_initialized()
        channels = await self.config_manager.get_available_channels(filters)
        return [channel.to_public_dict() for channel in channels]

    # --- internals ---

    async def _call_plugin(self, operation: str, call, order_no: Optional[str] = None):
        timeout = self.settings.plugin_timeout
        try:
            result = await asyncio.wait_for(call, timeout=timeout)
            if operation != "verify_callback" and not isinstance(result, dict):
                raise ProviderError(
                    f"Plugin {operation} returned a malformed response: {type(result).__name__}",
                    order_no=order_no,
                )
            return result
        except PaymentError:
            raise
        except asyncio.TimeoutError as exc:
            raise ProviderError(f"Plugin {operation} timed out after {timeout}s", order_no=order_no) from exc
        except Exception as exc:
            logger.exception(
                "Plugin call raised",
                extra={"category": CATEGORY, "operation": operation, "order_no": order_no},
            )
            raise ProviderError(f"Plugin {operation} failed: {exc}", order_no=order_no) from exc

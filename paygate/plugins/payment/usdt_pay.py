"""UsdtPay adapter: USDT payments over TRC20, ERC20 and OMNI.

Reference implementation of the plugin contract against a generic JSON
gateway. Refunds on chain are manual, so ``refund`` is not supported.
"""

import time
from datetime import datetime

from paygate.plugins.base import BasePaymentPlugin
from paygate.services.payment.errors import ProviderError, UnsupportedOperation


class UsdtPay(BasePaymentPlugin):
    plugin_name = "UsdtPay"
    plugin_version = "1.0.0"
    supported_methods = ("usdt_trc20", "usdt_erc20", "usdt_omni")
    supported_currencies = ("USDT", "USD")
    description = "USDT payments, TRC20 / ERC20 / OMNI protocols"
    author = "Payment Team"
    config_schema = {
        "merchant_id": {"type": "string", "required": True, "encrypted": False, "description": "Merchant ID"},
        "api_key": {"type": "string", "required": True, "encrypted": True, "description": "API key"},
        "secret_key": {"type": "string", "required": True, "encrypted": True, "description": "Signing secret"},
        "gateway_url": {
            "type": "string",
            "required": True,
            "encrypted": False,
            "description": "Gateway base URL",
            "default": "https://api.usdtpay.com",
        },
        "callback_url": {"type": "string", "required": True, "encrypted": False, "description": "Notify URL"},
        "sign_type": {
            "type": "string",
            "required": False,
            "encrypted": False,
            "description": "Signature digest",
            "default": "sha256",
            "options": ["md5", "sha1", "sha256"],
        },
        "timeout": {
            "type": "number",
            "required": False,
            "encrypted": False,
            "description": "Request timeout, seconds",
            "default": 30,
        },
        "default_protocol": {
            "type": "string",
            "required": False,
            "encrypted": False,
            "description": "Default USDT protocol",
            "default": "TRC20",
            "options": ["TRC20", "ERC20", "OMNI"],
        },
    }

    status_map = {
        "success": "success",
        "paid": "success",
        "failed": "failed",
        "expired": "failed",
        "pending": "processing",
        "processing": "processing",
    }

    def _credentials(self, channel) -> dict:
        creds = {
            "merchant_id": self.get_channel_config(channel, "merchant_id"),
            "api_key": self.get_channel_config(channel, "api_key"),
            "secret_key": self.get_channel_config(channel, "secret_key"),
            "gateway_url": self.get_channel_config(channel, "gateway_url"),
        }
        missing = [key for key, value in creds.items() if not value]
        if missing:
            raise ProviderError(f"UsdtPay configuration is incomplete: {', '.join(missing)}")
        creds["gateway_url"] = creds["gateway_url"].rstrip("/")
        return creds

    def _sign_type(self, channel) -> str:
        return self.get_channel_config(channel, "sign_type", "sha256")

    def _timeout(self, channel) -> float:
        return float(self.get_channel_config(channel, "timeout", 30))

    def _protocol(self, order, channel) -> str:
        # usdt_trc20 -> TRC20
        if order.payment_method:
            return order.payment_method.rsplit("_", 1)[-1].upper()
        return self.get_channel_config(channel, "default_protocol", "TRC20")

    async def create_order(self, order, channel) -> dict:
        self.log("info", "Creating UsdtPay order", order_no=order.order_no, amount=str(order.amount))
        creds = self._credentials(channel)

        params = {
            "merchant_id": creds["merchant_id"],
            "order_no": order.order_no,
            "amount": self.format_amount(order.amount, 2),
            "currency": order.currency,
            "subject": order.subject,
            "body": order.body or order.subject,
            "protocol": self._protocol(order, channel),
            "notify_url": self.get_channel_config(channel, "callback_url", ""),
            "return_url": order.return_url or "",
            "timestamp": int(time.time()),
            "nonce": self.generate_random_string(16),
        }
        params["sign"] = self.generate_signature(params, creds["secret_key"], self._sign_type(channel))

        response = await self.http_request(
            f"{creds['gateway_url']}/api/payment/create",
            params,
            headers={"Authorization": f"Bearer {creds['api_key']}"},
            timeout=self._timeout(channel),
        )
        if not response["success"]:
            raise ProviderError(f"UsdtPay API request failed: HTTP {response['status']}")

        data = response["data"] or {}
        if data.get("code") != 0:
            raise ProviderError(f"UsdtPay rejected the order: {data.get('message')}")

        result = data.get("data") or {}
        self.log("info", "UsdtPay order created", order_no=order.order_no, gateway_order_no=result.get("order_id"))
        return {
            "gateway_order_no": result.get("order_id"),
            "payment_url": result.get("payment_url"),
            "qr_code": result.get("qr_code"),
            "wallet_address": result.get("wallet_address"),
            "amount_usdt": result.get("amount_usdt"),
            "protocol": result.get("protocol"),
            "expires_at": result.get("expires_at"),
            "status": "processing",
        }

    async def handle_callback(self, callback_data: dict, channel) -> dict:
        if not callback_data.get("order_no") or not callback_data.get("status"):
            raise ProviderError("UsdtPay callback is missing order_no or status")

        status = self.map_status(callback_data["status"])
        paid_at = None
        if status == "success":
            paid_ts = callback_data.get("paid_at")
            paid_at = datetime.utcfromtimestamp(int(paid_ts)) if paid_ts else datetime.utcnow()

        self.log("info", "UsdtPay callback mapped", order_no=callback_data["order_no"], status=status)
        return {
            "order_no": callback_data["order_no"],
            "status": status,
            "gateway_trade_no": callback_data.get("trade_no") or callback_data.get("transaction_id"),
            "paid_at": paid_at,
            "response": "SUCCESS",
        }

    async def verify_callback(self, callback_data: dict, channel) -> bool:
        secret_key = self.get_channel_config(channel, "secret_key")
        if not secret_key:
            self.log("error", "UsdtPay secret_key is not configured")
            return False

        signature = callback_data.get("sign")
        if not signature:
            self.log("warning", "UsdtPay callback has no signature")
            return False

        params = {key: value for key, value in callback_data.items() if key != "sign"}
        is_valid = self.verify_signature(params, signature, secret_key, self._sign_type(channel))
        self.log("info", "UsdtPay signature checked", order_no=callback_data.get("order_no"), is_valid=is_valid)
        return is_valid

    async def query_order(self, order, channel) -> dict:
        creds = self._credentials(channel)
        params = {
            "merchant_id": creds["merchant_id"],
            "order_no": order.order_no,
            "timestamp": int(time.time()),
            "nonce": self.generate_random_string(16),
        }
        params["sign"] = self.generate_signature(params, creds["secret_key"], self._sign_type(channel))

        response = await self.http_request(
            f"{creds['gateway_url']}/api/payment/query",
            params,
            headers={"Authorization": f"Bearer {creds['api_key']}"},
            timeout=self._timeout(channel),
        )
        data = response["data"] or {}
        if not response["success"] or data.get("code") != 0:
            raise ProviderError(f"UsdtPay query failed: {data.get('message') or 'network error'}")

        info = data.get("data") or {}
        status = self.map_status(info.get("status", ""))
        paid_at = None
        if status == "success" and info.get("paid_at"):
            paid_at = datetime.utcfromtimestamp(int(info["paid_at"]))

        self.log("info", "UsdtPay order queried", order_no=order.order_no, status=status)
        return {"status": status, "gateway_trade_no": info.get("trade_no"), "paid_at": paid_at}

    async def refund(self, order, amount, reason: str, channel) -> dict:
        self.log("warning", "UsdtPay refund requested", order_no=order.order_no, amount=str(amount))
        raise UnsupportedOperation("USDT payments cannot be refunded automatically, contact support")

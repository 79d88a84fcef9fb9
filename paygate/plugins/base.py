"""Contract every payment provider adapter implements.

Adapters translate the canonical order/callback vocabulary to one provider.
They never touch storage: everything they need arrives as arguments and
everything they learn goes back as a plain dict, persisted by the engine.
Instances are cached process-wide and shared by concurrent requests, so an
adapter must not keep per-call state on ``self``.
"""

import hashlib
import hmac
import logging
import secrets
import string
from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx

from paygate.services.payment.errors import ProviderError

logger = logging.getLogger(__name__)

REQUIRED_METHODS = ("create_order", "handle_callback", "verify_callback", "query_order", "refund")

DEFAULT_CONFIG_SCHEMA = {
    "api_key": {"type": "string", "required": True, "encrypted": True, "description": "API key"},
    "secret_key": {"type": "string", "required": True, "encrypted": True, "description": "Signing secret"},
    "gateway_url": {"type": "string", "required": True, "encrypted": False, "description": "Gateway base URL"},
    "timeout": {
        "type": "number",
        "required": False,
        "encrypted": False,
        "description": "Request timeout, seconds",
        "default": 30,
    },
}


def validate_plugin_interface(plugin) -> None:
    """Raise ``TypeError`` unless ``plugin`` exposes the whole capability set."""
    missing = [name for name in REQUIRED_METHODS if not callable(getattr(plugin, name, None))]
    if missing:
        raise TypeError(f"Plugin is missing required methods: {', '.join(missing)}")


class BasePaymentPlugin(ABC):
    plugin_name = "BasePaymentPlugin"
    plugin_version = "1.0.0"
    supported_methods: tuple = ()
    supported_currencies: tuple = ()
    description = "Base payment plugin"
    author = "System"
    config_schema: Dict[str, Dict[str, Any]] = DEFAULT_CONFIG_SCHEMA

    # provider status -> canonical order status
    status_map: Dict[str, str] = {}

    # Replaced in tests with httpx.MockTransport.
    transport: Optional[httpx.AsyncBaseTransport] = None

    def get_plugin_info(self) -> dict:
        return {
            "plugin_name": self.plugin_name,
            "plugin_version": self.plugin_version,
            "supported_methods": list(self.supported_methods),
            "supported_currencies": list(self.supported_currencies),
            "description": self.description,
            "author": self.author,
            "config_schema": self.config_schema,
        }

    async def initialize(self) -> None:
        self.log("info", f"Plugin {self.plugin_name} initialized")

    async def destroy(self) -> None:
        self.log("info", f"Plugin {self.plugin_name} destroyed")

    @abstractmethod
    async def create_order(self, order, channel) -> dict:
        """Open the payment at the provider.

        Returns at least ``gateway_order_no`` and ``status``; any other keys
        (``payment_url``, ``qr_code``, ``wallet_address`` ...) are handed to
        the caller untouched.
        """

    @abstractmethod
    async def handle_callback(self, callback_data: dict, channel) -> dict:
        """Map a verified notification to ``order_no``, ``status``,
        ``gateway_trade_no`` and ``paid_at``."""

    @abstractmethod
    async def verify_callback(self, callback_data: dict, channel) -> bool:
        """Check the notification signature. Must not have side effects."""

    @abstractmethod
    async def query_order(self, order, channel) -> dict:
        """Pull the current provider status of ``order``."""

    @abstractmethod
    async def refund(self, order, amount: Decimal, reason: str, channel) -> dict:
        """Request a refund; raise ``UnsupportedOperation`` when not offered."""

    def get_channel_config(self, channel, key: str, default=None):
        configs = getattr(channel, "configs", None) or {}
        value = configs.get(key)
        return default if value in (None, "") else value

    def map_status(self, provider_status) -> str:
        # Unknown statuses fall back to pending, which never moves an order.
        return self.status_map.get(str(provider_status).lower(), "pending")

    @staticmethod
    def _format_value(value) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def generate_signature(self, params: dict, secret_key: str, algorithm: str = "md5") -> str:
        """Sign ``params``: sorted non-empty ``key=value`` pairs joined by ``&``,
        followed by ``&key=<secret>``, hashed and upper-cased."""
        pairs = [
            f"{key}={self._format_value(params[key])}"
            for key in sorted(params)
            if params[key] is not None and params[key] != ""
        ]
        sign_string = "&".join(pairs) + f"&key={secret_key}"
        try:
            digest = hashlib.new(algorithm.lower(), sign_string.encode("utf-8"))
        except ValueError:
            raise ProviderError(f"Unsupported signature algorithm: {algorithm}")
        return digest.hexdigest().upper()

    def verify_signature(self, params: dict, signature: str, secret_key: str, algorithm: str = "md5") -> bool:
        if not signature:
            return False
        expected = self.generate_signature(params, secret_key, algorithm)
        return hmac.compare_digest(expected.lower(), str(signature).lower())

    async def http_request(
        self,
        url: str,
        data: Optional[dict] = None,
        headers: Optional[dict] = None,
        method: str = "POST",
        timeout: float = 30.0,
    ) -> dict:
        request_headers = {
            "Content-Type": "application/json",
            "User-Agent": f"PaymentPlugin/{self.plugin_name}/{self.plugin_version}",
        }
        request_headers.update(headers or {})

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
                if method.upper() == "GET":
                    response = await client.get(url, params=data, headers=request_headers)
                else:
                    response = await client.request(method.upper(), url, json=data, headers=request_headers)
                payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            self.log("error", "HTTP request failed", url=url, error=str(exc))
            raise ProviderError(f"{self.plugin_name} request failed: {exc}") from exc

        self.log("debug", "HTTP request completed", url=url, status=response.status_code)
        return {"success": response.is_success, "status": response.status_code, "data": payload}

    @staticmethod
    def format_amount(amount, decimals: int = 2) -> str:
        quantum = Decimal(1).scaleb(-decimals)
        return str(Decimal(str(amount)).quantize(quantum, rounding=ROUND_HALF_UP))

    @staticmethod
    def generate_random_string(length: int = 32) -> str:
        alphabet = string.ascii_letters + string.digits
        return "".join(secrets.choice(alphabet) for _ in range(length))

    def log(self, level: str, message: str, **meta) -> None:
        getattr(logger, level)(
            message,
            extra={"category": "PAYMENT_PLUGIN", "plugin": self.plugin_name, **meta},
        )

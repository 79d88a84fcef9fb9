"""Channel catalog, per-channel configuration and channel selection.

Secrets are encrypted at rest with :class:`SecretBox`; both caches below only
ever hold decrypted values and are invalidated on every write.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import selectinload

from paygate.models.channel import CHANNEL_STATUSES, PaymentChannel
from paygate.models.config import PaymentConfig
from paygate.models.order import PaymentOrder
from paygate.models.plugin import PaymentPlugin
from paygate.services.payment.errors import ChannelNotFound, ChannelUnavailable, ValidationError
from paygate.services.payment.order_states import OPEN_STATUSES
from paygate.services.payment.secret_box import SecretBox

logger = logging.getLogger(__name__)

CATEGORY = "CONFIG_MANAGER"

CHANNEL_DEFAULTS = {
    "status": "active",
    "priority": 0,
    "min_amount": Decimal("0.01"),
    "max_amount": Decimal("999999.99"),
    "fee_rate": Decimal("0"),
}
UPDATABLE_FIELDS = (
    "channel_name",
    "plugin_id",
    "status",
    "priority",
    "supported_currencies",
    "min_amount",
    "max_amount",
    "fee_rate",
    "description",
)


@dataclass
class ResolvedChannel:
    """Read-only view of a channel handed to plugins, configs decrypted."""

    id: int
    channel_code: str
    channel_name: str
    plugin_id: int
    plugin_code: str
    plugin_status: str
    status: str
    priority: int
    min_amount: Decimal
    max_amount: Decimal
    fee_rate: Decimal
    created_at: datetime
    description: Optional[str] = None
    supported_currencies: List[str] = field(default_factory=list)
    supported_methods: List[str] = field(default_factory=list)
    configs: Dict[str, str] = field(default_factory=dict)

    def get_config(self, key: str, default=None):
        return self.configs.get(key, default)

    def accepts(self, currency=None, amount=None, payment_method=None) -> bool:
        if currency and currency.upper() not in {c.upper() for c in self.supported_currencies}:
            return False
        if amount is not None and not (self.min_amount <= amount <= self.max_amount):
            return False
        if payment_method and self.supported_methods and payment_method not in self.supported_methods:
            return False
        return True

    def to_public_dict(self) -> dict:
        return {
            "id": self.id,
            "channel_code": self.channel_code,
            "channel_name": self.channel_name,
            "status": self.status,
            "priority": self.priority,
            "supported_currencies": list(self.supported_currencies),
            "min_amount": self.min_amount,
            "max_amount": self.max_amount,
            "fee_rate": self.fee_rate,
            "description": self.description,
        }


def _to_decimal(value, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a number")


class ConfigManager:
    def __init__(self, session_factory, settings):
        self.session_factory = session_factory
        self.settings = settings
        self.secret_box = SecretBox(settings.encryption_key)
        self.channel_cache: Dict[int, ResolvedChannel] = {}
        self.config_cache: Dict[Tuple[int, str], str] = {}

    async def initialize(self) -> None:
        logger.info("Initializing config manager", extra={"category": CATEGORY})
        await self._preload_active_channels()

    # --- channel lookup ---

    def _channel_query(self):
        return select(PaymentChannel).options(
            selectinload(PaymentChannel.configs),
            selectinload(PaymentChannel.plugin),
        )

    def _decrypt_config(self, config: PaymentConfig) -> str:
        if config.is_encrypted:
            return self.secret_box.decrypt(config.config_value)
        return config.config_value

    def _build_view(self, channel: PaymentChannel) -> ResolvedChannel:
        plugin = channel.plugin
        view = ResolvedChannel(
            id=channel.id,
            channel_code=channel.channel_code,
            channel_name=channel.channel_name,
            plugin_id=channel.plugin_id,
            plugin_code=plugin.plugin_code if plugin else None,
            plugin_status=plugin.status if plugin else None,
            status=channel.status,
            priority=channel.priority,
            min_amount=Decimal(str(channel.min_amount)),
            max_amount=Decimal(str(channel.max_amount)),
            fee_rate=Decimal(str(channel.fee_rate)),
            created_at=channel.created_at,
            description=channel.description,
            supported_currencies=list(channel.supported_currencies or []),
            supported_methods=list(plugin.supported_methods or []) if plugin else [],
            configs={c.config_key: self._decrypt_config(c) for c in channel.configs},
        )
        self.channel_cache[view.id] = view
        return view

    async def get_channel(self, channel_id: int) -> Optional[ResolvedChannel]:
        cached = self.channel_cache.get(channel_id)
        if cached is not None:
            return cached

        async with self.session_factory() as db:
            result = await db.execute(self._channel_query().filter(PaymentChannel.id == channel_id))
            channel = result.scalars().first()
            return self._build_view(channel) if channel else None

    async def get_channel_by_code(self, channel_code: str) -> Optional[ResolvedChannel]:
        async with self.session_factory() as db:
            result = await db.execute(
                self._channel_query().filter(PaymentChannel.channel_code == channel_code)
            )
            channel = result.scalars().first()
            return self._build_view(channel) if channel else None

    async def get_available_channels(self, filters: Optional[dict] = None) -> List[ResolvedChannel]:
        """Active channels of active plugins matching currency, amount and method.

        Ordered by priority (highest first), then by creation.
        """
        filters = filters or {}
        amount = filters.get("amount")
        if amount is not None:
            amount = _to_decimal(amount, "amount")

        async with self.session_factory() as db:
            result = await db.execute(
                self._channel_query()
                .join(PaymentChannel.plugin)
                .filter(PaymentChannel.status == "active", PaymentPlugin.status == "active")
                .order_by(
                    PaymentChannel.priority.desc(),
                    PaymentChannel.created_at.asc(),
                    PaymentChannel.id.asc(),
                )
            )
            channels = [self._build_view(c) for c in result.scalars().all()]

        return [
            c
            for c in channels
            if c.accepts(filters.get("currency"), amount, filters.get("payment_method"))
        ]

    async def select_channel(self, filters: dict, channel_code: Optional[str] = None) -> ResolvedChannel:
        candidates = await self.get_available_channels(filters)
        if channel_code:
            for channel in candidates:
                if channel.channel_code == channel_code:
                    return channel
            raise ChannelUnavailable(
                f"Requested channel is not available: {channel_code}", channel_code=channel_code
            )
        if not candidates:
            raise ChannelUnavailable("No payment channel available for this order")
        return candidates[0]

    # --- channel admin ---

    async def list_channels(self, status: Optional[str] = None, plugin_id: Optional[int] = None):
        query = select(PaymentChannel).options(selectinload(PaymentChannel.plugin))
        if status:
            query = query.filter(PaymentChannel.status == status)
        if plugin_id:
            query = query.filter(PaymentChannel.plugin_id == plugin_id)
        query = query.order_by(PaymentChannel.priority.desc(), PaymentChannel.created_at.asc())

        async with self.session_factory() as db:
            result = await db.execute(query)
            return result.scalars().all()

    def _validate_channel_values(self, values: dict) -> dict:
        cleaned = dict(values)
        for key in ("min_amount", "max_amount", "fee_rate"):
            if cleaned.get(key) is not None:
                cleaned[key] = _to_decimal(cleaned[key], key)
        if "status" in cleaned and cleaned["status"] not in CHANNEL_STATUSES:
            raise ValidationError(f"Unknown channel status: {cleaned['status']}")
        if "fee_rate" in cleaned and not (Decimal("0") <= cleaned["fee_rate"] <= Decimal("1")):
            raise ValidationError("fee_rate must be between 0 and 1")
        if "supported_currencies" in cleaned:
            cleaned["supported_currencies"] = [c.upper() for c in cleaned["supported_currencies"] or []]
        return cleaned

    async def create_channel(self, channel_data: dict) -> PaymentChannel:
        for key in ("channel_code", "channel_name", "plugin_id"):
            if not channel_data.get(key):
                raise ValidationError(f"Missing required field: {key}")

        values = {**CHANNEL_DEFAULTS, **{k: v for k, v in channel_data.items() if v is not None}}
        values = self._validate_channel_values(values)
        if values["min_amount"] > values["max_amount"]:
            raise ValidationError("min_amount must not exceed max_amount")

        async with self.session_factory() as db:
            if await db.get(PaymentPlugin, values["plugin_id"]) is None:
                raise ValidationError(f"Plugin not found: {values['plugin_id']}")

            channel = PaymentChannel(
                channel_code=values["channel_code"],
                channel_name=values["channel_name"],
                plugin_id=values["plugin_id"],
                status=values["status"],
                priority=values["priority"],
                supported_currencies=values.get("supported_currencies", []),
                min_amount=values["min_amount"],
                max_amount=values["max_amount"],
                fee_rate=values["fee_rate"],
                description=values.get("description"),
            )
            db.add(channel)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise ValidationError(f"Channel code already exists: {values['channel_code']}") from exc
            await db.refresh(channel)

        logger.info(
            "Payment channel created",
            extra={"category": CATEGORY, "channel_id": channel.id, "channel_code": channel.channel_code},
        )
        return channel

    async def update_channel(self, channel_id: int, update_data: dict) -> PaymentChannel:
        values = {k: v for k, v in update_data.items() if k in UPDATABLE_FIELDS}
        values = self._validate_channel_values(values)

        async with self.session_factory() as db:
            channel = await db.get(PaymentChannel, channel_id)
            if channel is None:
                raise ChannelNotFound(f"Channel not found: {channel_id}", channel_id=channel_id)

            min_amount = values.get("min_amount", channel.min_amount)
            max_amount = values.get("max_amount", channel.max_amount)
            if Decimal(str(min_amount)) > Decimal(str(max_amount)):
                raise ValidationError("min_amount must not exceed max_amount")
            if "plugin_id" in values and await db.get(PaymentPlugin, values["plugin_id"]) is None:
                raise ValidationError(f"Plugin not found: {values['plugin_id']}")

            for key, value in values.items():
                setattr(channel, key, value)
            await db.commit()
            await db.refresh(channel)

        self.clear_cache(channel_id)
        logger.info(
            "Payment channel updated",
            extra={"category": CATEGORY, "channel_id": channel_id, "fields": sorted(values)},
        )
        return channel

    async def delete_channel(self, channel_id: int) -> None:
        async with self.session_factory() as db:
            channel = await db.get(PaymentChannel, channel_id)
            if channel is None:
                raise ChannelNotFound(f"Channel not found: {channel_id}", channel_id=channel_id)

            open_orders = await db.scalar(
                select(func.count(PaymentOrder.id)).filter(
                    PaymentOrder.channel_id == channel_id,
                    PaymentOrder.status.in_(OPEN_STATUSES),
                )
            )
            if open_orders:
                raise ValidationError(
                    f"Channel has {open_orders} unfinished order(s) and cannot be deleted",
                    channel_id=channel_id,
                )

            await db.delete(channel)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise ValidationError(
                    "Channel has order history, deactivate it instead", channel_id=channel_id
                ) from exc

        self.clear_cache(channel_id)
        logger.info("Payment channel deleted", extra={"category": CATEGORY, "channel_id": channel_id})

    # --- per-channel config ---

    async def set_channel_config(
        self,
        channel_id: int,
        config_key: str,
        config_value: str,
        is_encrypted: bool = False,
        description: str = "",
    ) -> None:
        if not config_key:
            raise ValidationError("config_key is required")
        stored_value = self.secret_box.encrypt(config_value) if is_encrypted else config_value

        async with self.session_factory() as db:
            if await db.get(PaymentChannel, channel_id) is None:
                raise ChannelNotFound(f"Channel not found: {channel_id}", channel_id=channel_id)

            result = await db.execute(
                select(PaymentConfig).filter_by(channel_id=channel_id, config_key=config_key)
            )
            config = result.scalars().first()
            if config is None:
                config = PaymentConfig(channel_id=channel_id, config_key=config_key)
                db.add(config)
            config.config_value = stored_value
            config.is_encrypted = is_encrypted
            config.description = description
            await db.commit()

        self.channel_cache.pop(channel_id, None)
        self.config_cache.pop((channel_id, config_key), None)
        logger.info(
            "Channel config saved",
            extra={"category": CATEGORY, "channel_id": channel_id, "config_key": config_key},
        )

    async def get_channel_config(self, channel_id: int, config_key: str, default=None):
        cache_key = (channel_id, config_key)
        if cache_key in self.config_cache:
            return self.config_cache[cache_key]

        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentConfig).filter_by(channel_id=channel_id, config_key=config_key)
            )
            config = result.scalars().first()

        if config is None:
            return default

        value = self._decrypt_config(config)
        self.config_cache[cache_key] = value
        return value

    async def get_channel_configs(self, channel_id: int) -> Dict[str, str]:
        async with self.session_factory() as db:
            if await db.get(PaymentChannel, channel_id) is None:
                raise ChannelNotFound(f"Channel not found: {channel_id}", channel_id=channel_id)
            result = await db.execute(select(PaymentConfig).filter_by(channel_id=channel_id))
            configs = result.scalars().all()
        return {c.config_key: self._decrypt_config(c) for c in configs}

    async def delete_channel_config(self, channel_id: int, config_key: str) -> bool:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentConfig).filter_by(channel_id=channel_id, config_key=config_key)
            )
            config = result.scalars().first()
            if config is not None:
                await db.delete(config)
                await db.commit()

        self.channel_cache.pop(channel_id, None)
        self.config_cache.pop((channel_id, config_key), None)
        logger.info(
            "Channel config deleted",
            extra={"category": CATEGORY, "channel_id": channel_id, "config_key": config_key},
        )
        return config is not None

    def clear_cache(self, channel_id: Optional[int] = None) -> None:
        if channel_id is None:
            self.channel_cache.clear()
            self.config_cache.clear()
        else:
            self.channel_cache.pop(channel_id, None)
            for key in [k for k in self.config_cache if k[0] == channel_id]:
                del self.config_cache[key]
        logger.info("Config cache cleared", extra={"category": CATEGORY, "channel_id": channel_id})

    async def _preload_active_channels(self) -> None:
        async with self.session_factory() as db:
            result = await db.execute(self._channel_query().filter(PaymentChannel.status == "active"))
            channels = [self._build_view(c) for c in result.scalars().all()]
        logger.info(
            "Active channels preloaded",
            extra={"category": CATEGORY, "count": len(channels)},
        )

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from paygate.api.payment_router import get_engine, ok
from paygate.services.payment.engine import PaymentEngine

logger = logging.getLogger(__name__)

admin_router = APIRouter(prefix="/admin/payment")

CATEGORY = "PAYMENT_ADMIN"


class ChannelCreate(BaseModel):
    channel_code: str
    channel_name: str
    plugin_id: int
    status: Optional[str] = None
    priority: Optional[int] = None
    supported_currencies: List[str] = []
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    fee_rate: Optional[Decimal] = None
    description: Optional[str] = None


class ChannelUpdate(BaseModel):
    channel_name: Optional[str] = None
    plugin_id: Optional[int] = None
    status: Optional[str] = None
    priority: Optional[int] = None
    supported_currencies: Optional[List[str]] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None
    fee_rate: Optional[Decimal] = None
    description: Optional[str] = None


class ConfigSet(BaseModel):
    config_key: str
    config_value: str
    is_encrypted: bool = False
    description: str = ""


class PluginStatus(BaseModel):
    status: str


class PluginRegister(BaseModel):
    plugin_code: str
    plugin_path: str
    plugin_name: Optional[str] = None
    plugin_version: Optional[str] = None
    description: Optional[str] = None
    author: Optional[str] = None
    config_schema: Optional[Dict[str, Any]] = None
    supported_methods: List[str] = []
    supported_currencies: List[str] = []
    load_priority: int = 0


def channel_to_dict(channel) -> dict:
    plugin = channel.__dict__.get("plugin")
    return {
        "id": channel.id,
        "channel_code": channel.channel_code,
        "channel_name": channel.channel_name,
        "plugin_id": channel.plugin_id,
        "plugin_code": plugin.plugin_code if plugin else None,
        "status": channel.status,
        "priority": channel.priority,
        "supported_currencies": channel.supported_currencies or [],
        "min_amount": channel.min_amount,
        "max_amount": channel.max_amount,
        "fee_rate": channel.fee_rate,
        "description": channel.description,
        "created_at": channel.created_at,
        "updated_at": channel.updated_at,
    }


# --- КАНАЛЫ ---
@admin_router.get("/channels")
async def list_channels(
    status: Optional[str] = None,
    plugin_id: Optional[int] = None,
    engine: PaymentEngine = Depends(get_engine),
):
    channels = await engine.config_manager.list_channels(status=status, plugin_id=plugin_id)
    return ok([channel_to_dict(c) for c in channels])


@admin_router.post("/channels")
async def create_channel(payload: ChannelCreate, engine: PaymentEngine = Depends(get_engine)):
    channel = await engine.config_manager.create_channel(payload.model_dump(exclude_none=True))
    logger.info("Admin created channel", extra={"category": CATEGORY, "channel_code": channel.channel_code})
    return ok(channel_to_dict(channel), "Channel created")


@admin_router.put("/channels/{channel_id}")
async def update_channel(channel_id: int, payload: ChannelUpdate, engine: PaymentEngine = Depends(get_engine)):
    channel = await engine.config_manager.update_channel(channel_id, payload.model_dump(exclude_none=True))
    return ok(channel_to_dict(channel), "Channel updated")


@admin_router.delete("/channels/{channel_id}")
async def delete_channel(channel_id: int, engine: PaymentEngine = Depends(get_engine)):
    await engine.config_manager.delete_channel(channel_id)
    logger.info("Admin deleted channel", extra={"category": CATEGORY, "channel_id": channel_id})
    return ok(message="Channel deleted")


# --- НАСТРОЙКИ КАНАЛА ---
@admin_router.get("/channels/{channel_id}/configs")
async def get_channel_configs(channel_id: int, engine: PaymentEngine = Depends(get_engine)):
    return ok(await engine.config_manager.get_channel_configs(channel_id))


@admin_router.post("/channels/{channel_id}/configs")
async def set_channel_config(channel_id: int, payload: ConfigSet, engine: PaymentEngine = Depends(get_engine)):
    await engine.config_manager.set_channel_config(
        channel_id,
        payload.config_key,
        payload.config_value,
        is_encrypted=payload.is_encrypted,
        description=payload.description,
    )
    return ok(message="Config saved")


@admin_router.delete("/channels/{channel_id}/configs/{config_key}")
async def delete_channel_config(channel_id: int, config_key: str, engine: PaymentEngine = Depends(get_engine)):
    deleted = await engine.config_manager.delete_channel_config(channel_id, config_key)
    return ok({"deleted": deleted})


# --- ПЛАГИНЫ ---
@admin_router.get("/plugins")
async def list_plugins(engine: PaymentEngine = Depends(get_engine)):
    plugins = await engine.plugin_manager.get_all_plugins()
    loaded = set(engine.plugin_manager.plugins)
    return ok([{**p.to_dict(), "loaded": p.id in loaded} for p in plugins])


@admin_router.post("/plugins")
async def register_plugin(payload: PluginRegister, engine: PaymentEngine = Depends(get_engine)):
    plugin = await engine.plugin_manager.register_plugin(payload.model_dump(exclude_none=True))
    return ok(plugin.to_dict(), "Plugin registered")


@admin_router.put("/plugins/{plugin_id}/status")
async def update_plugin_status(plugin_id: int, payload: PluginStatus, engine: PaymentEngine = Depends(get_engine)):
    plugin = await engine.plugin_manager.update_plugin_status(plugin_id, payload.status)
    return ok(plugin.to_dict(), "Plugin status updated")


@admin_router.post("/plugins/{plugin_id}/reload")
async def reload_plugin(plugin_id: int, engine: PaymentEngine = Depends(get_engine)):
    plugin = await engine.plugin_manager.reload_plugin(plugin_id)
    return ok(plugin.get_plugin_info(), "Plugin reloaded")


@admin_router.delete("/plugins/{plugin_id}")
async def unregister_plugin(plugin_id: int, engine: PaymentEngine = Depends(get_engine)):
    await engine.plugin_manager.unregister_plugin(plugin_id)
    return ok(message="Plugin unregistered")


# --- СЛУЖЕБНОЕ ---
@admin_router.post("/cache/clear")
async def clear_cache(channel_id: Optional[int] = None, engine: PaymentEngine = Depends(get_engine)):
    engine.config_manager.clear_cache(channel_id)
    return ok(message="Cache cleared")


@admin_router.get("/orders")
async def list_orders(
    status: Optional[str] = None,
    channel_id: Optional[int] = None,
    user_id: Optional[int] = None,
    merchant_order_no: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    engine: PaymentEngine = Depends(get_engine),
):
    filters = {
        "status": status,
        "channel_id": channel_id,
        "user_id": user_id,
        "merchant_order_no": merchant_order_no,
    }
    return ok(await engine.order_manager.list_orders(filters, page, limit))


@admin_router.post("/orders/expire")
async def expire_orders(engine: PaymentEngine = Depends(get_engine)):
    count = await engine.expire_orders()
    return ok({"cancelled": count})

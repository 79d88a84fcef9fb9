"""Discovery, loading and caching of payment provider adapters.

Adapters come from two places: ``*.py`` sources in the plugin directory,
found by a startup scan, and classes registered in code through
:meth:`PluginManager.register_adapter`. Both end up as rows in
``payment_plugins``; live instances are cached by plugin id.
"""

import asyncio
import importlib
import importlib.util
import inspect
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Type

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from paygate.models.channel import PaymentChannel
from paygate.models.plugin import PLUGIN_STATUSES, PaymentPlugin
from paygate.plugins.base import BasePaymentPlugin, validate_plugin_interface
from paygate.services.payment.alerts import AlertSink
from paygate.services.payment.errors import PluginInactive, PluginNotFound, ValidationError

logger = logging.getLogger(__name__)

CATEGORY = "PLUGIN_MANAGER"
FILE_MODULE_PREFIX = "paygate_plugins"


class PluginManager:
    def __init__(self, session_factory, settings, alerts: Optional[AlertSink] = None):
        self.session_factory = session_factory
        self.settings = settings
        self.plugin_dir = Path(settings.plugin_dir)
        self.alerts = alerts or AlertSink()
        self.plugins: Dict[int, BasePaymentPlugin] = {}
        self._adapters: Dict[str, Type[BasePaymentPlugin]] = {}
        # вызываются с plugin_id после любой смены статуса плагина
        self.status_listeners: List[Callable[[int], None]] = []
        self._lock = asyncio.Lock()

    # --- registry of in-code adapters ---

    def register_adapter(self, code: str, adapter_cls: Type[BasePaymentPlugin]) -> None:
        """Make ``adapter_cls`` the implementation for plugin ``code``."""
        validate_plugin_interface(adapter_cls)
        if inspect.isabstract(adapter_cls):
            raise TypeError(f"Adapter {adapter_cls.__name__} does not implement the full contract")
        self._adapters[code] = adapter_cls

    # --- lifecycle ---

    async def initialize(self) -> None:
        logger.info("Initializing plugin manager", extra={"category": CATEGORY})
        self._ensure_plugin_directory()
        await self._scan_and_register_plugins()
        await self._load_active_plugins()
        logger.info(
            "Plugin manager initialized",
            extra={"category": CATEGORY, "loaded": len(self.plugins)},
        )

    async def shutdown(self) -> None:
        async with self._lock:
            for plugin_id in list(self.plugins):
                await self._evict(plugin_id)

    # --- runtime access ---

    async def get_plugin(self, plugin_id: int) -> BasePaymentPlugin:
        plugin = self.plugins.get(plugin_id)
        if plugin is not None:
            return plugin

        async with self._lock:
            plugin = self.plugins.get(plugin_id)
            if plugin is not None:
                return plugin

            record = await self.get_plugin_record(plugin_id)
            if record.status == "inactive":
                raise PluginInactive(f"Plugin is disabled: {record.plugin_name}", plugin_id=plugin_id)

            # error-state plugins get another attempt on every access
            try:
                return await self._load_plugin(record)
            except Exception as exc:
                await self._mark_error(record.id, str(exc))
                raise PluginInactive(
                    f"Plugin {record.plugin_name} failed to load: {exc}", plugin_id=plugin_id
                ) from exc

    async def reload_plugin(self, plugin_id: int) -> BasePaymentPlugin:
        """Tear down the live instance and load the adapter source again."""
        async with self._lock:
            await self._evict(plugin_id)
            record = await self.get_plugin_record(plugin_id)
            if record.status == "inactive":
                raise PluginInactive(f"Plugin is disabled: {record.plugin_name}", plugin_id=plugin_id)
            try:
                plugin = await self._load_plugin(record, fresh=True)
            except Exception as exc:
                logger.error(
                    "Plugin reload failed",
                    extra={"category": CATEGORY, "plugin_id": plugin_id, "error": str(exc)},
                )
                await self._mark_error(record.id, str(exc))
                raise PluginInactive(
                    f"Plugin {record.plugin_name} failed to reload: {exc}", plugin_id=plugin_id
                ) from exc

        logger.info("Plugin reloaded", extra={"category": CATEGORY, "plugin_id": plugin_id})
        return plugin

    # --- catalog ---

    async def register_plugin(self, plugin_info: dict) -> PaymentPlugin:
        code = plugin_info.get("plugin_code")
        path = plugin_info.get("plugin_path")
        if not code or not path:
            raise ValidationError("plugin_code and plugin_path are required")

        # Instantiating the adapter once proves the source is usable.
        try:
            adapter_cls = self._resolve_adapter_class(code, path)
            validate_plugin_interface(adapter_cls())
        except (ImportError, OSError, SyntaxError, TypeError, AttributeError) as exc:
            raise ValidationError(f"Invalid plugin source {path}: {exc}", plugin_code=code) from exc

        plugin = PaymentPlugin(
            plugin_name=plugin_info.get("plugin_name") or code,
            plugin_code=code,
            plugin_version=plugin_info.get("plugin_version") or "1.0.0",
            plugin_path=path,
            description=plugin_info.get("description"),
            author=plugin_info.get("author"),
            config_schema=plugin_info.get("config_schema") or {},
            supported_methods=list(plugin_info.get("supported_methods") or []),
            supported_currencies=list(plugin_info.get("supported_currencies") or []),
            load_priority=plugin_info.get("load_priority") or 0,
            status=plugin_info.get("status") or "active",
        )
        async with self.session_factory() as db:
            db.add(plugin)
            try:
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                raise ValidationError(f"Plugin already registered: {code}") from exc
            await db.refresh(plugin)

        logger.info(
            "Plugin registered",
            extra={"category": CATEGORY, "plugin_code": code, "plugin_id": plugin.id},
        )
        return plugin

    async def unregister_plugin(self, plugin_id: int) -> None:
        async with self._lock:
            async with self.session_factory() as db:
                plugin = await db.get(PaymentPlugin, plugin_id)
                if plugin is None:
                    raise PluginNotFound(f"Plugin not found: {plugin_id}", plugin_id=plugin_id)

                channels = await db.scalar(
                    select(func.count(PaymentChannel.id)).filter_by(plugin_id=plugin_id)
                )
                if channels:
                    raise ValidationError(
                        f"Plugin {plugin.plugin_name} is used by {channels} channel(s)",
                        plugin_id=plugin_id,
                    )

                await self._evict(plugin_id)
                await db.delete(plugin)
                await db.commit()
            self._status_changed(plugin_id)

        logger.info("Plugin unregistered", extra={"category": CATEGORY, "plugin_id": plugin_id})

    async def get_all_plugins(self):
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentPlugin).order_by(
                    PaymentPlugin.load_priority.desc(), PaymentPlugin.created_at.asc(), PaymentPlugin.id.asc()
                )
            )
            return result.scalars().all()

    async def get_plugin_record(self, plugin_id: int) -> PaymentPlugin:
        async with self.session_factory() as db:
            record = await db.get(PaymentPlugin, plugin_id)
        if record is None:
            raise PluginNotFound(f"Plugin not found: {plugin_id}", plugin_id=plugin_id)
        return record

    async def update_plugin_status(self, plugin_id: int, status: str) -> PaymentPlugin:
        if status not in PLUGIN_STATUSES:
            raise ValidationError(f"Unknown plugin status: {status}")

        async with self._lock:
            async with self.session_factory() as db:
                record = await db.get(PaymentPlugin, plugin_id)
                if record is None:
                    raise PluginNotFound(f"Plugin not found: {plugin_id}", plugin_id=plugin_id)
                record.status = status
                if status == "active":
                    record.last_error = None
                await db.commit()

            if status != "active":
                await self._evict(plugin_id)
            self._status_changed(plugin_id)

        logger.info(
            "Plugin status updated",
            extra={"category": CATEGORY, "plugin_id": plugin_id, "status": status},
        )
        return record

    # --- internals ---

    def _ensure_plugin_directory(self) -> None:
        if not self.plugin_dir.exists():
            self.plugin_dir.mkdir(parents=True, exist_ok=True)
            logger.info("Created plugin directory", extra={"category": CATEGORY, "path": str(self.plugin_dir)})

    async def _scan_and_register_plugins(self) -> None:
        async with self.session_factory() as db:
            result = await db.execute(select(PaymentPlugin.plugin_code))
            known = set(result.scalars().all())

        candidates = [
            (path.stem, str(path))
            for path in sorted(self.plugin_dir.glob("*.py"))
            if not path.name.startswith("_")
        ]
        candidates += [
            (code, f"{cls.__module__}:{cls.__qualname__}") for code, cls in self._adapters.items()
        ]

        for code, path in candidates:
            if code in known:
                continue
            try:
                adapter_cls = self._resolve_adapter_class(code, path)
                info = adapter_cls().get_plugin_info()
                await self.register_plugin(
                    {
                        **info,
                        "plugin_code": code,
                        "plugin_path": path,
                        "load_priority": getattr(adapter_cls, "load_priority", 0),
                    }
                )
                known.add(code)
            except Exception as exc:
                logger.warning(
                    "Skipping invalid plugin",
                    extra={"category": CATEGORY, "plugin_code": code, "path": path, "error": str(exc)},
                )

    async def _load_active_plugins(self) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                select(PaymentPlugin)
                .filter_by(status="active")
                .order_by(PaymentPlugin.load_priority.desc(), PaymentPlugin.id.asc())
            )
            records = result.scalars().all()

        for record in records:
            try:
                await self._load_plugin(record)
            except Exception as exc:
                logger.error(
                    "Plugin failed to load",
                    extra={"category": CATEGORY, "plugin_code": record.plugin_code, "error": str(exc)},
                )
                await self._mark_error(record.id, str(exc))

    async def _load_plugin(self, record: PaymentPlugin, fresh: bool = False) -> BasePaymentPlugin:
        adapter_cls = self._resolve_adapter_class(record.plugin_code, record.plugin_path, fresh=fresh)
        plugin = adapter_cls()
        validate_plugin_interface(plugin)
        await plugin.initialize()

        self.plugins[record.id] = plugin

        async with self.session_factory() as db:
            stored = await db.get(PaymentPlugin, record.id)
            if stored is not None:
                stored.loaded_at = datetime.utcnow()
                stored.status = "active"
                stored.last_error = None
                await db.commit()

        self._status_changed(record.id)

        logger.info(
            "Plugin loaded",
            extra={"category": CATEGORY, "plugin_code": record.plugin_code, "plugin_id": record.id},
        )
        return plugin

    async def _evict(self, plugin_id: int) -> None:
        plugin = self.plugins.pop(plugin_id, None)
        if plugin is None:
            return
        try:
            await plugin.destroy()
        except Exception:
            logger.exception("Plugin destroy failed", extra={"category": CATEGORY, "plugin_id": plugin_id})

    def _status_changed(self, plugin_id: int) -> None:
        for listener in self.status_listeners:
            listener(plugin_id)

    async def _mark_error(self, plugin_id: int, message: str) -> None:
        async with self.session_factory() as db:
            record = await db.get(PaymentPlugin, plugin_id)
            if record is None:
                return
            record.status = "error"
            record.last_error = message
            await db.commit()
            name = record.plugin_name

        self._status_changed(plugin_id)
        self.alerts.send(f"Payment plugin {name} failed to load: {message}")

    def _resolve_adapter_class(self, code: str, path: str, fresh: bool = False) -> Type[BasePaymentPlugin]:
        if code in self._adapters:
            return self._adapters[code]

        if path.endswith(".py"):
            module = self._load_module_from_file(code, path, fresh)
            class_name = None
        else:
            module_name, _, class_name = path.partition(":")
            module = importlib.import_module(module_name)
            if fresh:
                module = importlib.reload(module)

        if class_name:
            return getattr(module, class_name)

        for _, obj in inspect.getmembers(module, inspect.isclass):
            if (
                issubclass(obj, BasePaymentPlugin)
                and obj.__module__ == module.__name__
                and not inspect.isabstract(obj)
            ):
                return obj
        raise TypeError(f"No payment plugin class found in {path}")

    def _load_module_from_file(self, code: str, path: str, fresh: bool):
        module_name = f"{FILE_MODULE_PREFIX}.{code}"
        file_path = Path(path)
        cached = sys.modules.get(module_name)
        if cached is not None and not fresh and getattr(cached, "__file__", None) == str(file_path):
            return cached
        sys.modules.pop(module_name, None)

        if not file_path.is_file():
            raise FileNotFoundError(f"Plugin source not found: {path}")

        spec = importlib.util.spec_from_file_location(module_name, file_path)
        if spec is None or spec.loader is None:
            raise ImportError(f"Cannot load plugin source: {path}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception:
            sys.modules.pop(module_name, None)
            raise
        return module

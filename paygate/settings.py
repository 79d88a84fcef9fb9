"""Runtime settings for the payment subsystem, read from the environment."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent
DEFAULT_ENCRYPTION_KEY = "default-key-change-in-production"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class PaymentSettings:
    encryption_key: str = DEFAULT_ENCRYPTION_KEY
    order_ttl_minutes: int = 30
    plugin_timeout: float = 30.0
    plugin_dir: Path = field(default_factory=lambda: BASE_DIR / "plugins" / "payment")
    expire_interval_minutes: int = 5
    sync_interval_minutes: int = 30
    sync_window_hours: int = 24
    sync_batch_size: int = 50
    jobs_enabled: bool = True

    @classmethod
    def from_env(cls) -> "PaymentSettings":
        load_dotenv()
        key = os.getenv("CONFIG_ENCRYPTION_KEY")
        if not key:
            logging.warning(
                "CONFIG_ENCRYPTION_KEY is not set, falling back to the default key",
                extra={"category": "CONFIG_MANAGER"},
            )
            key = DEFAULT_ENCRYPTION_KEY

        plugin_dir = os.getenv("PAYMENT_PLUGIN_DIR")
        return cls(
            encryption_key=key,
            order_ttl_minutes=int(os.getenv("PAYMENT_ORDER_TTL_MINUTES", "30")),
            plugin_timeout=float(os.getenv("PAYMENT_PLUGIN_TIMEOUT", "30")),
            plugin_dir=Path(plugin_dir) if plugin_dir else BASE_DIR / "plugins" / "payment",
            expire_interval_minutes=int(os.getenv("PAYMENT_EXPIRE_INTERVAL_MINUTES", "5")),
            sync_interval_minutes=int(os.getenv("PAYMENT_SYNC_INTERVAL_MINUTES", "30")),
            sync_window_hours=int(os.getenv("PAYMENT_SYNC_WINDOW_HOURS", "24")),
            sync_batch_size=int(os.getenv("PAYMENT_SYNC_BATCH_SIZE", "50")),
            jobs_enabled=_env_bool("PAYMENT_JOBS_ENABLED", True),
        )

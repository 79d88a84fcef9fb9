from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship

from paygate.db.base_class import Base

PLUGIN_STATUSES = ("active", "inactive", "error")


class PaymentPlugin(Base):
    __tablename__ = "payment_plugins"

    id = Column(Integer, primary_key=True, index=True)
    plugin_name = Column(String(100), unique=True, nullable=False)
    plugin_code = Column(String(50), unique=True, index=True, nullable=False)
    plugin_version = Column(String(20), default="1.0.0")
    # Путь к файлу адаптера или ссылка вида "module:Class"
    plugin_path = Column(String(255), nullable=False)
    status = Column(String(16), default="active", nullable=False, index=True)
    description = Column(Text, nullable=True)
    author = Column(String(100), nullable=True)
    config_schema = Column(JSON, default=dict)
    supported_methods = Column(JSON, default=list)
    supported_currencies = Column(JSON, default=list)
    load_priority = Column(Integer, default=0, nullable=False, index=True)
    last_error = Column(Text, nullable=True)
    loaded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    channels = relationship("PaymentChannel", back_populates="plugin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "plugin_name": self.plugin_name,
            "plugin_code": self.plugin_code,
            "plugin_version": self.plugin_version,
            "plugin_path": self.plugin_path,
            "status": self.status,
            "description": self.description,
            "author": self.author,
            "config_schema": self.config_schema or {},
            "supported_methods": self.supported_methods or [],
            "supported_currencies": self.supported_currencies or [],
            "load_priority": self.load_priority,
            "last_error": self.last_error,
            "loaded_at": self.loaded_at,
            "created_at": self.created_at,
        }

from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from paygate.db.base_class import Base

CHANNEL_STATUSES = ("active", "inactive", "maintenance")


class PaymentChannel(Base):
    __tablename__ = "payment_channels"

    id = Column(Integer, primary_key=True, index=True)
    channel_code = Column(String(50), unique=True, index=True, nullable=False)
    channel_name = Column(String(100), nullable=False)
    plugin_id = Column(Integer, ForeignKey("payment_plugins.id"), nullable=False, index=True)
    status = Column(String(16), default="active", nullable=False)
    # Чем больше значение, тем выше приоритет
    priority = Column(Integer, default=0, nullable=False)
    supported_currencies = Column(JSON, default=list)
    min_amount = Column(Numeric(15, 2), default=0.01, nullable=False)
    max_amount = Column(Numeric(15, 2), default=999999.99, nullable=False)
    fee_rate = Column(Numeric(5, 4), default=0, nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    plugin = relationship("PaymentPlugin", back_populates="channels")
    configs = relationship(
        "PaymentConfig",
        back_populates="channel",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_payment_channels_status_priority", "status", "priority"),
    )

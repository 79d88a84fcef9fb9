from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from paygate.db.base_class import Base


class PaymentConfig(Base):
    __tablename__ = "payment_configs"

    id = Column(Integer, primary_key=True, index=True)
    channel_id = Column(
        Integer, ForeignKey("payment_channels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    config_key = Column(String(100), nullable=False)
    # Для is_encrypted=True здесь хранится шифротекст
    config_value = Column(Text, nullable=False)
    is_encrypted = Column(Boolean, default=False, nullable=False)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    channel = relationship("PaymentChannel", back_populates="configs")

    __table_args__ = (
        UniqueConstraint("channel_id", "config_key", name="uq_payment_configs_channel_key"),
    )

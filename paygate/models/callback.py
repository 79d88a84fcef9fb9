from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import relationship

from paygate.db.base_class import Base

CALLBACK_TYPES = ("notify", "return", "query")


class PaymentCallback(Base):
    __tablename__ = "payment_callbacks"

    id = Column(Integer, primary_key=True, index=True)
    # Заказ может быть неизвестен, если провайдер прислал чужой order_no
    order_id = Column(Integer, ForeignKey("payment_orders.id"), nullable=True, index=True)
    channel_code = Column(String(50), nullable=True)
    callback_type = Column(String(16), nullable=False, default="notify")
    request_method = Column(String(10), nullable=True)
    request_headers = Column(JSON, nullable=True)
    request_body = Column(JSON, nullable=True)
    request_params = Column(JSON, nullable=True)
    client_ip = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    is_verified = Column(Boolean, default=False, nullable=False)
    is_processed = Column(Boolean, default=False, nullable=False)
    process_result = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    order = relationship("PaymentOrder", back_populates="callbacks")

    __table_args__ = (
        Index("ix_payment_callbacks_verified_processed", "is_verified", "is_processed"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "channel_code": self.channel_code,
            "callback_type": self.callback_type,
            "request_method": self.request_method,
            "request_body": self.request_body,
            "client_ip": self.client_ip,
            "user_agent": self.user_agent,
            "is_verified": self.is_verified,
            "is_processed": self.is_processed,
            "process_result": self.process_result,
            "created_at": self.created_at,
        }

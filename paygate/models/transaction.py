from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from paygate.db.base_class import Base

TRANSACTION_TYPES = ("payment", "refund", "chargeback")
TRANSACTION_STATUSES = ("pending", "success", "failed")


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    transaction_no = Column(String(64), unique=True, index=True, nullable=False)
    order_id = Column(Integer, ForeignKey("payment_orders.id"), nullable=False, index=True)
    type = Column(String(16), nullable=False)
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(16), default="pending", nullable=False)
    gateway_transaction_no = Column(String(128), nullable=True, index=True)
    # Сырой ответ провайдера, для разбора инцидентов
    gateway_response = Column(JSON, nullable=True)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    order = relationship("PaymentOrder", back_populates="transactions")

    __table_args__ = (
        Index("ix_payment_transactions_type_status", "type", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "transaction_no": self.transaction_no,
            "order_id": self.order_id,
            "type": self.type,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "gateway_transaction_no": self.gateway_transaction_no,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "processed_at": self.processed_at,
            "created_at": self.created_at,
        }

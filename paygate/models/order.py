from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from paygate.db.base_class import Base


class PaymentOrder(Base):
    __tablename__ = "payment_orders"

    id = Column(Integer, primary_key=True, index=True)
    # Системный номер заказа, не путать с merchant_order_no
    order_no = Column(String(64), unique=True, index=True, nullable=False)
    merchant_order_no = Column(String(64), index=True, nullable=False)
    channel_id = Column(Integer, ForeignKey("payment_channels.id"), nullable=False, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    amount = Column(Numeric(15, 2), nullable=False)
    currency = Column(String(10), nullable=False)
    status = Column(String(16), default="pending", nullable=False)
    payment_method = Column(String(50), nullable=True)
    gateway_order_no = Column(String(128), nullable=True)
    gateway_trade_no = Column(String(128), nullable=True)
    subject = Column(String(255), nullable=False)
    body = Column(Text, nullable=True)
    notify_url = Column(String(500), nullable=True)
    return_url = Column(String(500), nullable=True)
    extra_params = Column(JSON, nullable=True)
    fee_amount = Column(Numeric(15, 2), nullable=True)
    actual_amount = Column(Numeric(15, 2), nullable=True)
    paid_at = Column(DateTime, nullable=True)
    expired_at = Column(DateTime, nullable=True)
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    channel = relationship("PaymentChannel")
    transactions = relationship(
        "PaymentTransaction",
        back_populates="order",
        order_by="PaymentTransaction.id",
    )
    callbacks = relationship(
        "PaymentCallback",
        back_populates="order",
        order_by="PaymentCallback.id",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_payment_orders_status_expired", "status", "expired_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_no": self.order_no,
            "merchant_order_no": self.merchant_order_no,
            "channel_id": self.channel_id,
            "user_id": self.user_id,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "gateway_order_no": self.gateway_order_no,
            "gateway_trade_no": self.gateway_trade_no,
            "subject": self.subject,
            "body": self.body,
            "notify_url": self.notify_url,
            "return_url": self.return_url,
            "extra_params": self.extra_params,
            "fee_amount": self.fee_amount,
            "actual_amount": self.actual_amount,
            "paid_at": self.paid_at,
            "expired_at": self.expired_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

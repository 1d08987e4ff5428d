from sqlalchemy import Column, DateTime, Integer, JSON, Numeric, String, UniqueConstraint, func
from .base import Base


class Order(Base):
    __tablename__ = "order"
    __table_args__ = (
        UniqueConstraint("user_id", "idempotency_key", name="uq_order_user_idempotency_key"),
    )

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    items = Column(JSON, nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    shipping_address = Column(JSON, nullable=True)
    status = Column(String(32), nullable=False, default="pending")
    payment_status = Column(String(32), nullable=False, default="pending")
    idempotency_key = Column(String(128), nullable=True)
    version = Column(Integer, nullable=False, default=0)
    inventory_restored_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())

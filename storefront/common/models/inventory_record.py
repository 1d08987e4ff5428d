from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, func
from .base import Base


class InventoryRecord(Base):
    __tablename__ = "inventory_record"
    __table_args__ = (
        CheckConstraint("quantity >= 0", name="ck_inventory_quantity_non_negative"),
    )

    id = Column(String(36), primary_key=True)
    name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
    reorder_level = Column(Integer, nullable=False, default=5)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, server_default=func.now())
    updated_at = Column(DateTime, nullable=False, server_default=func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "quantity": self.quantity,
            "reorder_level": self.reorder_level,
            "low_stock": self.quantity <= self.reorder_level,
        }

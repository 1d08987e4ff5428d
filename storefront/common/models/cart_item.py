from sqlalchemy import Column, DateTime, Integer, Numeric, String, UniqueConstraint, func
from .base import Base


class CartItem(Base):
    __tablename__ = "cart_item"
    # one line per product per cart; merges go through an UPDATE on this pair
    __table_args__ = (UniqueConstraint("user_id", "product_id", name="uq_cart_item_user_product"),)

    id = Column(String(36), primary_key=True)
    user_id = Column(String(128), nullable=False, index=True)
    line_no = Column(Integer, nullable=False)
    # no FK: lines outlive deleted products
    product_id = Column(String(36), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    added_at = Column(DateTime, nullable=False, server_default=func.now())

from .base import Base
from .cart_item import CartItem
from .inventory_record import InventoryRecord
from .order import Order
from .product import Product

__all__ = ["Base", "CartItem", "InventoryRecord", "Order", "Product"]

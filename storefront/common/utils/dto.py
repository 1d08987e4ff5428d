from decimal import Decimal
from typing import Any, Dict, Optional


def money(value: Any) -> Decimal:
    return Decimal(str(value or 0)).quantize(Decimal("0.01"))


def effective_price(price: Any, discount: Any) -> Decimal:
    base = money(price)
    pct = Decimal(str(discount or 0))
    if pct <= 0:
        return base
    return money(base * (Decimal("1") - pct / Decimal("100")))


def to_product_dto(row: Any) -> Dict:
    return {
        "id": getattr(row, "id", None),
        "name": getattr(row, "name", None),
        "description": getattr(row, "description", None),
        "price": float(getattr(row, "price", 0) or 0),
        "discount": float(getattr(row, "discount", 0) or 0),
        "inventory_id": getattr(row, "inventory_id", None),
        "is_active": bool(getattr(row, "is_active", True)),
    }


def to_cart_line_dto(row: Any, product: Optional[Any] = None) -> Dict:
    return {
        "id": row.id,
        "product_id": row.product_id,
        "name": getattr(product, "name", None),
        "quantity": row.quantity,
        "unit_price": float(row.unit_price or 0),
        "available": bool(product is not None and product.is_active),
    }


def to_order_dto(row: Any) -> Dict:
    return {
        "order_id": row.id,
        "user_id": row.user_id,
        "items": list(row.items or []),
        "total_amount": float(row.total_amount or 0),
        "currency": row.currency,
        "shipping_address": row.shipping_address or {},
        "status": row.status,
        "payment_status": row.payment_status,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }

from typing import Dict, List, Optional
from uuid import uuid4
from decimal import Decimal
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from ..db.session import get_session
from ..models.cart_item import CartItem
from ..models.inventory_record import InventoryRecord
from ..models.product import Product
from ..utils.dto import effective_price, to_cart_line_dto
from ..utils.validators import ensure_positive_int
from .errors import Conflict, InsufficientStock, NoInventoryRecord, NotFound, ProductInactive, ProductNotFound, ValidationError
from .logging import log_event


class CartService:
    """Per-user cart backed by DB.

    Stock is checked when lines are added or changed but never reserved;
    reservation happens at checkout. The unit price is captured once when a
    product first enters the cart.
    """

    def __init__(self, session_factory=get_session, currency: str = "LKR"):
        self._session_factory = session_factory
        self._currency = currency
        self._insert_attempts = 3

    @staticmethod
    def _require_user(user_id: Optional[str]) -> str:
        if not user_id:
            raise ValidationError("user_id required")
        return str(user_id)

    @staticmethod
    def _lines(session, user_id: str) -> List[CartItem]:
        return (
            session.query(CartItem)
            .filter(CartItem.user_id == user_id)
            .order_by(CartItem.line_no.asc())
            .all()
        )

    @staticmethod
    def _check_stock(session, product_id: str, quantity: int) -> Product:
        prod = session.get(Product, product_id)
        if prod is None:
            raise ProductNotFound(f"Product {product_id} not found")
        if not prod.is_active:
            raise ProductInactive(f"Product {prod.name} is currently not available")
        inv = session.get(InventoryRecord, prod.inventory_id) if prod.inventory_id else None
        if inv is None:
            raise NoInventoryRecord(f"Product {prod.name} has no inventory information")
        if quantity > int(inv.quantity):
            raise InsufficientStock(inv.id, requested=quantity, available=int(inv.quantity))
        return prod

    def get_cart(self, *, user_id: str) -> Dict:
        uid = self._require_user(user_id)
        with self._session_factory() as session:
            lines = self._lines(session, uid)
            ids = {it.product_id for it in lines}
            products = {p.id: p for p in session.query(Product).filter(Product.id.in_(ids)).all()} if ids else {}
            items = [to_cart_line_dto(it, products.get(it.product_id)) for it in lines]
            subtotal = sum((Decimal(str(it.unit_price)) * it.quantity for it in lines), Decimal("0"))
            return {"user_id": uid, "items": items, "subtotal": float(subtotal), "currency": self._currency}

    def snapshot(self, *, user_id: str) -> List[Dict]:
        """Lines in cart order as plain dicts with Decimal prices."""
        uid = self._require_user(user_id)
        with self._session_factory() as session:
            return [
                {
                    "item_id": it.id,
                    "product_id": it.product_id,
                    "quantity": int(it.quantity),
                    "unit_price": Decimal(str(it.unit_price)),
                }
                for it in self._lines(session, uid)
            ]

    def add_line(self, *, user_id: str, product_id: str, quantity: int = 1) -> Dict:
        uid = self._require_user(user_id)
        if not product_id:
            raise ValidationError("product_id required")
        qnty = ensure_positive_int(quantity, "quantity")
        # a concurrent first add for the same product loses the insert race
        # on uq_cart_item_user_product and goes round again as a merge
        for attempt in range(self._insert_attempts):
            try:
                item_id, new_q = self._merge_or_insert(uid, product_id, qnty)
                break
            except IntegrityError:
                if attempt + 1 >= self._insert_attempts:
                    raise Conflict("Cart changed concurrently, try again")
        log_event("info", "cart.line_added", user_id=uid, product_id=product_id, quantity=new_q)
        return {"status": "added", "item_id": item_id, "quantity": new_q}

    def _merge_or_insert(self, uid: str, product_id: str, qnty: int):
        with self._session_factory() as session:
            # merge into the existing line in place
            merged = session.execute(
                update(CartItem)
                .where(CartItem.user_id == uid, CartItem.product_id == product_id)
                .values(quantity=CartItem.quantity + qnty)
                .execution_options(synchronize_session=False)
            ).rowcount
            if merged:
                item_id, new_q = session.execute(
                    select(CartItem.id, CartItem.quantity).where(
                        CartItem.user_id == uid, CartItem.product_id == product_id
                    )
                ).one()
                # raising here rolls the increment back
                self._check_stock(session, product_id, int(new_q))
                return item_id, int(new_q)
            prod = self._check_stock(session, product_id, qnty)
            last = session.query(func.max(CartItem.line_no)).filter(CartItem.user_id == uid).scalar()
            item = CartItem(
                id=str(uuid4()),
                user_id=uid,
                line_no=(last or 0) + 1,
                product_id=product_id,
                quantity=qnty,
                unit_price=effective_price(prod.price, prod.discount),
            )
            session.add(item)
            session.flush()
            return item.id, qnty

    def update_line_quantity(self, *, user_id: str, item_id: str, quantity: int) -> Dict:
        uid = self._require_user(user_id)
        if not item_id:
            raise ValidationError("item_id required")
        qnty = ensure_positive_int(quantity, "quantity")
        with self._session_factory() as session:
            it = (
                session.query(CartItem)
                .filter(CartItem.id == item_id, CartItem.user_id == uid)
                .first()
            )
            if not it:
                raise NotFound("Item not found in cart")
            self._check_stock(session, it.product_id, qnty)
            it.quantity = qnty
            session.flush()
        log_event("info", "cart.line_updated", user_id=uid, item_id=item_id, quantity=qnty)
        return {"status": "updated", "item_id": item_id, "quantity": qnty}

    def remove_line(self, *, user_id: str, item_id: str) -> None:
        uid = self._require_user(user_id)
        with self._session_factory() as session:
            deleted = (
                session.query(CartItem)
                .filter(CartItem.id == item_id, CartItem.user_id == uid)
                .delete(synchronize_session=False)
            )
        if not deleted:
            raise NotFound("Item not found in cart")
        log_event("info", "cart.line_removed", user_id=uid, item_id=item_id)
        return None

    def clear(self, *, user_id: str, session=None) -> int:
        """Empty the cart; a no-op on an empty cart. Returns lines removed."""
        uid = self._require_user(user_id)
        if session is not None:
            return self._clear(session, uid)
        with self._session_factory() as s:
            removed = self._clear(s, uid)
        log_event("info", "cart.cleared", user_id=uid, removed=removed)
        return removed

    @staticmethod
    def _clear(session, user_id: str) -> int:
        return (
            session.query(CartItem)
            .filter(CartItem.user_id == user_id)
            .delete(synchronize_session=False)
        )

    def consume(self, *, user_id: str, lines: List[Dict], session) -> int:
        """Take ordered ``snapshot`` lines out of the cart inside ``session``.

        Lines added after the snapshot stay. A line whose quantity grew after
        the snapshot keeps the difference. Returns lines deleted.
        """
        uid = self._require_user(user_id)
        removed = 0
        for line in lines:
            ordered = int(line["quantity"])
            left = session.execute(
                update(CartItem)
                .where(CartItem.id == line["item_id"], CartItem.user_id == uid, CartItem.quantity > ordered)
                .values(quantity=CartItem.quantity - ordered)
                .execution_options(synchronize_session=False)
            ).rowcount
            if left:
                continue
            removed += (
                session.query(CartItem)
                .filter(CartItem.id == line["item_id"], CartItem.user_id == uid)
                .delete(synchronize_session=False)
            )
        return removed

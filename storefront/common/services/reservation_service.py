from typing import Dict, Iterable, List, Optional, Tuple
from collections import OrderedDict
from uuid import uuid4
from decimal import Decimal, InvalidOperation
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from ..db.session import get_session
from ..models.inventory_record import InventoryRecord
from ..models.order import Order
from ..models.product import Product
from ..utils.dto import effective_price, money, to_order_dto
from ..utils.validators import ensure_positive_int
from .errors import (
    EmptyCart,
    InventoryInconsistency,
    NoInventoryRecord,
    NotFound,
    PersistenceFailure,
    ProductInactive,
    ProductNotFound,
    ValidationError,
)
from .logging import log_event


class StockReservationService:
    """Turns a cart (or explicit items) into an order, all or nothing.

    Stock is decremented per SKU in ascending SKU order. Any failure after the
    first decrement, including an interrupted request, puts back every
    quantity already taken before the error leaves ``checkout``.
    """

    def __init__(self, ledger, cart_service, session_factory=get_session, currency: str = "LKR"):
        self._ledger = ledger
        self._cart = cart_service
        self._session_factory = session_factory
        self._currency = currency

    def checkout(
        self,
        *,
        user_id: str,
        items: Optional[List[Dict]] = None,
        shipping_address: Optional[Dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict:
        if not user_id:
            raise ValidationError("user_id required")
        uid = str(user_id)
        key = (idempotency_key or "").strip() or None
        if key:
            existing = self._find_by_key(uid, key)
            if existing:
                log_event("info", "checkout.replayed", user_id=uid, order_id=existing["order_id"])
                return existing

        from_cart = not items
        lines = self._cart.snapshot(user_id=uid) if from_cart else self._parse_items(items)
        if not lines:
            raise EmptyCart("Cart is empty, cannot create order")

        order_lines, per_sku = self._validate(lines)
        applied: List[Tuple[str, int]] = []
        try:
            for sku_id, qty in per_sku.items():
                self._ledger.adjust_quantity(sku_id, -qty)
                applied.append((sku_id, qty))
        except BaseException as exc:
            self._compensate(applied, user_id=uid, cause=exc)
            raise

        order_id = str(uuid4())
        total = sum((Decimal(str(l["unit_price"])) * l["quantity"] for l in order_lines), Decimal("0"))
        try:
            order = self._persist(
                order_id=order_id,
                user_id=uid,
                order_lines=order_lines,
                total=money(total),
                shipping_address=shipping_address,
                key=key,
                cart_lines=lines if from_cart else None,
            )
        except IntegrityError as exc:
            self._compensate(applied, user_id=uid, cause=exc)
            winner = self._find_by_key(uid, key) if key else None
            if winner:
                log_event("info", "checkout.replayed", user_id=uid, order_id=winner["order_id"])
                return winner
            log_event("error", "checkout.persistence_failed", user_id=uid, order_id=order_id, error=str(exc))
            raise PersistenceFailure("Error creating order") from exc
        except SQLAlchemyError as exc:
            self._compensate(applied, user_id=uid, cause=exc)
            log_event("error", "checkout.persistence_failed", user_id=uid, order_id=order_id, error=str(exc))
            raise PersistenceFailure("Error creating order") from exc
        except BaseException as exc:
            self._compensate(applied, user_id=uid, cause=exc)
            raise

        log_event(
            "info",
            "order.created",
            order_id=order_id,
            user_id=uid,
            items=len(order_lines),
            total_amount=float(total),
            source="cart" if from_cart else "request",
        )
        return order

    def restore_for_cancellation(self, *, order_id: str, items: Iterable[Dict], session=None) -> Dict[str, int]:
        """Give back every SKU quantity held by the order's lines.

        Exactly-once is the caller's job: the order state transition that
        wins the cancellation is the only one that calls this. With ``session``
        the caller logs the result once its transaction commits.
        """
        restored: Dict[str, int] = {}
        for sku_id, qty in self._aggregate(items).items():
            try:
                self._ledger.adjust_quantity(sku_id, qty, session=session)
            except NotFound:
                log_event("error", "inventory.restore_skipped", order_id=order_id, sku_id=sku_id, quantity=qty)
                continue
            restored[sku_id] = qty
        if session is None:
            log_event("info", "inventory.restored", order_id=order_id, skus=restored)
        return restored

    @staticmethod
    def _aggregate(items: Iterable[Dict]) -> "OrderedDict[str, int]":
        totals: Dict[str, int] = {}
        for it in items or []:
            sku_id = it.get("sku_id")
            if not sku_id:
                continue
            totals[sku_id] = totals.get(sku_id, 0) + int(it.get("quantity") or 0)
        return OrderedDict(sorted((k, v) for k, v in totals.items() if v > 0))

    @staticmethod
    def _parse_items(items: List[Dict]) -> List[Dict]:
        if not isinstance(items, list):
            raise ValidationError("items must be a list")
        parsed = []
        for raw in items:
            if not isinstance(raw, dict) or not raw.get("product_id"):
                raise ValidationError("Invalid product in order. Product ID is required.")
            price = raw.get("price", raw.get("unit_price"))
            if price is not None:
                try:
                    price = money(price)
                except (InvalidOperation, ValueError, TypeError):
                    raise ValidationError("price must be a number")
                if price < 0:
                    raise ValidationError("price must be >= 0")
            parsed.append(
                {
                    "product_id": str(raw["product_id"]),
                    "quantity": ensure_positive_int(raw.get("quantity", 1), "quantity"),
                    "unit_price": price,
                }
            )
        return parsed

    def _validate(self, lines: List[Dict]):
        """Resolve products and SKUs; no mutation happens here."""
        with self._session_factory() as session:
            ids = {l["product_id"] for l in lines}
            products = {p.id: p for p in session.query(Product).filter(Product.id.in_(ids)).all()}
            inv_ids = {p.inventory_id for p in products.values() if p.inventory_id}
            inventory = (
                {r.id for r in session.query(InventoryRecord.id).filter(InventoryRecord.id.in_(inv_ids)).all()}
                if inv_ids
                else set()
            )

            resolved = []
            for line in lines:
                prod = products.get(line["product_id"])
                if prod is None:
                    raise ProductNotFound(f"Product {line['product_id']} not found")
                resolved.append((prod.inventory_id or "", prod.id, line, prod))
            resolved.sort(key=lambda r: (r[0], r[1]))

            order_lines: List[Dict] = []
            per_sku: Dict[str, int] = {}
            for sku_id, _, line, prod in resolved:
                if not prod.is_active:
                    raise ProductInactive(f"Product {prod.name} is no longer available")
                if not sku_id or sku_id not in inventory:
                    raise NoInventoryRecord(f"Product {prod.name} has no inventory information")
                price = line.get("unit_price")
                if price is None:
                    price = effective_price(prod.price, prod.discount)
                order_lines.append(
                    {
                        "product_id": prod.id,
                        "sku_id": sku_id,
                        "name": prod.name,
                        "quantity": int(line["quantity"]),
                        "unit_price": float(price),
                    }
                )
                per_sku[sku_id] = per_sku.get(sku_id, 0) + int(line["quantity"])
        return order_lines, OrderedDict(sorted(per_sku.items()))

    def _persist(self, *, order_id, user_id, order_lines, total, shipping_address, key, cart_lines) -> Dict:
        with self._session_factory() as session:
            order = Order(
                id=order_id,
                user_id=user_id,
                items=order_lines,
                total_amount=total,
                currency=self._currency,
                shipping_address=shipping_address or {},
                status="pending",
                payment_status="pending",
                idempotency_key=key,
                version=0,
            )
            session.add(order)
            if cart_lines:
                self._cart.consume(user_id=user_id, lines=cart_lines, session=session)
            session.flush()
            return to_order_dto(order)

    def _compensate(self, applied: List[Tuple[str, int]], *, user_id: str, cause: BaseException) -> None:
        failed = []
        for sku_id, qty in reversed(applied):
            try:
                self._ledger.adjust_quantity(sku_id, qty)
            except Exception as exc:
                failed.append({"sku_id": sku_id, "quantity": qty, "error": str(exc)})
        if applied:
            log_event(
                "warning",
                "checkout.compensated",
                user_id=user_id,
                skus=[s for s, _ in applied],
                cause=type(cause).__name__,
            )
        if failed:
            log_event("critical", "inventory.inconsistency", user_id=user_id, failed=failed, cause=str(cause))
            raise InventoryInconsistency(
                "Stock could not be restored after a failed checkout; operator action required",
                failed=failed,
            ) from cause

    def _find_by_key(self, user_id: str, key: str) -> Optional[Dict]:
        with self._session_factory() as session:
            row = (
                session.query(Order)
                .filter(Order.user_id == user_id, Order.idempotency_key == key)
                .first()
            )
            return to_order_dto(row) if row else None

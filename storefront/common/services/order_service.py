from typing import Callable, Dict, List, Optional
import time
from sqlalchemy import func, update
from sqlalchemy.exc import OperationalError
from ..db.session import get_session, is_lock_contention
from ..models.order import Order
from ..utils.dto import to_order_dto
from .errors import Conflict, Forbidden, NotFound, PersistenceFailure, ValidationError
from .logging import log_event
from .order_lifecycle import (
    Requester,
    Transition,
    plan_payment_change,
    plan_status_change,
    plan_user_cancel,
)


class _StaleOrder(Exception):
    pass


class OrderService:
    """Order reads and lifecycle transitions backed by DB.

    Each transition is an optimistic update guarded by ``Order.version``.
    When it cancels the order, the inventory restore is written in the same
    transaction, so of two racing cancellations only the one whose version
    check succeeds gives stock back.
    """

    def __init__(
        self,
        reservation_service,
        session_factory=get_session,
        *,
        max_attempts: int = 5,
        backoff_seconds: float = 0.02,
        admin_role: str = "admin",
    ):
        self._reservation = reservation_service
        self._session_factory = session_factory
        self._max_attempts = max(1, int(max_attempts))
        self._backoff = max(0.0, float(backoff_seconds))
        self._admin_role = admin_role

    def get_order(self, order_id: str, requester: Optional[Requester] = None) -> Dict:
        if not order_id:
            raise ValidationError("order_id required")
        with self._session_factory() as session:
            o = session.get(Order, order_id)
            if not o:
                raise NotFound("Order not found")
            if requester is not None and o.user_id != str(requester.user_id) and not requester.is_admin(self._admin_role):
                raise Forbidden("Not authorized to access this order")
            return to_order_dto(o)

    def list_orders(self, user_id: Optional[str] = None) -> List[Dict]:
        """Orders newest first; ``user_id=None`` lists every user's orders."""
        with self._session_factory() as session:
            q = session.query(Order)
            if user_id is not None:
                q = q.filter(Order.user_id == str(user_id))
            rows = q.order_by(Order.created_at.desc(), Order.id.asc()).all()
            return [to_order_dto(o) for o in rows]

    def set_status(self, order_id: str, new_status: str) -> Dict:
        return self._transition(
            order_id,
            lambda o: plan_status_change(o.status, o.payment_status, new_status),
            "order.status_changed",
        )

    def cancel(self, order_id: str, requester: Requester) -> Dict:
        return self._transition(
            order_id,
            lambda o: plan_user_cancel(o.user_id, o.status, o.payment_status, requester, self._admin_role),
            "order.cancelled",
        )

    def set_payment_status(self, order_id: str, payment_status: str) -> Dict:
        return self._transition(
            order_id,
            lambda o: plan_payment_change(o.status, o.payment_status, payment_status),
            "order.payment_status_changed",
        )

    def clear_cancelled(self, user_id: Optional[str] = None) -> int:
        """Delete cancelled orders. Their stock was already restored."""
        with self._session_factory() as session:
            q = session.query(Order).filter(Order.status == "cancelled")
            if user_id is not None:
                q = q.filter(Order.user_id == str(user_id))
            count = q.delete(synchronize_session=False)
        log_event("info", "order.cancelled_cleared", user_id=user_id, count=count)
        return count

    def _transition(self, order_id: str, plan: Callable[[Order], Transition], event: str) -> Dict:
        if not order_id:
            raise ValidationError("order_id required")
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._apply(order_id, plan, event)
            except (_StaleOrder, OperationalError) as exc:
                if isinstance(exc, OperationalError) and not is_lock_contention(exc):
                    log_event("error", "order.transition_failed", order_id=order_id, error=str(exc))
                    raise PersistenceFailure("Order could not be updated", order_id=order_id) from exc
                if attempt >= self._max_attempts:
                    log_event("warning", "order.conflict", order_id=order_id, attempts=attempt)
                    raise Conflict("Order was modified concurrently, retry later", order_id=order_id) from exc
                time.sleep(self._backoff * (2 ** (attempt - 1)))

    def _apply(self, order_id: str, plan: Callable[[Order], Transition], event: str) -> Dict:
        with self._session_factory() as session:
            row = session.get(Order, order_id)
            if row is None:
                raise NotFound("Order not found")
            previous = (row.status, row.payment_status)
            t = plan(row)
            if not t.changes(*previous):
                return to_order_dto(row)

            values = {
                "status": t.status,
                "payment_status": t.payment_status,
                "version": Order.version + 1,
                "updated_at": func.now(),
            }
            if t.restore_inventory:
                values["inventory_restored_at"] = func.now()
            result = session.execute(
                update(Order)
                .where(Order.id == order_id, Order.version == row.version)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise _StaleOrder(order_id)
            restored = None
            if t.restore_inventory:
                restored = self._reservation.restore_for_cancellation(order_id=order_id, items=row.items, session=session)
            session.flush()
            session.refresh(row)
            dto = to_order_dto(row)

        log_event(
            "info",
            event,
            order_id=order_id,
            status_from=previous[0],
            status_to=t.status,
            payment_from=previous[1],
            payment_to=t.payment_status,
            restored=t.restore_inventory,
        )
        if restored is not None:
            log_event("info", "inventory.restored", order_id=order_id, skus=restored)
        return dto

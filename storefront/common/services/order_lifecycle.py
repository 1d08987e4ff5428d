"""Order status and payment status transition rules.

Pure functions: they look at the current state, decide the next one and say
whether the move has to give stock back. Persistence and locking live in
``order_service``.
"""

from dataclasses import dataclass
from typing import Optional

from .errors import Forbidden, IllegalTransition, NotCancellable, ValidationError


ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "completed", "failed", "refunded")
USER_CANCELLABLE = ("pending", "processing")

_PAYMENT_MOVES = {
    "pending": {"completed", "failed"},
    "completed": {"refunded"},
    "failed": set(),
    "refunded": set(),
}


@dataclass(frozen=True)
class Transition:
    status: str
    payment_status: str
    restore_inventory: bool = False

    def changes(self, status: str, payment_status: str) -> bool:
        return (self.status, self.payment_status) != (status, payment_status)


@dataclass(frozen=True)
class Requester:
    user_id: str
    role: Optional[str] = None

    def is_admin(self, admin_role: str = "admin") -> bool:
        return (self.role or "").lower() == admin_role.lower()


def plan_status_change(status: str, payment_status: str, new_status: str) -> Transition:
    if new_status not in ORDER_STATUSES:
        raise ValidationError(
            f"Invalid status value. Must be one of: {', '.join(ORDER_STATUSES)}"
        )
    if new_status == status:
        return Transition(status, payment_status)
    if status == "delivered":
        raise IllegalTransition("Cannot change status of a delivered order")
    if status == "cancelled":
        raise IllegalTransition("Cannot change status of a cancelled order")
    if new_status == "cancelled":
        refunded = "refunded" if payment_status == "completed" else payment_status
        return Transition("cancelled", refunded, restore_inventory=True)
    return Transition(new_status, payment_status)


def plan_user_cancel(
    owner_id: str,
    status: str,
    payment_status: str,
    requester: Requester,
    admin_role: str = "admin",
) -> Transition:
    if str(owner_id) != str(requester.user_id) and not requester.is_admin(admin_role):
        raise Forbidden("You are not authorized to cancel this order")
    if status not in USER_CANCELLABLE:
        raise NotCancellable(
            f"Cannot cancel order with status {status}. Only pending or processing orders can be cancelled."
        )
    return plan_status_change(status, payment_status, "cancelled")


def plan_payment_change(status: str, payment_status: str, new_payment_status: str) -> Transition:
    if new_payment_status not in PAYMENT_STATUSES:
        raise ValidationError(
            f"Invalid payment status. Must be one of: {', '.join(PAYMENT_STATUSES)}"
        )
    if new_payment_status == payment_status:
        return Transition(status, payment_status)
    if new_payment_status not in _PAYMENT_MOVES[payment_status]:
        raise IllegalTransition(f"Cannot move payment from {payment_status} to {new_payment_status}")
    if new_payment_status == "completed" and status == "cancelled":
        # a cancelled order never holds a completed payment
        raise IllegalTransition("Cannot complete payment on a cancelled order")
    if new_payment_status == "completed" and status == "pending":
        return Transition("processing", new_payment_status)
    return Transition(status, new_payment_status)

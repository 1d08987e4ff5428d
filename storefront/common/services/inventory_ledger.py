from typing import Dict, List, Optional
from uuid import uuid4
import time
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError
from ..db.session import get_session, is_lock_contention
from ..models.inventory_record import InventoryRecord
from .errors import Conflict, InsufficientStock, NotFound, PersistenceFailure, ValidationError
from .logging import log_event


class InventoryLedger:
    """Owns per-SKU stock quantities.

    Every mutation is one conditional UPDATE (``quantity + delta >= 0`` in the
    WHERE clause), so two adjustments on the same SKU are linearized by the
    database row lock and a decrement can never drive stock negative.
    Driver-level lock contention is retried with exponential backoff and then
    surfaced as ``Conflict``; any other driver error is a ``PersistenceFailure``.
    """

    def __init__(self, session_factory=get_session, *, max_attempts: int = 5, backoff_seconds: float = 0.02):
        self._session_factory = session_factory
        self._max_attempts = max(1, int(max_attempts))
        self._backoff = max(0.0, float(backoff_seconds))

    def create_record(self, *, name: str, quantity: int = 0, reorder_level: int = 5, sku_id: Optional[str] = None) -> Dict:
        if not name:
            raise ValidationError("name required")
        if int(quantity) < 0 or int(reorder_level) < 0:
            raise ValidationError("quantity and reorder_level must be >= 0")
        rec = InventoryRecord(
            id=sku_id or str(uuid4()),
            name=name,
            quantity=int(quantity),
            reorder_level=int(reorder_level),
            version=0,
        )
        with self._session_factory() as session:
            session.add(rec)
            session.flush()
            data = rec.to_dict()
        log_event("info", "inventory.created", sku_id=data["id"], quantity=data["quantity"])
        return data

    def get_record(self, sku_id: str) -> Dict:
        with self._session_factory() as session:
            rec = session.get(InventoryRecord, sku_id)
            if rec is None:
                raise NotFound(f"Inventory record {sku_id} not found")
            return rec.to_dict()

    def available_quantity(self, sku_id: str) -> int:
        return int(self.get_record(sku_id)["quantity"])

    def list_low_stock(self) -> List[Dict]:
        with self._session_factory() as session:
            rows = (
                session.query(InventoryRecord)
                .filter(InventoryRecord.quantity <= InventoryRecord.reorder_level)
                .order_by(InventoryRecord.quantity.asc(), InventoryRecord.id.asc())
                .all()
            )
            return [r.to_dict() for r in rows]

    def adjust_quantity(self, sku_id: str, delta: int, session=None) -> int:
        """Apply ``delta`` to the SKU and return the new quantity.

        With ``session`` the update joins the caller's transaction, lock
        errors propagate, and logging is left to the caller, which alone knows
        whether the change committed. Otherwise it commits on its own.
        """
        if not sku_id:
            raise ValidationError("sku_id required")
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise ValidationError("delta must be an integer")

        if session is not None:
            return self._apply(session, sku_id, delta)[0]

        attempt = 0
        while True:
            attempt += 1
            try:
                with self._session_factory() as s:
                    new_qty, reorder_level = self._apply(s, sku_id, delta)
                break
            except OperationalError as exc:
                if not is_lock_contention(exc):
                    log_event("error", "inventory.adjust_failed", sku_id=sku_id, delta=delta, error=str(exc))
                    raise PersistenceFailure(f"Inventory {sku_id} could not be updated", sku_id=sku_id) from exc
                if attempt >= self._max_attempts:
                    log_event("warning", "inventory.conflict", sku_id=sku_id, delta=delta, attempts=attempt)
                    raise Conflict(f"Inventory {sku_id} is busy, retry later", sku_id=sku_id) from exc
                time.sleep(self._backoff * (2 ** (attempt - 1)))

        log_event("info", "inventory.adjusted", sku_id=sku_id, delta=delta, quantity=new_qty)
        if delta < 0 and new_qty <= reorder_level:
            log_event("warning", "inventory.low_stock", sku_id=sku_id, quantity=new_qty, reorder_level=reorder_level)
        return new_qty

    @staticmethod
    def _apply(session, sku_id: str, delta: int):
        result = session.execute(
            update(InventoryRecord)
            .where(InventoryRecord.id == sku_id, InventoryRecord.quantity + delta >= 0)
            .values(
                quantity=InventoryRecord.quantity + delta,
                version=InventoryRecord.version + 1,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        row = session.execute(
            select(InventoryRecord.quantity, InventoryRecord.reorder_level).where(InventoryRecord.id == sku_id)
        ).first()
        if row is None:
            raise NotFound(f"Inventory record {sku_id} not found")
        if result.rowcount != 1:
            raise InsufficientStock(sku_id, requested=-delta, available=row.quantity)
        return int(row.quantity), int(row.reorder_level)

from typing import Dict, Iterable
from ..db.session import get_session
from ..models.product import Product
from ..utils.dto import to_product_dto


class CatalogService:
    """Read-only product lookups used by the cart and checkout.

    Inactive products are returned too; callers decide how to treat them.
    """

    def __init__(self, session_factory=get_session):
        self._session_factory = session_factory

    def get_product(self, product_id: str) -> dict:
        """Return ProductDTO for given product id, or {} when missing."""
        if not product_id:
            return {}
        with self._session_factory() as session:
            r = session.get(Product, product_id)
            return to_product_dto(r) if r else {}

    def get_products(self, product_ids: Iterable[str]) -> Dict[str, dict]:
        ids = sorted({p for p in product_ids if p})
        if not ids:
            return {}
        with self._session_factory() as session:
            rows = session.query(Product).filter(Product.id.in_(ids)).all()
            return {r.id: to_product_dto(r) for r in rows}

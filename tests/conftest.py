from decimal import Decimal

import pytest

from storefront.app import build_components
from storefront.common.config import AppConfig
from storefront.common.db.session import build_engine, build_session_factory
from storefront.common.models import Base, Product


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        database_url=f"sqlite:///{tmp_path / 'store.db'}",
        secret_key="test",
        log_level="WARNING",
        currency="LKR",
        adjust_max_attempts=8,
        adjust_backoff_seconds=0.01,
        transition_max_attempts=8,
    )


@pytest.fixture
def session_factory(config):
    engine = build_engine(config.database_url)
    Base.metadata.create_all(engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def components(config, session_factory):
    return build_components(config, session_factory)


@pytest.fixture
def ledger(components):
    return components["ledger"]


@pytest.fixture
def cart(components):
    return components["cart"]


@pytest.fixture
def reservation(components):
    return components["reservation"]


@pytest.fixture
def orders(components):
    return components["orders"]


@pytest.fixture
def make_product(session_factory, ledger):
    """Create an inventory record plus a product pointing at it."""

    def _make(sku_id, quantity=10, price="10.00", discount=0, active=True, with_inventory=True, reorder_level=0):
        sku_id = str(sku_id)
        if with_inventory:
            ledger.create_record(name=f"SKU {sku_id}", quantity=quantity, reorder_level=reorder_level, sku_id=sku_id)
        product_id = f"p-{sku_id}"
        with session_factory() as session:
            session.add(
                Product(
                    id=product_id,
                    name=f"Product {sku_id}",
                    price=Decimal(str(price)),
                    discount=Decimal(str(discount)),
                    inventory_id=sku_id if with_inventory else None,
                    is_active=active,
                )
            )
        return product_id

    return _make


@pytest.fixture
def set_product(session_factory):
    def _set(product_id, **fields):
        with session_factory() as session:
            prod = session.get(Product, product_id)
            for k, v in fields.items():
                setattr(prod, k, v)

    return _set

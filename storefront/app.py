"""Storefront order and inventory Flask application."""

from __future__ import annotations

from typing import Optional

from flask import Flask

from .common.config import AppConfig, load_env
from .common.db.session import build_engine, build_session_factory
from .common.models import Base
from .common.services.cart_service import CartService
from .common.services.catalog_service import CatalogService
from .common.services.inventory_ledger import InventoryLedger
from .common.services.logging import set_log_level
from .common.services.order_service import OrderService
from .common.services.reservation_service import StockReservationService
from .routes import api


def build_components(config: AppConfig, session_factory) -> dict:
    ledger = InventoryLedger(
        session_factory,
        max_attempts=config.adjust_max_attempts,
        backoff_seconds=config.adjust_backoff_seconds,
    )
    cart = CartService(session_factory, currency=config.currency)
    reservation = StockReservationService(ledger, cart, session_factory, currency=config.currency)
    orders = OrderService(
        reservation,
        session_factory,
        max_attempts=config.transition_max_attempts,
        backoff_seconds=config.adjust_backoff_seconds,
        admin_role=config.admin_role,
    )
    return {
        "ledger": ledger,
        "catalog": CatalogService(session_factory),
        "cart": cart,
        "reservation": reservation,
        "orders": orders,
    }


def create_app(config: Optional[AppConfig] = None) -> Flask:
    config = config or load_env()
    set_log_level(config.log_level)

    engine = build_engine(config.database_url)
    Base.metadata.create_all(engine)
    session_factory = build_session_factory(engine)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key
    app.config["STORE_CONFIG"] = config
    app.extensions["storefront_components"] = build_components(config, session_factory)

    app.register_blueprint(api.api_bp)

    return app


def main() -> None:
    app = create_app()
    app.run(host="0.0.0.0", port=5000, debug=False)


if __name__ == "__main__":
    main()

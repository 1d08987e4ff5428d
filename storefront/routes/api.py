"""Thin JSON handlers over the cart, checkout and order services."""

from __future__ import annotations

from typing import Any, Dict

from flask import Blueprint, current_app, jsonify, request

from ..common.services.errors import Forbidden, StoreError
from ..common.services.logging import log_event
from ..common.services.order_lifecycle import Requester


api_bp = Blueprint("storefront_api", __name__, url_prefix="/api")


def _components() -> Dict[str, Any]:
    return current_app.extensions["storefront_components"]


def _config():
    return current_app.config["STORE_CONFIG"]


def _requester() -> Requester:
    # identity is resolved upstream and trusted as given
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise _Unauthenticated()
    return Requester(user_id=user_id, role=request.headers.get("X-User-Role", "").strip() or None)


def _ensure_admin() -> Requester:
    who = _requester()
    if not who.is_admin(_config().admin_role):
        raise Forbidden("Admin access required")
    return who


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


class _Unauthenticated(StoreError):
    code = "unauthenticated"
    status = 401


@api_bp.errorhandler(StoreError)
def handle_store_error(exc: StoreError):
    if exc.status >= 500:
        log_event("error", "api.failed", path=request.path, error=exc.code, message=exc.message)
    return jsonify(exc.to_dict()), exc.status


# --- Cart ---

@api_bp.get("/cart")
def get_cart():
    who = _requester()
    return jsonify(_components()["cart"].get_cart(user_id=who.user_id))


@api_bp.post("/cart/items")
def add_to_cart():
    who = _requester()
    payload = _payload()
    result = _components()["cart"].add_line(
        user_id=who.user_id,
        product_id=str(payload.get("product_id") or "").strip(),
        quantity=payload.get("quantity", 1),
    )
    return jsonify(result), 201


@api_bp.patch("/cart/items/<item_id>")
def update_cart_item(item_id: str):
    who = _requester()
    result = _components()["cart"].update_line_quantity(
        user_id=who.user_id,
        item_id=item_id,
        quantity=_payload().get("quantity"),
    )
    return jsonify(result)


@api_bp.delete("/cart/items/<item_id>")
def remove_cart_item(item_id: str):
    who = _requester()
    _components()["cart"].remove_line(user_id=who.user_id, item_id=item_id)
    return jsonify({"status": "ok"})


@api_bp.delete("/cart")
def clear_cart():
    who = _requester()
    removed = _components()["cart"].clear(user_id=who.user_id)
    return jsonify({"status": "ok", "removed": removed})


# --- Orders ---

@api_bp.post("/orders")
def checkout():
    who = _requester()
    payload = _payload()
    order = _components()["reservation"].checkout(
        user_id=who.user_id,
        items=payload.get("items") or None,
        shipping_address=payload.get("shipping_address"),
        idempotency_key=request.headers.get("Idempotency-Key") or payload.get("idempotency_key"),
    )
    return jsonify({"status": "ok", "order": order}), 201


@api_bp.get("/orders")
def list_all_orders():
    _ensure_admin()
    orders = _components()["orders"].list_orders()
    return jsonify({"orders": orders, "count": len(orders)})


@api_bp.get("/orders/mine")
def list_my_orders():
    who = _requester()
    orders = _components()["orders"].list_orders(user_id=who.user_id)
    return jsonify({"orders": orders, "count": len(orders)})


@api_bp.delete("/orders/cancelled")
def clear_my_cancelled_orders():
    who = _requester()
    count = _components()["orders"].clear_cancelled(user_id=who.user_id)
    return jsonify({"status": "ok", "count": count})


@api_bp.delete("/admin/orders/cancelled")
def clear_all_cancelled_orders():
    _ensure_admin()
    count = _components()["orders"].clear_cancelled()
    return jsonify({"status": "ok", "count": count})


@api_bp.get("/orders/<order_id>")
def get_order(order_id: str):
    who = _requester()
    return jsonify(_components()["orders"].get_order(order_id, requester=who))


@api_bp.put("/orders/<order_id>/status")
def set_order_status(order_id: str):
    _ensure_admin()
    status = str(_payload().get("status", "")).strip()
    return jsonify(_components()["orders"].set_status(order_id, status))


@api_bp.put("/orders/<order_id>/payment-status")
def set_payment_status(order_id: str):
    _ensure_admin()
    payment_status = str(_payload().get("payment_status", "")).strip()
    return jsonify(_components()["orders"].set_payment_status(order_id, payment_status))


@api_bp.delete("/orders/<order_id>")
def cancel_order(order_id: str):
    who = _requester()
    return jsonify(_components()["orders"].cancel(order_id, who))


# --- Catalog ---

@api_bp.get("/products/<product_id>")
def get_product(product_id: str):
    product = _components()["catalog"].get_product(product_id)
    if not product:
        return jsonify({"error": "product_not_found", "message": "Product not found"}), 404
    return jsonify(product)


# --- Inventory ---

@api_bp.get("/admin/inventory/low-stock")
def low_stock():
    _ensure_admin()
    return jsonify({"items": _components()["ledger"].list_low_stock()})

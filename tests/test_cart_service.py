"""Tests for cart lines, stock checks and price snapshots."""

import threading
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from storefront.common.models import CartItem, Product
from storefront.common.services.cart_service import CartService
from storefront.common.services.errors import (
    InsufficientStock,
    NoInventoryRecord,
    NotFound,
    ProductInactive,
    ProductNotFound,
    ValidationError,
)


class TestAddLine:
    def test_new_cart_is_empty(self, cart):
        data = cart.get_cart(user_id="u1")
        assert data["items"] == []
        assert data["subtotal"] == 0

    def test_add_captures_discounted_price(self, cart, make_product):
        pid = make_product("1", quantity=10, price="200.00", discount=10)
        cart.add_line(user_id="u1", product_id=pid, quantity=2)
        data = cart.get_cart(user_id="u1")
        assert len(data["items"]) == 1
        line = data["items"][0]
        assert line["product_id"] == pid
        assert line["quantity"] == 2
        assert line["unit_price"] == 180.0
        assert data["subtotal"] == 360.0

    def test_adding_same_product_accumulates(self, cart, make_product):
        pid = make_product("1", quantity=10)
        cart.add_line(user_id="u1", product_id=pid, quantity=2)
        result = cart.add_line(user_id="u1", product_id=pid, quantity=3)
        assert result["quantity"] == 5
        assert [l["quantity"] for l in cart.get_cart(user_id="u1")["items"]] == [5]

    def test_accumulated_quantity_is_checked_against_stock(self, cart, make_product):
        pid = make_product("1", quantity=5)
        cart.add_line(user_id="u1", product_id=pid, quantity=3)
        with pytest.raises(InsufficientStock):
            cart.add_line(user_id="u1", product_id=pid, quantity=3)
        assert cart.get_cart(user_id="u1")["items"][0]["quantity"] == 3

    def test_missing_product(self, cart):
        with pytest.raises(ProductNotFound):
            cart.add_line(user_id="u1", product_id="nope", quantity=1)

    def test_inactive_product(self, cart, make_product):
        pid = make_product("1", active=False)
        with pytest.raises(ProductInactive):
            cart.add_line(user_id="u1", product_id=pid, quantity=1)

    def test_product_without_inventory(self, cart, make_product):
        pid = make_product("1", with_inventory=False)
        with pytest.raises(NoInventoryRecord):
            cart.add_line(user_id="u1", product_id=pid, quantity=1)

    @pytest.mark.parametrize("qty", [0, -1, "abc", None, 2.9, 0.5, "2.5", Decimal("1.5"), float("nan")])
    def test_invalid_quantity(self, cart, make_product, qty):
        pid = make_product("1")
        with pytest.raises(ValidationError):
            cart.add_line(user_id="u1", product_id=pid, quantity=qty)
        assert cart.get_cart(user_id="u1")["items"] == []

    @pytest.mark.parametrize("qty", [3.0, Decimal("3"), "3"])
    def test_whole_number_quantity_is_accepted(self, cart, make_product, qty):
        pid = make_product("1")
        assert cart.add_line(user_id="u1", product_id=pid, quantity=qty)["quantity"] == 3

    def test_cart_does_not_reserve_stock(self, cart, ledger, make_product):
        pid = make_product("1", quantity=4)
        cart.add_line(user_id="u1", product_id=pid, quantity=4)
        cart.add_line(user_id="u2", product_id=pid, quantity=4)
        assert ledger.available_quantity("1") == 4

    def test_lines_keep_insertion_order(self, cart, make_product):
        pids = [make_product(str(i)) for i in (3, 1, 2)]
        for pid in pids:
            cart.add_line(user_id="u1", product_id=pid, quantity=1)
        assert [l["product_id"] for l in cart.get_cart(user_id="u1")["items"]] == pids


class TestPriceSnapshot:
    def test_price_change_does_not_touch_existing_line(self, cart, make_product, set_product):
        pid = make_product("1", price="50.00")
        cart.add_line(user_id="u1", product_id=pid, quantity=1)
        set_product(pid, price=Decimal("75.00"))
        cart.add_line(user_id="u1", product_id=pid, quantity=1)
        line = cart.get_cart(user_id="u1")["items"][0]
        assert line["unit_price"] == 50.0
        assert line["quantity"] == 2

    def test_re_adding_after_removal_picks_up_new_price(self, cart, make_product, set_product):
        pid = make_product("1", price="50.00")
        item_id = cart.add_line(user_id="u1", product_id=pid, quantity=1)["item_id"]
        set_product(pid, price=Decimal("75.00"))
        cart.remove_line(user_id="u1", item_id=item_id)
        cart.add_line(user_id="u1", product_id=pid, quantity=1)
        assert cart.get_cart(user_id="u1")["items"][0]["unit_price"] == 75.0


class TestUpdateRemoveClear:
    def test_update_revalidates_stock(self, cart, make_product):
        pid = make_product("1", quantity=5)
        item_id = cart.add_line(user_id="u1", product_id=pid, quantity=1)["item_id"]
        cart.update_line_quantity(user_id="u1", item_id=item_id, quantity=5)
        with pytest.raises(InsufficientStock):
            cart.update_line_quantity(user_id="u1", item_id=item_id, quantity=6)
        assert cart.get_cart(user_id="u1")["items"][0]["quantity"] == 5

    def test_update_rejects_deactivated_product(self, cart, make_product, set_product):
        pid = make_product("1", quantity=5)
        item_id = cart.add_line(user_id="u1", product_id=pid, quantity=1)["item_id"]
        set_product(pid, is_active=False)
        with pytest.raises(ProductInactive):
            cart.update_line_quantity(user_id="u1", item_id=item_id, quantity=2)

    def test_update_other_users_line_is_not_found(self, cart, make_product):
        pid = make_product("1")
        item_id = cart.add_line(user_id="u1", product_id=pid, quantity=1)["item_id"]
        with pytest.raises(NotFound):
            cart.update_line_quantity(user_id="u2", item_id=item_id, quantity=2)

    def test_remove_line(self, cart, make_product):
        pid = make_product("1")
        item_id = cart.add_line(user_id="u1", product_id=pid, quantity=1)["item_id"]
        cart.remove_line(user_id="u1", item_id=item_id)
        assert cart.get_cart(user_id="u1")["items"] == []
        with pytest.raises(NotFound):
            cart.remove_line(user_id="u1", item_id=item_id)

    def test_clear_is_idempotent(self, cart, make_product):
        pid = make_product("1")
        cart.add_line(user_id="u1", product_id=pid, quantity=1)
        assert cart.clear(user_id="u1") == 1
        assert cart.clear(user_id="u1") == 0
        assert cart.get_cart(user_id="u1")["items"] == []


class TestStaleLines:
    def test_deactivated_product_line_is_marked_unavailable(self, cart, make_product, set_product):
        pid = make_product("1")
        cart.add_line(user_id="u1", product_id=pid, quantity=1)
        set_product(pid, is_active=False)
        line = cart.get_cart(user_id="u1")["items"][0]
        assert line["available"] is False

    def test_deleted_product_line_is_tolerated(self, cart, make_product, session_factory):
        pid = make_product("1")
        cart.add_line(user_id="u1", product_id=pid, quantity=2)
        with session_factory() as session:
            session.delete(session.get(Product, pid))
        line = cart.get_cart(user_id="u1")["items"][0]
        assert line["product_id"] == pid
        assert line["name"] is None
        assert line["available"] is False


def _run_together(n, fn):
    barrier = threading.Barrier(n)
    errors = []

    def worker():
        barrier.wait()
        try:
            fn()
        except Exception as exc:  # surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


class TestConcurrentAdds:
    def test_parallel_adds_to_one_line_are_all_counted(self, cart, make_product):
        pid = make_product("1", quantity=50)
        cart.add_line(user_id="u1", product_id=pid, quantity=1)

        errors = _run_together(8, lambda: cart.add_line(user_id="u1", product_id=pid, quantity=1))

        assert errors == []
        assert [(l["product_id"], l["quantity"]) for l in cart.get_cart(user_id="u1")["items"]] == [(pid, 9)]

    def test_parallel_first_adds_make_a_single_line(self, cart, make_product, session_factory):
        pid = make_product("1", quantity=50)

        errors = _run_together(8, lambda: cart.add_line(user_id="u1", product_id=pid, quantity=2))

        assert errors == []
        with session_factory() as session:
            rows = session.query(CartItem).filter(CartItem.user_id == "u1").all()
            assert [(r.product_id, r.quantity) for r in rows] == [(pid, 16)]

    def test_lost_insert_race_is_merged(self, cart, make_product, monkeypatch):
        pid = make_product("1", quantity=50)
        real_merge = CartService._merge_or_insert
        calls = []

        def racing(self, uid, product_id, qnty):
            calls.append(1)
            if len(calls) == 1:
                # another request inserts the line first
                real_merge(self, uid, product_id, 4)
                raise IntegrityError("INSERT INTO cart_item", {}, Exception("UNIQUE constraint failed"))
            return real_merge(self, uid, product_id, qnty)

        monkeypatch.setattr(CartService, "_merge_or_insert", racing)
        result = cart.add_line(user_id="u1", product_id=pid, quantity=1)

        assert result["quantity"] == 5
        assert len(calls) == 2
        assert len(cart.get_cart(user_id="u1")["items"]) == 1

    def test_merge_over_stock_leaves_line_untouched(self, cart, make_product):
        pid = make_product("1", quantity=3)
        cart.add_line(user_id="u1", product_id=pid, quantity=2)
        errors = _run_together(4, lambda: cart.add_line(user_id="u1", product_id=pid, quantity=1))
        assert len(errors) == 3
        assert all(isinstance(e, InsufficientStock) for e in errors)
        assert cart.get_cart(user_id="u1")["items"][0]["quantity"] == 3

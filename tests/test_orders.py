from datetime import timedelta

import pytest
from bson import ObjectId
from pymongo.errors import PyMongoError

import orders
from auth import Principal
from conftest import BUYER, SELLER, make_product
from database import utcnow
from errors import (
    CancellationWindowExpired,
    Forbidden,
    InsufficientStock,
    InvalidOrderRequest,
    InvalidStatusTransition,
    OrderNotFound,
)
from schemas import CheckoutRequest, OrderStatus


def checkout_request(items, city="Dhaka", payment_method="cod"):
    return CheckoutRequest(
        items=[{"product_id": pid, "quantity": qty} for pid, qty in items],
        shipping_address={"name": "Rahim", "phone": "0170000000", "city": city, "address_line": "12 Lake Rd"},
        payment_method=payment_method,
    )


def stock_of(store, product_id):
    return store.products.find_one({"_id": ObjectId(product_id)})["stock"]


class TestDeliveryPolicy:
    def test_fast_lane_city(self):
        assert orders.delivery_horizon("Dhaka") == 3
        assert orders.delivery_horizon("  dhaka ") == 3
        assert orders.shipping_cost("Dhaka") == 60.0

    def test_other_cities(self):
        assert orders.delivery_horizon("Chittagong") == 5
        assert orders.shipping_cost("Chittagong") == 120.0

    def test_initial_status(self):
        assert orders.initial_status("cod") == OrderStatus.PENDING
        assert orders.initial_status("COD") == OrderStatus.PENDING
        assert orders.initial_status("card") == OrderStatus.AWAITING_PAYMENT


class TestPlaceOrder:
    def test_cod_order_is_pending_and_takes_stock(self, store):
        pid = make_product(store, stock=2, price=50.0)

        order = orders.place_order(store, BUYER, checkout_request([(pid, 2)]))

        assert order["status"] == "pending"
        assert order["user_email"] == BUYER
        assert stock_of(store, pid) == 0

    def test_second_checkout_for_sold_out_product_fails(self, store):
        pid = make_product(store, stock=2)
        orders.place_order(store, BUYER, checkout_request([(pid, 2)]))

        with pytest.raises(InsufficientStock):
            orders.place_order(store, "other@example.com", checkout_request([(pid, 1)]))

        assert store.orders.count_documents({}) == 1
        assert stock_of(store, pid) == 0

    def test_prepaid_order_awaits_payment(self, store):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)], payment_method="card"))
        assert order["status"] == "awaiting_payment"

    def test_totals_and_snapshot(self, store):
        p1 = make_product(store, price=100.0, discount=10, images=["a.png", "b.png"], name="Lamp")
        p2 = make_product(store, price=25.5, name="Bulb")

        order = orders.place_order(store, BUYER, checkout_request([(p1, 2), (p2, 1)], city="Sylhet"))

        assert order["subtotal"] == 225.5
        assert order["discount"] == 20.0
        assert order["shipping_cost"] == 120.0
        assert order["total"] == 325.5
        assert order["estimated_delivery_days"] == 5
        lamp = next(i for i in order["items"] if i["product_id"] == p1)
        assert lamp == {
            "product_id": p1,
            "name": "Lamp",
            "price": 100.0,
            "quantity": 2,
            "image": "a.png",
            "seller_email": SELLER,
            "discount": 10.0,
        }

    def test_snapshot_is_frozen(self, store):
        pid = make_product(store, price=10.0)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))

        store.products.update_one({"_id": ObjectId(pid)}, {"$set": {"price": 99.0, "name": "Renamed"}})

        stored = orders.get_order(store, order["id"])
        assert stored["items"][0]["price"] == 10.0
        assert stored["items"][0]["name"] == "Widget"

    def test_repeated_lines_become_one_item(self, store):
        pid = make_product(store, stock=5)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1), (pid, 2)]))
        assert [(i["product_id"], i["quantity"]) for i in order["items"]] == [(pid, 3)]
        assert stock_of(store, pid) == 2

    def test_one_failing_line_aborts_everything(self, store):
        p1 = make_product(store, stock=5)
        p2 = make_product(store, stock=0)

        with pytest.raises(InsufficientStock):
            orders.place_order(store, BUYER, checkout_request([(p1, 2), (p2, 1)]))

        assert store.orders.count_documents({}) == 0
        assert stock_of(store, p1) == 5

    def test_stock_removed_matches_quantities_ordered(self, store):
        p1 = make_product(store, stock=10)
        p2 = make_product(store, stock=10)
        orders.place_order(store, BUYER, checkout_request([(p1, 3), (p2, 1)]))
        orders.place_order(store, BUYER, checkout_request([(p1, 2)]))

        assert stock_of(store, p1) == 5
        assert stock_of(store, p2) == 9

    def test_empty_items(self, store):
        with pytest.raises(InvalidOrderRequest):
            orders.place_order(store, BUYER, checkout_request([]))

    def test_missing_user(self, store):
        pid = make_product(store)
        with pytest.raises(InvalidOrderRequest):
            orders.place_order(store, None, checkout_request([(pid, 1)]))

    def test_insert_failure_releases_stock(self, store, monkeypatch):
        pid = make_product(store, stock=3)

        def fail(*args, **kwargs):
            raise PyMongoError("write failed")

        monkeypatch.setattr(store, "create_document", fail)
        with pytest.raises(PyMongoError):
            orders.place_order(store, BUYER, checkout_request([(pid, 2)]))

        assert stock_of(store, pid) == 3
        assert store.orders.count_documents({}) == 0

    def test_unbuildable_order_keeps_stock(self, store):
        pid = make_product(store, stock=3)

        with pytest.raises(InvalidOrderRequest):
            orders.place_order(store, "buyer@shop.local", checkout_request([(pid, 2)]))

        assert stock_of(store, pid) == 3
        assert store.orders.count_documents({}) == 0

    def test_product_without_name_keeps_stock(self, store):
        pid = make_product(store, stock=3)
        store.products.update_one({"_id": ObjectId(pid)}, {"$unset": {"name": ""}})

        with pytest.raises(InvalidOrderRequest):
            orders.place_order(store, BUYER, checkout_request([(pid, 1)]))

        assert stock_of(store, pid) == 3
        assert store.orders.count_documents({}) == 0

    def test_purchased_lines_leave_the_cart(self, store):
        p1 = make_product(store)
        p2 = make_product(store)
        store.carts.insert_one(
            {
                "user_email": BUYER,
                "items": [
                    {"product_id": p1, "name": "Widget", "price": 100.0, "image": None, "quantity": 1},
                    {"product_id": p2, "name": "Widget", "price": 100.0, "image": None, "quantity": 1},
                ],
            }
        )

        orders.place_order(store, BUYER, checkout_request([(p1, 1)]))

        cart = store.carts.find_one({"user_email": BUYER})
        assert [i["product_id"] for i in cart["items"]] == [p2]


class TestGetOrder:
    def test_unknown_order(self, store):
        with pytest.raises(OrderNotFound):
            orders.get_order(store, str(ObjectId()))

    def test_other_users_order_is_forbidden(self, store):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))
        with pytest.raises(Forbidden):
            orders.get_order_for(store, order["id"], Principal(email="other@example.com"))

    def test_admin_can_read_any_order(self, store, admin):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))
        assert orders.get_order_for(store, order["id"], admin)["id"] == order["id"]

    def test_list_orders_newest_first(self, store):
        pid = make_product(store)
        first = orders.place_order(store, BUYER, checkout_request([(pid, 1)]), now=utcnow() - timedelta(days=1))
        second = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))

        listed = orders.list_orders(store, BUYER)

        assert [o["id"] for o in listed] == [second["id"], first["id"]]


class TestCancelOrder:
    def test_within_window(self, store, buyer):
        pid = make_product(store, stock=3)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 2)]))

        cancelled = orders.cancel_order(store, order["id"], buyer, now=utcnow() + timedelta(minutes=10))

        assert cancelled["status"] == "cancelled"
        assert stock_of(store, pid) == 3

    def test_after_window(self, store, buyer):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))

        with pytest.raises(CancellationWindowExpired):
            orders.cancel_order(store, order["id"], buyer, now=utcnow() + timedelta(minutes=61))

        assert orders.get_order(store, order["id"])["status"] == "pending"

    def test_non_pending_order(self, store, buyer):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))
        orders.update_order_status(store, order["id"], OrderStatus.SHIPPED)

        with pytest.raises(InvalidStatusTransition):
            orders.cancel_order(store, order["id"], buyer)

    def test_twice(self, store, buyer):
        pid = make_product(store, stock=1)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))
        orders.cancel_order(store, order["id"], buyer)

        with pytest.raises(InvalidStatusTransition):
            orders.cancel_order(store, order["id"], buyer)
        assert stock_of(store, pid) == 1

    def test_by_someone_else(self, store):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))
        with pytest.raises(Forbidden):
            orders.cancel_order(store, order["id"], Principal(email="other@example.com"))


class TestUpdateOrderStatus:
    def test_fulfillment_path(self, store):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))

        orders.update_order_status(store, order["id"], OrderStatus.SHIPPED)
        delivered = orders.update_order_status(store, order["id"], OrderStatus.DELIVERED)

        assert delivered["status"] == "delivered"
        assert "shipped_at" in delivered
        assert "delivered_at" in delivered

    def test_cannot_skip_shipping(self, store):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))
        with pytest.raises(InvalidStatusTransition):
            orders.update_order_status(store, order["id"], OrderStatus.DELIVERED)

    @pytest.mark.parametrize("payment_method", ["cod", "card"])
    def test_paid_is_not_a_staff_transition(self, store, payment_method):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)], payment_method=payment_method))

        with pytest.raises(InvalidStatusTransition):
            orders.update_order_status(store, order["id"], OrderStatus.PAID)

        assert orders.get_order(store, order["id"])["status"] == order["status"]
        assert store.payments.count_documents({}) == 0

    def test_terminal_states(self, store):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))
        orders.update_order_status(store, order["id"], OrderStatus.CANCELLED)
        with pytest.raises(InvalidStatusTransition):
            orders.update_order_status(store, order["id"], OrderStatus.SHIPPED)

    def test_unknown_stored_status_has_no_transitions(self, store):
        pid = make_product(store)
        order = orders.place_order(store, BUYER, checkout_request([(pid, 1)]))
        store.orders.update_one({"_id": ObjectId(order["id"])}, {"$set": {"status": "Pending"}})
        with pytest.raises(InvalidStatusTransition):
            orders.update_order_status(store, order["id"], OrderStatus.SHIPPED)


class TestReorder:
    def _order(self, store, buyer):
        a = make_product(store, name="A", price=10.0)
        b = make_product(store, name="B", price=20.0)
        order = orders.place_order(store, buyer.email, checkout_request([(a, 2), (b, 1)]))
        return order, a, b

    def test_into_empty_cart(self, store, buyer):
        order, a, b = self._order(store, buyer)

        cart = orders.reorder(store, order["id"], buyer)

        assert [(i["product_id"], i["quantity"]) for i in cart["items"]] == [(a, 2), (b, 1)]

    def test_merges_with_existing_lines(self, store, buyer):
        order, a, b = self._order(store, buyer)
        store.carts.insert_one(
            {"user_email": buyer.email, "items": [{"product_id": a, "name": "A", "price": 10.0, "image": None, "quantity": 1}]}
        )

        cart = orders.reorder(store, order["id"], buyer)

        assert {i["product_id"]: i["quantity"] for i in cart["items"]} == {a: 3, b: 1}
        assert len(cart["items"]) == 2

    def test_only_the_buyer(self, store, buyer):
        order, _, _ = self._order(store, buyer)
        with pytest.raises(Forbidden):
            orders.reorder(store, order["id"], Principal(email="other@example.com"))

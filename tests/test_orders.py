import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from conftest import make_product, make_user
from database import get_by_id, utcnow
from errors import (
    Forbidden, InsufficientStock, InvalidTransition, ProductUnavailable, ValidationError,
)
from orders import OrderService, merge_lines


def test_place_order_prices_reserves_and_keeps_stock(services, db, customer, other_customer, product, place):
    order = place(customer, product, quantity=3)

    line = order["items"][0]
    assert line["price"] == 90.0
    assert line["total"] == 270.0
    assert order["pricing"] == {"subtotal": 270.0, "deliveryFee": 0.0, "discount": 0.0, "total": 270.0}
    assert order["status"] == "pending"
    assert order["orderNumber"].startswith("FM-")
    assert order["tracking"][0]["status"] == "pending"

    stored = get_by_id(db, "product", product["id"])
    assert stored["availability"]["quantity"] == 2
    assert stored["availability"]["inStock"] is True
    assert stored["totalSold"] == 3

    with pytest.raises(InsufficientStock):
        place(other_customer, product, quantity=3)
    assert get_by_id(db, "product", product["id"])["availability"]["quantity"] == 2


def test_order_numbers_are_unique(customer, db, farmer, category, place):
    product = make_product(db, farmer, category, quantity=50)
    numbers = {place(customer, product)["orderNumber"] for _ in range(3)}
    assert len(numbers) == 3


def test_selling_out_marks_product_out_of_stock(db, customer, product, place):
    place(customer, product, quantity=5)
    stored = get_by_id(db, "product", product["id"])
    assert stored["availability"]["quantity"] == 0
    assert stored["availability"]["inStock"] is False

    with pytest.raises(ProductUnavailable):
        place(customer, product, quantity=1)


def test_concurrent_orders_cannot_oversell(services, settings, db, customer, other_customer, product, pickup):
    snapshot = get_by_id(db, "product", product["id"])

    class StaleReads(OrderService):
        def _load_product(self, product_id):
            return dict(snapshot)

    orders = StaleReads(db, settings)
    line = [{"productId": product["id"], "quantity": 3}]
    orders.place_order(customer, line, pickup, {"method": "cash"})
    with pytest.raises(InsufficientStock):
        orders.place_order(other_customer, line, pickup, {"method": "cash"})

    stored = get_by_id(db, "product", product["id"])
    assert stored["availability"]["quantity"] == 2
    assert db["order"].count_documents({}) == 1


class LockedCollection:
    """Serialises each collection call, as MongoDB does for a single-document write."""

    def __init__(self, collection, lock):
        self._collection = collection
        self._lock = lock

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def locked(*args, **kwargs):
            with self._lock:
                return attr(*args, **kwargs)
        return locked


class LockedDatabase:
    def __init__(self, db):
        self._db = db
        self._lock = threading.Lock()

    def __getitem__(self, name):
        return LockedCollection(self._db[name], self._lock)


def test_parallel_orders_never_sell_more_than_stock(settings, db, customer, other_customer, product, pickup):
    orders = OrderService(LockedDatabase(db), settings)
    buyers = 6
    start = threading.Barrier(buyers)

    def attempt(n):
        start.wait()
        try:
            return orders.place_order(customer if n % 2 else other_customer,
                                      [{"productId": product["id"], "quantity": 2}], pickup, {"method": "cash"})
        except (InsufficientStock, ProductUnavailable):
            return None

    with ThreadPoolExecutor(max_workers=buyers) as pool:
        placed = [order for order in pool.map(attempt, range(buyers)) if order]

    assert sum(order["items"][0]["quantity"] for order in placed) == 4
    assert len({order["orderNumber"] for order in placed}) == 2
    stored = get_by_id(db, "product", product["id"])
    assert stored["availability"]["quantity"] == 1
    assert db["order"].count_documents({}) == 2


def test_failed_line_releases_earlier_reservations(services, db, customer, farmer, category, pickup):
    plenty = make_product(db, farmer, category, name="Carrots", quantity=10)
    scarce = make_product(db, farmer, category, name="Garlic", quantity=2)
    snapshot = get_by_id(db, "product", scarce["id"])
    db["product"].update_one({"id": scarce["id"]}, {"$set": {"availability.quantity": 1}})

    class StaleScarce(OrderService):
        def _load_product(self, product_id):
            if product_id == scarce["id"]:
                return dict(snapshot)
            return super()._load_product(product_id)

    orders = StaleScarce(db, services.settings)
    with pytest.raises(InsufficientStock):
        orders.place_order(customer, [{"productId": plenty["id"], "quantity": 4},
                                      {"productId": scarce["id"], "quantity": 2}], pickup, {"method": "cash"})

    assert get_by_id(db, "product", plenty["id"])["availability"]["quantity"] == 10
    assert get_by_id(db, "product", scarce["id"])["availability"]["quantity"] == 1
    assert db["order"].count_documents({}) == 0


def test_delivery_fee_and_free_delivery_threshold(services, db, customer, farmer, category):
    product = make_product(db, farmer, category, amount=500.0, quantity=20)
    delivery = {"type": "delivery", "address": {"street": "1 Main St", "city": "Tula"},
                "scheduledDate": utcnow() + timedelta(days=1)}
    small = services.orders.place_order(customer, [{"productId": product["id"], "quantity": 2}],
                                        delivery, {"method": "cash"})
    assert small["pricing"]["deliveryFee"] == 200.0
    assert small["pricing"]["total"] == 1200.0

    large = services.orders.place_order(customer, [{"productId": product["id"], "quantity": 4}],
                                        delivery, {"method": "cash"})
    assert large["pricing"]["deliveryFee"] == 0.0
    assert large["pricing"]["total"] == 2000.0


def test_delivery_orders_need_an_address(services, customer, product):
    with pytest.raises(ValidationError):
        services.orders.place_order(customer, [{"productId": product["id"], "quantity": 1}],
                                    {"type": "delivery", "scheduledDate": utcnow()}, {"method": "cash"})


def test_duplicate_lines_are_merged():
    assert dict(merge_lines([{"productId": "a", "quantity": 1}, {"productId": "a", "quantity": 2},
                             {"productId": "b", "quantity": 1}])) == {"a": 3, "b": 1}
    with pytest.raises(ValidationError):
        merge_lines([])
    with pytest.raises(ValidationError):
        merge_lines([{"productId": "a", "quantity": 0}])


def test_placement_clears_cart_and_notifies(services, db, mailer, customer, farmer_user, product, place):
    db["cart"].insert_one({"id": "cart-1", "userId": customer["id"],
                           "items": [{"productId": product["id"], "quantity": 1, "price": 90.0},
                                     {"productId": "other", "quantity": 1, "price": 10.0}]})
    order = place(customer, product, quantity=1)

    cart = db["cart"].find_one({"userId": customer["id"]})
    assert [item["productId"] for item in cart["items"]] == ["other"]
    assert "order_confirmation" in mailer.templates_sent()
    assert db["notification"].count_documents({"recipient": customer["id"], "type": "order_created"}) == 1
    assert db["notification"].count_documents({"recipient": farmer_user["id"],
                                               "data.orderId": order["id"]}) == 1
    # 4 left is under the low-stock threshold
    assert db["notification"].count_documents({"recipient": farmer_user["id"], "type": "product_low_stock"}) == 1


def test_status_moves_forward_only(services, customer, farmer_user, product, place):
    order = place(customer, product)
    confirmed = services.orders.advance_status(order["id"], "confirmed", farmer_user)
    assert confirmed["status"] == "confirmed"
    assert [t["status"] for t in confirmed["tracking"]] == ["pending", "confirmed"]

    with pytest.raises(InvalidTransition):
        services.orders.advance_status(order["id"], "pending", farmer_user)
    with pytest.raises(InvalidTransition):
        services.orders.advance_status(order["id"], "confirmed", farmer_user)

    delivered = services.orders.advance_status(order["id"], "delivered", farmer_user)
    assert delivered["status"] == "delivered"
    assert delivered["delivery"]["actualDeliveryDate"] is not None
    with pytest.raises(InvalidTransition):
        services.orders.cancel_order(order["id"], customer)


def test_only_involved_farmer_can_advance(services, db, customer, product, place):
    stranger = make_user(db, "farmer", email="stranger@example.com")
    db["farmer"].insert_one({"id": "other-farm", "userId": stranger["id"], "farmName": "Elsewhere"})
    order = place(customer, product)
    with pytest.raises(Forbidden):
        services.orders.advance_status(order["id"], "confirmed", stranger)
    with pytest.raises(Forbidden):
        services.orders.advance_status(order["id"], "confirmed", customer)


def test_cancel_restores_stock(services, db, customer, other_customer, product, place):
    order = place(customer, product, quantity=5)
    assert get_by_id(db, "product", product["id"])["availability"]["inStock"] is False

    with pytest.raises(Forbidden):
        services.orders.cancel_order(order["id"], other_customer)

    cancelled = services.orders.cancel_order(order["id"], customer, "Changed my mind")
    assert cancelled["status"] == "cancelled"
    assert cancelled["cancellation"]["reason"] == "Changed my mind"
    stored = get_by_id(db, "product", product["id"])
    assert stored["availability"]["quantity"] == 5
    assert stored["availability"]["inStock"] is True
    assert stored["totalSold"] == 0

    with pytest.raises(InvalidTransition):
        services.orders.cancel_order(order["id"], customer)
    assert get_by_id(db, "product", product["id"])["availability"]["quantity"] == 5


def test_visibility_of_orders(services, customer, other_customer, farmer_user, admin, product, place):
    order = place(customer, product)
    assert services.orders.get_order(order["id"], customer)["id"] == order["id"]
    assert services.orders.get_order(order["id"], farmer_user)["id"] == order["id"]
    assert services.orders.get_order(order["id"], admin)["id"] == order["id"]
    with pytest.raises(Forbidden):
        services.orders.get_order(order["id"], other_customer)

    items, pagination = services.orders.list_farmer_orders(farmer_user)
    assert [o["id"] for o in items] == [order["id"]]
    assert pagination["totalItems"] == 1


def test_pickup_qr_code(services, customer, product, place):
    order = place(customer, product)
    qr = services.orders.pickup_qr(order["id"], customer)
    assert qr["orderNumber"] == order["orderNumber"]
    assert qr["qr"].startswith("data:image/png;base64,")

from datetime import timedelta

import pytest

from conftest import make_product
from database import get_by_id, utcnow
from errors import Conflict, PromoCodeRejected
from promos import compute_discount


def _promo(services, code="WELCOME10", **overrides):
    now = utcnow()
    data = {
        "code": code,
        "name": "Welcome offer",
        "type": "percentage",
        "value": 10,
        "minOrderAmount": 1000,
        "maxDiscountAmount": 500,
        "usageLimit": {"perUser": 1},
        "validFrom": now - timedelta(days=1),
        "validUntil": now + timedelta(days=30),
    }
    data.update(overrides)
    return services.promos.create(data)


@pytest.fixture
def big_product(db, farmer, category):
    return make_product(db, farmer, category, name="Cheese", amount=1000.0, quantity=100)


def test_percentage_discount_is_capped():
    promo = {"type": "percentage", "value": 10, "maxDiscountAmount": 500}
    assert compute_discount(promo, 3000) == 300
    assert compute_discount(promo, 9000) == 500
    assert compute_discount({"type": "fixed_amount", "value": 800}, 500) == 500
    assert compute_discount({"type": "free_shipping", "value": 0}, 500) == 0


def test_codes_are_stored_upper_case(services):
    promo = _promo(services, code=" spring5 ")
    assert promo["code"] == "SPRING5"
    assert services.promos.get_by_code("spring5")["id"] == promo["id"]
    with pytest.raises(Conflict):
        _promo(services, code="SPRING5")


def test_evaluate_does_not_consume_usage(services, db, customer):
    promo = _promo(services)
    evaluation = services.promos.evaluate("welcome10", customer["id"], 3000)
    assert evaluation.discount == 300
    services.promos.evaluate("WELCOME10", customer["id"], 3000)
    assert get_by_id(db, "promocode", promo["id"])["usageCount"] == 0


def test_minimum_order_amount(services, customer):
    _promo(services)
    with pytest.raises(PromoCodeRejected):
        services.promos.evaluate("WELCOME10", customer["id"], 999)


def test_expired_and_inactive_codes_are_rejected(services, customer):
    now = utcnow()
    _promo(services, code="OLD", validFrom=now - timedelta(days=10), validUntil=now - timedelta(days=1))
    _promo(services, code="OFF", isActive=False)
    with pytest.raises(PromoCodeRejected):
        services.promos.evaluate("OLD", customer["id"], 3000)
    with pytest.raises(PromoCodeRejected):
        services.promos.evaluate("OFF", customer["id"], 3000)


def test_order_with_promo_records_usage_once_per_user(services, db, customer, big_product, place):
    promo = _promo(services)
    order = place(customer, big_product, quantity=3, promo_code="WELCOME10")

    assert order["promoCode"] == "WELCOME10"
    assert order["pricing"]["subtotal"] == 3000.0
    assert order["pricing"]["discount"] == 300.0
    assert order["pricing"]["total"] == 2700.0

    stored = get_by_id(db, "promocode", promo["id"])
    assert stored["usageCount"] == 1
    assert [u["orderId"] for u in stored["usedBy"]] == [order["id"]]

    with pytest.raises(PromoCodeRejected):
        services.promos.evaluate("WELCOME10", customer["id"], 3000)


def test_apply_is_idempotent_per_order(services, db, customer):
    promo = _promo(services)
    first = services.promos.apply(promo, customer["id"], "order-1", 300)
    again = services.promos.apply(first, customer["id"], "order-1", 300)
    assert again["usageCount"] == 1
    assert get_by_id(db, "promocode", promo["id"])["usageCount"] == 1


def test_total_limit_cannot_be_exceeded_by_stale_reads(services, db, customer, other_customer):
    promo = _promo(services, usageLimit={"total": 1, "perUser": 1})
    services.promos.apply(promo, customer["id"], "order-1", 100)
    with pytest.raises(PromoCodeRejected):
        services.promos.apply(promo, other_customer["id"], "order-2", 100)
    assert get_by_id(db, "promocode", promo["id"])["usageCount"] == 1


def test_cancelling_releases_usage(services, db, customer, big_product, place):
    promo = _promo(services)
    order = place(customer, big_product, quantity=3, promo_code="WELCOME10")
    services.orders.cancel_order(order["id"], customer)

    stored = get_by_id(db, "promocode", promo["id"])
    assert stored["usageCount"] == 0
    assert stored["usedBy"] == []
    assert services.promos.evaluate("WELCOME10", customer["id"], 3000).discount == 300


def test_free_shipping_code_waives_delivery_fee(services, customer, farmer, category, db):
    product = make_product(db, farmer, category, amount=100.0, quantity=20)
    _promo(services, code="SHIPFREE", type="free_shipping", value=0, minOrderAmount=0)
    delivery = {"type": "delivery", "address": {"city": "Tula"}, "scheduledDate": utcnow() + timedelta(days=1)}
    order = services.orders.place_order(customer, [{"productId": product["id"], "quantity": 2}], delivery,
                                        {"method": "cash"}, promo_code="SHIPFREE")
    assert order["pricing"]["deliveryFee"] == 0.0
    assert order["pricing"]["total"] == 200.0


def test_category_restriction_limits_the_discount_base(services, customer, category):
    _promo(services, code="VEG20", value=20, minOrderAmount=0, maxDiscountAmount=None,
           applicableCategories=[category["id"]])
    items = [
        {"productId": "p1", "categoryId": category["id"], "total": 500},
        {"productId": "p2", "categoryId": "fruit", "total": 1000},
    ]
    evaluation = services.promos.evaluate("VEG20", customer["id"], 1500, items=items)
    assert evaluation.eligible_amount == 500
    assert evaluation.discount == 100


def test_code_restricted_to_specific_users(services, db, customer, other_customer):
    promo = _promo(services, code="FRIENDS", userRestrictions={"specificUsers": [other_customer["id"]]})

    with pytest.raises(PromoCodeRejected):
        services.promos.evaluate("FRIENDS", customer["id"], 3000)
    evaluation = services.promos.evaluate("FRIENDS", other_customer["id"], 3000)
    assert evaluation.discount == 300

    stored = get_by_id(db, "promocode", promo["id"])
    assert stored["usageCount"] == 0
    assert stored["usedBy"] == []

from datetime import timedelta

from config import Settings
from database import utcnow
from pricing import active_discounts, current_price, delivery_fee, is_low_stock


def _product(amount=100.0, discounts=None, quantity=20):
    return {"price": {"amount": amount, "unit": "kg"}, "discounts": discounts or [],
            "availability": {"inStock": quantity > 0, "quantity": quantity}}


def _discount(kind="percentage", value=10, days=1, **extra):
    now = utcnow()
    return {"type": kind, "value": value, "startDate": now - timedelta(days=days),
            "endDate": now + timedelta(days=days), **extra}


def test_price_without_discounts_is_base_amount():
    assert current_price(_product(250.0)) == 250.0


def test_percentage_discount_applies():
    assert current_price(_product(100.0, [_discount(value=10)])) == 90.0


def test_best_of_several_discounts_wins():
    product = _product(100.0, [_discount(value=10), _discount("fixed", 25)])
    assert current_price(product) == 75.0


def test_fixed_discount_never_goes_negative():
    assert current_price(_product(20.0, [_discount("fixed", 50)])) == 0.0


def test_expired_and_inactive_discounts_are_ignored():
    now = utcnow()
    expired = {"type": "percentage", "value": 50, "startDate": now - timedelta(days=10),
               "endDate": now - timedelta(days=1)}
    inactive = _discount(value=40, isActive=False)
    product = _product(100.0, [expired, inactive])
    assert active_discounts(product) == []
    assert current_price(product) == 100.0


def test_min_quantity_discount_needs_enough_units():
    product = _product(100.0, [_discount(value=20, minQuantity=5)])
    assert current_price(product) == 100.0
    assert current_price(product, quantity=4) == 100.0
    assert current_price(product, quantity=5) == 80.0


def test_delivery_fee_rules():
    settings = Settings(delivery_fee=200.0, free_delivery_threshold=2000.0)
    assert delivery_fee("pickup", 100.0, settings) == 0.0
    assert delivery_fee("delivery", 1999.99, settings) == 200.0
    assert delivery_fee("delivery", 2000.0, settings) == 0.0


def test_low_stock_only_for_items_in_stock():
    assert is_low_stock(_product(quantity=3), 10)
    assert not is_low_stock(_product(quantity=10), 10)
    assert not is_low_stock(_product(quantity=0), 10)

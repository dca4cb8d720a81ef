"""
Authorization decisions.

Each action has one policy function taking `(user, resource, farmer)` where
`farmer` is the acting user's farmer profile (if any). Routers and services call
`authorize`, which raises Forbidden when the policy says no.
"""

from typing import Callable, Dict, Optional

from errors import Forbidden

POLICIES: Dict[str, Callable] = {}


def policy(action: str):
    def register(fn):
        POLICIES[action] = fn
        return fn
    return register


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


def order_farmer_ids(order: dict) -> set:
    return {item.get("farmerId") for item in order.get("items", [])}


def _is_customer(user: dict, order: Optional[dict]) -> bool:
    return bool(order) and order.get("customerId") == user.get("id")


def _is_involved_farmer(farmer: Optional[dict], order: Optional[dict]) -> bool:
    return bool(order) and bool(farmer) and farmer.get("id") in order_farmer_ids(order)


@policy("order.view")
def _order_view(user, order, farmer):
    return is_admin(user) or _is_customer(user, order) or _is_involved_farmer(farmer, order)


@policy("order.cancel")
def _order_cancel(user, order, farmer):
    return is_admin(user) or _is_customer(user, order)


@policy("order.advance")
def _order_advance(user, order, farmer):
    return is_admin(user) or (user.get("role") == "farmer" and _is_involved_farmer(farmer, order))


# Payment policies receive the order the payment belongs to.
@policy("payment.view")
def _payment_view(user, order, farmer):
    return is_admin(user) or _is_customer(user, order)


@policy("payment.create")
def _payment_create(user, order, farmer):
    return _is_customer(user, order)


@policy("payment.manage")
def _payment_manage(user, resource, farmer):
    return is_admin(user)


@policy("product.edit")
def _product_edit(user, product, farmer):
    if is_admin(user):
        return True
    return bool(farmer) and bool(product) and product.get("farmerId") == farmer.get("id")


@policy("farmer.edit")
def _farmer_edit(user, profile, farmer):
    return is_admin(user) or (bool(profile) and profile.get("userId") == user.get("id"))


@policy("review.edit")
def _review_edit(user, review, farmer):
    return is_admin(user) or (bool(review) and review.get("customerId") == user.get("id"))


@policy("review.respond")
def _review_respond(user, review, farmer):
    return bool(farmer) and bool(review) and review.get("farmerId") == farmer.get("id")


# Delivery policies receive the order being delivered.
@policy("delivery.view")
def _delivery_view(user, order, farmer):
    return _order_view(user, order, farmer)


@policy("delivery.manage")
def _delivery_manage(user, order, farmer):
    return is_admin(user) or _is_involved_farmer(farmer, order)


@policy("delivery.rate")
def _delivery_rate(user, order, farmer):
    return _is_customer(user, order)


@policy("promo.manage")
def _promo_manage(user, resource, farmer):
    return is_admin(user)


@policy("notification.broadcast")
def _notification_broadcast(user, resource, farmer):
    return is_admin(user)


def allowed(action: str, user: dict, resource: Optional[dict] = None, *, farmer: Optional[dict] = None) -> bool:
    try:
        check = POLICIES[action]
    except KeyError:
        raise KeyError(f"Unknown policy action: {action}")
    return bool(user) and bool(check(user, resource, farmer))


def authorize(action: str, user: dict, resource: Optional[dict] = None, *, farmer: Optional[dict] = None) -> None:
    if not allowed(action, user, resource, farmer=farmer):
        raise Forbidden(f"Not allowed to {action.replace('.', ' ')}")

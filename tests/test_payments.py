import json

import pytest

from conftest import WEBHOOK_SIGNATURE, stripe_event
from database import get_by_id
from errors import Conflict, Forbidden, InvalidTransition, UpstreamFailure, ValidationError


@pytest.fixture
def order(customer, product, place):
    return place(customer, product, quantity=3, method="card")


def _webhook(services, event, signature=WEBHOOK_SIGNATURE):
    return services.payments.handle_webhook(json.dumps(event).encode("utf-8"), signature)


def _paid(services, order, customer):
    intent = services.payments.create_intent(order["id"], customer)
    _webhook(services, stripe_event("evt_paid", "payment_intent.succeeded", intent["payment"]["transactionId"]))
    return get_by_id(services.db, "payment", intent["payment"]["id"])


def test_create_intent_records_pending_payment(services, db, customer, order):
    result = services.payments.create_intent(order["id"], customer)
    payment = result["payment"]
    assert result["clientSecret"] == "pi_test_1_secret"
    assert payment["status"] == "pending"
    assert payment["amount"] == 270.0
    assert payment["provider"] == "stripe"
    assert payment["paymentId"].startswith("PAY-")
    assert get_by_id(db, "order", order["id"])["payment"]["transactionId"] == "pi_test_1"

    again = services.payments.create_intent(order["id"], customer)
    assert again["payment"]["id"] == payment["id"]
    assert db["payment"].count_documents({}) == 1


def test_only_the_customer_can_pay(services, other_customer, order):
    with pytest.raises(Forbidden):
        services.payments.create_intent(order["id"], other_customer)


def test_succeeded_webhook_is_applied_once(services, db, customer, order):
    intent = services.payments.create_intent(order["id"], customer)
    event = stripe_event("evt_1", "payment_intent.succeeded", "pi_test_1")

    assert _webhook(services, event) == {"received": True}
    payment = get_by_id(db, "payment", intent["payment"]["id"])
    assert payment["status"] == "succeeded"
    assert payment["processedAt"] is not None
    stored = get_by_id(db, "order", order["id"])
    assert stored["payment"]["status"] == "paid"
    assert stored["status"] == "confirmed"

    assert _webhook(services, event) == {"received": True, "duplicate": True}
    # A second delivery under a new event id finds nothing left to change.
    _webhook(services, stripe_event("evt_2", "payment_intent.succeeded", "pi_test_1"))

    assert db["notification"].count_documents({"recipient": customer["id"], "type": "payment_received"}) == 1
    assert [t["status"] for t in get_by_id(db, "order", order["id"])["tracking"]] == ["pending", "confirmed"]


def test_late_failure_does_not_undo_success(services, db, customer, order):
    payment = _paid(services, order, customer)
    _webhook(services, stripe_event("evt_fail", "payment_intent.payment_failed", payment["transactionId"]))
    assert get_by_id(db, "payment", payment["id"])["status"] == "succeeded"
    assert get_by_id(db, "order", order["id"])["payment"]["status"] == "paid"


def test_bad_signature_is_rejected(services, db, customer, order):
    services.payments.create_intent(order["id"], customer)
    with pytest.raises(ValidationError):
        _webhook(services, stripe_event("evt_1", "payment_intent.succeeded", "pi_test_1"), signature="forged")
    assert db["payment"].find_one({})["status"] == "pending"
    assert db["webhookevent"].count_documents({}) == 0


def test_failed_payment_can_be_retried(services, db, customer, order):
    first = services.payments.create_intent(order["id"], customer)["payment"]
    _webhook(services, stripe_event("evt_f", "payment_intent.payment_failed", "pi_test_1",
                                    last_payment_error={"message": "Card declined"}))
    failed = get_by_id(db, "payment", first["id"])
    assert failed["status"] == "failed"
    assert failed["metadata"]["failureReason"] == "Card declined"
    assert get_by_id(db, "order", order["id"])["payment"]["status"] == "failed"

    retry = services.payments.create_intent(order["id"], customer)
    assert retry["payment"]["id"] == first["id"]
    assert retry["payment"]["status"] == "pending"
    assert retry["payment"]["transactionId"] == "pi_test_2"


def test_paid_order_cannot_be_paid_again(services, customer, order):
    _paid(services, order, customer)
    with pytest.raises(Conflict):
        services.payments.create_intent(order["id"], customer)


def test_refunds_never_exceed_the_amount(services, db, gateway, customer, admin, order):
    payment = _paid(services, order, customer)

    partial = services.payments.refund(payment["id"], admin, amount=100, reason="Bruised tomatoes")
    assert partial["status"] == "partially_refunded"
    assert partial["refundedAmount"] == 100
    assert partial["refunds"][0]["status"] == "succeeded"
    assert partial["refunds"][0]["providerRefundId"] == "re_test_1"

    with pytest.raises(ValidationError):
        services.payments.refund(payment["id"], admin, amount=200)

    full = services.payments.refund(payment["id"], admin)
    assert full["status"] == "refunded"
    assert full["refundedAmount"] == pytest.approx(270.0)
    assert get_by_id(db, "order", order["id"])["payment"]["status"] == "refunded"
    assert [r["amount"] for r in gateway.refunds] == [100, 170]

    with pytest.raises(InvalidTransition):
        services.payments.refund(payment["id"], admin, amount=1)


def test_provider_refund_failure_rolls_back(services, db, gateway, customer, admin, order):
    payment = _paid(services, order, customer)
    gateway.fail_refunds = True
    with pytest.raises(UpstreamFailure):
        services.payments.refund(payment["id"], admin, amount=50)

    stored = get_by_id(db, "payment", payment["id"])
    assert stored["refundedAmount"] == 0
    assert stored["status"] == "succeeded"
    assert stored["refunds"][0]["status"] == "failed"


def test_refunds_are_admin_only(services, customer, order):
    payment = _paid(services, order, customer)
    with pytest.raises(Forbidden):
        services.payments.refund(payment["id"], customer, amount=10)


def test_offline_payment_confirmed_by_admin(services, db, customer, admin, order):
    payment = services.payments.create_offline_payment(order["id"], customer, "cash")
    assert payment["provider"] == "manual"
    assert payment["transactionId"] == payment["paymentId"]

    confirmed = services.payments.update_status(payment["id"], "succeeded", admin)
    assert confirmed["status"] == "succeeded"
    assert get_by_id(db, "order", order["id"])["payment"]["status"] == "paid"

    with pytest.raises(InvalidTransition):
        services.payments.update_status(payment["id"], "cancelled", admin)


def test_payment_visibility(services, customer, other_customer, admin, order):
    payment = services.payments.create_offline_payment(order["id"], customer, "cash")
    assert services.payments.get_payment(payment["id"], customer)["id"] == payment["id"]
    with pytest.raises(Forbidden):
        services.payments.get_payment(payment["id"], other_customer)

    items, pagination = services.payments.list_payments(other_customer)
    assert items == [] and pagination["totalItems"] == 0
    items, _ = services.payments.list_payments(admin)
    assert [p["id"] for p in items] == [payment["id"]]

"""
Payments and their reconciliation with the provider.

Provider webhooks may arrive late, twice or out of order. Every state change is
therefore a conditional update on the payment's current status, and only the
call that actually applied the change touches the order or notifies anyone.
"""

import json
import logging
from collections import Counter
from datetime import timedelta
from typing import Any, Dict, Optional
from uuid import uuid4

import stripe
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

import cache as cache_mod
import notifications as templates
from database import create_document, get_by_id, next_sequence, paginate, utcnow
from errors import Conflict, InvalidTransition, NotFound, UpstreamFailure, ValidationError
from policies import authorize, is_admin
from schemas import Payment, Refund, TrackingEntry

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "processing")
REFUNDABLE_STATUSES = ("succeeded", "partially_refunded")
# Tolerance for float sums of 2-decimal amounts.
CENT = 0.005


class StripeGateway:
    """Thin wrapper over the stripe SDK that speaks in currency units, not cents."""

    provider = "stripe"

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str]):
        self.webhook_secret = webhook_secret
        if secret_key:
            stripe.api_key = secret_key

    @property
    def enabled(self) -> bool:
        return bool(stripe.api_key)

    def create_intent(self, amount: float, currency: str, metadata: Dict[str, str]) -> dict:
        if not self.enabled:
            raise UpstreamFailure("Card payments are not configured")
        try:
            intent = stripe.PaymentIntent.create(
                amount=int(round(amount * 100)),
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as e:
            logger.error("Stripe intent creation failed: %s", e)
            raise UpstreamFailure("Payment provider rejected the request")
        return {"id": intent.id, "client_secret": intent.client_secret}

    def retrieve_intent(self, intent_id: str) -> dict:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id)
        except stripe.StripeError as e:
            logger.error("Stripe intent lookup failed: %s", e)
            raise UpstreamFailure("Payment provider is unavailable")
        return {"id": intent.id, "client_secret": intent.client_secret}

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        if not self.webhook_secret:
            raise ValidationError("Webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError:
            raise ValidationError("Invalid webhook signature")
        except ValueError:
            raise ValidationError("Invalid webhook payload")
        return json.loads(payload)

    def refund(self, intent_id: str, amount: float, reason: Optional[str] = None) -> dict:
        try:
            refund = stripe.Refund.create(
                payment_intent=intent_id,
                amount=int(round(amount * 100)),
                reason="requested_by_customer",
                metadata={"reason": reason or ""},
            )
        except stripe.StripeError as e:
            logger.error("Stripe refund for %s failed: %s", intent_id, e)
            raise UpstreamFailure("Payment provider refused the refund")
        return {"id": refund.id, "amount": refund.amount / 100}


def generate_payment_number(db, now=None) -> str:
    now = now or utcnow()
    return f"PAY-{now:%Y%m%d}-{next_sequence(db, 'payment'):06d}"


class PaymentService:
    def __init__(self, db, gateway, settings, notifier=None, cache=None):
        self.db = db
        self.gateway = gateway
        self.settings = settings
        self.notifier = notifier
        self.cache = cache

    def _order(self, order_id: str) -> dict:
        order = get_by_id(self.db, "order", order_id)
        if not order:
            raise NotFound("Order not found")
        return order

    def _payment(self, payment_id: str) -> dict:
        payment = get_by_id(self.db, "payment", payment_id)
        if not payment:
            raise NotFound("Payment not found")
        return payment

    def _check_payable(self, order: dict) -> None:
        if order["status"] == "cancelled":
            raise ValidationError("Cannot pay for a cancelled order")
        if order["payment"]["status"] == "paid":
            raise Conflict("Order is already paid")

    def _insert(self, payment: Payment) -> dict:
        try:
            return create_document(self.db, "payment", payment)
        except DuplicateKeyError:
            raise Conflict("A payment for this order already exists")

    # ---- creation ----

    def create_intent(self, order_id: str, user: dict) -> dict:
        order = self._order(order_id)
        authorize("payment.create", user, order)
        self._check_payable(order)

        existing = self.db["payment"].find_one({"orderId": order["id"]})
        if existing and existing["status"] in OPEN_STATUSES and existing["provider"] == "stripe":
            intent = self.gateway.retrieve_intent(existing["transactionId"])
            return {"clientSecret": intent["client_secret"], "payment": existing}
        if existing and existing["status"] not in ("failed", "cancelled"):
            raise Conflict(f"Payment for this order is already {existing['status']}")

        intent = self.gateway.create_intent(
            order["pricing"]["total"],
            self.settings.currency,
            {"orderId": order["id"], "orderNumber": order["orderNumber"], "customerEmail": user.get("email", "")},
        )

        if existing:
            # Retrying a failed payment reuses the record with the new intent.
            payment = self.db["payment"].find_one_and_update(
                {"id": existing["id"], "status": {"$in": ["failed", "cancelled"]}},
                {"$set": {"status": "pending", "provider": "stripe", "method": "card",
                          "transactionId": intent["id"], "failedAt": None, "updatedAt": utcnow()}},
                return_document=ReturnDocument.AFTER,
            )
            if not payment:
                raise Conflict("Payment for this order changed, please retry")
        else:
            payment = self._insert(Payment(
                orderId=order["id"],
                paymentId=generate_payment_number(self.db),
                amount=order["pricing"]["total"],
                currency=self.settings.currency.upper(),
                method="card",
                provider="stripe",
                transactionId=intent["id"],
                description=f"Payment for order {order['orderNumber']}",
            ))

        self.db["order"].update_one(
            {"id": order["id"]},
            {"$set": {"payment.transactionId": intent["id"], "updatedAt": utcnow()}},
        )
        logger.info("Payment intent %s created for order %s", intent["id"], order["orderNumber"])
        return {"clientSecret": intent["client_secret"], "payment": payment}

    def create_offline_payment(self, order_id: str, user: dict, method: str = "cash") -> dict:
        if method not in ("cash", "bank_transfer"):
            raise ValidationError("Offline payments must be cash or bank_transfer")
        order = self._order(order_id)
        authorize("payment.create", user, order)
        self._check_payable(order)

        number = generate_payment_number(self.db)
        payment = self._insert(Payment(
            orderId=order["id"],
            paymentId=number,
            amount=order["pricing"]["total"],
            currency=self.settings.currency.upper(),
            method=method,
            provider="manual",
            transactionId=number,
            description=f"Payment for order {order['orderNumber']}",
        ))
        logger.info("Offline %s payment %s created for order %s", method, number, order["orderNumber"])
        return payment

    # ---- reconciliation ----

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        event = self.gateway.construct_event(payload, signature)
        event_id = event.get("id")
        if event_id and self.db["webhookevent"].find_one({"_id": event_id}):
            logger.info("Webhook event %s already processed", event_id)
            return {"received": True, "duplicate": True}

        event_type = event.get("type")
        intent = (event.get("data") or {}).get("object") or {}
        if event_type == "payment_intent.succeeded":
            self.mark_succeeded(intent["id"], metadata=intent.get("metadata"))
        elif event_type == "payment_intent.payment_failed":
            error = intent.get("last_payment_error") or {}
            self.mark_failed(intent["id"], reason=error.get("message"))
        else:
            logger.info("Unhandled webhook event type %s", event_type)

        if event_id:
            try:
                self.db["webhookevent"].insert_one({"_id": event_id, "type": event_type, "receivedAt": utcnow()})
            except DuplicateKeyError:
                logger.info("Webhook event %s recorded concurrently", event_id)
        return {"received": True}

    def mark_succeeded(self, transaction_id: str, metadata: Optional[dict] = None) -> bool:
        now = utcnow()
        updates: Dict[str, Any] = {"status": "succeeded", "processedAt": now, "updatedAt": now}
        for key, value in (metadata or {}).items():
            updates[f"metadata.{key}"] = value
        payment = self.db["payment"].find_one_and_update(
            {"transactionId": transaction_id, "status": {"$in": ["pending", "processing", "failed"]}},
            {"$set": updates},
            return_document=ReturnDocument.AFTER,
        )
        if not payment:
            logger.info("Payment %s already reconciled or unknown", transaction_id)
            return False

        order = self.db["order"].find_one_and_update(
            {"id": payment["orderId"]},
            {"$set": {"payment.status": "paid", "payment.paidAt": now,
                      "payment.transactionId": transaction_id, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        if order and order["status"] == "pending":
            entry = TrackingEntry(status="confirmed", timestamp=now, note="Payment received").model_dump()
            self.db["order"].update_one(
                {"id": order["id"], "status": "pending"},
                {"$set": {"status": "confirmed"}, "$push": {"tracking": entry}},
            )

        logger.info("Payment %s succeeded (%.2f)", payment["paymentId"], payment["amount"])
        cache_mod.invalidate(self.cache, "analytics:*")
        if order and self.notifier is not None:
            self.notifier.notify(order["customerId"], templates.payment_received(order, payment["amount"]),
                                 send_email=True)
        return True

    def mark_failed(self, transaction_id: str, reason: Optional[str] = None) -> bool:
        now = utcnow()
        payment = self.db["payment"].find_one_and_update(
            {"transactionId": transaction_id, "status": {"$in": list(OPEN_STATUSES)}},
            {"$set": {"status": "failed", "failedAt": now, "metadata.failureReason": reason, "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not payment:
            logger.info("Payment %s not open, failure ignored", transaction_id)
            return False

        order = self.db["order"].find_one_and_update(
            {"id": payment["orderId"], "payment.status": {"$ne": "paid"}},
            {"$set": {"payment.status": "failed", "updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        logger.warning("Payment %s failed: %s", payment["paymentId"], reason)
        if order and self.notifier is not None:
            self.notifier.notify(order["customerId"], templates.payment_failed(order), send_email=True)
        return True

    def update_status(self, payment_id: str, status: str, actor: dict) -> dict:
        authorize("payment.manage", actor)
        payment = self._payment(payment_id)
        if payment["status"] == status:
            return payment

        if status == "succeeded":
            applied = self.mark_succeeded(payment["transactionId"], metadata={"confirmedBy": actor["id"]})
        elif status == "failed":
            applied = self.mark_failed(payment["transactionId"], reason=f"Marked failed by {actor['id']}")
        elif status in ("processing", "cancelled"):
            res = self.db["payment"].update_one(
                {"id": payment["id"], "status": {"$in": list(OPEN_STATUSES)}},
                {"$set": {"status": status, "updatedAt": utcnow()}},
            )
            applied = res.modified_count == 1
        else:
            raise ValidationError("Use the refund operation for refunds")

        if not applied:
            raise InvalidTransition(f"Cannot change payment from {payment['status']} to {status}")
        return self._payment(payment_id)

    # ---- refunds ----

    def refund(self, payment_id: str, actor: dict, amount: Optional[float] = None,
               reason: Optional[str] = None) -> dict:
        authorize("payment.manage", actor)
        payment = self._payment(payment_id)
        if payment["status"] not in REFUNDABLE_STATUSES:
            raise InvalidTransition("Only successful payments can be refunded")

        remaining = round(payment["amount"] - payment.get("refundedAmount", 0), 2)
        amount = round(amount if amount is not None else remaining, 2)
        if amount <= 0 or amount > remaining + CENT:
            raise ValidationError(f"Refund amount must be between 0 and {remaining:.2f}")

        now = utcnow()
        entry = Refund(refundId=f"RF-{uuid4().hex[:12].upper()}", amount=amount, reason=reason).model_dump()
        reserved = self.db["payment"].find_one_and_update(
            {
                "id": payment["id"],
                "status": {"$in": list(REFUNDABLE_STATUSES)},
                "refundedAmount": {"$lte": payment["amount"] - amount + CENT},
            },
            {"$inc": {"refundedAmount": amount}, "$push": {"refunds": entry}, "$set": {"updatedAt": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not reserved:
            raise ValidationError("Refund exceeds the remaining refundable amount")

        provider_refund_id = None
        if payment["provider"] == "stripe":
            try:
                provider_refund_id = self.gateway.refund(payment["transactionId"], amount, reason)["id"]
            except UpstreamFailure:
                self.db["payment"].update_one(
                    {"id": payment["id"], "refunds.refundId": entry["refundId"]},
                    {"$inc": {"refundedAmount": -amount},
                     "$set": {"refunds.$.status": "failed", "refunds.$.processedAt": utcnow()}},
                )
                raise

        self.db["payment"].update_one(
            {"id": payment["id"], "refunds.refundId": entry["refundId"]},
            {"$set": {"refunds.$.status": "succeeded", "refunds.$.processedAt": utcnow(),
                      "refunds.$.providerRefundId": provider_refund_id}},
        )
        fully = self.db["payment"].update_one(
            {"id": payment["id"], "refundedAmount": {"$gte": payment["amount"] - CENT}},
            {"$set": {"status": "refunded"}},
        ).modified_count
        if fully:
            self.db["order"].update_one(
                {"id": payment["orderId"]},
                {"$set": {"payment.status": "refunded", "updatedAt": utcnow()}},
            )
        else:
            self.db["payment"].update_one(
                {"id": payment["id"], "status": {"$ne": "refunded"}},
                {"$set": {"status": "partially_refunded"}},
            )

        logger.info("Refunded %.2f of payment %s", amount, payment["paymentId"])
        cache_mod.invalidate(self.cache, "analytics:*")
        return self._payment(payment_id)

    # ---- reads ----

    def list_payments(self, user: dict, page: int = 1, limit: int = 10, status: Optional[str] = None):
        query: Dict[str, Any] = {}
        if not is_admin(user):
            order_ids = [o["id"] for o in self.db["order"].find({"customerId": user["id"]}, {"id": 1})]
            query["orderId"] = {"$in": order_ids}
        if status:
            query["status"] = status
        return paginate(self.db, "payment", query, page, limit, sort=[("createdAt", -1)])

    def get_payment(self, payment_id: str, user: dict) -> dict:
        payment = self._payment(payment_id)
        authorize("payment.view", user, get_by_id(self.db, "order", payment["orderId"]))
        return payment

    def payment_stats(self, period_days: int = 30) -> dict:
        since = utcnow() - timedelta(days=period_days)
        by_status: Counter = Counter()
        by_method: Counter = Counter()
        collected = 0.0
        refunded = 0.0
        for payment in self.db["payment"].find({"createdAt": {"$gte": since}}):
            by_status[payment["status"]] += 1
            by_method[payment["method"]] += 1
            if payment["status"] in ("succeeded", "partially_refunded", "refunded"):
                collected += payment["amount"]
            refunded += payment.get("refundedAmount", 0)
        return {
            "periodDays": period_days,
            "totalPayments": sum(by_status.values()),
            "totalCollected": round(collected, 2),
            "totalRefunded": round(refunded, 2),
            "netRevenue": round(collected - refunded, 2),
            "byStatus": dict(by_status),
            "byMethod": dict(by_method),
        }

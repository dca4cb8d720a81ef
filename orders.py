"""
Order placement and the order lifecycle.

Stock is reserved line by line with a single conditional `$inc` per product,
which is the only guard against overselling: the filter re-checks the quantity
inside the write. Lines already reserved are given back if a later line, the
promo application or the order insert fails.

Status changes are forward-only along ORDER_FLOW and are written with a filter
on the status that was read, so two concurrent transitions cannot both apply.
"""

import base64
import io
import logging
from collections import Counter, OrderedDict
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as ModelValidationError
from pymongo import ReturnDocument
from qrcode import QRCode

import cache as cache_mod
import notifications as templates
from database import get_by_id, new_document, next_sequence, paginate, utcnow
from errors import (
    InsufficientStock, InvalidTransition, NotFound, ProductUnavailable, ValidationError, field_errors,
)
from policies import authorize, is_admin
from pricing import current_price, delivery_fee, is_low_stock
from schemas import (
    ORDER_FLOW, TERMINAL_ORDER_STATUSES, Cancellation, DeliveryInfo, Order, OrderItem,
    PaymentInfo, Pricing, TrackingEntry,
)

logger = logging.getLogger(__name__)

STATS_PERIODS = {"week": 7, "month": 30, "quarter": 90, "year": 365}


def generate_order_number(db, now=None) -> str:
    now = now or utcnow()
    return f"FM-{now:%Y%m%d}-{next_sequence(db, 'order'):06d}"


def merge_lines(items: List[dict]) -> "OrderedDict[str, int]":
    if not items:
        raise ValidationError("Order must contain at least one item")
    merged: "OrderedDict[str, int]" = OrderedDict()
    for item in items:
        product_id = item.get("productId")
        quantity = int(item.get("quantity") or 0)
        if not product_id:
            raise ValidationError("Each item needs a productId")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        merged[product_id] = merged.get(product_id, 0) + quantity
    return merged


def qr_data_url(data: str) -> str:
    qr = QRCode(box_size=4, border=2)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    bio = io.BytesIO()
    img.save(bio, format="PNG")
    return f"data:image/png;base64,{base64.b64encode(bio.getvalue()).decode('utf-8')}"


class OrderService:
    def __init__(self, db, settings, notifier=None, mailer=None, promos=None, cache=None):
        self.db = db
        self.settings = settings
        self.notifier = notifier
        self.mailer = mailer
        self.promos = promos
        self.cache = cache

    # ---- stock ----

    def _load_product(self, product_id: str) -> Optional[dict]:
        return get_by_id(self.db, "product", product_id)

    def reserve_stock(self, product_id: str, quantity: int, name: str = "product") -> dict:
        updated = self.db["product"].find_one_and_update(
            {
                "id": product_id,
                "isActive": True,
                "availability.inStock": True,
                "availability.quantity": {"$gte": quantity},
            },
            {"$inc": {"availability.quantity": -quantity, "totalSold": quantity},
             "$set": {"updatedAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise InsufficientStock(f"Not enough stock for {name}")
        if updated["availability"]["quantity"] == 0:
            self.db["product"].update_one(
                {"id": product_id, "availability.quantity": 0},
                {"$set": {"availability.inStock": False}},
            )
            updated["availability"]["inStock"] = False
        return updated

    def restore_stock(self, product_id: str, quantity: int) -> None:
        before = self.db["product"].find_one_and_update(
            {"id": product_id},
            {"$inc": {"availability.quantity": quantity, "totalSold": -quantity},
             "$set": {"updatedAt": utcnow()}},
            return_document=ReturnDocument.BEFORE,
        )
        if not before:
            logger.warning("Cannot restore stock of missing product %s", product_id)
            return
        availability = before.get("availability") or {}
        if availability.get("quantity", 0) <= 0 and not availability.get("inStock"):
            self.db["product"].update_one(
                {"id": product_id, "availability.inStock": False, "availability.quantity": {"$gt": 0}},
                {"$set": {"availability.inStock": True}},
            )

    def _release_all(self, reserved: List[tuple]) -> None:
        for product_id, quantity in reversed(reserved):
            self.restore_stock(product_id, quantity)

    # ---- placement ----

    def _build_lines(self, merged, now) -> List[dict]:
        lines = []
        for product_id, quantity in merged.items():
            product = self._load_product(product_id)
            if not product or not product.get("isActive", True):
                raise ProductUnavailable(f"Product {product_id} is not available")
            availability = product.get("availability") or {}
            if not availability.get("inStock"):
                raise ProductUnavailable(f"{product['name']} is out of stock")
            if quantity > availability.get("quantity", 0):
                raise InsufficientStock(
                    f"Not enough stock for {product['name']}: {availability.get('quantity', 0)} available"
                )
            if quantity < availability.get("minOrderQuantity", 1):
                raise ValidationError(
                    f"Minimum order quantity for {product['name']} is {availability['minOrderQuantity']}"
                )
            max_qty = availability.get("maxOrderQuantity")
            if max_qty and quantity > max_qty:
                raise ValidationError(f"Maximum order quantity for {product['name']} is {max_qty}")

            price = current_price(product, now, quantity)
            line = OrderItem(
                productId=product["id"],
                farmerId=product["farmerId"],
                name=product["name"],
                quantity=quantity,
                price=price,
                unit=product["price"]["unit"],
                total=round(price * quantity, 2),
            ).model_dump()
            lines.append({"line": line, "categoryId": product.get("categoryId")})
        return lines

    def place_order(self, customer: dict, items: List[dict], delivery: dict, payment: dict,
                    notes: Optional[dict] = None, promo_code: Optional[str] = None) -> dict:
        now = utcnow()
        merged = merge_lines(items)
        try:
            delivery_info = DeliveryInfo(**delivery)
            payment_info = PaymentInfo(**{"method": payment.get("method"), "status": "pending"})
        except ModelValidationError as e:
            raise ValidationError("Invalid delivery or payment details", errors=field_errors(e.errors()))
        if delivery_info.type == "delivery" and not delivery_info.address:
            raise ValidationError("Delivery address is required for delivery orders")

        built = self._build_lines(merged, now)
        lines = [b["line"] for b in built]
        subtotal = round(sum(line["total"] for line in lines), 2)
        fee = delivery_fee(delivery_info.type, subtotal, self.settings)

        evaluation = None
        discount = 0.0
        if promo_code:
            if self.promos is None:
                raise ValidationError("Promo codes are not available")
            evaluation = self.promos.evaluate(
                promo_code, customer["id"], subtotal,
                items=[{**b["line"], "categoryId": b["categoryId"]} for b in built], now=now,
            )
            discount = evaluation.discount
            if evaluation.free_shipping:
                fee = 0.0
        total = round(max(subtotal + fee - discount, 0.0), 2)

        reserved: List[tuple] = []
        updated_products = []
        try:
            for line in lines:
                updated_products.append(self.reserve_stock(line["productId"], line["quantity"], line["name"]))
                reserved.append((line["productId"], line["quantity"]))
        except Exception:
            self._release_all(reserved)
            raise

        order = new_document(Order(
            orderNumber=generate_order_number(self.db, now),
            customerId=customer["id"],
            items=lines,
            pricing=Pricing(subtotal=subtotal, deliveryFee=fee, discount=discount, total=total),
            delivery=delivery_info,
            payment=payment_info,
            promoCode=evaluation.promo["code"] if evaluation else None,
            notes=notes or {},
            tracking=[TrackingEntry(status="pending", timestamp=now, note="Order placed",
                                    updatedBy=customer["id"])],
        ))

        applied_promo = None
        try:
            if evaluation:
                applied_promo = self.promos.apply(evaluation.promo, customer["id"], order["id"], discount)
            self.db["order"].insert_one(order)
        except Exception:
            if applied_promo:
                self.promos.release(applied_promo["id"], order["id"])
            self._release_all(reserved)
            raise

        logger.info("Order %s placed by %s: %d items, total %.2f",
                    order["orderNumber"], customer["id"], len(lines), total)

        self.db["cart"].update_one(
            {"userId": customer["id"]},
            {"$pull": {"items": {"productId": {"$in": list(merged)}}}, "$set": {"updatedAt": utcnow()}},
        )
        cache_mod.invalidate(self.cache, "products:*", "analytics:*")
        self._after_placement(customer, order, updated_products)
        return order

    def _farmer_user_ids(self, farmer_ids) -> List[str]:
        return [f["userId"] for f in self.db["farmer"].find({"id": {"$in": list(farmer_ids)}}, {"userId": 1})]

    def _after_placement(self, customer: dict, order: dict, products: List[dict]) -> None:
        if self.mailer is not None:
            try:
                self.mailer.send(customer["email"], "order_confirmation", {
                    "customerName": f"{customer.get('firstName', '')} {customer.get('lastName', '')}".strip(),
                    "orderNumber": order["orderNumber"],
                    "deliveryDate": order["delivery"]["scheduledDate"].date().isoformat(),
                    "total": f"{order['pricing']['total']:.2f}",
                })
            except Exception:
                logger.exception("Order confirmation email for %s failed", order["orderNumber"])

        if self.notifier is None:
            return
        self.notifier.notify(customer["id"], templates.order_created(order))
        farmer_ids = {line["farmerId"] for line in order["items"]}
        for user_id in self._farmer_user_ids(farmer_ids):
            self.notifier.notify(user_id, templates.new_farm_order(order))

        threshold = self.settings.low_stock_threshold
        for product in products:
            if is_low_stock(product, threshold):
                for user_id in self._farmer_user_ids([product["farmerId"]]):
                    self.notifier.notify(user_id, templates.product_low_stock(product))

    # ---- lifecycle ----

    def _get(self, order_id: str) -> dict:
        order = get_by_id(self.db, "order", order_id)
        if not order:
            raise NotFound("Order not found")
        return order

    def farmer_profile(self, user: dict) -> Optional[dict]:
        if user.get("role") != "farmer":
            return None
        return self.db["farmer"].find_one({"userId": user["id"]})

    def advance_status(self, order_id: str, status: str, actor: dict, note: Optional[str] = None) -> dict:
        order = self._get(order_id)
        authorize("order.advance", actor, order, farmer=self.farmer_profile(actor))

        current = order["status"]
        if current in TERMINAL_ORDER_STATUSES:
            raise InvalidTransition(f"Order is already {current}")
        if status not in ORDER_FLOW or ORDER_FLOW.index(status) <= ORDER_FLOW.index(current):
            raise InvalidTransition(f"Cannot change order status from {current} to {status}")

        now = utcnow()
        updates: Dict[str, Any] = {"status": status, "updatedAt": now}
        if status == "delivered":
            updates["delivery.actualDeliveryDate"] = now
        entry = TrackingEntry(status=status, timestamp=now, note=note, updatedBy=actor["id"]).model_dump()
        updated = self.db["order"].find_one_and_update(
            {"id": order["id"], "status": current},
            {"$set": updates, "$push": {"tracking": entry}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise InvalidTransition("Order status was changed by another request")

        logger.info("Order %s moved %s -> %s by %s", order["orderNumber"], current, status, actor["id"])
        cache_mod.invalidate(self.cache, "analytics:*")
        if self.notifier is not None:
            self.notifier.notify(order["customerId"], templates.order_status(updated, status))
        return updated

    def cancel_order(self, order_id: str, actor: dict, reason: Optional[str] = None) -> dict:
        order = self._get(order_id)
        authorize("order.cancel", actor, order)

        current = order["status"]
        if current in TERMINAL_ORDER_STATUSES:
            raise InvalidTransition(f"Cannot cancel an order that is {current}")

        now = utcnow()
        cancellation = Cancellation(reason=reason, cancelledBy=actor["id"], cancelledAt=now).model_dump()
        entry = TrackingEntry(status="cancelled", timestamp=now, note=reason, updatedBy=actor["id"]).model_dump()
        updated = self.db["order"].find_one_and_update(
            {"id": order["id"], "status": current},
            {"$set": {"status": "cancelled", "cancellation": cancellation, "updatedAt": now},
             "$push": {"tracking": entry}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise InvalidTransition("Order status was changed by another request")

        for line in order["items"]:
            self.restore_stock(line["productId"], line["quantity"])
        if order.get("promoCode") and self.promos is not None:
            promo = self.db["promocode"].find_one({"code": order["promoCode"]})
            if promo:
                self.promos.release(promo["id"], order["id"])

        logger.info("Order %s cancelled by %s", order["orderNumber"], actor["id"])
        cache_mod.invalidate(self.cache, "products:*", "analytics:*")
        if self.notifier is not None:
            template = templates.order_cancelled(updated, reason)
            self.notifier.notify(order["customerId"], template)
            for user_id in self._farmer_user_ids({line["farmerId"] for line in order["items"]}):
                self.notifier.notify(user_id, template)
        return updated

    # ---- reads ----

    def get_order(self, order_id: str, user: dict) -> dict:
        order = self._get(order_id)
        authorize("order.view", user, order, farmer=self.farmer_profile(user))
        return order

    def list_customer_orders(self, user: dict, page: int = 1, limit: int = 10, status: Optional[str] = None):
        query: Dict[str, Any] = {"customerId": user["id"]}
        if status:
            query["status"] = status
        return paginate(self.db, "order", query, page, limit, sort=[("createdAt", -1)])

    def list_farmer_orders(self, user: dict, page: int = 1, limit: int = 10, status: Optional[str] = None):
        farmer = self.farmer_profile(user)
        if not farmer:
            raise NotFound("Farmer profile not found")
        query: Dict[str, Any] = {"items.farmerId": farmer["id"]}
        if status:
            query["status"] = status
        return paginate(self.db, "order", query, page, limit, sort=[("createdAt", -1)])

    def order_stats(self, user: dict, period: str = "month") -> dict:
        since = utcnow() - timedelta(days=STATS_PERIODS.get(period, 30))
        query: Dict[str, Any] = {"createdAt": {"$gte": since}}
        farmer_id = None
        if not is_admin(user):
            farmer = self.farmer_profile(user)
            if farmer:
                farmer_id = farmer["id"]
                query["items.farmerId"] = farmer_id
            else:
                query["customerId"] = user["id"]

        by_status: Counter = Counter()
        revenue = 0.0
        counted = 0
        for order in self.db["order"].find(query):
            by_status[order["status"]] += 1
            if order["status"] == "cancelled":
                continue
            counted += 1
            if farmer_id:
                revenue += sum(line["total"] for line in order["items"] if line["farmerId"] == farmer_id)
            else:
                revenue += order["pricing"]["total"]

        return {
            "period": period,
            "totalOrders": sum(by_status.values()),
            "totalRevenue": round(revenue, 2),
            "averageOrderValue": round(revenue / counted, 2) if counted else 0,
            "byStatus": dict(by_status),
        }

    def pickup_qr(self, order_id: str, user: dict) -> dict:
        order = self.get_order(order_id, user)
        if order["delivery"]["type"] != "pickup":
            raise ValidationError("QR codes are only issued for pickup orders")
        return {
            "orderNumber": order["orderNumber"],
            "qr": qr_data_url(f"FARMMARKET:{order['orderNumber']}:{order['id']}"),
        }

"""
In-app notifications.

A notification is persisted first, then pushed to any open WebSocket of the
recipient and optionally mirrored by email. Workflows call `notify`, which
never raises: a failed side channel must not fail the operation that
triggered it.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument

from database import create_document, get_by_id, paginate, utcnow
from schemas import Notification

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self):
        self._sockets: Dict[str, set] = defaultdict(set)
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def connect(self, user_id: str, websocket) -> None:
        await websocket.accept()
        self._loop = asyncio.get_running_loop()
        self._sockets[user_id].add(websocket)
        logger.info("WebSocket connected for user %s", user_id)

    def disconnect(self, user_id: str, websocket) -> None:
        sockets = self._sockets.get(user_id)
        if sockets:
            sockets.discard(websocket)
            if not sockets:
                self._sockets.pop(user_id, None)
        logger.info("WebSocket disconnected for user %s", user_id)

    def is_online(self, user_id: str) -> bool:
        return bool(self._sockets.get(user_id))

    def push(self, user_id: str, payload: dict) -> int:
        """Schedule `payload` on every socket of the user; returns how many were scheduled."""
        sockets = list(self._sockets.get(user_id) or ())
        if not sockets or self._loop is None or self._loop.is_closed():
            return 0
        for ws in sockets:
            future = asyncio.run_coroutine_threadsafe(ws.send_json(payload), self._loop)
            future.add_done_callback(_log_push_failure)
        return len(sockets)


def _log_push_failure(future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.warning("WebSocket push failed: %s", exc)


# ------------------------- Templates -------------------------

def order_created(order: dict) -> dict:
    return {
        "type": "order_created",
        "title": "Order placed",
        "message": f"Order #{order['orderNumber']} has been placed.",
        "data": {"orderId": order["id"], "orderNumber": order["orderNumber"]},
        "priority": "medium",
    }


def new_farm_order(order: dict) -> dict:
    return {
        "type": "order_created",
        "title": "New order",
        "message": f"You have a new order #{order['orderNumber']}.",
        "data": {"orderId": order["id"], "orderNumber": order["orderNumber"]},
        "priority": "high",
    }


def order_status(order: dict, status: str) -> dict:
    kind = {"confirmed": "order_confirmed", "in_transit": "order_shipped",
            "delivered": "order_delivered"}.get(status, "order_status")
    return {
        "type": kind,
        "title": "Order status updated",
        "message": f"Order #{order['orderNumber']} is now {status.replace('_', ' ')}.",
        "data": {"orderId": order["id"], "orderNumber": order["orderNumber"], "status": status},
        "priority": "medium",
    }


def order_cancelled(order: dict, reason: Optional[str]) -> dict:
    return {
        "type": "order_cancelled",
        "title": "Order cancelled",
        "message": f"Order #{order['orderNumber']} was cancelled" + (f": {reason}" if reason else "."),
        "data": {"orderId": order["id"], "orderNumber": order["orderNumber"]},
        "priority": "high",
    }


def order_reminder(order: dict) -> dict:
    return {
        "type": "order_reminder",
        "title": "Order reminder",
        "message": f"Order #{order['orderNumber']} has been awaiting confirmation for more than 24 hours.",
        "data": {"orderId": order["id"], "orderNumber": order["orderNumber"]},
        "priority": "medium",
    }


def payment_received(order: dict, amount: float) -> dict:
    return {
        "type": "payment_received",
        "title": "Payment received",
        "message": f"Payment of {amount:.2f} for order #{order['orderNumber']} was received.",
        "data": {"orderId": order["id"], "orderNumber": order["orderNumber"], "amount": amount},
        "priority": "medium",
    }


def payment_failed(order: dict) -> dict:
    return {
        "type": "payment_failed",
        "title": "Payment failed",
        "message": f"We could not process the payment for order #{order['orderNumber']}. Please try again.",
        "data": {"orderId": order["id"], "orderNumber": order["orderNumber"]},
        "priority": "high",
    }


def product_low_stock(product: dict) -> dict:
    quantity = product["availability"]["quantity"]
    return {
        "type": "product_low_stock",
        "title": "Low stock",
        "message": f"{product['name']} is running low: {quantity} left.",
        "data": {"productId": product["id"], "quantity": quantity},
        "priority": "high",
    }


def farmer_verified(farmer: dict) -> dict:
    return {
        "type": "farmer_verified",
        "title": "Farm verified",
        "message": f"{farmer['farmName']} is now a verified farm.",
        "data": {"farmerId": farmer["id"]},
        "priority": "medium",
    }


def review_received(review: dict, product: dict) -> dict:
    return {
        "type": "review_received",
        "title": "New review",
        "message": f"{product['name']} received a {review['rating']}-star review.",
        "data": {"productId": product["id"], "reviewId": review["id"]},
        "priority": "low",
    }


# ------------------------- Service -------------------------

class NotificationService:
    def __init__(self, db, connections: Optional[ConnectionManager] = None, mailer=None):
        self.db = db
        self.connections = connections or ConnectionManager()
        self.mailer = mailer

    def send(self, user_id: str, type: str, title: str, message: str,
             data: Optional[Dict[str, Any]] = None, priority: str = "medium",
             send_email: bool = False, expires_at=None) -> dict:
        doc = create_document(self.db, "notification", Notification(
            recipient=user_id,
            type=type,
            title=title[:100],
            message=message[:500],
            data=data or {},
            priority=priority,
            sentAt=utcnow(),
            expiresAt=expires_at,
        ))

        self.connections.push(user_id, {
            "id": doc["id"],
            "type": type,
            "title": doc["title"],
            "message": doc["message"],
            "data": doc["data"],
            "createdAt": doc["createdAt"].isoformat(),
        })

        if send_email and type != "system" and self.mailer is not None:
            self._email(user_id, doc)
        return doc

    def _email(self, user_id: str, notification: dict) -> None:
        user = get_by_id(self.db, "user", user_id)
        if not user or not user.get("email"):
            return
        try:
            self.mailer.send(user["email"], "notification", {
                "firstName": user.get("firstName"),
                "title": notification["title"],
                "message": notification["message"],
                "actionUrl": (notification.get("data") or {}).get("url", ""),
            })
        except Exception:
            logger.exception("Notification email to user %s failed", user_id)

    def notify(self, user_id: Optional[str], template: dict, send_email: bool = False) -> Optional[dict]:
        if not user_id:
            return None
        try:
            return self.send(user_id, send_email=send_email, **template)
        except Exception:
            logger.exception("Notification %s to user %s failed", template.get("type"), user_id)
            return None

    def send_bulk(self, user_ids: List[str], template: dict, send_email: bool = False) -> List[Optional[dict]]:
        return [self.notify(user_id, template, send_email=send_email) for user_id in user_ids]

    # ---- inbox ----

    def list_for_user(self, user_id: str, page: int = 1, limit: int = 20, unread_only: bool = False):
        query: Dict[str, Any] = {"recipient": user_id}
        if unread_only:
            query["isRead"] = False
        items, pagination = paginate(self.db, "notification", query, page, limit, sort=[("createdAt", -1)])
        unread = self.db["notification"].count_documents({"recipient": user_id, "isRead": False})
        return items, pagination, unread

    def mark_read(self, user_id: str, notification_id: str) -> Optional[dict]:
        return self.db["notification"].find_one_and_update(
            {"id": notification_id, "recipient": user_id},
            {"$set": {"isRead": True, "readAt": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    def mark_all_read(self, user_id: str) -> int:
        res = self.db["notification"].update_many(
            {"recipient": user_id, "isRead": False},
            {"$set": {"isRead": True, "readAt": utcnow()}},
        )
        return res.modified_count

    def delete(self, user_id: str, notification_id: str) -> bool:
        res = self.db["notification"].delete_one({"id": notification_id, "recipient": user_id})
        return res.deleted_count == 1

    def cleanup_expired(self, days: int = 30) -> int:
        now = utcnow()
        res = self.db["notification"].delete_many({
            "$or": [
                {"isRead": True, "createdAt": {"$lt": now - timedelta(days=days)}},
                {"expiresAt": {"$ne": None, "$lt": now}},
            ]
        })
        return res.deleted_count

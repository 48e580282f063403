"""
Order lifecycle: placement from the cart, cancellation and status changes.

Multi-document writes run inside `database.transaction()`. Stock is only ever
decremented through a conditional update (`stock >= quantity`), so two
placements racing for the same product cannot drive it below zero whatever
isolation level the server runs with.
"""
import logging
import os
import random
import time
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument

from database import collection, create_document, serialize, transaction
from errors import (
    AddressNotFoundError,
    EmptyCartError,
    InsufficientStockError,
    InvalidCouponError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
)
from schemas import Order, OrderItem, Payment, StatusChange

logger = logging.getLogger(__name__)

SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", "15.00"))
TAX_RATE = float(os.getenv("TAX_RATE", "0.12"))
# "ignore" drops an unusable coupon code silently, "reject" fails the order.
COUPON_POLICY = os.getenv("COUPON_POLICY", "ignore").lower()

ORDER_STATUSES = (
    "PAYMENT_PENDING",
    "AWAITING_PAYMENT",
    "PROCESSING",
    "SHIPPED",
    "DELIVERED",
    "CANCELLED",
)
CANCELLABLE_STATUSES = ("PAYMENT_PENDING", "AWAITING_PAYMENT", "PROCESSING")
ALLOWED_TRANSITIONS = {
    "PAYMENT_PENDING": {"AWAITING_PAYMENT", "PROCESSING", "CANCELLED"},
    "AWAITING_PAYMENT": {"PROCESSING", "CANCELLED"},
    "PROCESSING": {"SHIPPED", "CANCELLED"},
    "SHIPPED": {"DELIVERED"},
    "DELIVERED": set(),
    "CANCELLED": set(),
}
# Statuses that do not count as revenue.
UNPAID_STATUSES = ["CANCELLED", "PAYMENT_PENDING"]

PAYMENT_GATEWAYS = {
    "PIX": "PIX",
    "CREDIT_CARD": "MERCADOPAGO",
    "DEBIT_CARD": "MERCADOPAGO",
    "BOLETO": "PAGSEGURO",
}


def gateway_for(payment_method: str) -> str:
    return PAYMENT_GATEWAYS.get(payment_method, "INTERNAL")


def effective_price(product: dict) -> float:
    discounted = product.get("discounted_price")
    return float(discounted if discounted is not None else product["price"])


def generate_order_number() -> str:
    return f"PED{int(time.time() * 1000)}{random.randint(0, 999):03d}"


def to_object_id(value: str) -> Optional[ObjectId]:
    if not ObjectId.is_valid(value):
        return None
    return ObjectId(value)


def load_cart(user_id: str):
    """Return the user's cart lines paired with their current product (None if deleted)."""
    lines = list(collection("cartitem").find({"user_id": user_id}).sort("created_at", 1))
    product_ids = [to_object_id(line["product_id"]) for line in lines]
    products = {
        str(p["_id"]): p
        for p in collection("product").find({"_id": {"$in": [pid for pid in product_ids if pid]}})
    }
    return [(line, products.get(line["product_id"])) for line in lines]


def find_coupon(code: str) -> Optional[dict]:
    return collection("coupon").find_one({
        "code": code,
        "active": True,
        "valid_until": {"$gte": datetime.now(timezone.utc)},
    })


def compute_discount(coupon: dict, subtotal: float) -> float:
    if coupon["discount_type"] == "PERCENTAGE":
        return subtotal * (coupon["value"] / 100)
    return float(coupon["value"])


def _address_snapshot(address: dict) -> dict:
    snapshot = dict(address)
    snapshot["id"] = str(snapshot.pop("_id"))
    for key in ("user_id", "created_at", "updated_at"):
        snapshot.pop(key, None)
    return snapshot


def _return_stock(lines, now: datetime, session=None):
    for product_id, quantity in lines:
        collection("product").update_one(
            {"_id": ObjectId(product_id)},
            {"$inc": {"stock": quantity}, "$set": {"updated_at": now}},
            session=session,
        )


def _take_stock(items, now: datetime, session=None):
    """Decrement stock line by line, each only while enough is left.

    Without a session nothing is rolled back, so a miss gives back what the
    earlier lines took before raising.
    """
    taken = []
    for item in items:
        result = collection("product").update_one(
            {"_id": ObjectId(item.product_id), "stock": {"$gte": item.quantity}},
            {"$inc": {"stock": -item.quantity}, "$set": {"updated_at": now}},
            session=session,
        )
        if result.matched_count == 0:
            if session is None:
                _return_stock(taken, now)
            raise InsufficientStockError(item.name)
        taken.append((item.product_id, item.quantity))


def place_order(
    user_id: str,
    address_id: str,
    payment_method: str,
    notes: Optional[str] = None,
    coupon_code: Optional[str] = None,
) -> Tuple[dict, dict]:
    """Turn the user's cart into an order plus a pending payment.

    Every check happens before the first write. Inside the transaction the order,
    stock decrements, coupon usage, cart clearing and payment record commit or
    roll back together.
    """
    cart = load_cart(user_id)
    if not cart:
        raise EmptyCartError()

    address = None
    address_oid = to_object_id(address_id)
    if address_oid is not None:
        address = collection("address").find_one({"_id": address_oid, "user_id": user_id})
    if address is None:
        raise AddressNotFoundError(address_id)

    items = []
    for line, product in cart:
        if product is None:
            raise InsufficientStockError(line["product_id"])
        if product.get("stock", 0) < line["quantity"]:
            raise InsufficientStockError(product["name"])
        unit_price = effective_price(product)
        items.append(OrderItem(
            product_id=line["product_id"],
            name=product["name"],
            quantity=line["quantity"],
            unit_price=unit_price,
            line_total=round(unit_price * line["quantity"], 2),
        ))

    subtotal = round(sum(item.unit_price * item.quantity for item in items), 2)

    coupon = None
    discount = 0.0
    if coupon_code:
        coupon = find_coupon(coupon_code)
        if coupon is not None:
            discount = round(compute_discount(coupon, subtotal), 2)
        elif COUPON_POLICY == "reject":
            raise InvalidCouponError(coupon_code)
        else:
            logger.info("Ignoring unusable coupon %s for user %s", coupon_code, user_id)

    tax = round(subtotal * TAX_RATE, 2)
    total = round(subtotal + SHIPPING_FEE + tax - discount, 2)
    now = datetime.now(timezone.utc)

    order = Order(
        number=generate_order_number(),
        user_id=user_id,
        address_id=address_id,
        address=_address_snapshot(address),
        subtotal=subtotal,
        shipping_fee=SHIPPING_FEE,
        tax=tax,
        discount=discount,
        total=total,
        coupon_code=coupon["code"] if coupon else None,
        payment_method=payment_method,
        notes=notes,
        items=items,
        status_history=[StatusChange(status="PAYMENT_PENDING", changed_at=now)],
    )

    with transaction() as session:
        _take_stock(items, now, session)
        order_id = create_document("order", order, session=session)

        if coupon is not None:
            collection("coupon").update_one(
                {"_id": coupon["_id"]},
                {"$inc": {"used": 1}, "$set": {"updated_at": now}},
                session=session,
            )

        collection("cartitem").delete_many(
            {"_id": {"$in": [line["_id"] for line, _ in cart]}},
            session=session,
        )

        payment = Payment(
            order_id=order_id,
            user_id=user_id,
            method=payment_method,
            gateway=gateway_for(payment_method),
            amount=total,
        )
        payment_id = create_document("payment", payment, session=session)

    logger.info(
        "Order %s (%s) placed by user %s: %d line(s), total %.2f, payment %s",
        order_id, order.number, user_id, len(items), total, payment_id,
    )
    return (
        serialize(collection("order").find_one({"_id": ObjectId(order_id)})),
        serialize(collection("payment").find_one({"_id": ObjectId(payment_id)})),
    )


def get_order(order_id: str) -> dict:
    oid = to_object_id(order_id)
    order = collection("order").find_one({"_id": oid}) if oid else None
    if order is None:
        raise OrderNotFoundError(order_id)
    return order


def cancel_order(order: dict, reason: Optional[str] = None) -> dict:
    """Cancel an order that has not shipped, returning its items to stock.

    Coupon usage is not given back.
    """
    if order["status"] not in CANCELLABLE_STATUSES:
        raise InvalidStatusTransitionError(order["status"], "CANCELLED")

    now = datetime.now(timezone.utc)
    with transaction() as session:
        # Conditional on the status so a concurrent cancellation cannot restock twice.
        updated = collection("order").find_one_and_update(
            {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
            {
                "$set": {"status": "CANCELLED", "cancel_reason": reason, "updated_at": now},
                "$push": {"status_history": {"status": "CANCELLED", "reason": reason, "changed_at": now}},
            },
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is None:
            current = collection("order").find_one({"_id": order["_id"]}, session=session)
            raise InvalidStatusTransitionError(current["status"] if current else order["status"], "CANCELLED")

        _return_stock([(item["product_id"], item["quantity"]) for item in order["items"]], now, session)

        collection("payment").update_many(
            {"order_id": str(order["_id"]), "status": {"$ne": "REFUNDED"}},
            {"$set": {"status": "CANCELLED", "updated_at": now}},
            session=session,
        )

    logger.info("Order %s cancelled (%s)", order["_id"], reason or "no reason given")
    return updated


def update_status(order: dict, status: str, reason: Optional[str] = None) -> dict:
    """Move an order along the status table; cancellation restocks."""
    current = order["status"]
    if status not in ALLOWED_TRANSITIONS.get(current, ()):
        raise InvalidStatusTransitionError(current, status)
    if status == "CANCELLED":
        return cancel_order(order, reason)

    now = datetime.now(timezone.utc)
    updated = collection("order").find_one_and_update(
        {"_id": order["_id"], "status": current},
        {
            "$set": {"status": status, "updated_at": now},
            "$push": {"status_history": {"status": status, "reason": reason, "changed_at": now}},
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        latest = collection("order").find_one({"_id": order["_id"]})
        raise InvalidStatusTransitionError(latest["status"] if latest else current, status)

    logger.info("Order %s moved from %s to %s", order["_id"], current, status)
    return updated


def mark_paid(order_id: str, session=None) -> bool:
    """Move an unpaid order to PROCESSING. Returns False when it already moved on."""
    now = datetime.now(timezone.utc)
    result = collection("order").update_one(
        {"_id": ObjectId(order_id), "status": {"$in": ["PAYMENT_PENDING", "AWAITING_PAYMENT"]}},
        {
            "$set": {"status": "PROCESSING", "updated_at": now},
            "$push": {"status_history": {"status": "PROCESSING", "reason": "Payment approved", "changed_at": now}},
        },
        session=session,
    )
    return result.modified_count == 1


def order_statistics(start: Optional[datetime] = None, end: Optional[datetime] = None) -> dict:
    window = {}
    if start:
        window["$gte"] = start
    if end:
        window["$lte"] = end
    filt = {"created_at": window} if window else {}

    paid = list(collection("order").find(
        {**filt, "status": {"$nin": UNPAID_STATUSES}}, {"total": 1},
    ))
    by_status = {
        row["_id"]: row["count"]
        for row in collection("order").aggregate([
            {"$match": filt},
            {"$group": {"_id": "$status", "count": {"$sum": 1}}},
        ])
    }

    since = datetime.now(timezone.utc) - timedelta(days=30)
    daily = defaultdict(float)
    recent = collection("order").find(
        {"created_at": {"$gte": since}, "status": {"$nin": UNPAID_STATUSES}},
        {"total": 1, "created_at": 1},
    )
    for row in recent:
        daily[row["created_at"].date().isoformat()] += row["total"]

    return {
        "totalOrders": collection("order").count_documents(filt),
        "totalSales": round(sum(o["total"] for o in paid), 2),
        "ordersByStatus": by_status,
        "salesByDay": [{"date": day, "total": round(daily[day], 2)} for day in sorted(daily)],
    }

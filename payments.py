"""Payment records: gateway notifications, approval and refunds."""
import logging
from datetime import datetime, timezone
from typing import Optional

from bson import ObjectId
from pymongo import ReturnDocument

from database import collection, transaction
from errors import InvalidPaymentStatusError, PaymentNotFoundError
from orders import CANCELLABLE_STATUSES, cancel_order, get_order, mark_paid, to_object_id

logger = logging.getLogger(__name__)

PAYMENT_METHODS = [
    {"id": "PIX", "name": "PIX", "description": "Instant payment via PIX", "active": True},
    {"id": "CREDIT_CARD", "name": "Credit card", "description": "Up to 12 installments", "active": True},
    {"id": "BOLETO", "name": "Boleto", "description": "Bank slip", "active": True},
    {"id": "DEBIT_CARD", "name": "Debit card", "description": "Pay with a debit card", "active": True},
]

SUPPORTED_GATEWAYS = ("mercadopago", "pagseguro")


def get_payment(payment_id: str) -> dict:
    oid = to_object_id(payment_id)
    payment = collection("payment").find_one({"_id": oid}) if oid else None
    if payment is None:
        raise PaymentNotFoundError(payment_id)
    return payment


def parse_notification(gateway: str, body: dict) -> Optional[str]:
    """Extract the payment reference from a gateway notification, if it is one we act on.

    Signature verification is left to the gateway integration in front of this API.
    """
    if gateway == "mercadopago" and body.get("type") == "payment":
        data = body.get("data") or {}
        return str(data["id"]) if data.get("id") else None
    if gateway == "pagseguro" and body.get("notificationType") == "transaction":
        return body.get("notificationCode")
    return None


def find_by_reference(reference: str) -> Optional[dict]:
    payment = collection("payment").find_one({"gateway_id": reference})
    # Gateways echo our own payment id back as the external reference.
    if payment is None and ObjectId.is_valid(reference):
        payment = collection("payment").find_one({"_id": ObjectId(reference)})
    return payment


def approve_payment(payment: dict) -> dict:
    if payment["status"] != "PENDING":
        raise InvalidPaymentStatusError(payment["status"], "PENDING")

    now = datetime.now(timezone.utc)
    with transaction() as session:
        updated = collection("payment").find_one_and_update(
            {"_id": payment["_id"], "status": "PENDING"},
            {"$set": {"status": "APPROVED", "processed_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if updated is None:
            raise InvalidPaymentStatusError(get_payment(str(payment["_id"]))["status"], "PENDING")
        moved = mark_paid(payment["order_id"], session=session)

    if not moved:
        logger.warning(
            "Payment %s approved but order %s is %s; order left unchanged",
            payment["_id"], payment["order_id"], get_order(payment["order_id"])["status"],
        )
    logger.info("Payment %s approved for order %s", payment["_id"], payment["order_id"])
    return updated


def handle_notification(gateway: str, body: dict) -> Optional[dict]:
    """Apply a gateway notification; returns the approved payment or None when nothing matched."""
    reference = parse_notification(gateway, body)
    if reference is None:
        logger.info("Ignoring %s notification without a payment reference", gateway)
        return None
    payment = find_by_reference(reference)
    if payment is None:
        logger.warning("No payment matches %s reference %s", gateway, reference)
        return None
    if payment["status"] != "PENDING":
        logger.info("Payment %s already %s; notification ignored", payment["_id"], payment["status"])
        return None
    return approve_payment(payment)


def refund_payment(payment: dict, reason: Optional[str] = None) -> dict:
    """Refund an approved payment and cancel its order while that is still possible."""
    if payment["status"] != "APPROVED":
        raise InvalidPaymentStatusError(payment["status"], "APPROVED")

    now = datetime.now(timezone.utc)
    updated = collection("payment").find_one_and_update(
        {"_id": payment["_id"], "status": "APPROVED"},
        {"$set": {
            "status": "REFUNDED",
            "metadata": {"refund_reason": reason} if reason else payment.get("metadata"),
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidPaymentStatusError(get_payment(str(payment["_id"]))["status"], "APPROVED")

    order = get_order(payment["order_id"])
    if order["status"] in CANCELLABLE_STATUSES:
        cancel_order(order, reason or "Payment refunded")
    else:
        logger.warning("Order %s is %s; refund recorded without cancelling it", order["_id"], order["status"])
    logger.info("Payment %s refunded", payment["_id"])
    return updated

"""Product reviews and the rating summary kept on each product."""
import logging
from datetime import datetime, timezone
from typing import Optional

from pymongo import ReturnDocument

from database import collection, create_document
from errors import DuplicateReviewError, ReviewNotFoundError
from orders import to_object_id
from schemas import Review

logger = logging.getLogger(__name__)


def get_review(review_id: str) -> dict:
    oid = to_object_id(review_id)
    review = collection("review").find_one({"_id": oid}) if oid else None
    if review is None:
        raise ReviewNotFoundError(review_id)
    return review


def has_purchased(user_id: str, product_id: str) -> bool:
    return collection("order").find_one({
        "user_id": user_id,
        "status": "DELIVERED",
        "items.product_id": product_id,
    }) is not None


def average_rating(product_id: str) -> float:
    rows = list(collection("review").aggregate([
        {"$match": {"product_id": product_id}},
        {"$group": {"_id": None, "average": {"$avg": "$rating"}}},
    ]))
    return round(rows[0]["average"], 1) if rows else 0.0


def rating_stats(product_id: str) -> dict:
    rows = list(collection("review").aggregate([
        {"$match": {"product_id": product_id}},
        {"$group": {"_id": "$rating", "count": {"$sum": 1}}},
    ]))
    counts = {row["_id"]: row["count"] for row in rows}
    total = sum(counts.values())
    return {
        "totalReviews": total,
        "averageRating": round(sum(r * c for r, c in counts.items()) / total, 1) if total else 0,
        "minRating": min(counts) if counts else 0,
        "maxRating": max(counts) if counts else 0,
        "countByRating": [{"rating": r, "count": counts.get(r, 0)} for r in range(1, 6)],
    }


def refresh_product_rating(product_id: str):
    stats = rating_stats(product_id)
    collection("product").update_one(
        {"_id": to_object_id(product_id)},
        {"$set": {"rating": stats["averageRating"], "ratings_count": stats["totalReviews"]}},
    )


def create_review(user_id: str, product_id: str, rating: int, comment: Optional[str] = None) -> dict:
    if collection("review").find_one({"user_id": user_id, "product_id": product_id}):
        raise DuplicateReviewError(product_id)

    review_id = create_document("review", Review(
        product_id=product_id,
        user_id=user_id,
        rating=rating,
        comment=comment,
        verified_purchase=has_purchased(user_id, product_id),
    ))
    refresh_product_rating(product_id)
    logger.info("User %s reviewed product %s (%d stars)", user_id, product_id, rating)
    return get_review(review_id)


def update_review(review: dict, changes: dict) -> dict:
    changes = {**changes, "updated_at": datetime.now(timezone.utc)}
    updated = collection("review").find_one_and_update(
        {"_id": review["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise ReviewNotFoundError(str(review["_id"]))
    refresh_product_rating(review["product_id"])
    return updated


def delete_review(review: dict):
    collection("review").delete_one({"_id": review["_id"]})
    refresh_product_rating(review["product_id"])
    logger.info("Review %s removed", review["_id"])

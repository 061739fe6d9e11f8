"""
Product catalog, search and reviews.
"""
import logging
import re
from typing import Optional

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, paginate, to_object_id, utcnow
from errors import AccessDenied, NotFound, ValidationFailed
from schemas import Product, Review

logger = logging.getLogger(__name__)

RELATED_LIMIT = 6


def search_filter(search: str) -> dict:
    """Substring match on name/description, plus a fuzzy match on name
    where every query character may be separated by anything ("i14" finds "iPhone 14")."""
    plain = re.escape(search)
    terms = [t for t in search.split() if t]
    fuzzy = ".*".join(".*".join(re.escape(ch) for ch in term) for term in terms)
    return {"$or": [
        {"name": {"$regex": plain, "$options": "i"}},
        {"description": {"$regex": plain, "$options": "i"}},
        {"name": {"$regex": fuzzy, "$options": "i"}},
    ]}


def list_products(database: Database, page: int, limit: int, category: Optional[str] = None,
                  seller_id: Optional[str] = None, min_price: Optional[float] = None,
                  max_price: Optional[float] = None, search: Optional[str] = None) -> dict:
    filt = {}
    if category:
        filt["category"] = category
    if seller_id:
        filt["seller_id"] = seller_id
    if min_price is not None or max_price is not None:
        filt["price"] = {}
        if min_price is not None:
            filt["price"]["$gte"] = min_price
        if max_price is not None:
            filt["price"]["$lte"] = max_price
    if search and search.strip():
        filt.update(search_filter(search.strip()))
    return paginate(database, "product", filt, page, limit)


def get_product(database: Database, product_id: str) -> dict:
    product = database["product"].find_one({"_id": to_object_id(product_id, "product id")})
    if not product:
        raise NotFound("Product not found")
    return product


def related_products(database: Database, product_id: str) -> list:
    product = get_product(database, product_id)
    cursor = database["product"].find({
        "_id": {"$ne": product["_id"]},
        "$or": [{"category": product["category"]}, {"seller_id": product["seller_id"]}],
    }).sort([("average_rating", DESCENDING), ("created_at", DESCENDING)]).limit(RELATED_LIMIT)
    return list(cursor)


def create_product(database: Database, seller: dict, data: dict) -> dict:
    if seller["role"] != "admin":
        profile = database["sellerprofile"].find_one({"user_id": str(seller["_id"])})
        if not profile or profile.get("seller_status") != "active":
            raise AccessDenied("Your seller account is not active. Please contact admin.")
    product = Product(seller_id=str(seller["_id"]), **data)
    pid = create_document(database, "product", product)
    logger.info("Product %s created by %s", pid, seller["_id"])
    return database["product"].find_one({"_id": to_object_id(pid)})


def _check_owner(product: dict, user: dict, action: str) -> None:
    if user["role"] != "admin" and product["seller_id"] != str(user["_id"]):
        raise AccessDenied(f"You can only {action} your own products")


def update_product(database: Database, product_id: str, user: dict, changes: dict) -> dict:
    product = get_product(database, product_id)
    _check_owner(product, user, "update")
    changes = {k: v for k, v in changes.items() if v is not None}
    if not changes:
        raise ValidationFailed("No fields to update")
    changes["updated_at"] = utcnow()
    return database["product"].find_one_and_update(
        {"_id": product["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER,
    )


def delete_product(database: Database, product_id: str, user: dict) -> None:
    product = get_product(database, product_id)
    _check_owner(product, user, "delete")
    database["product"].delete_one({"_id": product["_id"]})
    logger.info("Product %s deleted by %s", product_id, user["_id"])


# ========== REVIEWS ==========

def refresh_rating(database: Database, product_id: str) -> None:
    stats = list(database["review"].aggregate([
        {"$match": {"product_id": product_id}},
        {"$group": {"_id": "$product_id", "average": {"$avg": "$rating"}, "count": {"$sum": 1}}},
    ]))
    if stats:
        average, count = round(stats[0]["average"], 1), stats[0]["count"]
    else:
        average, count = 0, 0
    database["product"].update_one(
        {"_id": to_object_id(product_id)},
        {"$set": {"average_rating": average, "review_count": count}},
    )


def list_reviews(database: Database, product_id: str, page: int, limit: int) -> dict:
    result = paginate(database, "review", {"product_id": product_id}, page, limit)
    product = database["product"].find_one({"_id": to_object_id(product_id, "product id")}) or {}
    result["average_rating"] = product.get("average_rating", 0)
    result["review_count"] = product.get("review_count", 0)
    return result


def create_review(database: Database, product_id: str, user: dict, rating: int,
                  comment: Optional[str]) -> dict:
    get_product(database, product_id)
    user_id = str(user["_id"])
    purchased = database["order"].find_one({
        "user_id": user_id, "items.product_id": product_id, "payment_status": "paid",
    })
    if not purchased:
        raise AccessDenied("You can only review products you have purchased")
    if database["review"].find_one({"product_id": product_id, "user_id": user_id}):
        raise ValidationFailed("You have already reviewed this product. Use update instead.")
    try:
        rid = create_document(database, "review", Review(product_id=product_id, user_id=user_id,
                                                         rating=rating, comment=comment))
    except DuplicateKeyError:
        raise ValidationFailed("You have already reviewed this product. Use update instead.")
    refresh_rating(database, product_id)
    return database["review"].find_one({"_id": to_object_id(rid)})


def _own_review(database: Database, review_id: str, user: dict, allow_admin: bool) -> dict:
    review = database["review"].find_one({"_id": to_object_id(review_id, "review id")})
    if not review:
        raise NotFound("Review not found")
    if review["user_id"] != str(user["_id"]) and not (allow_admin and user["role"] == "admin"):
        raise AccessDenied("You can only modify your own reviews")
    return review


def update_review(database: Database, review_id: str, user: dict, rating: Optional[int],
                  comment: Optional[str]) -> dict:
    review = _own_review(database, review_id, user, allow_admin=False)
    changes = {"updated_at": utcnow()}
    if rating is not None:
        changes["rating"] = rating
    if comment is not None:
        changes["comment"] = comment
    review = database["review"].find_one_and_update(
        {"_id": review["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER,
    )
    refresh_rating(database, review["product_id"])
    return review


def delete_review(database: Database, review_id: str, user: dict) -> None:
    review = _own_review(database, review_id, user, allow_admin=True)
    database["review"].delete_one({"_id": review["_id"]})
    refresh_rating(database, review["product_id"])

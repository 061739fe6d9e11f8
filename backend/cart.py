"""
Customer carts: one per user, created lazily, one line per product.
"""
import logging

from pymongo import ReturnDocument
from pymongo.database import Database

from catalog import get_product
from database import utcnow
from errors import NotFound, OutOfStock, ValidationFailed
from schemas import Cart

logger = logging.getLogger(__name__)


def cart_total(cart: dict) -> float:
    return sum(item["price"] * item["quantity"] for item in cart.get("items", []))


def get_cart(database: Database, user_id: str) -> dict:
    now = utcnow()
    return database["cart"].find_one_and_update(
        {"user_id": user_id},
        {"$setOnInsert": {**Cart(user_id=user_id).model_dump(exclude={"user_id"}), "created_at": now, "updated_at": now}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def _save_items(database: Database, cart: dict) -> dict:
    return database["cart"].find_one_and_update(
        {"_id": cart["_id"]},
        {"$set": {"items": cart["items"], "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def add_item(database: Database, user_id: str, product_id: str, quantity: int = 1) -> dict:
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1")
    product = get_product(database, product_id)
    cart = get_cart(database, user_id)
    line = next((i for i in cart["items"] if i["product_id"] == product_id), None)
    wanted = quantity + (line["quantity"] if line else 0)
    if product.get("stock", 0) < wanted:
        raise OutOfStock(f"Only {product.get('stock', 0)} items available in stock", product_id=product_id)

    if line:
        line["quantity"] = wanted
        line["price"] = product["price"]
    else:
        cart["items"].append({
            "product_id": product_id,
            "seller_id": product["seller_id"],
            "quantity": quantity,
            "price": product["price"],
        })
    return _save_items(database, cart)


def update_quantity(database: Database, user_id: str, product_id: str, quantity: int) -> dict:
    if quantity < 0:
        raise ValidationFailed("Quantity cannot be negative")
    cart = database["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart not found")
    line = next((i for i in cart["items"] if i["product_id"] == product_id), None)
    if not line:
        raise NotFound("Item not found in cart")

    if quantity == 0:
        cart["items"] = [i for i in cart["items"] if i["product_id"] != product_id]
    else:
        if quantity > line["quantity"]:
            product = get_product(database, product_id)
            if product.get("stock", 0) < quantity:
                raise OutOfStock("Requested quantity not available in stock", product_id=product_id)
        line["quantity"] = quantity
    return _save_items(database, cart)


def remove_item(database: Database, user_id: str, product_id: str) -> dict:
    cart = database["cart"].find_one({"user_id": user_id})
    if not cart:
        raise NotFound("Cart not found")
    cart["items"] = [i for i in cart["items"] if i["product_id"] != product_id]
    return _save_items(database, cart)


def clear_cart(database: Database, user_id: str) -> dict:
    cart = database["cart"].find_one_and_update(
        {"user_id": user_id},
        {"$set": {"items": [], "updated_at": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not cart:
        raise NotFound("Cart not found")
    return cart

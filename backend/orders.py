"""
Checkout and order access.

Orders snapshot product name/price/image at creation time. Stock is
re-checked here but only taken when the payment is confirmed
(see payments.reconcile_payment).
"""
import logging
from typing import Optional

from pymongo import ReturnDocument
from pymongo.database import Database

import config
from database import create_document, paginate, to_object_id, utcnow
from errors import AccessDenied, EmptyCart, NotFound, OutOfStock, ValidationFailed
from schemas import PAYMENT_METHODS, Order, OrderItem, ShippingAddress

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "paid", "shipped", "delivered", "cancelled")
PAYMENT_STATUSES = ("pending", "paid", "failed")
SHIPPING_STATUSES = ("not_shipped", "in_transit", "delivered")


def calculate_shipping_fee(total_price: float) -> float:
    if total_price >= config.FREE_SHIPPING_THRESHOLD:
        return 0
    return config.SHIPPING_FEE


def create_order(database: Database, user_id: str, shipping_address: ShippingAddress,
                 payment_method: str) -> dict:
    if payment_method not in PAYMENT_METHODS:
        raise ValidationFailed("Invalid payment method. Must be momo or stripe.")

    cart = database["cart"].find_one({"user_id": user_id})
    if not cart or not cart.get("items"):
        raise EmptyCart()

    items = []
    total_price = 0
    for line in cart["items"]:
        product = database["product"].find_one({"_id": to_object_id(line["product_id"])})
        if not product:
            raise NotFound("One or more products in cart no longer exist", product_id=line["product_id"])
        if product.get("stock", 0) < line["quantity"]:
            raise OutOfStock(f"{product['name']} - Only {product.get('stock', 0)} items available",
                             product_id=line["product_id"])
        items.append(OrderItem(
            product_id=line["product_id"],
            seller_id=product["seller_id"],
            name=product["name"],
            price=product["price"],
            quantity=line["quantity"],
            image_url=product.get("image_url"),
        ))
        total_price += product["price"] * line["quantity"]

    shipping_fee = calculate_shipping_fee(total_price)
    order = Order(
        user_id=user_id,
        items=items,
        total_price=total_price,
        shipping_fee=shipping_fee,
        grand_total=total_price + shipping_fee,
        payment_method=payment_method,
        shipping_address=shipping_address,
    )
    oid = create_document(database, "order", order)

    database["cart"].update_one({"_id": cart["_id"]}, {"$set": {"items": [], "updated_at": utcnow()}})
    logger.info("Order %s created for %s (%s, %.2f)", oid, user_id, payment_method, order.grand_total)
    return database["order"].find_one({"_id": to_object_id(oid)})


def load_order(database: Database, order_id: str) -> dict:
    order = database["order"].find_one({"_id": to_object_id(order_id, "order id")})
    if not order:
        raise NotFound("Order not found")
    return order


def items_for_seller(order: dict, seller_id: str) -> list:
    return [item for item in order["items"] if item["seller_id"] == seller_id]


def get_order_for(database: Database, order_id: str, user: dict) -> dict:
    """Owner and admins see the whole order; sellers only their own lines."""
    order = load_order(database, order_id)
    uid = str(user["_id"])
    is_owner = order["user_id"] == uid
    is_admin = user["role"] == "admin"
    is_seller = user["role"] == "seller" and bool(items_for_seller(order, uid))
    if not (is_owner or is_seller or is_admin):
        raise AccessDenied(
            f"Access denied. Your role: {user['role']}. You are not the buyer, the seller, or an admin."
        )
    if is_seller and not is_admin and not is_owner:
        order = {**order, "items": items_for_seller(order, uid)}
    return order


def my_orders(database: Database, user_id: str, page: int, limit: int) -> dict:
    return paginate(database, "order", {"user_id": user_id}, page, limit)


def seller_orders(database: Database, seller_id: str, page: int, limit: int) -> dict:
    result = paginate(database, "order", {"items.seller_id": seller_id}, page, limit)
    result["items"] = [{**o, "items": items_for_seller(o, seller_id)} for o in result["items"]]
    return result


def all_orders(database: Database, page: int, limit: int, order_status: Optional[str] = None,
               payment_status: Optional[str] = None) -> dict:
    filt = {}
    if order_status:
        filt["order_status"] = order_status
    if payment_status:
        filt["payment_status"] = payment_status
    return paginate(database, "order", filt, page, limit)


def update_status(database: Database, order_id: str, order_status: Optional[str] = None,
                  payment_status: Optional[str] = None, shipping_status: Optional[str] = None) -> dict:
    """Admin override of any of the three independent statuses."""
    changes = {}
    for field, value, allowed in (
        ("order_status", order_status, ORDER_STATUSES),
        ("payment_status", payment_status, PAYMENT_STATUSES),
        ("shipping_status", shipping_status, SHIPPING_STATUSES),
    ):
        if value is None:
            continue
        if value not in allowed:
            label = field.split("_")[0]
            raise ValidationFailed(f"Invalid {label} status. Must be one of: {', '.join(allowed)}")
        changes[field] = value
    if not changes:
        raise ValidationFailed("No status to update")
    changes["updated_at"] = utcnow()
    order = database["order"].find_one_and_update(
        {"_id": to_object_id(order_id, "order id")}, {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if not order:
        raise NotFound("Order not found")
    logger.info("Order %s statuses overridden: %s", order_id, {k: v for k, v in changes.items() if k != "updated_at"})
    return order

"""
Stock checks and the single authoritative stock decrement.

Each product is decremented with one conditional update
(stock >= qty in the filter), so concurrent requests cannot oversell.
The same update records the order id in the product's stock_orders, so
a product is charged at most once per order even when a reconciliation
is retried after a partial failure.
"""
import logging
from collections import OrderedDict
from typing import Dict, Iterable, Tuple

from pymongo.database import Database

from database import to_object_id, utcnow
from errors import FulfillmentFailed

logger = logging.getLogger(__name__)


def aggregate_quantities(items: Iterable[dict]) -> Dict[str, Tuple[int, str]]:
    """product_id -> (total quantity, display name)."""
    totals = OrderedDict()
    for item in items:
        qty, name = totals.get(item["product_id"], (0, item.get("name") or item["product_id"]))
        totals[item["product_id"]] = (qty + int(item["quantity"]), name)
    return totals


def try_decrement(database: Database, product_id: str, quantity: int, order_id) -> bool:
    """Take stock for one order line; True if taken now or by an earlier attempt."""
    pid = to_object_id(product_id)
    oid = str(order_id)
    result = database["product"].update_one(
        {"_id": pid, "stock": {"$gte": quantity}, "stock_orders": {"$ne": oid}},
        {"$inc": {"stock": -quantity}, "$addToSet": {"stock_orders": oid}, "$set": {"updated_at": utcnow()}},
    )
    if result.modified_count == 1:
        return True
    if database["product"].find_one({"_id": pid, "stock_orders": oid}, {"_id": 1}) is not None:
        logger.info("Order %s already holds stock of %s", oid, product_id)
        return True
    return False


def restore_stock(database: Database, order_id, lines: Iterable[Tuple[str, int]]) -> None:
    oid = str(order_id)
    for product_id, quantity in lines:
        # only products still marked for this order get their units back
        database["product"].update_one(
            {"_id": to_object_id(product_id), "stock_orders": oid},
            {"$inc": {"stock": quantity}, "$pull": {"stock_orders": oid}},
        )


def release_markers(database: Database, order: dict) -> None:
    """Forget the per-order markers once the order is settled."""
    oid = str(order["_id"])
    product_ids = [to_object_id(pid) for pid in aggregate_quantities(order["items"])]
    database["product"].update_many({"_id": {"$in": product_ids}}, {"$pull": {"stock_orders": oid}})


def deduct_for_order(database: Database, order: dict) -> None:
    """Take stock for every order line or for none of them."""
    lines = list(aggregate_quantities(order["items"]).items())
    for product_id, (quantity, name) in lines:
        if not try_decrement(database, product_id, quantity, order["_id"]):
            restore_stock(database, order["_id"], [(pid, qty) for pid, (qty, _) in lines])
            logger.error("Order %s: %s out of stock at fulfillment", order["_id"], name)
            raise FulfillmentFailed(
                f"Item {name} is out of stock. Payment received but order cannot be fulfilled.",
                product_id=product_id,
            )

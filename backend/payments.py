"""
Payment initiation, verification and reconciliation.

Reconciliation (stock deduction + marking the order paid) can be reached
from a client verify call and from the Stripe webhook, possibly at the
same time. An order is first claimed with a conditional update on
reconcile_lock, so only one request deducts stock; once the order is
paid every later reconciliation is a no-op. Stock taken by an attempt
that died before the paid write stays marked for the order, so the retry
after the claim expires does not take it again.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import config
from database import to_object_id, utcnow
from errors import (AccessDenied, AlreadyPaid, FulfillmentFailed, NotFound,
                    ReconciliationInProgress, ValidationFailed)
from gateways import PaymentInitiation
from orders import load_order
from stock import deduct_for_order, release_markers

logger = logging.getLogger(__name__)


@dataclass
class VerificationResult:
    paid: bool
    provider_status: str
    order: dict


def _ensure_owner(order: dict, user: dict) -> None:
    if order["user_id"] != str(user["_id"]):
        raise AccessDenied()


def initiate_payment(database: Database, gateway, order_id: str, user: dict,
                     phone: Optional[str] = None) -> Tuple[dict, PaymentInitiation]:
    order = load_order(database, order_id)
    _ensure_owner(order, user)
    if order["payment_status"] == "paid":
        if order["payment_method"] != gateway.method:
            raise AlreadyPaid("Order is already paid with a different method")
        raise AlreadyPaid()
    if order["order_status"] == "cancelled":
        raise ValidationFailed("Order has been cancelled")

    initiation = gateway.initiate(order, phone=phone, email=user.get("email"))

    # method switch and new reference land together, and only on an unpaid order
    updated = database["order"].find_one_and_update(
        {"_id": order["_id"], "payment_status": {"$ne": "paid"}},
        {"$set": {
            "payment_method": gateway.method,
            gateway.reference_field: initiation.transaction_reference,
            "updated_at": utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise AlreadyPaid()
    if order["payment_method"] != gateway.method:
        logger.info("Order %s switched payment method %s -> %s", order_id, order["payment_method"], gateway.method)
    return updated, initiation


def reconcile_payment(database: Database, order_id) -> dict:
    """Apply a confirmed payment: take stock, then mark the order paid."""
    oid = order_id if not isinstance(order_id, str) else to_object_id(order_id, "order id")
    now = utcnow()
    stale = now - timedelta(seconds=config.RECONCILE_LOCK_SECONDS)
    order = database["order"].find_one_and_update(
        {
            "_id": oid,
            "payment_status": {"$ne": "paid"},
            "$or": [{"reconcile_lock": None}, {"reconcile_lock": {"$lt": stale}}],
        },
        {"$set": {"reconcile_lock": now}},
        return_document=ReturnDocument.AFTER,
    )
    if order is None:
        current = database["order"].find_one({"_id": oid})
        if current is None:
            raise NotFound("Order not found")
        if current["payment_status"] == "paid":
            logger.info("Order %s already reconciled", oid)
            return current
        raise ReconciliationInProgress()

    if order["order_status"] == "cancelled":
        # no stock is taken for a cancelled order; the charge needs a manual refund
        logger.error("Order %s was cancelled but its payment was confirmed; refund required", oid)
        return _mark_paid(database, oid, now, order_status="cancelled")

    try:
        deduct_for_order(database, order)
    except FulfillmentFailed:
        database["order"].update_one({"_id": oid}, {"$unset": {"reconcile_lock": ""}})
        # the charge stays captured at the provider; needs operator follow-up
        logger.error("Order %s paid at provider but could not be fulfilled", oid)
        raise

    try:
        paid = _mark_paid(database, oid, now)
    except PyMongoError as exc:
        # stock stays marked for this order, so a retry after the lock expires does not take it twice
        logger.error("Order %s: stock deducted but marking paid failed: %s", oid, exc)
        raise
    release_markers(database, paid)
    logger.info("Order %s paid and stock deducted", oid)
    return paid


def _mark_paid(database: Database, oid, now, order_status: str = "paid") -> dict:
    return database["order"].find_one_and_update(
        {"_id": oid},
        {"$set": {"payment_status": "paid", "order_status": order_status, "paid_at": now, "updated_at": now},
         "$unset": {"reconcile_lock": ""}},
        return_document=ReturnDocument.AFTER,
    )


def verify_payment(database: Database, gateway, order_id: str, user: dict) -> VerificationResult:
    order = load_order(database, order_id)
    _ensure_owner(order, user)
    reference = order.get(gateway.reference_field)
    if not reference:
        label = "MoMo transaction" if gateway.method == "momo" else "Stripe payment"
        raise ValidationFailed(f"No {label} found for this order")

    status = gateway.verify(reference)
    if not status.paid:
        logger.info("Order %s %s payment not completed: %s", order_id, gateway.method, status.status)
        return VerificationResult(paid=False, provider_status=status.status, order=order)
    return VerificationResult(paid=True, provider_status=status.status,
                              order=reconcile_payment(database, order["_id"]))


def handle_stripe_event(database: Database, event) -> None:
    """Webhook entry point; never raises for business failures, only logs."""
    if event["type"] != "payment_intent.succeeded":
        logger.debug("Ignoring Stripe event %s", event["type"])
        return
    intent = event["data"]["object"]
    order_id = (intent.get("metadata") or {}).get("order_id")
    if not order_id:
        logger.warning("Stripe intent %s carries no order_id", intent.get("id"))
        return
    try:
        order = load_order(database, order_id)
        if order.get("stripe_payment_id") != intent.get("id"):
            logger.warning("Stripe intent %s does not match order %s reference %s",
                           intent.get("id"), order_id, order.get("stripe_payment_id"))
        reconcile_payment(database, order["_id"])
    except (NotFound, ValidationFailed, FulfillmentFailed, ReconciliationInProgress) as exc:
        logger.error("Webhook stock update failed for order %s: %s", order_id, exc.message)


def payment_status(database: Database, order_id: str, user: dict) -> dict:
    order = load_order(database, order_id)
    if order["user_id"] != str(user["_id"]) and user["role"] != "admin":
        raise AccessDenied()
    return {
        "order_id": str(order["_id"]),
        "payment_method": order["payment_method"],
        "payment_status": order["payment_status"],
        "order_status": order["order_status"],
        "grand_total": order["grand_total"],
    }

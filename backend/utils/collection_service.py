import asyncio
import logging
from datetime import datetime

from fastapi import HTTPException

from config.constants import MPESA_SUCCESS_CODE
from config.env import STALE_ORDER_MINUTES
from models.mpesa import StkCallback
from models.order import CollectionStatus, TERMINAL_COLLECTION_STATUSES
from utils.courier import book_parcel_for_order
from utils.ledger import (
    cascade_items_paid,
    claim_order_for_collection,
    finalize_collection,
    find_order_by_checkout_request,
    get_collection,
    get_order,
    get_order_items,
    insert_collection,
    release_order_collection_claim,
)
from utils.mpesa import stk_push, to_gateway_amount, parse_gateway_date
from utils.notifications import notify, EVENT_ORDER_PLACED
from utils.order_timeline import record_order_event
from utils.validators import normalize_phone

logger = logging.getLogger(__name__)


# ======================================================
# INITIATE (STK PUSH TO BUYER'S PHONE)
# ======================================================

async def initiate_collection(db, *, order: dict, phone_number: str, amount: float | None = None) -> dict:
    try:
        phone = normalize_phone(phone_number)
    except ValueError as e:
        raise HTTPException(400, str(e))

    status = order.get("collection_status")
    if status == CollectionStatus.COMPLETED.value:
        raise HTTPException(409, "Order already paid")
    if status == CollectionStatus.CANCELLED.value:
        raise HTTPException(409, "Order was cancelled. Please check out again")

    gateway_amount = to_gateway_amount(amount if amount is not None else order["total_amount"])
    if gateway_amount <= 0:
        raise HTTPException(400, "Invalid payment amount")

    if await claim_order_for_collection(db, order["_id"], window_minutes=STALE_ORDER_MINUTES) is None:
        raise HTTPException(409, "A payment request for this order is already in progress")

    order_ref = str(order["_id"])
    try:
        response = await asyncio.to_thread(
            stk_push,
            phone=phone,
            amount=gateway_amount,
            reference=order_ref[-12:],
            description=f"Order {order_ref[-6:]}",
        )
    except Exception:
        await release_order_collection_claim(db, order["_id"])
        raise

    checkout_request_id = response["CheckoutRequestID"]
    await insert_collection(
        db,
        order_id=order["_id"],
        checkout_request_id=checkout_request_id,
        merchant_request_id=response.get("MerchantRequestID"),
        amount=gateway_amount,
        phone_number=phone,
    )

    now = datetime.utcnow()
    await db.orders.update_one(
        {"_id": order["_id"]},
        {
            "$set": {
                "checkout_request_id": checkout_request_id,
                "collection_status": CollectionStatus.PROCESSING.value,
                "payment_method": "mpesa",
                "phone_number": phone,
                "updated_at": now,
            }
        },
    )

    await record_order_event(
        db,
        order_id=order["_id"],
        event="COLLECTION_INITIATED",
        actor_role="buyer",
        actor_id=order.get("buyer_id"),
        metadata={"checkout_request_id": checkout_request_id, "amount": gateway_amount},
    )
    logger.info("COLLECTION_INITIATED order=%s checkout=%s", order["_id"], checkout_request_id)

    return {
        "success": True,
        "message": "STK push initiated successfully",
        "checkout_request_id": checkout_request_id,
        "merchant_request_id": response.get("MerchantRequestID"),
        "customer_message": response.get("CustomerMessage"),
        "amount": gateway_amount,
    }


# ======================================================
# CALLBACK (IDEMPOTENT, NEVER RAISES TO THE GATEWAY)
# ======================================================

async def handle_collection_callback(db, callback: StkCallback) -> dict:
    checkout_request_id = callback.checkout_request_id

    collection = await get_collection(db, checkout_request_id)
    if collection:
        order = await get_order(db, collection["order_id"])
    else:
        order = await find_order_by_checkout_request(db, checkout_request_id)

    if not order:
        logger.warning("COLLECTION_CALLBACK_UNKNOWN checkout=%s", checkout_request_id)
        return {"handled": False, "reason": "order_not_found"}

    if collection and collection.get("status") in TERMINAL_COLLECTION_STATUSES:
        logger.info("COLLECTION_CALLBACK_REPLAY checkout=%s", checkout_request_id)
        return {"handled": False, "reason": "already_terminal"}

    if not collection:
        # Order carried the id but the attempt was never recorded; adopt it.
        collection = await insert_collection(
            db,
            order_id=order["_id"],
            checkout_request_id=checkout_request_id,
            merchant_request_id=callback.merchant_request_id,
            amount=to_gateway_amount(order["total_amount"]),
            phone_number=order.get("phone_number"),
        )

    if callback.result_code == MPESA_SUCCESS_CODE:
        return await _complete_collection(db, order, collection, callback)
    return await _fail_collection(db, order, callback)


async def _complete_collection(db, order: dict, collection: dict, callback: StkCallback) -> dict:
    receipt = callback.metadata("MpesaReceiptNumber")
    paid_at = parse_gateway_date(callback.metadata("TransactionDate"))
    phone = callback.metadata("PhoneNumber")
    amount = callback.metadata("Amount")

    updated = await finalize_collection(
        db,
        callback.checkout_request_id,
        CollectionStatus.COMPLETED.value,
        {
            "result_code": callback.result_code,
            "result_description": callback.result_desc,
            "receipt_number": receipt,
            "transaction_date": paid_at,
            "paid_phone_number": str(phone) if phone else collection.get("phone_number"),
            "amount_paid": amount if amount is not None else collection.get("amount"),
        },
    )
    if updated is None:
        return {"handled": False, "reason": "already_terminal"}

    was_cancelled = order.get("collection_status") == CollectionStatus.CANCELLED.value
    now = datetime.utcnow()
    marked = await db.orders.update_one(
        {"_id": order["_id"], "collection_status": {"$ne": CollectionStatus.COMPLETED.value}},
        {
            "$set": {
                "collection_status": CollectionStatus.COMPLETED.value,
                "receipt_number": receipt,
                "paid_at": paid_at,
                "amount_paid": amount if amount is not None else order.get("total_amount"),
                "phone_number": str(phone) if phone else order.get("phone_number"),
                "payment_error": None,
                "updated_at": now,
            },
            "$unset": {"cancel_reason": "", "cancelled_at": "", "collection_requested_at": ""},
        },
    )
    if marked.matched_count == 0:
        return await _record_duplicate_payment(db, order, updated)

    cascaded = 0
    try:
        cascaded = await cascade_items_paid(db, order["_id"])
    except Exception:
        logger.exception("PAYMENT_CASCADE_ERROR order=%s", order["_id"])

    await record_order_event(
        db,
        order_id=order["_id"],
        event="PAYMENT_AFTER_CANCELLATION" if was_cancelled else "PAYMENT_COMPLETED",
        actor_role="system",
        metadata={"receipt": receipt, "items_advanced": cascaded},
    )
    logger.info("COLLECTION_COMPLETED order=%s receipt=%s", order["_id"], receipt)

    try:
        await book_parcel_for_order(db, await get_order(db, order["_id"]))
    except Exception:
        logger.exception("PARCEL_BOOKING_ERROR order=%s", order["_id"])

    await notify(db, user_id=order.get("buyer_id"), event=EVENT_ORDER_PLACED, payload={
        "order_id": str(order["_id"]),
        "receipt": receipt,
        "amount": order.get("total_amount"),
    })
    items = await get_order_items(db, order["_id"])
    for seller_id in {item["seller_id"] for item in items}:
        await notify(db, user_id=seller_id, event=EVENT_ORDER_PLACED, payload={
            "order_id": str(order["_id"]),
            "role": "seller",
        })

    return {"handled": True, "status": CollectionStatus.COMPLETED.value, "items_advanced": cascaded}


async def _record_duplicate_payment(db, order: dict, collection: dict) -> dict:
    """A second successful charge for an order that was already paid."""
    await db.collections.update_one({"_id": collection["_id"]}, {"$set": {"duplicate": True}})
    await record_order_event(
        db,
        order_id=order["_id"],
        event="DUPLICATE_PAYMENT",
        actor_role="system",
        metadata={
            "checkout_request_id": collection["checkout_request_id"],
            "receipt": collection.get("receipt_number"),
            "amount": collection.get("amount_paid"),
        },
    )
    logger.warning(
        "DUPLICATE_PAYMENT order=%s checkout=%s receipt=%s",
        order["_id"], collection["checkout_request_id"], collection.get("receipt_number"),
    )
    return {"handled": True, "status": CollectionStatus.COMPLETED.value, "duplicate": True}


async def _fail_collection(db, order: dict, callback: StkCallback) -> dict:
    updated = await finalize_collection(
        db,
        callback.checkout_request_id,
        CollectionStatus.FAILED.value,
        {
            "result_code": callback.result_code,
            "result_description": callback.result_desc,
        },
    )
    if updated is None:
        return {"handled": False, "reason": "already_terminal"}

    # A later attempt for the same order may already have succeeded.
    await db.orders.update_one(
        {
            "_id": order["_id"],
            "collection_status": {"$nin": [CollectionStatus.COMPLETED.value, CollectionStatus.CANCELLED.value]},
        },
        {
            "$set": {
                "collection_status": CollectionStatus.FAILED.value,
                "payment_error": callback.result_desc,
                "updated_at": datetime.utcnow(),
            }
        },
    )
    await release_order_collection_claim(db, order["_id"], callback.checkout_request_id)
    await record_order_event(
        db,
        order_id=order["_id"],
        event="PAYMENT_FAILED",
        actor_role="system",
        metadata={"result_code": callback.result_code, "reason": callback.result_desc},
    )
    logger.info("COLLECTION_FAILED order=%s code=%s", order["_id"], callback.result_code)
    return {"handled": True, "status": CollectionStatus.FAILED.value}


async def get_collection_status(db, checkout_request_id: str, *, user: dict | None = None) -> dict:
    order = await find_order_by_checkout_request(db, checkout_request_id)
    if not order:
        collection = await get_collection(db, checkout_request_id)
        order = await get_order(db, collection["order_id"]) if collection else None
    if not order:
        raise HTTPException(404, "Order not found")
    if user and user.get("role") != "admin" and order.get("buyer_id") != user["_id"]:
        raise HTTPException(403, "You are not authorized to view this payment")

    items = await get_order_items(db, order["_id"])
    return {
        "order_id": str(order["_id"]),
        "collection_status": order.get("collection_status"),
        "item_statuses": {str(i["_id"]): i.get("status") for i in items},
        "receipt": order.get("receipt_number"),
        "payment_error": order.get("payment_error"),
    }

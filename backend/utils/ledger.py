"""
Payment ledger: the only shared mutable state of the money-movement flows.

Every status transition that must happen at most once is a conditional
update (filter on the current status) so that concurrent callers race on the
database rather than on a read-then-write in application code.
"""

from datetime import datetime, timedelta

from bson import ObjectId
from pymongo import ASCENDING, ReturnDocument

from models.order import (
    CLAIMABLE_DISBURSEMENT_STATUSES,
    TERMINAL_COLLECTION_STATUSES,
    TERMINAL_PAYOUT_STATUSES,
    CollectionStatus,
    DisbursementStatus,
    FulfillmentStatus,
    PayoutStatus,
)


# ==============================
# Orders / items
# ==============================

async def get_order(db, order_id: ObjectId):
    return await db.orders.find_one({"_id": order_id})


async def get_order_item(db, item_id: ObjectId):
    return await db.order_items.find_one({"_id": item_id})


async def get_order_items(db, order_id: ObjectId) -> list[dict]:
    return await db.order_items.find({"order_id": order_id}).sort("created_at", ASCENDING).to_list(None)


async def find_order_by_checkout_request(db, checkout_request_id: str):
    return await db.orders.find_one({"checkout_request_id": checkout_request_id})


async def claim_order_for_collection(db, order_id: ObjectId, *, window_minutes: int):
    """
    Reserve an unpaid order for one STK push. Returns None while another push
    for it is still in flight (younger than the window).
    """
    now = datetime.utcnow()
    return await db.orders.find_one_and_update(
        {
            "_id": order_id,
            "collection_status": {
                "$nin": [CollectionStatus.COMPLETED.value, CollectionStatus.CANCELLED.value],
            },
            "$or": [
                {"collection_requested_at": None},
                {"collection_requested_at": {"$lt": now - timedelta(minutes=window_minutes)}},
            ],
        },
        {"$set": {"collection_requested_at": now}},
        return_document=ReturnDocument.AFTER,
    )


async def release_order_collection_claim(db, order_id: ObjectId, checkout_request_id: str | None = None):
    """Free the order for another push. With a checkout id, only if that attempt is still current."""
    query = {"_id": order_id}
    if checkout_request_id:
        query["checkout_request_id"] = checkout_request_id
    await db.orders.update_one(query, {"$unset": {"collection_requested_at": ""}})


async def cascade_items_paid(db, order_id: ObjectId) -> int:
    """pending_payment -> processing for every item of a paid order."""
    now = datetime.utcnow()
    result = await db.order_items.update_many(
        {
            "order_id": order_id,
            "$or": [
                {"status": FulfillmentStatus.PENDING_PAYMENT.value},
                {
                    "status": FulfillmentStatus.CANCELLED.value,
                    "cancel_reason": "STALE_PENDING_ORDER",
                },
            ],
        },
        {
            "$set": {"status": FulfillmentStatus.PROCESSING.value, "updated_at": now},
            "$unset": {"cancel_reason": "", "cancelled_at": ""},
        },
    )
    return result.modified_count


# ==============================
# Collections (buyer -> platform)
# ==============================

async def insert_collection(
    db,
    *,
    order_id: ObjectId,
    checkout_request_id: str,
    merchant_request_id: str | None,
    amount: int,
    phone_number: str,
) -> dict:
    now = datetime.utcnow()
    doc = {
        "order_id": order_id,
        "checkout_request_id": checkout_request_id,
        "merchant_request_id": merchant_request_id,
        "amount": amount,
        "phone_number": phone_number,
        "status": CollectionStatus.PROCESSING.value,
        "result_code": None,
        "result_description": None,
        "receipt_number": None,
        "completed_at": None,
        "created_at": now,
        "updated_at": now,
    }
    await db.collections.insert_one(doc)
    return doc


async def get_collection(db, checkout_request_id: str):
    return await db.collections.find_one({"checkout_request_id": checkout_request_id})


async def finalize_collection(db, checkout_request_id: str, status: str, fields: dict):
    """
    First terminal write wins. Returns the updated record, or None when the
    collection was already terminal (or does not exist).
    """
    now = datetime.utcnow()
    return await db.collections.find_one_and_update(
        {
            "checkout_request_id": checkout_request_id,
            "status": {"$nin": list(TERMINAL_COLLECTION_STATUSES)},
        },
        {"$set": {**fields, "status": status, "completed_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )


# ==============================
# Disbursements (platform -> seller)
# ==============================

async def claim_item_for_disbursement(db, item_id: ObjectId):
    """
    Atomically move an item's disbursement status to processing.
    Returns the item as it was before the claim, or None if another caller
    already holds it (or it is completed).
    """
    return await db.order_items.find_one_and_update(
        {
            "_id": item_id,
            "status": FulfillmentStatus.DELIVERED.value,
            "disbursement_status": {"$in": CLAIMABLE_DISBURSEMENT_STATUSES},
        },
        {
            "$set": {
                "disbursement_status": DisbursementStatus.PROCESSING.value,
                "disbursement_claimed_at": datetime.utcnow(),
            }
        },
        return_document=ReturnDocument.BEFORE,
    )


async def release_item_claim(db, item_id: ObjectId, previous_status: str | None, reason: str):
    """Undo a claim when the payout never reached the gateway."""
    await db.order_items.update_one(
        {"_id": item_id, "disbursement_status": DisbursementStatus.PROCESSING.value},
        {
            "$set": {
                "disbursement_status": previous_status or DisbursementStatus.NONE.value,
                "payment_error": reason,
                "updated_at": datetime.utcnow(),
            }
        },
    )


async def set_item_disbursement_status(db, item_id: ObjectId, status: str, extra: dict | None = None):
    await db.order_items.update_one(
        {"_id": item_id},
        {"$set": {"disbursement_status": status, "updated_at": datetime.utcnow(), **(extra or {})}},
    )


async def insert_disbursement(db, doc: dict) -> dict:
    now = datetime.utcnow()
    doc = {
        "status": PayoutStatus.INITIATED.value,
        "result_code": None,
        "result_description": None,
        "transaction_id": None,
        "completed_at": None,
        "created_at": now,
        "updated_at": now,
        **doc,
    }
    await db.disbursements.insert_one(doc)
    return doc


async def attach_gateway_ids(
    db,
    disbursement_id: ObjectId,
    *,
    originator_conversation_id: str | None,
    conversation_id: str | None,
):
    """Store the ids the gateway echoed back. Status is left to the callbacks."""
    fields = {"updated_at": datetime.utcnow()}
    if originator_conversation_id:
        fields["originator_conversation_id"] = originator_conversation_id
    if conversation_id:
        fields["conversation_id"] = conversation_id
    await db.disbursements.update_one({"_id": disbursement_id}, {"$set": fields})


async def find_disbursement(db, originator_id: str):
    return await db.disbursements.find_one({
        "$or": [
            {"originator_conversation_id": originator_id},
            {"reference": originator_id},
        ]
    })


async def finalize_disbursement(db, disbursement_id: ObjectId, status: str, fields: dict):
    now = datetime.utcnow()
    return await db.disbursements.find_one_and_update(
        {
            "_id": disbursement_id,
            "status": {"$nin": list(TERMINAL_PAYOUT_STATUSES)},
        },
        {"$set": {**fields, "status": status, "completed_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )


async def get_item_disbursements(db, item_id: ObjectId) -> list[dict]:
    return await db.disbursements.find({"order_item_id": item_id}).sort("created_at", ASCENDING).to_list(None)


# ==============================
# Sweeper scans
# ==============================

async def list_unpaid_delivered_items(db, limit: int | None = None) -> list[dict]:
    cursor = db.order_items.find({
        "status": FulfillmentStatus.DELIVERED.value,
        "disbursement_status": {
            "$in": [None, DisbursementStatus.NONE.value, DisbursementStatus.PENDING.value],
        },
    }).sort("created_at", ASCENDING)
    return await cursor.to_list(limit)


async def list_failed_disbursements(db, limit: int | None = None) -> list[dict]:
    cursor = db.disbursements.find({
        "status": {"$in": [PayoutStatus.FAILED.value, PayoutStatus.TIMEOUT.value]},
    }).sort("created_at", ASCENDING)
    return await cursor.to_list(limit)


async def list_stale_claims(db, claimed_before: datetime, limit: int | None = None) -> list[dict]:
    """Items held in processing since before the cutoff (or with no claim time)."""
    cursor = db.order_items.find({
        "disbursement_status": DisbursementStatus.PROCESSING.value,
        "$or": [
            {"disbursement_claimed_at": {"$lt": claimed_before}},
            {"disbursement_claimed_at": None},
        ],
    }).sort("disbursement_claimed_at", ASCENDING)
    return await cursor.to_list(limit)

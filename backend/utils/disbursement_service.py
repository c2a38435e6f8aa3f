import asyncio
import logging
import random
import time
from datetime import datetime

from bson import ObjectId
from fastapi import HTTPException

from config.constants import MPESA_SUCCESS_CODE
from models.mpesa import B2CResult, B2CTimeout
from models.order import (
    CollectionStatus,
    DisbursementStatus,
    FulfillmentStatus,
    PayoutStatus,
    TERMINAL_PAYOUT_STATUSES,
)
from utils.commission import calculate_item_commission
from utils.ledger import (
    attach_gateway_ids,
    claim_item_for_disbursement,
    finalize_disbursement,
    find_disbursement,
    get_item_disbursements,
    get_order,
    get_order_item,
    insert_disbursement,
    release_item_claim,
)
from utils.mpesa import b2c_payment, to_gateway_amount
from utils.order_timeline import record_order_event
from utils.validators import normalize_phone

logger = logging.getLogger(__name__)

ALREADY_PROCESSED = "already_processed"
NOT_PAID = "not_paid"
NOT_DELIVERED = "not_delivered"
INITIATED = "initiated"


def _result(success: bool, code: str, message: str, **extra) -> dict:
    return {"success": success, "code": code, "message": message, **extra}


def new_originator_id(order_id) -> str:
    return f"B2C_{order_id}_{int(time.time() * 1000)}_{random.randint(1000, 9999)}"


def _parse_b2c_date(value) -> datetime | None:
    if not value:
        return None
    for fmt in ("%d.%m.%Y %H:%M:%S", "%Y%m%d%H%M%S"):
        try:
            return datetime.strptime(str(value), fmt)
        except ValueError:
            continue
    return None


# ======================================================
# INITIATE PAYOUT TO SELLER
# ======================================================

async def initiate_disbursement(
    db,
    order_item_id: ObjectId,
    *,
    actor_role: str = "system",
    actor_id=None,
) -> dict:
    """
    Pay the seller's share of one order item.

    Benign refusals come back as result dicts (already_processed, not_paid,
    not_delivered). Gateway and configuration failures raise HTTPException
    after the item's claim has been released for a later retry.
    """
    item = await get_order_item(db, order_item_id)
    if not item:
        raise HTTPException(404, "Order item not found")

    if item.get("disbursement_status") in {
        DisbursementStatus.COMPLETED.value,
        DisbursementStatus.PROCESSING.value,
    }:
        logger.info("DISBURSEMENT_SKIPPED item=%s already processed", order_item_id)
        return _result(False, ALREADY_PROCESSED, "Payment already processed")

    order = await get_order(db, item["order_id"])
    if not order or order.get("collection_status") != CollectionStatus.COMPLETED.value:
        return _result(False, NOT_PAID, "Order not yet paid by customer")

    if item.get("status") != FulfillmentStatus.DELIVERED.value:
        return _result(False, NOT_DELIVERED, "Order item has not been delivered")

    claimed = await claim_item_for_disbursement(db, order_item_id)
    if claimed is None:
        # Another trigger won the compare-and-swap.
        return _result(False, ALREADY_PROCESSED, "Payment already processed")

    previous_status = claimed.get("disbursement_status")
    originator_id = new_originator_id(item["order_id"])

    try:
        seller = await db.users.find_one({"_id": item["seller_id"]})
        raw_phone = (seller or {}).get("payout_phone") or (seller or {}).get("phone")
        if not raw_phone:
            raise HTTPException(400, "Seller payout phone number not found")
        try:
            phone = normalize_phone(raw_phone)
        except ValueError as e:
            raise HTTPException(400, f"Seller payout phone invalid: {e}")

        commission = calculate_item_commission(item["unit_price"], item["quantity"])
        amount = to_gateway_amount(commission["total_seller_payout"])
        if amount <= 0:
            raise HTTPException(400, "Seller payout amount must be positive")

        # Recorded before dispatch so a result that beats the response still matches.
        payment = await insert_disbursement(db, {
            "order_id": item["order_id"],
            "order_item_id": order_item_id,
            "seller_id": item["seller_id"],
            "amount": amount,
            "phone_number": phone,
            "reference": originator_id,
            "originator_conversation_id": originator_id,
            "conversation_id": None,
            "commission": {
                "platform_fee": commission["total_platform_fee"],
                "platform_profit": commission["total_platform_profit"],
                "seller_fee": commission["total_seller_fee"],
                "gateway_fee": commission["total_gateway_fee"],
                "gross_product_price": commission["total_product_price"],
                "seller_payout": commission["total_seller_payout"],
            },
        })
    except Exception as e:
        await _abort_dispatch(db, item, previous_status, e, actor_role, actor_id)
        raise

    await db.order_items.update_one(
        {"_id": order_item_id},
        {
            "$set": {
                "payment_reference": originator_id,
                "payment_error": None,
                "updated_at": datetime.utcnow(),
            }
        },
    )

    try:
        response = await asyncio.to_thread(
            b2c_payment,
            phone=phone,
            amount=amount,
            originator_id=originator_id,
            remarks="Seller Payment",
            occasion=f"Payment for order {item['order_id']}",
        )
    except Exception as e:
        reason = e.detail if isinstance(e, HTTPException) else str(e)
        await finalize_disbursement(db, payment["_id"], PayoutStatus.FAILED.value, {
            "result_description": reason,
        })
        await _abort_dispatch(db, item, previous_status, e, actor_role, actor_id)
        raise

    await attach_gateway_ids(
        db,
        payment["_id"],
        originator_conversation_id=response.get("OriginatorConversationID"),
        conversation_id=response.get("ConversationID"),
    )

    await record_order_event(
        db,
        order_id=item["order_id"],
        order_item_id=order_item_id,
        event="DISBURSEMENT_INITIATED",
        actor_role=actor_role,
        actor_id=actor_id,
        metadata={"amount": amount, "reference": originator_id},
    )
    logger.info("DISBURSEMENT_INITIATED item=%s amount=%s ref=%s", order_item_id, amount, originator_id)

    return _result(
        True,
        INITIATED,
        "B2C payment initiated successfully",
        reference=originator_id,
        amount=amount,
        commission=commission,
    )


async def _abort_dispatch(db, item: dict, previous_status, error: Exception, actor_role, actor_id):
    reason = error.detail if isinstance(error, HTTPException) else str(error)
    await release_item_claim(db, item["_id"], previous_status, reason)
    await record_order_event(
        db,
        order_id=item["order_id"],
        order_item_id=item["_id"],
        event="DISBURSEMENT_DISPATCH_FAILED",
        actor_role=actor_role,
        actor_id=actor_id,
        metadata={"reason": reason},
    )
    logger.warning("DISBURSEMENT_DISPATCH_FAILED item=%s reason=%s", item["_id"], reason)


# ======================================================
# CALLBACKS (IDEMPOTENT)
# ======================================================

async def _load_open_disbursement(db, originator_id: str):
    payment = await find_disbursement(db, originator_id)
    if not payment:
        logger.warning("DISBURSEMENT_CALLBACK_UNKNOWN originator=%s", originator_id)
        return None, {"handled": False, "reason": "not_found"}
    if payment.get("status") in TERMINAL_PAYOUT_STATUSES:
        logger.info("DISBURSEMENT_CALLBACK_REPLAY originator=%s", originator_id)
        return None, {"handled": False, "reason": "already_terminal"}
    return payment, None


async def _fail_item(db, payment: dict, reason: str):
    # Only the attempt the item currently points at may flip it back to failed.
    await db.order_items.update_one(
        {
            "_id": payment["order_item_id"],
            "payment_reference": payment.get("reference"),
            "disbursement_status": {"$ne": DisbursementStatus.COMPLETED.value},
        },
        {
            "$set": {
                "disbursement_status": DisbursementStatus.FAILED.value,
                "payment_error": reason,
                "updated_at": datetime.utcnow(),
            }
        },
    )


async def handle_disbursement_result(db, result: B2CResult) -> dict:
    payment, skipped = await _load_open_disbursement(db, result.originator_conversation_id)
    if skipped:
        return skipped

    if result.result_code == MPESA_SUCCESS_CODE:
        updated = await finalize_disbursement(db, payment["_id"], PayoutStatus.COMPLETED.value, {
            "result_code": result.result_code,
            "result_description": result.result_desc,
            "conversation_id": result.conversation_id or payment.get("conversation_id"),
            "transaction_id": result.transaction_id or result.parameter("TransactionReceipt"),
            "transaction_amount": result.parameter("TransactionAmount"),
            "recipient_name": result.parameter("ReceiverPartyPublicName"),
            "recipient_registered": result.parameter("B2CRecipientIsRegisteredCustomer"),
            "transaction_date": _parse_b2c_date(result.parameter("TransactionCompletedDateTime")),
        })
        if updated is None:
            return {"handled": False, "reason": "already_terminal"}

        now = datetime.utcnow()
        await db.order_items.update_one(
            {"_id": payment["order_item_id"]},
            {
                "$set": {
                    "disbursement_status": DisbursementStatus.COMPLETED.value,
                    "seller_paid_at": now,
                    "payment_error": None,
                    "updated_at": now,
                }
            },
        )
        await record_order_event(
            db,
            order_id=payment["order_id"],
            order_item_id=payment["order_item_id"],
            event="DISBURSEMENT_COMPLETED",
            actor_role="system",
            metadata={"transaction_id": updated.get("transaction_id"), "amount": payment.get("amount")},
        )
        logger.info("DISBURSEMENT_COMPLETED item=%s", payment["order_item_id"])
        return {"handled": True, "status": PayoutStatus.COMPLETED.value}

    updated = await finalize_disbursement(db, payment["_id"], PayoutStatus.FAILED.value, {
        "result_code": result.result_code,
        "result_description": result.result_desc,
        "conversation_id": result.conversation_id or payment.get("conversation_id"),
    })
    if updated is None:
        return {"handled": False, "reason": "already_terminal"}

    await _fail_item(db, payment, result.result_desc)
    await record_order_event(
        db,
        order_id=payment["order_id"],
        order_item_id=payment["order_item_id"],
        event="DISBURSEMENT_FAILED",
        actor_role="system",
        metadata={"result_code": result.result_code, "reason": result.result_desc},
    )
    logger.info("DISBURSEMENT_FAILED item=%s code=%s", payment["order_item_id"], result.result_code)
    return {"handled": True, "status": PayoutStatus.FAILED.value}


async def handle_disbursement_timeout(db, timeout: B2CTimeout) -> dict:
    payment, skipped = await _load_open_disbursement(db, timeout.originator_conversation_id)
    if skipped:
        return skipped

    reason = timeout.result_desc or "Transaction timed out"
    updated = await finalize_disbursement(db, payment["_id"], PayoutStatus.TIMEOUT.value, {
        "result_code": timeout.result_code,
        "result_description": reason,
        "conversation_id": timeout.conversation_id or payment.get("conversation_id"),
    })
    if updated is None:
        return {"handled": False, "reason": "already_terminal"}

    await _fail_item(db, payment, "Transaction timed out")
    await record_order_event(
        db,
        order_id=payment["order_id"],
        order_item_id=payment["order_item_id"],
        event="DISBURSEMENT_TIMEOUT",
        actor_role="system",
    )
    logger.info("DISBURSEMENT_TIMEOUT item=%s", payment["order_item_id"])
    return {"handled": True, "status": PayoutStatus.TIMEOUT.value}


# ======================================================
# STALE CLAIMS
# ======================================================

NO_RESULT_REASON = "No result received from M-Pesa"


async def expire_disbursement_claim(db, item: dict) -> str:
    """
    Settle an item stuck in processing and return its new disbursement status.

    A claim that never produced a record goes back to pending for the sweep.
    A record still waiting for its result is timed out so the retry job picks
    it up. A completed record is mirrored onto the item.
    """
    attempts = await get_item_disbursements(db, item["_id"])
    if not attempts:
        await release_item_claim(db, item["_id"], DisbursementStatus.PENDING.value, NO_RESULT_REASON)
        logger.warning("DISBURSEMENT_CLAIM_EXPIRED item=%s no_record", item["_id"])
        return DisbursementStatus.PENDING.value

    payment = attempts[-1]
    if payment.get("status") == PayoutStatus.INITIATED.value:
        expired = await finalize_disbursement(db, payment["_id"], PayoutStatus.TIMEOUT.value, {
            "result_description": NO_RESULT_REASON,
        })
        # A callback may have landed in between.
        payment = expired or await find_disbursement(db, payment["reference"])

    now = datetime.utcnow()
    if payment.get("status") == PayoutStatus.COMPLETED.value:
        await db.order_items.update_one(
            {"_id": item["_id"], "disbursement_status": DisbursementStatus.PROCESSING.value},
            {
                "$set": {
                    "disbursement_status": DisbursementStatus.COMPLETED.value,
                    "payment_reference": payment["reference"],
                    "seller_paid_at": payment.get("completed_at") or now,
                    "payment_error": None,
                    "updated_at": now,
                }
            },
        )
        logger.info("DISBURSEMENT_CLAIM_SETTLED item=%s ref=%s", item["_id"], payment["reference"])
        return DisbursementStatus.COMPLETED.value

    reason = payment.get("result_description") or NO_RESULT_REASON
    await db.order_items.update_one(
        {"_id": item["_id"], "disbursement_status": DisbursementStatus.PROCESSING.value},
        {
            "$set": {
                "disbursement_status": DisbursementStatus.FAILED.value,
                "payment_reference": payment["reference"],
                "payment_error": reason,
                "updated_at": now,
            }
        },
    )
    await record_order_event(
        db,
        order_id=item["order_id"],
        order_item_id=item["_id"],
        event="DISBURSEMENT_CLAIM_EXPIRED",
        actor_role="system",
        metadata={"reference": payment["reference"], "reason": reason},
    )
    logger.warning("DISBURSEMENT_CLAIM_EXPIRED item=%s ref=%s", item["_id"], payment["reference"])
    return DisbursementStatus.FAILED.value


async def get_disbursement_status(db, reference: str) -> dict:
    payment = await find_disbursement(db, reference)
    if not payment:
        raise HTTPException(404, "Transaction not found")
    return payment

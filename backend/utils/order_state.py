import logging
from datetime import datetime

from bson import ObjectId
from fastapi import HTTPException
from pymongo import ReturnDocument

from models.order import CollectionStatus, DisbursementStatus, FulfillmentStatus
from utils.disbursement_service import initiate_disbursement
from utils.guards import assert_item_buyer, assert_item_seller
from utils.ledger import get_order, get_order_item
from utils.notifications import notify, EVENT_DELIVERY_CONFIRMED, EVENT_ITEM_DELIVERED
from utils.order_timeline import record_order_event

logger = logging.getLogger(__name__)

PAYMENT_RETRY_NOTE = "Delivery confirmed but payment processing failed. Will be retried automatically."

# Seller-driven moves: one step forward, or cancel before shipping.
SELLER_TRANSITIONS = {
    FulfillmentStatus.PENDING_PAYMENT.value: {
        FulfillmentStatus.PROCESSING.value,
        FulfillmentStatus.CANCELLED.value,
    },
    FulfillmentStatus.PROCESSING.value: {
        FulfillmentStatus.SHIPPED.value,
        FulfillmentStatus.CANCELLED.value,
    },
    FulfillmentStatus.SHIPPED.value: {
        FulfillmentStatus.DELIVERED.value,
    },
}

TIMESTAMP_FIELDS = {
    FulfillmentStatus.SHIPPED.value: "shipped_at",
    FulfillmentStatus.DELIVERED.value: "delivered_at",
    FulfillmentStatus.CANCELLED.value: "cancelled_at",
}


class OrderStateMachine:
    """
    Legal fulfillment transitions for an order item, and the decision of
    whether a transition should pay the seller.

    Payment is a side effect: a failed payout never undoes the transition
    that triggered it, the sweeper picks the item up later.
    """

    def __init__(self, db, *, auto_payments_enabled: bool):
        self.db = db
        self.auto_payments_enabled = auto_payments_enabled

    async def _load_item(self, item_id: ObjectId) -> dict:
        item = await get_order_item(self.db, item_id)
        if not item:
            raise HTTPException(404, "Order item not found")
        return item

    # --------------------------------------------------
    # Seller: processing -> shipped -> delivered
    # --------------------------------------------------

    async def update_item_status(self, item_id: ObjectId, new_status: str, *, actor: dict) -> dict:
        item = await self._load_item(item_id)
        assert_item_seller(item, actor)

        current = item.get("status")
        if current == new_status:
            raise HTTPException(409, f"Order item is already {new_status}")

        allowed = SELLER_TRANSITIONS.get(current, set())
        if new_status not in allowed:
            raise HTTPException(400, f"Cannot move order item from {current} to {new_status}")

        if current == FulfillmentStatus.PENDING_PAYMENT.value and new_status == FulfillmentStatus.PROCESSING.value:
            order = await get_order(self.db, item["order_id"])
            if not order or order.get("collection_status") != CollectionStatus.COMPLETED.value:
                raise HTTPException(409, "Order not yet paid by customer")

        now = datetime.utcnow()
        fields = {"status": new_status, "updated_at": now}
        if new_status in TIMESTAMP_FIELDS:
            fields[TIMESTAMP_FIELDS[new_status]] = now

        updated = await self.db.order_items.find_one_and_update(
            {"_id": item_id, "status": current},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise HTTPException(409, "Order item changed concurrently. Please retry")

        await record_order_event(
            self.db,
            order_id=item["order_id"],
            order_item_id=item_id,
            event=f"ITEM_{new_status.upper()}",
            actor_role=actor.get("role", "seller"),
            actor_id=actor.get("_id"),
            metadata={"from": current},
        )
        logger.info("ITEM_STATUS item=%s %s->%s", item_id, current, new_status)

        payment_result = None
        if new_status == FulfillmentStatus.DELIVERED.value:
            await notify(self.db, user_id=item.get("buyer_id"), event=EVENT_ITEM_DELIVERED, payload={
                "order_id": str(item["order_id"]),
                "order_item_id": str(item_id),
            })
            payment_result = await self._pay_or_queue(item_id, actor)
            updated = await get_order_item(self.db, item_id)

        return {
            "success": True,
            "message": f"Order item status updated to {new_status}",
            "item": updated,
            "payment_result": payment_result,
        }

    # --------------------------------------------------
    # Buyer: confirm delivery (+ optional rating)
    # --------------------------------------------------

    async def confirm_delivery(
        self,
        item_id: ObjectId,
        *,
        buyer: dict,
        rating: int | None = None,
        review: str | None = None,
    ) -> dict:
        item = await self._load_item(item_id)
        assert_item_buyer(item, buyer)

        if item.get("buyer_confirmed"):
            raise HTTPException(409, "Order already confirmed")
        if item.get("status") != FulfillmentStatus.DELIVERED.value:
            raise HTTPException(409, "Order item has not been delivered yet")

        now = datetime.utcnow()
        fields = {"buyer_confirmed": True, "buyer_confirmed_at": now, "updated_at": now}
        if rating is not None:
            fields["buyer_rating"] = rating
        if review:
            fields["buyer_review"] = review

        updated = await self.db.order_items.find_one_and_update(
            {
                "_id": item_id,
                "status": FulfillmentStatus.DELIVERED.value,
                "buyer_confirmed": {"$ne": True},
            },
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise HTTPException(409, "Order already confirmed")

        await record_order_event(
            self.db,
            order_id=item["order_id"],
            order_item_id=item_id,
            event="DELIVERY_CONFIRMED",
            actor_role="buyer",
            actor_id=buyer["_id"],
            metadata={"rating": rating},
        )
        await notify(self.db, user_id=item.get("seller_id"), event=EVENT_DELIVERY_CONFIRMED, payload={
            "order_id": str(item["order_id"]),
            "order_item_id": str(item_id),
            "rating": rating,
        })

        payment_result = await self._pay_or_queue(item_id, buyer)
        if payment_result and payment_result.get("success") is False and payment_result.get("error"):
            payment_result["note"] = PAYMENT_RETRY_NOTE

        return {
            "success": True,
            "message": "Order delivery confirmed successfully",
            "item": await get_order_item(self.db, item_id),
            "payment_result": payment_result,
        }

    async def update_rating(self, item_id: ObjectId, *, buyer: dict, rating: int, review: str | None = None) -> dict:
        item = await self._load_item(item_id)
        assert_item_buyer(item, buyer)

        if not item.get("buyer_confirmed"):
            raise HTTPException(409, "You must confirm delivery before rating")

        fields = {"buyer_rating": rating, "updated_at": datetime.utcnow()}
        if review is not None:
            fields["buyer_review"] = review

        updated = await self.db.order_items.find_one_and_update(
            {"_id": item_id},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )
        return {"success": True, "message": "Rating updated successfully", "item": updated}

    # --------------------------------------------------
    # Payment side effect
    # --------------------------------------------------

    async def _pay_or_queue(self, item_id: ObjectId, actor: dict) -> dict:
        if not self.auto_payments_enabled:
            await self.db.order_items.update_one(
                {
                    "_id": item_id,
                    "disbursement_status": {"$in": [None, DisbursementStatus.NONE.value]},
                },
                {"$set": {"disbursement_status": DisbursementStatus.PENDING.value}},
            )
            logger.info("DISBURSEMENT_QUEUED item=%s auto payments disabled", item_id)
            return {"success": True, "code": "queued", "message": "Payment queued for manual processing"}

        try:
            return await initiate_disbursement(
                self.db,
                item_id,
                actor_role=actor.get("role", "system"),
                actor_id=actor.get("_id"),
            )
        except HTTPException as e:
            return {"success": False, "code": "failed", "error": e.detail}
        except Exception as e:
            logger.exception("DISBURSEMENT_TRIGGER_ERROR item=%s", item_id)
            return {"success": False, "code": "failed", "error": str(e) or "Failed to process payment"}

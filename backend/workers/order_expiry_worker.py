import asyncio
import logging
from datetime import datetime, timedelta

from config.env import STALE_ORDER_MINUTES
from database import get_db
from models.order import CollectionStatus, FulfillmentStatus
from utils.order_timeline import record_order_event

CHECK_INTERVAL_SECONDS = 60 * 5  # every 5 minutes
STALE_CANCEL_REASON = "STALE_PENDING_ORDER"
logger = logging.getLogger(__name__)

UNPAID_COLLECTION_STATUSES = [
    CollectionStatus.PENDING.value,
    CollectionStatus.PROCESSING.value,
    CollectionStatus.FAILED.value,
]


async def cancel_stale_orders(db, *, buyer_id=None, product_ids=None, now: datetime | None = None) -> int:
    """
    Cancel unpaid orders older than STALE_ORDER_MINUTES, optionally only
    those of one buyer that contain any of the given products.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=STALE_ORDER_MINUTES)

    query = {
        "collection_status": {"$in": UNPAID_COLLECTION_STATUSES},
        "created_at": {"$lte": cutoff},
    }
    if buyer_id is not None:
        query["buyer_id"] = buyer_id
    if product_ids:
        order_ids = await db.order_items.distinct(
            "order_id",
            {"product_id": {"$in": list(product_ids)}, "status": FulfillmentStatus.PENDING_PAYMENT.value},
        )
        if not order_ids:
            return 0
        query["_id"] = {"$in": order_ids}

    cancelled = 0
    async for order in db.orders.find(query):
        try:
            result = await db.orders.update_one(
                {"_id": order["_id"], "collection_status": {"$in": UNPAID_COLLECTION_STATUSES}},
                {
                    "$set": {
                        "collection_status": CollectionStatus.CANCELLED.value,
                        "cancel_reason": STALE_CANCEL_REASON,
                        "cancelled_at": now,
                        "updated_at": now,
                    }
                },
            )
            if not result.modified_count:
                continue

            await db.order_items.update_many(
                {"order_id": order["_id"], "status": FulfillmentStatus.PENDING_PAYMENT.value},
                {
                    "$set": {
                        "status": FulfillmentStatus.CANCELLED.value,
                        "cancel_reason": STALE_CANCEL_REASON,
                        "cancelled_at": now,
                        "updated_at": now,
                    }
                },
            )

            await record_order_event(
                db,
                order_id=order["_id"],
                event="ORDER_PAYMENT_TIMEOUT",
                actor_role="system",
            )
            cancelled += 1

        except Exception:
            logger.exception("ORDER_EXPIRY_ERROR order=%s", order["_id"])

    if cancelled:
        logger.info("STALE_ORDERS_CANCELLED count=%s", cancelled)
    return cancelled


async def order_expiry_worker():
    db = get_db()

    while True:
        try:
            await cancel_stale_orders(db)
        except Exception:
            logger.exception("ORDER_EXPIRY_WORKER_ERROR")

        await asyncio.sleep(CHECK_INTERVAL_SECONDS)

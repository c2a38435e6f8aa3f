import logging
from datetime import datetime

logger = logging.getLogger(__name__)

EVENT_ORDER_PLACED = "ORDER_PLACED"
EVENT_ITEM_DELIVERED = "ITEM_DELIVERED"
EVENT_DELIVERY_CONFIRMED = "DELIVERY_CONFIRMED"


async def notify(db, *, user_id, event: str, payload: dict | None = None) -> bool:
    """
    Queue a notification for the email/SMS dispatcher. Fire-and-forget:
    a failure here is logged and never propagated.
    """
    try:
        await db.notification_outbox.insert_one({
            "user_id": user_id,
            "event": event,
            "payload": payload or {},
            "status": "queued",
            "attempts": 0,
            "created_at": datetime.utcnow(),
        })
        return True
    except Exception:
        logger.exception("NOTIFICATION_QUEUE_ERROR user=%s event=%s", user_id, event)
        return False

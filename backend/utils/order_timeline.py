import logging
from datetime import datetime

from bson import ObjectId

logger = logging.getLogger(__name__)


def _oid(value):
    if value is None or isinstance(value, ObjectId):
        return value
    return ObjectId(value)


async def record_order_event(
    db,
    *,
    order_id,
    event: str,
    actor_role: str,
    actor_id=None,
    order_item_id=None,
    metadata: dict | None = None,
):
    """
    Single source of truth for order timeline events.
    Timeline writes never break the flow that records them.
    """

    doc = {
        "order_id": _oid(order_id),
        "order_item_id": _oid(order_item_id),
        "event": event,
        "actor_role": actor_role,
        "actor_id": _oid(actor_id),
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    }

    try:
        await db.order_timeline.insert_one(doc)
    except Exception:
        logger.exception("TIMELINE_ERROR order=%s event=%s", order_id, event)

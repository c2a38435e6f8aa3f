import asyncio
import json
import logging
from datetime import datetime
from urllib import request, error

from config.env import COURIER_API_URL, COURIER_API_KEY
from models.order import DeliveryMethod
from utils.order_timeline import record_order_event

logger = logging.getLogger(__name__)


class CourierError(Exception):
    pass


def create_parcel(payload: dict) -> dict:
    if not COURIER_API_URL or not COURIER_API_KEY:
        raise CourierError("Courier integration is not configured")

    req = request.Request(
        url=f"{COURIER_API_URL.rstrip('/')}/parcels",
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {COURIER_API_KEY}",
        },
        method="POST",
    )
    try:
        with request.urlopen(req, timeout=30) as resp:
            body = json.loads(resp.read().decode("utf-8"))
    except error.HTTPError as e:
        raise CourierError(e.read().decode("utf-8", errors="ignore"))
    except Exception as e:
        raise CourierError(str(e))

    parcel = body.get("data") or body
    tracking_code = parcel.get("tracking_code") or parcel.get("code")
    if not tracking_code:
        raise CourierError("Courier response missing tracking code")
    return {"tracking_code": tracking_code, "parcel_id": parcel.get("id")}


async def book_parcel_for_order(db, order: dict) -> dict | None:
    """
    Book a pickup-point parcel for a paid order. Non-fatal: the payment is
    never rolled back because parcel creation failed.
    """
    delivery = order.get("delivery") or {}
    if delivery.get("method") != DeliveryMethod.PICKUP_POINT.value:
        return None

    payload = {
        "reference_number": str(order["_id"]),
        "recipient_name": delivery.get("recipient_name"),
        "recipient_phone": order.get("phone_number"),
        "destination_shop_id": delivery.get("pickup_point_id"),
        "item_value": order.get("total_amount"),
        "payment_method": "prepaid",
    }

    try:
        parcel = await asyncio.to_thread(create_parcel, payload)
    except CourierError as e:
        logger.warning("PARCEL_CREATE_FAILED order=%s reason=%s", order["_id"], e)
        await db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"tracking.error": str(e), "updated_at": datetime.utcnow()}},
        )
        return None

    await db.orders.update_one(
        {"_id": order["_id"]},
        {
            "$set": {
                "tracking.tracking_code": parcel["tracking_code"],
                "tracking.parcel_id": parcel["parcel_id"],
                "tracking.created_at": datetime.utcnow(),
            }
        },
    )
    await record_order_event(
        db,
        order_id=order["_id"],
        event="PARCEL_BOOKED",
        actor_role="system",
        metadata={"tracking_code": parcel["tracking_code"]},
    )
    return parcel

from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from fastapi import HTTPException

from models.order import CollectionStatus, FulfillmentStatus
from utils.courier import CourierError, book_parcel_for_order
from utils.idempotency import (
    IN_PROGRESS_RESPONSE,
    complete_idempotency_key,
    fail_idempotency_key,
    reserve_idempotency_key,
)
from utils.mpesa import parse_gateway_date, to_gateway_amount
from utils.notifications import notify
from utils.rate_limit import rate_limit
from workers.order_expiry_worker import STALE_CANCEL_REASON, cancel_stale_orders


# ======================================================
# IDEMPOTENCY KEYS
# ======================================================

async def test_completed_key_returns_stored_response(db):
    assert await reserve_idempotency_key(db=db, key="k1", scope="checkout") is None
    await complete_idempotency_key(db=db, key="k1", scope="checkout", response={"order_id": "abc"})

    assert await reserve_idempotency_key(db=db, key="k1", scope="checkout") == {"order_id": "abc"}


async def test_reserved_key_reports_in_progress(db):
    await reserve_idempotency_key(db=db, key="k2", scope="checkout")

    assert await reserve_idempotency_key(db=db, key="k2", scope="checkout") == IN_PROGRESS_RESPONSE


async def test_failed_key_can_be_retried(db):
    await reserve_idempotency_key(db=db, key="k3", scope="checkout")
    await fail_idempotency_key(db=db, key="k3", scope="checkout", error="boom")

    assert await reserve_idempotency_key(db=db, key="k3", scope="checkout") is None


# ======================================================
# RATE LIMIT
# ======================================================

async def test_rate_limit_blocks_after_max_requests(db):
    for _ in range(3):
        await rate_limit(db, "checkout:u1", max_requests=3, window_seconds=60)

    with pytest.raises(HTTPException) as exc:
        await rate_limit(db, "checkout:u1", max_requests=3, window_seconds=60)

    assert exc.value.status_code == 429


async def test_rate_limit_window_resets(db):
    await rate_limit(db, "checkout:u2", max_requests=1, window_seconds=60)
    await db.rate_limits.update_one(
        {"key": "checkout:u2"},
        {"$set": {"expires_at": datetime.utcnow() - timedelta(seconds=1)}},
    )

    await rate_limit(db, "checkout:u2", max_requests=1, window_seconds=60)

    record = await db.rate_limits.find_one({"key": "checkout:u2"})
    assert record["count"] == 1


# ======================================================
# GATEWAY HELPERS
# ======================================================

def test_gateway_amount_rounds_up_to_whole_shillings():
    assert to_gateway_amount(185) == 185
    assert to_gateway_amount(92.5) == 93
    assert to_gateway_amount(100.001) == 100


def test_gateway_date_parsing_falls_back_to_now():
    assert parse_gateway_date(20191219102115) == datetime(2019, 12, 19, 10, 21, 15)
    assert datetime.utcnow() - parse_gateway_date("garbage") < timedelta(seconds=5)


# ======================================================
# STALE ORDERS
# ======================================================

async def test_stale_unpaid_orders_are_cancelled(db, make_order, buyer, seller):
    old = datetime.utcnow() - timedelta(hours=2)
    stale, stale_items = await make_order(
        buyer,
        seller,
        collection_status=CollectionStatus.PROCESSING.value,
        item_status=FulfillmentStatus.PENDING_PAYMENT.value,
        created_at=old,
    )
    fresh, _ = await make_order(
        buyer,
        seller,
        collection_status=CollectionStatus.PENDING.value,
        item_status=FulfillmentStatus.PENDING_PAYMENT.value,
    )
    paid, _ = await make_order(buyer, seller, created_at=old)

    assert await cancel_stale_orders(db) == 1

    assert (await db.orders.find_one({"_id": stale["_id"]}))["cancel_reason"] == STALE_CANCEL_REASON
    assert (await db.orders.find_one({"_id": fresh["_id"]}))["collection_status"] == CollectionStatus.PENDING.value
    assert (await db.orders.find_one({"_id": paid["_id"]}))["collection_status"] == CollectionStatus.COMPLETED.value
    item = await db.order_items.find_one({"_id": stale_items[0]["_id"]})
    assert item["status"] == FulfillmentStatus.CANCELLED.value


async def test_stale_cancel_can_be_scoped_to_products(db, make_order, buyer, seller):
    old = datetime.utcnow() - timedelta(hours=2)
    await make_order(
        buyer,
        seller,
        collection_status=CollectionStatus.PENDING.value,
        item_status=FulfillmentStatus.PENDING_PAYMENT.value,
        created_at=old,
    )

    assert await cancel_stale_orders(db, buyer_id=buyer["_id"], product_ids=[ObjectId()]) == 0


# ======================================================
# COLLABORATORS
# ======================================================

async def test_parcel_failure_is_recorded_not_raised(db, mocker, make_order, buyer, seller):
    order, _ = await make_order(buyer, seller)
    await db.orders.update_one({"_id": order["_id"]}, {"$set": {"delivery": {"method": "pickup_point"}}})
    mocker.patch("utils.courier.create_parcel", side_effect=CourierError("Courier integration is not configured"))

    result = await book_parcel_for_order(db, await db.orders.find_one({"_id": order["_id"]}))

    assert result is None
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["tracking"]["error"] == "Courier integration is not configured"


async def test_parcel_booked_for_pickup_point(db, mocker, make_order, buyer, seller):
    order, _ = await make_order(buyer, seller)
    order["delivery"] = {"method": "pickup_point", "pickup_point_id": "shop-12"}
    create = mocker.patch(
        "utils.courier.create_parcel",
        return_value={"tracking_code": "PM-123", "parcel_id": 99},
    )

    parcel = await book_parcel_for_order(db, order)

    assert parcel["tracking_code"] == "PM-123"
    assert create.call_args.args[0]["destination_shop_id"] == "shop-12"
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["tracking"]["tracking_code"] == "PM-123"


async def test_self_delivery_books_nothing(db, mocker, make_order, buyer, seller):
    order, _ = await make_order(buyer, seller)
    create = mocker.patch("utils.courier.create_parcel")

    assert await book_parcel_for_order(db, order) is None
    create.assert_not_called()


async def test_notification_failure_is_swallowed(mocker):
    broken = mocker.Mock()
    broken.notification_outbox.insert_one = mocker.AsyncMock(side_effect=RuntimeError("down"))

    assert await notify(broken, user_id="u1", event="ORDER_PLACED") is False

from datetime import datetime

import pytest
from bson import ObjectId
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from models.order import CollectionStatus, DisbursementStatus, FulfillmentStatus
from utils.security import get_current_user

ACK = {"ResultCode": 0, "ResultDesc": "Success"}


@pytest.fixture
async def api(db):
    current = {"user": None}
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_current_user] = lambda: current["user"]

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, current

    app.dependency_overrides.clear()


def stk_callback(checkout_id, result_code=0):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": checkout_id,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully.",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": 215},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "TransactionDate", "Value": 20191219102115},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": callback}}


# ======================================================
# WEBHOOKS ALWAYS ACKNOWLEDGE
# ======================================================

async def test_unknown_stk_callback_is_acknowledged(api, db):
    client, _ = api

    response = await client.post("/api/mpesa/callback", json=stk_callback("ws_CO_missing"))

    assert response.status_code == 200
    assert response.json() == ACK
    assert await db.collections.count_documents({}) == 0
    assert await db.orders.count_documents({}) == 0


@pytest.mark.parametrize("body", [{}, {"Body": {"stkCallback": {"ResultCode": "abc"}}}, []])
async def test_malformed_stk_callback_is_acknowledged(api, body):
    client, _ = api

    response = await client.post("/api/mpesa/callback", json=body)

    assert response.status_code == 200
    assert response.json() == ACK


async def test_non_json_callback_is_acknowledged(api):
    client, _ = api

    response = await client.post("/api/mpesa/b2c/result", content=b"not json")

    assert response.json() == ACK


async def test_callback_with_wrong_token_is_ignored(api, db, monkeypatch, make_order, buyer, seller):
    client, _ = api
    monkeypatch.setattr("routes.mpesa.MPESA_CALLBACK_TOKEN", "s3cret")
    order, _ = await make_order(
        buyer,
        seller,
        collection_status=CollectionStatus.PROCESSING.value,
        item_status=FulfillmentStatus.PENDING_PAYMENT.value,
        checkout_request_id="ws_CO_1",
    )

    response = await client.post("/api/mpesa/callback?token=wrong", json=stk_callback("ws_CO_1"))

    assert response.json() == ACK
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["collection_status"] == CollectionStatus.PROCESSING.value


async def test_callback_with_token_completes_order(api, db, monkeypatch, make_order, buyer, seller):
    client, _ = api
    monkeypatch.setattr("routes.mpesa.MPESA_CALLBACK_TOKEN", "s3cret")
    order, items = await make_order(
        buyer,
        seller,
        collection_status=CollectionStatus.PROCESSING.value,
        item_status=FulfillmentStatus.PENDING_PAYMENT.value,
        checkout_request_id="ws_CO_1",
    )

    response = await client.post("/api/mpesa/callback?token=s3cret", json=stk_callback("ws_CO_1"))

    assert response.json() == ACK
    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["collection_status"] == CollectionStatus.COMPLETED.value
    item = await db.order_items.find_one({"_id": items[0]["_id"]})
    assert item["status"] == FulfillmentStatus.PROCESSING.value


async def test_b2c_timeout_route_marks_item_failed(api, db, mocker, b2c_response, make_order, buyer, seller):
    client, current = api
    mocker.patch("utils.disbursement_service.b2c_payment", return_value=b2c_response)
    _, items = await make_order(buyer, seller)
    current["user"] = seller

    triggered = await client.post(f"/api/orders/items/{items[0]['_id']}/trigger-payment")
    reference = triggered.json()["result"]["reference"]

    response = await client.post("/api/mpesa/b2c/timeout", json={"OriginatorConversationID": reference})

    assert response.json() == ACK
    item = await db.order_items.find_one({"_id": items[0]["_id"]})
    assert item["disbursement_status"] == DisbursementStatus.FAILED.value

    status = await client.get(f"/api/mpesa/b2c/status/{reference}")
    assert status.json()["status"] == "timeout"


# ======================================================
# COMMISSION QUOTE
# ======================================================

async def test_commission_quote(api):
    client, _ = api

    response = await client.post(
        "/api/mpesa/orders/calculate-commission",
        json={"price_per_unit": 100, "quantity": 2},
    )

    body = response.json()
    assert body["total_buyer_cost"] == 215
    assert body["total_seller_payout"] == 185


async def test_commission_quote_rejects_non_positive_price(api):
    client, _ = api

    response = await client.post("/api/mpesa/orders/calculate-commission", json={"price_per_unit": 0})

    assert response.status_code == 422


# ======================================================
# CHECKOUT
# ======================================================

@pytest.fixture
async def product(db, seller):
    doc = {"_id": ObjectId(), "seller_id": seller["_id"], "name": "Sneakers", "price": 100, "active": True}
    await db.products.insert_one(doc)
    return doc


async def test_checkout_creates_order_and_sends_stk(api, db, mocker, stk_response, buyer, product):
    client, current = api
    current["user"] = buyer
    stk = mocker.patch("utils.collection_service.stk_push", return_value=stk_response)
    body = {
        "items": [{"product_id": str(product["_id"]), "quantity": 2}],
        "phone_number": "0712345678",
        "idempotency_key": "checkout-0001",
    }

    first = await client.post("/api/orders/checkout", json=body)
    replay = await client.post("/api/orders/checkout", json=body)

    assert first.status_code == 200
    assert first.json()["total_amount"] == 215
    assert first.json()["payment"]["checkout_request_id"] == stk_response["CheckoutRequestID"]
    assert replay.json()["order_id"] == first.json()["order_id"]
    stk.assert_called_once()

    order = await db.orders.find_one({"_id": ObjectId(first.json()["order_id"])})
    assert order["collection_status"] == CollectionStatus.PROCESSING.value
    item = await db.order_items.find_one({"order_id": order["_id"]})
    assert item["status"] == FulfillmentStatus.PENDING_PAYMENT.value
    assert item["disbursement_status"] == DisbursementStatus.NONE.value


async def test_checkout_cancels_stale_pending_order_for_same_product(api, db, mocker, stk_response, buyer, product):
    client, current = api
    current["user"] = buyer
    mocker.patch("utils.collection_service.stk_push", return_value=stk_response)
    stale_id = ObjectId()
    await db.orders.insert_one({
        "_id": stale_id,
        "buyer_id": buyer["_id"],
        "collection_status": CollectionStatus.PROCESSING.value,
        "created_at": datetime(2020, 1, 1),
    })
    await db.order_items.insert_one({
        "order_id": stale_id,
        "product_id": product["_id"],
        "status": FulfillmentStatus.PENDING_PAYMENT.value,
    })

    response = await client.post("/api/orders/checkout", json={
        "items": [{"product_id": str(product["_id"]), "quantity": 1}],
        "phone_number": "0712345678",
        "idempotency_key": "checkout-0002",
    })

    assert response.status_code == 200
    stale = await db.orders.find_one({"_id": stale_id})
    assert stale["collection_status"] == CollectionStatus.CANCELLED.value
    assert stale["cancel_reason"] == "STALE_PENDING_ORDER"


async def test_checkout_requires_buyer_role(api, seller, product):
    client, current = api
    current["user"] = seller

    response = await client.post("/api/orders/checkout", json={
        "items": [{"product_id": str(product["_id"]), "quantity": 1}],
        "phone_number": "0712345678",
        "idempotency_key": "checkout-0003",
    })

    assert response.status_code == 403


# ======================================================
# BUYER / SELLER ENDPOINTS
# ======================================================

async def test_confirm_rejects_out_of_range_rating(api, make_order, buyer, seller):
    client, current = api
    current["user"] = buyer
    _, items = await make_order(buyer, seller)

    response = await client.post(f"/api/orders/items/{items[0]['_id']}/confirm", json={"rating": 6})

    assert response.status_code == 422


async def test_confirm_route_reports_payment_outcome(api, mocker, b2c_response, make_order, buyer, seller):
    client, current = api
    current["user"] = buyer
    mocker.patch("utils.disbursement_service.b2c_payment", return_value=b2c_response)
    _, items = await make_order(buyer, seller)

    response = await client.post(f"/api/orders/items/{items[0]['_id']}/confirm", json={"rating": 5})

    body = response.json()
    assert response.status_code == 200
    assert body["item"]["buyer_confirmed"] is True
    assert body["payment_result"]["success"] is True


async def test_seller_ratings_summary(api, db, seller):
    client, _ = api
    for rating in (5, 4, 5):
        await db.order_items.insert_one({
            "seller_id": seller["_id"],
            "buyer_confirmed": True,
            "buyer_rating": rating,
            "buyer_confirmed_at": datetime.utcnow(),
        })

    response = await client.get(f"/api/orders/sellers/{seller['_id']}/ratings")

    body = response.json()
    assert body["average_rating"] == 4.7
    assert body["total_reviews"] == 3
    assert body["rating_counts"] == {"5": 2, "4": 1, "3": 0, "2": 0, "1": 0}


async def test_seller_payment_history_totals(api, db, seller):
    client, current = api
    current["user"] = seller
    for status, amount in (("completed", 185), ("completed", 100), ("initiated", 50), ("timeout", 20)):
        await db.disbursements.insert_one({
            "seller_id": seller["_id"],
            "order_item_id": ObjectId(),
            "amount": amount,
            "status": status,
            "created_at": datetime.utcnow(),
        })

    response = await client.get("/api/orders/seller/payments")

    assert response.json()["totals"] == {"paid": 285, "pending": 50, "failed": 20}


async def test_order_details_hidden_from_other_buyers(api, make_order, buyer, seller):
    client, current = api
    order, _ = await make_order(buyer, seller)
    current["user"] = {"_id": ObjectId(), "role": "buyer"}

    response = await client.get(f"/api/orders/{order['_id']}")

    assert response.status_code == 403


# ======================================================
# ADMIN
# ======================================================

async def test_admin_sweep_and_report(api, mocker, b2c_response, make_order, buyer, seller, admin):
    client, current = api
    current["user"] = admin
    mocker.patch("utils.disbursement_service.b2c_payment", return_value=b2c_response)
    mocker.patch("workers.disbursement_sweeper.asyncio.sleep", new=mocker.AsyncMock())
    await make_order(buyer, seller, lines=((100, 2), (300, 1)))

    sweep = await client.post("/api/admin/disbursements/sweep")
    report = await client.get("/api/admin/disbursements/report")

    assert sweep.json()["successful"] == 2
    assert report.json()["summary"]["total_payments"] == 2
    assert report.json()["summary"]["pending_payments"] == 2


async def test_admin_routes_reject_sellers(api, seller):
    client, current = api
    current["user"] = seller

    response = await client.post("/api/admin/disbursements/sweep")

    assert response.status_code == 403

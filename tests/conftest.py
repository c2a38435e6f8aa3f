import os

os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/marketplace_test")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["MPESA_CALLBACK_TOKEN"] = ""

from datetime import datetime, timedelta

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

from models.order import CollectionStatus, DisbursementStatus, FulfillmentStatus


@pytest.fixture
def db():
    return AsyncMongoMockClient()["marketplace_test"]


@pytest.fixture
async def buyer(db):
    user = {"_id": ObjectId(), "role": "buyer", "name": "Amina", "phone": "0712345678"}
    await db.users.insert_one(user)
    return user


@pytest.fixture
async def seller(db):
    user = {
        "_id": ObjectId(),
        "role": "seller",
        "name": "Campus Kicks",
        "email": "kicks@example.com",
        "phone": "0798765432",
    }
    await db.users.insert_one(user)
    return user


@pytest.fixture
async def admin(db):
    user = {"_id": ObjectId(), "role": "admin", "name": "Ops"}
    await db.users.insert_one(user)
    return user


@pytest.fixture
def stk_response():
    return {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResponseCode": "0",
        "ResponseDescription": "Success. Request accepted for processing",
        "CustomerMessage": "Success. Request accepted for processing",
    }


@pytest.fixture
def b2c_response():
    return {
        "ConversationID": "AG_20191219_00005797af5d7d75f652",
        "ResponseCode": "0",
        "ResponseDescription": "Accept the service request successfully.",
    }


@pytest.fixture
def make_order(db):
    """
    Insert an order with one item per (price, quantity) line.
    Returns (order, items).
    """

    async def _make(
        buyer,
        seller,
        *,
        lines=((100, 2),),
        collection_status=CollectionStatus.COMPLETED.value,
        item_status=FulfillmentStatus.DELIVERED.value,
        disbursement_status=DisbursementStatus.NONE.value,
        checkout_request_id=None,
        created_at=None,
    ):
        now = created_at or datetime.utcnow()
        order = {
            "_id": ObjectId(),
            "buyer_id": buyer["_id"],
            "total_amount": sum(p * q for p, q in lines),
            "collection_status": collection_status,
            "checkout_request_id": checkout_request_id,
            "phone_number": "254712345678",
            "delivery": {"method": "self_delivery"},
            "created_at": now,
            "updated_at": now,
        }
        await db.orders.insert_one(order)

        items = []
        for offset, (price, quantity) in enumerate(lines):
            item = {
                "_id": ObjectId(),
                "order_id": order["_id"],
                "buyer_id": buyer["_id"],
                "seller_id": seller["_id"],
                "product_id": ObjectId(),
                "product_name": "Sneakers",
                "quantity": quantity,
                "unit_price": price,
                "subtotal": price * quantity,
                "status": item_status,
                "disbursement_status": disbursement_status,
                "buyer_confirmed": False,
                "created_at": now + timedelta(seconds=offset),
                "updated_at": now,
            }
            await db.order_items.insert_one(item)
            items.append(item)
        return order, items

    return _make

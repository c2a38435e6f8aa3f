import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo import DESCENDING

from config.constants import CHECKOUT_MAX_REQUESTS, CHECKOUT_WINDOW_SECONDS
from config.env import AUTO_PAYMENTS_ENABLED
from database import get_db
from models.order import (
    CheckoutRequest,
    CollectionStatus,
    ConfirmDelivery,
    DisbursementStatus,
    FulfillmentStatus,
    ItemStatusUpdate,
    PayoutStatus,
    RatingUpdate,
)
from utils.collection_service import initiate_collection
from utils.commission import calculate_item_commission
from utils.disbursement_service import initiate_disbursement
from utils.guards import assert_item_seller, parse_object_id
from utils.idempotency import (
    reserve_idempotency_key,
    complete_idempotency_key,
    fail_idempotency_key,
)
from utils.ledger import get_item_disbursements, get_order, get_order_item, get_order_items
from utils.order_state import OrderStateMachine
from utils.order_timeline import record_order_event
from utils.rate_limit import rate_limit
from utils.security import require_role
from utils.serializers import serialize_disbursement, serialize_doc, serialize_docs
from utils.validators import normalize_phone
from workers.order_expiry_worker import cancel_stale_orders

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/orders",
    tags=["Orders"]
)


def get_state_machine(db=Depends(get_db)) -> OrderStateMachine:
    return OrderStateMachine(db, auto_payments_enabled=AUTO_PAYMENTS_ENABLED)


# ======================================================
# CHECKOUT (BUYER)
# ======================================================

@router.post("/checkout")
async def checkout(
    data: CheckoutRequest,
    buyer=Depends(require_role("buyer")),
    db=Depends(get_db),
):
    await rate_limit(
        db=db,
        key=f"checkout:{buyer['_id']}",
        max_requests=CHECKOUT_MAX_REQUESTS,
        window_seconds=CHECKOUT_WINDOW_SECONDS,
    )

    idempotency_key = f"{buyer['_id']}:{data.idempotency_key}"
    existing_response = await reserve_idempotency_key(
        db=db,
        key=idempotency_key,
        scope="checkout",
    )
    if existing_response:
        return existing_response

    try:
        try:
            phone = normalize_phone(data.phone_number)
        except ValueError as e:
            raise HTTPException(400, str(e))

        quantities = {}
        for line in data.items:
            product_oid = parse_object_id(line.product_id, "product_id")
            quantities[product_oid] = quantities.get(product_oid, 0) + line.quantity

        products = {}
        async for product in db.products.find({"_id": {"$in": list(quantities)}}):
            products[product["_id"]] = product

        for product_oid in quantities:
            product = products.get(product_oid)
            if not product or product.get("active") is False:
                raise HTTPException(404, f"Product not found: {product_oid}")
            if not product.get("price") or product["price"] <= 0:
                raise HTTPException(400, "Product price not configured")
            if product.get("seller_id") == buyer["_id"]:
                raise HTTPException(400, "You cannot buy your own product")

        await cancel_stale_orders(db, buyer_id=buyer["_id"], product_ids=list(quantities))

        now = datetime.utcnow()
        lines = []
        for product_oid, quantity in quantities.items():
            product = products[product_oid]
            commission = calculate_item_commission(product["price"], quantity)
            lines.append((product, quantity, commission))

        total_amount = round(sum(c["total_buyer_cost"] for _, _, c in lines), 2)
        order = {
            "buyer_id": buyer["_id"],
            "subtotal": round(sum(c["total_product_price"] for _, _, c in lines), 2),
            "buyer_fees": round(sum(c["total_buyer_fee"] for _, _, c in lines), 2),
            "platform_fees": round(sum(c["total_platform_fee"] for _, _, c in lines), 2),
            "total_amount": total_amount,
            "collection_status": CollectionStatus.PENDING.value,
            "checkout_request_id": None,
            "receipt_number": None,
            "phone_number": phone,
            "delivery": data.delivery.model_dump(mode="json"),
            "created_at": now,
            "updated_at": now,
        }
        await db.orders.insert_one(order)

        items = []
        for product, quantity, commission in lines:
            items.append({
                "order_id": order["_id"],
                "buyer_id": buyer["_id"],
                "seller_id": product["seller_id"],
                "product_id": product["_id"],
                "product_name": product.get("name"),
                "quantity": quantity,
                "unit_price": commission["product_price"],
                "subtotal": commission["total_product_price"],
                "commission": {
                    "buyer_fee": commission["total_buyer_fee"],
                    "seller_fee": commission["total_seller_fee"],
                    "platform_fee": commission["total_platform_fee"],
                    "seller_payout": commission["total_seller_payout"],
                },
                "status": FulfillmentStatus.PENDING_PAYMENT.value,
                "disbursement_status": DisbursementStatus.NONE.value,
                "buyer_confirmed": False,
                "created_at": now,
                "updated_at": now,
            })
        await db.order_items.insert_many(items)

        await record_order_event(
            db,
            order_id=order["_id"],
            event="ORDER_CREATED",
            actor_role="buyer",
            actor_id=buyer["_id"],
            metadata={"total_amount": total_amount, "items": len(items)},
        )

        response = {
            "message": "Order created successfully",
            "order_id": str(order["_id"]),
            "total_amount": total_amount,
            "item_ids": [str(item["_id"]) for item in items],
        }

        try:
            response["payment"] = await initiate_collection(db, order=order, phone_number=phone)
        except HTTPException as e:
            # The order stays pending; the buyer can re-send the STK push.
            logger.warning("CHECKOUT_STK_FAILED order=%s reason=%s", order["_id"], e.detail)
            response["payment"] = {"success": False, "error": e.detail}

        await complete_idempotency_key(
            db=db,
            key=idempotency_key,
            scope="checkout",
            response=response,
        )
        return response
    except Exception as e:
        await fail_idempotency_key(
            db=db,
            key=idempotency_key,
            scope="checkout",
            error=str(getattr(e, "detail", e)),
        )
        raise


# ======================================================
# SELLER: FULFILLMENT
# ======================================================

@router.put("/items/{item_id}/status")
async def update_item_status(
    item_id: str,
    data: ItemStatusUpdate,
    seller=Depends(require_role("seller", "admin")),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    item_oid = parse_object_id(item_id, "item_id")
    result = await machine.update_item_status(item_oid, data.status.value, actor=seller)
    return serialize_doc(result)


@router.post("/items/{item_id}/trigger-payment")
async def trigger_item_payment(
    item_id: str,
    user=Depends(require_role("seller", "admin")),
    db=Depends(get_db),
):
    item_oid = parse_object_id(item_id, "item_id")
    item = await get_order_item(db, item_oid)
    if not item:
        raise HTTPException(404, "Order item not found")
    assert_item_seller(item, user)

    result = await initiate_disbursement(db, item_oid, actor_role=user.get("role"), actor_id=user["_id"])
    return serialize_doc({
        "success": result["success"],
        "message": "Payment processing initiated" if result["success"] else "Payment processing failed",
        "result": result,
    })


@router.get("/items/{item_id}/payment")
async def item_payment_details(
    item_id: str,
    user=Depends(require_role("seller", "admin")),
    db=Depends(get_db),
):
    item_oid = parse_object_id(item_id, "item_id")
    item = await get_order_item(db, item_oid)
    if not item:
        raise HTTPException(404, "Order item not found")
    assert_item_seller(item, user)

    payments = await get_item_disbursements(db, item_oid)
    return {
        "order_item": serialize_doc(item),
        "payments": [serialize_disbursement(p) for p in payments],
    }


# ======================================================
# BUYER: CONFIRMATION & RATING
# ======================================================

@router.post("/items/{item_id}/confirm")
async def confirm_delivery(
    item_id: str,
    data: ConfirmDelivery,
    buyer=Depends(require_role("buyer")),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    item_oid = parse_object_id(item_id, "item_id")
    result = await machine.confirm_delivery(item_oid, buyer=buyer, rating=data.rating, review=data.review)
    return serialize_doc(result)


@router.put("/items/{item_id}/rating")
async def update_rating(
    item_id: str,
    data: RatingUpdate,
    buyer=Depends(require_role("buyer")),
    machine: OrderStateMachine = Depends(get_state_machine),
):
    item_oid = parse_object_id(item_id, "item_id")
    result = await machine.update_rating(item_oid, buyer=buyer, rating=data.rating, review=data.review)
    return serialize_doc(result)


# ======================================================
# LISTINGS
# ======================================================

@router.get("/my")
async def buyer_orders(
    status: CollectionStatus | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    buyer=Depends(require_role("buyer")),
    db=Depends(get_db),
):
    query = {"buyer_id": buyer["_id"]}
    if status:
        query["collection_status"] = status.value

    orders = await db.orders.find(query).sort("created_at", DESCENDING).to_list(limit)
    items = await db.order_items.find(
        {"order_id": {"$in": [o["_id"] for o in orders]}}
    ).to_list(None)

    by_order = {}
    for item in items:
        by_order.setdefault(item["order_id"], []).append(serialize_doc(item))

    out = []
    for order in orders:
        doc = serialize_doc(order)
        doc["items"] = by_order.get(order["_id"], [])
        out.append(doc)
    return {"orders": out}


@router.get("/seller")
async def seller_orders(
    status: FulfillmentStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    query = {"seller_id": seller["_id"]}
    if status:
        query["status"] = status.value

    items = await db.order_items.find(query).sort("created_at", DESCENDING).to_list(limit)
    orders = {}
    if items:
        async for order in db.orders.find({"_id": {"$in": list({i["order_id"] for i in items})}}):
            orders[order["_id"]] = order

    out = []
    for item in items:
        doc = serialize_doc(item)
        order = orders.get(item["order_id"]) or {}
        doc["order"] = {
            "collection_status": order.get("collection_status"),
            "delivery": order.get("delivery"),
            "created_at": order.get("created_at").isoformat() if order.get("created_at") else None,
        }
        out.append(doc)
    return {"items": out}


@router.get("/seller/payments")
async def seller_payments(
    limit: int = Query(100, ge=1, le=500),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    payments = await db.disbursements.find(
        {"seller_id": seller["_id"]}
    ).sort("created_at", DESCENDING).to_list(limit)

    def total(statuses):
        return round(sum(p.get("amount") or 0 for p in payments if p.get("status") in statuses), 2)

    return {
        "payments": [serialize_disbursement(p) for p in payments],
        "totals": {
            "paid": total({PayoutStatus.COMPLETED.value}),
            "pending": total({PayoutStatus.INITIATED.value}),
            "failed": total({PayoutStatus.FAILED.value, PayoutStatus.TIMEOUT.value}),
        },
    }


@router.get("/sellers/{seller_id}/ratings")
async def seller_ratings(seller_id: str, db=Depends(get_db)):
    seller_oid = parse_object_id(seller_id, "seller_id")

    items = await db.order_items.find({
        "seller_id": seller_oid,
        "buyer_confirmed": True,
        "buyer_rating": {"$ne": None},
    }).sort("buyer_confirmed_at", DESCENDING).to_list(None)

    ratings = [i["buyer_rating"] for i in items]
    average = round(sum(ratings) / len(ratings), 1) if ratings else 0

    return {
        "average_rating": average,
        "total_reviews": len(ratings),
        "rating_counts": {str(star): ratings.count(star) for star in range(5, 0, -1)},
        "reviews": [
            {
                "order_item_id": str(i["_id"]),
                "product_name": i.get("product_name"),
                "rating": i["buyer_rating"],
                "review": i.get("buyer_review"),
                "confirmed_at": i["buyer_confirmed_at"].isoformat() if i.get("buyer_confirmed_at") else None,
            }
            for i in items
        ],
    }


# ======================================================
# ORDER DETAILS
# ======================================================

@router.get("/{order_id}")
async def order_details(
    order_id: str,
    user=Depends(require_role("buyer", "seller", "admin")),
    db=Depends(get_db),
):
    order_oid = parse_object_id(order_id, "order_id")
    order = await get_order(db, order_oid)
    if not order:
        raise HTTPException(404, "Order not found")

    items = await get_order_items(db, order_oid)
    role = user.get("role")
    if role == "seller":
        items = [i for i in items if i.get("seller_id") == user["_id"]]
        if not items:
            raise HTTPException(403, "You are not authorized to view this order")
    elif role == "buyer" and order.get("buyer_id") != user["_id"]:
        raise HTTPException(403, "You are not authorized to view this order")

    payments = await db.disbursements.find(
        {"order_item_id": {"$in": [i["_id"] for i in items]}}
    ).sort("created_at", DESCENDING).to_list(None)

    return {
        "order": serialize_doc(order),
        "items": serialize_docs(items),
        "payments": [serialize_disbursement(p) for p in payments],
    }

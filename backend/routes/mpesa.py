import hmac
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from config.constants import CHECKOUT_MAX_REQUESTS, CHECKOUT_WINDOW_SECONDS, MPESA_ACK
from config.env import MPESA_CALLBACK_TOKEN
from database import get_db
from models.mpesa import parse_b2c_result, parse_b2c_timeout, parse_stk_callback
from models.order import CommissionQuery, StkPushRequest
from utils.collection_service import (
    get_collection_status,
    handle_collection_callback,
    initiate_collection,
)
from utils.commission import calculate_item_commission
from utils.disbursement_service import (
    get_disbursement_status,
    handle_disbursement_result,
    handle_disbursement_timeout,
)
from utils.guards import assert_item_seller, parse_object_id
from utils.ledger import get_order
from utils.rate_limit import rate_limit
from utils.security import require_role
from utils.serializers import serialize_disbursement

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/mpesa", tags=["M-Pesa"])


# =========================================================
# CALLBACK PLUMBING
# =========================================================

def callback_token_valid(request: Request) -> bool:
    if not MPESA_CALLBACK_TOKEN:
        return True
    received = request.query_params.get("token") or ""
    return hmac.compare_digest(received, MPESA_CALLBACK_TOKEN)


async def _read_callback(request: Request, tag: str):
    """
    Returns the JSON body, or None when the callback must be acknowledged
    and ignored. The gateway retries anything that is not an ack.
    """
    if not callback_token_valid(request):
        logger.warning("%s_BAD_TOKEN ip=%s", tag, request.client.host if request.client else None)
        return None
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("%s_INVALID_JSON", tag)
        return None
    if not isinstance(payload, dict):
        logger.warning("%s_UNEXPECTED_BODY type=%s", tag, type(payload).__name__)
        return None
    return payload


# =========================================================
# COLLECTIONS (STK PUSH)
# =========================================================

@router.post("/stkpush")
async def stk_push(
    data: StkPushRequest,
    buyer=Depends(require_role("buyer")),
    db=Depends(get_db),
):
    await rate_limit(
        db=db,
        key=f"stkpush:{buyer['_id']}",
        max_requests=CHECKOUT_MAX_REQUESTS,
        window_seconds=CHECKOUT_WINDOW_SECONDS,
    )

    order = await get_order(db, parse_object_id(data.order_id, "order_id"))
    if not order or order.get("buyer_id") != buyer["_id"]:
        raise HTTPException(404, "Order not found")

    return await initiate_collection(db, order=order, phone_number=data.phone_number)


@router.post("/callback")
async def stk_callback(request: Request, db=Depends(get_db)):
    payload = await _read_callback(request, "STK_CALLBACK")
    if payload is None:
        return MPESA_ACK

    try:
        callback = parse_stk_callback(payload)
    except ValidationError as e:
        logger.warning("STK_CALLBACK_MALFORMED errors=%s", e.error_count())
        return MPESA_ACK

    try:
        await handle_collection_callback(db, callback)
    except Exception:
        logger.exception("STK_CALLBACK_ERROR checkout=%s", callback.checkout_request_id)

    return MPESA_ACK


@router.get("/status/{checkout_request_id}")
async def collection_status(
    checkout_request_id: str,
    user=Depends(require_role("buyer", "admin")),
    db=Depends(get_db),
):
    return await get_collection_status(db, checkout_request_id, user=user)


# =========================================================
# DISBURSEMENTS (B2C)
# =========================================================

@router.post("/b2c/result")
async def b2c_result(request: Request, db=Depends(get_db)):
    payload = await _read_callback(request, "B2C_RESULT")
    if payload is None:
        return MPESA_ACK

    try:
        result = parse_b2c_result(payload)
    except ValidationError as e:
        logger.warning("B2C_RESULT_MALFORMED errors=%s", e.error_count())
        return MPESA_ACK

    try:
        await handle_disbursement_result(db, result)
    except Exception:
        logger.exception("B2C_RESULT_ERROR originator=%s", result.originator_conversation_id)

    return MPESA_ACK


@router.post("/b2c/timeout")
async def b2c_timeout(request: Request, db=Depends(get_db)):
    payload = await _read_callback(request, "B2C_TIMEOUT")
    if payload is None:
        return MPESA_ACK

    try:
        timeout = parse_b2c_timeout(payload)
    except ValidationError as e:
        logger.warning("B2C_TIMEOUT_MALFORMED errors=%s", e.error_count())
        return MPESA_ACK

    try:
        await handle_disbursement_timeout(db, timeout)
    except Exception:
        logger.exception("B2C_TIMEOUT_ERROR originator=%s", timeout.originator_conversation_id)

    return MPESA_ACK


@router.get("/b2c/status/{reference}")
async def b2c_status(
    reference: str,
    user=Depends(require_role("seller", "admin")),
    db=Depends(get_db),
):
    payment = await get_disbursement_status(db, reference)
    assert_item_seller(payment, user)
    return serialize_disbursement(payment)


# =========================================================
# COMMISSION QUOTE
# =========================================================

@router.post("/orders/calculate-commission")
async def calculate_commission_quote(data: CommissionQuery):
    return calculate_item_commission(data.price_per_unit, data.quantity)

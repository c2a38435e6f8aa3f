import asyncio
from datetime import datetime

import pytest
from bson import ObjectId
from fastapi import HTTPException

from models.mpesa import parse_b2c_result, parse_b2c_timeout
from models.order import CollectionStatus, DisbursementStatus, FulfillmentStatus, PayoutStatus
from utils.disbursement_service import (
    get_disbursement_status,
    handle_disbursement_result,
    handle_disbursement_timeout,
    initiate_disbursement,
)
from utils.ledger import claim_item_for_disbursement


def b2c_result_payload(reference, result_code=0):
    result = {
        "ResultType": 0,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully." if result_code == 0
        else "The initiator information is invalid.",
        "OriginatorConversationID": reference,
        "ConversationID": "AG_20191219_00005797af5d7d75f652",
        "TransactionID": "NLJ41HAY6Q",
    }
    if result_code == 0:
        result["ResultParameters"] = {
            "ResultParameter": [
                {"Key": "TransactionAmount", "Value": 185},
                {"Key": "TransactionReceipt", "Value": "NLJ41HAY6Q"},
                {"Key": "ReceiverPartyPublicName", "Value": "254798765432 - Campus Kicks"},
                {"Key": "TransactionCompletedDateTime", "Value": "19.12.2019 11:45:50"},
                {"Key": "B2CRecipientIsRegisteredCustomer", "Value": "Y"},
            ]
        }
    return {"Result": result}


@pytest.fixture
def b2c_mock(mocker, b2c_response):
    return mocker.patch("utils.disbursement_service.b2c_payment", return_value=b2c_response)


@pytest.fixture
async def delivered_item(make_order, buyer, seller):
    _, items = await make_order(buyer, seller)
    return items[0]


# ======================================================
# INITIATE
# ======================================================

async def test_initiate_pays_seller_share_and_snapshots_commission(db, b2c_mock, delivered_item):
    result = await initiate_disbursement(db, delivered_item["_id"])

    assert result["success"] is True
    assert result["amount"] == 185
    b2c_mock.assert_called_once()
    kwargs = b2c_mock.call_args.kwargs
    assert kwargs["phone"] == "254798765432"
    assert kwargs["amount"] == 185
    assert kwargs["originator_id"].startswith(f"B2C_{delivered_item['order_id']}_")

    item = await db.order_items.find_one({"_id": delivered_item["_id"]})
    assert item["disbursement_status"] == DisbursementStatus.PROCESSING.value
    assert item["payment_reference"] == result["reference"]

    payment = await db.disbursements.find_one({"reference": result["reference"]})
    assert payment["status"] == PayoutStatus.INITIATED.value
    assert payment["conversation_id"] == "AG_20191219_00005797af5d7d75f652"
    assert payment["commission"]["platform_fee"] == 30
    assert payment["commission"]["gross_product_price"] == 200


@pytest.mark.parametrize("status", [DisbursementStatus.COMPLETED.value, DisbursementStatus.PROCESSING.value])
async def test_already_processed_item_makes_no_gateway_call(db, b2c_mock, make_order, buyer, seller, status):
    _, items = await make_order(buyer, seller, disbursement_status=status)

    result = await initiate_disbursement(db, items[0]["_id"])

    assert result["success"] is False
    assert result["code"] == "already_processed"
    b2c_mock.assert_not_called()
    assert await db.disbursements.count_documents({}) == 0


async def test_unpaid_order_is_not_disbursed(db, b2c_mock, make_order, buyer, seller):
    _, items = await make_order(buyer, seller, collection_status=CollectionStatus.PROCESSING.value)

    result = await initiate_disbursement(db, items[0]["_id"])

    assert result["code"] == "not_paid"
    b2c_mock.assert_not_called()


async def test_undelivered_item_is_not_disbursed(db, b2c_mock, make_order, buyer, seller):
    _, items = await make_order(buyer, seller, item_status=FulfillmentStatus.SHIPPED.value)

    result = await initiate_disbursement(db, items[0]["_id"])

    assert result["code"] == "not_delivered"
    b2c_mock.assert_not_called()


async def test_unknown_item_is_not_found(db, b2c_mock):
    with pytest.raises(HTTPException) as exc:
        await initiate_disbursement(db, ObjectId())

    assert exc.value.status_code == 404


async def test_concurrent_triggers_reach_gateway_once(db, b2c_mock, delivered_item):
    first, second = await asyncio.gather(
        initiate_disbursement(db, delivered_item["_id"]),
        initiate_disbursement(db, delivered_item["_id"]),
    )

    assert b2c_mock.call_count == 1
    assert sorted([first["success"], second["success"]]) == [False, True]
    loser = first if not first["success"] else second
    assert loser["code"] == "already_processed"
    assert await db.disbursements.count_documents({}) == 1


async def test_claim_is_compare_and_swap(db, delivered_item):
    assert await claim_item_for_disbursement(db, delivered_item["_id"]) is not None
    assert await claim_item_for_disbursement(db, delivered_item["_id"]) is None


async def test_missing_seller_phone_releases_claim(db, b2c_mock, delivered_item, seller):
    await db.users.update_one({"_id": seller["_id"]}, {"$unset": {"phone": ""}})

    with pytest.raises(HTTPException) as exc:
        await initiate_disbursement(db, delivered_item["_id"])

    assert exc.value.status_code == 400
    b2c_mock.assert_not_called()
    item = await db.order_items.find_one({"_id": delivered_item["_id"]})
    assert item["disbursement_status"] == DisbursementStatus.NONE.value
    assert item["payment_error"] == "Seller payout phone number not found"


async def test_gateway_failure_restores_previous_status(db, mocker, make_order, buyer, seller):
    _, items = await make_order(buyer, seller, disbursement_status=DisbursementStatus.FAILED.value)
    mocker.patch(
        "utils.disbursement_service.b2c_payment",
        side_effect=HTTPException(status_code=502, detail="M-Pesa request failed"),
    )

    with pytest.raises(HTTPException):
        await initiate_disbursement(db, items[0]["_id"])

    item = await db.order_items.find_one({"_id": items[0]["_id"]})
    assert item["disbursement_status"] == DisbursementStatus.FAILED.value
    payment = await db.disbursements.find_one({"order_item_id": items[0]["_id"]})
    assert payment["status"] == PayoutStatus.FAILED.value
    assert payment["result_description"] == "M-Pesa request failed"


# ======================================================
# CALLBACKS
# ======================================================

async def test_success_result_completes_payment_and_item(db, b2c_mock, delivered_item):
    initiated = await initiate_disbursement(db, delivered_item["_id"])

    result = await handle_disbursement_result(db, parse_b2c_result(b2c_result_payload(initiated["reference"])))

    assert result == {"handled": True, "status": "completed"}
    payment = await get_disbursement_status(db, initiated["reference"])
    assert payment["status"] == PayoutStatus.COMPLETED.value
    assert payment["transaction_id"] == "NLJ41HAY6Q"
    assert payment["transaction_amount"] == 185
    assert payment["recipient_name"] == "254798765432 - Campus Kicks"
    assert payment["transaction_date"] == datetime(2019, 12, 19, 11, 45, 50)

    item = await db.order_items.find_one({"_id": delivered_item["_id"]})
    assert item["disbursement_status"] == DisbursementStatus.COMPLETED.value
    assert item["seller_paid_at"] is not None


async def test_replayed_result_is_a_no_op(db, b2c_mock, delivered_item):
    initiated = await initiate_disbursement(db, delivered_item["_id"])
    payload = b2c_result_payload(initiated["reference"])
    await handle_disbursement_result(db, parse_b2c_result(payload))
    before = await db.disbursements.find_one({"reference": initiated["reference"]})

    replay = await handle_disbursement_result(db, parse_b2c_result(payload))
    late_timeout = await handle_disbursement_timeout(
        db, parse_b2c_timeout({"OriginatorConversationID": initiated["reference"]})
    )

    assert replay == {"handled": False, "reason": "already_terminal"}
    assert late_timeout == {"handled": False, "reason": "already_terminal"}
    assert await db.disbursements.find_one({"reference": initiated["reference"]}) == before
    item = await db.order_items.find_one({"_id": delivered_item["_id"]})
    assert item["disbursement_status"] == DisbursementStatus.COMPLETED.value


async def test_failed_result_marks_item_for_retry(db, b2c_mock, delivered_item):
    initiated = await initiate_disbursement(db, delivered_item["_id"])

    result = await handle_disbursement_result(
        db, parse_b2c_result(b2c_result_payload(initiated["reference"], result_code=2001))
    )

    assert result["status"] == PayoutStatus.FAILED.value
    item = await db.order_items.find_one({"_id": delivered_item["_id"]})
    assert item["disbursement_status"] == DisbursementStatus.FAILED.value
    assert item["payment_error"] == "The initiator information is invalid."

    retried = await initiate_disbursement(db, delivered_item["_id"])
    assert retried["success"] is True
    assert b2c_mock.call_count == 2


async def test_timeout_is_its_own_terminal_state(db, b2c_mock, delivered_item):
    initiated = await initiate_disbursement(db, delivered_item["_id"])

    result = await handle_disbursement_timeout(
        db, parse_b2c_timeout({"OriginatorConversationID": initiated["reference"]})
    )

    assert result["status"] == PayoutStatus.TIMEOUT.value
    payment = await db.disbursements.find_one({"reference": initiated["reference"]})
    assert payment["status"] == PayoutStatus.TIMEOUT.value
    item = await db.order_items.find_one({"_id": delivered_item["_id"]})
    assert item["disbursement_status"] == DisbursementStatus.FAILED.value


async def test_result_arriving_before_dispatch_returns_is_recorded(db, mocker, b2c_response, delivered_item):
    loop = asyncio.get_running_loop()
    early = {}

    def pay_and_call_back(**kwargs):
        # The gateway posts the result while the request is still in flight.
        callback = parse_b2c_result(b2c_result_payload(kwargs["originator_id"]))
        early["result"] = asyncio.run_coroutine_threadsafe(
            handle_disbursement_result(db, callback), loop
        ).result(timeout=5)
        return b2c_response

    mocker.patch("utils.disbursement_service.b2c_payment", side_effect=pay_and_call_back)

    initiated = await initiate_disbursement(db, delivered_item["_id"])

    assert early["result"] == {"handled": True, "status": "completed"}
    payment = await db.disbursements.find_one({"reference": initiated["reference"]})
    assert payment["status"] == PayoutStatus.COMPLETED.value
    assert payment["conversation_id"] == "AG_20191219_00005797af5d7d75f652"
    item = await db.order_items.find_one({"_id": delivered_item["_id"]})
    assert item["disbursement_status"] == DisbursementStatus.COMPLETED.value


async def test_failure_arriving_before_dispatch_returns_frees_item(db, mocker, b2c_response, delivered_item):
    loop = asyncio.get_running_loop()

    def pay_and_call_back(**kwargs):
        callback = parse_b2c_result(b2c_result_payload(kwargs["originator_id"], result_code=2001))
        asyncio.run_coroutine_threadsafe(handle_disbursement_result(db, callback), loop).result(timeout=5)
        return b2c_response

    mocker.patch("utils.disbursement_service.b2c_payment", side_effect=pay_and_call_back)

    await initiate_disbursement(db, delivered_item["_id"])

    item = await db.order_items.find_one({"_id": delivered_item["_id"]})
    assert item["disbursement_status"] == DisbursementStatus.FAILED.value


async def test_unknown_originator_is_ignored(db):
    result = await handle_disbursement_result(db, parse_b2c_result(b2c_result_payload("B2C_unknown")))

    assert result == {"handled": False, "reason": "not_found"}


def test_flattened_result_parameters_are_readable():
    result = parse_b2c_result({
        "ResultCode": 0,
        "OriginatorConversationID": "B2C_x",
        "TransactionAmount": 50,
    })

    assert result.parameter("TransactionAmount") == 50

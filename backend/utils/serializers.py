from bson import ObjectId
from datetime import datetime


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return serialize_doc(value)
    if isinstance(value, list):
        return [serialize_value(v) for v in value]
    return value


def serialize_doc(doc: dict | None) -> dict | None:
    if not doc:
        return doc

    out = {k: serialize_value(v) for k, v in doc.items()}
    if "_id" in out:
        out["id"] = out.pop("_id")
    return out


def serialize_docs(docs):
    return [serialize_doc(d) for d in docs]


def serialize_disbursement(payment: dict) -> dict:
    return {
        "id": str(payment["_id"]),
        "reference": payment.get("reference"),
        "order_id": serialize_value(payment.get("order_id")),
        "order_item_id": serialize_value(payment.get("order_item_id")),
        "seller_id": serialize_value(payment.get("seller_id")),
        "amount": payment.get("amount"),
        "status": payment.get("status"),
        "result_description": payment.get("result_description"),
        "transaction_id": payment.get("transaction_id"),
        "recipient_name": payment.get("recipient_name"),
        "commission": payment.get("commission"),
        "created_at": serialize_value(payment.get("created_at")),
        "completed_at": serialize_value(payment.get("completed_at")),
    }

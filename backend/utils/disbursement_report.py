from datetime import datetime, timedelta

from pymongo import DESCENDING

from config.constants import REPORT_DEFAULT_DAYS
from models.order import PayoutStatus


async def generate_disbursement_report(db, start_date: datetime | None = None, end_date: datetime | None = None) -> dict:
    end = end_date or datetime.utcnow()
    start = start_date or end - timedelta(days=REPORT_DEFAULT_DAYS)

    payments = await db.disbursements.find(
        {"created_at": {"$gte": start, "$lte": end}}
    ).sort("created_at", DESCENDING).to_list(None)

    completed = [p for p in payments if p.get("status") == PayoutStatus.COMPLETED.value]

    seller_ids = list({p["seller_id"] for p in completed})
    sellers = {}
    if seller_ids:
        async for user in db.users.find({"_id": {"$in": seller_ids}}):
            sellers[user["_id"]] = user

    seller_summary = {}
    for payment in completed:
        seller_id = payment["seller_id"]
        if seller_id not in seller_summary:
            profile = sellers.get(seller_id, {})
            seller_summary[seller_id] = {
                "seller_id": str(seller_id),
                "seller_name": profile.get("name") or "Unknown Seller",
                "email": profile.get("email"),
                "phone": profile.get("phone"),
                "payment_count": 0,
                "total_amount": 0,
            }
        seller_summary[seller_id]["payment_count"] += 1
        seller_summary[seller_id]["total_amount"] += payment.get("amount") or 0

    return {
        "period": {"start_date": start.isoformat(), "end_date": end.isoformat()},
        "summary": {
            "total_payments": len(payments),
            "successful_payments": len(completed),
            "failed_payments": sum(
                1 for p in payments
                if p.get("status") in {PayoutStatus.FAILED.value, PayoutStatus.TIMEOUT.value}
            ),
            "pending_payments": sum(1 for p in payments if p.get("status") == PayoutStatus.INITIATED.value),
            "total_amount": sum(p.get("amount") or 0 for p in completed),
        },
        "seller_summary": sorted(seller_summary.values(), key=lambda s: s["total_amount"], reverse=True),
    }

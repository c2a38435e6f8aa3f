from fastapi import APIRouter, Depends, Query
from pymongo import ASCENDING, DESCENDING

from config.env import (
    DISBURSEMENT_CLAIM_TIMEOUT_MINUTES,
    DISBURSEMENT_RETRY_WINDOW_DAYS,
    SWEEP_PACING_SECONDS,
)
from database import get_db
from models.order import PayoutStatus, ReportQuery
from utils.disbursement_report import generate_disbursement_report
from utils.guards import parse_object_id
from utils.security import require_role
from utils.serializers import serialize_disbursement, serialize_docs
from workers.disbursement_sweeper import (
    reap_stale_claims,
    retry_failed_disbursements,
    sweep_pending_disbursements,
)


router = APIRouter(prefix="/api/admin", tags=["Admin"])


# =====================================================
# DISBURSEMENT OPERATIONS
# =====================================================

@router.post("/disbursements/sweep")
async def sweep_now(
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    report = await sweep_pending_disbursements(db, pacing_seconds=SWEEP_PACING_SECONDS)
    return {"message": "Payment processing completed", **report}


@router.post("/disbursements/retry")
async def retry_now(
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    report = await retry_failed_disbursements(
        db,
        retry_window_days=DISBURSEMENT_RETRY_WINDOW_DAYS,
        pacing_seconds=SWEEP_PACING_SECONDS,
    )
    return {"message": "Failed payment retry completed", **report}


@router.post("/disbursements/reap")
async def reap_now(
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    report = await reap_stale_claims(db, claim_timeout_minutes=DISBURSEMENT_CLAIM_TIMEOUT_MINUTES)
    return {"message": "Stale payout claims settled", **report}


@router.get("/disbursements/report")
async def disbursement_report(
    query: ReportQuery = Depends(),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await generate_disbursement_report(db, query.start_date, query.end_date)


@router.get("/disbursements")
async def list_disbursements(
    status: PayoutStatus | None = Query(None),
    limit: int = Query(100, ge=1, le=500),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    query = {}
    if status:
        query["status"] = status.value

    payments = await db.disbursements.find(query).sort("created_at", DESCENDING).to_list(limit)
    return {"count": len(payments), "payments": [serialize_disbursement(p) for p in payments]}


# =====================================================
# ORDER TIMELINE
# =====================================================

@router.get("/orders/{order_id}/timeline")
async def order_timeline(
    order_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    oid = parse_object_id(order_id, "order_id")
    events = await db.order_timeline.find({"order_id": oid}).sort("created_at", ASCENDING).to_list(None)
    return {"order_id": order_id, "events": serialize_docs(events)}

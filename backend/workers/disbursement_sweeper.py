import asyncio
import logging
from datetime import datetime, timedelta

from fastapi import HTTPException

from config.env import (
    DISBURSEMENT_CLAIM_TIMEOUT_MINUTES,
    DISBURSEMENT_RETRY_WINDOW_DAYS,
    SWEEP_INTERVAL_MINUTES,
    SWEEP_PACING_SECONDS,
)
from database import get_db
from utils.disbursement_service import expire_disbursement_claim, initiate_disbursement
from utils.ledger import list_failed_disbursements, list_stale_claims, list_unpaid_delivered_items

logger = logging.getLogger(__name__)

TOO_OLD_MESSAGE = "Payment too old to retry automatically"


async def _dispatch(db, order_item_id) -> dict:
    """Run one payout and fold every outcome into a report row."""
    try:
        result = await initiate_disbursement(db, order_item_id, actor_role="system")
        return {
            "order_item_id": str(order_item_id),
            "success": bool(result.get("success")),
            "code": result.get("code"),
            "message": result.get("message") or "Processed",
        }
    except HTTPException as e:
        return {
            "order_item_id": str(order_item_id),
            "success": False,
            "code": "failed",
            "message": e.detail,
        }
    except Exception as e:
        logger.exception("DISBURSEMENT_SWEEP_ERROR item=%s", order_item_id)
        return {
            "order_item_id": str(order_item_id),
            "success": False,
            "code": "error",
            "message": str(e) or "Internal error",
        }


def _summarize(results: list[dict], **counts) -> dict:
    return {
        **counts,
        "successful": sum(1 for r in results if r["success"]),
        "failed": sum(1 for r in results if not r["success"]),
        "results": results,
    }


async def sweep_pending_disbursements(db, *, pacing_seconds: float = SWEEP_PACING_SECONDS) -> dict:
    """Pay every delivered item whose payout was never started."""
    items = await list_unpaid_delivered_items(db)
    logger.info("DISBURSEMENT_SWEEP_START items=%s", len(items))

    results = []
    for index, item in enumerate(items):
        if index and pacing_seconds:
            await asyncio.sleep(pacing_seconds)
        results.append(await _dispatch(db, item["_id"]))

    return _summarize(results, total_processed=len(items))


async def retry_failed_disbursements(
    db,
    *,
    retry_window_days: int = DISBURSEMENT_RETRY_WINDOW_DAYS,
    pacing_seconds: float = SWEEP_PACING_SECONDS,
) -> dict:
    payments = await list_failed_disbursements(db)
    cutoff = datetime.utcnow() - timedelta(days=retry_window_days)
    logger.info("DISBURSEMENT_RETRY_START payments=%s", len(payments))

    # Only the latest failed attempt per item counts.
    latest = {}
    for payment in payments:
        latest[payment["order_item_id"]] = payment

    results = []
    dispatched = 0
    for payment in sorted(latest.values(), key=lambda p: p.get("created_at") or datetime.min):
        item_id = payment["order_item_id"]
        if payment.get("created_at") and payment["created_at"] < cutoff:
            results.append({
                "payment_id": str(payment["_id"]),
                "order_item_id": str(item_id),
                "success": False,
                "code": "too_old",
                "message": TOO_OLD_MESSAGE,
            })
            continue

        if dispatched and pacing_seconds:
            await asyncio.sleep(pacing_seconds)
        dispatched += 1

        row = await _dispatch(db, item_id)
        row["payment_id"] = str(payment["_id"])
        results.append(row)

    return _summarize(results, total_retried=len(latest), total_failed_records=len(payments))


async def reap_stale_claims(
    db,
    *,
    claim_timeout_minutes: int = DISBURSEMENT_CLAIM_TIMEOUT_MINUTES,
) -> dict:
    """Settle payouts held in processing longer than the claim timeout."""
    cutoff = datetime.utcnow() - timedelta(minutes=claim_timeout_minutes)
    items = await list_stale_claims(db, cutoff)
    if items:
        logger.info("DISBURSEMENT_REAP_START items=%s", len(items))

    outcomes = {}
    for item in items:
        try:
            status = await expire_disbursement_claim(db, item)
        except Exception:
            logger.exception("DISBURSEMENT_REAP_ERROR item=%s", item["_id"])
            status = "error"
        outcomes[str(item["_id"])] = status

    return {"total_reaped": len(items), "items": outcomes}


async def disbursement_sweep_worker():
    db = get_db()

    while True:
        try:
            await reap_stale_claims(db)
            sweep = await sweep_pending_disbursements(db)
            retry = await retry_failed_disbursements(db)
            logger.info(
                "DISBURSEMENT_SWEEP_DONE swept=%s/%s retried=%s/%s",
                sweep["successful"], sweep["total_processed"],
                retry["successful"], retry["total_retried"],
            )
        except Exception:
            logger.exception("DISBURSEMENT_SWEEP_WORKER_ERROR")

        await asyncio.sleep(SWEEP_INTERVAL_MINUTES * 60)

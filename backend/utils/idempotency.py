from datetime import datetime, timedelta
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

IDEMPOTENCY_TTL_SECONDS = 60 * 60 * 24  # 24 hours
IN_PROGRESS_STALE_SECONDS = 60 * 10     # 10 minutes

IN_PROGRESS_RESPONSE = {
    "message": "Request already in progress",
    "status": "processing",
}


async def reserve_idempotency_key(
    *,
    db,
    key: str,
    scope: str,
):
    """
    Reserve a client idempotency key for a scope.

    Returns the stored response when the key already completed, a
    "processing" marker while another request holds it, or None when the
    caller now owns the key. Callers namespace keys per user.
    """
    existing = await db.idempotency_keys.find_one({"key": key, "scope": scope})
    now = datetime.utcnow()

    if existing:
        if existing.get("status") == "completed":
            return existing.get("response")

        created_at = existing.get("created_at") or now
        if (
            existing.get("status") == "reserved"
            and now - created_at <= timedelta(seconds=IN_PROGRESS_STALE_SECONDS)
        ):
            return IN_PROGRESS_RESPONSE

        # Failed or stale reservation: drop it so this request can retry.
        await db.idempotency_keys.delete_one({"_id": existing["_id"]})

    try:
        await db.idempotency_keys.insert_one({
            "key": key,
            "scope": scope,
            "status": "reserved",
            "response": None,
            "created_at": now,
        })
    except DuplicateKeyError:
        # Concurrent request won the race.
        concurrent = await db.idempotency_keys.find_one({"key": key, "scope": scope})
        if concurrent and concurrent.get("status") == "completed":
            return concurrent.get("response")
        return IN_PROGRESS_RESPONSE
    return None


async def complete_idempotency_key(*, db, key: str, scope: str, response: dict):
    await db.idempotency_keys.find_one_and_update(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": "completed",
                "response": response,
                "completed_at": datetime.utcnow(),
            }
        },
        return_document=ReturnDocument.AFTER,
    )


async def fail_idempotency_key(*, db, key: str, scope: str, error: str):
    await db.idempotency_keys.update_one(
        {"key": key, "scope": scope},
        {
            "$set": {
                "status": "failed",
                "error": error,
                "failed_at": datetime.utcnow(),
            }
        },
    )

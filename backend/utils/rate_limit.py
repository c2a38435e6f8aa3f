from datetime import datetime, timedelta

from fastapi import HTTPException
from pymongo import ReturnDocument


async def rate_limit(
    db,
    key: str,
    max_requests: int,
    window_seconds: int,
):
    """
    Fixed-window counter stored in Mongo so every API instance shares it.
    Expired windows are reset here and purged by the TTL index on expires_at.
    """
    now = datetime.utcnow()

    record = await db.rate_limits.find_one_and_update(
        {"key": key, "expires_at": {"$gt": now}},
        {"$inc": {"count": 1}},
        return_document=ReturnDocument.AFTER,
    )

    if record is None:
        await db.rate_limits.update_one(
            {"key": key},
            {
                "$set": {
                    "count": 1,
                    "created_at": now,
                    "expires_at": now + timedelta(seconds=window_seconds),
                }
            },
            upsert=True,
        )
        count = 1
    else:
        count = record["count"]

    if count > max(1, max_requests):
        raise HTTPException(
            status_code=429,
            detail="Too many requests. Please try again later.",
        )

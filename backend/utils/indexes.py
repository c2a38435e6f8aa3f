from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

from utils.idempotency import IDEMPOTENCY_TTL_SECONDS


def _normalize_key_pairs(keys):
    return [(k, v) for k, v in keys]


async def _create_index_safe(collection, keys, **kwargs):
    """
    Create index safely.
    If Mongo reports IndexOptionsConflict/IndexKeySpecsConflict for same key pattern,
    drop the conflicting index and recreate with desired options.
    """
    desired_key = _normalize_key_pairs(keys)
    desired_name = kwargs.get("name")
    try:
        await collection.create_index(keys, **kwargs)
        return
    except OperationFailure as e:
        if getattr(e, "code", None) not in {85, 86}:
            raise

        conflicting_names = []
        async for idx in collection.list_indexes():
            idx_key = _normalize_key_pairs(list(idx.get("key", {}).items()))
            if idx_key == desired_key:
                idx_name = idx.get("name")
                if idx_name and idx_name != desired_name:
                    conflicting_names.append(idx_name)

        for idx_name in conflicting_names:
            await collection.drop_index(idx_name)

        await collection.create_index(keys, **kwargs)


async def ensure_indexes(db):
    # Orders
    await _create_index_safe(
        db.orders,
        [("buyer_id", ASCENDING), ("created_at", DESCENDING)],
        name="orders_buyer_created_at_idx",
    )
    await _create_index_safe(
        db.orders,
        [("checkout_request_id", ASCENDING)],
        name="orders_checkout_request_idx",
        sparse=True,
    )
    await _create_index_safe(
        db.orders,
        [("collection_status", ASCENDING), ("created_at", ASCENDING)],
        name="orders_collection_status_created_idx",
    )

    # Order items
    await _create_index_safe(
        db.order_items,
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        name="order_items_order_created_idx",
    )
    await _create_index_safe(
        db.order_items,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="order_items_seller_created_idx",
    )
    await _create_index_safe(
        db.order_items,
        [("status", ASCENDING), ("disbursement_status", ASCENDING), ("created_at", ASCENDING)],
        name="order_items_disbursement_sweep_idx",
    )
    await _create_index_safe(
        db.order_items,
        [("disbursement_status", ASCENDING), ("disbursement_claimed_at", ASCENDING)],
        name="order_items_disbursement_claim_idx",
    )

    # Collections
    await _create_index_safe(
        db.collections,
        [("checkout_request_id", ASCENDING)],
        name="collections_checkout_request_unique",
        unique=True,
    )
    await _create_index_safe(
        db.collections,
        [("order_id", ASCENDING)],
        name="collections_order_idx",
    )

    # Disbursements
    await _create_index_safe(
        db.disbursements,
        [("originator_conversation_id", ASCENDING)],
        name="disbursements_originator_unique",
        unique=True,
    )
    await _create_index_safe(
        db.disbursements,
        [("reference", ASCENDING)],
        name="disbursements_reference_idx",
    )
    await _create_index_safe(
        db.disbursements,
        [("order_item_id", ASCENDING), ("created_at", ASCENDING)],
        name="disbursements_item_created_idx",
    )
    await _create_index_safe(
        db.disbursements,
        [("status", ASCENDING), ("created_at", ASCENDING)],
        name="disbursements_status_created_idx",
    )
    await _create_index_safe(
        db.disbursements,
        [("seller_id", ASCENDING), ("created_at", DESCENDING)],
        name="disbursements_seller_created_idx",
    )

    # Timeline
    await _create_index_safe(
        db.order_timeline,
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        name="order_timeline_order_created_idx",
    )

    # Idempotency
    await _create_index_safe(
        db.idempotency_keys,
        [("key", ASCENDING), ("scope", ASCENDING)],
        name="idempotency_key_scope_unique",
        unique=True,
    )
    await _create_index_safe(
        db.idempotency_keys,
        [("created_at", ASCENDING)],
        name="idempotency_ttl_idx",
        expireAfterSeconds=IDEMPOTENCY_TTL_SECONDS,
    )

    # Rate limits
    await _create_index_safe(
        db.rate_limits,
        [("key", ASCENDING)],
        name="rate_limits_key_unique",
        unique=True,
    )
    await _create_index_safe(
        db.rate_limits,
        [("expires_at", ASCENDING)],
        name="rate_limits_expires_ttl_idx",
        expireAfterSeconds=0,
    )

    # Notification outbox
    await _create_index_safe(
        db.notification_outbox,
        [("status", ASCENDING), ("created_at", ASCENDING)],
        name="notification_outbox_status_created_idx",
    )

from fastapi import HTTPException
from bson import ObjectId

# -------------------------------
# ObjectId Guard
# -------------------------------

def parse_object_id(value: str, name: str = "id") -> ObjectId:
    if not value or not ObjectId.is_valid(value):
        raise HTTPException(status_code=400, detail=f"Invalid {name}")
    return ObjectId(value)


# -------------------------------
# Ownership Guards
# -------------------------------

def assert_item_buyer(item: dict, user: dict):
    if item.get("buyer_id") != user["_id"]:
        raise HTTPException(
            status_code=403,
            detail="You are not authorized to act on this order",
        )


def assert_item_seller(item: dict, user: dict):
    if user.get("role") == "admin":
        return
    if item.get("seller_id") != user["_id"]:
        raise HTTPException(
            status_code=403,
            detail="You are not the seller of this order item",
        )

from config.constants import COMMISSION_TABLE


def find_tier(price: float, table: list[dict] = COMMISSION_TABLE) -> dict:
    """
    Bands are contiguous upward: the first tier whose max covers the price
    wins, so fractional prices between two integer bands fall into the upper
    one. Prices above the last band saturate to the highest tier.
    """
    for tier in table:
        if price <= tier["max"]:
            return tier
    return table[-1]


def calculate_commission(price: float) -> dict:
    price = float(price)
    tier = find_tier(price)

    return {
        "product_price": price,
        "gateway_fee": tier["gateway_fee"],
        "platform_fee": tier["platform_fee"],
        "buyer_fee": tier["buyer_fee"],
        "seller_fee": tier["seller_fee"],
        "platform_profit": tier["platform_profit"],
        "buyer_total": round(price + tier["buyer_fee"], 2),
        "seller_payout": round(price - tier["seller_fee"], 2),
    }


def calculate_item_commission(price_per_unit: float, quantity: int = 1) -> dict:
    unit = calculate_commission(price_per_unit)
    qty = int(quantity or 1)

    return {
        **unit,
        "quantity": qty,
        "total_product_price": round(unit["product_price"] * qty, 2),
        "total_buyer_cost": round(unit["buyer_total"] * qty, 2),
        "total_seller_payout": round(unit["seller_payout"] * qty, 2),
        "total_platform_fee": round(unit["platform_fee"] * qty, 2),
        "total_platform_profit": round(unit["platform_profit"] * qty, 2),
        "total_gateway_fee": round(unit["gateway_fee"] * qty, 2),
        "total_buyer_fee": round(unit["buyer_fee"] * qty, 2),
        "total_seller_fee": round(unit["seller_fee"] * qty, 2),
    }


def calculate_cart_total(items: list[dict]) -> dict:
    """items: [{"price": ..., "quantity": ...}, ...]"""
    subtotal = 0.0
    buyer_fees = 0.0
    platform_fees = 0.0
    lines = []

    for item in items:
        commission = calculate_item_commission(item["price"], item.get("quantity", 1))
        subtotal += commission["total_product_price"]
        buyer_fees += commission["total_buyer_fee"]
        platform_fees += commission["total_platform_fee"]
        lines.append({**item, "commission": commission})

    return {
        "items": lines,
        "subtotal": round(subtotal, 2),
        "total_buyer_fees": round(buyer_fees, 2),
        "total_platform_fees": round(platform_fees, 2),
        "grand_total": round(subtotal + buyer_fees, 2),
    }

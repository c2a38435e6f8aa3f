# backend/config/constants.py

# =========================================
# COMMISSION TABLE (KES, per unit)
# =========================================
# Platform fee is split evenly between buyer and seller.
# gateway_fee is the M-Pesa charge absorbed by the platform.

COMMISSION_TABLE = [
    {"min": 1, "max": 49, "gateway_fee": 0, "platform_fee": 10, "buyer_fee": 5, "seller_fee": 5, "platform_profit": 10},
    {"min": 50, "max": 100, "gateway_fee": 0, "platform_fee": 15, "buyer_fee": 7.5, "seller_fee": 7.5, "platform_profit": 15},
    {"min": 101, "max": 300, "gateway_fee": 5, "platform_fee": 30, "buyer_fee": 15, "seller_fee": 15, "platform_profit": 25},
    {"min": 301, "max": 500, "gateway_fee": 5, "platform_fee": 35, "buyer_fee": 17.5, "seller_fee": 17.5, "platform_profit": 30},
    {"min": 501, "max": 800, "gateway_fee": 10, "platform_fee": 40, "buyer_fee": 20, "seller_fee": 20, "platform_profit": 30},
    {"min": 801, "max": 1000, "gateway_fee": 10, "platform_fee": 50, "buyer_fee": 25, "seller_fee": 25, "platform_profit": 40},
    {"min": 1001, "max": 1200, "gateway_fee": 15, "platform_fee": 55, "buyer_fee": 27.5, "seller_fee": 27.5, "platform_profit": 40},
    {"min": 1201, "max": 1500, "gateway_fee": 15, "platform_fee": 65, "buyer_fee": 32.5, "seller_fee": 32.5, "platform_profit": 50},
    {"min": 1501, "max": 2000, "gateway_fee": 20, "platform_fee": 75, "buyer_fee": 37.5, "seller_fee": 37.5, "platform_profit": 55},
    {"min": 2001, "max": 2500, "gateway_fee": 20, "platform_fee": 90, "buyer_fee": 45, "seller_fee": 45, "platform_profit": 70},
    {"min": 2501, "max": 3000, "gateway_fee": 25, "platform_fee": 105, "buyer_fee": 52.5, "seller_fee": 52.5, "platform_profit": 80},
    {"min": 3001, "max": 3500, "gateway_fee": 25, "platform_fee": 120, "buyer_fee": 60, "seller_fee": 60, "platform_profit": 95},
    {"min": 3501, "max": 4000, "gateway_fee": 34, "platform_fee": 140, "buyer_fee": 70, "seller_fee": 70, "platform_profit": 106},
    {"min": 4001, "max": 5000, "gateway_fee": 34, "platform_fee": 160, "buyer_fee": 80, "seller_fee": 80, "platform_profit": 126},
    {"min": 5001, "max": 6500, "gateway_fee": 42, "platform_fee": 160, "buyer_fee": 80, "seller_fee": 80, "platform_profit": 118},
    {"min": 6501, "max": 7500, "gateway_fee": 42, "platform_fee": 180, "buyer_fee": 90, "seller_fee": 90, "platform_profit": 138},
    {"min": 7501, "max": 9000, "gateway_fee": 48, "platform_fee": 200, "buyer_fee": 100, "seller_fee": 100, "platform_profit": 152},
    {"min": 9001, "max": 10000, "gateway_fee": 48, "platform_fee": 220, "buyer_fee": 110, "seller_fee": 110, "platform_profit": 172},
    {"min": 10001, "max": 12000, "gateway_fee": 57, "platform_fee": 240, "buyer_fee": 120, "seller_fee": 120, "platform_profit": 183},
    {"min": 12001, "max": 15000, "gateway_fee": 57, "platform_fee": 270, "buyer_fee": 135, "seller_fee": 135, "platform_profit": 213},
    {"min": 15001, "max": 17000, "gateway_fee": 62, "platform_fee": 300, "buyer_fee": 150, "seller_fee": 150, "platform_profit": 238},
    {"min": 17001, "max": 20000, "gateway_fee": 62, "platform_fee": 340, "buyer_fee": 170, "seller_fee": 170, "platform_profit": 278},
    {"min": 20001, "max": 22000, "gateway_fee": 67, "platform_fee": 380, "buyer_fee": 190, "seller_fee": 190, "platform_profit": 313},
    {"min": 22001, "max": 25000, "gateway_fee": 67, "platform_fee": 420, "buyer_fee": 210, "seller_fee": 210, "platform_profit": 353},
    {"min": 25001, "max": 28000, "gateway_fee": 72, "platform_fee": 460, "buyer_fee": 230, "seller_fee": 230, "platform_profit": 388},
    {"min": 28001, "max": 30000, "gateway_fee": 72, "platform_fee": 500, "buyer_fee": 250, "seller_fee": 250, "platform_profit": 428},
    {"min": 30001, "max": 32000, "gateway_fee": 83, "platform_fee": 560, "buyer_fee": 280, "seller_fee": 280, "platform_profit": 477},
    {"min": 32001, "max": 35000, "gateway_fee": 83, "platform_fee": 620, "buyer_fee": 310, "seller_fee": 310, "platform_profit": 537},
    {"min": 35001, "max": 37500, "gateway_fee": 99, "platform_fee": 700, "buyer_fee": 350, "seller_fee": 350, "platform_profit": 601},
    {"min": 37501, "max": 40000, "gateway_fee": 99, "platform_fee": 760, "buyer_fee": 380, "seller_fee": 380, "platform_profit": 661},
    {"min": 40001, "max": 42500, "gateway_fee": 103, "platform_fee": 820, "buyer_fee": 410, "seller_fee": 410, "platform_profit": 717},
    {"min": 42501, "max": 45000, "gateway_fee": 103, "platform_fee": 880, "buyer_fee": 440, "seller_fee": 440, "platform_profit": 777},
    {"min": 45001, "max": 47500, "gateway_fee": 108, "platform_fee": 940, "buyer_fee": 470, "seller_fee": 470, "platform_profit": 832},
    {"min": 47501, "max": 50000, "gateway_fee": 108, "platform_fee": 1000, "buyer_fee": 500, "seller_fee": 500, "platform_profit": 892},
    {"min": 50001, "max": 60000, "gateway_fee": 108, "platform_fee": 1100, "buyer_fee": 550, "seller_fee": 550, "platform_profit": 992},
    {"min": 60001, "max": 70000, "gateway_fee": 108, "platform_fee": 1200, "buyer_fee": 600, "seller_fee": 600, "platform_profit": 1092},
    {"min": 70001, "max": 150000, "gateway_fee": 108, "platform_fee": 1500, "buyer_fee": 750, "seller_fee": 750, "platform_profit": 1392},
    {"min": 150001, "max": 250000, "gateway_fee": 108, "platform_fee": 2000, "buyer_fee": 1000, "seller_fee": 1000, "platform_profit": 1892},
]

# -----------------------------
# GATEWAY RESULT CODES
# -----------------------------

MPESA_SUCCESS_CODE = 0
MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Success"}

# -----------------------------
# RATE LIMITS
# -----------------------------

CHECKOUT_MAX_REQUESTS = 5
CHECKOUT_WINDOW_SECONDS = 60

# -----------------------------
# REPORTS
# -----------------------------

REPORT_DEFAULT_DAYS = 30

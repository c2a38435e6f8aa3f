import os
from dotenv import load_dotenv

load_dotenv()


def _bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# =====================================================
# JWT
# =====================================================
JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# =====================================================
# M-PESA (collections: STK push)
# =====================================================
MPESA_ENVIRONMENT = os.getenv("MPESA_ENVIRONMENT", "sandbox")
MPESA_CONSUMER_KEY = os.getenv("MPESA_CONSUMER_KEY")
MPESA_CONSUMER_SECRET = os.getenv("MPESA_CONSUMER_SECRET")
MPESA_BUSINESS_SHORT_CODE = os.getenv("MPESA_BUSINESS_SHORT_CODE")
MPESA_PASSKEY = os.getenv("MPESA_PASSKEY")
MPESA_CALLBACK_URL = os.getenv("MPESA_CALLBACK_URL")
MPESA_CALLBACK_TOKEN = os.getenv("MPESA_CALLBACK_TOKEN")
MPESA_TIMEOUT_SECONDS = int(os.getenv("MPESA_TIMEOUT_SECONDS", 30))

# =====================================================
# M-PESA (disbursements: B2C)
# =====================================================
MPESA_B2C_INITIATOR_NAME = os.getenv("MPESA_B2C_INITIATOR_NAME")
MPESA_B2C_SECURITY_CREDENTIAL = os.getenv("MPESA_B2C_SECURITY_CREDENTIAL")
MPESA_B2C_SHORT_CODE = os.getenv("MPESA_B2C_SHORT_CODE") or MPESA_BUSINESS_SHORT_CODE
MPESA_B2C_CALLBACK_URL = os.getenv("MPESA_B2C_CALLBACK_URL")

# =====================================================
# PAYMENT POLICY
# =====================================================
AUTO_PAYMENTS_ENABLED = _bool(os.getenv("AUTO_PAYMENTS_ENABLED"), True)
STALE_ORDER_MINUTES = int(os.getenv("STALE_ORDER_MINUTES", 30))
DISBURSEMENT_RETRY_WINDOW_DAYS = int(os.getenv("DISBURSEMENT_RETRY_WINDOW_DAYS", 7))
DISBURSEMENT_CLAIM_TIMEOUT_MINUTES = int(os.getenv("DISBURSEMENT_CLAIM_TIMEOUT_MINUTES", 60))
SWEEP_PACING_SECONDS = float(os.getenv("SWEEP_PACING_SECONDS", 1))
SWEEP_INTERVAL_MINUTES = int(os.getenv("SWEEP_INTERVAL_MINUTES", 30))
SWEEP_WORKER_ENABLED = _bool(os.getenv("SWEEP_WORKER_ENABLED"), True)

# =====================================================
# COURIER
# =====================================================
COURIER_API_URL = os.getenv("COURIER_API_URL")
COURIER_API_KEY = os.getenv("COURIER_API_KEY")

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "JWT_SECRET": JWT_SECRET,
        "MONGODB_URI": MONGO_URI,
        "MPESA_CONSUMER_KEY": MPESA_CONSUMER_KEY,
        "MPESA_CONSUMER_SECRET": MPESA_CONSUMER_SECRET,
        "MPESA_BUSINESS_SHORT_CODE": MPESA_BUSINESS_SHORT_CODE,
        "MPESA_PASSKEY": MPESA_PASSKEY,
        "MPESA_CALLBACK_URL": MPESA_CALLBACK_URL,
        "MPESA_B2C_INITIATOR_NAME": MPESA_B2C_INITIATOR_NAME,
        "MPESA_B2C_SECURITY_CREDENTIAL": MPESA_B2C_SECURITY_CREDENTIAL,
        "MPESA_B2C_CALLBACK_URL": MPESA_B2C_CALLBACK_URL,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")

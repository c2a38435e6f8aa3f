import base64
import json
import logging
import math
from datetime import datetime
from urllib import request, error

from fastapi import HTTPException

from config.env import (
    MPESA_ENVIRONMENT,
    MPESA_CONSUMER_KEY,
    MPESA_CONSUMER_SECRET,
    MPESA_BUSINESS_SHORT_CODE,
    MPESA_PASSKEY,
    MPESA_CALLBACK_URL,
    MPESA_CALLBACK_TOKEN,
    MPESA_TIMEOUT_SECONDS,
    MPESA_B2C_INITIATOR_NAME,
    MPESA_B2C_SECURITY_CREDENTIAL,
    MPESA_B2C_SHORT_CODE,
    MPESA_B2C_CALLBACK_URL,
)

logger = logging.getLogger(__name__)

MPESA_API_BASE = (
    "https://api.safaricom.co.ke"
    if (MPESA_ENVIRONMENT or "").lower() == "production"
    else "https://sandbox.safaricom.co.ke"
)
AUTH_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
B2C_PATH = "/mpesa/b2c/v3/paymentrequest"


def is_production() -> bool:
    return (MPESA_ENVIRONMENT or "").lower() == "production"


def _basic_auth_header(key: str, secret: str) -> str:
    token = f"{key}:{secret}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("utf-8")


def _with_token(url: str) -> str:
    if not MPESA_CALLBACK_TOKEN:
        return url
    sep = "&" if "?" in url else "?"
    return f"{url}{sep}token={MPESA_CALLBACK_TOKEN}"


def _require(**values) -> None:
    missing = [k for k, v in values.items() if not v]
    if missing:
        raise HTTPException(
            status_code=500,
            detail=f"M-Pesa config missing: {', '.join(sorted(missing))}",
        )


def _send(req: request.Request) -> dict:
    try:
        with request.urlopen(req, timeout=MPESA_TIMEOUT_SECONDS) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        try:
            body = json.loads(details)
            details = body.get("errorMessage") or body.get("ResponseDescription") or details
        except ValueError:
            pass
        raise HTTPException(status_code=502, detail=f"M-Pesa error: {details}")
    except Exception:
        raise HTTPException(status_code=502, detail="M-Pesa request failed")


def _post(path: str, payload: dict, access_token: str) -> dict:
    req = request.Request(
        url=f"{MPESA_API_BASE}{path}",
        data=json.dumps(payload).encode("utf-8"),
        headers={
            "Content-Type": "application/json",
            "Authorization": f"Bearer {access_token}",
        },
        method="POST",
    )
    return _send(req)


# -------------------------------------------------
# AUTH
# -------------------------------------------------

def generate_access_token() -> str:
    """
    Fetch a fresh OAuth token. Tokens are short-lived and are not
    cached between requests.
    """
    _require(
        MPESA_CONSUMER_KEY=MPESA_CONSUMER_KEY,
        MPESA_CONSUMER_SECRET=MPESA_CONSUMER_SECRET,
    )
    req = request.Request(
        url=f"{MPESA_API_BASE}{AUTH_PATH}",
        headers={"Authorization": _basic_auth_header(MPESA_CONSUMER_KEY, MPESA_CONSUMER_SECRET)},
        method="GET",
    )
    body = _send(req)
    token = body.get("access_token")
    if not token:
        raise HTTPException(status_code=502, detail="Invalid response from M-Pesa auth API")
    return token


def generate_timestamp(now: datetime | None = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def generate_password(short_code: str, passkey: str, timestamp: str) -> str:
    raw = f"{short_code}{passkey}{timestamp}".encode("utf-8")
    return base64.b64encode(raw).decode("utf-8")


def to_gateway_amount(amount: float) -> int:
    # The gateway only accepts whole shillings.
    return int(math.ceil(round(float(amount), 2)))


def parse_gateway_date(value) -> datetime:
    """YYYYMMDDHHmmss -> datetime; malformed values fall back to now."""
    text = str(value or "")
    try:
        return datetime.strptime(text, "%Y%m%d%H%M%S")
    except ValueError:
        return datetime.utcnow()


# -------------------------------------------------
# STK PUSH (C2B)
# -------------------------------------------------

def stk_push(*, phone: str, amount: int, reference: str, description: str) -> dict:
    _require(
        MPESA_BUSINESS_SHORT_CODE=MPESA_BUSINESS_SHORT_CODE,
        MPESA_PASSKEY=MPESA_PASSKEY,
        MPESA_CALLBACK_URL=MPESA_CALLBACK_URL,
    )
    access_token = generate_access_token()
    timestamp = generate_timestamp()

    payload = {
        "BusinessShortCode": MPESA_BUSINESS_SHORT_CODE,
        "Password": generate_password(MPESA_BUSINESS_SHORT_CODE, MPESA_PASSKEY, timestamp),
        "Timestamp": timestamp,
        "TransactionType": "CustomerPayBillOnline" if is_production() else "CustomerBuyGoodsOnline",
        "Amount": amount,
        "PartyA": phone,
        "PartyB": MPESA_BUSINESS_SHORT_CODE,
        "PhoneNumber": phone,
        "CallBackURL": _with_token(MPESA_CALLBACK_URL),
        "AccountReference": reference[:12],
        "TransactionDesc": description[:13],
    }

    logger.info("STK_PUSH_REQUEST phone=%s amount=%s ref=%s", phone[-4:], amount, reference)
    body = _post(STK_PUSH_PATH, payload, access_token)

    if str(body.get("ResponseCode", "")) != "0" or not body.get("CheckoutRequestID"):
        raise HTTPException(
            status_code=502,
            detail=body.get("errorMessage") or body.get("ResponseDescription") or "STK push rejected",
        )
    return body


# -------------------------------------------------
# B2C (payout)
# -------------------------------------------------

def b2c_payment(*, phone: str, amount: int, originator_id: str, remarks: str, occasion: str) -> dict:
    _require(
        MPESA_B2C_INITIATOR_NAME=MPESA_B2C_INITIATOR_NAME,
        MPESA_B2C_SECURITY_CREDENTIAL=MPESA_B2C_SECURITY_CREDENTIAL,
        MPESA_B2C_SHORT_CODE=MPESA_B2C_SHORT_CODE,
        MPESA_B2C_CALLBACK_URL=MPESA_B2C_CALLBACK_URL,
    )
    access_token = generate_access_token()
    callback_base = MPESA_B2C_CALLBACK_URL.rstrip("/")

    payload = {
        "OriginatorConversationID": originator_id,
        "InitiatorName": MPESA_B2C_INITIATOR_NAME,
        "SecurityCredential": MPESA_B2C_SECURITY_CREDENTIAL,
        "CommandID": "BusinessPayment",
        "Amount": amount,
        "PartyA": MPESA_B2C_SHORT_CODE,
        "PartyB": phone,
        "Remarks": remarks[:100],
        "QueueTimeOutURL": _with_token(f"{callback_base}/timeout"),
        "ResultURL": _with_token(f"{callback_base}/result"),
        "Occasion": occasion[:100],
    }

    logger.info("B2C_REQUEST phone=%s amount=%s originator=%s", phone[-4:], amount, originator_id)
    body = _post(B2C_PATH, payload, access_token)

    if str(body.get("ResponseCode", "")) != "0" or not body.get("ConversationID"):
        raise HTTPException(
            status_code=502,
            detail=body.get("errorMessage") or body.get("ResponseDescription") or "B2C request rejected",
        )
    return body

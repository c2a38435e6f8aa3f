import re

# Safaricom numbering plan: 2547XXXXXXXX and 2541XXXXXXXX
PHONE_REGEX = re.compile(r"^254[17]\d{8}$")
NON_DIGITS = re.compile(r"\D")


def normalize_phone(phone) -> str:
    """Canonicalize a Kenyan mobile number to 254XXXXXXXXX."""
    digits = NON_DIGITS.sub("", str(phone or ""))

    if digits.startswith("0"):
        digits = "254" + digits[1:]
    elif not digits.startswith("254"):
        digits = "254" + digits

    if not PHONE_REGEX.match(digits):
        raise ValueError("Invalid phone number format. Use format: 254XXXXXXXXX")

    return digits

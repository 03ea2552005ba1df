import re

PHONE_REGEX = re.compile(r"^(?:\+91)?[6-9]\d{9}$")
REPEATED_DIGITS_REGEX = re.compile(r"(\d)\1{7,}")
PINCODE_REGEX = re.compile(r"^[1-9]\d{5}$")


def _strip_phone(phone: str) -> str:
    return re.sub(r"[\s\-()]", "", phone or "")


def normalize_phone(phone: str) -> str:
    phone = _strip_phone(phone)

    if phone.startswith("+91"):
        phone = phone[3:]
    elif len(phone) == 12 and phone.startswith("91"):
        phone = phone[2:]

    if not PHONE_REGEX.match(phone):
        raise ValueError("Invalid phone number format")

    return "+91" + phone


def is_valid_phone(phone: str) -> bool:
    try:
        normalize_phone(phone)
    except ValueError:
        return False
    return True


def has_repeated_digits(phone: str) -> bool:
    """8 or more identical consecutive digits (9999999999, 9000000001)."""
    return bool(REPEATED_DIGITS_REGEX.search(_strip_phone(phone)))


def is_valid_pincode(pincode) -> bool:
    return bool(PINCODE_REGEX.match(str(pincode or "").strip()))

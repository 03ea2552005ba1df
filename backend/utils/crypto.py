import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from config.env import BANK_DATA_ENCRYPTION_KEY
from utils.errors import CodReconError, ValidationError


def _fernet() -> Fernet:
    seed = (BANK_DATA_ENCRYPTION_KEY or "").strip()
    if not seed:
        raise CodReconError("Bank data encryption key is not configured", code="ENCRYPTION_KEY_MISSING")
    # Fernet wants 32 url-safe bytes; derive them from the configured secret.
    return Fernet(base64.urlsafe_b64encode(hashlib.sha256(seed.encode("utf-8")).digest()))


def mask_account_number(number: str) -> str:
    digits = "".join(ch for ch in str(number or "") if ch.isalnum())
    if len(digits) <= 4:
        return "*" * len(digits)
    return "*" * (len(digits) - 4) + digits[-4:]


def seal_payout_target(target: dict) -> dict:
    """
    Copy of a payout target with the bank account number replaced by its
    Fernet token and a masked form for display.
    """
    number = (target or {}).get("bank_account_number")
    if not number:
        raise ValidationError("Bank account number missing", code="PAYOUT_TARGET_MISSING")

    sealed = {k: v for k, v in target.items() if k != "bank_account_number"}
    sealed["bank_account_encrypted"] = _fernet().encrypt(str(number).encode("utf-8")).decode("utf-8")
    sealed["bank_account_masked"] = mask_account_number(number)
    return sealed


def beneficiary_account_number(target: dict) -> str | None:
    """Plain account number of a payout target, sealed or not."""
    token = (target or {}).get("bank_account_encrypted")
    if not token:
        return (target or {}).get("bank_account_number")

    try:
        raw = _fernet().decrypt(token.encode("utf-8"))
    except InvalidToken:
        raise ValidationError("Payout target bank details cannot be decrypted", code="INVALID_CIPHERTEXT")
    return raw.decode("utf-8")

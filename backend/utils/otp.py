import hashlib
import secrets
from datetime import timedelta

from utils.clock import utc_now

OTP_TTL_MINUTES = 5


# ===============================
# GENERATE 6-DIGIT COD CONFIRMATION CODE
# ===============================
def generate_otp() -> str:
    return str(secrets.randbelow(900000) + 100000)


def otp_expiry():
    return utc_now() + timedelta(minutes=OTP_TTL_MINUTES)


# ===============================
# HASH / VERIFY (verification requests keep only the salted hash)
# ===============================
def hash_otp(otp: str, salt: str) -> str:
    return hashlib.sha256(f"{salt}:{otp}".encode()).hexdigest()


def verify_hash(plain_otp: str, hashed_otp: str, salt: str) -> bool:
    return secrets.compare_digest(hash_otp(plain_otp, salt), hashed_otp)

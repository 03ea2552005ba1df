import json
import os
from dotenv import load_dotenv

load_dotenv()

# =====================================================
# ENV
# =====================================================
ENV = os.getenv("ENV", "development")

# =====================================================
# DATABASE
# =====================================================
MONGO_URI = os.getenv("MONGO_URI") or os.getenv("MONGODB_URI")

# =====================================================
# SECRETS
# =====================================================
ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")
CARRIER_WEBHOOK_SECRET = os.getenv("CARRIER_WEBHOOK_SECRET")
VERIFICATION_WEBHOOK_SECRET = os.getenv("VERIFICATION_WEBHOOK_SECRET")
PAYOUT_PROVIDER = os.getenv("PAYOUT_PROVIDER", "razorpayx")
RAZORPAYX_KEY_ID = os.getenv("RAZORPAYX_KEY_ID")
RAZORPAYX_KEY_SECRET = os.getenv("RAZORPAYX_KEY_SECRET")
RAZORPAYX_ACCOUNT_NUMBER = os.getenv("RAZORPAYX_ACCOUNT_NUMBER")
RAZORPAYX_WEBHOOK_SECRET = os.getenv("RAZORPAYX_WEBHOOK_SECRET")

# =====================================================
# RECONCILIATION
# =====================================================
RECON_ABS_TOLERANCE_PAISE = int(os.getenv("RECON_ABS_TOLERANCE_PAISE", 1000))
RECON_PCT_TOLERANCE = float(os.getenv("RECON_PCT_TOLERANCE", 1.0))
DISCREPANCY_DEADLINE_DAYS = int(os.getenv("DISCREPANCY_DEADLINE_DAYS", 7))
MISSING_SHIPMENT_MAX_CHECKS = int(os.getenv("MISSING_SHIPMENT_MAX_CHECKS", 6))
CONFLICT_MAX_RETRIES = int(os.getenv("CONFLICT_MAX_RETRIES", 5))
FILE_INGEST_CONCURRENCY = int(os.getenv("FILE_INGEST_CONCURRENCY", 20))

# =====================================================
# EXTERNAL CALLS
# =====================================================
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", 20))
POLL_TIMEOUT_SECONDS = float(os.getenv("POLL_TIMEOUT_SECONDS", 10))
VERIFICATION_TIMEOUT_SECONDS = float(os.getenv("VERIFICATION_TIMEOUT_SECONDS", 120))
EXTERNAL_MAX_ATTEMPTS = int(os.getenv("EXTERNAL_MAX_ATTEMPTS", 4))
EXTERNAL_BACKOFF_BASE_SECONDS = float(os.getenv("EXTERNAL_BACKOFF_BASE_SECONDS", 1.0))

# =====================================================
# LOCKS / CACHES
# =====================================================
# Worst case for one payout call: every attempt times out, plus the backoff sleeps between them.
PAYOUT_CALL_WINDOW_SECONDS = (
    EXTERNAL_MAX_ATTEMPTS * PROVIDER_TIMEOUT_SECONDS
    + EXTERNAL_BACKOFF_BASE_SECONDS * (2 ** (EXTERNAL_MAX_ATTEMPTS - 1) - 1)
)
# The payout lease never expires inside that window.
PAYOUT_LOCK_TTL_SECONDS = max(
    int(os.getenv("PAYOUT_LOCK_TTL_SECONDS", 0)),
    int(PAYOUT_CALL_WINDOW_SECONDS) + 30,
)
BATCH_LOCK_TTL_SECONDS = int(os.getenv("BATCH_LOCK_TTL_SECONDS", 120))
PINCODE_CACHE_TTL_SECONDS = int(os.getenv("PINCODE_CACHE_TTL_SECONDS", 3600))

# =====================================================
# CARRIER POLLING
# =====================================================
POLL_CARRIERS = [c.strip() for c in os.getenv("POLL_CARRIERS", "").split(",") if c.strip()]
CARRIER_POLL_URLS = json.loads(os.getenv("CARRIER_POLL_URLS", "{}") or "{}")

# =====================================================
# CORS
# =====================================================
CORS_ALLOWED_ORIGINS = os.getenv("CORS_ALLOWED_ORIGINS", "").split(",")

# --------------------------------------------------
# DATA ENCRYPTION
# --------------------------------------------------
BANK_DATA_ENCRYPTION_KEY = os.getenv("BANK_DATA_ENCRYPTION_KEY")


def validate_production_env() -> None:
    if (ENV or "").lower() != "production":
        return

    required = {
        "ADMIN_API_KEY": ADMIN_API_KEY,
        "CARRIER_WEBHOOK_SECRET": CARRIER_WEBHOOK_SECRET,
        "VERIFICATION_WEBHOOK_SECRET": VERIFICATION_WEBHOOK_SECRET,
        "RAZORPAYX_KEY_ID": RAZORPAYX_KEY_ID,
        "RAZORPAYX_KEY_SECRET": RAZORPAYX_KEY_SECRET,
        "RAZORPAYX_ACCOUNT_NUMBER": RAZORPAYX_ACCOUNT_NUMBER,
        "RAZORPAYX_WEBHOOK_SECRET": RAZORPAYX_WEBHOOK_SECRET,
        "BANK_DATA_ENCRYPTION_KEY": BANK_DATA_ENCRYPTION_KEY,
        "MONGODB_URI": MONGO_URI,
    }

    invalid = []
    for key, value in required.items():
        val = (value or "").strip()
        if not val or val.startswith("CHANGE_THIS"):
            invalid.append(key)

    if invalid:
        raise RuntimeError(f"Production env misconfigured. Invalid keys: {', '.join(sorted(invalid))}")

# backend/config/constants.py

# All money values are integer paise.

# -----------------------------
# RISK SCORING
# -----------------------------

RISK_WEIGHTS = {
    "history": 30,
    "phone": 15,
    "address": 15,
    "order_value": 10,
    "velocity": 15,
    "time_of_day": 5,
    "pincode": 10,
}

RISK_LEVEL_THRESHOLDS = [
    (30, "low", "allow"),
    (50, "medium", "require_verification"),
    (70, "high", "disable_cod"),
]
RISK_LEVEL_CEILING = ("critical", "block")

HIGH_ORDER_VALUE_PAISE = 10000_00
ELEVATED_ORDER_VALUE_PAISE = 5000_00

VELOCITY_THRESHOLDS = {
    "1h": (2, 1.0),
    "24h": (5, 0.7),
    "7d": (10, 0.4),
}

NIGHT_HOURS_IST = range(0, 6)
NEUTRAL_PINCODE_RTO_PERCENT = 50
PINCODE_LOOKBACK_DAYS = 90

ADDRESS_FIELD_POINTS = {
    "house": 15,
    "street": 15,
    "locality": 15,
    "city": 15,
    "state": 15,
    "pincode": 25,
}
VAGUE_ADDRESS_MARKERS = ("near", "opposite", "opp", "behind", "beside", "next to", "in front of")
VAGUE_ADDRESS_PENALTY = 0.2

# -----------------------------
# DISCREPANCY SEVERITY
# -----------------------------

# (bucket, max absolute paise, max percent); upper bounds inclusive
SEVERITY_BUCKETS = [
    ("minor", 50_00, 5.0),
    ("medium", 200_00, 15.0),
    ("major", 500_00, 30.0),
]
SEVERITY_CEILING = "critical"

# -----------------------------
# REMITTANCE
# -----------------------------

PLATFORM_FEE_BPS = 50                 # 0.5 % of gross
ELIGIBILITY_LOOKBACK_DAYS = 90
CREDIT_WINDOW_DAYS = 30

# Strictest tier first.
ACCELERATED_TIERS = [
    {
        "tier": "t_plus_1",
        "lookback_days": 1,
        "min_account_age_days": 365,
        "min_monthly_cod_orders": 500,
        "max_rto_percent": 10.0,
        "max_dispute_percent": 2.0,
        "fee_bps": 200,
        "credit_multiple": 1.0,
    },
    {
        "tier": "t_plus_2",
        "lookback_days": 2,
        "min_account_age_days": 180,
        "min_monthly_cod_orders": 300,
        "max_rto_percent": 12.0,
        "max_dispute_percent": 3.0,
        "fee_bps": 150,
        "credit_multiple": 0.75,
    },
    {
        "tier": "t_plus_3",
        "lookback_days": 3,
        "min_account_age_days": 90,
        "min_monthly_cod_orders": 100,
        "max_rto_percent": 15.0,
        "max_dispute_percent": 5.0,
        "fee_bps": 100,
        "credit_multiple": 0.5,
    },
]
STANDARD_TIER = "standard"

# -----------------------------
# HEALTH ALERTS
# -----------------------------

HEALTH_LOOKBACK_DAYS = 7
STUCK_PAYOUT_HOURS = 24
MIN_RECON_SUCCESS_RATE = 0.9
MAX_UNMATCHED_QUEUE = 100

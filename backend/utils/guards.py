import hashlib
import hmac

from fastapi import Header, HTTPException, status

from config.env import ADMIN_API_KEY

# -------------------------------
# Finance Operator Guard
# -------------------------------

async def require_admin(
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
    x_operator: str | None = Header(default=None, alias="X-Operator"),
) -> str:
    """Returns the operator identifier recorded on audit entries."""
    if not ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Admin access is not configured",
        )
    if not x_admin_key or not hmac.compare_digest(x_admin_key, ADMIN_API_KEY):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient permissions",
        )
    return (x_operator or "operator").strip() or "operator"


# -------------------------------
# Webhook Signature Guard
# -------------------------------

def verify_hmac_signature(secret: str | None, raw_body: bytes, received_signature: str | None):
    if not secret:
        raise HTTPException(500, "Webhook secret not configured")
    if not received_signature:
        raise HTTPException(401, "Missing signature")

    computed = hmac.new(
        secret.encode(),
        raw_body,
        hashlib.sha256,
    ).hexdigest()

    if not hmac.compare_digest(computed, received_signature):
        raise HTTPException(401, "Invalid webhook signature")

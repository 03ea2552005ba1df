import base64
import hashlib
import hmac
import json
import socket
from urllib import request, error

from config.env import (
    PAYOUT_PROVIDER,
    PROVIDER_TIMEOUT_SECONDS,
    RAZORPAYX_KEY_ID,
    RAZORPAYX_KEY_SECRET,
    RAZORPAYX_ACCOUNT_NUMBER,
    RAZORPAYX_WEBHOOK_SECRET,
)
from utils.crypto import beneficiary_account_number
from utils.errors import (
    CodReconError,
    ExternalServiceError,
    ExternalTimeoutError,
    PayoutError,
    ValidationError,
)

RAZORPAYX_API_BASE = "https://api.razorpay.com/v1"

# Provider payout states -> settlement outcome
SETTLED_STATUSES = {"processed"}
FAILED_STATUSES = {"failed", "rejected", "reversed", "cancelled"}


def _basic_auth_header(key_id: str, key_secret: str) -> str:
    token = f"{key_id}:{key_secret}".encode("utf-8")
    return "Basic " + base64.b64encode(token).decode("utf-8")


def _send(req: request.Request, timeout: float) -> dict:
    try:
        with request.urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode("utf-8"))
    except error.HTTPError as e:
        details = e.read().decode("utf-8", errors="ignore")
        if 400 <= e.code < 500 and e.code != 429:
            raise PayoutError(f"Payout provider rejected request: {details}", provider_status=e.code)
        raise ExternalServiceError(f"Payout provider error ({e.code}): {details}")
    except (socket.timeout, TimeoutError):
        raise ExternalTimeoutError("Payout provider timed out")
    except error.URLError as e:
        if isinstance(e.reason, (socket.timeout, TimeoutError)):
            raise ExternalTimeoutError("Payout provider timed out")
        raise ExternalServiceError(f"Payout provider request failed: {e.reason}")


class RazorpayXProvider:
    """
    Bank payouts through RazorpayX: contact -> fund account -> payout.
    Blocking; callers run it in a thread under a timeout.
    """

    name = "razorpayx"

    def __init__(
        self,
        key_id: str | None = RAZORPAYX_KEY_ID,
        key_secret: str | None = RAZORPAYX_KEY_SECRET,
        account_number: str | None = RAZORPAYX_ACCOUNT_NUMBER,
        timeout: float = PROVIDER_TIMEOUT_SECONDS,
    ):
        if not key_id or not key_secret or not account_number:
            raise CodReconError("RazorpayX payout config missing", code="PAYOUT_CONFIG_MISSING")
        self.auth_header = _basic_auth_header(key_id, key_secret)
        self.account_number = account_number
        self.timeout = timeout

    def _post(self, path: str, payload: dict, headers: dict | None = None) -> dict:
        req = request.Request(
            url=f"{RAZORPAYX_API_BASE}{path}",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "Authorization": self.auth_header,
                **(headers or {}),
            },
            method="POST",
        )
        return _send(req, self.timeout)

    def _get(self, path: str) -> dict:
        req = request.Request(
            url=f"{RAZORPAYX_API_BASE}{path}",
            headers={"Authorization": self.auth_header},
            method="GET",
        )
        return _send(req, self.timeout)

    def initiate_payout(self, *, target: dict, amount: int, idempotency_key: str, metadata: dict) -> dict:
        """
        `target` is the account's payout target (holder name, IFSC, account
        number or its encrypted form). `amount` is paise. The same
        idempotency key never moves money twice at the provider.
        """
        beneficiary_account = beneficiary_account_number(target)
        if not beneficiary_account or not target.get("ifsc_code"):
            raise ValidationError("Payout target bank details are missing", code="PAYOUT_TARGET_MISSING")
        if amount <= 0:
            raise ValidationError("Invalid payout amount")

        reference_id = str(metadata.get("batch_id") or idempotency_key)
        notes = {k: str(v) for k, v in metadata.items()}

        contact = self._post("/contacts", {
            "name": target.get("account_holder_name") or "Merchant",
            "type": "vendor",
            "reference_id": str(metadata.get("account_id") or reference_id),
            "email": target.get("email"),
            "contact": target.get("phone"),
            "notes": notes,
        })
        contact_id = contact.get("id")
        if not contact_id:
            raise ExternalServiceError("Payout provider contact creation failed")

        fund_account = self._post("/fund_accounts", {
            "contact_id": contact_id,
            "account_type": "bank_account",
            "bank_account": {
                "name": target.get("account_holder_name"),
                "ifsc": target.get("ifsc_code"),
                "account_number": beneficiary_account,
            },
        })
        fund_account_id = fund_account.get("id")
        if not fund_account_id:
            raise ExternalServiceError("Payout provider fund account creation failed")

        payout = self._post(
            "/payouts",
            {
                "account_number": self.account_number,
                "fund_account_id": fund_account_id,
                "amount": amount,
                "currency": "INR",
                "mode": "IMPS" if amount <= 5_00_000_00 else "NEFT",
                "purpose": "payout",
                "queue_if_low_balance": True,
                "reference_id": reference_id,
                "narration": "COD remittance",
                "notes": notes,
            },
            headers={"X-Payout-Idempotency": idempotency_key},
        )
        payout_id = payout.get("id")
        if not payout_id:
            raise ExternalServiceError("Payout creation failed at provider")

        return {
            "provider": self.name,
            "provider_reference": payout_id,
            "status": payout.get("status"),
            "raw": payout,
        }

    def fetch_payout_status(self, provider_reference: str) -> dict:
        payout = self._get(f"/payouts/{provider_reference}")
        return {
            "provider": self.name,
            "provider_reference": payout.get("id"),
            "status": payout.get("status"),
            "failure_reason": (payout.get("status_details") or {}).get("description"),
            "raw": payout,
        }


def get_payout_provider():
    provider = (PAYOUT_PROVIDER or "").lower()
    if provider != "razorpayx":
        raise CodReconError(f"Unsupported payout provider {provider}", code="PAYOUT_PROVIDER_UNSUPPORTED")
    return RazorpayXProvider()


def settlement_status(provider_status: str | None) -> str | None:
    """Map a provider payout state to completed / failed, None while in flight."""
    status = (provider_status or "").lower()
    if status in SETTLED_STATUSES:
        return "completed"
    if status in FAILED_STATUSES:
        return "failed"
    return None


def verify_razorpayx_webhook_signature(*, raw_body: bytes, received_signature: str) -> bool:
    if not RAZORPAYX_WEBHOOK_SECRET:
        raise CodReconError("RazorpayX webhook secret is not configured", code="WEBHOOK_SECRET_MISSING")
    expected = hmac.new(
        RAZORPAYX_WEBHOOK_SECRET.encode("utf-8"),
        raw_body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(expected, received_signature or "")

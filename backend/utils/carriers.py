import json
import logging
from urllib import error, parse, request

from config.env import CARRIER_POLL_URLS, POLL_TIMEOUT_SECONDS
from utils.errors import ExternalServiceError, NotFoundError, ValidationError
from utils.ingest import normalize_poll_response
from utils.reconciliation import reconcile_report
from utils.retry import call_with_timeout, with_backoff

logger = logging.getLogger(__name__)


class HttpPollClient:
    """
    Fetches the collection status of one AWB from a carrier tracking
    endpoint. `url_template` carries an `{awb}` placeholder.
    """

    def __init__(self, carrier: str, url_template: str, timeout: float = POLL_TIMEOUT_SECONDS):
        self.carrier = carrier
        self.url_template = url_template
        self.timeout = timeout

    def fetch(self, shipment_ref: str) -> dict:
        url = self.url_template.format(awb=parse.quote(shipment_ref, safe=""))
        req = request.Request(url=url, headers={"Accept": "application/json"}, method="GET")
        try:
            with request.urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except error.HTTPError as e:
            details = e.read().decode("utf-8", errors="ignore")
            raise ExternalServiceError(f"{self.carrier} poll failed ({e.code}): {details}")
        except (error.URLError, TimeoutError, ValueError) as e:
            raise ExternalServiceError(f"{self.carrier} poll failed: {e}")


_POLL_CLIENTS: dict = {}


def register_poll_client(carrier: str, client) -> None:
    _POLL_CLIENTS[carrier.lower()] = client


def get_poll_client(carrier: str):
    key = (carrier or "").lower()
    client = _POLL_CLIENTS.get(key)
    if client:
        return client

    template = CARRIER_POLL_URLS.get(key)
    if not template:
        raise NotFoundError(f"No poll client configured for carrier {carrier}")
    client = HttpPollClient(key, template)
    _POLL_CLIENTS[key] = client
    return client


async def poll_collection(db, *, carrier: str, shipment_ref: str, client=None, now=None) -> dict:
    """Pull one shipment's status and feed it through reconciliation."""
    client = client or get_poll_client(carrier)

    response = await with_backoff(
        lambda: call_with_timeout(client.fetch, shipment_ref, timeout=POLL_TIMEOUT_SECONDS),
        label=f"poll:{carrier}",
    )

    report = normalize_poll_response(response, shipment_ref=shipment_ref, carrier=carrier)
    if report is None:
        return {"collectible_id": None, "outcome": "not_terminal", "duplicate": False}

    if report.collectible_ref != shipment_ref:
        raise ValidationError(
            f"Poll response for {shipment_ref} names {report.collectible_ref}",
            code="REFERENCE_MISMATCH",
        )
    return await reconcile_report(db, report, now=now)

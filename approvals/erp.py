"""
approvals/erp.py

Bridge to the Medad ERP.

Pieces:
- MedadSettings: connection settings read from app config.
- TokenCache: bearer token with an explicit lifecycle (built once in create_app,
  refreshed `margin` seconds before the expiry announced by /getToken).
- MedadClient: thin HTTP client over a requests.Session (timeouts, retry policy,
  one token refresh on 401).
- ExternalSyncAdapter: posts an approved payment / fully accepted order and records
  the outcome on the record.

IMPORTANT:
- Sync always runs AFTER the approval transaction committed. A failed sync is recorded
  (FAILED + error text) and never rolls the approval back.
- Prerequisites are checked before any network call; a record that cannot succeed is
  marked FAILED with the list of reasons.
- Document posts (/invoice, /payment) are not retried automatically: a timed out post
  may still have been booked by the ERP. Operators re-send with the manual sync route.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Mapping, Optional, Tuple

import requests

from .errors import ExternalSyncError, TransientInfrastructureError
from .models import (
    SYNC_FAILED,
    SYNC_SENT,
    Order,
    PaymentRequest,
    to_decimal,
)
from .resilience import RetryPolicy
from .utils import utcnow
from .workflow.gate import FieldPatch, StageGate, run_unit_of_work, transaction

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Medad integration is not configured on server"

_ERRORISH_MESSAGE = re.compile(r"(validation|exception|error|failed|invalid)", re.IGNORECASE)


def _non_empty(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _pick_first(*values: Any) -> Any:
    for value in values:
        if _non_empty(value):
            return value
    return None


def _number(value: Any) -> float:
    """Decimal column -> JSON number for ERP payloads."""
    return float(to_decimal(value))


def _iso_date(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    return value.isoformat()


# ---------------------------------------------------------------------
# Settings & token cache
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class MedadSettings:
    base_url: str = ""
    username: str = ""
    password: str = ""
    subscription_id: str = ""
    branch: str = ""
    year: str = ""
    payment_type: str = ""
    payment_version: str = ""
    timeout: float = 10.0
    token_refresh_margin: int = 60

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "MedadSettings":
        return cls(
            base_url=(config.get("MEDAD_BASE_URL") or "").rstrip("/"),
            username=config.get("MEDAD_USERNAME") or "",
            password=config.get("MEDAD_PASSWORD") or "",
            subscription_id=config.get("MEDAD_SUBSCRIPTION_ID") or "",
            branch=str(config.get("MEDAD_BRANCH") or ""),
            year=str(config.get("MEDAD_YEAR") or ""),
            payment_type=config.get("MEDAD_PAYMENT_TYPE") or "",
            payment_version=config.get("MEDAD_PAYMENT_VERSION") or "",
            timeout=float(config.get("MEDAD_TIMEOUT_SECONDS", 10.0)),
            token_refresh_margin=int(config.get("MEDAD_TOKEN_REFRESH_MARGIN", 60)),
        )

    @property
    def configured(self) -> bool:
        return all(_non_empty(v) for v in (self.base_url, self.username, self.password, self.subscription_id))


class TokenCache:
    """
    Cached bearer token.

    fetch() returns (token, expires_in_seconds). The token is reused until `margin`
    seconds before it expires; invalidate() forces the next get() to fetch again.
    """

    def __init__(
        self,
        fetch: Callable[[], Tuple[str, float]],
        margin: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self._margin = margin
        self._clock = clock
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._valid_until = 0.0

    def get(self) -> str:
        with self._lock:
            if self._token is not None and self._clock() < self._valid_until:
                return self._token
            token, expires_in = self._fetch()
            self._token = token
            self._valid_until = self._clock() + float(expires_in) - self._margin
            return token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._valid_until = 0.0


def parse_body(response: requests.Response) -> Any:
    """JSON body, {"raw": text} when it is not JSON, None when empty."""
    text = response.text
    if not text:
        return None
    try:
        return response.json()
    except ValueError:
        return {"raw": text}


def is_logical_failure(body: Any) -> bool:
    """A 2xx response whose body still reports an error."""
    if not isinstance(body, dict):
        return False
    if body.get("success") is False or body.get("error") or body.get("errors"):
        return True
    message = body.get("message")
    return isinstance(message, str) and bool(_ERRORISH_MESSAGE.search(message))


def request_token(session: requests.Session, settings: MedadSettings) -> Tuple[str, float]:
    """POST /getToken. Returns (token, expires_in)."""
    if not settings.configured:
        raise ExternalSyncError(NOT_CONFIGURED)

    payload = {
        "username": settings.username,
        "password": settings.password,
        "subscriptionId": settings.subscription_id,
        "branch": int(settings.branch) if settings.branch.isdigit() else settings.branch,
        "year": settings.year,
    }
    response = session.post(
        f"{settings.base_url}/getToken",
        json=payload,
        headers={"Accept": "application/json"},
        timeout=settings.timeout,
    )
    body = parse_body(response)
    if not response.ok:
        raise ExternalSyncError(f"Medad token request failed (HTTP {response.status_code})", body=body)

    data = body if isinstance(body, dict) else {}
    nested = data.get("data") if isinstance(data.get("data"), dict) else {}
    token = data.get("token") or data.get("access_token") or nested.get("token")
    if not token:
        raise ExternalSyncError("Medad token not found in response", body=body)

    expires_in = data.get("expiresIn") or data.get("expires_in") or 3600
    logger.info("Obtained Medad token (expires in %ss)", expires_in)
    return token, float(expires_in)


# ---------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------
class MedadClient:
    def __init__(
        self,
        settings: MedadSettings,
        *,
        token_cache: TokenCache,
        session: Optional[requests.Session] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.settings = settings
        self.token_cache = token_cache
        self.session = session or requests.Session()
        self.retry_policy = retry_policy or RetryPolicy()

    @property
    def configured(self) -> bool:
        return self.settings.configured

    def _send(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        headers = {
            "Authorization": f"Bearer {self.token_cache.get()}",
            "Accept": "application/json",
        }
        return self.session.request(
            method,
            f"{self.settings.base_url}{path}",
            headers=headers,
            timeout=self.settings.timeout,
            **kwargs,
        )

    def _call(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        response = self._send(method, path, **kwargs)
        if response.status_code == 401:
            logger.info("Medad answered 401 for %s %s; refreshing token", method, path)
            self.token_cache.invalidate()
            response = self._send(method, path, **kwargs)
        return response

    def request(self, method: str, path: str, *, idempotent: bool = False, **kwargs: Any) -> Any:
        """
        Call the ERP and return the parsed body.

        Raises ExternalSyncError for HTTP errors and logical error bodies.
        Connection failures are retried for idempotent calls only.
        """
        if not self.configured:
            raise ExternalSyncError(NOT_CONFIGURED)

        what = f"Medad {method} {path}"
        if idempotent:
            response = self.retry_policy.run(lambda: self._call(method, path, **kwargs), what=what)
        else:
            try:
                response = self._call(method, path, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as error:
                raise TransientInfrastructureError(f"{what} failed: {error}") from error

        body = parse_body(response)
        if not response.ok:
            raise ExternalSyncError(f"{what} failed (HTTP {response.status_code})", body=body)
        if is_logical_failure(body):
            raise ExternalSyncError(f"{what} reported an error", body=body)
        return body

    def list_customers(self, account_type: Optional[str] = None, page: int = 1, limit: int = 10) -> Any:
        params = {"page": page, "limit": limit}
        if account_type:
            params["accountType"] = account_type
        return self.request("GET", "/customers", params=params, idempotent=True)

    def post_invoice(self, payload: dict) -> Any:
        return self.request("POST", "/invoice", json=payload)

    def post_payment(self, payload: dict) -> Any:
        return self.request("POST", "/payment", json=payload)


# ---------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------
def order_prerequisites(order: Order) -> list[str]:
    reasons = []
    client = order.client
    if client is None or not _non_empty(client.medad_customer_id):
        reasons.append("Missing linked Medad customer")
    if not _non_empty(order.warehouse_no) and not (client and _non_empty(client.medad_warehouse_no)):
        reasons.append("Missing warehouse_no")
    if not _non_empty(order.medad_salesman_id):
        reasons.append("Missing medad_salesman_id")
    if not order.lines:
        reasons.append("Order has no products")
    elif any(not _non_empty(line.medad_product_no) for line in order.lines):
        reasons.append("One or more products missing medad_product_no")
    return reasons


def payment_prerequisites(payment: PaymentRequest) -> list[str]:
    reasons = []
    if payment.is_beneficiary_account_added is False:
        reasons.append("Beneficiary account is not added in Medad")
    if payment.manager_paid_amount is None:
        reasons.append("Missing manager paid amount")
    return reasons


def build_invoice_payload(order: Order) -> dict:
    client = order.client
    order_date = _iso_date(order.created_at)

    details = []
    for index, line in enumerate(order.lines, start=1):
        line_total = to_decimal(line.line_total)
        tax = to_decimal(line.vat)
        tax_percent = (tax / line_total * 100) if line_total > 0 else Decimal("0")
        details.append(
            {
                "lineNo": index,
                "productNo": line.medad_product_no,
                "productDesc": line.description or "",
                "price": _number(line.unit_price),
                "quantity": _number(line.quantity),
                "subTotal": float(line_total),
                "vatPrice": float(tax),
                "tax": float(tax),
                "taxPercent": round(float(tax_percent), 4),
                "subTotalPlusTax": _number(line.subtotal),
            }
        )

    payload = {
        "orderNo": order.sequence_id,
        "orderDate": order_date,
        "customerId": client.medad_customer_id,
        "salesmanId": order.medad_salesman_id,
        "warehouseNo": client.medad_warehouse_no or order.warehouse_no,
        "note": order.notes or "",
        "net": _number(order.total_price),
        "total": _number(order.total_subtotal),
        "totalTax": _number(order.total_vat),
        "totalCost": _number(order.total_price),
        "dueDate": _iso_date(order.delivery_date) or order_date,
        "address1": client.medad_address1 or client.street or "",
        "address2": _pick_first(
            client.medad_address2, client.medad_city, client.medad_region, client.city, client.region
        ) or "",
        "vatNo": client.medad_vat_no or client.tax_number or "",
        "orderTaxInPrice": "N",
        "customerName": client.company_name or client.client_name or "",
        "Order_Detail": details,
    }
    if client.medad_vat_type is not None:
        payload["vatType"] = client.medad_vat_type
    return payload


def build_payment_payload(payment: PaymentRequest, settings: MedadSettings) -> dict:
    return {
        "paymentType": settings.payment_type,
        "version": settings.payment_version,
        "referenceNo": payment.sequence_id,
        "date": _iso_date(payment.manager_updated_at or payment.updated_at),
        "dueDate": _iso_date(payment.due_date),
        "beneficiaryId": payment.beneficiary_id,
        "beneficiaryName": payment.beneficiary_name,
        "beneficiaryType": payment.beneficiary_type,
        "amount": _number(payment.manager_paid_amount),
        "dueAmount": _number(payment.accountant_due_amount),
        "remainingAmount": _number(payment.remaining_amount),
        "priority": payment.priority,
        "statement": payment.statement or "",
        "note": payment.manager_note or payment.description or "",
    }


def _body_value(body: Any, *keys: str) -> Any:
    if not isinstance(body, dict):
        return None
    nested = body.get("data") if isinstance(body.get("data"), dict) else {}
    return _pick_first(*(body.get(key) for key in keys), *(nested.get(key) for key in keys))


# ---------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------
@dataclass
class SyncOutcome:
    status: str
    error: Optional[str] = None
    payload: Optional[dict] = None
    response: Any = None
    external_ids: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == SYNC_SENT

    def to_dict(self) -> dict:
        data = {"status": self.status, "error": self.error}
        data.update(self.external_ids)
        return data


class ExternalSyncAdapter:
    """Posts approved records to Medad and stores the outcome on the record."""

    def __init__(self, client: MedadClient, *, clock: Callable[[], datetime] = utcnow):
        self.client = client
        self.clock = clock

    def sync_order(self, order: Order) -> SyncOutcome:
        reasons = order_prerequisites(order)
        if reasons:
            outcome = SyncOutcome(status=SYNC_FAILED, error="; ".join(reasons))
        else:
            payload = build_invoice_payload(order)
            outcome = self._post(self.client.post_invoice, payload)
            if outcome.ok:
                outcome.external_ids = {
                    "medad_order_no": _body_value(outcome.response, "orderNo", "order_no"),
                    "medad_invoice_no": _body_value(outcome.response, "invoiceNo", "invoice_no"),
                }
        return self._record(Order, order.id, order.sequence_id, outcome)

    def sync_payment(self, payment: PaymentRequest) -> SyncOutcome:
        reasons = payment_prerequisites(payment)
        if reasons:
            outcome = SyncOutcome(status=SYNC_FAILED, error="; ".join(reasons))
        else:
            payload = build_payment_payload(payment, self.client.settings)
            outcome = self._post(self.client.post_payment, payload)
            if outcome.ok:
                outcome.external_ids = {
                    "medad_payment_no": _body_value(outcome.response, "paymentNo", "payment_no", "id"),
                }
        return self._record(PaymentRequest, payment.id, payment.sequence_id, outcome)

    def _post(self, send: Callable[[dict], Any], payload: dict) -> SyncOutcome:
        try:
            body = send(payload)
        except ExternalSyncError as error:
            return SyncOutcome(status=SYNC_FAILED, error=error.message, payload=payload, response=error.body)
        except TransientInfrastructureError as error:
            return SyncOutcome(status=SYNC_FAILED, error=error.message, payload=payload)

        if not isinstance(body, dict):
            return SyncOutcome(
                status=SYNC_FAILED,
                error="Malformed Medad response",
                payload=payload,
                response={"raw": body} if body is not None else None,
            )
        return SyncOutcome(status=SYNC_SENT, payload=payload, response=body)

    def _record(self, model: type, record_id: int, sequence_id: str, outcome: SyncOutcome) -> SyncOutcome:
        if outcome.ok:
            logger.info("%s %s sent to Medad %s", model.__name__, sequence_id, outcome.external_ids)
        else:
            logger.warning("%s %s Medad sync failed: %s", model.__name__, sequence_id, outcome.error)

        values = {
            "medad_sync_status": outcome.status,
            "medad_error": outcome.error,
            "medad_synced_at": self.clock(),
        }
        if outcome.payload is not None:
            values["medad_payload"] = outcome.payload
        if outcome.response is not None:
            values["medad_response"] = outcome.response
        values.update({key: value for key, value in outcome.external_ids.items() if value is not None})

        gate = StageGate(model, clock=self.clock)
        patch = FieldPatch.build(model, **values)

        def unit():
            with transaction():
                gate.guarded_update(record_id, [], patch)

        run_unit_of_work(unit, what=f"record {model.__name__} sync outcome")
        return outcome

"""
Invoice Ninja API client.
The provider is the authority on invoice and payment state; everything stored
locally is a cache of what it reports.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx
import structlog

from ..config import settings
from ..errors import UpstreamError, ValidationError
from ..models.models import Firm

log = structlog.get_logger(__name__)

# Invoice Ninja v5 status ids -> local invoice status
STATUS_BY_ID = {
    "1": "draft",
    "2": "sent",
    "3": "partial",
    "4": "paid",
    "5": "cancelled",
    "6": "cancelled",  # reversed
    "-1": "overdue",
}
PAID_STATUS_ID = "4"


@dataclass(frozen=True)
class PaymentStatus:
    is_paid: bool
    status: str
    status_id: Optional[str] = None


@dataclass(frozen=True)
class CreatedInvoice:
    id: str
    number: str
    amount: Decimal
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None


class InvoiceProvider(ABC):
    """The three provider calls the workflow engine depends on."""

    @abstractmethod
    def check_payment_status(self, external_id: str) -> PaymentStatus:
        ...

    @abstractmethod
    def create_invoice(self, payload: Dict[str, Any]) -> CreatedInvoice:
        ...

    @abstractmethod
    def mark_paid(self, external_id: str) -> None:
        ...

    def invoice_url(self, external_id: str) -> Optional[str]:
        return None


def _parse_date(value: Any) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _parse_amount(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError):
        raise UpstreamError(f"Provider returned an invalid amount: {value!r}")


class InvoiceNinjaClient(InvoiceProvider):
    """Client for interacting with the Invoice Ninja API"""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        if not base_url or not token:
            raise ValueError("Invoice Ninja base URL and token are required")
        # Accept both "https://host" and "https://host/api/v1"
        base = base_url.rstrip("/")
        if base.endswith("/api/v1"):
            base = base[: -len("/api/v1")]
        self.base_url = base
        self.token = token
        self.timeout = timeout if timeout is not None else settings.invoice_provider_timeout_s
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "X-API-TOKEN": self.token,
            "X-Requested-With": "XMLHttpRequest",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _request(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        """Make HTTP request and return the ``data`` object of the response"""
        url = f"{self.base_url}/api/v1/{endpoint.lstrip('/')}"
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.request(method, url, headers=self._headers(), **kwargs)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(
                f"Invoice provider returned {exc.response.status_code} for {method} {endpoint}",
                operation=endpoint,
            ) from exc
        except httpx.HTTPError as exc:
            # Timeouts land here too: outcome unknown, caller must re-read before retrying
            raise UpstreamError(f"Invoice provider request failed: {exc}", operation=endpoint) from exc
        except ValueError as exc:
            raise UpstreamError("Invoice provider returned a non-JSON body", operation=endpoint) from exc

        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict):
            raise UpstreamError("Invoice provider response has no data object", operation=endpoint)
        return data

    def check_payment_status(self, external_id: str) -> PaymentStatus:
        data = self._request("GET", f"invoices/{external_id}")
        if "status_id" not in data:
            raise UpstreamError("Invoice provider response has no status_id", operation="check_payment_status")
        status_id = str(data["status_id"])
        status = STATUS_BY_ID.get(status_id)
        if status is None:
            raise UpstreamError(f"Unknown invoice status id {status_id!r}", operation="check_payment_status")
        return PaymentStatus(is_paid=status_id == PAID_STATUS_ID, status=status, status_id=status_id)

    def create_invoice(self, payload: Dict[str, Any]) -> CreatedInvoice:
        data = self._request("POST", "invoices", json=payload)
        if not data.get("id") or not data.get("number"):
            raise UpstreamError("Invoice provider did not return an invoice id and number", operation="create_invoice")
        return CreatedInvoice(
            id=str(data["id"]),
            number=str(data["number"]),
            amount=_parse_amount(data.get("amount", 0)),
            invoice_date=_parse_date(data.get("date")),
            due_date=_parse_date(data.get("due_date")),
        )

    def mark_paid(self, external_id: str) -> None:
        self._request("PUT", f"invoices/{external_id}", params={"action": "paid"}, json={})
        log.info("invoice_provider.marked_paid", external_id=external_id)

    def invoice_url(self, external_id: str) -> Optional[str]:
        return f"{self.base_url}/invoices/{external_id}"


def provider_for_firm(firm: Firm) -> InvoiceNinjaClient:
    if not firm.invoice_provider_url or not firm.invoice_provider_token:
        raise ValidationError(f"Firm {firm.id} has no invoicing provider configured")
    return InvoiceNinjaClient(firm.invoice_provider_url, firm.invoice_provider_token)


def get_provider_factory():
    """Request dependency returning ``firm -> provider``; replaced in tests."""
    return provider_for_firm

"""
External accounting system client.

The accounting system mirrors each order as Quote -> Sales Order -> Invoice
-> E-Way Bill. Every create operation returns the external document id or
raises ExternalSyncFailure.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from app.config import settings
from app.core.exceptions import ExternalSyncFailure

logger = logging.getLogger(__name__)


class DocumentType:
    """Accounting document kinds, in lifecycle order."""
    CUSTOMER = "customer"
    QUOTE = "quote"
    SALES_ORDER = "sales_order"
    INVOICE = "invoice"
    EWAY_BILL = "eway_bill"


class AccountingClient(ABC):
    """Operations the order lifecycle needs from the accounting system."""

    @abstractmethod
    async def create_or_get_customer(self, customer: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    async def create_quote(self, customer_id: str, order: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    async def create_sales_order(self, customer_id: str, order: Dict[str, Any], quote_id: Optional[str] = None) -> str:
        pass

    @abstractmethod
    async def create_invoice(self, customer_id: str, order: Dict[str, Any], sales_order_id: Optional[str] = None) -> str:
        pass

    @abstractmethod
    async def create_eway_bill(self, invoice_id: str, eway_bill: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    async def email_document(self, document_type: str, document_id: str, to_email: Optional[str] = None) -> None:
        """Ask the accounting system to email a document to the customer."""
        pass


class HttpAccountingClient(AccountingClient):
    """
    REST client for the accounting system.

    Endpoints follow the Zoho Books v3 layout: POST /{resource} with the
    organization id as a query parameter, response body keyed by the
    singular resource name.
    """

    CONTACTS_PATH = "/contacts"
    ESTIMATES_PATH = "/estimates"
    SALES_ORDERS_PATH = "/salesorders"
    INVOICES_PATH = "/invoices"
    EWAY_BILLS_PATH = "/ewaybills"

    # document type -> (collection path, response key, id field)
    DOCUMENTS = {
        DocumentType.CUSTOMER: (CONTACTS_PATH, "contact", "contact_id"),
        DocumentType.QUOTE: (ESTIMATES_PATH, "estimate", "estimate_id"),
        DocumentType.SALES_ORDER: (SALES_ORDERS_PATH, "salesorder", "salesorder_id"),
        DocumentType.INVOICE: (INVOICES_PATH, "invoice", "invoice_id"),
        DocumentType.EWAY_BILL: (EWAY_BILLS_PATH, "ewaybill", "ewaybill_id"),
    }

    def __init__(
        self,
        base_url: str = None,
        token: str = None,
        organization_id: str = None,
        timeout: float = None,
    ):
        self.base_url = (base_url or settings.ACCOUNTING_API_URL).rstrip("/")
        self.token = token or settings.ACCOUNTING_API_TOKEN
        self.organization_id = organization_id or settings.ACCOUNTING_ORGANIZATION_ID
        self.timeout = timeout or settings.ACCOUNTING_TIMEOUT

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Zoho-oauthtoken {self.token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, payload: Dict = None, params: Dict = None) -> Dict:
        if not self.base_url or not self.token:
            raise ExternalSyncFailure("Accounting API not configured", error_code="NOT_CONFIGURED")

        query = {"organization_id": self.organization_id}
        query.update(params or {})

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    json=payload,
                    params=query,
                    headers=self._headers(),
                )
        except httpx.TimeoutException:
            raise ExternalSyncFailure(f"Accounting API timed out on {method} {path}", error_code="TIMEOUT")
        except httpx.HTTPError as e:
            raise ExternalSyncFailure(f"Accounting API unreachable: {e}", error_code="UNREACHABLE")

        try:
            data = response.json()
        except ValueError:
            data = {}

        # Zoho returns code == 0 on success alongside the HTTP status
        if response.status_code >= 400 or data.get("code", 0) != 0:
            raise ExternalSyncFailure(
                data.get("message") or f"Accounting API returned HTTP {response.status_code}",
                error_code="REJECTED",
                details={"status_code": response.status_code, "path": path},
            )
        return data

    async def _create(self, document_type: str, payload: Dict) -> str:
        path, key, id_field = self.DOCUMENTS[document_type]
        data = await self._request("POST", path, payload)
        document_id = (data.get(key) or {}).get(id_field)
        if not document_id:
            raise ExternalSyncFailure(
                f"Accounting API returned no {id_field}",
                error_code="MISSING_ID",
                details={"document_type": document_type},
            )
        logger.info(f"Created {document_type} {document_id} in accounting system")
        return str(document_id)

    async def create_or_get_customer(self, customer: Dict[str, Any]) -> str:
        email = customer.get("email")
        if email:
            data = await self._request("GET", self.CONTACTS_PATH, params={"email": email})
            contacts = data.get("contacts") or []
            if contacts:
                return str(contacts[0]["contact_id"])

        return await self._create(DocumentType.CUSTOMER, {
            "contact_name": customer.get("name") or customer.get("id"),
            "contact_type": "customer",
            "email": email,
            "phone": customer.get("phone"),
        })

    def _line_items(self, order: Dict[str, Any]) -> list:
        return [
            {
                "name": item["item_reference"],
                "description": item.get("item_name") or item["category"],
                "quantity": float(item["quantity"]),
                "rate": float(item.get("unit_price") or item.get("list_price") or 0),
            }
            for item in order.get("items", [])
        ]

    async def create_quote(self, customer_id: str, order: Dict[str, Any]) -> str:
        return await self._create(DocumentType.QUOTE, {
            "customer_id": customer_id,
            "reference_number": order["lead_id"],
            "line_items": self._line_items(order),
            "shipping_charge": float(order.get("delivery_charges") or 0),
        })

    async def create_sales_order(self, customer_id: str, order: Dict[str, Any], quote_id: Optional[str] = None) -> str:
        return await self._create(DocumentType.SALES_ORDER, {
            "customer_id": customer_id,
            "reference_number": order["lead_id"],
            "estimate_id": quote_id,
            "line_items": self._line_items(order),
            "shipping_charge": float(order.get("delivery_charges") or 0),
        })

    async def create_invoice(self, customer_id: str, order: Dict[str, Any], sales_order_id: Optional[str] = None) -> str:
        return await self._create(DocumentType.INVOICE, {
            "customer_id": customer_id,
            "invoice_number": order.get("invoice_number"),
            "reference_number": order["lead_id"],
            "salesorder_id": sales_order_id,
            "line_items": self._line_items(order),
            "shipping_charge": float(order.get("delivery_charges") or 0),
        })

    async def create_eway_bill(self, invoice_id: str, eway_bill: Dict[str, Any]) -> str:
        return await self._create(DocumentType.EWAY_BILL, {
            "entity_id": invoice_id,
            "entity_type": "invoice",
            "distance": eway_bill.get("distance_km") or 0,
            "transport_mode": eway_bill.get("transport_mode") or "Road",
            "vehicle_number": eway_bill.get("vehicle_number") or "",
            "vehicle_type": eway_bill.get("vehicle_type") or "Regular",
        })

    async def email_document(self, document_type: str, document_id: str, to_email: Optional[str] = None) -> None:
        path, _, _ = self.DOCUMENTS[document_type]
        payload = {"to_mail_ids": [to_email]} if to_email else {}
        await self._request("POST", f"{path}/{document_id}/email", payload)
        logger.info(f"Accounting system emailed {document_type} {document_id}")

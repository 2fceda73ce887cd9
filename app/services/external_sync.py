"""
Accounting Document Sync

Mirrors orders into the external accounting system after lifecycle
transitions commit:

    vendor_accepted   -> Quote, then Sales Order
    out_for_delivery  -> Invoice, then E-Way Bill (only once the invoice exists)

Each document is created at most once per order. Before calling the
accounting system the worker re-reads the order and skips documents whose
external id is already stored; the id is then written with a
compare-and-set UPDATE (... WHERE column IS NULL). Jobs for the same
(lead_id, document) are serialized by an in-process lock, so two triggers
racing on one order cannot both create the document.

Transitions never wait on this module: they enqueue a SyncJob on the
SyncQueue and return. Failures are logged and leave the id unset so the
next trigger (or the optional retry sweep) completes the sync.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from app.core.exceptions import ExternalSyncFailure
from app.models.order import Order, OrderDelivery, OrderStatus
from app.services.accounting_client import AccountingClient, DocumentType
from app.services.email_service import EmailService

logger = logging.getLogger(__name__)


class SyncTrigger:
    """Transitions that require accounting documents."""
    VENDOR_ACCEPTED = OrderStatus.VENDOR_ACCEPTED.value
    OUT_FOR_DELIVERY = OrderStatus.OUT_FOR_DELIVERY.value


TRIGGER_DOCUMENTS: Dict[str, List[str]] = {
    SyncTrigger.VENDOR_ACCEPTED: [DocumentType.QUOTE, DocumentType.SALES_ORDER],
    SyncTrigger.OUT_FOR_DELIVERY: [DocumentType.INVOICE, DocumentType.EWAY_BILL],
}

EXTERNAL_ID_COLUMNS: Dict[str, str] = {
    DocumentType.CUSTOMER: "external_customer_id",
    DocumentType.QUOTE: "external_quote_id",
    DocumentType.SALES_ORDER: "external_sales_order_id",
    DocumentType.INVOICE: "external_invoice_id",
    DocumentType.EWAY_BILL: "external_eway_bill_id",
}

# Statuses at or past each trigger, used by the retry sweep
_AFTER_VENDOR_ACCEPT = [
    OrderStatus.VENDOR_ACCEPTED.value,
    OrderStatus.PAYMENT_DONE.value,
    OrderStatus.ORDER_CONFIRMED.value,
    OrderStatus.TRUCK_LOADING.value,
    OrderStatus.IN_TRANSIT.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
    OrderStatus.DELIVERED.value,
]
_AFTER_OUT_FOR_DELIVERY = [
    OrderStatus.OUT_FOR_DELIVERY.value,
    OrderStatus.DELIVERED.value,
]


@dataclass(frozen=True)
class SyncJob:
    lead_id: str
    trigger: str


def order_payload(order: Order) -> dict:
    """Plain-data view of an order for the accounting client."""
    return {
        "lead_id": order.lead_id,
        "invoice_number": order.invoice_number,
        "customer_id": order.customer_id,
        "vendor_id": order.vendor_id,
        "delivery_address": order.delivery_address,
        "delivery_pincode": order.delivery_pincode,
        "delivery_charges": order.delivery_charges or Decimal("0"),
        "total_amount": order.total_amount or Decimal("0"),
        "items": [
            {
                "item_reference": item.item_reference,
                "item_name": item.item_name,
                "category": item.category,
                "quantity": item.quantity,
                "list_price": item.list_price,
                "unit_price": item.unit_price,
                "loading_charges": item.loading_charges,
            }
            for item in order.items
        ],
    }


class ExternalSyncOrchestrator:
    """Creates missing accounting documents for an order, idempotently."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: AccountingClient,
        email_service: Optional[EmailService] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.email_service = email_service
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        # Holders plus waiters per lock; the entry goes when this drops to 0
        self._lock_users: Dict[Tuple[str, str], int] = {}

    @asynccontextmanager
    async def _lock_for(self, lead_id: str, document: str):
        """Serialize work on one (lead_id, document) within this process."""
        key = (lead_id, document)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def run(self, job: SyncJob) -> Dict[str, Optional[str]]:
        """
        Sync every document the trigger requires, in order.

        Stops at the first failure: later documents reference earlier ones.
        Returns document type -> external id (None when not synced).
        """
        documents = TRIGGER_DOCUMENTS.get(job.trigger)
        if documents is None:
            logger.warning(f"No accounting documents for trigger '{job.trigger}' ({job.lead_id})")
            return {}

        synced: Dict[str, Optional[str]] = {document: None for document in documents}
        for document in documents:
            try:
                synced[document] = await self.sync_document(job.lead_id, document)
            except ExternalSyncFailure as e:
                logger.error(
                    f"Accounting sync failed for {job.lead_id} {document} "
                    f"[{e.error_code}]: {e.message}"
                )
                break
            if synced[document] is None:
                break
        return synced

    async def sync_document(self, lead_id: str, document: str) -> Optional[str]:
        """Create one document if absent. Returns its external id."""
        column = EXTERNAL_ID_COLUMNS[document]

        async with self._lock_for(lead_id, document):
            async with self.session_factory() as db:
                order = await self._load_order(db, lead_id)
                if order is None:
                    logger.warning(f"Accounting sync skipped, order {lead_id} not found")
                    return None

                existing = getattr(order, column)
                if existing:
                    logger.info(f"{document} already synced for {lead_id}: {existing}")
                    return existing

                if document == DocumentType.EWAY_BILL and not order.external_invoice_id:
                    logger.info(f"E-Way Bill for {lead_id} waits for the invoice")
                    return None

                customer_id = await self._ensure_customer(db, order)
                document_id = await self._create(db, order, document, customer_id)

                stored = await self._store_id(db, order, column, document_id)
                await db.commit()

            if stored:
                await self._notify(order, document, document_id)
                return document_id

            # Another process stored an id first; report the persisted one
            async with self.session_factory() as db:
                order = await self._load_order(db, lead_id)
                return getattr(order, column) if order else document_id

    async def _load_order(self, db: AsyncSession, lead_id: str) -> Optional[Order]:
        result = await db.execute(select(Order).where(Order.lead_id == lead_id))
        return result.scalar_one_or_none()

    async def _ensure_customer(self, db: AsyncSession, order: Order) -> str:
        if order.external_customer_id:
            return order.external_customer_id

        async with self._lock_for(order.lead_id, DocumentType.CUSTOMER):
            await db.refresh(order, attribute_names=["external_customer_id"])
            if order.external_customer_id:
                return order.external_customer_id

            customer_id = await self.client.create_or_get_customer({
                "id": order.customer_id,
                "name": order.receiver_name,
                "email": order.order_email,
                "phone": order.receiver_phone,
            })
            await self._store_id(db, order, EXTERNAL_ID_COLUMNS[DocumentType.CUSTOMER], customer_id)
            await db.commit()
            return customer_id

    async def _create(self, db: AsyncSession, order: Order, document: str, customer_id: str) -> str:
        payload = order_payload(order)

        if document == DocumentType.QUOTE:
            return await self.client.create_quote(customer_id, payload)
        if document == DocumentType.SALES_ORDER:
            return await self.client.create_sales_order(customer_id, payload, order.external_quote_id)
        if document == DocumentType.INVOICE:
            return await self.client.create_invoice(customer_id, payload, order.external_sales_order_id)
        if document == DocumentType.EWAY_BILL:
            return await self.client.create_eway_bill(
                order.external_invoice_id, await self._eway_bill_details(db, order)
            )
        raise ValueError(f"Unknown accounting document type: {document}")

    async def _eway_bill_details(self, db: AsyncSession, order: Order) -> dict:
        result = await db.execute(select(OrderDelivery).where(OrderDelivery.lead_id == order.lead_id))
        delivery = result.scalar_one_or_none()
        snapshot = order.pricing_snapshot or {}
        return {
            "distance_km": snapshot.get("max_distance_km", 0),
            "transport_mode": "Road",
            "vehicle_number": delivery.truck_number if delivery else None,
            "vehicle_type": delivery.vehicle_type if delivery else None,
        }

    async def _store_id(self, db: AsyncSession, order: Order, column: str, document_id: str) -> bool:
        """Write the id only if the column is still empty. Returns True when written."""
        attr = getattr(Order, column)
        result = await db.execute(
            update(Order)
            .where(Order.id == order.id, attr.is_(None))
            .values({column: document_id})
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(
                f"{column} for {order.lead_id} was set concurrently; "
                f"external document {document_id} is a duplicate"
            )
            return False
        # Already persisted; keep the versioned ORM flush from writing it again
        set_committed_value(order, column, document_id)
        return True

    async def _notify(self, order: Order, document: str, document_id: str) -> None:
        """Best effort document emails. Failures are logged only."""
        try:
            await self.client.email_document(document, document_id, order.order_email)
        except Exception as e:
            logger.warning(f"Accounting email for {document} {document_id} ({order.lead_id}) failed: {e}")

        if self.email_service and order.order_email:
            try:
                # smtplib blocks; keep it off the event loop
                await asyncio.to_thread(
                    self.email_service.send_document_email,
                    order.order_email, order.lead_id, document, document_id,
                )
            except Exception as e:
                logger.warning(f"Document email for {order.lead_id} failed: {e}")

    async def pending_jobs(self, limit: int = 100) -> List[SyncJob]:
        """Orders whose status implies a document that is still missing."""
        jobs: List[SyncJob] = []
        async with self.session_factory() as db:
            accepted = await db.execute(
                select(Order.lead_id)
                .where(
                    Order.is_active.is_(True),
                    Order.order_status.in_(_AFTER_VENDOR_ACCEPT),
                    or_(Order.external_quote_id.is_(None), Order.external_sales_order_id.is_(None)),
                )
                .limit(limit)
            )
            jobs.extend(SyncJob(lead_id, SyncTrigger.VENDOR_ACCEPTED) for lead_id in accepted.scalars())

            dispatched = await db.execute(
                select(Order.lead_id)
                .where(
                    Order.is_active.is_(True),
                    Order.order_status.in_(_AFTER_OUT_FOR_DELIVERY),
                    or_(Order.external_invoice_id.is_(None), Order.external_eway_bill_id.is_(None)),
                )
                .limit(limit)
            )
            jobs.extend(SyncJob(lead_id, SyncTrigger.OUT_FOR_DELIVERY) for lead_id in dispatched.scalars())
        return jobs


class SyncQueue:
    """
    In-process job queue drained by worker tasks.

    Started and stopped by the application lifespan. enqueue() never blocks
    and never raises on behalf of the accounting system.
    """

    def __init__(self, orchestrator: ExternalSyncOrchestrator, worker_count: int = 2):
        self.orchestrator = orchestrator
        self.worker_count = max(1, worker_count)
        self._queue: "asyncio.Queue[SyncJob]" = asyncio.Queue()
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def enqueue(self, lead_id: str, trigger: str) -> SyncJob:
        job = SyncJob(lead_id=lead_id, trigger=trigger)
        self._queue.put_nowait(job)
        logger.debug(f"Queued accounting sync {trigger} for {lead_id}")
        return job

    async def start(self) -> None:
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(f"sync-worker-{i}"))
            for i in range(self.worker_count)
        ]
        logger.info(f"Accounting sync queue started with {self.worker_count} workers")

    async def _worker(self, name: str) -> None:
        while True:
            job = await self._queue.get()
            try:
                result = await self.orchestrator.run(job)
                logger.info(f"{name}: {job.trigger} sync for {job.lead_id} -> {result}")
            except Exception:
                logger.exception(f"{name}: accounting sync crashed for {job.lead_id} ({job.trigger})")
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every queued job has been processed."""
        await self._queue.join()

    async def stop(self) -> None:
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Accounting sync queue stopped")

    def qsize(self) -> int:
        return self._queue.qsize()

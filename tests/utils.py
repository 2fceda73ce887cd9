"""
Shared test helpers: actors, fakes, warehouse builders and order seeding.
"""
import math
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select

from app.core.security import Actor
from app.models.order import Order, OrderItem, OrderStatus, OrderStatusEvent
from app.models.warehouse import Warehouse
from app.services.geocoding_service import (
    GeocodeLookupError,
    GeocodeProvider,
    GeocodeResult,
)


# Mumbai GPO
DESTINATION_PINCODE = "400001"
DESTINATION = (19.0760, 72.8777)

CUSTOMER = Actor(id="cust-1", role="customer")
OTHER_CUSTOMER = Actor(id="cust-2", role="customer")
VENDOR = Actor(id="vend-1", role="vendor")
OTHER_VENDOR = Actor(id="vend-2", role="vendor")
ADMIN = Actor(id="admin-1", role="admin")

# Statuses in lifecycle order; every status past pending has been placed
LIFECYCLE = [
    OrderStatus.PENDING.value,
    OrderStatus.ORDER_PLACED.value,
    OrderStatus.VENDOR_ACCEPTED.value,
    OrderStatus.PAYMENT_DONE.value,
    OrderStatus.ORDER_CONFIRMED.value,
    OrderStatus.TRUCK_LOADING.value,
    OrderStatus.IN_TRANSIT.value,
    OrderStatus.SHIPPED.value,
    OrderStatus.OUT_FOR_DELIVERY.value,
    OrderStatus.DELIVERED.value,
]


def offset_north(latitude: float, distance_km: float) -> float:
    """Latitude lying distance_km due north along the meridian."""
    return latitude + math.degrees(distance_km / 6371)


def future_date(days: int = 5) -> date:
    return datetime.now(timezone.utc).date() + timedelta(days=days)


class FakeGeocodeProvider(GeocodeProvider):
    """Resolves known pincodes, fails for everything else."""

    def __init__(self, known: Optional[Dict[str, Tuple[float, float]]] = None):
        self.known = known if known is not None else {DESTINATION_PINCODE: DESTINATION}
        self.calls: List[str] = []

    async def geocode(self, pincode: str) -> GeocodeResult:
        self.calls.append(pincode)
        if pincode not in self.known:
            raise GeocodeLookupError(f"No result for {pincode}", status="ZERO_RESULTS")
        latitude, longitude = self.known[pincode]
        return GeocodeResult(
            pincode=pincode,
            latitude=latitude,
            longitude=longitude,
            formatted_address=f"Pincode {pincode}, India",
        )


class RecordingDispatcher:
    """Stands in for SyncQueue; remembers what was enqueued."""

    def __init__(self):
        self.jobs: List[Tuple[str, str]] = []

    def enqueue(self, lead_id: str, trigger: str):
        self.jobs.append((lead_id, trigger))

    @property
    def running(self) -> bool:
        return True

    def qsize(self) -> int:
        return len(self.jobs)


class MutableClock:
    """Controllable UTC clock for the state machine."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def make_warehouse(
    code: str,
    distance_km: float,
    categories=("cement", "iron"),
    vendor_id: str = VENDOR.id,
    base_charge="500",
    per_km_charge="10",
    free_delivery_radius_km: float = 0,
    free_delivery_threshold="0",
    max_delivery_radius_km: float = 0,
    minimum_order_value="0",
    is_active: bool = True,
) -> Warehouse:
    return Warehouse(
        code=code,
        name=f"Warehouse {code}",
        vendor_id=vendor_id,
        latitude=offset_north(DESTINATION[0], distance_km),
        longitude=DESTINATION[1],
        served_categories=list(categories),
        base_charge=Decimal(base_charge),
        per_km_charge=Decimal(per_km_charge),
        minimum_order_value=Decimal(minimum_order_value),
        free_delivery_radius_km=free_delivery_radius_km,
        free_delivery_threshold=Decimal(free_delivery_threshold),
        max_delivery_radius_km=max_delivery_radius_km,
        is_active=is_active,
    )


CART_ITEMS = [
    {"item_reference": "CEM-OPC53", "item_name": "OPC 53 Grade", "category": "cement",
     "quantity": Decimal("50"), "list_price": Decimal("400")},
    {"item_reference": "TMT-12MM", "item_name": "TMT Bar 12mm", "category": "iron",
     "quantity": Decimal("2"), "list_price": Decimal("5500")},
]

LINE_PRICING = [
    {"item_reference": "CEM-OPC53", "unit_price": Decimal("380"), "loading_charges": Decimal("250")},
    {"item_reference": "TMT-12MM", "unit_price": Decimal("5300"), "loading_charges": Decimal("0")},
]


# ==================== Seeding ====================

async def seed_order(
    session_factory,
    status: str,
    lead_id: str = "CEMENT-TEST0001",
    customer_id: str = CUSTOMER.id,
    vendor_id: str = VENDOR.id,
    placed_at: Optional[datetime] = None,
    **overrides,
) -> str:
    """Insert an order directly in a given status, as if it had got there legitimately."""
    placed = status not in (OrderStatus.PENDING.value,)
    async with session_factory() as session:
        order = Order(
            lead_id=lead_id,
            customer_id=customer_id,
            vendor_id=vendor_id,
            order_status=status,
            subtotal=Decimal("31000"),
            delivery_charges=Decimal("700") if placed else Decimal("0"),
            total_amount=Decimal("31700") if placed else Decimal("31000"),
            address_change_history=[],
            delivery_date_change_history=[],
        )
        if placed:
            order.invoice_number = f"INV-20260101-{lead_id[-6:]}"
            order.delivery_address = "Plot 7, Nariman Point"
            order.delivery_pincode = DESTINATION_PINCODE
            order.delivery_expected_date = future_date()
            order.placed_at = placed_at or datetime.now(timezone.utc)
            order.order_email = "buyer@example.com"
            order.pricing_snapshot = {"total_charge": "700.00", "max_distance_km": 20.0}
        for key, value in overrides.items():
            setattr(order, key, value)
        order.items = [
            OrderItem(
                line_number=i,
                item_reference=item["item_reference"],
                item_name=item["item_name"],
                category=item["category"],
                quantity=item["quantity"],
                list_price=item["list_price"],
                loading_charges=Decimal("0"),
            )
            for i, item in enumerate(CART_ITEMS, start=1)
        ]
        session.add(order)
        await session.commit()
    return lead_id


async def load_order(session_factory, lead_id: str) -> Order:
    async with session_factory() as session:
        result = await session.execute(select(Order).where(Order.lead_id == lead_id))
        return result.scalar_one()


async def ledger_events(session_factory, lead_id: str) -> List[OrderStatusEvent]:
    async with session_factory() as session:
        result = await session.execute(
            select(OrderStatusEvent)
            .where(OrderStatusEvent.lead_id == lead_id)
            .order_by(OrderStatusEvent.id)
        )
        return list(result.scalars().all())

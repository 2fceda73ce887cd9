"""
Delivery Pricing API Endpoints.

Public checkout quote: geocodes the pincode, picks the serving warehouse
per item and returns the delivery charge, or estimates delivery time per
warehouse. Nothing is persisted.
"""
from dataclasses import asdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Query
from sqlalchemy import select

from app.api.deps import DB, Geocoder, PricingEngine
from app.models.warehouse import Warehouse
from app.schemas.delivery import (
    DeliveryCalculateRequest,
    DeliveryCalculateResponse,
    DeliveryEstimateItem,
    DeliveryEstimateResponse,
    DeliveryItemQuote,
    Destination,
)
from app.services.delivery_pricing import PricingItem


router = APIRouter(tags=["Delivery"])


@router.post(
    "/calculate",
    response_model=DeliveryCalculateResponse,
    summary="Calculate delivery charges",
    description="""
    Quote delivery for a set of items to a pincode.

    Each item is served by the nearest active warehouse that ships its
    category within range. Items with no such warehouse come back with
    deliverable=false and a reason.
    """
)
async def calculate_delivery(
    request: DeliveryCalculateRequest,
    db: DB,
    geocoder: Geocoder,
    engine: PricingEngine,
):
    destination = await geocoder.lookup(request.pincode)

    query = select(Warehouse).where(Warehouse.is_active.is_(True))
    if request.vendor_id:
        query = query.where(Warehouse.vendor_id == request.vendor_id)
    result = await db.execute(query)
    warehouses = list(result.scalars().all())

    quote = engine.quote_order(
        [
            PricingItem(item.item_reference, item.category, item.quantity, item.unit_price)
            for item in request.items
        ],
        destination.latitude,
        destination.longitude,
        warehouses,
        is_approximate=destination.is_approximate,
    )

    return DeliveryCalculateResponse(
        destination=Destination(**destination.to_dict()),
        items=[DeliveryItemQuote(**q.to_snapshot()) for q in quote.quotes],
        total_delivery_charge=quote.total_charge or Decimal("0.00"),
        estimated_days=quote.estimated_days,
        all_deliverable=quote.deliverable,
        is_approximate=destination.is_approximate,
        calculated_at=datetime.now(timezone.utc),
    )


@router.get(
    "/estimate-time/{pincode}",
    response_model=DeliveryEstimateResponse,
    summary="Estimate delivery time",
)
async def estimate_delivery_time(
    pincode: str,
    db: DB,
    geocoder: Geocoder,
    engine: PricingEngine,
    category: Optional[str] = Query(None),
    vendor_id: Optional[str] = Query(None),
):
    """Delivery time to a pincode from each active warehouse, nearest first."""
    destination = await geocoder.lookup(pincode)

    query = select(Warehouse).where(Warehouse.is_active.is_(True))
    if vendor_id:
        query = query.where(Warehouse.vendor_id == vendor_id)
    result = await db.execute(query)

    estimates = engine.estimate_delivery_times(
        destination.latitude, destination.longitude, result.scalars().all(), category=category
    )
    in_range = [e.estimated_days for e in estimates if e.within_range]

    return DeliveryEstimateResponse(
        destination=Destination(**destination.to_dict()),
        estimates=[DeliveryEstimateItem(**asdict(e)) for e in estimates],
        fastest_days=min(in_range) if in_range else None,
        is_approximate=destination.is_approximate,
    )

"""
Delivery Pricing Engine

Picks the serving warehouse for each item and prices delivery by distance.

Selection:
    eligible = active warehouses serving the item's category and within
               their delivery radius
    winner   = minimum great-circle distance, then lowest base charge,
               then warehouse code

Charge:
    base_charge + per_km_charge * max(0, distance - free_delivery_radius)
    floored at 0, and 0 when the order subtotal reaches free_delivery_threshold.

An item with no eligible warehouse yields an Undeliverable result.
"""
import logging
import math
from dataclasses import dataclass, field, asdict
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional, Union

from app.config import settings

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371
TWO_PLACES = Decimal("0.01")


def _money(value) -> Decimal:
    return Decimal(str(value or 0)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in km, rounded to 2 places."""
    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    delta_lat = math.radians(lat2 - lat1)
    delta_lon = math.radians(lon2 - lon1)

    a = (math.sin(delta_lat / 2) ** 2 +
         math.cos(lat1_rad) * math.cos(lat2_rad) *
         math.sin(delta_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return round(EARTH_RADIUS_KM * c, 2)


def estimated_days(distance_km: float) -> int:
    if distance_km <= 10:
        return 1
    if distance_km <= 50:
        return 2
    if distance_km <= 100:
        return 3
    if distance_km <= 200:
        return 5
    return 7


def delivery_time_label(distance_km: float) -> str:
    if distance_km <= 10:
        return "Same day delivery available"
    if distance_km <= 50:
        return "1-2 days delivery available"
    if distance_km <= 100:
        return "2-3 days delivery available"
    if distance_km <= 200:
        return "3-5 days delivery available"
    return "5-7 days delivery available"


def distance_category(distance_km: float) -> str:
    if distance_km <= 10:
        return "Local"
    if distance_km <= 50:
        return "Regional"
    if distance_km <= 100:
        return "State"
    if distance_km <= 200:
        return "Inter-state"
    return "Long Distance"


@dataclass
class PricingItem:
    item_reference: str
    category: str
    quantity: Decimal
    unit_price: Decimal = Decimal("0")

    @property
    def subtotal(self) -> Decimal:
        return Decimal(str(self.unit_price or 0)) * Decimal(str(self.quantity))


@dataclass
class DeliveryQuote:
    """Priced delivery of one item from its serving warehouse."""
    item_reference: str
    category: str
    warehouse_id: str
    warehouse_code: str
    warehouse_name: str
    distance_km: float
    charge: Decimal
    is_free_delivery: bool
    free_delivery_reason: Optional[str]
    estimated_days: int
    delivery_time: str
    distance_category: str
    meets_minimum_order: bool
    is_approximate: bool = False
    deliverable: bool = True

    def to_snapshot(self) -> dict:
        data = asdict(self)
        data["charge"] = str(self.charge)
        return data


@dataclass
class Undeliverable:
    """No active warehouse serves the category within range."""
    item_reference: str
    category: str
    reason: str
    deliverable: bool = False

    def to_snapshot(self) -> dict:
        return asdict(self)


ItemQuote = Union[DeliveryQuote, Undeliverable]


@dataclass
class DeliveryEstimate:
    """Distance and delivery time from one warehouse, without pricing."""
    warehouse_code: str
    warehouse_name: str
    categories: List[str]
    distance_km: float
    estimated_days: int
    delivery_time: str
    distance_category: str
    within_range: bool


@dataclass
class OrderDeliveryQuote:
    """Per-item quotes for a whole order plus totals."""
    quotes: List[ItemQuote] = field(default_factory=list)
    is_approximate: bool = False

    @property
    def deliverable(self) -> bool:
        return all(q.deliverable for q in self.quotes)

    @property
    def undeliverable(self) -> List[Undeliverable]:
        return [q for q in self.quotes if not q.deliverable]

    @property
    def total_charge(self) -> Decimal:
        return sum((q.charge for q in self.quotes if q.deliverable), Decimal("0.00"))

    @property
    def max_distance_km(self) -> float:
        return max((q.distance_km for q in self.quotes if q.deliverable), default=0.0)

    @property
    def estimated_days(self) -> Optional[int]:
        days = [q.estimated_days for q in self.quotes if q.deliverable]
        return max(days) if days else None


class DeliveryPricingEngine:
    """Stateless warehouse selection and delivery charge calculation."""

    def __init__(self, search_radius_km: float = None):
        # Radius for warehouses that do not set max_delivery_radius_km
        self.search_radius_km = (
            search_radius_km if search_radius_km is not None
            else settings.MAX_WAREHOUSE_SEARCH_RADIUS_KM
        )

    def _radius_for(self, warehouse) -> float:
        radius = warehouse.max_delivery_radius_km or 0
        return radius if radius > 0 else self.search_radius_km

    def select_warehouse(self, category: str, latitude: float, longitude: float, warehouses: Iterable):
        """Return (warehouse, distance) for the serving warehouse, or None."""
        candidates = []
        for warehouse in warehouses:
            if warehouse.is_active is False or not warehouse.serves(category):
                continue
            distance = haversine_distance(
                warehouse.latitude, warehouse.longitude, latitude, longitude
            )
            radius = self._radius_for(warehouse)
            if radius and distance > radius:
                continue
            candidates.append((distance, _money(warehouse.base_charge), str(warehouse.code), warehouse))

        if not candidates:
            return None

        distance, _, _, warehouse = min(candidates, key=lambda c: (c[0], c[1], c[2]))
        return warehouse, distance

    def calculate_charge(self, warehouse, distance_km: float, subtotal: Decimal):
        """Return (charge, is_free, reason) for a distance from a warehouse."""
        threshold = _money(warehouse.free_delivery_threshold)
        if threshold > 0 and Decimal(str(subtotal)) >= threshold:
            return Decimal("0.00"), True, f"Free delivery for orders above ₹{threshold}"

        free_radius = Decimal(str(warehouse.free_delivery_radius_km or 0))
        chargeable_km = max(Decimal("0"), Decimal(str(distance_km)) - free_radius)
        charge = _money(warehouse.base_charge) + _money(warehouse.per_km_charge) * chargeable_km
        charge = max(Decimal("0"), charge).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)

        if charge == 0:
            return charge, True, f"Free delivery within {warehouse.free_delivery_radius_km}km radius"
        return charge, False, None

    def quote_item(
        self,
        item: PricingItem,
        latitude: float,
        longitude: float,
        warehouses: Iterable,
        order_subtotal: Decimal = None,
        is_approximate: bool = False,
    ) -> ItemQuote:
        selected = self.select_warehouse(item.category, latitude, longitude, warehouses)
        if selected is None:
            logger.info(f"No warehouse serves {item.category} for item {item.item_reference}")
            return Undeliverable(
                item_reference=item.item_reference,
                category=item.category,
                reason=f"No warehouse delivers {item.category} to this location",
            )

        warehouse, distance = selected
        subtotal = order_subtotal if order_subtotal is not None else item.subtotal
        charge, is_free, reason = self.calculate_charge(warehouse, distance, subtotal)

        return DeliveryQuote(
            item_reference=item.item_reference,
            category=item.category,
            warehouse_id=str(warehouse.id),
            warehouse_code=warehouse.code,
            warehouse_name=warehouse.name,
            distance_km=distance,
            charge=charge,
            is_free_delivery=is_free,
            free_delivery_reason=reason,
            estimated_days=estimated_days(distance),
            delivery_time=delivery_time_label(distance),
            distance_category=distance_category(distance),
            meets_minimum_order=Decimal(str(subtotal)) >= _money(warehouse.minimum_order_value),
            is_approximate=is_approximate,
        )

    def quote_order(
        self,
        items: List[PricingItem],
        latitude: float,
        longitude: float,
        warehouses: Iterable,
        is_approximate: bool = False,
    ) -> OrderDeliveryQuote:
        """Quote every item against the same destination and order subtotal."""
        warehouses = list(warehouses)
        order_subtotal = sum((item.subtotal for item in items), Decimal("0"))
        quotes = [
            self.quote_item(item, latitude, longitude, warehouses, order_subtotal, is_approximate)
            for item in items
        ]
        return OrderDeliveryQuote(quotes=quotes, is_approximate=is_approximate)

    def estimate_delivery_times(
        self,
        latitude: float,
        longitude: float,
        warehouses: Iterable,
        category: str = None,
    ) -> List[DeliveryEstimate]:
        """Delivery time from each active warehouse to a destination, nearest first."""
        estimates = []
        for warehouse in warehouses:
            if warehouse.is_active is False:
                continue
            if category and not warehouse.serves(category):
                continue
            distance = haversine_distance(
                warehouse.latitude, warehouse.longitude, latitude, longitude
            )
            radius = self._radius_for(warehouse)
            estimates.append(DeliveryEstimate(
                warehouse_code=warehouse.code,
                warehouse_name=warehouse.name,
                categories=list(warehouse.served_categories or []),
                distance_km=distance,
                estimated_days=estimated_days(distance),
                delivery_time=delivery_time_label(distance),
                distance_category=distance_category(distance),
                within_range=not radius or distance <= radius,
            ))
        return sorted(estimates, key=lambda e: (e.distance_km, e.warehouse_code))

from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal
import uuid

from app.schemas.base import BaseResponseSchema, BaseCreateSchema


# ==================== DELIVERY PRICING ====================

class DeliveryItemRequest(BaseModel):
    item_reference: str
    category: str
    quantity: Decimal = Field(..., gt=0)
    unit_price: Decimal = Field(Decimal("0"), ge=0)


class DeliveryCalculateRequest(BaseCreateSchema):
    pincode: str
    items: List[DeliveryItemRequest] = Field(..., min_length=1)
    vendor_id: Optional[str] = None  # Restrict to one vendor's warehouses


class DeliveryItemQuote(BaseModel):
    item_reference: str
    category: str
    deliverable: bool
    warehouse_code: Optional[str] = None
    warehouse_name: Optional[str] = None
    distance_km: Optional[float] = None
    charge: Optional[Decimal] = None
    is_free_delivery: bool = False
    free_delivery_reason: Optional[str] = None
    estimated_days: Optional[int] = None
    delivery_time: Optional[str] = None
    distance_category: Optional[str] = None
    meets_minimum_order: Optional[bool] = None
    reason: Optional[str] = None


class Destination(BaseModel):
    pincode: str
    latitude: float
    longitude: float
    formatted_address: str
    is_approximate: bool


class DeliveryCalculateResponse(BaseModel):
    destination: Destination
    items: List[DeliveryItemQuote]
    total_delivery_charge: Decimal
    estimated_days: Optional[int] = None
    all_deliverable: bool
    is_approximate: bool
    calculated_at: datetime


class DeliveryEstimateItem(BaseModel):
    warehouse_code: str
    warehouse_name: str
    categories: List[str]
    distance_km: float
    estimated_days: int
    delivery_time: str
    distance_category: str
    within_range: bool


class DeliveryEstimateResponse(BaseModel):
    """Delivery time from each warehouse, nearest first."""
    destination: Destination
    estimates: List[DeliveryEstimateItem]
    fastest_days: Optional[int] = None
    is_approximate: bool


# ==================== LOCATION ====================

class PincodeValidateRequest(BaseModel):
    pincode: str


class PincodeValidateResponse(BaseModel):
    pincode: str
    is_valid: bool
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    formatted_address: Optional[str] = None
    is_approximate: bool = False


class CacheStatsResponse(BaseModel):
    size: int
    max_size: int
    ttl_hours: float
    hits: int
    misses: int


# ==================== WAREHOUSES ====================

class WarehouseCreate(BaseCreateSchema):
    code: str = Field(..., min_length=1, max_length=20)
    name: str = Field(..., min_length=1, max_length=200)
    vendor_id: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    served_categories: List[str] = Field(..., min_length=1)
    base_charge: Decimal = Field(Decimal("0"), ge=0)
    per_km_charge: Decimal = Field(Decimal("0"), ge=0)
    minimum_order_value: Decimal = Field(Decimal("0"), ge=0)
    free_delivery_radius_km: float = Field(0, ge=0)
    free_delivery_threshold: Decimal = Field(Decimal("0"), ge=0)
    max_delivery_radius_km: float = Field(0, ge=0)


class WarehouseResponse(BaseResponseSchema):
    id: uuid.UUID
    code: str
    name: str
    vendor_id: Optional[str] = None
    latitude: float
    longitude: float
    served_categories: List[str]
    base_charge: Decimal
    per_km_charge: Decimal
    minimum_order_value: Decimal
    free_delivery_radius_km: float
    free_delivery_threshold: Decimal
    max_delivery_radius_km: float
    is_active: bool

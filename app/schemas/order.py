from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime, date
from decimal import Decimal
import uuid

from app.models.order import PaymentMethod
from app.schemas.base import BaseResponseSchema, BaseCreateSchema, BaseUpdateSchema


# ==================== ORDER ITEM SCHEMAS ====================

class CartItemCreate(BaseModel):
    """Cart line item."""
    item_reference: str = Field(..., min_length=1, max_length=100)
    item_name: Optional[str] = None
    category: str = Field(..., min_length=1, max_length=50)
    quantity: Decimal = Field(..., gt=0)
    list_price: Decimal = Field(Decimal("0"), ge=0)  # Catalog estimate


class OrderItemResponse(BaseResponseSchema):
    id: uuid.UUID
    line_number: int
    item_reference: str
    item_name: Optional[str] = None
    category: str
    quantity: Decimal
    list_price: Decimal
    unit_price: Optional[Decimal] = None
    loading_charges: Decimal


# ==================== TRANSITION REQUESTS ====================

class CartCreate(BaseCreateSchema):
    vendor_id: str = Field(..., min_length=1)
    items: List[CartItemCreate] = Field(..., min_length=1)


class PlaceOrderRequest(BaseCreateSchema):
    delivery_address: str = Field(..., min_length=1)
    delivery_pincode: str  # Format checked by the geocoding layer
    delivery_expected_date: date
    receiver_name: Optional[str] = None
    receiver_phone: Optional[str] = None
    order_email: Optional[str] = None
    remarks: Optional[str] = None


class RemarksRequest(BaseCreateSchema):
    remarks: Optional[str] = None


class CancelOrderRequest(BaseCreateSchema):
    reason: Optional[str] = None


class MarkPaymentRequest(BaseCreateSchema):
    paid_amount: Decimal = Field(..., gt=0)
    payment_method: PaymentMethod
    transaction_id: Optional[str] = None
    utr_number: Optional[str] = None
    remarks: Optional[str] = None


class LineItemPricing(BaseModel):
    item_reference: str
    unit_price: Decimal
    loading_charges: Decimal = Decimal("0")


class ConfirmOrderRequest(BaseCreateSchema):
    line_items: List[LineItemPricing] = Field(..., min_length=1)
    remarks: Optional[str] = None


class FleetDetailsRequest(BaseModel):
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    driver_license_no: Optional[str] = None
    truck_number: Optional[str] = None
    vehicle_type: Optional[str] = None
    capacity_tons: Optional[float] = Field(None, ge=0)
    start_time: Optional[datetime] = None
    estimated_arrival: Optional[datetime] = None
    last_latitude: Optional[float] = Field(None, ge=-90, le=90)
    last_longitude: Optional[float] = Field(None, ge=-180, le=180)
    last_location_address: Optional[str] = None
    notes: Optional[str] = None


class ShippingStatusRequest(BaseCreateSchema):
    order_status: str
    fleet: Optional[FleetDetailsRequest] = None
    remarks: Optional[str] = None


class ChangeAddressRequest(BaseUpdateSchema):
    delivery_address: str = Field(..., min_length=1)
    delivery_pincode: Optional[str] = None
    reason: Optional[str] = None


class ChangeDeliveryDateRequest(BaseUpdateSchema):
    delivery_expected_date: date
    reason: Optional[str] = None


# ==================== RESPONSES ====================

class OrderResponse(BaseResponseSchema):
    """Order summary returned by every transition endpoint."""
    lead_id: str
    invoice_number: Optional[str] = None
    customer_id: str
    vendor_id: str
    order_status: str
    subtotal: Decimal
    delivery_charges: Decimal
    total_amount: Decimal
    delivery_address: Optional[str] = None
    delivery_pincode: Optional[str] = None
    delivery_expected_date: Optional[date] = None
    pricing_snapshot: Optional[dict] = None
    external_quote_id: Optional[str] = None
    external_sales_order_id: Optional[str] = None
    external_invoice_id: Optional[str] = None
    external_eway_bill_id: Optional[str] = None
    placed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse] = []


class StatusEventResponse(BaseResponseSchema):
    id: int
    lead_id: str
    invoice_number: Optional[str] = None
    actor_id: str
    actor_role: str
    from_status: Optional[str] = None
    to_status: str
    remarks: Optional[str] = None
    created_at: datetime


class StatusHistoryResponse(BaseModel):
    lead_id: str
    events: List[StatusEventResponse]


class ChangeHistoryResponse(BaseModel):
    lead_id: str
    order_status: str
    placed_at: Optional[datetime] = None
    hours_since_placement: Optional[float] = None
    hours_remaining: Optional[float] = None
    can_make_changes: bool
    address_change_history: List[dict] = []
    delivery_date_change_history: List[dict] = []


class OrderListResponse(BaseModel):
    """Paginated order list."""
    items: List[OrderResponse]
    total: int
    page: int
    size: int
    pages: int


# ==================== TRACKING ====================

class DeliveryRecordResponse(BaseResponseSchema):
    lead_id: str
    invoice_number: Optional[str] = None
    delivery_status: str
    delivery_address: Optional[str] = None
    delivery_pincode: Optional[str] = None
    delivery_expected_date: Optional[date] = None
    delivery_actual_date: Optional[datetime] = None
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    truck_number: Optional[str] = None
    vehicle_type: Optional[str] = None
    capacity_tons: Optional[float] = None
    start_time: Optional[datetime] = None
    estimated_arrival: Optional[datetime] = None
    last_latitude: Optional[float] = None
    last_longitude: Optional[float] = None
    last_location_address: Optional[str] = None
    last_location_at: Optional[datetime] = None
    notes: Optional[str] = None


class PaymentRecordResponse(BaseResponseSchema):
    invoice_number: str
    lead_id: str
    transaction_id: str
    payment_method: str
    payment_mode: str
    payment_status: str
    order_amount: Decimal
    paid_amount: Decimal
    utr_number: Optional[str] = None
    payment_date: datetime
    recorded_by: str


class CurrentStatus(BaseModel):
    status: str
    label: str
    last_updated: datetime


class OrderTrackingResponse(BaseModel):
    """Order with its status timeline, delivery record and payment."""
    order: OrderResponse
    current_status: CurrentStatus
    timeline: List[StatusEventResponse]
    delivery: Optional[DeliveryRecordResponse] = None
    payment: Optional[PaymentRecordResponse] = None
    payment_status: str
    estimated_delivery: Optional[date] = None
    can_make_changes: bool

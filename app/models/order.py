import uuid
from datetime import datetime, date, timezone
from enum import Enum
from typing import Optional, List
from decimal import Decimal

from sqlalchemy import String, Boolean, Date, DateTime, ForeignKey, Integer, Text, Numeric, Float, Index, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base
from app.db_types import JSONType
from app.core.exceptions import LedgerImmutableError


class OrderStatus(str, Enum):
    """Order lifecycle status, cart to delivery."""
    PENDING = "pending"                    # Cart, not yet placed
    ORDER_PLACED = "order_placed"          # Customer placed the order
    VENDOR_ACCEPTED = "vendor_accepted"    # Assigned vendor accepted
    PAYMENT_DONE = "payment_done"          # Admin recorded the payment
    ORDER_CONFIRMED = "order_confirmed"    # Admin confirmed line-item pricing

    # Shipping states (vendor driven)
    TRUCK_LOADING = "truck_loading"
    IN_TRANSIT = "in_transit"
    SHIPPED = "shipped"
    OUT_FOR_DELIVERY = "out_for_delivery"

    # Final states
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ActorRole(str, Enum):
    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"


class DeliveryStatus(str, Enum):
    """Delivery sub-state tracked on OrderDelivery."""
    PENDING = "pending"
    PICKED_UP = "picked_up"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    FAILED = "failed"
    RETURNED = "returned"


class PaymentMode(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    CASH_ON_DELIVERY = "cash_on_delivery"


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    DEBIT_CARD = "debit_card"
    UPI = "upi"
    NET_BANKING = "net_banking"
    WALLET = "wallet"
    CASH_ON_DELIVERY = "cash_on_delivery"
    BANK_TRANSFER = "bank_transfer"


class ItemCategory(str, Enum):
    CEMENT = "cement"
    IRON = "iron"
    CONCRETE_MIXER = "concrete_mixer"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Order(Base):
    """
    Construction-material order.

    One row per lead. Delivery, payment and status history live in their
    own tables keyed by lead_id / invoice_number.
    """
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_status_active", "order_status", "is_active"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)
    invoice_number: Mapped[Optional[str]] = mapped_column(
        String(40), unique=True, nullable=True, index=True,
        comment="Assigned once when the order is placed"
    )

    # Parties
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    order_status: Mapped[str] = mapped_column(
        String(30),
        default=OrderStatus.PENDING.value,
        nullable=False,
        comment="pending, order_placed, vendor_accepted, payment_done, order_confirmed, "
                "truck_loading, in_transit, shipped, out_for_delivery, delivered, cancelled"
    )

    # Amounts
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    delivery_charges: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))

    # Delivery details (changeable within the post-placement window)
    delivery_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_pincode: Mapped[Optional[str]] = mapped_column(String(6), nullable=True)
    delivery_expected_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    receiver_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    receiver_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    order_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    address_change_history: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    delivery_date_change_history: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)

    # Locked at placement, never rewritten
    pricing_snapshot: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    # Accounting system correlation ids, each written at most once
    external_customer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    external_quote_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    external_sales_order_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    external_invoice_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    external_eway_bill_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    # Timestamps
    placed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False
    )

    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.line_number",
        lazy="selectin",
    )

    # Stale writes raise StaleDataError
    __mapper_args__ = {"version_id_col": version}

    @property
    def catalog_subtotal(self) -> Decimal:
        """Subtotal at catalog (list) prices, used for free-delivery checks."""
        return sum((item.list_total for item in self.items), Decimal("0"))

    def __repr__(self) -> str:
        return f"<Order(lead_id='{self.lead_id}', status='{self.order_status}')>"


class OrderItem(Base):
    """Order line item. unit_price stays NULL until admin confirmation."""
    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    line_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    item_reference: Mapped[str] = mapped_column(String(100), nullable=False)
    item_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    quantity: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)

    list_price: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False,
        comment="Catalog price captured at cart time"
    )
    unit_price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(12, 2), nullable=True,
        comment="Vendor unit price set by admin confirmation"
    )
    loading_charges: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="items")

    @property
    def list_total(self) -> Decimal:
        return Decimal(str(self.list_price or 0)) * Decimal(str(self.quantity))

    @property
    def line_total(self) -> Optional[Decimal]:
        if self.unit_price is None:
            return None
        return (Decimal(str(self.unit_price)) * Decimal(str(self.quantity))
                + Decimal(str(self.loading_charges or 0)))

    def __repr__(self) -> str:
        return f"<OrderItem(item_reference='{self.item_reference}', quantity={self.quantity})>"


class OrderStatusEvent(Base):
    """Append-only status transition record."""
    __tablename__ = "order_status_events"
    __table_args__ = (
        Index("ix_order_status_events_lead_created", "lead_id", "created_at"),
    )

    # Integer id doubles as the tie-break for events sharing a timestamp
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(20), nullable=False)

    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<OrderStatusEvent(lead_id='{self.lead_id}', {self.from_status} -> {self.to_status})>"


@event.listens_for(OrderStatusEvent, "before_update")
def _reject_event_update(mapper, connection, target):
    raise LedgerImmutableError(
        f"Status event {target.id} for {target.lead_id} is immutable",
        details={"lead_id": target.lead_id, "operation": "update"},
    )


@event.listens_for(OrderStatusEvent, "before_delete")
def _reject_event_delete(mapper, connection, target):
    raise LedgerImmutableError(
        f"Status event {target.id} for {target.lead_id} cannot be deleted",
        details={"lead_id": target.lead_id, "operation": "delete"},
    )


class OrderDelivery(Base):
    """Delivery record, one per order, with fleet and tracking details."""
    __tablename__ = "order_deliveries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)

    delivery_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_pincode: Mapped[Optional[str]] = mapped_column(String(6), nullable=True)
    delivery_expected_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    delivery_actual_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    delivery_status: Mapped[str] = mapped_column(
        String(30),
        default=DeliveryStatus.PENDING.value,
        nullable=False,
        comment="pending, picked_up, in_transit, out_for_delivery, delivered, failed, returned"
    )

    # Fleet
    driver_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    driver_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    driver_license_no: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    truck_number: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    vehicle_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    capacity_tons: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Tracking
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_arrival: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_location_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_location_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    def __repr__(self) -> str:
        return f"<OrderDelivery(lead_id='{self.lead_id}', status='{self.delivery_status}')>"


class OrderPayment(Base):
    """Payment record keyed by invoice number, created when payment is marked done."""
    __tablename__ = "order_payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    invoice_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)
    lead_id: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    vendor_id: Mapped[str] = mapped_column(String(64), nullable=False)

    transaction_id: Mapped[str] = mapped_column(String(100), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_mode: Mapped[str] = mapped_column(String(30), nullable=False)
    payment_status: Mapped[str] = mapped_column(String(20), default="successful", nullable=False)

    order_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    utr_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    remarks: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    recorded_by: Mapped[str] = mapped_column(String(64), nullable=False)

    def __repr__(self) -> str:
        return f"<OrderPayment(invoice_number='{self.invoice_number}', paid={self.paid_amount})>"

"""Warehouse model with delivery pricing configuration."""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Boolean, Float, Numeric, DateTime, Uuid
import uuid

from app.database import Base
from app.db_types import JSONType


class Warehouse(Base):
    """Vendor warehouse that ships one or more item categories."""

    __tablename__ = "warehouses"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(20), unique=True, nullable=False, index=True)
    name = Column(String(200), nullable=False)
    vendor_id = Column(String(64), index=True)

    # Address
    address = Column(String(500))
    city = Column(String(100))
    state = Column(String(100))
    pincode = Column(String(10))

    # Geo coordinates
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)

    # e.g. ["cement", "iron"]
    served_categories = Column(JSONType, default=list, nullable=False)

    # Delivery configuration
    base_charge = Column(Numeric(10, 2), default=0, nullable=False)
    per_km_charge = Column(Numeric(10, 2), default=0, nullable=False)
    minimum_order_value = Column(Numeric(12, 2), default=0, nullable=False)
    free_delivery_radius_km = Column(Float, default=0, nullable=False)
    free_delivery_threshold = Column(Numeric(12, 2), default=0, nullable=False)  # 0 = no threshold
    max_delivery_radius_km = Column(Float, default=0, nullable=False)  # 0 = global search radius

    # Status
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def serves(self, category: str) -> bool:
        return category in (self.served_categories or [])

    def __repr__(self):
        return f"<Warehouse(code='{self.code}', name='{self.name}')>"

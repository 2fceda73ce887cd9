from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Order lifecycle
    orders,
    # Checkout pricing
    delivery,
    location,
    # Fulfilment network
    warehouses,
)


api_router = APIRouter()

# ==================== Orders ====================
api_router.include_router(
    orders.router,
    prefix="/orders",
    tags=["Orders"]
)

# ==================== Delivery Pricing ====================
api_router.include_router(
    delivery.router,
    prefix="/delivery",
    tags=["Delivery"]
)

# ==================== Location (Pincode Geocoding) ====================
api_router.include_router(
    location.router,
    prefix="/location",
    tags=["Location"]
)

# ==================== Warehouses ====================
api_router.include_router(
    warehouses.router,
    prefix="/warehouses",
    tags=["Warehouses"]
)

"""Pincode validation and geocode cache management."""
from fastapi import APIRouter

from app.api.deps import Geocoder
from app.core.exceptions import ValidationError
from app.schemas.delivery import (
    PincodeValidateRequest,
    PincodeValidateResponse,
    CacheStatsResponse,
)


router = APIRouter(tags=["Location"])


@router.post("/validate-pincode", response_model=PincodeValidateResponse)
async def validate_pincode(request: PincodeValidateRequest, geocoder: Geocoder):
    """
    Check a pincode and resolve its coordinates.

    A malformed pincode returns is_valid=false instead of an error so the
    checkout form can show it inline.
    """
    try:
        result = await geocoder.lookup(request.pincode)
    except ValidationError:
        return PincodeValidateResponse(pincode=request.pincode, is_valid=False)

    return PincodeValidateResponse(
        pincode=result.pincode,
        is_valid=True,
        latitude=result.latitude,
        longitude=result.longitude,
        formatted_address=result.formatted_address,
        is_approximate=result.is_approximate,
    )


@router.get("/cache-stats", response_model=CacheStatsResponse)
async def get_cache_stats(geocoder: Geocoder):
    return CacheStatsResponse(**geocoder.stats())


@router.delete("/cache")
async def clear_cache(geocoder: Geocoder):
    cleared = geocoder.clear()
    return {"success": True, "cleared": cleared}

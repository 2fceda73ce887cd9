"""
Pincode Geocoding with an in-process TTL cache.

Resolves a 6-digit Indian pincode to coordinates through the Google
Geocoding API. Results are memoized per pincode for a fixed TTL with a
bounded number of entries (oldest evicted first). Concurrent misses on one
pincode share a single provider call.

When the provider fails (error status, quota, zero results, timeout) the
lookup falls back to a coarse per-region coordinate chosen by the pincode's
leading digit. Such results carry is_approximate=True and are never cached,
so the next lookup tries the provider again.

Usage:
    cache = GeocodingCache(GoogleGeocodingProvider(api_key))
    result = await cache.lookup("400001")
"""
import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional, Tuple

import httpx

from app.config import settings
from app.core.exceptions import ValidationError, NotFoundError

logger = logging.getLogger(__name__)

PINCODE_PATTERN = re.compile(r"^[1-9][0-9]{5}$")

# Leading pincode digit -> (latitude, longitude, region)
REGION_FALLBACKS: Dict[str, Tuple[float, float, str]] = {
    "1": (28.7041, 77.1025, "Delhi/NCR"),
    "2": (28.7041, 77.1025, "Delhi/NCR"),
    "3": (26.2389, 73.0243, "Rajasthan"),
    "4": (19.0760, 72.8777, "Maharashtra"),
    "5": (17.3850, 78.4867, "Telangana/Andhra Pradesh"),
    "6": (12.9716, 77.5946, "Karnataka"),
    "7": (22.5726, 88.3639, "West Bengal"),
    "8": (23.0225, 72.5714, "Gujarat"),
    "9": (30.7333, 76.7794, "Punjab/Haryana"),
}


@dataclass
class GeocodeResult:
    """Coordinates resolved for a pincode."""
    pincode: str
    latitude: float
    longitude: float
    formatted_address: str
    is_approximate: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


class GeocodeLookupError(Exception):
    """Provider could not resolve a pincode."""
    def __init__(self, message: str, status: Optional[str] = None):
        self.message = message
        self.status = status
        super().__init__(message)


def validate_pincode(pincode: str) -> str:
    """Return the normalized pincode or raise ValidationError."""
    value = (pincode or "").strip()
    if not PINCODE_PATTERN.match(value):
        raise ValidationError(
            "Invalid pincode format. Pincode must be 6 digits starting with 1-9",
            error_code="INVALID_PINCODE",
            details={"pincode": pincode},
        )
    return value


# ==================== Providers ====================

class GeocodeProvider(ABC):
    """Pincode to coordinates lookup."""

    @abstractmethod
    async def geocode(self, pincode: str) -> GeocodeResult:
        """Resolve a pincode. Raises GeocodeLookupError on any failure."""
        pass


class GoogleGeocodingProvider(GeocodeProvider):
    """Google Geocoding API lookup, restricted to India."""

    GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"

    def __init__(self, api_key: str = None, timeout: float = None):
        self.api_key = api_key if api_key is not None else settings.GOOGLE_MAPS_API_KEY
        self.timeout = timeout or settings.GEOCODE_TIMEOUT

    async def geocode(self, pincode: str) -> GeocodeResult:
        if not self.api_key:
            raise GeocodeLookupError("Google Maps API key not configured", status="NOT_CONFIGURED")

        params = {
            "address": f"{pincode}, India",
            "key": self.api_key,
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(self.GEOCODE_URL, params=params, timeout=self.timeout)
                data = response.json()
        except httpx.TimeoutException:
            raise GeocodeLookupError(f"Geocoding timed out for {pincode}", status="TIMEOUT")
        except (httpx.HTTPError, ValueError) as e:
            raise GeocodeLookupError(f"Geocoding request failed for {pincode}: {e}", status="HTTP_ERROR")

        status = data.get("status")
        if status != "OK" or not data.get("results"):
            # ZERO_RESULTS, OVER_QUERY_LIMIT, REQUEST_DENIED, ...
            raise GeocodeLookupError(
                data.get("error_message") or f"Geocoding returned {status} for {pincode}",
                status=status,
            )

        result = data["results"][0]
        location = result["geometry"]["location"]
        return GeocodeResult(
            pincode=pincode,
            latitude=float(location["lat"]),
            longitude=float(location["lng"]),
            formatted_address=result.get("formatted_address", ""),
        )


# ==================== Cache ====================

class GeocodingCache:
    """
    TTL + size bounded memo of pincode lookups.

    Constructed once per process (see app.main lifespan) and handed to the
    pricing endpoints and the order state machine.
    """

    def __init__(
        self,
        provider: GeocodeProvider,
        ttl_seconds: int = None,
        max_size: int = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.GEOCODE_CACHE_TTL_SECONDS
        self.max_size = max_size if max_size is not None else settings.GEOCODE_CACHE_MAX_SIZE
        self._clock = clock
        # pincode -> (result, inserted_at); insertion order is age order
        self._entries: "OrderedDict[str, Tuple[GeocodeResult, float]]" = OrderedDict()
        self._lock = asyncio.Lock()
        # pincode -> provider lookup in progress, shared by concurrent misses
        self._inflight: Dict[str, "asyncio.Task[GeocodeResult]"] = {}
        self.hits = 0
        self.misses = 0

    async def lookup(self, pincode: str) -> GeocodeResult:
        """
        Resolve a pincode, serving from cache within the TTL.

        Raises:
            ValidationError: malformed pincode (no network call is made)
            NotFoundError: provider failed and no regional fallback exists
        """
        pincode = validate_pincode(pincode)

        cached = await self._get(pincode)
        if cached is not None:
            self.hits += 1
            return cached
        self.misses += 1

        task = self._inflight.get(pincode)
        if task is None:
            task = asyncio.ensure_future(self._fetch(pincode))
            self._inflight[pincode] = task
            task.add_done_callback(lambda _: self._inflight.pop(pincode, None))
        # A cancelled caller must not cancel the lookup other callers share
        return await asyncio.shield(task)

    async def _fetch(self, pincode: str) -> GeocodeResult:
        try:
            result = await self.provider.geocode(pincode)
        except GeocodeLookupError as e:
            logger.warning(f"Geocoding failed for {pincode} ({e.status}): {e.message}")
            return self._approximate(pincode)

        await self._put(pincode, result)
        return result

    async def _get(self, pincode: str) -> Optional[GeocodeResult]:
        async with self._lock:
            entry = self._entries.get(pincode)
            if entry is None:
                return None
            result, inserted_at = entry
            if self._clock() - inserted_at >= self.ttl_seconds:
                del self._entries[pincode]
                return None
            return result

    async def _put(self, pincode: str, result: GeocodeResult) -> None:
        async with self._lock:
            self._entries.pop(pincode, None)
            self._entries[pincode] = (result, self._clock())
            while len(self._entries) > self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug(f"Geocode cache full, evicted {evicted}")

    def _approximate(self, pincode: str) -> GeocodeResult:
        fallback = REGION_FALLBACKS.get(pincode[0])
        if fallback is None:
            raise NotFoundError(
                f"Could not geocode pincode {pincode}",
                error_code="PINCODE_NOT_FOUND",
                details={"pincode": pincode},
            )
        latitude, longitude, region = fallback
        logger.info(f"Using approximate {region} coordinates for {pincode}")
        return GeocodeResult(
            pincode=pincode,
            latitude=latitude,
            longitude=longitude,
            formatted_address=f"Approximate location in {region} region (Pincode: {pincode})",
            is_approximate=True,
        )

    async def cleanup_expired(self) -> int:
        """Remove expired entries."""
        async with self._lock:
            now = self._clock()
            expired = [
                k for k, (_, inserted_at) in self._entries.items()
                if now - inserted_at >= self.ttl_seconds
            ]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "ttl_hours": self.ttl_seconds / 3600,
            "hits": self.hits,
            "misses": self.misses,
        }

    def clear(self) -> int:
        cleared = len(self._entries)
        self._entries.clear()
        self.hits = 0
        self.misses = 0
        logger.info(f"Geocode cache cleared ({cleared} entries)")
        return cleared

    def __len__(self) -> int:
        return len(self._entries)


def build_geocoding_cache() -> GeocodingCache:
    """Cache wired to Google with configured TTL and size."""
    return GeocodingCache(
        GoogleGeocodingProvider(),
        ttl_seconds=settings.GEOCODE_CACHE_TTL_SECONDS,
        max_size=settings.GEOCODE_CACHE_MAX_SIZE,
    )

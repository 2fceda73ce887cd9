from typing import Annotated
import logging

from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.core.security import Actor, verify_access_token
from app.services.delivery_pricing import DeliveryPricingEngine
from app.services.geocoding_service import GeocodingCache
from app.services.order_state_machine import OrderStateMachine


logger = logging.getLogger(__name__)

# HTTP Bearer security scheme
security = HTTPBearer()


async def get_current_actor(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> Actor:
    """
    Dependency to get the authenticated actor.
    Validates the JWT and reads the user id and marketplace role from it.
    """
    actor = verify_access_token(credentials.credentials)
    if actor is None:
        logger.warning("Token verification failed - invalid or expired token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return actor


def require_role(*roles: str):
    """
    Dependency factory restricting an endpoint to some roles.

    Usage:
        @router.post("/warehouses", dependencies=[Depends(require_role("admin"))])
    """
    async def role_checker(actor: Annotated[Actor, Depends(get_current_actor)]) -> Actor:
        if actor.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires role: {', '.join(roles)}",
            )
        return actor

    return role_checker


def get_geocoding_cache(request: Request) -> GeocodingCache:
    """Process-wide geocoding cache created in the app lifespan."""
    return request.app.state.geocoding_cache


def get_pricing_engine(request: Request) -> DeliveryPricingEngine:
    return request.app.state.pricing_engine


async def get_state_machine(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> OrderStateMachine:
    state = request.app.state
    return OrderStateMachine(
        db,
        geocoder=state.geocoding_cache,
        pricing_engine=state.pricing_engine,
        dispatcher=state.sync_queue,
        email_service=getattr(state, "email_service", None),
    )


# Type aliases for cleaner dependency injection
CurrentActor = Annotated[Actor, Depends(get_current_actor)]
DB = Annotated[AsyncSession, Depends(get_db)]
Geocoder = Annotated[GeocodingCache, Depends(get_geocoding_cache)]
PricingEngine = Annotated[DeliveryPricingEngine, Depends(get_pricing_engine)]
StateMachine = Annotated[OrderStateMachine, Depends(get_state_machine)]

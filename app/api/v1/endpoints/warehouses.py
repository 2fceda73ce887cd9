"""Warehouse API endpoints."""
from typing import Optional, List

from fastapi import APIRouter, status, Query, Depends
from sqlalchemy import select

from app.api.deps import DB, require_role
from app.core.exceptions import StateConflictError, ValidationError
from app.models.order import ItemCategory
from app.models.warehouse import Warehouse
from app.schemas.delivery import WarehouseCreate, WarehouseResponse


router = APIRouter(tags=["Warehouses"])

CATEGORY_VALUES = {c.value for c in ItemCategory}


@router.get(
    "",
    response_model=List[WarehouseResponse],
    dependencies=[Depends(require_role("admin"))]
)
async def list_warehouses(
    db: DB,
    vendor_id: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    is_active: bool = Query(True),
):
    """
    List warehouses.
    Requires: admin role
    """
    query = select(Warehouse).where(Warehouse.is_active.is_(is_active)).order_by(Warehouse.code)
    if vendor_id:
        query = query.where(Warehouse.vendor_id == vendor_id)
    result = await db.execute(query)
    warehouses = result.scalars().all()
    if category:
        warehouses = [w for w in warehouses if w.serves(category)]
    return [WarehouseResponse.model_validate(w) for w in warehouses]


@router.post(
    "",
    response_model=WarehouseResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_role("admin"))]
)
async def create_warehouse(data: WarehouseCreate, db: DB):
    """
    Create a warehouse with its delivery pricing configuration.
    Requires: admin role
    """
    unknown = sorted(set(data.served_categories) - CATEGORY_VALUES)
    if unknown:
        raise ValidationError(
            f"Unknown categories: {', '.join(unknown)}",
            error_code="UNKNOWN_CATEGORY",
            details={"allowed": sorted(CATEGORY_VALUES)},
        )

    existing = await db.execute(select(Warehouse.id).where(Warehouse.code == data.code))
    if existing.scalar_one_or_none() is not None:
        raise StateConflictError(
            f"Warehouse code {data.code} already exists",
            error_code="DUPLICATE_WAREHOUSE_CODE",
        )

    warehouse = Warehouse(**data.model_dump())
    db.add(warehouse)
    await db.flush()
    await db.refresh(warehouse)
    return WarehouseResponse.model_validate(warehouse)

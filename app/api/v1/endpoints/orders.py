"""Order lifecycle endpoints: cart, placement, vendor, admin and tracking."""
from math import ceil
from typing import Optional

from fastapi import APIRouter, Query, status

from app.api.deps import CurrentActor, StateMachine
from app.schemas.order import (
    CartCreate,
    PlaceOrderRequest,
    RemarksRequest,
    CancelOrderRequest,
    MarkPaymentRequest,
    ConfirmOrderRequest,
    ShippingStatusRequest,
    ChangeAddressRequest,
    ChangeDeliveryDateRequest,
    OrderResponse,
    StatusEventResponse,
    StatusHistoryResponse,
    ChangeHistoryResponse,
    OrderListResponse,
    OrderTrackingResponse,
    CurrentStatus,
    DeliveryRecordResponse,
    PaymentRecordResponse,
)
from app.services.order_state_machine import DeliveryDetails, FleetDetails


router = APIRouter(tags=["Orders"])


def _build_order_response(order) -> OrderResponse:
    return OrderResponse.model_validate(order)


# ==================== Customer ====================

@router.post("/cart", response_model=OrderResponse, status_code=status.HTTP_201_CREATED)
async def create_cart(payload: CartCreate, actor: CurrentActor, machine: StateMachine):
    """Create a pending order (cart) for one vendor."""
    order = await machine.create_cart(
        actor,
        payload.vendor_id,
        [item.model_dump() for item in payload.items],
    )
    return _build_order_response(order)


@router.post("/{lead_id}/place", response_model=OrderResponse)
async def place_order(lead_id: str, payload: PlaceOrderRequest, actor: CurrentActor, machine: StateMachine):
    """
    Place a pending order.

    Geocodes the delivery pincode, prices delivery from the vendor's
    warehouses and locks the pricing snapshot on the order.
    """
    details = DeliveryDetails(
        delivery_address=payload.delivery_address,
        delivery_pincode=payload.delivery_pincode,
        delivery_expected_date=payload.delivery_expected_date,
        receiver_name=payload.receiver_name,
        receiver_phone=payload.receiver_phone,
        order_email=payload.order_email,
    )
    order = await machine.place_order(actor, lead_id, details, payload.remarks)
    return _build_order_response(order)


@router.patch("/{lead_id}/delivery-address", response_model=OrderResponse)
async def change_delivery_address(
    lead_id: str, payload: ChangeAddressRequest, actor: CurrentActor, machine: StateMachine
):
    order = await machine.change_delivery_address(
        actor, lead_id, payload.delivery_address, payload.delivery_pincode, payload.reason
    )
    return _build_order_response(order)


@router.patch("/{lead_id}/delivery-date", response_model=OrderResponse)
async def change_delivery_date(
    lead_id: str, payload: ChangeDeliveryDateRequest, actor: CurrentActor, machine: StateMachine
):
    order = await machine.change_delivery_date(actor, lead_id, payload.delivery_expected_date, payload.reason)
    return _build_order_response(order)


@router.get("/{lead_id}/change-history", response_model=ChangeHistoryResponse)
async def get_change_history(lead_id: str, actor: CurrentActor, machine: StateMachine):
    return ChangeHistoryResponse(**await machine.get_change_history(actor, lead_id))


# ==================== Vendor ====================

@router.post("/{lead_id}/accept", response_model=OrderResponse)
async def vendor_accept(lead_id: str, payload: RemarksRequest, actor: CurrentActor, machine: StateMachine):
    """Vendor accepts an order. Quote and sales order are created in the background."""
    order = await machine.vendor_accept(actor, lead_id, payload.remarks)
    return _build_order_response(order)


@router.post("/{lead_id}/reject", response_model=OrderResponse)
async def vendor_reject(lead_id: str, payload: RemarksRequest, actor: CurrentActor, machine: StateMachine):
    order = await machine.vendor_reject(actor, lead_id, payload.remarks)
    return _build_order_response(order)


@router.post("/{lead_id}/shipping-status", response_model=OrderResponse)
async def update_shipping_status(
    lead_id: str, payload: ShippingStatusRequest, actor: CurrentActor, machine: StateMachine
):
    """
    Vendor moves a confirmed order through shipping.

    out_for_delivery queues invoice and e-way bill creation; delivered
    closes the delivery record.
    """
    fleet = FleetDetails(**payload.fleet.model_dump()) if payload.fleet else None
    order = await machine.vendor_update_shipping_status(
        actor, lead_id, payload.order_status, fleet, payload.remarks
    )
    return _build_order_response(order)


# ==================== Admin ====================

@router.post("/{lead_id}/payment", response_model=OrderResponse)
async def mark_payment_done(lead_id: str, payload: MarkPaymentRequest, actor: CurrentActor, machine: StateMachine):
    order = await machine.mark_payment_done(
        actor,
        lead_id,
        payload.paid_amount,
        payload.payment_method.value,
        transaction_id=payload.transaction_id,
        utr_number=payload.utr_number,
        remarks=payload.remarks,
    )
    return _build_order_response(order)


@router.post("/{lead_id}/confirm", response_model=OrderResponse)
async def confirm_order(lead_id: str, payload: ConfirmOrderRequest, actor: CurrentActor, machine: StateMachine):
    """Admin confirms with vendor unit price and loading charges for every item."""
    order = await machine.admin_confirm(
        actor, lead_id, [line.model_dump() for line in payload.line_items], payload.remarks
    )
    return _build_order_response(order)


@router.post("/{lead_id}/cancel", response_model=OrderResponse)
async def cancel_order(lead_id: str, payload: CancelOrderRequest, actor: CurrentActor, machine: StateMachine):
    order = await machine.admin_cancel(actor, lead_id, payload.reason)
    return _build_order_response(order)


# ==================== Tracking ====================

@router.get("", response_model=OrderListResponse)
async def list_orders(
    actor: CurrentActor,
    machine: StateMachine,
    page: int = Query(1, ge=1),
    size: int = Query(20, ge=1, le=100),
    order_status: Optional[str] = Query(None, alias="status"),
    vendor_id: Optional[str] = Query(None),
    customer_id: Optional[str] = Query(None),
):
    """
    Get paginated list of orders visible to the caller.

    Vendors find orders waiting for acceptance with status=order_placed.
    vendor_id and customer_id filters apply to admins only.
    """
    skip = (page - 1) * size
    orders, total = await machine.list_orders(
        actor,
        status=order_status,
        vendor_id=vendor_id,
        customer_id=customer_id,
        skip=skip,
        limit=size,
    )
    return OrderListResponse(
        items=[_build_order_response(o) for o in orders],
        total=total,
        page=page,
        size=size,
        pages=ceil(total / size) if total > 0 else 1,
    )


@router.get("/{lead_id}", response_model=OrderResponse)
async def get_order(lead_id: str, actor: CurrentActor, machine: StateMachine):
    order = await machine.get_order_for(actor, lead_id)
    return _build_order_response(order)


@router.get("/{lead_id}/status-history", response_model=StatusHistoryResponse)
async def get_status_history(lead_id: str, actor: CurrentActor, machine: StateMachine):
    """Full append-only transition ledger for an order."""
    events = await machine.get_status_history(actor, lead_id)
    return StatusHistoryResponse(
        lead_id=lead_id,
        events=[StatusEventResponse.model_validate(e) for e in events],
    )


@router.get("/{lead_id}/tracking", response_model=OrderTrackingResponse)
async def get_order_tracking(lead_id: str, actor: CurrentActor, machine: StateMachine):
    """Order with status timeline, delivery record and payment."""
    tracking = await machine.get_tracking(actor, lead_id)
    delivery, payment = tracking["delivery"], tracking["payment"]
    return OrderTrackingResponse(
        order=_build_order_response(tracking["order"]),
        current_status=CurrentStatus(**tracking["current_status"]),
        timeline=[StatusEventResponse.model_validate(e) for e in tracking["timeline"]],
        delivery=DeliveryRecordResponse.model_validate(delivery) if delivery else None,
        payment=PaymentRecordResponse.model_validate(payment) if payment else None,
        payment_status=tracking["payment_status"],
        estimated_delivery=tracking["estimated_delivery"],
        can_make_changes=tracking["can_make_changes"],
    )


@router.get("/{lead_id}/delivery", response_model=DeliveryRecordResponse)
async def get_delivery_details(lead_id: str, actor: CurrentActor, machine: StateMachine):
    delivery = await machine.get_delivery_details(actor, lead_id)
    return DeliveryRecordResponse.model_validate(delivery)


@router.get("/{lead_id}/payment", response_model=PaymentRecordResponse)
async def get_payment_details(lead_id: str, actor: CurrentActor, machine: StateMachine):
    payment = await machine.get_payment_details(actor, lead_id)
    return PaymentRecordResponse.model_validate(payment)

"""
Order Lifecycle State Machine

This module is the SINGLE SOURCE OF TRUTH for order status transitions.
Every status change goes through OrderStateMachine._resolve, which checks
one explicit table:

    (current_status, action, actor_role) -> [Transition(next_status, side_effects)]

Lifecycle:

    pending -> order_placed -> vendor_accepted -> payment_done -> order_confirmed
            -> truck_loading -> in_transit -> shipped -> out_for_delivery -> delivered

    cancelled is reachable from every state before delivered.

Rules enforced by the dispatcher:
- Role and ownership are checked before the current status, so a rejected
  actor learns nothing about the order's state.
- Requesting the status the order is already in is a no-op success, except
  for terminal statuses which reject repeats.
- Status change, ledger event and delivery/payment records commit in one
  transaction. A concurrent write to the same order fails the version check
  and surfaces as StateConflictError.
- Accounting document sync is queued only after the commit.
"""

import asyncio
import logging
import random
import string
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.config import settings
from app.core.exceptions import (
    ActorNotPermittedError,
    CorruptOrderStateError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from app.core.security import Actor
from app.models.order import (
    ActorRole,
    DeliveryStatus,
    Order,
    OrderDelivery,
    OrderItem,
    OrderPayment,
    OrderStatus,
    PaymentMethod,
    PaymentMode,
)
from app.models.warehouse import Warehouse
from app.services.delivery_pricing import DeliveryPricingEngine, PricingItem
from app.services.email_service import EmailService
from app.services.external_sync import TRIGGER_DOCUMENTS
from app.services.geocoding_service import GeocodingCache, validate_pincode
from app.services.status_ledger import StatusHistoryLedger

logger = logging.getLogger(__name__)

S = OrderStatus


# =============================================================================
# ACTIONS AND SIDE EFFECTS
# =============================================================================

class Action:
    """Role-scoped operations that change order status."""
    PLACE = "place"
    VENDOR_ACCEPT = "vendor_accept"
    VENDOR_REJECT = "vendor_reject"
    MARK_PAYMENT_DONE = "mark_payment_done"
    ADMIN_CONFIRM = "admin_confirm"
    SHIP = "ship"
    ADMIN_CANCEL = "admin_cancel"


class SideEffect:
    # Applied inside the transaction
    LOCK_PRICING = "lock_pricing"
    ASSIGN_INVOICE_NUMBER = "assign_invoice_number"
    CREATE_DELIVERY = "create_delivery"
    CREATE_PAYMENT = "create_payment"
    APPLY_LINE_PRICING = "apply_line_pricing"
    UPDATE_DELIVERY = "update_delivery"
    FINALIZE_DELIVERY = "finalize_delivery"
    MARK_CANCELLED = "mark_cancelled"
    # Dispatched after commit
    NOTIFY_ORDER_PLACED = "notify_order_placed"
    SYNC_DOCUMENTS = "sync_documents"


POST_COMMIT_EFFECTS = {SideEffect.NOTIFY_ORDER_PLACED, SideEffect.SYNC_DOCUMENTS}

# The role each action belongs to
ACTION_ROLES: Dict[str, str] = {
    Action.PLACE: ActorRole.CUSTOMER.value,
    Action.VENDOR_ACCEPT: ActorRole.VENDOR.value,
    Action.VENDOR_REJECT: ActorRole.VENDOR.value,
    Action.SHIP: ActorRole.VENDOR.value,
    Action.MARK_PAYMENT_DONE: ActorRole.ADMIN.value,
    Action.ADMIN_CONFIRM: ActorRole.ADMIN.value,
    Action.ADMIN_CANCEL: ActorRole.ADMIN.value,
}

# Target for actions that do not take a requested status
ACTION_TARGETS: Dict[str, str] = {
    Action.PLACE: S.ORDER_PLACED.value,
    Action.VENDOR_ACCEPT: S.VENDOR_ACCEPTED.value,
    Action.VENDOR_REJECT: S.CANCELLED.value,
    Action.MARK_PAYMENT_DONE: S.PAYMENT_DONE.value,
    Action.ADMIN_CONFIRM: S.ORDER_CONFIRMED.value,
    Action.ADMIN_CANCEL: S.CANCELLED.value,
}

STATUS_VALUES = {s.value for s in S}
TERMINAL_STATUSES = {S.DELIVERED.value, S.CANCELLED.value}

SHIPPING_SEQUENCE = [
    S.ORDER_CONFIRMED.value,
    S.TRUCK_LOADING.value,
    S.IN_TRANSIT.value,
    S.SHIPPED.value,
    S.OUT_FOR_DELIVERY.value,
    S.DELIVERED.value,
]
SHIPPING_TARGETS = SHIPPING_SEQUENCE[1:]

# Order status -> OrderDelivery sub-status
DELIVERY_STATUS_FOR = {
    S.TRUCK_LOADING.value: DeliveryStatus.PICKED_UP.value,
    S.IN_TRANSIT.value: DeliveryStatus.IN_TRANSIT.value,
    S.SHIPPED.value: DeliveryStatus.IN_TRANSIT.value,
    S.OUT_FOR_DELIVERY.value: DeliveryStatus.OUT_FOR_DELIVERY.value,
    S.DELIVERED.value: DeliveryStatus.DELIVERED.value,
}

STATUS_LABELS = {
    S.PENDING.value: "In Cart",
    S.ORDER_PLACED.value: "Order Placed",
    S.VENDOR_ACCEPTED.value: "Order Accepted by Vendor",
    S.PAYMENT_DONE.value: "Payment Completed",
    S.ORDER_CONFIRMED.value: "Order Confirmed",
    S.TRUCK_LOADING.value: "Loading for Dispatch",
    S.IN_TRANSIT.value: "In Transit",
    S.SHIPPED.value: "Shipped",
    S.OUT_FOR_DELIVERY.value: "Out for Delivery",
    S.DELIVERED.value: "Delivered",
    S.CANCELLED.value: "Cancelled",
}

# Statuses in which the customer may change delivery address/date
CHANGEABLE_STATUSES = {S.ORDER_PLACED.value, S.VENDOR_ACCEPTED.value, S.PAYMENT_DONE.value}

PAYMENT_MODES = {
    PaymentMethod.CREDIT_CARD.value: PaymentMode.ONLINE.value,
    PaymentMethod.DEBIT_CARD.value: PaymentMode.ONLINE.value,
    PaymentMethod.UPI.value: PaymentMode.ONLINE.value,
    PaymentMethod.NET_BANKING.value: PaymentMode.ONLINE.value,
    PaymentMethod.WALLET.value: PaymentMode.ONLINE.value,
    PaymentMethod.CASH_ON_DELIVERY.value: PaymentMode.CASH_ON_DELIVERY.value,
    PaymentMethod.BANK_TRANSFER.value: PaymentMode.OFFLINE.value,
}

LEAD_ID_PREFIXES = {
    "cement": "CEMENT",
    "iron": "STEEL",
    "steel": "STEEL",
    "concrete_mixer": "MIXER",
    "concrete mixer": "MIXER",
}


@dataclass(frozen=True)
class Transition:
    next_status: str
    side_effects: Tuple[str, ...] = ()


# =============================================================================
# TRANSITION TABLE
# =============================================================================

def _build_transitions() -> Dict[Tuple[str, str, str], List[Transition]]:
    customer, vendor, admin = ActorRole.CUSTOMER.value, ActorRole.VENDOR.value, ActorRole.ADMIN.value
    table: Dict[Tuple[str, str, str], List[Transition]] = {
        (S.PENDING.value, Action.PLACE, customer): [
            Transition(S.ORDER_PLACED.value, (
                SideEffect.LOCK_PRICING,
                SideEffect.ASSIGN_INVOICE_NUMBER,
                SideEffect.CREATE_DELIVERY,
                SideEffect.NOTIFY_ORDER_PLACED,
            )),
        ],
        (S.ORDER_PLACED.value, Action.VENDOR_ACCEPT, vendor): [
            Transition(S.VENDOR_ACCEPTED.value, (SideEffect.SYNC_DOCUMENTS,)),
        ],
        (S.ORDER_PLACED.value, Action.VENDOR_REJECT, vendor): [
            Transition(S.CANCELLED.value, (SideEffect.MARK_CANCELLED,)),
        ],
        (S.VENDOR_ACCEPTED.value, Action.MARK_PAYMENT_DONE, admin): [
            Transition(S.PAYMENT_DONE.value, (SideEffect.CREATE_PAYMENT,)),
        ],
        (S.PAYMENT_DONE.value, Action.ADMIN_CONFIRM, admin): [
            Transition(S.ORDER_CONFIRMED.value, (SideEffect.APPLY_LINE_PRICING,)),
        ],
    }

    # Vendor shipping updates move forward only; delivered needs out_for_delivery first
    for i, current in enumerate(SHIPPING_SEQUENCE[:-1]):
        targets = []
        for target in SHIPPING_SEQUENCE[i + 1:]:
            if target == S.DELIVERED.value and current != S.OUT_FOR_DELIVERY.value:
                continue
            effects = [SideEffect.UPDATE_DELIVERY]
            if target == S.OUT_FOR_DELIVERY.value:
                effects.append(SideEffect.SYNC_DOCUMENTS)
            if target == S.DELIVERED.value:
                effects.append(SideEffect.FINALIZE_DELIVERY)
            targets.append(Transition(target, tuple(effects)))
        table[(current, Action.SHIP, vendor)] = targets

    for status in S:
        if status.value not in TERMINAL_STATUSES:
            table[(status.value, Action.ADMIN_CANCEL, admin)] = [
                Transition(S.CANCELLED.value, (SideEffect.MARK_CANCELLED,)),
            ]

    return table


ORDER_TRANSITIONS = _build_transitions()


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def get_allowed_transitions(current_status: str, role: Optional[str] = None) -> List[Tuple[str, str]]:
    """(action, next_status) pairs available from a status, optionally for one role."""
    allowed = []
    for (status, action, action_role), transitions in ORDER_TRANSITIONS.items():
        if status != current_status or (role and action_role != role):
            continue
        allowed.extend((action, t.next_status) for t in transitions)
    return allowed


def required_statuses(action: str, target: str) -> List[str]:
    """Statuses from which an action can reach a target, in lifecycle order."""
    sources = {
        status
        for (status, table_action, _), transitions in ORDER_TRANSITIONS.items()
        if table_action == action and any(t.next_status == target for t in transitions)
    }
    return [s.value for s in S if s.value in sources]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _base36(number: int) -> str:
    digits = string.digits + string.ascii_uppercase
    result = ""
    while number:
        number, remainder = divmod(number, 36)
        result = digits[remainder] + result
    return result or "0"


def _random_suffix(length: int) -> str:
    return "".join(random.choices(string.ascii_uppercase + string.digits, k=length))


def lead_id_prefix(categories) -> str:
    categories = {c.lower() for c in categories}
    if len(categories) > 1:
        return "MIXED"
    if len(categories) == 1:
        return LEAD_ID_PREFIXES.get(next(iter(categories)), "ORDER")
    return "ORDER"


def _decimal(value, field_name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field_name} must be a number", details={field_name: value})


# =============================================================================
# STATE MACHINE
# =============================================================================

@dataclass
class DeliveryDetails:
    """Customer input for placing an order."""
    delivery_address: str
    delivery_pincode: str
    delivery_expected_date: date
    receiver_name: Optional[str] = None
    receiver_phone: Optional[str] = None
    order_email: Optional[str] = None


@dataclass
class FleetDetails:
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    driver_license_no: Optional[str] = None
    truck_number: Optional[str] = None
    vehicle_type: Optional[str] = None
    capacity_tons: Optional[float] = None
    start_time: Optional[datetime] = None
    estimated_arrival: Optional[datetime] = None
    last_latitude: Optional[float] = None
    last_longitude: Optional[float] = None
    last_location_address: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class _TransitionContext:
    actor: Actor
    remarks: Optional[str] = None
    target: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class OrderStateMachine:
    """
    Role-scoped order transitions.

    One instance per request/session. The geocoding cache, pricing engine
    and sync dispatcher are process-wide and passed in.
    """

    def __init__(
        self,
        db: AsyncSession,
        geocoder: Optional[GeocodingCache] = None,
        pricing_engine: Optional[DeliveryPricingEngine] = None,
        dispatcher=None,
        email_service: Optional[EmailService] = None,
        clock=None,
    ):
        self.db = db
        self.geocoder = geocoder
        self.pricing_engine = pricing_engine or DeliveryPricingEngine()
        self.dispatcher = dispatcher
        self.email_service = email_service
        self.ledger = StatusHistoryLedger(db)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._effect_handlers = {
            SideEffect.LOCK_PRICING: self._lock_pricing,
            SideEffect.ASSIGN_INVOICE_NUMBER: self._assign_invoice_number,
            SideEffect.CREATE_DELIVERY: self._create_delivery,
            SideEffect.CREATE_PAYMENT: self._create_payment,
            SideEffect.APPLY_LINE_PRICING: self._apply_line_pricing,
            SideEffect.UPDATE_DELIVERY: self._update_delivery,
            SideEffect.FINALIZE_DELIVERY: self._finalize_delivery,
            SideEffect.MARK_CANCELLED: self._mark_cancelled,
            SideEffect.NOTIFY_ORDER_PLACED: self._notify_order_placed,
            SideEffect.SYNC_DOCUMENTS: self._sync_documents,
        }

    def now(self) -> datetime:
        return self._clock()

    # ==================== Lookup ====================

    async def get_order(self, lead_id: str) -> Order:
        result = await self.db.execute(
            select(Order).where(Order.lead_id == lead_id, Order.is_active.is_(True))
        )
        order = result.scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {lead_id} not found", error_code="ORDER_NOT_FOUND",
                                details={"lead_id": lead_id})
        return order

    async def get_order_for(self, actor: Actor, lead_id: str) -> Order:
        """Load an order the actor is allowed to see."""
        order = await self.get_order(lead_id)
        self._check_visibility(actor, order)
        return order

    async def get_status_history(self, actor: Actor, lead_id: str):
        await self.get_order_for(actor, lead_id)
        return await self.ledger.get_history(lead_id)

    async def list_orders(
        self,
        actor: Actor,
        status: Optional[str] = None,
        vendor_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Order], int]:
        """
        Paginated orders visible to the actor, newest first.

        Customers see their own orders and vendors the orders assigned to
        them; admins see all and may filter by vendor or customer. Carts
        (pending) are left out unless asked for by status.
        """
        conditions = [Order.is_active.is_(True)]
        if actor.role == ActorRole.CUSTOMER.value:
            conditions.append(Order.customer_id == actor.id)
        elif actor.role == ActorRole.VENDOR.value:
            conditions.append(Order.vendor_id == actor.id)
        else:
            if vendor_id:
                conditions.append(Order.vendor_id == vendor_id)
            if customer_id:
                conditions.append(Order.customer_id == customer_id)

        if status:
            if status not in STATUS_VALUES:
                raise ValidationError(
                    f"Unknown order status '{status}'",
                    error_code="INVALID_STATUS",
                    details={"status": status, "allowed": sorted(STATUS_VALUES)},
                )
            conditions.append(Order.order_status == status)
        else:
            conditions.append(Order.order_status != S.PENDING.value)

        query = select(Order).where(and_(*conditions))
        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))

        query = query.order_by(Order.created_at.desc(), Order.lead_id).offset(skip).limit(limit)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def get_delivery_details(self, actor: Actor, lead_id: str) -> OrderDelivery:
        await self.get_order_for(actor, lead_id)
        delivery = await self._get_delivery(lead_id)
        if delivery is None:
            raise NotFoundError(f"No delivery record for order {lead_id}", error_code="DELIVERY_NOT_FOUND",
                                details={"lead_id": lead_id})
        return delivery

    async def get_payment_details(self, actor: Actor, lead_id: str) -> OrderPayment:
        order = await self.get_order_for(actor, lead_id)
        payment = await self._get_payment(order)
        if payment is None:
            raise NotFoundError(f"No payment recorded for order {lead_id}", error_code="PAYMENT_NOT_FOUND",
                                details={"lead_id": lead_id})
        return payment

    async def get_tracking(self, actor: Actor, lead_id: str) -> dict:
        """Order, status timeline, delivery record and payment in one view."""
        order = await self.get_order_for(actor, lead_id)
        events = await self.ledger.get_history(lead_id)
        delivery = await self._get_delivery(lead_id)
        payment = await self._get_payment(order)

        return {
            "order": order,
            "current_status": {
                "status": order.order_status,
                "label": STATUS_LABELS.get(order.order_status, order.order_status),
                "last_updated": events[-1].created_at if events else order.created_at,
            },
            "timeline": events,
            "delivery": delivery,
            "payment": payment,
            "payment_status": payment.payment_status if payment else "pending",
            "estimated_delivery": order.delivery_expected_date,
            "can_make_changes": self.can_change_delivery(order),
        }

    async def _get_payment(self, order: Order) -> Optional[OrderPayment]:
        if not order.invoice_number:
            return None
        result = await self.db.execute(
            select(OrderPayment).where(OrderPayment.invoice_number == order.invoice_number)
        )
        return result.scalar_one_or_none()

    def _check_visibility(self, actor: Actor, order: Order) -> None:
        if actor.role == ActorRole.ADMIN.value:
            return
        if actor.role == ActorRole.CUSTOMER.value and order.customer_id == actor.id:
            return
        if actor.role == ActorRole.VENDOR.value and order.vendor_id == actor.id:
            return
        # Same answer as a missing order
        raise NotFoundError(f"Order {order.lead_id} not found", error_code="ORDER_NOT_FOUND",
                            details={"lead_id": order.lead_id})

    # ==================== Dispatcher ====================

    def _check_actor(self, actor: Actor, order: Order, action: str) -> None:
        required_role = ACTION_ROLES[action]
        if actor.role != required_role:
            raise ActorNotPermittedError(
                f"Only a {required_role} can perform '{action}'",
                error_code="ROLE_NOT_PERMITTED",
            )
        if required_role == ActorRole.CUSTOMER.value and order.customer_id != actor.id:
            raise ActorNotPermittedError("Order belongs to another customer", error_code="NOT_ORDER_OWNER")
        if required_role == ActorRole.VENDOR.value and order.vendor_id != actor.id:
            raise ActorNotPermittedError("Order is assigned to another vendor", error_code="NOT_ASSIGNED_VENDOR")

    def _resolve(self, order: Order, actor: Actor, action: str, target: Optional[str] = None) -> Optional[Transition]:
        """
        Validate an action against the transition table.

        Returns the Transition to apply, or None when the order is already in
        the requested status (idempotent no-op).

        Raises:
            ActorNotPermittedError: wrong role or not the order's party
            CorruptOrderStateError: persisted status outside the enum
            StateConflictError: not a legal edge from the current status
        """
        self._check_actor(actor, order, action)

        current = order.order_status
        if current not in STATUS_VALUES:
            logger.error(f"Order {order.lead_id} has unknown status '{current}'")
            raise CorruptOrderStateError(
                f"Order {order.lead_id} has an unknown status",
                details={"lead_id": order.lead_id, "order_status": current},
            )

        target = target or ACTION_TARGETS[action]

        if current == target:
            if is_terminal(current):
                raise StateConflictError(
                    f"Order is already {current}; terminal orders cannot change",
                    current_status=current,
                    error_code="TERMINAL_STATUS",
                )
            return None

        for transition in ORDER_TRANSITIONS.get((current, action, actor.role), []):
            if transition.next_status == target:
                return transition

        required = required_statuses(action, target)
        if is_terminal(current):
            message = f"Order is {current}; terminal orders cannot change"
        elif required:
            message = (f"Cannot move order from '{current}' to '{target}'. "
                       f"Order must be in: {', '.join(required)}")
        else:
            message = f"Cannot move order from '{current}' to '{target}'"
        raise StateConflictError(message, current_status=current, required_status=required)

    async def _execute(self, order: Order, transition: Transition, ctx: _TransitionContext) -> Order:
        """Apply side effects, status and ledger event in one commit, then post-commit effects."""
        lead_id = order.lead_id
        from_status = order.order_status
        ctx.target = transition.next_status
        try:
            for effect in transition.side_effects:
                if effect not in POST_COMMIT_EFFECTS:
                    await self._effect_handlers[effect](order, ctx)

            order.order_status = transition.next_status
            self.ledger.record_transition(
                order, ctx.actor.id, ctx.actor.role, from_status, transition.next_status,
                ctx.remarks or f"Order {transition.next_status.replace('_', ' ')} by {ctx.actor.role}",
            )
            await self.db.flush()
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            logger.warning(f"Concurrent update on {lead_id} during {from_status} -> {transition.next_status}")
            raise self._concurrent_update(lead_id)
        except SQLAlchemyError:
            await self.db.rollback()
            logger.exception(f"Transition {from_status} -> {transition.next_status} failed for {lead_id}")
            raise
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order {lead_id}: {from_status} -> {transition.next_status} by {ctx.actor.role}:{ctx.actor.id}")

        for effect in transition.side_effects:
            if effect in POST_COMMIT_EFFECTS:
                await self._effect_handlers[effect](order, ctx)
        return order

    def _concurrent_update(self, lead_id: str) -> StateConflictError:
        return StateConflictError(
            f"Order {lead_id} was modified concurrently; reload and retry",
            error_code="CONCURRENT_UPDATE",
        )

    # ==================== Cart ====================

    async def create_cart(self, actor: Actor, vendor_id: str, items: List[dict]) -> Order:
        """Customer creates a pending order for one vendor."""
        if actor.role != ActorRole.CUSTOMER.value:
            raise ActorNotPermittedError("Only a customer can create an order", error_code="ROLE_NOT_PERMITTED")
        if not vendor_id:
            raise ValidationError("vendor_id is required")
        if not items:
            raise ValidationError("Order must contain at least one item", error_code="EMPTY_ORDER")

        seen = set()
        for item in items:
            reference = item.get("item_reference")
            if not reference or not item.get("category"):
                raise ValidationError("Each item needs item_reference and category", details={"item": reference})
            if reference in seen:
                raise ValidationError(f"Item {reference} listed twice", details={"item_reference": reference})
            seen.add(reference)
            if _decimal(item.get("quantity"), "quantity") <= 0:
                raise ValidationError(f"Quantity for {reference} must be positive",
                                      details={"item_reference": reference})
            if _decimal(item.get("list_price", 0), "list_price") < 0:
                raise ValidationError(f"List price for {reference} cannot be negative",
                                      details={"item_reference": reference})

        order = Order(
            lead_id=await self._generate_lead_id({item["category"] for item in items}),
            customer_id=actor.id,
            vendor_id=vendor_id,
            order_status=S.PENDING.value,
            address_change_history=[],
            delivery_date_change_history=[],
        )
        order.items = [
            OrderItem(
                line_number=i,
                item_reference=item["item_reference"],
                item_name=item.get("item_name"),
                category=item["category"],
                quantity=_decimal(item["quantity"], "quantity"),
                list_price=_decimal(item.get("list_price", 0), "list_price"),
                loading_charges=Decimal("0"),
            )
            for i, item in enumerate(items, start=1)
        ]
        order.subtotal = order.catalog_subtotal
        order.delivery_charges = Decimal("0")
        order.total_amount = order.subtotal

        self.db.add(order)
        self.ledger.record_transition(order, actor.id, actor.role, None, S.PENDING.value, "Cart created")
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        logger.info(f"Cart {order.lead_id} created by customer {actor.id} for vendor {vendor_id}")
        return order

    async def _generate_lead_id(self, categories) -> str:
        prefix = lead_id_prefix(categories)
        timestamp = _base36(int(self.now().timestamp() * 1000))
        lead_id = f"{prefix}-{timestamp}{_random_suffix(8)}"

        existing = await self.db.execute(select(Order.id).where(Order.lead_id == lead_id))
        if existing.scalar_one_or_none() is not None:
            lead_id = f"{lead_id}{_random_suffix(4)}"
        return lead_id

    # ==================== Customer ====================

    async def place_order(self, actor: Actor, lead_id: str, details: DeliveryDetails, remarks: str = None) -> Order:
        order = await self.get_order(lead_id)
        transition = self._resolve(order, actor, Action.PLACE)
        if transition is None:
            return order

        if not order.items:
            raise ValidationError("Order must contain at least one item", error_code="EMPTY_ORDER")
        if not (details.delivery_address or "").strip():
            raise ValidationError("Delivery address is required", error_code="ADDRESS_REQUIRED")
        pincode = validate_pincode(details.delivery_pincode)
        if details.delivery_expected_date <= self.now().date():
            raise ValidationError(
                "Delivery date must be in the future",
                error_code="DELIVERY_DATE_NOT_FUTURE",
                details={"delivery_expected_date": details.delivery_expected_date.isoformat()},
            )

        ctx = _TransitionContext(actor=actor, remarks=remarks or "Order placed by customer")
        ctx.data["details"] = details
        ctx.data["pincode"] = pincode
        ctx.data["pricing"] = await self._price_order(order, pincode)
        return await self._execute(order, transition, ctx)

    async def _price_order(self, order: Order, pincode: str) -> dict:
        if self.geocoder is None:
            raise RuntimeError("OrderStateMachine needs a geocoder to place orders")

        destination = await self.geocoder.lookup(pincode)
        result = await self.db.execute(
            select(Warehouse).where(Warehouse.vendor_id == order.vendor_id, Warehouse.is_active.is_(True))
        )
        warehouses = list(result.scalars().all())

        quote = self.pricing_engine.quote_order(
            [
                PricingItem(item.item_reference, item.category, Decimal(str(item.quantity)),
                            Decimal(str(item.list_price or 0)))
                for item in order.items
            ],
            destination.latitude,
            destination.longitude,
            warehouses,
            is_approximate=destination.is_approximate,
        )
        if not quote.deliverable:
            raise ValidationError(
                "Some items cannot be delivered to this pincode",
                error_code="UNDELIVERABLE",
                details={"pincode": pincode, "items": [u.to_snapshot() for u in quote.undeliverable]},
            )

        return {
            "destination": destination.to_dict(),
            "items": [q.to_snapshot() for q in quote.quotes],
            "total_charge": str(quote.total_charge),
            "max_distance_km": quote.max_distance_km,
            "estimated_days": quote.estimated_days,
            "is_approximate": quote.is_approximate,
            "priced_at": self.now().isoformat(),
        }

    async def change_delivery_address(
        self, actor: Actor, lead_id: str, new_address: str, new_pincode: str = None, reason: str = None
    ) -> Order:
        """Change the address within the change window. The pincode cannot change."""
        order = await self.get_order(lead_id)
        self._check_change_allowed(actor, order)

        if not (new_address or "").strip():
            raise ValidationError("New delivery address is required", error_code="ADDRESS_REQUIRED")
        if new_pincode is not None and validate_pincode(new_pincode) != order.delivery_pincode:
            raise ValidationError(
                "Delivery address can only change within the same pincode",
                error_code="PINCODE_CHANGE_NOT_ALLOWED",
                details={"current_pincode": order.delivery_pincode, "requested_pincode": new_pincode},
            )

        entry = {
            "old_address": order.delivery_address,
            "new_address": new_address.strip(),
            "changed_by": actor.id,
            "reason": reason,
            "changed_at": self.now().isoformat(),
        }
        # Reassign so SQLAlchemy sees the JSON change
        order.address_change_history = list(order.address_change_history or []) + [entry]
        order.delivery_address = entry["new_address"]

        delivery = await self._get_delivery(order.lead_id)
        if delivery is not None:
            delivery.delivery_address = order.delivery_address

        await self._commit_change(order)
        logger.info(f"Delivery address changed for {order.lead_id} by {actor.id}")
        return order

    async def change_delivery_date(
        self, actor: Actor, lead_id: str, new_date: date, reason: str = None
    ) -> Order:
        order = await self.get_order(lead_id)
        self._check_change_allowed(actor, order)

        if new_date <= self.now().date():
            raise ValidationError(
                "Delivery date must be in the future",
                error_code="DELIVERY_DATE_NOT_FUTURE",
                details={"delivery_expected_date": new_date.isoformat()},
            )

        entry = {
            "old_date": order.delivery_expected_date.isoformat() if order.delivery_expected_date else None,
            "new_date": new_date.isoformat(),
            "changed_by": actor.id,
            "reason": reason,
            "changed_at": self.now().isoformat(),
        }
        order.delivery_date_change_history = list(order.delivery_date_change_history or []) + [entry]
        order.delivery_expected_date = new_date

        delivery = await self._get_delivery(order.lead_id)
        if delivery is not None:
            delivery.delivery_expected_date = new_date

        await self._commit_change(order)
        logger.info(f"Delivery date changed for {order.lead_id} to {new_date} by {actor.id}")
        return order

    def hours_since_placement(self, order: Order) -> Optional[float]:
        placed_at = as_utc(order.placed_at)
        if placed_at is None:
            return None
        return (self.now() - placed_at).total_seconds() / 3600

    def can_change_delivery(self, order: Order) -> bool:
        hours = self.hours_since_placement(order)
        return (
            order.order_status in CHANGEABLE_STATUSES
            and hours is not None
            and hours <= settings.ORDER_CHANGE_WINDOW_HOURS
        )

    def _check_change_allowed(self, actor: Actor, order: Order) -> None:
        if actor.role != ActorRole.CUSTOMER.value:
            raise ActorNotPermittedError("Only the customer can change delivery details",
                                         error_code="ROLE_NOT_PERMITTED")
        if order.customer_id != actor.id:
            raise ActorNotPermittedError("Order belongs to another customer", error_code="NOT_ORDER_OWNER")

        if order.order_status not in CHANGEABLE_STATUSES:
            raise StateConflictError(
                f"Delivery details cannot be changed while order is '{order.order_status}'",
                current_status=order.order_status,
                required_status=[s.value for s in S if s.value in CHANGEABLE_STATUSES],
            )
        if not self.can_change_delivery(order):
            raise StateConflictError(
                f"Delivery details can only be changed within "
                f"{settings.ORDER_CHANGE_WINDOW_HOURS} hours of order placement",
                current_status=order.order_status,
                error_code="CHANGE_WINDOW_EXPIRED",
                details={"hours_since_placement": round(self.hours_since_placement(order) or 0, 1)},
            )

    async def get_change_history(self, actor: Actor, lead_id: str) -> dict:
        order = await self.get_order_for(actor, lead_id)
        hours = self.hours_since_placement(order)
        window = settings.ORDER_CHANGE_WINDOW_HOURS
        return {
            "lead_id": order.lead_id,
            "order_status": order.order_status,
            "placed_at": order.placed_at,
            "hours_since_placement": round(hours, 1) if hours is not None else None,
            "hours_remaining": round(max(0.0, window - hours), 1) if hours is not None else None,
            "can_make_changes": self.can_change_delivery(order),
            "address_change_history": order.address_change_history or [],
            "delivery_date_change_history": order.delivery_date_change_history or [],
        }

    async def _commit_change(self, order: Order) -> None:
        lead_id = order.lead_id
        try:
            await self.db.flush()
            await self.db.commit()
        except StaleDataError:
            await self.db.rollback()
            raise self._concurrent_update(lead_id)
        except Exception:
            await self.db.rollback()
            raise

    # ==================== Vendor ====================

    async def vendor_accept(self, actor: Actor, lead_id: str, remarks: str = None) -> Order:
        order = await self.get_order(lead_id)
        transition = self._resolve(order, actor, Action.VENDOR_ACCEPT)
        if transition is None:
            # Re-entry retries any document sync that failed earlier
            self._replay_sync(order)
            return order
        ctx = _TransitionContext(actor=actor, remarks=remarks or "Order accepted by vendor")
        return await self._execute(order, transition, ctx)

    async def vendor_reject(self, actor: Actor, lead_id: str, remarks: str = None) -> Order:
        order = await self.get_order(lead_id)
        transition = self._resolve(order, actor, Action.VENDOR_REJECT)
        if transition is None:
            return order
        ctx = _TransitionContext(actor=actor, remarks=remarks or "Order rejected by vendor")
        return await self._execute(order, transition, ctx)

    async def vendor_update_shipping_status(
        self,
        actor: Actor,
        lead_id: str,
        new_status: str,
        fleet_details: Optional[FleetDetails] = None,
        remarks: str = None,
    ) -> Order:
        if new_status not in SHIPPING_TARGETS:
            raise ValidationError(
                f"Invalid shipping status '{new_status}'",
                error_code="INVALID_SHIPPING_STATUS",
                details={"allowed": SHIPPING_TARGETS},
            )
        order = await self.get_order(lead_id)
        transition = self._resolve(order, actor, Action.SHIP, target=new_status)
        if transition is None:
            if new_status == S.OUT_FOR_DELIVERY.value:
                self._replay_sync(order)
            return order

        ctx = _TransitionContext(
            actor=actor,
            remarks=remarks or f"Order status updated to {new_status} by vendor",
        )
        ctx.data["fleet"] = fleet_details
        return await self._execute(order, transition, ctx)

    # ==================== Admin ====================

    async def mark_payment_done(
        self,
        actor: Actor,
        lead_id: str,
        paid_amount,
        method: str,
        transaction_id: str = None,
        utr_number: str = None,
        remarks: str = None,
    ) -> Order:
        order = await self.get_order(lead_id)
        transition = self._resolve(order, actor, Action.MARK_PAYMENT_DONE)
        if transition is None:
            return order

        amount = _decimal(paid_amount, "paid_amount")
        if amount <= 0:
            raise ValidationError("Paid amount must be greater than 0", error_code="INVALID_AMOUNT",
                                  details={"paid_amount": str(paid_amount)})
        if method not in PAYMENT_MODES:
            raise ValidationError(
                f"Unknown payment method '{method}'",
                error_code="INVALID_PAYMENT_METHOD",
                details={"allowed": sorted(PAYMENT_MODES)},
            )

        ctx = _TransitionContext(actor=actor, remarks=remarks or "Payment received")
        ctx.data.update(paid_amount=amount, method=method, transaction_id=transaction_id, utr_number=utr_number)
        return await self._execute(order, transition, ctx)

    async def admin_confirm(self, actor: Actor, lead_id: str, line_item_pricing: List[dict], remarks: str = None) -> Order:
        """Confirm with vendor pricing for every item, all or nothing."""
        order = await self.get_order(lead_id)
        transition = self._resolve(order, actor, Action.ADMIN_CONFIRM)
        if transition is None:
            return order

        ctx = _TransitionContext(actor=actor, remarks=remarks or "Order confirmed by admin")
        ctx.data["pricing"] = self._validate_line_pricing(order, line_item_pricing or [])
        return await self._execute(order, transition, ctx)

    def _validate_line_pricing(self, order: Order, line_item_pricing: List[dict]) -> Dict[str, Tuple[Decimal, Decimal]]:
        references = {item.item_reference for item in order.items}
        pricing: Dict[str, Tuple[Decimal, Decimal]] = {}

        for line in line_item_pricing:
            reference = line.get("item_reference")
            if reference not in references:
                raise ValidationError(f"Item {reference} is not part of this order",
                                      error_code="UNKNOWN_ITEM", details={"item_reference": reference})
            if reference in pricing:
                raise ValidationError(f"Item {reference} priced twice",
                                      error_code="DUPLICATE_ITEM_PRICING", details={"item_reference": reference})

            unit_price = _decimal(line.get("unit_price"), "unit_price")
            loading = _decimal(line.get("loading_charges") or 0, "loading_charges")
            if unit_price <= 0:
                raise ValidationError(f"Unit price for {reference} must be greater than 0",
                                      error_code="INVALID_UNIT_PRICE", details={"item_reference": reference})
            if loading < 0:
                raise ValidationError(f"Loading charges for {reference} cannot be negative",
                                      error_code="INVALID_LOADING_CHARGES", details={"item_reference": reference})
            pricing[reference] = (unit_price, loading)

        missing = sorted(references - set(pricing))
        if missing:
            raise ValidationError(
                "Pricing must be supplied for every item",
                error_code="INCOMPLETE_PRICING",
                details={"missing_items": missing},
            )
        return pricing

    async def admin_cancel(self, actor: Actor, lead_id: str, reason: str = None) -> Order:
        order = await self.get_order(lead_id)
        transition = self._resolve(order, actor, Action.ADMIN_CANCEL)
        if transition is None:
            return order
        ctx = _TransitionContext(actor=actor, remarks=reason or "Order cancelled by admin")
        return await self._execute(order, transition, ctx)

    # ==================== Side effects ====================

    async def _lock_pricing(self, order: Order, ctx: _TransitionContext) -> None:
        details: DeliveryDetails = ctx.data["details"]
        pricing = ctx.data["pricing"]

        order.delivery_address = details.delivery_address.strip()
        order.delivery_pincode = ctx.data["pincode"]
        order.delivery_expected_date = details.delivery_expected_date
        order.receiver_name = details.receiver_name
        order.receiver_phone = details.receiver_phone
        order.order_email = details.order_email
        order.pricing_snapshot = pricing
        order.placed_at = self.now()

        order.subtotal = order.catalog_subtotal
        order.delivery_charges = Decimal(pricing["total_charge"])
        order.total_amount = order.subtotal + order.delivery_charges

    async def _assign_invoice_number(self, order: Order, ctx: _TransitionContext) -> None:
        if not order.invoice_number:
            order.invoice_number = f"INV-{self.now():%Y%m%d}-{_random_suffix(6)}"

    async def _get_delivery(self, lead_id: str) -> Optional[OrderDelivery]:
        result = await self.db.execute(select(OrderDelivery).where(OrderDelivery.lead_id == lead_id))
        return result.scalar_one_or_none()

    async def _create_delivery(self, order: Order, ctx: _TransitionContext) -> None:
        delivery = await self._get_delivery(order.lead_id)
        if delivery is None:
            delivery = OrderDelivery(lead_id=order.lead_id, delivery_status=DeliveryStatus.PENDING.value)
            self.db.add(delivery)
        delivery.invoice_number = order.invoice_number
        delivery.delivery_address = order.delivery_address
        delivery.delivery_pincode = order.delivery_pincode
        delivery.delivery_expected_date = order.delivery_expected_date

    async def _create_payment(self, order: Order, ctx: _TransitionContext) -> None:
        method = ctx.data["method"]
        payment = OrderPayment(
            invoice_number=order.invoice_number,
            lead_id=order.lead_id,
            customer_id=order.customer_id,
            vendor_id=order.vendor_id,
            transaction_id=ctx.data.get("transaction_id") or f"TXN-{self.now():%Y%m%d%H%M%S}-{_random_suffix(6)}",
            payment_method=method,
            payment_mode=PAYMENT_MODES[method],
            payment_status="successful",
            order_amount=order.total_amount,
            paid_amount=ctx.data["paid_amount"],
            utr_number=ctx.data.get("utr_number"),
            remarks=ctx.remarks,
            payment_date=self.now(),
            recorded_by=ctx.actor.id,
        )
        self.db.add(payment)

    async def _apply_line_pricing(self, order: Order, ctx: _TransitionContext) -> None:
        pricing = ctx.data["pricing"]
        for item in order.items:
            item.unit_price, item.loading_charges = pricing[item.item_reference]

        order.subtotal = sum((item.line_total for item in order.items), Decimal("0"))
        order.total_amount = order.subtotal + Decimal(str(order.delivery_charges or 0))
        order.confirmed_at = self.now()

    async def _update_delivery(self, order: Order, ctx: _TransitionContext) -> None:
        delivery = await self._get_delivery(order.lead_id)
        if delivery is None:
            delivery = OrderDelivery(
                lead_id=order.lead_id,
                invoice_number=order.invoice_number,
                delivery_address=order.delivery_address,
                delivery_pincode=order.delivery_pincode,
                delivery_expected_date=order.delivery_expected_date,
            )
            self.db.add(delivery)

        fleet: Optional[FleetDetails] = ctx.data.get("fleet")
        if fleet is not None:
            for name, value in vars(fleet).items():
                if value is not None:
                    setattr(delivery, name, value)
            if fleet.last_latitude is not None and fleet.last_longitude is not None:
                delivery.last_location_at = self.now()

        delivery.delivery_status = DELIVERY_STATUS_FOR.get(ctx.target, delivery.delivery_status)

    async def _finalize_delivery(self, order: Order, ctx: _TransitionContext) -> None:
        delivered_at = self.now()
        order.delivered_at = delivered_at
        delivery = await self._get_delivery(order.lead_id)
        if delivery is not None:
            delivery.delivery_status = DeliveryStatus.DELIVERED.value
            delivery.delivery_actual_date = delivered_at

    async def _mark_cancelled(self, order: Order, ctx: _TransitionContext) -> None:
        order.cancelled_at = self.now()

    async def _notify_order_placed(self, order: Order, ctx: _TransitionContext) -> None:
        if not self.email_service or not order.order_email:
            return
        try:
            # smtplib blocks; keep it off the event loop
            await asyncio.to_thread(
                self.email_service.send_order_placed_email,
                to_email=order.order_email,
                lead_id=order.lead_id,
                invoice_number=order.invoice_number,
                items=[{"item_reference": i.item_reference, "category": i.category, "quantity": i.quantity}
                       for i in order.items],
                delivery_address=order.delivery_address,
                delivery_charges=order.delivery_charges,
                expected_delivery=order.delivery_expected_date.isoformat() if order.delivery_expected_date else None,
            )
        except Exception as e:
            logger.warning(f"Order placed email failed for {order.lead_id}: {e}")

    async def _sync_documents(self, order: Order, ctx: _TransitionContext) -> None:
        self._replay_sync(order)

    def _replay_sync(self, order: Order) -> None:
        """Queue the accounting sync for the order's current status."""
        trigger = order.order_status
        if trigger not in TRIGGER_DOCUMENTS:
            return
        if self.dispatcher is None:
            logger.warning(f"No sync dispatcher configured; {trigger} documents for {order.lead_id} not queued")
            return
        self.dispatcher.enqueue(order.lead_id, trigger)

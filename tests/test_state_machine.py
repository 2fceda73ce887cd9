"""
Tests for the order lifecycle state machine.

Tests ensure that:
1. Every (status, action) pair either applies the documented edge, is an
   idempotent no-op, or is rejected without touching the order
2. Role and ownership are checked before the current status
3. Placement prices delivery, assigns the invoice number and locks the snapshot
4. Confirmation, payment and shipping write their records atomically
5. Delivery changes respect the post-placement window
. Listings are scoped to the caller and tracking is hidden from non-parties
"""
import asyncio
import re
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import select, func

from app.core.exceptions import (
    ActorNotPermittedError,
    CorruptOrderStateError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from app.models.order import OrderDelivery, OrderPayment, OrderStatus
from app.models.warehouse import Warehouse
from app.services.order_state_machine import (
    DeliveryDetails,
    FleetDetails,
    get_allowed_transitions,
    lead_id_prefix,
)
from tests.utils import (
    ADMIN,
    CART_ITEMS,
    CUSTOMER,
    DESTINATION_PINCODE,
    LIFECYCLE,
    LINE_PRICING,
    OTHER_CUSTOMER,
    OTHER_VENDOR,
    VENDOR,
    future_date,
    ledger_events,
    load_order,
    make_warehouse,
    seed_order,
)

S = OrderStatus
ALL_STATUSES = LIFECYCLE + [S.CANCELLED.value]
SHIPPING = [
    S.ORDER_CONFIRMED.value,
    S.TRUCK_LOADING.value,
    S.IN_TRANSIT.value,
    S.SHIPPED.value,
    S.OUT_FOR_DELIVERY.value,
    S.DELIVERED.value,
]

# (action, target reached when legal)
OPERATIONS = [
    ("place", S.ORDER_PLACED.value),
    ("vendor_accept", S.VENDOR_ACCEPTED.value),
    ("vendor_reject", S.CANCELLED.value),
    ("mark_payment_done", S.PAYMENT_DONE.value),
    ("admin_confirm", S.ORDER_CONFIRMED.value),
    ("admin_cancel", S.CANCELLED.value),
] + [("ship", target) for target in SHIPPING[1:]]


def is_legal(status: str, action: str, target: str) -> bool:
    if action == "place":
        return status == S.PENDING.value
    if action in ("vendor_accept", "vendor_reject"):
        return status == S.ORDER_PLACED.value
    if action == "mark_payment_done":
        return status == S.VENDOR_ACCEPTED.value
    if action == "admin_confirm":
        return status == S.PAYMENT_DONE.value
    if action == "admin_cancel":
        return status not in (S.DELIVERED.value, S.CANCELLED.value)
    # ship: forward only, delivered only straight from out_for_delivery
    if status not in SHIPPING[:-1] or SHIPPING.index(target) <= SHIPPING.index(status):
        return False
    return target != S.DELIVERED.value or status == S.OUT_FOR_DELIVERY.value


def delivery_details(pincode: str = DESTINATION_PINCODE, days: int = 5, email: str = None) -> DeliveryDetails:
    return DeliveryDetails(
        delivery_address="Plot 7, Nariman Point",
        delivery_pincode=pincode,
        delivery_expected_date=future_date(days),
        receiver_name="Site Engineer",
        receiver_phone="9800000000",
        order_email=email,
    )


async def perform(machine, lead_id: str, action: str, target: str):
    if action == "place":
        return await machine.place_order(CUSTOMER, lead_id, delivery_details())
    if action == "vendor_accept":
        return await machine.vendor_accept(VENDOR, lead_id)
    if action == "vendor_reject":
        return await machine.vendor_reject(VENDOR, lead_id, "Out of stock")
    if action == "mark_payment_done":
        return await machine.mark_payment_done(ADMIN, lead_id, Decimal("31700"), "upi")
    if action == "admin_confirm":
        return await machine.admin_confirm(ADMIN, lead_id, LINE_PRICING)
    if action == "admin_cancel":
        return await machine.admin_cancel(ADMIN, lead_id, "Customer request")
    return await machine.vendor_update_shipping_status(VENDOR, lead_id, target)


class TestTransitionMatrix:
    """Every status crossed with every action."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ALL_STATUSES)
    @pytest.mark.parametrize("action,target", OPERATIONS)
    async def test_status_action_pair(self, status, action, target, session_factory, machine, warehouse):
        lead_id = await seed_order(session_factory, status)

        if status == target and status in (S.DELIVERED.value, S.CANCELLED.value):
            with pytest.raises(StateConflictError) as exc_info:
                await perform(machine, lead_id, action, target)
            assert exc_info.value.error_code == "TERMINAL_STATUS"
            expected_status, expected_events = status, 0
        elif status == target:
            order = await perform(machine, lead_id, action, target)
            assert order.order_status == status
            expected_status, expected_events = status, 0
        elif is_legal(status, action, target):
            order = await perform(machine, lead_id, action, target)
            assert order.order_status == target
            expected_status, expected_events = target, 1
        else:
            with pytest.raises(StateConflictError) as exc_info:
                await perform(machine, lead_id, action, target)
            assert type(exc_info.value) is StateConflictError
            assert exc_info.value.current_status == status
            expected_status, expected_events = status, 0

        assert (await load_order(session_factory, lead_id)).order_status == expected_status
        events = await ledger_events(session_factory, lead_id)
        assert len(events) == expected_events
        if expected_events:
            assert (events[0].from_status, events[0].to_status) == (status, target)

    def test_allowed_transitions_helper(self):
        assert get_allowed_transitions(S.ORDER_PLACED.value, "vendor") == [
            ("vendor_accept", S.VENDOR_ACCEPTED.value),
            ("vendor_reject", S.CANCELLED.value),
        ]
        assert get_allowed_transitions(S.DELIVERED.value) == []


class TestCreateCart:

    @pytest.mark.asyncio
    async def test_creates_pending_order_with_ledger_entry(self, session_factory, machine):
        order = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)

        assert order.order_status == S.PENDING.value
        assert order.lead_id.startswith("MIXED-")
        assert order.subtotal == Decimal("31000")
        assert [i.line_number for i in order.items] == [1, 2]
        assert all(i.unit_price is None for i in order.items)

        events = await ledger_events(session_factory, order.lead_id)
        assert [(e.from_status, e.to_status) for e in events] == [(None, S.PENDING.value)]

    @pytest.mark.parametrize("categories,prefix", [
        ({"cement"}, "CEMENT"),
        ({"iron"}, "STEEL"),
        ({"concrete_mixer"}, "MIXER"),
        ({"cement", "iron"}, "MIXED"),
        ({"bricks"}, "ORDER"),
    ])
    def test_lead_id_prefix(self, categories, prefix):
        assert lead_id_prefix(categories) == prefix

    @pytest.mark.asyncio
    async def test_only_customers_create_carts(self, machine):
        with pytest.raises(ActorNotPermittedError):
            await machine.create_cart(VENDOR, VENDOR.id, CART_ITEMS)

    @pytest.mark.asyncio
    async def test_rejects_empty_cart(self, machine):
        with pytest.raises(ValidationError) as exc_info:
            await machine.create_cart(CUSTOMER, VENDOR.id, [])
        assert exc_info.value.error_code == "EMPTY_ORDER"

    @pytest.mark.asyncio
    async def test_rejects_duplicate_items(self, machine):
        with pytest.raises(ValidationError):
            await machine.create_cart(CUSTOMER, VENDOR.id, [CART_ITEMS[0], CART_ITEMS[0]])

    @pytest.mark.asyncio
    async def test_rejects_non_positive_quantity(self, machine):
        item = dict(CART_ITEMS[0], quantity=Decimal("0"))
        with pytest.raises(ValidationError):
            await machine.create_cart(CUSTOMER, VENDOR.id, [item])


class TestPlaceOrder:

    @pytest.mark.asyncio
    async def test_places_and_locks_pricing(self, session_factory, machine, warehouse):
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)

        order = await machine.place_order(CUSTOMER, cart.lead_id, delivery_details())

        assert order.order_status == S.ORDER_PLACED.value
        assert re.fullmatch(r"INV-\d{8}-[A-Z0-9]{6}", order.invoice_number)
        assert order.placed_at is not None
        # Both items ship from the 20 km warehouse: 500 + 10 * 20 each
        assert order.delivery_charges == Decimal("1400.00")
        assert order.total_amount == Decimal("32400.00")

        snapshot = order.pricing_snapshot
        assert snapshot["total_charge"] == "1400.00"
        assert snapshot["max_distance_km"] == pytest.approx(20.0, abs=0.01)
        assert snapshot["destination"]["pincode"] == DESTINATION_PINCODE
        assert {i["warehouse_code"] for i in snapshot["items"]} == {"WH-MUM-01"}

        async with session_factory() as session:
            delivery = (await session.execute(
                select(OrderDelivery).where(OrderDelivery.lead_id == cart.lead_id)
            )).scalar_one()
        assert delivery.delivery_status == "pending"
        assert delivery.invoice_number == order.invoice_number

        events = await ledger_events(session_factory, cart.lead_id)
        assert [e.to_status for e in events] == [S.PENDING.value, S.ORDER_PLACED.value]
        assert events[1].invoice_number == order.invoice_number

    @pytest.mark.asyncio
    async def test_single_item_five_km_away(self, session_factory, machine):
        """base 50 + 10/km beyond a 2 km free radius: 50 + 10 * 3 = 80."""
        async with session_factory() as session:
            session.add(make_warehouse("WH-NEAR", 5, base_charge="50", per_km_charge="10",
                                       free_delivery_radius_km=2))
            await session.commit()
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS[:1])

        order = await machine.place_order(CUSTOMER, cart.lead_id, delivery_details())

        assert order.delivery_charges == Decimal("80.00")
        assert order.pricing_snapshot["items"][0]["distance_km"] == pytest.approx(5.0, abs=0.01)
        assert order.pricing_snapshot["estimated_days"] == 1

    @pytest.mark.asyncio
    async def test_invalid_pincode_rejected_before_geocoding(self, machine, geocode_provider, warehouse):
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)

        with pytest.raises(ValidationError) as exc_info:
            await machine.place_order(CUSTOMER, cart.lead_id, delivery_details(pincode="01234"))

        assert exc_info.value.error_code == "INVALID_PINCODE"
        assert geocode_provider.calls == []

    @pytest.mark.asyncio
    async def test_delivery_date_must_be_future(self, machine, warehouse):
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)

        with pytest.raises(ValidationError) as exc_info:
            await machine.place_order(CUSTOMER, cart.lead_id, delivery_details(days=0))
        assert exc_info.value.error_code == "DELIVERY_DATE_NOT_FUTURE"

    @pytest.mark.asyncio
    async def test_undeliverable_items_block_placement(self, session_factory, machine, warehouse):
        mixer = {"item_reference": "MIX-7", "item_name": "7/5 Mixer", "category": "concrete_mixer",
                 "quantity": Decimal("1"), "list_price": Decimal("95000")}
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, [CART_ITEMS[0], mixer])

        with pytest.raises(ValidationError) as exc_info:
            await machine.place_order(CUSTOMER, cart.lead_id, delivery_details())

        assert exc_info.value.error_code == "UNDELIVERABLE"
        assert [i["item_reference"] for i in exc_info.value.details["items"]] == ["MIX-7"]
        assert (await load_order(session_factory, cart.lead_id)).order_status == S.PENDING.value

    @pytest.mark.asyncio
    async def test_only_the_order_vendors_warehouses_are_candidates(self, session_factory, machine):
        async with session_factory() as session:
            session.add(make_warehouse("WH-OTHER", 5, vendor_id=OTHER_VENDOR.id))
            await session.commit()
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)

        with pytest.raises(ValidationError) as exc_info:
            await machine.place_order(CUSTOMER, cart.lead_id, delivery_details())
        assert exc_info.value.error_code == "UNDELIVERABLE"

    @pytest.mark.asyncio
    async def test_other_customer_cannot_place(self, machine, warehouse):
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)

        with pytest.raises(ActorNotPermittedError) as exc_info:
            await machine.place_order(OTHER_CUSTOMER, cart.lead_id, delivery_details())
        assert exc_info.value.error_code == "NOT_ORDER_OWNER"

    @pytest.mark.asyncio
    async def test_sends_order_placed_email(self, db, machine_for, warehouse):
        email_service = MagicMock()
        machine = machine_for(db, email_service=email_service)
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)

        await machine.place_order(CUSTOMER, cart.lead_id, delivery_details(email="buyer@example.com"))

        email_service.send_order_placed_email.assert_called_once()
        assert email_service.send_order_placed_email.call_args.kwargs["to_email"] == "buyer@example.com"

    @pytest.mark.asyncio
    async def test_email_failure_does_not_undo_placement(self, session_factory, db, machine_for, warehouse):
        email_service = MagicMock()
        email_service.send_order_placed_email.side_effect = RuntimeError("SMTP down")
        machine = machine_for(db, email_service=email_service)
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)

        await machine.place_order(CUSTOMER, cart.lead_id, delivery_details(email="buyer@example.com"))

        assert (await load_order(session_factory, cart.lead_id)).order_status == S.ORDER_PLACED.value

    @pytest.mark.asyncio
    async def test_geocode_failure_prices_from_approximate_location(self, machine, geocode_provider, warehouse):
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)

        order = await machine.place_order(CUSTOMER, cart.lead_id, delivery_details(pincode="400070"))

        assert geocode_provider.calls == ["400070"]
        assert order.order_status == S.ORDER_PLACED.value
        snapshot = order.pricing_snapshot
        assert snapshot["is_approximate"] is True
        assert snapshot["destination"]["is_approximate"] is True
        assert snapshot["destination"]["pincode"] == "400070"
        assert all(item["is_approximate"] for item in snapshot["items"])

    @pytest.mark.asyncio
    async def test_slow_order_placed_email_does_not_stall_event_loop(self, db, machine_for, warehouse):
        email_service = MagicMock()
        email_service.send_order_placed_email.side_effect = lambda **kwargs: time.sleep(0.3)
        machine = machine_for(db, email_service=email_service)
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)
        gaps = []

        async def heartbeat():
            last = time.monotonic()
            while True:
                await asyncio.sleep(0.01)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        beat = asyncio.create_task(heartbeat())
        try:
            await machine.place_order(CUSTOMER, cart.lead_id, delivery_details(email="buyer@example.com"))
        finally:
            beat.cancel()

        email_service.send_order_placed_email.assert_called_once()
        assert gaps and max(gaps) < 0.2

    @pytest.mark.asyncio
    async def test_later_warehouse_changes_do_not_reprice(self, session_factory, machine, warehouse):
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)
        placed = await machine.place_order(CUSTOMER, cart.lead_id, delivery_details())
        snapshot = dict(placed.pricing_snapshot)

        async with session_factory() as session:
            wh = (await session.execute(select(Warehouse))).scalar_one()
            wh.base_charge = Decimal("9999")
            await session.commit()

        await machine.vendor_accept(VENDOR, cart.lead_id)
        await machine.mark_payment_done(ADMIN, cart.lead_id, Decimal("32400"), "bank_transfer")
        await machine.admin_confirm(ADMIN, cart.lead_id, LINE_PRICING)

        order = await load_order(session_factory, cart.lead_id)
        assert order.pricing_snapshot == snapshot
        assert order.delivery_charges == Decimal("1400.00")


class TestGuards:
    """Rejections name the actor problem or the statuses that would allow the action."""

    @pytest.mark.asyncio
    async def test_role_checked_before_status(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.DELIVERED.value)

        with pytest.raises(ActorNotPermittedError) as exc_info:
            await machine.vendor_accept(CUSTOMER, lead_id)

        assert exc_info.value.error_code == "ROLE_NOT_PERMITTED"
        assert "current_status" not in exc_info.value.details

    @pytest.mark.asyncio
    async def test_unassigned_vendor_rejected(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value)

        with pytest.raises(ActorNotPermittedError) as exc_info:
            await machine.vendor_accept(OTHER_VENDOR, lead_id)
        assert exc_info.value.error_code == "NOT_ASSIGNED_VENDOR"

    @pytest.mark.asyncio
    async def test_admin_cannot_accept_for_vendor(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value)

        with pytest.raises(ActorNotPermittedError):
            await machine.vendor_accept(ADMIN, lead_id)

    @pytest.mark.asyncio
    async def test_confirm_before_payment_names_payment_done(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value)

        with pytest.raises(StateConflictError) as exc_info:
            await machine.admin_confirm(ADMIN, lead_id, LINE_PRICING)

        assert exc_info.value.current_status == S.ORDER_PLACED.value
        assert exc_info.value.required_status == [S.PAYMENT_DONE.value]
        assert exc_info.value.details["required_status"] == [S.PAYMENT_DONE.value]

    @pytest.mark.asyncio
    async def test_delivered_requires_out_for_delivery(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.TRUCK_LOADING.value)

        with pytest.raises(StateConflictError) as exc_info:
            await machine.vendor_update_shipping_status(VENDOR, lead_id, S.DELIVERED.value)
        assert exc_info.value.required_status == [S.OUT_FOR_DELIVERY.value]

    @pytest.mark.asyncio
    async def test_unknown_shipping_status(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.ORDER_CONFIRMED.value)

        with pytest.raises(ValidationError) as exc_info:
            await machine.vendor_update_shipping_status(VENDOR, lead_id, "teleported")
        assert exc_info.value.error_code == "INVALID_SHIPPING_STATUS"

    @pytest.mark.asyncio
    async def test_corrupt_status_surfaces(self, session_factory, machine):
        lead_id = await seed_order(session_factory, "teleported")

        with pytest.raises(CorruptOrderStateError):
            await machine.admin_cancel(ADMIN, lead_id)

    @pytest.mark.asyncio
    async def test_unknown_order(self, machine):
        with pytest.raises(NotFoundError) as exc_info:
            await machine.vendor_accept(VENDOR, "CEMENT-NOPE")
        assert exc_info.value.error_code == "ORDER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_non_party_cannot_see_order(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value)

        with pytest.raises(NotFoundError):
            await machine.get_order_for(OTHER_CUSTOMER, lead_id)
        assert (await machine.get_order_for(ADMIN, lead_id)).lead_id == lead_id
        assert (await machine.get_order_for(VENDOR, lead_id)).lead_id == lead_id


class TestIdempotency:
    """Repeating a transition already applied is a quiet success."""

    @pytest.mark.asyncio
    async def test_repeat_accept_requeues_sync_without_new_event(self, session_factory, machine, dispatcher):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value)

        await machine.vendor_accept(VENDOR, lead_id)
        await machine.vendor_accept(VENDOR, lead_id)

        assert len(await ledger_events(session_factory, lead_id)) == 1
        assert dispatcher.jobs == [(lead_id, "vendor_accepted"), (lead_id, "vendor_accepted")]

    @pytest.mark.asyncio
    async def test_repeat_payment_records_one_payment(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.VENDOR_ACCEPTED.value)

        await machine.mark_payment_done(ADMIN, lead_id, Decimal("31700"), "upi")
        await machine.mark_payment_done(ADMIN, lead_id, Decimal("99999"), "wallet")

        async with session_factory() as session:
            count = (await session.execute(select(func.count(OrderPayment.id)))).scalar()
        assert count == 1

    @pytest.mark.asyncio
    async def test_repeat_out_for_delivery_requeues_sync(self, session_factory, machine, dispatcher):
        lead_id = await seed_order(session_factory, S.SHIPPED.value)

        await machine.vendor_update_shipping_status(VENDOR, lead_id, S.OUT_FOR_DELIVERY.value)
        await machine.vendor_update_shipping_status(VENDOR, lead_id, S.OUT_FOR_DELIVERY.value)

        assert dispatcher.jobs == [(lead_id, "out_for_delivery")] * 2
        assert len(await ledger_events(session_factory, lead_id)) == 1

    @pytest.mark.asyncio
    async def test_sync_not_queued_for_other_transitions(self, session_factory, machine, dispatcher):
        lead_id = await seed_order(session_factory, S.ORDER_CONFIRMED.value)

        await machine.vendor_update_shipping_status(VENDOR, lead_id, S.TRUCK_LOADING.value)
        await machine.vendor_update_shipping_status(VENDOR, lead_id, S.SHIPPED.value)

        assert dispatcher.jobs == []


class TestAdminConfirm:

    @pytest.mark.asyncio
    async def test_applies_vendor_pricing(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.PAYMENT_DONE.value)

        order = await machine.admin_confirm(ADMIN, lead_id, LINE_PRICING)

        # 50 * 380 + 250 loading, 2 * 5300
        assert order.subtotal == Decimal("29850")
        assert order.total_amount == Decimal("30550")
        assert order.confirmed_at is not None
        prices = {i.item_reference: (i.unit_price, i.loading_charges) for i in order.items}
        assert prices["CEM-OPC53"] == (Decimal("380"), Decimal("250"))

    @pytest.mark.asyncio
    async def test_pricing_must_cover_every_item(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.PAYMENT_DONE.value)

        with pytest.raises(ValidationError) as exc_info:
            await machine.admin_confirm(ADMIN, lead_id, LINE_PRICING[:1])

        assert exc_info.value.error_code == "INCOMPLETE_PRICING"
        assert exc_info.value.details["missing_items"] == ["TMT-12MM"]
        order = await load_order(session_factory, lead_id)
        assert order.order_status == S.PAYMENT_DONE.value
        assert all(i.unit_price is None for i in order.items)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("pricing,code", [
        (LINE_PRICING + [{"item_reference": "GHOST", "unit_price": Decimal("1")}], "UNKNOWN_ITEM"),
        (LINE_PRICING + [LINE_PRICING[0]], "DUPLICATE_ITEM_PRICING"),
        ([dict(LINE_PRICING[0], unit_price=Decimal("0")), LINE_PRICING[1]], "INVALID_UNIT_PRICE"),
        ([dict(LINE_PRICING[0], loading_charges=Decimal("-1")), LINE_PRICING[1]], "INVALID_LOADING_CHARGES"),
    ])
    async def test_rejects_bad_pricing(self, session_factory, machine, pricing, code):
        lead_id = await seed_order(session_factory, S.PAYMENT_DONE.value)

        with pytest.raises(ValidationError) as exc_info:
            await machine.admin_confirm(ADMIN, lead_id, pricing)
        assert exc_info.value.error_code == code


class TestPayment:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method,mode", [
        ("upi", "online"),
        ("bank_transfer", "offline"),
        ("cash_on_delivery", "cash_on_delivery"),
    ])
    async def test_records_payment(self, session_factory, machine, method, mode):
        lead_id = await seed_order(session_factory, S.VENDOR_ACCEPTED.value)

        order = await machine.mark_payment_done(ADMIN, lead_id, Decimal("31700"), method, utr_number="UTR1")

        async with session_factory() as session:
            payment = (await session.execute(select(OrderPayment))).scalar_one()
        assert payment.invoice_number == order.invoice_number
        assert payment.payment_mode == mode
        assert payment.paid_amount == Decimal("31700")
        assert payment.transaction_id.startswith("TXN-")
        assert payment.recorded_by == ADMIN.id

    @pytest.mark.asyncio
    async def test_unknown_method(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.VENDOR_ACCEPTED.value)

        with pytest.raises(ValidationError) as exc_info:
            await machine.mark_payment_done(ADMIN, lead_id, Decimal("100"), "barter")
        assert exc_info.value.error_code == "INVALID_PAYMENT_METHOD"

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.VENDOR_ACCEPTED.value)

        with pytest.raises(ValidationError) as exc_info:
            await machine.mark_payment_done(ADMIN, lead_id, Decimal("0"), "upi")
        assert exc_info.value.error_code == "INVALID_AMOUNT"


class TestShipping:

    @pytest.mark.asyncio
    async def test_fleet_details_recorded(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.ORDER_CONFIRMED.value)
        fleet = FleetDetails(driver_name="Ramesh", truck_number="MH04AB1234",
                             last_latitude=19.1, last_longitude=72.9)

        await machine.vendor_update_shipping_status(VENDOR, lead_id, S.TRUCK_LOADING.value, fleet)

        async with session_factory() as session:
            delivery = (await session.execute(select(OrderDelivery))).scalar_one()
        assert delivery.delivery_status == "picked_up"
        assert delivery.truck_number == "MH04AB1234"
        assert delivery.last_location_at is not None

    @pytest.mark.asyncio
    async def test_can_skip_intermediate_statuses(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.ORDER_CONFIRMED.value)

        order = await machine.vendor_update_shipping_status(VENDOR, lead_id, S.SHIPPED.value)

        assert order.order_status == S.SHIPPED.value

    @pytest.mark.asyncio
    async def test_delivery_closes_delivery_record(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.SHIPPED.value)

        await machine.vendor_update_shipping_status(VENDOR, lead_id, S.OUT_FOR_DELIVERY.value)
        order = await machine.vendor_update_shipping_status(VENDOR, lead_id, S.DELIVERED.value)

        assert order.delivered_at is not None
        async with session_factory() as session:
            delivery = (await session.execute(select(OrderDelivery))).scalar_one()
        assert delivery.delivery_status == "delivered"
        assert delivery.delivery_actual_date is not None

    @pytest.mark.asyncio
    async def test_full_lifecycle_ledger(self, session_factory, machine, warehouse, dispatcher):
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)
        lead_id = cart.lead_id

        await machine.place_order(CUSTOMER, lead_id, delivery_details())
        await machine.vendor_accept(VENDOR, lead_id)
        await machine.mark_payment_done(ADMIN, lead_id, Decimal("32400"), "upi")
        await machine.admin_confirm(ADMIN, lead_id, LINE_PRICING)
        for status in SHIPPING[1:]:
            await machine.vendor_update_shipping_status(VENDOR, lead_id, status)

        history = await machine.get_status_history(CUSTOMER, lead_id)
        assert [e.to_status for e in history] == LIFECYCLE
        assert [e.from_status for e in history] == [None] + LIFECYCLE[:-1]
        assert [e.actor_role for e in history] == (
            ["customer", "customer", "vendor", "admin", "admin"] + ["vendor"] * 5
        )
        assert dispatcher.jobs == [(lead_id, "vendor_accepted"), (lead_id, "out_for_delivery")]


class TestDeliveryChanges:
    """Address and date changes inside the post-placement window."""

    @pytest.mark.asyncio
    async def test_address_change_within_window(self, session_factory, machine, clock):
        lead_id = await seed_order(session_factory, S.VENDOR_ACCEPTED.value, placed_at=clock())
        clock.advance(hours=47)

        order = await machine.change_delivery_address(CUSTOMER, lead_id, "Gate 3, Nariman Point",
                                                      reason="Site gate moved")

        assert order.delivery_address == "Gate 3, Nariman Point"
        history = (await load_order(session_factory, lead_id)).address_change_history
        assert len(history) == 1
        assert history[0]["old_address"] == "Plot 7, Nariman Point"
        assert history[0]["changed_by"] == CUSTOMER.id

    @pytest.mark.asyncio
    async def test_window_expires(self, session_factory, machine, clock):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value, placed_at=clock())
        clock.advance(hours=49)

        with pytest.raises(StateConflictError) as exc_info:
            await machine.change_delivery_address(CUSTOMER, lead_id, "Elsewhere")
        assert exc_info.value.error_code == "CHANGE_WINDOW_EXPIRED"

    @pytest.mark.asyncio
    async def test_no_changes_after_confirmation(self, session_factory, machine, clock):
        lead_id = await seed_order(session_factory, S.ORDER_CONFIRMED.value, placed_at=clock())

        with pytest.raises(StateConflictError) as exc_info:
            await machine.change_delivery_date(CUSTOMER, lead_id, future_date(10))
        assert exc_info.value.current_status == S.ORDER_CONFIRMED.value

    @pytest.mark.asyncio
    async def test_pincode_cannot_change(self, session_factory, machine, clock):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value, placed_at=clock())

        with pytest.raises(ValidationError) as exc_info:
            await machine.change_delivery_address(CUSTOMER, lead_id, "Koramangala", new_pincode="560034")
        assert exc_info.value.error_code == "PINCODE_CHANGE_NOT_ALLOWED"

    @pytest.mark.asyncio
    async def test_only_customer_changes_delivery(self, session_factory, machine, clock):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value, placed_at=clock())

        with pytest.raises(ActorNotPermittedError):
            await machine.change_delivery_address(VENDOR, lead_id, "Elsewhere")

    @pytest.mark.asyncio
    async def test_date_change_updates_delivery_record(self, session_factory, machine, clock):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value, placed_at=clock())
        async with session_factory() as session:
            session.add(OrderDelivery(lead_id=lead_id, delivery_expected_date=future_date()))
            await session.commit()

        await machine.change_delivery_date(CUSTOMER, lead_id, future_date(12), reason="Site not ready")

        async with session_factory() as session:
            delivery = (await session.execute(select(OrderDelivery))).scalar_one()
        assert delivery.delivery_expected_date == future_date(12)

    @pytest.mark.asyncio
    async def test_date_must_be_future(self, session_factory, machine, clock):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value, placed_at=clock())

        with pytest.raises(ValidationError):
            await machine.change_delivery_date(CUSTOMER, lead_id, future_date(0) - timedelta(days=1))

    @pytest.mark.asyncio
    async def test_change_history_summary(self, session_factory, machine, clock):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value, placed_at=clock())
        clock.advance(hours=10)

        summary = await machine.get_change_history(CUSTOMER, lead_id)

        assert summary["can_make_changes"] is True
        assert summary["hours_since_placement"] == pytest.approx(10.0)
        assert summary["hours_remaining"] == pytest.approx(38.0)


class TestConcurrentTransitions:

    @pytest.mark.asyncio
    async def test_stale_write_is_rejected(self, session_factory, machine_for):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value)

        async with session_factory() as first, session_factory() as second:
            slow = machine_for(second)
            await slow.get_order(lead_id)  # holds version 1

            await machine_for(first).vendor_accept(VENDOR, lead_id)

            with pytest.raises(StateConflictError) as exc_info:
                await slow.vendor_reject(VENDOR, lead_id)
            assert exc_info.value.error_code == "CONCURRENT_UPDATE"

        assert (await load_order(session_factory, lead_id)).order_status == S.VENDOR_ACCEPTED.value
        events = await ledger_events(session_factory, lead_id)
        assert [e.to_status for e in events] == [S.VENDOR_ACCEPTED.value]


class TestListingsAndTracking:

    @pytest_asyncio.fixture
    async def seeded_orders(self, session_factory):
        """Three placed orders for VENDOR, one for OTHER_VENDOR and a cart."""
        await seed_order(session_factory, S.ORDER_PLACED.value, lead_id="CEMENT-LS0001")
        await seed_order(session_factory, S.ORDER_PLACED.value, lead_id="CEMENT-LS0002",
                         customer_id=OTHER_CUSTOMER.id)
        await seed_order(session_factory, S.VENDOR_ACCEPTED.value, lead_id="CEMENT-LS0003")
        await seed_order(session_factory, S.ORDER_PLACED.value, lead_id="CEMENT-LS0004",
                         vendor_id=OTHER_VENDOR.id)
        await seed_order(session_factory, S.PENDING.value, lead_id="CEMENT-LS0005")

    @pytest.mark.asyncio
    async def test_vendor_sees_orders_awaiting_acceptance(self, machine, seeded_orders):
        orders, total = await machine.list_orders(VENDOR, status=S.ORDER_PLACED.value)

        assert total == 2
        assert {o.lead_id for o in orders} == {"CEMENT-LS0001", "CEMENT-LS0002"}

    @pytest.mark.asyncio
    async def test_carts_left_out_unless_asked_for(self, machine, seeded_orders):
        orders, total = await machine.list_orders(CUSTOMER)
        carts, cart_total = await machine.list_orders(CUSTOMER, status=S.PENDING.value)

        assert total == 3
        assert {o.lead_id for o in orders} == {"CEMENT-LS0001", "CEMENT-LS0003", "CEMENT-LS0004"}
        assert cart_total == 1
        assert carts[0].lead_id == "CEMENT-LS0005"

    @pytest.mark.asyncio
    async def test_admin_filters_apply_only_to_admins(self, machine, seeded_orders):
        _, admin_total = await machine.list_orders(ADMIN)
        by_vendor, vendor_total = await machine.list_orders(ADMIN, vendor_id=OTHER_VENDOR.id)
        _, customer_total = await machine.list_orders(CUSTOMER, vendor_id=OTHER_VENDOR.id)

        assert admin_total == 4
        assert vendor_total == 1
        assert by_vendor[0].lead_id == "CEMENT-LS0004"
        assert customer_total == 3

    @pytest.mark.asyncio
    async def test_newest_first_with_paging(self, session_factory, machine):
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(3):
            await seed_order(session_factory, S.ORDER_PLACED.value, lead_id=f"CEMENT-PG000{i}",
                             created_at=start + timedelta(days=i))

        first, total = await machine.list_orders(ADMIN, skip=0, limit=2)
        second, _ = await machine.list_orders(ADMIN, skip=2, limit=2)

        assert total == 3
        assert [o.lead_id for o in first] == ["CEMENT-PG0002", "CEMENT-PG0001"]
        assert [o.lead_id for o in second] == ["CEMENT-PG0000"]

    @pytest.mark.asyncio
    async def test_unknown_status_filter(self, machine):
        with pytest.raises(ValidationError) as exc_info:
            await machine.list_orders(ADMIN, status="lost")

        assert exc_info.value.error_code == "INVALID_STATUS"
        assert S.ORDER_PLACED.value in exc_info.value.details["allowed"]

    @pytest.mark.asyncio
    async def test_tracking_after_payment(self, machine, warehouse):
        cart = await machine.create_cart(CUSTOMER, VENDOR.id, CART_ITEMS)
        lead_id = cart.lead_id
        await machine.place_order(CUSTOMER, lead_id, delivery_details())
        await machine.vendor_accept(VENDOR, lead_id)
        await machine.mark_payment_done(ADMIN, lead_id, Decimal("32400"), "upi", utr_number="UTR9")

        tracking = await machine.get_tracking(VENDOR, lead_id)

        assert [e.to_status for e in tracking["timeline"]] == [
            S.PENDING.value, S.ORDER_PLACED.value, S.VENDOR_ACCEPTED.value, S.PAYMENT_DONE.value,
        ]
        assert tracking["current_status"]["status"] == S.PAYMENT_DONE.value
        assert tracking["current_status"]["label"] == "Payment Completed"
        assert tracking["current_status"]["last_updated"] == tracking["timeline"][-1].created_at
        assert tracking["delivery"].delivery_status == "pending"
        assert tracking["payment"].utr_number == "UTR9"
        assert tracking["payment_status"] == "successful"
        assert tracking["estimated_delivery"] == future_date(5)
        assert tracking["can_make_changes"] is True

    @pytest.mark.asyncio
    async def test_tracking_before_payment(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value)

        tracking = await machine.get_tracking(CUSTOMER, lead_id)

        assert tracking["payment"] is None
        assert tracking["payment_status"] == "pending"
        with pytest.raises(NotFoundError) as exc_info:
            await machine.get_payment_details(CUSTOMER, lead_id)
        assert exc_info.value.error_code == "PAYMENT_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_cart_has_no_delivery_record(self, session_factory, machine):
        lead_id = await seed_order(session_factory, S.PENDING.value)

        with pytest.raises(NotFoundError) as exc_info:
            await machine.get_delivery_details(CUSTOMER, lead_id)
        assert exc_info.value.error_code == "DELIVERY_NOT_FOUND"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor", [OTHER_CUSTOMER, OTHER_VENDOR])
    async def test_hidden_from_non_parties(self, session_factory, machine, actor):
        lead_id = await seed_order(session_factory, S.ORDER_PLACED.value)

        for lookup in (machine.get_tracking, machine.get_delivery_details, machine.get_payment_details):
            with pytest.raises(NotFoundError) as exc_info:
                await lookup(actor, lead_id)
            assert exc_info.value.error_code == "ORDER_NOT_FOUND"

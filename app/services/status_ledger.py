"""Append-only order status history."""
import logging
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.order import Order, OrderStatusEvent

logger = logging.getLogger(__name__)


class StatusHistoryLedger:
    """
    Records one OrderStatusEvent per transition.

    Events are added to the caller's session and committed together with the
    status change. Updates and deletes are rejected by ORM listeners on the
    model.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    def record_transition(
        self,
        order: Order,
        actor_id: str,
        actor_role: str,
        from_status: Optional[str],
        to_status: str,
        remarks: Optional[str] = None,
    ) -> OrderStatusEvent:
        event = OrderStatusEvent(
            lead_id=order.lead_id,
            invoice_number=order.invoice_number,
            actor_id=str(actor_id),
            actor_role=actor_role,
            from_status=from_status,
            to_status=to_status,
            remarks=remarks,
        )
        self.db.add(event)
        logger.debug(f"Ledger: {order.lead_id} {from_status} -> {to_status} by {actor_role}:{actor_id}")
        return event

    async def get_history(self, lead_id: str) -> List[OrderStatusEvent]:
        result = await self.db.execute(
            select(OrderStatusEvent)
            .where(OrderStatusEvent.lead_id == lead_id)
            .order_by(OrderStatusEvent.created_at.asc(), OrderStatusEvent.id.asc())
        )
        return list(result.scalars().all())

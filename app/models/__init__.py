from app.models.order import (
    Order,
    OrderItem,
    OrderStatusEvent,
    OrderDelivery,
    OrderPayment,
    OrderStatus,
    ActorRole,
    DeliveryStatus,
    PaymentMethod,
    PaymentMode,
    ItemCategory,
)
from app.models.warehouse import Warehouse

__all__ = [
    "Order",
    "OrderItem",
    "OrderStatusEvent",
    "OrderDelivery",
    "OrderPayment",
    "OrderStatus",
    "ActorRole",
    "DeliveryStatus",
    "PaymentMethod",
    "PaymentMode",
    "ItemCategory",
    "Warehouse",
]

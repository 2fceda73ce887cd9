# Services module
from app.services.geocoding_service import GeocodingCache, GoogleGeocodingProvider
from app.services.delivery_pricing import DeliveryPricingEngine
from app.services.status_ledger import StatusHistoryLedger
from app.services.email_service import EmailService

# Accounting sync
from app.services.accounting_client import AccountingClient, HttpAccountingClient
from app.services.external_sync import ExternalSyncOrchestrator, SyncQueue

# Order lifecycle
from app.services.order_state_machine import OrderStateMachine

__all__ = [
    "GeocodingCache",
    "GoogleGeocodingProvider",
    "DeliveryPricingEngine",
    "StatusHistoryLedger",
    "EmailService",
    # Accounting sync
    "AccountingClient",
    "HttpAccountingClient",
    "ExternalSyncOrchestrator",
    "SyncQueue",
    # Order lifecycle
    "OrderStateMachine",
]

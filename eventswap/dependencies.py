"""
EventSwap Platform - Service Wiring
FastAPI dependencies that hand out the adapters and engines. Each getter is
cached so background work (refunds, notifications) outlives the request;
tests swap them through ``app.dependency_overrides``.
"""
from functools import lru_cache

from eventswap.adapters.fraud import FraudSignalAdapter, PermissiveFraudSignals
from eventswap.adapters.notification import LoggingNotificationAdapter, NotificationAdapter
from eventswap.adapters.payment import MockPaymentProcessor, PaymentAdapter
from eventswap.config import get_settings
from eventswap.database import async_session
from eventswap.services.disputes import DisputeService
from eventswap.services.escrow import EscrowService
from eventswap.services.listings import ListingService
from eventswap.services.messaging import MessagingService
from eventswap.services.offers import OfferService


# ── Adapters ──

@lru_cache()
def get_payment_adapter() -> PaymentAdapter:
    return MockPaymentProcessor()


@lru_cache()
def get_notification_adapter() -> NotificationAdapter:
    return LoggingNotificationAdapter()


@lru_cache()
def get_fraud_adapter() -> FraudSignalAdapter:
    return PermissiveFraudSignals()


# ── Engines ──

@lru_cache()
def get_escrow_service() -> EscrowService:
    return EscrowService(
        async_session,
        get_payment_adapter(),
        notifier=get_notification_adapter(),
        fraud=get_fraud_adapter(),
        settings=get_settings(),
    )


@lru_cache()
def get_offer_service() -> OfferService:
    return OfferService(
        async_session,
        get_escrow_service(),
        notifier=get_notification_adapter(),
        settings=get_settings(),
    )


@lru_cache()
def get_dispute_service() -> DisputeService:
    return DisputeService(
        async_session,
        get_escrow_service(),
        notifier=get_notification_adapter(),
        settings=get_settings(),
    )


@lru_cache()
def get_listing_service() -> ListingService:
    return ListingService(async_session, fraud=get_fraud_adapter(), settings=get_settings())


@lru_cache()
def get_messaging_service() -> MessagingService:
    return MessagingService(async_session, settings=get_settings())

"""Shared API dependencies — single import point for all routers.

Everything that touches the outside world (database, Stripe) is reached
through a dependency here, so tests can swap it with
``app.dependency_overrides``::

    from toolhub.api.deps import get_db, get_stripe_gateway, require_service_key
"""

import logging
import secrets
from collections.abc import AsyncIterator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from toolhub.billing.abuse import TrialAbuseDetector
from toolhub.billing.entitlements import EntitlementProvisioner
from toolhub.billing.ledger import WebhookLedger
from toolhub.billing.reconciler import SubscriptionReconciler
from toolhub.billing.stripe_client import StripeGateway, get_stripe_gateway
from toolhub.billing.webhooks import WebhookProcessor
from toolhub.config import settings
from toolhub.database import get_session_factory

logger = logging.getLogger(__name__)


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncIterator[AsyncSession]:
    """Yield an async database session; rolled back if the request fails."""
    async with session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def get_reconciler(gateway: StripeGateway = Depends(get_stripe_gateway)) -> SubscriptionReconciler:
    return SubscriptionReconciler(gateway, TrialAbuseDetector(gateway), EntitlementProvisioner())


def get_webhook_processor(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> WebhookProcessor:
    return WebhookProcessor(session_factory, WebhookLedger(), reconciler)


async def require_service_key(x_service_key: str | None = Header(default=None)) -> None:
    """Authenticate service-to-service calls by the ``X-Service-Key`` header."""
    if not x_service_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing service key",
        )
    if not settings.internal_api_key or not secrets.compare_digest(x_service_key, settings.internal_api_key):
        logger.warning("Rejected internal request with an invalid service key")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid service key",
        )


__all__ = [
    "get_db",
    "get_session_factory",
    "get_stripe_gateway",
    "get_reconciler",
    "get_webhook_processor",
    "require_service_key",
]

"""
Composition root.

Builds every service once from ``Settings`` and wires them together. The
API stores the container on ``app.state``; the sweeper worker builds its own.
"""
from dataclasses import dataclass, field
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from hotspot_billing.config import Settings
from hotspot_billing.core.initiator import PaymentInitiator
from hotspot_billing.core.notifier import BroadcastNotifier, PaymentNotifier
from hotspot_billing.core.reconciler import CallbackReconciler
from hotspot_billing.core.reporting import ReportingService
from hotspot_billing.database.connection import (
    close_db,
    create_engine,
    create_session_factory,
    init_db,
)
from hotspot_billing.integrations.mpesa_client import MpesaClient
from hotspot_billing.integrations.token_cache import (
    InMemoryTokenCache,
    RedisTokenCache,
    TokenCache,
)
from hotspot_billing.monitoring.health import HealthCheck
from hotspot_billing.workers.pending_sweeper import PendingPaymentSweeper

logger = structlog.get_logger(__name__)


def build_token_cache(settings: Settings) -> TokenCache:
    """Redis-backed cache when configured, otherwise per process."""
    if settings.redis_url:
        return RedisTokenCache(redis_url=settings.redis_url)
    return InMemoryTokenCache()


@dataclass
class ServiceContainer:
    """Explicitly wired application services."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    mpesa_client: MpesaClient
    notifier: PaymentNotifier
    initiator: PaymentInitiator
    reconciler: CallbackReconciler
    reporting: ReportingService
    sweeper: PendingPaymentSweeper
    health: HealthCheck
    engine: Optional[AsyncEngine] = None
    owns_mpesa_client: bool = field(default=True)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        mpesa_client: Optional[MpesaClient] = None,
        notifier: Optional[PaymentNotifier] = None,
    ) -> "ServiceContainer":
        """
        Build the service graph.

        Args:
            settings: Application settings
            session_factory: Existing session factory (an engine is created otherwise)
            mpesa_client: Existing M-Pesa client
            notifier: Notification fan-out (in-process broadcast otherwise)

        Returns:
            ServiceContainer: Wired services
        """
        engine: Optional[AsyncEngine] = None
        if session_factory is None:
            engine = create_engine(settings)
            session_factory = create_session_factory(engine)

        owns_mpesa_client = mpesa_client is None
        if mpesa_client is None:
            mpesa_client = MpesaClient(settings, token_cache=build_token_cache(settings))

        notifier = notifier or BroadcastNotifier()
        reconciler = CallbackReconciler(session_factory, notifier, settings)

        return cls(
            settings=settings,
            session_factory=session_factory,
            mpesa_client=mpesa_client,
            notifier=notifier,
            initiator=PaymentInitiator(session_factory, mpesa_client, settings),
            reconciler=reconciler,
            reporting=ReportingService(
                session_factory, recent_limit=settings.recent_transactions_limit
            ),
            sweeper=PendingPaymentSweeper(session_factory, mpesa_client, reconciler, settings),
            health=HealthCheck(session_factory, mpesa_client, redis_url=settings.redis_url),
            engine=engine,
            owns_mpesa_client=owns_mpesa_client,
        )

    async def startup(self) -> None:
        """Create tables when this container owns the engine."""
        if self.engine is not None:
            await init_db(self.engine)
        logger.info("service_container_started", environment=self.settings.app_env)

    async def shutdown(self) -> None:
        """Release provider and database connections."""
        if self.owns_mpesa_client:
            await self.mpesa_client.close()
        if self.engine is not None:
            await close_db(self.engine)
        logger.info("service_container_stopped")

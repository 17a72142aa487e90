"""
Pending payment sweeper.

Recovers payments whose callback never arrived: payments still pending after
``pending_query_after_seconds`` are queried at the provider, and any final
result is fed through the callback reconciler, so status still changes in
exactly one place.
"""
import asyncio
import signal
from datetime import timedelta
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hotspot_billing.config import Settings, get_settings
from hotspot_billing.core.notifier import NullNotifier
from hotspot_billing.core.reconciler import SOURCE_STATUS_QUERY, CallbackReconciler, ReconcileOutcome
from hotspot_billing.core.repository import PaymentRepository
from hotspot_billing.database.models import utcnow
from hotspot_billing.integrations.mpesa_client import MpesaClient, MpesaError
from hotspot_billing.monitoring.logging import setup_logging
from hotspot_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PendingPaymentSweeper:
    """
    Queries the provider for stale pending payments.

    Each payment is queried at most ``pending_max_query_attempts`` times;
    every attempt is counted before the query is sent.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mpesa_client: MpesaClient,
        reconciler: CallbackReconciler,
        settings: Settings,
    ):
        """
        Initialize pending payment sweeper.

        Args:
            session_factory: Factory for database sessions
            mpesa_client: Daraja API client
            reconciler: Reconciler receiving query results
            settings: Application settings
        """
        self.session_factory = session_factory
        self.mpesa_client = mpesa_client
        self.reconciler = reconciler
        self.settings = settings
        self._running = False

    async def sweep_once(self) -> Dict[str, int]:
        """
        Run one sweep over a batch of stale pending payments.

        Returns:
            Dict[str, int]: Counts of examined, resolved, still pending,
            failed queries, failed reconciliations and skipped payments
        """
        cutoff = utcnow() - timedelta(seconds=self.settings.pending_query_after_seconds)
        async with self.session_factory() as db:
            stale = await PaymentRepository(db).list_stale_pending(
                older_than=cutoff,
                max_attempts=self.settings.pending_max_query_attempts,
                limit=self.settings.pending_sweep_batch_size,
            )

        summary = {
            "examined": len(stale),
            "resolved": 0,
            "still_pending": 0,
            "query_failed": 0,
            "reconcile_failed": 0,
            "skipped": 0,
        }

        for payment in stale:
            async with self.session_factory() as db:
                claimed = await PaymentRepository(db).record_query_attempt(payment.id)
                await db.commit()
            if not claimed:
                # Reconciled by a callback since we listed it
                summary["skipped"] += 1
                continue

            try:
                result = await self.mpesa_client.query_stk_status(payment.checkout_request_id)
            except MpesaError as e:
                summary["query_failed"] += 1
                metrics.record_pending_sweep("query_failed")
                logger.warning(
                    "pending_payment_query_failed",
                    payment_id=str(payment.id),
                    checkout_request_id=payment.checkout_request_id,
                    error=str(e),
                    error_type=e.error_type.value,
                )
                continue

            if result is None:
                summary["still_pending"] += 1
                metrics.record_pending_sweep("still_pending")
                continue

            reconciled = await self.reconciler.reconcile(
                result.to_callback_envelope(),
                path_payment_id=str(payment.id),
                source=SOURCE_STATUS_QUERY,
            )
            if reconciled.outcome == ReconcileOutcome.ERROR:
                summary["reconcile_failed"] += 1
                metrics.record_pending_sweep("reconcile_failed")
                logger.warning(
                    "pending_payment_reconcile_failed",
                    payment_id=str(payment.id),
                    checkout_request_id=payment.checkout_request_id,
                    detail=reconciled.detail,
                )
                continue

            summary["resolved"] += 1
            metrics.record_pending_sweep("resolved")

        if stale:
            logger.info("pending_sweep_completed", **summary)
        return summary

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Sweep every ``pending_sweep_interval_seconds`` until stopped.

        Args:
            stop_event: Event that ends the loop when set
        """
        stop_event = stop_event or asyncio.Event()
        self._running = True
        logger.info(
            "pending_sweeper_started",
            interval_seconds=self.settings.pending_sweep_interval_seconds,
        )

        while self._running and not stop_event.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                # Keep sweeping; the next pass retries the same payments
                logger.error("pending_sweep_error", error=str(e))

            try:
                await asyncio.wait_for(
                    stop_event.wait(),
                    timeout=self.settings.pending_sweep_interval_seconds,
                )
            except asyncio.TimeoutError:
                pass

        logger.info("pending_sweeper_stopped")

    def stop(self) -> None:
        """Stop the sweep loop after the current pass."""
        self._running = False


async def start_pending_sweeper(once: bool = False, settings: Optional[Settings] = None) -> None:
    """
    Start the pending sweeper as a standalone process.

    Args:
        once: Run a single sweep and exit
        settings: Optional settings (loaded from the environment otherwise)
    """
    # The container imports this module
    from hotspot_billing.container import ServiceContainer

    settings = settings or get_settings()
    setup_logging(settings)

    # No subscribers connect to a standalone worker
    container = ServiceContainer.build(settings, notifier=NullNotifier())
    await container.startup()

    logger.info("pending_sweeper_worker_starting", once=once)

    stop_event = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("pending_sweeper_shutdown_signal_received", signal=sig)
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        if once:
            await container.sweeper.sweep_once()
        else:
            await container.sweeper.run_forever(stop_event)
    except Exception as e:
        logger.error("pending_sweeper_worker_error", error=str(e))
        raise
    finally:
        await container.shutdown()
        logger.info("pending_sweeper_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Pending payment sweeper")
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_pending_sweeper(once=args.once))


if __name__ == "__main__":
    main()

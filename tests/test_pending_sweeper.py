"""
Tests for the pending payment sweeper.
"""
import asyncio
from typing import Any

import pytest

from hotspot_billing.container import ServiceContainer
from hotspot_billing.core.notifier import NullNotifier
from hotspot_billing.core.reconciler import ReconcileOutcome, ReconcileResult
from hotspot_billing.workers.pending_sweeper import PendingPaymentSweeper, start_pending_sweeper

QUERY_CANCELLED = (
    200,
    {
        "ResponseCode": "0",
        "ResponseDescription": "The service request has been accepted successsfully",
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResultCode": "1032",
        "ResultDesc": "Request cancelled by user",
    },
)

QUERY_COMPLETED = (
    200,
    {
        "ResponseCode": "0",
        "ResponseDescription": "The service request has been accepted successsfully",
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": "ws_CO_191220191020363925",
        "ResultCode": "0",
        "ResultDesc": "The service request is processed successfully.",
    },
)


class TestPendingSweeper:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_final_query_result_is_reconciled(
        self,
        sweeper: PendingPaymentSweeper,
        make_pending_payment: Any,
        load_payment: Any,
        fake_daraja: Any,
    ) -> None:
        payment = await make_pending_payment()
        fake_daraja.query_responses.append(QUERY_CANCELLED)

        summary = await sweeper.sweep_once()

        assert summary == {
            "examined": 1,
            "resolved": 1,
            "still_pending": 0,
            "query_failed": 0,
            "reconcile_failed": 0,
            "skipped": 0,
        }
        stored = await load_payment(payment.id)
        assert stored.status == "failed"
        assert stored.result_code == 1032
        assert stored.retry_count == 1
        assert stored.last_retry_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_late_callback_fills_in_receipt(
        self,
        sweeper: PendingPaymentSweeper,
        reconciler: Any,
        make_pending_payment: Any,
        load_payment: Any,
        stk_callback: Any,
        fake_daraja: Any,
    ) -> None:
        """A status query completes without a receipt; the provider callback brings it."""
        payment = await make_pending_payment()
        fake_daraja.query_responses.append(QUERY_COMPLETED)

        await sweeper.sweep_once()
        swept = await load_payment(payment.id)
        assert swept.status == "completed"
        assert swept.mpesa_receipt_number is None

        result = await reconciler.reconcile(stk_callback(receipt="ABC123"))

        assert result.outcome == ReconcileOutcome.DUPLICATE
        stored = await load_payment(payment.id)
        assert stored.status == "completed"
        assert stored.result_code == 0
        assert stored.mpesa_receipt_number == "ABC123"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconcile_errors_are_not_counted_as_resolved(
        self,
        sweeper: PendingPaymentSweeper,
        make_pending_payment: Any,
        load_payment: Any,
        fake_daraja: Any,
        mocker: Any,
    ) -> None:
        payment = await make_pending_payment()
        fake_daraja.query_responses.append(QUERY_CANCELLED)
        mocker.patch.object(
            sweeper.reconciler,
            "reconcile",
            return_value=ReconcileResult(ReconcileOutcome.ERROR, detail="database unavailable"),
        )

        summary = await sweeper.sweep_once()

        assert summary["resolved"] == 0
        assert summary["reconcile_failed"] == 1
        assert (await load_payment(payment.id)).status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processing_payment_stays_pending(
        self,
        sweeper: PendingPaymentSweeper,
        make_pending_payment: Any,
        load_payment: Any,
    ) -> None:
        payment = await make_pending_payment()

        summary = await sweeper.sweep_once()

        assert summary["still_pending"] == 1
        stored = await load_payment(payment.id)
        assert stored.status == "pending"
        assert stored.retry_count == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_attempts_are_capped(
        self,
        sweeper: PendingPaymentSweeper,
        make_pending_payment: Any,
        fake_daraja: Any,
    ) -> None:
        await make_pending_payment()

        for _ in range(3):
            await sweeper.sweep_once()
        summary = await sweeper.sweep_once()

        assert summary["examined"] == 0
        assert len(fake_daraja.query_requests) == 3

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_query_errors_are_counted(
        self,
        sweeper: PendingPaymentSweeper,
        make_pending_payment: Any,
        load_payment: Any,
        fake_daraja: Any,
    ) -> None:
        payment = await make_pending_payment()
        fake_daraja.query_responses.append((503, {"errorMessage": "Service Unavailable"}))

        summary = await sweeper.sweep_once()

        assert summary["query_failed"] == 1
        assert (await load_payment(payment.id)).status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reconciled_payments_are_not_queried(
        self,
        sweeper: PendingPaymentSweeper,
        reconciler: Any,
        make_pending_payment: Any,
        stk_callback: Any,
        fake_daraja: Any,
    ) -> None:
        await make_pending_payment()
        await reconciler.reconcile(stk_callback())

        summary = await sweeper.sweep_once()

        assert summary["examined"] == 0
        assert fake_daraja.query_requests == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_young_payments_are_left_alone(
        self,
        session_factory: Any,
        mpesa_client: Any,
        reconciler: Any,
        test_settings: Any,
        make_pending_payment: Any,
    ) -> None:
        settings = test_settings.model_copy(update={"pending_query_after_seconds": 3600})
        sweeper = PendingPaymentSweeper(session_factory, mpesa_client, reconciler, settings)
        await make_pending_payment()

        summary = await sweeper.sweep_once()

        assert summary["examined"] == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_run_forever_stops_on_event(
        self, sweeper: PendingPaymentSweeper, mocker: Any
    ) -> None:
        stop_event = asyncio.Event()
        sweep = mocker.patch.object(sweeper, "sweep_once", side_effect=lambda: stop_event.set())

        await asyncio.wait_for(sweeper.run_forever(stop_event), timeout=5)

        sweep.assert_called_once()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_standalone_worker_uses_null_notifier(
        self, test_settings: Any, mocker: Any
    ) -> None:
        mocker.patch("hotspot_billing.workers.pending_sweeper.setup_logging")
        mocker.patch("hotspot_billing.workers.pending_sweeper.signal.signal")
        build = mocker.spy(ServiceContainer, "build")

        await start_pending_sweeper(once=True, settings=test_settings)

        assert isinstance(build.spy_return.notifier, NullNotifier)
        assert build.spy_return.reconciler.notifier is build.spy_return.notifier

"""
Tests for payment persistence and the compare-and-set transition.
"""
from datetime import timedelta
from typing import Any

import pytest
from sqlalchemy.exc import IntegrityError

from hotspot_billing.core.repository import (
    CallbackLogRepository,
    GuestUserRepository,
    PaymentRepository,
)
from hotspot_billing.database.models import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    utcnow,
)

METADATA = {
    "Amount": 50,
    "MpesaReceiptNumber": "ABC123",
    "TransactionDate": 20191219102115,
    "PhoneNumber": 254712345678,
}


class TestPaymentRepository:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_pending(self, make_pending_payment: Any, load_payment: Any) -> None:
        payment = await make_pending_payment()

        stored = await load_payment(payment.id)
        assert stored.status == PAYMENT_PENDING
        assert stored.amount == 50
        assert stored.retry_count == 0
        assert stored.mpesa_receipt_number is None
        assert stored.created_at is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_checkout_request_id_is_unique(self, make_pending_payment: Any) -> None:
        await make_pending_payment()

        with pytest.raises(IntegrityError):
            await make_pending_payment(merchant_request_id="other")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lookup_by_correlation_ids(
        self, session_factory: Any, make_pending_payment: Any
    ) -> None:
        payment = await make_pending_payment()

        async with session_factory() as db:
            repository = PaymentRepository(db)
            by_checkout = await repository.find_by_any_correlation_id(
                checkout_request_id="ws_CO_191220191020363925"
            )
            by_merchant = await repository.find_by_any_correlation_id(
                checkout_request_id="unknown", merchant_request_id="29115-34620561-1"
            )
            missing = await repository.find_by_any_correlation_id()

        assert by_checkout.id == payment.id
        assert by_merchant.id == payment.id
        assert missing is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_compare_and_set_transitions_once(
        self, session_factory: Any, make_pending_payment: Any, load_payment: Any
    ) -> None:
        payment = await make_pending_payment()

        async with session_factory() as db:
            first = await PaymentRepository(db).apply_callback_result(
                payment.id,
                status=PAYMENT_COMPLETED,
                result_code=0,
                result_desc="Success",
                receipt_number="ABC123",
                payload={"delivery": 1},
                metadata=METADATA,
            )
            await db.commit()

        async with session_factory() as db:
            second = await PaymentRepository(db).apply_callback_result(
                payment.id,
                status=PAYMENT_FAILED,
                result_code=1032,
                result_desc="Request cancelled by user",
                receipt_number=None,
                payload={"delivery": 2},
                metadata={},
            )
            await db.commit()

        assert first is True
        assert second is False

        stored = await load_payment(payment.id)
        assert stored.status == PAYMENT_COMPLETED
        assert stored.result_code == 0
        assert stored.mpesa_receipt_number == "ABC123"
        # Conflicting delivery never touches the finalized record
        assert stored.callback_payload == {"delivery": 1}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_matching_redelivery_refreshes_payload(
        self, session_factory: Any, make_pending_payment: Any, load_payment: Any
    ) -> None:
        payment = await make_pending_payment()

        for delivery in (1, 2):
            async with session_factory() as db:
                await PaymentRepository(db).apply_callback_result(
                    payment.id,
                    status=PAYMENT_COMPLETED,
                    result_code=0,
                    result_desc="Success",
                    receipt_number="ABC123",
                    payload={"delivery": delivery},
                    metadata=METADATA,
                )
                await db.commit()

        stored = await load_payment(payment.id)
        assert stored.callback_payload == {"delivery": 2}
        assert stored.status == PAYMENT_COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_receipt_is_dropped_for_failures(
        self, session_factory: Any, make_pending_payment: Any, load_payment: Any
    ) -> None:
        payment = await make_pending_payment()

        async with session_factory() as db:
            await PaymentRepository(db).apply_callback_result(
                payment.id,
                status=PAYMENT_FAILED,
                result_code=1,
                result_desc="Insufficient funds",
                receipt_number="SHOULD-NOT-STICK",
                payload={},
                metadata={},
            )
            await db.commit()

        stored = await load_payment(payment.id)
        assert stored.status == PAYMENT_FAILED
        assert stored.mpesa_receipt_number is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_from_callback(self, session_factory: Any, load_payment: Any) -> None:
        async with session_factory() as db:
            payment = await PaymentRepository(db).create_from_callback(
                status=PAYMENT_COMPLETED,
                amount=50,
                result_code=0,
                result_desc="Success",
                merchant_request_id="m-1",
                checkout_request_id="c-1",
                payload={"Body": {}},
                metadata=METADATA,
                receipt_number="ABC123",
            )
            await db.commit()

        stored = await load_payment(payment.id)
        assert stored.plan_name == "From Callback"
        assert stored.payment_type == "callback"
        assert stored.user_id is None
        assert stored.status == PAYMENT_COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stale_pending_selection(
        self, session_factory: Any, make_pending_payment: Any
    ) -> None:
        stale = await make_pending_payment()
        exhausted = await make_pending_payment(
            merchant_request_id="m-2", checkout_request_id="c-2"
        )
        await make_pending_payment(merchant_request_id="m-3", checkout_request_id=None)

        async with session_factory() as db:
            repository = PaymentRepository(db)
            for _ in range(3):
                assert await repository.record_query_attempt(exhausted.id) is True
            await db.commit()

        async with session_factory() as db:
            found = await PaymentRepository(db).list_stale_pending(
                older_than=utcnow() + timedelta(seconds=1), max_attempts=3, limit=10
            )
            none_yet = await PaymentRepository(db).list_stale_pending(
                older_than=utcnow() - timedelta(hours=1), max_attempts=3, limit=10
            )

        assert [p.id for p in found] == [stale.id]
        assert none_yet == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_query_attempt_skips_terminal_payments(
        self, session_factory: Any, make_pending_payment: Any
    ) -> None:
        payment = await make_pending_payment()

        async with session_factory() as db:
            repository = PaymentRepository(db)
            await repository.apply_callback_result(
                payment.id,
                status=PAYMENT_COMPLETED,
                result_code=0,
                result_desc="Success",
                receipt_number="ABC123",
                payload={},
                metadata=METADATA,
            )
            claimed = await repository.record_query_attempt(payment.id)
            await db.commit()

        assert claimed is False


class TestGuestUserRepository:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_or_create_reuses_guest(self, session_factory: Any) -> None:
        async with session_factory() as db:
            first = await GuestUserRepository(db).get_or_create("254712345678")
            await db.commit()

        async with session_factory() as db:
            second = await GuestUserRepository(db).get_or_create("254712345678")

        assert first.id == second.id
        assert second.username == "guest_254712345678"
        assert second.role == "guest"


class TestCallbackLogRepository:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_entries_are_listed_newest_first(self, session_factory: Any) -> None:
        async with session_factory() as db:
            logs = CallbackLogRepository(db)
            await logs.append(source="callback", outcome="ignored", payload={"n": 1})
            await logs.append(source="callback", outcome="ignored", payload={"n": 2})
            await db.commit()

        async with session_factory() as db:
            entries = await CallbackLogRepository(db).list_recent(limit=10)

        assert [entry.payload for entry in entries] == [{"n": 2}, {"n": 1}]

"""
Tests for STK push initiation.
"""
from typing import Any

import httpx
import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from hotspot_billing.core.errors import PaymentInitiationError, PaymentValidationError
from hotspot_billing.core.initiator import PaymentInitiator
from hotspot_billing.core.repository import PaymentRepository
from hotspot_billing.database.models import GuestUser, Payment


async def _count(session_factory: Any, model: Any) -> int:
    async with session_factory() as db:
        result = await db.execute(select(func.count()).select_from(model))
        return result.scalar_one()


class TestValidation:
    """Request validation collects every field error."""

    @pytest.mark.unit
    def test_all_field_errors_are_reported(self) -> None:
        with pytest.raises(PaymentValidationError) as exc_info:
            PaymentInitiator.validate_request(amount="abc", phone_number="123", payment_type="plan")

        errors = exc_info.value.errors
        assert set(errors) == {"amount", "phoneNumber", "planId", "planName"}
        assert exc_info.value.message == "Invalid payment request"

    @pytest.mark.unit
    def test_direct_payment_defaults(self) -> None:
        request = PaymentInitiator.validate_request(amount="49.5", phone_number="0712345678")

        assert request.amount == 50
        assert request.phone_number == "254712345678"
        assert request.plan_name == "Direct Payment"
        assert request.payment_type == "direct"
        assert request.account_reference == "DIRECT-PAYMENT"

    @pytest.mark.unit
    def test_plan_payment_reference(self) -> None:
        request = PaymentInitiator.validate_request(
            amount=50,
            phone_number="0712345678",
            plan_id="daily-1gb",
            plan_name="Daily 1GB",
            payment_type="plan",
        )

        assert request.account_reference == "PLAN-daily-1gb"
        assert request.plan_name == "Daily 1GB"


class TestInitiate:
    """End-to-end initiation against the fake provider."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_accepted_push_creates_pending_payment(
        self,
        initiator: PaymentInitiator,
        fake_daraja: Any,
        load_payment: Any,
        session_factory: Any,
    ) -> None:
        result = await initiator.initiate(
            amount=50,
            phone_number="0712345678",
            plan_name="Daily 1GB",
            plan_id="daily-1gb",
            payment_type="plan",
        )

        assert result.persisted is True
        assert result.checkout_request_id == "ws_CO_191220191020363921"
        assert result.merchant_request_id == "29115-34620561-1"

        payment = await load_payment(result.payment_id)
        assert payment.status == "pending"
        assert payment.amount == 50
        assert payment.phone_number == "254712345678"
        assert payment.plan_name == "Daily 1GB"
        assert payment.checkout_request_id == result.checkout_request_id
        assert payment.user_id is not None

        sent = fake_daraja.stk_requests[0]
        assert sent["CallBackURL"] == (
            f"https://billing.example.com/api/mpesa/callback/{result.payment_id}"
        )
        assert sent["AccountReference"] == "PLAN-daily-1"
        assert sent["PhoneNumber"] == "254712345678"
        assert await _count(session_factory, GuestUser) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_callback_url_without_payment_id(
        self, session_factory: Any, mpesa_client: Any, test_settings: Any, fake_daraja: Any
    ) -> None:
        settings = test_settings.model_copy(update={"mpesa_embed_payment_id_in_callback": False})
        initiator = PaymentInitiator(session_factory, mpesa_client, settings)

        await initiator.initiate(amount=10, phone_number="0712345678")

        assert fake_daraja.stk_requests[0]["CallBackURL"] == (
            "https://billing.example.com/api/mpesa/callback"
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_repeat_payer_reuses_guest_user(
        self, initiator: PaymentInitiator, load_payment: Any, session_factory: Any
    ) -> None:
        first = await initiator.initiate(amount=10, phone_number="0712345678")
        second = await initiator.initiate(amount=20, phone_number="+254712345678")

        first_payment = await load_payment(first.payment_id)
        second_payment = await load_payment(second.payment_id)
        assert first_payment.user_id == second_payment.user_id
        assert await _count(session_factory, GuestUser) == 1
        assert await _count(session_factory, Payment) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_authenticated_user_skips_guest(
        self, initiator: PaymentInitiator, load_payment: Any, session_factory: Any
    ) -> None:
        result = await initiator.initiate(amount=10, phone_number="0712345678", user_id="user-42")

        payment = await load_payment(result.payment_id)
        assert payment.user_id == "user-42"
        assert await _count(session_factory, GuestUser) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_request_never_reaches_provider(
        self, initiator: PaymentInitiator, fake_daraja: Any, session_factory: Any
    ) -> None:
        with pytest.raises(PaymentValidationError):
            await initiator.initiate(amount=0, phone_number="0712345678")

        assert fake_daraja.stk_requests == []
        assert fake_daraja.oauth_calls == 0
        assert await _count(session_factory, Payment) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_rejection_creates_no_payment(
        self, initiator: PaymentInitiator, fake_daraja: Any, session_factory: Any
    ) -> None:
        fake_daraja.stk_responses.append(
            (400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})
        )

        with pytest.raises(PaymentInitiationError) as exc_info:
            await initiator.initiate(amount=50, phone_number="0712345678")

        assert exc_info.value.message == "Bad Request - Invalid Amount"
        assert exc_info.value.is_timeout is False
        assert await _count(session_factory, Payment) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_timeout(
        self, initiator: PaymentInitiator, fake_daraja: Any, session_factory: Any
    ) -> None:
        fake_daraja.stk_responses.append(httpx.ReadTimeout("timed out"))

        with pytest.raises(PaymentInitiationError) as exc_info:
            await initiator.initiate(amount=50, phone_number="0712345678")

        assert exc_info.value.is_timeout is True
        assert "did not respond in time" in exc_info.value.message
        assert await _count(session_factory, Payment) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_persistence_failure_still_returns_ids(
        self, initiator: PaymentInitiator, mocker: Any, session_factory: Any
    ) -> None:
        mocker.patch.object(
            PaymentRepository,
            "create_pending",
            side_effect=OperationalError("INSERT", {}, Exception("disk I/O error")),
        )

        result = await initiator.initiate(amount=50, phone_number="0712345678")

        assert result.persisted is False
        assert result.checkout_request_id == "ws_CO_191220191020363921"
        assert await _count(session_factory, Payment) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_correlation_ids_are_not_persisted_twice(
        self,
        initiator: PaymentInitiator,
        make_pending_payment: Any,
        fake_daraja: Any,
        session_factory: Any,
    ) -> None:
        # Provider hands out ids already stored locally
        await make_pending_payment(
            merchant_request_id="29115-34620561-1",
            checkout_request_id="ws_CO_191220191020363921",
        )

        result = await initiator.initiate(amount=50, phone_number="0712345678")

        assert result.persisted is False
        assert len(fake_daraja.stk_requests) == 1
        assert await _count(session_factory, Payment) == 1

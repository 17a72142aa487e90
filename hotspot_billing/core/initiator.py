"""
STK push initiation.

Orchestrates the initiation flow:
1. Validate and normalize phone number and amount
2. Generate the payment id (embedded in the callback URL)
3. Submit the STK push to M-Pesa (exactly once)
4. Persist the pending payment with the provider correlation ids

No payment row exists unless the provider accepted the push. When the
provider accepted but the row cannot be saved, the caller still gets the
correlation ids: the callback reconciler creates the missing record from the
callback itself.
"""
import time
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hotspot_billing.config import Settings
from hotspot_billing.core.errors import PaymentInitiationError, PaymentValidationError
from hotspot_billing.core.normalizer import (
    AmountError,
    PhoneNumberError,
    normalize_phone,
    validate_amount,
)
from hotspot_billing.core.repository import GuestUserRepository, PaymentRepository
from hotspot_billing.database.models import DIRECT_PAYMENT_PLAN_NAME
from hotspot_billing.integrations.mpesa_client import (
    MpesaClient,
    MpesaError,
    MpesaErrorType,
    StkPushResponse,
)
from hotspot_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

DIRECT_PAYMENT_TYPE = "direct"
DIRECT_ACCOUNT_REFERENCE = "DIRECT-PAYMENT"

_PROVIDER_ERROR_MESSAGES = {
    MpesaErrorType.TIMEOUT: "M-Pesa did not respond in time. Please try again.",
    MpesaErrorType.AUTHENTICATION: "Payment service authentication failed",
    MpesaErrorType.TRANSIENT: "Payment service is temporarily unavailable. Please try again.",
}


@dataclass(frozen=True)
class InitiationResult:
    """Outcome of an accepted STK push."""

    payment_id: uuid.UUID
    merchant_request_id: str
    checkout_request_id: str
    customer_message: str
    persisted: bool


@dataclass(frozen=True)
class _ValidatedRequest:
    amount: int
    phone_number: str
    plan_id: Optional[str]
    plan_name: str
    payment_type: str
    account_reference: str


class PaymentInitiator:
    """
    Push-payment initiator.

    Holds the session factory rather than a session: the provider call sits
    between validation and persistence and must not pin a database
    connection while it waits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mpesa_client: MpesaClient,
        settings: Settings,
    ):
        """
        Initialize payment initiator.

        Args:
            session_factory: Factory for database sessions
            mpesa_client: Daraja API client
            settings: Application settings
        """
        self.session_factory = session_factory
        self.mpesa_client = mpesa_client
        self.settings = settings

    @staticmethod
    def validate_request(
        amount: Any,
        phone_number: Any,
        plan_id: Optional[str] = None,
        plan_name: Optional[str] = None,
        payment_type: Optional[str] = None,
        account_reference: Optional[str] = None,
    ) -> _ValidatedRequest:
        """
        Validate an initiation request, collecting every field error.

        Raises:
            PaymentValidationError: If any field is invalid
        """
        errors: Dict[str, str] = {}
        payment_type = (payment_type or DIRECT_PAYMENT_TYPE).strip()

        canonical_phone = ""
        try:
            canonical_phone = normalize_phone(phone_number)
        except PhoneNumberError as e:
            errors["phoneNumber"] = str(e)

        whole_amount = 0
        try:
            whole_amount = validate_amount(amount)
        except AmountError as e:
            errors["amount"] = str(e)

        if payment_type != DIRECT_PAYMENT_TYPE:
            if not plan_id:
                errors["planId"] = "Plan ID is required for plan payments"
            if not plan_name:
                errors["planName"] = "Plan name is required for plan payments"

        if errors:
            raise PaymentValidationError("Invalid payment request", errors)

        if not account_reference:
            account_reference = (
                DIRECT_ACCOUNT_REFERENCE
                if payment_type == DIRECT_PAYMENT_TYPE
                else f"PLAN-{plan_id}"
            )

        return _ValidatedRequest(
            amount=whole_amount,
            phone_number=canonical_phone,
            plan_id=plan_id or None,
            plan_name=plan_name or DIRECT_PAYMENT_PLAN_NAME,
            payment_type=payment_type,
            account_reference=account_reference,
        )

    def _callback_url(self, payment_id: uuid.UUID) -> str:
        base = self.settings.mpesa_callback_url.rstrip("/")
        if self.settings.mpesa_embed_payment_id_in_callback:
            return f"{base}/{payment_id}"
        return base

    async def initiate(
        self,
        amount: Any,
        phone_number: Any,
        plan_name: Optional[str] = None,
        plan_id: Optional[str] = None,
        payment_type: Optional[str] = None,
        account_reference: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> InitiationResult:
        """
        Validate, push and record a payment.

        Args:
            amount: Requested amount (number or numeric string)
            phone_number: Payer phone number in any accepted form
            plan_name: Plan name (defaults to "Direct Payment")
            plan_id: Plan identifier, required unless the payment is direct
            payment_type: "direct" or a plan payment type
            account_reference: Reference shown to the payer
            user_id: Authenticated user; anonymous payers get a guest user

        Returns:
            InitiationResult: Payment id and provider correlation ids

        Raises:
            PaymentValidationError: If the request is invalid
            PaymentInitiationError: If the provider did not accept the push
        """
        start_time = time.monotonic()

        try:
            request = self.validate_request(
                amount=amount,
                phone_number=phone_number,
                plan_id=plan_id,
                plan_name=plan_name,
                payment_type=payment_type,
                account_reference=account_reference,
            )
        except PaymentValidationError as e:
            metrics.record_initiation("validation_error", time.monotonic() - start_time)
            logger.info("payment_validation_failed", errors=e.errors)
            raise

        payment_id = uuid.uuid4()
        log = logger.bind(payment_id=str(payment_id), phone_number=request.phone_number)
        log.info(
            "payment_initiation_started",
            amount=request.amount,
            plan_id=request.plan_id,
            payment_type=request.payment_type,
        )

        try:
            response = await self.mpesa_client.stk_push(
                amount=request.amount,
                phone_number=request.phone_number,
                callback_url=self._callback_url(payment_id),
                account_reference=request.account_reference,
                description=f"Payment for {request.plan_name}",
            )
        except MpesaError as e:
            metrics.record_initiation("provider_error", time.monotonic() - start_time)
            log.error(
                "payment_initiation_failed",
                error=str(e),
                error_type=e.error_type.value,
                status_code=e.status_code,
            )
            message = _PROVIDER_ERROR_MESSAGES.get(e.error_type, str(e))
            raise PaymentInitiationError(message, cause=e) from e

        persisted = await self._persist_pending(payment_id, request, response, user_id)

        metrics.record_initiation(
            "accepted" if persisted else "persistence_error",
            time.monotonic() - start_time,
            amount=request.amount,
        )
        log.info(
            "payment_initiated",
            merchant_request_id=response.merchant_request_id,
            checkout_request_id=response.checkout_request_id,
            persisted=persisted,
        )

        return InitiationResult(
            payment_id=payment_id,
            merchant_request_id=response.merchant_request_id,
            checkout_request_id=response.checkout_request_id,
            customer_message=response.customer_message,
            persisted=persisted,
        )

    async def _persist_pending(
        self,
        payment_id: uuid.UUID,
        request: _ValidatedRequest,
        response: StkPushResponse,
        user_id: Optional[str],
    ) -> bool:
        """
        Save the pending payment (and guest user) in one transaction.

        Retried once on IntegrityError: a concurrent first payment from the
        same phone may have created the guest user in the meantime.

        Returns:
            bool: False if the payment could not be saved
        """
        for attempt in (1, 2):
            try:
                async with self.session_factory() as db:
                    owner_id = user_id
                    if owner_id is None:
                        guest = await GuestUserRepository(db).get_or_create(request.phone_number)
                        owner_id = str(guest.id)

                    await PaymentRepository(db).create_pending(
                        payment_id=payment_id,
                        user_id=owner_id,
                        plan_id=request.plan_id,
                        plan_name=request.plan_name,
                        payment_type=request.payment_type,
                        amount=request.amount,
                        phone_number=request.phone_number,
                        account_reference=request.account_reference,
                        merchant_request_id=response.merchant_request_id or None,
                        checkout_request_id=response.checkout_request_id,
                    )
                    await db.commit()
                return True
            except IntegrityError as e:
                if attempt == 2:
                    self._log_persistence_failure(payment_id, response, e)
                    return False
                logger.warning(
                    "payment_persist_conflict_retrying",
                    payment_id=str(payment_id),
                    error=str(e.orig),
                )
            except SQLAlchemyError as e:
                self._log_persistence_failure(payment_id, response, e)
                return False
        return False

    @staticmethod
    def _log_persistence_failure(
        payment_id: uuid.UUID, response: StkPushResponse, error: Exception
    ) -> None:
        # The STK push is live at the provider; its callback will synthesize the record
        logger.error(
            "payment_persist_failed_after_provider_accept",
            payment_id=str(payment_id),
            merchant_request_id=response.merchant_request_id,
            checkout_request_id=response.checkout_request_id,
            error=str(error),
        )

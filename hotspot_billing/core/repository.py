"""
Payment record store.

All status changes go through ``PaymentRepository.apply_callback_result``,
a compare-and-set update guarded on ``status = 'pending'``. Two concurrent
deliveries of the same callback can never both transition a payment: the
second UPDATE matches zero rows.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hotspot_billing.database.models import (
    CALLBACK_PLAN_NAME,
    PAYMENT_PENDING,
    CallbackLog,
    GuestUser,
    Payment,
    utcnow,
)

logger = structlog.get_logger(__name__)


class PaymentRepository:
    """Persistence operations for payments within one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_pending(
        self,
        *,
        amount: int,
        phone_number: str,
        plan_name: str,
        merchant_request_id: Optional[str],
        checkout_request_id: Optional[str],
        payment_id: Optional[uuid.UUID] = None,
        user_id: Optional[str] = None,
        plan_id: Optional[str] = None,
        payment_type: str = "direct",
        account_reference: Optional[str] = None,
    ) -> Payment:
        """
        Insert a payment in ``pending`` state.

        Returns:
            Payment: The flushed payment row

        Raises:
            IntegrityError: If a correlation identifier is already taken
        """
        payment = Payment(
            id=payment_id or uuid.uuid4(),
            user_id=user_id,
            plan_id=plan_id,
            plan_name=plan_name,
            payment_type=payment_type,
            amount=amount,
            phone_number=phone_number,
            account_reference=account_reference,
            status=PAYMENT_PENDING,
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id,
            retry_count=0,
        )
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def create_from_callback(
        self,
        *,
        status: str,
        amount: int,
        result_code: int,
        result_desc: Optional[str],
        merchant_request_id: Optional[str],
        checkout_request_id: Optional[str],
        payload: Any,
        metadata: Dict[str, Any],
        receipt_number: Optional[str] = None,
        phone_number: Optional[str] = None,
        payment_id: Optional[uuid.UUID] = None,
    ) -> Payment:
        """
        Insert a placeholder payment for a callback that matched nothing.

        The status comes straight from the callback result. A concurrent
        synthesis for the same checkout request id fails here with
        IntegrityError.
        """
        payment = Payment(
            id=payment_id or uuid.uuid4(),
            user_id=None,
            plan_id=None,
            plan_name=CALLBACK_PLAN_NAME,
            payment_type="callback",
            amount=amount,
            phone_number=phone_number,
            status=status,
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id,
            result_code=result_code,
            result_desc=result_desc,
            mpesa_receipt_number=receipt_number if result_code == 0 else None,
            callback_payload=payload,
            callback_metadata=metadata,
            retry_count=0,
        )
        self.db.add(payment)
        await self.db.flush()
        return payment

    async def get_by_id(self, payment_id: uuid.UUID) -> Optional[Payment]:
        return await self.db.get(Payment, payment_id, populate_existing=True)

    async def get_by_checkout_request_id(self, checkout_request_id: str) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.checkout_request_id == checkout_request_id)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def get_by_merchant_request_id(self, merchant_request_id: str) -> Optional[Payment]:
        stmt = select(Payment).where(Payment.merchant_request_id == merchant_request_id)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def find_by_any_correlation_id(
        self,
        checkout_request_id: Optional[str] = None,
        merchant_request_id: Optional[str] = None,
    ) -> Optional[Payment]:
        """
        Find a payment by checkout request id, then by merchant request id.

        Returns:
            Optional[Payment]: First hit in precedence order, or None
        """
        if checkout_request_id:
            payment = await self.get_by_checkout_request_id(checkout_request_id)
            if payment is not None:
                return payment
        if merchant_request_id:
            return await self.get_by_merchant_request_id(merchant_request_id)
        return None

    async def apply_callback_result(
        self,
        payment_id: uuid.UUID,
        *,
        status: str,
        result_code: int,
        result_desc: Optional[str],
        receipt_number: Optional[str],
        payload: Any,
        metadata: Dict[str, Any],
    ) -> bool:
        """
        Move a pending payment to its terminal status.

        The UPDATE only matches while the row is still pending. When it
        matches nothing (already terminal, or a concurrent delivery won), the
        raw payload and derived metadata are re-written only if the stored
        result code equals the incoming one, so a stale or conflicting
        delivery never touches a finalized record. A successful re-delivery
        also fills in a missing receipt number.

        Args:
            payment_id: Payment to update
            status: Target status (completed/failed)
            result_code: Provider result code
            result_desc: Provider result description
            receipt_number: Receipt number, kept only when result_code is 0
            payload: Raw callback envelope
            metadata: Metadata extracted from the callback item list

        Returns:
            bool: True if this call performed the transition
        """
        now = utcnow()
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PAYMENT_PENDING)
            .values(
                status=status,
                result_code=result_code,
                result_desc=result_desc,
                mpesa_receipt_number=receipt_number if result_code == 0 else None,
                callback_payload=payload,
                callback_metadata=metadata,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        if result.rowcount == 1:
            return True

        values: Dict[str, Any] = {
            "callback_payload": payload,
            "callback_metadata": metadata,
            "updated_at": now,
        }
        if result_code == 0 and receipt_number:
            # A status query completes without a receipt; a later callback supplies it
            values["mpesa_receipt_number"] = func.coalesce(
                Payment.mpesa_receipt_number, receipt_number
            )
        refresh = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.result_code == result_code)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(refresh)
        return False

    async def record_query_attempt(self, payment_id: uuid.UUID) -> bool:
        """
        Count a provider status query against a pending payment.

        Returns:
            bool: False if the payment is no longer pending
        """
        stmt = (
            update(Payment)
            .where(Payment.id == payment_id, Payment.status == PAYMENT_PENDING)
            .values(
                retry_count=Payment.retry_count + 1,
                last_retry_at=utcnow(),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def list_recent(self, limit: int, status: Optional[str] = None) -> Sequence[Payment]:
        """Most recent payments first."""
        stmt = select(Payment).order_by(Payment.created_at.desc()).limit(limit)
        if status is not None:
            stmt = stmt.where(Payment.status == status)
        result = await self.db.execute(stmt)
        return result.scalars().all()

    async def list_stale_pending(
        self, older_than: datetime, max_attempts: int, limit: int
    ) -> Sequence[Payment]:
        """
        Pending payments that have waited too long for their callback.

        Only payments with a checkout request id can be queried at the
        provider. Oldest first.
        """
        stmt = (
            select(Payment)
            .where(
                Payment.status == PAYMENT_PENDING,
                Payment.created_at <= older_than,
                Payment.retry_count < max_attempts,
                Payment.checkout_request_id.isnot(None),
            )
            .order_by(Payment.created_at.asc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return result.scalars().all()


class GuestUserRepository:
    """Guest identities for anonymous payers."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_phone(self, phone: str) -> Optional[GuestUser]:
        stmt = select(GuestUser).where(GuestUser.phone == phone).limit(1)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_or_create(self, phone: str) -> GuestUser:
        """
        Return the guest user for a canonical phone, creating it if needed.

        Guest usernames are derived from the phone, so two concurrent first
        payments from the same number collide on the unique username and the
        second flush raises IntegrityError. Callers roll back and retry, at
        which point the winner's row is found.
        """
        guest = await self.get_by_phone(phone)
        if guest is not None:
            return guest

        guest = GuestUser(phone=phone, username=f"guest_{phone}", role="guest")
        self.db.add(guest)
        await self.db.flush()

        logger.info("guest_user_created", guest_user_id=str(guest.id), phone=phone)
        return guest


class CallbackLogRepository:
    """Append-only log of provider deliveries."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        *,
        source: str,
        outcome: str,
        payload: Any,
        payment_id: Optional[uuid.UUID] = None,
        merchant_request_id: Optional[str] = None,
        checkout_request_id: Optional[str] = None,
        result_code: Optional[int] = None,
    ) -> CallbackLog:
        entry = CallbackLog(
            source=source,
            outcome=outcome,
            payload=payload,
            payment_id=payment_id,
            merchant_request_id=merchant_request_id,
            checkout_request_id=checkout_request_id,
            result_code=result_code,
        )
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def list_recent(self, limit: int = 50) -> List[CallbackLog]:
        stmt = (
            select(CallbackLog)
            .order_by(CallbackLog.received_at.desc(), CallbackLog.id.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

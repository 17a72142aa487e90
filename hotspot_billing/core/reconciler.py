"""
Callback reconciler.

Matches an STK callback to exactly one payment and applies a single
pending -> completed/failed transition.

Resolution order:
1. Payment id embedded in the callback URL path
2. CheckoutRequestID
3. MerchantRequestID
4. Synthesize a placeholder payment from the callback itself

Deliveries may arrive zero, one or many times and in any order. Status
changes go through the repository's compare-and-set, so a redelivered or
stale callback is a no-op for status. ``reconcile`` never raises: the
provider always gets its acknowledgement.
"""
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hotspot_billing.config import Settings
from hotspot_billing.core.errors import PaymentNotFoundError
from hotspot_billing.core.normalizer import AmountError, validate_amount
from hotspot_billing.core.notifier import PaymentNotifier, PaymentSnapshot
from hotspot_billing.core.repository import CallbackLogRepository, PaymentRepository
from hotspot_billing.database.models import (
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    Payment,
)
from hotspot_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

METADATA_FIELDS = ("Amount", "MpesaReceiptNumber", "TransactionDate", "PhoneNumber")

SOURCE_CALLBACK = "callback"
SOURCE_STATUS_QUERY = "status_query"
SOURCE_SIMULATION = "simulation"


class ReconcileOutcome(str, Enum):
    """What a delivery did to the payment store."""

    TRANSITIONED = "transitioned"
    DUPLICATE = "duplicate"
    SYNTHESIZED = "synthesized"
    IGNORED = "ignored"
    ERROR = "error"


class CallbackParseError(ValueError):
    """Raised when a delivery does not carry a usable stkCallback body."""

    pass


@dataclass(frozen=True)
class ParsedCallback:
    """Fields of an STK callback relevant to reconciliation."""

    merchant_request_id: Optional[str]
    checkout_request_id: Optional[str]
    result_code: int
    result_desc: Optional[str]
    items: List[Dict[str, Any]]
    metadata: Dict[str, Any]

    @property
    def target_status(self) -> str:
        # Every nonzero code is a failure, negative codes included
        return PAYMENT_COMPLETED if self.result_code == 0 else PAYMENT_FAILED

    @property
    def receipt_number(self) -> Optional[str]:
        if self.result_code != 0:
            return None
        receipt = self.metadata.get("MpesaReceiptNumber")
        return str(receipt) if receipt is not None else None

    @property
    def amount(self) -> Optional[int]:
        """Callback-reported amount, or None when absent or unusable."""
        value = self.metadata.get("Amount")
        if value is None:
            return None
        try:
            return validate_amount(value)
        except AmountError:
            return None

    @property
    def phone_number(self) -> Optional[str]:
        value = self.metadata.get("PhoneNumber")
        return str(value) if value is not None else None


@dataclass(frozen=True)
class ReconcileResult:
    """Result of reconciling one delivery."""

    outcome: ReconcileOutcome
    payment_id: Optional[uuid.UUID] = None
    status: Optional[str] = None
    detail: Optional[str] = None


def extract_metadata(items: Any) -> Dict[str, Any]:
    """
    Map the callback item list to ``{Name: Value}`` for the known fields.

    Absent names map to None. Items without a Name are skipped.
    """
    found: Dict[str, Any] = {}
    if isinstance(items, list):
        for item in items:
            if isinstance(item, dict) and item.get("Name") in METADATA_FIELDS:
                found[item["Name"]] = item.get("Value")
    return {name: found.get(name) for name in METADATA_FIELDS}


def _parse_result_code(value: Any) -> int:
    if isinstance(value, bool):
        raise CallbackParseError(f"ResultCode is not an integer: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            pass
    raise CallbackParseError(f"ResultCode is not an integer: {value!r}")


def parse_callback(envelope: Any) -> ParsedCallback:
    """
    Extract the stkCallback body from a provider delivery.

    Raises:
        CallbackParseError: If the structure is absent or the result code is
            not an integer
    """
    if not isinstance(envelope, dict):
        raise CallbackParseError("Delivery body is not a JSON object")
    body = envelope.get("Body")
    if not isinstance(body, dict):
        raise CallbackParseError("Missing Body")
    callback = body.get("stkCallback")
    if not isinstance(callback, dict):
        raise CallbackParseError("Missing Body.stkCallback")
    if "ResultCode" not in callback:
        raise CallbackParseError("Missing ResultCode")

    result_code = _parse_result_code(callback["ResultCode"])

    items: List[Dict[str, Any]] = []
    callback_metadata = callback.get("CallbackMetadata")
    if isinstance(callback_metadata, dict) and isinstance(callback_metadata.get("Item"), list):
        items = callback_metadata["Item"]

    merchant_request_id = callback.get("MerchantRequestID")
    checkout_request_id = callback.get("CheckoutRequestID")
    return ParsedCallback(
        merchant_request_id=str(merchant_request_id) if merchant_request_id else None,
        checkout_request_id=str(checkout_request_id) if checkout_request_id else None,
        result_code=result_code,
        result_desc=callback.get("ResultDesc"),
        items=items,
        metadata=extract_metadata(items),
    )


def _parse_payment_id(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        logger.warning("callback_path_id_invalid", path_payment_id=value)
        return None


class CallbackReconciler:
    """
    Applies provider deliveries to the payment store.

    The only component allowed to move a payment out of ``pending``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: PaymentNotifier,
        settings: Settings,
    ):
        """
        Initialize callback reconciler.

        Args:
            session_factory: Factory for database sessions
            notifier: Fan-out for completed payments
            settings: Application settings
        """
        self.session_factory = session_factory
        self.notifier = notifier
        self.settings = settings

    async def reconcile(
        self,
        envelope: Any,
        path_payment_id: Optional[str] = None,
        source: str = SOURCE_CALLBACK,
    ) -> ReconcileResult:
        """
        Reconcile one delivery. Never raises.

        Args:
            envelope: Raw provider body, stored verbatim
            path_payment_id: Payment id from the callback URL, if any
            source: Delivery channel (callback, status_query, simulation)

        Returns:
            ReconcileResult: Outcome and the resolved payment
        """
        start_time = time.monotonic()
        snapshot: Optional[PaymentSnapshot] = None

        try:
            result, snapshot = await self._reconcile(envelope, path_payment_id, source)
        except Exception as e:
            logger.exception(
                "callback_reconciliation_error",
                source=source,
                path_payment_id=path_payment_id,
                error=str(e),
            )
            await self._log_delivery(source, envelope, ReconcileOutcome.ERROR)
            result = ReconcileResult(ReconcileOutcome.ERROR, detail=str(e))

        metrics.record_callback(source, result.outcome.value, time.monotonic() - start_time)

        if snapshot is not None:
            await self._notify(snapshot)

        return result

    async def _reconcile(
        self, envelope: Any, path_payment_id: Optional[str], source: str
    ) -> Tuple[ReconcileResult, Optional[PaymentSnapshot]]:
        try:
            parsed = parse_callback(envelope)
        except CallbackParseError as e:
            logger.warning("callback_ignored", source=source, reason=str(e))
            await self._log_delivery(source, envelope, ReconcileOutcome.IGNORED)
            return ReconcileResult(ReconcileOutcome.IGNORED, detail=str(e)), None

        payment_id = _parse_payment_id(path_payment_id)
        if payment_id is None and not (parsed.checkout_request_id or parsed.merchant_request_id):
            reason = "No correlation identifiers"
            logger.warning("callback_ignored", source=source, reason=reason)
            await self._log_delivery(source, envelope, ReconcileOutcome.IGNORED)
            return ReconcileResult(ReconcileOutcome.IGNORED, detail=reason), None

        logger.info(
            "callback_received",
            source=source,
            path_payment_id=str(payment_id) if payment_id else None,
            merchant_request_id=parsed.merchant_request_id,
            checkout_request_id=parsed.checkout_request_id,
            result_code=parsed.result_code,
        )

        # A concurrent synthesis for the same ids makes our insert fail; the
        # second pass finds the winner's row and takes the compare-and-set path
        try:
            return await self._apply_in_transaction(parsed, envelope, payment_id, source)
        except IntegrityError as e:
            logger.info(
                "callback_synthesis_conflict_retrying",
                checkout_request_id=parsed.checkout_request_id,
                error=str(e.orig),
            )
        return await self._apply_in_transaction(parsed, envelope, payment_id, source)

    async def _apply_in_transaction(
        self,
        parsed: ParsedCallback,
        envelope: Any,
        payment_id: Optional[uuid.UUID],
        source: str,
    ) -> Tuple[ReconcileResult, Optional[PaymentSnapshot]]:
        async with self.session_factory() as db:
            outcome = await self._apply(db, parsed, envelope, payment_id, source)
            await db.commit()
        return outcome

    async def _resolve(
        self,
        payments: PaymentRepository,
        parsed: ParsedCallback,
        payment_id: Optional[uuid.UUID],
    ) -> Optional[Payment]:
        if payment_id is not None:
            payment = await payments.get_by_id(payment_id)
            if payment is not None:
                if (
                    parsed.checkout_request_id
                    and payment.checkout_request_id
                    and payment.checkout_request_id != parsed.checkout_request_id
                ):
                    logger.warning(
                        "callback_path_id_mismatch",
                        payment_id=str(payment_id),
                        stored_checkout_request_id=payment.checkout_request_id,
                        callback_checkout_request_id=parsed.checkout_request_id,
                    )
                return payment

        return await payments.find_by_any_correlation_id(
            checkout_request_id=parsed.checkout_request_id,
            merchant_request_id=parsed.merchant_request_id,
        )

    async def _apply(
        self,
        db: AsyncSession,
        parsed: ParsedCallback,
        envelope: Any,
        payment_id: Optional[uuid.UUID],
        source: str,
    ) -> Tuple[ReconcileResult, Optional[PaymentSnapshot]]:
        payments = PaymentRepository(db)
        logs = CallbackLogRepository(db)

        payment = await self._resolve(payments, parsed, payment_id)

        if payment is None:
            payment = await payments.create_from_callback(
                payment_id=payment_id,
                status=parsed.target_status,
                amount=parsed.amount or 0,
                phone_number=parsed.phone_number,
                result_code=parsed.result_code,
                result_desc=parsed.result_desc,
                receipt_number=parsed.receipt_number,
                merchant_request_id=parsed.merchant_request_id,
                checkout_request_id=parsed.checkout_request_id,
                payload=envelope,
                metadata=parsed.metadata,
            )
            await logs.append(
                source=source,
                outcome=ReconcileOutcome.SYNTHESIZED.value,
                payload=envelope,
                payment_id=payment.id,
                merchant_request_id=parsed.merchant_request_id,
                checkout_request_id=parsed.checkout_request_id,
                result_code=parsed.result_code,
            )
            logger.warning(
                "payment_synthesized_from_callback",
                payment_id=str(payment.id),
                checkout_request_id=parsed.checkout_request_id,
                status=payment.status,
                amount=payment.amount,
            )
            snapshot = (
                PaymentSnapshot.from_payment(payment)
                if payment.status == PAYMENT_COMPLETED
                else None
            )
            return (
                ReconcileResult(ReconcileOutcome.SYNTHESIZED, payment.id, payment.status),
                snapshot,
            )

        callback_amount = parsed.amount
        if callback_amount is not None and callback_amount != payment.amount:
            logger.warning(
                "callback_amount_mismatch",
                payment_id=str(payment.id),
                stored_amount=payment.amount,
                callback_amount=callback_amount,
            )

        transitioned = await payments.apply_callback_result(
            payment.id,
            status=parsed.target_status,
            result_code=parsed.result_code,
            result_desc=parsed.result_desc,
            receipt_number=parsed.receipt_number,
            payload=envelope,
            metadata=parsed.metadata,
        )
        outcome = ReconcileOutcome.TRANSITIONED if transitioned else ReconcileOutcome.DUPLICATE

        await logs.append(
            source=source,
            outcome=outcome.value,
            payload=envelope,
            payment_id=payment.id,
            merchant_request_id=parsed.merchant_request_id,
            checkout_request_id=parsed.checkout_request_id,
            result_code=parsed.result_code,
        )

        current = await payments.get_by_id(payment.id)
        if transitioned:
            logger.info(
                "payment_reconciled",
                payment_id=str(current.id),
                status=current.status,
                result_code=parsed.result_code,
                mpesa_receipt_number=current.mpesa_receipt_number,
            )
        elif current.result_code != parsed.result_code:
            logger.warning(
                "callback_conflicts_with_final_status",
                payment_id=str(current.id),
                status=current.status,
                stored_result_code=current.result_code,
                callback_result_code=parsed.result_code,
            )
        else:
            logger.info(
                "callback_duplicate",
                payment_id=str(current.id),
                status=current.status,
            )

        snapshot = (
            PaymentSnapshot.from_payment(current)
            if transitioned and current.status == PAYMENT_COMPLETED
            else None
        )
        return ReconcileResult(outcome, current.id, current.status), snapshot

    async def _notify(self, snapshot: PaymentSnapshot) -> None:
        try:
            await self.notifier.broadcast_payment_update(snapshot)
        except Exception as e:
            metrics.record_notification_failure()
            logger.error("payment_notification_failed", payment_id=snapshot.id, error=str(e))

    async def _log_delivery(self, source: str, payload: Any, outcome: ReconcileOutcome) -> None:
        try:
            async with self.session_factory() as db:
                await CallbackLogRepository(db).append(
                    source=source, outcome=outcome.value, payload=payload
                )
                await db.commit()
        except Exception as e:
            logger.error("callback_log_write_failed", source=source, error=str(e))

    async def record_delivery(self, source: str, payload: Any) -> None:
        """Log a delivery that needs no reconciliation (C2B validation/confirmation)."""
        logger.info("provider_delivery_received", source=source)
        await self._log_delivery(source, payload, ReconcileOutcome.IGNORED)

    async def simulate(self, checkout_request_id: str, success: bool) -> ReconcileResult:
        """
        Feed a provider-shaped callback for an existing payment.

        Raises:
            PaymentNotFoundError: If no payment has this checkout request id
        """
        async with self.session_factory() as db:
            payment = await PaymentRepository(db).get_by_checkout_request_id(checkout_request_id)
        if payment is None:
            raise PaymentNotFoundError(f"No payment with checkout request id {checkout_request_id}")

        callback: Dict[str, Any] = {
            "MerchantRequestID": payment.merchant_request_id,
            "CheckoutRequestID": checkout_request_id,
        }
        if success:
            transaction_date = datetime.now(ZoneInfo(self.settings.mpesa_timezone))
            callback.update(
                ResultCode=0,
                ResultDesc="The service request is processed successfully.",
                CallbackMetadata={
                    "Item": [
                        {"Name": "Amount", "Value": payment.amount},
                        {"Name": "MpesaReceiptNumber", "Value": f"SIM{uuid.uuid4().hex[:7].upper()}"},
                        {"Name": "TransactionDate", "Value": int(transaction_date.strftime("%Y%m%d%H%M%S"))},
                        {"Name": "PhoneNumber", "Value": int(payment.phone_number) if payment.phone_number else None},
                    ]
                },
            )
        else:
            callback.update(ResultCode=1032, ResultDesc="Request cancelled by user")

        logger.info("callback_simulated", checkout_request_id=checkout_request_id, success=success)
        return await self.reconcile({"Body": {"stkCallback": callback}}, source=SOURCE_SIMULATION)

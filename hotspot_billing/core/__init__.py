"""Core payment reconciliation logic."""
from .errors import (
    PaymentError,
    PaymentInitiationError,
    PaymentNotFoundError,
    PaymentValidationError,
)
from .initiator import InitiationResult, PaymentInitiator
from .notifier import BroadcastNotifier, NullNotifier, PaymentNotifier, PaymentSnapshot
from .reconciler import CallbackReconciler, ReconcileOutcome, ReconcileResult
from .reporting import ReportingService

__all__ = [
    "BroadcastNotifier",
    "CallbackReconciler",
    "InitiationResult",
    "NullNotifier",
    "PaymentError",
    "PaymentInitiationError",
    "PaymentInitiator",
    "PaymentNotFoundError",
    "PaymentNotifier",
    "PaymentSnapshot",
    "PaymentValidationError",
    "ReconcileOutcome",
    "ReconcileResult",
    "ReportingService",
]

"""Payment error taxonomy."""
from typing import Dict, Optional

from hotspot_billing.integrations.mpesa_client import MpesaError, MpesaErrorType


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    pass


class PaymentValidationError(PaymentError):
    """Raised when payment input validation fails."""

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or {}


class PaymentInitiationError(PaymentError):
    """Raised when the provider does not accept an STK push."""

    def __init__(self, message: str, cause: Optional[MpesaError] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def is_timeout(self) -> bool:
        return self.cause is not None and self.cause.error_type == MpesaErrorType.TIMEOUT


class PaymentNotFoundError(PaymentError):
    """Raised when a payment does not exist."""

    pass

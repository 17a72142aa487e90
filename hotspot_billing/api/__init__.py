"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentResponse,
    RevenueReportResponse,
)

__all__ = [
    "create_app",
    "InitiatePaymentRequest",
    "InitiatePaymentResponse",
    "PaymentResponse",
    "RevenueReportResponse",
]

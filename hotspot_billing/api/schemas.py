"""
Pydantic schemas for API request/response models.

Wire JSON is camelCase; Python attributes stay snake_case.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serializing field names as camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class InitiatePaymentRequest(CamelModel):
    """Request schema for initiating an STK push."""

    # Amount and phone are validated by the normalizer so every field error
    # is reported together
    amount: Any = Field(default=None, description="Amount in whole shillings")
    phone_number: Any = Field(default=None, description="Payer phone number in any local form")
    plan_id: Optional[str] = Field(default=None, description="Plan identifier")
    plan_name: Optional[str] = Field(default=None, description="Plan name")
    payment_type: str = Field(default="direct", alias="type", description="direct or plan")
    account_reference: Optional[str] = Field(default=None, description="Reference shown to the payer")

    model_config = ConfigDict(
        extra="forbid",
        json_schema_extra={
            "examples": [
                {
                    "amount": 50,
                    "phoneNumber": "0712345678",
                    "planId": "daily-1gb",
                    "planName": "Daily 1GB",
                    "type": "plan",
                }
            ]
        },
    )

    @field_validator("plan_id", mode="before")
    @classmethod
    def coerce_plan_id(cls, v: Any) -> Any:
        """Accept numeric plan ids."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class InitiatePaymentResponse(CamelModel):
    """Response schema for an accepted STK push."""

    success: bool = True
    message: str = Field(..., description="Message for the payer")
    payment_id: UUID = Field(..., description="Payment ID")
    merchant_request_id: str = Field(..., description="Provider merchant request ID")
    checkout_request_id: str = Field(..., description="Provider checkout request ID")
    persisted: bool = Field(..., description="False if the payment could not be saved yet")


class ErrorResponse(CamelModel):
    """Structured error body."""

    success: bool = False
    message: str
    errors: Optional[Dict[str, str]] = None


class PaymentResponse(CamelModel):
    """Payment as exposed to clients."""

    id: UUID
    user_id: Optional[str] = None
    plan_id: Optional[str] = None
    plan_name: str
    payment_type: str
    amount: int
    phone_number: Optional[str] = None
    account_reference: Optional[str] = None
    status: str
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    result_code: Optional[int] = None
    result_desc: Optional[str] = None
    callback_metadata: Optional[Dict[str, Any]] = None
    retry_count: int = 0
    last_retry_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PaymentEnvelope(CamelModel):
    success: bool = True
    data: PaymentResponse


class PaymentListEnvelope(CamelModel):
    success: bool = True
    data: List[PaymentResponse]


class CallbackLogResponse(CamelModel):
    """Logged provider delivery."""

    id: int
    source: str
    outcome: str
    payment_id: Optional[UUID] = None
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    result_code: Optional[int] = None
    payload: Optional[Any] = None
    received_at: datetime


class CallbackLogListEnvelope(CamelModel):
    success: bool = True
    data: List[CallbackLogResponse]


class PlanRevenue(CamelModel):
    plan: str
    revenue: int
    count: int


class RevenueReportResponse(CamelModel):
    """Revenue from completed payments in a date range."""

    start_date: datetime
    end_date: datetime
    total_revenue: int
    transactions_count: int
    revenue_by_plan: List[PlanRevenue]


class RecentTransaction(CamelModel):
    id: UUID
    amount: int
    status: str
    phone_number: Optional[str] = None
    plan_name: str
    mpesa_receipt_number: Optional[str] = None
    created_at: datetime


class DashboardResponse(CamelModel):
    """All-time dashboard rollup."""

    total_revenue: int
    total_transactions: int
    revenue_by_plan: List[PlanRevenue]
    recent_transactions: List[RecentTransaction]
    payment_stats: Dict[str, int]


class CallbackAck(BaseModel):
    """Acknowledgement returned to the provider for every delivery."""

    ResultCode: int = 0
    ResultDesc: str = "Success"


class NormalizePhoneRequest(BaseModel):
    phone: Any = None


class NormalizePhoneResponse(CamelModel):
    raw: str
    normalized: Optional[str] = None
    ok: bool
    error: Optional[str] = None


class SimulateCallbackRequest(CamelModel):
    success: bool = Field(default=True, description="Simulate a successful payment")


class ReconcileResponse(CamelModel):
    outcome: str
    payment_id: Optional[UUID] = None
    status: Optional[str] = None
    detail: Optional[str] = None


class SweepResponse(CamelModel):
    examined: int
    resolved: int
    still_pending: int
    query_failed: int
    reconcile_failed: int
    skipped: int


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")

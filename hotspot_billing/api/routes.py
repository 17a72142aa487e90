"""
API routes for payment initiation, provider callbacks and reporting.
"""
import json
import uuid
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Optional

import structlog
from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from hotspot_billing.config import Settings
from hotspot_billing.core.errors import PaymentNotFoundError, PaymentValidationError
from hotspot_billing.core.initiator import PaymentInitiator
from hotspot_billing.core.normalizer import PhoneNumberError, normalize_phone
from hotspot_billing.core.notifier import BroadcastNotifier
from hotspot_billing.core.reconciler import CallbackReconciler
from hotspot_billing.core.reporting import ReportingService
from hotspot_billing.monitoring.health import HealthCheck
from hotspot_billing.workers.pending_sweeper import PendingPaymentSweeper

from .dependencies import (
    get_health_check,
    get_initiator,
    get_reconciler,
    get_reporting,
    get_settings_dependency,
    get_sweeper,
)
from .schemas import (
    CallbackAck,
    CallbackLogListEnvelope,
    CallbackLogResponse,
    DashboardResponse,
    ErrorResponse,
    HealthCheckResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    NormalizePhoneRequest,
    NormalizePhoneResponse,
    PaymentEnvelope,
    PaymentListEnvelope,
    PaymentResponse,
    ReconcileResponse,
    RevenueReportResponse,
    SimulateCallbackRequest,
    SweepResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/api/payment", tags=["payments"])
mpesa_router = APIRouter(prefix="/api/mpesa", tags=["mpesa"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])
websocket_router = APIRouter(tags=["websocket"])

CALLBACK_ACK = {"ResultCode": 0, "ResultDesc": "Success"}


def _parse_report_date(value: Optional[str], field: str, end_of_day: bool) -> Optional[datetime]:
    """
    Parse a report boundary given as a date or an ISO 8601 datetime.

    A bare date covers the whole day: start of day for the range start, end
    of day for the range end.
    """
    if not value:
        return None
    text = value.strip()
    try:
        if len(text) == 10:
            day = date.fromisoformat(text)
            return datetime.combine(day, time.max if end_of_day else time.min, tzinfo=timezone.utc)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return datetime.fromisoformat(text)
    except ValueError:
        raise PaymentValidationError(
            "Invalid date range",
            {field: f"Invalid date: {value}. Use YYYY-MM-DD or ISO 8601"},
        )


def _ensure_not_production(settings: Settings) -> None:
    if settings.is_production:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")


async def _read_delivery(request: Request) -> Any:
    """Decode a provider delivery without ever failing the request."""
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return {"raw": raw.decode("utf-8", errors="replace")}


# Payment endpoints


@payment_router.post(
    "/initiate",
    response_model=InitiatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse},
        422: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
        504: {"model": ErrorResponse},
    },
    summary="Initiate an STK push",
    description="Validate the request, prompt the payer's phone and record a pending payment",
)
async def initiate_payment(
    request: InitiatePaymentRequest,
    initiator: PaymentInitiator = Depends(get_initiator),
) -> InitiatePaymentResponse:
    """
    Initiate a payment.

    Validation errors return 400 with per-field detail; provider failures
    return 502 (504 on timeout) and create no payment.
    """
    logger.info(
        "api_initiate_payment_request",
        plan_id=request.plan_id,
        payment_type=request.payment_type,
    )

    result = await initiator.initiate(
        amount=request.amount,
        phone_number=request.phone_number,
        plan_name=request.plan_name,
        plan_id=request.plan_id,
        payment_type=request.payment_type,
        account_reference=request.account_reference,
    )

    return InitiatePaymentResponse(
        message=result.customer_message or "Payment request sent. Check your phone to complete.",
        payment_id=result.payment_id,
        merchant_request_id=result.merchant_request_id,
        checkout_request_id=result.checkout_request_id,
        persisted=result.persisted,
    )


@payment_router.get(
    "/recent",
    response_model=PaymentListEnvelope,
    summary="List recent payments",
)
async def list_recent_payments(
    limit: int = Query(default=10, ge=1, le=100),
    reporting: ReportingService = Depends(get_reporting),
) -> PaymentListEnvelope:
    payments = await reporting.recent_payments(limit)
    return PaymentListEnvelope(data=[PaymentResponse.model_validate(p) for p in payments])


@payment_router.get(
    "/logs",
    response_model=CallbackLogListEnvelope,
    summary="List recent provider deliveries",
)
async def list_callback_logs(
    limit: int = Query(default=50, ge=1, le=500),
    reporting: ReportingService = Depends(get_reporting),
) -> CallbackLogListEnvelope:
    logs = await reporting.recent_callback_logs(limit)
    return CallbackLogListEnvelope(data=[CallbackLogResponse.model_validate(entry) for entry in logs])


@payment_router.get(
    "/report/revenue",
    response_model=RevenueReportResponse,
    summary="Revenue report",
    description="Revenue from completed payments between startDate and endDate (inclusive)",
)
async def revenue_report(
    start_date: Optional[str] = Query(default=None, alias="startDate"),
    end_date: Optional[str] = Query(default=None, alias="endDate"),
    reporting: ReportingService = Depends(get_reporting),
) -> RevenueReportResponse:
    start = _parse_report_date(start_date, "startDate", end_of_day=False)
    end = _parse_report_date(end_date, "endDate", end_of_day=True)
    if start and end and start > end:
        raise PaymentValidationError(
            "Invalid date range", {"startDate": "startDate must not be after endDate"}
        )

    report = await reporting.revenue_report(start, end)
    return RevenueReportResponse.model_validate(report)


@payment_router.get(
    "/dashboard-data",
    response_model=DashboardResponse,
    summary="Dashboard rollup",
)
async def dashboard_data(
    reporting: ReportingService = Depends(get_reporting),
) -> DashboardResponse:
    return DashboardResponse.model_validate(await reporting.dashboard())


@payment_router.get(
    "/{payment_id}",
    response_model=PaymentEnvelope,
    responses={404: {"model": ErrorResponse}},
    summary="Get payment",
)
async def get_payment(
    payment_id: uuid.UUID,
    reporting: ReportingService = Depends(get_reporting),
) -> PaymentEnvelope:
    payment = await reporting.get_payment(payment_id)
    if payment is None:
        raise PaymentNotFoundError("Payment not found")
    return PaymentEnvelope(data=PaymentResponse.model_validate(payment))


# M-Pesa endpoints


@mpesa_router.post(
    "/callback",
    response_model=CallbackAck,
    summary="STK push callback",
)
async def mpesa_callback(
    request: Request,
    reconciler: CallbackReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """
    Receive an STK callback.

    Always acknowledges with 200: the provider retries aggressively on
    anything else.
    """
    envelope = await _read_delivery(request)
    await reconciler.reconcile(envelope)
    return CALLBACK_ACK


@mpesa_router.post(
    "/callback/{payment_id}",
    response_model=CallbackAck,
    summary="STK push callback addressed to a payment",
)
async def mpesa_callback_for_payment(
    payment_id: str,
    request: Request,
    reconciler: CallbackReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    envelope = await _read_delivery(request)
    await reconciler.reconcile(envelope, path_payment_id=payment_id)
    return CALLBACK_ACK


@mpesa_router.post("/confirmation", summary="C2B confirmation")
async def mpesa_confirmation(
    request: Request,
    reconciler: CallbackReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    await reconciler.record_delivery("c2b_confirmation", await _read_delivery(request))
    return CALLBACK_ACK


@mpesa_router.post("/validation", summary="C2B validation")
async def mpesa_validation(
    request: Request,
    reconciler: CallbackReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    await reconciler.record_delivery("c2b_validation", await _read_delivery(request))
    return {"ResultCode": 0, "ResultDesc": "Accepted"}


@mpesa_router.post(
    "/debug/normalize",
    response_model=NormalizePhoneResponse,
    summary="Preview phone normalization",
)
async def debug_normalize(
    body: NormalizePhoneRequest,
    settings: Settings = Depends(get_settings_dependency),
) -> NormalizePhoneResponse:
    _ensure_not_production(settings)
    raw = "" if body.phone is None else str(body.phone)
    try:
        return NormalizePhoneResponse(raw=raw, normalized=normalize_phone(raw), ok=True)
    except PhoneNumberError as e:
        return NormalizePhoneResponse(raw=raw, ok=False, error=str(e))


# Admin endpoints


@admin_router.post(
    "/payments/{checkout_request_id}/simulate",
    response_model=ReconcileResponse,
    summary="Simulate a provider callback",
    description="Feed a provider-shaped callback for a pending payment (non-production only)",
)
async def simulate_callback(
    checkout_request_id: str,
    body: Optional[SimulateCallbackRequest] = None,
    reconciler: CallbackReconciler = Depends(get_reconciler),
    settings: Settings = Depends(get_settings_dependency),
) -> ReconcileResponse:
    _ensure_not_production(settings)
    success = body.success if body is not None else True

    logger.info("api_simulate_callback", checkout_request_id=checkout_request_id, success=success)
    result = await reconciler.simulate(checkout_request_id, success)
    return ReconcileResponse(
        outcome=result.outcome.value,
        payment_id=result.payment_id,
        status=result.status,
        detail=result.detail,
    )


@admin_router.post(
    "/pending/sweep",
    response_model=SweepResponse,
    summary="Query the provider for stale pending payments",
)
async def sweep_pending(
    sweeper: PendingPaymentSweeper = Depends(get_sweeper),
) -> SweepResponse:
    logger.info("api_pending_sweep_triggered")
    return SweepResponse.model_validate(await sweeper.sweep_once())


# Monitoring endpoints


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check health of all system dependencies",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(
    response: Response,
    health_check: HealthCheck = Depends(get_health_check),
) -> Dict[str, Any]:
    result = await health_check.readiness()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# Real-time payment updates


@websocket_router.websocket("/ws/payments")
async def payment_updates(websocket: WebSocket) -> None:
    """Stream completed payment snapshots to the client."""
    notifier = websocket.app.state.container.notifier
    await websocket.accept()

    if not isinstance(notifier, BroadcastNotifier):
        await websocket.close(code=1013)
        return

    queue = notifier.subscribe()
    try:
        while True:
            message = await queue.get()
            await websocket.send_json(message)
    except WebSocketDisconnect:
        pass
    finally:
        notifier.unsubscribe(queue)

"""
M-Pesa Daraja API client with token caching and error classification.

Implements:
- OAuth access token retrieval with caching and retry
- STK push (Lipa Na M-Pesa Online) submission
- STK push status query
- Circuit breaker around provider calls
"""
import base64
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from zoneinfo import ZoneInfo

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from hotspot_billing.config import Settings
from hotspot_billing.integrations.token_cache import InMemoryTokenCache, TokenCache
from hotspot_billing.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

OAUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

# Daraja field limits
ACCOUNT_REFERENCE_MAX_LENGTH = 12
TRANSACTION_DESC_MAX_LENGTH = 13

# Returned by the query endpoint while the payer has not answered the prompt yet
TRANSACTION_IN_PROGRESS_CODES = {"500.001.1001"}


class MpesaErrorType(Enum):
    """Classification of M-Pesa errors."""

    TRANSIENT = "transient"  # Network errors, 5xx
    PERMANENT = "permanent"  # Rejected request, 4xx
    AUTHENTICATION = "authentication"  # Bad consumer key/secret or expired token
    TIMEOUT = "timeout"  # Provider did not answer in time


class MpesaError(Exception):
    """Base exception for M-Pesa related errors."""

    def __init__(
        self,
        message: str,
        error_type: MpesaErrorType,
        status_code: Optional[int] = None,
        response_body: Optional[Dict[str, Any]] = None,
    ):
        """
        Initialize M-Pesa error.

        Args:
            message: Error message
            error_type: Classification of error
            status_code: HTTP status returned by the provider, if any
            response_body: Decoded provider response body, if any
        """
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.response_body = response_body or {}

    @property
    def is_transient(self) -> bool:
        return self.error_type in (MpesaErrorType.TRANSIENT, MpesaErrorType.TIMEOUT)


class MpesaTransactionPending(MpesaError):
    """The provider is still processing the queried transaction."""

    pass


@dataclass(frozen=True)
class StkPushResponse:
    """Provider acknowledgement of an accepted STK push."""

    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str
    customer_message: str

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "StkPushResponse":
        return cls(
            merchant_request_id=str(data.get("MerchantRequestID") or ""),
            checkout_request_id=str(data.get("CheckoutRequestID") or ""),
            response_code=str(data.get("ResponseCode", "")),
            response_description=str(data.get("ResponseDescription") or ""),
            customer_message=str(data.get("CustomerMessage") or ""),
        )


@dataclass(frozen=True)
class StkQueryResult:
    """Final result of an STK push as reported by the status query."""

    merchant_request_id: Optional[str]
    checkout_request_id: str
    result_code: int
    result_desc: str

    def to_callback_envelope(self) -> Dict[str, Any]:
        """Shape the query result like a provider callback body."""
        return {
            "Body": {
                "stkCallback": {
                    "MerchantRequestID": self.merchant_request_id,
                    "CheckoutRequestID": self.checkout_request_id,
                    "ResultCode": self.result_code,
                    "ResultDesc": self.result_desc,
                }
            }
        }


def build_timestamp(timezone_name: str, now: Optional[datetime] = None) -> str:
    """Request timestamp in ``YYYYMMDDHHmmss`` in the provider's timezone."""
    moment = now or datetime.now(ZoneInfo(timezone_name))
    if moment.tzinfo is not None:
        moment = moment.astimezone(ZoneInfo(timezone_name))
    return moment.strftime("%Y%m%d%H%M%S")


def build_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """STK password: base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


def _decode_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"raw": response.text}
    return body if isinstance(body, dict) else {"raw": body}


class CircuitBreaker:
    """
    Circuit breaker for M-Pesa API calls.

    Stops sending requests for ``timeout`` seconds after ``failure_threshold``
    consecutive transient failures. Permanent rejections (bad phone number,
    invalid amount) do not count: they say nothing about provider health.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 30,
        success_threshold: int = 1,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Await ``func`` with circuit breaker protection.

        Raises:
            MpesaError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise MpesaError(
                    "M-Pesa is temporarily unavailable",
                    MpesaErrorType.TRANSIENT,
                )

        try:
            result = await func(*args, **kwargs)
        except MpesaError as e:
            if e.is_transient:
                self.on_failure()
            else:
                self.on_success()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class MpesaClient:
    """
    Async client for the Daraja API.

    Features:
    - Cached OAuth token, refreshed ``mpesa_token_expiry_margin_seconds``
      before the provider's declared expiry
    - Bounded timeout on every call
    - STK push is sent exactly once: a retry could prompt the payer twice
    """

    def __init__(
        self,
        settings: Settings,
        token_cache: Optional[TokenCache] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize M-Pesa client.

        Args:
            settings: Application settings
            token_cache: Token storage (in-process when omitted)
            http_client: Optional pre-built httpx client (tests inject a mock transport)
            circuit_breaker: Optional circuit breaker
        """
        self.settings = settings
        self.token_cache = token_cache or InMemoryTokenCache()
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            base_url=settings.mpesa_base_url,
            timeout=settings.mpesa_timeout_seconds,
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "mpesa_client_initialized",
            environment=settings.mpesa_environment,
            shortcode=settings.mpesa_shortcode,
        )

    async def get_access_token(self) -> str:
        """
        Return a valid bearer token, fetching a new one when the cache is empty.

        Raises:
            MpesaError: If the token cannot be obtained
        """
        token = await self.token_cache.get()
        if token:
            metrics.record_token_request("cache")
            return token

        token, expires_in = await self._fetch_access_token()
        ttl = expires_in - self.settings.mpesa_token_expiry_margin_seconds
        await self.token_cache.set(token, ttl)
        metrics.record_token_request("provider")

        logger.info("mpesa_access_token_refreshed", expires_in=expires_in, cache_ttl=ttl)
        return token

    @retry(
        retry=retry_if_exception(lambda e: isinstance(e, MpesaError) and e.is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
        reraise=True,
    )
    async def _fetch_access_token(self) -> Tuple[str, int]:
        """Request a new token with Basic credentials."""
        credentials = base64.b64encode(
            f"{self.settings.mpesa_consumer_key}:{self.settings.mpesa_consumer_secret}".encode()
        ).decode()

        async def _request() -> httpx.Response:
            return await self._send(
                "oauth",
                "GET",
                OAUTH_PATH,
                params={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {credentials}"},
            )

        response = await self.circuit_breaker.call(_request)
        body = _decode_body(response)

        token = body.get("access_token")
        if not token:
            raise MpesaError(
                "Failed to authenticate with M-Pesa: no access token returned",
                MpesaErrorType.AUTHENTICATION,
                status_code=response.status_code,
                response_body=body,
            )

        try:
            expires_in = int(float(body.get("expires_in", 0)))
        except (TypeError, ValueError):
            expires_in = 0
        return token, expires_in

    async def _send(self, operation: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """
        Perform one HTTP call and classify failures.

        Raises:
            MpesaError: Classified provider or transport error
        """
        start_time = time.monotonic()
        try:
            response = await self.http_client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            metrics.record_mpesa_api_call(operation, "timeout", time.monotonic() - start_time)
            metrics.record_mpesa_api_error(MpesaErrorType.TIMEOUT.value)
            logger.error("mpesa_api_timeout", operation=operation, error=str(e))
            raise MpesaError("M-Pesa request timed out", MpesaErrorType.TIMEOUT)
        except httpx.TransportError as e:
            metrics.record_mpesa_api_call(operation, "transport_error", time.monotonic() - start_time)
            metrics.record_mpesa_api_error(MpesaErrorType.TRANSIENT.value)
            logger.error("mpesa_api_transport_error", operation=operation, error=str(e))
            raise MpesaError(f"Could not reach M-Pesa: {e}", MpesaErrorType.TRANSIENT)

        metrics.record_mpesa_api_call(
            operation, str(response.status_code), time.monotonic() - start_time
        )
        if response.is_success:
            return response

        body = _decode_body(response)
        message = (
            body.get("errorMessage")
            or body.get("ResponseDescription")
            or f"M-Pesa returned HTTP {response.status_code}"
        )

        if str(body.get("errorCode", "")) in TRANSACTION_IN_PROGRESS_CODES:
            raise MpesaTransactionPending(
                message,
                MpesaErrorType.PERMANENT,
                status_code=response.status_code,
                response_body=body,
            )

        if response.status_code in (401, 403) or (operation == "oauth" and response.status_code == 400):
            error_type = MpesaErrorType.AUTHENTICATION
        elif response.status_code >= 500 or response.status_code == 429:
            error_type = MpesaErrorType.TRANSIENT
        else:
            error_type = MpesaErrorType.PERMANENT

        metrics.record_mpesa_api_error(error_type.value)
        logger.error(
            "mpesa_api_error",
            operation=operation,
            status_code=response.status_code,
            error_type=error_type.value,
            error_code=body.get("errorCode"),
            error_message=message,
        )
        raise MpesaError(
            message,
            error_type,
            status_code=response.status_code,
            response_body=body,
        )

    async def _post_authorized(
        self, operation: str, path: str, payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        token = await self.get_access_token()

        async def _request() -> httpx.Response:
            return await self._send(
                operation,
                "POST",
                path,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )

        try:
            response = await self.circuit_breaker.call(_request)
        except MpesaError as e:
            if e.error_type == MpesaErrorType.AUTHENTICATION:
                # Token revoked or expired early; next call fetches a new one
                await self.token_cache.invalidate()
            raise
        return _decode_body(response)

    def _security_fields(self) -> Dict[str, str]:
        timestamp = build_timestamp(self.settings.mpesa_timezone)
        return {
            "BusinessShortCode": self.settings.mpesa_shortcode,
            "Password": build_password(
                self.settings.mpesa_shortcode, self.settings.mpesa_passkey, timestamp
            ),
            "Timestamp": timestamp,
        }

    async def stk_push(
        self,
        amount: int,
        phone_number: str,
        callback_url: str,
        account_reference: str,
        description: str,
    ) -> StkPushResponse:
        """
        Submit an STK push to the payer's phone.

        Args:
            amount: Whole-shilling amount (already validated)
            phone_number: Canonical MSISDN (already normalized)
            callback_url: URL the provider will deliver the result to
            account_reference: Reference shown to the payer
            description: Transaction description

        Returns:
            StkPushResponse: Correlation identifiers issued by the provider

        Raises:
            MpesaError: If the push is not accepted
        """
        payload = {
            **self._security_fields(),
            "TransactionType": self.settings.mpesa_transaction_type,
            "Amount": amount,
            "PartyA": phone_number,
            "PartyB": self.settings.mpesa_shortcode,
            "PhoneNumber": phone_number,
            "CallBackURL": callback_url,
            "AccountReference": account_reference[:ACCOUNT_REFERENCE_MAX_LENGTH],
            "TransactionDesc": description[:TRANSACTION_DESC_MAX_LENGTH],
        }

        logger.info(
            "mpesa_stk_push_sending",
            amount=amount,
            phone_number=phone_number,
            callback_url=callback_url,
            account_reference=payload["AccountReference"],
        )

        body = await self._post_authorized("stk_push", STK_PUSH_PATH, payload)
        response = StkPushResponse.from_payload(body)

        if response.response_code != "0" or not response.checkout_request_id:
            metrics.record_mpesa_api_error(MpesaErrorType.PERMANENT.value)
            logger.warning(
                "mpesa_stk_push_rejected",
                response_code=response.response_code,
                response_description=response.response_description,
            )
            raise MpesaError(
                response.response_description or "M-Pesa rejected the payment request",
                MpesaErrorType.PERMANENT,
                response_body=body,
            )

        logger.info(
            "mpesa_stk_push_accepted",
            merchant_request_id=response.merchant_request_id,
            checkout_request_id=response.checkout_request_id,
        )
        return response

    async def query_stk_status(self, checkout_request_id: str) -> Optional[StkQueryResult]:
        """
        Ask the provider for the final result of an STK push.

        Returns:
            Optional[StkQueryResult]: The result, or None while the provider
            is still processing the transaction

        Raises:
            MpesaError: If the query fails
        """
        payload = {
            **self._security_fields(),
            "CheckoutRequestID": checkout_request_id,
        }

        try:
            body = await self._post_authorized("stk_query", STK_QUERY_PATH, payload)
        except MpesaTransactionPending:
            logger.info("mpesa_stk_query_still_processing", checkout_request_id=checkout_request_id)
            return None

        if "ResultCode" not in body:
            logger.info(
                "mpesa_stk_query_no_result",
                checkout_request_id=checkout_request_id,
                response_description=body.get("ResponseDescription"),
            )
            return None

        try:
            result_code = int(body["ResultCode"])
        except (TypeError, ValueError):
            raise MpesaError(
                f"Unexpected ResultCode in query response: {body['ResultCode']!r}",
                MpesaErrorType.PERMANENT,
                response_body=body,
            )

        return StkQueryResult(
            merchant_request_id=body.get("MerchantRequestID"),
            checkout_request_id=str(body.get("CheckoutRequestID") or checkout_request_id),
            result_code=result_code,
            result_desc=str(body.get("ResultDesc") or ""),
        )

    async def close(self) -> None:
        """Close the HTTP client and token cache."""
        if self._owns_http_client:
            await self.http_client.aclose()
        await self.token_cache.close()

"""
Pytest configuration and fixtures.
"""
import json
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from hotspot_billing.api.main import create_app
from hotspot_billing.config import Settings
from hotspot_billing.core.initiator import PaymentInitiator
from hotspot_billing.core.notifier import PaymentNotifier, PaymentSnapshot
from hotspot_billing.core.reconciler import CallbackReconciler
from hotspot_billing.core.reporting import ReportingService
from hotspot_billing.core.repository import PaymentRepository
from hotspot_billing.database.connection import create_session_factory
from hotspot_billing.database.models import Base, Payment
from hotspot_billing.integrations.mpesa_client import (
    OAUTH_PATH,
    STK_PUSH_PATH,
    STK_QUERY_PATH,
    MpesaClient,
)
from hotspot_billing.workers.pending_sweeper import PendingPaymentSweeper


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests without shared state")
    config.addinivalue_line("markers", "integration: tests crossing the HTTP or database boundary")
    config.addinivalue_line("markers", "race: concurrent delivery tests")


class FakeDaraja:
    """
    In-memory Daraja API served through httpx.MockTransport.

    Every STK push is accepted with fresh correlation ids unless a response
    or exception is queued.
    """

    def __init__(self) -> None:
        self.oauth_calls = 0
        self.stk_requests: List[Dict[str, Any]] = []
        self.query_requests: List[Dict[str, Any]] = []
        self.auth_headers: List[str] = []
        self.token_expires_in = "3599"
        self.oauth_responses: List[Any] = []
        self.stk_responses: List[Any] = []
        self.query_responses: List[Any] = []
        self._counter = 0

    @staticmethod
    def _reply(queued: Any, request: httpx.Request) -> httpx.Response:
        if isinstance(queued, Exception):
            raise queued
        status_code, body = queued
        return httpx.Response(status_code, json=body, request=request)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.auth_headers.append(request.headers.get("Authorization", ""))

        if path == OAUTH_PATH:
            self.oauth_calls += 1
            if self.oauth_responses:
                return self._reply(self.oauth_responses.pop(0), request)
            return httpx.Response(
                200,
                json={"access_token": f"token-{self.oauth_calls}", "expires_in": self.token_expires_in},
                request=request,
            )

        if path == STK_PUSH_PATH:
            payload = json.loads(request.content)
            self.stk_requests.append(payload)
            if self.stk_responses:
                return self._reply(self.stk_responses.pop(0), request)
            self._counter += 1
            return httpx.Response(
                200,
                json={
                    "MerchantRequestID": f"29115-34620561-{self._counter}",
                    "CheckoutRequestID": f"ws_CO_19122019102036392{self._counter}",
                    "ResponseCode": "0",
                    "ResponseDescription": "Success. Request accepted for processing",
                    "CustomerMessage": "Success. Request accepted for processing",
                },
                request=request,
            )

        if path == STK_QUERY_PATH:
            payload = json.loads(request.content)
            self.query_requests.append(payload)
            if self.query_responses:
                return self._reply(self.query_responses.pop(0), request)
            return httpx.Response(
                500,
                json={
                    "requestId": "query-1",
                    "errorCode": "500.001.1001",
                    "errorMessage": "The transaction is being processed",
                },
                request=request,
            )

        return httpx.Response(404, json={"errorMessage": "Not found"}, request=request)


class RecordingNotifier(PaymentNotifier):
    """Notifier capturing every broadcast snapshot."""

    def __init__(self) -> None:
        self.snapshots: List[PaymentSnapshot] = []

    async def broadcast_payment_update(self, snapshot: PaymentSnapshot) -> None:
        self.snapshots.append(snapshot)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        mpesa_consumer_key="test-consumer-key",
        mpesa_consumer_secret="test-consumer-secret",
        mpesa_shortcode="174379",
        mpesa_passkey="test-passkey",
        mpesa_callback_url="https://billing.example.com/api/mpesa/callback",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        app_name="hotspot-billing-test",
        app_env="test",
        log_level="DEBUG",
        pending_query_after_seconds=0,
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Create a file-backed SQLite engine with fresh tables."""
    # NullPool: every session gets its own connection, like a real server
    engine = create_async_engine(test_settings.database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
def fake_daraja() -> FakeDaraja:
    return FakeDaraja()


@pytest_asyncio.fixture
async def mpesa_client(
    test_settings: Settings, fake_daraja: FakeDaraja
) -> AsyncGenerator[MpesaClient, Any]:
    """M-Pesa client talking to the fake Daraja API."""
    http_client = httpx.AsyncClient(
        transport=httpx.MockTransport(fake_daraja.handler),
        base_url=test_settings.mpesa_base_url,
    )
    client = MpesaClient(test_settings, http_client=http_client)

    yield client

    await http_client.aclose()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def initiator(
    session_factory: async_sessionmaker[AsyncSession],
    mpesa_client: MpesaClient,
    test_settings: Settings,
) -> PaymentInitiator:
    return PaymentInitiator(session_factory, mpesa_client, test_settings)


@pytest.fixture
def reconciler(
    session_factory: async_sessionmaker[AsyncSession],
    notifier: RecordingNotifier,
    test_settings: Settings,
) -> CallbackReconciler:
    return CallbackReconciler(session_factory, notifier, test_settings)


@pytest.fixture
def reporting(session_factory: async_sessionmaker[AsyncSession]) -> ReportingService:
    return ReportingService(session_factory, recent_limit=5)


@pytest.fixture
def sweeper(
    session_factory: async_sessionmaker[AsyncSession],
    mpesa_client: MpesaClient,
    reconciler: CallbackReconciler,
    test_settings: Settings,
) -> PendingPaymentSweeper:
    return PendingPaymentSweeper(session_factory, mpesa_client, reconciler, test_settings)


@pytest_asyncio.fixture
async def client(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    mpesa_client: MpesaClient,
    notifier: RecordingNotifier,
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """Create test HTTP client."""
    app = create_app(
        test_settings,
        session_factory=session_factory,
        mpesa_client=mpesa_client,
        notifier=notifier,
    )
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def make_pending_payment(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Factory inserting a pending payment directly through the repository."""

    async def _make(**overrides: Any) -> Payment:
        values: Dict[str, Any] = {
            "amount": 50,
            "phone_number": "254712345678",
            "plan_name": "Daily 1GB",
            "plan_id": "daily-1gb",
            "payment_type": "plan",
            "merchant_request_id": "29115-34620561-1",
            "checkout_request_id": "ws_CO_191220191020363925",
        }
        values.update(overrides)
        async with session_factory() as db:
            payment = await PaymentRepository(db).create_pending(**values)
            await db.commit()
        return payment

    return _make


@pytest.fixture
def load_payment(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Any]:
    """Read a payment back from the database."""

    async def _load(
        payment_id: Any = None, checkout_request_id: Optional[str] = None
    ) -> Optional[Payment]:
        async with session_factory() as db:
            repository = PaymentRepository(db)
            if payment_id is not None:
                return await repository.get_by_id(payment_id)
            return await repository.get_by_checkout_request_id(checkout_request_id)

    return _load


@pytest.fixture
def stk_callback() -> Callable[..., Dict[str, Any]]:
    """Build a provider-shaped STK callback body."""

    def _build(
        checkout_request_id: Optional[str] = "ws_CO_191220191020363925",
        result_code: Any = 0,
        merchant_request_id: Optional[str] = "29115-34620561-1",
        receipt: Optional[str] = "ABC123",
        amount: Optional[int] = 50,
        phone: Optional[int] = 254712345678,
        result_desc: Optional[str] = None,
    ) -> Dict[str, Any]:
        callback: Dict[str, Any] = {
            "MerchantRequestID": merchant_request_id,
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc
            or (
                "The service request is processed successfully."
                if result_code == 0
                else "Request cancelled by user"
            ),
        }
        if result_code == 0:
            items = []
            if amount is not None:
                items.append({"Name": "Amount", "Value": amount})
            if receipt is not None:
                items.append({"Name": "MpesaReceiptNumber", "Value": receipt})
            items.append({"Name": "TransactionDate", "Value": 20191219102115})
            if phone is not None:
                items.append({"Name": "PhoneNumber", "Value": phone})
            callback["CallbackMetadata"] = {"Item": items}
        return {"Body": {"stkCallback": callback}}

    return _build

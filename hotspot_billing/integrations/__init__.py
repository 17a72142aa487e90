"""Integrations package for external services."""
from .mpesa_client import (
    CircuitBreaker,
    MpesaClient,
    MpesaError,
    MpesaErrorType,
    MpesaTransactionPending,
    StkPushResponse,
    StkQueryResult,
    build_password,
    build_timestamp,
)
from .token_cache import InMemoryTokenCache, RedisTokenCache, TokenCache

__all__ = [
    "CircuitBreaker",
    "InMemoryTokenCache",
    "MpesaClient",
    "MpesaError",
    "MpesaErrorType",
    "MpesaTransactionPending",
    "RedisTokenCache",
    "StkPushResponse",
    "StkQueryResult",
    "TokenCache",
    "build_password",
    "build_timestamp",
]

"""Database package for hotspot billing."""
from .connection import close_db, create_engine, create_session_factory, get_db, init_db
from .models import (
    CALLBACK_PLAN_NAME,
    DIRECT_PAYMENT_PLAN_NAME,
    PAYMENT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    Base,
    CallbackLog,
    GuestUser,
    Payment,
)

__all__ = [
    "Base",
    "CALLBACK_PLAN_NAME",
    "CallbackLog",
    "DIRECT_PAYMENT_PLAN_NAME",
    "GuestUser",
    "PAYMENT_COMPLETED",
    "PAYMENT_FAILED",
    "PAYMENT_PENDING",
    "Payment",
    "close_db",
    "create_engine",
    "create_session_factory",
    "get_db",
    "init_db",
]

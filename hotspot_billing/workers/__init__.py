"""Background workers."""
from .pending_sweeper import PendingPaymentSweeper, start_pending_sweeper

__all__ = ["PendingPaymentSweeper", "start_pending_sweeper"]

"""
Notification fan-out for reconciled payments.

The reconciler calls ``broadcast_payment_update`` once per transition into
``completed``. How snapshots reach subscribers is up to the notifier: the
in-process ``BroadcastNotifier`` feeds per-subscriber queues that the
WebSocket endpoint drains.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Set

import structlog

from hotspot_billing.database.models import Payment

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PaymentSnapshot:
    """Finalized payment state pushed to subscribers."""

    id: str
    status: str
    amount: int
    phone_number: Optional[str]
    receipt_number: Optional[str] = None
    result_desc: Optional[str] = None

    @classmethod
    def from_payment(cls, payment: Payment) -> "PaymentSnapshot":
        return cls(
            id=str(payment.id),
            status=payment.status,
            amount=payment.amount,
            phone_number=payment.phone_number,
            receipt_number=payment.mpesa_receipt_number,
            result_desc=payment.result_desc,
        )

    def to_message(self) -> Dict[str, Any]:
        """Wire form sent to WebSocket subscribers."""
        data = asdict(self)
        return {
            "type": "payment_update",
            "payment": {
                "id": data["id"],
                "status": data["status"],
                "amount": data["amount"],
                "phoneNumber": data["phone_number"],
                "receiptNumber": data["receipt_number"],
                "resultDesc": data["result_desc"],
            },
        }


class PaymentNotifier(ABC):
    """Receives payment snapshots after a successful reconciliation."""

    @abstractmethod
    async def broadcast_payment_update(self, snapshot: PaymentSnapshot) -> None:
        """Deliver a snapshot to interested subscribers."""


class NullNotifier(PaymentNotifier):
    """Notifier that only logs."""

    async def broadcast_payment_update(self, snapshot: PaymentSnapshot) -> None:
        logger.debug("payment_update_not_broadcast", payment_id=snapshot.id)


class BroadcastNotifier(PaymentNotifier):
    """
    In-process fan-out to subscriber queues.

    Each subscriber gets a bounded queue. A full queue drops its oldest
    message so a slow WebSocket client never blocks reconciliation.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._subscribers: Set[asyncio.Queue] = set()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.add(queue)
        logger.info("payment_subscriber_added", subscribers=len(self._subscribers))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)
        logger.info("payment_subscriber_removed", subscribers=len(self._subscribers))

    async def broadcast_payment_update(self, snapshot: PaymentSnapshot) -> None:
        message = snapshot.to_message()
        for queue in list(self._subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.warning("payment_subscriber_lagging", payment_id=snapshot.id)
            queue.put_nowait(message)

        logger.info(
            "payment_update_broadcast",
            payment_id=snapshot.id,
            status=snapshot.status,
            subscribers=len(self._subscribers),
        )

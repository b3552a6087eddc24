import hashlib
import json
import logging
from datetime import datetime, timezone

from app.core.errors import SubmissionFailed
from app.models.order_model import PendingOrder
from app.services.record_store import RecordStore, RecordStoreError

logger = logging.getLogger("market.orders")

ORDERS_COLLECTION = "orders"


def order_key(pending_order: PendingOrder, payment_reference: str) -> str:
    """
    Natural key for an order created from a confirmed payment.
    The same (order, reference) pair always maps to the same record.
    """
    canonical = json.dumps(pending_order.order_payload(), sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(f"{payment_reference}|{canonical}".encode("utf-8")).hexdigest()
    return f"ord_{digest[:32]}"


class OrderSubmitter:
    """Turns a staged order plus a confirmed payment into an order record."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def submit(self, pending_order: PendingOrder, payment_reference: str, user_id: str) -> str:
        key = order_key(pending_order, payment_reference)
        now = datetime.now(timezone.utc).isoformat()

        record = {
            **pending_order.order_payload(),
            "userId": user_id,
            "status": "pending",
            "paymentStatus": "completed",
            "paymentReference": payment_reference,
            "orderKey": key,
            "createdAt": now,
        }

        logger.info(f"Submitting order | user={user_id} | reference={payment_reference} | key={key}")
        try:
            created = await self.store.create(ORDERS_COLLECTION, record, key=key)
        except RecordStoreError as e:
            logger.error(f"Order submission failed | reference={payment_reference}: {e}")
            raise SubmissionFailed(
                "Your payment was received but the order could not be saved yet",
                {"reference": payment_reference},
            ) from e

        order_id = created.get("id") or created.get("_id") or key
        logger.info(f"Order created | id={order_id} | reference={payment_reference}")
        return str(order_id)

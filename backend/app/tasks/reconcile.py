# app/tasks/reconcile.py
"""
Second chance for orders whose payment went through but whose creation
failed. The staged order carries the payment reference in that case.
"""

import logging
from typing import Any, Dict

from app.services.gateway import PaymentGatewayClient
from app.services.order_submitter import OrderSubmitter
from app.services.pending_order_store import PendingOrderStore
from app.services.record_store import RecordStore

logger = logging.getLogger("market.reconcile")


async def retry_pending_order(
    user_id: str,
    gateway: PaymentGatewayClient,
    pending_orders: PendingOrderStore,
    record_store: RecordStore,
) -> Dict[str, Any]:
    pending = await pending_orders.load()
    if pending is None:
        return {"status": "nothing_to_do"}

    reference = pending.payment_reference
    if not reference:
        # staged for a payment that was never confirmed
        logger.info(f"Staged order for {user_id} has no confirmed payment, leaving it")
        return {"status": "awaiting_payment"}

    logger.info(f"Retrying order creation | user={user_id} | reference={reference}")

    # 1. the payments backend may create the order itself
    order = await gateway.verify(reference, pending.order_payload())
    if order:
        order_id = str(order.get("id") or order.get("_id") or "")
        await pending_orders.clear(expected=pending)
        logger.info(f"Order created by payment verification | reference={reference} | id={order_id}")
        return {"status": "created", "order_id": order_id or None, "via": "verify"}

    # 2. direct creation, idempotent on (order, reference)
    order_id = await OrderSubmitter(record_store).submit(pending, reference, user_id)
    await pending_orders.clear(expected=pending)
    return {"status": "created", "order_id": order_id, "via": "orders"}

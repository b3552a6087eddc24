import asyncio
import logging
from typing import Optional

from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.errors import GatewayRejected, SubmissionFailed, NetworkError
from app.services.gateway import PaymentGatewayClient
from app.services.pending_order_store import PendingOrderStoreError, pending_order_store_for
from app.services.record_store import ApiRecordStore, FirestoreRecordStore
from app.tasks.reconcile import retry_pending_order

logger = logging.getLogger("market.reconcile")


async def _service_token() -> Optional[str]:
    return settings.PAYMENT_SERVICE_TOKEN


@celery_app.task(
    bind=True,
    max_retries=5,
    # Exponential backoff: 60s, 120s, 240s...
    autoretry_for=(SubmissionFailed, NetworkError, PendingOrderStoreError),
    retry_backoff=60,
    retry_jitter=True,
)
def retry_pending_order_task(self, user_id: str):
    """
    Wrapper to run the async retry in a sync Celery worker.
    """
    if settings.ORDER_STORE_BACKEND == "api":
        record_store = ApiRecordStore(_service_token)
    else:
        record_store = FirestoreRecordStore()

    try:
        return asyncio.run(retry_pending_order(
            user_id,
            gateway=PaymentGatewayClient(_service_token),
            pending_orders=pending_order_store_for(user_id),
            record_store=record_store,
        ))
    except GatewayRejected as exc:
        logger.error(f"Verification refused for {user_id}, not retrying: {exc.message}")
        raise

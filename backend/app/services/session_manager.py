import asyncio
import logging
from typing import Dict, Optional

import httpx

from app.core.config import settings
from app.core.errors import PaymentInProgress
from app.models.payment_model import Customer, ResumePaymentBody, SessionState, StartPaymentBody
from app.models.user_model import User
from app.services.gateway import CredentialProvider, PaymentGatewayClient
from app.services.order_submitter import OrderSubmitter
from app.services.payment_session import PaymentSession
from app.services.pending_order_store import PendingOrderStore, pending_order_store_for
from app.services.record_store import ApiRecordStore, FirestoreRecordStore, RecordStore

logger = logging.getLogger("market.payments")


class SessionManager:
    """
    Keeps at most one live PaymentSession per user and wires its collaborators.

    The user's latest bearer token is remembered here and read back each time
    the gateway needs it, so a token refreshed by a later request is picked up
    by an already running session. Finished sessions stay readable for
    ``retention_seconds`` and are then dropped.
    """

    def __init__(
        self,
        record_store: Optional[RecordStore] = None,
        pending_dir: Optional[str] = None,
        poll_interval: Optional[float] = None,
        deadline_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retention_seconds: Optional[float] = None,
    ) -> None:
        self._record_store = record_store
        self.pending_dir = pending_dir
        self.poll_interval = poll_interval
        self.deadline_seconds = deadline_seconds
        self.transport = transport
        self.retention_seconds = (
            retention_seconds if retention_seconds is not None else settings.PAYMENT_SESSION_RETENTION_SECONDS
        )

        self._sessions: Dict[str, PaymentSession] = {}
        self._tokens: Dict[str, str] = {}

    # ----- credentials -----
    def remember_token(self, user_id: str, token: Optional[str]) -> None:
        if token:
            self._tokens[user_id] = token

    def forget_token(self, user_id: str) -> None:
        self._tokens.pop(user_id, None)

    def credentials_for(self, user_id: str) -> CredentialProvider:
        async def provider() -> Optional[str]:
            return self._tokens.get(user_id)
        return provider

    # ----- collaborators -----
    def gateway_for(self, user_id: str) -> PaymentGatewayClient:
        return PaymentGatewayClient(self.credentials_for(user_id), transport=self.transport)

    def record_store_for(self, user_id: str) -> RecordStore:
        if self._record_store is not None:
            return self._record_store
        if settings.ORDER_STORE_BACKEND == "api":
            return ApiRecordStore(self.credentials_for(user_id), transport=self.transport)
        return FirestoreRecordStore()

    def pending_orders_for(self, user_id: str) -> PendingOrderStore:
        return pending_order_store_for(user_id, base_dir=self.pending_dir)

    # ----- sessions -----
    def _queue_order_retry(self, user_id: str, reference: str) -> None:
        if not settings.ORDER_RETRY_ENABLED:
            return
        try:
            from app.tasks.reconcile_celery import retry_pending_order_task
            retry_pending_order_task.apply_async(args=[user_id], countdown=60)
            logger.info(f"Order retry queued via Celery | user={user_id} | reference={reference}")
        except Exception as e:
            logger.error(f"Order retry task failed to queue: {e}", exc_info=True)

    def _session_finished(self, session: PaymentSession) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._forget(session)
            return
        loop.call_later(self.retention_seconds, self._forget, session)

    def _forget(self, session: PaymentSession) -> None:
        user_id = session.user_id
        if self._sessions.get(user_id) is session:
            del self._sessions[user_id]
            self._tokens.pop(user_id, None)
            logger.debug(f"Dropped finished payment session for {user_id} | order={session.order_id}")

    def current(self, user_id: str) -> Optional[PaymentSession]:
        return self._sessions.get(user_id)

    def _new_session(self, user: User, amount: int, order_id: str, phone: str, **kwargs) -> PaymentSession:
        previous = self._sessions.get(user.id)
        if previous is not None and previous.state is SessionState.RECONCILING:
            # its order is being created from the shared staged-order slot
            raise PaymentInProgress(
                "Your previous payment is being finalized, please wait a moment",
                {"reference": previous.reference},
            )
        if previous is not None and not previous.state.is_terminal:
            logger.info(f"Replacing live payment session for {user.id} | order={previous.order_id}")
            previous.cancel()

        customer = Customer(
            id=user.id,
            name=user.customer_name(),
            email=user.email,
            phone=phone,
            address=user.address,
            city=user.city,
            country=user.country or settings.DEFAULT_COUNTRY,
        )
        session = PaymentSession(
            amount=amount,
            order_id=order_id,
            customer=customer,
            gateway=self.gateway_for(user.id),
            pending_orders=self.pending_orders_for(user.id),
            submitter=OrderSubmitter(self.record_store_for(user.id)),
            poll_interval=self.poll_interval,
            deadline_seconds=self.deadline_seconds,
            on_pending_submission=self._queue_order_retry,
            on_finished=self._session_finished,
            **kwargs,
        )
        self._sessions[user.id] = session
        return session

    async def start(self, user: User, body: StartPaymentBody) -> PaymentSession:
        session = self._new_session(
            user,
            amount=body.amount,
            order_id=body.order_id,
            phone=body.phone,
            vendor_id=body.vendor_id,
            description=body.description,
            payment_method=body.pending_order.payment_method if body.pending_order else None,
        )
        await session.start(pending_order=body.pending_order)
        return session

    async def resume(self, user: User, body: ResumePaymentBody) -> PaymentSession:
        staged = await self.pending_orders_for(user.id).load()
        session = self._new_session(
            user,
            amount=staged.total_amount if staged else 0,
            order_id=body.order_id,
            phone=user.phone or "",
        )
        await session.resume(body.reference, body.ussd_code)
        return session

    def cancel(self, user_id: str) -> Optional[PaymentSession]:
        session = self._sessions.get(user_id)
        if session is not None:
            session.cancel()
        return session

    def shutdown(self) -> None:
        for session in list(self._sessions.values()):
            session.cancel()
        self._sessions.clear()


session_manager = SessionManager()


def get_session_manager() -> SessionManager:
    return session_manager

"""
Mobile-money payment session.

One session follows one payment from initiation to a terminal state:

    IDLE → INITIATING → AWAITING_CONFIRMATION → RECONCILING → CONFIRMED
                     ↘ FAILED                 ↘ FAILED / TIMED_OUT

While awaiting confirmation the session polls the gateway on a fixed
interval, never with more than one status query in flight, until a terminal
status arrives or the deadline passes. A SUCCESSFUL status is turned into an
order exactly once; when that fails the payment is still reported as
confirmed, flagged ``pending_submission``, and the staged order is kept.
Reconciliation runs in a task owned by the session, so it completes even
when the request that triggered it goes away.

Sessions are single-owner objects running on the asyncio loop; they are not
meant to be shared between concurrent callers except through ``check_now``
and ``cancel``.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from app.core.config import settings
from app.core.errors import GatewayError, PaymentError, StagingFailed, SubmissionFailed, ValidationError
from app.models.order_model import PendingOrder
from app.models.payment_model import (
    Customer,
    Operator,
    PaymentRequest,
    PaymentStatus,
    SessionError,
    SessionSnapshot,
    SessionState,
)
from app.services.gateway import PaymentGatewayClient
from app.services.operator import detect, normalize_phone, operator_label
from app.services.order_submitter import OrderSubmitter
from app.services.pending_order_store import PendingOrderStore, PendingOrderStoreError
from app.services.scheduler import Scheduler

logger = logging.getLogger("market.payments")

MESSAGES = {
    "awaiting": "Confirm the payment of {amount} XAF on your phone ({operator}).",
    "still_pending": "Payment is still pending. Please complete the transaction on your mobile device.",
    "success": "Payment confirmed. Your order has been placed.",
    "success_no_order": "Payment confirmed.",
    "pending_submission": (
        "Your payment was received. We are finalizing your order and will confirm it shortly."
    ),
    "timeout": "Payment verification timeout. Please check your transaction status.",
    "cancelled": (
        "Payment checking stopped. If you approved the payment on your phone, "
        "you can check its status again."
    ),
}


class PaymentSession:
    def __init__(
        self,
        *,
        amount: int,
        order_id: str,
        customer: Customer,
        gateway: PaymentGatewayClient,
        pending_orders: PendingOrderStore,
        submitter: OrderSubmitter,
        vendor_id: Optional[str] = None,
        description: Optional[str] = None,
        payment_method: Optional[str] = None,
        poll_interval: Optional[float] = None,
        deadline_seconds: Optional[float] = None,
        scheduler: Optional[Scheduler] = None,
        on_pending_submission: Optional[Callable[[str, str], None]] = None,
        on_finished: Optional[Callable[["PaymentSession"], None]] = None,
    ) -> None:
        self.amount = amount
        self.order_id = order_id
        self.customer = customer
        self.vendor_id = vendor_id
        self.description = description
        self.payment_method = payment_method

        self.gateway = gateway
        self.pending_orders = pending_orders
        self.submitter = submitter

        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.PAYMENT_POLL_INTERVAL_SECONDS
        )
        self.deadline_seconds = (
            deadline_seconds if deadline_seconds is not None else settings.PAYMENT_DEADLINE_SECONDS
        )
        self.scheduler = scheduler or Scheduler()
        self.on_pending_submission = on_pending_submission
        self.on_finished = on_finished

        # aggregate state
        self.state = SessionState.IDLE
        self.operator = detect(customer.phone)
        self.request: Optional[PaymentRequest] = None
        self.reference: Optional[str] = None
        self.ussd_code: Optional[str] = None
        self.status: Optional[PaymentStatus] = None
        self.poll_attempts = 0
        self.started_at: Optional[datetime] = None
        self.deadline: Optional[datetime] = None
        self.created_order_id: Optional[str] = None
        self.pending_submission = False
        self.last_error: Optional[SessionError] = None
        self.message: Optional[str] = None
        self.reconcile_entries = 0

        self._deadline_at: Optional[float] = None
        self._poll_lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._reconcile_task: Optional[asyncio.Task] = None

    @property
    def user_id(self) -> str:
        return self.customer.id

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def start(self, pending_order: Optional[PendingOrder] = None) -> SessionSnapshot:
        """
        Validate inputs, stage the order and ask the gateway to collect the
        payment. Returns once polling has begun (or the session failed).
        """
        self._require_idle()
        self._set_state(SessionState.INITIATING)

        try:
            self.request = self._build_request()
        except ValidationError as e:
            logger.info(f"Payment refused locally | order={self.order_id} | {e.message}")
            return self._fail(e)

        if pending_order is not None:
            try:
                await self.pending_orders.save(pending_order)
            except PendingOrderStoreError as e:
                logger.error(f"Could not stage order | order={self.order_id} | {e}")
                return self._fail(StagingFailed("Could not save your order, please try again"))

        try:
            initiation = await self.gateway.initiate(self.request)
        except GatewayError as e:
            logger.warning(f"Payment initiation failed | order={self.order_id} | {e.code}: {e.message}")
            return self._fail(e)

        self.reference = initiation.reference
        self.ussd_code = initiation.ussd_code

        if self.state is not SessionState.INITIATING:
            # cancelled while the gateway call was in flight
            logger.info(f"Session closed during initiation | reference={self.reference}")
            return self.snapshot()

        self._await_confirmation()
        return self.snapshot()

    async def resume(self, reference: str, ussd_code: Optional[str] = None) -> SessionSnapshot:
        """Start polling a reference that an earlier session already initiated."""
        self._require_idle()
        self.reference = reference
        self.ussd_code = ussd_code
        logger.info(f"Resuming payment | order={self.order_id} | reference={reference}")
        self._await_confirmation()
        return self.snapshot()

    async def check_now(self) -> SessionSnapshot:
        """
        One immediate status query, outside the regular schedule.
        Gateway errors are raised to the caller; the session state is unchanged.
        """
        if self.state is SessionState.AWAITING_CONFIRMATION:
            await self._poll_once(manual=True)
            if self.state is SessionState.AWAITING_CONFIRMATION:
                self.message = MESSAGES["still_pending"]
        return self.snapshot()

    def cancel(self) -> SessionSnapshot:
        """
        Stop waiting for this payment. The gateway payment itself is not
        rescinded; a new session can ``resume`` the same reference.
        """
        if self.state.is_terminal:
            return self.snapshot()
        if self.state is SessionState.RECONCILING:
            # payment already captured, the order must still be created
            logger.info(f"Cancel ignored while reconciling | reference={self.reference}")
            return self.snapshot()

        logger.info(f"Payment session cancelled | order={self.order_id} | reference={self.reference}")
        self._finish(SessionState.CANCELLED)
        return self.snapshot()

    async def wait(self) -> SessionSnapshot:
        await self._done.wait()
        return self.snapshot()

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            state=self.state,
            order_id=self.order_id,
            reference=self.reference,
            ussd_code=self.ussd_code,
            operator=self.operator,
            status=self.status,
            poll_attempts=self.poll_attempts,
            started_at=self.started_at,
            deadline=self.deadline,
            created_order_id=self.created_order_id,
            pending_submission=self.pending_submission,
            error=self.last_error,
            outcome=self._outcome(),
            message=self.message,
        )

    # ------------------------------------------------------------------
    # Initiation
    # ------------------------------------------------------------------
    def _require_idle(self) -> None:
        if self.state is not SessionState.IDLE:
            raise RuntimeError(f"payment session already {self.state.value}")

    def _build_request(self) -> PaymentRequest:
        if isinstance(self.amount, bool) or not isinstance(self.amount, int) or self.amount <= 0:
            raise ValidationError("Amount must be a positive number of XAF", {"amount": self.amount})

        # no network call for a number we can't route
        if self.operator is Operator.UNKNOWN:
            raise ValidationError(
                "invalid operator: enter an MTN or Orange mobile money number",
                {"phone": self.customer.phone},
            )

        phone = normalize_phone(self.customer.phone)
        return PaymentRequest(
            amount=self.amount,
            order_id=self.order_id,
            vendor_id=self.vendor_id,
            customer=self.customer.model_copy(update={"phone": phone}),
            operator=self.operator,
            description=self.description or f"Payment for order #{self.order_id}",
            payment_method=self.payment_method,
        )

    def _await_confirmation(self) -> None:
        self._set_state(SessionState.AWAITING_CONFIRMATION)

        self.started_at = datetime.now(timezone.utc)
        self.deadline = self.started_at + timedelta(seconds=self.deadline_seconds)
        self._deadline_at = self.scheduler.now() + self.deadline_seconds
        self.message = MESSAGES["awaiting"].format(
            amount=self.amount, operator=operator_label(self.operator)
        )

        self.scheduler.call_later(self.deadline_seconds, self._time_out)
        self.scheduler.spawn(self._poll_loop(), name=f"payment-poll-{self.reference}")

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------
    async def _poll_loop(self) -> None:
        token = self.scheduler.token
        while not token.cancelled and self.state is SessionState.AWAITING_CONFIRMATION:
            await asyncio.sleep(self.poll_interval)
            if token.cancelled:
                break
            await self._poll_once(manual=False)

    async def _poll_once(self, manual: bool) -> None:
        # the lock keeps status queries strictly one at a time
        async with self._poll_lock:
            if self.state is not SessionState.AWAITING_CONFIRMATION:
                return
            if self.scheduler.now() >= self._deadline_at:
                self._time_out()
                return

            self.poll_attempts += 1
            try:
                status = await self.gateway.query_status(self.reference)
            except GatewayError as e:
                if manual:
                    raise
                logger.warning(
                    f"Status poll {self.poll_attempts} failed | reference={self.reference} | {e.code}: {e.message}"
                )
                return

            await self._apply_status(status, manual)

    async def _apply_status(self, status: PaymentStatus, manual: bool) -> None:
        if self.state is not SessionState.AWAITING_CONFIRMATION:
            logger.info(
                f"Discarding late status {status.value} | reference={self.reference} | state={self.state.value}"
            )
            return

        self.status = status
        logger.debug(
            f"Poll {self.poll_attempts}{' (manual)' if manual else ''} | reference={self.reference} | {status.value}"
        )

        if status is PaymentStatus.PENDING:
            return
        if status is PaymentStatus.SUCCESSFUL:
            await self._start_reconcile()
            return

        self._fail_with(SessionError(
            code=f"PAYMENT_{status.value}",
            message=f"Payment {status.value.lower()}",
        ))

    def _time_out(self) -> None:
        if self.state is not SessionState.AWAITING_CONFIRMATION:
            return
        logger.warning(
            f"Payment not confirmed within {self.deadline_seconds:.0f}s | reference={self.reference} "
            f"| polls={self.poll_attempts}"
        )
        self._finish(SessionState.TIMED_OUT)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    async def _start_reconcile(self) -> None:
        self._set_state(SessionState.RECONCILING)
        # owned by the session so a cancelled caller can't abandon it halfway
        self._reconcile_task = asyncio.get_running_loop().create_task(
            self._reconcile(), name=f"payment-reconcile-{self.reference}"
        )
        await asyncio.shield(self._reconcile_task)

    async def _reconcile(self) -> None:
        self.reconcile_entries += 1
        # stop the clock: no more polls, no timeout once money is captured
        self.scheduler.shutdown()

        try:
            pending = await self.pending_orders.load()
        except PendingOrderStoreError as e:
            logger.error(f"Could not read staged order | reference={self.reference} | {e}")
            await self._keep_for_retry(
                None, SubmissionFailed("Staged order could not be read", {"reference": self.reference})
            )
            self._finish(SessionState.CONFIRMED)
            return

        if pending is None:
            logger.warning(
                f"Payment confirmed with no staged order | reference={self.reference} | order={self.order_id}"
            )
            self._finish(SessionState.CONFIRMED)
            return

        try:
            self.created_order_id = await self.submitter.submit(pending, self.reference, self.user_id)
        except asyncio.CancelledError:
            logger.error(f"Order creation interrupted | reference={self.reference}")
            await self._keep_for_retry(
                pending, SubmissionFailed("Order creation was interrupted", {"reference": self.reference})
            )
            self._finish(SessionState.CONFIRMED)
            raise
        except Exception as e:
            if not isinstance(e, SubmissionFailed):
                logger.exception(f"Unexpected error creating order | reference={self.reference}")
                e = SubmissionFailed(str(e) or "Order creation failed", {"reference": self.reference})
            await self._keep_for_retry(pending, e)
            self._finish(SessionState.CONFIRMED)
            return

        try:
            await self.pending_orders.clear(expected=pending)
        except PendingOrderStoreError:
            # the order exists; a stale slot without a reference is never resubmitted
            logger.exception(f"Could not clear staged order | reference={self.reference}")
        logger.info(
            f"Payment reconciled | reference={self.reference} | created_order={self.created_order_id}"
        )
        self._finish(SessionState.CONFIRMED)

    async def _keep_for_retry(self, pending: Optional[PendingOrder], error: SubmissionFailed) -> None:
        self.pending_submission = True
        self.last_error = _session_error(error)
        logger.error(
            f"Payment captured but order not created | reference={self.reference} | user={self.user_id}"
        )

        kept = False
        if pending is not None:
            try:
                kept = await self.pending_orders.annotate(pending, self.reference)
                if not kept:
                    logger.error(f"Staged order for {self.reference} not retained; slot holds a newer order")
            except PendingOrderStoreError:
                logger.exception(f"Could not annotate staged order with reference {self.reference}")

        if kept and self.on_pending_submission is not None:
            self.on_pending_submission(self.user_id, self.reference)

    # ------------------------------------------------------------------
    # State helpers
    # ------------------------------------------------------------------
    def _set_state(self, state: SessionState) -> None:
        logger.debug(f"Session {self.order_id}: {self.state.value} → {state.value}")
        self.state = state

    def _fail(self, error: PaymentError) -> SessionSnapshot:
        self._fail_with(_session_error(error))
        return self.snapshot()

    def _fail_with(self, error: SessionError) -> None:
        self.last_error = error
        self._finish(SessionState.FAILED)

    def _finish(self, state: SessionState) -> None:
        self._set_state(state)
        self.scheduler.shutdown()
        self.message = self._final_message()
        self._done.set()
        if self.on_finished is not None:
            self.on_finished(self)

    def _outcome(self) -> Optional[str]:
        if self.state is SessionState.CONFIRMED:
            return "pending_submission" if self.pending_submission else "success"
        if self.state is SessionState.FAILED:
            return "failed"
        if self.state is SessionState.TIMED_OUT:
            return "timeout"
        if self.state is SessionState.CANCELLED:
            return "cancelled"
        return None

    def _final_message(self) -> str:
        outcome = self._outcome()
        if outcome == "failed":
            return self.last_error.message if self.last_error else "Payment failed"
        if outcome == "success" and self.created_order_id is None:
            return MESSAGES["success_no_order"]
        return MESSAGES[outcome]


def _session_error(error: PaymentError) -> SessionError:
    return SessionError(code=error.code, message=error.message, retryable=error.retryable)

# routers/payment_router.py → mobile-money checkout (MTN / Orange)
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
import logging

from app.core.auth import get_bearer_token, get_current_user
from app.core.errors import GatewayError
from app.models.payment_model import (
    ResumePaymentBody,
    SessionSnapshot,
    SessionState,
    StartPaymentBody,
)
from app.models.user_model import User
from app.services.operator import detect, operator_label
from app.services.session_manager import SessionManager, get_session_manager
from app.tasks.reconcile import retry_pending_order

router = APIRouter(prefix="/payments", tags=["Payments"])
logger = logging.getLogger("market.payments")


def _snapshot_response(snapshot: SessionSnapshot, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=snapshot.model_dump(mode="json"))


# ========================================
# OPERATOR LOOKUP (form hint)
# ========================================
@router.get("/operator")
async def lookup_operator(phone: str):
    operator = detect(phone)
    return {"operator": operator.value, "label": operator_label(operator)}


# ========================================
# START / RESUME
# ========================================
@router.post("/sessions", status_code=status.HTTP_201_CREATED)
async def start_payment(
    body: StartPaymentBody,
    user: User = Depends(get_current_user),
    token: str = Depends(get_bearer_token),
    manager: SessionManager = Depends(get_session_manager),
):
    manager.remember_token(user.id, token)
    session = await manager.start(user, body)
    snapshot = session.snapshot()

    if snapshot.state is SessionState.FAILED:
        error = snapshot.error
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
        if error and error.code == "UNAUTHENTICATED":
            code = status.HTTP_401_UNAUTHORIZED
        elif error and error.code == "STAGING_FAILED":
            code = status.HTTP_503_SERVICE_UNAVAILABLE
        elif error and error.code != "VALIDATION_ERROR":
            code = status.HTTP_502_BAD_GATEWAY
        return _snapshot_response(snapshot, code)

    return _snapshot_response(snapshot, status.HTTP_201_CREATED)


@router.post("/sessions/resume", status_code=status.HTTP_201_CREATED)
async def resume_payment(
    body: ResumePaymentBody,
    user: User = Depends(get_current_user),
    token: str = Depends(get_bearer_token),
    manager: SessionManager = Depends(get_session_manager),
):
    manager.remember_token(user.id, token)
    session = await manager.resume(user, body)
    return _snapshot_response(session.snapshot(), status.HTTP_201_CREATED)


# ========================================
# CURRENT SESSION
# ========================================
def _current_or_404(manager: SessionManager, user: User):
    session = manager.current(user.id)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No payment in progress")
    return session


@router.get("/sessions/current")
async def current_payment(
    user: User = Depends(get_current_user),
    token: str = Depends(get_bearer_token),
    manager: SessionManager = Depends(get_session_manager),
):
    manager.remember_token(user.id, token)
    return _snapshot_response(_current_or_404(manager, user).snapshot())


@router.post("/sessions/current/check")
async def check_payment(
    user: User = Depends(get_current_user),
    token: str = Depends(get_bearer_token),
    manager: SessionManager = Depends(get_session_manager),
):
    manager.remember_token(user.id, token)
    session = _current_or_404(manager, user)
    try:
        snapshot = await session.check_now()
    except GatewayError as e:
        logger.warning(f"Manual status check failed | user={user.id} | {e.code}: {e.message}")
        raise
    return _snapshot_response(snapshot)


@router.delete("/sessions/current")
async def cancel_payment(
    user: User = Depends(get_current_user),
    manager: SessionManager = Depends(get_session_manager),
):
    session = _current_or_404(manager, user)
    return _snapshot_response(session.cancel())


# ========================================
# RETAINED ORDER RETRY
# ========================================
@router.post("/pending-order/retry")
async def retry_pending(
    user: User = Depends(get_current_user),
    token: str = Depends(get_bearer_token),
    manager: SessionManager = Depends(get_session_manager),
):
    manager.remember_token(user.id, token)
    result = await retry_pending_order(
        user.id,
        gateway=manager.gateway_for(user.id),
        pending_orders=manager.pending_orders_for(user.id),
        record_store=manager.record_store_for(user.id),
    )
    return result

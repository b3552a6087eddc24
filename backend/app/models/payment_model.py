# models/payment_model.py
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, Literal
from datetime import datetime

from app.models.order_model import PendingOrder


class Operator(str, Enum):
    MTN = "MTN"
    ORANGE = "ORANGE"
    UNKNOWN = "UNKNOWN"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESSFUL = "SUCCESSFUL"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class SessionState(str, Enum):
    IDLE = "idle"
    INITIATING = "initiating"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    RECONCILING = "reconciling"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    SessionState.CONFIRMED,
    SessionState.FAILED,
    SessionState.TIMED_OUT,
    SessionState.CANCELLED,
})


# User-facing message category, one per terminal state
Outcome = Literal["success", "pending_submission", "failed", "timeout", "cancelled"]


class Customer(BaseModel):
    """Payer details forwarded to the gateway."""
    id: str
    name: str
    email: str = ""
    phone: str                      # normalized, 237-prefixed
    address: str = ""
    city: str = ""
    country: str = "CM"


class PaymentRequest(BaseModel):
    """One mobile-money collection request (XAF has no minor unit)."""
    amount: int
    order_id: str
    vendor_id: Optional[str] = None
    customer: Customer
    operator: Operator
    description: str = ""
    payment_method: Optional[str] = None

    @field_validator("amount")
    @classmethod
    def amount_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("amount must be a positive integer")
        return v


class PaymentInitiation(BaseModel):
    reference: str
    ussd_code: Optional[str] = None


class SessionError(BaseModel):
    code: str
    message: str
    retryable: bool = False


class SessionSnapshot(BaseModel):
    """Read-only view of a payment session handed to callers."""
    model_config = ConfigDict(frozen=True)

    state: SessionState
    order_id: Optional[str] = None          # external order id known to the page
    reference: Optional[str] = None
    ussd_code: Optional[str] = None
    operator: Operator = Operator.UNKNOWN
    status: Optional[PaymentStatus] = None
    poll_attempts: int = 0
    started_at: Optional[datetime] = None
    deadline: Optional[datetime] = None
    created_order_id: Optional[str] = None
    pending_submission: bool = False
    error: Optional[SessionError] = None
    outcome: Optional[Outcome] = None
    message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


class StartPaymentBody(BaseModel):
    """Body for POST /payments/sessions."""
    amount: int = Field(..., description="Amount in XAF")
    order_id: str
    vendor_id: Optional[str] = None
    phone: str
    description: Optional[str] = None
    pending_order: Optional[PendingOrder] = None


class ResumePaymentBody(BaseModel):
    reference: str
    order_id: str
    ussd_code: Optional[str] = None


import logging
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from app.core.config import settings
from app.core.errors import GatewayRejected, NetworkError, Unauthenticated
from app.models.payment_model import (
    PaymentInitiation,
    PaymentRequest,
    PaymentStatus,
)
from app.services.operator import payment_method_for

logger = logging.getLogger("market.gateway")

CredentialProvider = Callable[[], Awaitable[Optional[str]]]


class PaymentGatewayClient:
    """
    Thin client for the payments backend that fronts the mobile-money gateway.

    Every call asks ``credential_provider`` for a bearer token right before
    it goes out; tokens are never kept between calls. The client makes no
    attempt to deduplicate status queries.
    """

    def __init__(
        self,
        credential_provider: CredentialProvider,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credential_provider = credential_provider
        self.base_url = (base_url or settings.PAYMENT_API_URL).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.PAYMENT_HTTP_TIMEOUT
        self.transport = transport

    # ----- helpers -----
    async def _headers(self) -> Dict[str, str]:
        token = await self.credential_provider()
        if not token:
            raise Unauthenticated("Authentication required")
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def _send(self, method: str, path: str, json: Optional[dict] = None) -> Dict[str, Any]:
        headers = await self._headers()
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.TransportError as e:
            logger.warning(f"[Gateway] {method} {path} transport error: {e!r}")
            raise NetworkError(f"Could not reach the payment service: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.status_code in (401, 403):
            raise Unauthenticated(_message(body) or "Authentication required")

        if response.status_code >= 400:
            message = _message(body)
            logger.error(f"[Gateway] {method} {path} → {response.status_code} | {response.text[:300]}")
            if message:
                raise GatewayRejected(message, {"status_code": response.status_code})
            raise NetworkError(f"Payment service error ({response.status_code})")

        if not isinstance(body, dict):
            raise NetworkError("Unreadable response from the payment service")

        if not body.get("success"):
            raise GatewayRejected(_message(body) or "Payment request was rejected")

        return body.get("data") or {}

    # ----- main APIs -----
    async def initiate(self, req: PaymentRequest) -> PaymentInitiation:
        """POST /api/payments/initialize → reference (+ optional USSD hint)."""
        payload = {
            "amount": req.amount,
            "customer": req.customer.model_dump(),
            "description": req.description or f"Payment for order #{req.order_id}",
            "metadata": {
                "order_id": req.order_id,
                "payment_method": req.payment_method or payment_method_for(req.operator),
                "operator": req.operator.value,
            },
            "vendor_id": req.vendor_id,
        }

        logger.info(
            f"[Gateway] Initiating | order={req.order_id} | amount={req.amount} XAF | operator={req.operator.value}"
        )
        data = await self._send("POST", "/api/payments/initialize", json=payload)

        reference = data.get("reference")
        if not reference:
            raise GatewayRejected("Payment service did not return a reference")

        logger.info(f"[Gateway] Initiated | order={req.order_id} | reference={reference}")
        return PaymentInitiation(reference=str(reference), ussd_code=data.get("ussd_code"))

    async def query_status(self, reference: str) -> PaymentStatus:
        """GET /api/payments/status/{reference}"""
        data = await self._send("GET", f"/api/payments/status/{reference}")
        raw = str(data.get("status", "")).upper()
        try:
            status = PaymentStatus(raw)
        except ValueError:
            raise GatewayRejected(f"Unexpected payment status: {raw or 'empty'}")
        logger.debug(f"[Gateway] Status | reference={reference} | status={status.value}")
        return status

    async def verify(self, reference: str, order_data: Optional[dict] = None) -> Optional[dict]:
        """
        POST /api/payments/verify.
        Returns the order the backend created for this payment, if any.
        """
        payload: Dict[str, Any] = {"reference": reference}
        if order_data is not None:
            payload["orderData"] = order_data
        data = await self._send("POST", "/api/payments/verify", json=payload)
        return data.get("order") or None


def _message(body: Any) -> Optional[str]:
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if isinstance(message, str) and message:
            return message
    return None

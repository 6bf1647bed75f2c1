"""Stripe REST client used for card charges, refunds and stored customers.

Requests are form-encoded POSTs with bearer auth. Transport errors, 429 and
5xx responses are retried with exponential backoff; card errors (4xx) come
back as a failed ``GatewayResult`` so callers can record the decline.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging

import httpx
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_exponential

from orca.core.config import settings
from orca.core.exceptions import ConfigurationError, handle_external_service_error

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

REFUND_REASON_MAP = {
    "DUPLICATE_PAYMENT": "duplicate",
}


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def from_cents(amount: int) -> float:
    return round(amount / 100, 2)


@dataclass
class GatewayResult:
    success: bool
    status: Optional[str] = None
    transaction_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class RetryableGatewayResponse(Exception):
    """Raised internally for responses worth another attempt"""

    def __init__(self, response: httpx.Response):
        self.response = response
        super().__init__(f"Gateway responded {response.status_code}")


def _flatten(data: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    flat = {}
    for key, value in data.items():
        if value is None:
            continue
        name = f"{prefix}[{key}]" if prefix else key
        if isinstance(value, dict):
            flat.update(_flatten(value, name))
        elif isinstance(value, bool):
            flat[name] = "true" if value else "false"
        else:
            flat[name] = str(value)
    return flat


class StripeGateway:
    """Thin async wrapper over the Stripe v1 API"""

    name = "STRIPE"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        currency: Optional[str] = None,
        max_attempts: Optional[int] = None,
        backoff_multiplier: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.STRIPE_SECRET_KEY
        self.base_url = (base_url or settings.STRIPE_API_BASE).rstrip("/")
        self.currency = currency or settings.DEFAULT_CURRENCY
        self.max_attempts = max_attempts or settings.STRIPE_MAX_ATTEMPTS
        self.backoff_multiplier = backoff_multiplier
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.AsyncClient:
        if not self.configured:
            raise ConfigurationError("Stripe is not configured", error_code="GATEWAY_NOT_CONFIGURED")
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=settings.STRIPE_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def _post(self, path: str, data: Dict[str, Any], idempotency_key: Optional[str] = None) -> httpx.Response:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        async with self._client() as client:
            try:
                async for attempt in AsyncRetrying(
                    stop=stop_after_attempt(self.max_attempts),
                    wait=wait_exponential(multiplier=self.backoff_multiplier, max=8),
                    retry=retry_if_exception_type((httpx.TransportError, RetryableGatewayResponse)),
                ):
                    with attempt:
                        if attempt.retry_state.attempt_number > 1:
                            logger.warning(f"Retrying Stripe POST {path} (attempt {attempt.retry_state.attempt_number})")
                        response = await client.post(path, data=_flatten(data), headers=headers)
                        if response.status_code in RETRYABLE_STATUS_CODES:
                            raise RetryableGatewayResponse(response)
                        return response
            except RetryError as e:
                raise handle_external_service_error(e.last_attempt.exception(), "stripe", path) from e

    @staticmethod
    def _error_result(response: httpx.Response) -> GatewayResult:
        body = response.json() if response.content else {}
        error = body.get("error", {})
        intent = error.get("payment_intent") or {}
        return GatewayResult(
            success=False,
            status=intent.get("status"),
            transaction_id=intent.get("id"),
            error=error.get("message") or f"Gateway responded {response.status_code}",
            error_code=error.get("decline_code") or error.get("code"),
            raw=body,
        )

    async def create_customer(self, email: Optional[str], name: str, metadata: Optional[Dict[str, Any]] = None) -> GatewayResult:
        response = await self._post("/customers", {"email": email, "name": name, "metadata": metadata or {}})
        if response.is_error:
            return self._error_result(response)
        body = response.json()
        return GatewayResult(success=True, status="created", transaction_id=body["id"], raw=body)

    async def attach_payment_method(self, customer_id: str, payment_method_id: str) -> GatewayResult:
        response = await self._post(f"/payment_methods/{payment_method_id}/attach", {"customer": customer_id})
        if response.is_error:
            return self._error_result(response)
        body = response.json()
        return GatewayResult(success=True, status="attached", transaction_id=body["id"], raw=body)

    async def create_payment_intent(
        self,
        amount: float,
        customer_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        confirm: bool = True,
        off_session: bool = False,
        idempotency_key: Optional[str] = None,
    ) -> GatewayResult:
        payload = {
            "amount": to_cents(amount),
            "currency": self.currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "description": description,
            "metadata": metadata or {},
            "confirm": confirm,
        }
        if off_session:
            payload["off_session"] = True

        response = await self._post("/payment_intents", payload, idempotency_key)
        if response.is_error:
            result = self._error_result(response)
            logger.warning(f"Payment intent declined: {result.error_code} {result.error}")
            return result

        body = response.json()
        logger.info(f"Payment intent {body['id']} status {body.get('status')}")
        return GatewayResult(success=True, status=body.get("status"), transaction_id=body["id"], raw=body)

    async def create_refund(self, payment_intent_id: str, amount: Optional[float] = None, reason: Optional[str] = None) -> GatewayResult:
        payload = {
            "payment_intent": payment_intent_id,
            "amount": to_cents(amount) if amount is not None else None,
            "reason": REFUND_REASON_MAP.get(reason, "requested_by_customer"),
        }
        response = await self._post("/refunds", payload)
        if response.is_error:
            return self._error_result(response)
        body = response.json()
        logger.info(f"Refund {body['id']} for {payment_intent_id} status {body.get('status')}")
        return GatewayResult(success=True, status=body.get("status"), transaction_id=body["id"], raw=body)


def get_payment_gateway() -> StripeGateway:
    """FastAPI dependency; overridden in tests"""
    return StripeGateway()

"""
Payment Gateway Client
======================
Abstraction over the external push-payment API (IntaSend M-Pesa STK push).

`push()` only asks the gateway to prompt the payer's phone. It never waits
for approval and never retries: re-sending a charge initiation can bill the
payer twice, so the orchestrator decides what to do with every failure.
"""

import asyncio
import re
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

import httpx
import structlog

from subscriptions.config import settings
from subscriptions.errors import (
    AuthenticationFailed,
    GatewayError,
    GatewayUnavailable,
    InvalidChannel,
    ValidationError,
)
from subscriptions.models import PushResult, utcnow

logger = structlog.get_logger().bind(component="gateway_client")

# 07XXXXXXXX, 01XXXXXXXX, 2547XXXXXXXX, +2541XXXXXXXX ...
_KENYAN_MSISDN = re.compile(r"^(?:\+?254|0)?([17]\d{8})$")


def normalize_phone(channel: str) -> str:
    """Normalise a Kenyan mobile number to 254XXXXXXXXX or raise InvalidChannel."""
    if not channel:
        raise InvalidChannel("Payer phone number is required")
    cleaned = re.sub(r"[\s\-()]", "", channel)
    match = _KENYAN_MSISDN.match(cleaned)
    if not match:
        raise InvalidChannel(f"Invalid payer phone number: {channel!r}")
    return f"254{match.group(1)}"


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Fails pushes fast while the gateway is down.

    Opens after `failure_threshold` consecutive outages. Once `reset_timeout`
    has passed, exactly one trial push is let through and its outcome closes
    or re-opens the circuit. A trial that never reports back is abandoned
    after another `reset_timeout`.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = settings.CB_FAILURE_THRESHOLD,
        reset_timeout: float = settings.CB_RESET_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: Optional[datetime] = None
        self._trial_started_at: Optional[datetime] = None
        self._clock = clock
        self._lock = asyncio.Lock()
        self._logger = structlog.get_logger().bind(component="circuit_breaker", name=name)

    @property
    def state(self) -> CircuitState:
        return self._state

    def _waited(self, since: Optional[datetime]) -> bool:
        return since is None or (self._clock() - since).total_seconds() >= self.reset_timeout

    async def can_execute(self) -> bool:
        async with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if not self._waited(self._opened_at):
                    return False
                self._state = CircuitState.HALF_OPEN
                self._trial_started_at = None
                self._logger.info("circuit_half_open")

            if not self._waited(self._trial_started_at):
                return False
            self._trial_started_at = self._clock()
            return True

    async def record_success(self):
        async with self._lock:
            if self._state != CircuitState.CLOSED:
                self._logger.info("circuit_closed")
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._trial_started_at = None

    async def record_failure(self, error: Exception = None):
        async with self._lock:
            self._failures += 1
            if self._state == CircuitState.HALF_OPEN:
                self._logger.warning("circuit_reopened", error=str(error))
            elif self._state == CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._logger.warning("circuit_opened", failures=self._failures, error=str(error))
            elif self._state == CircuitState.CLOSED:
                return
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()
            self._trial_started_at = None


# =============================================================================
# INTERFACE
# =============================================================================

class IPaymentGatewayClient(ABC):

    @abstractmethod
    async def push(
        self,
        channel: str,
        amount: float,
        currency: str,
        reference: str,
        narrative: str = "",
    ) -> PushResult:
        """
        Ask the gateway to prompt the payer.

        Raises InvalidChannel, GatewayUnavailable or AuthenticationFailed.
        """

    async def close(self) -> None:
        pass


# =============================================================================
# INTASEND
# =============================================================================

class IntaSendClient(IPaymentGatewayClient):
    """
    IntaSend STK push over httpx.

    Example:
        client = IntaSendClient()
        result = await client.push("0712345678", 150, "KES", "user-42")
        # result.tracking_id correlates the later callback
    """

    STK_PUSH_PATH = "/v1/payment/mpesa-stk-push/"

    def __init__(
        self,
        base_url: str = settings.INTASEND_BASE_URL,
        secret_key: str = settings.INTASEND_SECRET_KEY,
        publishable_key: str = settings.INTASEND_PUBLISHABLE_KEY,
        timeout_seconds: float = settings.GATEWAY_TIMEOUT_SECONDS,
        circuit_breaker: Optional[CircuitBreaker] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._secret_key = secret_key
        self._publishable_key = publishable_key
        self._timeout = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.circuit = circuit_breaker or CircuitBreaker("intasend")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self._secret_key}",
                    "X-IntaSend-Public-Key": self._publishable_key,
                    "Content-Type": "application/json",
                },
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def push(
        self,
        channel: str,
        amount: float,
        currency: str,
        reference: str,
        narrative: str = "",
    ) -> PushResult:
        phone = normalize_phone(channel)
        if amount <= 0:
            raise ValidationError(f"Push amount must be positive, got {amount}")
        if not self._secret_key:
            raise AuthenticationFailed("INTASEND_SECRET_KEY not configured")

        if not await self.circuit.can_execute():
            raise GatewayUnavailable(f"Circuit breaker {self.circuit.name} is OPEN")

        log = logger.bind(reference=reference, amount=amount, currency=currency)
        body = {
            "amount": amount,
            "currency": currency,
            "phone_number": phone,
            "api_ref": reference,
            "narrative": narrative,
        }

        try:
            response = await self._get_client().post(self.STK_PUSH_PATH, json=body)
        except httpx.TimeoutException as e:
            await self.circuit.record_failure(e)
            log.error("gateway_timeout", error=str(e))
            raise GatewayUnavailable("Payment gateway timed out")
        except httpx.TransportError as e:
            await self.circuit.record_failure(e)
            log.error("gateway_unreachable", error=str(e))
            raise GatewayUnavailable(f"Payment gateway unreachable: {e}")

        if response.status_code >= 500:
            error = GatewayUnavailable(f"Payment gateway error {response.status_code}")
            await self.circuit.record_failure(error)
            log.error("gateway_server_error", status_code=response.status_code)
            raise error

        # The gateway answered; 4xx is our problem, not an outage
        await self.circuit.record_success()

        if response.status_code in (401, 403):
            log.error("gateway_auth_failed", status_code=response.status_code)
            raise AuthenticationFailed("Payment gateway rejected credentials")

        if response.status_code >= 400:
            detail = response.text
            log.warning("gateway_rejected", status_code=response.status_code, detail=detail[:200])
            if "phone" in detail.lower():
                raise InvalidChannel(f"Gateway rejected phone number: {detail[:200]}")
            raise GatewayError(f"Payment gateway rejected push ({response.status_code})")

        try:
            data = response.json()
        except ValueError:
            raise GatewayError("Payment gateway returned a non-JSON response")
        return self._parse_push_response(data)

    @staticmethod
    def _parse_push_response(data: dict) -> PushResult:
        invoice = data.get("invoice") or {}
        tracking_id = data.get("tracking_id") or invoice.get("invoice_id") or data.get("id")
        state = (invoice.get("state") or data.get("status") or "").upper()
        accepted = bool(tracking_id) and state not in ("FAILED", "REJECTED")
        message = data.get("message") or invoice.get("failed_reason") or state or ""
        logger.info("gateway_push_response", tracking_id=tracking_id, accepted=accepted, state=state)
        return PushResult(tracking_id=tracking_id, accepted=accepted, message=message)


# =============================================================================
# IN-MEMORY GATEWAY (local development and tests)
# =============================================================================

class InMemoryGatewayClient(IPaymentGatewayClient):
    """
    Records pushes and hands out tracking ids. Queue specific ids or errors
    with `next_tracking_ids` / `fail_next` to script scenarios.
    """

    def __init__(self):
        self.pushes: list[dict] = []
        self.next_tracking_ids: list[str] = []
        self._failures: list[Exception] = []
        self.reject_next = False

    def fail_next(self, error: Exception) -> None:
        self._failures.append(error)

    async def push(
        self,
        channel: str,
        amount: float,
        currency: str,
        reference: str,
        narrative: str = "",
    ) -> PushResult:
        phone = normalize_phone(channel)
        if self._failures:
            raise self._failures.pop(0)

        tracking_id = (
            self.next_tracking_ids.pop(0) if self.next_tracking_ids
            else f"TRK-{uuid.uuid4().hex[:10].upper()}"
        )
        self.pushes.append({
            "channel": phone,
            "amount": amount,
            "currency": currency,
            "reference": reference,
            "narrative": narrative,
            "tracking_id": tracking_id,
        })

        if self.reject_next:
            self.reject_next = False
            return PushResult(tracking_id=None, accepted=False, message="Push rejected")
        return PushResult(tracking_id=tracking_id, accepted=True, message="PENDING")

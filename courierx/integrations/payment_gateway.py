"""
Stripe payment confirmation with retry logic and a circuit breaker.

Wallet top-ups are only written to the ledger after the gateway confirms
that the referenced PaymentIntent succeeded. This module owns that check.

Implements:
- Exponential backoff for transient errors
- Circuit breaker pattern
- Error classification (transient / permanent / rate limit)
"""
import asyncio
import time
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

import stripe
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from courierx.config import get_settings
from courierx.core.errors import UpstreamFailure, ValidationError
from courierx.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYMENT_METHODS = {"upi": "upi", "card": "card", "netbanking": "netbanking"}


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class GatewayError(Exception):
    """Retryable gateway failure, raised inside the retry loop."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.original_error = original_error


@dataclass(frozen=True)
class PaymentConfirmation:
    payment_ref: str
    amount: Decimal
    currency: str
    payment_method: str
    status: str
    user_id: Optional[str] = None


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Stops calling the gateway for `timeout` seconds after
    `failure_threshold` consecutive failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def call(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

        try:
            result = func(*args, **kwargs)
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


class PaymentGateway:
    """Confirms wallet top-up payments against Stripe PaymentIntents."""

    def __init__(self, circuit_breaker: Optional[CircuitBreaker] = None) -> None:
        settings = get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> GatewayErrorType:
        if isinstance(error, stripe.RateLimitError):
            return GatewayErrorType.RATE_LIMIT
        if isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return GatewayErrorType.TRANSIENT
        if isinstance(error, (stripe.CardError, stripe.InvalidRequestError)):
            return GatewayErrorType.PERMANENT
        # Unknown errors are treated as transient
        return GatewayErrorType.TRANSIENT

    @retry(
        retry=retry_if_exception_type(GatewayError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=9),
        reraise=True,
    )
    async def _retrieve_intent(self, payment_ref: str) -> Any:
        start = time.time()
        try:
            intent = await asyncio.to_thread(
                self.circuit_breaker.call, stripe.PaymentIntent.retrieve, payment_ref
            )
        except stripe.StripeError as e:
            error_type = self._classify_error(e)
            metrics.record_upstream_call("stripe", "retrieve_intent", "error", time.time() - start)
            logger.warning(
                "payment_gateway_error",
                error_type=error_type.value,
                error_code=getattr(e, "code", None),
                payment_ref=payment_ref,
            )
            if error_type == GatewayErrorType.PERMANENT:
                raise ValidationError(f"Payment {payment_ref} could not be verified") from e
            raise GatewayError(str(e), error_type, e) from e

        metrics.record_upstream_call("stripe", "retrieve_intent", "ok", time.time() - start)
        return intent

    async def confirm_payment(self, payment_ref: str) -> PaymentConfirmation:
        """
        Confirm that a payment succeeded and return its amount in rupees.
        `user_id` is taken from the intent's metadata when checkout set it.

        Raises:
            ValidationError: The payment does not exist or has not succeeded
            UpstreamFailure: The gateway stayed unavailable after retries
        """
        try:
            intent = await self._retrieve_intent(payment_ref)
        except GatewayError as e:
            raise UpstreamFailure("payment_gateway", str(e), payment_ref=payment_ref) from e

        if intent.status != "succeeded":
            raise ValidationError(
                f"Payment {payment_ref} is {intent.status}, not succeeded",
                user_message="Payment has not completed.",
            )
        if str(intent.currency).lower() != "inr":
            raise ValidationError(f"Payment {payment_ref} is not in INR")

        method_types = list(getattr(intent, "payment_method_types", None) or ["card"])
        payment_method = PAYMENT_METHODS.get(method_types[0], "card")
        amount = (Decimal(int(intent.amount_received)) / 100).quantize(Decimal("0.01"))
        metadata = getattr(intent, "metadata", None) or {}
        owner = metadata.get("user_id")

        logger.info(
            "payment_confirmed",
            payment_ref=payment_ref,
            amount=str(amount),
            payment_method=payment_method,
        )
        return PaymentConfirmation(
            payment_ref=payment_ref,
            amount=amount,
            currency="INR",
            payment_method=payment_method,
            status=intent.status,
            user_id=str(owner) if owner else None,
        )

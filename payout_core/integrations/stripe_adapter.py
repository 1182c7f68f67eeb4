"""
Stripe processor adapter with circuit breaker and error classification.

Authorizes with manual capture PaymentIntents, captures them, and issues
refunds. Stripe's blocking SDK calls run in a worker thread.
"""
import asyncio
import time
from typing import Any, Callable, Dict, Optional

import stripe
import structlog

from payout_core.domain.exceptions import TransientProcessorError
from payout_core.integrations.processors import (
    AuthorizationRequest,
    ProcessorAdapter,
    ProcessorResponse,
)

logger = structlog.get_logger(__name__)


class CircuitBreaker:
    """
    Circuit breaker for processor API calls.

    Stops calling a processor for ``timeout`` seconds after
    ``failure_threshold`` consecutive failures.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def before_call(self, processor_id: str) -> None:
        """
        Check whether a call may go out.

        Raises:
            TransientProcessorError: If the circuit is open
        """
        if self.state != "open":
            return
        if self.last_failure_time and time.time() - self.last_failure_time > self.timeout:
            self.state = "half_open"
            self.success_count = 0
            logger.info("circuit_breaker_half_open", processor_id=processor_id)
            return
        raise TransientProcessorError(
            "Circuit breaker is open",
            processor_id=processor_id,
            reason_code="circuit_open",
        )

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.failure_count >= self.failure_threshold:
            self.state = "open"
            logger.warning("circuit_breaker_opened", failure_count=self.failure_count)


class StripeProcessorAdapter(ProcessorAdapter):
    """
    Stripe implementation of the processor adapter.

    Card declines and invalid requests come back as unsuccessful responses;
    connection problems, API errors and rate limits raise
    ``TransientProcessorError`` so the gateway retries them.
    """

    def __init__(
        self,
        api_key: str,
        processor_id: str = "stripe",
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        self.processor_id = processor_id
        self.api_key = api_key
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        logger.info(
            "stripe_adapter_initialized",
            processor_id=processor_id,
            test_mode=api_key.startswith("sk_test_"),
        )

    async def _invoke(self, func: Callable[..., Any], **kwargs: Any) -> Any:
        self.circuit_breaker.before_call(self.processor_id)
        try:
            result = await asyncio.to_thread(func, api_key=self.api_key, **kwargs)
        except (stripe.CardError, stripe.InvalidRequestError):
            # Declines and bad requests do not count against the breaker
            self.circuit_breaker.on_success()
            raise
        except stripe.StripeError:
            self.circuit_breaker.on_failure()
            raise
        self.circuit_breaker.on_success()
        return result

    def _error_response(self, operation: str, error: stripe.StripeError) -> ProcessorResponse:
        """
        Convert a Stripe error into a response or a transient exception.

        Raises:
            TransientProcessorError: For rate limits, connection and API errors
        """
        logger.error(
            "stripe_api_error",
            operation=operation,
            error_class=type(error).__name__,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )
        if isinstance(error, stripe.RateLimitError):
            raise TransientProcessorError(
                str(error), processor_id=self.processor_id, reason_code="rate_limited"
            ) from error
        if isinstance(error, stripe.CardError):
            return ProcessorResponse(
                success=False,
                reason_code=getattr(error, "code", None) or "card_declined",
                message=str(error),
                http_status=getattr(error, "http_status", None),
            )
        if isinstance(error, stripe.InvalidRequestError):
            return ProcessorResponse(
                success=False,
                reason_code="invalid_request",
                message=str(error),
                http_status=getattr(error, "http_status", None),
            )
        raise TransientProcessorError(
            str(error), processor_id=self.processor_id, reason_code="processor_unavailable"
        ) from error

    async def authorize(self, request: AuthorizationRequest) -> ProcessorResponse:
        logger.info(
            "stripe_authorize",
            transaction_id=request.transaction_id,
            amount_cents=request.amount_cents,
            currency=request.currency,
        )
        try:
            intent = await self._invoke(
                stripe.PaymentIntent.create,
                amount=request.amount_cents,
                currency=request.currency.lower(),
                payment_method=request.payment_token,
                confirm=True,
                capture_method="manual",
                idempotency_key=request.idempotency_key,
                metadata={
                    "transaction_id": request.transaction_id,
                    "merchant_account_id": request.merchant_account_id,
                },
            )
        except stripe.StripeError as e:
            return self._error_response("authorize", e)

        if intent.status == "requires_capture":
            return ProcessorResponse(success=True, external_id=intent.id, raw={"status": intent.status})
        return ProcessorResponse(
            success=False,
            external_id=intent.id,
            reason_code=_status_reason(intent.status),
            raw={"status": intent.status},
        )

    async def capture(
        self, external_id: str, amount_cents: int, currency: str, idempotency_key: str
    ) -> ProcessorResponse:
        logger.info("stripe_capture", payment_intent_id=external_id, amount_cents=amount_cents)
        try:
            intent = await self._invoke(
                stripe.PaymentIntent.capture,
                intent=external_id,
                amount_to_capture=amount_cents,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            return self._error_response("capture", e)

        if intent.status == "succeeded":
            return ProcessorResponse(success=True, external_id=intent.id, raw={"status": intent.status})
        return ProcessorResponse(
            success=False,
            external_id=intent.id,
            reason_code=_status_reason(intent.status),
            raw={"status": intent.status},
        )

    async def refund(
        self, external_id: str, amount_cents: int, currency: str, idempotency_key: str
    ) -> ProcessorResponse:
        logger.info("stripe_refund", payment_intent_id=external_id, amount_cents=amount_cents)
        try:
            refund = await self._invoke(
                stripe.Refund.create,
                payment_intent=external_id,
                amount=amount_cents,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            return self._error_response("refund", e)

        if refund.status in ("succeeded", "pending"):
            return ProcessorResponse(success=True, external_id=refund.id, raw={"status": refund.status})
        return ProcessorResponse(
            success=False,
            external_id=refund.id,
            reason_code=f"refund_{refund.status}",
            raw={"status": refund.status},
        )


def _status_reason(status: str) -> str:
    reasons: Dict[str, str] = {
        "requires_payment_method": "card_declined",
        "requires_action": "authentication_required",
        "canceled": "payment_canceled",
    }
    return reasons.get(status, f"unexpected_status_{status}")

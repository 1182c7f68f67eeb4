"""
Processor adapter interface and the gateway that calls adapters.

The gateway owns the retry policy:
- every call is bounded by a timeout
- transient failures (timeouts, 5xx, rate limits) are retried with
  exponential backoff up to a fixed number of attempts
- terminal failures are classified and returned, never retried
"""
import asyncio
import time
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payout_core.domain.exceptions import ProcessorTimeoutError, TransientProcessorError

logger = structlog.get_logger(__name__)


class FailureKind(str, Enum):
    """Classification of processor outcomes for retry and routing logic."""

    NONE = "none"
    TRANSIENT = "transient"  # Retry these
    DECLINED = "declined"  # Payer-level decline, ends the charge
    REJECTED = "rejected"  # Merchant-side refusal, try the next candidate


class ProcessorResponse(BaseModel):
    success: bool
    external_id: Optional[str] = None
    reason_code: Optional[str] = None
    message: Optional[str] = None
    http_status: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class AuthorizationRequest(BaseModel):
    transaction_id: str
    merchant_account_id: str
    amount_cents: int
    currency: str
    payer_id: str
    payment_token: Optional[str] = None
    idempotency_key: str


class ProcessorAdapter(ABC):
    """Uniform interface over a payment processor."""

    processor_id: str

    @abstractmethod
    async def authorize(self, request: AuthorizationRequest) -> ProcessorResponse: ...

    @abstractmethod
    async def capture(
        self, external_id: str, amount_cents: int, currency: str, idempotency_key: str
    ) -> ProcessorResponse: ...

    @abstractmethod
    async def refund(
        self, external_id: str, amount_cents: int, currency: str, idempotency_key: str
    ) -> ProcessorResponse: ...


class AttemptRecord(BaseModel):
    """One call to a processor, successful or not."""

    processor_id: str
    operation: str
    attempt: int
    kind: FailureKind
    success: bool = False
    external_id: Optional[str] = None
    reason_code: Optional[str] = None
    message: Optional[str] = None
    duration_ms: float = 0.0


class CallOutcome(BaseModel):
    """Final result of a gateway call after retries."""

    processor_id: str
    operation: str
    kind: FailureKind
    response: Optional[ProcessorResponse] = None
    reason_code: Optional[str] = None
    attempts: List[AttemptRecord] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.kind == FailureKind.NONE


AttemptHook = Callable[[AttemptRecord], Awaitable[None]]


class ProcessorGateway:
    """
    Calls processor adapters with timeout, retry and failure classification.
    """

    def __init__(
        self,
        adapters: Dict[str, ProcessorAdapter],
        timeout: float = 10.0,
        max_attempts: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        decline_codes: Iterable[str] = (),
        retryable_codes: Iterable[str] = (),
    ):
        """
        Initialize gateway.

        Args:
            adapters: Adapters keyed by processor id
            timeout: Per-call timeout in seconds
            max_attempts: Attempts per call for transient failures
            base_delay: Backoff multiplier in seconds
            max_delay: Maximum backoff in seconds
            decline_codes: Reason codes that are payer-level declines
            retryable_codes: Reason codes that are transient
        """
        self.adapters = adapters
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.decline_codes = frozenset(decline_codes)
        self.retryable_codes = frozenset(retryable_codes)

    def classify(self, response: ProcessorResponse) -> FailureKind:
        if response.success:
            return FailureKind.NONE
        code = response.reason_code or ""
        if code in self.retryable_codes or (response.http_status or 0) >= 500:
            return FailureKind.TRANSIENT
        if code in self.decline_codes:
            return FailureKind.DECLINED
        return FailureKind.REJECTED

    async def authorize(
        self,
        processor_id: str,
        request: AuthorizationRequest,
        on_attempt: Optional[AttemptHook] = None,
    ) -> CallOutcome:
        adapter = self.adapters.get(processor_id)
        return await self._call(
            processor_id,
            "authorize",
            (lambda: adapter.authorize(request)) if adapter else None,
            on_attempt,
        )

    async def capture(
        self,
        processor_id: str,
        external_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        on_attempt: Optional[AttemptHook] = None,
    ) -> CallOutcome:
        adapter = self.adapters.get(processor_id)
        return await self._call(
            processor_id,
            "capture",
            (lambda: adapter.capture(external_id, amount_cents, currency, idempotency_key))
            if adapter
            else None,
            on_attempt,
        )

    async def refund(
        self,
        processor_id: str,
        external_id: str,
        amount_cents: int,
        currency: str,
        idempotency_key: str,
        on_attempt: Optional[AttemptHook] = None,
    ) -> CallOutcome:
        adapter = self.adapters.get(processor_id)
        return await self._call(
            processor_id,
            "refund",
            (lambda: adapter.refund(external_id, amount_cents, currency, idempotency_key))
            if adapter
            else None,
            on_attempt,
        )

    async def _call(
        self,
        processor_id: str,
        operation: str,
        call: Optional[Callable[[], Awaitable[ProcessorResponse]]],
        on_attempt: Optional[AttemptHook],
    ) -> CallOutcome:
        """
        Run one processor operation under the retry policy.

        Args:
            processor_id: Processor being called
            operation: Operation name for logs and attempt records
            call: Zero-argument coroutine factory performing the call
            on_attempt: Hook invoked after every attempt

        Returns:
            CallOutcome: Success, terminal failure, or exhausted transient failure
        """
        attempts: List[AttemptRecord] = []

        if call is None:
            logger.error("processor_not_configured", processor_id=processor_id)
            return CallOutcome(
                processor_id=processor_id,
                operation=operation,
                kind=FailureKind.REJECTED,
                reason_code="processor_not_configured",
            )

        async def record(attempt: AttemptRecord) -> None:
            attempts.append(attempt)
            if on_attempt is not None:
                await on_attempt(attempt)

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientProcessorError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    number = attempt.retry_state.attempt_number
                    start_time = time.perf_counter()
                    try:
                        response = await asyncio.wait_for(call(), timeout=self.timeout)
                    except asyncio.TimeoutError as e:
                        await record(
                            AttemptRecord(
                                processor_id=processor_id,
                                operation=operation,
                                attempt=number,
                                kind=FailureKind.TRANSIENT,
                                reason_code="processor_timeout",
                                duration_ms=_elapsed_ms(start_time),
                            )
                        )
                        logger.warning(
                            "processor_call_timeout",
                            processor_id=processor_id,
                            operation=operation,
                            attempt=number,
                        )
                        raise ProcessorTimeoutError(
                            f"{operation} timed out after {self.timeout}s",
                            processor_id=processor_id,
                        ) from e
                    except TransientProcessorError as e:
                        await record(
                            AttemptRecord(
                                processor_id=processor_id,
                                operation=operation,
                                attempt=number,
                                kind=FailureKind.TRANSIENT,
                                reason_code=e.reason_code,
                                message=e.message,
                                duration_ms=_elapsed_ms(start_time),
                            )
                        )
                        logger.warning(
                            "processor_transient_error",
                            processor_id=processor_id,
                            operation=operation,
                            attempt=number,
                            reason_code=e.reason_code,
                        )
                        raise
                    except Exception as e:
                        # Connection resets and SDK errors outside the adapter's mapping
                        await record(
                            AttemptRecord(
                                processor_id=processor_id,
                                operation=operation,
                                attempt=number,
                                kind=FailureKind.TRANSIENT,
                                reason_code="processor_error",
                                message=f"{type(e).__name__}: {e}",
                                duration_ms=_elapsed_ms(start_time),
                            )
                        )
                        logger.error(
                            "processor_call_error",
                            processor_id=processor_id,
                            operation=operation,
                            attempt=number,
                            error=str(e),
                            error_type=type(e).__name__,
                        )
                        raise TransientProcessorError(
                            f"{operation} raised {type(e).__name__}",
                            processor_id=processor_id,
                            reason_code="processor_error",
                        ) from e

                    kind = self.classify(response)
                    await record(
                        AttemptRecord(
                            processor_id=processor_id,
                            operation=operation,
                            attempt=number,
                            kind=kind,
                            success=response.success,
                            external_id=response.external_id,
                            reason_code=response.reason_code,
                            message=response.message,
                            duration_ms=_elapsed_ms(start_time),
                        )
                    )
                    if kind == FailureKind.TRANSIENT:
                        raise TransientProcessorError(
                            response.message or "Transient processor failure",
                            processor_id=processor_id,
                            reason_code=response.reason_code,
                        )

                    logger.info(
                        "processor_call_completed",
                        processor_id=processor_id,
                        operation=operation,
                        attempt=number,
                        outcome=kind.value,
                        reason_code=response.reason_code,
                    )
                    return CallOutcome(
                        processor_id=processor_id,
                        operation=operation,
                        kind=kind,
                        response=response,
                        reason_code=response.reason_code,
                        attempts=attempts,
                    )
        except TransientProcessorError as e:
            logger.error(
                "processor_retries_exhausted",
                processor_id=processor_id,
                operation=operation,
                attempts=len(attempts),
                reason_code=e.reason_code,
            )
            return CallOutcome(
                processor_id=processor_id,
                operation=operation,
                kind=FailureKind.TRANSIENT,
                reason_code=e.reason_code,
                attempts=attempts,
            )

        # AsyncRetrying either returns from the block or raises
        raise AssertionError("unreachable")


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)

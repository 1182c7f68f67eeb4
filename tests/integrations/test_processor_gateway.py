"""
Tests for the processor gateway retry policy and failure classification.
"""
from typing import List

import pytest

from payout_core.domain.exceptions import TransientProcessorError
from payout_core.integrations.processors import (
    AttemptRecord,
    AuthorizationRequest,
    FailureKind,
    ProcessorGateway,
    ProcessorResponse,
)
from tests.conftest import TIMEOUT, ScriptedProcessor, declined, rejected, server_error


def _gateway(processor: ScriptedProcessor, max_attempts: int = 3) -> ProcessorGateway:
    return ProcessorGateway(
        {processor.processor_id: processor},
        timeout=0.05,
        max_attempts=max_attempts,
        base_delay=0,
        max_delay=0,
        decline_codes=["card_declined", "insufficient_funds"],
        retryable_codes=["rate_limited", "processor_unavailable"],
    )


def _request() -> AuthorizationRequest:
    return AuthorizationRequest(
        transaction_id="txn_1",
        merchant_account_id="acct_x",
        amount_cents=5000,
        currency="USD",
        payer_id="fan_1",
        idempotency_key="txn_1:x:authorize",
    )


class TestFailureClassification:
    """Test suite for response classification."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "response,kind",
        [
            (ProcessorResponse(success=True), FailureKind.NONE),
            (declined("insufficient_funds"), FailureKind.DECLINED),
            (rejected("compliance_block"), FailureKind.REJECTED),
            (server_error(), FailureKind.TRANSIENT),
            (ProcessorResponse(success=False, reason_code="rate_limited", http_status=429), FailureKind.TRANSIENT),
            (ProcessorResponse(success=False), FailureKind.REJECTED),
        ],
    )
    def test_classify(self, response: ProcessorResponse, kind: FailureKind) -> None:
        """Test each class of processor response."""
        assert _gateway(ScriptedProcessor("x")).classify(response) == kind


class TestGatewayRetries:
    """Test suite for retries and timeouts."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_success_on_first_attempt(self) -> None:
        """Test a call that succeeds immediately."""
        processor = ScriptedProcessor("x")
        attempts: List[AttemptRecord] = []

        async def on_attempt(attempt: AttemptRecord) -> None:
            attempts.append(attempt)

        outcome = await _gateway(processor).authorize("x", _request(), on_attempt=on_attempt)

        assert outcome.success
        assert outcome.response.external_id == "x_txn_1"
        assert [(a.attempt, a.success) for a in attempts] == [(1, True)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transient_then_success(self) -> None:
        """Test that a 5xx followed by success is retried once."""
        processor = ScriptedProcessor("x")
        processor.queue("authorize", server_error())

        outcome = await _gateway(processor).authorize("x", _request())

        assert outcome.success
        assert [a.kind for a in outcome.attempts] == [FailureKind.TRANSIENT, FailureKind.NONE]
        assert processor.count("authorize") == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeouts_exhaust_attempts(self) -> None:
        """Test that every attempt is bounded by the timeout."""
        processor = ScriptedProcessor("x")
        processor.queue("authorize", TIMEOUT, TIMEOUT)

        outcome = await _gateway(processor, max_attempts=2).authorize("x", _request())

        assert outcome.kind == FailureKind.TRANSIENT
        assert outcome.reason_code == "processor_timeout"
        assert [a.reason_code for a in outcome.attempts] == ["processor_timeout", "processor_timeout"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_adapter_transient_exception_retried(self) -> None:
        """Test adapters that raise transient errors directly."""
        processor = ScriptedProcessor("x")
        processor.queue(
            "authorize",
            TransientProcessorError("slow down", processor_id="x", reason_code="rate_limited"),
        )

        outcome = await _gateway(processor).authorize("x", _request())

        assert outcome.success
        assert outcome.attempts[0].reason_code == "rate_limited"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_transient_outcome(self) -> None:
        """Test that an arbitrary adapter exception is retried and then reported, not raised."""
        processor = ScriptedProcessor("x")
        processor.queue("authorize", ConnectionResetError("peer reset"), ConnectionResetError("peer reset"))

        outcome = await _gateway(processor, max_attempts=2).authorize("x", _request())

        assert not outcome.success
        assert outcome.kind == FailureKind.TRANSIENT
        assert outcome.reason_code == "processor_error"
        assert [a.message for a in outcome.attempts] == ["ConnectionResetError: peer reset"] * 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response,kind",
        [(declined(), FailureKind.DECLINED), (rejected(), FailureKind.REJECTED)],
    )
    async def test_terminal_failures_not_retried(
        self, response: ProcessorResponse, kind: FailureKind
    ) -> None:
        """Test that declines and rejections return after one attempt."""
        processor = ScriptedProcessor("x")
        processor.queue("authorize", response)

        outcome = await _gateway(processor).authorize("x", _request())

        assert outcome.kind == kind
        assert outcome.reason_code == response.reason_code
        assert processor.count("authorize") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_processor(self) -> None:
        """Test a call to a processor without an adapter."""
        outcome = await _gateway(ScriptedProcessor("x")).authorize("z", _request())

        assert outcome.kind == FailureKind.REJECTED
        assert outcome.reason_code == "processor_not_configured"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_and_refund_use_same_policy(self) -> None:
        """Test that capture and refund are retried like authorization."""
        processor = ScriptedProcessor("x")
        processor.queue("capture", server_error())
        processor.queue("refund", declined("charge_disputed"))
        gateway = _gateway(processor)

        capture = await gateway.capture("x", "x_txn_1", 5000, "USD", "txn_1:capture")
        refund = await gateway.refund("x", "x_txn_1", 5000, "USD", "refund:rfd_1")

        assert capture.success
        assert processor.count("capture") == 2
        assert not refund.success
        assert processor.count("refund") == 1

"""
Tests for refund automation.
"""
from datetime import timedelta
from typing import Dict

import pytest

from payout_core.container import Container
from payout_core.domain.exceptions import (
    ConflictingDuplicateError,
    InvalidTransitionError,
    RefundValidationError,
)
from payout_core.domain.models import (
    EntityType,
    InboundEvent,
    RefundDecision,
    RefundEvidence,
    RefundOrigin,
    RefundStatus,
    Transaction,
    TransactionStatus,
    utc_now,
)
from payout_core.integrations.ledger import InMemoryLedger
from payout_core.integrations.notifications import LoggingNotifier
from tests.conftest import FixedScoreEngine, ScriptedProcessor, declined, make_charge


def _evidence(**overrides) -> RefundEvidence:
    data = {
        "minutes_since_purchase": 10,
        "content_accessed": False,
        "device_fingerprint": "dev_1",
        "ip_address": "203.0.113.7",
    }
    data.update(overrides)
    return RefundEvidence(**data)


async def _captured(container: Container, amount_cents: int = 2000) -> Transaction:
    transaction = await container.orchestrator.route_and_charge(make_charge(amount_cents=amount_cents))
    assert transaction.status == TransactionStatus.CAPTURED
    return transaction


class TestRefundDecisions:
    """Test suite for the refund policy."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_instant_refund_auto_approved(
        self,
        container: Container,
        score_engine: FixedScoreEngine,
        ledger: InMemoryLedger,
        notifier: LoggingNotifier,
    ) -> None:
        """
        Test the instant refund path.

        Purchase 10 minutes ago, content never opened, same device and IP,
        and a refund trust score of 92.
        """
        score_engine.scores[EntityType.REFUND_REQUEST] = 92
        transaction = await _captured(container)

        refund = await container.refunds.request_refund(
            transaction.id, 2000, "changed my mind", _evidence()
        )

        assert refund.decision == RefundDecision.AUTO_APPROVE
        assert refund.status == RefundStatus.PROCESSED
        assert refund.trust_score == 92
        assert refund.creator_notified is True
        assert notifier.creator_notifications == [("creator_1", refund.id, "processed")]

        stored = await container.orchestrator.get_transaction(transaction.id)
        assert stored.status == TransactionStatus.REFUNDED
        assert stored.refunded_cents == 2000
        assert refund.id in stored.refund_ids
        assert [e.amount_cents for e in ledger.entries_for(transaction.id)] == [2000, -2000]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeat_request_exceeds_balance(
        self, container: Container, score_engine: FixedScoreEngine
    ) -> None:
        """Test that a fully refunded transaction has nothing left to refund."""
        score_engine.scores[EntityType.REFUND_REQUEST] = 92
        transaction = await _captured(container)
        await container.refunds.request_refund(transaction.id, 2000, "first", _evidence())

        with pytest.raises(RefundValidationError) as exc_info:
            await container.refunds.request_refund(transaction.id, 2000, "again", _evidence())

        assert exc_info.value.code == "amount_exceeds_refundable_balance"
        assert exc_info.value.details["refundable_cents"] == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_refund(self, container: Container) -> None:
        """Test that a partial refund leaves the remainder refundable."""
        transaction = await _captured(container)

        await container.refunds.request_refund(transaction.id, 500, "partial", _evidence())

        stored = await container.orchestrator.get_transaction(transaction.id)
        assert stored.status == TransactionStatus.PARTIALLY_REFUNDED
        assert stored.refundable_cents == 1500

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "evidence,reason",
        [
            (_evidence(content_accessed=True), "content_accessed"),
            (_evidence(minutes_since_purchase=60), "outside_instant_window"),
            (_evidence(device_fingerprint="dev_2"), "device_or_ip_mismatch"),
            (_evidence(ip_address=None), "device_or_ip_mismatch"),
        ],
    )
    async def test_manual_review(
        self,
        container: Container,
        ledger: InMemoryLedger,
        evidence: RefundEvidence,
        reason: str,
    ) -> None:
        """Test requests that fail an auto-approval criterion."""
        transaction = await _captured(container)

        refund = await container.refunds.request_refund(transaction.id, 2000, "unhappy", evidence)

        assert refund.decision == RefundDecision.MANUAL_REVIEW
        assert refund.decision_reason == reason
        assert refund.status == RefundStatus.PENDING
        assert refund.origin == RefundOrigin.MANUAL
        assert refund.sla_due_at == refund.requested_at + timedelta(hours=24)
        assert len(ledger.entries_for(transaction.id)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_middling_score_goes_to_review(
        self, container: Container, score_engine: FixedScoreEngine
    ) -> None:
        """Test a score between the thresholds."""
        score_engine.scores[EntityType.REFUND_REQUEST] = 79
        transaction = await _captured(container)

        refund = await container.refunds.request_refund(transaction.id, 2000, "unhappy", _evidence())

        assert refund.decision_reason == "score_below_auto_approve"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_low_score_rejected(
        self, container: Container, score_engine: FixedScoreEngine
    ) -> None:
        """Test that rejection wins over otherwise approvable evidence."""
        score_engine.scores[EntityType.REFUND_REQUEST] = 40
        transaction = await _captured(container)

        refund = await container.refunds.request_refund(transaction.id, 2000, "unhappy", _evidence())

        assert refund.decision == RefundDecision.AUTO_REJECT
        assert refund.decision_reason == "low_trust_score"
        assert refund.status == RefundStatus.DENIED
        stored = await container.orchestrator.get_transaction(transaction.id)
        assert stored.refunded_cents == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_refund_velocity_rejected(self, container: Container) -> None:
        """Test that the fourth request in the window is rejected."""
        transaction = await _captured(container, amount_cents=5000)
        evidence = _evidence(content_accessed=True)

        decisions = [
            (await container.refunds.request_refund(transaction.id, 100, "again", evidence)).decision_reason
            for _ in range(4)
        ]

        assert decisions == [
            "content_accessed",
            "content_accessed",
            "content_accessed",
            "refund_velocity_exceeded",
        ]


class TestRefundValidation:
    """Test suite for refund request validation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_transaction(self, container: Container) -> None:
        """Test a refund for a transaction that does not exist."""
        with pytest.raises(RefundValidationError) as exc_info:
            await container.refunds.request_refund("txn_missing", 100, "why", _evidence())

        assert exc_info.value.code == "unknown_transaction"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_transaction_not_refundable(self, container: Container) -> None:
        """Test a refund for a charge that never completed."""
        transaction = await container.orchestrator.route_and_charge(make_charge(currency="GBP"))

        with pytest.raises(RefundValidationError) as exc_info:
            await container.refunds.request_refund(transaction.id, 100, "why", _evidence())

        assert exc_info.value.code == "transaction_not_refundable"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "amount,code",
        [(0, "invalid_amount"), (2001, "amount_exceeds_refundable_balance")],
    )
    async def test_amount_checks(self, container: Container, amount: int, code: str) -> None:
        """Test non-positive and excessive amounts."""
        transaction = await _captured(container)

        with pytest.raises(RefundValidationError) as exc_info:
            await container.refunds.request_refund(transaction.id, amount, "why", _evidence())

        assert exc_info.value.code == code
        assert container.repository.refunds == {}


class TestManualReview:
    """Test suite for reviewer decisions and SLA escalation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_approve_executes_refund(
        self, container: Container, ledger: InMemoryLedger, notifier: LoggingNotifier
    ) -> None:
        """Test that a reviewer approval refunds and notifies."""
        transaction = await _captured(container)
        pending = await container.refunds.request_refund(
            transaction.id, 2000, "unhappy", _evidence(content_accessed=True)
        )

        approved = await container.refunds.approve_manual(pending.id, "agent_1")

        assert approved.status == RefundStatus.PROCESSED
        assert approved.reviewed_by == "agent_1"
        assert [e.amount_cents for e in ledger.entries_for(transaction.id)] == [2000, -2000]
        assert [n[2] for n in notifier.creator_notifications] == ["pending", "processed"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deny_and_no_second_decision(self, container: Container) -> None:
        """Test that a decided refund cannot be decided again."""
        transaction = await _captured(container)
        pending = await container.refunds.request_refund(
            transaction.id, 2000, "unhappy", _evidence(content_accessed=True)
        )

        denied = await container.refunds.deny_manual(pending.id, "agent_1", "content consumed")

        assert denied.status == RefundStatus.DENIED
        assert denied.decision_reason == "content consumed"
        with pytest.raises(InvalidTransitionError):
            await container.refunds.approve_manual(pending.id, "agent_2")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_overdue_reviews_escalated_once(
        self, container: Container, notifier: LoggingNotifier
    ) -> None:
        """Test SLA escalation of pending reviews."""
        transaction = await _captured(container)
        pending = await container.refunds.request_refund(
            transaction.id, 2000, "unhappy", _evidence(content_accessed=True)
        )

        assert await container.refunds.escalate_overdue() == []

        later = utc_now() + timedelta(hours=25)
        first = await container.refunds.escalate_overdue(now=later)
        second = await container.refunds.escalate_overdue(now=later)

        assert [r.id for r in first] == [pending.id]
        assert second == []
        assert [kind for kind, _ in notifier.alerts] == ["refund_review_overdue"]


class TestRefundExecution:
    """Test suite for processor refunds and idempotency."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_processor_failure_releases_reservation(
        self,
        container: Container,
        processors: Dict[str, ScriptedProcessor],
        ledger: InMemoryLedger,
    ) -> None:
        """Test that a refused processor refund leaves the balance untouched."""
        transaction = await _captured(container)
        processors["x"].queue("refund", declined("charge_already_refunded"))

        refund = await container.refunds.request_refund(transaction.id, 2000, "unhappy", _evidence())

        assert refund.decision == RefundDecision.AUTO_APPROVE
        assert refund.status == RefundStatus.FAILED
        assert refund.failure_reason == "charge_already_refunded"
        stored = await container.orchestrator.get_transaction(transaction.id)
        assert stored.status == TransactionStatus.CAPTURED
        assert stored.refundable_cents == 2000
        assert len(ledger.entries_for(transaction.id)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_idempotent_request(
        self, container: Container, processors: Dict[str, ScriptedProcessor]
    ) -> None:
        """Test that a repeated key returns the stored refund."""
        transaction = await _captured(container)

        first = await container.refunds.request_refund(
            transaction.id, 2000, "unhappy", _evidence(), idempotency_key="rk-1"
        )
        second = await container.refunds.request_refund(
            transaction.id, 2000, "unhappy", _evidence(), idempotency_key="rk-1"
        )

        assert second.id == first.id
        assert processors["x"].count("refund") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_conflicting_key_flagged(self, container: Container) -> None:
        """Test a refund key reused with a different amount."""
        transaction = await _captured(container)
        await container.refunds.request_refund(
            transaction.id, 500, "unhappy", _evidence(), idempotency_key="rk-1"
        )

        with pytest.raises(ConflictingDuplicateError):
            await container.refunds.request_refund(
                transaction.id, 700, "unhappy", _evidence(), idempotency_key="rk-1"
            )

        flags = await container.repository.list_flags()
        assert [f.kind for f in flags] == ["conflicting_refund_request"]


class TestRefundWebhooks:
    """Test suite for processor refund webhooks."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_echo_of_issued_refund_is_acknowledged(
        self, container: Container, ledger: InMemoryLedger
    ) -> None:
        """Test that the processor's webhook for an engine refund is not applied again."""
        transaction = await _captured(container)
        refund = await container.refunds.request_refund(
            transaction.id, 500, "changed my mind", _evidence()
        )
        assert refund.status == RefundStatus.PROCESSED

        result = await container.dispatcher.dispatch(
            InboundEvent(
                event_id="evt_ref_echo",
                processor="x",
                event_type="charge.refunded",
                transaction_id=transaction.id,
                payload={"amount_cents": 500, "refund_id": refund.external_refund_id},
            )
        )

        stored = await container.orchestrator.get_transaction(transaction.id)
        assert result["status"] == "processed"
        assert stored.refunded_cents == 500
        assert stored.status == TransactionStatus.PARTIALLY_REFUNDED
        assert [e.amount_cents for e in ledger.entries_for(transaction.id)] == [2000, -500]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_external_refund_reported_twice(
        self, container: Container, ledger: InMemoryLedger
    ) -> None:
        """Test two webhooks with different event ids for one processor refund."""
        transaction = await _captured(container)

        for event_id in ("evt_ref_a", "evt_ref_b"):
            await container.orchestrator.apply_processor_event(
                InboundEvent(
                    event_id=event_id,
                    processor="x",
                    event_type="charge.refunded",
                    transaction_id=transaction.id,
                    payload={"amount_cents": 700, "refund_id": "re_dashboard_1"},
                )
            )

        stored = await container.orchestrator.get_transaction(transaction.id)
        assert stored.refunded_cents == 700
        assert [e.amount_cents for e in ledger.entries_for(transaction.id)] == [2000, -700]

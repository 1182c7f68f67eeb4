"""
Tests for the dispute state machine.
"""
from datetime import timedelta

import pytest

from payout_core.container import Container
from payout_core.core.disputes import DisputeStateMachine
from payout_core.domain.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from payout_core.domain.models import (
    Dispute,
    DisputeOutcome,
    DisputeStage,
    InboundEvent,
    LedgerEntryKind,
    TransactionEventType,
    utc_now,
)
from payout_core.integrations.ledger import InMemoryLedger
from payout_core.integrations.notifications import LoggingNotifier
from tests.conftest import make_charge


def _dispute_event(event_type: str, transaction_id=None, event_id=None, **payload) -> InboundEvent:
    payload.setdefault("dispute_id", "dp_1")
    return InboundEvent(
        event_id=event_id or f"evt_{event_type}_{payload.get('stage') or payload.get('outcome') or ''}",
        processor="x",
        event_type=event_type,
        transaction_id=transaction_id,
        payload=payload,
    )


async def _open(container: Container) -> tuple:
    transaction = await container.orchestrator.route_and_charge(make_charge())
    dispute = await container.disputes.handle_event(
        _dispute_event("dispute.opened", transaction.id, amount_cents=5000, reason_code="fraudulent")
    )
    return transaction, dispute


class TestDisputeLifecycle:
    """Test suite for processor-driven dispute events."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_records_dispute(self, container: Container) -> None:
        """Test opening a dispute with its response deadline."""
        transaction, dispute = await _open(container)

        assert dispute.stage == DisputeStage.OPEN
        assert dispute.amount_cents == 5000
        assert dispute.reason_code == "fraudulent"
        assert dispute.deadline_at - dispute.opened_at == timedelta(days=7)

        stored = await container.orchestrator.get_transaction(transaction.id)
        assert stored.dispute_ids == [dispute.id]
        events = await container.repository.list_events(transaction.id)
        assert events[-1].event_type == TransactionEventType.DISPUTE
        assert events[-1].data["action"] == "opened"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_is_idempotent(self, container: Container) -> None:
        """Test that a second open for the same dispute id returns the first."""
        transaction, dispute = await _open(container)

        again = await container.disputes.handle_event(
            _dispute_event("dispute.opened", transaction.id, event_id="evt_open_again")
        )

        assert again.id == dispute.id
        assert len(container.repository.disputes) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_resolves_transaction_by_external_id(self, container: Container) -> None:
        """Test a dispute event that only names the processor charge."""
        transaction = await container.orchestrator.route_and_charge(make_charge())

        dispute = await container.disputes.handle_event(
            _dispute_event("dispute.opened", external_id=transaction.external_id)
        )

        assert dispute.transaction_id == transaction.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stages_move_forward_only(self, container: Container) -> None:
        """Test forward moves, skipped stages and a rejected backwards move."""
        transaction, dispute = await _open(container)

        moved = await container.disputes.handle_event(
            _dispute_event("dispute.stage_changed", transaction.id, stage="pre_arbitration")
        )
        assert moved.stage == DisputeStage.PRE_ARBITRATION

        with pytest.raises(InvalidTransitionError):
            await container.disputes.handle_event(
                _dispute_event("dispute.stage_changed", transaction.id, stage="response_due")
            )

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_stage_rejected(self, container: Container) -> None:
        """Test a stage name the state machine does not know."""
        transaction, _ = await _open(container)

        with pytest.raises(ValidationError) as exc_info:
            await container.disputes.handle_event(
                _dispute_event("dispute.stage_changed", transaction.id, stage="mediation")
            )

        assert exc_info.value.code == "invalid_dispute_stage"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_response_submitted(self, container: Container) -> None:
        """Test recording a submitted response."""
        transaction, _ = await _open(container)

        dispute = await container.disputes.handle_event(
            _dispute_event("dispute.response_submitted", transaction.id)
        )

        assert dispute.response_submitted is True
        assert dispute.stage == DisputeStage.OPEN

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_dispute_id(self, container: Container) -> None:
        """Test an event without the processor dispute id."""
        event = InboundEvent(
            event_id="evt_bad", processor="x", event_type="dispute.opened", payload={}
        )

        with pytest.raises(ValidationError) as exc_info:
            await container.disputes.handle_event(event)

        assert exc_info.value.code == "missing_dispute_id"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_event_for_unknown_dispute(self, container: Container) -> None:
        """Test a stage change for a dispute that was never opened."""
        transaction = await container.orchestrator.route_and_charge(make_charge())

        with pytest.raises(NotFoundError):
            await container.disputes.handle_event(
                _dispute_event("dispute.stage_changed", transaction.id, stage="response_due")
            )


class TestDisputeClosure:
    """Test suite for dispute outcomes and ledger losses."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "outcome,recovered,loss",
        [
            ("lost", 0, 6500),
            ("accepted", 0, 6500),
            ("partial", 2000, 4500),
            ("won", 0, 0),
        ],
    )
    async def test_close_posts_loss(
        self,
        container: Container,
        ledger: InMemoryLedger,
        outcome: str,
        recovered: int,
        loss: int,
    ) -> None:
        """Test the loss posted for each outcome, including the processor dispute fee."""
        transaction, _ = await _open(container)

        dispute = await container.disputes.handle_event(
            _dispute_event(
                "dispute.closed", transaction.id, outcome=outcome, recovered_cents=recovered
            )
        )

        assert dispute.stage == DisputeStage.CLOSED
        assert dispute.outcome == DisputeOutcome(outcome)
        losses = [e for e in ledger.entries_for(transaction.id) if e.kind == LedgerEntryKind.DISPUTE_LOSS]
        if loss:
            assert [e.amount_cents for e in losses] == [-loss]
            assert dispute.ledger_entry_id == losses[0].id
        else:
            assert losses == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close_via_stage_change(self, container: Container, ledger: InMemoryLedger) -> None:
        """Test that a stage change to closed is treated as a closure."""
        transaction, _ = await _open(container)

        dispute = await container.disputes.handle_event(
            _dispute_event("dispute.stage_changed", transaction.id, stage="closed", outcome="lost")
        )

        assert dispute.stage == DisputeStage.CLOSED
        assert len(ledger.entries_for(transaction.id)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_close_requires_outcome(self, container: Container) -> None:
        """Test that closing without an outcome is refused."""
        transaction, _ = await _open(container)

        with pytest.raises(ValidationError) as exc_info:
            await container.disputes.handle_event(_dispute_event("dispute.closed", transaction.id))

        assert exc_info.value.code == "missing_dispute_outcome"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_outcome_rejected(self, container: Container, ledger: InMemoryLedger) -> None:
        """Test that an outcome outside the known set is a validation error."""
        transaction, dispute = await _open(container)

        with pytest.raises(ValidationError) as exc_info:
            await container.disputes.handle_event(
                _dispute_event("dispute.closed", transaction.id, outcome="reversed")
            )

        assert exc_info.value.code == "invalid_dispute_outcome"
        stored = await container.repository.get_dispute(dispute.id)
        assert stored.stage == DisputeStage.OPEN
        assert len(ledger.entries_for(transaction.id)) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_dispute_type_rejected(self, container: Container) -> None:
        """Test that opening a dispute with an unknown type is a validation error."""
        transaction = await container.orchestrator.route_and_charge(make_charge())

        with pytest.raises(ValidationError) as exc_info:
            await container.disputes.handle_event(
                _dispute_event("dispute.opened", transaction.id, dispute_type="friendly_fraud")
            )

        assert exc_info.value.code == "invalid_dispute_type"
        assert await container.repository.list_open_disputes() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replayed_close_posts_once(
        self, container: Container, ledger: InMemoryLedger
    ) -> None:
        """Test that a repeated closure does not post the loss again."""
        transaction, _ = await _open(container)
        close = _dispute_event("dispute.closed", transaction.id, outcome="lost")

        await container.disputes.handle_event(close)
        await container.disputes.handle_event(
            _dispute_event("dispute.closed", transaction.id, event_id="evt_close_2", outcome="lost")
        )

        assert len(ledger.entries_for(transaction.id)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_closed_dispute_is_final(self, container: Container) -> None:
        """Test that a closed dispute accepts no other outcome or stage."""
        transaction, _ = await _open(container)
        await container.disputes.handle_event(
            _dispute_event("dispute.closed", transaction.id, outcome="won")
        )

        with pytest.raises(InvalidTransitionError):
            await container.disputes.handle_event(
                _dispute_event("dispute.closed", transaction.id, event_id="evt_flip", outcome="lost")
            )
        with pytest.raises(InvalidTransitionError):
            await container.disputes.handle_event(
                _dispute_event("dispute.stage_changed", transaction.id, stage="arbitration")
            )

    @pytest.mark.unit
    def test_fee_falls_back_to_default(self, container: Container) -> None:
        """Test the dispute fee of a processor missing from the catalog."""
        assert container.disputes.dispute_fee("x") == 1500
        assert container.disputes.dispute_fee("unknown") == 2500

    @pytest.mark.unit
    def test_loss_amount(self) -> None:
        """Test loss arithmetic without a ledger."""
        dispute = Dispute(
            transaction_id="txn_1",
            external_dispute_id="dp_1",
            processor_id="x",
            amount_cents=1000,
            currency="USD",
            deadline_at=utc_now(),
            outcome=DisputeOutcome.PARTIAL,
            recovered_cents=400,
        )

        assert DisputeStateMachine.loss_amount(dispute, 100) == 700


class TestDeadlineSweep:
    """Test suite for missed dispute deadlines."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_overdue_dispute_advances_one_stage(
        self, container: Container, notifier: LoggingNotifier
    ) -> None:
        """Test that an unanswered dispute moves forward after its deadline."""
        _, dispute = await _open(container)

        assert await container.disputes.advance_overdue() == []

        later = utc_now() + timedelta(days=8)
        changed = await container.disputes.advance_overdue(now=later)

        assert [d.stage for d in changed] == [DisputeStage.RESPONSE_DUE]
        assert changed[0].deadline_at == later + timedelta(days=7)
        assert "open_deadline_missed" in changed[0].alerts
        assert [kind for kind, _ in notifier.alerts] == ["dispute_deadline_missed"]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_answered_dispute_not_advanced(self, container: Container) -> None:
        """Test that a submitted response stops the sweep."""
        transaction, _ = await _open(container)
        await container.disputes.handle_event(
            _dispute_event("dispute.response_submitted", transaction.id)
        )

        changed = await container.disputes.advance_overdue(now=utc_now() + timedelta(days=8))

        assert changed == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_overdue_arbitration_alerts_once(
        self, container: Container, notifier: LoggingNotifier
    ) -> None:
        """Test that the sweep never closes a dispute in arbitration."""
        transaction, _ = await _open(container)
        await container.disputes.handle_event(
            _dispute_event("dispute.stage_changed", transaction.id, stage="arbitration")
        )
        later = utc_now() + timedelta(days=8)

        first = await container.disputes.advance_overdue(now=later)
        second = await container.disputes.advance_overdue(now=later)

        assert [d.stage for d in first] == [DisputeStage.ARBITRATION]
        assert second == []
        assert [kind for kind, _ in notifier.alerts] == ["dispute_arbitration_overdue"]

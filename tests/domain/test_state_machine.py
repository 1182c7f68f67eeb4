"""
Tests for the transaction and dispute state machines.
"""
import pytest

from payout_core.domain.exceptions import InvalidTransitionError
from payout_core.domain.models import (
    DisputeStage,
    MerchantAccount,
    PaymentProcessor,
    TransactionEvent,
    TransactionEventType,
    TransactionStatus,
)
from payout_core.domain.state_machine import (
    can_transition,
    ensure_dispute_advance,
    ensure_transition,
    next_dispute_stage,
    replay_status,
)
from tests.conftest import make_catalog

S = TransactionStatus


def _event(sequence: int, status=None, event_type=TransactionEventType.ROUTED) -> TransactionEvent:
    return TransactionEvent(
        transaction_id="txn_1",
        sequence=sequence,
        event_type=event_type,
        resulting_status=status,
    )


class TestTransactionStateMachine:
    """Test suite for transaction status transitions."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (S.INITIATED, S.ROUTED),
            (S.ROUTED, S.AUTHORIZED),
            (S.AUTHORIZED, S.CAPTURED),
            (S.CAPTURED, S.SETTLED),
            (S.CAPTURED, S.PARTIALLY_REFUNDED),
            (S.PARTIALLY_REFUNDED, S.REFUNDED),
            (S.SETTLED, S.REFUNDED),
            (S.ROUTED, S.FAILED),
        ],
    )
    def test_allowed_transitions(self, current: TransactionStatus, target: TransactionStatus) -> None:
        """Test forward transitions of the charge lifecycle."""
        assert can_transition(current, target)
        ensure_transition(current, target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (S.INITIATED, S.CAPTURED),
            (S.CAPTURED, S.AUTHORIZED),
            (S.FAILED, S.ROUTED),
            (S.REFUNDED, S.SETTLED),
            (S.CAPTURED, S.FAILED),
        ],
    )
    def test_rejected_transitions(self, current: TransactionStatus, target: TransactionStatus) -> None:
        """Test that skipped, backwards and terminal moves are refused."""
        with pytest.raises(InvalidTransitionError):
            ensure_transition(current, target)

    @pytest.mark.unit
    def test_replay_rebuilds_status(self) -> None:
        """Test that the status is the fold of the event history."""
        events = [
            _event(4, S.CAPTURED, TransactionEventType.CAPTURED),
            _event(1, S.INITIATED, TransactionEventType.INITIATED),
            _event(2, S.ROUTED),
            _event(3, S.AUTHORIZED, TransactionEventType.AUTHORIZED),
            _event(5, None, TransactionEventType.LEDGER_POSTING),
        ]

        assert replay_status(events) == S.CAPTURED

    @pytest.mark.unit
    def test_replay_rejects_illegal_history(self) -> None:
        """Test that a corrupt history is detected."""
        events = [
            _event(1, S.INITIATED, TransactionEventType.INITIATED),
            _event(2, S.CAPTURED, TransactionEventType.CAPTURED),
        ]

        with pytest.raises(InvalidTransitionError):
            replay_status(events)

    @pytest.mark.unit
    def test_replay_requires_initiated_first(self) -> None:
        """Test histories that do not start at initiated."""
        with pytest.raises(InvalidTransitionError):
            replay_status([_event(1, S.ROUTED)])
        with pytest.raises(InvalidTransitionError):
            replay_status([])


class TestDisputeStages:
    """Test suite for forward-only dispute stages."""

    @pytest.mark.unit
    def test_stage_order(self) -> None:
        """Test the next stage of each stage."""
        assert next_dispute_stage(DisputeStage.OPEN) == DisputeStage.RESPONSE_DUE
        assert next_dispute_stage(DisputeStage.ARBITRATION) == DisputeStage.CLOSED
        assert next_dispute_stage(DisputeStage.CLOSED) is None

    @pytest.mark.unit
    def test_forward_moves_allowed(self) -> None:
        """Test that stages may be skipped forward."""
        ensure_dispute_advance(DisputeStage.OPEN, DisputeStage.PRE_ARBITRATION)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            (DisputeStage.PRE_ARBITRATION, DisputeStage.RESPONSE_DUE),
            (DisputeStage.OPEN, DisputeStage.OPEN),
            (DisputeStage.CLOSED, DisputeStage.ARBITRATION),
        ],
    )
    def test_backward_moves_rejected(self, current: DisputeStage, target: DisputeStage) -> None:
        """Test that stages never move backwards."""
        with pytest.raises(InvalidTransitionError):
            ensure_dispute_advance(current, target)


class TestMerchantCatalog:
    """Test suite for processor fees and eligibility."""

    @pytest.mark.unit
    def test_fee_rounds_half_up(self) -> None:
        """Test basis point fees plus the fixed fee."""
        processor = PaymentProcessor(id="x", name="X", fee_bps=290, fixed_fee_cents=30)

        assert processor.fee_for(5000) == 175
        assert processor.fee_for(50) == 31

    @pytest.mark.unit
    def test_accepts_checks_account_limits(self) -> None:
        """Test currency, minimum and platform restrictions."""
        catalog = make_catalog()

        assert catalog.accepts("x", "acct_x", "P1", 5000, "USD")
        assert not catalog.accepts("x", "acct_x", "P1", 5000, "GBP")
        assert not catalog.accepts("x", "acct_x", "P1", 10, "USD")
        assert not catalog.accepts("x", "acct_y", "P1", 5000, "USD")
        assert not catalog.accepts("z", "acct_x", "P1", 5000, "USD")

        restricted = catalog.model_copy(
            update={
                "merchant_accounts": {
                    "acct_x": MerchantAccount(
                        id="acct_x", processor_id="x", platform_restrictions=["P2"]
                    )
                }
            }
        )
        assert not restricted.accepts("x", "acct_x", "P1", 5000, "USD")

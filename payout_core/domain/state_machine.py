"""
Transaction and dispute state machines.

A transaction's status is never assigned directly: every change is an
event carrying the resulting status, and the status is the fold of those
events through ``TRANSACTION_TRANSITIONS``.
"""
from typing import Dict, FrozenSet, Iterable, Optional

from payout_core.domain.exceptions import InvalidTransitionError
from payout_core.domain.models import DisputeStage, TransactionEvent, TransactionStatus

S = TransactionStatus

TRANSACTION_TRANSITIONS: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    S.INITIATED: frozenset({S.ROUTED, S.FAILED}),
    S.ROUTED: frozenset({S.AUTHORIZED, S.FAILED}),
    S.AUTHORIZED: frozenset({S.CAPTURED, S.FAILED}),
    S.CAPTURED: frozenset({S.SETTLED, S.REFUNDED, S.PARTIALLY_REFUNDED}),
    S.SETTLED: frozenset({S.REFUNDED, S.PARTIALLY_REFUNDED}),
    S.PARTIALLY_REFUNDED: frozenset({S.PARTIALLY_REFUNDED, S.REFUNDED, S.SETTLED}),
    S.REFUNDED: frozenset(),
    S.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({S.FAILED, S.REFUNDED})
REFUNDABLE_STATUSES = frozenset({S.CAPTURED, S.SETTLED, S.PARTIALLY_REFUNDED})

DISPUTE_STAGE_ORDER = (
    DisputeStage.OPEN,
    DisputeStage.RESPONSE_DUE,
    DisputeStage.PRE_ARBITRATION,
    DisputeStage.ARBITRATION,
    DisputeStage.CLOSED,
)


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in TRANSACTION_TRANSITIONS[current]


def ensure_transition(current: TransactionStatus, target: TransactionStatus) -> None:
    """
    Validate a transaction status change.

    Raises:
        InvalidTransitionError: If the state machine does not allow it
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot move transaction from {current.value} to {target.value}",
            details={"from": current.value, "to": target.value},
        )


def replay_status(events: Iterable[TransactionEvent]) -> TransactionStatus:
    """
    Rebuild a transaction's status from its event history.

    Events without a resulting status (attempts, scores, ledger postings)
    leave the status unchanged.

    Args:
        events: Events in sequence order

    Returns:
        TransactionStatus: Status after applying every event

    Raises:
        InvalidTransitionError: If the history contains an illegal transition
    """
    status: Optional[TransactionStatus] = None
    for event in sorted(events, key=lambda e: e.sequence):
        if event.resulting_status is None:
            continue
        if status is None:
            if event.resulting_status != S.INITIATED:
                raise InvalidTransitionError(
                    "Event history must start with the initiated status",
                    details={"first_status": event.resulting_status.value},
                )
            status = event.resulting_status
            continue
        ensure_transition(status, event.resulting_status)
        status = event.resulting_status
    if status is None:
        raise InvalidTransitionError("Event history is empty")
    return status


def stage_index(stage: DisputeStage) -> int:
    return DISPUTE_STAGE_ORDER.index(stage)


def next_dispute_stage(stage: DisputeStage) -> Optional[DisputeStage]:
    """Stage after ``stage``, or None when already closed."""
    index = stage_index(stage)
    if index + 1 >= len(DISPUTE_STAGE_ORDER):
        return None
    return DISPUTE_STAGE_ORDER[index + 1]


def ensure_dispute_advance(current: DisputeStage, target: DisputeStage) -> None:
    """
    Validate a dispute stage change. Stages only move forward.

    Raises:
        InvalidTransitionError: If the target is not after the current stage
    """
    if current == DisputeStage.CLOSED or stage_index(target) <= stage_index(current):
        raise InvalidTransitionError(
            f"Cannot move dispute from {current.value} to {target.value}",
            details={"from": current.value, "to": target.value},
        )

"""
Transfer lifecycle workflow.

Linear: draft -> submitted -> checked -> approved -> sent -> arrived ->
verifying -> verified -> completed.  No skipping.  ``cancelled`` is
terminal and reachable from every non-terminal state; once stock has left
the source (``sent`` onward) cancellation must compensate.
"""

from __future__ import annotations

from enum import Enum

from stock_kernel.domain.workflow import Guard, Transition, Workflow


class TransferStatus(str, Enum):
    DRAFT = "draft"
    SUBMITTED = "submitted"
    CHECKED = "checked"
    APPROVED = "approved"
    SENT = "sent"
    ARRIVED = "arrived"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TRANSFER_SEQUENCE: tuple[TransferStatus, ...] = (
    TransferStatus.DRAFT,
    TransferStatus.SUBMITTED,
    TransferStatus.CHECKED,
    TransferStatus.APPROVED,
    TransferStatus.SENT,
    TransferStatus.ARRIVED,
    TransferStatus.VERIFYING,
    TransferStatus.VERIFIED,
    TransferStatus.COMPLETED,
)

# States in which the source has been deducted
DEDUCTED_STATES: frozenset[TransferStatus] = frozenset(
    {
        TransferStatus.SENT,
        TransferStatus.ARRIVED,
        TransferStatus.VERIFYING,
        TransferStatus.VERIFIED,
        TransferStatus.COMPLETED,
    }
)

# Receipts may be recorded while the goods are being checked in
RECEIVING_STATES: frozenset[TransferStatus] = frozenset(
    {TransferStatus.ARRIVED, TransferStatus.VERIFYING}
)

STOCK_AVAILABLE = Guard(
    name="stock_available",
    description="Every item has enough stock at the source location",
)

COMPENSATION_REQUESTED = Guard(
    name="compensation_requested",
    description="Caller passed compensate=True to reverse the source deduction",
)

_ACTIONS = {
    TransferStatus.SUBMITTED: "submit",
    TransferStatus.CHECKED: "check",
    TransferStatus.APPROVED: "approve",
    TransferStatus.SENT: "send",
    TransferStatus.ARRIVED: "arrive",
    TransferStatus.VERIFYING: "start_verification",
    TransferStatus.VERIFIED: "verify",
    TransferStatus.COMPLETED: "complete",
}


def _forward_transitions() -> tuple[Transition, ...]:
    result = []
    for current, target in zip(TRANSFER_SEQUENCE, TRANSFER_SEQUENCE[1:]):
        result.append(
            Transition(
                from_state=current.value,
                to_state=target.value,
                action=_ACTIONS[target],
                guard=STOCK_AVAILABLE if target is TransferStatus.CHECKED else None,
                moves_stock=target in (TransferStatus.SENT, TransferStatus.COMPLETED),
            )
        )
    return tuple(result)


def _cancel_transitions() -> tuple[Transition, ...]:
    result = []
    for state in TRANSFER_SEQUENCE[:-1]:
        compensating = state in DEDUCTED_STATES
        result.append(
            Transition(
                from_state=state.value,
                to_state=TransferStatus.CANCELLED.value,
                action="cancel_with_compensation" if compensating else "cancel",
                guard=COMPENSATION_REQUESTED if compensating else None,
                moves_stock=compensating,
            )
        )
    return tuple(result)


TRANSFER_WORKFLOW = Workflow(
    name="stock_transfer",
    description="Inter-location stock transfer",
    initial_state=TransferStatus.DRAFT.value,
    states=tuple(s.value for s in TransferStatus),
    transitions=_forward_transitions() + _cancel_transitions(),
    terminal_states=(TransferStatus.COMPLETED.value, TransferStatus.CANCELLED.value),
)


def next_status(status: TransferStatus) -> TransferStatus | None:
    """The single forward step from ``status``; None at the end of the line."""
    if status not in TRANSFER_SEQUENCE:
        return None
    index = TRANSFER_SEQUENCE.index(status)
    if index + 1 < len(TRANSFER_SEQUENCE):
        return TRANSFER_SEQUENCE[index + 1]
    return None

"""Proposal and patch lifecycle rules.

Both state machines live here as explicit transition tables. Repositories
perform transitions as compare-and-set updates, and services consult these
tables first, so an illegal move such as APPLIED -> ACTIVE is never issued.
"""

from datetime import datetime

from substream_assist.core.models import PatchStatus, ProposalStatus, ProposalType

PROPOSAL_TRANSITIONS: dict[ProposalStatus, frozenset[ProposalStatus]] = {
    ProposalStatus.ACTIVE: frozenset(
        {ProposalStatus.DISMISSED, ProposalStatus.EXPIRED, ProposalStatus.APPLIED}
    ),
    ProposalStatus.APPLIED: frozenset({ProposalStatus.ROLLED_BACK}),
    ProposalStatus.DISMISSED: frozenset(),
    ProposalStatus.EXPIRED: frozenset(),
    ProposalStatus.ROLLED_BACK: frozenset(),
}

PATCH_TRANSITIONS: dict[PatchStatus, frozenset[PatchStatus]] = {
    PatchStatus.APPLIED: frozenset({PatchStatus.ROLLED_BACK}),
    PatchStatus.ROLLED_BACK: frozenset(),
}

# Only these proposal types may ever enter APPLIED.
APPLICABLE_TYPES: frozenset[ProposalType] = frozenset({ProposalType.RECATEGORIZE})

# Statuses returned by a list call with no explicit filter.
DEFAULT_VISIBLE_STATUSES: frozenset[ProposalStatus] = frozenset(
    {ProposalStatus.ACTIVE, ProposalStatus.APPLIED, ProposalStatus.DISMISSED}
)


class IllegalTransitionError(ValueError):
    """Raised when a status move is not in the transition table."""


def can_transition_proposal(current: ProposalStatus, target: ProposalStatus) -> bool:
    return target in PROPOSAL_TRANSITIONS[current]


def can_transition_patch(current: PatchStatus, target: PatchStatus) -> bool:
    return target in PATCH_TRANSITIONS[current]


def require_proposal_transition(current: ProposalStatus, target: ProposalStatus) -> None:
    if not can_transition_proposal(current, target):
        raise IllegalTransitionError(f"Proposal cannot move from {current.value} to {target.value}")


def require_patch_transition(current: PatchStatus, target: PatchStatus) -> None:
    if not can_transition_patch(current, target):
        raise IllegalTransitionError(f"Patch cannot move from {current.value} to {target.value}")


def is_terminal(status: ProposalStatus) -> bool:
    return not PROPOSAL_TRANSITIONS[status]


def is_due_for_expiry(status: ProposalStatus, expires_at: datetime, now: datetime) -> bool:
    """An ACTIVE proposal expires once expires_at <= now."""
    return status == ProposalStatus.ACTIVE and expires_at <= now

"""
Submission status transition table.

Each status carries a label, a terminal flag and the statuses it may move to.
A transition ``(from, to)`` is valid iff ``to`` is listed in
``STATUS_META[from].next_states``. Terminal statuses only allow their
whitelisted reopen edges (for example FAILED -> QUEUED for a manual retry).
"""

from dataclasses import dataclass
from types import MappingProxyType
from typing import FrozenSet, Mapping, Tuple

from .enums import SubmissionStatus, coerce_enum

S = SubmissionStatus


@dataclass(frozen=True)
class StatusMeta:
    """Static metadata for one submission status."""

    label: str
    description: str
    is_terminal: bool
    next_states: Tuple[SubmissionStatus, ...]


STATUS_META: Mapping[SubmissionStatus, StatusMeta] = MappingProxyType(
    {
        S.QUEUED: StatusMeta(
            "Queued",
            "Waiting to be processed",
            False,
            (S.IN_PROGRESS, S.PAUSED, S.CANCELLED, S.DEFERRED),
        ),
        S.DEFERRED: StatusMeta(
            "Deferred",
            "Scheduled for retry",
            False,
            (S.QUEUED, S.IN_PROGRESS, S.PAUSED, S.CANCELLED, S.FAILED),
        ),
        S.PAUSED: StatusMeta(
            "Paused",
            "Paused by user",
            False,
            (S.QUEUED, S.CANCELLED),
        ),
        S.IN_PROGRESS: StatusMeta(
            "In Progress",
            "Currently being processed",
            False,
            (
                S.SUBMITTED,
                S.ACTION_NEEDED,
                S.FAILED,
                S.DEFERRED,
                S.ALREADY_LISTED,
                S.PAUSED,
                S.CANCELLED,
            ),
        ),
        S.ACTION_NEEDED: StatusMeta(
            "Action Needed",
            "Requires user intervention",
            False,
            (S.IN_PROGRESS, S.SUBMITTED, S.BLOCKED, S.CANCELLED),
        ),
        S.SUBMITTED: StatusMeta(
            "Submitted",
            "Successfully submitted to directory",
            False,
            (S.AWAITING_REVIEW, S.APPROVED, S.LIVE, S.REJECTED, S.NEEDS_CHANGES),
        ),
        S.AWAITING_REVIEW: StatusMeta(
            "Awaiting Review",
            "Under directory review",
            False,
            (S.APPROVED, S.REJECTED, S.NEEDS_CHANGES, S.LIVE),
        ),
        S.APPROVED: StatusMeta(
            "Approved",
            "Approved by directory",
            False,
            (S.LIVE, S.EXPIRED),
        ),
        S.NEEDS_CHANGES: StatusMeta(
            "Needs Changes",
            "Directory requested changes",
            False,
            (S.IN_PROGRESS, S.CANCELLED),
        ),
        S.LIVE: StatusMeta(
            "Live",
            "Listing is live and verified",
            True,
            (S.EXPIRED, S.DISABLED),
        ),
        S.FAILED: StatusMeta(
            "Failed",
            "Submission failed permanently",
            True,
            (S.QUEUED,),
        ),
        S.REJECTED: StatusMeta(
            "Rejected",
            "Rejected by directory",
            True,
            (),
        ),
        S.BLOCKED: StatusMeta(
            "Blocked",
            "Blocked due to action timeout",
            True,
            (S.ACTION_NEEDED,),
        ),
        S.DISABLED: StatusMeta(
            "Disabled",
            "Listing disabled",
            True,
            (S.QUEUED,),
        ),
        S.EXPIRED: StatusMeta(
            "Expired",
            "Listing expired",
            True,
            (S.QUEUED,),
        ),
        S.ALREADY_LISTED: StatusMeta(
            "Already Listed",
            "Business already has a listing",
            True,
            (),
        ),
        S.CANCELLED: StatusMeta(
            "Cancelled",
            "Cancelled by user",
            True,
            (S.QUEUED,),
        ),
    }
)

TERMINAL_STATUSES: FrozenSet[SubmissionStatus] = frozenset(
    status for status, meta in STATUS_META.items() if meta.is_terminal
)


def is_valid_transition(from_status: object, to_status: object) -> bool:
    """Whether ``from_status -> to_status`` is an edge of the table.

    Unknown values on either side are never valid.
    """
    source = coerce_enum(SubmissionStatus, from_status)
    target = coerce_enum(SubmissionStatus, to_status)
    if source is None or target is None:
        return False
    return target in STATUS_META[source].next_states


def is_terminal_status(status: object) -> bool:
    """Whether ``status`` is terminal. Unknown values are not terminal."""
    return coerce_enum(SubmissionStatus, status) in TERMINAL_STATUSES


def allowed_next_states(status: object) -> Tuple[SubmissionStatus, ...]:
    """Statuses reachable in one step from ``status`` (empty if unknown)."""
    member = coerce_enum(SubmissionStatus, status)
    if member is None:
        return ()
    return STATUS_META[member].next_states

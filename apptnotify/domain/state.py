from __future__ import annotations

from typing import Literal


NotificationType = Literal["email", "sms"]
NOTIFICATION_TYPES: frozenset[str] = frozenset({"email", "sms"})

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_BOUNCED = "bounced"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"

ALL_STATUSES: tuple[str, ...] = (
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_SENT,
    STATUS_DELIVERED,
    STATUS_BOUNCED,
    STATUS_FAILED,
    STATUS_CANCELLED,
)
TERMINAL_STATUSES: frozenset[str] = frozenset(
    {STATUS_DELIVERED, STATUS_BOUNCED, STATUS_FAILED, STATUS_CANCELLED}
)
# Statuses an equivalent enqueue collapses onto instead of creating a duplicate.
DEDUP_STATUSES: tuple[str, ...] = (STATUS_PENDING, STATUS_PROCESSING, STATUS_SENT, STATUS_DELIVERED)
CANCELLABLE_STATUSES: tuple[str, ...] = (STATUS_PENDING, STATUS_PROCESSING)

_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_PROCESSING, STATUS_CANCELLED}),
    STATUS_PROCESSING: frozenset({STATUS_SENT, STATUS_PENDING, STATUS_FAILED, STATUS_CANCELLED}),
    # Provider callbacks only ever move a sent record forward into a terminal outcome.
    STATUS_SENT: frozenset({STATUS_DELIVERED, STATUS_BOUNCED, STATUS_FAILED}),
    STATUS_DELIVERED: frozenset(),
    STATUS_BOUNCED: frozenset(),
    STATUS_FAILED: frozenset(),
    STATUS_CANCELLED: frozenset(),
}

# Canonical delivery outcomes reported by provider callbacks.
OUTCOME_QUEUED = "queued"
OUTCOME_SENDING = "sending"
OUTCOME_SENT = "sent"
OUTCOME_DELIVERED = "delivered"
OUTCOME_BOUNCED = "bounced"
OUTCOME_FAILED = "failed"
OUTCOME_ACCEPTED = "accepted"
OUTCOME_UNKNOWN = "unknown"

_OUTCOME_TARGET_STATUS: dict[str, str] = {
    OUTCOME_DELIVERED: STATUS_DELIVERED,
    OUTCOME_BOUNCED: STATUS_BOUNCED,
    OUTCOME_FAILED: STATUS_FAILED,
}

SUPPRESSION_INVALID = "invalid"
SUPPRESSION_UNSUBSCRIBED = "unsubscribed"
SUPPRESSION_KINDS: frozenset[str] = frozenset({SUPPRESSION_INVALID, SUPPRESSION_UNSUBSCRIBED})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def can_transition(current: str, target: str) -> bool:
    # Reject any move out of a terminal status, including same-status rewrites.
    return target in _TRANSITIONS.get(current, frozenset())


def allowed_sources(target: str) -> tuple[str, ...]:
    # Statuses a record may hold for a guarded update into `target` to apply.
    return tuple(sorted(source for source, targets in _TRANSITIONS.items() if target in targets))


def target_status_for_outcome(outcome: str) -> str | None:
    """Return the record status a provider outcome moves to, if any.

    Progress reports (queued, sending, sent, accepted) and unknown vocabulary
    never change the record; only final outcomes do.
    """

    return _OUTCOME_TARGET_STATUS.get(outcome)

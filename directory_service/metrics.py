"""Prometheus counters for the invitation lifecycle."""

from __future__ import annotations

from prometheus_client import Counter

INVITATIONS_CREATED = Counter(
    "directory_invitations_created_total",
    "Invitations persisted in the pending state.",
)
INVITATIONS_ACCEPTED = Counter(
    "directory_invitations_accepted_total",
    "Invitations redeemed by their invitee.",
)
INVITE_NOTIFICATION_FAILURES = Counter(
    "directory_invite_notification_failures_total",
    "Invitation notifications that could not be dispatched.",
)

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class InvitationStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    expired = "expired"


@dataclass(slots=True)
class Invitation:
    """Pending offer to join ``target_tenant_id`` with ``target_role_id``.

    The ``token`` is the capability handed to the invitee; whoever presents it
    may accept the invitation once, before ``expires_at``.
    """

    invitation_id: str
    email: str
    target_tenant_id: str
    target_role_id: str
    invited_by_user_id: str
    token: str
    expires_at: datetime
    status: InvitationStatus
    created_at: datetime
    accepted_at: datetime | None = None

    def is_expired(self, now: datetime) -> bool:
        return now > self.expires_at

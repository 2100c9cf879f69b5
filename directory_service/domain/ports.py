"""Capability contracts the directory service depends on.

Any storage technology can back these; the Postgres adapters live in
``directory_service.repository`` and the tests use in-memory fakes.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator, Protocol

from .account import Account, Profile, RoleAssignment
from .audit import AuditLogRecord
from .contracts import CreateAccountInput, NewInvitation, ProfileUpdate, RoleAssignmentInput
from .invitation import Invitation


class AccountDirectory(Protocol):
    def find_account_by_id(self, account_id: str) -> Account | None: ...

    def find_account_by_email(self, email: str) -> Account | None:
        """Case-insensitive lookup."""
        ...

    def iter_accounts(self, page_size: int = 200) -> Iterator[Account]:
        """Yield every account in a stable order, fetching ``page_size`` rows at a time."""
        ...

    def create_account(self, payload: CreateAccountInput) -> Account: ...

    def add_tenant_membership(self, account_id: str, tenant_id: str) -> Account: ...

    def get_profile(self, account_id: str) -> Profile | None: ...

    def update_profile(self, account_id: str, update: ProfileUpdate) -> Profile:
        """Apply ``update`` to the profile, creating it when it does not exist yet."""
        ...


class PolicyStore(Protocol):
    def assign_role(self, assignment: RoleAssignmentInput) -> None: ...

    def get_user_assignments(self, user_id: str) -> list[RoleAssignment]: ...


class InvitationStore(Protocol):
    def create_invitation(self, record: NewInvitation) -> Invitation:
        """Persist a pending invitation.

        Raises :class:`~directory_service.domain.errors.ConflictDuplicateInvite`
        when a pending invitation already exists for the same email and tenant.
        """
        ...

    def get_invitation_by_token(self, token: str) -> Invitation | None: ...

    def find_pending_invitation(self, email: str, tenant_id: str) -> Invitation | None: ...

    def list_invitations_by_tenant(self, tenant_id: str) -> list[Invitation]: ...

    def mark_as_accepted(self, invitation_id: str) -> bool:
        """Transition ``pending -> accepted``; return ``False`` if it was no longer pending."""
        ...

    def mark_as_expired(self, invitation_id: str) -> None: ...


class InviteNotifier(Protocol):
    def send_invitation(self, invitation: Invitation, link: str) -> None: ...


class AuditLog(Protocol):
    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None: ...

    def list_audit_events(
        self,
        *,
        tenant_id: str,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], tuple[datetime, int] | None]: ...

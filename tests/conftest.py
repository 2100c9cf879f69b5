from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from threading import Lock

import pytest

from directory_service.config import Settings
from directory_service.domain.account import Account, AssociatedTenant, Profile, RoleAssignment
from directory_service.domain.audit import AuditLogRecord
from directory_service.domain.contracts import (
    CreateAccountInput,
    NewInvitation,
    ProfileUpdate,
    RoleAssignmentInput,
)
from directory_service.domain.errors import ConflictDuplicateInvite, ConflictExistingAccount, NotFound
from directory_service.domain.invitation import Invitation, InvitationStatus
from directory_service.domain.service import DirectoryService


class FakeAccountDirectory:
    """In-memory account/profile store preserving insertion order."""

    def __init__(self) -> None:
        self._accounts: dict[str, Account] = {}
        self._profiles: dict[str, Profile] = {}
        self.passwords: dict[str, str | None] = {}
        self.pages_fetched = 0

    def seed(
        self,
        email: str,
        tenant_ids: list[str],
        *,
        roles: list[str] | None = None,
        with_profile: bool = True,
    ) -> Account:
        account = self.create_account(
            CreateAccountInput(email=email, roles=roles or ["user"], tenant_ids=list(tenant_ids))
        )
        if with_profile:
            self.update_profile(
                account.account_id,
                ProfileUpdate(
                    display_name=email.split("@")[0],
                    associated_tenants=[AssociatedTenant(t, t) for t in tenant_ids],
                ),
            )
        return account

    def find_account_by_id(self, account_id: str):
        return self._accounts.get(account_id)

    def find_account_by_email(self, email: str):
        for account in self._accounts.values():
            if account.email.lower() == email.lower():
                return account
        return None

    def iter_accounts(self, page_size: int = 200):
        accounts = list(self._accounts.values())
        for start in range(0, len(accounts), page_size):
            self.pages_fetched += 1
            yield from accounts[start : start + page_size]

    def create_account(self, payload: CreateAccountInput) -> Account:
        if self.find_account_by_email(payload.email):
            raise ConflictExistingAccount("an account already exists for this email")
        account = Account(
            account_id=str(uuid.uuid4()),
            email=payload.email,
            roles=list(payload.roles),
            tenant_ids=list(payload.tenant_ids),
            created_at=datetime.now(timezone.utc),
            status=payload.status,
            is_verified=payload.is_verified,
            is_2fa_enabled=payload.is_2fa_enabled,
        )
        self._accounts[account.account_id] = account
        self.passwords[account.account_id] = payload.password
        return account

    def add_tenant_membership(self, account_id: str, tenant_id: str) -> Account:
        account = self._accounts.get(account_id)
        if account is None:
            raise NotFound("account not found")
        if tenant_id not in account.tenant_ids:
            account.tenant_ids.append(tenant_id)
        return account

    def get_profile(self, account_id: str):
        return self._profiles.get(account_id)

    def update_profile(self, account_id: str, update: ProfileUpdate) -> Profile:
        profile = self._profiles.get(account_id) or Profile(account_id=account_id, display_name="")
        if update.display_name is not None:
            profile.display_name = update.display_name
        if update.associated_tenants is not None:
            profile.associated_tenants = list(update.associated_tenants)
        if update.preferences is not None:
            profile.preferences = update.preferences
        self._profiles[account_id] = profile
        return profile


class FakePolicyStore:
    def __init__(self) -> None:
        self._assignments: list[RoleAssignment] = []

    def assign_role(self, assignment: RoleAssignmentInput) -> None:
        record = RoleAssignment(assignment.user_id, assignment.role_id, assignment.scope)
        if record not in self._assignments:
            self._assignments.append(record)

    def get_user_assignments(self, user_id: str) -> list[RoleAssignment]:
        return [a for a in self._assignments if a.user_id == user_id]


class FakeInvitationStore:
    """Invitation store whose check-then-insert and accept transitions run under a lock."""

    def __init__(self) -> None:
        self._invitations: dict[str, Invitation] = {}
        self._lock = Lock()

    def create_invitation(self, record: NewInvitation) -> Invitation:
        with self._lock:
            for existing in self._invitations.values():
                if (
                    existing.status is InvitationStatus.pending
                    and existing.email.lower() == record.email.lower()
                    and existing.target_tenant_id == record.target_tenant_id
                ):
                    raise ConflictDuplicateInvite("a pending invitation already exists for this email")
            invitation = Invitation(
                invitation_id=str(uuid.uuid4()),
                email=record.email,
                target_tenant_id=record.target_tenant_id,
                target_role_id=record.target_role_id,
                invited_by_user_id=record.invited_by_user_id,
                token=record.token,
                expires_at=record.expires_at,
                status=InvitationStatus.pending,
                created_at=datetime.now(timezone.utc),
            )
            self._invitations[invitation.invitation_id] = invitation
            return replace(invitation)

    def get_invitation_by_token(self, token: str):
        for invitation in self._invitations.values():
            if invitation.token == token:
                return replace(invitation)
        return None

    def find_pending_invitation(self, email: str, tenant_id: str):
        for invitation in self._invitations.values():
            if (
                invitation.status is InvitationStatus.pending
                and invitation.email.lower() == email.lower()
                and invitation.target_tenant_id == tenant_id
            ):
                return replace(invitation)
        return None

    def list_invitations_by_tenant(self, tenant_id: str) -> list[Invitation]:
        return [replace(i) for i in self._invitations.values() if i.target_tenant_id == tenant_id]

    def mark_as_accepted(self, invitation_id: str) -> bool:
        with self._lock:
            invitation = self._invitations[invitation_id]
            if invitation.status is not InvitationStatus.pending:
                return False
            invitation.status = InvitationStatus.accepted
            invitation.accepted_at = datetime.now(timezone.utc)
            return True

    def mark_as_expired(self, invitation_id: str) -> None:
        with self._lock:
            invitation = self._invitations[invitation_id]
            if invitation.status is InvitationStatus.pending:
                invitation.status = InvitationStatus.expired

    def stored(self, token: str) -> Invitation:
        return next(i for i in self._invitations.values() if i.token == token)


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.sent: list[tuple[Invitation, str]] = []
        self.fail = fail

    def send_invitation(self, invitation: Invitation, link: str) -> None:
        if self.fail:
            raise ConnectionError("smtp relay unreachable")
        self.sent.append((invitation, link))


class FakeAuditLog:
    def __init__(self) -> None:
        self.records: list[AuditLogRecord] = []
        self._seq = 0

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        tenant_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict | None = None,
    ) -> None:
        self._seq += 1
        self.records.append(
            AuditLogRecord(
                audit_id=self._seq,
                account_id=account_id,
                tenant_id=tenant_id,
                event_type=event_type,
                actor=actor,
                metadata=metadata or {},
                created_at=datetime.now(timezone.utc),
            )
        )

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
    ):
        results = [record for record in self.records if record.tenant_id == tenant_id]
        if account_id:
            results = [record for record in results if record.account_id == account_id]
        if event_type:
            results = [record for record in results if record.event_type == event_type]
        if created_after:
            results = [record for record in results if record.created_at >= created_after]
        if created_before:
            results = [record for record in results if record.created_at <= created_before]
        results.sort(key=lambda r: (r.created_at, r.audit_id), reverse=True)
        if cursor:
            results = [record for record in results if (record.created_at, record.audit_id) < cursor]
        slice_ = results[:limit]
        next_cursor = None
        if len(results) > limit:
            last = slice_[-1]
            next_cursor = (last.created_at, last.audit_id)
        return slice_, next_cursor


@dataclass
class MutableClock:
    now: datetime = field(default_factory=lambda: datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc))

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class Stores:
    accounts: FakeAccountDirectory
    policies: FakePolicyStore
    invitations: FakeInvitationStore
    notifier: RecordingNotifier
    audit_log: FakeAuditLog


@pytest.fixture
def settings() -> Settings:
    return Settings(
        invite_base_url="https://app.example.com/join",
        invite_ttl_seconds=24 * 60 * 60,
        personal_scope_owner_role="tenant_owner",
        managing_roles=("tenant_owner", "tenant_admin"),
        directory_page_size=2,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def stores() -> Stores:
    return Stores(
        accounts=FakeAccountDirectory(),
        policies=FakePolicyStore(),
        invitations=FakeInvitationStore(),
        notifier=RecordingNotifier(),
        audit_log=FakeAuditLog(),
    )


@pytest.fixture
def service(stores: Stores, settings: Settings, clock: MutableClock) -> DirectoryService:
    return DirectoryService(
        stores.accounts,
        stores.policies,
        stores.invitations,
        stores.notifier,
        stores.audit_log,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def admin(stores: Stores) -> Account:
    """Account administering tenant ``acme``."""
    account = stores.accounts.seed("admin@acme.com", ["acme"])
    stores.policies.assign_role(RoleAssignmentInput(account.account_id, "tenant_admin", "acme"))
    return account

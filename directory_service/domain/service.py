"""Directory service orchestrating accounts, role assignments, and invitations."""

from __future__ import annotations

from base64 import urlsafe_b64decode, urlsafe_b64encode
from datetime import datetime, timedelta, timezone
import json
import logging
import secrets
from typing import Callable, Optional, Tuple
import uuid

from .account import (
    DEFAULT_SYSTEM_ROLE,
    Account,
    AssociatedTenant,
    Preferences,
    RoleAssignment,
    UserComposite,
)
from .audit import AuditLogRecord
from .contracts import (
    AcceptInviteInput,
    CreateAccountInput,
    CreateUserInput,
    NewInvitation,
    ProfileUpdate,
    ProvisionUserInput,
    RoleAssignmentInput,
)
from .errors import (
    AlreadyUsed,
    ConflictDuplicateInvite,
    ConflictExistingAccount,
    Expired,
    Forbidden,
    InvalidInput,
    NotFound,
)
from .invitation import Invitation, InvitationStatus
from .ports import AccountDirectory, AuditLog, InvitationStore, InviteNotifier, PolicyStore
from .. import metrics
from ..config import Settings, get_settings

logger = logging.getLogger(__name__)

INVITE_TOKEN_BYTES = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(email: str) -> str:
    """Strip and lowercase ``email``, rejecting values that cannot be an address."""
    candidate = (email or "").strip().lower()
    local, sep, domain = candidate.partition("@")
    if not sep or not local or not domain:
        raise InvalidInput("email address is malformed")
    return candidate


def generate_invite_token() -> str:
    """Return an unguessable lowercase hex token carrying 256 bits of entropy."""
    return secrets.token_hex(INVITE_TOKEN_BYTES)


class DirectoryService:
    """User directory and invitation workflows.

    The service keeps no state of its own; it only holds references to the
    collaborators it was constructed with, so a single instance can be shared
    by every request handled by the process.
    """

    def __init__(
        self,
        accounts: AccountDirectory,
        policies: PolicyStore,
        invitations: InvitationStore,
        notifier: InviteNotifier,
        audit_log: AuditLog,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._accounts = accounts
        self._policies = policies
        self._invitations = invitations
        self._notifier = notifier
        self._audit_log = audit_log
        self._settings = settings or get_settings()
        self._clock = clock

    def list_managed_users(self, actor_id: str) -> list[UserComposite]:
        """Return the composites visible to ``actor_id``.

        Superusers see every enumerable user. Everybody else sees themselves
        plus any user sharing at least one tenant with them. An unknown actor
        sees nobody. Results keep the directory's enumeration order.
        """
        actor = self._accounts.find_account_by_id(actor_id)
        if actor is None:
            return []

        results: list[UserComposite] = []
        for account in self._accounts.iter_accounts(self._settings.directory_page_size):
            composite = self._load_composite(account)
            if composite is not None:
                results.append(composite)

        if actor.is_superuser:
            return results

        return [
            user
            for user in results
            if user.account.account_id == actor.account_id
            or user.account.shares_tenant_with(actor.tenant_ids)
        ]

    def list_invitations(self, actor_id: str, scope: str) -> list[Invitation]:
        """Return the invitations issued for ``scope``, with lapsed pending ones reported as expired."""
        self._require_scope_authority(actor_id, scope)
        now = self._clock()
        invitations = self._invitations.list_invitations_by_tenant(scope)
        for invitation in invitations:
            if invitation.status is InvitationStatus.pending and invitation.is_expired(now):
                invitation.status = InvitationStatus.expired
        return invitations

    def invite_user_to_scope(
        self, actor_id: str, scope: str, email: str, initial_role: str
    ) -> Invitation:
        """Issue a pending invitation for ``email`` to join ``scope`` as ``initial_role``.

        Checks run in a fixed order and the first failure aborts before
        anything is written: actor authority, email syntax, existing account,
        then an outstanding pending invitation for the same email and scope.
        The store enforces the pending-uniqueness rule again on insert so two
        concurrent requests cannot both succeed.

        Returns
        -------
        Invitation
            The persisted invitation; its ``token`` is the capability to accept it.
        """
        self._require_scope_authority(actor_id, scope)
        normalized = normalize_email(email)
        if not initial_role:
            raise InvalidInput("role is required")

        if self._accounts.find_account_by_email(normalized) is not None:
            raise ConflictExistingAccount("an account already exists for this email")

        now = self._clock()
        pending = self._invitations.find_pending_invitation(normalized, scope)
        if pending is not None:
            if not pending.is_expired(now):
                raise ConflictDuplicateInvite("a pending invitation already exists for this email")
            self._invitations.mark_as_expired(pending.invitation_id)

        invitation = self._invitations.create_invitation(
            NewInvitation(
                email=normalized,
                target_tenant_id=scope,
                target_role_id=initial_role,
                invited_by_user_id=actor_id,
                token=generate_invite_token(),
                expires_at=now + timedelta(seconds=self._settings.invite_ttl_seconds),
            )
        )
        metrics.INVITATIONS_CREATED.inc()
        self._audit_log.write_audit_event(
            account_id=None,
            tenant_id=scope,
            event_type="invitation.created",
            actor=actor_id,
            metadata={"invitation_id": invitation.invitation_id, "role_id": initial_role},
        )
        logger.info("invitation %s issued for tenant %s", invitation.invitation_id, scope)

        self._notify(invitation)
        return invitation

    def build_invite_link(self, invitation: Invitation) -> str:
        return f"{self._settings.invite_base_url}?token={invitation.token}"

    def accept_invite(self, payload: AcceptInviteInput) -> UserComposite:
        """Redeem an invitation token and materialise the invited membership.

        Creates the invitee's account when none exists yet (a password is then
        required), otherwise links the existing account to the target tenant.
        A token can only be redeemed once.
        """
        invitation = self._invitations.get_invitation_by_token(payload.token)
        if invitation is None:
            raise NotFound("invitation not found")
        if invitation.status is not InvitationStatus.pending:
            raise AlreadyUsed("invitation already used")
        if invitation.is_expired(self._clock()):
            self._invitations.mark_as_expired(invitation.invitation_id)
            raise Expired("invitation expired")

        existing = self._accounts.find_account_by_email(invitation.email)
        if existing is None and not payload.password:
            raise InvalidInput("password is required to accept this invitation")

        if not self._invitations.mark_as_accepted(invitation.invitation_id):
            raise AlreadyUsed("invitation already used")

        if existing is None:
            try:
                composite = self._create_member(
                    email=invitation.email,
                    name=payload.display_name or invitation.email.split("@", 1)[0],
                    scope=invitation.target_tenant_id,
                    role_id=invitation.target_role_id,
                    status="active",
                    password=payload.password,
                )
            except ConflictExistingAccount:
                # Registered through another path after the token was claimed.
                existing = self._accounts.find_account_by_email(invitation.email)
                if existing is None:
                    raise
                logger.info("invitation %s linked to concurrently created account", invitation.invitation_id)
        if existing is not None:
            composite = self._link_member(
                existing, invitation.target_tenant_id, invitation.target_role_id
            )

        metrics.INVITATIONS_ACCEPTED.inc()
        self._audit_log.write_audit_event(
            account_id=composite.account.account_id,
            tenant_id=invitation.target_tenant_id,
            event_type="invitation.accepted",
            actor=composite.account.account_id,
            metadata={
                "invitation_id": invitation.invitation_id,
                "role_id": invitation.target_role_id,
                "linked_existing": existing is not None,
            },
        )
        return composite

    def create_user_in_scope(
        self, actor_id: str, scope: str, details: CreateUserInput
    ) -> UserComposite:
        """Create a pre-verified account directly inside ``scope``.

        No credential is stored; the account stays ``pending_credentials``
        until the identity subsystem's set-password flow completes.
        """
        self._require_scope_authority(actor_id, scope)
        email = normalize_email(details.email)
        if not details.initial_role:
            raise InvalidInput("role is required")
        if self._accounts.find_account_by_email(email) is not None:
            raise ConflictExistingAccount("an account already exists for this email")

        composite = self._create_member(
            email=email,
            name=details.name,
            scope=scope,
            role_id=details.initial_role,
            status="pending_credentials",
            password=None,
        )
        self._audit_log.write_audit_event(
            account_id=composite.account.account_id,
            tenant_id=scope,
            event_type="user.created",
            actor=actor_id,
            metadata={"role_id": details.initial_role},
        )
        return composite

    def provision_user_with_personal_scope(self, details: ProvisionUserInput) -> UserComposite:
        """Register a user together with a personal tenant they own.

        The account is created unverified; the address still has to be
        confirmed out of band.
        """
        email = normalize_email(details.email)
        if not details.name:
            raise InvalidInput("name is required")
        if not details.password:
            raise InvalidInput("password is required")
        if self._accounts.find_account_by_email(email) is not None:
            raise ConflictExistingAccount("an account already exists for this email")

        personal_scope_id = f"tenant-personal-{uuid.uuid4().hex}"
        owner_role = self._settings.personal_scope_owner_role

        account = self._accounts.create_account(
            CreateAccountInput(
                email=email,
                roles=[DEFAULT_SYSTEM_ROLE],
                tenant_ids=[personal_scope_id],
                status="active",
                is_verified=False,
                password=details.password,
            )
        )
        profile = self._accounts.update_profile(
            account.account_id,
            ProfileUpdate(
                display_name=details.name,
                associated_tenants=[
                    AssociatedTenant(tenant_id=personal_scope_id, display_name=f"{details.name}'s Workspace")
                ],
                preferences=Preferences(current_tenant_id=personal_scope_id),
            ),
        )
        assignment = RoleAssignmentInput(
            user_id=account.account_id, role_id=owner_role, scope=personal_scope_id
        )
        self._policies.assign_role(assignment)

        self._audit_log.write_audit_event(
            account_id=account.account_id,
            tenant_id=personal_scope_id,
            event_type="user.provisioned",
            actor=account.account_id,
            metadata={"role_id": owner_role},
        )
        logger.info(
            "provisioned user %s with personal scope %s", account.account_id, personal_scope_id
        )
        return UserComposite(
            account=account,
            profile=profile,
            assignments=[RoleAssignment(account.account_id, owner_role, personal_scope_id)],
        )

    def assign_role_securely(
        self, actor_id: str, target_user_id: str, role_id: str, scope: str
    ) -> bool:
        """Grant ``role_id`` in ``scope`` to ``target_user_id`` if the actor manages ``scope``."""
        self._require_scope_authority(actor_id, scope)
        if not role_id:
            raise InvalidInput("role is required")
        if self._accounts.find_account_by_id(target_user_id) is None:
            raise NotFound("user not found")

        self._policies.assign_role(
            RoleAssignmentInput(user_id=target_user_id, role_id=role_id, scope=scope)
        )
        self._audit_log.write_audit_event(
            account_id=target_user_id,
            tenant_id=scope,
            event_type="role.assigned",
            actor=actor_id,
            metadata={"role_id": role_id},
        )
        return True

    def request_access_to_scope(self, user_id: str, scope: str, reason: str | None = None) -> bool:
        """Record an access request for manual review; always accepted for review."""
        if self._accounts.find_account_by_id(user_id) is None:
            raise NotFound("user not found")
        self._audit_log.write_audit_event(
            account_id=user_id,
            tenant_id=scope,
            event_type="access.requested",
            actor=user_id,
            metadata={"reason": reason} if reason else {},
        )
        logger.info("user %s requested access to %s", user_id, scope)
        return True

    def list_audit_events(
        self,
        actor_id: str,
        *,
        tenant_id: str,
        account_id: str | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: str | None = None,
    ) -> tuple[list[AuditLogRecord], str | None]:
        """Return audit log records for the tenant with optional filters and cursor pagination."""
        self._require_scope_authority(actor_id, tenant_id)
        decoded_cursor: Optional[Tuple[datetime, int]] = None
        if cursor:
            decoded_cursor = self._decode_cursor(cursor)
        records, next_cursor_tuple = self._audit_log.list_audit_events(
            tenant_id=tenant_id,
            account_id=account_id,
            event_type=event_type,
            created_after=created_after,
            created_before=created_before,
            limit=limit,
            cursor=decoded_cursor,
        )
        next_cursor = self._encode_cursor(next_cursor_tuple) if next_cursor_tuple else None
        return records, next_cursor

    def _load_composite(self, account: Account) -> UserComposite | None:
        profile = self._accounts.get_profile(account.account_id)
        if profile is None:
            logger.debug("skipping account %s without a profile", account.account_id)
            return None
        assignments = self._policies.get_user_assignments(account.account_id)
        return UserComposite(account=account, profile=profile, assignments=assignments)

    def _require_scope_authority(self, actor_id: str, scope: str) -> Account:
        actor = self._accounts.find_account_by_id(actor_id)
        if actor is None:
            raise Forbidden("actor cannot manage this scope")
        if actor.is_superuser:
            return actor
        managing = set(self._settings.managing_roles)
        for assignment in self._policies.get_user_assignments(actor_id):
            if assignment.scope == scope and assignment.role_id in managing:
                return actor
        raise Forbidden("actor cannot manage this scope")

    def _create_member(
        self,
        *,
        email: str,
        name: str,
        scope: str,
        role_id: str,
        status: str,
        password: str | None,
    ) -> UserComposite:
        account = self._accounts.create_account(
            CreateAccountInput(
                email=email,
                roles=[DEFAULT_SYSTEM_ROLE],
                tenant_ids=[scope],
                status=status,
                is_verified=True,
                password=password,
            )
        )
        profile = self._accounts.update_profile(
            account.account_id,
            ProfileUpdate(
                display_name=name,
                associated_tenants=[AssociatedTenant(tenant_id=scope, display_name=scope)],
                preferences=Preferences(current_tenant_id=scope),
            ),
        )
        self._policies.assign_role(
            RoleAssignmentInput(user_id=account.account_id, role_id=role_id, scope=scope)
        )
        return UserComposite(
            account=account,
            profile=profile,
            assignments=[RoleAssignment(account.account_id, role_id, scope)],
        )

    def _link_member(self, account: Account, scope: str, role_id: str) -> UserComposite:
        if scope not in account.tenant_ids:
            account = self._accounts.add_tenant_membership(account.account_id, scope)

        profile = self._accounts.get_profile(account.account_id)
        tenants = list(profile.associated_tenants) if profile else []
        if all(tenant.tenant_id != scope for tenant in tenants):
            tenants.append(AssociatedTenant(tenant_id=scope, display_name=scope))
            profile = self._accounts.update_profile(
                account.account_id, ProfileUpdate(associated_tenants=tenants)
            )

        self._policies.assign_role(
            RoleAssignmentInput(user_id=account.account_id, role_id=role_id, scope=scope)
        )
        return UserComposite(
            account=account,
            profile=profile,
            assignments=self._policies.get_user_assignments(account.account_id),
        )

    def _notify(self, invitation: Invitation) -> None:
        try:
            self._notifier.send_invitation(invitation, self.build_invite_link(invitation))
        except Exception:
            metrics.INVITE_NOTIFICATION_FAILURES.inc()
            logger.exception(
                "failed to deliver invitation %s; invitation remains pending",
                invitation.invitation_id,
            )

    def _encode_cursor(self, cursor: Tuple[datetime, int] | None) -> str | None:
        if cursor is None:
            return None
        created_at, audit_id = cursor
        payload = json.dumps({"created_at": created_at.isoformat(), "audit_id": audit_id})
        return urlsafe_b64encode(payload.encode("utf-8")).decode("utf-8")

    def _decode_cursor(self, cursor: str) -> Tuple[datetime, int]:
        try:
            data = json.loads(urlsafe_b64decode(cursor.encode("utf-8")).decode("utf-8"))
            created_at = datetime.fromisoformat(data["created_at"])
            audit_id = int(data["audit_id"])
            return created_at, audit_id
        except Exception as exc:
            raise InvalidInput("invalid cursor") from exc
